"""
Buscador de Repuestos Chile - API de agregación de precios
Sistema de comparación de precios de repuestos automotrices en Chile.
"""
import asyncio
import hashlib
import json
import logging
import math
import random
import re
import time
import unicodedata
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote, quote_plus

import httpx
import psutil
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from redis import asyncio as aioredis

# ================================================================
# CONFIGURACIÓN Y SETTINGS
# ================================================================

class Settings(BaseSettings):
    """Configuración principal del sistema"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # Configuración básica
    PROJECT_NAME: str = "Buscador de Repuestos Chile"
    VERSION: str = "1.2.0"
    DESCRIPTION: str = "Comparador de precios de repuestos automotrices en Chile"

    # Servidor
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # MercadoLibre (API pública de catálogo)
    MERCADOLIBRE_API_BASE: str = "https://api.mercadolibre.com"
    MERCADOLIBRE_SITE: str = "MLC"
    MERCADOLIBRE_ACCESS_TOKEN: str = ""
    MERCADOLIBRE_RESULTS_LIMIT: int = Field(default=50, ge=1, le=50)
    MERCADOLIBRE_ENABLED: bool = True

    # Yapo (avisos clasificados, vía catálogo de accesorios para vehículos)
    YAPO_ENABLED: bool = True
    YAPO_CATEGORY: str = "MLC1743"
    YAPO_RESULTS_LIMIT: int = Field(default=20, ge=1, le=50)
    YAPO_MAX_RESULTS: int = Field(default=15, ge=1, le=50)

    # Búsqueda generativa (Gemini)
    GEMINI_API_KEY: str = ""
    GEMINI_API_BASE: str = "https://generativelanguage.googleapis.com/v1beta"
    GENERATIVE_MODEL: str = "gemini-2.0-flash"
    GENERATIVE_GROUNDING: bool = True
    GENERATIVE_RESULTS: int = Field(default=5, ge=1, le=20)
    GENERATIVE_TIMEOUT: float = 60.0

    # HTTP
    HTTP_TIMEOUT: float = 20.0

    # Reintentos
    RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1, le=5)
    RETRY_BASE_DELAY: float = Field(default=2.0, gt=0)
    RETRY_MULTIPLIER: float = 3.0
    RETRY_MAX_TOTAL_WAIT: float = Field(default=170.0, gt=0, lt=180)

    # Caché
    CACHE_ENABLED: bool = True
    CACHE_TTL_SECONDS: int = 3600
    SHARED_CACHE_TTL_SECONDS: int = 7 * 24 * 3600
    CACHE_MAX_SIZE: int = 1000
    REDIS_URL: Optional[str] = None

    # Enfriamiento entre búsquedas en vivo (por cliente)
    COOLDOWN_SECONDS: int = 30

    # Resultados de respaldo
    SYNTHETIC_FALLBACK_ENABLED: bool = True
    SYNTHETIC_RESULTS: int = Field(default=5, ge=1, le=20)
    SERVE_FALLBACK_ON_SATURATION: bool = False

    # Historial
    HISTORY_LIMIT: int = Field(default=10, ge=1, le=100)

    # Logs
    LOG_LEVEL: str = "INFO"

    @field_validator("COOLDOWN_SECONDS")
    @classmethod
    def validate_cooldown(cls, v):
        if not 15 <= v <= 120:
            raise ValueError("COOLDOWN_SECONDS debe estar entre 15 y 120 segundos")
        return v

    @field_validator("RETRY_MULTIPLIER")
    @classmethod
    def validate_multiplier(cls, v):
        if v <= 1:
            raise ValueError("RETRY_MULTIPLIER debe ser mayor que 1")
        return v

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def gemini_configured(self) -> bool:
        return bool(self.GEMINI_API_KEY and self.GEMINI_API_KEY != "TU_GEMINI_API_KEY" and len(self.GEMINI_API_KEY) > 10)

    @property
    def shared_cache_configured(self) -> bool:
        return bool(self.REDIS_URL)

@lru_cache()
def get_settings() -> Settings:
    return Settings()

settings = get_settings()

# ================================================================
# EXCEPCIONES PERSONALIZADAS
# ================================================================

class RepuestosBaseException(Exception):
    """Excepción base para todas las excepciones de la aplicación"""

    def __init__(self, message: str, error_code: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }

class ConfigurationError(RepuestosBaseException):
    def __init__(self, missing_config: str):
        super().__init__(
            message=f"Configuración faltante: {missing_config}",
            error_code="CONFIG_ERROR"
        )

class InvalidSearchQueryError(RepuestosBaseException):
    def __init__(self, reason: str, fields: Optional[List[str]] = None):
        super().__init__(
            message=f"Consulta inválida: {reason}",
            error_code="INVALID_SEARCH_QUERY",
            details={"fields": fields or []}
        )

class CooldownActiveError(RepuestosBaseException):
    """Búsqueda en vivo rechazada: el cliente debe esperar"""

    def __init__(self, retry_after: int):
        self.retry_after = retry_after
        super().__init__(
            message=f"Espera {retry_after} segundos antes de realizar otra búsqueda",
            error_code="COOLDOWN_ACTIVE",
            details={"retryAfter": retry_after}
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retryAfter"] = self.retry_after
        return data

class UpstreamSaturatedError(RepuestosBaseException):
    """Todas las fuentes respondieron con límite de uso o no disponibilidad"""

    def __init__(self, retry_after: int, sources: Optional[List[str]] = None):
        self.retry_after = retry_after
        super().__init__(
            message=(
                "Las tiendas están saturadas en este momento. "
                f"Intenta nuevamente en {retry_after} segundos"
            ),
            error_code="UPSTREAM_SATURATED",
            details={"retryAfter": retry_after, "sources": sources or []}
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retryAfter"] = self.retry_after
        return data

class UpstreamFatalError(RepuestosBaseException):
    """Error no recuperable en todas las fuentes; el detalle queda solo en los logs"""

    def __init__(self, sources: Optional[List[str]] = None):
        self.sources = sources or []
        super().__init__(
            message="No fue posible completar la búsqueda. Intenta más tarde",
            error_code="UPSTREAM_FATAL"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message}

class UpstreamError(RepuestosBaseException):
    """Respuesta HTTP no exitosa de una fuente externa"""

    RETRYABLE_STATUS_CODES = (429, 503)

    def __init__(self, source: str, status_code: int, original_error: str = ""):
        error_msg = f"Error en {source} (código {status_code})"
        if original_error:
            error_msg += f": {original_error}"

        self.source = source
        self.status_code = status_code
        super().__init__(
            message=error_msg,
            error_code="UPSTREAM_ERROR",
            details={"source": source, "status_code": status_code, "original_error": original_error}
        )

    @property
    def retryable(self) -> bool:
        return self.status_code in self.RETRYABLE_STATUS_CODES

class MalformedResponseError(RepuestosBaseException):
    def __init__(self, source: str, reason: str):
        self.source = source
        super().__init__(
            message=f"Respuesta inválida de {source}: {reason}",
            error_code="MALFORMED_RESPONSE",
            details={"source": source, "reason": reason}
        )

def to_http_exception_status(exc: RepuestosBaseException) -> int:
    """Código HTTP para una excepción personalizada"""
    status_code_mapping = {
        "CONFIG_ERROR": 500,
        "INVALID_SEARCH_QUERY": 400,
        "COOLDOWN_ACTIVE": 429,
        "UPSTREAM_SATURATED": 429,
        "UPSTREAM_FATAL": 500,
        "UPSTREAM_ERROR": 502,
        "MALFORMED_RESPONSE": 502,
    }

    return status_code_mapping.get(exc.error_code, 500)

# ================================================================
# MODELOS DE DATOS
# ================================================================

class Tienda(str, Enum):
    MERCADOLIBRE = "MercadoLibre"
    YAPO = "Yapo"
    AUTOPARTNERS = "AutoPartners"
    OTROS = "Otros"

class Categoria(str, Enum):
    MOTOR = "Motor"
    FRENOS = "Frenos"
    SUSPENSION = "Suspension"
    ELECTRICO = "Electrico"
    CARROCERIA = "Carroceria"
    TRANSMISION = "Transmision"
    INTERIOR = "Interior"
    OTROS = "Otros"

class SourceName(str, Enum):
    MERCADOLIBRE = "mercadolibre"
    YAPO = "yapo"
    GEMINI = "gemini"
    SYNTHETIC = "synthetic"

SOURCE_ID_PREFIXES: Dict[SourceName, str] = {
    SourceName.MERCADOLIBRE: "ml",
    SourceName.YAPO: "yapo",
    SourceName.GEMINI: "ai",
    SourceName.SYNTHETIC: "sim",
}

GUARANTEED_ENTRY_ID = "google-shopping"

def _strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))

def parse_categoria(value: Any) -> Optional[Categoria]:
    if not isinstance(value, str) or not value.strip():
        return None
    wanted = _strip_accents(value.strip()).casefold()
    for categoria in Categoria:
        if categoria.value.casefold() == wanted:
            return categoria
    return None

class SearchQuery(BaseModel):
    """Consulta normalizada; base de la clave de caché"""

    model_config = ConfigDict(frozen=True)

    piece: str = Field(..., min_length=1, max_length=200)
    model: str = Field(..., min_length=1, max_length=200)
    category: Optional[Categoria] = None

    @classmethod
    def from_fields(cls, piece: Optional[str], model: Optional[str], category: Optional[str] = None) -> "SearchQuery":
        missing = [name for name, value in (("piece", piece), ("model", model)) if not (value or "").strip()]
        if missing:
            raise InvalidSearchQueryError("Faltan datos: pieza y modelo son obligatorios", missing)
        try:
            return cls(piece=piece.strip(), model=model.strip(), category=parse_categoria(category))
        except ValidationError as e:
            fields = [str(error["loc"][0]) for error in e.errors() if error.get("loc")]
            raise InvalidSearchQueryError("pieza y modelo deben tener entre 1 y 200 caracteres", fields)

    def normalized(self) -> Tuple[str, str]:
        return self.piece.strip().casefold(), self.model.strip().casefold()

    @property
    def text(self) -> str:
        return f"{self.piece} {self.model}"

class Repuesto(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    price: int = Field(default=0, ge=0)
    image_url: str = Field(..., alias="imageUrl")
    description: str
    url: str
    store: Tienda = Tienda.OTROS
    brand: str
    model: str
    category: Categoria = Categoria.OTROS
    scraped_at: datetime = Field(..., alias="scrapedAt")

class SearchRequest(BaseModel):
    """Cuerpo de búsqueda; acepta los nombres originales en español"""

    piece: Optional[str] = Field(default=None, validation_alias=AliasChoices("piece", "pieza"))
    model: Optional[str] = Field(default=None, validation_alias=AliasChoices("model", "modelo"))
    category: Optional[str] = Field(default=None, validation_alias=AliasChoices("category", "categoria"))

    def to_query(self) -> SearchQuery:
        return SearchQuery.from_fields(self.piece, self.model, self.category)

class SearchResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    search_id: str = Field(..., alias="searchId")
    count: int = Field(..., ge=0)
    stores: Dict[str, int] = Field(default_factory=dict)
    results: List[Repuesto]
    fallback: bool = False
    cached: bool = False
    message: Optional[str] = None

class CacheEntry(BaseModel):
    key: str
    query: SearchQuery
    results: List[Repuesto]
    stores: Dict[str, int] = Field(default_factory=dict)
    stored_at: datetime

class HistoryItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    piece: str
    model: str
    count: int
    stored_at: datetime = Field(..., alias="storedAt")
    relative: str

# ================================================================
# NORMALIZADOR
# ================================================================

PLACEHOLDER_IMAGE_URL = "https://placehold.co/200x200?text=Sin+Imagen"
GOOGLE_LOGO_URL = "https://upload.wikimedia.org/wikipedia/commons/thumb/c/c1/Google_%22G%22_logo.svg/768px-Google_%22G%22_logo.svg.png"
DEFAULT_BRAND = "Genérico"

@dataclass
class RawItem:
    """Item sin normalizar, etiquetado con la fuente que lo produjo"""

    source: SourceName
    payload: Dict[str, Any]
    index: int = 0

def marketplace_search_url(text: str) -> str:
    slug = re.sub(r"\s+", "-", text.strip().lower())
    return f"https://listado.mercadolibre.cl/{quote(slug)}"

def google_shopping_url(text: str) -> str:
    return f"https://www.google.com/search?tbm=shop&q={quote_plus(text)}"

class RepuestoNormalizer:
    """Convierte items heterogéneos al registro canónico Repuesto"""

    # Orden importa: se toma la primera coincidencia
    STORE_FRAGMENTS: List[Tuple[str, Tienda]] = [
        ("mercadolibre", Tienda.MERCADOLIBRE),
        ("mercado libre", Tienda.MERCADOLIBRE),
        ("yapo", Tienda.YAPO),
        ("autopartners", Tienda.AUTOPARTNERS),
        ("auto partners", Tienda.AUTOPARTNERS),
        ("autoplanet", Tienda.AUTOPARTNERS),
        ("mundo repuestos", Tienda.AUTOPARTNERS),
    ]

    PINNED_STORES: Dict[SourceName, Tienda] = {
        SourceName.MERCADOLIBRE: Tienda.MERCADOLIBRE,
        SourceName.YAPO: Tienda.YAPO,
    }

    def __init__(self, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self._clock = clock

    def normalize_price(self, value: Any) -> int:
        if value is None or isinstance(value, bool):
            return 0
        if isinstance(value, (int, float)):
            if isinstance(value, float) and not math.isfinite(value):
                return 0
            return max(0, int(round(value)))
        digits = re.sub(r"\D", "", str(value))
        if not digits:
            return 0
        try:
            return int(digits)
        except ValueError:
            return 0

    def normalize_store(self, label: Any) -> Tienda:
        if not isinstance(label, str):
            return Tienda.OTROS
        lowered = label.casefold()
        for fragment, tienda in self.STORE_FRAGMENTS:
            if fragment in lowered:
                return tienda
        return Tienda.OTROS

    def normalize_image(self, value: Any, source: SourceName) -> str:
        if not isinstance(value, str) or not value.strip():
            return PLACEHOLDER_IMAGE_URL
        image = value.strip().replace("http://", "https://")
        if source == SourceName.MERCADOLIBRE:
            image = image.replace("-I.jpg", "-V.jpg")
        return image

    def _first(self, payload: Dict[str, Any], *keys: str) -> Any:
        for key in keys:
            value = payload.get(key)
            if value not in (None, ""):
                return value
        return None

    def _text(self, value: Any, default: str) -> str:
        if value is None:
            return default
        text = str(value).strip()
        return text or default

    def _brand(self, payload: Dict[str, Any]) -> str:
        attributes = payload.get("attributes")
        if isinstance(attributes, list):
            for attribute in attributes:
                if isinstance(attribute, dict) and attribute.get("id") == "BRAND" and attribute.get("value_name"):
                    return str(attribute["value_name"])
        return self._text(self._first(payload, "marca", "brand"), DEFAULT_BRAND)

    def _category(self, payload: Dict[str, Any], query: SearchQuery) -> Categoria:
        if query.category is not None:
            return query.category
        return parse_categoria(self._first(payload, "categoria", "category")) or Categoria.OTROS

    def _description(self, payload: Dict[str, Any], source: SourceName, store: Tienda) -> str:
        if source == SourceName.YAPO:
            return "Vendedor particular"
        seller = payload.get("seller")
        if isinstance(seller, dict) and seller.get("nickname"):
            return f"Vendedor: {seller['nickname']}"
        description = self._first(payload, "descripcion", "description")
        if description:
            return str(description)
        return f"Vendedor: {store.value}"

    def _item_id(self, raw: RawItem) -> str:
        prefix = SOURCE_ID_PREFIXES.get(raw.source, "item")
        upstream_id = raw.payload.get("id") if raw.source in (SourceName.MERCADOLIBRE, SourceName.YAPO) else None
        return f"{prefix}-{upstream_id if upstream_id else raw.index}"

    def normalize(self, raw: RawItem, query: SearchQuery) -> Repuesto:
        payload = raw.payload if isinstance(raw.payload, dict) else {}
        scraped_at = self._clock()
        try:
            store = self.PINNED_STORES.get(raw.source) or self.normalize_store(self._first(payload, "tienda", "store", "source"))
            return Repuesto(
                id=self._item_id(raw),
                name=self._text(self._first(payload, "title", "nombre", "name"), query.text),
                price=self.normalize_price(self._first(payload, "price", "precio")),
                image_url=self.normalize_image(self._first(payload, "thumbnail", "imagen", "image", "imageUrl"), raw.source),
                description=self._description(payload, raw.source, store),
                url=self._text(self._first(payload, "permalink", "url", "link"), marketplace_search_url(query.text)),
                store=store,
                brand=self._brand(payload),
                model=query.model,
                category=self._category(payload, query),
                scraped_at=scraped_at,
            )
        except Exception as e:
            logger.warning(f"Item de {raw.source.value} no normalizable, usando valores por defecto: {e}")
            return Repuesto(
                id=f"{SOURCE_ID_PREFIXES.get(raw.source, 'item')}-{raw.index}",
                name=query.text,
                price=0,
                image_url=PLACEHOLDER_IMAGE_URL,
                description="Vendedor no especificado",
                url=marketplace_search_url(query.text),
                store=Tienda.OTROS,
                brand=DEFAULT_BRAND,
                model=query.model,
                category=query.category or Categoria.OTROS,
                scraped_at=scraped_at,
            )

_normalizer = RepuestoNormalizer()

def normalize(raw: RawItem, query: SearchQuery) -> Repuesto:
    return _normalizer.normalize(raw, query)

def build_guaranteed_entry(query: SearchQuery) -> Repuesto:
    """Enlace de búsqueda externa que se agrega siempre al final"""
    return Repuesto(
        id=GUARANTEED_ENTRY_ID,
        name=f'Buscar "{query.piece}" en Google',
        price=0,
        image_url=GOOGLE_LOGO_URL,
        description="Comparar en Falabella, Sodimac y otras tiendas",
        url=google_shopping_url(query.text),
        store=Tienda.OTROS,
        brand="Google",
        model=query.model,
        category=Categoria.OTROS,
        scraped_at=datetime.now(timezone.utc),
    )

# ================================================================
# ADAPTADORES DE FUENTES
# ================================================================

class SourceAdapter:
    """Contrato común de las fuentes.

    ``fetch`` puede lanzar errores tipados (UpstreamError, MalformedResponseError,
    errores de transporte de httpx) para que el envoltorio de reintentos los
    clasifique. ``search`` nunca lanza: cualquier falla se traduce en lista vacía.
    """

    name: SourceName

    def __init__(self, normalizer: Optional[RepuestoNormalizer] = None):
        self.normalizer = normalizer or _normalizer

    @property
    def enabled(self) -> bool:
        return True

    async def fetch(self, piece: str, model: str, category: Optional[Categoria] = None) -> List[Repuesto]:
        raise NotImplementedError

    async def search(self, piece: str, model: str, category: Optional[Categoria] = None) -> List[Repuesto]:
        if not self.enabled:
            return []
        try:
            return await self.fetch(piece, model, category=category)
        except Exception as e:
            logger.warning(f"Fuente {self.name.value} falló, se omite: {e}")
            return []

    def _normalize_all(self, payloads: List[Any], query: SearchQuery) -> List[Repuesto]:
        return [
            self.normalizer.normalize(RawItem(source=self.name, payload=payload, index=index), query)
            for index, payload in enumerate(payloads, start=1)
            if isinstance(payload, dict)
        ]

class MercadoLibreAdapter(SourceAdapter):
    """Búsqueda por palabras clave en el catálogo público de MercadoLibre Chile"""

    name = SourceName.MERCADOLIBRE

    BROWSER_HEADERS = {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Accept": "application/json,text/html;q=0.9,*/*;q=0.8",
        "Accept-Language": "es-419,es;q=0.9",
    }

    def __init__(self, client: httpx.AsyncClient, config: Optional[Settings] = None,
                 normalizer: Optional[RepuestoNormalizer] = None):
        super().__init__(normalizer)
        self.config = config or settings
        self.client = client
        self.base_url = f"{self.config.MERCADOLIBRE_API_BASE.rstrip('/')}/sites/{self.config.MERCADOLIBRE_SITE}/search"

    @property
    def enabled(self) -> bool:
        return self.config.MERCADOLIBRE_ENABLED

    @property
    def max_results(self) -> int:
        return self.config.MERCADOLIBRE_RESULTS_LIMIT

    def _build_params(self, query: SearchQuery) -> Dict[str, Any]:
        return {"q": query.text, "limit": self.config.MERCADOLIBRE_RESULTS_LIMIT, "sort": "relevance"}

    def _auth_headers(self) -> Dict[str, str]:
        if self.config.MERCADOLIBRE_ACCESS_TOKEN:
            return {"Authorization": f"Bearer {self.config.MERCADOLIBRE_ACCESS_TOKEN}"}
        return {}

    async def _request(self, params: Dict[str, Any]) -> Optional[httpx.Response]:
        response = await self.client.get(self.base_url, params=params, headers={**self.BROWSER_HEADERS, **self._auth_headers()})

        if response.status_code == 403:
            logger.warning(f"{self.name.value} bloqueó la solicitud (403), reintentando sin cabeceras de navegador")
            response = await self.client.get(self.base_url, params=params, headers=self._auth_headers())
            if not response.is_success:
                logger.warning(f"{self.name.value} respondió {response.status_code} al reintento sin cabeceras")
                return None

        if not response.is_success:
            raise UpstreamError(self.name.value, response.status_code)

        return response

    async def fetch(self, piece: str, model: str, category: Optional[Categoria] = None) -> List[Repuesto]:
        query = SearchQuery(piece=piece, model=model, category=category)
        logger.info(f"🔗 Consultando {self.name.value}: '{query.text}'")

        response = await self._request(self._build_params(query))
        if response is None:
            return []

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(self.name.value, f"JSON inválido: {e}")

        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            raise MalformedResponseError(self.name.value, "sin lista 'results'")

        return self._normalize_all(results[:self.max_results], query)

class YapoAdapter(MercadoLibreAdapter):
    """Avisos de particulares, usando el catálogo de accesorios para vehículos"""

    name = SourceName.YAPO

    @property
    def enabled(self) -> bool:
        return self.config.YAPO_ENABLED

    @property
    def max_results(self) -> int:
        return self.config.YAPO_MAX_RESULTS

    def _build_params(self, query: SearchQuery) -> Dict[str, Any]:
        return {
            "q": f"{query.text} auto",
            "limit": self.config.YAPO_RESULTS_LIMIT,
            "category": self.config.YAPO_CATEGORY,
        }

CODE_FENCE_RE = re.compile(r"```[a-zA-Z]*")

def extract_json_array(text: str) -> Optional[str]:
    """Primer arreglo JSON de nivel superior dentro de un texto libre"""
    if not text:
        return None
    cleaned = CODE_FENCE_RE.sub("", text)
    start = cleaned.find("[")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for position in range(start, len(cleaned)):
        char = cleaned[position]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
            if depth == 0:
                return cleaned[start:position + 1]
    return None

def parse_generated_listings(text: str) -> Optional[List[Dict[str, Any]]]:
    candidate = extract_json_array(text)
    if candidate is None:
        return None
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, list):
        return None
    return [item for item in parsed if isinstance(item, dict)]

class GenerativeSearchAdapter(SourceAdapter):
    """Búsqueda mediante un modelo generativo con búsqueda web opcional"""

    name = SourceName.GEMINI

    PROMPT_TEMPLATE = (
        "Eres un asistente que busca repuestos automotrices a la venta en Chile.\n"
        "Busca \"{piece}\" para un \"{model}\".\n"
        "Responde SOLO con un arreglo JSON de exactamente {count} objetos, sin texto adicional, "
        "con estas claves: nombre, precio (entero en pesos chilenos, sin puntos ni símbolos), "
        "tienda, url, imagen, marca, descripcion, categoria.\n"
        "Usa tiendas chilenas reales como MercadoLibre, Yapo, AutoPartners o Autoplanet."
    )

    def __init__(self, client: httpx.AsyncClient, config: Optional[Settings] = None,
                 normalizer: Optional[RepuestoNormalizer] = None):
        super().__init__(normalizer)
        self.config = config or settings
        self.client = client

    @property
    def enabled(self) -> bool:
        return self.config.gemini_configured

    def build_prompt(self, query: SearchQuery) -> str:
        return self.PROMPT_TEMPLATE.format(piece=query.piece, model=query.model, count=self.config.GENERATIVE_RESULTS)

    def _build_payload(self, query: SearchQuery) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": self.build_prompt(query)}]}],
            "generationConfig": {"temperature": 0.2},
        }
        if self.config.GENERATIVE_GROUNDING:
            payload["tools"] = [{"google_search": {}}]
        return payload

    @staticmethod
    def _response_text(data: Any) -> Optional[str]:
        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError):
            return None
        texts = [part.get("text", "") for part in parts if isinstance(part, dict)]
        return "".join(texts) or None

    async def fetch(self, piece: str, model: str, category: Optional[Categoria] = None) -> List[Repuesto]:
        if not self.enabled:
            return []

        query = SearchQuery(piece=piece, model=model, category=category)
        url = f"{self.config.GEMINI_API_BASE.rstrip('/')}/models/{self.config.GENERATIVE_MODEL}:generateContent"
        logger.info(f"🤖 Consultando {self.name.value} ({self.config.GENERATIVE_MODEL}): '{query.text}'")

        response = await self.client.post(
            url,
            json=self._build_payload(query),
            headers={"x-goog-api-key": self.config.GEMINI_API_KEY},
            timeout=self.config.GENERATIVE_TIMEOUT,
        )
        if not response.is_success:
            raise UpstreamError(self.name.value, response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(self.name.value, f"JSON inválido: {e}")

        text = self._response_text(data)
        listings = parse_generated_listings(text or "")
        if listings is None:
            raise MalformedResponseError(self.name.value, "la respuesta no contiene un arreglo JSON")

        return self._normalize_all(listings[:self.config.GENERATIVE_RESULTS], query)

class SyntheticFallbackAdapter(SourceAdapter):
    """Genera resultados aproximados cuando ninguna fuente en vivo responde"""

    name = SourceName.SYNTHETIC

    # Precio base en CLP por palabra clave de la pieza; se toma la primera coincidencia
    PRICE_TABLE: List[Tuple[str, int]] = [
        ("filtro", 8000),
        ("bujia", 6000),
        ("ampolleta", 5000),
        ("plumilla", 9000),
        ("aceite", 25000),
        ("correa", 20000),
        ("pastilla", 25000),
        ("disco", 45000),
        ("freno", 30000),
        ("bomba de agua", 45000),
        ("bomba", 60000),
        ("amortiguador", 55000),
        ("radiador", 90000),
        ("bateria", 85000),
        ("alternador", 150000),
        ("motor de partida", 120000),
        ("embrague", 130000),
        ("foco", 35000),
    ]
    DEFAULT_BASE_PRICE = 35000
    JITTER = 0.20
    STORES: List[Tienda] = [Tienda.MERCADOLIBRE, Tienda.YAPO, Tienda.AUTOPARTNERS, Tienda.OTROS]
    VARIANTS = ["Original", "Alternativo", "Premium", "Económico", "Reacondicionado"]

    def __init__(self, count: int = 5, rng: Optional[random.Random] = None,
                 normalizer: Optional[RepuestoNormalizer] = None):
        super().__init__(normalizer)
        self.count = count
        self.rng = rng or random.Random()

    def base_price(self, piece: str) -> int:
        wanted = _strip_accents(piece).casefold()
        for keyword, price in self.PRICE_TABLE:
            if keyword in wanted:
                return price
        return self.DEFAULT_BASE_PRICE

    def _jittered(self, base: int) -> int:
        factor = 1 + self.rng.uniform(-self.JITTER, self.JITTER)
        return max(0, int(round(base * factor, -1)))

    async def fetch(self, piece: str, model: str, category: Optional[Categoria] = None) -> List[Repuesto]:
        query = SearchQuery(piece=piece, model=model, category=category)
        base = self.base_price(piece)
        payloads = []
        for position in range(self.count):
            store = self.STORES[position % len(self.STORES)]
            variant = self.VARIANTS[position % len(self.VARIANTS)]
            payloads.append({
                "nombre": f"{piece} {variant} {model}",
                "precio": self._jittered(base),
                "tienda": store.value,
                "url": marketplace_search_url(query.text),
                "descripcion": "Precio aproximado, confirmar con la tienda",
            })
        return self._normalize_all(payloads, query)

# ================================================================
# REINTENTOS Y CLASIFICACIÓN DE FALLAS
# ================================================================

class FailureKind(str, Enum):
    RETRYABLE = "retryable"
    MALFORMED = "malformed"
    FATAL = "fatal"

class OutcomeStatus(str, Enum):
    OK = "ok"
    EMPTY = "empty"
    EXHAUSTED = "exhausted"
    FATAL = "fatal"
    DISABLED = "disabled"

def classify_failure(exc: BaseException) -> FailureKind:
    if isinstance(exc, MalformedResponseError):
        return FailureKind.MALFORMED
    if isinstance(exc, UpstreamError):
        return FailureKind.RETRYABLE if exc.retryable else FailureKind.FATAL
    if isinstance(exc, httpx.TransportError):
        return FailureKind.RETRYABLE
    return FailureKind.FATAL

@dataclass(frozen=True)
class RetryPolicy:
    """Espera creciente entre intentos con tope de espera total.

    La espera antes del intento n+1 es ``base_delay * multiplier ** (n - 1)``.
    Un reintento cuya espera excedería ``max_total_wait`` no se realiza.
    """

    max_attempts: int = 3
    base_delay: float = 2.0
    multiplier: float = 3.0
    max_total_wait: float = 170.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts debe ser al menos 1")
        if self.base_delay <= 0:
            raise ValueError("base_delay debe ser positivo")
        if self.multiplier <= 1:
            raise ValueError("multiplier debe ser mayor que 1")
        if self.max_total_wait <= 0:
            raise ValueError("max_total_wait debe ser positivo")

    @classmethod
    def from_settings(cls, config: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=config.RETRY_MAX_ATTEMPTS,
            base_delay=config.RETRY_BASE_DELAY,
            multiplier=config.RETRY_MULTIPLIER,
            max_total_wait=config.RETRY_MAX_TOTAL_WAIT,
        )

    def delays(self) -> List[float]:
        schedule: List[float] = []
        total = 0.0
        for attempt in range(1, self.max_attempts):
            delay = self.base_delay * self.multiplier ** (attempt - 1)
            if total + delay > self.max_total_wait:
                break
            schedule.append(delay)
            total += delay
        return schedule

@dataclass
class SourceOutcome:
    source: SourceName
    status: OutcomeStatus
    results: List[Repuesto] = field(default_factory=list)
    error: Optional[str] = None
    attempts: int = 0

class ResilientCaller:
    """Envuelve la llamada a una fuente con reintentos y resultado tipado"""

    def __init__(self, policy: RetryPolicy, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.policy = policy
        self._sleep = sleep

    async def call(self, adapter: SourceAdapter, piece: str, model: str,
                   category: Optional[Categoria] = None) -> SourceOutcome:
        source = adapter.name
        if not adapter.enabled:
            logger.info(f"Fuente {source.value} deshabilitada (sin configuración)")
            return SourceOutcome(source=source, status=OutcomeStatus.DISABLED)

        delays = self.policy.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                results = await adapter.fetch(piece, model, category=category)
                status = OutcomeStatus.OK if results else OutcomeStatus.EMPTY
                logger.info(f"Fuente {source.value}: {len(results)} resultados (intento {attempt})")
                return SourceOutcome(source=source, status=status, results=results, attempts=attempt)

            except Exception as e:
                kind = classify_failure(e)

                if kind is FailureKind.MALFORMED:
                    logger.warning(f"Fuente {source.value} entregó datos inválidos: {e}")
                    return SourceOutcome(source=source, status=OutcomeStatus.EMPTY, error=str(e), attempts=attempt)

                if kind is FailureKind.FATAL:
                    logger.error(f"Error no recuperable en {source.value}: {type(e).__name__}: {e}")
                    return SourceOutcome(source=source, status=OutcomeStatus.FATAL, error=str(e), attempts=attempt)

                if attempt > len(delays):
                    logger.warning(f"Fuente {source.value} agotó {attempt} intentos: {e}")
                    return SourceOutcome(source=source, status=OutcomeStatus.EXHAUSTED, error=str(e), attempts=attempt)

                wait_time = delays[attempt - 1]
                logger.warning(f"Fuente {source.value} saturada ({e}), reintentando en {wait_time:.1f}s")
                await self._sleep(wait_time)

# ================================================================
# AGREGADOR
# ================================================================

@dataclass
class AggregateResult:
    results: List[Repuesto]
    per_source_counts: Dict[str, int]
    outcomes: List[SourceOutcome]
    fallback: bool = False
    saturated: bool = False
    all_fatal: bool = False

def _ensure_unique_ids(results: List[Repuesto]) -> List[Repuesto]:
    seen: Dict[str, int] = {}
    unique = []
    for repuesto in results:
        occurrences = seen.get(repuesto.id, 0)
        seen[repuesto.id] = occurrences + 1
        if occurrences:
            repuesto = repuesto.model_copy(update={"id": f"{repuesto.id}-{occurrences + 1}"})
        unique.append(repuesto)
    return unique

class SearchAggregator:
    """Consulta todas las fuentes en paralelo y combina los resultados.

    El orden final sigue la prioridad de ``sources``, nunca el orden de llegada.
    """

    def __init__(self, sources: List[SourceAdapter], caller: ResilientCaller,
                 fallback: Optional[SyntheticFallbackAdapter] = None):
        self.sources = sources
        self.caller = caller
        self.fallback = fallback

    async def aggregate(self, query: SearchQuery, synthesize_on_saturation: bool = True) -> AggregateResult:
        outcomes: List[SourceOutcome] = list(await asyncio.gather(*(
            self.caller.call(source, query.piece, query.model, category=query.category)
            for source in self.sources
        )))

        results: List[Repuesto] = []
        counts: Dict[str, int] = {}
        for outcome in outcomes:
            counts[outcome.source.value] = len(outcome.results)
            results.extend(outcome.results)

        enabled = [o for o in outcomes if o.status is not OutcomeStatus.DISABLED]
        live_count = len(results)
        saturated = live_count == 0 and any(o.status is OutcomeStatus.EXHAUSTED for o in outcomes)
        all_fatal = bool(enabled) and all(o.status is OutcomeStatus.FATAL for o in enabled)

        fallback = live_count == 0
        # Sin aproximados cuando el servicio va a rechazar la búsqueda
        skip_synthetic = all_fatal or (saturated and not synthesize_on_saturation)
        if fallback and self.fallback is not None and not skip_synthetic:
            synthetic = await self.fallback.search(query.piece, query.model, category=query.category)
            counts[self.fallback.name.value] = len(synthetic)
            results.extend(synthetic)
            logger.info(f"Sin resultados en vivo para '{query.text}', {len(synthetic)} resultados aproximados")

        results.append(build_guaranteed_entry(query))

        return AggregateResult(
            results=_ensure_unique_ids(results),
            per_source_counts=counts,
            outcomes=outcomes,
            fallback=fallback,
            saturated=saturated,
            all_fatal=all_fatal,
        )

# ================================================================
# CACHÉ Y ENFRIAMIENTO
# ================================================================

class MemoryCacheBackend:
    """Almacén local del proceso"""

    name = "memory"

    def __init__(self, max_size: int = 1000):
        self._entries: Dict[str, CacheEntry] = {}
        self.max_size = max_size

    async def read(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    async def write(self, entry: CacheEntry, ttl_seconds: int):
        if entry.key not in self._entries and len(self._entries) >= self.max_size:
            oldest = sorted(self._entries.values(), key=lambda e: e.stored_at)[:max(1, self.max_size // 5)]
            for stale in oldest:
                del self._entries[stale.key]

        self._entries[entry.key] = entry

    async def delete(self, key: str):
        self._entries.pop(key, None)

    async def entries(self) -> List[CacheEntry]:
        return list(self._entries.values())

    async def clear(self) -> int:
        removed = len(self._entries)
        self._entries.clear()
        return removed

class RedisCacheBackend:
    """Almacén compartido entre instancias; Redis expira las claves por sí mismo"""

    name = "redis"

    def __init__(self, client: Any, prefix: str):
        self.client = client
        self.prefix = prefix

    async def read(self, key: str) -> Optional[CacheEntry]:
        raw = await self.client.get(key)
        if raw is None:
            return None
        return CacheEntry.model_validate_json(raw)

    async def write(self, entry: CacheEntry, ttl_seconds: int):
        await self.client.set(entry.key, entry.model_dump_json(), ex=ttl_seconds)

    async def delete(self, key: str):
        await self.client.delete(key)

    async def _keys(self) -> List[str]:
        return [key async for key in self.client.scan_iter(match=f"{self.prefix}*")]

    async def entries(self) -> List[CacheEntry]:
        entries = []
        for key in await self._keys():
            raw = await self.client.get(key)
            if raw is None:
                continue
            try:
                entries.append(CacheEntry.model_validate_json(raw))
            except ValueError as e:
                logger.warning(f"Entrada de caché corrupta {key}: {e}")
        return entries

    async def clear(self) -> int:
        keys = await self._keys()
        if keys:
            await self.client.delete(*keys)
        return len(keys)

    async def close(self):
        await self.client.aclose()

class SearchCache:
    """Resultados por consulta con expiración perezosa"""

    KEY_PREFIX = "repuestos_cache_"

    def __init__(self, backend: Any, ttl_seconds: int, clock: Callable[[], float] = time.time,
                 enabled: bool = True):
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.enabled = enabled
        self._clock = clock

    @classmethod
    def make_key(cls, query: SearchQuery) -> str:
        piece, model = query.normalized()
        # Se serializa como lista JSON: ningún contenido de los campos puede mover el separador
        digest = hashlib.md5(json.dumps([piece, model], ensure_ascii=False).encode("utf-8")).hexdigest()
        return f"{cls.KEY_PREFIX}{digest}"

    def _is_expired(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.stored_at.timestamp() >= self.ttl_seconds

    async def get(self, query: SearchQuery) -> Optional[CacheEntry]:
        if not self.enabled:
            return None

        key = self.make_key(query)
        try:
            entry = await self.backend.read(key)
            if entry is None:
                return None
            if self._is_expired(entry):
                logger.info(f"Caché expirado para '{query.text}', eliminando")
                await self.backend.delete(key)
                return None
        except Exception as e:
            logger.warning(f"Error leyendo caché ({self.backend.name}): {e}")
            return None

        logger.info(f"Cache hit para: '{query.text}'")
        return entry

    async def put(self, query: SearchQuery, results: List[Repuesto],
                  stores: Optional[Dict[str, int]] = None) -> bool:
        if not self.enabled:
            return False
        if len(results) <= 1:
            logger.info(f"No se guarda '{query.text}' en caché: solo {len(results)} resultado(s)")
            return False

        entry = CacheEntry(
            key=self.make_key(query),
            query=query,
            results=list(results),
            stores=dict(stores or {}),
            stored_at=datetime.fromtimestamp(self._clock(), tz=timezone.utc),
        )
        try:
            await self.backend.write(entry, self.ttl_seconds)
        except Exception as e:
            logger.warning(f"Error guardando en caché ({self.backend.name}): {e}")
            return False

        logger.info(f"💾 Búsqueda guardada en caché: {entry.key} ({len(results)} resultados)")
        return True

    async def purge_all(self) -> int:
        removed = await self.backend.clear()
        logger.info(f"Caché limpiado: {removed} búsquedas eliminadas")
        return removed

    async def recent(self, limit: int = 10) -> List[CacheEntry]:
        entries = [entry for entry in await self.backend.entries() if not self._is_expired(entry)]
        entries.sort(key=lambda e: e.stored_at, reverse=True)
        return entries[:limit]

class CooldownRegistry:
    """Intervalo mínimo entre búsquedas en vivo, por cliente"""

    def __init__(self, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._last_live: Dict[str, float] = {}

    def remaining(self, client_id: str) -> float:
        started = self._last_live.get(client_id)
        if started is None:
            return 0.0
        return max(0.0, self.window_seconds - (self._clock() - started))

    def engage(self, client_id: str):
        now = self._clock()
        self._last_live = {
            cid: started for cid, started in self._last_live.items()
            if now - started < self.window_seconds
        }
        self._last_live[client_id] = now

    def release(self, client_id: str):
        self._last_live.pop(client_id, None)

def format_relative_age(stored_at: datetime, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    seconds = (now - stored_at).total_seconds()
    minutes = int(seconds // 60)
    hours = int(seconds // 3600)
    days = int(seconds // 86400)

    if minutes < 1:
        return "Hace un momento"
    if minutes < 60:
        return f"Hace {minutes} minuto{'s' if minutes != 1 else ''}"
    if hours < 24:
        return f"Hace {hours} hora{'s' if hours != 1 else ''}"
    if days < 7:
        return f"Hace {days} día{'s' if days != 1 else ''}"
    return stored_at.strftime("%d-%m-%Y")

# ================================================================
# SERVICIO DE BÚSQUEDA
# ================================================================

class SearchService:
    def __init__(self, aggregator: SearchAggregator, cache: SearchCache, cooldown: CooldownRegistry,
                 serve_fallback_on_saturation: bool = False):
        self.aggregator = aggregator
        self.cache = cache
        self.cooldown = cooldown
        self.serve_fallback_on_saturation = serve_fallback_on_saturation
        self.search_id_prefix = "search_"

    def generate_search_id(self) -> str:
        return f"{self.search_id_prefix}{uuid.uuid4().hex[:12]}"

    async def search(self, query: SearchQuery, client_id: str) -> SearchResponse:
        search_id = self.generate_search_id()

        cached = await self.cache.get(query)
        if cached is not None:
            return SearchResponse(
                search_id=search_id,
                count=len(cached.results),
                stores=cached.stores,
                results=cached.results,
                cached=True,
                message="Resultados desde caché",
            )

        remaining = self.cooldown.remaining(client_id)
        if remaining > 0:
            raise CooldownActiveError(math.ceil(remaining))

        self.cooldown.engage(client_id)
        start_time = time.time()
        try:
            result = await self.aggregator.aggregate(
                query, synthesize_on_saturation=self.serve_fallback_on_saturation
            )
        except Exception:
            self.cooldown.release(client_id)
            raise

        if result.saturated and not self.serve_fallback_on_saturation:
            saturated = [o.source.value for o in result.outcomes if o.status is OutcomeStatus.EXHAUSTED]
            raise UpstreamSaturatedError(math.ceil(self.cooldown.window_seconds), saturated)

        if result.all_fatal:
            self.cooldown.release(client_id)
            raise UpstreamFatalError([o.source.value for o in result.outcomes])

        if not result.fallback:
            await self.cache.put(query, result.results, stores=result.per_source_counts)

        message = None
        if result.fallback:
            message = "Resultados aproximados: no fue posible consultar las tiendas en este momento"

        search_time_ms = int((time.time() - start_time) * 1000)
        logger.info(f"Búsqueda completada: '{query.text}' -> {len(result.results)} resultados en {search_time_ms}ms")

        return SearchResponse(
            search_id=search_id,
            count=len(result.results),
            stores=result.per_source_counts,
            results=result.results,
            fallback=result.fallback,
            message=message,
        )

# ================================================================
# CONFIGURACIÓN DE LOGGING
# ================================================================

log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
logging.basicConfig(
    level=log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler()
    ]
)

logger = logging.getLogger(__name__)

# Reduce noise from httpx
logging.getLogger("httpx").setLevel(logging.WARNING)

# ================================================================
# SERVICIOS GLOBALES
# ================================================================

_http_client: Optional[httpx.AsyncClient] = None
_search_service: Optional[SearchService] = None

def build_http_client(config: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(config.HTTP_TIMEOUT, connect=10.0),
        limits=httpx.Limits(max_keepalive_connections=5, max_connections=20),
        follow_redirects=True
    )

def build_search_cache(config: Settings) -> SearchCache:
    if config.shared_cache_configured:
        try:
            redis_client = aioredis.Redis.from_url(config.REDIS_URL, decode_responses=True)
        except ValueError as e:
            raise ConfigurationError(f"REDIS_URL ({e})") from e
        backend = RedisCacheBackend(redis_client, prefix=SearchCache.KEY_PREFIX)
        ttl = config.SHARED_CACHE_TTL_SECONDS
    else:
        backend = MemoryCacheBackend(max_size=config.CACHE_MAX_SIZE)
        ttl = config.CACHE_TTL_SECONDS
    return SearchCache(backend, ttl_seconds=ttl, enabled=config.CACHE_ENABLED)

def build_search_service(config: Settings, client: httpx.AsyncClient) -> SearchService:
    sources: List[SourceAdapter] = [
        MercadoLibreAdapter(client, config),
        YapoAdapter(client, config),
        GenerativeSearchAdapter(client, config),
    ]
    fallback = SyntheticFallbackAdapter(count=config.SYNTHETIC_RESULTS) if config.SYNTHETIC_FALLBACK_ENABLED else None
    aggregator = SearchAggregator(sources, ResilientCaller(RetryPolicy.from_settings(config)), fallback=fallback)
    return SearchService(
        aggregator=aggregator,
        cache=build_search_cache(config),
        cooldown=CooldownRegistry(config.COOLDOWN_SECONDS),
        serve_fallback_on_saturation=config.SERVE_FALLBACK_ON_SATURATION,
    )

async def get_search_service() -> SearchService:
    global _http_client, _search_service
    if _search_service is None:
        _http_client = build_http_client(settings)
        _search_service = build_search_service(settings, _http_client)
    return _search_service

async def cleanup_services():
    global _http_client, _search_service
    if _search_service is not None and isinstance(_search_service.cache.backend, RedisCacheBackend):
        await _search_service.cache.backend.close()
    if _http_client is not None:
        await _http_client.aclose()
    _http_client = None
    _search_service = None

def resolve_client_id(request: Request) -> str:
    header = request.headers.get("X-Client-Id", "").strip()
    if header:
        return header
    return request.client.host if request.client else "anonymous"

# ================================================================
# APLICACIÓN FASTAPI
# ================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 Iniciando {settings.PROJECT_NAME} API...")

    if settings.MERCADOLIBRE_ENABLED:
        logger.info(f"✅ MercadoLibre habilitado (sitio {settings.MERCADOLIBRE_SITE})")
    if settings.gemini_configured:
        logger.info(f"✅ Búsqueda generativa habilitada ({settings.GENERATIVE_MODEL})")
    else:
        logger.warning("⚠️ GEMINI_API_KEY no configurado - búsqueda generativa deshabilitada")

    logger.info(f"🗄️ Caché: {'redis' if settings.shared_cache_configured else 'memoria'}")
    logger.info(f"⏱️ Enfriamiento entre búsquedas: {settings.COOLDOWN_SECONDS}s")
    logger.info(f"📊 Entorno: {settings.ENVIRONMENT}")

    await get_search_service()
    logger.info("🎯 API lista para recibir requests")

    yield

    logger.info(f"⏹️ Cerrando {settings.PROJECT_NAME} API...")
    await cleanup_services()
    logger.info("🔚 API cerrada correctamente")

app = FastAPI(
    title=settings.PROJECT_NAME,
    description=settings.DESCRIPTION,
    version=settings.VERSION,
    openapi_url="/api/openapi.json",
    lifespan=lifespan
)

class EmptyPreflightCORSMiddleware(CORSMiddleware):
    """CORS estándar; el preflight aceptado responde 200 sin cuerpo"""

    def preflight_response(self, request_headers) -> Response:
        response = super().preflight_response(request_headers)
        if response.status_code != 200:
            return response
        headers = {
            name: value for name, value in response.headers.items()
            if name not in ("content-length", "content-type")
        }
        return Response(status_code=200, headers=headers)

app.add_middleware(
    EmptyPreflightCORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# ================================================================
# ENDPOINTS
# ================================================================

@app.get("/")
async def root():
    return {
        "service": settings.PROJECT_NAME,
        "version": settings.VERSION,
        "search": "/api/search",
        "docs": "/docs",
    }

@app.post("/api/search", response_model=SearchResponse, response_model_exclude_none=True)
@app.post("/api/v1/search", response_model=SearchResponse, response_model_exclude_none=True)
async def search_parts(
    request: Request,
    payload: Optional[SearchRequest] = None,
    service: SearchService = Depends(get_search_service)
):
    """
    🔍 Búsqueda de repuestos por pieza y modelo

    Combina MercadoLibre, Yapo y la búsqueda generativa; agrega siempre
    un enlace a Google Shopping al final.
    """
    query = (payload or SearchRequest()).to_query()
    return await service.search(query, resolve_client_id(request))

@app.get("/api/search", response_model=SearchResponse, response_model_exclude_none=True)
@app.get("/api/v1/search", response_model=SearchResponse, response_model_exclude_none=True)
async def search_parts_get(
    request: Request,
    piece: Optional[str] = Query(None, max_length=200),
    pieza: Optional[str] = Query(None, max_length=200),
    model: Optional[str] = Query(None, max_length=200),
    modelo: Optional[str] = Query(None, max_length=200),
    category: Optional[str] = Query(None),
    categoria: Optional[str] = Query(None),
    service: SearchService = Depends(get_search_service)
):
    """🔍 Búsqueda por GET (navegador)"""
    query = SearchQuery.from_fields(piece or pieza, model or modelo, category or categoria)
    return await service.search(query, resolve_client_id(request))

@app.options("/api/search", include_in_schema=False)
@app.options("/api/v1/search", include_in_schema=False)
async def search_options():
    return Response(status_code=200)

@app.get("/api/v1/history")
async def get_history(
    limit: int = Query(settings.HISTORY_LIMIT, ge=1, le=100),
    service: SearchService = Depends(get_search_service)
):
    """📜 Últimas búsquedas guardadas en caché"""
    now = datetime.now(timezone.utc)
    entries = await service.cache.recent(limit)
    history = [
        HistoryItem(
            piece=entry.query.piece,
            model=entry.query.model,
            count=len(entry.results),
            stored_at=entry.stored_at,
            relative=format_relative_age(entry.stored_at, now),
        ).model_dump(mode="json", by_alias=True)
        for entry in entries
    ]
    return {"success": True, "count": len(history), "history": history}

@app.delete("/api/v1/history")
async def clear_history(service: SearchService = Depends(get_search_service)):
    """🗑️ Borra todo el historial de búsquedas"""
    removed = await service.cache.purge_all()
    return {"success": True, "deleted": removed}

@app.get("/api/v1/health")
async def health_check():
    """❤️ Verificación básica de salud del sistema"""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "service": settings.PROJECT_NAME,
        "version": settings.VERSION,
        "environment": settings.ENVIRONMENT
    }

@app.get("/api/v1/health/detailed")
async def detailed_health_check(service: SearchService = Depends(get_search_service)):
    """🔍 Verificación detallada de salud de componentes"""
    components = {}
    overall_status = "healthy"

    for source in service.aggregator.sources:
        components[source.name.value] = {
            "status": "healthy" if source.enabled else "disabled",
            "message": "Fuente habilitada" if source.enabled else "Fuente sin configuración",
        }
    if not any(source.enabled for source in service.aggregator.sources):
        overall_status = "degraded"

    components["cache"] = {
        "status": "healthy" if service.cache.enabled else "disabled",
        "backend": service.cache.backend.name,
        "ttl_seconds": service.cache.ttl_seconds,
    }

    try:
        memory = psutil.virtual_memory()
        cpu_percent = psutil.cpu_percent(interval=None)

        system_status = "healthy"
        if cpu_percent > 90 or memory.percent > 90:
            system_status = "degraded"
            overall_status = "degraded"

        components["system"] = {
            "status": system_status,
            "message": f"CPU: {cpu_percent:.1f}%, Memory: {memory.percent:.1f}%",
            "cpu_percent": cpu_percent,
            "memory_percent": memory.percent,
        }
    except Exception as e:
        components["system"] = {
            "status": "unknown",
            "message": f"System metrics error: {str(e)[:100]}"
        }

    return {
        "overall_status": overall_status,
        "timestamp": time.time(),
        "components": components,
        "service": settings.PROJECT_NAME,
        "version": settings.VERSION,
        "configuration": {
            "gemini_configured": settings.gemini_configured,
            "shared_cache": settings.shared_cache_configured,
            "cooldown_seconds": service.cooldown.window_seconds,
            "environment": settings.ENVIRONMENT
        }
    }

# MANEJO DE ERRORES
@app.exception_handler(RepuestosBaseException)
async def repuestos_exception_handler(request: Request, exc: RepuestosBaseException):
    status_code = to_http_exception_status(exc)
    logger.warning(f"Repuestos exception: {exc.error_code} - {exc.message}")

    headers = {}
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        headers["Retry-After"] = str(retry_after)

    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(part) for part in error.get("loc", ())) for error in exc.errors()]
    error = InvalidSearchQueryError("datos de la solicitud inválidos", fields)
    return JSONResponse(status_code=400, content=error.to_dict())

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Error no controlado en {request.method} {request.url}: {exc}")

    content = {
        "success": False,
        "error": "Ha ocurrido un error inesperado. Por favor, intente nuevamente."
    }
    if settings.is_development:
        content["detail"] = str(exc)
        content["type"] = type(exc).__name__

    return JSONResponse(status_code=500, content=content)

# ================================================================
# FUNCIÓN PRINCIPAL
# ================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn_config = {
        "app": "webapp:app",
        "host": settings.HOST,
        "port": settings.PORT,
        "log_level": settings.LOG_LEVEL.lower(),
        "access_log": True,
        "use_colors": False,
        "loop": "asyncio"
    }

    if settings.is_development:
        uvicorn_config["reload"] = True
        uvicorn_config["reload_dirs"] = ["."]

    logger.info(f"🚀 Starting {settings.PROJECT_NAME} v{settings.VERSION}")
    logger.info(f"🔗 Server will start on: http://{settings.HOST}:{settings.PORT}")

    if not settings.gemini_configured:
        logger.info("💡 Set GEMINI_API_KEY to enable the generative search source")

    uvicorn.run(**uvicorn_config)
