"""Dobles de prueba compartidos por los tests."""

import asyncio
import fnmatch
from typing import Any, Dict, List, Optional

from webapp import Categoria, SearchQuery, SourceAdapter, SourceName


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class SleepRecorder:
    """Reemplaza asyncio.sleep sin esperar de verdad."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)


class ScriptedAdapter(SourceAdapter):
    """Fuente que falla con los errores indicados y luego entrega ``payloads``."""

    def __init__(self, name: SourceName, payloads=(), failures=(), enabled: bool = True,
                 delay: float = 0.0):
        super().__init__()
        self.name = name
        self.payloads = list(payloads)
        self.failures = list(failures)
        self._enabled = enabled
        self.delay = delay
        self.calls = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def fetch(self, piece: str, model: str, category: Optional[Categoria] = None):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        return self._normalize_all(self.payloads, SearchQuery(piece=piece, model=model, category=category))


class FakeRedis:
    """Subconjunto asíncrono de redis.asyncio.Redis usado por RedisCacheBackend."""

    def __init__(self):
        self.store: Dict[str, str] = {}
        self.expirations: Dict[str, Any] = {}

    async def get(self, key: str):
        return self.store.get(key)

    async def set(self, key: str, value: str, ex=None):
        self.store[key] = value
        self.expirations[key] = ex

    async def delete(self, *keys: str):
        for key in keys:
            self.store.pop(key, None)

    async def scan_iter(self, match: str = "*"):
        for key in list(self.store):
            if fnmatch.fnmatch(key, match):
                yield key

    async def aclose(self):
        pass


def marketplace_items(count: int, start: int = 1) -> List[Dict[str, Any]]:
    return [
        {
            "id": f"MLC{1000 + i}",
            "title": f"Bomba de agua Toyota Corolla {i}",
            "price": 30000 + i * 1000,
            "thumbnail": f"http://http2.mlstatic.com/D_{i}-I.jpg",
            "permalink": f"https://articulo.mercadolibre.cl/MLC-{1000 + i}",
            "seller": {"nickname": "REPUESTOS_SUR"},
            "attributes": [{"id": "BRAND", "value_name": "Aisin"}],
        }
        for i in range(start, start + count)
    ]


def generated_items(count: int) -> List[Dict[str, Any]]:
    return [
        {
            "nombre": f"Bomba de agua genérica {i}",
            "precio": f"${40 + i}.990",
            "tienda": "Autoplanet",
            "url": f"https://www.autoplanet.cl/producto/{i}",
        }
        for i in range(1, count + 1)
    ]
