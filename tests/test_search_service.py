"""Tests de punta a punta del servicio de búsqueda (caché, enfriamiento y agregación)."""

import asyncio

import pytest

from webapp import (
    GUARANTEED_ENTRY_ID,
    CooldownActiveError,
    MalformedResponseError,
    Repuesto,
    SearchQuery,
    SourceName,
    Tienda,
    UpstreamError,
    UpstreamFatalError,
    UpstreamSaturatedError,
    _ensure_unique_ids,
    build_guaranteed_entry,
)

from tests.helpers import ScriptedAdapter, generated_items, marketplace_items

CLIENT = "cliente-1"


def saturated_adapter(name):
    return ScriptedAdapter(name, failures=[UpstreamError(name.value, 429)] * 3)


class TestAggregation:
    @pytest.mark.asyncio
    async def test_marketplace_ten_generative_parse_failure(self, build_service, query):
        marketplace = ScriptedAdapter(SourceName.MERCADOLIBRE, payloads=marketplace_items(10))
        generative = ScriptedAdapter(SourceName.GEMINI, failures=[MalformedResponseError("gemini", "texto libre")])
        service = build_service([marketplace, generative])

        response = await service.search(query, CLIENT)

        assert response.success is True
        assert response.count == 11
        assert len(response.results) == 11
        assert response.stores == {"mercadolibre": 10, "gemini": 0}
        assert response.fallback is False
        assert all(r.id.startswith("ml-") for r in response.results[:10])
        assert response.results[-1].id == GUARANTEED_ENTRY_ID

    @pytest.mark.asyncio
    async def test_priority_order_not_completion_order(self, build_service, query):
        slow = ScriptedAdapter(SourceName.MERCADOLIBRE, payloads=marketplace_items(2), delay=0.05)
        fast = ScriptedAdapter(SourceName.GEMINI, payloads=generated_items(2))
        service = build_service([slow, fast])

        response = await service.search(query, CLIENT)

        assert [r.id for r in response.results] == ["ml-MLC1001", "ml-MLC1002", "ai-1", "ai-2", GUARANTEED_ENTRY_ID]

    @pytest.mark.asyncio
    async def test_one_failing_source_does_not_abort(self, build_service, query):
        broken = ScriptedAdapter(SourceName.MERCADOLIBRE, failures=[UpstreamError("mercadolibre", 401)])
        working = ScriptedAdapter(SourceName.YAPO, payloads=marketplace_items(3))
        service = build_service([broken, working])

        response = await service.search(query, CLIENT)

        assert response.stores == {"mercadolibre": 0, "yapo": 3}
        assert response.count == 4

    @pytest.mark.asyncio
    async def test_total_failure_uses_synthetic_fallback(self, build_service, query, clock):
        marketplace = ScriptedAdapter(SourceName.MERCADOLIBRE)
        generative = ScriptedAdapter(SourceName.GEMINI, enabled=False)
        service = build_service([marketplace, generative])

        response = await service.search(query, CLIENT)

        assert response.success is True
        assert response.fallback is True
        assert response.message
        assert response.count == 6
        assert response.stores["synthetic"] == 5
        assert response.results[-1].id == GUARANTEED_ENTRY_ID

        # los resultados aproximados no se guardan en caché
        clock.advance(31)
        await service.search(query, CLIENT)
        assert marketplace.calls == 2

    @pytest.mark.asyncio
    async def test_total_failure_without_synthetic_still_non_empty(self, build_service, query):
        service = build_service([ScriptedAdapter(SourceName.MERCADOLIBRE)], synthetic=False)

        response = await service.search(query, CLIENT)

        assert response.success is True
        assert response.fallback is True
        assert [r.id for r in response.results] == [GUARANTEED_ENTRY_ID]
        assert await service.cache.get(query) is None

    def test_duplicate_ids_are_suffixed(self, query):
        entry = build_guaranteed_entry(query)
        results = _ensure_unique_ids([entry, entry, entry])
        assert [r.id for r in results] == [GUARANTEED_ENTRY_ID, f"{GUARANTEED_ENTRY_ID}-2", f"{GUARANTEED_ENTRY_ID}-3"]


class TestCacheInteraction:
    @pytest.mark.asyncio
    async def test_second_search_hits_cache(self, build_service, query):
        marketplace = ScriptedAdapter(SourceName.MERCADOLIBRE, payloads=marketplace_items(4))
        service = build_service([marketplace])

        first = await service.search(query, CLIENT)
        second = await service.search(SearchQuery(piece=" Bomba de Agua", model="toyota corolla 2015"), CLIENT)

        assert first.cached is False
        assert second.cached is True
        assert marketplace.calls == 1
        assert [r.id for r in second.results] == [r.id for r in first.results]
        assert second.stores == {"mercadolibre": 4}

    @pytest.mark.asyncio
    async def test_cached_stores_match_live_stores(self, build_service, query):
        marketplace = ScriptedAdapter(SourceName.MERCADOLIBRE, payloads=marketplace_items(3))
        generative = ScriptedAdapter(SourceName.GEMINI, failures=[MalformedResponseError("gemini", "texto libre")])
        service = build_service([marketplace, generative])

        live = await service.search(query, CLIENT)
        hit = await service.search(query, CLIENT)

        assert hit.cached is True
        assert live.stores == {"mercadolibre": 3, "gemini": 0}
        assert hit.stores == live.stores

    @pytest.mark.asyncio
    async def test_cache_hit_does_not_consume_cooldown(self, build_service, query, clock):
        marketplace = ScriptedAdapter(SourceName.MERCADOLIBRE, payloads=marketplace_items(4))
        service = build_service([marketplace])

        await service.search(query, CLIENT)
        clock.advance(5)
        hit = await service.search(query, CLIENT)
        assert hit.cached is True

        with pytest.raises(CooldownActiveError) as exc_info:
            await service.search(SearchQuery(piece="filtro de aire", model="Kia Rio"), CLIENT)
        assert exc_info.value.retry_after == 25


class TestCooldown:
    @pytest.mark.asyncio
    async def test_live_search_inside_window_is_rejected(self, build_service, clock):
        service = build_service([ScriptedAdapter(SourceName.MERCADOLIBRE, payloads=marketplace_items(3))])

        await service.search(SearchQuery(piece="bomba de agua", model="Kia Rio"), CLIENT)
        clock.advance(10)

        with pytest.raises(CooldownActiveError) as exc_info:
            await service.search(SearchQuery(piece="filtro de aire", model="Kia Rio"), CLIENT)
        assert exc_info.value.retry_after == 20

        clock.advance(20)
        response = await service.search(SearchQuery(piece="filtro de aire", model="Kia Rio"), CLIENT)
        assert response.success is True

    @pytest.mark.asyncio
    async def test_other_clients_are_not_throttled(self, build_service):
        service = build_service([ScriptedAdapter(SourceName.MERCADOLIBRE, payloads=marketplace_items(3))])

        await service.search(SearchQuery(piece="bomba de agua", model="Kia Rio"), "cliente-a")
        response = await service.search(SearchQuery(piece="filtro", model="Kia Rio"), "cliente-b")

        assert response.success is True

    @pytest.mark.asyncio
    async def test_saturation_keeps_cooldown_engaged(self, build_service, query, clock):
        service = build_service([saturated_adapter(SourceName.MERCADOLIBRE), saturated_adapter(SourceName.GEMINI)])

        with pytest.raises(UpstreamSaturatedError) as exc_info:
            await service.search(query, CLIENT)
        assert exc_info.value.retry_after == 30

        clock.advance(1)
        with pytest.raises(CooldownActiveError) as exc_info:
            await service.search(query, CLIENT)
        assert exc_info.value.retry_after == 29

    @pytest.mark.asyncio
    async def test_non_saturation_failure_releases_cooldown(self, build_service, query):
        marketplace = ScriptedAdapter(
            SourceName.MERCADOLIBRE,
            payloads=marketplace_items(3),
            failures=[UpstreamError("mercadolibre", 401)],
        )
        service = build_service([marketplace])

        with pytest.raises(UpstreamFatalError):
            await service.search(query, CLIENT)

        response = await service.search(query, CLIENT)
        assert response.count == 4

    @pytest.mark.asyncio
    async def test_unexpected_error_releases_cooldown(self, build_service, query):
        service = build_service([ScriptedAdapter(SourceName.MERCADOLIBRE, payloads=marketplace_items(2))])
        original = service.aggregator.aggregate
        calls = []

        async def flaky(q, **kwargs):
            calls.append(q)
            if len(calls) == 1:
                raise RuntimeError("fallo inesperado")
            return await original(q, **kwargs)

        service.aggregator.aggregate = flaky

        with pytest.raises(RuntimeError):
            await service.search(query, CLIENT)
        assert (await service.search(query, CLIENT)).count == 3

    @pytest.mark.asyncio
    async def test_exhausted_and_fatal_mix_counts_as_saturation(self, build_service, query, clock):
        broken = ScriptedAdapter(SourceName.GEMINI, failures=[UpstreamError("gemini", 401)])
        service = build_service([saturated_adapter(SourceName.MERCADOLIBRE), broken])

        with pytest.raises(UpstreamSaturatedError) as exc_info:
            await service.search(query, CLIENT)
        assert exc_info.value.details["sources"] == ["mercadolibre"]

        clock.advance(1)
        with pytest.raises(CooldownActiveError):
            await service.search(query, CLIENT)

    @pytest.mark.asyncio
    async def test_rejected_saturation_skips_synthetic_results(self, build_service, query):
        service = build_service([saturated_adapter(SourceName.MERCADOLIBRE)])

        result = await service.aggregator.aggregate(query, synthesize_on_saturation=False)

        assert result.saturated is True
        assert "synthetic" not in result.per_source_counts
        assert [r.id for r in result.results] == [GUARANTEED_ENTRY_ID]

    @pytest.mark.asyncio
    async def test_total_fatal_failure_skips_synthetic_results(self, build_service, query):
        broken = ScriptedAdapter(SourceName.MERCADOLIBRE, failures=[UpstreamError("mercadolibre", 401)])
        service = build_service([broken])

        result = await service.aggregator.aggregate(query)

        assert result.all_fatal is True
        assert "synthetic" not in result.per_source_counts

    @pytest.mark.asyncio
    async def test_saturation_can_be_served_as_fallback(self, build_service, query, clock):
        service = build_service([saturated_adapter(SourceName.MERCADOLIBRE)], serve_fallback_on_saturation=True)

        response = await service.search(query, CLIENT)

        assert response.success is True
        assert response.fallback is True
        assert all(r.store in set(Tienda) for r in response.results)

        clock.advance(1)
        with pytest.raises(CooldownActiveError):
            await service.search(SearchQuery(piece="filtro", model="Kia Rio"), CLIENT)


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_identical_concurrent_searches_are_not_collapsed(self, build_service, query):
        marketplace = ScriptedAdapter(SourceName.MERCADOLIBRE, payloads=marketplace_items(3), delay=0.01)
        service = build_service([marketplace])

        first, second = await asyncio.gather(
            service.search(query, "cliente-a"),
            service.search(query, "cliente-b"),
        )

        assert marketplace.calls == 2
        assert first.cached is False and second.cached is False
        assert first.count == second.count == 4

    @pytest.mark.asyncio
    async def test_results_are_canonical_records(self, build_service, query):
        service = build_service([ScriptedAdapter(SourceName.GEMINI, payloads=generated_items(3))])

        response = await service.search(query, CLIENT)

        ids = [r.id for r in response.results]
        assert len(ids) == len(set(ids))
        assert all(isinstance(r, Repuesto) and r.price >= 0 for r in response.results)
