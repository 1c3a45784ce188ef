"""
MindNote Backend — AIDispatcher Unit Tests
===========================================

What we test:
    ✅ Primary/fallback ordering by priority, configured primary override
    ✅ Registering a provider mid-request leaves that request's chain alone
    ✅ Fallback when the primary is unavailable, fails, times out, or is circuit-open
    ✅ A recovering (half-open) provider sees one trial request at a time
    ✅ AllProvidersUnavailableError only after every provider was tried
    ✅ Batch results stay in input order with a failing item in the middle
    ✅ Admission control rejects before any provider call
    ✅ Parallel windows respect max_concurrency and pause between windows
    ✅ ai_results memoization, stats counters, embed() fallback
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from app.cache.store import CacheStore
from app.exceptions import (
    AdmissionRejectedError,
    AllProvidersUnavailableError,
    ProviderError,
    ValidationError,
)
from app.schemas.ai import AIRequest, BatchStrategy, ProviderDescriptor
from conftest import FakeProvider


def req(content: str = "summarize this") -> AIRequest:
    return AIRequest(content=content)


@pytest.fixture
def three_providers():
    return (
        FakeProvider("alpha"),
        FakeProvider("beta"),
        FakeProvider("gamma"),
    )


@pytest.fixture
def chain(make_dispatcher, three_providers):
    alpha, beta, gamma = three_providers
    return make_dispatcher([
        ({"id": "alpha", "priority": 1}, alpha),
        ({"id": "beta", "priority": 2}, beta),
        ({"id": "gamma", "priority": 3}, gamma),
    ])


# ══════════════════════════════════════════════════════════════════════════
# Provider ordering
# ══════════════════════════════════════════════════════════════════════════

class TestProviderChain:
    def test_orders_by_priority(self, make_dispatcher):
        dispatcher = make_dispatcher([
            ({"id": "late", "priority": 9}, FakeProvider("late")),
            ({"id": "early", "priority": 1}, FakeProvider("early")),
        ])
        assert [e.descriptor.id for e in dispatcher.provider_chain()] == ["early", "late"]

    def test_configured_primary_goes_first(self, make_dispatcher):
        dispatcher = make_dispatcher(
            [
                ({"id": "a", "priority": 1}, FakeProvider("a")),
                ({"id": "b", "priority": 2}, FakeProvider("b")),
            ],
            primary_provider="b",
        )
        assert [e.descriptor.id for e in dispatcher.provider_chain()] == ["b", "a"]

    def test_disabled_and_non_fallback_providers_excluded(self, make_dispatcher):
        dispatcher = make_dispatcher([
            ({"id": "a", "priority": 1}, FakeProvider("a")),
            ({"id": "off", "priority": 2, "enabled": False}, FakeProvider("off")),
            ({"id": "solo", "priority": 3, "fallback_enabled": False}, FakeProvider("solo")),
        ])
        assert [e.descriptor.id for e in dispatcher.provider_chain()] == ["a"]

    def test_re_registering_replaces(self, make_dispatcher):
        dispatcher = make_dispatcher([({"id": "a", "priority": 1}, FakeProvider("a"))])
        dispatcher.register_provider(ProviderDescriptor(id="a", priority=5), FakeProvider("a2"))
        statuses = dispatcher.provider_statuses()
        assert len(statuses) == 1
        assert statuses[0].priority == 5

    @pytest.mark.asyncio
    async def test_registration_during_request_keeps_its_chain(self, make_dispatcher):
        """A request in flight keeps the chain it started with; the next one sees the change."""
        entered = asyncio.Event()
        release = asyncio.Event()

        class Stalls(FakeProvider):
            async def generate(self, request):
                entered.set()
                await release.wait()
                raise ProviderError(provider=self.name, message="gave up", retryable=False)

        backup = FakeProvider("backup")
        dispatcher = make_dispatcher([
            ({"id": "slow", "priority": 1}, Stalls("slow")),
            ({"id": "backup", "priority": 2}, backup),
        ])

        task = asyncio.create_task(dispatcher.execute_request(req("in flight")))
        await entered.wait()
        newcomer = FakeProvider("newcomer")
        replacement = FakeProvider("replacement")
        dispatcher.register_provider(ProviderDescriptor(id="newcomer", priority=0), newcomer)
        dispatcher.register_provider(ProviderDescriptor(id="backup", priority=2), replacement)
        release.set()
        response = await task

        assert response.provider == "backup"
        assert response.content == "backup: in flight"
        assert newcomer.probe_calls == 0
        assert newcomer.generate_calls == []
        assert replacement.generate_calls == []

        after = await dispatcher.execute_request(req("next"))
        assert after.provider == "newcomer"


# ══════════════════════════════════════════════════════════════════════════
# Single requests
# ══════════════════════════════════════════════════════════════════════════

class TestExecuteRequest:
    @pytest.mark.asyncio
    async def test_primary_serves_request(self, chain, three_providers):
        alpha, beta, _ = three_providers
        response = await chain.execute_request(req())
        assert response.provider == "alpha"
        assert len(beta.generate_calls) == 0

    @pytest.mark.asyncio
    async def test_falls_back_past_unavailable_primary(self, chain, three_providers):
        """Primary probes unavailable, second succeeds: response names the second."""
        alpha, beta, gamma = three_providers
        alpha.available = False

        response = await chain.execute_request(req())

        assert response.provider == "beta"
        assert alpha.generate_calls == []
        assert len(gamma.generate_calls) == 0

    @pytest.mark.asyncio
    async def test_falls_back_past_failing_provider(self, chain, three_providers):
        alpha, beta, _ = three_providers
        alpha.error = ProviderError(provider="alpha", message="500 from upstream")

        response = await chain.execute_request(req())

        assert response.provider == "beta"
        assert len(alpha.generate_calls) == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_also_falls_back(self, chain, three_providers):
        alpha, _, _ = three_providers
        alpha.error = RuntimeError("socket closed")
        response = await chain.execute_request(req())
        assert response.provider == "beta"

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, make_dispatcher):
        slow = FakeProvider("slow", delay=0.5)
        fast = FakeProvider("fast")
        dispatcher = make_dispatcher(
            [({"id": "slow", "priority": 1}, slow), ({"id": "fast", "priority": 2}, fast)],
            provider_timeout=0.05,
        )
        response = await dispatcher.execute_request(req())
        assert response.provider == "fast"

    @pytest.mark.asyncio
    async def test_response_names_registry_id(self, make_dispatcher):
        """An adapter that reports a different name is overridden by its registry id."""
        dispatcher = make_dispatcher([({"id": "primary-gemini", "priority": 1}, FakeProvider("gemini"))])
        response = await dispatcher.execute_request(req())
        assert response.provider == "primary-gemini"

    @pytest.mark.asyncio
    async def test_all_unavailable_raises_after_trying_everything(self, chain, three_providers):
        alpha, beta, gamma = three_providers
        alpha.available = False
        beta.error = ProviderError(provider="beta", message="quota exceeded")
        gamma.available = False

        with pytest.raises(AllProvidersUnavailableError) as exc_info:
            await chain.execute_request(req())

        assert list(exc_info.value.attempts) == ["alpha", "beta", "gamma"]
        assert exc_info.value.attempts["alpha"] == "unavailable"
        assert "quota exceeded" in exc_info.value.attempts["beta"]
        assert all(p.probe_calls == 1 for p in three_providers)

    @pytest.mark.asyncio
    async def test_no_enabled_providers(self, make_dispatcher):
        dispatcher = make_dispatcher([({"id": "off", "enabled": False}, FakeProvider("off"))])
        with pytest.raises(AllProvidersUnavailableError):
            await dispatcher.execute_request(req())

    @pytest.mark.asyncio
    async def test_probe_exception_treated_as_unavailable(self, chain, three_providers):
        alpha, _, _ = three_providers
        with patch.object(alpha, "probe", AsyncMock(side_effect=RuntimeError("dns failure"))):
            response = await chain.execute_request(req())
        assert response.provider == "beta"

    @pytest.mark.asyncio
    async def test_open_circuit_skips_without_probing(self, make_dispatcher):
        flaky = FakeProvider("flaky", error=ProviderError(provider="flaky", message="down"))
        backup = FakeProvider("backup")
        dispatcher = make_dispatcher(
            [({"id": "flaky", "priority": 1}, flaky), ({"id": "backup", "priority": 2}, backup)],
            cb_failure_threshold=2,
        )
        await dispatcher.execute_request(req("one"))
        await dispatcher.execute_request(req("two"))
        probes_before = flaky.probe_calls

        response = await dispatcher.execute_request(req("three"))

        assert response.provider == "backup"
        assert flaky.probe_calls == probes_before
        status = {s.id: s for s in dispatcher.provider_statuses()}
        assert status["flaky"].circuit_state == "open"

    @pytest.mark.asyncio
    async def test_recovering_provider_gets_a_single_trial(self, make_dispatcher, fake_clock):
        """Once the recovery timeout passes, only one concurrent request tries the provider."""
        flaky = FakeProvider("flaky", error=ProviderError(provider="flaky", message="down"))
        backup = FakeProvider("backup")
        dispatcher = make_dispatcher(
            [({"id": "flaky", "priority": 1}, flaky), ({"id": "backup", "priority": 2}, backup)],
            cb_failure_threshold=1,
            cb_recovery_timeout=30,
            clock=fake_clock,
        )
        await dispatcher.execute_request(req("trip"))
        fake_clock.advance(30)
        flaky.error = None
        flaky.delay = 0.05
        flaky.generate_calls.clear()

        results = await dispatcher.execute_batch(
            [req(f"item-{i}") for i in range(3)], BatchStrategy.PARALLEL, max_concurrency=3
        )

        assert all(r.success for r in results)
        assert len(flaky.generate_calls) == 1
        assert sorted(r.response.provider for r in results) == ["backup", "backup", "flaky"]
        status = {s.id: s for s in dispatcher.provider_statuses()}
        assert status["flaky"].circuit_state == "closed"

    @pytest.mark.asyncio
    async def test_unavailable_trial_releases_half_open_slot(self, make_dispatcher, fake_clock):
        flaky = FakeProvider("flaky", error=ProviderError(provider="flaky", message="down"))
        backup = FakeProvider("backup")
        dispatcher = make_dispatcher(
            [({"id": "flaky", "priority": 1}, flaky), ({"id": "backup", "priority": 2}, backup)],
            cb_failure_threshold=1,
            cb_recovery_timeout=30,
            clock=fake_clock,
        )
        await dispatcher.execute_request(req("trip"))
        fake_clock.advance(30)
        flaky.error = None
        flaky.available = False

        assert (await dispatcher.execute_request(req("one"))).provider == "backup"

        flaky.available = True
        assert (await dispatcher.execute_request(req("two"))).provider == "flaky"


class TestResponseCache:
    @pytest.mark.asyncio
    async def test_identical_request_served_from_cache(self, make_dispatcher, fake_clock):
        provider = FakeProvider("p")
        cache = CacheStore(max_size=10, default_ttl=60, clock=fake_clock)
        dispatcher = make_dispatcher([({"id": "p"}, provider)], response_cache=cache)

        first = await dispatcher.execute_request(req("same"))
        second = await dispatcher.execute_request(req("same"))

        assert first.cached is False
        assert second.cached is True
        assert second.content == first.content
        assert len(provider.generate_calls) == 1
        assert dispatcher.get_stats().cache_hits == 1

    @pytest.mark.asyncio
    async def test_different_parameters_miss(self, make_dispatcher, fake_clock):
        provider = FakeProvider("p")
        cache = CacheStore(max_size=10, default_ttl=60, clock=fake_clock)
        dispatcher = make_dispatcher([({"id": "p"}, provider)], response_cache=cache)

        await dispatcher.execute_request(AIRequest(content="same", temperature=0.1))
        await dispatcher.execute_request(AIRequest(content="same", temperature=0.9))

        assert len(provider.generate_calls) == 2


class TestStats:
    @pytest.mark.asyncio
    async def test_counters(self, chain, three_providers):
        alpha, beta, gamma = three_providers
        await chain.execute_request(req("a"))
        alpha.available = False
        await chain.execute_request(req("b"))
        beta.available = False
        gamma.available = False
        with pytest.raises(AllProvidersUnavailableError):
            await chain.execute_request(req("c"))

        stats = chain.get_stats()
        assert stats.total_requests == 3
        assert stats.successful_requests == 2
        assert stats.failed_requests == 1
        assert stats.total_tokens == 6
        assert stats.requests_by_provider == {"alpha": 1, "beta": 1}


# ══════════════════════════════════════════════════════════════════════════
# Batches
# ══════════════════════════════════════════════════════════════════════════

class TestExecuteBatch:
    @pytest.mark.asyncio
    async def test_results_in_input_order_with_failing_item(self, make_dispatcher):
        """Ten requests, item 3 fails everywhere; the other nine succeed in their own slots."""
        provider = FakeProvider("only", fail_when=lambda r: r.content == "item-3")
        dispatcher = make_dispatcher([({"id": "only"}, provider)])
        requests = [req(f"item-{i}") for i in range(1, 11)]

        results = await dispatcher.execute_batch(requests, BatchStrategy.PARALLEL, max_concurrency=3)

        assert len(results) == 10
        assert [r.index for r in results] == list(range(10))
        assert [r.success for r in results] == [i != 2 for i in range(10)]
        assert results[2].error_type == "AllProvidersUnavailableError"
        assert results[2].response is None
        assert [r.response.content for r in results if r.success] == [
            f"only: item-{i}" for i in range(1, 11) if i != 3
        ]

    @pytest.mark.asyncio
    async def test_order_independent_of_completion_order(self, make_dispatcher):
        class SlowFirst(FakeProvider):
            async def generate(self, request):
                if request.content == "first":
                    await asyncio.sleep(0.05)
                return await super().generate(request)

        dispatcher = make_dispatcher([({"id": "p"}, SlowFirst("p"))])
        results = await dispatcher.execute_batch([req("first"), req("second")], max_concurrency=2)
        assert [r.response.content for r in results] == ["p: first", "p: second"]

    @pytest.mark.asyncio
    async def test_admission_rejects_oversized_batch(self, make_dispatcher):
        """51 requests against the default limit of 50: rejected, nothing executed."""
        provider = FakeProvider("p")
        dispatcher = make_dispatcher([({"id": "p"}, provider)])

        with pytest.raises(AdmissionRejectedError) as exc_info:
            await dispatcher.execute_batch([req(f"r{i}") for i in range(51)])

        assert exc_info.value.limit == 50
        assert exc_info.value.requested == 51
        assert provider.generate_calls == []
        assert provider.probe_calls == 0

    @pytest.mark.asyncio
    async def test_batch_at_limit_is_admitted(self, make_dispatcher):
        dispatcher = make_dispatcher([({"id": "p"}, FakeProvider("p"))], max_batch_size=3)
        results = await dispatcher.execute_batch([req("a"), req("b"), req("c")])
        assert all(r.success for r in results)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("concurrency", [0, 6])
    async def test_admission_rejects_concurrency_out_of_range(self, make_dispatcher, concurrency):
        dispatcher = make_dispatcher([({"id": "p"}, FakeProvider("p"))], max_concurrency=5)
        with pytest.raises(AdmissionRejectedError):
            await dispatcher.execute_batch([req()], max_concurrency=concurrency)

    @pytest.mark.asyncio
    async def test_empty_batch(self, make_dispatcher):
        dispatcher = make_dispatcher([({"id": "p"}, FakeProvider("p"))])
        assert await dispatcher.execute_batch([]) == []

    @pytest.mark.asyncio
    async def test_parallel_respects_concurrency_cap(self, make_dispatcher):
        provider = FakeProvider("p", delay=0.01)
        dispatcher = make_dispatcher([({"id": "p"}, provider)])
        await dispatcher.execute_batch([req(f"r{i}") for i in range(7)], max_concurrency=3)
        assert provider.max_active == 3
        assert len(provider.generate_calls) == 7

    @pytest.mark.asyncio
    async def test_sequential_runs_one_at_a_time(self, make_dispatcher):
        provider = FakeProvider("p", delay=0.01)
        dispatcher = make_dispatcher([({"id": "p"}, provider)])
        results = await dispatcher.execute_batch(
            [req(f"r{i}") for i in range(4)], BatchStrategy.SEQUENTIAL
        )
        assert provider.max_active == 1
        assert [r.response.content for r in results] == [f"p: r{i}" for i in range(4)]

    @pytest.mark.asyncio
    async def test_pause_between_windows_only(self, make_dispatcher):
        """7 requests in windows of 3 → 3 windows → exactly 2 pauses."""
        dispatcher = make_dispatcher([({"id": "p"}, FakeProvider("p"))], inter_batch_delay=0.25)
        with patch("app.services.dispatcher.asyncio.sleep", new=AsyncMock()) as sleep:
            await dispatcher.execute_batch([req(f"r{i}") for i in range(7)], max_concurrency=3)
        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.25)

    @pytest.mark.asyncio
    async def test_sequential_does_not_pause(self, make_dispatcher):
        dispatcher = make_dispatcher([({"id": "p"}, FakeProvider("p"))], inter_batch_delay=0.25)
        with patch("app.services.dispatcher.asyncio.sleep", new=AsyncMock()) as sleep:
            await dispatcher.execute_batch([req("a"), req("b")], BatchStrategy.SEQUENTIAL)
        sleep.assert_not_awaited()


# ══════════════════════════════════════════════════════════════════════════
# Embeddings
# ══════════════════════════════════════════════════════════════════════════

class TestEmbed:
    @pytest.mark.asyncio
    async def test_embed_uses_chain(self, chain, three_providers):
        alpha, beta, _ = three_providers
        alpha.error = ProviderError(provider="alpha", message="down")

        result = await chain.embed(["hello", "world"])

        assert result.provider == "beta"
        assert result.model == "beta-embed"
        assert len(result.vectors) == 2
        assert result.dimensions == 3

    @pytest.mark.asyncio
    async def test_vector_count_mismatch_is_provider_failure(self, chain, three_providers):
        alpha, _, _ = three_providers
        with patch.object(alpha, "embed", AsyncMock(return_value=[[1.0, 2.0]])):
            result = await chain.embed(["a", "b"])
        assert result.provider == "beta"

    @pytest.mark.asyncio
    async def test_empty_input_rejected(self, chain):
        with pytest.raises(ValidationError):
            await chain.embed([])


class TestCheckProviders:
    @pytest.mark.asyncio
    async def test_report(self, make_dispatcher):
        dispatcher = make_dispatcher([
            ({"id": "up", "priority": 1}, FakeProvider("up")),
            ({"id": "down", "priority": 2}, FakeProvider("down", available=False)),
            ({"id": "off", "priority": 3, "enabled": False}, FakeProvider("off")),
        ])
        assert await dispatcher.check_providers() == {
            "up": "available",
            "down": "unavailable",
            "off": "disabled",
        }
