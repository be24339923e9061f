"""Unit tests for the concurrent probe coordinator."""

import asyncio

import pytest

from conftest import FakeProber
from models.proxy_model import Endpoint, FailureReason, Protocol
from validator.ports import PortAllocator
from validator.prober import Prober
from validator.validator import ProxyValidator


def _endpoints(count):
    return [Endpoint(Protocol.TROJAN, f"h{i}.example.com", 443, "pw") for i in range(count)]


class TestProxyValidator:

    @pytest.mark.asyncio
    async def test_results_follow_submission_order(self):
        endpoints = _endpoints(5)
        prober = FakeProber({ep.host: float(50 - i) for i, ep in enumerate(endpoints)})
        batch = await ProxyValidator(prober).run(endpoints, concurrency=5, timeout=1)
        assert [r.endpoint for r in batch] == endpoints
        assert [r.latency_ms for r in batch] == [50.0, 49.0, 48.0, 47.0, 46.0]

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        prober = FakeProber(delay=0.02)
        batch = await ProxyValidator(prober).run(_endpoints(30), concurrency=4, timeout=5)
        assert len(batch) == 30
        assert 1 <= prober.max_in_flight <= 4
        assert prober.in_flight == 0

    @pytest.mark.asyncio
    async def test_hanging_probe_times_out(self):
        endpoints = _endpoints(3)
        prober = FakeProber({"h1.example.com": "hang"})
        batch = await ProxyValidator(prober).run(endpoints, concurrency=3, timeout=0.1)
        assert batch.results[1].failure == FailureReason.TIMEOUT
        assert batch.results[0].ok and batch.results[2].ok
        assert prober.cancelled == ["h1.example.com"]
        assert prober.in_flight == 0

    @pytest.mark.asyncio
    async def test_failure_reasons_are_kept(self):
        endpoints = _endpoints(2)
        prober = FakeProber({"h0.example.com": FailureReason.CONNECT_ERROR})
        batch = await ProxyValidator(prober).run(endpoints, concurrency=1, timeout=1)
        assert batch.results[0].failure == FailureReason.CONNECT_ERROR
        counts = batch.failure_counts()
        assert counts[FailureReason.CONNECT_ERROR] == 1
        assert counts[FailureReason.TIMEOUT] == 0

    @pytest.mark.asyncio
    async def test_empty_input(self):
        prober = FakeProber()
        batch = await ProxyValidator(prober).run([], concurrency=2, timeout=1)
        assert len(batch) == 0
        assert prober.started == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("concurrency, timeout", [(0, 1), (-1, 1), (1, 0), (1, -0.5)])
    async def test_invalid_arguments(self, concurrency, timeout):
        with pytest.raises(ValueError):
            await ProxyValidator(FakeProber()).run(_endpoints(1), concurrency=concurrency, timeout=timeout)

    @pytest.mark.asyncio
    async def test_deadline_still_reports_every_endpoint(self):
        endpoints = _endpoints(6)
        prober = FakeProber({ep.host: "hang" for ep in endpoints[3:]})
        batch = await ProxyValidator(prober).run(endpoints, concurrency=6, timeout=60, deadline=0.2)
        assert len(batch) == 6
        assert all(r.ok for r in batch.results[:3])
        assert all(r.failure == FailureReason.TIMEOUT for r in batch.results[3:])
        assert prober.in_flight == 0

    @pytest.mark.asyncio
    async def test_cancelling_run_cancels_probes(self):
        prober = FakeProber({ep.host: "hang" for ep in _endpoints(4)})
        task = asyncio.create_task(ProxyValidator(prober).run(_endpoints(4), concurrency=2, timeout=60))
        while prober.in_flight < 2:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert prober.in_flight == 0
        assert sorted(prober.cancelled) == ["h0.example.com", "h1.example.com"]

    @pytest.mark.asyncio
    async def test_unwritable_work_dir_fails_each_endpoint_without_aborting(self, tmp_path):
        prober = Prober(xray_path=str(tmp_path / "unused"), ports=PortAllocator(20000, 50),
                        work_dir=str(tmp_path / "missing"))
        batch = await ProxyValidator(prober).run(_endpoints(3), concurrency=2, timeout=5)
        assert [r.endpoint.host for r in batch] == ["h0.example.com", "h1.example.com", "h2.example.com"]
        assert all(r.failure == FailureReason.PROCESS_SPAWN_ERROR for r in batch)
        assert prober.ports.in_use == 0
