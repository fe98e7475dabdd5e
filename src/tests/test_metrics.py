import asyncio
import dataclasses
import threading

import pytest

from conftest import make_outcome
from loadramp.metrics.aggregator import MetricsAggregator
from loadramp.metrics.histogram import LatencyHistogram
from loadramp.models.outcome import CheckResult

pytestmark = pytest.mark.unit


class TestLatencyHistogram:
    def test_empty(self):
        h = LatencyHistogram()
        assert h.count == 0
        assert h.percentile(95) == 0
        assert h.mean == 0

    def test_single_outlier_in_hundred(self):
        h = LatencyHistogram(0.01)
        for _ in range(99):
            h.record(100)
        h.record(20000)
        assert h.percentile(95) == pytest.approx(100, rel=0.01)
        assert h.percentile(100) == 20000
        assert h.max == 20000
        assert h.min == 100

    def test_percentile_within_relative_precision(self):
        h = LatencyHistogram(0.01)
        values = [float(v) for v in range(1, 1001)]
        for v in values:
            h.record(v)
        assert h.percentile(50) == pytest.approx(500, rel=0.011)
        assert h.percentile(90) == pytest.approx(900, rel=0.011)
        assert h.percentile(99) == pytest.approx(990, rel=0.011)
        assert h.mean == pytest.approx(500.5)

    def test_zero_latency_goes_to_zero_bucket(self):
        h = LatencyHistogram()
        h.record(0)
        h.record(0)
        h.record(10)
        assert h.percentile(50) == 0
        assert h.percentile(99) == pytest.approx(10, rel=0.01)

    def test_bounded_buckets(self):
        h = LatencyHistogram(0.01)
        for i in range(50000):
            h.record(100 + (i % 50))
        # 100..149ms 只落在少量桶中
        assert len(h.buckets) < 50

    def test_invalid_precision(self):
        with pytest.raises(ValueError):
            LatencyHistogram(0)


class TestMetricsAggregator:
    def test_counts_and_rates(self, aggregator):
        aggregator.register_checks(["status is 200"])
        aggregator.record(make_outcome(), [CheckResult("status is 200", True)])
        aggregator.record(make_outcome(status_code=500, body=b""), [CheckResult("status is 200", False)])
        aggregator.record(
            make_outcome(status_code=None, body=b"", error="Timeout after 1s"),
            [CheckResult("status is 200", False)],
        )

        snap = aggregator.snapshot()
        assert snap.total_requests == 3
        assert snap.error_count == 1
        assert snap.failed_requests == 2
        assert snap.http_req_failed_rate == pytest.approx(2 / 3)
        assert snap.check_counts["status is 200"] == (1, 2)
        assert snap.check_pass_rate("status is 200") == pytest.approx(1 / 3)
        assert snap.status_codes == {200: 1, 500: 1}
        assert snap.data_received == len(b'{"success": true}')

    def test_registered_check_without_samples(self, aggregator):
        aggregator.register_checks(["never run"])
        snap = aggregator.snapshot()
        assert snap.check_counts == {"never run": (0, 0)}
        assert snap.check_pass_rate("never run") == 0.0
        assert snap.checks_rate == 0.0

    def test_checks_rate_combines_all_checks(self, aggregator):
        for i in range(10):
            aggregator.record(make_outcome(), [CheckResult("a", True), CheckResult("b", i < 5)])
        assert aggregator.snapshot().checks_rate == pytest.approx(15 / 20)

    def test_snapshot_is_immutable_and_detached(self, aggregator):
        aggregator.record(make_outcome(latency_ms=100), [CheckResult("a", True)])
        snap = aggregator.snapshot()

        with pytest.raises(dataclasses.FrozenInstanceError):
            snap.total_requests = 10

        aggregator.record(make_outcome(latency_ms=5000), [CheckResult("a", False)])
        assert snap.total_requests == 1
        assert snap.latency.count == 1
        assert snap.check_counts["a"] == (1, 0)
        assert aggregator.snapshot().total_requests == 2

    def test_snapshot_contents_cannot_change_aggregator(self, aggregator):
        aggregator.record(make_outcome(latency_ms=100), [CheckResult("a", True)])
        snap = aggregator.snapshot()

        with pytest.raises(TypeError):
            snap.check_counts["a"] = (0, 99)
        with pytest.raises(TypeError):
            snap.status_codes[500] = 1

        snap.latency.record(9000)
        fresh = aggregator.snapshot()
        assert fresh.latency.count == 1
        assert fresh.latency_max == pytest.approx(100)
        assert fresh.check_counts["a"] == (1, 0)

    def test_iteration_errors(self, aggregator):
        aggregator.record_iteration_error()
        snap = aggregator.snapshot()
        assert snap.iterations == 1
        assert snap.iteration_errors == 1
        assert snap.total_requests == 0

    def test_vus_gauge(self, aggregator):
        for active in (0, 1, 2, 1):
            aggregator.set_vus(active)
        snap = aggregator.snapshot()
        assert snap.vus == 1
        assert snap.vus_max == 2
        assert snap.vus_min == 0

    def test_elapsed_and_rate_use_clock(self):
        now = [100.0]
        aggregator = MetricsAggregator(clock=lambda: now[0])
        aggregator.start()
        for _ in range(20):
            aggregator.record(make_outcome())
        now[0] = 110.0
        aggregator.stop()
        now[0] = 500.0
        snap = aggregator.snapshot()
        assert snap.elapsed_s == 10.0
        assert snap.requests_per_second == pytest.approx(2.0)

    def test_concurrent_recording_from_threads(self, aggregator):
        per_thread = 2000
        threads = [
            threading.Thread(
                target=lambda: [
                    aggregator.record(make_outcome(latency_ms=i % 300 + 1), [CheckResult("a", i % 2 == 0)])
                    for i in range(per_thread)
                ]
            )
            for _ in range(8)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        snap = aggregator.snapshot()
        assert snap.total_requests == 8 * per_thread
        assert snap.latency.count == 8 * per_thread
        assert sum(snap.check_counts["a"]) == 8 * per_thread

    @pytest.mark.asyncio
    async def test_concurrent_recording_from_tasks(self, aggregator):
        async def producer(n):
            for i in range(n):
                aggregator.record(make_outcome(latency_ms=50), [CheckResult("a", True)])
                await asyncio.sleep(0)

        await asyncio.gather(*(producer(250) for _ in range(20)))
        snap = aggregator.snapshot()
        assert snap.total_requests == 5000
        assert snap.check_counts["a"] == (5000, 0)

    def test_to_dict(self, aggregator):
        aggregator.record(make_outcome(latency_ms=100), [CheckResult("a", True)])
        data = aggregator.snapshot().to_dict()
        assert data["total_requests"] == 1
        assert data["checks"]["a"]["rate"] == 1.0
        assert data["latency_ms"]["p95"] == pytest.approx(100)
