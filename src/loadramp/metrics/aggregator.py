import threading
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple

from loadramp.config.settings import settings
from loadramp.metrics.histogram import LatencyHistogram
from loadramp.models.outcome import CheckResult, RequestOutcome


@dataclass(frozen=True)
class AggregateSnapshot:
    """
    某一时刻的只读指标视图

    映射字段为 MappingProxyType；latency 是聚合器直方图的独立副本，视为只读。
    """

    total_requests: int = 0
    failed_requests: int = 0  # 出错或非 2xx/3xx
    error_count: int = 0  # 网络错误 / 超时
    iterations: int = 0
    iteration_errors: int = 0  # 请求无法构造或发送前抛出异常
    data_received: int = 0
    elapsed_s: float = 0.0
    vus: int = 0
    vus_min: int = 0
    vus_max: int = 0
    # name -> (passes, fails)
    check_counts: Mapping[str, Tuple[int, int]] = field(default_factory=lambda: MappingProxyType({}))
    latency: LatencyHistogram = field(default_factory=LatencyHistogram)
    status_codes: Mapping[int, int] = field(default_factory=lambda: MappingProxyType({}))

    # ---------- 检查项 ----------
    def check_pass_rate(self, name: str) -> float:
        passes, fails = self.check_counts.get(name, (0, 0))
        total = passes + fails
        return passes / total if total else 0.0

    @property
    def check_passes(self) -> int:
        return sum(p for p, _ in self.check_counts.values())

    @property
    def check_fails(self) -> int:
        return sum(f for _, f in self.check_counts.values())

    @property
    def checks_rate(self) -> float:
        """所有检查项合并后的通过率（k6 的 checks 指标）"""
        total = self.check_passes + self.check_fails
        return self.check_passes / total if total else 0.0

    # ---------- 请求 ----------
    @property
    def http_req_failed_rate(self) -> float:
        return self.failed_requests / self.total_requests if self.total_requests else 0.0

    @property
    def requests_per_second(self) -> float:
        return self.total_requests / self.elapsed_s if self.elapsed_s > 0 else 0.0

    @property
    def iterations_per_second(self) -> float:
        return self.iterations / self.elapsed_s if self.elapsed_s > 0 else 0.0

    @property
    def data_received_per_second(self) -> float:
        return self.data_received / self.elapsed_s if self.elapsed_s > 0 else 0.0

    # ---------- 延迟 ----------
    def latency_percentile(self, p: float) -> float:
        return self.latency.percentile(p)

    @property
    def latency_avg(self) -> float:
        return self.latency.mean

    @property
    def latency_min(self) -> float:
        return self.latency.min or 0.0

    @property
    def latency_max(self) -> float:
        return self.latency.max or 0.0

    @property
    def latency_med(self) -> float:
        return self.latency.percentile(50)

    def to_dict(self) -> dict:
        return {
            "total_requests": self.total_requests,
            "failed_requests": self.failed_requests,
            "error_count": self.error_count,
            "iterations": self.iterations,
            "iteration_errors": self.iteration_errors,
            "data_received": self.data_received,
            "elapsed_s": round(self.elapsed_s, 3),
            "requests_per_second": round(self.requests_per_second, 2),
            "vus_max": self.vus_max,
            "checks_rate": self.checks_rate,
            "checks": {
                name: {"passes": p, "fails": f, "rate": self.check_pass_rate(name)}
                for name, (p, f) in self.check_counts.items()
            },
            "status_codes": dict(self.status_codes),
            "latency_ms": {
                "avg": self.latency_avg,
                "min": self.latency_min,
                "med": self.latency_med,
                "max": self.latency_max,
                "p90": self.latency_percentile(90),
                "p95": self.latency_percentile(95),
                "p99": self.latency_percentile(99),
            },
        }


class MetricsAggregator:
    """
    指标聚合器

    唯一持有可变聚合状态的对象。record() 可被任意数量的虚拟用户并发调用，
    所有更新在同一把锁内完成；snapshot() 在锁内复制状态后返回不可变快照。
    """

    def __init__(self, precision: Optional[float] = None, clock=time.monotonic):
        self._lock = threading.Lock()
        self._clock = clock
        self._started_at: Optional[float] = None
        self._stopped_at: Optional[float] = None

        self._total_requests = 0
        self._failed_requests = 0
        self._error_count = 0
        self._iterations = 0
        self._iteration_errors = 0
        self._data_received = 0
        self._check_counts: Dict[str, list] = {}
        self._status_codes: Dict[int, int] = {}
        self._latency = LatencyHistogram(precision or settings.HISTOGRAM_PRECISION)
        self._vus = 0
        self._vus_min: Optional[int] = None
        self._vus_max = 0

    def start(self):
        with self._lock:
            self._started_at = self._clock()
            self._stopped_at = None

    def stop(self):
        with self._lock:
            self._stopped_at = self._clock()

    def register_checks(self, names: Iterable[str]):
        """预先登记检查项，未执行过的检查项也出现在快照中"""
        with self._lock:
            for name in names:
                self._check_counts.setdefault(name, [0, 0])

    def record(self, outcome: RequestOutcome, check_results: Iterable[CheckResult] = ()):
        """记录一次请求结果及其检查项（一次完整迭代）"""
        check_results = list(check_results)
        with self._lock:
            self._total_requests += 1
            self._iterations += 1
            if outcome.failed:
                self._failed_requests += 1
            if outcome.error is not None:
                self._error_count += 1
            if outcome.status_code is not None:
                self._status_codes[outcome.status_code] = self._status_codes.get(outcome.status_code, 0) + 1
            self._data_received += outcome.body_bytes
            self._latency.record(outcome.latency_ms)

            for result in check_results:
                counts = self._check_counts.setdefault(result.name, [0, 0])
                if result.passed:
                    counts[0] += 1
                else:
                    counts[1] += 1

    def record_iteration_error(self):
        """请求构造失败：计入迭代但不产生请求"""
        with self._lock:
            self._iterations += 1
            self._iteration_errors += 1

    def set_vus(self, active: int):
        with self._lock:
            self._vus = active
            if self._vus_min is None or active < self._vus_min:
                self._vus_min = active
            if active > self._vus_max:
                self._vus_max = active

    def snapshot(self) -> AggregateSnapshot:
        with self._lock:
            if self._started_at is None:
                elapsed = 0.0
            else:
                end = self._stopped_at if self._stopped_at is not None else self._clock()
                elapsed = end - self._started_at

            return AggregateSnapshot(
                total_requests=self._total_requests,
                failed_requests=self._failed_requests,
                error_count=self._error_count,
                iterations=self._iterations,
                iteration_errors=self._iteration_errors,
                data_received=self._data_received,
                elapsed_s=elapsed,
                vus=self._vus,
                vus_min=self._vus_min or 0,
                vus_max=self._vus_max,
                check_counts=MappingProxyType({name: (c[0], c[1]) for name, c in self._check_counts.items()}),
                latency=self._latency.copy(),
                status_codes=MappingProxyType(dict(self._status_codes)),
            )
