import math
from typing import Dict, Optional

_ZERO_BUCKET = None


class LatencyHistogram:
    """
    对数分桶的延迟直方图

    每个桶覆盖 [base^i, base^(i+1))，base = 1 + precision，
    因此任意分位数的相对误差不超过 precision。
    内存与桶数成正比，与样本数无关；min/max/sum 精确记录。
    非线程安全，由 MetricsAggregator 加锁保护。
    """

    def __init__(self, precision: float = 0.01):
        if precision <= 0 or precision >= 1:
            raise ValueError(f"precision must be in (0, 1), got {precision}")
        self.precision = precision
        self._log_base = math.log1p(precision)
        self.buckets: Dict[Optional[int], int] = {}
        self.count = 0
        self.total = 0.0
        self.min: Optional[float] = None
        self.max: Optional[float] = None

    def _bucket_of(self, value: float) -> Optional[int]:
        if value <= 0:
            return _ZERO_BUCKET
        return int(math.floor(math.log(value) / self._log_base))

    def _bucket_value(self, index: Optional[int]) -> float:
        if index is _ZERO_BUCKET:
            return 0.0
        lower = math.exp(index * self._log_base)
        upper = math.exp((index + 1) * self._log_base)
        return (lower + upper) / 2

    def record(self, value: float):
        value = max(0.0, float(value))
        index = self._bucket_of(value)
        self.buckets[index] = self.buckets.get(index, 0) + 1
        self.count += 1
        self.total += value
        if self.min is None or value < self.min:
            self.min = value
        if self.max is None or value > self.max:
            self.max = value

    def copy(self) -> "LatencyHistogram":
        other = LatencyHistogram(self.precision)
        other.buckets = dict(self.buckets)
        other.count = self.count
        other.total = self.total
        other.min = self.min
        other.max = self.max
        return other

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0

    def percentile(self, p: float) -> float:
        """第 p 百分位（0-100）；无样本时为 0"""
        if self.count == 0:
            return 0.0
        if p <= 0:
            return self.min
        if p >= 100:
            return self.max

        rank = max(1, int(math.ceil(p / 100.0 * self.count)))
        seen = 0
        # 零桶排在最前
        ordered = sorted(self.buckets, key=lambda i: float("-inf") if i is _ZERO_BUCKET else i)
        for index in ordered:
            seen += self.buckets[index]
            if seen >= rank:
                value = self._bucket_value(index)
                return min(max(value, self.min), self.max)
        return self.max
