from dataclasses import dataclass, field
from typing import TYPE_CHECKING, FrozenSet, List

if TYPE_CHECKING:
    from loadramp.metrics.aggregator import AggregateSnapshot


@dataclass(frozen=True)
class ThresholdSpec:
    """
    单个阈值条件

    例如 http_req_duration 上的 "p(95)<15000"：
        metric="http_req_duration", aggregation="p(95)", comparator="<", limit=15000
    """

    metric: str
    aggregation: str
    comparator: str
    limit: float
    source: str = ""
    abort_on_fail: bool = False

    def __str__(self) -> str:
        return f"{self.metric}: {self.source or f'{self.aggregation}{self.comparator}{self.limit}'}"


@dataclass(frozen=True)
class RunVerdict:
    passed: bool
    failed_thresholds: FrozenSet[ThresholdSpec] = field(default_factory=frozenset)
    aborted: bool = False

    def describe_failures(self) -> List[str]:
        return sorted(str(t) for t in self.failed_thresholds)


@dataclass(frozen=True)
class RunResult:
    """一次运行的最终产物：快照 + 判定"""

    scenario_name: str
    snapshot: "AggregateSnapshot"
    verdict: RunVerdict
    duration_s: float
