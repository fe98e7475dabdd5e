import operator
import re
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from loadramp.config.logger import logger
from loadramp.exceptions import ThresholdConfigError
from loadramp.metrics.aggregator import AggregateSnapshot
from loadramp.models.verdict import RunVerdict, ThresholdSpec

# k6 风格表达式："p(95)<15000"、"rate>0.95"、"avg <= 200"
_EXPRESSION = re.compile(
    r"^\s*(?P<agg>[a-z]+(?:\(\s*\d+(?:\.\d+)?\s*\))?)\s*"
    r"(?P<op><=|>=|===|==|!=|<|>)\s*"
    r"(?P<limit>-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)\s*$"
)
_PERCENTILE = re.compile(r"^p\(\s*(\d+(?:\.\d+)?)\s*\)$")
_TAGGED_CHECK = re.compile(r"^checks\{\s*check\s*:\s*(?P<name>.+?)\s*\}$")

COMPARATORS: Dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "===": operator.eq,
    "!=": operator.ne,
}

TREND = "trend"
COUNTER = "counter"
RATE = "rate"
GAUGE = "gauge"

# 指标名 -> 指标类型
METRIC_TYPES: Dict[str, str] = {
    "http_req_duration": TREND,
    "http_reqs": COUNTER,
    "iterations": COUNTER,
    "data_received": COUNTER,
    "http_req_failed": RATE,
    "checks": RATE,
    "vus": GAUGE,
}

AGGREGATIONS: Dict[str, Tuple[str, ...]] = {
    TREND: ("avg", "min", "max", "med"),  # 以及 p(N)
    COUNTER: ("count", "rate"),
    RATE: ("rate",),
    GAUGE: ("value", "min", "max"),
}


def _metric_type(metric: str, check_names: Optional[Sequence[str]]) -> str:
    tagged = _TAGGED_CHECK.match(metric)
    if tagged:
        name = tagged.group("name")
        if check_names is not None and name not in check_names:
            raise ThresholdConfigError(f"Threshold on unknown check '{name}'")
        return RATE

    if metric not in METRIC_TYPES:
        raise ThresholdConfigError(
            f"Unknown threshold metric '{metric}' (known: {', '.join(sorted(METRIC_TYPES))})"
        )
    return METRIC_TYPES[metric]


def parse_expression(
    metric: str,
    expression: str,
    abort_on_fail: bool = False,
    check_names: Optional[Sequence[str]] = None,
) -> ThresholdSpec:
    """解析单条阈值表达式，并校验指标名与聚合方式"""
    if not isinstance(expression, str):
        raise ThresholdConfigError(f"Threshold for '{metric}' must be a string, got {expression!r}")

    match = _EXPRESSION.match(expression)
    if not match:
        raise ThresholdConfigError(f"Malformed threshold expression for '{metric}': {expression!r}")

    metric_type = _metric_type(metric, check_names)
    aggregation = re.sub(r"\s+", "", match.group("agg"))

    percentile = _PERCENTILE.match(aggregation)
    if percentile:
        if metric_type != TREND:
            raise ThresholdConfigError(f"Percentile aggregation not supported on {metric_type} metric '{metric}'")
        if not 0 <= float(percentile.group(1)) <= 100:
            raise ThresholdConfigError(f"Percentile out of range in {expression!r}")
    elif aggregation not in AGGREGATIONS[metric_type]:
        raise ThresholdConfigError(
            f"Aggregation '{aggregation}' not supported on {metric_type} metric '{metric}'"
        )

    return ThresholdSpec(
        metric=metric,
        aggregation=aggregation,
        comparator=match.group("op"),
        limit=float(match.group("limit")),
        source=expression.strip(),
        abort_on_fail=abort_on_fail,
    )


def parse_thresholds(
    thresholds: Optional[Mapping[str, Any]],
    check_names: Optional[Sequence[str]] = None,
) -> List[ThresholdSpec]:
    """
    解析阈值配置

    thresholds 形如：
        {
            "http_req_duration": ["p(95)<15000"],
            "checks": ["rate>0.95"],
            "http_req_failed": [{"threshold": "rate<0.01", "abort_on_fail": True}],
        }
    单个字符串等价于只有一项的列表。check_names 非空时用于校验 checks{check:NAME}。
    """
    if not thresholds:
        return []
    if not isinstance(thresholds, Mapping):
        raise ThresholdConfigError("Thresholds must be a mapping of metric -> expressions")

    specs = []
    for metric, entries in thresholds.items():
        if isinstance(entries, (str, Mapping)):
            entries = [entries]
        if not isinstance(entries, (list, tuple)) or not entries:
            raise ThresholdConfigError(f"Thresholds for '{metric}' must be a non-empty list")

        for entry in entries:
            if isinstance(entry, Mapping):
                if "threshold" not in entry:
                    raise ThresholdConfigError(f"Threshold object for '{metric}' is missing 'threshold'")
                specs.append(parse_expression(
                    metric,
                    entry["threshold"],
                    abort_on_fail=bool(entry.get("abort_on_fail", entry.get("abortOnFail", False))),
                    check_names=check_names,
                ))
            else:
                specs.append(parse_expression(metric, entry, check_names=check_names))
    return specs


def resolve_value(snapshot: AggregateSnapshot, spec: ThresholdSpec) -> float:
    """从快照中取出阈值对应的聚合值"""
    tagged = _TAGGED_CHECK.match(spec.metric)
    if tagged:
        return snapshot.check_pass_rate(tagged.group("name"))

    agg = spec.aggregation
    metric = spec.metric

    if metric == "http_req_duration":
        percentile = _PERCENTILE.match(agg)
        if percentile:
            return snapshot.latency_percentile(float(percentile.group(1)))
        return {
            "avg": snapshot.latency_avg,
            "min": snapshot.latency_min,
            "max": snapshot.latency_max,
            "med": snapshot.latency_med,
        }[agg]

    if metric == "http_reqs":
        return float(snapshot.total_requests) if agg == "count" else snapshot.requests_per_second
    if metric == "iterations":
        return float(snapshot.iterations) if agg == "count" else snapshot.iterations_per_second
    if metric == "data_received":
        return float(snapshot.data_received) if agg == "count" else snapshot.data_received_per_second
    if metric == "http_req_failed":
        return snapshot.http_req_failed_rate
    if metric == "checks":
        return snapshot.checks_rate
    if metric == "vus":
        return float({"value": snapshot.vus, "min": snapshot.vus_min, "max": snapshot.vus_max}[agg])

    # parse_thresholds 已拒绝未知指标
    raise ThresholdConfigError(f"Unresolvable threshold metric '{metric}'")


class ThresholdEvaluator:
    """阈值评估器 - 所有阈值通过时整次运行才算成功"""

    def __init__(self, specs: Iterable[ThresholdSpec]):
        self.specs: List[ThresholdSpec] = list(specs)

    @classmethod
    def from_config(
        cls,
        thresholds: Optional[Mapping[str, Any]],
        check_names: Optional[Sequence[str]] = None,
    ) -> "ThresholdEvaluator":
        return cls(parse_thresholds(thresholds, check_names=check_names))

    @property
    def abort_specs(self) -> List[ThresholdSpec]:
        return [s for s in self.specs if s.abort_on_fail]

    def evaluate(
        self,
        snapshot: AggregateSnapshot,
        only: Optional[Iterable[ThresholdSpec]] = None,
        aborted: bool = False,
    ) -> RunVerdict:
        failed = set()
        for spec in (self.specs if only is None else only):
            value = resolve_value(snapshot, spec)
            ok = COMPARATORS[spec.comparator](value, spec.limit)
            if not ok:
                failed.add(spec)
            logger.debug(
                "Threshold evaluated",
                metric=spec.metric,
                threshold=spec.source,
                value=value,
                passed=ok,
            )

        return RunVerdict(
            passed=not failed and not aborted,
            failed_thresholds=frozenset(failed),
            aborted=aborted,
        )
