import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from loadramp.exceptions import InvalidStageError
from loadramp.models.outcome import IterationContext, RequestOutcome

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Union[str, int, float]) -> float:
    """
    解析时长为秒

    支持数字（秒）与 k6 风格字符串："500ms"、"30s"、"1m"、"1m30s"、"2h"
    """
    if isinstance(value, bool):
        raise InvalidStageError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise InvalidStageError(f"Invalid duration: {value!r}")

    text = value.strip().lower()
    if not text:
        raise InvalidStageError("Empty duration")
    if text.startswith("-"):
        raise InvalidStageError(f"Negative duration: {value!r}")

    try:
        return float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise InvalidStageError(f"Invalid duration: {value!r}")
    return total


@dataclass(frozen=True)
class Stage:
    """单个爬坡阶段：在 duration 秒内把并发线性调整到 target"""

    duration: float
    target: int

    @classmethod
    def of(cls, duration: Union[str, int, float], target: int) -> "Stage":
        return cls(duration=parse_duration(duration), target=target)


@dataclass
class RequestSpec:
    """一次逻辑请求（由场景的请求构造函数生成）"""

    url: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[Union[bytes, str]] = None
    json: Any = None
    timeout: Optional[float] = None  # None -> settings.REQUEST_TIMEOUT


RequestBuilder = Callable[[IterationContext], RequestSpec]
CheckPredicate = Callable[[RequestOutcome], Any]


@dataclass
class ScenarioConfig:
    """测试场景配置"""

    name: str
    stages: List[Stage]
    request_builder: RequestBuilder
    checks: Mapping[str, CheckPredicate] = field(default_factory=dict)
    # {metric: ["p(95)<15000", {"threshold": "rate>0.95", "abort_on_fail": True}]}
    thresholds: Mapping[str, Any] = field(default_factory=dict)
    description: str = ""

    # 迭代间隔（秒），0 表示紧接着下一次迭代
    think_time: float = 0.0
