from typing import Any, Callable, Dict, Optional

from loadramp.exceptions import CheckConfigError
from loadramp.models.outcome import RequestOutcome

_MISSING = object()


def extract_path(data: Any, path: str) -> Any:
    """简单的 JSON 路径提取：data.task_id -> data['data']['task_id']"""
    value = data
    for part in path.split('.'):
        if isinstance(value, dict) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return _MISSING
    return value


def status_is(*codes: int) -> Callable[[RequestOutcome], bool]:
    allowed = set(codes)
    return lambda r: r.status_code in allowed


def body_not_empty() -> Callable[[RequestOutcome], bool]:
    return lambda r: r.body_bytes > 0


def body_contains(text: str) -> Callable[[RequestOutcome], bool]:
    return lambda r: text in r.text


def max_duration(limit_ms: float) -> Callable[[RequestOutcome], bool]:
    return lambda r: r.latency_ms <= limit_ms


def json_field(path: str, expected: Any = _MISSING) -> Callable[[RequestOutcome], bool]:
    """
    响应 JSON 中 path 字段的检查

    给出 expected 时比较相等，否则只要求字段存在且为真值。
    响应体不是合法 JSON 时 r.json() 抛出异常，由 CheckEvaluator 记为失败。
    """
    def predicate(r: RequestOutcome) -> bool:
        value = extract_path(r.json(), path)
        if value is _MISSING:
            return False
        if expected is _MISSING:
            return bool(value)
        return value == expected

    return predicate


def build_check(name: str, spec: Dict[str, Any]) -> Callable[[RequestOutcome], bool]:
    """把声明式检查项（YAML）转换为断言函数；多个条件之间为"与"关系"""
    predicates = []

    status = spec.get("status")
    if status is not None:
        codes = status if isinstance(status, list) else [status]
        predicates.append(status_is(*codes))

    if spec.get("body_not_empty"):
        predicates.append(body_not_empty())

    if spec.get("body_contains") is not None:
        predicates.append(body_contains(spec["body_contains"]))

    if spec.get("max_duration_ms") is not None:
        predicates.append(max_duration(spec["max_duration_ms"]))

    path: Optional[str] = spec.get("json_field")
    if path:
        if "equals" in spec:
            predicates.append(json_field(path, spec["equals"]))
        else:
            predicates.append(json_field(path))

    if not predicates:
        raise CheckConfigError(f"Check '{name}' defines no condition")

    return lambda r: all(p(r) for p in predicates)
