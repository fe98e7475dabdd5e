import json
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class RequestOutcome:
    """单次 HTTP 请求的结果（创建后不可变）"""

    started_at: float  # wall clock, time.time()
    latency_ms: float
    status_code: Optional[int] = None
    body: bytes = b""
    error: Optional[str] = None
    method: str = "GET"
    url: str = ""

    @property
    def body_bytes(self) -> int:
        return len(self.body)

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """解析响应体；格式错误时抛出 ValueError（由检查项自行处理）"""
        return json.loads(self.body)

    @property
    def failed(self) -> bool:
        """等价于 k6 的 http_req_failed：出错或状态码不在 200-399"""
        if self.error is not None or self.status_code is None:
            return True
        return not (200 <= self.status_code < 400)


@dataclass(frozen=True)
class CheckResult:
    name: str
    passed: bool


@dataclass
class IterationContext:
    """传给请求构造函数的迭代上下文"""

    user_index: int
    iteration: int
    data: dict = field(default_factory=dict)  # 每个虚拟用户私有，跨迭代保留
