import asyncio
import httpx
import time
from typing import Optional
from loadramp.config.logger import logger
from loadramp.config.settings import settings
from loadramp.models.outcome import RequestOutcome
from loadramp.scenarios.model import RequestSpec


class LoadHTTPClient:
    """异步 HTTP 客户端 - 发送单个请求并返回结构化结果，网络错误与超时不抛出"""

    def __init__(
        self,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_connections: Optional[int] = None,
    ):
        self.timeout = timeout if timeout is not None else settings.REQUEST_TIMEOUT
        self.max_connections = max_connections or settings.HTTP_MAX_CONNECTIONS
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "LoadHTTPClient":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def open(self):
        if self._client is None:
            limits = httpx.Limits(
                max_connections=self.max_connections,
                max_keepalive_connections=self.max_connections,
            )
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                limits=limits,
                transport=self._transport,
            )

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def execute(self, spec: RequestSpec) -> RequestOutcome:
        """
        执行一次请求

        Returns:
            RequestOutcome；网络错误或超时时 error 非空、status_code 为 None
        """
        if self._client is None:
            await self.open()

        timeout = spec.timeout if spec.timeout is not None else self.timeout
        started_at = time.time()
        start = time.perf_counter()

        try:
            # httpx 的 timeout 只限制单次连接/读/写；整体截止时间由 wait_for 保证
            response = await asyncio.wait_for(self._send(spec, timeout), timeout=timeout)
            body = response.content
            latency_ms = (time.perf_counter() - start) * 1000

            return RequestOutcome(
                started_at=started_at,
                latency_ms=latency_ms,
                status_code=response.status_code,
                body=body,
                method=spec.method,
                url=spec.url,
            )

        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            latency_ms = (time.perf_counter() - start) * 1000
            logger.debug("Request timeout", url=spec.url, timeout=timeout, error=repr(e))
            return RequestOutcome(
                started_at=started_at,
                latency_ms=latency_ms,
                error=f"Timeout after {timeout}s",
                method=spec.method,
                url=spec.url,
            )

        except (httpx.HTTPError, httpx.InvalidURL, OSError) as e:
            latency_ms = (time.perf_counter() - start) * 1000
            logger.debug("Request error", url=spec.url, error=str(e))
            return RequestOutcome(
                started_at=started_at,
                latency_ms=latency_ms,
                error=str(e) or type(e).__name__,
                method=spec.method,
                url=spec.url,
            )

    async def _send(self, spec: RequestSpec, timeout: float) -> httpx.Response:
        # request() 返回前已读取完整响应体
        return await self._client.request(
            spec.method,
            spec.url,
            headers=spec.headers or None,
            content=spec.body,
            json=spec.json if spec.body is None else None,
            timeout=timeout,
        )
