import asyncio
import json

import httpx
import pytest

from conftest import TARGET_URL, json_handler, mock_client
from loadramp.http_client.client import LoadHTTPClient
from loadramp.scenarios.model import RequestSpec

pytestmark = pytest.mark.unit


@pytest.mark.asyncio
async def test_successful_request_outcome():
    captured = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["body"] = json.loads(request.content)
        captured["content_type"] = request.headers["content-type"]
        await asyncio.sleep(0.01)
        return httpx.Response(200, json={"success": True})

    async with mock_client(handler) as client:
        outcome = await client.execute(RequestSpec(url=TARGET_URL, method="POST", json={"text": "notes"}))

    assert outcome.status_code == 200
    assert outcome.error is None
    assert outcome.json() == {"success": True}
    assert outcome.latency_ms >= 10
    assert not outcome.failed
    assert captured == {"method": "POST", "body": {"text": "notes"}, "content_type": "application/json"}


@pytest.mark.asyncio
async def test_non_2xx_is_not_an_error():
    async with mock_client(json_handler(status=503, payload={"success": False})) as client:
        outcome = await client.execute(RequestSpec(url=TARGET_URL))

    assert outcome.status_code == 503
    assert outcome.error is None
    assert outcome.failed


@pytest.mark.asyncio
async def test_timeout_becomes_outcome_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    async with mock_client(handler, timeout=0.5) as client:
        outcome = await client.execute(RequestSpec(url=TARGET_URL))

    assert outcome.status_code is None
    assert outcome.error == "Timeout after 0.5s"
    assert outcome.failed


@pytest.mark.asyncio
async def test_per_request_timeout_overrides_client_default():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    async with mock_client(handler, timeout=30) as client:
        outcome = await client.execute(RequestSpec(url=TARGET_URL, timeout=2.0))

    assert outcome.error == "Timeout after 2.0s"


@pytest.mark.asyncio
async def test_connection_error_becomes_outcome_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with mock_client(handler) as client:
        outcome = await client.execute(RequestSpec(url=TARGET_URL))

    assert outcome.status_code is None
    assert "connection refused" in outcome.error
    assert outcome.body_bytes == 0


@pytest.mark.asyncio
async def test_raw_body_is_sent_as_is():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.content)
        return httpx.Response(200, content=b"ok")

    async with mock_client(handler) as client:
        outcome = await client.execute(RequestSpec(url=TARGET_URL, method="PUT", body="raw payload"))

    assert seen == [b"raw payload"]
    assert outcome.text == "ok"


async def trickle_server(chunks=20, interval=0.1):
    """本地 HTTP 服务：先发响应头，再逐字节慢速发送响应体"""

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        try:
            await reader.readuntil(b"\r\n\r\n")
            writer.write(f"HTTP/1.1 200 OK\r\nContent-Length: {chunks}\r\n\r\n".encode())
            await writer.drain()
            for _ in range(chunks):
                if reader.at_eof():
                    break
                writer.write(b"x")
                await writer.drain()
                await asyncio.sleep(interval)
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    return server, f"http://127.0.0.1:{port}/slow"


@pytest.mark.asyncio
async def test_timeout_bounds_whole_request_on_slow_body():
    server, url = await trickle_server()
    try:
        async with LoadHTTPClient(timeout=0.3) as client:
            outcome = await client.execute(RequestSpec(url=url))
    finally:
        server.close()
        await server.wait_closed()

    # 每个字节都在读超时内到达，但整个响应需要约 2 秒
    assert outcome.status_code is None
    assert outcome.error == "Timeout after 0.3s"
    assert outcome.latency_ms < 1000


@pytest.mark.asyncio
async def test_slow_body_within_timeout_succeeds():
    server, url = await trickle_server(chunks=3, interval=0.05)
    try:
        async with LoadHTTPClient(timeout=5) as client:
            outcome = await client.execute(RequestSpec(url=url))
    finally:
        server.close()
        await server.wait_closed()

    assert outcome.status_code == 200
    assert outcome.body == b"xxx"
    assert outcome.latency_ms >= 80
