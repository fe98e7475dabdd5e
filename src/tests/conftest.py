import asyncio
import json
import time

import httpx
import pytest

from loadramp.config.logger import setup_logging
from loadramp.http_client.client import LoadHTTPClient
from loadramp.metrics.aggregator import MetricsAggregator
from loadramp.models.outcome import RequestOutcome
from loadramp.scenarios.model import RequestSpec, ScenarioConfig, Stage

TARGET_URL = "http://target.test/process-meeting"


def pytest_configure(config):
    setup_logging(level="WARNING", fmt="console")


def make_outcome(latency_ms=100.0, status_code=200, body=b'{"success": true}', error=None):
    return RequestOutcome(
        started_at=time.time(),
        latency_ms=latency_ms,
        status_code=status_code,
        body=body,
        error=error,
        method="POST",
        url=TARGET_URL,
    )


def generate_large_notes(size=5000):
    base_line = "- Decision: Stress testing long input. "
    action_line = "- Action: John to complete task by next Friday. "
    text = "Team Planning - Q2 Stress Test\n\nKey Decisions:\n"
    while len(text) < size:
        text += base_line + action_line
    return text[:size]


def meeting_request(ctx):
    return RequestSpec(
        url=TARGET_URL,
        method="POST",
        headers={"Content-Type": "application/json"},
        json={"text": generate_large_notes()},
    )


def success_field(r):
    return r.json()["success"] is True


def json_handler(status=200, payload=None, delay=0.0):
    """异步 MockTransport 处理函数；delay 模拟服务端耗时"""
    body = json.dumps(payload if payload is not None else {"success": True}).encode()

    async def handler(request: httpx.Request) -> httpx.Response:
        if delay:
            await asyncio.sleep(delay)
        return httpx.Response(status, content=body, headers={"Content-Type": "application/json"})

    return handler


def mock_client(handler, timeout=None) -> LoadHTTPClient:
    return LoadHTTPClient(timeout=timeout, transport=httpx.MockTransport(handler))


def make_scenario(stages, checks=None, thresholds=None, request_builder=meeting_request, think_time=0.0):
    return ScenarioConfig(
        name="process_meeting",
        stages=[Stage.of(d, t) for d, t in stages],
        request_builder=request_builder,
        checks=checks if checks is not None else {"status is 200": lambda r: r.status_code == 200},
        thresholds=thresholds or {},
        think_time=think_time,
    )


@pytest.fixture
def aggregator():
    return MetricsAggregator(precision=0.01)


@pytest.fixture
def outcome_factory():
    return make_outcome
