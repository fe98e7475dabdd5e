import asyncio
import time
from typing import Optional

from loadramp.config.logger import logger
from loadramp.core.checks import CheckEvaluator
from loadramp.http_client.client import LoadHTTPClient
from loadramp.metrics.aggregator import MetricsAggregator
from loadramp.models.outcome import IterationContext
from loadramp.scenarios.model import ScenarioConfig


class VirtualUserExecutor:
    """虚拟用户执行器 - 循环执行场景迭代，直到收到停止信号"""

    def __init__(
        self,
        user_index: int,
        scenario: ScenarioConfig,
        http_client: LoadHTTPClient,
        check_evaluator: CheckEvaluator,
        aggregator: MetricsAggregator,
        stop_event: Optional[asyncio.Event] = None,
        run_id: str = "",
    ):
        self.user_index = user_index
        self.scenario = scenario
        self.http_client = http_client
        self.check_evaluator = check_evaluator
        self.aggregator = aggregator
        self.stop_event = stop_event or asyncio.Event()
        self.run_id = run_id

        # 用户私有状态
        self.iterations = 0
        self.context = IterationContext(user_index=user_index, iteration=0)

        self.start_time = None
        self.end_time = None

    def stop(self):
        """请求停止：当前迭代完成后退出，不打断在途请求"""
        self.stop_event.set()

    async def run(self) -> int:
        """
        运行虚拟用户循环

        Returns:
            完成的迭代次数
        """
        logger.debug(f"Virtual user {self.user_index} starting", run_id=self.run_id)
        self.start_time = time.time()

        try:
            while not self.stop_event.is_set():
                await self.run_iteration()
                self.iterations += 1

                if self.scenario.think_time > 0:
                    await self._think()
                else:
                    # 出让事件循环，保证调度器的控制循环能按时运行
                    await asyncio.sleep(0)

            return self.iterations

        finally:
            self.end_time = time.time()
            logger.debug(
                f"Virtual user {self.user_index} stopped",
                run_id=self.run_id,
                iterations=self.iterations,
                duration_ms=int((self.end_time - self.start_time) * 1000),
            )

    async def run_iteration(self):
        """单次迭代：构造请求 -> 发送 -> 检查 -> 记录"""
        self.context.iteration = self.iterations

        try:
            spec = self.scenario.request_builder(self.context)
        except Exception as e:
            # 场景脚本错误不会中止运行
            logger.error(
                "Request builder failed",
                user_index=self.user_index,
                iteration=self.iterations,
                error=repr(e),
            )
            self.aggregator.record_iteration_error()
            return

        try:
            outcome = await self.http_client.execute(spec)
        except Exception as e:
            # 请求无法构造（如 json 不可序列化、非法 header），同样记为迭代错误
            logger.error(
                "Request could not be sent",
                user_index=self.user_index,
                iteration=self.iterations,
                url=spec.url,
                error=repr(e),
            )
            self.aggregator.record_iteration_error()
            return

        results = self.check_evaluator.evaluate(outcome)
        self.aggregator.record(outcome, results)

    async def _think(self):
        """迭代间隔；收到停止信号时提前结束"""
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=self.scenario.think_time)
        except asyncio.TimeoutError:
            pass
