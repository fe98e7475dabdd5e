import asyncio
import inspect
import time
import uuid
from typing import Callable, List, Optional, Tuple

from loadramp.config.logger import logger
from loadramp.config.settings import settings
from loadramp.core.checks import CheckEvaluator
from loadramp.core.executor import VirtualUserExecutor
from loadramp.core.schedule import StageSchedule
from loadramp.core.state_machine import RunState, StateMachine
from loadramp.exceptions import ScenarioConfigError
from loadramp.http_client.client import LoadHTTPClient
from loadramp.metrics.aggregator import MetricsAggregator
from loadramp.metrics.thresholds import ThresholdEvaluator
from loadramp.models.verdict import RunResult
from loadramp.scenarios.model import ScenarioConfig


class RampOrchestrator:
    """
    爬坡编排器 - 按阶段时间线启动 / 回收虚拟用户

    构造时完成全部配置校验（阶段、检查项、阈值），配置错误直接抛出，
    不会进入运行。run() 以固定间隔比较活跃用户数与瞬时目标并发：
    不足则启动新用户，超出则通知最近启动的用户在当前迭代完成后退出。
    """

    def __init__(
        self,
        scenario: ScenarioConfig,
        http_client: Optional[LoadHTTPClient] = None,
        aggregator: Optional[MetricsAggregator] = None,
        tick_interval: Optional[float] = None,
        threshold_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not callable(scenario.request_builder):
            raise ScenarioConfigError(f"Scenario '{scenario.name}': request_builder is not callable")
        if scenario.think_time < 0:
            raise ScenarioConfigError(f"Scenario '{scenario.name}': negative think_time")

        self.scenario = scenario
        self.schedule = StageSchedule(scenario.stages)
        self.check_evaluator = CheckEvaluator(scenario.checks)
        self.thresholds = ThresholdEvaluator.from_config(
            scenario.thresholds,
            check_names=self.check_evaluator.names,
        )

        self.http_client = http_client or LoadHTTPClient()
        self.aggregator = aggregator or MetricsAggregator()
        self.aggregator.register_checks(self.check_evaluator.names)

        self.tick_interval = tick_interval or settings.CONTROL_TICK_INTERVAL
        self.threshold_interval = threshold_interval or settings.THRESHOLD_EVAL_INTERVAL
        self.clock = clock

        # 运行时状态
        self.run_id = str(uuid.uuid4())
        self.state_machine = StateMachine(RunState.IDLE)
        self.active: List[Tuple[VirtualUserExecutor, asyncio.Task]] = []
        self.retiring: List[Tuple[VirtualUserExecutor, asyncio.Task]] = []
        self.progress_callbacks = []
        self._next_user_index = 0
        self._aborted = False

    def register_progress_callback(self, callback):
        """注册进度回调（每个控制周期调用一次）"""
        self.progress_callbacks.append(callback)

    @property
    def active_users(self) -> int:
        return len(self.active)

    async def run(self) -> RunResult:
        """执行完整的爬坡运行，返回最终快照与判定"""

        logger.info(
            "Run started",
            run_id=self.run_id,
            scenario=self.scenario.name,
            stages=len(self.schedule.stages),
            total_duration_s=self.schedule.total_duration,
            max_target=self.schedule.max_target(),
        )
        self.state_machine.transition(RunState.RUNNING)
        started = self.clock()

        try:
            async with self.http_client:
                self.aggregator.start()
                await self._control_loop(started)

                self.state_machine.transition(RunState.STOPPING)
                await self._drain()
                self.aggregator.set_vus(0)
                self.aggregator.stop()

        except Exception as e:
            logger.error("Run failed", run_id=self.run_id, error=str(e), exc_info=True)
            self.state_machine.transition(RunState.FAILED)
            raise

        finally:
            pending = [task for _, task in self.active + self.retiring if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        snapshot = self.aggregator.snapshot()
        verdict = self.thresholds.evaluate(snapshot, aborted=self._aborted)
        self.state_machine.transition(RunState.ABORTED if self._aborted else RunState.COMPLETED)

        duration_s = self.clock() - started
        logger.info(
            "Run completed",
            run_id=self.run_id,
            passed=verdict.passed,
            aborted=verdict.aborted,
            failed_thresholds=verdict.describe_failures(),
            total_requests=snapshot.total_requests,
            duration_s=round(duration_s, 3),
        )
        return RunResult(
            scenario_name=self.scenario.name,
            snapshot=snapshot,
            verdict=verdict,
            duration_s=duration_s,
        )

    async def _control_loop(self, started: float):
        total = self.schedule.total_duration
        last_threshold_check = started
        current_stage = None

        while True:
            now = self.clock()
            elapsed = now - started
            if elapsed >= total:
                break

            stage_index = self.schedule.stage_index_at(elapsed)
            if stage_index != current_stage:
                current_stage = stage_index
                logger.info(
                    f"Stage {stage_index} entered",
                    run_id=self.run_id,
                    elapsed_s=round(elapsed, 3),
                    target=self.schedule.stages[stage_index].target,
                )

            target = self.schedule.desired_users(elapsed)
            self._scale_to(target)
            self.aggregator.set_vus(self.active_users)
            await self._notify_progress(elapsed, target)

            if self.thresholds.abort_specs and now - last_threshold_check >= self.threshold_interval:
                last_threshold_check = now
                if self._should_abort():
                    self._aborted = True
                    break

            await asyncio.sleep(min(self.tick_interval, max(0.0, total - elapsed)))

    def _scale_to(self, target: int):
        """把活跃用户数调整到 target"""
        self._reap()

        while self.active_users < target:
            executor = VirtualUserExecutor(
                user_index=self._next_user_index,
                scenario=self.scenario,
                http_client=self.http_client,
                check_evaluator=self.check_evaluator,
                aggregator=self.aggregator,
                run_id=self.run_id,
            )
            self._next_user_index += 1
            task = asyncio.create_task(executor.run())
            self.active.append((executor, task))

        while self.active_users > target:
            # 优先回收最近启动的用户
            executor, task = self.active.pop()
            executor.stop()
            self.retiring.append((executor, task))

    def _reap(self):
        """移除已结束的用户任务（意外退出的活跃用户 / 已完成退出的回收用户）"""
        self.active = self._prune(self.active)
        self.retiring = self._prune(self.retiring)

    def _prune(self, users):
        alive = []
        for executor, task in users:
            if task.done():
                if not task.cancelled() and task.exception() is not None:
                    logger.error(
                        f"Virtual user {executor.user_index} crashed",
                        run_id=self.run_id,
                        error=repr(task.exception()),
                    )
                continue
            alive.append((executor, task))
        return alive

    def _should_abort(self) -> bool:
        snapshot = self.aggregator.snapshot()
        verdict = self.thresholds.evaluate(snapshot, only=self.thresholds.abort_specs)
        if verdict.passed:
            return False
        logger.warning(
            "Threshold crossed, aborting run",
            run_id=self.run_id,
            failed_thresholds=verdict.describe_failures(),
        )
        return True

    async def _drain(self):
        """通知所有用户停止，并等待在途迭代完成"""
        for executor, _ in self.active:
            executor.stop()
        self.retiring.extend(self.active)
        self.active = []

        tasks = [task for _, task in self.retiring]
        logger.info("Waiting for virtual users to finish", run_id=self.run_id, users=len(tasks))
        results = await asyncio.gather(*tasks, return_exceptions=True)

        for (executor, _), result in zip(self.retiring, results):
            if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                logger.error(
                    f"Virtual user {executor.user_index} failed",
                    run_id=self.run_id,
                    error=repr(result),
                )
        self.retiring = []

    async def _notify_progress(self, elapsed: float, target: int):
        for callback in self.progress_callbacks:
            try:
                kwargs = dict(
                    run_id=self.run_id,
                    elapsed_s=elapsed,
                    target=target,
                    active_users=self.active_users,
                )
                if inspect.iscoroutinefunction(callback):
                    await callback(**kwargs)
                else:
                    callback(**kwargs)
            except Exception as e:
                logger.error(f"Error in progress callback: {e}")


async def run_scenario(scenario: ScenarioConfig, http_client: Optional[LoadHTTPClient] = None, **kwargs) -> RunResult:
    """校验场景并执行一次完整运行"""
    orchestrator = RampOrchestrator(scenario, http_client=http_client, **kwargs)
    return await orchestrator.run()
