import math
from typing import List, Sequence, Tuple

from loadramp.exceptions import InvalidStageError
from loadramp.scenarios.model import Stage


class StageSchedule:
    """
    阶段时间线

    把有序的 (duration, target) 列表转换成随时间变化的目标并发数：
    在每个阶段内，从上一阶段的目标（首阶段为 0）线性插值到本阶段目标。
    """

    def __init__(self, stages: Sequence[Stage]):
        self.stages: List[Stage] = list(stages)
        self._validate()

        # (start, end, from_target, to_target)
        self._segments: List[Tuple[float, float, int, int]] = []
        start = 0.0
        previous = 0
        for stage in self.stages:
            end = start + stage.duration
            self._segments.append((start, end, previous, stage.target))
            previous = stage.target
            start = end
        self.total_duration = start

    def _validate(self):
        if not self.stages:
            raise InvalidStageError("Stage list is empty")
        for i, stage in enumerate(self.stages):
            if isinstance(stage.duration, bool) or not isinstance(stage.duration, (int, float)):
                raise InvalidStageError(f"Stage {i}: duration must be a number, got {stage.duration!r}")
            if math.isnan(stage.duration) or math.isinf(stage.duration):
                raise InvalidStageError(f"Stage {i}: duration must be finite")
            if stage.duration < 0:
                raise InvalidStageError(f"Stage {i}: negative duration {stage.duration}")
            if isinstance(stage.target, bool) or not isinstance(stage.target, int):
                raise InvalidStageError(f"Stage {i}: target must be an integer, got {stage.target!r}")
            if stage.target < 0:
                raise InvalidStageError(f"Stage {i}: negative target {stage.target}")

    def target_at(self, t: float) -> float:
        """t 时刻（相对开始，秒）的瞬时目标并发；开始前与结束后均为 0"""
        if t < 0 or t >= self.total_duration:
            return 0.0

        for start, end, from_target, to_target in self._segments:
            if t >= end:
                continue
            # 零时长阶段 end == start，被上面的 continue 跳过，相当于立即跳到其目标
            progress = (t - start) / (end - start)
            return from_target + (to_target - from_target) * progress

        return 0.0

    def desired_users(self, t: float) -> int:
        """四舍五入后的目标虚拟用户数"""
        return int(math.floor(self.target_at(t) + 0.5))

    def stage_index_at(self, t: float) -> int:
        """t 所在阶段的下标；结束后返回 -1"""
        if t < 0:
            return 0
        for i, (start, end, _, _) in enumerate(self._segments):
            if t < end:
                return i
        return -1

    def max_target(self) -> int:
        return max(stage.target for stage in self.stages)
