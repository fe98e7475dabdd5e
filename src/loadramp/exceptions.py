class LoadRampError(Exception):
    """loadramp 异常基类"""


class ScenarioConfigError(LoadRampError):
    """场景配置错误 - 在运行开始前抛出，拒绝执行"""


class InvalidStageError(ScenarioConfigError):
    """阶段列表不合法（负时长、负目标、空列表）"""


class ThresholdConfigError(ScenarioConfigError):
    """阈值表达式无法解析，或指标名无法解析"""


class CheckConfigError(ScenarioConfigError):
    """检查项映射不合法"""


class ScenarioNotFoundError(ScenarioConfigError):
    """场景文件不存在"""
