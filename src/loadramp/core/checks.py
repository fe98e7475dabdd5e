from typing import Dict, List, Mapping

from loadramp.config.logger import logger
from loadramp.exceptions import CheckConfigError
from loadramp.models.outcome import CheckResult, RequestOutcome
from loadramp.scenarios.model import CheckPredicate


class CheckEvaluator:
    """检查项评估器 - 对每个响应逐一执行所有命名断言"""

    def __init__(self, checks: Mapping[str, CheckPredicate]):
        if checks is None:
            checks = {}
        if not isinstance(checks, Mapping):
            raise CheckConfigError(f"Checks must be a mapping of name -> predicate, got {type(checks).__name__}")

        for name, predicate in checks.items():
            if not isinstance(name, str) or not name.strip():
                raise CheckConfigError(f"Invalid check name: {name!r}")
            if not callable(predicate):
                raise CheckConfigError(f"Check '{name}' is not callable")

        self.checks: Dict[str, CheckPredicate] = dict(checks)

    @property
    def names(self) -> List[str]:
        return list(self.checks)

    def evaluate(self, outcome: RequestOutcome) -> List[CheckResult]:
        """
        评估全部检查项

        每个检查项相互独立，不会因某项失败而短路；
        断言内部抛出异常视为该项失败。
        """
        results = []
        for name, predicate in self.checks.items():
            try:
                passed = bool(predicate(outcome))
            except Exception as e:
                logger.debug("Check raised, counted as failed", check=name, error=repr(e))
                passed = False
            results.append(CheckResult(name=name, passed=passed))
        return results
