import copy
import re
import uuid
import yaml
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from loadramp.config.logger import logger
from loadramp.config.settings import settings
from loadramp.core.schedule import StageSchedule
from loadramp.exceptions import ScenarioConfigError, ScenarioNotFoundError
from loadramp.metrics.thresholds import parse_thresholds
from loadramp.models.outcome import IterationContext
from loadramp.scenarios.checks import build_check
from loadramp.scenarios.model import RequestSpec, ScenarioConfig, Stage, parse_duration


class StageModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    duration: Union[float, str]
    target: int


class RequestModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    url: str
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None
    json_body: Any = Field(default=None, alias="json")
    timeout: Optional[float] = None


class CheckModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: Optional[Union[int, List[int]]] = None
    body_not_empty: bool = False
    body_contains: Optional[str] = None
    max_duration_ms: Optional[float] = None
    json_field: Optional[str] = None
    equals: Any = None


class ScenarioModel(BaseModel):
    """YAML 场景文件结构"""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    description: str = ""
    stages: List[StageModel]
    think_time: float = 0.0
    request: RequestModel
    checks: Dict[str, CheckModel] = Field(default_factory=dict)
    thresholds: Dict[str, Any] = Field(default_factory=dict)


class TemplateRequestBuilder:
    """
    基于模板构造请求

    字符串中的 {user_index}、{iteration}、{uuid} 以及 {context.xxx}
    在每次迭代时替换为当前值。
    """

    _PATTERN = re.compile(r'\{(?:context\.)?(\w+)\}')

    def __init__(self, request: RequestModel):
        self.request = request

    def __call__(self, ctx: IterationContext) -> RequestSpec:
        values = dict(ctx.data)
        values.update(user_index=ctx.user_index, iteration=ctx.iteration, uuid=uuid.uuid4().hex)

        def replace(obj):
            if isinstance(obj, str):
                return self._PATTERN.sub(lambda m: str(values.get(m.group(1), m.group(0))), obj)
            elif isinstance(obj, dict):
                return {k: replace(v) for k, v in obj.items()}
            elif isinstance(obj, list):
                return [replace(item) for item in obj]
            return obj

        return RequestSpec(
            url=replace(self.request.url),
            method=self.request.method.upper(),
            headers=replace(dict(self.request.headers)),
            body=replace(self.request.body),
            json=replace(copy.deepcopy(self.request.json_body)),
            timeout=self.request.timeout,
        )


class ScenarioLoader:
    """YAML 场景加载器"""

    def __init__(self, scenarios_dir: Optional[Path] = None):
        self.scenarios_dir = Path(scenarios_dir or settings.SCENARIOS_DIR)

    def load(self, scenario_name: str) -> ScenarioConfig:
        """按名称加载 scenarios_dir 下的 <name>.yaml"""
        file_path = self.scenarios_dir / f"{scenario_name}.yaml"
        if not file_path.exists():
            logger.error(f"Scenario file not found: {file_path}")
            raise ScenarioNotFoundError(f"Scenario file not found: {file_path}")
        return self.load_file(file_path)

    def load_file(self, file_path: Path) -> ScenarioConfig:
        with open(file_path, 'r', encoding='utf-8') as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ScenarioConfigError(f"Invalid YAML in {file_path}: {e}") from e

        config = self.parse(data, default_name=Path(file_path).stem)
        logger.info(f"Loaded scenario: {config.name}", stages=len(config.stages), checks=len(config.checks))
        return config

    def parse(self, data: Any, default_name: str = "scenario") -> ScenarioConfig:
        """解析 YAML 数据为 ScenarioConfig"""
        if not isinstance(data, dict):
            raise ScenarioConfigError("Scenario document must be a mapping")

        try:
            model = ScenarioModel.model_validate(data)
        except ValidationError as e:
            raise ScenarioConfigError(f"Invalid scenario: {e}") from e

        stages = [
            Stage(duration=parse_duration(stage.duration), target=stage.target)
            for stage in model.stages
        ]
        # 配置错误在加载阶段即抛出
        StageSchedule(stages)

        checks = {
            name: build_check(name, check.model_dump(exclude_unset=True))
            for name, check in model.checks.items()
        }

        parse_thresholds(model.thresholds, check_names=list(checks))

        return ScenarioConfig(
            name=model.name or default_name,
            description=model.description,
            stages=stages,
            request_builder=TemplateRequestBuilder(model.request),
            checks=checks,
            thresholds=model.thresholds,
            think_time=model.think_time,
        )
