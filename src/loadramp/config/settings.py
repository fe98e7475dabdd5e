import os
from pathlib import Path
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """全局配置"""

    # 应用
    APP_NAME: str = "loadramp"
    DEBUG: bool = os.getenv("DEBUG", "False") == "True"  # 为 True 时 setup_logging 默认使用 DEBUG 级别

    # 请求执行
    REQUEST_TIMEOUT: float = float(os.getenv("REQUEST_TIMEOUT", "60.0"))  # 与 k6 默认一致
    HTTP_MAX_CONNECTIONS: int = int(os.getenv("HTTP_MAX_CONNECTIONS", "1000"))

    # 调度
    CONTROL_TICK_INTERVAL: float = float(os.getenv("CONTROL_TICK_INTERVAL", "0.1"))  # 秒
    THRESHOLD_EVAL_INTERVAL: float = float(os.getenv("THRESHOLD_EVAL_INTERVAL", "2.0"))  # abort_on_fail 轮询间隔

    # 指标
    HISTOGRAM_PRECISION: float = float(os.getenv("HISTOGRAM_PRECISION", "0.01"))  # 分桶相对误差

    # 日志
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = os.getenv("LOG_FORMAT", "json")  # json / console

    # 场景配置目录
    SCENARIOS_DIR: Path = Path(__file__).parent.parent / "scenarios" / "examples"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
