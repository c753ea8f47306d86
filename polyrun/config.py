import os
import threading
import tomllib
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field


def get_project_root() -> Path:
    """获取项目根目录"""
    return Path(__file__).resolve().parent.parent


PROJECT_ROOT = get_project_root()
# 配置文件路径可以通过该环境变量覆盖
CONFIG_ENV_VAR = "POLYRUN_CONFIG"


class SandboxSettings(BaseModel):
    """沙箱运行设置"""

    # 每个输出流捕获的最大字节数
    max_output_length: int = Field(2048, description="Maximum captured bytes per stream")
    # 磁盘配额（字节）
    disk_quota: int = Field(64 * 1024, description="Disk quota in bytes")
    # 大多数存储驱动不支持 storage_opt，默认不下发
    enforce_disk_quota: bool = Field(
        False, description="Send the disk quota to the engine as storage_opt"
    )
    pids_limit: int = Field(128, description="Maximum number of processes")
    cpu_period: int = Field(100000, description="CFS period in microseconds")
    # 内存限制，None 表示不限制
    mem_limit: Optional[str] = Field("256m", description="Memory limit, e.g. 256m")
    # 清理容器的独立超时时间（秒）
    cleanup_timeout: float = Field(10.0, description="Deadline for container removal")
    # 退出码到达后等待日志刷新的时间（秒）
    log_drain_timeout: float = Field(
        1.0, description="Grace period for the log stream after exit"
    )
    # 启动前记录 since 时间戳的回看秒数
    since_lookback: float = Field(1.0, description="Log lookback before start")


class ServerSettings(BaseModel):
    """HTTP 服务设置"""

    host: str = Field("0.0.0.0", description="Bind host")
    port: int = Field(8080, description="Bind port")
    # 同步执行接口的超时时间（秒）
    execute_timeout: float = Field(300.0, description="Deadline for /execute/sync")


class LogSettings(BaseModel):
    level: str = Field("INFO", description="Console log level")
    file_level: str = Field("DEBUG", description="Log file level")


class AppConfig(BaseModel):
    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    log: LogSettings = Field(default_factory=LogSettings)


class Config:
    # 单例实例
    _instance = None
    # 线程锁，用于线程安全的单例创建
    _lock = threading.Lock()
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            with self._lock:
                if not self._initialized:
                    self._config = None
                    self._load_initial_config()
                    self._initialized = True

    @staticmethod
    def _get_config_path() -> Optional[Path]:
        # 环境变量优先
        env_path = os.environ.get(CONFIG_ENV_VAR)
        if env_path:
            path = Path(env_path)
            if not path.exists():
                raise FileNotFoundError(f"Config file not found: {path}")
            return path
        config_path = PROJECT_ROOT / "config" / "config.toml"
        if config_path.exists():
            return config_path
        example_path = PROJECT_ROOT / "config" / "config.example.toml"
        if example_path.exists():
            return example_path
        # 没有配置文件时使用内置默认值
        return None

    def _load_config(self) -> dict:
        config_path = self._get_config_path()
        if config_path is None:
            return {}
        with config_path.open("rb") as f:
            return tomllib.load(f)

    def _load_initial_config(self):
        raw_config = self._load_config()
        server = dict(raw_config.get("server", {}))
        # 与原服务保持一致，PORT 环境变量覆盖端口
        if os.environ.get("PORT"):
            server["port"] = int(os.environ["PORT"].lstrip(":"))
        self._config = AppConfig(
            sandbox=raw_config.get("sandbox", {}),
            server=server,
            log=raw_config.get("log", {}),
        )

    @property
    def sandbox(self) -> SandboxSettings:
        return self._config.sandbox

    @property
    def server(self) -> ServerSettings:
        return self._config.server

    @property
    def log(self) -> LogSettings:
        return self._config.log


# 创建配置单例对象
config = Config()
