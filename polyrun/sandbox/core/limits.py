import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from polyrun.config import SandboxSettings, config

# Docker 拒绝低于 1ms 的 CPU 配额
MIN_CPU_QUOTA = 1000


def cpu_quota_for(cpu_period: int, cpu_count: Optional[int] = None) -> int:
    """计算 CPU 配额，为宿主机保留至少一个核心。
    参数：
        cpu_period：CFS 周期（微秒）。
        cpu_count：可用核心数，None 时使用 os.cpu_count()。
    返回：
        cpu_period / (cpu_count - 1)，单核主机上分母取 1，结果不低于 MIN_CPU_QUOTA。
    """
    cpu_count = cpu_count or os.cpu_count() or 1
    return max(cpu_period // max(cpu_count - 1, 1), MIN_CPU_QUOTA)


class ResourceLimits(BaseModel):
    """统一应用于每个容器的资源限制。"""

    disk_quota: int = Field(64 * 1024, description="Disk quota in bytes")
    enforce_disk_quota: bool = Field(False)
    pids_limit: int = Field(128)
    cpu_period: int = Field(100000)
    cpu_quota: int = Field(100000)
    mem_limit: Optional[str] = Field("256m")

    class Config:
        frozen = True

    def to_host_config_kwargs(self) -> Dict[str, Any]:
        """Renders keyword arguments for ``APIClient.create_host_config``."""
        kwargs: Dict[str, Any] = {
            "pids_limit": self.pids_limit,
            "cpu_period": self.cpu_period,
            "cpu_quota": self.cpu_quota,
        }
        if self.mem_limit:
            kwargs["mem_limit"] = self.mem_limit
        if self.enforce_disk_quota:
            kwargs["storage_opt"] = {"size": str(self.disk_quota)}
        return kwargs


def default_limits(
    settings: Optional[SandboxSettings] = None, cpu_count: Optional[int] = None
) -> ResourceLimits:
    """根据配置构建默认资源限制。"""
    settings = settings or config.sandbox
    return ResourceLimits(
        disk_quota=settings.disk_quota,
        enforce_disk_quota=settings.enforce_disk_quota,
        pids_limit=settings.pids_limit,
        cpu_period=settings.cpu_period,
        cpu_quota=cpu_quota_for(settings.cpu_period, cpu_count),
        mem_limit=settings.mem_limit,
    )
