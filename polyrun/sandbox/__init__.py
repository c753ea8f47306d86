"""
Docker 沙箱模块
在一次性、资源受限的容器中运行不可信代码，返回 stdout、stderr 和退出码。
"""
from polyrun.sandbox.core.demux import MAX_OUTPUT_LENGTH, demultiplex
from polyrun.sandbox.core.engine import ContainerEngine, DockerEngine
from polyrun.sandbox.core.exceptions import (
    CleanupError,
    ContainerCreationError,
    ContainerStartError,
    ContainerWaitError,
    LanguageNotSupportedError,
    LogStreamError,
    ProvisioningError,
    SandboxError,
    SandboxTimeoutError,
    SourceInjectionError,
    StreamProtocolError,
    TruncatedFrameError,
    UnknownFrameTypeError,
)
from polyrun.sandbox.core.language import ContainerSpec, LanguageDescriptor
from polyrun.sandbox.core.limits import ResourceLimits, default_limits
from polyrun.sandbox.core.registry import LanguageRegistry, default_registry
from polyrun.sandbox.core.runner import SandboxRunner


__all__ = [
    "SandboxRunner",
    "LanguageDescriptor",
    "LanguageRegistry",
    "default_registry",
    "ContainerSpec",
    "ResourceLimits",
    "default_limits",
    "ContainerEngine",
    "DockerEngine",
    "demultiplex",
    "MAX_OUTPUT_LENGTH",
    "SandboxError",
    "LanguageNotSupportedError",
    "ProvisioningError",
    "ContainerCreationError",
    "SourceInjectionError",
    "ContainerStartError",
    "StreamProtocolError",
    "UnknownFrameTypeError",
    "TruncatedFrameError",
    "LogStreamError",
    "ContainerWaitError",
    "SandboxTimeoutError",
    "CleanupError",
]
