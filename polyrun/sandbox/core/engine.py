"""
Container engine access
This module defines the capability set the sandbox runner needs from a
container engine, and its implementation on top of the Docker API client.
"""

import asyncio
import uuid
from typing import Optional, Protocol

import docker
import requests
import urllib3
from docker import APIClient
from docker.errors import create_api_error_from_http_exception

from polyrun.logger import logger
from polyrun.sandbox.core.exceptions import (
    ContainerWaitError,
    LogStreamError,
    ProvisioningError,
    SourceInjectionError,
)
from polyrun.sandbox.core.language import ContainerSpec

SANDBOX_LABEL = "polyrun.sandbox"


class LogStream(Protocol):
    """Protocol for a live multiplexed log stream."""

    def read(self, n: int) -> bytes:
        """Blocks until up to ``n`` bytes arrive; ``b""`` at end of stream."""
        ...

    def close(self) -> None:
        """Releases the stream; pending and later reads return ``b""``."""
        ...


class ContainerEngine(Protocol):
    """Protocol for the container engine operations used by the runner."""

    async def create_container(self, spec: ContainerSpec) -> str:
        """Creates a container from the spec.
        Returns:
            Engine-assigned container ID.
        """
        ...

    async def copy_archive(self, container_id: str, dest_dir: str, archive: bytes) -> None:
        """Extracts a tar archive into ``dest_dir``, overwriting existing files."""
        ...

    async def start_container(self, container_id: str) -> None:
        """Starts a created container."""
        ...

    async def stream_logs(self, container_id: str, since: float) -> LogStream:
        """Follows stdout and stderr from the UNIX timestamp ``since``."""
        ...

    async def wait_container(self, container_id: str) -> int:
        """Blocks until the container exits.
        Returns:
            Exit code.
        """
        ...

    async def remove_container(self, container_id: str) -> None:
        """Force-removes the container."""
        ...

    async def pull_image(self, image: str) -> None:
        """Pulls an image, consuming the whole progress stream."""
        ...


class DockerLogStream:
    def __init__(self, response: requests.Response) -> None:
        """Wraps a streamed ``/containers/{id}/logs`` response.
        Args:
            response: Response opened with ``stream=True``.
        """
        self.response = response
        self.closed = False

    def read(self, n: int) -> bytes:
        if self.closed:
            return b""
        try:
            return self.response.raw.read(n) or b""
        except (urllib3.exceptions.HTTPError, OSError, ValueError) as e:
            # 流被另一个线程关闭后读取会失败，视为正常结束
            if self.closed:
                return b""
            raise LogStreamError(f"failed to read log stream: {e}") from e

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.response.close()


class DockerEngine:
    """Docker 容器引擎。
    通过 Docker API 客户端实现 ContainerEngine 协议，
    所有阻塞调用都在线程中执行。
    """

    def __init__(self, client: Optional[APIClient] = None) -> None:
        """初始化引擎。
        参数：
            client：Docker API 客户端。如果为None，则根据环境变量创建。
        """
        self.api = client or docker.from_env().api

    def _url(self, path: str) -> str:
        return f"{self.api.base_url}/v{self.api.api_version}{path}"

    async def create_container(self, spec: ContainerSpec) -> str:
        host_config = self.api.create_host_config(
            network_mode="none" if spec.network_disabled else "bridge",
            **spec.limits.to_host_config_kwargs(),
        )
        # 生成带 polyrun_ 前缀的唯一容器名称
        container_name = f"polyrun_{uuid.uuid4().hex[:8]}"

        # 非 detach 模式下 stdin_open 同时设置 StdinOnce
        container = await asyncio.to_thread(
            self.api.create_container,
            image=spec.image,
            command=list(spec.command),
            working_dir=spec.work_dir,
            network_disabled=spec.network_disabled,
            stdin_open=spec.stdin_open,
            detach=not spec.stdin_once,
            host_config=host_config,
            name=container_name,
            labels={SANDBOX_LABEL: "1"},
        )
        logger.debug(f"Created container {container_name} ({container['Id'][:12]})")
        return container["Id"]

    async def copy_archive(self, container_id: str, dest_dir: str, archive: bytes) -> None:
        ok = await asyncio.to_thread(self.api.put_archive, container_id, dest_dir, archive)
        if not ok:
            raise SourceInjectionError(f"failed to copy archive into {dest_dir}")

    async def start_container(self, container_id: str) -> None:
        await asyncio.to_thread(self.api.start, container_id)

    async def stream_logs(self, container_id: str, since: float) -> DockerLogStream:
        def open_stream() -> DockerLogStream:
            # 直接读取原始多路复用流，保留 stdout/stderr 标记
            response = self.api.get(
                self._url(f"/containers/{container_id}/logs"),
                params={
                    "stdout": 1,
                    "stderr": 1,
                    "follow": 1,
                    "timestamps": 0,
                    "since": int(since),
                },
                stream=True,
                timeout=None,
            )
            try:
                response.raise_for_status()
            except requests.exceptions.HTTPError as e:
                response.close()
                create_api_error_from_http_exception(e)
            return DockerLogStream(response)

        return await asyncio.to_thread(open_stream)

    async def wait_container(self, container_id: str) -> int:
        result = await asyncio.to_thread(self.api.wait, container_id)
        error = result.get("Error") or {}
        if error.get("Message"):
            raise ContainerWaitError(error["Message"])
        return int(result["StatusCode"])

    async def remove_container(self, container_id: str) -> None:
        await asyncio.to_thread(self.api.remove_container, container_id, force=True)
        logger.debug(f"Removed container {container_id[:12]}")

    async def pull_image(self, image: str) -> None:
        def pull() -> None:
            for event in self.api.pull(image, stream=True, decode=True):
                if "error" in event:
                    raise ProvisioningError(f"failed to pull {image}: {event['error']}")
                if event.get("status"):
                    logger.debug(f"{image}: {event['status']}")

        await asyncio.to_thread(pull)
