import asyncio
import time
from typing import Iterable, List, Optional, Set, Tuple, Union

from polyrun.config import SandboxSettings, config
from polyrun.logger import logger
from polyrun.sandbox.core.demux import DemuxBuffers, demultiplex
from polyrun.sandbox.core.engine import ContainerEngine, DockerEngine, LogStream
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
)
from polyrun.sandbox.core.language import ContainerSpec, LanguageDescriptor
from polyrun.sandbox.core.limits import default_limits
from polyrun.sandbox.core.registry import LanguageRegistry, default_registry
from polyrun.schema import ExecutionResult


class SandboxRunner:
    """沙箱运行器。
        为每次运行创建一个一次性容器，注入源代码，启动并收集输出，
        无论成功与否都会强制删除容器。
        属性：
        engine：容器引擎。
        registry：语言注册表。
        settings：沙箱配置。
    """

    def __init__(
        self,
        engine: Optional[ContainerEngine] = None,
        registry: Optional[LanguageRegistry] = None,
        settings: Optional[SandboxSettings] = None,
    ):
        """初始化运行器。
        参数：
        engine：容器引擎。如果为None，则连接本地 Docker。
        registry：语言注册表。如果为None，则使用内置语言。
        settings：沙箱配置。如果为None，则使用全局配置。
        """
        self.engine = engine or DockerEngine()
        self.registry = registry if registry is not None else default_registry()
        self.settings = settings or config.sandbox
        self._abandoned: Set[asyncio.Task] = set()

    def list_languages(self) -> List[str]:
        return self.registry.names()

    def find_language_by_name(self, name: str) -> Optional[LanguageDescriptor]:
        return self.registry.find(name)

    def find_language_by_extension(self, path: str) -> Optional[LanguageDescriptor]:
        return self.registry.find_by_extension(path)

    def resolve(self, language: Union[str, LanguageDescriptor]) -> LanguageDescriptor:
        if isinstance(language, LanguageDescriptor):
            return language
        descriptor = self.registry.find(language)
        if descriptor is None:
            raise LanguageNotSupportedError(language)
        return descriptor

    async def ensure_language(self, name: str, descriptor: LanguageDescriptor) -> None:
        """在运行时添加语言：拉取基础镜像，成功后注册。
        参数：
            name：注册名称。
            descriptor：语言描述符。
        异常：
            ProvisioningError：如果镜像拉取失败。
        """
        if self.registry.find(name) == descriptor:
            logger.debug(f"Language {name!r} already provisioned")
            return
        await self.registry.register_and_provision(name, descriptor, self.engine)

    async def prepare_images(self, names: Optional[Iterable[str]] = None) -> None:
        """Pulls the images of registered languages, all of them by default."""
        for name in names if names is not None else self.registry.names():
            descriptor = self.resolve(name)
            logger.info(f"Pulling image {descriptor.image}")
            try:
                await self.engine.pull_image(descriptor.image)
            except ProvisioningError:
                raise
            except Exception as e:
                raise ProvisioningError(
                    f"failed to pull image {descriptor.image}: {e}"
                ) from e

    async def run(
        self,
        language: Union[str, LanguageDescriptor],
        source: str,
        timeout: Optional[float] = None,
    ) -> ExecutionResult:
        """在沙箱中运行源代码。
        参数：
            language：语言描述符或注册名称。
            source：要运行的源代码。
            timeout：整个运行的截止时间（秒），None 表示不限制。
        返回：
            包含 stdout、stderr 和退出码的 ExecutionResult。
        异常：
            LanguageNotSupportedError：如果语言未注册。
            SandboxTimeoutError：如果超过截止时间。
            SandboxError：其他运行失败。
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        descriptor = self.resolve(language)
        spec = descriptor.build_spec(source, default_limits(self.settings))

        # 创建放在独立任务中，被取消或超时后仍能拿到容器ID并删除
        creation = asyncio.ensure_future(self._create_container(spec))
        container_id: Optional[str] = None
        error: Optional[BaseException] = None
        try:
            deadline_scope = asyncio.timeout_at(deadline)
            try:
                async with deadline_scope:
                    container_id = await asyncio.shield(creation)
                    logger.info(
                        f"Running {descriptor.name} program in container {container_id[:12]}"
                    )
                    return await self._execute(container_id, spec)
            except TimeoutError as e:
                if not deadline_scope.expired():
                    raise
                raise SandboxTimeoutError(
                    f"execution timed out after {timeout} seconds"
                ) from e
        except BaseException as e:
            error = e
            raise
        finally:
            if container_id is None and creation.done() and not creation.cancelled():
                if creation.exception() is None:
                    container_id = creation.result()
            if container_id is not None:
                await self._cleanup(container_id, error)
            elif not creation.done():
                self._remove_when_created(creation)

    async def _create_container(self, spec: ContainerSpec) -> str:
        try:
            return await self.engine.create_container(spec)
        except SandboxError:
            raise
        except Exception as e:
            raise ContainerCreationError(f"failed to create container: {e}") from e

    def _remove_when_created(self, creation: asyncio.Future) -> None:
        """Schedules removal of a container whose creation outlived the run."""
        task = asyncio.ensure_future(self._remove_abandoned(creation))
        self._abandoned.add(task)
        task.add_done_callback(self._abandoned.discard)

    async def _remove_abandoned(self, creation: asyncio.Future) -> None:
        try:
            container_id = await creation
        except Exception as e:
            logger.debug(f"Abandoned container creation failed: {e}")
            return
        logger.info(f"Removing container {container_id[:12]} created after the run ended")
        try:
            await asyncio.wait_for(
                self.engine.remove_container(container_id), self.settings.cleanup_timeout
            )
        except Exception as e:
            logger.warning(f"Failed to remove abandoned container {container_id[:12]}: {e}")

    async def _execute(self, container_id: str, spec: ContainerSpec) -> ExecutionResult:
        try:
            await self.engine.copy_archive(
                container_id, spec.work_dir, spec.source_archive()
            )
        except SandboxError:
            raise
        except Exception as e:
            raise SourceInjectionError(f"failed to copy source code: {e}") from e

        # 启动前记录 since，避免丢失最早的输出
        since = time.time() - self.settings.since_lookback

        try:
            await self.engine.start_container(container_id)
        except SandboxError:
            raise
        except Exception as e:
            raise ContainerStartError(f"failed to start container: {e}") from e

        try:
            stream = await self.engine.stream_logs(container_id, since)
        except SandboxError:
            raise
        except Exception as e:
            raise LogStreamError(f"failed to get logs: {e}") from e

        buffers = DemuxBuffers(self.settings.max_output_length)
        log_task = asyncio.create_task(
            asyncio.to_thread(demultiplex, stream, buffers.max_length, buffers)
        )
        wait_task = asyncio.create_task(self.engine.wait_container(container_id))
        try:
            exit_status = await self._wait_for_exit(log_task, wait_task)
            stdout, stderr = await self._drain_logs(log_task, stream, buffers)
        finally:
            stream.close()
            for task in (log_task, wait_task):
                if not task.done():
                    task.cancel()

        logger.info(f"Container {container_id[:12]} exited with status {exit_status}")
        return ExecutionResult(stdout=stdout, stderr=stderr, exit_status=exit_status)

    @staticmethod
    async def _wait_for_exit(log_task: asyncio.Task, wait_task: asyncio.Task) -> int:
        """Waits for the exit code, failing early if demultiplexing fails."""
        pending = {log_task, wait_task}
        while wait_task in pending:
            done, pending = await asyncio.wait(
                pending, return_when=asyncio.FIRST_COMPLETED
            )
            if log_task in done:
                # 日志流出错时立即结束，不返回部分输出
                log_task.result()

        try:
            return wait_task.result()
        except SandboxError:
            raise
        except Exception as e:
            raise ContainerWaitError(f"failed to wait for container: {e}") from e

    async def _drain_logs(
        self, log_task: asyncio.Task, stream: LogStream, buffers: DemuxBuffers
    ) -> Tuple[bytes, bytes]:
        """Gives the log stream a bounded grace period to flush after exit."""
        if not log_task.done():
            done, _ = await asyncio.wait(
                {log_task}, timeout=self.settings.log_drain_timeout
            )
            if not done:
                logger.debug("Log stream still open after exit, returning captured output")
                stream.close()
                return buffers.snapshot()
        return log_task.result()

    async def _cleanup(self, container_id: str, error: Optional[BaseException]) -> None:
        """强制删除容器，使用独立于调用方截止时间的超时。
        参数：
            container_id：容器ID。
            error：运行中已发生的错误，存在时删除失败只记录日志。
        异常：
            CleanupError：如果运行成功但删除失败。
        """
        try:
            await asyncio.wait_for(
                asyncio.shield(self.engine.remove_container(container_id)),
                self.settings.cleanup_timeout,
            )
        except Exception as e:
            if error is None:
                raise CleanupError(
                    f"failed to remove container {container_id[:12]}: {e}"
                ) from e
            logger.warning(
                f"Failed to remove container {container_id[:12]} after {type(error).__name__}: {e}"
            )
