import os
import threading
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional

from polyrun.logger import logger
from polyrun.sandbox.core.exceptions import ProvisioningError
from polyrun.sandbox.core.language import LanguageDescriptor, builtin_languages

if TYPE_CHECKING:
    from polyrun.sandbox.core.engine import ContainerEngine


class LanguageRegistry:
    """Name-keyed collection of language descriptors.

    Lookups read a snapshot of the mapping; registration is serialized with a
    lock so it can race with concurrent runs.
    """

    def __init__(self, languages: Optional[Dict[str, LanguageDescriptor]] = None):
        self._languages: Dict[str, LanguageDescriptor] = dict(languages or {})
        self._lock = threading.Lock()

    def register(self, name: str, descriptor: LanguageDescriptor) -> None:
        """Inserts or replaces the descriptor stored under ``name``."""
        with self._lock:
            languages = dict(self._languages)
            languages[name] = descriptor
            self._languages = languages

    async def register_and_provision(
        self, name: str, descriptor: LanguageDescriptor, engine: "ContainerEngine"
    ) -> None:
        """拉取描述符的基础镜像，成功后再注册。
        参数：
            name：注册名称。
            descriptor：语言描述符。
            engine：用于拉取镜像的容器引擎。
        异常：
            ProvisioningError：如果镜像拉取失败。
        """
        logger.info(f"Pulling image {descriptor.image} for language {name!r}")
        try:
            await engine.pull_image(descriptor.image)
        except ProvisioningError:
            raise
        except Exception as e:
            raise ProvisioningError(
                f"failed to pull image {descriptor.image}: {e}"
            ) from e
        self.register(name, descriptor)
        logger.info(f"Language {name!r} registered")

    def find(self, name: str) -> Optional[LanguageDescriptor]:
        return self._languages.get(name)

    def find_by_extension(self, path: str) -> Optional[LanguageDescriptor]:
        """Returns the first descriptor recognizing the extension of ``path``."""
        ext = os.path.splitext(path)[1]
        if not ext:
            return None
        for descriptor in self._languages.values():
            if ext in descriptor.extensions:
                return descriptor
        return None

    def names(self) -> List[str]:
        return sorted(self._languages)

    def __contains__(self, name: str) -> bool:
        return name in self._languages

    def __len__(self) -> int:
        return len(self._languages)

    def __iter__(self) -> Iterator[LanguageDescriptor]:
        return iter(list(self._languages.values()))


def default_registry() -> LanguageRegistry:
    """Builds a fresh registry seeded with the built-in languages."""
    return LanguageRegistry(builtin_languages())
