"""Language descriptors.

A descriptor pairs a language name with the pinned image, the source
filename and the command used to build and run a single-file program.
Descriptors are immutable and never hold a reference to a container.
"""

import io
import tarfile
import time
from typing import Dict, Optional, Tuple

from docker.utils import parse_repository_tag
from pydantic import BaseModel, Field, field_validator

from polyrun.sandbox.core.limits import ResourceLimits, default_limits


class ContainerSpec(BaseModel):
    """Everything the engine needs to create one sandbox container."""

    image: str
    command: Tuple[str, ...]
    work_dir: str
    filename: str
    source: str
    network_disabled: bool = True
    stdin_open: bool = True
    stdin_once: bool = True
    limits: ResourceLimits = Field(default_factory=ResourceLimits)

    class Config:
        frozen = True

    def source_archive(self) -> bytes:
        """Packs the source into a tar archive for upload to ``work_dir``."""
        return build_source_archive(self.filename, self.source)


class LanguageDescriptor(BaseModel):
    """定义语言描述符，继承 BaseModel
    子类可以覆盖 build_spec 以自定义容器规格。
    """

    # 语言名称，注册表中的键
    name: str
    # 固定标签的基础镜像
    image: str
    # 可识别的文件扩展名，仅作参考
    extensions: Tuple[str, ...] = ()
    # 编译（如需要）并运行程序的命令
    command: Tuple[str, ...]
    # 容器内的工作目录
    work_dir: str
    # 注入的源文件名
    filename: str

    class Config:
        frozen = True

    @field_validator("image")
    @classmethod
    def _require_pinned_tag(cls, image: str) -> str:
        _, tag = parse_repository_tag(image)
        if not tag or tag == "latest":
            raise ValueError(f"image must be pinned to an exact tag: {image!r}")
        return image

    @field_validator("extensions")
    @classmethod
    def _normalize_extensions(cls, extensions: Tuple[str, ...]) -> Tuple[str, ...]:
        return tuple(ext if ext.startswith(".") else f".{ext}" for ext in extensions)

    @property
    def base_image(self) -> str:
        return self.image

    def build_spec(
        self, source: str, limits: Optional[ResourceLimits] = None
    ) -> ContainerSpec:
        """根据源代码生成容器规格。
        参数：
            source：用户提交的源代码。
            limits：资源限制，None 时使用默认配置。
        返回：
            ContainerSpec 实例。
        """
        return ContainerSpec(
            image=self.image,
            command=self.command,
            work_dir=self.work_dir,
            filename=self.filename,
            source=source,
            limits=limits or default_limits(),
        )


def build_source_archive(name: str, content: str) -> bytes:
    """Creates an in-memory tar archive holding a single file."""
    data = content.encode("utf-8")
    tar_stream = io.BytesIO()
    with tarfile.open(fileobj=tar_stream, mode="w") as tar:
        tarinfo = tarfile.TarInfo(name=name)
        tarinfo.size = len(data)
        tarinfo.mode = 0o644
        tarinfo.mtime = int(time.time())
        tar.addfile(tarinfo, io.BytesIO(data))
    return tar_stream.getvalue()


GO = LanguageDescriptor(
    name="go",
    image="golang:1.22.5-alpine3.20",
    extensions=(".go",),
    command=("sh", "-c", "go build -o main main.go && ./main"),
    work_dir="/go/src/app",
    filename="main.go",
)

RUBY = LanguageDescriptor(
    name="ruby",
    image="ruby:3.3.4-alpine3.20",
    extensions=(".rb",),
    command=("ruby", "main.rb"),
    work_dir="/usr/src/app",
    filename="main.rb",
)

PYTHON = LanguageDescriptor(
    name="python",
    image="python:3.12.4-alpine3.20",
    extensions=(".py",),
    command=("python", "main.py"),
    work_dir="/usr/src/app",
    filename="main.py",
)

NODE = LanguageDescriptor(
    name="node",
    image="node:20.15.1-alpine3.20",
    extensions=(".js", ".mjs"),
    command=("node", "main.js"),
    work_dir="/usr/src/app",
    filename="main.js",
)

BUILTIN_LANGUAGES: Tuple[LanguageDescriptor, ...] = (GO, RUBY, PYTHON, NODE)


def builtin_languages() -> Dict[str, LanguageDescriptor]:
    """Returns a fresh name-to-descriptor mapping of the built-in languages."""
    return {lang.name: lang for lang in BUILTIN_LANGUAGES}
