from typing import List

from pydantic import BaseModel, Field


class ExecutionResult(BaseModel):
    """一次沙箱运行的结果"""

    # 捕获的标准输出，最多 max_output_length 字节
    stdout: bytes = Field(default=b"")
    # 捕获的标准错误，独立计数
    stderr: bytes = Field(default=b"")
    # 程序退出码
    exit_status: int = Field(default=0)

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")


class ExecuteRequest(BaseModel):
    """/execute/sync 请求体"""

    code: str = Field(..., description="Source code to run")
    language: str = Field(..., description="Registered language name")


class ExecuteResponse(BaseModel):
    """/execute/sync 响应体"""

    stdout: str
    stderr: str
    exit_status: int

    @classmethod
    def from_result(cls, result: ExecutionResult) -> "ExecuteResponse":
        return cls(
            stdout=result.stdout_text,
            stderr=result.stderr_text,
            exit_status=result.exit_status,
        )


class LanguagesResponse(BaseModel):
    languages: List[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error: str
