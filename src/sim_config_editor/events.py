"""运行流与文件变更流的事件模型。

推送给浏览器的每条消息都是这里的一个模型，经 ``to_wire()`` 序列化后由事件流
通道封装成 ``data: <json>\\n\\n`` 帧。

运行流的顺序：一个 ``started``，零或多个 ``output``，最后恰好一个终止事件
``done`` 或 ``error``。文件变更流先发一次 ``connected``，之后是 ``fileChanged``。
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

__all__ = [
    "StreamEvent",
    "StartedEvent",
    "OutputEvent",
    "DoneEvent",
    "ErrorEvent",
    "FileChangedEvent",
    "ConnectedEvent",
    "RunRequest",
]


class StreamEvent(BaseModel):
    """所有推送事件的基类。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: str

    def to_wire(self) -> dict[str, Any]:
        """返回发送给客户端的 JSON 载荷。"""
        return self.model_dump()


class StartedEvent(StreamEvent):
    type: Literal["started"] = "started"


class OutputEvent(StreamEvent):
    """一段原始进程输出（stdout 或 stderr，不做区分）。"""

    type: Literal["output"] = "output"
    data: str


class DoneEvent(StreamEvent):
    """进程结束。被信号终止时 ``code`` 为 None。

    只有被信号终止时载荷中才包含 ``signal``。
    """

    type: Literal["done"] = "done"
    code: int | None = None
    signal: str | None = None
    output: str = ""

    def to_wire(self) -> dict[str, Any]:
        if self.signal is None:
            return self.model_dump(exclude={"signal"})
        return self.model_dump()


class ErrorEvent(StreamEvent):
    type: Literal["error"] = "error"
    error: str


class FileChangedEvent(StreamEvent):
    type: Literal["fileChanged"] = "fileChanged"
    filename: str


class ConnectedEvent(StreamEvent):
    type: Literal["connected"] = "connected"


class RunRequest(BaseModel):
    """已校验的运行请求：对一个配置文件执行外部计算。"""

    model_config = ConfigDict(frozen=True)

    config_identifier: str = Field(min_length=1)

    @field_validator("config_identifier", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value
