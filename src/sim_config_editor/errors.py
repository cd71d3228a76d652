"""编辑器服务异常类。

进程级、I/O 级失败都在组件边界被捕获，并转换为终止事件或 HTTP 错误响应。
"""

from __future__ import annotations

__all__ = [
    "EditorError",
    "SpawnError",
    "StreamWriteFailure",
    "NotifyDeliveryFailure",
    "ConfigStoreError",
    "InvalidConfigName",
    "ConfigNotFound",
    "ConfigExists",
]


class EditorError(Exception):
    """编辑器服务基础异常。"""
    pass


class SpawnError(EditorError):
    """子进程无法启动（可执行文件缺失、无权限、运行器未构建）。

    与非零退出码不同：进程从未运行过。

    Attributes:
        argv: 启动命令
        message: 错误消息
    """

    def __init__(self, argv: list[str], message: str) -> None:
        self.argv = list(argv)
        self.message = message
        super().__init__(message)


class StreamWriteFailure(EditorError):
    """向 SSE 响应写入时连接已断开。

    Attributes:
        cause: 底层传输异常
    """

    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(f"stream write failed: {cause!r}")


class NotifyDeliveryFailure(EditorError):
    """广播时单个订阅者投递失败。

    Attributes:
        token: 订阅者标识
        filename: 变更的文件名
        cause: 失败原因（None 表示通道已关闭）
    """

    def __init__(self, token: str, filename: str, cause: BaseException | None = None) -> None:
        self.token = token
        self.filename = filename
        self.cause = cause
        reason = repr(cause) if cause is not None else "channel closed"
        super().__init__(f"failed to deliver change of {filename} to {token}: {reason}")


class ConfigStoreError(EditorError):
    """配置文件存取错误。

    Attributes:
        status: 对应的 HTTP 状态码
    """

    status: int = 500


class InvalidConfigName(ConfigStoreError):
    """配置文件名非法（包含路径分隔符、..、隐藏文件等）。"""

    status = 400


class ConfigNotFound(ConfigStoreError):
    """配置文件不存在。"""

    status = 404


class ConfigExists(ConfigStoreError):
    """目标配置文件已存在。"""

    status = 409
