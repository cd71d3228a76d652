"""运行编排与管理模块。

提供运行级别的隔离和管理：
- RunRegistry: 活动运行会话的登记和管理
- 服务器关闭或 SIGINT 时批量取消运行

每个运行会话对应一个 HTTP 连接所在的 asyncio Task，取消 Task 即走与
客户端断开相同的清理路径（终止子进程、关闭事件流）。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

__all__ = ["RunRegistry", "RunInfo"]

logger = logging.getLogger(__name__)


@dataclass
class RunInfo:
    """活动运行的信息。

    Attributes:
        session_id: 运行会话 ID
        config_identifier: 运行的配置文件名
        task: 处理该运行的 asyncio Task
        created_at: 创建时间
    """

    session_id: str
    config_identifier: str
    task: asyncio.Task
    created_at: datetime = field(default_factory=datetime.now)

    def __repr__(self) -> str:
        elapsed = (datetime.now() - self.created_at).total_seconds()
        status = "running" if not self.task.done() else "done"
        return (
            f"RunInfo(id={self.session_id[:8]}..., "
            f"config={self.config_identifier}, "
            f"status={status}, "
            f"elapsed={elapsed:.1f}s)"
        )


class RunRegistry:
    """活动运行的注册表。

    线程安全：所有操作都是同步的，由调用方保证在同一个事件循环中调用。

    Example:
        ```python
        registry = RunRegistry()
        registry.register(session.session_id, "demo.json", asyncio.current_task())
        try:
            await session.run()
        finally:
            registry.unregister(session.session_id)
        ```
    """

    def __init__(self) -> None:
        self._runs: Dict[str, RunInfo] = {}

    def register(
        self,
        session_id: str,
        config_identifier: str,
        task: asyncio.Task,
    ) -> None:
        """登记新运行。

        Raises:
            ValueError: 如果 session_id 已存在
        """
        if session_id in self._runs:
            raise ValueError(f"Run {session_id} already registered")

        info = RunInfo(
            session_id=session_id,
            config_identifier=config_identifier,
            task=task,
        )
        self._runs[session_id] = info
        logger.debug(f"Registered run: {info}")

    def unregister(self, session_id: str) -> bool:
        """注销运行。

        Returns:
            是否成功注销（运行存在则返回 True）
        """
        if session_id not in self._runs:
            return False

        info = self._runs.pop(session_id)
        logger.debug(f"Unregistered run: {info}")
        return True

    def get(self, session_id: str) -> Optional[RunInfo]:
        return self._runs.get(session_id)

    def cancel(self, session_id: str) -> bool:
        """取消指定运行。

        Returns:
            是否成功发起取消（运行存在且未完成则返回 True）
        """
        info = self._runs.get(session_id)
        if info and not info.task.done():
            info.task.cancel()
            logger.info(f"Cancelled run: {info}")
            return True
        return False

    def cancel_all(self) -> int:
        """取消所有活动运行，返回成功发起取消的数量。"""
        cancelled = 0
        for info in list(self._runs.values()):
            if not info.task.done():
                info.task.cancel()
                logger.info(f"Cancelled run: {info}")
                cancelled += 1

        if cancelled > 0:
            logger.info(f"Cancelled {cancelled} active run(s)")

        return cancelled

    def has_active_runs(self) -> bool:
        return any(not info.task.done() for info in self._runs.values())

    @property
    def active_count(self) -> int:
        """未完成的运行数量。"""
        return sum(1 for info in self._runs.values() if not info.task.done())

    def list_active(self) -> list[RunInfo]:
        """列出所有活动运行（按创建时间排序）。"""
        active = [info for info in self._runs.values() if not info.task.done()]
        return sorted(active, key=lambda x: x.created_at)

    def __len__(self) -> int:
        return len(self._runs)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._runs
