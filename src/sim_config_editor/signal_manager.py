"""信号管理模块。

把进程信号翻译成对运行会话的操作：
- SIGINT: 按 SCE_SIGINT_MODE 决定取消运行还是关闭服务器
- SIGTERM: 取消全部运行后关闭服务器

在双击窗口（SCE_SIGINT_DOUBLE_TAP_WINDOW）内连续两次 SIGINT 视为强制退出，
由 run_server() 在清理完成后以退出码 130 结束进程。
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from typing import Callable, Optional

from .config import SigintMode, get_config
from .orchestrator import RunRegistry

__all__ = ["SignalManager", "SigintMode"]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"


class SignalManager:
    """信号管理器。

    Example:
        ```python
        manager = SignalManager(registry)
        await manager.start()
        try:
            await manager.wait_for_shutdown()
        finally:
            await manager.stop()
        ```

    Attributes:
        registry: 运行注册表
        sigint_mode: SIGINT 处理模式
        double_tap_window: 双击退出窗口时间（秒）
    """

    def __init__(
        self,
        registry: RunRegistry,
        sigint_mode: Optional[SigintMode] = None,
        double_tap_window: Optional[float] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        config = get_config()
        self.registry = registry
        self.sigint_mode = config.sigint_mode if sigint_mode is None else sigint_mode
        self.double_tap_window = (
            config.sigint_double_tap_window if double_tap_window is None else double_tap_window
        )
        self._on_shutdown = on_shutdown

        self._sigint_policies: dict[SigintMode, Callable[[], None]] = {
            SigintMode.EXIT: self._sigint_exit,
            SigintMode.CANCEL: self._sigint_cancel,
            SigintMode.CANCEL_THEN_EXIT: self._sigint_cancel_then_exit,
        }

        self._last_sigint: float | None = None
        self._shutdown_requested = False
        self._force_exit = False
        self._shutdown_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous_sigint = None
        self._running = False

    @property
    def is_shutdown_requested(self) -> bool:
        return self._shutdown_requested

    @property
    def is_force_exit(self) -> bool:
        """是否在双击窗口内收到第二次 SIGINT。"""
        return self._force_exit

    # ── 生命周期 ──

    async def start(self) -> None:
        """安装信号处理器（需在事件循环内调用）。"""
        if self._running:
            logger.warning("SignalManager already running")
            return
        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._running = True
        if IS_WINDOWS:
            self._install_windows()
        else:
            self._install_posix()

    async def stop(self) -> None:
        """移除信号处理器。"""
        if not self._running:
            return
        self._running = False
        if IS_WINDOWS:
            self._uninstall_windows()
        else:
            self._uninstall_posix()
        logger.debug("Signal handlers removed")

    async def wait_for_shutdown(self) -> None:
        if self._shutdown_event is not None:
            await self._shutdown_event.wait()

    def _install_posix(self) -> None:
        assert self._loop is not None
        self._loop.add_signal_handler(signal.SIGINT, self._handle_sigint)
        self._loop.add_signal_handler(signal.SIGTERM, self._handle_sigterm)
        logger.debug(
            f"Signal handlers installed (mode={self.sigint_mode.value}, "
            f"double_tap_window={self.double_tap_window}s)"
        )

    def _uninstall_posix(self) -> None:
        if self._loop is None:
            return
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                self._loop.remove_signal_handler(sig)
            except (ValueError, RuntimeError) as e:
                logger.debug(f"Error removing handler for {sig.name}: {e}")

    def _install_windows(self) -> None:
        # Windows 没有 add_signal_handler：在信号线程里转投到事件循环
        loop = self._loop
        assert loop is not None
        self._previous_sigint = signal.signal(
            signal.SIGINT,
            lambda signum, frame: loop.call_soon_threadsafe(self._handle_sigint),
        )
        logger.debug(f"SIGINT handler installed on Windows (mode={self.sigint_mode.value})")

    def _uninstall_windows(self) -> None:
        if self._previous_sigint is None:
            return
        try:
            signal.signal(signal.SIGINT, self._previous_sigint)
        except (ValueError, OSError) as e:
            logger.debug(f"Error restoring SIGINT handler: {e}")

    # ── 信号处理 ──

    def _handle_sigint(self) -> None:
        now = time.monotonic()
        double_tap = (
            self._shutdown_requested
            and self._last_sigint is not None
            and now - self._last_sigint < self.double_tap_window
        )
        self._last_sigint = now

        if double_tap:
            logger.warning("Double SIGINT detected, forcing shutdown")
            self._force_shutdown()
            return
        self._sigint_policies[self.sigint_mode]()

    def _sigint_exit(self) -> None:
        logger.info("SIGINT received (mode=exit), requesting shutdown")
        self._request_shutdown()

    def _sigint_cancel(self) -> None:
        if not self.registry.has_active_runs():
            logger.info("SIGINT received (mode=cancel), no active runs, requesting shutdown")
            self._request_shutdown()
            return
        count = self.registry.cancel_all()
        logger.info(f"SIGINT received (mode=cancel), cancelled {count} run(s)")

    def _sigint_cancel_then_exit(self) -> None:
        if not self.registry.has_active_runs():
            logger.info("SIGINT received (mode=cancel_then_exit), no active runs, requesting shutdown")
            self._request_shutdown()
            return
        count = self.registry.cancel_all()
        # 只记录意图，第二次 SIGINT 才真正退出
        self._shutdown_requested = True
        logger.info(
            f"SIGINT received (mode=cancel_then_exit), cancelled {count} run(s). "
            f"Press Ctrl+C again within {self.double_tap_window}s to exit."
        )

    def _handle_sigterm(self) -> None:
        logger.info("SIGTERM received, initiating graceful shutdown")
        self.request_graceful_shutdown()

    def request_graceful_shutdown(self) -> None:
        """取消所有运行并请求关闭（SIGTERM 或程序内调用）。"""
        self._cancel_runs("Graceful shutdown")
        self._request_shutdown()

    def _force_shutdown(self) -> None:
        self._force_exit = True
        self._cancel_runs("Force shutdown")
        self._request_shutdown()

    def _cancel_runs(self, reason: str) -> int:
        if not self.registry.has_active_runs():
            return 0
        count = self.registry.cancel_all()
        logger.info(f"{reason}: cancelled {count} run(s)")
        return count

    def _request_shutdown(self) -> None:
        self._shutdown_requested = True
        if self._on_shutdown is not None:
            try:
                self._on_shutdown()
            except Exception as e:
                logger.warning(f"Error in shutdown callback: {e}")
        if self._shutdown_event is not None and self._loop is not None:
            self._loop.call_soon_threadsafe(self._shutdown_event.set)
