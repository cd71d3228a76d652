"""SignalManager 模块测试。

测试信号管理器的基本功能：
- 信号处理策略
- 配置支持
- 双击退出
"""

from __future__ import annotations

import asyncio
import os
import sys
from unittest import mock

import pytest

from sim_config_editor.config import SigintMode, reload_config
from sim_config_editor.orchestrator import RunRegistry
from sim_config_editor.signal_manager import SignalManager


def registry_with_run() -> tuple[RunRegistry, mock.MagicMock]:
    registry = RunRegistry()
    task = mock.MagicMock(spec=asyncio.Task)
    task.done.return_value = False
    registry.register("run-1", "demo.json", task)
    return registry, task


def prepared(manager: SignalManager) -> SignalManager:
    """模拟 start() 之后的状态，不安装真实信号处理器。"""
    manager._shutdown_event = asyncio.Event()
    manager._loop = mock.MagicMock()
    return manager


class TestSigintMode:
    """SigintMode 枚举测试。"""

    def test_from_string_valid(self):
        assert SigintMode.from_string("cancel") == SigintMode.CANCEL
        assert SigintMode.from_string("exit") == SigintMode.EXIT
        assert SigintMode.from_string("cancel_then_exit") == SigintMode.CANCEL_THEN_EXIT

    def test_from_string_case_insensitive(self):
        assert SigintMode.from_string("CANCEL") == SigintMode.CANCEL
        assert SigintMode.from_string(" Exit ") == SigintMode.EXIT

    def test_from_string_invalid(self):
        """无效字符串返回默认值 CANCEL。"""
        assert SigintMode.from_string("invalid") == SigintMode.CANCEL
        assert SigintMode.from_string("") == SigintMode.CANCEL


class TestSignalManagerInit:
    """SignalManager 初始化测试。"""

    def test_init_with_defaults(self):
        """使用默认配置初始化。"""
        env = {k: v for k, v in os.environ.items() if not k.startswith("SCE_SIGINT")}
        with mock.patch.dict(os.environ, env, clear=True):
            reload_config()
            manager = SignalManager(RunRegistry())

        assert manager.sigint_mode == SigintMode.CANCEL
        assert manager.double_tap_window == 1.0

    def test_init_from_env(self):
        with mock.patch.dict(os.environ, {"SCE_SIGINT_MODE": "exit"}, clear=False):
            reload_config()
            manager = SignalManager(RunRegistry())
        reload_config()

        assert manager.sigint_mode == SigintMode.EXIT

    def test_init_with_custom_values(self):
        registry = RunRegistry()
        manager = SignalManager(registry, sigint_mode=SigintMode.EXIT, double_tap_window=2.0)

        assert manager.registry is registry
        assert manager.sigint_mode == SigintMode.EXIT
        assert manager.double_tap_window == 2.0


class TestSigintCancel:
    """CANCEL 模式测试。"""

    def test_sigint_with_active_runs_cancels_all(self):
        """有活动运行时 SIGINT 取消所有运行，不退出。"""
        registry, task = registry_with_run()
        manager = prepared(SignalManager(registry, sigint_mode=SigintMode.CANCEL))

        manager._handle_sigint()

        task.cancel.assert_called_once()
        assert manager.is_shutdown_requested is False

    def test_sigint_without_active_runs_shuts_down(self):
        manager = prepared(SignalManager(RunRegistry(), sigint_mode=SigintMode.CANCEL))

        manager._handle_sigint()

        assert manager.is_shutdown_requested is True
        manager._loop.call_soon_threadsafe.assert_called_once_with(manager._shutdown_event.set)


class TestSigintExit:
    """EXIT 模式测试。"""

    def test_sigint_always_shuts_down(self):
        """EXIT 模式下 SIGINT 始终请求关闭，运行不被取消。"""
        registry, task = registry_with_run()
        manager = prepared(SignalManager(registry, sigint_mode=SigintMode.EXIT))

        manager._handle_sigint()

        assert manager.is_shutdown_requested is True
        task.cancel.assert_not_called()


class TestSigintCancelThenExit:
    """CANCEL_THEN_EXIT 模式测试。"""

    def test_first_sigint_cancels(self):
        registry, task = registry_with_run()
        manager = prepared(
            SignalManager(registry, sigint_mode=SigintMode.CANCEL_THEN_EXIT, double_tap_window=1.0)
        )

        manager._handle_sigint()

        task.cancel.assert_called_once()
        assert manager._shutdown_requested is True
        manager._loop.call_soon_threadsafe.assert_not_called()

    def test_second_sigint_within_window_forces_exit(self):
        registry, _ = registry_with_run()
        manager = prepared(
            SignalManager(registry, sigint_mode=SigintMode.CANCEL_THEN_EXIT, double_tap_window=5.0)
        )

        manager._handle_sigint()
        manager._handle_sigint()

        assert manager.is_force_exit is True
        manager._loop.call_soon_threadsafe.assert_called()


class TestSigterm:
    """SIGTERM 测试。"""

    def test_sigterm_cancels_all_and_shuts_down(self):
        registry, task = registry_with_run()
        manager = prepared(SignalManager(registry))

        manager._handle_sigterm()

        task.cancel.assert_called_once()
        assert manager.is_shutdown_requested is True
        assert manager.is_force_exit is False


class TestCallbacks:
    """回调测试。"""

    def test_on_shutdown_callback(self):
        callback = mock.MagicMock()
        manager = prepared(
            SignalManager(RunRegistry(), sigint_mode=SigintMode.EXIT, on_shutdown=callback)
        )

        manager._handle_sigint()

        callback.assert_called_once()

    def test_failing_callback_still_shuts_down(self):
        callback = mock.MagicMock(side_effect=RuntimeError("boom"))
        manager = prepared(
            SignalManager(RunRegistry(), sigint_mode=SigintMode.EXIT, on_shutdown=callback)
        )

        manager._handle_sigint()

        assert manager.is_shutdown_requested is True
        manager._loop.call_soon_threadsafe.assert_called_once()


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signal handling")
class TestStartStop:
    """启动/停止测试（仅 POSIX）。"""

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        manager = SignalManager(RunRegistry())

        await manager.start()
        assert manager._running is True
        assert manager._loop is not None

        await manager.stop()
        assert manager._running is False

    @pytest.mark.asyncio
    async def test_wait_for_shutdown(self):
        manager = SignalManager(RunRegistry(), sigint_mode=SigintMode.EXIT)
        await manager.start()
        try:
            manager.request_graceful_shutdown()
            await asyncio.wait_for(manager.wait_for_shutdown(), timeout=2)
        finally:
            await manager.stop()

        assert manager.is_shutdown_requested is True
