"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Callable

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"
FAKE_RUNNER_PATH = FIXTURES_DIR / "fake_runner.py"

from sim_config_editor.events import StreamEvent  # noqa: E402


def fake_runner_argv(*options: str) -> list[str]:
    """运行器命令（不含配置文件名），指向 fake_runner.py。"""
    return [sys.executable, str(FAKE_RUNNER_PATH), *options]


class RecordingChannel:
    """记录所有事件的 Channel 替身。

    disconnect() 模拟客户端断开：之后的 send 返回 False，不记录。
    fail_sends=True 时 send 直接抛出异常（模拟写入故障）。
    gone_on_open=True 时 open 后通道即已关闭（模拟发送响应头前客户端已断开）。
    """

    def __init__(self, *, fail_sends: bool = False, gone_on_open: bool = False) -> None:
        self.events: list[dict[str, Any]] = []
        self.opened = False
        self.close_calls = 0
        self.fail_sends = fail_sends
        self.gone_on_open = gone_on_open
        self._closed = False
        self._disconnected = asyncio.Event()
        self._callbacks: list[Callable[[Any], None]] = []

    @property
    def is_open(self) -> bool:
        return self.opened and not self._closed

    async def open(self) -> None:
        self.opened = True
        if self.gone_on_open:
            self._disconnected.set()
            await self.close()

    async def send(self, event: StreamEvent | dict[str, Any]) -> bool:
        if self.fail_sends:
            raise ConnectionResetError("simulated write failure")
        if not self.is_open or self._disconnected.is_set():
            return False
        payload = event.to_wire() if isinstance(event, StreamEvent) else dict(event)
        self.events.append(payload)
        return True

    async def close(self) -> None:
        self.close_calls += 1
        if self._closed:
            return
        self._closed = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self)

    def disconnect(self) -> None:
        self._disconnected.set()

    async def wait_disconnected(self) -> None:
        await self._disconnected.wait()

    def add_close_callback(self, callback: Callable[[Any], None]) -> None:
        if self._closed:
            callback(self)
            return
        self._callbacks.append(callback)

    @property
    def types(self) -> list[str]:
        return [event["type"] for event in self.events]

    @property
    def terminal_events(self) -> list[dict[str, Any]]:
        return [event for event in self.events if event["type"] in ("done", "error")]


@pytest.fixture
def recording_channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    """临时配置目录，包含 demo.json 和示例配置。"""
    directory = tmp_path / "configs"
    directory.mkdir()
    (directory / "demo.json").write_text('{"track": {"distance": 2000}}', encoding="utf-8")
    (directory / "config.example.json").write_text("{}", encoding="utf-8")
    return directory


async def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    """轮询直到 predicate 为真或超时。"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()
