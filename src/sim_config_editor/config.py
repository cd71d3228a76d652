"""SCE 环境变量配置管理。

环境变量:
    SCE_HOST: 监听地址 (默认 127.0.0.1)
    SCE_PORT: 监听端口 (默认 3000)

    SCE_CONFIG_DIR: 配置文件目录 (默认 ./configs)
    SCE_STATIC_DIR: 前端静态文件目录 (未设置则不提供静态页面)

    SCE_RUNNER: 运行器命令，按 shell 规则分割，配置文件名作为最后一个参数追加
        - 默认 "node cli.js"
    SCE_RUNNER_CWD: 运行器工作目录 (默认为配置目录的上级目录)
    SCE_RUNNER_ARTIFACT: 启动前必须存在的构建产物
        - 未设置时，若运行器第二个参数以 .js 结尾则取该文件
        - 设为空字符串则跳过检查

    SCE_RUN_TIMEOUT: 单次运行超时（秒），默认 300，限制在 1-86400
    SCE_HEARTBEAT_INTERVAL: SSE 心跳间隔（秒），默认 30，限制在 1-3600
    SCE_DEBOUNCE_MS: 文件监听去抖时间（毫秒），默认 100
    SCE_WATCH_INTERVAL: 文件轮询间隔（秒），默认 0.5

    SCE_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)

    SCE_SIGINT_MODE: SIGINT (Ctrl+C) 处理模式
        - cancel = 取消活动运行（无活动运行则退出）(默认)
        - exit = 直接退出进程
        - cancel_then_exit = 先取消运行，第二次才退出

    SCE_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间（秒）
        - 默认 1.0 秒
"""

from __future__ import annotations

import os
import shlex
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config", "SigintMode"]

DEFAULT_RUNNER = "node cli.js"


class SigintMode(Enum):
    """SIGINT 处理模式。

    - CANCEL: 只取消活动运行，不退出（如果没有活动运行则退出）
    - EXIT: 直接退出进程
    - CANCEL_THEN_EXIT: 先取消运行，第二次 SIGINT 才退出
    """

    CANCEL = "cancel"
    EXIT = "exit"
    CANCEL_THEN_EXIT = "cancel_then_exit"

    @classmethod
    def from_string(cls, value: str) -> "SigintMode":
        """从字符串解析模式，无效值返回 CANCEL。"""
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.CANCEL


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(value: str | None, default: float, low: float, high: float) -> float:
    """解析浮点数环境变量，并限制在 [low, high] 范围内。"""
    if not value:
        return default
    try:
        number = float(value)
    except ValueError:
        return default
    return max(low, min(number, high))


def _parse_port(value: str | None, default: int = 3000) -> int:
    if not value:
        return default
    try:
        port = int(value)
    except ValueError:
        return default
    return port if 0 <= port <= 65535 else default


def _parse_runner(value: str | None) -> list[str]:
    """解析运行器命令。"""
    if not value or not value.strip():
        value = DEFAULT_RUNNER
    return shlex.split(value)


def _default_artifact(runner: list[str], cwd: Path) -> Path | None:
    """推断运行器的构建产物（如 node cli.js 中的 cli.js）。"""
    if len(runner) >= 2 and runner[1].endswith(".js"):
        return (cwd / runner[1]).resolve()
    return None


@dataclass
class Config:
    """SCE 配置。

    Attributes:
        host: 监听地址
        port: 监听端口
        config_dir: 配置文件目录
        static_dir: 前端静态文件目录
        runner: 运行器命令（不含配置文件名）
        runner_cwd: 运行器工作目录
        runner_artifact: 启动前必须存在的构建产物
        run_timeout: 单次运行超时（秒）
        heartbeat_interval: SSE 心跳间隔（秒）
        debounce: 文件监听去抖时间（秒）
        watch_interval: 文件轮询间隔（秒）
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
        sigint_mode: SIGINT 处理模式
        sigint_double_tap_window: 双击退出窗口时间（秒）
    """

    host: str = "127.0.0.1"
    port: int = 3000
    config_dir: Path = field(default_factory=lambda: Path("configs").resolve())
    static_dir: Path | None = None
    runner: list[str] = field(default_factory=lambda: shlex.split(DEFAULT_RUNNER))
    runner_cwd: Path = field(default_factory=lambda: Path.cwd())
    runner_artifact: Path | None = None
    run_timeout: float = 300.0
    heartbeat_interval: float = 30.0
    debounce: float = 0.1
    watch_interval: float = 0.5
    log_debug: bool = False
    log_file: str | None = None
    sigint_mode: SigintMode = SigintMode.CANCEL
    sigint_double_tap_window: float = 1.0

    def __repr__(self) -> str:
        return (
            f"Config(host={self.host}, "
            f"port={self.port}, "
            f"config_dir={self.config_dir}, "
            f"static_dir={self.static_dir}, "
            f"runner={' '.join(self.runner)}, "
            f"runner_cwd={self.runner_cwd}, "
            f"run_timeout={self.run_timeout}, "
            f"heartbeat_interval={self.heartbeat_interval}, "
            f"debounce={self.debounce}, "
            f"log_debug={self.log_debug}, "
            f"sigint_mode={self.sigint_mode.value})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径（系统临时目录下的 sim-config-editor 子目录）。"""
    log_dir = Path(tempfile.gettempdir()) / "sim-config-editor"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"sce_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    env = os.environ
    log_debug = _parse_bool(env.get("SCE_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    config_dir = Path(env.get("SCE_CONFIG_DIR") or "configs").expanduser().resolve()
    static_value = env.get("SCE_STATIC_DIR")
    static_dir = Path(static_value).expanduser().resolve() if static_value else None

    runner = _parse_runner(env.get("SCE_RUNNER"))
    cwd_value = env.get("SCE_RUNNER_CWD")
    runner_cwd = Path(cwd_value).expanduser().resolve() if cwd_value else config_dir.parent

    artifact_value = env.get("SCE_RUNNER_ARTIFACT")
    if artifact_value is None:
        runner_artifact = _default_artifact(runner, runner_cwd)
    elif artifact_value.strip():
        runner_artifact = (runner_cwd / artifact_value).resolve()
    else:
        runner_artifact = None

    sigint_value = env.get("SCE_SIGINT_MODE")

    return Config(
        host=env.get("SCE_HOST") or "127.0.0.1",
        port=_parse_port(env.get("SCE_PORT")),
        config_dir=config_dir,
        static_dir=static_dir,
        runner=runner,
        runner_cwd=runner_cwd,
        runner_artifact=runner_artifact,
        run_timeout=_parse_float(env.get("SCE_RUN_TIMEOUT"), 300.0, 1.0, 86400.0),
        heartbeat_interval=_parse_float(env.get("SCE_HEARTBEAT_INTERVAL"), 30.0, 1.0, 3600.0),
        debounce=_parse_float(env.get("SCE_DEBOUNCE_MS"), 100.0, 0.0, 10000.0) / 1000.0,
        watch_interval=_parse_float(env.get("SCE_WATCH_INTERVAL"), 0.5, 0.05, 60.0),
        log_debug=log_debug,
        log_file=log_file,
        sigint_mode=SigintMode.from_string(sigint_value) if sigint_value else SigintMode.CANCEL,
        sigint_double_tap_window=_parse_float(
            env.get("SCE_SIGINT_DOUBLE_TAP_WINDOW"), 1.0, 0.1, 10.0
        ),
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
