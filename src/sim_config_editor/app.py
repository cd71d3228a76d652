"""Simulation Config Editor 应用入口。

main() 配置日志后运行 run_server()，直到收到关闭信号。
"""

from __future__ import annotations

import asyncio
import logging
import sys

from .config import Config, get_config
from .orchestrator import RunRegistry
from .server import EditorServer
from .signal_manager import SignalManager

__all__ = ["run_server", "main"]

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# 128 + SIGINT(2)
FORCE_EXIT_CODE = 130


async def run_server() -> None:
    """启动服务器并阻塞到关闭。

    SIGINT 默认只取消活动运行；SIGTERM 或无活动运行时的 SIGINT 关闭服务器。
    """
    config = get_config()
    logger.info(f"Starting Simulation Config Editor: {config}")

    registry = RunRegistry()
    server = EditorServer(config, registry=registry)
    signals = SignalManager(registry=registry)

    try:
        await signals.start()
        port = await server.start()
        logger.info(f"Listening on port {port} (sigint_mode={signals.sigint_mode.value})")
        await signals.wait_for_shutdown()
        logger.info("Shutdown signal received, stopping server...")
    finally:
        # 先停服务器：取消运行、终止子进程、关闭订阅者
        await server.stop()
        await signals.stop()
        logger.info("Cleanup completed")

        if signals.is_force_exit:
            logger.warning(f"Force exit requested, terminating with exit code {FORCE_EXIT_CODE}")
            sys.exit(FORCE_EXIT_CODE)


def _configure_logging(config: Config) -> None:
    """SCE_LOG_DEBUG 时写 DEBUG 到临时文件，否则 INFO 到 stderr。

    第三方库保持 WARNING，只放开 sim_config_editor 命名空间。
    """
    if config.log_debug and config.log_file:
        handler: logging.Handler = logging.FileHandler(config.log_file, encoding="utf-8")
        level = logging.DEBUG
    else:
        handler = logging.StreamHandler(sys.stderr)
        level = logging.INFO
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logging.basicConfig(level=logging.WARNING, handlers=[handler])
    logging.getLogger("sim_config_editor").setLevel(level)

    if config.log_debug and config.log_file:
        print(f"Debug log: {config.log_file}", file=sys.stderr)


def main() -> None:
    """主入口点。"""
    _configure_logging(get_config())
    try:
        asyncio.run(run_server())
    except KeyboardInterrupt:
        # 信号处理器安装前的 Ctrl+C
        sys.exit(FORCE_EXIT_CODE)


if __name__ == "__main__":
    main()
