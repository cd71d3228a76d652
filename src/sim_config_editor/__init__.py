"""Simulation Config Editor - 模拟配置编辑与运行服务器。

环境变量:
    SCE_CONFIG_DIR: 配置文件目录 (默认 ./configs)
    SCE_RUNNER: 运行器命令 (默认 "node cli.js")
    SCE_RUN_TIMEOUT: 单次运行超时秒数 (默认 300)

用法:
    sim-config-editor
"""

__version__ = "0.1.0"

from .app import main

__all__ = ["__version__", "main"]
