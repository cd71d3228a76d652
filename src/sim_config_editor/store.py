"""磁盘上的 JSON 配置文件。

配置平铺在一个目录中，按文件名寻址。文件名经过校验，请求无法访问该目录之外的路径。
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from .errors import ConfigExists, ConfigNotFound, ConfigStoreError, InvalidConfigName

__all__ = ["ConfigStore", "EXAMPLE_CONFIG_NAME"]

logger = logging.getLogger(__name__)

EXAMPLE_CONFIG_NAME = "config.example.json"


class ConfigStore:
    """读取、写入、列出和复制 ``config_dir`` 中的配置文件。"""

    def __init__(self, config_dir: Path) -> None:
        self.config_dir = config_dir

    def resolve(self, filename: str) -> Path:
        """把文件名映射为路径，只接受不含路径分隔符的普通文件名。"""
        name = filename.strip() if isinstance(filename, str) else ""
        if (
            not name
            or name in (".", "..")
            or name.startswith(".")
            or "/" in name
            or "\\" in name
            or "\x00" in name
        ):
            raise InvalidConfigName(f"Invalid config file name: {filename!r}")
        return self.config_dir / name

    def list_configs(self) -> list[str]:
        """除示例配置外所有 ``*.json`` 配置的文件名。"""
        try:
            entries = sorted(p.name for p in self.config_dir.iterdir() if p.is_file())
        except OSError as e:
            raise ConfigStoreError(str(e)) from e
        return [
            name for name in entries
            if name.endswith(".json") and name != EXAMPLE_CONFIG_NAME
        ]

    def read(self, filename: str) -> Any:
        path = self.resolve(filename)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise ConfigNotFound(f'Config file "{filename}" not found') from e
        except OSError as e:
            raise ConfigStoreError(str(e)) from e
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise ConfigStoreError(f"Invalid JSON in {filename}: {e}") from e

    def write(self, filename: str, data: Any) -> Path:
        """以 4 空格缩进写入 ``data``。"""
        path = self.resolve(filename)
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(data, indent=4, ensure_ascii=False), encoding="utf-8")
        except OSError as e:
            raise ConfigStoreError(str(e)) from e
        logger.info(f"Saved config {filename}")
        return path

    def duplicate(self, filename: str, new_name: str) -> str:
        """按字节把 ``filename`` 复制为 ``new_name``。

        Returns:
            去除首尾空白后的目标文件名

        Raises:
            ConfigNotFound: 源文件不存在
            ConfigExists: 目标文件已存在
        """
        source = self.resolve(filename)
        target_name = new_name.strip()
        target = self.resolve(target_name)

        if not source.exists():
            raise ConfigNotFound(f'Source config file "{filename}" not found')
        if target.exists():
            raise ConfigExists(f'Config file "{target_name}" already exists')

        try:
            target.write_bytes(source.read_bytes())
        except OSError as e:
            raise ConfigStoreError(str(e)) from e
        logger.info(f"Duplicated config {filename} -> {target_name}")
        return target_name
