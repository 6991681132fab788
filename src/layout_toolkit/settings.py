"""
存储布局配置

配置文件为 TOML 格式,例如:

    [layout]
    root_key = 0
    key_width = 32
    hash_version = "blake2x256-v1"

    [layout.mapping]
    hasher = "Blake2x256"
    prefix = "ink storage hashmap"
    postfix = ""

    [logging]
    level = "INFO"

注意: hash_version 和 key_width 属于存储兼容性契约,
修改它们会使所有已存储单元的键发生变化。
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import toml
from eth_utils import decode_hex, is_hex

logger = logging.getLogger(__name__)

SUPPORTED_KEY_WIDTHS = (32, 64)
DEFAULT_HASH_VERSION = "blake2x256-v1"
DEFAULT_MAPPING_PREFIX = b"ink storage hashmap"


@dataclass
class LayoutSettings:
    """存储布局配置"""
    root_key: int = 0
    key_width: int = 32
    hash_version: str = DEFAULT_HASH_VERSION
    mapping_hasher: str = "Blake2x256"
    mapping_prefix: bytes = DEFAULT_MAPPING_PREFIX
    mapping_postfix: bytes = b""
    log_level: str = "INFO"

    def __post_init__(self):
        self.validate()

    def validate(self):
        # 延迟导入,避免 settings <-> storage_layout 循环依赖
        from .storage_layout.hashing import HASH_VERSIONS, CryptoHasher

        if self.key_width not in SUPPORTED_KEY_WIDTHS:
            raise ValueError(f"key_width must be one of {SUPPORTED_KEY_WIDTHS}, got {self.key_width}")
        if not 0 <= self.root_key < (1 << self.key_width):
            raise ValueError(f"root_key {self.root_key} does not fit in {self.key_width} bits")
        if self.hash_version not in HASH_VERSIONS:
            raise ValueError(
                f"unknown hash_version {self.hash_version!r}, expected one of {sorted(HASH_VERSIONS)}"
            )
        CryptoHasher.from_name(self.mapping_hasher)
        if logging.getLevelName(self.log_level.upper()) == f"Level {self.log_level.upper()}":
            raise ValueError(f"unknown log level {self.log_level!r}")


def _to_bytes(value: Union[str, bytes, None]) -> bytes:
    """字符串按 UTF-8 处理; 以 0x 开头的十六进制串解码为原始字节"""
    if value is None:
        return b""
    if isinstance(value, bytes):
        return value
    if value.startswith("0x") and is_hex(value):
        return decode_hex(value)
    return value.encode('utf-8')


def settings_from_dict(data: Dict[str, Any]) -> LayoutSettings:
    layout = data.get("layout", {})
    mapping = layout.get("mapping", {})
    logging_section = data.get("logging", {})

    return LayoutSettings(
        root_key=int(layout.get("root_key", 0)),
        key_width=int(layout.get("key_width", 32)),
        hash_version=layout.get("hash_version", DEFAULT_HASH_VERSION),
        mapping_hasher=mapping.get("hasher", "Blake2x256"),
        mapping_prefix=_to_bytes(mapping.get("prefix", DEFAULT_MAPPING_PREFIX)),
        mapping_postfix=_to_bytes(mapping.get("postfix", b"")),
        log_level=logging_section.get("level", "INFO"),
    )


def load_settings(path: Optional[Path] = None) -> LayoutSettings:
    """
    加载配置

    Args:
        path: TOML 配置文件路径; None 或文件不存在时使用默认配置

    Returns:
        LayoutSettings
    """
    if path is None:
        return LayoutSettings()

    path = Path(path)
    if not path.exists():
        logger.debug(f"配置文件不存在,使用默认配置: {path}")
        return LayoutSettings()

    data = toml.load(path)
    settings = settings_from_dict(data)
    logger.info(
        f"加载配置 {path}: key_width={settings.key_width}, "
        f"hash_version={settings.hash_version}, root_key=0x{settings.root_key:x}"
    )
    return settings
