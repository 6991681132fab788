"""
存储键分配器

派生规则:
1. 有手动键时直接返回手动键 (不做哈希)
2. 否则 concat(parent_key, stable_hash(path))
   - path 为 "Type::field" 或 "Type::Variant::field"
   - stable_hash 取摘要前 key_width/8 字节,按大端序转为整数
   - concat(a, b): 两者都为0时为0,一方为0时取另一方,否则 a XOR b
3. 嵌套单元从直接容器的键派生,而不是从最终根键派生
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Union

from ..errors import InvalidStorageKey, KeyCollision, ManualKeyCollision
from .hashing import HASH_VERSIONS
from ..settings import DEFAULT_HASH_VERSION

logger = logging.getLogger(__name__)

PATH_SEPARATOR = "::"


def format_key(key: int, key_width: int = 32) -> str:
    """按键宽度补零的十六进制键"""
    return f"0x{key:0{key_width // 4}x}"


@dataclass(frozen=True)
class FieldPath:
    """字段的结构路径"""
    type_name: str
    field_name: str
    variant_name: Optional[str] = None

    def __str__(self) -> str:
        if self.variant_name:
            return PATH_SEPARATOR.join([self.type_name, self.variant_name, self.field_name])
        return PATH_SEPARATOR.join([self.type_name, self.field_name])


@dataclass(frozen=True)
class CellAllocation:
    """作用域内一个存储单元的分配记录"""
    label: str
    key: int
    manual: bool = False


class StorageKeyAllocator:
    """
    存储键分配器

    纯函数: 相同的 (parent_key, path, manual_override) 总是得到相同的键,
    与进程、编译次数无关。
    """

    def __init__(self, key_width: int = 32, hash_version: str = DEFAULT_HASH_VERSION):
        if hash_version not in HASH_VERSIONS:
            raise ValueError(f"unknown hash_version {hash_version!r}")
        self.key_width = key_width
        self.hash_version = hash_version
        self.hasher = HASH_VERSIONS[hash_version]
        self.logger = logging.getLogger(__name__ + '.StorageKeyAllocator')

    @property
    def max_key(self) -> int:
        return (1 << self.key_width) - 1

    def format_key(self, key: int) -> str:
        return format_key(key, self.key_width)

    def key_from_bytes(self, data: bytes) -> int:
        """对任意字节求摘要并截断为键; 空输入为0"""
        if not data:
            return 0
        digest = self.hasher.digest(data)
        return int.from_bytes(digest[:self.key_width // 8], byteorder='big')

    def stable_hash(self, path: Union[FieldPath, str]) -> int:
        if isinstance(path, FieldPath):
            if not path.type_name:
                raise InvalidStorageKey("cannot derive a key: the type name is empty")
            if not path.field_name:
                raise InvalidStorageKey(f"cannot derive a key: empty field name in `{path.type_name}`")
        return self.key_from_bytes(str(path).encode('utf-8'))

    def compute_key(self, type_name: str, variant_name: Optional[str], field_name: str) -> int:
        return self.stable_hash(FieldPath(type_name, field_name, variant_name or None))

    @staticmethod
    def concat(left: int, right: int) -> int:
        if left == 0:
            return right
        if right == 0:
            return left
        return left ^ right

    def check_key(self, key: int, context: str = "") -> int:
        if isinstance(key, bool) or not isinstance(key, int) or not 0 <= key <= self.max_key:
            where = f" for `{context}`" if context else ""
            raise InvalidStorageKey(
                f"manual key {key!r}{where} does not fit in a {self.key_width}-bit storage key"
            )
        return key

    def allocate(
        self,
        parent_key: int,
        field_path: Union[FieldPath, str],
        manual_override: Optional[int] = None
    ) -> int:
        """
        分配存储键

        Args:
            parent_key: 直接容器的键
            field_path: 字段结构路径
            manual_override: 手动键 (存在时原样返回)

        Returns:
            存储键
        """
        if manual_override is not None:
            key = self.check_key(manual_override, str(field_path))
            self.logger.debug(f"手动键 {field_path} -> {self.format_key(key)}")
            return key

        key = self.concat(parent_key, self.stable_hash(field_path))
        self.logger.debug(
            f"派生键 {field_path} (parent={self.format_key(parent_key)}) -> {self.format_key(key)}"
        )
        return key


def check_collisions(scope: str, cells: List[CellAllocation], key_width: int = 32) -> None:
    """
    检查同一作用域内的键冲突

    Raises:
        ManualKeyCollision: 冲突涉及手动键
        KeyCollision: 两个派生键冲突
    """
    seen: dict = {}
    for cell in cells:
        previous: Optional[CellAllocation] = seen.get(cell.key)
        if previous is not None:
            error_cls = ManualKeyCollision if (cell.manual or previous.manual) else KeyCollision
            raise error_cls(scope, cell.key, previous.label, cell.label, key_width=key_width)
        seen[cell.key] = cell
