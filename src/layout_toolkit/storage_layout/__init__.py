"""
存储布局分析模块

提供类型存储布局的解析能力:
- 打包性分类 (Packed / NonPacked)
- 确定性存储键派生
- 字段存储提示解析 (内联 / 独立单元)
- 容器约束检查
- 已解析类型注册表
"""

from .hashing import CryptoHasher, HashingStrategy, HASH_VERSIONS
from .key_allocator import StorageKeyAllocator, FieldPath, CellAllocation, check_collisions
from .registry import LayoutRegistry, ResolutionState
from .packedness import PackednessClassifier
from .collection_checker import CollectionConstraintChecker
from .hint_resolver import StorableHintResolver, InlineHint, CellHint, StorableHint

__all__ = [
    "CryptoHasher",
    "HashingStrategy",
    "HASH_VERSIONS",
    "StorageKeyAllocator",
    "FieldPath",
    "CellAllocation",
    "check_collisions",
    "LayoutRegistry",
    "ResolutionState",
    "PackednessClassifier",
    "CollectionConstraintChecker",
    "StorableHintResolver",
    "InlineHint",
    "CellHint",
    "StorableHint",
]
