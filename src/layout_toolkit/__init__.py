"""
Storage Layout Toolkit

为声明式存储类型派生确定性的存储布局:
- 打包性分类 (Packed / NonPacked)
- 存储键派生与冲突检测
- 字段存储提示 (内联 / 独立单元)
- 容器约束与递归检测
- SCALE 兼容的编解码器与存储访问器
"""

__version__ = "0.1.0"

from .errors import (
    LayoutError,
    MissingCodecSupport,
    IllegalContainerNesting,
    KeyCollision,
    ManualKeyCollision,
    InfiniteLayout,
    InvalidStorageKey,
    InvalidTypeExpression,
    ConflictingDeclaration,
    DecodeError,
    StorageEntryEmpty,
)
from .settings import LayoutSettings, load_settings
from .type_model import (
    Packedness,
    StructDescriptor,
    EnumDescriptor,
    VariantDescriptor,
    FieldDescriptor,
    EnumValue,
    storage_item,
    storage_field,
    parse_type_expression,
)
from .storage_layout import LayoutRegistry, StorageKeyAllocator
from .derive import StorageDeriver, DerivedStorable, MemoryStore, StorageAccessor, layout_of

__all__ = [
    "LayoutError",
    "MissingCodecSupport",
    "IllegalContainerNesting",
    "KeyCollision",
    "ManualKeyCollision",
    "InfiniteLayout",
    "InvalidStorageKey",
    "InvalidTypeExpression",
    "ConflictingDeclaration",
    "DecodeError",
    "StorageEntryEmpty",
    "LayoutSettings",
    "load_settings",
    "Packedness",
    "StructDescriptor",
    "EnumDescriptor",
    "VariantDescriptor",
    "FieldDescriptor",
    "EnumValue",
    "storage_item",
    "storage_field",
    "parse_type_expression",
    "LayoutRegistry",
    "StorageKeyAllocator",
    "StorageDeriver",
    "DerivedStorable",
    "MemoryStore",
    "StorageAccessor",
    "layout_of",
]
