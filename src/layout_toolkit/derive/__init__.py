"""
派生模块

- StorageDeriver: 派生编排 (分类 -> 解析 -> 编解码器生成)
- StorageAccessor / MemoryStore: 运行时读写
- LayoutBuilder: 布局元数据导出
"""

from .accessors import (
    KeyValueStore,
    MemoryStore,
    CellSpec,
    CellRef,
    LazyCell,
    MappingHandle,
    StorageAccessor,
)
from .codegen import CodecFactory, StructCodec, EnumCodec
from .orchestrator import StorageDeriver, DerivedStorable
from .metadata import LayoutBuilder, LayoutMetadata, PortableTypeRegistry, layout_of

__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "CellSpec",
    "CellRef",
    "LazyCell",
    "MappingHandle",
    "StorageAccessor",
    "CodecFactory",
    "StructCodec",
    "EnumCodec",
    "StorageDeriver",
    "DerivedStorable",
    "LayoutBuilder",
    "LayoutMetadata",
    "PortableTypeRegistry",
    "layout_of",
]
