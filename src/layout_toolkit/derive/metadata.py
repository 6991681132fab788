"""
存储布局元数据导出

把派生结果转换为 JSON 可序列化的布局树,供外部工具读取:

    {"cell":   {"key": "0x00000159", "ty": 0}}
    {"struct": {"fields": [{"layout": ..., "name": "a"}]}}
    {"enum":   {"dispatchKey": "0x0000007b", "variants": {"0": {"fields": [...]}}}}
    {"hash":   {"offset": "0x...", "strategy": {...}, "layout": {...}}}

"ty" 是类型在 PortableTypeRegistry 中的序号,按首次出现顺序分配。
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from eth_utils import encode_hex

from ..storage_layout.hashing import HashingStrategy
from ..storage_layout.hint_resolver import CellHint, StorableHint
from ..storage_layout.key_allocator import format_key
from ..type_model.descriptors import (
    COMPOSITE_TYPES,
    EnumDescriptor,
    Lazy,
    StorageMapping,
    TypeDescriptor,
)

logger = logging.getLogger(__name__)


class PortableTypeRegistry:
    """类型标识 -> 序号"""

    def __init__(self):
        self.types: List[str] = []
        self._index: Dict[str, int] = {}

    def register(self, type_id: str) -> int:
        index = self._index.get(type_id)
        if index is None:
            index = len(self.types)
            self.types.append(type_id)
            self._index[type_id] = index
        return index


def cell_layout(key: str, ty: int) -> Dict[str, Any]:
    return {"cell": {"key": key, "ty": ty}}


def field_layout(name: Optional[str], layout: Dict[str, Any]) -> Dict[str, Any]:
    return {"layout": layout, "name": name}


def struct_layout(fields: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"struct": {"fields": list(fields)}}


def enum_layout(dispatch_key: str, variants: List[List[Dict[str, Any]]]) -> Dict[str, Any]:
    return {
        "enum": {
            "dispatchKey": dispatch_key,
            "variants": {str(i): {"fields": list(fields)} for i, fields in enumerate(variants)},
        }
    }


def strategy_layout(strategy: HashingStrategy) -> Dict[str, str]:
    return {
        "hasher": strategy.hasher.value,
        "prefix": encode_hex(strategy.prefix) if strategy.prefix else "",
        "postfix": encode_hex(strategy.postfix) if strategy.postfix else "",
    }


def hash_layout(offset: str, strategy: HashingStrategy, layout: Dict[str, Any]) -> Dict[str, Any]:
    return {"hash": {"offset": offset, "strategy": strategy_layout(strategy), "layout": layout}}


@dataclass
class LayoutMetadata:
    """布局树 + 类型表"""
    root_key: int
    layout: Dict[str, Any]
    types: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "layout": self.layout,
            "types": [{"id": i, "type": name} for i, name in enumerate(self.types)],
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)


class LayoutBuilder:
    """
    布局元数据构建器

    Args:
        deriver: StorageDeriver
        registry: 类型表; 多个布局共享同一个类型表时传入
    """

    def __init__(self, deriver, registry: Optional[PortableTypeRegistry] = None):
        self.deriver = deriver
        self.types = registry if registry is not None else PortableTypeRegistry()
        self.key_width = deriver.settings.key_width

    def _key(self, key: int) -> str:
        return format_key(key, self.key_width)

    def _leaf(self, type_desc: TypeDescriptor, key: int) -> Dict[str, Any]:
        return cell_layout(self._key(key), self.types.register(type_desc.type_id))

    def layout_of(self, derived, key: Optional[int] = None) -> LayoutMetadata:
        """派生结果存放在 key (默认根键) 下时的布局"""
        key = derived.root_key if key is None else key
        layout = self._composite_layout(derived.descriptor, key, ())
        logger.debug(f"导出布局 {derived.name} @ {self._key(key)}: {len(self.types.types)} 个类型")
        return LayoutMetadata(key, layout, list(self.types.types))

    def _type_layout(self, type_desc: TypeDescriptor, key: int, visiting: Tuple) -> Dict[str, Any]:
        type_desc = self.deriver.classifier.resolve_ref(type_desc)
        if isinstance(type_desc, COMPOSITE_TYPES):
            return self._composite_layout(type_desc, key, visiting)
        return self._leaf(type_desc, key)

    def _composite_layout(self, descriptor: TypeDescriptor, key: int, visiting: Tuple) -> Dict[str, Any]:
        marker = (descriptor.type_id, key)
        if marker in visiting:
            # 经过手动键回到同一单元的递归类型
            return self._leaf(descriptor, key)
        visiting = visiting + (marker,)

        hints = self.deriver.resolve_hints(descriptor, key)
        if isinstance(descriptor, EnumDescriptor):
            variants = [
                self._fields_layout(variant.fields, hints[variant.name], key, visiting)
                for variant in descriptor.variants
            ]
            return enum_layout(self._key(key), variants)
        return struct_layout(self._fields_layout(descriptor.fields, hints, key, visiting))

    def _fields_layout(self, fields, hints: List[StorableHint], key: int, visiting: Tuple) -> List[Dict]:
        result = []
        for item, hint in zip(fields, hints):
            if isinstance(hint, CellHint):
                layout = self._cell_layout(hint, visiting)
            else:
                layout = self._type_layout(hint.type, key, visiting)
            result.append(field_layout(item.name, layout))
        return result

    def _cell_layout(self, hint: CellHint, visiting: Tuple) -> Dict[str, Any]:
        type_desc = self.deriver.classifier.resolve_ref(hint.type)
        if isinstance(type_desc, Lazy):
            return self._type_layout(type_desc.value, hint.key, visiting)
        if isinstance(type_desc, StorageMapping):
            value = self.deriver.classifier.resolve_ref(type_desc.value)
            return hash_layout(
                self._key(hint.key),
                self.deriver.mapping_strategy,
                self._leaf(value, hint.key),
            )
        return self._type_layout(type_desc, hint.key, visiting)


def layout_of(derived, key: Optional[int] = None) -> LayoutMetadata:
    """导出派生结果的布局元数据"""
    return LayoutBuilder(derived.deriver).layout_of(derived, key)
