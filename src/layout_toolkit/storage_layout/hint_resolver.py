"""
存储提示解析器

resolve(type_descriptor, parent_key) -> 有序的 StorableHint 列表

对每个字段 (按声明顺序):
- Packed 且无手动键: InlineHint,字节按声明顺序拼接到父类型的编码中
- NonPacked 或带手动键: CellHint,键由键分配器派生,父编码中不包含该字段
枚举的每个变体独立解析,路径中包含变体名,
因此同名字段在不同变体中得到不同的键。
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from ..codec.primitives import INTEGER_WIDTHS
from ..errors import LayoutError
from ..type_model.descriptors import (
    CELL_CONTAINERS,
    BOOL,
    EnumDescriptor,
    FieldDescriptor,
    FixedArray,
    Lazy,
    OptionOf,
    Packedness,
    Primitive,
    StorageMapping,
    StructDescriptor,
    TupleOf,
    TypeDescriptor,
)
from .key_allocator import CellAllocation, FieldPath, StorageKeyAllocator, check_collisions
from .packedness import PackednessClassifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InlineHint:
    """内联字段: position 为内联字段序号, byte_offset 为静态字节偏移 (变长时为 None)"""
    field: str
    type: TypeDescriptor
    position: int
    byte_offset: Optional[int] = None
    variant: Optional[str] = None

    @property
    def is_cell(self) -> bool:
        return False


@dataclass(frozen=True)
class CellHint:
    """独立存储单元字段"""
    field: str
    type: TypeDescriptor
    key: int
    manual: bool = False
    variant: Optional[str] = None

    @property
    def is_cell(self) -> bool:
        return True


StorableHint = Union[InlineHint, CellHint]


def cell_manual_key(item: FieldDescriptor) -> Optional[int]:
    """字段手动键优先,其次是 Lazy/Mapping 类型参数中的手动键"""
    if item.manual_key is not None:
        return item.manual_key
    if isinstance(item.type, (Lazy, StorageMapping)):
        return item.type.manual_key
    return None


class StorableHintResolver:
    """
    存储提示解析器

    解析是纯结构化的: 只依赖类型和声明的手动键。
    """

    def __init__(self, classifier: PackednessClassifier, allocator: StorageKeyAllocator):
        self.classifier = classifier
        self.allocator = allocator
        self.logger = logging.getLogger(__name__ + '.StorableHintResolver')

    def static_size(self, type_desc: TypeDescriptor, _seen=None) -> Optional[int]:
        """定长编码的字节数; 变长类型返回 None"""
        type_desc = self.classifier.resolve_ref(type_desc)
        seen = set(_seen or ())

        if isinstance(type_desc, Primitive):
            if type_desc == BOOL:
                return 1
            return INTEGER_WIDTHS[type_desc.name][0]
        if isinstance(type_desc, FixedArray):
            element = self.static_size(type_desc.element, seen)
            return None if element is None else element * type_desc.length
        if isinstance(type_desc, TupleOf):
            sizes = [self.static_size(e, seen) for e in type_desc.elements]
            return None if any(s is None for s in sizes) else sum(sizes)
        if isinstance(type_desc, OptionOf):
            return 1 if self.classifier.resolve_ref(type_desc.inner) == BOOL else None
        if isinstance(type_desc, (StructDescriptor, EnumDescriptor)):
            if type_desc.type_id in seen:
                return None
            seen.add(type_desc.type_id)
            if isinstance(type_desc, StructDescriptor):
                sizes = [self.static_size(f.type, seen) for f in type_desc.fields]
                return None if any(s is None for s in sizes) else sum(sizes)
            payloads = set()
            for variant in type_desc.variants:
                sizes = [self.static_size(f.type, seen) for f in variant.fields]
                payloads.add(None if any(s is None for s in sizes) else sum(sizes))
            if len(payloads) == 1 and None not in payloads:
                return 1 + payloads.pop()
            if not payloads:
                return 1
            return None
        return None

    def auto_storable_hint(
        self,
        owner: str,
        item: FieldDescriptor,
        index: int,
        parent_key: int,
        position: int,
        byte_offset: Optional[int],
        variant: Optional[str] = None
    ) -> StorableHint:
        """解析单个字段: 默认自动派生键,手动键覆盖派生值"""
        segment = item.path_segment(index)
        manual = cell_manual_key(item)
        packedness = self.classifier.classify(item.type)

        if packedness is Packedness.PACKED and manual is None \
                and not isinstance(item.type, CELL_CONTAINERS):
            return InlineHint(segment, item.type, position, byte_offset, variant)

        key = self.allocator.allocate(parent_key, FieldPath(owner, segment, variant), manual)
        return CellHint(segment, item.type, key, manual is not None, variant)

    def _resolve_fields(self, owner: str, fields, parent_key: int,
                        variant: Optional[str], start_offset: int) -> List[StorableHint]:
        hints: List[StorableHint] = []
        position = 0
        offset: Optional[int] = start_offset
        for index, item in enumerate(fields):
            label = f"{variant}::{item.path_segment(index)}" if variant else item.path_segment(index)
            try:
                hint = self.auto_storable_hint(owner, item, index, parent_key, position, offset, variant)
            except LayoutError as e:
                raise e.with_frame(owner, label).with_frame(owner)
            if isinstance(hint, InlineHint):
                position += 1
                size = self.static_size(item.type)
                offset = None if offset is None or size is None else offset + size
            hints.append(hint)
        return hints

    def resolve_variants(self, descriptor: EnumDescriptor, parent_key: int) -> Dict[str, List[StorableHint]]:
        """按变体解析枚举; 内联偏移从判别字节之后开始"""
        result = {}
        for variant in descriptor.variants:
            result[variant.name] = self._resolve_fields(
                descriptor.name, variant.fields, parent_key, variant.name, 1
            )
        self._check_scope(descriptor.name, [h for hints in result.values() for h in hints])
        return result

    def resolve(self, descriptor: TypeDescriptor, parent_key: int) -> List[StorableHint]:
        """
        解析复合类型的存储提示

        Args:
            descriptor: 结构体或枚举描述符
            parent_key: 该类型自身所在单元的键

        Returns:
            按声明顺序的提示列表 (枚举按变体顺序展开)
        """
        descriptor = self.classifier.resolve_ref(descriptor)
        if isinstance(descriptor, EnumDescriptor):
            by_variant = self.resolve_variants(descriptor, parent_key)
            return [h for hints in by_variant.values() for h in hints]
        if not isinstance(descriptor, StructDescriptor):
            raise TypeError(f"`{descriptor.type_id}` is not a struct or enum")

        hints = self._resolve_fields(descriptor.name, descriptor.fields, parent_key, None, 0)
        self._check_scope(descriptor.name, hints)
        cells = sum(1 for h in hints if h.is_cell)
        self.logger.debug(
            f"{descriptor.name} @ {self.allocator.format_key(parent_key)}: "
            f"{len(hints) - cells} 个内联字段, {cells} 个存储单元"
        )
        return hints

    def _check_scope(self, owner: str, hints: List[StorableHint]) -> None:
        cells = [
            CellAllocation(f"{h.variant}::{h.field}" if h.variant else h.field, h.key, h.manual)
            for h in hints if isinstance(h, CellHint)
        ]
        try:
            check_collisions(owner, cells, self.allocator.key_width)
        except LayoutError as e:
            raise e.with_frame(owner)
