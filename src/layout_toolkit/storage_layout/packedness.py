"""
打包性分类器

classify(type) -> Packedness

规则:
1. 标量 (整数、bool、String、Vec<u8>) 总是 Packed
2. 复合类型当且仅当所有字段 Packed 且没有字段带手动键时为 Packed
3. 内联容器 (Vec、BTreeMap、数组、Option、元组) 的元素必须 Packed,
   容器本身因此为 Packed; 元素不是 Packed 时直接拒绝
4. 存储单元容器 (Lazy、Mapping) 总是 NonPacked,值类型必须 Packed
5. 没有编解码能力的类型报告 MissingCodecSupport

循环检测:
类型在自身分类过程中再次出现时,若返回路径上没有间接边界
(Vec/BTreeMap 元素、Lazy/Mapping 值、带手动键的字段),报告 InfiniteLayout。
经过容器边界的回引暂时假定为 Packed,类型分类完成后再验证该假定。
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..errors import IllegalContainerNesting, InfiniteLayout, LayoutError, MissingCodecSupport
from ..type_model.descriptors import (
    CELL_CONTAINERS,
    COMPOSITE_TYPES,
    INLINE_CONTAINERS,
    Bytes,
    EnumDescriptor,
    Opaque,
    OrderedMap,
    Packedness,
    Primitive,
    Sequence,
    Text,
    TypeDescriptor,
    TypeRef,
)
from .collection_checker import container_note, ensure_packed_value
from .registry import LayoutRegistry

logger = logging.getLogger(__name__)

# 经过这些容器的递归引用不会导致无限布局
INDIRECTION_CONTAINERS = (Sequence, OrderedMap) + CELL_CONTAINERS


@dataclass
class _Boundary:
    depth: int
    container: Optional[TypeDescriptor] = None  # None 表示手动键字段
    indirect: bool = True


@dataclass
class _Assumption:
    name: str
    container: TypeDescriptor


@dataclass
class _ClassifyContext:
    stack: List[str] = field(default_factory=list)
    boundaries: List[_Boundary] = field(default_factory=list)
    assumptions: List[_Assumption] = field(default_factory=list)


def member_fields(descriptor: TypeDescriptor):
    """按声明顺序迭代 (标签, 变体名, 索引, 字段)"""
    if isinstance(descriptor, EnumDescriptor):
        for variant in descriptor.variants:
            for index, item in enumerate(variant.fields):
                yield f"{variant.name}::{item.path_segment(index)}", variant.name, index, item
    else:
        for index, item in enumerate(descriptor.fields):
            yield item.path_segment(index), None, index, item


class PackednessClassifier:
    """
    打包性分类器

    分类结果按类型标识缓存在注册表中; 分类只依赖类型结构。
    """

    def __init__(self, registry: LayoutRegistry):
        self.registry = registry
        self.logger = logging.getLogger(__name__ + '.PackednessClassifier')

    def classify(self, type_desc: TypeDescriptor) -> Packedness:
        return self._classify(type_desc, _ClassifyContext())

    def resolve_ref(self, type_desc: TypeDescriptor) -> TypeDescriptor:
        """把 TypeRef 解析为已声明的描述符"""
        if not isinstance(type_desc, TypeRef):
            return type_desc
        resolved = self.registry.lookup(type_desc.name)
        if resolved is None:
            raise MissingCodecSupport(type_desc.name, "no storage item with this name is declared")
        return resolved

    def _classify(self, type_desc: TypeDescriptor, ctx: _ClassifyContext) -> Packedness:
        type_desc = self.resolve_ref(type_desc)

        if isinstance(type_desc, COMPOSITE_TYPES):
            self.registry.declare(type_desc)

        cached = self.registry.packedness(type_desc.type_id)
        if cached is not None:
            return cached

        if isinstance(type_desc, Opaque):
            raise MissingCodecSupport(type_desc.name, type_desc.reason)

        if isinstance(type_desc, (Primitive, Text, Bytes)):
            self.registry.record_packedness(type_desc.type_id, Packedness.PACKED)
            return Packedness.PACKED

        if isinstance(type_desc, COMPOSITE_TYPES):
            return self._classify_composite(type_desc, ctx)

        if isinstance(type_desc, INLINE_CONTAINERS + CELL_CONTAINERS):
            return self._classify_container(type_desc, ctx)

        raise MissingCodecSupport(type_desc.type_id, "unsupported type descriptor")

    def _classify_with_boundary(self, type_desc: TypeDescriptor, ctx: _ClassifyContext,
                                boundary: Optional[_Boundary]) -> Packedness:
        if boundary is None:
            return self._classify(type_desc, ctx)
        ctx.boundaries.append(boundary)
        try:
            return self._classify(type_desc, ctx)
        finally:
            ctx.boundaries.pop()

    def _classify_container(self, container: TypeDescriptor, ctx: _ClassifyContext) -> Packedness:
        mark = len(ctx.assumptions)
        crosses = isinstance(container, INDIRECTION_CONTAINERS)

        for value in container.children():
            boundary = _Boundary(len(ctx.stack), container, crosses)
            try:
                packedness = self._classify_with_boundary(value, ctx, boundary)
            except LayoutError as e:
                raise e.with_frame(container.type_id, note=container_note(container))
            ensure_packed_value(container, self.resolve_ref(value), packedness)

        result = Packedness.NON_PACKED if isinstance(container, CELL_CONTAINERS) else Packedness.PACKED
        if len(ctx.assumptions) == mark:
            self.registry.record_packedness(container.type_id, result)
        return result

    def _classify_composite(self, descriptor: TypeDescriptor, ctx: _ClassifyContext) -> Packedness:
        name = descriptor.type_id

        if name in ctx.stack:
            position = ctx.stack.index(name)
            crossed = [b for b in ctx.boundaries if b.depth > position]
            if not any(b.indirect for b in crossed):
                raise InfiniteLayout(name, ctx.stack[position:])
            containers = [b.container for b in crossed if b.container is not None]
            if containers:
                ctx.assumptions.append(_Assumption(name, containers[-1]))
            self.logger.debug(f"递归引用 {name} 经过间接边界,暂定为 Packed")
            return Packedness.PACKED

        mark = len(ctx.assumptions)
        result = Packedness.PACKED
        ctx.stack.append(name)
        try:
            for label, _variant, _index, item in member_fields(descriptor):
                boundary = _Boundary(len(ctx.stack)) if item.manual_key is not None else None
                try:
                    packedness = self._classify_with_boundary(item.type, ctx, boundary)
                except LayoutError as e:
                    raise e.with_frame(name, label).with_frame(name)

                if packedness is Packedness.NON_PACKED or item.manual_key is not None:
                    if result is Packedness.PACKED:
                        self.logger.debug(f"{name}.{label} 引入独立存储单元, {name} 为 NonPacked")
                    result = Packedness.NON_PACKED
        finally:
            ctx.stack.pop()

        pending = ctx.assumptions[mark:]
        own = [a for a in pending if a.name == name]
        if own and result is Packedness.NON_PACKED:
            raise IllegalContainerNesting(own[0].container.type_id, name).with_frame(name)
        ctx.assumptions[mark:] = [a for a in pending if a.name != name]

        if len(ctx.assumptions) == mark:
            self.registry.record_packedness(name, result)
            self.logger.debug(f"分类完成: {name} -> {result.value}")
        return result
