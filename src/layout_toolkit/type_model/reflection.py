"""
基于 dataclass 反射的类型声明

用法:

    @storage_item
    @dataclass
    class Balances:
        total: U128
        owners: StorageMapping(U32, U128)
        config: Config = storage_field(key=0x123)

字段注解可以是:
- 类型描述符实例 (U32、Sequence(U8) ...)
- 另一个 @storage_item 类
- 类型表达式字符串 ("Vec<Node>"),未知名称生成 TypeRef
- bool / str / bytes 内置类型
其他注解 (int、float、任意类) 生成 Opaque,派生时报告 MissingCodecSupport。
"""

import dataclasses
import logging
from typing import Any, Optional

from .descriptors import (
    BOOL,
    BYTES,
    STRING,
    FieldDescriptor,
    Opaque,
    StructDescriptor,
    TypeDescriptor,
)
from .expressions import parse_type_expression

logger = logging.getLogger(__name__)

DESCRIPTOR_ATTR = "__storage_descriptor__"
KEY_METADATA = "storage_key"

_BUILTIN_ANNOTATIONS = {
    bool: BOOL,
    str: STRING,
    bytes: BYTES,
}


def storage_field(key: Optional[int] = None, **kwargs) -> Any:
    """声明带手动存储键的 dataclass 字段"""
    metadata = dict(kwargs.pop("metadata", None) or {})
    if key is not None:
        metadata[KEY_METADATA] = key
    return dataclasses.field(metadata=metadata, **kwargs)


def descriptor_of(annotation: Any) -> TypeDescriptor:
    """把字段注解转换为类型描述符"""
    if isinstance(annotation, TypeDescriptor):
        return annotation
    if isinstance(annotation, str):
        return parse_type_expression(annotation)
    descriptor = getattr(annotation, DESCRIPTOR_ATTR, None)
    if isinstance(descriptor, TypeDescriptor):
        return descriptor
    if isinstance(annotation, type) and annotation in _BUILTIN_ANNOTATIONS:
        return _BUILTIN_ANNOTATIONS[annotation]

    name = getattr(annotation, "__name__", repr(annotation))
    if annotation is int:
        reason = "unbounded `int` has no fixed-width encoding, use u8..u128 or i8..i128"
    elif annotation is float:
        reason = "floating point numbers are not supported by the codec"
    else:
        reason = "the annotation is neither a type descriptor nor a storage item"
    return Opaque(name, reason)


def storage_item(cls=None, *, key: Optional[int] = None, name: Optional[str] = None):
    """
    把 dataclass 声明为存储类型

    Args:
        key: 类型级手动键 (作为存储根时使用)
        name: 类型名称 (默认为类名)
    """

    def wrap(target):
        if not dataclasses.is_dataclass(target):
            target = dataclasses.dataclass(target)

        fields = []
        for item in dataclasses.fields(target):
            fields.append(FieldDescriptor(
                name=item.name,
                type=descriptor_of(item.type),
                manual_key=item.metadata.get(KEY_METADATA)
            ))

        descriptor = StructDescriptor(
            name=name or target.__name__,
            fields=tuple(fields),
            storage_key=key,
            python_type=target
        )
        setattr(target, DESCRIPTOR_ATTR, descriptor)
        logger.debug(f"声明存储类型 {descriptor.name}: {len(fields)} 个字段")
        return target

    if cls is None:
        return wrap
    return wrap(cls)
