"""
类型模型模块

提供用户类型的静态描述:
- 不可变类型描述符
- 文本类型表达式解析
- 基于 dataclass 反射的存储类型声明
"""

from .descriptors import (
    Packedness,
    TypeDescriptor,
    Primitive,
    Text,
    Bytes,
    FixedArray,
    Sequence,
    OrderedMap,
    OptionOf,
    TupleOf,
    Lazy,
    StorageMapping,
    Opaque,
    TypeRef,
    FieldDescriptor,
    StructDescriptor,
    VariantDescriptor,
    EnumDescriptor,
    EnumValue,
    U8, U16, U32, U64, U128,
    I8, I16, I32, I64, I128,
    BOOL, STRING, BYTES,
)
from .expressions import TypeExpressionParser, parse_type_expression
from .reflection import storage_item, storage_field, descriptor_of
from .schema import load_schema, schema_from_dict

__all__ = [
    "Packedness",
    "TypeDescriptor",
    "Primitive",
    "Text",
    "Bytes",
    "FixedArray",
    "Sequence",
    "OrderedMap",
    "OptionOf",
    "TupleOf",
    "Lazy",
    "StorageMapping",
    "Opaque",
    "TypeRef",
    "FieldDescriptor",
    "StructDescriptor",
    "VariantDescriptor",
    "EnumDescriptor",
    "EnumValue",
    "U8", "U16", "U32", "U64", "U128",
    "I8", "I16", "I32", "I64", "I128",
    "BOOL", "STRING", "BYTES",
    "TypeExpressionParser",
    "parse_type_expression",
    "storage_item",
    "storage_field",
    "descriptor_of",
    "load_schema",
    "schema_from_dict",
]
