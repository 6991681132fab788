"""
类型描述符

对用户类型的静态描述。描述符是不可变值,每个类型只创建一次,
可以按类型标识 (type_id) 缓存派生结果。

内置类型:
- Primitive: 定宽整数和 bool
- Text / Bytes: 长度前缀的字符串和字节串
- FixedArray / Sequence / OrderedMap / OptionOf / TupleOf: 内联容器
- Lazy / StorageMapping: 自带存储单元的容器
- Opaque: 没有编解码能力的外部类型
- TypeRef: 按名称引用 (前向引用和自引用)

复合类型:
- StructDescriptor: 有序字段列表
- EnumDescriptor: 有序变体列表,每个变体有自己的字段列表
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ..codec.primitives import INTEGER_WIDTHS


class Packedness(Enum):
    """打包性分类"""
    PACKED = "packed"           # 编码为连续字节,不含独立存储单元
    NON_PACKED = "non_packed"   # 拥有至少一个独立寻址的存储单元


@dataclass(frozen=True)
class TypeDescriptor:
    """类型描述符基类"""

    @property
    def type_id(self) -> str:
        raise NotImplementedError

    def children(self) -> Tuple["TypeDescriptor", ...]:
        return ()

    def __str__(self) -> str:
        return self.type_id


@dataclass(frozen=True)
class Primitive(TypeDescriptor):
    name: str

    def __post_init__(self):
        if self.name != "bool" and self.name not in INTEGER_WIDTHS:
            raise ValueError(f"unknown primitive type: {self.name}")

    @property
    def type_id(self) -> str:
        return self.name


@dataclass(frozen=True)
class Text(TypeDescriptor):
    @property
    def type_id(self) -> str:
        return "String"


@dataclass(frozen=True)
class Bytes(TypeDescriptor):
    @property
    def type_id(self) -> str:
        return "Vec<u8>"


@dataclass(frozen=True)
class FixedArray(TypeDescriptor):
    element: TypeDescriptor
    length: int

    def __post_init__(self):
        if self.length < 0:
            raise ValueError(f"array length must be non-negative, got {self.length}")

    @property
    def type_id(self) -> str:
        return f"[{self.element.type_id}; {self.length}]"

    def children(self):
        return (self.element,)


@dataclass(frozen=True)
class Sequence(TypeDescriptor):
    element: TypeDescriptor

    @property
    def type_id(self) -> str:
        return f"Vec<{self.element.type_id}>"

    def children(self):
        return (self.element,)


@dataclass(frozen=True)
class OrderedMap(TypeDescriptor):
    key: TypeDescriptor
    value: TypeDescriptor

    @property
    def type_id(self) -> str:
        return f"BTreeMap<{self.key.type_id}, {self.value.type_id}>"

    def children(self):
        return (self.key, self.value)


@dataclass(frozen=True)
class OptionOf(TypeDescriptor):
    inner: TypeDescriptor

    @property
    def type_id(self) -> str:
        return f"Option<{self.inner.type_id}>"

    def children(self):
        return (self.inner,)


@dataclass(frozen=True)
class TupleOf(TypeDescriptor):
    elements: Tuple[TypeDescriptor, ...]

    def __post_init__(self):
        object.__setattr__(self, 'elements', tuple(self.elements))

    @property
    def type_id(self) -> str:
        return "(" + ", ".join(e.type_id for e in self.elements) + ")"

    def children(self):
        return self.elements


@dataclass(frozen=True)
class Lazy(TypeDescriptor):
    """单值存储单元: 值存放在自己的键下,按需读取"""
    value: TypeDescriptor
    manual_key: Optional[int] = None

    @property
    def type_id(self) -> str:
        if self.manual_key is not None:
            return f"Lazy<{self.value.type_id}, ManualKey<{self.manual_key}>>"
        return f"Lazy<{self.value.type_id}>"

    def children(self):
        return (self.value,)


@dataclass(frozen=True)
class StorageMapping(TypeDescriptor):
    """键值映射存储单元: 每个条目存放在哈希派生的键下"""
    key: TypeDescriptor
    value: TypeDescriptor
    manual_key: Optional[int] = None

    @property
    def type_id(self) -> str:
        if self.manual_key is not None:
            return f"Mapping<{self.key.type_id}, {self.value.type_id}, ManualKey<{self.manual_key}>>"
        return f"Mapping<{self.key.type_id}, {self.value.type_id}>"

    def children(self):
        return (self.key, self.value)


@dataclass(frozen=True)
class Opaque(TypeDescriptor):
    """没有存储编解码能力的类型 (例如浮点数或任意 Python 类)"""
    name: str
    reason: str = ""

    @property
    def type_id(self) -> str:
        return self.name


@dataclass(frozen=True)
class TypeRef(TypeDescriptor):
    """按名称引用复合类型"""
    name: str

    @property
    def type_id(self) -> str:
        return self.name


@dataclass(frozen=True)
class FieldDescriptor:
    """字段: 名称 (元组结构体为 None)、声明类型、可选手动键"""
    name: Optional[str]
    type: TypeDescriptor
    manual_key: Optional[int] = None

    def path_segment(self, index: int) -> str:
        return self.name if self.name is not None else str(index)


def _check_unique_names(owner: str, names):
    seen = set()
    for name in names:
        if name is None:
            continue
        if name in seen:
            raise ValueError(f"duplicate member `{name}` in `{owner}`")
        seen.add(name)


@dataclass(frozen=True)
class StructDescriptor(TypeDescriptor):
    name: str
    fields: Tuple[FieldDescriptor, ...] = ()
    storage_key: Optional[int] = None
    python_type: Optional[type] = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        if not self.name:
            raise ValueError("struct name must not be empty")
        object.__setattr__(self, 'fields', tuple(self.fields))
        _check_unique_names(self.name, [f.name for f in self.fields])

    @property
    def type_id(self) -> str:
        return self.name

    def children(self):
        return tuple(f.type for f in self.fields)


@dataclass(frozen=True)
class VariantDescriptor:
    name: str
    fields: Tuple[FieldDescriptor, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'fields', tuple(self.fields))


@dataclass(frozen=True)
class EnumDescriptor(TypeDescriptor):
    name: str
    variants: Tuple[VariantDescriptor, ...] = ()
    storage_key: Optional[int] = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("enum name must not be empty")
        object.__setattr__(self, 'variants', tuple(self.variants))
        if len(self.variants) > 256:
            raise ValueError(f"enum `{self.name}` has more than 256 variants")
        _check_unique_names(self.name, [v.name for v in self.variants])
        for variant in self.variants:
            _check_unique_names(f"{self.name}::{variant.name}", [f.name for f in variant.fields])

    @property
    def type_id(self) -> str:
        return self.name

    def children(self):
        return tuple(f.type for v in self.variants for f in v.fields)

    def variant_index(self, name: str) -> int:
        for index, variant in enumerate(self.variants):
            if variant.name == name:
                return index
        raise ValueError(f"`{self.name}` has no variant `{name}`")


@dataclass
class EnumValue:
    """枚举值: 变体名 + 字段值 (按字段名或位置索引)"""
    variant: str
    fields: Dict[Any, Any] = field(default_factory=dict)


# 常用内置类型
U8 = Primitive("u8")
U16 = Primitive("u16")
U32 = Primitive("u32")
U64 = Primitive("u64")
U128 = Primitive("u128")
I8 = Primitive("i8")
I16 = Primitive("i16")
I32 = Primitive("i32")
I64 = Primitive("i64")
I128 = Primitive("i128")
BOOL = Primitive("bool")
STRING = Text()
BYTES = Bytes()

COMPOSITE_TYPES = (StructDescriptor, EnumDescriptor)
INLINE_CONTAINERS = (FixedArray, Sequence, OrderedMap, OptionOf, TupleOf)
CELL_CONTAINERS = (Lazy, StorageMapping)
