"""
编解码器生成

- CodecFactory: 按类型描述符组合编解码原语
- StructCodec / EnumCodec: 复合类型的生成编解码器
  编码: 内联字段按声明顺序拼接,存储单元字段不占用字节
  解码: 内联字段按顺序读取,存储单元字段生成按需读取的句柄
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from ..codec.compound import (
    BoolCodec,
    BytesCodec,
    Codec,
    FixedArrayCodec,
    IntCodec,
    MapCodec,
    OptionCodec,
    SequenceCodec,
    TextCodec,
    TupleCodec,
)
from ..codec.primitives import ByteReader
from ..errors import DecodeError, MissingCodecSupport
from ..type_model.descriptors import (
    BOOL,
    CELL_CONTAINERS,
    COMPOSITE_TYPES,
    Bytes,
    EnumDescriptor,
    EnumValue,
    FieldDescriptor,
    FixedArray,
    Opaque,
    OptionOf,
    OrderedMap,
    Primitive,
    Sequence,
    StructDescriptor,
    Text,
    TupleOf,
    TypeDescriptor,
)

logger = logging.getLogger(__name__)


def member_key(item: FieldDescriptor, index: int):
    return item.name if item.name is not None else index


def get_member(value: Any, item: FieldDescriptor, index: int) -> Any:
    """按字段名 (或位置) 从 dict / 对象 / 元组中取值"""
    if isinstance(value, dict):
        key = member_key(item, index)
        if key not in value:
            raise ValueError(f"missing field `{key}`")
        return value[key]
    if item.name is None:
        return value[index]
    try:
        return getattr(value, item.name)
    except AttributeError:
        raise ValueError(f"missing field `{item.name}` on {type(value).__name__}") from None


class CodecFactory:
    """按类型描述符构造编解码器,复合类型委托给派生器"""

    def __init__(self, deriver):
        self.deriver = deriver
        self._cache: Dict[str, Codec] = {}

    def codec_for(self, type_desc: TypeDescriptor) -> Codec:
        type_desc = self.deriver.classifier.resolve_ref(type_desc)

        if isinstance(type_desc, COMPOSITE_TYPES):
            return self.deriver.codec_of(type_desc)

        cached = self._cache.get(type_desc.type_id)
        if cached is not None:
            return cached

        codec = self._build(type_desc)
        self._cache[type_desc.type_id] = codec
        logger.debug(f"生成编解码器: {type_desc.type_id} -> {type(codec).__name__}")
        return codec

    def _build(self, type_desc: TypeDescriptor) -> Codec:
        if isinstance(type_desc, Primitive):
            return BoolCodec() if type_desc == BOOL else IntCodec(type_desc.name)
        if isinstance(type_desc, Text):
            return TextCodec()
        if isinstance(type_desc, Bytes):
            return BytesCodec()
        if isinstance(type_desc, FixedArray):
            return FixedArrayCodec(self.codec_for(type_desc.element), type_desc.length)
        if isinstance(type_desc, Sequence):
            return SequenceCodec(self.codec_for(type_desc.element))
        if isinstance(type_desc, OrderedMap):
            return MapCodec(self.codec_for(type_desc.key), self.codec_for(type_desc.value))
        if isinstance(type_desc, OptionOf):
            return OptionCodec(self.codec_for(type_desc.inner))
        if isinstance(type_desc, TupleOf):
            return TupleCodec([self.codec_for(e) for e in type_desc.elements])
        if isinstance(type_desc, CELL_CONTAINERS):
            raise MissingCodecSupport(type_desc.type_id, "storage cells cannot be encoded inline")
        if isinstance(type_desc, Opaque):
            raise MissingCodecSupport(type_desc.name, type_desc.reason)
        raise MissingCodecSupport(type_desc.type_id, "unsupported type descriptor")


class _CompositeCodec(Codec):
    """
    复合类型编解码器基类

    Args:
        inline_codecs: 每个字段的编解码器,存储单元字段为 None
        hints_at: key -> 该键下的提示 (结构体为列表,枚举为 {变体: 列表})
        cell_spec: CellHint -> CellSpec
        root_key: 默认根键
    """

    def __init__(self, descriptor, hints_at: Callable, cell_spec: Callable, root_key: int):
        self.descriptor = descriptor
        self.hints_at = hints_at
        self.cell_spec = cell_spec
        self.root_key = root_key

    def decode(self, data: bytes, key: Optional[int] = None, store=None) -> Any:
        reader = ByteReader(data)
        value = self.decode_from(reader, key, store)
        reader.ensure_consumed()
        return value

    def _encode_fields(self, fields, codecs, value) -> bytes:
        parts = []
        for index, (item, codec) in enumerate(zip(fields, codecs)):
            if codec is None:
                continue
            try:
                parts.append(codec.encode(get_member(value, item, index)))
            except ValueError as e:
                raise ValueError(f"{self.descriptor.name}.{member_key(item, index)}: {e}") from e
        return b''.join(parts)

    def _decode_fields(self, fields, codecs, reader, hints_fn, store) -> Dict:
        members = {}
        hints = None
        for index, (item, codec) in enumerate(zip(fields, codecs)):
            if codec is not None:
                members[member_key(item, index)] = codec.decode_from(reader)
                continue
            if hints is None:
                hints = hints_fn()
            hint = hints[index]
            members[member_key(item, index)] = self.cell_spec(hint).handle(hint.key, store)
        return members


class StructCodec(_CompositeCodec):
    def __init__(self, descriptor: StructDescriptor, codecs: List[Optional[Codec]],
                 hints_at: Callable, cell_spec: Callable, root_key: int):
        super().__init__(descriptor, hints_at, cell_spec, root_key)
        self.codecs = codecs
        if all(c is not None and c.static_size is not None for c in codecs):
            self.static_size = sum(c.static_size for c in codecs)

    def encode(self, value: Any) -> bytes:
        return self._encode_fields(self.descriptor.fields, self.codecs, value)

    def decode_from(self, reader: ByteReader, key: Optional[int] = None, store=None) -> Any:
        key = self.root_key if key is None else key
        members = self._decode_fields(
            self.descriptor.fields, self.codecs, reader, lambda: self.hints_at(key), store
        )
        python_type = self.descriptor.python_type
        if python_type is not None and all(f.name is not None for f in self.descriptor.fields):
            return python_type(**members)
        return members


class EnumCodec(_CompositeCodec):
    """枚举: u8 变体索引 + 该变体的内联字段"""

    def __init__(self, descriptor: EnumDescriptor, codecs: Dict[str, List[Optional[Codec]]],
                 hints_at: Callable, cell_spec: Callable, root_key: int):
        super().__init__(descriptor, hints_at, cell_spec, root_key)
        self.codecs = codecs
        if all(not v.fields for v in descriptor.variants):
            self.static_size = 1

    def encode(self, value: Any) -> bytes:
        if isinstance(value, str):
            value = EnumValue(value)
        if not isinstance(value, EnumValue):
            raise ValueError(f"{self.descriptor.name} expects an EnumValue, got {type(value).__name__}")
        index = self.descriptor.variant_index(value.variant)
        variant = self.descriptor.variants[index]
        return bytes([index]) + self._encode_fields(variant.fields, self.codecs[variant.name], value.fields)

    def decode_from(self, reader: ByteReader, key: Optional[int] = None, store=None) -> EnumValue:
        key = self.root_key if key is None else key
        index = reader.read_byte()
        if index >= len(self.descriptor.variants):
            raise DecodeError(f"invalid variant index {index} for `{self.descriptor.name}`")
        variant = self.descriptor.variants[index]
        members = self._decode_fields(
            variant.fields, self.codecs[variant.name], reader,
            lambda: self.hints_at(key)[variant.name], store
        )
        return EnumValue(variant.name, members)
