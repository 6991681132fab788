"""
编解码模块

提供与 SCALE 紧凑二进制格式兼容的编解码能力:
- 标量原语 (定宽整数、bool、compact、字符串)
- 复合编解码器 (Vec、数组、Option、元组、BTreeMap)
"""

from .primitives import (
    ByteReader,
    encode_compact,
    decode_compact,
    encode_int,
    decode_int,
    INTEGER_WIDTHS,
)
from .compound import (
    Codec,
    IntCodec,
    BoolCodec,
    TextCodec,
    BytesCodec,
    SequenceCodec,
    FixedArrayCodec,
    OptionCodec,
    TupleCodec,
    MapCodec,
    DeferredCodec,
)

__all__ = [
    "ByteReader",
    "encode_compact",
    "decode_compact",
    "encode_int",
    "decode_int",
    "INTEGER_WIDTHS",
    "Codec",
    "IntCodec",
    "BoolCodec",
    "TextCodec",
    "BytesCodec",
    "SequenceCodec",
    "FixedArrayCodec",
    "OptionCodec",
    "TupleCodec",
    "MapCodec",
    "DeferredCodec",
]
