"""
复合类型编解码器

每个 Codec 提供:
- encode(value) -> bytes
- decode_from(reader) -> value    (从共享缓冲区顺序读取)
- decode(data) -> value           (整体解码,不允许残留字节)
- static_size                     (定长编码的字节数,变长为 None)
"""

from typing import Any, Dict, List, Optional, Sequence, Union

from ..errors import DecodeError
from . import primitives
from .primitives import ByteReader


class Codec:
    """编解码器基类"""

    static_size: Optional[int] = None

    def encode(self, value: Any) -> bytes:
        raise NotImplementedError

    def decode_from(self, reader: ByteReader) -> Any:
        raise NotImplementedError

    def decode(self, data: bytes) -> Any:
        reader = ByteReader(data)
        value = self.decode_from(reader)
        reader.ensure_consumed()
        return value


class IntCodec(Codec):
    def __init__(self, name: str):
        self.name = name
        self.static_size = primitives.INTEGER_WIDTHS[name][0]

    def encode(self, value: int) -> bytes:
        return primitives.encode_int(value, self.name)

    def decode_from(self, reader: ByteReader) -> int:
        return primitives.decode_int(reader, self.name)


class BoolCodec(Codec):
    static_size = 1

    def encode(self, value: bool) -> bytes:
        return primitives.encode_bool(value)

    def decode_from(self, reader: ByteReader) -> bool:
        return primitives.decode_bool(reader)


class TextCodec(Codec):
    def encode(self, value: str) -> bytes:
        return primitives.encode_str(value)

    def decode_from(self, reader: ByteReader) -> str:
        return primitives.decode_str(reader)


class BytesCodec(Codec):
    def encode(self, value: bytes) -> bytes:
        return primitives.encode_bytes(value)

    def decode_from(self, reader: ByteReader) -> bytes:
        return primitives.decode_bytes(reader)


class SequenceCodec(Codec):
    """Vec<T>: compact 长度前缀 + 元素"""

    def __init__(self, element: Codec):
        self.element = element

    def encode(self, value: Sequence) -> bytes:
        if isinstance(value, (str, bytes, dict)):
            raise ValueError(f"Vec expects a list or tuple, got {type(value).__name__}")
        parts = [primitives.encode_compact(len(value))]
        parts.extend(self.element.encode(item) for item in value)
        return b''.join(parts)

    def decode_from(self, reader: ByteReader) -> List:
        length = primitives.decode_compact(reader)
        return [self.element.decode_from(reader) for _ in range(length)]


class FixedArrayCodec(Codec):
    """[T; N]: 无长度前缀"""

    def __init__(self, element: Codec, length: int):
        self.element = element
        self.length = length
        if element.static_size is not None:
            self.static_size = element.static_size * length

    def encode(self, value: Sequence) -> bytes:
        if len(value) != self.length:
            raise ValueError(f"expected {self.length} elements, got {len(value)}")
        if isinstance(value, (bytes, bytearray)) and self.is_byte_array:
            return bytes(value)
        return b''.join(self.element.encode(item) for item in value)

    @property
    def is_byte_array(self) -> bool:
        return isinstance(self.element, IntCodec) and self.element.name == "u8"

    def decode_from(self, reader: ByteReader) -> Union[bytes, List]:
        if self.is_byte_array:
            return bytes(reader.read(self.length))
        return [self.element.decode_from(reader) for _ in range(self.length)]


class OptionCodec(Codec):
    """Option<T>: 0x00 为 None, 0x01 后接值; Option<bool> 使用单字节 0/1/2"""

    def __init__(self, inner: Codec):
        self.inner = inner
        if isinstance(inner, BoolCodec):
            self.static_size = 1

    def encode(self, value: Any) -> bytes:
        if isinstance(self.inner, BoolCodec):
            if value is None:
                return b'\x00'
            return b'\x01' if primitives.encode_bool(value) == b'\x01' else b'\x02'
        if value is None:
            return b'\x00'
        return b'\x01' + self.inner.encode(value)

    def decode_from(self, reader: ByteReader) -> Any:
        tag = reader.read_byte()
        if isinstance(self.inner, BoolCodec):
            if tag > 2:
                raise DecodeError(f"invalid Option<bool> byte 0x{tag:02x}")
            return None if tag == 0 else tag == 1
        if tag == 0:
            return None
        if tag == 1:
            return self.inner.decode_from(reader)
        raise DecodeError(f"invalid Option tag 0x{tag:02x}")


class TupleCodec(Codec):
    def __init__(self, elements: Sequence[Codec]):
        self.elements = list(elements)
        sizes = [c.static_size for c in self.elements]
        if all(size is not None for size in sizes):
            self.static_size = sum(sizes)

    def encode(self, value: Sequence) -> bytes:
        if len(value) != len(self.elements):
            raise ValueError(f"expected a {len(self.elements)}-tuple, got {len(value)} items")
        return b''.join(c.encode(item) for c, item in zip(self.elements, value))

    def decode_from(self, reader: ByteReader) -> tuple:
        return tuple(c.decode_from(reader) for c in self.elements)


class MapCodec(Codec):
    """BTreeMap<K, V>: compact 长度 + 按键排序的 (K, V) 对"""

    def __init__(self, key: Codec, value: Codec):
        self.key = key
        self.value = value

    def encode(self, value: Dict) -> bytes:
        if not isinstance(value, dict):
            raise ValueError(f"BTreeMap expects a dict, got {type(value).__name__}")
        parts = [primitives.encode_compact(len(value))]
        for k in sorted(value):
            parts.append(self.key.encode(k))
            parts.append(self.value.encode(value[k]))
        return b''.join(parts)

    def decode_from(self, reader: ByteReader) -> Dict:
        length = primitives.decode_compact(reader)
        result = {}
        for _ in range(length):
            k = self.key.decode_from(reader)
            if k in result:
                raise DecodeError(f"duplicate map key {k!r}")
            result[k] = self.value.decode_from(reader)
        return result


class DeferredCodec(Codec):
    """递归类型的延迟绑定编解码器,目标在派生完成后注入"""

    def __init__(self, name: str):
        self.name = name
        self.target: Optional[Codec] = None

    def _resolved(self) -> Codec:
        if self.target is None:
            raise RuntimeError(f"codec for `{self.name}` is not bound yet")
        return self.target

    def encode(self, value: Any) -> bytes:
        return self._resolved().encode(value)

    def decode_from(self, reader: ByteReader) -> Any:
        return self._resolved().decode_from(reader)
