"""
编解码基础原语

实现与 SCALE 紧凑二进制格式逐字节兼容的标量编解码:
- 定宽整数: 小端序 (u8..u128, i8..i128)
- bool: 单字节 0/1
- compact 整数: 低两位为模式标记
- 长度前缀的字节串和 UTF-8 字符串
"""

from typing import Tuple

from ..errors import DecodeError

# 定宽整数: 名称 -> (字节数, 是否有符号)
INTEGER_WIDTHS = {
    "u8": (1, False),
    "u16": (2, False),
    "u32": (4, False),
    "u64": (8, False),
    "u128": (16, False),
    "i8": (1, True),
    "i16": (2, True),
    "i32": (4, True),
    "i64": (8, True),
    "i128": (16, True),
}

# compact 模式上限
COMPACT_SINGLE_MAX = (1 << 6) - 1
COMPACT_TWO_MAX = (1 << 14) - 1
COMPACT_FOUR_MAX = (1 << 30) - 1
COMPACT_BIG_MAX_BYTES = 67


class ByteReader:
    """顺序读取字节缓冲区,越界时抛出 DecodeError"""

    def __init__(self, data: bytes):
        self.data = bytes(data)
        self.position = 0

    def read(self, size: int) -> bytes:
        end = self.position + size
        if size < 0 or end > len(self.data):
            raise DecodeError(
                f"unexpected end of input: need {size} bytes at offset {self.position}, "
                f"have {len(self.data) - self.position}"
            )
        chunk = self.data[self.position:end]
        self.position = end
        return chunk

    def read_byte(self) -> int:
        return self.read(1)[0]

    @property
    def remaining(self) -> int:
        return len(self.data) - self.position

    def ensure_consumed(self):
        """整体解码后不允许残留字节"""
        if self.remaining:
            raise DecodeError(f"{self.remaining} trailing bytes after decoding")


def integer_bounds(name: str) -> Tuple[int, int]:
    size, signed = INTEGER_WIDTHS[name]
    bits = size * 8
    if signed:
        return -(1 << (bits - 1)), (1 << (bits - 1)) - 1
    return 0, (1 << bits) - 1


def encode_int(value: int, name: str) -> bytes:
    """按定宽小端序编码整数"""
    size, signed = INTEGER_WIDTHS[name]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} expects an int, got {type(value).__name__}")
    low, high = integer_bounds(name)
    if not low <= value <= high:
        raise ValueError(f"{value} is out of range for {name}")
    return value.to_bytes(size, byteorder='little', signed=signed)


def decode_int(reader: ByteReader, name: str) -> int:
    size, signed = INTEGER_WIDTHS[name]
    return int.from_bytes(reader.read(size), byteorder='little', signed=signed)


def encode_bool(value: bool) -> bytes:
    if not isinstance(value, bool):
        raise ValueError(f"bool expects a bool, got {type(value).__name__}")
    return b'\x01' if value else b'\x00'


def decode_bool(reader: ByteReader) -> bool:
    byte = reader.read_byte()
    if byte == 0:
        return False
    if byte == 1:
        return True
    raise DecodeError(f"invalid bool byte 0x{byte:02x}")


def encode_compact(value: int) -> bytes:
    """
    编码 compact 整数

    模式:
    - 0b00: 单字节, 值 < 2^6
    - 0b01: 双字节, 值 < 2^14
    - 0b10: 四字节, 值 < 2^30
    - 0b11: 大整数, 首字节高6位为 (字节数 - 4)
    """
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"compact expects a non-negative int, got {value!r}")
    if value <= COMPACT_SINGLE_MAX:
        return bytes([value << 2])
    if value <= COMPACT_TWO_MAX:
        return ((value << 2) | 0b01).to_bytes(2, byteorder='little')
    if value <= COMPACT_FOUR_MAX:
        return ((value << 2) | 0b10).to_bytes(4, byteorder='little')

    size = max(4, (value.bit_length() + 7) // 8)
    if size > COMPACT_BIG_MAX_BYTES:
        raise ValueError(f"{value} is too large for compact encoding")
    return bytes([((size - 4) << 2) | 0b11]) + value.to_bytes(size, byteorder='little')


def decode_compact(reader: ByteReader) -> int:
    first = reader.read_byte()
    mode = first & 0b11
    if mode == 0b00:
        return first >> 2
    if mode == 0b01:
        raw = bytes([first]) + reader.read(1)
        return int.from_bytes(raw, byteorder='little') >> 2
    if mode == 0b10:
        raw = bytes([first]) + reader.read(3)
        return int.from_bytes(raw, byteorder='little') >> 2
    size = (first >> 2) + 4
    return int.from_bytes(reader.read(size), byteorder='little')


def encode_bytes(value: bytes) -> bytes:
    if not isinstance(value, (bytes, bytearray)):
        raise ValueError(f"Vec<u8> expects bytes, got {type(value).__name__}")
    return encode_compact(len(value)) + bytes(value)


def decode_bytes(reader: ByteReader) -> bytes:
    length = decode_compact(reader)
    return reader.read(length)


def encode_str(value: str) -> bytes:
    if not isinstance(value, str):
        raise ValueError(f"String expects a str, got {type(value).__name__}")
    return encode_bytes(value.encode('utf-8'))


def decode_str(reader: ByteReader) -> str:
    raw = decode_bytes(reader)
    try:
        return raw.decode('utf-8')
    except UnicodeDecodeError as e:
        raise DecodeError(f"invalid UTF-8 string: {e}") from e
