"""
哈希函数

- CryptoHasher: 支持的摘要算法 (Blake2x256 / Sha2x256 / Keccak256)
- HASH_VERSIONS: 键派生使用的带版本哈希,版本名是存储兼容性契约的一部分
- HashingStrategy: 映射条目键的哈希策略 (prefix + 数据 + postfix)
"""

import hashlib
from dataclasses import dataclass
from enum import Enum

from eth_utils import keccak


class CryptoHasher(Enum):
    """摘要算法"""
    BLAKE2X256 = "Blake2x256"
    SHA2X256 = "Sha2x256"
    KECCAK256 = "Keccak256"

    @classmethod
    def from_name(cls, name: str) -> "CryptoHasher":
        for hasher in cls:
            if hasher.value.lower() == name.lower():
                return hasher
        raise ValueError(f"unknown hasher {name!r}, expected one of {[h.value for h in cls]}")

    def digest(self, data: bytes) -> bytes:
        if self is CryptoHasher.BLAKE2X256:
            return hashlib.blake2b(data, digest_size=32).digest()
        if self is CryptoHasher.SHA2X256:
            return hashlib.sha256(data).digest()
        return keccak(primitive=data)


# 版本名 -> 摘要算法
HASH_VERSIONS = {
    "blake2x256-v1": CryptoHasher.BLAKE2X256,
    "keccak256-v1": CryptoHasher.KECCAK256,
}


@dataclass(frozen=True)
class HashingStrategy:
    """映射条目键的哈希策略"""
    hasher: CryptoHasher
    prefix: bytes = b""
    postfix: bytes = b""

    def hash(self, data: bytes) -> bytes:
        return self.hasher.digest(self.prefix + data + self.postfix)
