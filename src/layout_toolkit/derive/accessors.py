"""
存储访问器

派生结果在运行时通过这些访问器读写键值存储:
- KeyValueStore: 外部键值存储接口 (get / set / remove)
- MemoryStore: 基于 dict 的内存实现
- CellRef / LazyCell / MappingHandle: 独立存储单元的句柄,按需从存储读取
- StorageAccessor: 按派生出的键推送、拉取、清除整个存储类型
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from eth_utils import encode_hex

from ..codec.compound import Codec, OptionCodec
from ..errors import DecodeError, StorageEntryEmpty
from ..storage_layout.hashing import HashingStrategy
from ..storage_layout.key_allocator import format_key

logger = logging.getLogger(__name__)


class KeyValueStore:
    """键值存储接口: 以存储键寻址的字节存储,不了解任何类型信息"""

    def get(self, key: int) -> Optional[bytes]:
        raise NotImplementedError

    def set(self, key: int, value: bytes) -> None:
        raise NotImplementedError

    def remove(self, key: int) -> None:
        raise NotImplementedError


class MemoryStore(KeyValueStore):
    """内存键值存储"""

    def __init__(self, key_width: int = 32):
        self.key_width = key_width
        self.cells: Dict[int, bytes] = {}

    def get(self, key: int) -> Optional[bytes]:
        return self.cells.get(key)

    def set(self, key: int, value: bytes) -> None:
        self.cells[key] = bytes(value)

    def remove(self, key: int) -> None:
        self.cells.pop(key, None)

    def __len__(self) -> int:
        return len(self.cells)

    def __contains__(self, key: int) -> bool:
        return key in self.cells

    def snapshot(self) -> Dict[str, str]:
        """导出存储内容 {键 (hex): 值 (hex)},按键排序"""
        return {
            format_key(key, self.key_width): encode_hex(value)
            for key, value in sorted(self.cells.items())
        }


@dataclass
class CellSpec:
    """
    存储单元中保存的内容

    kind:
        value    - 带手动键的 Packed 值
        lazy     - Lazy<T> 单值单元
        mapping  - Mapping<K, V>,条目键由哈希策略派生
        storable - NonPacked 复合类型,在该键下递归展开
    """
    kind: str
    codec: Optional[Codec] = None
    key_codec: Optional[Codec] = None
    strategy: Optional[HashingStrategy] = None
    derived: Any = None
    key_width: int = 32

    def handle(self, key: int, store: Optional[KeyValueStore] = None) -> "CellRef":
        if self.kind == "lazy":
            return LazyCell(key, self, store)
        if self.kind == "mapping":
            return MappingHandle(key, self, store)
        return CellRef(key, self, store)


class CellRef:
    """未加载的存储单元占位符,解码时代替字段值"""

    def __init__(self, key: int, spec: CellSpec, store: Optional[KeyValueStore] = None):
        self.key = key
        self.spec = spec
        self.store = store

    def bind(self, store: KeyValueStore) -> "CellRef":
        self.store = store
        return self

    def _store(self, store: Optional[KeyValueStore] = None) -> KeyValueStore:
        store = store or self.store
        if store is None:
            raise RuntimeError(f"cell {format_key(self.key, self.spec.key_width)} is not bound to a store")
        return store

    def load(self, store: Optional[KeyValueStore] = None) -> Any:
        store = self._store(store)
        if self.spec.kind == "storable":
            return StorageAccessor(store, self.spec.derived, self.key).pull()
        data = store.get(self.key)
        if data is None:
            raise StorageEntryEmpty(self.key)
        return self.spec.codec.decode(data)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(key={format_key(self.key, self.spec.key_width)}, kind={self.spec.kind!r})"


class LazyCell(CellRef):
    """Lazy<T> 句柄"""

    def get(self) -> Optional[Any]:
        data = self._store().get(self.key)
        if data is None:
            return None
        return self.spec.codec.decode(data)

    def set(self, value: Any) -> None:
        self._store().set(self.key, self.spec.codec.encode(value))

    def remove(self) -> None:
        self._store().remove(self.key)


class MappingHandle(CellRef):
    """Mapping<K, V> 句柄: 条目存放在 hash(prefix ++ root ++ encode(k) ++ postfix) 派生的键下"""

    def entry_key(self, item_key: Any) -> int:
        size = self.spec.key_width // 8
        data = self.key.to_bytes(size, byteorder='little') + self.spec.key_codec.encode(item_key)
        digest = self.spec.strategy.hash(data)
        return int.from_bytes(digest[:size], byteorder='big')

    def get(self, item_key: Any) -> Optional[Any]:
        data = self._store().get(self.entry_key(item_key))
        if data is None:
            return None
        return self.spec.codec.decode(data)

    def insert(self, item_key: Any, value: Any) -> None:
        self._store().set(self.entry_key(item_key), self.spec.codec.encode(value))

    def remove(self, item_key: Any) -> None:
        self._store().remove(self.entry_key(item_key))

    def contains(self, item_key: Any) -> bool:
        return self._store().get(self.entry_key(item_key)) is not None


class StorageAccessor:
    """
    存储访问器

    Args:
        store: 键值存储
        derived: 派生结果 (DerivedStorable)
        root_key: 存储根键,默认为类型的根键
    """

    def __init__(self, store: KeyValueStore, derived, root_key: Optional[int] = None):
        self.store = store
        self.derived = derived
        self.key = derived.root_key if root_key is None else root_key
        self.logger = logging.getLogger(__name__ + '.StorageAccessor')

    def _format_key(self) -> str:
        return self.derived.deriver.allocator.format_key(self.key)

    def pull(self) -> Any:
        data = self.store.get(self.key)
        if data is None:
            raise StorageEntryEmpty(self.key)
        return self.derived.decode(data, self.key, self.store)

    def pull_or_init(self, initializer: Optional[Callable[[], Any]] = None) -> Any:
        """
        读取存储值,为空时使用初始化器

        Args:
            initializer: 返回初始值的可调用对象

        Raises:
            StorageEntryEmpty: 单元为空且没有初始化器
            DecodeError: 单元无法解码且没有初始化器
        """
        try:
            return self.pull()
        except StorageEntryEmpty:
            if initializer is None:
                raise
            self.logger.debug(f"{self.derived.name} @ {self._format_key()} 为空,使用初始化器")
        except DecodeError as e:
            if initializer is None:
                raise
            self.logger.warning(f"{self.derived.name} @ {self._format_key()} 解码失败,使用初始化器: {e}")
        return initializer()

    def push(self, value: Any) -> None:
        """写入内联编码,并递归写入所有已加载的存储单元字段"""
        self.store.set(self.key, self.derived.encode(value))
        for hint, field_value in self.derived.cell_values(value, self.key):
            self._push_cell(hint, field_value)

    def _push_cell(self, hint, field_value: Any) -> None:
        spec = self.derived.cell_spec(hint)
        if isinstance(field_value, CellRef):
            # 未加载的句柄没有本地修改
            return
        if field_value is None:
            if spec.kind in ("storable", "mapping"):
                return
            if spec.kind == "lazy" and not isinstance(spec.codec, OptionCodec):
                # 未设置的 Lazy
                return
        if spec.kind == "storable":
            StorageAccessor(self.store, spec.derived, hint.key).push(field_value)
        elif spec.kind == "mapping":
            handle = MappingHandle(hint.key, spec, self.store)
            for item_key, item_value in field_value.items():
                handle.insert(item_key, item_value)
        else:
            self.store.set(hint.key, spec.codec.encode(field_value))

    def clear(self, value: Any = None) -> None:
        """
        删除根单元及所有可达的存储单元

        Args:
            value: 已知的存储值; None 时先从存储读取

        注意: Mapping 条目无法枚举,不会被删除。
        """
        if value is None:
            if self.store.get(self.key) is None:
                return
            value = self.pull()
        for hint, _ in self.derived.cell_values(value, self.key):
            spec = self.derived.cell_spec(hint)
            if spec.kind == "storable":
                StorageAccessor(self.store, spec.derived, hint.key).clear()
            elif spec.kind == "mapping":
                self.logger.debug(f"跳过 Mapping 条目清理: {hint.field}")
            else:
                self.store.remove(hint.key)
        self.store.remove(self.key)
