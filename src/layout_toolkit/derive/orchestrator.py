"""
派生编排器

derive_storable(type) 的完整流程:
    1. 打包性分类          (UNDECLARED -> CLASSIFYING -> CLASSIFIED)
    2. 派生直接引用的复合类型 (依赖先于自身到达终态)
    3. 容器约束检查、字段提示解析、编解码器生成 (RESOLVING)
    4. 写入注册表           (RESOLVED 或 REJECTED)

任何阶段的失败都会以带派生链的 LayoutError 拒绝该类型,
不会产生部分派生结果。
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from ..codec.compound import Codec, DeferredCodec
from ..errors import LayoutError, MissingCodecSupport
from ..settings import LayoutSettings
from ..storage_layout.collection_checker import CollectionConstraintChecker
from ..storage_layout.hashing import CryptoHasher, HashingStrategy
from ..storage_layout.hint_resolver import CellHint, StorableHint, StorableHintResolver
from ..storage_layout.key_allocator import StorageKeyAllocator
from ..storage_layout.packedness import PackednessClassifier, member_fields
from ..storage_layout.registry import TERMINAL_STATES, LayoutRegistry, ResolutionState
from ..type_model.descriptors import (
    COMPOSITE_TYPES,
    EnumDescriptor,
    EnumValue,
    Lazy,
    Packedness,
    StorageMapping,
    TypeDescriptor,
)
from ..type_model.reflection import descriptor_of
from .accessors import CellSpec, KeyValueStore, StorageAccessor
from .codegen import CodecFactory, EnumCodec, StructCodec, get_member

logger = logging.getLogger(__name__)


@dataclass
class DerivedStorable:
    """
    派生结果

    Attributes:
        descriptor: 结构体或枚举描述符
        packedness: 打包性
        root_key: 类型作为存储根时的键
        hints: 根键下的字段提示 (枚举按变体顺序展开)
        codec: 内联编解码器
        variant_hints: 枚举在根键下按变体分组的提示
    """
    descriptor: TypeDescriptor
    packedness: Packedness
    root_key: int
    hints: List[StorableHint]
    codec: Codec
    variant_hints: Optional[Dict[str, List[StorableHint]]] = None
    deriver: Any = field(default=None, repr=False, compare=False)

    @property
    def name(self) -> str:
        return self.descriptor.type_id

    @property
    def is_packed(self) -> bool:
        return self.packedness is Packedness.PACKED

    @property
    def cells(self) -> List[CellHint]:
        return [h for h in self.hints if h.is_cell]

    def encode(self, value: Any) -> bytes:
        return self.codec.encode(value)

    def decode(self, data: bytes, key: Optional[int] = None, store: Optional[KeyValueStore] = None) -> Any:
        return self.codec.decode(data, key, store)

    def hints_at(self, key: int) -> List[StorableHint]:
        """类型存放在 key 下时的字段提示"""
        hints = self.deriver.resolve_hints(self.descriptor, key)
        if isinstance(hints, dict):
            return [h for variant in hints.values() for h in variant]
        return hints

    def variant_hints_at(self, key: int) -> Dict[str, List[StorableHint]]:
        if not isinstance(self.descriptor, EnumDescriptor):
            raise TypeError(f"`{self.name}` is not an enum")
        return self.deriver.resolve_hints(self.descriptor, key)

    def cell_values(self, value: Any, key: Optional[int] = None) -> Iterator[Tuple[CellHint, Any]]:
        """迭代值中的存储单元字段 (枚举只包含当前变体)"""
        key = self.root_key if key is None else key
        if isinstance(self.descriptor, EnumDescriptor):
            if isinstance(value, str):
                value = EnumValue(value)
            variant = self.descriptor.variants[self.descriptor.variant_index(value.variant)]
            fields, hints, members = variant.fields, self.variant_hints_at(key)[variant.name], value.fields
        else:
            fields, hints, members = self.descriptor.fields, self.hints_at(key), value

        for index, (item, hint) in enumerate(zip(fields, hints)):
            if not hint.is_cell:
                continue
            yield hint, get_member(members, item, index)

    def cell_spec(self, hint: CellHint) -> CellSpec:
        return self.deriver.cell_spec(hint)

    def accessor(self, store: KeyValueStore, key: Optional[int] = None) -> StorageAccessor:
        return StorageAccessor(store, self, key)


class StorageDeriver:
    """
    派生编排器

    Args:
        settings: 布局配置
        registry: 已解析类型注册表 (可在多个派生器间共享)
    """

    def __init__(self, settings: Optional[LayoutSettings] = None, registry: Optional[LayoutRegistry] = None):
        self.settings = settings or LayoutSettings()
        self.registry = registry if registry is not None else LayoutRegistry()
        self.allocator = StorageKeyAllocator(self.settings.key_width, self.settings.hash_version)
        self.classifier = PackednessClassifier(self.registry)
        self.checker = CollectionConstraintChecker(self.classifier)
        self.resolver = StorableHintResolver(self.classifier, self.allocator)
        self.codecs = CodecFactory(self)
        self.mapping_strategy = HashingStrategy(
            CryptoHasher.from_name(self.settings.mapping_hasher),
            self.settings.mapping_prefix,
            self.settings.mapping_postfix,
        )
        self._deferred: Dict[str, DeferredCodec] = {}
        self._hint_cache: Dict[Tuple[str, int], Any] = {}
        self._cell_specs: Dict[str, CellSpec] = {}
        self._lock = threading.RLock()
        self.logger = logging.getLogger(__name__ + '.StorageDeriver')

    # ------------------------------------------------------------------
    # 派生
    # ------------------------------------------------------------------

    def declare(self, *descriptors) -> None:
        """预先登记类型声明,使 TypeRef 可以按名称解析"""
        for descriptor in descriptors:
            self.registry.declare(self._descriptor(descriptor))

    def _descriptor(self, target: Any) -> TypeDescriptor:
        descriptor = target if isinstance(target, TypeDescriptor) else descriptor_of(target)
        descriptor = self.classifier.resolve_ref(descriptor)
        if not isinstance(descriptor, COMPOSITE_TYPES):
            raise TypeError(f"`{descriptor.type_id}` is not a struct or enum")
        return descriptor

    def derive_storable(self, target: Any) -> DerivedStorable:
        """
        派生存储布局

        Args:
            target: StructDescriptor / EnumDescriptor / TypeRef 或 @storage_item 类

        Returns:
            DerivedStorable

        Raises:
            LayoutError: 类型违反任一布局规则
        """
        descriptor = self._descriptor(target)
        name = descriptor.type_id

        state = self.registry.state(name)
        if state in TERMINAL_STATES:
            return self.registry.derived(name)
        if state is not ResolutionState.UNDECLARED:
            raise RuntimeError(f"`{name}` is already being derived ({state.value})")

        self.registry.declare(descriptor)
        self.registry.transition(name, ResolutionState.CLASSIFYING)
        try:
            packedness = self.classifier.classify(descriptor)
        except LayoutError as e:
            self.registry.record_rejected(name, e)
            raise
        self.registry.transition(name, ResolutionState.CLASSIFIED)

        self.registry.transition(name, ResolutionState.RESOLVING)
        try:
            self._derive_dependencies(descriptor)
            self.checker.check_fields(descriptor)
            root_key = self._root_key(descriptor)
            hints = self.resolve_hints(descriptor, root_key)
            codec = self._build_codec(descriptor, root_key)
        except LayoutError as e:
            self._forget_deferred(name)
            self.registry.record_rejected(name, e)
            raise

        if isinstance(hints, dict):
            variant_hints = hints
            hints = [h for variant in hints.values() for h in variant]
        else:
            variant_hints = None

        derived = DerivedStorable(
            descriptor=descriptor,
            packedness=packedness,
            root_key=root_key,
            hints=hints,
            codec=codec,
            variant_hints=variant_hints,
            deriver=self,
        )
        self._bind_deferred(name, codec)
        self.registry.record_resolved(name, derived)

        cells = len(derived.cells)
        self.logger.info(
            f"派生完成: {name} ({packedness.value}), {len(hints) - cells} 个内联字段, "
            f"{cells} 个存储单元, 根键 {self.allocator.format_key(root_key)}"
        )
        return derived

    def _root_key(self, descriptor: TypeDescriptor) -> int:
        if descriptor.storage_key is not None:
            return self.allocator.check_key(descriptor.storage_key, descriptor.type_id)
        return self.settings.root_key

    def dependencies(self, descriptor: TypeDescriptor) -> List[TypeDescriptor]:
        """直接引用的复合类型 (穿过容器,不进入其他复合类型)"""
        found: Dict[str, TypeDescriptor] = {}
        for _label, _variant, _index, item in member_fields(descriptor):
            try:
                for dep in self._field_dependencies(item.type):
                    found.setdefault(dep.type_id, dep)
            except MissingCodecSupport:
                continue
        return list(found.values())

    def _derive_dependencies(self, descriptor: TypeDescriptor) -> None:
        name = descriptor.type_id
        for label, _variant, _index, item in member_fields(descriptor):
            for dep in self._field_dependencies(item.type):
                state = self.registry.state(dep.type_id)
                if state not in TERMINAL_STATES and state is not ResolutionState.UNDECLARED:
                    # 仍在派生中: 递归引用
                    continue
                try:
                    self.derive_storable(dep)
                except LayoutError as e:
                    raise e.with_frame(name, label).with_frame(name)

    def _field_dependencies(self, type_desc: TypeDescriptor) -> List[TypeDescriptor]:
        type_desc = self.classifier.resolve_ref(type_desc)
        if isinstance(type_desc, COMPOSITE_TYPES):
            return [type_desc]
        found = []
        for child in type_desc.children():
            found.extend(self._field_dependencies(child))
        return found

    # ------------------------------------------------------------------
    # 提示与编解码器
    # ------------------------------------------------------------------

    def resolve_hints(self, descriptor: TypeDescriptor, key: int) -> Union[List[StorableHint], Dict]:
        """结构体返回提示列表,枚举返回 {变体名: 提示列表}; 按 (类型, 键) 缓存"""
        cache_key = (descriptor.type_id, key)
        cached = self._hint_cache.get(cache_key)
        if cached is not None:
            return cached
        if isinstance(descriptor, EnumDescriptor):
            hints = self.resolver.resolve_variants(descriptor, key)
        else:
            hints = self.resolver.resolve(descriptor, key)
        with self._lock:
            self._hint_cache.setdefault(cache_key, hints)
        return hints

    def codec_of(self, descriptor: TypeDescriptor) -> Codec:
        """复合类型的编解码器; 仍在派生中的类型返回延迟绑定的编解码器"""
        name = descriptor.type_id
        state = self.registry.state(name)
        if state is ResolutionState.UNDECLARED:
            return self.derive_storable(descriptor).codec
        if state in TERMINAL_STATES:
            return self.registry.derived(name).codec
        with self._lock:
            deferred = self._deferred.get(name)
            if deferred is None:
                deferred = DeferredCodec(name)
                self._deferred[name] = deferred
            return deferred

    def _bind_deferred(self, name: str, codec: Codec) -> None:
        with self._lock:
            deferred = self._deferred.pop(name, None)
        if deferred is not None:
            deferred.target = codec

    def _forget_deferred(self, name: str) -> None:
        with self._lock:
            self._deferred.pop(name, None)

    def _inline_codecs(self, fields, hints: List[StorableHint]) -> List[Optional[Codec]]:
        return [
            None if hint.is_cell else self.codecs.codec_for(item.type)
            for item, hint in zip(fields, hints)
        ]

    def _build_codec(self, descriptor: TypeDescriptor, root_key: int) -> Codec:
        hints = self.resolve_hints(descriptor, root_key)
        hints_at = lambda key: self.resolve_hints(descriptor, key)  # noqa: E731
        if isinstance(descriptor, EnumDescriptor):
            codecs = {
                variant.name: self._inline_codecs(variant.fields, hints[variant.name])
                for variant in descriptor.variants
            }
            return EnumCodec(descriptor, codecs, hints_at, self.cell_spec, root_key)
        codecs = self._inline_codecs(descriptor.fields, hints)
        return StructCodec(descriptor, codecs, hints_at, self.cell_spec, root_key)

    def cell_spec(self, hint: CellHint) -> CellSpec:
        """存储单元内容的编解码方式; 首次使用时构造"""
        cache_key = hint.type.type_id
        spec = self._cell_specs.get(cache_key)
        if spec is not None:
            return spec

        type_desc = self.classifier.resolve_ref(hint.type)
        width = self.settings.key_width
        if isinstance(type_desc, Lazy):
            spec = CellSpec("lazy", codec=self.codecs.codec_for(type_desc.value), key_width=width)
        elif isinstance(type_desc, StorageMapping):
            spec = CellSpec(
                "mapping",
                codec=self.codecs.codec_for(type_desc.value),
                key_codec=self.codecs.codec_for(type_desc.key),
                strategy=self.mapping_strategy,
                key_width=width,
            )
        elif isinstance(type_desc, COMPOSITE_TYPES) \
                and self.classifier.classify(type_desc) is Packedness.NON_PACKED:
            spec = CellSpec("storable", derived=self.derive_storable(type_desc), key_width=width)
        else:
            spec = CellSpec("value", codec=self.codecs.codec_for(type_desc), key_width=width)

        with self._lock:
            return self._cell_specs.setdefault(cache_key, spec)

    # ------------------------------------------------------------------
    # 批量派生
    # ------------------------------------------------------------------

    def dependency_levels(self, descriptors: Iterable[TypeDescriptor]) -> Tuple[List[List[str]], List[str]]:
        """
        按依赖关系分层

        Returns:
            (levels, cyclic): levels 中同一层的类型互不依赖;
            cyclic 为处于引用环中 (或依赖环) 的类型,需要顺序派生
        """
        graph: Dict[str, List[str]] = {}
        pending = []
        for target in descriptors:
            descriptor = self._descriptor(target)
            self.registry.declare(descriptor)
            pending.append(descriptor.type_id)
        while pending:
            name = pending.pop()
            if name in graph:
                continue
            deps = self.dependencies(self.registry.lookup(name))
            for dep in deps:
                self.registry.declare(dep)
            graph[name] = [d.type_id for d in deps if d.type_id != name]
            pending.extend(graph[name])

        levels: List[List[str]] = []
        done = set()
        remaining = dict(graph)
        while remaining:
            level = sorted(n for n, deps in remaining.items() if all(d in done for d in deps))
            if not level:
                break
            levels.append(level)
            done.update(level)
            for n in level:
                del remaining[n]
        return levels, sorted(remaining)

    def derive_many(self, descriptors: Iterable[Any], max_workers: int = 1) -> Dict[str, Union[DerivedStorable, LayoutError]]:
        """
        批量派生: 互不依赖的类型并行派生

        Args:
            descriptors: 待派生的类型
            max_workers: 线程数

        Returns:
            {类型名: DerivedStorable 或 LayoutError}
        """
        levels, cyclic = self.dependency_levels(list(descriptors))
        results: Dict[str, Union[DerivedStorable, LayoutError]] = {}

        def derive_one(name: str):
            try:
                return name, self.derive_storable(self.registry.lookup(name))
            except LayoutError as e:
                return name, e

        for index, level in enumerate(levels):
            self.logger.debug(f"第 {index + 1} 层: {len(level)} 个类型")
            if len(level) == 1 or max_workers <= 1:
                for name in level:
                    _, results[name] = derive_one(name)
                continue
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                futures = [executor.submit(derive_one, name) for name in level]
                for future in as_completed(futures):
                    name, result = future.result()
                    results[name] = result

        for name in cyclic:
            _, results[name] = derive_one(name)

        rejected = sum(1 for r in results.values() if isinstance(r, LayoutError))
        self.logger.info(f"批量派生完成: {len(results) - rejected} 个成功, {rejected} 个被拒绝")
        return results
