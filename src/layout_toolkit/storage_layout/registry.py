"""
已解析类型注册表

只追加的表,按类型标识记录:
- 声明的描述符 (用于按名称解析 TypeRef)
- 打包性分类结果
- 派生状态机及最终派生结果或错误

状态机 (每个类型,仅派生阶段):
    UNDECLARED -> CLASSIFYING -> {REJECTED | CLASSIFIED}
    CLASSIFIED -> RESOLVING -> {REJECTED | RESOLVED}
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import ConflictingDeclaration, LayoutError
from ..type_model.descriptors import Packedness, TypeDescriptor

logger = logging.getLogger(__name__)


class ResolutionState(Enum):
    """单个类型的派生状态"""
    UNDECLARED = "undeclared"
    CLASSIFYING = "classifying"
    CLASSIFIED = "classified"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    REJECTED = "rejected"


ALLOWED_TRANSITIONS = {
    ResolutionState.UNDECLARED: {ResolutionState.CLASSIFYING},
    ResolutionState.CLASSIFYING: {ResolutionState.CLASSIFIED, ResolutionState.REJECTED},
    ResolutionState.CLASSIFIED: {ResolutionState.RESOLVING},
    ResolutionState.RESOLVING: {ResolutionState.RESOLVED, ResolutionState.REJECTED},
}

TERMINAL_STATES = (ResolutionState.RESOLVED, ResolutionState.REJECTED)


@dataclass
class RegistryEntry:
    """注册表条目"""
    descriptor: Optional[TypeDescriptor] = None
    state: ResolutionState = ResolutionState.UNDECLARED
    packedness: Optional[Packedness] = None
    derived: Any = None  # DerivedStorable
    error: Optional[LayoutError] = None


def _snapshot(error: LayoutError) -> LayoutError:
    # 外围类型会继续追加帧,注册表保存独立副本
    snapshot = error.__class__.__new__(error.__class__, *error.args)
    snapshot.__dict__.update(error.__dict__)
    snapshot.frames = list(error.frames)
    return snapshot


class LayoutRegistry:
    """
    已解析类型注册表

    写入通过锁同步,允许独立子树并行派生。
    已写入的分类结果和派生结果不会被覆盖。
    """

    def __init__(self):
        self._entries: Dict[str, RegistryEntry] = {}
        self._lock = threading.RLock()
        self.logger = logging.getLogger(__name__ + '.LayoutRegistry')

    def _entry(self, type_id: str) -> RegistryEntry:
        entry = self._entries.get(type_id)
        if entry is None:
            entry = RegistryEntry()
            self._entries[type_id] = entry
        return entry

    def declare(self, descriptor: TypeDescriptor) -> None:
        """登记复合类型声明; 同名的不同声明视为冲突"""
        with self._lock:
            entry = self._entry(descriptor.type_id)
            if entry.descriptor is None:
                entry.descriptor = descriptor
            elif entry.descriptor != descriptor:
                raise ConflictingDeclaration(descriptor.type_id)

    def lookup(self, name: str) -> Optional[TypeDescriptor]:
        entry = self._entries.get(name)
        return entry.descriptor if entry else None

    def declared_names(self) -> List[str]:
        return [name for name, entry in self._entries.items() if entry.descriptor is not None]

    def state(self, type_id: str) -> ResolutionState:
        entry = self._entries.get(type_id)
        return entry.state if entry else ResolutionState.UNDECLARED

    def transition(self, type_id: str, state: ResolutionState) -> None:
        with self._lock:
            entry = self._entry(type_id)
            if state not in ALLOWED_TRANSITIONS.get(entry.state, set()):
                raise RuntimeError(
                    f"illegal state transition for `{type_id}`: {entry.state.value} -> {state.value}"
                )
            self.logger.debug(f"{type_id}: {entry.state.value} -> {state.value}")
            entry.state = state

    def packedness(self, type_id: str) -> Optional[Packedness]:
        entry = self._entries.get(type_id)
        return entry.packedness if entry else None

    def record_packedness(self, type_id: str, packedness: Packedness) -> None:
        with self._lock:
            entry = self._entry(type_id)
            if entry.packedness is not None and entry.packedness != packedness:
                raise RuntimeError(
                    f"packedness of `{type_id}` changed from {entry.packedness.value} to {packedness.value}"
                )
            entry.packedness = packedness

    def record_resolved(self, type_id: str, derived: Any) -> None:
        with self._lock:
            self.transition(type_id, ResolutionState.RESOLVED)
            self._entries[type_id].derived = derived

    def record_rejected(self, type_id: str, error: LayoutError) -> None:
        with self._lock:
            self.transition(type_id, ResolutionState.REJECTED)
            self._entries[type_id].error = _snapshot(error)
        self.logger.warning(f"类型 {type_id} 被拒绝: {error.rule}")

    def derived(self, type_id: str) -> Any:
        """
        获取派生结果

        Raises:
            LayoutError: 类型已被拒绝时重新抛出记录的错误
            KeyError: 类型尚未解析
        """
        entry = self._entries.get(type_id)
        if entry is None or entry.state not in TERMINAL_STATES:
            raise KeyError(type_id)
        if entry.state is ResolutionState.REJECTED:
            raise _snapshot(entry.error)
        return entry.derived

    def __contains__(self, type_id: str) -> bool:
        return self.state(type_id) is ResolutionState.RESOLVED

    def __len__(self) -> int:
        return sum(1 for entry in self._entries.values() if entry.state is ResolutionState.RESOLVED)
