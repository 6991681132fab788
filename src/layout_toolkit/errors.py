"""
存储布局诊断与错误类型

所有布局错误都在派生(derive)阶段检测,并携带完整的派生链:
从最内层失败的类型开始,经过每一层外围复合类型,直到顶层声明。
诊断链以结构化帧保存,只在边界处(CLI、日志)渲染为文本。
"""

from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class DiagnosticFrame:
    """诊断链中的一帧"""
    type_name: str
    field: Optional[str] = None  # None 表示类型级别的帧
    rule: Optional[str] = None
    note: Optional[str] = None

    def render(self) -> str:
        if self.note:
            return self.note
        if self.field is not None:
            return f"required by field `{self.field}` of `{self.type_name}`"
        return f"required by `{self.type_name}` (derive storable)"


class LayoutError(Exception):
    """
    布局错误基类

    Attributes:
        rule: 违反的规则名称
        frames: 诊断帧列表 (最内层在前)
    """

    rule = "LayoutError"

    def __init__(self, message: str, frames: Optional[List[DiagnosticFrame]] = None):
        super().__init__(message)
        self.message = message
        self.frames: List[DiagnosticFrame] = list(frames or [])

    def with_frame(self, type_name: str, field: Optional[str] = None,
                   note: Optional[str] = None) -> "LayoutError":
        """追加一个外围帧并返回自身,便于 `raise err.with_frame(...)`"""
        self.frames.append(DiagnosticFrame(type_name, field, self.rule, note))
        return self

    @property
    def chain(self) -> List[str]:
        """外围类型链 (去重,保持顺序)"""
        names: List[str] = []
        for frame in self.frames:
            if frame.type_name not in names:
                names.append(frame.type_name)
        return names

    def render(self) -> str:
        lines = [f"error[{self.rule}]: {self.message}"]
        for frame in self.frames:
            lines.append(f"  note: {frame.render()}")
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.render()


class MissingCodecSupport(LayoutError):
    """字段类型缺少编解码能力"""

    rule = "MissingCodecSupport"

    def __init__(self, type_name: str, reason: str = "", frames=None):
        message = f"the type `{type_name}` has no storage codec"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, frames)
        self.type_name = type_name


class IllegalContainerNesting(LayoutError):
    """容器的值类型不是 Packed"""

    rule = "IllegalContainerNesting"

    def __init__(self, container: str, value_type: str, frames=None):
        super().__init__(
            f"the container `{container}` requires a packed value type, "
            f"but `{value_type}` is non-packed",
            frames
        )
        self.container = container
        self.value_type = value_type


class KeyCollision(LayoutError):
    """同一作用域内两个存储单元派生出相同的键"""

    rule = "KeyCollision"

    def __init__(self, scope: str, key: int, first: str, second: str, frames=None, key_width: int = 32):
        super().__init__(
            f"storage key 0x{key:0{key_width // 4}x} is used by both `{first}` and `{second}` in `{scope}`",
            frames
        )
        self.scope = scope
        self.key = key
        self.fields = (first, second)


class ManualKeyCollision(KeyCollision):
    """手动指定的键与同一作用域内其他存储单元冲突"""

    rule = "ManualKeyCollision"


class InfiniteLayout(LayoutError):
    """类型在没有间接边界的情况下递归包含自身"""

    rule = "InfiniteLayout"

    def __init__(self, type_name: str, path: List[str], frames=None):
        cycle = " -> ".join(path + [type_name])
        super().__init__(
            f"the type `{type_name}` contains itself without a cell boundary ({cycle})",
            frames
        )
        self.type_name = type_name
        self.path = list(path)


class ConflictingDeclaration(LayoutError):
    """同名类型存在两个不同的声明"""

    rule = "ConflictingDeclaration"

    def __init__(self, type_name: str, frames=None):
        super().__init__(f"conflicting declarations for type `{type_name}`", frames)
        self.type_name = type_name


class InvalidStorageKey(LayoutError):
    """手动键超出键宽度或路径不合法"""

    rule = "InvalidStorageKey"


class InvalidTypeExpression(LayoutError):
    """无法解析的类型表达式或 schema 声明"""

    rule = "InvalidTypeExpression"


class DecodeError(ValueError):
    """字节流无法按类型解码"""


class StorageEntryEmpty(KeyError):
    """存储单元为空且没有初始化器"""

    def __str__(self) -> str:
        return "storage entry was empty"
