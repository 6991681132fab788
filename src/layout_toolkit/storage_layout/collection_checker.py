"""
容器约束检查器

规则: 作为存储值使用的任何容器 (直接使用或嵌套在其他容器中),
其值类型必须是 Packed。容器元素没有稳定的字段路径,
无法承载独立寻址的存储单元。

该检查在键分配之前执行; 被拒绝的类型不会进入键分配器。
"""

import logging
from typing import Tuple

from ..errors import IllegalContainerNesting, LayoutError
from ..type_model.descriptors import (
    CELL_CONTAINERS,
    COMPOSITE_TYPES,
    INLINE_CONTAINERS,
    EnumDescriptor,
    Packedness,
    TypeDescriptor,
)

logger = logging.getLogger(__name__)


def is_container(type_desc: TypeDescriptor) -> bool:
    return isinstance(type_desc, INLINE_CONTAINERS + CELL_CONTAINERS)


def value_types(container: TypeDescriptor) -> Tuple[TypeDescriptor, ...]:
    """容器中必须为 Packed 的类型 (元素、键、值)"""
    return container.children()


def container_note(container: TypeDescriptor) -> str:
    return f"required by the container `{container.type_id}`"


def ensure_packed_value(container: TypeDescriptor, value: TypeDescriptor, packedness: Packedness) -> None:
    """值类型不是 Packed 时拒绝容器"""
    if packedness is not Packedness.PACKED:
        raise IllegalContainerNesting(container.type_id, value.type_id)


class CollectionConstraintChecker:
    """
    容器约束检查器

    依赖打包性分类器获取值类型的分类结果 (有缓存,不会重复计算)。
    """

    def __init__(self, classifier):
        self.classifier = classifier
        self.logger = logging.getLogger(__name__ + '.CollectionConstraintChecker')

    def check_collection(self, container: TypeDescriptor) -> None:
        """
        检查单个容器类型

        Raises:
            IllegalContainerNesting: 值类型 (或嵌套容器的值类型) 不是 Packed
        """
        if not is_container(container):
            raise TypeError(f"`{container.type_id}` is not a container type")

        for value in value_types(container):
            try:
                packedness = self.classifier.classify(value)
            except LayoutError as e:
                raise e.with_frame(container.type_id, note=container_note(container))
            ensure_packed_value(container, value, packedness)
        self.logger.debug(f"容器检查通过: {container.type_id}")

    def check_fields(self, descriptor: TypeDescriptor) -> None:
        """检查复合类型中所有容器类型的字段"""
        if not isinstance(descriptor, COMPOSITE_TYPES):
            return

        if isinstance(descriptor, EnumDescriptor):
            members = [(f"{v.name}::{f.path_segment(i)}", f)
                       for v in descriptor.variants for i, f in enumerate(v.fields)]
        else:
            members = [(f.path_segment(i), f) for i, f in enumerate(descriptor.fields)]

        for label, field in members:
            if not is_container(field.type):
                continue
            try:
                self.check_collection(field.type)
            except LayoutError as e:
                raise e.with_frame(descriptor.type_id, label).with_frame(descriptor.type_id)
