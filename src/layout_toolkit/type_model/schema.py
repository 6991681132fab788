"""
Schema 文件加载

schema 为 JSON 或 TOML 文件,声明一组结构体和枚举:

    [[structs]]
    name = "Ledger"
    storage_key = 123                 # 可选: 类型级手动键

    [[structs.fields]]
    name = "balances"
    type = "Mapping<u32, u128>"

    [[structs.fields]]
    name = "owner"
    type = "[u8; 32]"
    key = "0x10"                      # 可选: 字段手动键

    [[enums]]
    name = "Mode"

    [[enums.variants]]
    name = "Paused"

字段省略 name 时视为元组字段。字段类型中的复合类型名称生成 TypeRef,
在派生时按名称解析。
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import toml

from ..errors import InvalidTypeExpression, LayoutError
from .descriptors import (
    EnumDescriptor,
    FieldDescriptor,
    StructDescriptor,
    TypeDescriptor,
    VariantDescriptor,
)
from .expressions import parse_type_expression

logger = logging.getLogger(__name__)


def _parse_key(value: Union[int, str, None], context: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidTypeExpression(f"invalid storage key {value!r} for `{context}`")
    if isinstance(value, int):
        return value
    try:
        return int(str(value).replace('_', ''), 0)
    except ValueError:
        raise InvalidTypeExpression(f"invalid storage key {value!r} for `{context}`") from None


def _parse_fields(owner: str, raw_fields: List[Dict[str, Any]]) -> List[FieldDescriptor]:
    fields = []
    for index, raw in enumerate(raw_fields or []):
        name = raw.get("name")
        label = name if name is not None else str(index)
        if "type" not in raw:
            raise InvalidTypeExpression(f"field `{label}` of `{owner}` has no type")
        try:
            type_desc = parse_type_expression(str(raw["type"]))
        except LayoutError as e:
            raise e.with_frame(owner, label)
        fields.append(FieldDescriptor(
            name=name,
            type=type_desc,
            manual_key=_parse_key(raw.get("key"), f"{owner}::{label}")
        ))
    return fields


def _require_name(raw: Dict[str, Any], kind: str) -> str:
    name = raw.get("name")
    if not name or not isinstance(name, str):
        raise InvalidTypeExpression(f"every {kind} needs a non-empty `name`")
    return name


def schema_from_dict(data: Dict[str, Any]) -> List[TypeDescriptor]:
    """
    把 schema 字典转换为描述符列表 (保持声明顺序: 先结构体,后枚举)

    Raises:
        InvalidTypeExpression: schema 结构或类型表达式不合法
    """
    descriptors: List[TypeDescriptor] = []

    for raw in data.get("structs", []):
        name = _require_name(raw, "struct")
        try:
            descriptors.append(StructDescriptor(
                name=name,
                fields=tuple(_parse_fields(name, raw.get("fields", []))),
                storage_key=_parse_key(raw.get("storage_key"), name),
            ))
        except ValueError as e:
            raise InvalidTypeExpression(str(e)).with_frame(name) from e

    for raw in data.get("enums", []):
        name = _require_name(raw, "enum")
        variants = []
        for raw_variant in raw.get("variants", []):
            variant_name = _require_name(raw_variant, "variant")
            variants.append(VariantDescriptor(
                name=variant_name,
                fields=tuple(_parse_fields(f"{name}::{variant_name}", raw_variant.get("fields", []))),
            ))
        try:
            descriptors.append(EnumDescriptor(
                name=name,
                variants=tuple(variants),
                storage_key=_parse_key(raw.get("storage_key"), name),
            ))
        except ValueError as e:
            raise InvalidTypeExpression(str(e)).with_frame(name) from e

    return descriptors


def load_schema(path: Union[str, Path]) -> List[TypeDescriptor]:
    """
    加载 schema 文件

    Args:
        path: .json 或 .toml 文件

    Returns:
        描述符列表
    """
    path = Path(path)
    with open(path, 'r', encoding='utf-8') as f:
        if path.suffix.lower() == ".json":
            data = json.load(f)
        else:
            data = toml.load(f)

    descriptors = schema_from_dict(data)
    logger.info(f"加载 schema {path}: {len(descriptors)} 个类型")
    return descriptors
