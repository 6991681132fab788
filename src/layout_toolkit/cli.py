"""
命令行入口

示例:
  # 派生 schema 中的所有类型并打印字段提示
  layout-toolkit derive schema.toml

  # 只派生指定类型,输出布局元数据 JSON
  layout-toolkit derive schema.toml --type Ledger --json

  # 把示例值写入内存存储并打印存储快照
  layout-toolkit derive schema.toml --type Ledger --snapshot values.json

  # 计算字段路径的存储键
  layout-toolkit key Ledger::balances --parent 0x7b
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from eth_utils import decode_hex

from .derive import LayoutBuilder, MemoryStore, StorageDeriver
from .derive.orchestrator import DerivedStorable
from .errors import LayoutError
from .settings import load_settings
from .storage_layout.key_allocator import FieldPath, StorageKeyAllocator
from .type_model.descriptors import (
    COMPOSITE_TYPES,
    Bytes,
    EnumDescriptor,
    EnumValue,
    FixedArray,
    Lazy,
    OptionOf,
    OrderedMap,
    Primitive,
    Sequence,
    StorageMapping,
    TupleOf,
    TypeDescriptor,
    TypeRef,
)
from .type_model.schema import load_schema

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


def _describe(derived: DerivedStorable, allocator: StorageKeyAllocator) -> List[str]:
    lines = [
        f"{derived.name}: {derived.packedness.value}, root key {allocator.format_key(derived.root_key)}"
    ]
    for hint in derived.hints:
        label = f"{hint.variant}::{hint.field}" if hint.variant else hint.field
        if hint.is_cell:
            kind = "manual" if hint.manual else "derived"
            lines.append(f"  {label}: {hint.type} -> cell {allocator.format_key(hint.key)} ({kind})")
        else:
            offset = "?" if hint.byte_offset is None else hint.byte_offset
            lines.append(f"  {label}: {hint.type} -> inline #{hint.position} @ byte {offset}")
    return lines


def value_from_json(deriver: StorageDeriver, type_desc: TypeDescriptor, raw: Any) -> Any:
    """把 JSON 值转换为编解码器接受的 Python 值"""
    type_desc = deriver.classifier.resolve_ref(type_desc)

    if isinstance(type_desc, Bytes):
        return decode_hex(raw) if isinstance(raw, str) else bytes(raw)
    if isinstance(type_desc, Primitive) and type_desc.name != "bool" and isinstance(raw, str):
        return int(raw, 0)
    if isinstance(type_desc, FixedArray):
        if isinstance(raw, str):
            return decode_hex(raw)
        return [value_from_json(deriver, type_desc.element, v) for v in raw]
    if isinstance(type_desc, Sequence):
        return [value_from_json(deriver, type_desc.element, v) for v in raw]
    if isinstance(type_desc, TupleOf):
        return tuple(value_from_json(deriver, t, v) for t, v in zip(type_desc.elements, raw))
    if isinstance(type_desc, OptionOf):
        return None if raw is None else value_from_json(deriver, type_desc.inner, raw)
    if isinstance(type_desc, (OrderedMap, StorageMapping)):
        return {
            value_from_json(deriver, type_desc.key, k): value_from_json(deriver, type_desc.value, v)
            for k, v in raw.items()
        }
    if isinstance(type_desc, Lazy):
        return None if raw is None else value_from_json(deriver, type_desc.value, raw)
    if isinstance(type_desc, EnumDescriptor):
        if isinstance(raw, str):
            return EnumValue(raw)
        variant = type_desc.variants[type_desc.variant_index(raw["variant"])]
        return EnumValue(variant.name, _members_from_json(deriver, variant.fields, raw.get("fields", {})))
    if isinstance(type_desc, COMPOSITE_TYPES):
        return _members_from_json(deriver, type_desc.fields, raw)
    return raw


def _members_from_json(deriver: StorageDeriver, fields, raw) -> Dict[Any, Any]:
    members = {}
    for index, item in enumerate(fields):
        if isinstance(raw, list):
            value = raw[index]
        else:
            value = raw.get(item.name if item.name is not None else str(index))
        key = item.name if item.name is not None else index
        members[key] = value_from_json(deriver, item.type, value)
    return members


def cmd_derive(args) -> int:
    settings = load_settings(args.config)
    if not args.verbose:
        logging.getLogger().setLevel(settings.log_level.upper())

    deriver = StorageDeriver(settings)
    descriptors = load_schema(args.schema)
    deriver.declare(*descriptors)

    targets = [d for d in descriptors if not args.type or d.type_id in args.type]
    missing = set(args.type or []) - {d.type_id for d in descriptors}
    if missing:
        logger.error(f"schema 中没有这些类型: {', '.join(sorted(missing))}")
        return 2

    results = deriver.derive_many(targets, max_workers=args.workers)

    failed = 0
    layouts = {}
    for descriptor in targets:
        result = results[descriptor.type_id]
        if isinstance(result, LayoutError):
            failed += 1
            print(result.render(), file=sys.stderr)
            continue
        if args.json:
            layouts[result.name] = LayoutBuilder(deriver).layout_of(result).to_dict()
        else:
            print("\n".join(_describe(result, deriver.allocator)))

    if args.json:
        print(json.dumps(layouts, indent=2, ensure_ascii=False))

    if args.snapshot and not failed:
        print(json.dumps(_snapshot(deriver, results, args.snapshot), indent=2))

    if failed:
        logger.error(f"{failed} 个类型被拒绝")
        return 1
    return 0


def _snapshot(deriver: StorageDeriver, results: Dict[str, Any], values_path: Path) -> Dict[str, str]:
    with open(values_path, 'r', encoding='utf-8') as f:
        values = json.load(f)

    store = MemoryStore(deriver.settings.key_width)
    for name, raw in values.items():
        derived = results.get(name) or deriver.derive_storable(TypeRef(name))
        derived.accessor(store).push(value_from_json(deriver, derived.descriptor, raw))
    logger.info(f"写入 {len(values)} 个值, {len(store)} 个存储单元")
    return store.snapshot()


def cmd_key(args) -> int:
    settings = load_settings(args.config)
    allocator = StorageKeyAllocator(settings.key_width, settings.hash_version)
    parent = int(args.parent, 0)

    for raw_path in args.paths:
        parts = raw_path.split("::")
        if len(parts) == 2:
            path = FieldPath(parts[0], parts[1])
        elif len(parts) == 3:
            path = FieldPath(parts[0], parts[2], parts[1])
        else:
            logger.error(f"路径格式应为 Type::field 或 Type::Variant::field: {raw_path}")
            return 2
        print(f"{path}: {allocator.format_key(allocator.allocate(parent, path))}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="layout-toolkit",
        description="存储布局派生工具 - 打包性分类、存储键派生、字段提示解析",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--config', type=Path, help='TOML 配置文件')
    common.add_argument('-v', '--verbose', action='store_true', help='输出调试日志')

    subparsers = parser.add_subparsers(dest='command')

    derive = subparsers.add_parser('derive', parents=[common], help='派生 schema 中的类型')
    derive.add_argument('schema', type=Path, help='schema 文件 (.json / .toml)')
    derive.add_argument('--type', action='append', help='只派生指定类型 (可重复)')
    derive.add_argument('--json', action='store_true', help='输出布局元数据 JSON')
    derive.add_argument('--snapshot', type=Path, help='示例值 JSON 文件,写入内存存储后输出快照')
    derive.add_argument('--workers', type=int, default=1, help='并行派生线程数')
    derive.set_defaults(func=cmd_derive)

    key = subparsers.add_parser('key', parents=[common], help='计算字段路径的存储键')
    key.add_argument('paths', nargs='+', help='Type::field 或 Type::Variant::field')
    key.add_argument('--parent', default='0', help='父单元键 (默认 0)')
    key.set_defaults(func=cmd_key)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if getattr(args, 'verbose', False) else logging.INFO,
        format=LOG_FORMAT,
    )

    if not getattr(args, 'func', None):
        parser.print_help()
        return 2

    try:
        return args.func(args)
    except LayoutError as e:
        print(e.render(), file=sys.stderr)
        return 1
    except (OSError, ValueError) as e:
        logger.error(f"{e}")
        return 2


if __name__ == '__main__':
    sys.exit(main())
