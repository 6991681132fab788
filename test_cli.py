#!/usr/bin/env python3
"""
配置、schema 加载与命令行单元测试

测试内容:
1. LayoutSettings / load_settings - 默认值、TOML 加载、非法配置
2. schema_from_dict / load_schema - JSON 与 TOML schema
3. cli.main - derive / key 子命令的输出与返回码
"""

import io
import json
import shutil
import sys
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path

# 添加src到路径
sys.path.insert(0, str(Path(__file__).parent / "src"))

from layout_toolkit import cli
from layout_toolkit.errors import InvalidTypeExpression
from layout_toolkit.settings import LayoutSettings, load_settings, settings_from_dict
from layout_toolkit.storage_layout import FieldPath, StorageKeyAllocator
from layout_toolkit.type_model import (
    U32,
    U128,
    EnumDescriptor,
    Lazy,
    StorageMapping,
    StructDescriptor,
    TypeRef,
    load_schema,
    schema_from_dict,
)

SCHEMA = {
    "structs": [
        {
            "name": "Point",
            "fields": [
                {"name": "x", "type": "u32"},
                {"name": "y", "type": "u32"},
            ],
        },
        {
            "name": "Ledger",
            "storage_key": "0x7b",
            "fields": [
                {"name": "total", "type": "u128"},
                {"name": "balances", "type": "Mapping<u32, u128>"},
                {"name": "origin", "type": "Point"},
                {"name": "owner", "type": "u32", "key": "0x10"},
            ],
        },
    ],
    "enums": [
        {
            "name": "Mode",
            "variants": [
                {"name": "Paused"},
                {"name": "Active", "fields": [{"name": "since", "type": "u64"}]},
            ],
        }
    ],
}

REJECTED_SCHEMA = {
    "structs": [
        {"name": "Inner", "fields": [{"name": "cell", "type": "Lazy<u32>"}]},
        {"name": "Outer", "fields": [{"name": "items", "type": "Vec<Inner>"}]},
    ]
}

CONFIG_TOML = """
[layout]
root_key = 5
key_width = 64
hash_version = "keccak256-v1"

[layout.mapping]
hasher = "Keccak256"
prefix = "0x0102"

[logging]
level = "WARNING"
"""


class TempDirMixin:
    def setUp(self):
        self.tmp = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def write(self, name, content):
        path = self.tmp / name
        if not isinstance(content, str):
            content = json.dumps(content)
        path.write_text(content, encoding='utf-8')
        return path


class TestSettings(TempDirMixin, unittest.TestCase):
    """测试配置加载"""

    def test_defaults(self):
        settings = load_settings()
        self.assertEqual(settings.key_width, 32)
        self.assertEqual(settings.root_key, 0)
        self.assertEqual(settings.hash_version, "blake2x256-v1")
        self.assertEqual(settings.mapping_prefix, b"ink storage hashmap")

    def test_missing_file_uses_defaults(self):
        self.assertEqual(load_settings(self.tmp / "missing.toml"), LayoutSettings())

    def test_load_toml(self):
        settings = load_settings(self.write("layout.toml", CONFIG_TOML))
        self.assertEqual(settings.root_key, 5)
        self.assertEqual(settings.key_width, 64)
        self.assertEqual(settings.hash_version, "keccak256-v1")
        self.assertEqual(settings.mapping_hasher, "Keccak256")
        self.assertEqual(settings.mapping_prefix, b"\x01\x02")
        self.assertEqual(settings.log_level, "WARNING")

    def test_invalid_values(self):
        """测试非法配置在构造时被拒绝"""
        with self.assertRaises(ValueError):
            LayoutSettings(key_width=16)
        with self.assertRaises(ValueError):
            LayoutSettings(root_key=1 << 32)
        with self.assertRaises(ValueError):
            LayoutSettings(hash_version="sha1-v1")
        with self.assertRaises(ValueError):
            LayoutSettings(log_level="LOUD")
        with self.assertRaises(ValueError):
            settings_from_dict({"layout": {"mapping": {"hasher": "Md5"}}})

    def test_plain_prefix_is_utf8(self):
        settings = settings_from_dict({"layout": {"mapping": {"prefix": "abc"}}})
        self.assertEqual(settings.mapping_prefix, b"abc")


class TestSchema(TempDirMixin, unittest.TestCase):
    """测试 schema 加载"""

    def test_schema_from_dict(self):
        descriptors = schema_from_dict(SCHEMA)
        self.assertEqual([d.name for d in descriptors], ["Point", "Ledger", "Mode"])

        ledger = descriptors[1]
        self.assertIsInstance(ledger, StructDescriptor)
        self.assertEqual(ledger.storage_key, 0x7b)
        self.assertEqual(ledger.fields[1].type, StorageMapping(U32, U128))
        self.assertEqual(ledger.fields[2].type, TypeRef("Point"))
        self.assertEqual(ledger.fields[3].manual_key, 0x10)

        mode = descriptors[2]
        self.assertIsInstance(mode, EnumDescriptor)
        self.assertEqual([v.name for v in mode.variants], ["Paused", "Active"])

    def test_tuple_fields(self):
        descriptors = schema_from_dict({
            "structs": [{"name": "Pair", "fields": [{"type": "u32"}, {"type": "Lazy<u32>"}]}]
        })
        pair = descriptors[0]
        self.assertEqual([f.name for f in pair.fields], [None, None])
        self.assertEqual(pair.fields[1].type, Lazy(U32))

    def test_invalid_schema(self):
        """测试 schema 错误携带所在类型和字段"""
        with self.assertRaises(InvalidTypeExpression) as ctx:
            schema_from_dict({"structs": [{"name": "Bad", "fields": [{"name": "a", "type": "Vec<"}]}]})
        self.assertEqual(ctx.exception.chain, ["Bad"])

        with self.assertRaises(InvalidTypeExpression):
            schema_from_dict({"structs": [{"fields": []}]})
        with self.assertRaises(InvalidTypeExpression):
            schema_from_dict({"structs": [{"name": "NoType", "fields": [{"name": "a"}]}]})
        with self.assertRaises(InvalidTypeExpression):
            schema_from_dict({"structs": [{"name": "BadKey", "fields": [{"name": "a", "type": "u8", "key": "zz"}]}]})

    def test_load_json_and_toml(self):
        from_json = load_schema(self.write("schema.json", SCHEMA))
        from_toml = load_schema(self.write("schema.toml", """
[[structs]]
name = "Point"

[[structs.fields]]
name = "x"
type = "u32"

[[structs.fields]]
name = "y"
type = "u32"
"""))
        self.assertEqual(from_toml, from_json[:1])


class TestCli(TempDirMixin, unittest.TestCase):
    """测试命令行"""

    def run_cli(self, *argv):
        stdout, stderr = io.StringIO(), io.StringIO()
        with redirect_stdout(stdout), redirect_stderr(stderr):
            code = cli.main(list(argv))
        return code, stdout.getvalue(), stderr.getvalue()

    def test_derive_summary(self):
        code, out, _ = self.run_cli("derive", str(self.write("schema.json", SCHEMA)))
        self.assertEqual(code, 0)
        self.assertIn("Point: packed, root key 0x00000000", out)
        self.assertIn("Ledger: non_packed, root key 0x0000007b", out)
        self.assertIn("owner: u32 -> cell 0x00000010 (manual)", out)
        self.assertIn("origin: Point -> inline #1 @ byte 16", out)

    def test_derive_json(self):
        schema = self.write("schema.json", SCHEMA)
        code, out, _ = self.run_cli("derive", str(schema), "--type", "Ledger", "--json")
        self.assertEqual(code, 0)
        layouts = json.loads(out)
        self.assertEqual(list(layouts), ["Ledger"])
        fields = layouts["Ledger"]["layout"]["struct"]["fields"]
        self.assertEqual(fields[0]["layout"]["cell"]["key"], "0x0000007b")
        self.assertIn("hash", fields[1]["layout"])
        self.assertEqual(fields[3]["layout"]["cell"]["key"], "0x00000010")

    def test_derive_rejected(self):
        code, _, err = self.run_cli("derive", str(self.write("bad.json", REJECTED_SCHEMA)))
        self.assertEqual(code, 1)
        self.assertIn("error[IllegalContainerNesting]", err)
        self.assertIn("required by field `items` of `Outer`", err)

    def test_unknown_type(self):
        code, _, _ = self.run_cli("derive", str(self.write("schema.json", SCHEMA)), "--type", "Nope")
        self.assertEqual(code, 2)

    def test_missing_schema(self):
        code, _, _ = self.run_cli("derive", str(self.tmp / "missing.json"))
        self.assertEqual(code, 2)

    def test_snapshot(self):
        schema = self.write("schema.json", SCHEMA)
        values = self.write("values.json", {"Point": {"x": 1, "y": 2}})
        code, out, _ = self.run_cli("derive", str(schema), "--type", "Point", "--snapshot", str(values))
        self.assertEqual(code, 0)
        self.assertIn('"0x00000000": "0x0100000002000000"', out)

    def test_key_command(self):
        allocator = StorageKeyAllocator()
        expected = allocator.format_key(allocator.allocate(0x7b, FieldPath("Ledger", "balances")))
        code, out, _ = self.run_cli("key", "Ledger::balances", "--parent", "0x7b")
        self.assertEqual(code, 0)
        self.assertEqual(out.strip(), f"Ledger::balances: {expected}")

        code, out, _ = self.run_cli("key", "Mode::Active::since")
        self.assertEqual(code, 0)
        self.assertIn("Mode::Active::since: 0x", out)

    def test_key_bad_path(self):
        code, _, _ = self.run_cli("key", "Ledger")
        self.assertEqual(code, 2)

    def test_no_command(self):
        code, _, _ = self.run_cli()
        self.assertEqual(code, 2)


def run_tests():
    """运行所有测试"""
    loader = unittest.TestLoader()
    suite = unittest.TestSuite()

    suite.addTests(loader.loadTestsFromTestCase(TestSettings))
    suite.addTests(loader.loadTestsFromTestCase(TestSchema))
    suite.addTests(loader.loadTestsFromTestCase(TestCli))

    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(suite)
    return result.wasSuccessful()


if __name__ == "__main__":
    success = run_tests()
    sys.exit(0 if success else 1)
