#!/usr/bin/env python3
"""
存储布局模块单元测试

测试核心模块的功能正确性:
1. StorageKeyAllocator - 存储键派生
2. PackednessClassifier - 打包性分类与循环检测
3. StorableHintResolver - 字段存储提示
4. CollectionConstraintChecker - 容器约束
5. LayoutRegistry - 注册表状态机
"""

import sys
import unittest
from pathlib import Path

# 添加src到路径
sys.path.insert(0, str(Path(__file__).parent / "src"))

from layout_toolkit.errors import (
    ConflictingDeclaration,
    DiagnosticFrame,
    IllegalContainerNesting,
    InfiniteLayout,
    InvalidStorageKey,
    KeyCollision,
    LayoutError,
    ManualKeyCollision,
    MissingCodecSupport,
)
from layout_toolkit.storage_layout import (
    CellAllocation,
    CellHint,
    CollectionConstraintChecker,
    FieldPath,
    InlineHint,
    LayoutRegistry,
    PackednessClassifier,
    ResolutionState,
    StorableHintResolver,
    StorageKeyAllocator,
    check_collisions,
)
from layout_toolkit.type_model import (
    BOOL,
    STRING,
    U8,
    U32,
    U64,
    U128,
    EnumDescriptor,
    FieldDescriptor,
    FixedArray,
    Lazy,
    Opaque,
    OptionOf,
    OrderedMap,
    Packedness,
    Sequence,
    StorageMapping,
    StructDescriptor,
    TupleOf,
    TypeRef,
    VariantDescriptor,
    descriptor_of,
)


def struct(name, *fields, storage_key=None):
    return StructDescriptor(name, tuple(FieldDescriptor(*f) for f in fields), storage_key)


POINT = struct("Point", ("x", U32), ("y", U32))
INNER = struct("Inner", ("value", U32), ("cell", Lazy(U32)))
LEDGER = struct(
    "Ledger",
    ("total", U128),
    ("balances", StorageMapping(U32, U128)),
    ("name", STRING),
    ("owner", Lazy(U32)),
    ("flag", BOOL),
)


class TestStorageKeyAllocator(unittest.TestCase):
    """测试存储键分配器"""

    def setUp(self):
        self.allocator = StorageKeyAllocator()

    def test_deterministic(self):
        """测试相同输入在不同实例间得到相同的键"""
        other = StorageKeyAllocator()
        path = FieldPath("Ledger", "balances")
        self.assertEqual(self.allocator.allocate(0, path), other.allocate(0, path))
        self.assertEqual(
            self.allocator.compute_key("Ledger", None, "balances"),
            self.allocator.stable_hash("Ledger::balances")
        )

    def test_key_fits_width(self):
        key = self.allocator.allocate(0, FieldPath("Ledger", "balances"))
        self.assertGreaterEqual(key, 0)
        self.assertLessEqual(key, 0xFFFFFFFF)

        wide = StorageKeyAllocator(key_width=64)
        self.assertLessEqual(wide.allocate(0, FieldPath("Ledger", "balances")), 2 ** 64 - 1)

    def test_concat(self):
        """测试键组合规则"""
        concat = StorageKeyAllocator.concat
        self.assertEqual(concat(0, 0), 0)
        self.assertEqual(concat(0, 5), 5)
        self.assertEqual(concat(5, 0), 5)
        self.assertEqual(concat(3, 5), 6)

    def test_nested_key_derives_from_parent(self):
        """测试嵌套单元的键从直接容器的键派生"""
        path = FieldPath("Inner", "cell")
        own = self.allocator.stable_hash(path)
        self.assertEqual(self.allocator.allocate(0, path), own)
        self.assertEqual(self.allocator.allocate(0x100, path), 0x100 ^ own)

    def test_manual_override_wins(self):
        """测试手动键原样返回"""
        self.assertEqual(self.allocator.allocate(0x100, FieldPath("Ledger", "total"), 0x123), 0x123)
        self.assertEqual(self.allocator.allocate(0, FieldPath("Ledger", "total"), 0), 0)

    def test_manual_key_out_of_range(self):
        with self.assertRaises(InvalidStorageKey):
            self.allocator.allocate(0, FieldPath("Ledger", "total"), 2 ** 32)
        with self.assertRaises(InvalidStorageKey):
            self.allocator.allocate(0, FieldPath("Ledger", "total"), -1)

    def test_empty_field_name(self):
        with self.assertRaises(InvalidStorageKey):
            self.allocator.allocate(0, FieldPath("Ledger", ""))

    def test_variant_in_path(self):
        """测试变体名参与路径"""
        self.assertEqual(str(FieldPath("Action", "amount", "Deposit")), "Action::Deposit::amount")
        self.assertNotEqual(
            self.allocator.compute_key("Action", "Deposit", "amount"),
            self.allocator.compute_key("Action", "Withdraw", "amount"),
        )

    def test_no_collisions_on_synthetic_fields(self):
        """测试大量合成字段路径没有冲突"""
        keys = {
            self.allocator.allocate(0, FieldPath(f"Type{t}", f"field_{i}"))
            for t in range(10)
            for i in range(100)
        }
        self.assertEqual(len(keys), 1000)

        wide = StorageKeyAllocator(key_width=64)
        wide_keys = {wide.allocate(0, FieldPath("Wide", f"field_{i}")) for i in range(10000)}
        self.assertEqual(len(wide_keys), 10000)

    def test_pinned_keys(self):
        """测试派生键与固定值一致 (键是存储兼容性契约的一部分)"""
        self.assertEqual(self.allocator.compute_key("Ledger", None, "balances"), 0x94d57da0)
        self.assertEqual(self.allocator.compute_key("Point", None, "x"), 0x17baae0b)
        wide = StorageKeyAllocator(key_width=64)
        self.assertEqual(wide.compute_key("Ledger", None, "balances"), 0x94d57da0ff7cd549)

    def test_format_key(self):
        self.assertEqual(self.allocator.format_key(345), "0x00000159")
        self.assertEqual(StorageKeyAllocator(key_width=64).format_key(345), "0x0000000000000159")

    def test_empty_bytes_hash_to_zero(self):
        self.assertEqual(self.allocator.key_from_bytes(b""), 0)

    def test_hash_version(self):
        """测试哈希版本影响派生结果"""
        keccak = StorageKeyAllocator(hash_version="keccak256-v1")
        path = FieldPath("Ledger", "balances")
        self.assertNotEqual(keccak.allocate(0, path), self.allocator.allocate(0, path))
        with self.assertRaises(ValueError):
            StorageKeyAllocator(hash_version="md5-v0")

    def test_collision_detection(self):
        """测试作用域内键冲突检测"""
        with self.assertRaises(ManualKeyCollision) as ctx:
            check_collisions("Config", [CellAllocation("a", 7, True), CellAllocation("b", 7, False)])
        self.assertEqual(ctx.exception.fields, ("a", "b"))

        with self.assertRaises(KeyCollision) as ctx:
            check_collisions("Config", [CellAllocation("a", 7), CellAllocation("b", 7)])
        self.assertIs(type(ctx.exception), KeyCollision)

        check_collisions("Config", [CellAllocation("a", 7), CellAllocation("b", 8)])

    def test_collision_message_uses_key_width(self):
        with self.assertRaises(KeyCollision) as ctx:
            check_collisions("Config", [CellAllocation("a", 7), CellAllocation("b", 7)], key_width=64)
        self.assertIn("storage key 0x0000000000000007 is used by both", str(ctx.exception))


class TestPackednessClassifier(unittest.TestCase):
    """测试打包性分类器"""

    def setUp(self):
        self.registry = LayoutRegistry()
        self.classifier = PackednessClassifier(self.registry)

    def declare(self, *descriptors):
        for descriptor in descriptors:
            self.registry.declare(descriptor)

    def test_scalars_and_containers(self):
        """测试标量和内联容器为 Packed"""
        for type_desc in (U8, U128, BOOL, STRING, Sequence(U32), FixedArray(U8, 32),
                          OptionOf(U64), TupleOf((U8, BOOL)), OrderedMap(U32, POINT)):
            self.assertIs(self.classifier.classify(type_desc), Packedness.PACKED, type_desc.type_id)

    def test_cell_containers_non_packed(self):
        self.assertIs(self.classifier.classify(Lazy(U32)), Packedness.NON_PACKED)
        self.assertIs(self.classifier.classify(StorageMapping(U32, U128)), Packedness.NON_PACKED)

    def test_struct_packedness(self):
        self.assertIs(self.classifier.classify(POINT), Packedness.PACKED)
        self.assertIs(self.classifier.classify(LEDGER), Packedness.NON_PACKED)

    def test_manual_key_makes_non_packed(self):
        """测试带手动键的字段使类型成为 NonPacked"""
        config = struct("Config", ("a", U32, 0x123), ("b", U32))
        self.assertIs(self.classifier.classify(config), Packedness.NON_PACKED)

    def test_packed_enum(self):
        mode = EnumDescriptor("Mode", (
            VariantDescriptor("Off"),
            VariantDescriptor("On", (FieldDescriptor("level", U8),)),
        ))
        self.assertIs(self.classifier.classify(mode), Packedness.PACKED)

    def test_missing_codec(self):
        with self.assertRaises(MissingCodecSupport):
            self.classifier.classify(Opaque("Socket"))

        item = struct("Item", ("count", descriptor_of(int)))
        with self.assertRaises(MissingCodecSupport) as ctx:
            self.classifier.classify(item)
        self.assertIn("unbounded", ctx.exception.message)
        self.assertEqual(ctx.exception.frames[0], DiagnosticFrame("Item", "count", "MissingCodecSupport"))

    def test_unknown_type_ref(self):
        with self.assertRaises(MissingCodecSupport):
            self.classifier.classify(Sequence(TypeRef("Nowhere")))

    def test_non_packed_in_container_rejected(self):
        """测试容器值类型为 NonPacked 时拒绝"""
        with self.assertRaises(IllegalContainerNesting) as ctx:
            self.classifier.classify(Sequence(INNER))
        self.assertEqual(ctx.exception.container, "Vec<Inner>")
        self.assertEqual(ctx.exception.value_type, "Inner")

        with self.assertRaises(IllegalContainerNesting):
            self.classifier.classify(OptionOf(LEDGER))

    def test_direct_self_reference(self):
        """测试没有间接边界的自引用"""
        node = struct("Node", ("value", U32), ("next", TypeRef("Node")))
        self.declare(node)
        with self.assertRaises(InfiniteLayout) as ctx:
            self.classifier.classify(node)
        self.assertEqual(ctx.exception.type_name, "Node")
        self.assertIn("Node", ctx.exception.chain)

    def test_self_reference_through_option(self):
        """测试 Option 不构成间接边界"""
        link = struct("Link", ("next", OptionOf(TypeRef("Link"))))
        self.declare(link)
        with self.assertRaises(InfiniteLayout):
            self.classifier.classify(link)

    def test_recursion_through_vec(self):
        """测试经过 Vec 的递归类型为 Packed"""
        tree = struct("Tree", ("value", U32), ("children", Sequence(TypeRef("Tree"))))
        self.declare(tree)
        self.assertIs(self.classifier.classify(tree), Packedness.PACKED)
        self.assertIs(self.registry.packedness("Tree"), Packedness.PACKED)

    def test_mutual_recursion(self):
        first = struct("First", ("second", TypeRef("Second")))
        second = struct("Second", ("firsts", Sequence(TypeRef("First"))))
        self.declare(first, second)
        self.assertIs(self.classifier.classify(first), Packedness.PACKED)
        self.assertIs(self.classifier.classify(second), Packedness.PACKED)

    def test_non_packed_recursion_through_vec(self):
        """测试 NonPacked 类型经过 Vec 引用自身时被拒绝"""
        bad = struct("Bad", ("cell", Lazy(U32)), ("children", Sequence(TypeRef("Bad"))))
        self.declare(bad)
        with self.assertRaises(IllegalContainerNesting) as ctx:
            self.classifier.classify(bad)
        self.assertEqual(ctx.exception.container, "Vec<Bad>")
        self.assertIsNone(self.registry.packedness("Bad"))

    def test_recursion_through_manual_key(self):
        """测试经过手动键字段的递归"""
        chain = struct("Chain", ("value", U32), ("next", OptionOf(TypeRef("Chain")), 0x10))
        self.declare(chain)
        with self.assertRaises(IllegalContainerNesting) as ctx:
            self.classifier.classify(chain)
        self.assertEqual(ctx.exception.container, "Option<Chain>")


class TestStorableHintResolver(unittest.TestCase):
    """测试存储提示解析器"""

    def setUp(self):
        self.registry = LayoutRegistry()
        self.classifier = PackednessClassifier(self.registry)
        self.allocator = StorageKeyAllocator()
        self.resolver = StorableHintResolver(self.classifier, self.allocator)

    def test_packed_struct_inline(self):
        hints = self.resolver.resolve(POINT, 0)
        self.assertEqual(hints, [
            InlineHint("x", U32, 0, 0),
            InlineHint("y", U32, 1, 4),
        ])

    def test_mixed_struct(self):
        """测试内联字段与存储单元字段混合"""
        hints = self.resolver.resolve(LEDGER, 0)
        self.assertEqual([h.is_cell for h in hints], [False, True, False, True, False])

        total, balances, name, owner, flag = hints
        self.assertEqual((total.position, total.byte_offset), (0, 0))
        self.assertEqual((name.position, name.byte_offset), (1, 16))
        # String 之后偏移不再静态可知
        self.assertEqual((flag.position, flag.byte_offset), (2, None))

        self.assertEqual(balances.key, self.allocator.compute_key("Ledger", None, "balances"))
        self.assertEqual(owner.key, self.allocator.compute_key("Ledger", None, "owner"))
        self.assertFalse(balances.manual)

    def test_nested_parent_key(self):
        own = self.allocator.compute_key("Ledger", None, "owner")
        hints = self.resolver.resolve(LEDGER, 0x100)
        self.assertEqual(hints[3].key, 0x100 ^ own)

    def test_manual_key_precedence(self):
        """测试字段手动键优先于 Lazy 类型参数中的键"""
        config = struct(
            "Config",
            ("a", Lazy(U32, 5), 7),
            ("b", Lazy(U32, 9)),
            ("c", U32, 0x123),
        )
        a, b, c = self.resolver.resolve(config, 0x100)
        self.assertEqual((a.key, a.manual), (7, True))
        self.assertEqual((b.key, b.manual), (9, True))
        self.assertEqual(c, CellHint("c", U32, 0x123, True))

    def test_manual_key_collision(self):
        config = struct("Config", ("a", U32, 7), ("b", Lazy(U32), 7))
        with self.assertRaises(ManualKeyCollision) as ctx:
            self.resolver.resolve(config, 0)
        self.assertEqual(ctx.exception.chain, ["Config"])

    def test_enum_variant_isolation(self):
        """测试不同变体的同名字段得到不同的键"""
        action = EnumDescriptor("Action", (
            VariantDescriptor("Deposit", (FieldDescriptor("amount", Lazy(U128)),)),
            VariantDescriptor("Withdraw", (FieldDescriptor("amount", Lazy(U128)),)),
            VariantDescriptor("Noop"),
        ))
        variants = self.resolver.resolve_variants(action, 0)
        deposit, = variants["Deposit"]
        withdraw, = variants["Withdraw"]
        self.assertEqual(variants["Noop"], [])
        self.assertEqual(deposit.variant, "Deposit")
        self.assertEqual(deposit.key, self.allocator.compute_key("Action", "Deposit", "amount"))
        self.assertNotEqual(deposit.key, withdraw.key)
        self.assertEqual(len(self.resolver.resolve(action, 0)), 2)

    def test_enum_inline_offsets_after_discriminant(self):
        shape = EnumDescriptor("Shape", (
            VariantDescriptor("Square", (FieldDescriptor("side", U32),)),
            VariantDescriptor("Rect", (FieldDescriptor(None, U32), FieldDescriptor(None, U32))),
        ))
        variants = self.resolver.resolve_variants(shape, 0)
        self.assertEqual(variants["Square"][0].byte_offset, 1)
        self.assertEqual([h.byte_offset for h in variants["Rect"]], [1, 5])
        self.assertEqual([h.field for h in variants["Rect"]], ["0", "1"])

    def test_static_size(self):
        self.assertEqual(self.resolver.static_size(POINT), 8)
        self.assertEqual(self.resolver.static_size(OptionOf(BOOL)), 1)
        self.assertEqual(self.resolver.static_size(FixedArray(U32, 3)), 12)
        self.assertIsNone(self.resolver.static_size(STRING))
        mode = EnumDescriptor("Mode", (VariantDescriptor("A"), VariantDescriptor("B")))
        self.assertEqual(self.resolver.static_size(mode), 1)


class TestCollectionConstraintChecker(unittest.TestCase):
    """测试容器约束检查器"""

    def setUp(self):
        self.registry = LayoutRegistry()
        self.checker = CollectionConstraintChecker(PackednessClassifier(self.registry))

    def test_packed_containers_accepted(self):
        self.checker.check_collection(OrderedMap(U32, POINT))
        self.checker.check_collection(Sequence(Sequence(POINT)))
        self.checker.check_collection(StorageMapping(U32, POINT))

    def test_nested_container_rejected(self):
        """测试嵌套容器的拒绝带有外层容器说明"""
        with self.assertRaises(IllegalContainerNesting) as ctx:
            self.checker.check_collection(Sequence(Sequence(INNER)))
        error = ctx.exception
        self.assertEqual(error.container, "Vec<Inner>")
        self.assertEqual(error.frames[0].render(), "required by the container `Vec<Vec<Inner>>`")

    def test_mapping_value_rejected(self):
        with self.assertRaises(IllegalContainerNesting):
            self.checker.check_collection(StorageMapping(U32, INNER))

    def test_not_a_container(self):
        with self.assertRaises(TypeError):
            self.checker.check_collection(POINT)

    def test_field_frames(self):
        """测试字段级错误带有字段和类型说明"""
        outer = struct("Outer", ("id", U32), ("items", OrderedMap(U32, INNER)))
        with self.assertRaises(IllegalContainerNesting) as ctx:
            self.checker.check_fields(outer)
        rendered = ctx.exception.render()
        self.assertTrue(rendered.startswith("error[IllegalContainerNesting]: the container"))
        self.assertIn("note: required by field `items` of `Outer`", rendered)
        self.assertIn("note: required by `Outer` (derive storable)", rendered)


class TestLayoutRegistry(unittest.TestCase):
    """测试注册表状态机"""

    def setUp(self):
        self.registry = LayoutRegistry()

    def test_happy_path(self):
        self.registry.declare(POINT)
        for state in (ResolutionState.CLASSIFYING, ResolutionState.CLASSIFIED, ResolutionState.RESOLVING):
            self.registry.transition("Point", state)
        self.registry.record_resolved("Point", "derived")
        self.assertIn("Point", self.registry)
        self.assertEqual(self.registry.derived("Point"), "derived")
        self.assertEqual(len(self.registry), 1)

    def test_illegal_transition(self):
        with self.assertRaises(RuntimeError):
            self.registry.transition("Point", ResolutionState.RESOLVING)
        self.registry.transition("Point", ResolutionState.CLASSIFYING)
        with self.assertRaises(RuntimeError):
            self.registry.transition("Point", ResolutionState.CLASSIFYING)

    def test_rejected_reraises_stored_error(self):
        """测试被拒绝的类型在后续查询时重新抛出错误"""
        self.registry.transition("Bad", ResolutionState.CLASSIFYING)
        error = InfiniteLayout("Bad", ["Bad"]).with_frame("Bad", "next")
        self.registry.record_rejected("Bad", error)
        error.with_frame("Outer")

        with self.assertRaises(InfiniteLayout) as ctx:
            self.registry.derived("Bad")
        self.assertEqual(ctx.exception.chain, ["Bad"])
        self.assertEqual(self.registry.state("Bad"), ResolutionState.REJECTED)

    def test_not_terminal(self):
        with self.assertRaises(KeyError):
            self.registry.derived("Point")

    def test_conflicting_declarations(self):
        self.registry.declare(POINT)
        self.registry.declare(POINT)
        with self.assertRaises(ConflictingDeclaration) as ctx:
            self.registry.declare(struct("Point", ("x", U64)))
        self.assertEqual(ctx.exception.type_name, "Point")

    def test_packedness_is_append_only(self):
        self.registry.record_packedness("Point", Packedness.PACKED)
        self.registry.record_packedness("Point", Packedness.PACKED)
        with self.assertRaises(RuntimeError):
            self.registry.record_packedness("Point", Packedness.NON_PACKED)


class TestDiagnostics(unittest.TestCase):
    """测试诊断渲染"""

    def test_render(self):
        error = LayoutError("something is wrong")
        error.with_frame("Inner", "cell").with_frame("Inner").with_frame("Outer", "inner")
        self.assertEqual(error.render(), "\n".join([
            "error[LayoutError]: something is wrong",
            "  note: required by field `cell` of `Inner`",
            "  note: required by `Inner` (derive storable)",
            "  note: required by field `inner` of `Outer`",
        ]))
        self.assertEqual(error.chain, ["Inner", "Outer"])
        self.assertEqual(str(error), error.render())


def run_tests():
    """运行所有测试"""
    loader = unittest.TestLoader()
    suite = unittest.TestSuite()

    suite.addTests(loader.loadTestsFromTestCase(TestStorageKeyAllocator))
    suite.addTests(loader.loadTestsFromTestCase(TestPackednessClassifier))
    suite.addTests(loader.loadTestsFromTestCase(TestStorableHintResolver))
    suite.addTests(loader.loadTestsFromTestCase(TestCollectionConstraintChecker))
    suite.addTests(loader.loadTestsFromTestCase(TestLayoutRegistry))
    suite.addTests(loader.loadTestsFromTestCase(TestDiagnostics))

    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(suite)
    return result.wasSuccessful()


if __name__ == "__main__":
    success = run_tests()
    sys.exit(0 if success else 1)
