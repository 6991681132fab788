"""
类型表达式解析器

把 schema 文件中的文本类型表达式解析为类型描述符,例如:
    u32
    Vec<Inner>
    BTreeMap<u32, (u8, bool)>
    [u8; 32]
    Option<String>
    Lazy<u128, ManualKey<0x10>>
    Mapping<u32, Balance>
"""

import logging
import re
from typing import Callable, Dict, List, Optional

from ..errors import InvalidTypeExpression
from .descriptors import (
    BOOL,
    BYTES,
    STRING,
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
from ..codec.primitives import INTEGER_WIDTHS

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r'\s*(?:(0x[0-9a-fA-F_]+|\d[\d_]*)|([A-Za-z_][A-Za-z0-9_:]*)|(.))')

# 泛型名称 -> 期望的参数个数 (含可选参数的上限)
GENERIC_ARITY = {
    "Vec": (1, 1),
    "Option": (1, 1),
    "BTreeMap": (2, 2),
    "Lazy": (1, 2),
    "Mapping": (2, 3),
    "ManualKey": (1, 1),
}


def _tokenize(text: str) -> List[str]:
    tokens = []
    position = 0
    text = text.strip()
    while position < len(text):
        match = TOKEN_PATTERN.match(text, position)
        if not match or match.end() == position:
            break
        token = match.group(0).strip()
        if token:
            tokens.append(token)
        position = match.end()
    return tokens


class TypeExpressionParser:
    """
    递归下降解析器

    Args:
        resolve_name: 把非内置名称解析为描述符的回调,
                      返回 None 时生成 TypeRef
    """

    def __init__(self, resolve_name: Optional[Callable[[str], Optional[TypeDescriptor]]] = None):
        self.resolve_name = resolve_name
        self.logger = logging.getLogger(__name__ + '.TypeExpressionParser')

    def parse(self, text: str) -> TypeDescriptor:
        self.text = text
        self.tokens = _tokenize(text)
        self.index = 0
        if not self.tokens:
            raise self._error("empty type expression")
        result = self._parse_type()
        if self.index != len(self.tokens):
            raise self._error(f"unexpected `{self.tokens[self.index]}`")
        self.logger.debug(f"解析类型表达式: {text!r} -> {result.type_id}")
        return result

    def _error(self, reason: str) -> InvalidTypeExpression:
        return InvalidTypeExpression(f"cannot parse type expression `{self.text}`: {reason}")

    def _peek(self) -> Optional[str]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _next(self) -> str:
        token = self._peek()
        if token is None:
            raise self._error("unexpected end of expression")
        self.index += 1
        return token

    def _expect(self, token: str):
        actual = self._next()
        if actual != token:
            raise self._error(f"expected `{token}`, found `{actual}`")

    def _parse_int(self) -> int:
        token = self._next()
        try:
            return int(token.replace('_', ''), 0)
        except ValueError:
            raise self._error(f"expected an integer, found `{token}`") from None

    def _parse_type(self) -> TypeDescriptor:
        token = self._peek()
        if token == '[':
            return self._parse_array()
        if token == '(':
            return self._parse_tuple()
        name = self._next()
        if not re.match(r'[A-Za-z_]', name):
            raise self._error(f"unexpected `{name}`")

        if self._peek() == '<':
            return self._parse_generic(name)

        if name in INTEGER_WIDTHS or name == "bool":
            return BOOL if name == "bool" else Primitive(name)
        if name in ("String", "str"):
            return STRING
        if name in GENERIC_ARITY:
            raise self._error(f"`{name}` requires type parameters")

        if self.resolve_name is not None:
            resolved = self.resolve_name(name)
            if resolved is not None:
                return resolved
        return TypeRef(name)

    def _parse_generic(self, name: str) -> TypeDescriptor:
        if name not in GENERIC_ARITY:
            raise self._error(f"unknown generic type `{name}`")
        self._expect('<')
        if name == "ManualKey":
            raise self._error("`ManualKey` is only valid as a key parameter")

        params: List[TypeDescriptor] = []
        manual_key = None
        while True:
            if self._peek() == "ManualKey":
                self._next()
                self._expect('<')
                manual_key = self._parse_int()
                self._expect('>')
            else:
                params.append(self._parse_type())
            if self._peek() == ',':
                self._next()
                continue
            break
        self._expect('>')

        low, high = GENERIC_ARITY[name]
        count = len(params) + (1 if manual_key is not None else 0)
        if not low <= count <= high or (manual_key is not None and name not in ("Lazy", "Mapping")):
            raise self._error(f"wrong number of parameters for `{name}`")

        if name == "Vec":
            if params[0] == Primitive("u8"):
                return BYTES
            return Sequence(params[0])
        if name == "Option":
            return OptionOf(params[0])
        if name == "BTreeMap":
            return OrderedMap(params[0], params[1])
        if name == "Lazy":
            if len(params) != 1:
                raise self._error("`Lazy` takes one value type")
            return Lazy(params[0], manual_key)
        if len(params) != 2:
            raise self._error("`Mapping` takes a key and a value type")
        return StorageMapping(params[0], params[1], manual_key)

    def _parse_array(self) -> TypeDescriptor:
        self._expect('[')
        element = self._parse_type()
        self._expect(';')
        length = self._parse_int()
        self._expect(']')
        return FixedArray(element, length)

    def _parse_tuple(self) -> TypeDescriptor:
        self._expect('(')
        elements: List[TypeDescriptor] = []
        while self._peek() != ')':
            elements.append(self._parse_type())
            if self._peek() == ',':
                self._next()
            elif self._peek() != ')':
                raise self._error(f"expected `,` or `)`, found `{self._peek()}`")
        self._expect(')')
        return TupleOf(tuple(elements))


def parse_type_expression(text: str, known: Optional[Dict[str, TypeDescriptor]] = None) -> TypeDescriptor:
    """解析类型表达式; `known` 中的名称直接解析为对应描述符"""
    resolve = known.get if known is not None else None
    return TypeExpressionParser(resolve).parse(text)
