"""
Condition Parser - Restricted Rule Expressions

Data-trigger rule conditions are small JavaScript-flavoured boolean
expressions over the app snapshot, for example:

    pillars.some(p => p.completion >= 90 && (p.days_stuck || 0) > 3)
    sprint.progress.filter(d => !d.checked).length <= 2

Conditions are never executed as host code. They pass a character and
pattern safety filter, are parsed into a small AST and interpreted against
plain dict/list data.

CRITICAL CONSTRAINTS:
- ALLOW-LIST CHARACTERS ONLY: A-Za-z0-9 _ space [ ] . ' " = < > ! & | ( ) + - * / %
- MAX LENGTH: 500 characters
- ROOTS: pillars, sprint, user (plus arrow-function parameters)
- METHODS: some, every, filter, map, find, includes on lists;
  includes, startsWith, endsWith, toLowerCase, toUpperCase on strings
- A condition is true only when it evaluates to the boolean true

Grammar (lowest to highest precedence):
    or       := and ("||" and)*
    and      := equality ("&&" equality)*
    equality := relation (("===" | "!==" | "==" | "!=") relation)*
    relation := additive (("<" | "<=" | ">" | ">=") additive)*
    additive := term (("+" | "-") term)*
    term     := unary (("*" | "/" | "%") unary)*
    unary    := ("!" | "-") unary | postfix
    postfix  := primary ("." NAME | "[" or "]" | "(" [argument] ")")*
    argument := NAME "=>" or | "(" NAME ")" "=>" or | or
    primary  := NUMBER | STRING | true | false | null | undefined | NAME | "(" or ")"
"""

import logging
import math
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Optional

from .config import MAX_CONDITION_LENGTH
from .errors import ConditionEvaluationError, ConditionValidationError

logger = logging.getLogger("condition_parser")

ALLOWED_CHARACTERS = re.compile(r"^[A-Za-z0-9_ \[\].'\"=<>!&|()+\-*/%]+$")

DANGEROUS_PATTERNS = [
    re.compile(r"\beval\b"),
    re.compile(r"\bFunction\b"),
    re.compile(r"\bsetTimeout\b"),
    re.compile(r"\bsetInterval\b"),
    re.compile(r"\bfetch\b"),
    re.compile(r"\bXMLHttpRequest\b"),
    re.compile(r"\blocalStorage\b"),
    re.compile(r"\bsessionStorage\b"),
    re.compile(r"__proto__"),
    re.compile(r"\bprototype\b"),
    re.compile(r"\bconstructor\b"),
    re.compile(r"\brequire\b"),
    re.compile(r"\bimport\b"),
    re.compile(r"\bprocess\b"),
    re.compile(r"\bglobal\b"),
    re.compile(r"\bglobalThis\b"),
    re.compile(r"\bwindow\b"),
    re.compile(r"\bdocument\b"),
    re.compile(r"\bconsole\b"),
    re.compile(r"\balert\b"),
    re.compile(r"\bdelete\b"),
    re.compile(r"\bvoid\b"),
    re.compile(r"\btypeof\b"),
    re.compile(r"\binstanceof\b"),
]

ROOT_NAMES = frozenset({"pillars", "sprint", "user"})
LIST_METHODS = frozenset({"some", "every", "filter", "map", "find", "includes"})
STRING_METHODS = frozenset({"includes", "startsWith", "endsWith", "toLowerCase", "toUpperCase"})
KEYWORD_LITERALS = {"true": True, "false": False, "null": None, "undefined": None}

MAX_NESTING = 32


def validate_rule_condition(condition: Any) -> None:
    """
    Safety filter applied before parsing.

    Raises:
        ConditionValidationError: when the condition is empty, too long,
            contains a character outside the allow-list or a banned pattern.
    """
    if not isinstance(condition, str) or not condition.strip():
        raise ConditionValidationError("Condition must be a non-empty string", str(condition or ""))
    if len(condition) > MAX_CONDITION_LENGTH:
        raise ConditionValidationError(
            f"Condition exceeds {MAX_CONDITION_LENGTH} characters", condition
        )
    if not ALLOWED_CHARACTERS.fullmatch(condition):
        bad = next(
            (i for i, ch in enumerate(condition) if not ALLOWED_CHARACTERS.fullmatch(ch)), None
        )
        raise ConditionValidationError("Condition contains disallowed characters", condition, bad)
    for pattern in DANGEROUS_PATTERNS:
        match = pattern.search(condition)
        if match:
            raise ConditionValidationError(
                f"Condition contains forbidden pattern '{match.group(0)}'", condition, match.start()
            )


def is_valid_condition(condition: Any) -> bool:
    try:
        compile_condition(condition)
        return True
    except ConditionValidationError:
        return False


# -----------------------------------------------------------------------------
# Tokenizer
# -----------------------------------------------------------------------------
_TOKEN_PATTERN = re.compile(
    r"\s*(?:"
    r"(?P<number>\d+(?:\.\d+)?)"
    r"|(?P<string>'[^']*'|\"[^\"]*\")"
    r"|(?P<name>[A-Za-z_][A-Za-z0-9_]*)"
    r"|(?P<op>===|!==|==|!=|<=|>=|=>|&&|\|\||[<>!+\-*/%()\[\].])"
    r")"
)


@dataclass(frozen=True)
class Token:
    kind: str  # number | string | name | op | end
    value: Any
    position: int


def tokenize(condition: str) -> List[Token]:
    tokens = []
    position = 0
    length = len(condition)
    while position < length:
        if condition[position:].strip() == "":
            break
        match = _TOKEN_PATTERN.match(condition, position)
        if not match or match.end() == position:
            raise ConditionValidationError(
                f"Unexpected character {condition[position:].lstrip()[:1]!r}", condition, position
            )
        start = match.start(match.lastgroup)
        kind = match.lastgroup
        text = match.group(kind)
        if kind == "number":
            value: Any = float(text) if "." in text else int(text)
        elif kind == "string":
            value = text[1:-1]
        else:
            value = text
        tokens.append(Token(kind, value, start))
        position = match.end()
    tokens.append(Token("end", None, length))
    return tokens


# -----------------------------------------------------------------------------
# AST
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Name:
    name: str


@dataclass(frozen=True)
class Member:
    target: Any
    name: str


@dataclass(frozen=True)
class Index:
    target: Any
    index: Any


@dataclass(frozen=True)
class Call:
    target: Any
    method: str
    argument: Optional[Any]


@dataclass(frozen=True)
class Arrow:
    param: str
    body: Any


@dataclass(frozen=True)
class Unary:
    op: str
    operand: Any


@dataclass(frozen=True)
class Binary:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Logical:
    op: str
    left: Any
    right: Any


# -----------------------------------------------------------------------------
# Parser
# -----------------------------------------------------------------------------
class _Parser:
    def __init__(self, condition: str):
        self.condition = condition
        self.tokens = tokenize(condition)
        self.pos = 0
        self.scopes: List[str] = []
        self.depth = 0

    def peek(self, offset: int = 0) -> Token:
        return self.tokens[min(self.pos + offset, len(self.tokens) - 1)]

    def advance(self) -> Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def at_op(self, *ops: str) -> bool:
        token = self.peek()
        return token.kind == "op" and token.value in ops

    def expect_op(self, op: str) -> Token:
        if not self.at_op(op):
            self.fail(f"Expected '{op}'")
        return self.advance()

    def fail(self, message: str):
        token = self.peek()
        found = "end of input" if token.kind == "end" else repr(token.value)
        raise ConditionValidationError(f"{message}, found {found}", self.condition, token.position)

    def enter(self):
        self.depth += 1
        if self.depth > MAX_NESTING:
            self.fail("Condition is nested too deeply")

    def leave(self):
        self.depth -= 1

    def parse(self):
        node = self.parse_or()
        if self.peek().kind != "end":
            self.fail("Unexpected token")
        return node

    def parse_or(self):
        node = self.parse_and()
        while self.at_op("||"):
            self.advance()
            node = Logical("||", node, self.parse_and())
        return node

    def parse_and(self):
        node = self.parse_equality()
        while self.at_op("&&"):
            self.advance()
            node = Logical("&&", node, self.parse_equality())
        return node

    def parse_equality(self):
        node = self.parse_relation()
        while self.at_op("===", "!==", "==", "!="):
            op = self.advance().value
            node = Binary(op, node, self.parse_relation())
        return node

    def parse_relation(self):
        node = self.parse_additive()
        while self.at_op("<", "<=", ">", ">="):
            op = self.advance().value
            node = Binary(op, node, self.parse_additive())
        return node

    def parse_additive(self):
        node = self.parse_term()
        while self.at_op("+", "-"):
            op = self.advance().value
            node = Binary(op, node, self.parse_term())
        return node

    def parse_term(self):
        node = self.parse_unary()
        while self.at_op("*", "/", "%"):
            op = self.advance().value
            node = Binary(op, node, self.parse_unary())
        return node

    def parse_unary(self):
        if self.at_op("!", "-"):
            op = self.advance().value
            self.enter()
            operand = self.parse_unary()
            self.leave()
            return Unary(op, operand)
        return self.parse_postfix()

    def parse_postfix(self):
        node = self.parse_primary()
        while True:
            if self.at_op("."):
                self.advance()
                token = self.peek()
                if token.kind != "name":
                    self.fail("Expected property name")
                self.advance()
                if token.value.startswith("__"):
                    raise ConditionValidationError(
                        f"Property '{token.value}' is not accessible", self.condition, token.position
                    )
                node = Member(node, token.value)
            elif self.at_op("["):
                self.advance()
                self.enter()
                index = self.parse_or()
                self.leave()
                self.expect_op("]")
                node = Index(node, index)
            elif self.at_op("("):
                if not isinstance(node, Member):
                    self.fail("Only method calls are allowed")
                if node.name not in LIST_METHODS | STRING_METHODS:
                    raise ConditionValidationError(
                        f"Method '{node.name}' is not allowed", self.condition, self.peek().position
                    )
                self.advance()
                argument = None if self.at_op(")") else self.parse_argument()
                self.expect_op(")")
                node = Call(node.target, node.name, argument)
            else:
                return node

    def parse_argument(self):
        first, second = self.peek(), self.peek(1)
        if first.kind == "name" and second.kind == "op" and second.value == "=>":
            self.pos += 2
            return self.parse_arrow_body(first.value)
        if (
            first.kind == "op" and first.value == "("
            and second.kind == "name"
            and self.peek(2).kind == "op" and self.peek(2).value == ")"
            and self.peek(3).kind == "op" and self.peek(3).value == "=>"
        ):
            self.pos += 4
            return self.parse_arrow_body(second.value)
        self.enter()
        node = self.parse_or()
        self.leave()
        return node

    def parse_arrow_body(self, param: str):
        if param in ROOT_NAMES or param in KEYWORD_LITERALS:
            self.fail(f"Invalid parameter name '{param}'")
        self.scopes.append(param)
        self.enter()
        body = self.parse_or()
        self.leave()
        self.scopes.pop()
        return Arrow(param, body)

    def parse_primary(self):
        token = self.peek()
        if token.kind in ("number", "string"):
            self.advance()
            return Literal(token.value)
        if token.kind == "name":
            self.advance()
            if token.value in KEYWORD_LITERALS:
                return Literal(KEYWORD_LITERALS[token.value])
            if token.value in ROOT_NAMES or token.value in self.scopes:
                return Name(token.value)
            raise ConditionValidationError(
                f"Unknown identifier '{token.value}'", self.condition, token.position
            )
        if self.at_op("("):
            self.advance()
            self.enter()
            node = self.parse_or()
            self.leave()
            self.expect_op(")")
            return node
        self.fail("Expected a value")


# -----------------------------------------------------------------------------
# Interpreter
# -----------------------------------------------------------------------------
def js_truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text == "":
            return 0
        try:
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def _to_string(value: Any) -> str:
    if value is None:
        return "undefined"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, list):
        return ",".join("" if v is None else _to_string(v) for v in value)
    if isinstance(value, dict):
        return "[object Object]"
    return str(value)


def _same_kind(a: Any, b: Any) -> bool:
    def kind(v):
        if v is None:
            return "nullish"
        if isinstance(v, bool):
            return "boolean"
        if isinstance(v, (int, float)):
            return "number"
        if isinstance(v, str):
            return "string"
        return "object"
    return kind(a) == kind(b)


def strict_equals(a: Any, b: Any) -> bool:
    if not _same_kind(a, b):
        return False
    if isinstance(a, (list, dict)):
        return a is b
    return a == b


def loose_equals(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is None and b is None
    if _same_kind(a, b):
        return strict_equals(a, b)
    if isinstance(a, (list, dict)) or isinstance(b, (list, dict)):
        return False
    return _to_number(a) == _to_number(b)


def _compare(op: str, a: Any, b: Any) -> bool:
    if a is None or b is None:
        return False
    if isinstance(a, str) and isinstance(b, str):
        left, right = a, b
    else:
        left, right = _to_number(a), _to_number(b)
        if math.isnan(left) or math.isnan(right):
            return False
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


def _arithmetic(op: str, a: Any, b: Any) -> Any:
    if op == "+" and (isinstance(a, str) or isinstance(b, str)):
        return _to_string(a) + _to_string(b)
    left, right = _to_number(a), _to_number(b)
    if op == "+":
        return left + right
    if op == "-":
        return left - right
    if op == "*":
        return left * right
    if op == "/":
        if right == 0:
            if left == 0 or math.isnan(left):
                return math.nan
            return math.copysign(math.inf, left)
        return left / right
    if right == 0 or math.isinf(left):
        return math.nan
    return math.fmod(left, right)


class CompiledCondition:
    """Parsed condition ready to evaluate against snapshot contexts."""

    def __init__(self, source: str, tree: Any):
        self.source = source
        self.tree = tree

    def __repr__(self) -> str:
        return f"CompiledCondition({self.source!r})"

    def evaluate(self, context: Dict[str, Any]) -> bool:
        """
        Evaluate against {"pillars": [...], "sprint": {...}, "user": {...}}.

        Raises:
            ConditionEvaluationError: on runtime failures such as reading a
                property of undefined or calling a non-method.
        """
        scope = {name: context.get(name) for name in ROOT_NAMES}
        try:
            result = self._eval(self.tree, scope)
        except ConditionEvaluationError:
            raise
        except (TypeError, ValueError, ArithmeticError, RecursionError) as e:
            raise ConditionEvaluationError(f"Evaluation failed: {e}", self.source)
        return result is True

    def _fail(self, message: str):
        raise ConditionEvaluationError(message, self.source)

    def _eval(self, node: Any, scope: Dict[str, Any]) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Name):
            return scope.get(node.name)
        if isinstance(node, Member):
            return self._member(self._eval(node.target, scope), node.name)
        if isinstance(node, Index):
            return self._index(self._eval(node.target, scope), self._eval(node.index, scope))
        if isinstance(node, Call):
            return self._call(node, scope)
        if isinstance(node, Logical):
            left = self._eval(node.left, scope)
            if node.op == "||":
                return left if js_truthy(left) else self._eval(node.right, scope)
            return self._eval(node.right, scope) if js_truthy(left) else left
        if isinstance(node, Unary):
            value = self._eval(node.operand, scope)
            if node.op == "!":
                return not js_truthy(value)
            return -_to_number(value)
        if isinstance(node, Binary):
            left = self._eval(node.left, scope)
            right = self._eval(node.right, scope)
            if node.op == "===":
                return strict_equals(left, right)
            if node.op == "!==":
                return not strict_equals(left, right)
            if node.op == "==":
                return loose_equals(left, right)
            if node.op == "!=":
                return not loose_equals(left, right)
            if node.op in ("<", "<=", ">", ">="):
                return _compare(node.op, left, right)
            return _arithmetic(node.op, left, right)
        if isinstance(node, Arrow):
            self._fail("Arrow functions are only allowed as method arguments")
        self._fail(f"Unsupported expression {type(node).__name__}")

    def _member(self, target: Any, name: str) -> Any:
        if target is None:
            self._fail(f"Cannot read properties of undefined (reading '{name}')")
        if name == "length" and isinstance(target, (list, str)):
            return len(target)
        if isinstance(target, dict):
            return target.get(name)
        return None

    def _index(self, target: Any, index: Any) -> Any:
        if target is None:
            self._fail(f"Cannot read properties of undefined (reading '{_to_string(index)}')")
        if isinstance(target, (list, str)):
            if isinstance(index, bool) or not isinstance(index, (int, float)):
                return None
            if isinstance(index, float) and not index.is_integer():
                return None
            i = int(index)
            return target[i] if 0 <= i < len(target) else None
        if isinstance(target, dict):
            return target.get(_to_string(index))
        return None

    def _call(self, node: Call, scope: Dict[str, Any]) -> Any:
        target = self._eval(node.target, scope)
        if target is None:
            self._fail(f"Cannot read properties of undefined (reading '{node.method}')")

        if isinstance(target, list) and node.method in LIST_METHODS:
            if node.method == "includes":
                needle = None if node.argument is None else self._eval(node.argument, scope)
                return any(strict_equals(item, needle) for item in target)
            if not isinstance(node.argument, Arrow):
                self._fail(f"{node.method}() requires an arrow function argument")
            arrow = node.argument

            def apply(item):
                inner = dict(scope)
                inner[arrow.param] = item
                return self._eval(arrow.body, inner)

            if node.method == "some":
                return any(js_truthy(apply(item)) for item in target)
            if node.method == "every":
                return all(js_truthy(apply(item)) for item in target)
            if node.method == "filter":
                return [item for item in target if js_truthy(apply(item))]
            if node.method == "map":
                return [apply(item) for item in target]
            return next((item for item in target if js_truthy(apply(item))), None)

        if isinstance(target, str) and node.method in STRING_METHODS:
            if node.method == "toLowerCase":
                return target.lower()
            if node.method == "toUpperCase":
                return target.upper()
            if isinstance(node.argument, Arrow):
                self._fail(f"{node.method}() does not take a function")
            argument = _to_string(None if node.argument is None else self._eval(node.argument, scope))
            if node.method == "includes":
                return argument in target
            if node.method == "startsWith":
                return target.startswith(argument)
            return target.endswith(argument)

        self._fail(f"{node.method} is not a function")


@lru_cache(maxsize=256)
def _compile_cached(condition: str) -> CompiledCondition:
    validate_rule_condition(condition)
    return CompiledCondition(condition, _Parser(condition).parse())


def compile_condition(condition: Any) -> CompiledCondition:
    """
    Validate and parse a condition; results are cached per source string.

    Raises:
        ConditionValidationError: rejected by the safety filter or parser.
    """
    if not isinstance(condition, str):
        raise ConditionValidationError("Condition must be a non-empty string", str(condition or ""))
    return _compile_cached(condition)


def evaluate_condition(condition: str, context: Dict[str, Any]) -> bool:
    return compile_condition(condition).evaluate(context)
