# expressions.py
"""
Expression language for `if:` predicates and `${{ }}` interpolation.

Expressions are compiled once into plain callables over an explicit
scope mapping (runner / matrix / env / job / ci contexts), so a step
predicate is a pure function of values known before any step runs.

Supported:
    literals      'text' (with '' escape), 42, 1.5, true, false, null
    references    runner.os, matrix.os, env.RUST_BACKTRACE, matrix['os']
    operators     ! && || == != < <= > >= ( )
    functions     contains, startsWith, endsWith, format, success()

String comparison is case-insensitive, so `runner.os == 'linux'` and
`runner.os == 'Linux'` mean the same thing.
"""
from __future__ import annotations

import re
from functools import lru_cache
from typing import Any, Callable, FrozenSet, List, Mapping, Optional, Tuple

from .errors import ExpressionError

Scope = Mapping[str, Any]
Node = Callable[[Scope], Any]

# Contexts that can be resolved while planning (before any step runs).
PLAN_CONTEXTS = frozenset({"runner", "matrix", "env", "job", "ci", "github", "strategy"})

# Contexts/functions whose value only exists once steps have run.
RUNTIME_CONTEXTS = frozenset({"steps", "needs", "jobs", "secrets", "inputs", "vars"})
RUNTIME_FUNCTIONS = frozenset({"always", "failure", "cancelled", "hashfiles"})

_EXPR_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)
_WRAPPED_RE = re.compile(r"\$\{\{((?:(?!\}\}).)*)\}\}", re.DOTALL)

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>'(?:[^']|'')*')
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<op>==|!=|<=|>=|&&|\|\||[!<>().,\[\]])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_-]*)
    """,
    re.VERBOSE,
)


# ---------------------------------------------------------------------
# Value semantics
# ---------------------------------------------------------------------

def truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0
    if isinstance(value, str):
        return value != ""
    return True


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if text == "":
        return 0.0
    try:
        return float(text)
    except ValueError:
        return float("nan")


def _coerce_pair(left: Any, right: Any) -> Tuple[Any, Any]:
    if isinstance(left, str) and isinstance(right, str):
        return left.casefold(), right.casefold()
    if left is None and right is None:
        return 0.0, 0.0
    return _to_number(left), _to_number(right)


def _equals(left: Any, right: Any) -> bool:
    a, b = _coerce_pair(left, right)
    return a == b


def _compare(op: str, left: Any, right: Any) -> bool:
    a, b = _coerce_pair(left, right)
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    return a >= b


# ---------------------------------------------------------------------
# Functions
# ---------------------------------------------------------------------

def _fn_contains(haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, (list, tuple)):
        return any(_equals(item, needle) for item in haystack)
    return to_text(needle).casefold() in to_text(haystack).casefold()


def _fn_starts_with(text: Any, prefix: Any) -> bool:
    return to_text(text).casefold().startswith(to_text(prefix).casefold())


def _fn_ends_with(text: Any, suffix: Any) -> bool:
    return to_text(text).casefold().endswith(to_text(suffix).casefold())


def _fn_format(template: Any, *args: Any) -> str:
    out = to_text(template)
    for i, arg in enumerate(args):
        out = out.replace("{" + str(i) + "}", to_text(arg))
    return out


def _fn_success() -> bool:
    # every earlier applicable step passed, otherwise this one would never start
    return True


FUNCTIONS: Mapping[str, Tuple[Callable[..., Any], int, Optional[int]]] = {
    # name -> (impl, min args, max args)
    "contains": (_fn_contains, 2, 2),
    "startswith": (_fn_starts_with, 2, 2),
    "endswith": (_fn_ends_with, 2, 2),
    "format": (_fn_format, 1, None),
    "success": (_fn_success, 0, 0),
}


def _either(left: Node, right: Node) -> Node:
    def node(scope: Scope) -> Any:
        value = left(scope)
        return value if truthy(value) else right(scope)
    return node


def _both(left: Node, right: Node) -> Node:
    def node(scope: Scope) -> Any:
        value = left(scope)
        return right(scope) if truthy(value) else value
    return node


# ---------------------------------------------------------------------
# Tokenizer / parser
# ---------------------------------------------------------------------

def _tokenize(source: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(source):
        m = _TOKEN_RE.match(source, pos)
        if not m:
            raise ExpressionError(
                f"Unexpected character {source[pos]!r} at offset {pos}",
                expression=source,
            )
        pos = m.end()
        kind = m.lastgroup or ""
        if kind == "ws":
            continue
        tokens.append((kind, m.group(kind)))
    return tokens


class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = _tokenize(source)
        self.pos = 0
        # `context.property` pairs seen while parsing
        self.references: List[Tuple[str, str]] = []
        self._last_context: Optional[str] = None

    # -- helpers ----------------------------------------------------------

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _accept(self, value: str) -> bool:
        tok = self._peek()
        if tok and tok[0] == "op" and tok[1] == value:
            self.pos += 1
            return True
        return False

    def _expect(self, value: str) -> None:
        if not self._accept(value):
            self._fail(f"Expected {value!r}")

    def _fail(self, message: str) -> None:
        tok = self._peek()
        where = f"near {tok[1]!r}" if tok else "at end of expression"
        raise ExpressionError(f"{message} {where}", expression=self.source)

    # -- grammar ----------------------------------------------------------

    def parse(self) -> Node:
        if not self.tokens:
            raise ExpressionError("Empty expression", expression=self.source)
        node = self._or()
        if self._peek() is not None:
            self._fail("Unexpected token")
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._accept("||"):
            node = _either(node, self._and())
        return node

    def _and(self) -> Node:
        node = self._equality()
        while self._accept("&&"):
            node = _both(node, self._equality())
        return node

    def _equality(self) -> Node:
        node = self._comparison()
        while True:
            if self._accept("=="):
                left, right = node, self._comparison()
                node = lambda s, l=left, r=right: _equals(l(s), r(s))
            elif self._accept("!="):
                left, right = node, self._comparison()
                node = lambda s, l=left, r=right: not _equals(l(s), r(s))
            else:
                return node

    def _comparison(self) -> Node:
        node = self._unary()
        while True:
            tok = self._peek()
            if tok and tok[0] == "op" and tok[1] in ("<", "<=", ">", ">="):
                self.pos += 1
                left, right, op = node, self._unary(), tok[1]
                node = lambda s, l=left, r=right, o=op: _compare(o, l(s), r(s))
            else:
                return node

    def _unary(self) -> Node:
        if self._accept("!"):
            inner = self._unary()
            return lambda s: not truthy(inner(s))
        node = self._primary()
        context, self._last_context = self._last_context, None
        return self._postfix(node, context)

    def _primary(self) -> Node:
        tok = self._peek()
        if tok is None:
            self._fail("Expected a value")
        kind, text = tok
        self.pos += 1

        if kind == "string":
            value = text[1:-1].replace("''", "'")
            return lambda s: value
        if kind == "number":
            num = float(text)
            return lambda s: num
        if kind == "op" and text == "(":
            node = self._or()
            self._expect(")")
            return node
        if kind == "ident":
            low = text.lower()
            if low == "true":
                return lambda s: True
            if low == "false":
                return lambda s: False
            if low == "null":
                return lambda s: None
            if self._accept("("):
                return self._call(text)
            return self._context(text)

        self.pos -= 1
        self._fail("Unexpected token")
        raise AssertionError("unreachable")

    def _call(self, name: str) -> Node:
        low = name.lower()
        if low in RUNTIME_FUNCTIONS:
            raise ExpressionError(
                f"Function {name}() depends on run-time state and cannot be used in a plan-time predicate",
                expression=self.source,
            )
        if low not in FUNCTIONS:
            raise ExpressionError(f"Unknown function {name}()", expression=self.source)

        args: List[Node] = []
        if not self._accept(")"):
            args.append(self._or())
            while self._accept(","):
                args.append(self._or())
            self._expect(")")

        impl, lo, hi = FUNCTIONS[low]
        if len(args) < lo or (hi is not None and len(args) > hi):
            raise ExpressionError(
                f"{name}() takes {lo}{'' if hi == lo else '+'} argument(s), got {len(args)}",
                expression=self.source,
            )
        return lambda s: impl(*(a(s) for a in args))

    def _context(self, name: str) -> Node:
        if name in RUNTIME_CONTEXTS:
            raise ExpressionError(
                f"Context '{name}' is only known after steps run and cannot be used in a plan-time predicate",
                expression=self.source,
            )
        if name not in PLAN_CONTEXTS:
            raise ExpressionError(f"Unknown context '{name}'", expression=self.source)
        self._last_context = name
        return lambda s: s.get(name)

    def _postfix(self, node: Node, context: Optional[str] = None) -> Node:
        while True:
            if self._accept("."):
                tok = self._peek()
                if tok is None or tok[0] != "ident":
                    self._fail("Expected a property name")
                self.pos += 1
                prop = tok[1]
                if context is not None:
                    self.references.append((context, prop))
                context = None
                node = lambda s, n=node, p=prop: _property(n(s), p)
            elif self._accept("["):
                context = None
                index = self._or()
                self._expect("]")
                node = lambda s, n=node, i=index: _property(n(s), to_text(i(s)))
            else:
                return node


def _property(obj: Any, name: str) -> Any:
    if isinstance(obj, Mapping):
        if name in obj:
            return obj[name]
        # property lookup is case-insensitive
        low = name.lower()
        for k in obj:
            if str(k).lower() == low:
                return obj[k]
    return None


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

class Predicate:
    """A compiled `if:` condition. Call it with a scope to get a bool."""

    __slots__ = ("source", "_node")

    def __init__(self, source: str, node: Node):
        self.source = source
        self._node = node

    def __call__(self, scope: Scope) -> bool:
        return truthy(self._node(scope))

    def __repr__(self) -> str:
        return f"Predicate({self.source!r})"


def _strip_wrapper(source: str) -> str:
    text = source.strip()
    m = _WRAPPED_RE.fullmatch(text)
    return m.group(1).strip() if m else text


@lru_cache(maxsize=512)
def _compile(source: str) -> Tuple[Node, Tuple[Tuple[str, str], ...]]:
    parser = _Parser(_strip_wrapper(source))
    node = parser.parse()
    return node, tuple(parser.references)


def compile_expression(source: str) -> Node:
    return _compile(source)[0]


def check_references(source: str, known: Mapping[str, FrozenSet[str]]) -> None:
    """
    Reject `context.property` references that can never resolve.

    `known` maps a context to its lower-cased property names; contexts it
    does not list (env, ci) accept any property.
    """
    for context, prop in _compile(source)[1]:
        allowed = known.get(context)
        if allowed is not None and prop.lower() not in allowed:
            raise ExpressionError(
                f"'{context}.{prop}' does not resolve",
                expression=source,
                details={"known": ", ".join(sorted(allowed)) or "(none)"},
            )


def compile_predicate(source: Optional[str]) -> Predicate:
    """
    Compile an `if:` condition.

    An absent/blank condition always applies. Raises ExpressionError for
    syntax errors and for references that only exist at run time.
    """
    if source is None or str(source).strip() == "":
        return Predicate("", lambda s: True)
    if isinstance(source, bool):
        value = source
        return Predicate(to_text(source), lambda s: value)
    return Predicate(str(source), compile_expression(str(source)))


def evaluate(source: str, scope: Scope) -> Any:
    return compile_expression(source)(scope)


def interpolate(text: Any, scope: Scope) -> str:
    """Replace every `${{ expr }}` in `text` with its string value."""
    if text is None:
        return ""
    raw = to_text(text)
    if "${{" not in raw:
        return raw
    return _EXPR_RE.sub(lambda m: to_text(evaluate(m.group(1).strip(), scope)), raw)


def check_template(text: Any, known: Optional[Mapping[str, FrozenSet[str]]] = None) -> None:
    """Compile every `${{ }}` block in `text` without evaluating it."""
    for m in _EXPR_RE.finditer(to_text(text)):
        source = m.group(1).strip()
        compile_expression(source)
        if known is not None:
            check_references(source, known)
