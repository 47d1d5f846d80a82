# expr.py
"""
Expression evaluation for pipeline definitions.

Three marker forms show up in definition strings:

  ${{ expr }}   load time, evaluated against {"parameters": ...}
  $[ expr ]     instance time, evaluated against the instance variables
  $(name)       macro, replaced by an instance variable

Expressions support literals ('text', 1, 2.5, true, false, null),
identifiers, member/index access (variables.rust, variables['Agent.OS']),
function calls (eq, ne, and, or, not, in, notIn, contains, startsWith,
endsWith, format, coalesce, lower, upper, join, length) and the infix
operators ==, !=, &&, || and prefix !. Binding, loosest first: ||, &&,
== and !=, then !, so `!a == b` reads as `(!a) == b`.

Everything here is a pure function of (expression, environment).
"""
from __future__ import annotations

import re
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, MutableMapping, Optional, Tuple

from .errors import EvaluationError

TEMPLATE_RE = re.compile(r"\$\{\{(.*?)\}\}", re.S)
RUNTIME_RE = re.compile(r"^\s*\$\[(.*)\]\s*$", re.S)
MACRO_RE = re.compile(r"\$\(([A-Za-z_][A-Za-z0-9_.\-]*)\)")
DIRECTIVE_RE = re.compile(r"^\s*\$\{\{\s*(if|elseif|else|insert)\b(.*?)\}\}\s*$", re.S)

Node = Tuple[Any, ...]


# ----------------------------------------------------------------------
# Tokenizer
# ----------------------------------------------------------------------

_PUNCT = {"(", ")", ",", "[", "]", ".", "!"}
_DOUBLE = {"==", "!=", "&&", "||"}


def _tokenize(src: str) -> List[Tuple[str, Any]]:
    tokens: List[Tuple[str, Any]] = []
    i, n = 0, len(src)
    while i < n:
        c = src[i]
        if c.isspace():
            i += 1
            continue
        if c == "'":
            buf = []
            i += 1
            while True:
                if i >= n:
                    raise EvaluationError("unterminated string literal", src)
                if src[i] == "'":
                    if i + 1 < n and src[i + 1] == "'":
                        buf.append("'")
                        i += 2
                        continue
                    i += 1
                    break
                buf.append(src[i])
                i += 1
            tokens.append(("str", "".join(buf)))
            continue
        if c.isdigit() or (c == "-" and i + 1 < n and src[i + 1].isdigit()):
            j = i + 1
            while j < n and (src[j].isdigit() or src[j] == "."):
                j += 1
            text = src[i:j]
            try:
                value: Any = int(text)
            except ValueError:
                try:
                    value = float(text)
                except ValueError:
                    raise EvaluationError(f"malformed number {text!r}", src)
            tokens.append(("num", value))
            i = j
            continue
        if c.isalpha() or c == "_":
            j = i + 1
            while j < n and (src[j].isalnum() or src[j] in "_-"):
                j += 1
            tokens.append(("ident", src[i:j]))
            i = j
            continue
        pair = src[i:i + 2]
        if pair in _DOUBLE:
            tokens.append(("op", pair))
            i += 2
            continue
        if c in _PUNCT:
            tokens.append(("op", c))
            i += 1
            continue
        raise EvaluationError(f"unexpected character {c!r} at offset {i}", src)
    tokens.append(("end", None))
    return tokens


# ----------------------------------------------------------------------
# Parser (recursive descent, produces tuple nodes)
# ----------------------------------------------------------------------

class _Parser:
    def __init__(self, src: str):
        self.src = src
        self.tokens = _tokenize(src)
        self.pos = 0

    def peek(self) -> Tuple[str, Any]:
        return self.tokens[self.pos]

    def take(self) -> Tuple[str, Any]:
        tok = self.tokens[self.pos]
        self.pos += 1
        return tok

    def accept(self, op: str) -> bool:
        kind, value = self.peek()
        if kind == "op" and value == op:
            self.pos += 1
            return True
        return False

    def expect(self, op: str) -> None:
        if not self.accept(op):
            kind, value = self.peek()
            found = "end of expression" if kind == "end" else repr(value)
            raise EvaluationError(f"expected {op!r}, found {found}", self.src)

    def parse(self) -> Node:
        if self.peek()[0] == "end":
            raise EvaluationError("empty expression", self.src)
        node = self.parse_or()
        if self.peek()[0] != "end":
            raise EvaluationError(f"unexpected token {self.peek()[1]!r}", self.src)
        return node

    def parse_or(self) -> Node:
        items = [self.parse_and()]
        while self.accept("||"):
            items.append(self.parse_and())
        return items[0] if len(items) == 1 else ("or", tuple(items))

    def parse_and(self) -> Node:
        items = [self.parse_comparison()]
        while self.accept("&&"):
            items.append(self.parse_comparison())
        return items[0] if len(items) == 1 else ("and", tuple(items))

    def parse_comparison(self) -> Node:
        left = self.parse_unary()
        if self.accept("=="):
            return ("eq", left, self.parse_unary())
        if self.accept("!="):
            return ("ne", left, self.parse_unary())
        return left

    def parse_unary(self) -> Node:
        # `!` binds tighter than == and !=
        if self.accept("!"):
            return ("not", self.parse_unary())
        return self.parse_postfix()

    def parse_postfix(self) -> Node:
        node = self.parse_primary()
        while True:
            if self.accept("."):
                kind, value = self.take()
                if kind != "ident":
                    raise EvaluationError("expected property name after '.'", self.src)
                node = ("member", node, ("lit", value))
            elif self.accept("["):
                key = self.parse_or()
                self.expect("]")
                node = ("member", node, key)
            else:
                return node

    def parse_primary(self) -> Node:
        kind, value = self.take()
        if kind in ("str", "num"):
            return ("lit", value)
        if kind == "ident":
            if value == "true":
                return ("lit", True)
            if value == "false":
                return ("lit", False)
            if value == "null":
                return ("lit", None)
            if self.accept("("):
                args: List[Node] = []
                if not self.accept(")"):
                    args.append(self.parse_or())
                    while self.accept(","):
                        args.append(self.parse_or())
                    self.expect(")")
                return ("call", value, tuple(args))
            return ("ref", value)
        if kind == "op" and value == "(":
            node = self.parse_or()
            self.expect(")")
            return node
        found = "end of expression" if kind == "end" else repr(value)
        raise EvaluationError(f"unexpected {found}", self.src)


@lru_cache(maxsize=512)
def parse(expression: str) -> Node:
    return _Parser(expression).parse()


# ----------------------------------------------------------------------
# Value helpers
# ----------------------------------------------------------------------

def as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value != "" and value.casefold() != "false"
    if isinstance(value, (list, tuple, dict, set, frozenset)) or hasattr(value, "__len__"):
        return len(value) > 0
    return True


def equals(a: Any, b: Any) -> bool:
    """Loose equality: case-insensitive for text, numbers compared numerically."""
    if isinstance(a, str) or isinstance(b, str):
        return as_text(a).casefold() == as_text(b).casefold()
    if isinstance(a, bool) or isinstance(b, bool):
        return truthy(a) == truthy(b)
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return float(a) == float(b)
    return a == b


_FORMAT_RE = re.compile(r"\{\{|\}\}|\{(\d+)\}")


def _format(fmt: Any, *args: Any) -> str:
    def sub(m: re.Match) -> str:
        token = m.group(0)
        if token == "{{":
            return "{"
        if token == "}}":
            return "}"
        idx = int(m.group(1))
        if idx >= len(args):
            raise EvaluationError(f"format index {{{idx}}} out of range ({len(args)} args)")
        return as_text(args[idx])

    return _FORMAT_RE.sub(sub, as_text(fmt))


def _contains(haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, str):
        return as_text(needle).casefold() in haystack.casefold()
    if isinstance(haystack, (list, tuple)):
        return any(equals(item, needle) for item in haystack)
    if isinstance(haystack, Mapping):
        return any(equals(k, needle) for k in haystack)
    return False


def _join(sep: Any, items: Any) -> str:
    if isinstance(items, (list, tuple)):
        return as_text(sep).join(as_text(i) for i in items)
    return as_text(items)


def _length(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, (str, list, tuple, dict)):
        return len(value)
    return len(as_text(value))


def _coalesce(*args: Any) -> Any:
    for a in args:
        if a is not None and a != "":
            return a
    return None


# name -> (min args, max args or None, fn); and/or/not are lazy and handled inline
FUNCTIONS: Dict[str, Tuple[int, Optional[int], Callable[..., Any]]] = {
    "eq": (2, 2, equals),
    "ne": (2, 2, lambda a, b: not equals(a, b)),
    "in": (2, None, lambda needle, *hay: any(equals(needle, h) for h in hay)),
    "notIn": (2, None, lambda needle, *hay: not any(equals(needle, h) for h in hay)),
    "contains": (2, 2, _contains),
    "startsWith": (2, 2, lambda a, b: as_text(a).casefold().startswith(as_text(b).casefold())),
    "endsWith": (2, 2, lambda a, b: as_text(a).casefold().endswith(as_text(b).casefold())),
    "format": (1, None, _format),
    "coalesce": (1, None, _coalesce),
    "lower": (1, 1, lambda a: as_text(a).lower()),
    "upper": (1, 1, lambda a: as_text(a).upper()),
    "join": (2, 2, _join),
    "length": (1, 1, _length),
}


# ----------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------

def _path(node: Node) -> str:
    tag = node[0]
    if tag == "ref":
        return node[1]
    if tag == "member" and node[2][0] == "lit":
        return f"{_path(node[1])}.{node[2][1]}"
    return "<expr>"


def _lookup(container: Any, key: Any, node: Node, src: str) -> Any:
    if isinstance(container, Mapping):
        if key in container:
            return container[key]
        if isinstance(key, str):
            folded = key.casefold()
            for k, v in container.items():
                if isinstance(k, str) and k.casefold() == folded:
                    return v
        raise EvaluationError(f"undefined variable '{_path(node)}'", src)
    if isinstance(container, (list, tuple)) and isinstance(key, int) and not isinstance(key, bool):
        if 0 <= key < len(container):
            return container[key]
        raise EvaluationError(f"index {key} out of range for '{_path(node[1])}'", src)
    raise EvaluationError(f"cannot index into '{_path(node[1])}'", src)


def _eval(node: Node, env: Mapping[str, Any], src: str) -> Any:
    tag = node[0]
    if tag == "lit":
        return node[1]
    if tag == "ref":
        return _lookup(env, node[1], node, src)
    if tag == "member":
        container = _eval(node[1], env, src)
        key = _eval(node[2], env, src)
        return _lookup(container, key, node, src)
    if tag == "not":
        return not truthy(_eval(node[1], env, src))
    if tag == "eq":
        return equals(_eval(node[1], env, src), _eval(node[2], env, src))
    if tag == "ne":
        return not equals(_eval(node[1], env, src), _eval(node[2], env, src))
    if tag == "and":
        return all(truthy(_eval(n, env, src)) for n in node[1])
    if tag == "or":
        return any(truthy(_eval(n, env, src)) for n in node[1])
    if tag == "call":
        return _call(node[1], node[2], env, src)
    raise EvaluationError(f"unknown node {tag!r}", src)


def _call(name: str, args: Tuple[Node, ...], env: Mapping[str, Any], src: str) -> Any:
    if name in ("and", "or"):
        if len(args) < 2:
            raise EvaluationError(f"{name}() takes at least 2 arguments", src)
        return _eval((name, args), env, src)
    if name == "not":
        if len(args) != 1:
            raise EvaluationError("not() takes exactly 1 argument", src)
        return _eval(("not", args[0]), env, src)

    if name not in FUNCTIONS:
        raise EvaluationError(f"unknown function '{name}'", src)
    lo, hi, fn = FUNCTIONS[name]
    if len(args) < lo or (hi is not None and len(args) > hi):
        expected = str(lo) if lo == hi else f"{lo}..{hi if hi is not None else 'n'}"
        raise EvaluationError(f"{name}() takes {expected} arguments, got {len(args)}", src)
    return fn(*(_eval(a, env, src) for a in args))


def evaluate(expression: str, env: Mapping[str, Any]) -> Any:
    """Evaluate one expression (no markers) against `env`."""
    if not isinstance(expression, str):
        raise EvaluationError(f"expression must be a string, got {type(expression).__name__}")
    return _eval(parse(expression.strip()), env, expression)


def evaluate_bool(expression: Any, env: Mapping[str, Any]) -> bool:
    """
    Resolve a policy/condition value to a bool.

    Accepts a bool, a `$[ ]` runtime marker, a `${{ }}` template marker, or a
    bare expression string.
    """
    if isinstance(expression, bool):
        return expression
    if expression is None:
        return False
    if not isinstance(expression, str):
        return truthy(expression)
    m = RUNTIME_RE.match(expression)
    if m:
        return truthy(evaluate(m.group(1), env))
    if TEMPLATE_RE.search(expression):
        return truthy(interpolate(expression, env))
    return truthy(evaluate(expression, env))


# ----------------------------------------------------------------------
# Marker handling
# ----------------------------------------------------------------------

def interpolate(value: Any, env: Mapping[str, Any]) -> Any:
    """
    Replace ${{ }} markers in `value`.

    A string that is exactly one marker yields the typed result (a list or a
    mapping can be spliced this way); otherwise results are formatted as text.
    """
    if not isinstance(value, str) or "${{" not in value:
        return value
    whole = TEMPLATE_RE.fullmatch(value.strip())
    if whole:
        return evaluate(whole.group(1), env)
    return TEMPLATE_RE.sub(lambda m: as_text(evaluate(m.group(1), env)), value)


def runtime(value: Any, env: Mapping[str, Any]) -> Any:
    """Evaluate a whole-string $[ ] marker; other values pass through."""
    if not isinstance(value, str):
        return value
    m = RUNTIME_RE.match(value)
    if not m:
        return value
    return evaluate(m.group(1), env)


def expand_macros(text: str, variables: Mapping[str, Any], *, strict: bool = False) -> str:
    """
    Substitute $(name) with variables[name].

    Unknown names are left in place (shell command substitution uses the same
    form) unless `strict` is set.
    """
    if not isinstance(text, str) or "$(" not in text:
        return text
    folded = {k.casefold(): v for k, v in variables.items() if isinstance(k, str)}

    def sub(m: re.Match) -> str:
        name = m.group(1)
        if name in variables:
            return as_text(variables[name])
        if name.casefold() in folded:
            return as_text(folded[name.casefold()])
        if strict:
            raise EvaluationError(f"undefined variable '{name}'", m.group(0))
        return m.group(0)

    return MACRO_RE.sub(sub, text)


def directive(key: Any) -> Optional[Tuple[str, str]]:
    """Return (keyword, condition) for an `${{ if ... }}`-style mapping key."""
    if not isinstance(key, str):
        return None
    m = DIRECTIVE_RE.match(key)
    if not m:
        return None
    return m.group(1), m.group(2).strip()


def merge_insert(target: MutableMapping[str, Any], value: Any) -> None:
    """The `${{ insert }}` operator: splice a mapping into `target`."""
    if value is None:
        return
    if not isinstance(value, Mapping):
        raise EvaluationError(
            f"insert expects a mapping, got {type(value).__name__}",
            "${{ insert }}",
        )
    for k, v in value.items():
        target[k] = v


def all_of(*conditions: Optional[str]) -> Optional[str]:
    """Join conditions into one `and(...)` expression; None entries are ignored."""
    present = [c for c in conditions if c is not None]
    if len(present) < 2:
        return present[0] if present else None
    bodies = []
    for c in present:
        m = RUNTIME_RE.match(c)
        bodies.append((m.group(1) if m else c).strip())
    return f"and({', '.join(bodies)})"
