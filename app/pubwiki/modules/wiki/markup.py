"""
Wiki markup tokenizer.

Splits raw page text into Text runs and module invocations:

    [module Name key=value "quoted positional" other="a ] b"]
    [module:Name|key=value|positional]        (legacy form)

Malformed invocations become ParseErrorNode entries; parsing never fails for the
whole document. The tokenizer is pure and deterministic.
"""
from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

MODULE_NAME_RE = re.compile(r"[A-Za-z][A-Za-z0-9]*\Z")
PARAM_KEY_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_-]*\Z")

_OPEN_RE = re.compile(r"\[module(?=[\s:\]]|\Z)")
_QUOTES = ("'", '"')


@dataclass(frozen=True)
class Text:
    text: str


@dataclass(frozen=True)
class ModuleCall:
    name: str
    positional: tuple[str, ...] = ()
    named: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ParseErrorNode:
    message: str
    raw_span: str


Node = Text | ModuleCall | ParseErrorNode

# (token text, index of the first unquoted "=" or None)
_Token = tuple[str, int | None]


def parse(text: str) -> list[Node]:
    return list(iter_nodes(text))


def iter_nodes(text: str) -> Iterator[Node]:
    """Yield nodes in document order. Adjacent text is merged into one Text node."""
    text = text or ""
    pending: list[str] = []
    pos = 0
    while pos < len(text):
        m = _OPEN_RE.search(text, pos)
        if m is None:
            pending.append(text[pos:])
            break
        pending.append(text[pos:m.start()])
        node, pos = _read_invocation(text, m.start())
        if any(pending):
            yield Text("".join(pending))
        pending.clear()
        yield node
    if any(pending):
        yield Text("".join(pending))


def module_names(nodes: Iterable[Node]) -> list[str]:
    """Distinct module names referenced by a node sequence, in first-use order."""
    seen: dict[str, str] = {}
    for node in nodes:
        if isinstance(node, ModuleCall):
            seen.setdefault(node.name.lower(), node.name)
    return list(seen.values())


def _read_invocation(text: str, start: int) -> tuple[Node, int]:
    n = len(text)
    i = start + len("[module")
    legacy = i < n and text[i] == ":"
    if legacy:
        i += 1

    tokens: list[_Token] = []
    cur: list[str] = []
    eq_at: int | None = None
    have_token = False
    quote: str | None = None

    def flush() -> None:
        nonlocal cur, eq_at, have_token
        if have_token:
            tokens.append(("".join(cur), eq_at))
        cur, eq_at, have_token = [], None, False

    while i < n:
        ch = text[i]
        if quote:
            if ch == "\n":
                break
            if ch == "\\" and i + 1 < n and text[i + 1] in ("\"", "'", "\\"):
                cur.append(text[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
            else:
                cur.append(ch)
            i += 1
            continue

        if ch == "\n":
            break
        if ch in _QUOTES and (not cur or eq_at == len(cur) - 1):
            quote = ch
            have_token = True
        elif ch == "]":
            flush()
            return _build_call(tokens, text[start:i + 1], legacy), i + 1
        elif ch == "[":
            # unquoted "[" cannot appear inside an invocation; resume at it
            return ParseErrorNode("unbalanced '[' inside module invocation", text[start:i]), i
        elif (legacy and ch == "|") or (not legacy and ch.isspace()):
            flush()
        else:
            if ch == "=" and eq_at is None:
                eq_at = len(cur)
            cur.append(ch)
            have_token = True
        i += 1

    message = "unterminated quoted value" if quote else "unterminated module invocation"
    return ParseErrorNode(message, text[start:i]), i


def _build_call(tokens: list[_Token], raw: str, legacy: bool) -> Node:
    def clean(s: str) -> str:
        return s.strip() if legacy else s

    if not tokens:
        return ParseErrorNode("missing module name", raw)

    name, name_eq = tokens[0]
    name = clean(name)
    if name_eq is not None or not MODULE_NAME_RE.match(name):
        return ParseErrorNode(f"invalid module name {name!r}", raw)

    positional: list[str] = []
    named: dict[str, str] = {}
    for value, eq in tokens[1:]:
        if eq is not None:
            key = value[:eq].strip()
            if PARAM_KEY_RE.match(key):
                if key in named:
                    return ParseErrorNode(f"duplicate parameter {key!r}", raw)
                named[key] = clean(value[eq + 1:])
                continue
        value = clean(value)
        if legacy and not value:
            continue
        positional.append(value)
    return ModuleCall(name=name, positional=tuple(positional), named=named)
