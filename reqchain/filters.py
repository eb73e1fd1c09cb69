"""reqchain filters - JSON path queries and raw message formatting."""

from __future__ import annotations

import json
import re
from typing import Any, NamedTuple

from reqchain.errors import JsonPathError

# ---------------------------------------------------------------------------
# Segment types returned by parse_json_path:
#   str              → dict key
#   int              → list index (supports negative)
#   None             → wildcard, every child of a dict or list
#   (start, stop)    → Python-style slice  e.g. [2:], [:-1], [1:3]
#   Descend          → recursive descent  e.g. ..name, ..*
#   Union            → several keys or indexes  e.g. ['a','b'], [0,2]
#   Filter           → children matching a condition  e.g. [?(@.id > 1)]
# ---------------------------------------------------------------------------

_INT_RE = re.compile(r"^-?\d+$")
_SLICE_RE = re.compile(r"^(-?\d*):(-?\d*)$")
_COMPARISON_RE = re.compile(r"^(?P<left>.+?)\s*(?P<op>==|!=|<=|>=|<|>)\s*(?P<right>.+)$", re.DOTALL)

_MISSING = object()


class Descend(NamedTuple):
    key: str | None


class Union(NamedTuple):
    items: tuple[str | int, ...]


class Filter(NamedTuple):
    # OR of ANDs: each inner tuple holds (left, op, right) comparisons,
    # op None meaning "left exists".
    alternatives: tuple[tuple[tuple[Any, str | None, Any], ...], ...]


class Operand(NamedTuple):
    relative: bool  # @ (current item) or $ (document root)
    segments: list[Any]


def _read_name(path: str, i: int) -> tuple[str | None, int]:
    """Read a dot-notation member name starting at i. '*' means wildcard."""
    start = i
    while i < len(path) and path[i] not in ".[":
        i += 1
    name = path[start:i].strip()
    if not name:
        raise JsonPathError(f"Empty member name at offset {start} in {path!r}")
    return (None if name == "*" else name), i


def _find_bracket_end(path: str, i: int) -> int:
    """Return the index of the ']' closing the bracket opened at i."""
    j = i + 1
    quote = None
    depth = 0
    while j < len(path):
        ch = path[j]
        if quote:
            if ch == "\\":
                j += 1
            elif ch == quote:
                quote = None
        elif ch in "'\"":
            quote = ch
        elif ch == "[":
            depth += 1
        elif ch == "]":
            if depth == 0:
                return j
            depth -= 1
        j += 1
    raise JsonPathError(f"Unclosed bracket at offset {i} in {path!r}")


def _split_top(text: str, sep: str) -> list[str]:
    """Split text on sep, ignoring separators inside quotes, () and []."""
    parts = []
    depth = 0
    quote = None
    start = 0
    i = 0
    while i < len(text):
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 1
            elif ch == quote:
                quote = None
        elif ch in "'\"":
            quote = ch
        elif ch in "([":
            depth += 1
        elif ch in ")]":
            depth -= 1
        elif depth == 0 and text.startswith(sep, i):
            parts.append(text[start:i].strip())
            i += len(sep)
            start = i
            continue
        i += 1
    parts.append(text[start:].strip())
    return parts


def _parse_operand(text: str) -> Any:
    """A filter operand: @-relative path, $-rooted path or a JSON literal."""
    if text.startswith("@"):
        return Operand(True, parse_json_path("$" + text[1:]))
    if text.startswith("$"):
        return Operand(False, parse_json_path(text))
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    try:
        return json.loads(text)
    except ValueError:
        raise JsonPathError(f"Invalid filter operand: {text!r}") from None


def _wrapped_in_parens(expr: str) -> bool:
    """True when the first '(' closes at the very end of expr."""
    if not expr.startswith("("):
        return False
    depth = 0
    quote = None
    escaped = False
    for i, ch in enumerate(expr):
        if quote:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
        elif ch in "'\"":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i == len(expr) - 1
    return False


def _parse_filter(expr: str) -> Filter:
    expr = expr.strip()
    if _wrapped_in_parens(expr):
        expr = expr[1:-1].strip()
    if not expr:
        raise JsonPathError("Empty filter expression")

    alternatives = []
    for alternative in _split_top(expr, "||"):
        terms = []
        for term in _split_top(alternative, "&&"):
            while _wrapped_in_parens(term):
                term = term[1:-1].strip()
            if len(_split_top(term, "||")) > 1 or len(_split_top(term, "&&")) > 1:
                raise JsonPathError(f"Nested filter groups are not supported: {expr!r}")
            m = _COMPARISON_RE.match(term)
            if m:
                terms.append(
                    (_parse_operand(m.group("left")), m.group("op"), _parse_operand(m.group("right")))
                )
                continue
            operand = _parse_operand(term)
            if not isinstance(operand, Operand):
                raise JsonPathError(f"Filter term is not a path or comparison: {term!r}")
            terms.append((operand, None, None))
        alternatives.append(tuple(terms))
    return Filter(tuple(alternatives))


def _classify_bracket(content: str) -> Any:
    """Classify the contents of a single [...] bracket."""
    if content == "*":
        return None

    if content.startswith("?"):
        return _parse_filter(content[1:])

    items = _split_top(content, ",")
    if len(items) > 1:
        union = []
        for item in items:
            key = _classify_bracket(item)
            if not isinstance(key, str | int):
                raise JsonPathError(f"Union members must be keys or indexes: [{content}]")
            union.append(key)
        return Union(tuple(union))

    if len(content) >= 2 and content[0] == content[-1] and content[0] in "'\"":
        return content[1:-1]

    sm = _SLICE_RE.match(content)
    if sm:
        start = int(sm.group(1)) if sm.group(1) else None
        stop = int(sm.group(2)) if sm.group(2) else None
        return (start, stop)

    if _INT_RE.match(content):
        return int(content)

    raise JsonPathError(f"Unsupported bracket expression: [{content}]")


def parse_json_path(path: str) -> list[Any]:
    """Parse a JSON path into typed segments.

    Supports:
      $                      → root
      $.a.b                  → key, key
      $.items[0].id          → key, 0, key
      $.items[-1]            → key, -1
      $.items[1:3]           → key, (1, 3)
      $.items[*].id / .*     → key, wildcard, key
      $['a key']             → key (bracket notation)
      $['a','b'] / $[0,2]    → union
      $..id                  → recursive descent
      $.items[?(@.id > 1)]   → filter: ==, !=, <, <=, >, >=, &&, ||,
                               and bare paths as existence tests
    """
    path = path.strip()
    if not path.startswith("$"):
        raise JsonPathError(f"JSON path must start with '$': {path!r}")

    segments: list[Any] = []
    i = 1
    while i < len(path):
        if path.startswith("..", i):
            if i + 2 < len(path) and path[i + 2] == "[":
                end = _find_bracket_end(path, i + 2)
                key = _classify_bracket(path[i + 3 : end].strip())
                if key is not None and not isinstance(key, str):
                    raise JsonPathError(f"Recursive descent needs a member name: {path!r}")
                segments.append(Descend(key))
                i = end + 1
            else:
                name, i = _read_name(path, i + 2)
                segments.append(Descend(name))
        elif path[i] == ".":
            name, i = _read_name(path, i + 1)
            segments.append(name)
        elif path[i] == "[":
            end = _find_bracket_end(path, i)
            segments.append(_classify_bracket(path[i + 1 : end].strip()))
            i = end + 1
        else:
            raise JsonPathError(f"Unexpected character {path[i]!r} at offset {i} in {path!r}")
    return segments


def _children(node: Any) -> list[Any]:
    if isinstance(node, dict):
        return list(node.values())
    if isinstance(node, list):
        return list(node)
    return []


def _descendants(node: Any) -> list[Any]:
    """node and everything below it, depth-first in document order."""
    found = [node]
    for child in _children(node):
        found.extend(_descendants(child))
    return found


def _evaluate(data: Any, segments: list[Any], root: Any) -> list[Any]:
    nodes = [data]
    for seg in segments:
        nodes = [m for n in nodes for m in _step(n, seg, root)]
    return nodes


def _operand_value(operand: Any, item: Any, root: Any) -> Any:
    if not isinstance(operand, Operand):
        return operand
    matches = _evaluate(item if operand.relative else root, operand.segments, root)
    return matches[0] if matches else _MISSING


def _equal(left: Any, right: Any) -> bool:
    if left is _MISSING or right is _MISSING or isinstance(left, bool) or isinstance(right, bool):
        return left is right
    return left == right


def _compare(left: Any, op: str, right: Any) -> bool:
    if op == "==":
        return _equal(left, right)
    if op == "!=":
        return not _equal(left, right)
    numbers = all(isinstance(v, int | float) and not isinstance(v, bool) for v in (left, right))
    strings = isinstance(left, str) and isinstance(right, str)
    if not (numbers or strings):
        return False
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


def _matches(condition: Filter, item: Any, root: Any) -> bool:
    for terms in condition.alternatives:
        ok = True
        for left, op, right in terms:
            left_value = _operand_value(left, item, root)
            if op is None:
                ok = left_value is not _MISSING
            else:
                ok = _compare(left_value, op, _operand_value(right, item, root))
            if not ok:
                break
        if ok:
            return True
    return False


def _step(node: Any, seg: Any, root: Any = None) -> list[Any]:
    if isinstance(seg, Descend):
        matches: list[Any] = []
        for item in _descendants(node):
            if seg.key is None:
                if item is not node:
                    matches.append(item)
            elif isinstance(item, dict) and seg.key in item:
                matches.append(item[seg.key])
        return matches
    if isinstance(seg, Union):
        return [m for key in seg.items for m in _step(node, key, root)]
    if isinstance(seg, Filter):
        return [child for child in _children(node) if _matches(seg, child, root)]
    if seg is None:
        return _children(node)
    if isinstance(seg, str):
        if isinstance(node, dict) and seg in node:
            return [node[seg]]
        return []
    if isinstance(seg, int):
        if isinstance(node, list):
            try:
                return [node[seg]]
            except IndexError:
                return []
        return []
    if isinstance(seg, tuple) and isinstance(node, list):
        start, stop = seg
        return node[slice(start, stop)]
    return []


def evaluate_json_path(data: Any, path: str) -> list[Any]:
    """Evaluate a JSON path against parsed JSON data. Returns all matches."""
    return _evaluate(data, parse_json_path(path), data)


def json_value_to_text(value: Any) -> str:
    """Render a JSON value as text: strings verbatim, null empty, else JSON."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Raw message output
# ---------------------------------------------------------------------------


def _pretty_body(text: str, content_type: str | None) -> str:
    if content_type and "json" in content_type.lower():
        try:
            return json.dumps(json.loads(text), indent=2, ensure_ascii=False)
        except ValueError:
            return text
    return text


def format_request(request) -> str:
    """Format a RequestDescriptor as a raw HTTP request message."""
    lines = [f"{request.method} {request.url} HTTP/1.1"]
    for key, value in request.headers:
        lines.append(f"{key}: {value}")
    body = request.body_text()
    if body:
        lines.append("")
        lines.append(_pretty_body(body, request.header("Content-Type")))
    return "\n".join(lines)


def format_response(response, body: str) -> str:
    """Format a ResponseDescriptor and its body text as a raw HTTP response."""
    status = f"HTTP/{response.http_version} {response.status_code}"
    if response.reason:
        status = f"{status} {response.reason}"
    lines = [status]
    for key, value in response.headers:
        lines.append(f"{key}: {value}")
    if body:
        lines.append("")
        lines.append(_pretty_body(body, response.header("Content-Type")))
    return "\n".join(lines)
