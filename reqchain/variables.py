"""reqchain variables - back-references to earlier requests in a script.

A token looks like ``{{name.side.part[.selector]}}``:

    {{login.response.body}}              raw response body of "login"
    {{login.response.body.$.token}}      first JSON path match in that body
    {{login.response.headers.X-Id}}      response header value
    {{login.request.headers.Accept}}     header of the request as it was sent
    {{login.request.body.$.user}}        JSON path into the request body

Misses of any kind resolve to an empty string and are never raised.
"""

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass

from reqchain.errors import JsonPathError
from reqchain.filters import evaluate_json_path, json_value_to_text
from reqchain.models import ExecutionRecord, RequestDescriptor

logger = logging.getLogger(__name__)

TOKEN_RE = re.compile(
    r"\{\{\s*(?P<name>[A-Za-z_]\w*)"
    r"\.(?P<side>request|response)"
    r"\.(?P<part>headers|body)"
    r"(?:\.(?P<selector>(?:(?!\{\{|\}\}).)*?))?"
    r"\s*\}\}",
)

MAX_REWRITES = 100


@dataclass(frozen=True)
class VariableToken:
    request_name: str
    side: str
    part: str
    selector: str | None
    text: str


def parse_token(match: re.Match) -> VariableToken:
    selector = match.group("selector")
    return VariableToken(
        request_name=match.group("name"),
        side=match.group("side"),
        part=match.group("part"),
        selector=selector.strip() if selector is not None else None,
        text=match.group(0),
    )


def find_tokens(text: str) -> list[VariableToken]:
    return [parse_token(m) for m in TOKEN_RE.finditer(text)]


def _select_json(body: str, selector: str) -> str:
    try:
        data = json.loads(body)
        matches = evaluate_json_path(data, selector)
    except (ValueError, JsonPathError) as e:
        logger.debug("JSON path %r failed: %s", selector, e)
        return ""
    if not matches:
        logger.debug("JSON path %r matched nothing", selector)
        return ""
    return json_value_to_text(matches[0])


async def resolve_token(token: VariableToken, records: Mapping[str, ExecutionRecord]) -> str:
    """Resolve one back-reference against the executed records."""
    record = records.get(token.request_name)
    if record is None:
        logger.debug("No executed request named %r for %s", token.request_name, token.text)
        return ""

    response = record.response
    if token.part == "headers":
        if not token.selector:
            return ""
        source = response.request if token.side == "request" else response
        return source.header(token.selector) or ""

    if token.side == "request":
        body = response.request.body_text()
    else:
        body = await response.read_text()

    if not token.selector:
        return body
    return _select_json(body, token.selector)


async def substitute(text: str, records: Mapping[str, ExecutionRecord]) -> tuple[str, bool]:
    """Rewrite every token in text, re-scanning from the start after each one.

    Stops early when a rewrite reproduces text seen before or after
    MAX_REWRITES passes, so values that themselves look like tokens
    cannot loop forever.
    """
    changed = False
    seen = {text}
    for _ in range(MAX_REWRITES):
        match = TOKEN_RE.search(text)
        if match is None:
            return text, changed
        token = parse_token(match)
        value = await resolve_token(token, records)
        text = text.replace(token.text, value)
        changed = True
        if text in seen:
            logger.warning("Variable %s resolves to itself, stopping substitution", token.text)
            return text, changed
        seen.add(text)
    logger.warning("Stopped variable substitution after %d rewrites", MAX_REWRITES)
    return text, changed


async def resolve_variables(
    request: RequestDescriptor,
    records: Mapping[str, ExecutionRecord],
) -> bool:
    """Replace back-references in request headers and string body in place.

    Fields are only written back when a substitution happened. Returns
    whether anything changed.
    """
    changed = False

    for index, (key, value) in enumerate(request.headers):
        new_value, header_changed = await substitute(value, records)
        if header_changed:
            request.headers[index] = (key, new_value)
            changed = True

    if isinstance(request.body, str) and request.body:
        new_body, body_changed = await substitute(request.body, records)
        if body_changed:
            request.body = new_body
            changed = True

    return changed
