"""reqchain core - config loading, curl and http script parsing."""

import base64
import os
import re
import shlex
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit

import yaml
from dotenv import dotenv_values

from reqchain.errors import FormatError
from reqchain.middleware import DEFAULT_USER_AGENT
from reqchain.models import Headers, RequestDescriptor, add_header_if_missing, merge_headers

GLOBAL_DIR = Path.home() / ".reqchain"
GLOBAL_CONFIG = GLOBAL_DIR / "config.yaml"

CWD_CONFIG_CANDIDATES = [
    ".reqchain.yaml",
    ".reqchain.yml",
    "reqchain.yaml",
    "reqchain.yml",
]

HTTP_METHODS = frozenset({"HEAD", "GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"})


def resolve_path(
    candidates: list[Path],
    default: Path | None = None,
) -> Path | None:
    """Return the first existing path from candidates, else default."""
    for p in candidates:
        if p.exists():
            return p.resolve()
    return default


def resolve_config_path(config_file: str | None) -> Path | None:
    """Find the config file to use.

    Resolution order:
      1. Explicit -c flag (no fallthrough if missing)
      2. .reqchain.yaml (variants) in CWD
      3. ~/.reqchain/config.yaml
    """
    if config_file:
        return resolve_path([Path(config_file)])
    return resolve_path([Path(c) for c in CWD_CONFIG_CANDIDATES] + [GLOBAL_CONFIG])


def load_config(config_path: str | Path | None) -> dict:
    """Load YAML config file. Returns an empty defaults section if not found.

    Stores '_config_dir' in the returned dict so relative paths in the
    config (env_file, cert) resolve against the config file's directory.
    """
    if config_path is None:
        return {"defaults": {}, "_config_dir": None}
    path = Path(config_path)
    if not path.exists():
        return {"defaults": {}, "_config_dir": None}
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return {
        "defaults": data.get("defaults") or {},
        "_config_dir": path.resolve().parent,
    }


def load_env(env_file: str | None, base_dir: str | Path = ".") -> dict[str, str]:
    """Load .env file and merge it over os.environ."""
    env = dict(os.environ)
    if env_file:
        dotenv_path = Path(base_dir) / env_file
        if dotenv_path.exists():
            dotenv_vars = dotenv_values(str(dotenv_path))
            env.update({k: v for k, v in dotenv_vars.items() if v is not None})
    return env


def resolve_value(value: str | None, env: dict[str, str]) -> str | None:
    """Resolve $VAR and ${VAR} references in a string value.

    Unknown variables are left as written.
    """
    if value is None:
        return None
    if not isinstance(value, str):
        return value

    def _replace(m: re.Match) -> str:
        var_name = m.group(1) or m.group(2)
        return env.get(var_name, os.environ.get(var_name, m.group(0)))

    return re.sub(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)", _replace, value)


def build_auth_headers(
    auth_config: dict | None,
    env: dict[str, str],
) -> list[tuple[str, str]]:
    """Build authentication headers from auth config.

    Supports:
    - bearer: Authorization: Bearer <token>
    - api-key: custom header with token
    - basic: Authorization: Basic <b64>
    """
    if not auth_config:
        return []

    auth_type = str(auth_config.get("type", "")).lower()

    if auth_type == "bearer":
        token = resolve_value(auth_config.get("token", ""), env) or ""
        return [("Authorization", f"Bearer {token}")]

    if auth_type == "api-key":
        token = resolve_value(auth_config.get("token", ""), env) or ""
        header = auth_config.get("header", "X-API-Key")
        return [(header, token)]

    if auth_type == "basic":
        username = resolve_value(auth_config.get("username", ""), env) or ""
        password = resolve_value(auth_config.get("password", ""), env) or ""
        credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
        return [("Authorization", f"Basic {credentials}")]

    return []


# ── Run options ──────────────────────────────────────────────────────────


@dataclass
class RunOptions:
    """Settings for one script run, built once before the run starts."""

    timeout: float = 30
    verify: bool | str = True
    cert: str | None = None
    ssl_version: str | None = None
    follow_redirects: bool = True
    max_redirects: int | None = None
    proxies: dict[str, str] = field(default_factory=dict)
    user_agent: str = DEFAULT_USER_AGENT
    default_headers: Headers = field(default_factory=list)
    headers: Headers = field(default_factory=list)
    auth_headers: Headers = field(default_factory=list)
    download: bool = False
    output: str | None = None
    append: bool = False


def _first_set(*sources, default=None):
    """Return the first source that is not None, or default."""
    for s in sources:
        if s is not None:
            return s
    return default


def parse_header_specs(header_specs) -> Headers:
    """Parse 'Name: Value' strings into header pairs. Specs without ':' are skipped."""
    headers: Headers = []
    for h in header_specs or ():
        if ":" in h:
            k, v = h.split(":", 1)
            headers.append((k.strip(), v.strip()))
    return headers


def build_run_options(
    config: dict,
    env: dict[str, str],
    *,
    timeout: float | None = None,
    verify: bool | None = None,
    cert: str | None = None,
    ssl_version: str | None = None,
    follow_redirects: bool | None = None,
    max_redirects: int | None = None,
    headers=(),
    download: bool = False,
    output: str | None = None,
    append: bool = False,
) -> RunOptions:
    """Merge command-line values over config defaults.

    Priority: CLI flag > config ``defaults`` > built-in default.
    """
    defaults = config.get("defaults", {})
    config_dir = config.get("_config_dir")

    config_cert = resolve_value(defaults.get("cert"), env)
    if config_cert and config_dir and not Path(config_cert).is_absolute():
        config_cert = str(Path(config_dir) / config_cert)

    config_ssl = defaults.get("ssl")
    if config_ssl is not None:
        config_ssl = str(config_ssl)

    config_verify = defaults.get("verify")
    if isinstance(config_verify, str):
        config_verify = resolve_value(config_verify, env)

    default_headers = [
        (str(k), resolve_value(str(v), env) or "")
        for k, v in (defaults.get("headers") or {}).items()
    ]
    proxies = {
        str(scheme): resolve_value(str(url), env) or ""
        for scheme, url in (defaults.get("proxies") or {}).items()
    }

    return RunOptions(
        timeout=_first_set(timeout, defaults.get("timeout"), default=30),
        verify=_first_set(verify, config_verify, default=True),
        cert=_first_set(cert, config_cert),
        ssl_version=_first_set(ssl_version, config_ssl),
        follow_redirects=_first_set(follow_redirects, defaults.get("follow_redirects"), default=True),
        max_redirects=_first_set(max_redirects, defaults.get("max_redirects")),
        proxies=proxies,
        user_agent=defaults.get("user_agent") or DEFAULT_USER_AGENT,
        default_headers=default_headers,
        headers=parse_header_specs(headers),
        auth_headers=build_auth_headers(defaults.get("auth"), env),
        download=download or bool(output),
        output=output,
        append=append,
    )


def is_absolute_url(value: str) -> bool:
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return bool(parts.scheme and parts.netloc)


# ── Curl scripts ─────────────────────────────────────────────────────────

_METHOD_FLAGS = ("-X", "--request")
_DATA_FLAGS = ("-d", "--data", "--data-raw")
_HEADER_FLAGS = ("-H", "--header")
# -d bodies are sent as plain text unless -H sets a Content-Type.
DEFAULT_CURL_CONTENT_TYPE = "text/plain; charset=utf-8"


def normalize_curl(script: str) -> str:
    """Fold line continuations and newlines into single spaces."""
    return (
        script.replace("\\\n", " ")
        .replace("\\\r\n", " ")
        .replace("\r\n", " ")
        .replace("\n ", " ")
        .strip()
    )


def parse_curl(script: str) -> RequestDescriptor:
    """Parse a single curl command into a request descriptor.

    Recognizes -X (method), -d (body) and -H (header, repeatable). The first
    absolute URL wins; later ones are ignored. Unknown flags are skipped.
    Raises FormatError for empty scripts, scripts not starting with ``curl``,
    unbalanced quotes and scripts without a URL.
    """
    if not script or not script.strip():
        raise FormatError("Empty curl script")

    cmd = normalize_curl(script)
    if not cmd.startswith("curl "):
        raise FormatError(f"Invalid curl script: {script}")

    try:
        tokens = shlex.split(cmd)
    except ValueError as e:
        raise FormatError(f"Parse error: {e}") from e

    method = ""
    url: str | None = None
    body = ""
    headers: list[tuple[str, str]] = []

    i = 1
    while i < len(tokens):
        tok = tokens[i].strip("'\"")

        if url is None and is_absolute_url(tok):
            url = tok
        elif tok in _METHOD_FLAGS:
            i += 1
            if i < len(tokens):
                candidate = tokens[i].strip("'\"").upper()
                if candidate in HTTP_METHODS:
                    method = candidate
        elif tok in _DATA_FLAGS:
            i += 1
            if i < len(tokens):
                body = tokens[i].strip("'\"")
        elif tok in _HEADER_FLAGS:
            i += 1
            if i < len(tokens):
                header = tokens[i].strip("'\"")
                name, _, value = header.partition(":")
                headers.append((name.strip(), value.strip()))
        i += 1

    if url is None:
        raise FormatError("Url info not found")

    request = RequestDescriptor(
        method=method or "GET",
        url=url,
        headers=merge_headers(headers),
        body=body or None,
    )
    if request.body is not None:
        add_header_if_missing(request.headers, "Content-Type", DEFAULT_CURL_CONTENT_TYPE)
    return request


# ── Http scripts ─────────────────────────────────────────────────────────

_BLOCK_SEPARATOR = "###"
_NAME_RE = re.compile(r"^(?:#|//)\s*@name\s+(\S+)\s*$")
_REQUEST_LINE_RE = re.compile(r"^(?:([A-Za-z]+)\s+)?(\S+)(?:\s+HTTP/[\d.]+)?\s*$")


def _split_blocks(text: str) -> Iterator[tuple[str | None, list[str]]]:
    name: str | None = None
    lines: list[str] = []
    for line in text.splitlines():
        if line.startswith(_BLOCK_SEPARATOR):
            yield name, lines
            name = line[len(_BLOCK_SEPARATOR) :].strip() or None
            lines = []
        else:
            lines.append(line)
    yield name, lines


def _parse_block(name: str | None, lines: list[str]) -> RequestDescriptor | None:
    i = 0
    request_line = None
    while i < len(lines):
        stripped = lines[i].strip()
        i += 1
        if not stripped:
            continue
        m = _NAME_RE.match(stripped)
        if m:
            name = m.group(1)
            continue
        if stripped.startswith(("#", "//")):
            continue
        request_line = stripped
        break

    if request_line is None:
        return None

    m = _REQUEST_LINE_RE.match(request_line)
    if not m:
        raise FormatError(f"Invalid request line: {request_line}")
    method = (m.group(1) or "GET").upper()
    url = m.group(2)
    if not is_absolute_url(url):
        raise FormatError(f"Invalid request url: {url}")

    headers: list[tuple[str, str]] = []
    while i < len(lines):
        line = lines[i].strip()
        i += 1
        if not line:
            break
        if line.startswith(("#", "//")):
            continue
        key, sep, value = line.partition(":")
        if not sep:
            raise FormatError(f"Invalid header line: {line}")
        headers.append((key.strip(), value.strip()))

    body = "\n".join(lines[i:]).rstrip()
    return RequestDescriptor(
        method=method,
        url=url,
        headers=headers,
        body=body or None,
        name=name,
    )


def parse_http_script(text: str) -> Iterator[RequestDescriptor]:
    """Lazily yield the requests of an http script in file order.

    Blocks are separated by ``###`` lines; text after ``###`` or a
    ``# @name`` comment names the request. A block holds a request line
    (``METHOD URL [HTTP/x]``), header lines, a blank line and the body.
    """
    for name, lines in _split_blocks(text):
        request = _parse_block(name, lines)
        if request is not None:
            yield request

