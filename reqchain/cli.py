"""reqchain CLI - execute curl and http scripts."""

import asyncio
import sys
from pathlib import Path

import click

CURL_SUFFIXES = (".curl", ".sh")

TOOL_HELP = """\
reqchain - Scriptable HTTP client with request chaining.

Executes curl commands and .http scripts, printing each request and
response as raw HTTP messages.

\b
MODES
─────
  Http script:  reqchain requests.http
  Curl script:  reqchain -t curl request.curl
  Inline curl:  reqchain --curl "curl -X POST https://api.test/items -d '{}'"

  The script type defaults to curl for .curl/.sh files, http otherwise.

\b
HTTP SCRIPTS
────────────
  Requests are separated by ### lines. Text after ### names the request;
  a "# @name login" comment does the same.

  \b
  ### login
  POST https://api.test/auth HTTP/1.1
  Content-Type: application/json

  {"user": "admin", "password": "secret"}

  ### me
  GET https://api.test/me
  Authorization: Bearer {{login.response.body.$.token}}

\b
BACK-REFERENCES
───────────────
  Later requests can reference earlier named ones in headers and body:
  \b
  {{name.response.body}}            Raw response body
  {{name.response.body.$.a.b}}      JSON path into the response body
  {{name.response.headers.X-Id}}    Response header
  {{name.request.headers.Accept}}   Header of the request as sent
  {{name.request.body.$.user}}      JSON path into the request body

  Unknown names, headers or paths resolve to an empty string.

\b
CURL SCRIPTS
────────────
  One curl command; -X, -H (repeatable) and -d are honored, other flags
  are ignored. Line continuations are allowed.

\b
CONFIG FILE FORMAT (.reqchain.yaml)
───────────────────────────────────
  Config resolution order:
    1. -c/--config flag (explicit path)
    2. .reqchain.yaml / .reqchain.yml / reqchain.yaml / reqchain.yml in CWD
    3. ~/.reqchain/config.yaml (global)

  \b
  defaults:
    env_file: .env                  # load .env file
    timeout: 30                     # seconds
    verify: true                    # false, or a CA bundle path
    ssl: tls1.2                     # ssl3 | tls | tls1.1 | tls1.2 | tls1.3
    follow_redirects: true
    headers:
      Accept: application/json
    auth:
      type: bearer                  # bearer | api-key | basic
      token: ${API_TOKEN}
    proxies:
      https: http://proxy.local:3128
"""


@click.command(
    cls=click.Command,
    help=TOOL_HELP,
    context_settings={"max_content_width": 88},
)
@click.argument(
    "script_path",
    required=False,
    type=click.Path(exists=True, dir_okay=False),
)
@click.option(
    "-t",
    "--type",
    "script_type",
    type=click.Choice(["http", "curl"], case_sensitive=False),
    default=None,
    help="Script type. Default: curl for .curl/.sh files, http otherwise.",
)
@click.option("--curl", "curl_script", default=None, help="Execute a curl command string.")
@click.option(
    "-c",
    "--config",
    "config_file",
    default=None,
    help="Config file path. Default: .reqchain.yaml in CWD, then ~/.reqchain/config.yaml.",
)
@click.option(
    "-H",
    "--header",
    multiple=True,
    help="Header as 'Name: Value' applied to every request. Repeatable.",
)
@click.option("--timeout", type=float, default=None, help="Request timeout in seconds. Default: 30.")
@click.option(
    "--verify/--no-verify",
    default=None,
    help="Verify TLS certificates. Default: verify.",
)
@click.option("--cert", default=None, help="Client certificate file.")
@click.option(
    "--ssl",
    "ssl_version",
    type=click.Choice(["ssl3", "tls", "tls1.1", "tls1.2", "tls1.3"], case_sensitive=False),
    default=None,
    help="Pin the SSL/TLS protocol version. Default: negotiate.",
)
@click.option(
    "--follow/--no-follow",
    "follow_redirects",
    default=None,
    help="Follow redirects. Default: follow.",
)
@click.option("--max-redirects", type=int, default=None, help="Maximum redirects to follow.")
@click.option("--download", is_flag=True, default=False, help="Save response bodies to files.")
@click.option("-o", "--output", default=None, help="Download file path.")
@click.option(
    "--continue",
    "append",
    is_flag=True,
    default=False,
    help="Append to the download file instead of overwriting it.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log level. Default: $REQCHAIN_LOG_LEVEL or WARNING.",
)
def main(
    script_path,
    script_type,
    curl_script,
    config_file,
    header,
    timeout,
    verify,
    cert,
    ssl_version,
    follow_redirects,
    max_redirects,
    download,
    output,
    append,
    log_level,
):
    """Execute curl and http scripts."""
    from reqchain.core import build_run_options, load_config, load_env, resolve_config_path
    from reqchain.errors import ReqchainError
    from reqchain.executor import RequestsTransport
    from reqchain.log import setup_logging
    from reqchain.orchestrator import build_orchestrator

    setup_logging(log_level)

    if not script_path and not curl_script:
        ctx = click.get_current_context()
        click.echo(ctx.get_help())
        ctx.exit(1)

    # --- Load config ---
    config_path = resolve_config_path(config_file)
    config = load_config(config_path)
    defaults = config.get("defaults", {})
    env = load_env(defaults.get("env_file"), config.get("_config_dir") or ".")

    options = build_run_options(
        config,
        env,
        timeout=timeout,
        verify=verify,
        cert=cert,
        ssl_version=ssl_version,
        follow_redirects=follow_redirects,
        max_redirects=max_redirects,
        headers=header,
        download=download,
        output=output,
        append=append,
    )
    orchestrator = build_orchestrator(
        options,
        echo=click.echo,
        transport_factory=RequestsTransport,
    )

    # --- Dispatch ---
    if curl_script:
        run = orchestrator.run_curl(curl_script)
    elif _script_type(script_path, script_type) == "curl":
        run = orchestrator.run_curl_file(script_path)
    else:
        run = orchestrator.run_http_file(script_path)

    try:
        asyncio.run(run)
    except (ReqchainError, OSError, UnicodeDecodeError) as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("Cancelled.", err=True)
        sys.exit(130)


def _script_type(script_path, script_type):
    if script_type:
        return script_type.lower()
    if Path(script_path).suffix.lower() in CURL_SUFFIXES:
        return "curl"
    return "http"
