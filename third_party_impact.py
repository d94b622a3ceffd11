# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "requests",
#   "pandas",
# ]
# ///
"""Third-Party Impact Audit CLI Tool.

Runs a Lighthouse audit limited to the third-party summary against a single
URL, classifies every third-party entity it reports, and writes the
breakdown into a fresh copy of a Google Sheets report template.
"""

from __future__ import annotations

import argparse
import json
import os
import shutil
import socket
import subprocess
import sys
import tempfile
import time
import tomllib
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator
from urllib.parse import quote

import pandas as pd
import requests

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USAGE = "Usage: third-party-impact <url>"

THIRD_PARTY_AUDIT_ID = "third-party-summary"

# File ID of the sheet used as template for the output
TEMPLATE_ID = "1fntMyGqNo6Ti-Jj6DPKcyAUcA2U4jSS6g_4DjH_Ozkw"
DEFAULT_VALUE_RANGE = "Actions!A2:F"
DEFAULT_VALUE_INPUT_OPTION = "RAW"

# If modifying these scopes, delete the token file.
SCOPES = (
    "https://www.googleapis.com/auth/spreadsheets",  # write into the spreadsheet
    "https://www.googleapis.com/auth/drive",  # copy the template file
)

DEFAULT_CREDENTIALS_PATH = "credentials.json"
DEFAULT_TOKEN_PATH = "token.json"

DEFAULT_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
DRIVE_COPY_URL = "https://www.googleapis.com/drive/v3/files/{file_id}/copy"
SHEETS_VALUES_URL = "https://sheets.googleapis.com/v4/spreadsheets/{spreadsheet_id}/values/{value_range}"
SPREADSHEET_VIEW_URL = "https://docs.google.com/spreadsheets/d/{spreadsheet_id}"

REQUEST_TIMEOUT = 120
# Refresh access tokens that expire within this many seconds.
TOKEN_REFRESH_MARGIN = 300

DEFAULT_CHROME_FLAGS = ("--headless",)
# Flags always passed to Chrome, on top of the configurable ones.
BASE_CHROME_FLAGS = (
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-extensions",
)
CHROME_CANDIDATES = (
    "google-chrome",
    "google-chrome-stable",
    "chromium",
    "chromium-browser",
    "chrome",
)
CHROME_LAUNCH_TIMEOUT = 30.0
CHROME_POLL_INTERVAL = 0.2
CHROME_SHUTDOWN_TIMEOUT = 5

DEFAULT_LIGHTHOUSE_PATH = "lighthouse"

# Output columns, in the order of the report template's header row.
ROW_COLUMNS = [
    "source_url",
    "entity_name",
    "classified_type",
    "blocking_time_ms",
    "main_thread_time_ms",
    "transfer_size_kb",
]

CONFIG_FILENAMES = ["third_party_impact.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "third-party-impact",
]

# Config [settings] keys -> ReportConfig field names
SETTINGS_KEY_MAP = {
    "template_id": "template_id",
    "range": "value_range",
    "value_input_option": "value_input_option",
    "credentials_path": "credentials_path",
    "token_path": "token_path",
    "chrome_path": "chrome_path",
    "chrome_flags": "chrome_flags",
    "lighthouse_path": "lighthouse_path",
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ThirdPartyImpactError(Exception):
    """Base class for every failure that aborts a run."""


class UsageError(ThirdPartyImpactError):
    """Raised when the URL argument is missing or not http(s)."""


class AuditEngineError(ThirdPartyImpactError):
    """Raised when Chrome or Lighthouse cannot produce a usable report."""


class CredentialFileError(ThirdPartyImpactError):
    """Raised when the OAuth client descriptor cannot be loaded."""


class TokenExchangeError(ThirdPartyImpactError):
    """Raised when the OAuth provider rejects a code or refresh token."""


class TokenPersistenceError(ThirdPartyImpactError):
    """Raised when a token cannot be written to the token store."""


class SpreadsheetBackendError(ThirdPartyImpactError):
    """Raised when the Drive copy or Sheets update request fails."""


# ---------------------------------------------------------------------------
# Data Model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReportConfig:
    """Fixed settings of one pipeline run."""

    template_id: str = TEMPLATE_ID
    value_range: str = DEFAULT_VALUE_RANGE
    value_input_option: str = DEFAULT_VALUE_INPUT_OPTION
    scopes: tuple[str, ...] = SCOPES
    credentials_path: Path = field(default_factory=lambda: Path(DEFAULT_CREDENTIALS_PATH))
    token_path: Path = field(default_factory=lambda: Path(DEFAULT_TOKEN_PATH))
    chrome_path: str | None = None
    chrome_flags: tuple[str, ...] = DEFAULT_CHROME_FLAGS
    lighthouse_path: str = DEFAULT_LIGHTHOUSE_PATH


@dataclass(frozen=True)
class ThirdPartyEntry:
    entity_name: str
    classified_type: str
    blocking_time_ms: int
    main_thread_time_ms: int
    transfer_size_kb: float

    def to_row(self, source_url: str) -> tuple:
        return (
            source_url,
            self.entity_name,
            self.classified_type,
            self.blocking_time_ms,
            self.main_thread_time_ms,
            self.transfer_size_kb,
        )


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


def discover_config_path() -> Path | None:
    """Find the first existing config file in search paths."""
    for search_dir in CONFIG_SEARCH_PATHS:
        for filename in CONFIG_FILENAMES:
            candidate = search_dir / filename
            if candidate.is_file():
                return candidate
    return None


def load_config(config_path: Path | None) -> dict:
    """Parse a TOML config file and return its contents as a dict."""
    if config_path is None:
        return {}
    try:
        with open(config_path, "rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        print(f"Error: malformed config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)
    except OSError as exc:
        print(f"Error: cannot read config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)


def build_report_config(config: dict) -> ReportConfig:
    """Build the run configuration from the [settings] table of a config dict.

    Keys absent from [settings] keep their built-in defaults. Unknown keys
    are reported and ignored.
    """
    settings = config.get("settings", {})
    overrides: dict[str, object] = {}

    for config_key, value in settings.items():
        field_name = SETTINGS_KEY_MAP.get(config_key)
        if field_name is None:
            print(f"Warning: ignoring unknown config setting '{config_key}'", file=sys.stderr)
            continue
        if field_name in ("credentials_path", "token_path"):
            value = Path(value).expanduser()
        elif field_name == "chrome_flags":
            if not isinstance(value, list) or not all(isinstance(flag, str) for flag in value):
                print("Error: config setting 'chrome_flags' must be a list of strings", file=sys.stderr)
                sys.exit(1)
            value = tuple(value)
        overrides[field_name] = value

    return ReportConfig(**overrides)


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="third-party-impact",
        description="Audit the impact of third-party scripts on a page and report it to Google Sheets",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", dest="config", default=None, help="Path to config TOML file")
    parser.add_argument("-v", "--verbose", dest="verbose", action="store_true", default=False, help="Verbose output to stderr")
    # Optional here so that a missing URL prints the usage line instead of an argparse error
    parser.add_argument("url", nargs="?", default=None, help="URL of the page to audit")
    return parser


def validate_url(url: str | None) -> str:
    """Return the URL unchanged, or raise UsageError if it is not http-prefixed."""
    if not url or not url.startswith("http"):
        raise UsageError(USAGE)
    return url


# ---------------------------------------------------------------------------
# Audit Runner
# ---------------------------------------------------------------------------


def resolve_chrome_path(configured_path: str | None) -> str:
    """Locate the Chrome binary: config setting, CHROME_PATH, then PATH lookup."""
    if configured_path:
        return configured_path
    env_path = os.environ.get("CHROME_PATH")
    if env_path:
        return env_path
    for candidate in CHROME_CANDIDATES:
        found = shutil.which(candidate)
        if found:
            return found
    raise AuditEngineError(
        "no Chrome installation found; set CHROME_PATH or 'chrome_path' in the config file"
    )


def _find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def wait_for_debug_port(port: int, process: subprocess.Popen, timeout: float = CHROME_LAUNCH_TIMEOUT) -> None:
    """Block until Chrome answers on its remote-debugging port."""
    deadline = time.monotonic() + timeout
    last_error: Exception | None = None
    while time.monotonic() < deadline:
        if process.poll() is not None:
            raise AuditEngineError(f"Chrome exited with code {process.returncode} during startup")
        try:
            response = requests.get(f"http://127.0.0.1:{port}/json/version", timeout=1)
            if response.status_code == 200:
                return
        except requests.RequestException as exc:
            last_error = exc
        time.sleep(CHROME_POLL_INTERVAL)
    raise AuditEngineError(f"Chrome did not open debugging port {port} within {timeout:.0f}s: {last_error}")


def _stop_chrome(process: subprocess.Popen) -> None:
    process.terminate()
    try:
        process.wait(timeout=CHROME_SHUTDOWN_TIMEOUT)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait(timeout=CHROME_SHUTDOWN_TIMEOUT)


@contextmanager
def launch_chrome(chrome_path: str, chrome_flags: tuple[str, ...], verbose: bool = False) -> Iterator[int]:
    """Launch an isolated Chrome instance and yield its debugging port.

    Each launch gets its own temporary profile directory. The browser is
    stopped when the block exits, whether it completes or raises.
    """
    port = _find_free_port()
    with tempfile.TemporaryDirectory(prefix="third-party-impact-", ignore_cleanup_errors=True) as profile_dir:
        command = [
            chrome_path,
            *chrome_flags,
            *BASE_CHROME_FLAGS,
            f"--remote-debugging-port={port}",
            f"--user-data-dir={profile_dir}",
            "about:blank",
        ]
        if verbose:
            print(f"  Launching Chrome: {' '.join(command)}", file=sys.stderr)
        try:
            process = subprocess.Popen(command, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except OSError as exc:
            raise AuditEngineError(f"cannot launch Chrome ({chrome_path}): {exc}") from exc

        try:
            wait_for_debug_port(port, process)
            yield port
        finally:
            _stop_chrome(process)
            if verbose:
                print("  Chrome stopped", file=sys.stderr)


def run_lighthouse(url: str, port: int, lighthouse_path: str = DEFAULT_LIGHTHOUSE_PATH, verbose: bool = False) -> dict:
    """Run Lighthouse against an already running Chrome and return the report."""
    command = [
        lighthouse_path,
        url,
        f"--port={port}",
        f"--only-audits={THIRD_PARTY_AUDIT_ID}",
        "--output=json",
        "--output-path=stdout",
        "--quiet",
    ]
    if verbose:
        print(f"  Running: {' '.join(command)}", file=sys.stderr)
    try:
        completed = subprocess.run(command, capture_output=True, text=True, check=False)
    except OSError as exc:
        raise AuditEngineError(f"cannot run Lighthouse ({lighthouse_path}): {exc}") from exc

    if completed.returncode != 0:
        detail = completed.stderr.strip()[-500:] or f"exit code {completed.returncode}"
        raise AuditEngineError(f"Lighthouse failed for {url}: {detail}")

    try:
        report = json.loads(completed.stdout)
    except ValueError as exc:
        raise AuditEngineError(f"Lighthouse returned invalid JSON for {url}: {exc}") from exc

    runtime_error = report.get("runtimeError") or {}
    if runtime_error.get("code") not in (None, "NO_ERROR"):
        raise AuditEngineError(
            f"Lighthouse could not audit {url}: {runtime_error.get('message', runtime_error['code'])}"
        )
    return report


def run_audit(url: str, config: ReportConfig, verbose: bool = False) -> dict:
    """Launch Chrome, run the third-party audit on url, and stop Chrome again."""
    chrome_path = resolve_chrome_path(config.chrome_path)
    print("Opening Chrome to make Lighthouse run...", file=sys.stderr)
    with launch_chrome(chrome_path, config.chrome_flags, verbose) as port:
        return run_lighthouse(url, port, config.lighthouse_path, verbose)


# ---------------------------------------------------------------------------
# Result Shaping
# ---------------------------------------------------------------------------


def extract_third_party_items(report: dict) -> list[dict]:
    """Return the per-entity records of the third-party-summary audit."""
    audit = report.get("audits", {}).get(THIRD_PARTY_AUDIT_ID)
    if audit is None:
        raise AuditEngineError(f"Lighthouse report has no '{THIRD_PARTY_AUDIT_ID}' audit")
    if audit.get("errorMessage"):
        raise AuditEngineError(f"{THIRD_PARTY_AUDIT_ID} audit failed: {audit['errorMessage']}")
    # Pages without any third-party request report the audit as not applicable
    if audit.get("scoreDisplayMode") == "notApplicable":
        return []
    details = audit.get("details") or {}
    return list(details.get("items", []))


def classify_entity(entity_name: str) -> str:
    """Map an entity name to 'Ads', 'Analytics' or 'other'.

    Only matches after the first character count: a name that starts with
    the keyword itself (e.g. "analytics") is classified as 'other'.
    """
    lowered = entity_name.lower()
    if lowered.find(" ads") > 0:
        return "Ads"
    if lowered.find("analytics") > 0:
        return "Analytics"
    return "other"


def _truncate(value) -> int:
    if value is None:
        return 0
    return int(float(value))


def _entity_name(entity) -> str:
    # Older Lighthouse emits {"type": "link", "text": ..., "url": ...}, newer a plain string
    if isinstance(entity, dict):
        return str(entity.get("text") or entity.get("url") or "")
    if entity is None:
        return ""
    return str(entity)


def parse_entry(item: dict) -> ThirdPartyEntry:
    """Convert one third-party-summary item into a ThirdPartyEntry.

    Times are truncated to whole milliseconds; the transfer size is
    truncated to whole bytes and converted to (fractional) kilobytes.
    """
    entity_name = _entity_name(item.get("entity"))
    return ThirdPartyEntry(
        entity_name=entity_name,
        classified_type=classify_entity(entity_name),
        blocking_time_ms=_truncate(item.get("blockingTime")),
        main_thread_time_ms=_truncate(item.get("mainThreadTime")),
        transfer_size_kb=_truncate(item.get("transferSize")) / 1024,
    )


def build_rows(source_url: str, items: list[dict]) -> pd.DataFrame:
    """Shape audit items into the report rows, keeping Lighthouse's order."""
    rows = [parse_entry(item).to_row(source_url) for item in items]
    return pd.DataFrame(rows, columns=ROW_COLUMNS)


def dataframe_to_values(dataframe: pd.DataFrame) -> list[list]:
    """Turn the rows DataFrame into the plain nested lists the Sheets API expects."""
    return [list(row) for row in dataframe.itertuples(index=False, name=None)]


def summarize_by_type(dataframe: pd.DataFrame) -> pd.DataFrame:
    """Aggregate entity count, blocking time and transfer size per classified type."""
    if dataframe.empty:
        return pd.DataFrame(columns=["classified_type", "entities", "blocking_time_ms", "transfer_size_kb"])
    return (
        dataframe.groupby("classified_type", sort=False)
        .agg(
            entities=("entity_name", "count"),
            blocking_time_ms=("blocking_time_ms", "sum"),
            transfer_size_kb=("transfer_size_kb", "sum"),
        )
        .reset_index()
    )


def format_impact_table(source_url: str, dataframe: pd.DataFrame) -> str:
    """Format the rows as an aligned terminal table."""
    lines = [
        f"\n{'=' * 78}",
        f"  URL:      {source_url}",
        f"  Entities: {len(dataframe)}",
        f"{'=' * 78}",
    ]
    if dataframe.empty:
        lines.append("  No third-party entities detected.")
        return "\n".join(lines)

    lines.append(f"  {'Entity':<36} {'Type':<10} {'Blocking':>9} {'Main thread':>12} {'Transfer':>10}")
    for _, row in dataframe.iterrows():
        name = row["entity_name"]
        display_name = (name[:33] + "...") if len(name) > 36 else name
        lines.append(
            f"  {display_name:<36} {row['classified_type']:<10} "
            f"{row['blocking_time_ms']:>7} ms {row['main_thread_time_ms']:>9} ms "
            f"{row['transfer_size_kb']:>7.1f} KB"
        )
    return "\n".join(lines)


def _print_impact_summary(dataframe: pd.DataFrame) -> None:
    """Print totals and a per-type breakdown to stderr."""
    if dataframe.empty:
        return
    print("\nSummary:", file=sys.stderr)
    print(f"  Entities:            {len(dataframe)}", file=sys.stderr)
    print(f"  Total blocking time: {dataframe['blocking_time_ms'].sum()} ms", file=sys.stderr)
    print(f"  Total transfer size: {dataframe['transfer_size_kb'].sum():.1f} KB", file=sys.stderr)
    for _, row in summarize_by_type(dataframe).iterrows():
        print(
            f"  {row['classified_type'] + ':':<10} {row['entities']} entities, "
            f"{row['blocking_time_ms']} ms blocking, {row['transfer_size_kb']:.1f} KB",
            file=sys.stderr,
        )


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


def load_client_credentials(credentials_path: Path) -> dict:
    """Load the OAuth client descriptor (credentials.json).

    Returns the client id and secret, the first redirect URI and the
    provider endpoints.
    """
    try:
        with open(credentials_path) as fh:
            descriptor = json.load(fh)
    except OSError as exc:
        raise CredentialFileError(f"cannot load client secret file {credentials_path}: {exc}") from exc
    except ValueError as exc:
        raise CredentialFileError(f"malformed client secret file {credentials_path}: {exc}") from exc

    client = None
    if isinstance(descriptor, dict):
        client = descriptor.get("installed") or descriptor.get("web")
    if not isinstance(client, dict):
        raise CredentialFileError(
            f"client secret file {credentials_path} has no 'installed' or 'web' section"
        )

    missing = [key for key in ("client_id", "client_secret", "redirect_uris") if not client.get(key)]
    if missing:
        raise CredentialFileError(
            f"client secret file {credentials_path} is missing: {', '.join(missing)}"
        )

    return {
        "client_id": client["client_id"],
        "client_secret": client["client_secret"],
        "redirect_uri": client["redirect_uris"][0],
        "auth_uri": client.get("auth_uri", DEFAULT_AUTH_URI),
        "token_uri": client.get("token_uri", DEFAULT_TOKEN_URI),
    }


def load_stored_token(token_path: Path, verbose: bool = False) -> dict | None:
    """Return the previously stored token, or None if there is no usable one."""
    try:
        with open(token_path) as fh:
            token = json.load(fh)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        if verbose:
            print(f"  Ignoring unreadable token file {token_path}: {exc}", file=sys.stderr)
        return None
    if not isinstance(token, dict) or not (token.get("access_token") or token.get("refresh_token")):
        if verbose:
            print(f"  Ignoring token file {token_path} without credentials", file=sys.stderr)
        return None
    return token


def save_token(token_path: Path, token: dict) -> None:
    """Write the token to the token store, replacing any previous one."""
    try:
        token_path.parent.mkdir(parents=True, exist_ok=True)
        with open(token_path, "w") as fh:
            json.dump(token, fh)
    except OSError as exc:
        raise TokenPersistenceError(f"cannot store token to {token_path}: {exc}") from exc


def _store_token_best_effort(token_path: Path, token: dict) -> None:
    try:
        save_token(token_path, token)
    except TokenPersistenceError as exc:
        print(f"Warning: {exc}", file=sys.stderr)
    else:
        print(f"Token stored to {token_path}", file=sys.stderr)


def token_is_expired(token: dict, now: float | None = None) -> bool:
    """True if the access token is missing or expires within TOKEN_REFRESH_MARGIN.

    Tokens without an expiry_date (epoch milliseconds) are assumed valid.
    """
    if not token.get("access_token"):
        return True
    expiry_date = token.get("expiry_date")
    if expiry_date is None:
        return False
    current = time.time() if now is None else now
    return expiry_date / 1000 <= current + TOKEN_REFRESH_MARGIN


def build_authorization_url(client: dict, scopes: tuple[str, ...]) -> str:
    """Build the consent page URL the operator has to open."""
    params = {
        "access_type": "offline",
        "scope": " ".join(scopes),
        "response_type": "code",
        "client_id": client["client_id"],
        "redirect_uri": client["redirect_uri"],
    }
    return requests.Request("GET", client["auth_uri"], params=params).prepare().url


def _request_token(client: dict, data: dict) -> dict:
    """POST to the provider's token endpoint and return the token with an expiry_date."""
    try:
        response = requests.post(client["token_uri"], data=data, timeout=REQUEST_TIMEOUT)
    except requests.RequestException as exc:
        raise TokenExchangeError(f"token request failed: {exc}") from exc

    try:
        body = response.json()
    except ValueError:
        body = {}
    if response.status_code != 200 or "access_token" not in body:
        detail = body.get("error_description") or body.get("error") or response.text[:200]
        raise TokenExchangeError(f"HTTP {response.status_code} from token endpoint: {detail}")

    token = dict(body)
    expires_in = token.pop("expires_in", None)
    if expires_in is not None:
        token["expiry_date"] = int((time.time() + float(expires_in)) * 1000)
    return token


def exchange_code(client: dict, code: str) -> dict:
    """Exchange an authorization code for an access/refresh token pair."""
    return _request_token(client, {
        "code": code,
        "client_id": client["client_id"],
        "client_secret": client["client_secret"],
        "redirect_uri": client["redirect_uri"],
        "grant_type": "authorization_code",
    })


def refresh_access_token(client: dict, token: dict) -> dict:
    """Obtain a new access token; the stored refresh token is carried over."""
    refreshed = _request_token(client, {
        "refresh_token": token["refresh_token"],
        "client_id": client["client_id"],
        "client_secret": client["client_secret"],
        "grant_type": "refresh_token",
    })
    return {**token, **refreshed}


def prompt_for_code(auth_url: str) -> str:
    """Show the consent URL and read the authorization code from the console."""
    print(f"Authorize this app by visiting this url: {auth_url}")
    return input("Enter the code from that page here: ").strip()


def request_new_token(client: dict, scopes: tuple[str, ...], code_provider: Callable[[str], str]) -> dict:
    """Run the interactive consent flow once and return the new token."""
    auth_url = build_authorization_url(client, scopes)
    code = code_provider(auth_url)
    if not code:
        raise TokenExchangeError("no authorization code entered")
    try:
        return exchange_code(client, code)
    except TokenExchangeError as exc:
        raise TokenExchangeError(f"error while trying to retrieve access token: {exc}") from exc


def authorize(
    client: dict,
    config: ReportConfig,
    code_provider: Callable[[str], str] = prompt_for_code,
    verbose: bool = False,
) -> dict:
    """Return a usable token: stored, refreshed, or freshly authorized.

    A refreshed or newly obtained token is written back to the token store;
    failing to write it only produces a warning.
    """
    token = load_stored_token(config.token_path, verbose)
    if token is not None:
        if not token_is_expired(token):
            if verbose:
                print(f"  Using stored token from {config.token_path}", file=sys.stderr)
            return token
        if token.get("refresh_token"):
            try:
                refreshed = refresh_access_token(client, token)
            except TokenExchangeError as exc:
                print(f"Warning: stored token could not be refreshed, re-authorizing ({exc})", file=sys.stderr)
            else:
                _store_token_best_effort(config.token_path, refreshed)
                return refreshed

    token = request_new_token(client, config.scopes, code_provider)
    _store_token_best_effort(config.token_path, token)
    return token


# ---------------------------------------------------------------------------
# Spreadsheet Delivery
# ---------------------------------------------------------------------------


def _auth_headers(token: dict) -> dict:
    return {"Authorization": f"Bearer {token['access_token']}"}


def _backend_error_detail(response) -> str:
    try:
        error_body = response.json()
        return error_body.get("error", {}).get("message", response.text[:200])
    except (ValueError, AttributeError):
        return response.text[:200]


def copy_template(token: dict, template_id: str) -> str:
    """Copy the template spreadsheet and return the id of the copy."""
    try:
        response = requests.post(
            DRIVE_COPY_URL.format(file_id=template_id),
            headers=_auth_headers(token),
            json={},
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as exc:
        raise SpreadsheetBackendError(f"copying template {template_id} failed: {exc}") from exc

    if response.status_code != 200:
        raise SpreadsheetBackendError(
            f"HTTP {response.status_code} copying template {template_id}: {_backend_error_detail(response)}"
        )
    try:
        spreadsheet_id = response.json().get("id")
    except ValueError as exc:
        raise SpreadsheetBackendError(f"invalid response copying template {template_id}: {exc}") from exc
    if not spreadsheet_id:
        raise SpreadsheetBackendError(f"copy of template {template_id} returned no file id")
    return spreadsheet_id


def write_rows(
    token: dict,
    spreadsheet_id: str,
    value_range: str,
    values: list[list],
    value_input_option: str = DEFAULT_VALUE_INPUT_OPTION,
) -> dict:
    """Write all rows into value_range with a single values.update call."""
    url = SHEETS_VALUES_URL.format(spreadsheet_id=spreadsheet_id, value_range=quote(value_range, safe=""))
    try:
        response = requests.put(
            url,
            headers=_auth_headers(token),
            params={"valueInputOption": value_input_option},
            json={"range": value_range, "majorDimension": "ROWS", "values": values},
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as exc:
        raise SpreadsheetBackendError(f"writing to spreadsheet {spreadsheet_id} failed: {exc}") from exc

    if response.status_code != 200:
        raise SpreadsheetBackendError(
            f"HTTP {response.status_code} writing to spreadsheet {spreadsheet_id}: {_backend_error_detail(response)}"
        )
    try:
        return response.json()
    except ValueError as exc:
        raise SpreadsheetBackendError(f"invalid response writing to spreadsheet {spreadsheet_id}: {exc}") from exc


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def run_pipeline(
    url: str,
    config: ReportConfig,
    code_provider: Callable[[str], str] = prompt_for_code,
    verbose: bool = False,
) -> dict:
    """Audit url and deliver the third-party breakdown to a new spreadsheet.

    Stages run strictly in order; the first failing stage raises and
    nothing after it runs.
    """
    # Read before the audit so a missing descriptor fails without launching Chrome
    client = load_client_credentials(config.credentials_path)

    print(f"Analysing 3rd party scripts on: {url}", file=sys.stderr)
    report = run_audit(url, config, verbose)

    items = extract_third_party_items(report)
    dataframe = build_rows(url, items)
    print(format_impact_table(url, dataframe))
    _print_impact_summary(dataframe)

    token = authorize(client, config, code_provider, verbose)

    print("Making a copy of the report template file...", file=sys.stderr)
    spreadsheet_id = copy_template(token, config.template_id)
    spreadsheet_url = SPREADSHEET_VIEW_URL.format(spreadsheet_id=spreadsheet_id)
    print(f"Now writing results into new spreadsheet: {spreadsheet_url}")

    result = write_rows(
        token,
        spreadsheet_id,
        config.value_range,
        dataframe_to_values(dataframe),
        config.value_input_option,
    )
    updated_cells = result.get("updatedCells", 0)
    print(f"{updated_cells} cells updated.")

    return {
        "spreadsheet_id": spreadsheet_id,
        "spreadsheet_url": spreadsheet_url,
        "updated_cells": updated_cells,
        "rows": dataframe,
    }


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    parser = build_argument_parser()
    args = parser.parse_args(argv)

    try:
        url = validate_url(args.url)
    except UsageError as exc:
        print(exc)
        return

    config_path = Path(args.config) if args.config else discover_config_path()
    config = build_report_config(load_config(config_path))

    try:
        run_pipeline(url, config, verbose=args.verbose)
    except ThirdPartyImpactError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
