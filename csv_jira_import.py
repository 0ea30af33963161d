#!/usr/bin/env python3
"""
CSV → Jira Cloud Bulk Import
============================
Reads a delimited file and creates one Jira issue per row through REST API v3.

How rows are created:
  Pass 1  Epic rows         → created first, in file order
  Pass 2  everything else   → created next, in file order, so "Epic Link"
                              and "Parent Id" can point at pass-1 Epics

Column mapping:
  Project Key   → project          (falls back to PROJECT_KEY)
  Issue Type    → issuetype        (defaults to "Task")
  Summary       → summary          (required)
  Labels        → labels           (split on commas, semicolons, whitespace)
  Description   → description      (ADF, one paragraph per line, bare URLs linked)
  Story Points  → story points     (auto-detected custom field)
  Epic Name     → epic name        (company-managed Epics only)
  Parent Id     → parent           (Sub-task rows)
  Epic Link     → parent / epic link field (depends on TEAM_MANAGED)
  Issue Id      → local id other rows refer to (falls back to Summary)

Configuration (environment or .env):
  JIRA_BASE_URL, JIRA_EMAIL, JIRA_API_TOKEN, PROJECT_KEY   required
  CSV_PATH=./issues.csv  CSV_DELIMITER=,  TEAM_MANAGED=false
  REPORT_PATH=import-report.json

Usage:
    python csv_jira_import.py
"""

import csv
import base64
import enum
import json
import math
import os
import re
import sys
import time
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

import requests
from dotenv import load_dotenv

DEFAULT_CSV_PATH    = "./issues.csv"
DEFAULT_DELIMITER   = ","
DEFAULT_REPORT_PATH = "import-report.json"
DEFAULT_ISSUE_TYPE  = "Task"

REQUIRED_ENV_VARS = ("JIRA_BASE_URL", "JIRA_EMAIL", "JIRA_API_TOKEN", "PROJECT_KEY")

EPIC_LINK_FIELD_NAME    = "epic link"
STORY_POINTS_FIELD_NAME = "story points"
EPIC_NAME_FIELD_NAME    = "epic name"

MAX_ATTEMPTS       = 5
INITIAL_BACKOFF_MS = 1000
MAX_BACKOFF_MS     = 15000

_TRUTHY = {"true", "1", "yes"}

_FORBIDDEN_DELIMITERS = {'"', "\n", "\r"}


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ImporterError(Exception):
    """Base class for every fatal import condition."""


class ConfigError(ImporterError):
    pass


class ReadError(ImporterError):
    pass


class ValidationError(ImporterError):
    pass


class RequestError(ImporterError):
    def __init__(self, desc: str, status: Optional[int] = None, body: str = "") -> None:
        self.desc   = desc
        self.status = status
        self.body   = body
        if status is None:
            msg = f"{desc} failed: {body}"
        else:
            msg = f"{desc} failed (status {status}): {body[:400]}"
        super().__init__(msg)


# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ImportConfig:
    base_url:     str
    email:        str
    api_token:    str  = field(repr=False)
    project_key:  str
    csv_path:     str  = DEFAULT_CSV_PATH
    delimiter:    str  = DEFAULT_DELIMITER
    team_managed: bool = False
    report_path:  str  = DEFAULT_REPORT_PATH

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ImportConfig":
        """Build the run configuration from `environ` (defaults to os.environ)."""
        env = os.environ if environ is None else environ

        def _get(name: str, default: str = "") -> str:
            return (env.get(name) or default).strip()

        missing = [name for name in REQUIRED_ENV_VARS if not _get(name)]
        if missing:
            raise ConfigError("Missing env vars. Please set " + ", ".join(missing) + ".")

        # Delimiter is not stripped: a literal tab or space is a valid choice
        delimiter = env.get("CSV_DELIMITER") or DEFAULT_DELIMITER
        if delimiter == "\\t":
            delimiter = "\t"
        if len(delimiter) != 1:
            raise ConfigError(f"CSV_DELIMITER must be a single character, got {delimiter!r}")
        if delimiter in _FORBIDDEN_DELIMITERS:
            raise ConfigError(f"CSV_DELIMITER cannot be a quote or line break, got {delimiter!r}")

        return cls(
            base_url     = _get("JIRA_BASE_URL").rstrip("/"),
            email        = _get("JIRA_EMAIL"),
            api_token    = _get("JIRA_API_TOKEN"),
            project_key  = _get("PROJECT_KEY"),
            csv_path     = _get("CSV_PATH", DEFAULT_CSV_PATH),
            delimiter    = delimiter,
            team_managed = _get("TEAM_MANAGED", "false").lower() in _TRUTHY,
            report_path  = _get("REPORT_PATH", DEFAULT_REPORT_PATH),
        )


# ─────────────────────────────────────────────────────────────────────────────
# CSV reader
# ─────────────────────────────────────────────────────────────────────────────

def read_rows(path: str, delimiter: str = DEFAULT_DELIMITER) -> list:
    """
    Parse a delimited file into a list of {column: value} dicts.

    The first record is the header. A UTF-8 BOM is ignored, quoted fields may
    hold delimiters and line breaks, and names/values are stripped. Records
    shorter than the header only carry the columns they have; extra values
    past the header are dropped. Blank records are skipped.
    """
    rows: list = []
    try:
        with open(path, encoding="utf-8-sig", newline="") as fh:
            reader = csv.reader(fh, delimiter=delimiter)
            header: Optional[list] = None
            for record in reader:
                if not any(cell.strip() for cell in record):
                    continue
                if header is None:
                    header = [name.strip() for name in record]
                    continue
                rows.append({name: value.strip() for name, value in zip(header, record)})
    except OSError as exc:
        raise ReadError(f"Cannot read CSV {path}: {exc}") from exc
    except (csv.Error, UnicodeDecodeError) as exc:
        raise ReadError(f"CSV parse error in {path}: {exc}") from exc
    return rows


# ─────────────────────────────────────────────────────────────────────────────
# Resilient request executor
# ─────────────────────────────────────────────────────────────────────────────

class RequestState(enum.Enum):
    ATTEMPTING         = "attempting"
    BACKOFF            = "backoff"
    SUCCEEDED          = "succeeded"
    PERMANENTLY_FAILED = "permanently_failed"
    RETRIES_EXHAUSTED  = "retries_exhausted"


def is_retryable_status(status: int) -> bool:
    return status == 429 or status >= 500


def classify_response(status: int, attempt: int,
                      max_attempts: int = MAX_ATTEMPTS) -> RequestState:
    """Decide what happens after attempt number `attempt` returned `status`."""
    if status < 400:
        return RequestState.SUCCEEDED
    if not is_retryable_status(status):
        return RequestState.PERMANENTLY_FAILED
    if attempt >= max_attempts:
        return RequestState.RETRIES_EXHAUSTED
    return RequestState.BACKOFF


def _parse_retry_after(value) -> Optional[float]:
    if value is None:
        return None
    try:
        seconds = float(str(value).strip())
    except ValueError:
        return None
    if not math.isfinite(seconds):
        return None
    return max(seconds, 0.0)


def backoff_seconds(attempt: int, retry_after=None) -> float:
    """
    Delay before the attempt that follows failed attempt `attempt` (1-based).
    A numeric Retry-After header wins; otherwise 1s, 2s, 4s, … capped at 15s.
    """
    hinted = _parse_retry_after(retry_after)
    if hinted is not None:
        return hinted
    wait_ms = min(INITIAL_BACKOFF_MS * 2 ** (attempt - 1), MAX_BACKOFF_MS)
    return wait_ms / 1000.0


def _response_body(resp) -> str:
    try:
        return json.dumps(resp.json())
    except Exception:
        return resp.text or ""


def execute_with_retry(request_fn: Callable[[], "requests.Response"], desc: str = "request",
                       sleep: Callable[[float], None] = time.sleep,
                       max_attempts: int = MAX_ATTEMPTS):
    """
    Call `request_fn` until it returns a response with status < 400.

    429 and 5xx are retried up to `max_attempts` attempts in total, any other
    4xx fails at once. Raises RequestError with the last status and body.
    """
    state = RequestState.ATTEMPTING
    for attempt in range(1, max_attempts + 1):
        resp  = request_fn()
        state = classify_response(resp.status_code, attempt, max_attempts)
        if state is RequestState.SUCCEEDED:
            return resp
        if state is not RequestState.BACKOFF:
            raise RequestError(desc, resp.status_code, _response_body(resp))
        delay = backoff_seconds(attempt, resp.headers.get("Retry-After"))
        print(f"  RETRY {desc}  status {resp.status_code}  "
              f"attempt {attempt}/{max_attempts}  waiting {delay:g}s")
        sleep(delay)
    # Unreachable: the last attempt always classifies as a terminal state
    raise RequestError(desc, None, f"ended in state {state.value}")


# ─────────────────────────────────────────────────────────────────────────────
# Jira REST API v3 client
# ─────────────────────────────────────────────────────────────────────────────

class JiraClient:
    def __init__(self, config: ImportConfig,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        self.base  = config.base_url.rstrip("/") + "/rest/api/3"
        raw = f"{config.email}:{config.api_token}".encode()
        self._auth  = "Basic " + base64.b64encode(raw).decode()
        self._sleep = sleep

    def _send(self, method: str, path: str, *, json_body=None) -> "requests.Response":
        url = f"{self.base}/{path.lstrip('/')}"
        headers = {"Authorization": self._auth, "Accept": "application/json"}
        if json_body is not None:
            headers["Content-Type"] = "application/json"
        try:
            return requests.request(method, url, headers=headers,
                                    json=json_body, timeout=60)
        except requests.exceptions.ConnectionError as exc:
            raise RequestError(f"{method} {path}", None, f"connection error: {url}") from exc
        except requests.exceptions.Timeout as exc:
            raise RequestError(f"{method} {path}", None, f"timeout: {url}") from exc

    def _request(self, method: str, path: str, desc: str, *, json_body=None):
        resp = execute_with_retry(
            lambda: self._send(method, path, json_body=json_body),
            desc, sleep=self._sleep,
        )
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise RequestError(desc, resp.status_code,
                               f"response is not JSON: {resp.text[:200]}") from exc

    def get_fields(self) -> list:
        return self._request("GET", "/field", "get fields") or []

    def create_issue(self, fields: dict) -> dict:
        """POST /issue. Returns {"id", "key", "self"}."""
        return self._request("POST", "/issue", "create issue", json_body={"fields": fields})


# ─────────────────────────────────────────────────────────────────────────────
# Jira field discovery
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FieldSchema:
    epic_link_id:    Optional[str] = None
    story_points_id: Optional[str] = None
    epic_name_id:    Optional[str] = None


def _find_field_by_name(fields: list, name: str) -> Optional[str]:
    for f in fields:
        if (f.get("name") or "").lower() == name:
            return f.get("id")
    return None


def discover_field_schema(jira: JiraClient) -> FieldSchema:
    all_fields = jira.get_fields()
    return FieldSchema(
        epic_link_id    = _find_field_by_name(all_fields, EPIC_LINK_FIELD_NAME),
        story_points_id = _find_field_by_name(all_fields, STORY_POINTS_FIELD_NAME),
        epic_name_id    = _find_field_by_name(all_fields, EPIC_NAME_FIELD_NAME),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Plain text → Atlassian Document Format (ADF)
# ─────────────────────────────────────────────────────────────────────────────

_URL_RE = re.compile(r'https?://\S+', re.IGNORECASE)


def is_likely_url(text: str) -> bool:
    return _URL_RE.fullmatch(text.strip()) is not None


def _text_node(text: str) -> dict:
    return {"type": "text", "text": text}


def _link_node(url: str) -> dict:
    return {"type": "text", "text": url,
            "marks": [{"type": "link", "attrs": {"href": url}}]}


def _line_to_paragraph(line: str) -> dict:
    stripped = line.strip()
    if not stripped:
        return {"type": "paragraph"}   # keeps the blank line
    if is_likely_url(stripped):
        return {"type": "paragraph", "content": [_link_node(stripped)]}
    return {"type": "paragraph", "content": [_text_node(line)]}


def build_description_adf(text: Optional[str]) -> Optional[dict]:
    """
    One paragraph per line; a line that is only a URL becomes a link.
    Returns None for empty text so the description can be left out.
    """
    if text is None or not str(text).strip():
        return None
    lines = str(text).replace("\r\n", "\n").replace("\r", "\n").split("\n")
    return {
        "version": 1,
        "type":    "doc",
        "content": [_line_to_paragraph(line) for line in lines],
    }


# ─────────────────────────────────────────────────────────────────────────────
# Row → Jira fields
# ─────────────────────────────────────────────────────────────────────────────

_LABEL_SPLIT_RE = re.compile(r'[,;\s]+')


def _col(row: dict, name: str) -> str:
    return (row.get(name) or "").strip()


def is_epic_row(row: dict) -> bool:
    return _col(row, "Issue Type").lower() == "epic"


def local_id_for(row: dict) -> str:
    """The id other rows use to refer to this one: Issue Id, else Summary."""
    return _col(row, "Issue Id") or _col(row, "Summary")


def parse_labels(raw: Optional[str]) -> list:
    return [token for token in _LABEL_SPLIT_RE.split(raw or "") if token]


def parse_story_points(raw: str):
    """Return a number, or None if `raw` is not a finite number."""
    # float() accepts digit separators ("1_000"); a CSV value never means that
    if "_" in raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return int(value) if value.is_integer() else value


def build_jira_fields(
    row:      dict,
    schema:   FieldSchema,
    id_map:   dict,
    config:   ImportConfig,
    warnings: Optional[list] = None,
) -> dict:
    """
    Build the `fields` payload for one row. Never touches the network and
    never mutates `row` or `id_map`. References that cannot be resolved are
    left off; a message is appended to `warnings` when a list is given.
    """
    project_key = _col(row, "Project Key") or config.project_key
    issue_type  = _col(row, "Issue Type") or DEFAULT_ISSUE_TYPE
    summary     = _col(row, "Summary")
    if not summary:
        raise ValidationError("Row missing 'Summary'")

    fields: dict = {
        "project":   {"key": project_key},
        "issuetype": {"name": issue_type},
        "summary":   summary,
        "labels":    parse_labels(row.get("Labels")),
    }

    adf = build_description_adf(row.get("Description"))
    if adf is not None:
        fields["description"] = adf

    raw_points = _col(row, "Story Points")
    if raw_points and schema.story_points_id is not None:
        points = parse_story_points(raw_points)
        if points is not None:
            fields[schema.story_points_id] = points

    # Epics: company-managed projects want Epic Name, team-managed ones have no such field
    if issue_type.lower() == "epic":
        if not config.team_managed and schema.epic_name_id is not None:
            fields[schema.epic_name_id] = _col(row, "Epic Name") or summary
        return fields

    parent_id = _col(row, "Parent Id")
    if issue_type.lower() == "sub-task" and parent_id:
        parent = id_map.get(parent_id)
        if parent is not None:
            fields["parent"] = {"id": parent["id"]}
        elif warnings is not None:
            warnings.append(f"parent '{parent_id}' was not created in this run; not linked")

    epic_link = _col(row, "Epic Link")
    if epic_link:
        epic = id_map.get(epic_link)
        if epic is None:
            if warnings is not None:
                warnings.append(f"epic '{epic_link}' was not created in this run; not linked")
        elif config.team_managed:
            fields["parent"] = {"id": epic["id"]}
        elif schema.epic_link_id is not None:
            # Company-managed Epic Link takes the issue KEY, not the id
            fields[schema.epic_link_id] = epic["key"]

    return fields


# ─────────────────────────────────────────────────────────────────────────────
# Import phases
# ─────────────────────────────────────────────────────────────────────────────

def _create_one_row(row: dict, jira: JiraClient, schema: FieldSchema,
                    config: ImportConfig, id_map: dict) -> dict:
    """Build, create and record one row. Errors propagate to the caller."""
    local_id = local_id_for(row)
    warnings: list = []
    try:
        fields = build_jira_fields(row, schema, id_map, config, warnings)
        for msg in warnings:
            print(f"  WARN  {local_id}  {msg}")
        result = jira.create_issue(fields)
        if not isinstance(result, dict) or not result.get("id") or not result.get("key"):
            raise RequestError("create issue", None,
                               f"response has no issue id/key: {str(result)[:200]}")
    except ImporterError as exc:
        print(f"  FAIL  {local_id or '(no summary)'}  ({exc})")
        raise
    entry  = {"id": result["id"], "key": result["key"]}
    id_map[local_id] = entry
    print(f"  OK    {fields['issuetype']['name']:<9} {entry['key']:<12} |  {fields['summary'][:50]}")
    return entry


def _run_phase(label: str, rows: list, predicate: Callable[[dict], bool],
               jira: JiraClient, schema: FieldSchema,
               config: ImportConfig, id_map: dict) -> int:
    subset = [row for row in rows if predicate(row)]
    print(f"\n  ── {label}: {len(subset)} row(s) ──")
    for row in subset:
        _create_one_row(row, jira, schema, config, id_map)
    return len(subset)


def phase_create_epics(rows, jira, schema, config, id_map) -> int:
    """Pass 1: Epic rows, in file order."""
    return _run_phase("Epics", rows, is_epic_row, jira, schema, config, id_map)


def phase_create_dependents(rows, jira, schema, config, id_map) -> int:
    """Pass 2: every other row, in file order."""
    return _run_phase("Issues", rows, lambda r: not is_epic_row(r),
                      jira, schema, config, id_map)


def run_import(rows: list, jira: JiraClient, schema: FieldSchema,
               config: ImportConfig) -> dict:
    """
    Create every row, Epics first. Returns {local_id: {"id", "key"}}.
    The first failing row aborts the run; issues already created stay in Jira.
    """
    id_map: dict = {}
    phase_create_epics(rows, jira, schema, config, id_map)
    phase_create_dependents(rows, jira, schema, config, id_map)
    return id_map


# ─────────────────────────────────────────────────────────────────────────────
# Report file
# ─────────────────────────────────────────────────────────────────────────────

def save_report(id_map: dict, path: str) -> None:
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as fh:
        json.dump([[local_id, entry] for local_id, entry in id_map.items()], fh, indent=2)
    os.replace(tmp, path)


# ─────────────────────────────────────────────────────────────────────────────
# Main
# ─────────────────────────────────────────────────────────────────────────────

def _import(config: ImportConfig) -> dict:
    csv_path = os.path.abspath(config.csv_path)
    if not os.path.exists(csv_path):
        raise ReadError(f"CSV not found at {csv_path}")

    print(f"Step 1 — Reading CSV: {csv_path}")
    rows = read_rows(csv_path, config.delimiter)
    if not rows:
        raise ReadError("CSV has no data rows.")
    n_epics = sum(1 for row in rows if is_epic_row(row))
    print(f"  ✓ {len(rows)} row(s): {n_epics} Epic(s) + {len(rows) - n_epics} other")

    print(f"\nStep 2 — Jira custom fields  ({config.base_url})")
    jira   = JiraClient(config)
    schema = discover_field_schema(jira)
    print(f"  Epic link field:    {schema.epic_link_id or '(not detected)'}")
    print(f"  Story points field: {schema.story_points_id or '(not detected)'}")
    print(f"  Epic name field:    {schema.epic_name_id or '(not detected)'}")
    print(f"  Project mode:       {'team-managed' if config.team_managed else 'company-managed'}")

    print("\nStep 3 — Creating issues")
    id_map = run_import(rows, jira, schema, config)
    print(f"\n  ✓ {len(rows)} issue(s) created")

    save_report(id_map, config.report_path)
    return id_map


def main() -> None:
    W = 80
    print()
    print("╔" + "═" * (W - 2) + "╗")
    print("║" + "  CSV → JIRA BULK IMPORT".center(W - 2) + "║")
    print("╚" + "═" * (W - 2) + "╝")
    print()

    load_dotenv()
    try:
        config = ImportConfig.from_env()
        id_map = _import(config)
    except ImporterError as exc:
        print(f"\n  Import failed: {exc}", file=sys.stderr)
        sys.exit(1)

    print()
    print("╔" + "═" * (W - 2) + "╗")
    print("║" + "  Import complete".center(W - 2) + "║")
    print("╚" + "═" * (W - 2) + "╝")
    print(f"\n  Report saved to: {config.report_path}")
    print(f"  Report entries:  {len(id_map)}  (one per distinct local id)")


if __name__ == "__main__":
    main()
