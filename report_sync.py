#!/usr/bin/env python3
"""
Portal Report Sync - monthly report reconciliation against converted leads

Steps:
1. Fetch the canonical converted leads (account name + contact email) from
   the Supabase REST API.
2. Drive Chrome through the report portal: log in, set the current calendar
   month as the date window, trigger the CSV export and wait for the file to
   land in the download directory.
3. Parse the semicolon-delimited export and keep rows whose Agent fuzzily
   matches a converted lead's account name (Jaro-Winkler >= 0.9).
4. For each kept row, resolve the first matching lead, pull the `#<number>`
   file identifier out of the File column and POST one enrichment event per
   unique lead email to the CRM webhook.
5. Delete the downloaded export.

Environment variables configure credentials and endpoints (see `Config`).
Run with `python report_sync.py --log-level INFO`.
"""

from __future__ import annotations

import argparse
import csv
import json
import logging
import os
import random
import re
import sys
import time
import urllib.error
import urllib.request
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Union

from rapidfuzz.distance import JaroWinkler

from portal_retrieval import (
    DEFAULT_DOWNLOAD_TIMEOUT,
    DEFAULT_ELEMENT_TIMEOUT,
    REPORT_SEARCH_PATH,
    ReportRetriever,
    SeleniumPortalSession,
)

DEFAULT_PORTAL_BASE_URL = "https://sarel.mangotopsrv.com"
DEFAULT_MATCH_THRESHOLD = 0.9

EXPORT_DELIMITER = ";"
AGENT_COLUMN = "Agent"
FILE_COLUMN = "File"

LEADS_SELECT_COLUMNS = "id,converted_lead_email,created_at,account_name"

# '#', the digits (captured), then an optional whitespace character
FILE_NUMBER_PATTERN = re.compile(r"#(\d+)\s?")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ReportSyncError(Exception):
    """Base class for fatal run errors."""


class ConfigurationError(ReportSyncError, ValueError):
    """A required setting is missing or invalid."""


class RecordSourceError(ReportSyncError):
    """The converted leads table could not be read or parsed."""


class DispatchError(ReportSyncError):
    """An enrichment event could not be delivered to the webhook."""


# ---------------------------------------------------------------------------
# HTTP utilities
# ---------------------------------------------------------------------------

def _decode_body(raw: bytes) -> Any:
    if not raw:
        return {}
    text = raw.decode("utf-8", errors="ignore")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _http_request(
    method: str,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    json_body: Optional[Dict[str, Any]] = None,
    timeout: float = 30.0,
    max_retries: int = 3,
    retry_backoff: float = 2.0,
    with_status: bool = False,
) -> Any:
    """
    Perform an HTTP request and decode the response.

    Retries 429, 5xx and network errors (including read timeouts) with
    jittered backoff until `max_retries` attempts have been made;
    `max_retries=1` disables retrying.

    Returns:
        Parsed JSON when the body decodes as JSON, the raw text otherwise,
        or an empty dict for an empty body. With `with_status`, a
        `(status, body)` tuple.

    Raises:
        urllib.error.HTTPError for non-2xx responses once retries are spent,
        urllib.error.URLError or OSError (socket timeouts included) for
        transport failures.
    """
    headers = dict(headers or {})
    data: Optional[bytes] = None
    if json_body is not None:
        headers.setdefault("Content-Type", "application/json")
        data = json.dumps(json_body).encode("utf-8")

    attempt = 0
    while True:
        attempt += 1
        req = urllib.request.Request(url, data=data, headers=headers, method=method.upper())
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                body = _decode_body(resp.read())
                return (resp.status, body) if with_status else body
        except urllib.error.HTTPError as exc:
            retryable = exc.code == 429 or exc.code >= 500
            if retryable and attempt < max_retries:
                wait_for = retry_backoff * attempt * (0.5 + random.random())
                logging.warning(
                    "HTTP %s from %s; retrying in %.1fs (attempt %d/%d)",
                    exc.code,
                    url,
                    wait_for,
                    attempt,
                    max_retries,
                )
                time.sleep(wait_for)
                continue
            raise
        except (urllib.error.URLError, OSError) as exc:
            if attempt < max_retries:
                wait_for = retry_backoff * attempt * (0.5 + random.random())
                logging.warning("Network error %s; retrying in %.1fs (attempt %d/%d)", exc, wait_for, attempt, max_retries)
                time.sleep(wait_for)
                continue
            raise


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def _load_env_file(path: str = ".env") -> None:
    """
    Load KEY=VALUE pairs from an env file if one exists.

    `REPORT_SYNC_ENV_FILE` overrides the location; otherwise `path` is looked
    up in the working directory and next to this script. Variables already set
    in the environment take precedence.
    """
    candidates: List[Path] = []
    override = os.getenv("REPORT_SYNC_ENV_FILE")
    if override:
        candidates.append(Path(override).expanduser())
    candidates.append(Path.cwd() / path)
    candidates.append(Path(__file__).resolve().parent / path)

    for candidate in candidates:
        if not candidate.is_file():
            continue
        try:
            with candidate.open("r", encoding="utf-8") as handle:
                for raw_line in handle:
                    line = raw_line.strip()
                    if not line or line.startswith("#") or "=" not in line:
                        continue
                    key, value = (part.strip() for part in line.split("=", 1))
                    if not key:
                        continue
                    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
                        value = value[1:-1]
                    os.environ.setdefault(key, value)
        except OSError as exc:
            print(f"Warning: failed to load environment file {candidate}: {exc}", file=sys.stderr)
            continue
        return


@dataclass
class Config:
    """Environment-driven configuration container with validation."""

    # No fallback to USERNAME/PASSWORD: operating systems export USERNAME.
    portal_username: str = field(default_factory=lambda: os.getenv("PORTAL_USERNAME", ""))
    portal_password: str = field(default_factory=lambda: os.getenv("PORTAL_PASSWORD", ""))
    portal_base_url: str = field(
        default_factory=lambda: os.getenv("PORTAL_BASE_URL", DEFAULT_PORTAL_BASE_URL)
    )
    webhook_url: str = field(
        default_factory=lambda: os.getenv("ZOHO_WEBHOOK") or os.getenv("ENRICHMENT_WEBHOOK_URL", "")
    )
    supabase_project: str = field(
        default_factory=lambda: os.getenv("SUPABASE_PROJECT_ID") or os.getenv("SUPABASE_URL", "")
    )
    supabase_key: str = field(
        default_factory=lambda: os.getenv("SUPABASE_ANON_KEY") or os.getenv("SUPABASE_SERVICE_KEY", "")
    )
    supabase_leads_table: str = field(
        default_factory=lambda: os.getenv("SUPABASE_LEADS_TABLE", "converted_leads")
    )
    supabase_leads_limit: int = field(
        default_factory=lambda: int(os.getenv("SUPABASE_LEADS_LIMIT", "5"))
    )
    download_dir: str = field(default_factory=lambda: os.getenv("DOWNLOAD_DIR") or os.getcwd())
    download_timeout: float = field(
        default_factory=lambda: float(os.getenv("DOWNLOAD_TIMEOUT", str(DEFAULT_DOWNLOAD_TIMEOUT)))
    )
    download_poll_interval: float = field(
        default_factory=lambda: float(os.getenv("DOWNLOAD_POLL_INTERVAL", "0.25"))
    )
    element_timeout: float = field(
        default_factory=lambda: float(os.getenv("ELEMENT_LOOKUP_TIMEOUT", str(DEFAULT_ELEMENT_TIMEOUT)))
    )
    headless: bool = field(
        default_factory=lambda: os.getenv("BROWSER_HEADLESS", "false").lower() == "true"
    )
    match_threshold: float = field(
        default_factory=lambda: float(os.getenv("MATCH_THRESHOLD", str(DEFAULT_MATCH_THRESHOLD)))
    )
    http_timeout: float = field(default_factory=lambda: float(os.getenv("HTTP_TIMEOUT", "30")))
    http_max_retries: int = field(default_factory=lambda: int(os.getenv("HTTP_MAX_RETRIES", "3")))

    @property
    def supabase_base_url(self) -> str:
        project = self.supabase_project.strip().rstrip("/")
        if project.startswith(("http://", "https://")):
            return project
        return f"https://{project}.supabase.co"

    @property
    def report_search_url(self) -> str:
        return self.portal_base_url.rstrip("/") + REPORT_SEARCH_PATH

    @property
    def file_link_base(self) -> str:
        return self.portal_base_url.rstrip("/")

    def validate(self, *, require_portal: bool = True) -> None:
        """Ensure required settings exist; raise ConfigurationError otherwise."""
        missing = []
        invalid = []

        if require_portal:
            if not self.portal_username:
                missing.append("PORTAL_USERNAME")
            if not self.portal_password:
                missing.append("PORTAL_PASSWORD")
        if not self.webhook_url:
            missing.append("ZOHO_WEBHOOK")
        if not self.supabase_project:
            missing.append("SUPABASE_PROJECT_ID")
        if not self.supabase_key:
            missing.append("SUPABASE_ANON_KEY")

        if not 0.0 < self.match_threshold <= 1.0:
            invalid.append(f"MATCH_THRESHOLD must be in (0, 1] (got {self.match_threshold})")
        if self.supabase_leads_limit < 1:
            invalid.append(f"SUPABASE_LEADS_LIMIT too low: {self.supabase_leads_limit}")
        if self.download_timeout <= 0:
            invalid.append(f"DOWNLOAD_TIMEOUT must be positive (got {self.download_timeout})")
        if self.download_poll_interval <= 0:
            invalid.append(f"DOWNLOAD_POLL_INTERVAL must be positive (got {self.download_poll_interval})")
        if self.element_timeout <= 0:
            invalid.append(f"ELEMENT_LOOKUP_TIMEOUT must be positive (got {self.element_timeout})")
        if self.http_max_retries < 1:
            invalid.append(f"HTTP_MAX_RETRIES must be at least 1 (got {self.http_max_retries})")

        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")
        if invalid:
            raise ConfigurationError(f"Invalid configuration: {'; '.join(invalid)}")


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CanonicalRecord:
    """A converted lead: who owns an account."""

    account_name: str
    contact_email: str


@dataclass(frozen=True)
class EnrichmentEvent:
    """Webhook payload; `file_number` carries the constructed file link."""

    email: str
    file_number: str

    @classmethod
    def create(cls, email: str, file_link: str) -> "EnrichmentEvent":
        return cls(email=normalize_email(email), file_number=file_link)

    def to_payload(self) -> Dict[str, str]:
        return asdict(self)


@dataclass
class ReconciliationResult:
    events: List[EnrichmentEvent] = field(default_factory=list)
    seen_emails: Set[str] = field(default_factory=set)
    unresolved: List[Dict[str, str]] = field(default_factory=list)
    unmatched: int = 0
    duplicates: int = 0
    dispatched: int = 0


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Matching and extraction
# ---------------------------------------------------------------------------

def _clean_name(value: str) -> str:
    return value.strip().casefold()


def name_similarity(left: str, right: str) -> float:
    """Jaro-Winkler similarity in [0, 1] after trimming and case-folding."""
    return JaroWinkler.similarity(_clean_name(left), _clean_name(right))


def find_first_match(
    agent: str,
    records: Sequence[CanonicalRecord],
    threshold: float = DEFAULT_MATCH_THRESHOLD,
) -> Optional[CanonicalRecord]:
    """
    Return the first record whose account name scores at or above `threshold`.

    Ties and near-ties are resolved by record order, not by highest score.
    """
    for record in records:
        if name_similarity(agent, record.account_name) >= threshold:
            return record
    return None


def extract_file_number(text: str) -> Optional[str]:
    """Return the digits following the first '#' in `text`, if any."""
    match = FILE_NUMBER_PATTERN.search(text)
    return match.group(1) if match else None


def build_file_link(base_url: str, file_number: str) -> str:
    return f"{base_url.rstrip('/')}/file/{file_number}"


# ---------------------------------------------------------------------------
# Export reader
# ---------------------------------------------------------------------------

def read_export_rows(
    path: Union[str, Path],
    records: Sequence[CanonicalRecord],
    *,
    threshold: float = DEFAULT_MATCH_THRESHOLD,
) -> List[Dict[str, str]]:
    """Parse the semicolon-delimited export, keeping rows whose Agent matches a lead."""
    kept: List[Dict[str, str]] = []
    total = 0
    with open(path, "r", encoding="utf-8-sig", newline="") as handle:
        reader = csv.DictReader(handle, delimiter=EXPORT_DELIMITER)
        for raw in reader:
            total += 1
            row = {key.strip(): (value or "") for key, value in raw.items() if key is not None}
            agent = row.get(AGENT_COLUMN)
            if agent is None:
                logging.debug("Export row %d has no %s column; skipping", total, AGENT_COLUMN)
                continue
            if find_first_match(agent, records, threshold) is None:
                continue
            kept.append(row)
    logging.info("Export %s: %d of %d rows match a converted lead", path, len(kept), total)
    return kept


# ---------------------------------------------------------------------------
# Supabase client
# ---------------------------------------------------------------------------

class SupabaseLeadsClient:
    """Read converted leads from the Supabase REST API."""

    def __init__(self, config: Config):
        self.base_url = config.supabase_base_url
        self.table = config.supabase_leads_table
        self.limit = config.supabase_leads_limit
        self.timeout = config.http_timeout
        self.max_retries = config.http_max_retries
        self.headers = {
            "apikey": config.supabase_key,
            "Authorization": f"Bearer {config.supabase_key}",
            "Accept": "application/json",
        }

    @property
    def url(self) -> str:
        return f"{self.base_url}/rest/v1/{self.table}?select={LEADS_SELECT_COLUMNS}&limit={self.limit}"

    def fetch(self) -> List[CanonicalRecord]:
        logging.info("Querying Supabase table '%s' (limit %d)", self.table, self.limit)
        try:
            response = _http_request(
                "GET",
                self.url,
                headers=self.headers,
                timeout=self.timeout,
                max_retries=self.max_retries,
            )
        except urllib.error.HTTPError as exc:
            raise RecordSourceError(f"Request failed: {exc.code} {exc.reason}") from exc
        except urllib.error.URLError as exc:
            raise RecordSourceError(f"Request failed: {exc.reason}") from exc
        except OSError as exc:
            raise RecordSourceError(f"Request failed: {exc}") from exc

        records = self._parse_records(response)
        logging.info("Supabase returned %d converted leads", len(records))
        return records

    @staticmethod
    def _parse_records(response: Any) -> List[CanonicalRecord]:
        if not isinstance(response, list):
            raise RecordSourceError(f"Unexpected Supabase response: expected a JSON array, got {type(response).__name__}")
        records: List[CanonicalRecord] = []
        for index, row in enumerate(response):
            if not isinstance(row, dict):
                raise RecordSourceError(f"Unexpected Supabase row {index}: {row!r}")
            email = row.get("converted_lead_email")
            account = row.get("account_name")
            if not isinstance(email, str) or not isinstance(account, str):
                raise RecordSourceError(
                    f"Supabase row {index} lacks string converted_lead_email/account_name"
                )
            records.append(CanonicalRecord(account_name=account, contact_email=email))
        return records


# ---------------------------------------------------------------------------
# Webhook dispatcher
# ---------------------------------------------------------------------------

class EnrichmentWebhookClient:
    """POST enrichment events to the CRM webhook."""

    def __init__(self, url: str, timeout: float = 30.0):
        self.url = url
        self.timeout = timeout

    def dispatch(self, event: EnrichmentEvent) -> int:
        """
        Send one event; no retry.

        Any HTTP response counts as delivered, including error statuses, which
        are only logged. Returns the HTTP status code.
        """
        try:
            status, _ = _http_request(
                "POST",
                self.url,
                json_body=event.to_payload(),
                timeout=self.timeout,
                max_retries=1,
                with_status=True,
            )
        except urllib.error.HTTPError as exc:
            logging.warning("Webhook answered HTTP %s for %s", exc.code, event.email)
            return exc.code
        except urllib.error.URLError as exc:
            raise DispatchError(f"Webhook POST for {event.email} failed: {exc.reason}") from exc
        except OSError as exc:
            raise DispatchError(f"Webhook POST for {event.email} failed: {exc}") from exc
        logging.info("Contact hook created: %s -> %s (HTTP %s)", event.email, event.file_number, status)
        return status


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def reconcile(
    rows: Iterable[Dict[str, str]],
    records: Sequence[CanonicalRecord],
    dispatcher: Optional[EnrichmentWebhookClient],
    *,
    file_link_base: str,
    threshold: float = DEFAULT_MATCH_THRESHOLD,
    seen_emails: Optional[Set[str]] = None,
    dry_run: bool = False,
) -> ReconciliationResult:
    """
    Match rows to leads and dispatch one enrichment event per unique email.

    `seen_emails` holds normalized emails that already produced an event; it is
    updated in place and returned on the result. Rows without a file number are
    reported in `unresolved` and do not mark their email as seen. Dispatch
    errors propagate immediately.
    """
    if dispatcher is None and not dry_run:
        raise ValueError("A dispatcher is required unless dry_run is set")

    result = ReconciliationResult(seen_emails=seen_emails if seen_emails is not None else set())

    for row in rows:
        agent = row.get(AGENT_COLUMN)
        file_text = row.get(FILE_COLUMN)
        if agent is None or file_text is None:
            result.unmatched += 1
            continue

        matched = find_first_match(agent, records, threshold)
        if matched is None:
            result.unmatched += 1
            continue

        email_key = normalize_email(matched.contact_email)
        if email_key in result.seen_emails:
            result.duplicates += 1
            logging.debug("Skipping %s: %s already handled", agent, email_key)
            continue

        logging.info("Unique match found: %s -> %s | file -> %s", matched.contact_email, agent, file_text)
        number = extract_file_number(file_text)
        if number is None:
            logging.warning("Could not find a #number in the file string: %s", file_text)
            result.unresolved.append({"agent": agent, "file": file_text, "email": email_key})
            # Left out of seen_emails so a later row for this lead can still resolve.
            continue

        event = EnrichmentEvent.create(matched.contact_email, build_file_link(file_link_base, number))
        if dry_run:
            logging.info("Dry run: would send %s", event.to_payload())
        else:
            dispatcher.dispatch(event)
            result.dispatched += 1
        result.events.append(event)
        result.seen_emails.add(email_key)

    logging.info("Total unique leads found: %d", len(result.events))
    return result


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

def _delete_export(path: Path) -> None:
    try:
        path.unlink()
        logging.info("Deleted export %s", path)
    except FileNotFoundError:
        logging.debug("Export %s already removed", path)


class ReportSyncOrchestrator:
    """Run the full sync: leads, portal export, reconciliation, cleanup."""

    def __init__(
        self,
        config: Config,
        *,
        leads_client: Optional[SupabaseLeadsClient] = None,
        dispatcher: Optional[EnrichmentWebhookClient] = None,
        retriever: Optional[ReportRetriever] = None,
    ):
        self.config = config
        self.leads_client = leads_client or SupabaseLeadsClient(config)
        self.dispatcher = dispatcher or EnrichmentWebhookClient(config.webhook_url, config.http_timeout)
        self.retriever = retriever

    def _build_retriever(self) -> ReportRetriever:
        session = SeleniumPortalSession(
            self.config.report_search_url,
            headless=self.config.headless,
            element_timeout=self.config.element_timeout,
        )
        return ReportRetriever(
            session,
            self.config.download_dir,
            self.config.portal_username,
            self.config.portal_password,
            download_timeout=self.config.download_timeout,
            poll_interval=self.config.download_poll_interval,
        )

    def run(
        self,
        *,
        export_file: Optional[Union[str, Path]] = None,
        dry_run: bool = False,
        keep_export: bool = False,
    ) -> Dict[str, Any]:
        run_id = uuid.uuid4().hex[:12]
        started_at = datetime.now(timezone.utc).isoformat()
        logging.info("Starting report sync run %s", run_id)

        records = self.leads_client.fetch()

        if export_file is not None:
            export_path = Path(export_file)
            owns_export = False
        else:
            retriever = self.retriever or self._build_retriever()
            export_path = retriever.run()
            owns_export = True

        try:
            rows = read_export_rows(export_path, records, threshold=self.config.match_threshold)
            result = reconcile(
                rows,
                records,
                self.dispatcher,
                file_link_base=self.config.file_link_base,
                threshold=self.config.match_threshold,
                dry_run=dry_run,
            )
        finally:
            if owns_export and not keep_export:
                _delete_export(export_path)

        return {
            "run_id": run_id,
            "started_at": started_at,
            "finished_at": datetime.now(timezone.utc).isoformat(),
            "dry_run": dry_run,
            "export_file": str(export_path),
            "canonical_records": len(records),
            "candidate_rows": len(rows),
            "dispatched": result.dispatched,
            "unique_emails": sorted(result.seen_emails),
            "events": [event.to_payload() for event in result.events],
            "unresolved": result.unresolved,
            "duplicates": result.duplicates,
        }


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reconcile the portal report against converted leads")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    parser.add_argument("--download-dir", dest="download_dir", help="Directory the browser downloads into")
    parser.add_argument("--headless", action="store_true", help="Run Chrome without a visible window")
    parser.add_argument(
        "--export-file",
        dest="export_file",
        help="Reconcile an existing export instead of downloading one (the file is kept)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Match and log events without calling the webhook")
    parser.add_argument("--keep-export", action="store_true", help="Do not delete the downloaded export")
    parser.add_argument("--output", help="Optional path to write the JSON run summary")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    _load_env_file()
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(message)s",
    )

    try:
        config = Config()
        if args.download_dir:
            config.download_dir = args.download_dir
        if args.headless:
            config.headless = True
        config.validate(require_portal=args.export_file is None)
        orchestrator = ReportSyncOrchestrator(config)
        result = orchestrator.run(
            export_file=args.export_file,
            dry_run=args.dry_run,
            keep_export=args.keep_export,
        )
    except Exception as exc:  # pylint: disable=broad-except
        logging.error("Fatal error: %s", exc)
        return 1

    output_json = json.dumps(result, indent=2)
    print(output_json)

    if args.output:
        with open(args.output, "w", encoding="utf-8") as handle:
            handle.write(output_json)
        logging.info("Wrote results to %s", args.output)

    return 0


if __name__ == "__main__":
    sys.exit(main())
