#!/usr/bin/env python3
"""
Batch OFAC screening of publisher names with screenshot evidence and an Excel report.

License: Apache License 2.0

Data sources:
- Reference corpus: a folder of CSV files (e.g. OFAC SDN.CSV + ALT.CSV). Every cell
  value becomes an independent reference entry; column identity is not kept.
- Evidence: the public OFAC Sanctions List Search page (sanctionssearch.ofac.treas.gov),
  driven by one headless Chromium page per run.

What this script provides:
- Full-coverage prefix matching: a reference entry matches when every word of the
  subject name is the prefix of some word in the entry
- One full-page screenshot per subject, captured sequentially in a reused browser page
- Per-subject failure isolation: a capture failure never aborts the batch
- A single-sheet Excel report (Publisher, MatchStatus, MatchCount, Matches, Screenshot)
  with clickable screenshot links, plus optional raw match JSON per subject
- A progress channel (listener passed per run) terminated by exactly one done event

"""

from __future__ import annotations

import argparse
import contextlib
import csv
import datetime as dt
import hashlib
import io
import json
import logging
import math
import queue
import re
import sys
import warnings
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import pandas as pd
import requests
from openpyxl import load_workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright
from tqdm import tqdm

logger = logging.getLogger(__name__)

# Official SLS API pattern (download by filename).
SLS_DOWNLOAD_BASE = "https://sanctionslistservice.ofac.treas.gov/api/download"

# SDN CSV files have no headers; define columns per OFAC documentation.
SDN_COLUMNS = ["ent_num", "SDN_Name", "SDN_Type", "Program", "Title", "Call_Sign",
               "Vess_Type", "Tonnage", "GRT", "Vess_Flag", "Vess_Owner", "Remarks"]
SDN_ALT_COLUMNS = ["ent_num", "alt_num", "alt_type", "alt_name", "remarks"]

# Primary names + aliases. A header row is prepended on download so that the
# loader's header skip never eats the first record.
REFERENCE_FILES = {
    "SDN.CSV": SDN_COLUMNS,
    "ALT.CSV": SDN_ALT_COLUMNS,
}

DEFAULT_REFERENCE_DIR = Path(".") / "data"
DEFAULT_USER_AGENT = "ofac-checker/1.0"

# OFAC writes "-0-" for empty fields.
OFAC_NULL_PLACEHOLDER = "-0-"

# Excel caps a cell at 32767 characters; keep a safety margin.
MAX_CELL_LENGTH = 32000
TRUNCATION_MARKER = " ...[truncated]"
MATCH_SEPARATOR = "; "

SAVE_JSON_RESPONSES = True

# Public search page and its element ids (owned by OFAC; if they change,
# captures degrade to screenshots of whatever the page shows).
OFAC_URL = "https://sanctionssearch.ofac.treas.gov/"
SEARCH_INPUT_SELECTOR = "#ctl00_MainContent_txtLastName"
SEARCH_BUTTON_SELECTOR = "#ctl00_MainContent_btnSearch"
RESULTS_PANEL_SELECTOR = "#ctl00_MainContent_gvResults"
RESULTS_WAIT_MS = 5000
STEP_TIMEOUT_MS = 30000

CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
]

# Header aliases for the subject name, highest priority first.
SUBJECT_NAME_COLUMNS = ("Name as per Bank Account", "Name")

REPORT_COLUMNS = ["Publisher", "MatchStatus", "MatchCount", "Matches", "Screenshot"]
REPORT_SHEET_NAME = "OFAC_Results"
REPORT_FILENAME = "OFAC_Results.xlsx"
SCREENSHOT_LINK_TEXT = "View Screenshot"

STATUS_MATCH = "MATCH"
STATUS_CLEAR = "CLEAR"


class CheckerError(Exception):
    """Base class for screening pipeline errors."""


class ConfigurationError(CheckerError):
    """The reference corpus is missing or empty; nothing can be screened."""


class ExternalServiceError(CheckerError):
    """The browser session could not be started."""


class PerSubjectCaptureError(CheckerError):
    """One step of the evidence protocol failed for one subject."""

    def __init__(self, subject: str, step: str, cause: BaseException):
        super().__init__(f"{step} failed for {subject!r}: {cause}")
        self.subject = subject
        self.step = step


class OutputTruncationWarning(UserWarning):
    """A Matches cell was cut to fit the spreadsheet."""


@dataclass(frozen=True)
class CheckerConfig:
    reference_dir: Path = DEFAULT_REFERENCE_DIR
    save_responses: bool = SAVE_JSON_RESPONSES
    capture_matches_only: bool = False
    max_cell_length: int = MAX_CELL_LENGTH
    target_url: str = OFAC_URL
    input_selector: str = SEARCH_INPUT_SELECTOR
    submit_selector: str = SEARCH_BUTTON_SELECTOR
    results_selector: str = RESULTS_PANEL_SELECTOR
    results_wait_ms: int = RESULTS_WAIT_MS
    step_timeout_ms: int = STEP_TIMEOUT_MS
    headless: bool = True
    subject_name_columns: Tuple[str, ...] = SUBJECT_NAME_COLUMNS


@dataclass(frozen=True)
class ReferenceEntry:
    entry_id: str
    name: str                   # normalized
    tokens: Tuple[str, ...]


@dataclass(frozen=True)
class Subject:
    display_name: str           # raw value, submitted as-is to the search page
    tokens: Tuple[str, ...]


@dataclass(frozen=True)
class MatchResult:
    entry_id: str
    matched_name: str
    score: float                # always 1.0, partial coverage is never kept


@dataclass(frozen=True)
class EvidenceRecord:
    subject_index: int
    screenshot_path: Optional[Path] = None
    response_path: Optional[Path] = None


@dataclass(frozen=True)
class Hyperlink:
    text: str
    target: str


@dataclass(frozen=True)
class ReportRow:
    publisher: str
    match_status: str
    match_count: int
    matches: str
    screenshot: Optional[Hyperlink] = None


@dataclass(frozen=True)
class RunContext:
    root: Path
    screenshots_dir: Path
    responses_dir: Optional[Path] = None

    @property
    def report_path(self) -> Path:
        return self.root / REPORT_FILENAME


@dataclass(frozen=True)
class ProgressEvent:
    current: int = 0
    total: int = 0
    subject_name: str = ""
    status: str = ""
    done: bool = False
    artifact_location: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        """Wire form, as pushed to an event-stream client."""
        if self.done:
            out = {"done": True, "artifactLocation": self.artifact_location}
            if self.error:
                out["error"] = self.error
            return out
        return {
            "current": self.current,
            "total": self.total,
            "subjectName": self.subject_name,
            "status": self.status,
        }


ProgressListener = Callable[[ProgressEvent], None]


def _utc_now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()


def _sha256_bytes(b: bytes) -> str:
    h = hashlib.sha256()
    h.update(b)
    return h.hexdigest()


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

_STRIPPED_PUNCTUATION = re.compile(r"[.,\-']")
_WHITESPACE = re.compile(r"\s+")


def normalize_text(value) -> str:
    """
    Canonical form used on both sides of the match: uppercase, drop . , - and ',
    collapse whitespace. None/NaN/empty give "".
    """
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""
    s = str(value).upper()
    s = _STRIPPED_PUNCTUATION.sub("", s)
    s = _WHITESPACE.sub(" ", s).strip()
    return s


def tokenize(value) -> Tuple[str, ...]:
    normalized = normalize_text(value)
    if not normalized:
        return ()
    return tuple(normalized.split(" "))


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------

def _iter_csv_values(path: Path) -> Iterator[str]:
    # OFAC CSVs are typically Windows-1252/UTF-8-ish; be forgiving.
    with path.open("r", encoding="utf-8", errors="replace", newline="") as f:
        reader = csv.reader(f)
        next(reader, None)  # header
        for row in reader:
            yield from row


def load_reference_corpus(folder: Path) -> List[ReferenceEntry]:
    """
    Flatten every cell of every *.csv file in `folder` into a ReferenceEntry.
    Raises ConfigurationError when there is nothing to match against.
    """
    folder = Path(folder)
    if not folder.is_dir():
        raise ConfigurationError(f"Reference folder not found: {folder}")

    files = sorted(p for p in folder.iterdir() if p.is_file() and p.suffix.lower() == ".csv")
    if not files:
        raise ConfigurationError(f"No CSV files found in {folder}")

    entries: List[ReferenceEntry] = []
    for path in files:
        before = len(entries)
        for value in _iter_csv_values(path):
            if value.strip() == OFAC_NULL_PLACEHOLDER:
                continue
            name = normalize_text(value)
            if not name:
                continue
            entries.append(
                ReferenceEntry(
                    entry_id=f"entry_{len(entries) + 1}",
                    name=name,
                    tokens=tuple(name.split(" ")),
                )
            )
        logger.debug("Loaded %d entries from %s", len(entries) - before, path.name)

    if not entries:
        raise ConfigurationError(f"No entries loaded from CSV files in {folder}")

    logger.info("Loaded %d reference entries from %d file(s)", len(entries), len(files))
    return entries


def _pick_subject_name(row: pd.Series, columns: Sequence[str]) -> str:
    for col in columns:
        v = row.get(col)
        if v is None or (isinstance(v, float) and math.isnan(v)):
            continue
        s = str(v).strip()
        if s:
            return s
    return ""


def load_subjects(path: Path, name_columns: Sequence[str] = SUBJECT_NAME_COLUMNS) -> List[Subject]:
    """
    One Subject per row of the first sheet, in order. Rows without any of the
    name columns keep an empty name rather than being dropped.
    """
    path = Path(path)
    if path.suffix.lower() == ".csv":
        df = pd.read_csv(path, dtype=object, keep_default_na=False, skip_blank_lines=False)
    else:
        df = pd.read_excel(path, sheet_name=0, dtype=object)

    subjects = []
    for _, row in df.iterrows():
        name = _pick_subject_name(row, name_columns)
        subjects.append(Subject(display_name=name, tokens=tokenize(name)))
    return subjects


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

def search_name(tokens: Sequence[str], corpus: Sequence[ReferenceEntry]) -> List[MatchResult]:
    """
    Entries where every subject token is a prefix of some entry token, in corpus order.

    Coverage is one-directional: "SMIT" matches "SMITHSON" but "SMITHSON" does not
    match "SMIT". A subject with no tokens matches nothing.
    """
    if not tokens:
        return []

    results: List[MatchResult] = []
    for entry in corpus:
        matched = sum(1 for p in tokens if any(t.startswith(p) for t in entry.tokens))
        score = matched / len(tokens)
        if score == 1:
            results.append(MatchResult(entry_id=entry.entry_id, matched_name=entry.name, score=score))
    return results


def match_name(name: str, corpus: Sequence[ReferenceEntry]) -> List[MatchResult]:
    return search_name(tokenize(name), corpus)


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------

class ProgressReporter:
    """
    Fire-and-forget progress channel for one run. Without a listener events are
    dropped; a failing listener is logged and never reaches the pipeline.
    Each subject sends one event per phase, so `current` repeats within a
    subject and only increases between subjects.
    """

    def __init__(self, listener: Optional[ProgressListener] = None):
        self._listener = listener
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def emit(self, current: int, total: int, subject_name: str, status: str) -> None:
        if self._finished:
            logger.debug("Progress event after done dropped: %s", status)
            return
        self._send(ProgressEvent(current=current, total=total, subject_name=subject_name, status=status))

    def finish(self, artifact_location: Optional[str] = None, error: Optional[str] = None) -> None:
        if self._finished:
            return
        self._finished = True
        self._send(ProgressEvent(done=True, artifact_location=artifact_location, error=error))

    def _send(self, event: ProgressEvent) -> None:
        if self._listener is None:
            return
        try:
            self._listener(event)
        except Exception:
            logger.warning("Progress listener raised; event dropped", exc_info=True)


class QueueProgressListener:
    """
    Hands events to another thread. put_nowait on an unbounded queue never blocks
    the screening loop; events() ends after the done event.
    """

    def __init__(self):
        self._queue: "queue.Queue[ProgressEvent]" = queue.Queue()

    def __call__(self, event: ProgressEvent) -> None:
        self._queue.put_nowait(event)

    def events(self, timeout: Optional[float] = None) -> Iterator[ProgressEvent]:
        while True:
            event = self._queue.get(timeout=timeout)
            yield event
            if event.done:
                return


class TqdmProgressListener:
    def __init__(self, desc: str = "Screening"):
        self._desc = desc
        self._bar: Optional[tqdm] = None
        self._last = 0

    def __call__(self, event: ProgressEvent) -> None:
        if event.done:
            if self._bar is not None:
                self._bar.close()
            return
        if self._bar is None:
            self._bar = tqdm(total=event.total, unit="name", desc=self._desc, file=sys.stderr)
        if event.current > self._last:
            self._bar.update(event.current - self._last)
            self._last = event.current
        self._bar.set_postfix_str(event.subject_name[:30])


# ---------------------------------------------------------------------------
# Evidence capture
# ---------------------------------------------------------------------------

@dataclass
class BrowserSession:
    playwright: object
    browser: object
    page: object

    def close(self) -> None:
        try:
            self.browser.close()
        finally:
            self.playwright.stop()


def launch_browser_session(config: CheckerConfig) -> BrowserSession:
    playwright = sync_playwright().start()
    try:
        browser = playwright.chromium.launch(headless=config.headless, args=CHROMIUM_ARGS)
        page = browser.new_page()
        page.set_default_timeout(config.step_timeout_ms)
    except Exception:
        playwright.stop()
        raise
    return BrowserSession(playwright=playwright, browser=browser, page=page)


class EvidenceCapturer:
    """
    Owns the run's single browser page and takes one screenshot per subject.

    The page is reused across subjects, so the protocol always navigates fresh and
    clears the search field first. Any step failing for a subject is logged and
    yields no screenshot; the next subject proceeds on the same page.
    """

    def __init__(
        self,
        config: CheckerConfig,
        session_factory: Callable[[CheckerConfig], BrowserSession] = launch_browser_session,
    ):
        self._config = config
        self._session_factory = session_factory
        self._session: Optional[BrowserSession] = None

    def __enter__(self) -> "EvidenceCapturer":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def start(self) -> None:
        if self._session is not None:
            return
        logger.info("Starting browser session")
        try:
            self._session = self._session_factory(self._config)
        except Exception as e:
            raise ExternalServiceError(f"Browser session failed to start: {e}") from e

    def close(self) -> None:
        if self._session is None:
            return
        session, self._session = self._session, None
        try:
            session.close()
        except Exception:
            logger.warning("Browser session did not close cleanly", exc_info=True)

    def capture(self, subject_index: int, name: str, path: Path) -> Optional[Path]:
        if self._session is None:
            raise RuntimeError("capture() called before start()")
        try:
            self._run_protocol(self._session.page, name, path)
        except PerSubjectCaptureError as e:
            logger.warning(
                "Screenshot failed for subject #%d %r at step %r: %s",
                subject_index, name, e.step, e.__cause__,
            )
            with contextlib.suppress(OSError):
                path.unlink()
            return None
        return path

    @contextlib.contextmanager
    def _step(self, name: str, step: str) -> Iterator[None]:
        try:
            yield
        except Exception as e:
            raise PerSubjectCaptureError(name, step, e) from e

    def _run_protocol(self, page, name: str, path: Path) -> None:
        cfg = self._config
        with self._step(name, "navigate"):
            page.goto(cfg.target_url, wait_until="networkidle")
        with self._step(name, "clear"):
            page.fill(cfg.input_selector, "")
        with self._step(name, "submit"):
            page.fill(cfg.input_selector, name)
            page.click(cfg.submit_selector)
        with self._step(name, "wait"):
            try:
                page.wait_for_selector(cfg.results_selector, timeout=cfg.results_wait_ms)
            except PlaywrightTimeoutError:
                logger.info("No results table appeared for %r, continuing", name)
        with self._step(name, "screenshot"):
            page.screenshot(path=str(path), full_page=True)


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def format_matches(
    matches: Sequence[MatchResult],
    *,
    max_length: int = MAX_CELL_LENGTH,
    subject: str = "",
) -> str:
    s = MATCH_SEPARATOR.join(f"{m.matched_name} (score: {m.score:.2f})" for m in matches)
    if len(s) > max_length:
        warnings.warn(
            f"Matches for {subject!r} truncated from {len(s)} to {max_length} characters",
            OutputTruncationWarning,
            stacklevel=2,
        )
        s = s[:max_length] + TRUNCATION_MARKER
    return s


def build_report_row(
    subject: Subject,
    matches: Sequence[MatchResult],
    evidence: EvidenceRecord,
    run: RunContext,
    *,
    max_length: int = MAX_CELL_LENGTH,
) -> ReportRow:
    link = None
    if evidence.screenshot_path is not None:
        rel = evidence.screenshot_path.relative_to(run.root).as_posix()
        link = Hyperlink(text=SCREENSHOT_LINK_TEXT, target=rel)
    return ReportRow(
        publisher=subject.display_name,
        match_status=STATUS_MATCH if matches else STATUS_CLEAR,
        match_count=len(matches),
        matches=format_matches(matches, max_length=max_length, subject=subject.display_name),
        screenshot=link,
    )


def _excel_text(s: str) -> str:
    return ILLEGAL_CHARACTERS_RE.sub("", s)


def write_report(rows: Sequence[ReportRow], path: Path) -> Path:
    """
    Single sheet, five columns. Screenshot cells get real hyperlink metadata so
    they stay clickable in Excel; pandas writes the table, openpyxl adds the links.
    Control characters are dropped and Publisher/Matches are stored as text, never
    as formulas.
    """
    df = pd.DataFrame(
        [
            {
                "Publisher": _excel_text(r.publisher),
                "MatchStatus": r.match_status,
                "MatchCount": r.match_count,
                "Matches": _excel_text(r.matches),
                "Screenshot": r.screenshot.text if r.screenshot else "",
            }
            for r in rows
        ],
        columns=REPORT_COLUMNS,
    )
    df.to_excel(path, index=False, sheet_name=REPORT_SHEET_NAME, engine="openpyxl")

    wb = load_workbook(path)
    ws = wb[REPORT_SHEET_NAME]
    text_cols = [REPORT_COLUMNS.index("Publisher") + 1, REPORT_COLUMNS.index("Matches") + 1]
    col = REPORT_COLUMNS.index("Screenshot") + 1
    for i, r in enumerate(rows, start=2):
        for c in text_cols:
            cell = ws.cell(row=i, column=c)
            if isinstance(cell.value, str):
                cell.data_type = "s"
        if r.screenshot is None:
            continue
        cell = ws.cell(row=i, column=col)
        cell.value = r.screenshot.text
        cell.hyperlink = r.screenshot.target
        cell.style = "Hyperlink"
    wb.save(path)
    return path


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def create_run_context(output_root: Path, *, save_responses: bool, now: Optional[dt.datetime] = None) -> RunContext:
    now = now or dt.datetime.now(dt.timezone.utc)
    stamp = now.strftime("%Y-%m-%dT%H-%M-%S-%f")[:-3] + "Z"
    root = Path(output_root) / f"OFAC Results {stamp}"
    # exist_ok=False: a run directory is never reused.
    root.mkdir(parents=True, exist_ok=False)
    screenshots = root / "screenshots"
    screenshots.mkdir()
    responses = None
    if save_responses:
        responses = root / "responses"
        responses.mkdir()
    return RunContext(root=root, screenshots_dir=screenshots, responses_dir=responses)


_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_-]+")


def artifact_stem(name: str, ordinal: int) -> str:
    safe = _UNSAFE_FILENAME_CHARS.sub("_", name).strip("_")[:80] or "subject"
    return f"{safe}_{ordinal}"


def _write_response(run: RunContext, stem: str, matches: Sequence[MatchResult]) -> Optional[Path]:
    if run.responses_dir is None:
        return None
    path = run.responses_dir / f"{stem}.json"
    payload = [{"id": m.entry_id, "matchedName": m.matched_name, "score": m.score} for m in matches]
    try:
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    except OSError as e:
        logger.warning("Could not write match JSON %s: %s", path.name, e)
        return None
    return path


def _screen_subject(
    ordinal: int,
    total: int,
    subject: Subject,
    corpus: Sequence[ReferenceEntry],
    capturer: EvidenceCapturer,
    run: RunContext,
    config: CheckerConfig,
    reporter: ProgressReporter,
) -> ReportRow:
    name = subject.display_name
    reporter.emit(ordinal, total, name, f'Processing "{name}" ({ordinal}/{total})...')
    logger.info('Processing "%s" (%d/%d)...', name, ordinal, total)

    matches = search_name(subject.tokens, corpus)
    stem = artifact_stem(name, ordinal)

    screenshot = response = None
    if matches or not config.capture_matches_only:
        response = _write_response(run, stem, matches)
        reporter.emit(ordinal, total, name, f'Taking OFAC screenshot for "{name}"')
        screenshot = capturer.capture(ordinal, name, run.screenshots_dir / f"{stem}.png")

    evidence = EvidenceRecord(subject_index=ordinal, screenshot_path=screenshot, response_path=response)
    return build_report_row(subject, matches, evidence, run, max_length=config.max_cell_length)


def run_checker(
    subjects_path: Path,
    output_root: Path,
    *,
    config: Optional[CheckerConfig] = None,
    progress: Optional[ProgressListener] = None,
    session_factory: Callable[[CheckerConfig], BrowserSession] = launch_browser_session,
) -> Path:
    """
    Screen every subject in `subjects_path` and return the run directory holding
    OFAC_Results.xlsx, screenshots/ and (optionally) responses/.

    Subjects are processed one at a time on a single browser page. Only a missing
    corpus (ConfigurationError) or a browser that will not start
    (ExternalServiceError) aborts the run; the progress listener always receives
    exactly one done event, last.
    """
    config = config or CheckerConfig()
    reporter = ProgressReporter(progress)
    try:
        corpus = load_reference_corpus(config.reference_dir)
        subjects = load_subjects(subjects_path, config.subject_name_columns)
        run = create_run_context(output_root, save_responses=config.save_responses)
        total = len(subjects)

        rows: List[ReportRow] = []
        with EvidenceCapturer(config, session_factory=session_factory) as capturer:
            for ordinal, subject in enumerate(subjects, start=1):
                rows.append(_screen_subject(ordinal, total, subject, corpus, capturer, run, config, reporter))

        write_report(rows, run.report_path)
    except Exception as e:
        reporter.finish(error=str(e))
        raise

    logger.info("Screening complete. Results saved in folder: %s", run.root)
    reporter.finish(artifact_location=str(run.root))
    return run.root


# ---------------------------------------------------------------------------
# Reference list download
# ---------------------------------------------------------------------------

def _http_get(url: str, *, timeout: int, user_agent: str, desc: str = "Downloading") -> bytes:
    response = requests.get(
        url,
        timeout=timeout,
        headers={
            "User-Agent": user_agent,
            "Accept": "*/*",
        },
        stream=True,
    )
    response.raise_for_status()

    total_size = int(response.headers.get("content-length", 0))
    block_size = 1024 * 8
    buffer = io.BytesIO()

    with tqdm(total=total_size, unit="iB", unit_scale=True, desc=desc, leave=False) as pbar:
        for chunk in response.iter_content(block_size):
            pbar.update(len(chunk))
            buffer.write(chunk)

    return buffer.getvalue()


def _with_header(blob: bytes, columns: Sequence[str]) -> bytes:
    header = ",".join(columns) + "\r\n"
    return header.encode("utf-8") + blob


def fetch_reference_lists(
    reference_dir: Path,
    *,
    timeout: int = 90,
    user_agent: str = DEFAULT_USER_AGENT,
    files: Optional[Dict[str, List[str]]] = None,
) -> Dict:
    """
    Download the SDN primary and alias CSVs into `reference_dir` and write
    manifest.json (url, sha256, size of each raw download). Returns the manifest.
    """
    files = REFERENCE_FILES if files is None else files
    reference_dir = Path(reference_dir)
    reference_dir.mkdir(parents=True, exist_ok=True)

    fetched: Dict[str, Dict[str, str]] = {}
    for fname, columns in files.items():
        url = f"{SLS_DOWNLOAD_BASE}/{fname}"
        blob = _http_get(url, timeout=timeout, user_agent=user_agent, desc=fname)
        (reference_dir / fname).write_bytes(_with_header(blob, columns))
        fetched[fname] = {
            "url": url,
            "sha256": _sha256_bytes(blob),
            "bytes": str(len(blob)),
        }
        logger.info("Downloaded %s (%d bytes)", fname, len(blob))

    manifest = {"created_at_utc": _utc_now_iso(), "files": fetched}
    (reference_dir / "manifest.json").write_text(json.dumps(manifest, indent=2, sort_keys=True), encoding="utf-8")
    return manifest


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _config_from_args(args: argparse.Namespace) -> CheckerConfig:
    config = CheckerConfig(reference_dir=Path(args.reference_dir))
    if args.cmd != "run":
        return config
    return replace(
        config,
        save_responses=not args.no_responses,
        capture_matches_only=args.matches_only,
        results_wait_ms=args.results_wait_ms,
        headless=not args.headed,
    )


def main(argv: List[str]) -> int:
    p = argparse.ArgumentParser(
        prog="ofac-checker",
        description="Screen publisher names against OFAC lists and capture search-page evidence",
    )
    p.add_argument("--reference-dir", default=str(DEFAULT_REFERENCE_DIR),
                   help="Folder of reference CSV files (default: ./data)")
    p.add_argument("-v", "--verbose", action="store_true")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_fe = sub.add_parser("fetch", help="Download OFAC SDN + ALT lists into the reference folder")
    p_fe.add_argument("--timeout", type=int, default=120)
    p_fe.add_argument("--user-agent", default=DEFAULT_USER_AGENT)

    p_ma = sub.add_parser("match", help="Print reference matches for one name")
    p_ma.add_argument("name")
    p_ma.add_argument("--json", action="store_true", help="Emit matches as JSON")

    p_run = sub.add_parser("run", help="Screen a spreadsheet of names and build the report")
    p_run.add_argument("subjects", help="Spreadsheet (.xlsx, first sheet) or .csv of names")
    p_run.add_argument("--output-dir", default=".", help="Where the timestamped results folder is created")
    p_run.add_argument("--no-responses", action="store_true", help="Skip raw match JSON files")
    p_run.add_argument("--matches-only", action="store_true", help="Only capture screenshots for matched names")
    p_run.add_argument("--results-wait-ms", type=int, default=RESULTS_WAIT_MS)
    p_run.add_argument("--headed", action="store_true", help="Show the browser window")

    args = p.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )
    config = _config_from_args(args)

    if args.cmd == "fetch":
        try:
            manifest = fetch_reference_lists(config.reference_dir, timeout=args.timeout, user_agent=args.user_agent)
        except Exception as e:
            print(f"ERROR fetch: {e}", file=sys.stderr)
            return 1
        for fname, meta in sorted(manifest["files"].items()):
            print(f"{fname}  {meta['bytes']} bytes  sha256={meta['sha256'][:12]}")
        return 0

    if args.cmd == "match":
        try:
            corpus = load_reference_corpus(config.reference_dir)
        except Exception as e:
            print(f"ERROR match: {e}", file=sys.stderr)
            return 1
        matches = match_name(args.name, corpus)

        if args.json:
            print(json.dumps({
                "timestamp_utc": _utc_now_iso(),
                "input": {"name": args.name, "normalized": normalize_text(args.name)},
                "status": STATUS_MATCH if matches else STATUS_CLEAR,
                "matches": [asdict(m) for m in matches],
            }, indent=2))
            return 0

        print(f"\n{'='*70}")
        print(f"SCREENING RESULT")
        print(f"{'='*70}")
        print(f"  Query:       {args.name}")
        print(f"  Normalized:  {normalize_text(args.name)}")
        print(f"  Corpus:      {len(corpus)} entries")
        print(f"  Status:      {STATUS_MATCH if matches else STATUS_CLEAR}")
        print(f"  Matches:     {len(matches)}")
        print(f"{'='*70}")
        for m in matches:
            print(f"  [{m.entry_id}] {m.matched_name}")
        print()
        return 0

    if args.cmd == "run":
        try:
            out = run_checker(
                Path(args.subjects),
                Path(args.output_dir),
                config=config,
                progress=TqdmProgressListener(),
            )
        except Exception as e:
            print(f"ERROR run: {e}", file=sys.stderr)
            return 1
        print(out)
        return 0

    return 2


def cli() -> int:
    return main(sys.argv[1:])


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
