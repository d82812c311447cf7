#!/usr/bin/env python3
"""
Sheet Fetcher — CSV export retrieval with per-source isolation
==============================================================
Every sheet is fetched independently: one failing source never blocks the
others.  Transport faults are retried with exponential backoff
(1s, then 2s); permanent faults (HTML login page, 401/403/404, missing
local file) fail immediately.

Two interchangeable sources share the ``fetch_text(sheet)`` interface:

  * ``GoogleSheetSource`` — published-spreadsheet CSV export over HTTPS
  * ``LocalSheetSource``  — a directory of ``<Sheet>.csv`` files (offline)
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

import requests

from schemas import DashboardConfig, SheetsConfig
from sheet_parser import looks_like_html

log = logging.getLogger("dashboard.fetch")

_NON_RETRYABLE_STATUS = (400, 401, 403, 404)


class SheetFetchError(Exception):
    """A sheet could not be retrieved (network, permission, missing file)."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class SheetFormatError(SheetFetchError):
    """The response was an HTML page instead of CSV."""

    def __init__(self, message: str):
        super().__init__(message, retryable=False)


def build_csv_url(sheet: str, sheets_cfg: SheetsConfig) -> str:
    """CSV export URL for a logical sheet name (KeyError when unknown)."""
    if sheet not in sheets_cfg.gids:
        raise KeyError(f"Unknown sheet: {sheet}")
    return sheets_cfg.export_url.format(
        spreadsheet_id=sheets_cfg.spreadsheet_id, gid=sheets_cfg.gids[sheet])


def check_response_text(sheet: str, text: str) -> str:
    """Reject HTML; an empty body is logged and returned as ``""``."""
    if not text or not text.strip():
        log.warning(f"Sheet '{sheet}' returned empty response",
                    extra={"source": sheet})
        return ""
    if looks_like_html(text):
        raise SheetFormatError(
            f"Sheet '{sheet}' returned HTML instead of CSV. "
            "Check that the spreadsheet is published to the web.")
    return text


# =========================================================================
# A. Sources
# =========================================================================
class GoogleSheetSource:
    """Fetches published CSV exports over HTTPS."""

    def __init__(self, cfg: DashboardConfig, session: requests.Session | None = None):
        self.cfg = cfg
        self.session = session or requests.Session()

    def fetch_text(self, sheet: str) -> str:
        url = build_csv_url(sheet, self.cfg.sheets)
        try:
            resp = self.session.get(url, timeout=self.cfg.fetch.timeout_seconds)
        except requests.RequestException as exc:
            raise SheetFetchError(f"Sheet '{sheet}': {exc}") from exc
        if resp.status_code in _NON_RETRYABLE_STATUS:
            raise SheetFetchError(
                f"Sheet '{sheet}': HTTP {resp.status_code}", retryable=False)
        if not resp.ok:
            raise SheetFetchError(f"Sheet '{sheet}': HTTP {resp.status_code}")
        resp.encoding = "utf-8"
        return check_response_text(sheet, resp.text)


class LocalSheetSource:
    """Reads ``<csv_dir>/<Sheet>.csv``; a missing file fails that sheet only."""

    def __init__(self, csv_dir: str | Path):
        self.csv_dir = Path(csv_dir)

    def fetch_text(self, sheet: str) -> str:
        path = self.csv_dir / f"{sheet}.csv"
        if not path.exists():
            raise SheetFetchError(f"Sheet '{sheet}': {path} not found", retryable=False)
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise SheetFetchError(f"Sheet '{sheet}': cannot read {path}: {exc}",
                                  retryable=False) from exc
        return check_response_text(sheet, text)


# =========================================================================
# B. Retry + concurrent fan-out
# =========================================================================
def fetch_with_retry(source, sheet: str, max_retries: int = 3) -> str:
    """Fetch one sheet, retrying transport faults with exponential backoff."""
    t_start = time.time()
    last_err = None
    for attempt in range(max_retries):
        try:
            text = source.fetch_text(sheet)
            log.debug(f"Fetched {sheet}", extra={
                "source": sheet,
                "fetch_time_ms": round((time.time() - t_start) * 1000)})
            return text
        except SheetFetchError as exc:
            last_err = exc
            if not exc.retryable:
                raise
            log.warning(f"Fetch attempt {attempt + 1}/{max_retries} failed: {exc}",
                        extra={"source": sheet})
        if attempt < max_retries - 1:
            time.sleep(2 ** attempt)
    raise SheetFetchError(f"Failed after {max_retries} retries: {last_err}")


def fetch_all(source, sheets: list[str], max_workers: int = 6,
              max_retries: int = 3) -> tuple[dict[str, str], dict[str, str]]:
    """Fetch every sheet concurrently.

    Returns ``(texts, errors)``.  A failed sheet maps to ``""`` in
    ``texts`` and its message in ``errors``; the others are unaffected.
    """
    texts: dict[str, str] = {}
    errors: dict[str, str] = {}
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futs = {pool.submit(fetch_with_retry, source, s, max_retries): s for s in sheets}
        for fut in as_completed(futs):
            sheet = futs[fut]
            try:
                texts[sheet] = fut.result()
            except (SheetFetchError, KeyError) as exc:
                log.error(f"Sheet fetch failed: {exc}", extra={"source": sheet})
                texts[sheet] = ""
                errors[sheet] = str(exc)
            except Exception as exc:
                log.exception(f"Sheet fetch crashed: {exc}", extra={"source": sheet})
                texts[sheet] = ""
                errors[sheet] = f"{type(exc).__name__}: {exc}"
    return {s: texts[s] for s in sheets}, errors
