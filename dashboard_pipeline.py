#!/usr/bin/env python3
"""
Dashboard Pipeline — one refresh cycle
=======================================
fetch all sheets (concurrently, isolated per source)
  -> parse each into a Table
  -> build the market / sector / screener / portfolio views
  -> DashboardSnapshot

Each view is built inside its own guard: an exception in one view is
logged, recorded in ``snapshot.view_errors`` and the remaining views still
complete.  A refresh requested while another is in flight is ignored.
"""

import logging
import threading
from datetime import datetime
from pathlib import Path

import yaml

from exposure_engine import (
    build_sector_history_map,
    calc_exposure,
    derive_phase,
    extract_breadth,
    latest_breadth_date,
    normalize_sector_rows,
    phase_distribution,
    phase_label,
    sort_sectors,
    split_index_rows,
)
from instrumentation import EventLog, trace_event, trace_fetch
from normalizers import display_str
from portfolio_sections import parse_portfolio
from schemas import DashboardConfig, DashboardSnapshot, ViewState
from screener_engine import (
    ALL,
    available_dates,
    build_ticker_map,
    overlap_entries,
    screen_summary,
    sector_chips,
    slice_history,
    table_columns,
    view_rows,
)
from sheet_fetcher import GoogleSheetSource, fetch_all
from sheet_parser import parse_csv

ROOT = Path(__file__).resolve().parent
CONFIG_PATH = ROOT / "config.yaml"

log = logging.getLogger("dashboard.pipeline")

TODAY = "today"


def load_config(path: Path = CONFIG_PATH) -> DashboardConfig:
    """Load and validate config.yaml (an empty file yields the defaults)."""
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return DashboardConfig(**raw)


class DashboardPipeline:
    """Owns the latest snapshot and the single-flight refresh guard."""

    def __init__(self, cfg: DashboardConfig, source=None,
                 events: EventLog | None = None):
        self.cfg = cfg
        self.source = source or GoogleSheetSource(cfg)
        self.events = events or EventLog()
        self.snapshot: DashboardSnapshot | None = None
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def sheet_names(self) -> list[str]:
        s = self.cfg.sheets
        return [s.index_sheet, s.sector_sheet, s.sector_history_sheet,
                *self.cfg.screen_keys, s.history_sheet, s.portfolio_sheet]

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------
    def refresh(self) -> DashboardSnapshot | None:
        """Run one refresh; returns None if a refresh is already running."""
        if not self._lock.acquire(blocking=False):
            log.info("Refresh already in progress, request ignored")
            return None
        try:
            self.snapshot = self._refresh()
            return self.snapshot
        finally:
            self._lock.release()

    def _fetch(self) -> tuple[dict[str, str], dict[str, list[dict]], dict[str, str]]:
        names = self.sheet_names()
        with trace_event(self.events, "FETCH", "Fetch all sheets",
                         details=f"{len(names)} sheets"):
            texts, errors = fetch_all(self.source, names,
                                      max_workers=self.cfg.fetch.max_workers,
                                      max_retries=self.cfg.fetch.max_retries)
        for name in names:
            trace_fetch(self.events, name, nbytes=len(texts.get(name, "")),
                        error=errors.get(name, ""))

        tables: dict[str, list[dict]] = {}
        with trace_event(self.events, "PARSE", "Parse sheet tables"):
            for name, text in texts.items():
                if name == self.cfg.sheets.portfolio_sheet:
                    continue
                tables[name] = parse_csv(text) if text else []
                log.debug(f"{name}: {len(tables[name])} rows",
                          extra={"source": name, "rows": len(tables[name])})
        return texts, tables, errors

    def _refresh(self) -> DashboardSnapshot:
        texts, tables, fetch_errors = self._fetch()
        s = self.cfg.sheets

        index_rows = tables.get(s.index_sheet, [])
        sectors = normalize_sector_rows(tables.get(s.sector_sheet, []))
        scorecard, breadth_rows = split_index_rows(index_rows)

        snap: dict = {
            "refreshed_at": datetime.now(),
            "view_date": display_str(latest_breadth_date(breadth_rows)) or None,
            "fetch_errors": fetch_errors,
            "view_errors": {},
        }

        self._build_view(snap, "market", self._market_view,
                         index_rows, scorecard, breadth_rows, sectors)
        self._build_view(snap, "sector", self._sector_view,
                         sectors, tables.get(s.sector_history_sheet, []))
        self._build_view(snap, "screener", self._screener_view, tables)
        self._build_view(snap, "portfolio", self._portfolio_view,
                         texts.get(s.portfolio_sheet, ""))

        snapshot = DashboardSnapshot(**snap)
        log.info(f"Refresh complete: {len(fetch_errors)} fetch error(s), "
                 f"{len(snapshot.view_errors)} view error(s)",
                 extra={"step": "refresh"})
        return snapshot

    def _build_view(self, snap: dict, view: str, build, *args):
        try:
            with trace_event(self.events, "CALC", f"Build {view} view"):
                snap.update(build(*args))
        except Exception as exc:
            log.exception(f"{view} view failed", extra={"view": view})
            snap["view_errors"][view] = f"{type(exc).__name__}: {exc}"

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    def _market_view(self, index_rows, scorecard, breadth_rows, sectors) -> dict:
        breadth = extract_breadth(index_rows)
        exposure = calc_exposure(scorecard, breadth, sectors,
                                 self.cfg.exposure, self.cfg.phase)
        log.info(f"Exposure {exposure.score} ({exposure.label.value})",
                 extra={"view": "market"})
        return {"scorecard": scorecard, "breadth_rows": breadth_rows,
                "breadth": breadth, "exposure": exposure}

    def _sector_view(self, sectors, history_rows) -> dict:
        ordered = []
        for row in sort_sectors(sectors, "rank", self.cfg.phase):
            phase = derive_phase(row, self.cfg.phase)
            ordered.append({**row, "Phase": phase, "PhaseLabel": phase_label(phase)})
        return {
            "sectors": ordered,
            "phase_distribution": phase_distribution(sectors, self.cfg.phase),
            "sector_history": build_sector_history_map(history_rows),
        }

    def _screener_view(self, tables) -> dict:
        s = self.cfg.sheets
        screen_data = {k: tables.get(k, []) for k in self.cfg.screen_keys}
        ticker_map = build_ticker_map(screen_data, self.cfg.screen_keys)
        history_rows = tables.get(s.history_sheet, [])
        return {
            "screen_data": screen_data,
            "ticker_map": ticker_map,
            "overlaps": overlap_entries(ticker_map),
            "sector_chips": sector_chips(screen_data),
            "history_rows": history_rows,
            "available_dates": available_dates(
                history_rows, tables.get(s.sector_history_sheet, [])),
        }

    def _portfolio_view(self, text: str) -> dict:
        return {"portfolio": parse_portfolio(text) if text else {}}

    # ------------------------------------------------------------------
    # Screener interactions
    # ------------------------------------------------------------------
    def select_date(self, date: str = TODAY) -> dict[str, list[dict]]:
        """Screen data for ``today`` (live) or a historical date.

        A historical date with no rows gives an empty mapping.
        """
        if self.snapshot is None:
            return {}
        if date == TODAY:
            return self.snapshot.screen_data
        return slice_history(self.snapshot.history_rows, date)

    def screener_table(self, state: ViewState | None = None,
                       date: str = TODAY) -> dict:
        """Rows, columns and summary for one screener view state."""
        state = state or ViewState(screen=ALL)
        screen_data = self.select_date(date)
        ticker_map = build_ticker_map(screen_data, self.cfg.screen_keys)
        rows = view_rows(state, screen_data, ticker_map, self.cfg)
        return {
            "rows": rows,
            "columns": table_columns(state, rows, self.cfg),
            "summary": screen_summary(state, screen_data, ticker_map, self.cfg),
        }
