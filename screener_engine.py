#!/usr/bin/env python3
"""
Screener Engine — Cross-Screen Reconciliation, Filtering and Sorting
=====================================================================
Works on the per-screen Tables (``{"St_Momentum": [rows], ...}``):

  * ``build_ticker_map``  — which screens each ticker appeared in
  * ``reconcile``         — one merged row per ticker for the ALL view;
                            first source wins, later sources only fill
                            empty fields
  * ``entry_score``       — 0-4 count of satisfied entry criteria
  * ``view_rows``         — sector filter -> text search -> sort, driven by
                            an immutable ``ViewState``
  * history re-slicing by date for the date picker

Nothing here mutates its inputs; every call builds fresh structures.
"""

import logging
import unicodedata
from functools import cmp_to_key

import numpy as np
import pandas as pd

from normalizers import (
    FIELD_ALIASES,
    display_str,
    get_field,
    is_blank,
    is_truthy,
    lenient_float,
    strip_formula,
)
from schemas import DashboardConfig, EntryConfig, OverlapEntry, ViewState

log = logging.getLogger("dashboard.screener")

ALL = "ALL"
SCREEN_KEY_FIELD = "_screen_key"
SCREENS_FIELD = "_screens"
SCREEN_COUNT_FIELD = "_screen_count"

# Named default sorts (used when no header column sort is active)
DEFAULT_SORTS = {
    "rs21-desc": ("RS21", True),
    "rs21-asc": ("RS21", False),
    "change-desc": ("DAY%", True),
    "change-asc": ("DAY%", False),
}

_ENTRY_FIELDS = ("adr", "atr_21ema", "dist_21ema_entry", "atr_50sma")


# =========================================================================
# A. Entry criteria
# =========================================================================
def entry_metrics(row: dict) -> dict[str, float | None]:
    """The four entry metrics, each from its first present alias header."""
    return {f: lenient_float(get_field(row, f)) for f in _ENTRY_FIELDS}


def entry_score(row: dict, cfg: EntryConfig | None = None) -> int:
    """Count (0-4) of entry range checks the row satisfies.

    A missing metric only fails its own check.
    """
    cfg = cfg or EntryConfig()
    m = entry_metrics(row)
    checks = (
        (m["adr"], cfg.adr),
        (m["atr_21ema"], cfg.atr_21ema),
        (m["dist_21ema_entry"], cfg.dist_21ema),
        (m["atr_50sma"], cfg.atr_50sma),
    )
    return sum(1 for v, rng in checks if v is not None and rng.ok(v))


def entry_tier(score: int, cfg: EntryConfig | None = None) -> str | None:
    """``"ready"`` at the highlight threshold, ``"watch"`` just below, else None."""
    cfg = cfg or EntryConfig()
    if score >= cfg.highlight_min:
        return "ready"
    if score >= cfg.watch_min and score >= 2:
        return "watch"
    return None


def has_entry_data(rows: list[dict]) -> bool:
    return any(get_field(r, f) is not None for r in rows for f in _ENTRY_FIELDS)


# =========================================================================
# B. Cross-source reconciler
# =========================================================================
def source_order(screen_data: dict, keys: list[str] | None = None) -> list[str]:
    """Configured screen keys first (in config order), then any extras."""
    keys = list(keys or [])
    ordered = [k for k in keys if k in screen_data]
    ordered += [k for k in screen_data if k not in ordered]
    return ordered


def ticker_of(row: dict) -> str:
    return strip_formula(row.get("Ticker"))


def build_ticker_map(screen_data: dict, keys: list[str] | None = None) -> dict[str, OverlapEntry]:
    """Map each ticker to the screens it appears in (rebuilt from scratch)."""
    out: dict[str, OverlapEntry] = {}
    for screen_key in source_order(screen_data, keys):
        rows = screen_data.get(screen_key)
        if not isinstance(rows, list):
            continue
        for row in rows:
            ticker = ticker_of(row)
            if not ticker:
                continue
            entry = out.get(ticker)
            if entry is None:
                entry = OverlapEntry(
                    ticker=ticker,
                    display_name=strip_formula(row.get("Name")),
                    sector=display_str(row.get("Sector")),
                    representative_row=dict(row),
                )
                out[ticker] = entry
            if screen_key not in entry.screens:
                entry.screens.append(screen_key)
    return out


def reconcile(screen_data: dict, keys: list[str] | None = None) -> list[dict]:
    """Deduplicated ALL view: one row per ticker, first-source-wins.

    A later source only fills fields that are still null/empty on the
    accumulated row; populated values are never overwritten.  Each merged
    row is annotated with its source screens and their count.
    """
    merged: dict[str, dict] = {}
    screens: dict[str, list[str]] = {}
    for screen_key in source_order(screen_data, keys):
        rows = screen_data.get(screen_key)
        if not isinstance(rows, list):
            continue
        for row in rows:
            ticker = ticker_of(row)
            if not ticker:
                continue
            existing = merged.get(ticker)
            if existing is None:
                merged[ticker] = {**row, SCREEN_KEY_FIELD: screen_key}
                screens[ticker] = [screen_key]
                continue
            for key, value in row.items():
                if is_blank(existing.get(key)) and not is_blank(value):
                    existing[key] = value
            if screen_key not in screens[ticker]:
                screens[ticker].append(screen_key)

    out = []
    for ticker, rec in merged.items():
        rec[SCREENS_FIELD] = list(screens[ticker])
        rec[SCREEN_COUNT_FIELD] = len(screens[ticker])
        out.append(rec)
    return out


def overlap_entries(ticker_map: dict[str, OverlapEntry], min_count: int = 2) -> list[OverlapEntry]:
    """Tickers seen in ``min_count``+ screens, most screens first (stable)."""
    hits = [e for e in ticker_map.values() if e.count >= min_count]
    return sorted(hits, key=lambda e: -e.count)


# =========================================================================
# C. View state transitions
# =========================================================================
def select_screen(state: ViewState, screen: str) -> ViewState:
    return state.model_copy(update={"screen": screen, "sort_col": None, "sort_dir": None})


def select_sector(state: ViewState, sector: str | None) -> ViewState:
    return state.model_copy(update={"sector": sector})


def set_search(state: ViewState, text: str) -> ViewState:
    return state.model_copy(update={"search": text})


def set_sort_option(state: ViewState, option: str) -> ViewState:
    """Choosing a named sort clears any header-column sort."""
    return state.model_copy(update={"sort_option": option, "sort_col": None, "sort_dir": None})


def toggle_sort_column(state: ViewState, col: str) -> ViewState:
    """Same column flips direction; a new column starts descending."""
    if state.sort_col == col:
        direction = "asc" if state.sort_dir == "desc" else "desc"
    else:
        direction = "desc"
    return state.model_copy(update={"sort_col": col, "sort_dir": direction,
                                    "sort_option": "default"})


# =========================================================================
# D. Filtering and sorting
# =========================================================================
def _text_key(value) -> str:
    return unicodedata.normalize("NFKC", display_str(value)).casefold()


def filter_rows(rows: list[dict], sector: str | None = None, search: str = "") -> list[dict]:
    """Sector equality first, then case-insensitive substring search."""
    out = list(rows)
    if sector:
        out = [r for r in out if r.get("Sector") == sector]
    if search:
        q = search.lower()
        out = [r for r in out
               if q in ticker_of(r).lower()
               or q in strip_formula(r.get("Name")).lower()
               or q in display_str(r.get("Sector")).lower()]
    return out


def _column_value(row: dict, col: str, ticker_map: dict, entry_cfg: EntryConfig):
    if col in ("Ticker", "Name"):
        return strip_formula(row.get(col))
    if col == "Screens":
        entry = ticker_map.get(ticker_of(row))
        return entry.count if entry else 0
    if col == "ADR%":
        return entry_metrics(row)["adr"]
    if col == "R×21E":
        return entry_metrics(row)["atr_21ema"]
    if col == "E21L%":
        return entry_metrics(row)["dist_21ema_entry"]
    if col == "R×50S":
        return entry_metrics(row)["atr_50sma"]
    if col == "基準":
        return entry_score(row, entry_cfg)
    return row.get(col)


def sort_by_column(rows: list[dict], col: str, direction: str = "desc",
                   ticker_map: dict | None = None,
                   text_columns: tuple | list = ("Ticker", "Name", "Sector"),
                   entry_cfg: EntryConfig | None = None) -> list[dict]:
    """Header-column sort.

    Text columns use a normalised (NFKC), case-folded string compared by
    code point, not a Japanese collation: hiragana sorts before katakana,
    which sorts before kanji, and kanji follow Unicode order rather than
    reading order.  Every other
    column compares numerically with rows lacking a number placed last in
    both directions.
    """
    ticker_map = ticker_map or {}
    entry_cfg = entry_cfg or EntryConfig()
    sign = 1 if direction == "asc" else -1

    if col in text_columns:
        def cmp(a, b):
            ka = _text_key(_column_value(a, col, ticker_map, entry_cfg) or "")
            kb = _text_key(_column_value(b, col, ticker_map, entry_cfg) or "")
            return ((ka > kb) - (ka < kb)) * sign
    else:
        def cmp(a, b):
            na = lenient_float(_column_value(a, col, ticker_map, entry_cfg))
            nb = lenient_float(_column_value(b, col, ticker_map, entry_cfg))
            if na is None and nb is None:
                return 0
            if na is None:
                return 1
            if nb is None:
                return -1
            return ((na > nb) - (na < nb)) * sign

    return sorted(rows, key=cmp_to_key(cmp))


def _num_or_floor(v) -> float:
    n = lenient_float(v)
    return -9999.0 if n is None else n


def sort_by_option(rows: list[dict], option: str) -> list[dict]:
    if option not in DEFAULT_SORTS:
        return list(rows)
    col, descending = DEFAULT_SORTS[option]
    return sorted(rows, key=lambda r: _num_or_floor(r.get(col)), reverse=descending)


def view_rows(state: ViewState, screen_data: dict, ticker_map: dict,
              cfg: DashboardConfig | None = None) -> list[dict]:
    """Rows for the current tab after filter and sort."""
    cfg = cfg or DashboardConfig()
    if state.screen == ALL:
        rows = reconcile(screen_data, cfg.screen_keys)
    else:
        rows = list(screen_data.get(state.screen) or [])

    rows = filter_rows(rows, state.sector, state.search)

    if state.sort_col:
        return sort_by_column(rows, state.sort_col, state.sort_dir or "desc",
                              ticker_map=ticker_map,
                              text_columns=cfg.screener.text_columns,
                              entry_cfg=cfg.entry)
    return sort_by_option(rows, state.sort_option)


# =========================================================================
# E. Table layout and summaries
# =========================================================================
def table_columns(state: ViewState, rows: list[dict],
                  cfg: DashboardConfig | None = None) -> list[str]:
    """Base + screen-specific + entry columns + tail, with Screens second."""
    cfg = cfg or DashboardConfig()
    sc = cfg.screener
    cols = list(sc.base_columns) + list(sc.post_rs_columns)
    if state.screen != ALL:
        for s in cfg.screens:
            if s.key == state.screen:
                cols += s.columns
                break
    if has_entry_data(rows):
        cols += sc.entry_columns
    cols.append(sc.tail_column)
    cols.insert(1, "Screens")
    return cols


def screen_summary(state: ViewState, screen_data: dict, ticker_map: dict,
                   cfg: DashboardConfig | None = None) -> dict:
    cfg = cfg or DashboardConfig()
    if state.screen == ALL:
        return {
            "screen": ALL,
            "label": ALL,
            "count": len(ticker_map),
            "overlap_count": sum(1 for e in ticker_map.values() if e.count >= 2),
        }
    label = next((s.label for s in cfg.screens if s.key == state.screen), state.screen)
    return {
        "screen": state.screen,
        "label": label or state.screen,
        "count": len(screen_data.get(state.screen) or []),
        "overlap_count": None,
    }


def sector_chips(screen_data: dict) -> list[dict]:
    """Sectors across all screens with their average RS21, highest first."""
    flat = [r for rows in screen_data.values() if isinstance(rows, list)
            for r in rows if is_truthy(r.get("Sector"))]
    if not flat:
        return []
    df = pd.DataFrame({
        "Sector": [r["Sector"] for r in flat],
        "RS21": [lenient_float(r.get("RS21")) for r in flat],
    })
    df["RS21"] = pd.to_numeric(df["RS21"], errors="coerce").astype(float)
    avg = df.groupby("Sector", sort=False)["RS21"].mean().fillna(0.0)
    avg = avg.sort_values(ascending=False, kind="mergesort")
    return [{"name": name, "avg_rs": float(np.round(v, 4))} for name, v in avg.items()]


# =========================================================================
# F. History date slicing
# =========================================================================
def slice_history(history_rows: list[dict], date: str) -> dict[str, list[dict]]:
    """Regroup St_History rows for one exact Date into per-screen Tables.

    An empty mapping means no screener data exists for that date.
    """
    out: dict[str, list[dict]] = {}
    for row in history_rows or []:
        if display_str(row.get("Date")) != date:
            continue
        screen = row.get("Screen")
        if not screen:
            continue
        out.setdefault(screen, []).append(row)
    if not out:
        log.info(f"No screener history for {date}", extra={"step": "history"})
    return out


def available_dates(*tables: list[dict]) -> list[str]:
    """Distinct Date values across tables, newest (string-descending) first."""
    dates = {display_str(r.get("Date")) for t in tables for r in (t or [])
             if is_truthy(r.get("Date"))}
    return sorted(dates, reverse=True)


__all__ = [
    "ALL", "DEFAULT_SORTS", "FIELD_ALIASES",
    "available_dates", "build_ticker_map", "entry_metrics", "entry_score",
    "entry_tier", "filter_rows", "overlap_entries", "reconcile",
    "screen_summary", "sector_chips", "select_screen", "select_sector",
    "set_search", "set_sort_option", "slice_history", "sort_by_column",
    "sort_by_option", "table_columns", "toggle_sort_column", "view_rows",
]
