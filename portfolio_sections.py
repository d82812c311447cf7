#!/usr/bin/env python3
"""
Portfolio Sheet — Section Splitter and Summaries
=================================================
The Portfolio sheet is one CSV blob holding several logically separate
blocks, each introduced by a ``■`` marker row::

    ■ リスク管理      -> risk       (header/value group pairs)
    ■ エントリー計画  -> entry      (flat table)
    ■ 保有ポジション  -> positions  (flat table)
    ■ トレード履歴    -> history    (flat table)
    ■ トレード統計    -> stats      (one key/value pair per row)

Blank rows inside a section are kept as ``None`` separators; the risk
parser uses them to delimit its header/value groups.  Unrecognised
markers open an ignored section whose rows are dropped.
"""

import logging
import re

from normalizers import display_str, get_field, is_percent_string, parse_locale_number
from sheet_parser import split_csv_lines, split_row

log = logging.getLogger("dashboard.portfolio")

SECTION_MARKER = "■"
SECTION_MAP = {
    "リスク管理": "risk",
    "エントリー計画": "entry",
    "保有ポジション": "positions",
    "トレード履歴": "history",
    "トレード統計": "stats",
}
ANNOTATION_PREFIXES = ("↑", "推奨", "※")

_MARKER_SPACE_RE = re.compile(r"[\s　]")
_TABLE_DATE_RE = re.compile(r"^\d{1,2}/\d{1,2}(/\d{2,4})?$|^\d{4}[-/]\d{1,2}[-/]\d{1,2}")
_TICKER_RE = re.compile(r"^\d{4,5}$")

SUMMARY_KEYS = (
    ("投入合計", "total_invested"),
    ("利用可能", "available"),
    ("ポートフォリオリスク", "port_risk"),
    ("含み損益", "unrealized_pnl"),
)

DD_WARN_RATIO = 0.7


# =========================================================================
# A. Section splitting
# =========================================================================
def section_key(marker: str) -> str | None:
    label = _MARKER_SPACE_RE.sub("", marker)
    for jp, key in SECTION_MAP.items():
        if jp in label:
            return key
    return None


def split_sections(text: str) -> dict[str, list]:
    """Split the blob into ``{section_key: [fields | None, ...]}``.

    Each row is a list of trimmed field strings; ``None`` marks a fully
    blank row.
    """
    sections: dict[str, list] = {}
    current = None
    rows: list = []

    for line in split_csv_lines(text):
        fields = split_row(line)
        first = fields[0].strip() if fields else ""

        if first.startswith(SECTION_MARKER):
            if current:
                sections[current] = rows
            rows = []
            current = section_key(first)
            if current is None:
                log.debug(f"Ignoring unknown section {first!r}")
            continue

        if current is None:
            continue

        if all(f.strip() == "" for f in fields):
            rows.append(None)
        else:
            rows.append([f.strip() for f in fields])

    if current:
        sections[current] = rows
    return sections


# =========================================================================
# B. Section interpretations
# =========================================================================
def _number_or_text(v: str):
    n = parse_locale_number(v)
    return v if n is None else n


def _is_annotation(fields: list[str]) -> bool:
    return (fields[0] if fields else "").strip().startswith(ANNOTATION_PREFIXES)


def parse_risk(raw_rows: list | None) -> dict:
    """Key-value groups: row 1 is headers, row 2 values, the rest ignored."""
    if not raw_rows:
        return {}
    groups = []
    buf: list = []
    for r in raw_rows:
        if r is None:
            if buf:
                groups.append(buf)
            buf = []
        elif not _is_annotation(r):
            buf.append(r)
    if buf:
        groups.append(buf)

    out = {}
    for group in groups:
        if len(group) < 2:
            continue
        headers, values = group[0], group[1]
        for i, h in enumerate(headers):
            if not h:
                continue
            v = values[i] if i < len(values) else ""
            if v == "":
                out[h] = None
            elif is_percent_string(v):
                out[h] = v
            else:
                out[h] = _number_or_text(v)
    return out


def parse_table(raw_rows: list | None) -> list[dict]:
    """Flat table: first non-null row is headers, all-null records dropped."""
    if not raw_rows:
        return []
    rows = [r for r in raw_rows if r is not None]
    if len(rows) < 2:
        return []
    headers = rows[0]
    out = []
    for fields in rows[1:]:
        rec = {}
        for i, h in enumerate(headers):
            if not h:
                continue
            v = fields[i].strip() if i < len(fields) else ""
            if v == "":
                rec[h] = None
            elif _TABLE_DATE_RE.match(v) or is_percent_string(v):
                rec[h] = v
            else:
                rec[h] = _number_or_text(v)
        if any(v is not None for v in rec.values()):
            out.append(rec)
    return out


def parse_stats(raw_rows: list | None) -> dict:
    """One pair per row: field 0 is the key, field 1 the value."""
    if not raw_rows:
        return {}
    out = {}
    for fields in raw_rows:
        if fields is None:
            continue
        key = fields[0].strip() if fields else ""
        if not key:
            continue
        val = fields[1].strip() if len(fields) > 1 else ""
        out[key] = None if val == "" else _number_or_text(val)
    return out


def extract_position_summary(raw_rows: list | None) -> dict:
    """Scan the raw positions rows for labelled summary cells.

    A label cell's value is the next non-empty field on the same row.
    Header and ticker rows are skipped.
    """
    if not raw_rows:
        return {}
    summary = {}
    for fields in raw_rows:
        if not fields:
            continue
        first = fields[0].strip()
        if first == "Ticker" or _TICKER_RE.match(first):
            continue
        for i, f in enumerate(fields):
            nxt = fields[i + 1].strip() if i + 1 < len(fields) else ""
            if not nxt:
                continue
            for pattern, key in SUMMARY_KEYS:
                if pattern in f:
                    summary[key] = _number_or_text(nxt)
    return summary


# =========================================================================
# C. Summaries
# =========================================================================
def risk_overview(risk: dict) -> dict:
    """Headline risk figures plus the monthly drawdown check."""
    dd = parse_locale_number(risk.get("月間DD%"))
    limit = parse_locale_number(risk.get("月間DD上限"))
    ratio = abs(dd) / abs(limit) if dd is not None and limit else 0.0
    judge = risk.get("DD判定")
    return {
        "total_capital": parse_locale_number(get_field(risk, "total_capital")),
        "risk_per_trade": parse_locale_number(get_field(risk, "risk_per_trade")),
        "max_invest": parse_locale_number(get_field(risk, "max_invest")),
        "month_start": parse_locale_number(get_field(risk, "month_start")),
        "max_positions": risk.get("最大ポジ数"),
        "loss_streak": risk.get("連敗数") if risk.get("連敗数") is not None else 0,
        "applied_risk": risk.get("適用リスク%"),
        "monthly_pnl": parse_locale_number(risk.get("月間確定P&L")),
        "dd_ratio": ratio,
        "dd_warning": ratio > DD_WARN_RATIO,
        "dd_ng": bool(judge) and "NG" in str(judge).upper(),
    }


def open_positions(rows: list[dict]) -> list[dict]:
    """Position rows whose Ticker is a 4-5 digit code."""
    return [r for r in rows if _TICKER_RE.match(display_str(r.get("Ticker")).strip())]


def position_totals(rows: list[dict]) -> dict:
    cost = sum(parse_locale_number(r.get("取得コスト")) or 0 for r in rows)
    pnl = sum(parse_locale_number(get_field(r, "unrealized_pnl")) or 0 for r in rows)
    return {"count": len(rows), "total_cost": cost, "total_unrealized_pnl": pnl}


def parse_portfolio(text: str) -> dict:
    """Full portfolio view model from the raw sheet text."""
    sections = split_sections(text)
    positions = open_positions(parse_table(sections.get("positions")))
    risk = parse_risk(sections.get("risk"))
    history = parse_table(sections.get("history"))
    out = {
        "risk": risk,
        "risk_overview": risk_overview(risk),
        "entry": parse_table(sections.get("entry")),
        "positions": positions,
        "position_totals": position_totals(positions),
        "position_summary": extract_position_summary(sections.get("positions")),
        "history": list(reversed(history)),
        "stats": parse_stats(sections.get("stats")),
    }
    log.info(f"Portfolio: {len(positions)} positions, {len(history)} trades",
             extra={"view": "portfolio", "rows": len(positions)})
    return out
