#!/usr/bin/env python3
"""
Shared Numeric / Date Normalizers
==================================
Small, pure helpers used by every stage of the dashboard pipeline:

  * locale-aware number parsing (strips ¥ / ￥ / thousands separators / %)
  * spreadsheet-style lenient float parsing (leading numeric prefix)
  * percent-string detection
  * short ``M/D`` date labels, including spreadsheet serial dates
  * ticker identity extraction from ``=HYPERLINK(...)`` formula cells
  * the declarative field-alias table used for header lookups

None of these functions raise on malformed input: unparseable values come
back as ``None`` (numbers) or unchanged (labels).
"""

import math
import re
import warnings
from datetime import date, timedelta

import numpy as np
import pandas as pd

# =========================================================================
# A. Number parsing
# =========================================================================
_LOCALE_STRIP_RE = re.compile(r"[,¥￥\s%]")
_LEADING_FLOAT_RE = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


def parse_locale_number(value) -> float | None:
    """Parse a display-formatted number such as ``"¥1,234,567"`` or ``"-8.0%"``.

    Returns ``None`` (never NaN) when nothing numeric can be read, so callers
    can tell "absent" apart from zero.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if np.isfinite(value) else None
    return lenient_float(_LOCALE_STRIP_RE.sub("", str(value)))


def lenient_float(value) -> float | None:
    """Read the leading numeric prefix of a cell (``"1.5%"`` -> 1.5).

    Mirrors how spreadsheet exports are consumed downstream: trailing units
    are ignored, a value with no numeric prefix is ``None``.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if np.isfinite(value) else None
    m = _LEADING_FLOAT_RE.match(str(value))
    if not m:
        return None
    n = float(m.group(1))
    return n if math.isfinite(n) else None


def is_percent_string(value) -> bool:
    """True iff ``value`` is a string ending in ``%`` (kept verbatim for display)."""
    return isinstance(value, str) and value.strip().endswith("%")


def round1(x: float) -> float:
    """Round half-up to one decimal place (2.25 -> 2.3, -0.05 -> 0.0)."""
    return math.floor(x * 10 + 0.5) / 10


def round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def display_str(value) -> str:
    """String form of a cell value; integral floats print without ``.0``."""
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def is_blank(value) -> bool:
    return value is None or value == ""


def is_truthy(value) -> bool:
    """Cell truthiness as used by the row predicates: not null, not "", not 0."""
    if value is None or value == "":
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0 and not math.isnan(value)
    return bool(value)


# =========================================================================
# B. Date labels
# =========================================================================
_SHEETS_EPOCH = date(1899, 12, 30)
_SERIAL_RE = re.compile(r"^\d{5}$")
_ISO_PREFIX_RE = re.compile(r"^\d{4}-(\d{1,2})-(\d{1,2})")
_US_PREFIX_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/\d{2,4}")
_SHORT_RE = re.compile(r"^\d{1,2}/\d{1,2}$")


def serial_to_date(serial: int) -> date:
    """Convert a spreadsheet serial day number (epoch 1899-12-30) to a date."""
    return _SHEETS_EPOCH + timedelta(days=serial)


def short_date_label(value) -> str:
    """Shorten any supported date representation to ``M/D``.

    Recognised, in order: 5-digit serial, ``YYYY-MM-DD…``, ``M/D/YYYY…``,
    an existing ``M/D`` label, then generic parsing. Unparseable input is
    returned unchanged, which makes the function idempotent.
    """
    if value is None or value == "":
        return ""
    s = display_str(value).strip()

    if _SERIAL_RE.match(s):
        d = serial_to_date(int(s))
        return f"{d.month}/{d.day}"

    m = _ISO_PREFIX_RE.match(s)
    if m:
        return f"{int(m.group(1))}/{int(m.group(2))}"

    m = _US_PREFIX_RE.match(s)
    if m:
        return f"{int(m.group(1))}/{int(m.group(2))}"

    if _SHORT_RE.match(s):
        return s

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        parsed = pd.to_datetime(s, errors="coerce")
    if parsed is None or pd.isna(parsed):
        return s
    return f"{parsed.month}/{parsed.day}"


# =========================================================================
# C. Ticker identity
# =========================================================================
_HYPERLINK_RE = re.compile(r'=HYPERLINK\(".*?","(.+?)"\)', re.IGNORECASE)


def strip_formula(value) -> str:
    """Extract the display text of a ``=HYPERLINK("url","label")`` cell.

    Non-formula values are returned as their plain string form; ``None``
    becomes ``""``.
    """
    if value is None:
        return ""
    s = display_str(value)
    m = _HYPERLINK_RE.search(s)
    return m.group(1) if m else s


# =========================================================================
# D. Field aliases
# =========================================================================
# Ordered candidate headers per logical field: preferred name first.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    # Indices / breadth
    "dist_21ema": ("Dist_21EMA%",),
    "dist_50ma": ("Dist_50MA%", "Dist_50SMA%"),
    "breadth_date": ("Date_2", "Date"),
    "advances": ("Advances",),
    "declines": ("Declines",),
    "ad_ratio_25": ("AD_Ratio_25",),
    "ad_ratio_10": ("AD_Ratio_10",),
    "new_high": ("NewHigh", "NH"),
    "new_low": ("NewLow", "NL"),
    # Sectors
    "rs_21": ("RS_21",),
    "er_1w": ("ER_1W",),
    "band80": ("Band80_Pct",),
    "rs_day": ("RS_Day%",),
    # Screener entry criteria
    "adr": ("ADR%", "ADR%(20D)", "ADR"),
    "atr_21ema": ("R×21E", "ATR_21EMA", "ATR21E_R"),
    "dist_21ema_entry": ("E21L%", "Dist_21EMA%"),
    "atr_50sma": ("R×50S", "ATR_50SMA", "ATR50S_R"),
    # Portfolio
    "total_capital": ("総資金(¥)", "総資金"),
    "risk_per_trade": ("Risk¥/Trade", "Risk/Trade"),
    "max_invest": ("最大投入¥", "最大投入"),
    "month_start": ("月初残高(¥)", "月初残高"),
    "unrealized_pnl": ("含み損益¥", "含み損益"),
}


def get_field(row: dict, field: str, aliases: dict | None = None):
    """Return the first non-null value among ``field``'s alias headers.

    Unknown logical fields are looked up as a literal header.
    """
    table = FIELD_ALIASES if aliases is None else aliases
    for key in table.get(field, (field,)):
        v = row.get(key)
        if v is not None:
            return v
    return None


def get_number(row: dict, field: str, default: float | None = None,
               aliases: dict | None = None) -> float | None:
    """``get_field`` followed by ``lenient_float``; ``default`` when absent."""
    n = lenient_float(get_field(row, field, aliases))
    return default if n is None else n
