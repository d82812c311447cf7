#!/usr/bin/env python3
"""
Sheet Parser — CSV Tokenizer + Tabular Record Builder
======================================================
Turns a spreadsheet CSV export into a list of row dicts (a "Table").

Tokenizing happens in two passes:

  1. ``split_csv_lines`` breaks the blob into logical lines.  A newline
     inside an open double-quote does not end the line, carriage returns
     outside quotes are dropped, and quote characters are kept verbatim so
     the second pass can still see field boundaries.
  2. ``split_row`` splits one logical line on unquoted commas and turns a
     doubled quote inside a quoted field into one literal quote.

The parser is deliberately lenient: an unclosed trailing quote simply runs
to the end of the input.

Record building (``build_records``) deduplicates repeated headers by
suffixing ``_2``, ``_3``, … and types each cell as ``None``, a date-like
string, a number, or the trimmed original text.
"""

import logging
import re

log = logging.getLogger("dashboard.sheets")

BOM = "\ufeff"

# Dates stay strings; conversion is left to the presentation layer.
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{1,2}-\d{1,2}")
_US_DATE_RE = re.compile(r"^\d{1,2}/\d{1,2}/\d{4}")
_SERIAL_RE = re.compile(r"^\d{5}$")
_NUMBER_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$")


# =========================================================================
# A. Tokenizer
# =========================================================================
def strip_bom(text: str) -> str:
    return text[1:] if text.startswith(BOM) else text


def looks_like_html(text: str) -> bool:
    """An HTML page (login / sharing error) instead of CSV."""
    return strip_bom(text).lstrip().startswith("<")


def split_csv_lines(text: str) -> list[str]:
    """Split a CSV blob into logical lines, honouring quoted newlines."""
    text = strip_bom(text)
    lines: list[str] = []
    buf: list[str] = []
    in_quotes = False
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == '"':
            if in_quotes and i + 1 < n and text[i + 1] == '"':
                buf.append('""')
                i += 1
            else:
                in_quotes = not in_quotes
                buf.append('"')
        elif ch == "\n" and not in_quotes:
            lines.append("".join(buf))
            buf = []
        elif ch == "\r" and not in_quotes:
            pass
        else:
            buf.append(ch)
        i += 1
    tail = "".join(buf)
    if tail.strip():
        lines.append(tail)
    return lines


def split_row(line: str) -> list[str]:
    """Split one logical line into raw (untrimmed) field strings."""
    fields: list[str] = []
    buf: list[str] = []
    in_quotes = False
    i = 0
    n = len(line)
    while i < n:
        c = line[i]
        if c == '"':
            if in_quotes and i + 1 < n and line[i + 1] == '"':
                buf.append('"')
                i += 1
            else:
                in_quotes = not in_quotes
        elif c == "," and not in_quotes:
            fields.append("".join(buf))
            buf = []
        else:
            buf.append(c)
        i += 1
    fields.append("".join(buf))
    return fields


def tokenize(text: str) -> list[list[str]]:
    """Lines and fields in one call."""
    return [split_row(line) for line in split_csv_lines(text)]


def encode_field(value: str) -> str:
    """Quote a field the way the export does when it holds , " or newlines."""
    if any(c in value for c in (",", '"', "\n", "\r")):
        return '"' + value.replace('"', '""') + '"'
    return value


# =========================================================================
# B. Record builder
# =========================================================================
def dedupe_headers(headers: list[str]) -> list[str]:
    """``["A", "B", "A", "A"]`` -> ``["A", "B", "A_2", "A_3"]``."""
    counts: dict[str, int] = {}
    out = []
    for h in headers:
        key = h.strip()
        if key not in counts:
            counts[key] = 1
            out.append(key)
        else:
            counts[key] += 1
            out.append(f"{key}_{counts[key]}")
    return out


def coerce_number(text: str):
    """Plain decimal literal -> int/float, anything else -> None."""
    if not _NUMBER_RE.match(text):
        return None
    try:
        n = float(text)
    except (ValueError, OverflowError):
        return None
    if n != n or n in (float("inf"), float("-inf")):
        return None
    if n.is_integer() and abs(n) < 2 ** 53:
        return int(n)
    return n


def coerce_cell(raw: str, header: str = ""):
    """Type one cell: None, date-like string, number, or trimmed text."""
    v = raw.strip()
    if v == "":
        return None
    if _ISO_DATE_RE.match(v) or _US_DATE_RE.match(v):
        return v
    if _SERIAL_RE.match(v) and "date" in header.lower():
        return v
    n = coerce_number(v)
    return v if n is None else n


def build_records(header_fields: list[str], data_rows: list[list[str]]) -> list[dict]:
    """Pair data rows with deduplicated headers; fully blank rows are dropped."""
    headers = dedupe_headers(header_fields)
    records = []
    for fields in data_rows:
        if all(f.strip() == "" for f in fields):
            continue
        rec = {}
        for idx, h in enumerate(headers):
            raw = fields[idx] if idx < len(fields) else ""
            rec[h] = coerce_cell(raw, h)
        records.append(rec)
    return records


def parse_csv(text: str) -> list[dict]:
    """Full parse: CSV text -> Table (list of row dicts)."""
    rows = tokenize(text)
    if not rows:
        return []
    records = build_records(rows[0], rows[1:])
    log.debug(f"Parsed {len(records)} rows", extra={"rows": len(records)})
    return records
