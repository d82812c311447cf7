#!/usr/bin/env python3
"""
Exposure Engine — Market Breadth, Exposure Score and Sector Phase
==================================================================
Pure functions over parsed sheet rows:

  * ``split_index_rows``   — the Indices sheet carries two logical tables;
                             rows are classified by which columns are filled
  * ``extract_breadth``    — BreadthSummary from the latest breadth row
  * ``calc_exposure``      — six-factor weighted 0-100 Exposure Score with
                             the Index×21EMA kill-switch
  * ``derive_phase``       — sector Phase 1-4 from RS_21 / ER_1W
  * sector ordering, history map and phase distribution for the sector view

Weights and thresholds come from ``schemas.ExposureConfig`` /
``schemas.PhaseConfig``; callers that pass nothing get the defaults.
"""

import logging

import pandas as pd

from normalizers import (
    get_field,
    get_number,
    is_truthy,
    round1,
    round_half_up,
    short_date_label,
)
from schemas import (
    BreadthSummary,
    ExposureComponent,
    ExposureConfig,
    ExposureLabel,
    ExposureScore,
    PhaseConfig,
)

log = logging.getLogger("dashboard.exposure")

PHASE_LABELS = {4: "4:強↑", 3: "3:改善", 2: "2:失速", 1: "1:弱↓"}


# =========================================================================
# A. Indices sheet row classification
# =========================================================================
def is_scorecard_row(row: dict) -> bool:
    """Index scorecard rows carry both a display name and a price."""
    return is_truthy(row.get("Name")) and is_truthy(row.get("Price"))


def is_breadth_row(row: dict) -> bool:
    """Breadth rows lack a name but carry advances and/or declines."""
    return (not is_truthy(row.get("Name"))
            and (row.get("Advances") is not None or row.get("Declines") is not None))


def split_index_rows(rows: list[dict]) -> tuple[list[dict], list[dict]]:
    """Return (scorecard rows, breadth rows) in source order."""
    scorecard = [r for r in rows if is_scorecard_row(r)]
    breadth = [r for r in rows if is_breadth_row(r)]
    return scorecard, breadth


def normalize_sector_rows(rows: list[dict]) -> list[dict]:
    """Fill ``Sector`` from the unnamed first column when the header is blank."""
    out = []
    for row in rows:
        if not row.get("Sector") and "" in row:
            row = {**row, "Sector": row[""]}
        out.append(row)
    return out


def latest_breadth_date(breadth_rows: list[dict]):
    dates = [get_field(r, "breadth_date") for r in breadth_rows]
    dates = [d for d in dates if is_truthy(d)]
    return dates[-1] if dates else None


# =========================================================================
# B. Breadth summary
# =========================================================================
def extract_breadth(index_rows: list[dict]) -> BreadthSummary:
    """Summarise the most recent row that has a date and an Advances value.

    With no such row the neutral reading is returned (ratios 100, 50%
    advancing, no highs/lows).
    """
    candidates = [r for r in index_rows
                  if is_truthy(get_field(r, "breadth_date"))
                  and r.get("Advances") is not None]
    if not candidates:
        return BreadthSummary()

    latest = candidates[-1]
    adv = get_number(latest, "advances", 0.0)
    dec = get_number(latest, "declines", 0.0)
    total = adv + dec
    return BreadthSummary(
        toraku_ratio_25=get_number(latest, "ad_ratio_25", 0.0),
        toraku_ratio_10=get_number(latest, "ad_ratio_10", 0.0),
        new_high_count=get_number(latest, "new_high", 0.0),
        new_low_count=get_number(latest, "new_low", 0.0),
        advancing_pct=round_half_up(adv / total * 100) if total > 0 else 50,
        advancing_count=adv,
        declining_count=dec,
    )


def breadth_series(breadth_rows: list[dict]) -> pd.DataFrame:
    """Chart series (Date, AD_Ratio_25, NH, NL) for rows that have a date."""
    records = []
    for r in breadth_rows:
        d = get_field(r, "breadth_date")
        if not is_truthy(d):
            continue
        records.append({
            "Date": short_date_label(d),
            "AD_Ratio_25": get_number(r, "ad_ratio_25"),
            "NH": get_number(r, "new_high", 0.0),
            "NL": get_number(r, "new_low", 0.0),
        })
    return pd.DataFrame(records, columns=["Date", "AD_Ratio_25", "NH", "NL"])


# =========================================================================
# C. Phase classifier
# =========================================================================
def classify_phase(rs21: float, revision: float,
                   cfg: PhaseConfig | None = None) -> int:
    """Total mapping (RS, revision) -> Phase 1-4; first matching rule wins."""
    cfg = cfg or PhaseConfig()
    if rs21 >= cfg.strong_rs_min and revision > 0:
        return 4
    if revision > 0 and rs21 >= cfg.improving_rs_min:
        return 3
    if revision <= 0 and rs21 >= cfg.stalling_rs_min:
        return 2
    return 1


def derive_phase(sector: dict, cfg: PhaseConfig | None = None) -> int:
    """Phase for a sector row; missing RS_21 counts as 50, missing ER_1W as 0."""
    cfg = cfg or PhaseConfig()
    rs21 = get_number(sector, "rs_21", cfg.default_rs)
    er1w = get_number(sector, "er_1w", cfg.default_revision)
    return classify_phase(rs21, er1w, cfg)


def phase_label(phase) -> str:
    return PHASE_LABELS.get(phase, "--")


def phase_distribution(sectors: list[dict], cfg: PhaseConfig | None = None) -> dict[int, int]:
    counts = {4: 0, 3: 0, 2: 0, 1: 0}
    for s in sectors:
        if s.get("Sector"):
            counts[derive_phase(s, cfg)] += 1
    return counts


# =========================================================================
# D. Exposure score
# =========================================================================
def _ema_position(d21: float, band: float) -> str:
    if d21 > band:
        return "above"
    if d21 > -band:
        return "inside"
    return "below"


def _score_ema21(indices: list[dict], cfg: ExposureConfig) -> float:
    w = cfg.weights.ema21
    full_share = w / cfg.index_count
    half_share = w / (cfg.index_count * 2)
    pts = 0.0
    for idx in indices:
        pos = _ema_position(get_number(idx, "dist_21ema", 0.0), cfg.inside_band)
        if pos == "above":
            pts += full_share
        elif pos == "inside":
            pts += half_share
    return round1(pts)


def _score_sma50(indices: list[dict], cfg: ExposureConfig) -> float:
    share = cfg.weights.sma50 / cfg.index_count
    above = sum(1 for idx in indices if get_number(idx, "dist_50ma", 0.0) > 0)
    return round1(above * share)


def _score_toraku(ratio: float, cfg: ExposureConfig) -> tuple[float, str | None, str | None]:
    tr = cfg.toraku
    steps = tr.steps
    if ratio > tr.overheat_danger:
        pts = steps.extreme
    elif ratio > tr.overheat_warn:
        pts = steps.overheat
    elif ratio >= tr.optimal_low:
        pts = steps.optimal
    elif ratio >= tr.warm_low:
        pts = steps.warm
    elif ratio >= tr.cool_low:
        pts = steps.cool
    else:
        pts = steps.cold

    label = severity = None
    if ratio > tr.overheat_warn:
        if ratio > tr.overheat_danger:
            label, severity = "危険過熱", "danger"
        else:
            label, severity = "過熱警戒", "warning"
    return round1(min(pts, cfg.weights.toraku)), label, severity


def _score_nh_nl(nh: float, nl: float, cfg: ExposureConfig) -> float:
    w = cfg.weights.nh_nl
    base = w - cfg.nh_bonus.threshold_100
    pts = round1(nh / (nh + nl) * base) if (nh + nl) > 0 else 0.0
    if nh >= 100:
        pts += cfg.nh_bonus.threshold_100
    elif nh >= 50:
        pts += cfg.nh_bonus.threshold_50
    return min(w, round1(pts))


def _score_adv_pct(adv_pct: float, cfg: ExposureConfig) -> float:
    for step in cfg.adv_pct_steps:
        if adv_pct >= step.min:
            return round1(min(step.pts, cfg.weights.adv_pct))
    return 0.0


def _score_sector_breadth(sectors: list[dict], cfg: ExposureConfig,
                          phase_cfg: PhaseConfig | None) -> float:
    w = cfg.weights.sector_breadth
    valid = [s for s in sectors if s.get("Sector")]
    if not valid:
        return 0.0
    phase4 = sum(1 for s in valid if derive_phase(s, phase_cfg) == 4)
    b80_avg = sum(get_number(s, "band80", 0.0) for s in valid) / len(valid)
    pts = round1(phase4 / len(valid) * (w - cfg.sector_b80_bonus))
    if b80_avg >= cfg.sector_b80_threshold:
        pts += cfg.sector_b80_bonus
    return round1(min(w, pts))


def exposure_label(score: float, kill_switch: bool,
                   cfg: ExposureConfig | None = None) -> ExposureLabel:
    t = (cfg or ExposureConfig()).label_thresholds
    if kill_switch:
        return ExposureLabel.RISK_OFF
    if score >= t.aggressive:
        return ExposureLabel.AGGRESSIVE
    if score >= t.bullish:
        return ExposureLabel.BULLISH
    if score >= t.cautious:
        return ExposureLabel.CAUTIOUS
    if score >= t.defensive:
        return ExposureLabel.DEFENSIVE
    return ExposureLabel.RISK_OFF


def calc_exposure(indices: list[dict], breadth: BreadthSummary,
                  sectors: list[dict], cfg: ExposureConfig | None = None,
                  phase_cfg: PhaseConfig | None = None) -> ExposureScore:
    """Compute the six-factor Exposure Score.

    Each component is rounded to one decimal before summing.  When the
    Index×21EMA component is exactly 0 the kill-switch fires: score 0 and
    RISK_OFF regardless of the other five factors.
    """
    cfg = cfg or ExposureConfig()
    w = cfg.weights

    s1 = _score_ema21(indices, cfg)
    kill_switch = s1 == 0
    s2 = _score_sma50(indices, cfg)
    s3, warn_label, warn_severity = _score_toraku(breadth.toraku_ratio_25, cfg)
    s4 = _score_nh_nl(breadth.new_high_count, breadth.new_low_count, cfg)
    s5 = _score_adv_pct(breadth.advancing_pct, cfg)
    s6 = _score_sector_breadth(sectors, cfg, phase_cfg)

    components = [
        ExposureComponent(name="Index×21EMA", points=s1, max_points=w.ema21),
        ExposureComponent(name="Index×50SMA", points=s2, max_points=w.sma50),
        ExposureComponent(name="騰落レシオ(25)", points=s3, max_points=w.toraku,
                          warning_label=warn_label, warning_severity=warn_severity),
        ExposureComponent(name="NH/NL比率", points=s4, max_points=w.nh_nl),
        ExposureComponent(name="値上がり率", points=s5, max_points=w.adv_pct),
        ExposureComponent(name="Sector Breadth", points=s6, max_points=w.sector_breadth),
    ]
    raw = round1(sum(c.points for c in components))
    score = 0.0 if kill_switch else round1(min(100.0, raw))
    label = exposure_label(score, kill_switch, cfg)
    if kill_switch:
        log.info("Kill-switch: every index at or below its 21EMA band",
                 extra={"step": "exposure", "value": raw})
    return ExposureScore(score=score, raw=raw, label=label,
                         kill_switch=kill_switch, components=components)


# =========================================================================
# E. Sector view helpers
# =========================================================================
def _num0(row: dict, field: str) -> float:
    return get_number(row, field, 0.0)


def sort_sectors(sectors: list[dict], sort_key: str = "rank",
                 cfg: PhaseConfig | None = None) -> list[dict]:
    """Order named sectors for the heatmap; every key sorts descending."""
    rows = [r for r in sectors if r.get("Sector")]
    if sort_key == "phase":
        key = lambda r: (-derive_phase(r, cfg), -_num0(r, "rs_21"))  # noqa: E731
    elif sort_key == "b80":
        key = lambda r: -_num0(r, "band80")  # noqa: E731
    elif sort_key == "er1w":
        key = lambda r: -_num0(r, "er_1w")  # noqa: E731
    elif sort_key == "rsDay":
        key = lambda r: -_num0(r, "rs_day")  # noqa: E731
    else:
        key = lambda r: (-_num0(r, "rs_21"), -_num0(r, "er_1w"))  # noqa: E731
    return sorted(rows, key=key)


def build_sector_history_map(history_rows: list[dict]) -> dict[str, list[dict]]:
    """Per-sector time series from the SectorHistory sheet, oldest first."""
    out: dict[str, list[dict]] = {}
    for row in history_rows or []:
        name = row.get("Sector")
        if not name:
            continue
        out.setdefault(name, []).append({
            "date": row.get("Date"),
            "er1w": _num0(row, "er_1w"),
            "rs21": _num0(row, "rs_21"),
            "b80": _num0(row, "band80"),
        })
    for series in out.values():
        series.sort(key=lambda p: str(p["date"]))
    return out
