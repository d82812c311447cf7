#!/usr/bin/env python3
"""
Typed schemas for the Trading Dashboard pipeline.

Provides Pydantic models for validation at pipeline boundaries:
  - DashboardConfig: validated config.yaml contents (weights, thresholds,
    sheet ids, screen definitions)
  - value objects handed to the presentation layer (BreadthSummary,
    ExposureScore, OverlapEntry, ViewState, DashboardSnapshot)
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# =========================================================================
# Exposure score configuration
# =========================================================================

class ExposureWeights(BaseModel):
    """Points available per factor. Must be >= 0 and sum to at most 100."""
    ema21: float = 35
    sma50: float = 10
    toraku: float = 17
    nh_nl: float = 13
    adv_pct: float = 10
    sector_breadth: float = 15

    @field_validator("ema21", "sma50", "toraku", "nh_nl", "adv_pct",
                     "sector_breadth")
    @classmethod
    def weight_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"Weight must be >= 0, got {v}")
        return v

    @model_validator(mode="after")
    def weights_at_most_100(self) -> "ExposureWeights":
        total = (self.ema21 + self.sma50 + self.toraku + self.nh_nl
                 + self.adv_pct + self.sector_breadth)
        if total > 100.5:
            raise ValueError(
                f"Exposure weights must sum to at most 100 (got {total})"
            )
        return self


class TorakuSteps(BaseModel):
    """Points per A/D-ratio bucket."""
    optimal: float = 17
    warm: float = 11
    cool: float = 6
    overheat: float = 3
    extreme: float = 0
    cold: float = 2


class TorakuConfig(BaseModel):
    """25-day advance/decline ratio buckets (boundaries inclusive on the low side)."""
    cool_low: float = 70
    warm_low: float = 80
    optimal_low: float = 100
    overheat_warn: float = 120
    overheat_danger: float = 140
    steps: TorakuSteps = TorakuSteps()

    @model_validator(mode="after")
    def thresholds_ordered(self) -> "TorakuConfig":
        seq = [self.cool_low, self.warm_low, self.optimal_low,
               self.overheat_warn, self.overheat_danger]
        if any(a > b for a, b in zip(seq, seq[1:])):
            raise ValueError(
                f"Toraku thresholds must be non-decreasing (got {seq})"
            )
        return self


class NhBonus(BaseModel):
    threshold_100: float = Field(3, ge=0)
    threshold_50: float = Field(2, ge=0)


class StepThreshold(BaseModel):
    min: float
    pts: float = Field(ge=0)


class LabelThresholds(BaseModel):
    aggressive: float = 80
    bullish: float = 60
    cautious: float = 40
    defensive: float = 20


class ExposureConfig(BaseModel):
    weights: ExposureWeights = ExposureWeights()
    index_count: int = Field(3, ge=1)
    inside_band: float = Field(1.0, ge=0)
    toraku: TorakuConfig = TorakuConfig()
    nh_bonus: NhBonus = NhBonus()
    adv_pct_steps: list[StepThreshold] = [
        StepThreshold(min=55, pts=10),
        StepThreshold(min=45, pts=7),
        StepThreshold(min=35, pts=4),
    ]
    sector_b80_threshold: float = 20
    sector_b80_bonus: float = Field(5, ge=0)
    label_thresholds: LabelThresholds = LabelThresholds()

    @model_validator(mode="after")
    def bonuses_fit_weights(self) -> "ExposureConfig":
        w = self.weights
        if self.nh_bonus.threshold_100 > w.nh_nl or self.nh_bonus.threshold_50 > w.nh_nl:
            raise ValueError("NH bonus cannot exceed the NH/NL weight")
        if self.sector_b80_bonus > w.sector_breadth:
            raise ValueError("Band80 bonus cannot exceed the sector breadth weight")
        return self


# =========================================================================
# Phase / entry configuration
# =========================================================================

class PhaseConfig(BaseModel):
    strong_rs_min: float = 50
    improving_rs_min: float = 30
    stalling_rs_min: float = 30
    default_rs: float = 50
    default_revision: float = 0


class RangeCheck(BaseModel):
    """Inclusive numeric range; a missing bound is open."""
    min: Optional[float] = None
    max: Optional[float] = None

    def ok(self, v: float) -> bool:
        if self.min is not None and v < self.min:
            return False
        if self.max is not None and v > self.max:
            return False
        return True


class EntryConfig(BaseModel):
    adr: RangeCheck = RangeCheck(min=2.5, max=7)
    atr_21ema: RangeCheck = RangeCheck(min=-0.3, max=0.8)
    dist_21ema: RangeCheck = RangeCheck(max=4)
    atr_50sma: RangeCheck = RangeCheck(max=2.5)
    highlight_min: int = Field(3, ge=2, le=4)
    watch_min: int = Field(2, ge=0, le=4)


# =========================================================================
# Screens, sheets and fetch configuration
# =========================================================================

class ScreenDef(BaseModel):
    key: str
    label: str = ""
    abbr: str = ""
    columns: list[str] = []


class ScreenerConfig(BaseModel):
    text_columns: list[str] = ["Ticker", "Name", "Sector"]
    base_columns: list[str] = ["Ticker", "Name", "Sector", "DAY%", "RS21"]
    post_rs_columns: list[str] = ["ER_1W(vsSec)"]
    tail_column: str = "ER_Days"
    entry_columns: list[str] = ["ADR%", "R×21E", "E21L%", "R×50S", "基準"]


class SheetsConfig(BaseModel):
    spreadsheet_id: str = ""
    export_url: str = ("https://docs.google.com/spreadsheets/d/"
                       "{spreadsheet_id}/export?format=csv&gid={gid}")
    gids: dict[str, int] = {}
    index_sheet: str = "Indices"
    sector_sheet: str = "Sectors"
    sector_history_sheet: str = "SectorHistory"
    history_sheet: str = "St_History"
    portfolio_sheet: str = "Portfolio"


class FetchConfig(BaseModel):
    timeout_seconds: float = Field(15, gt=0)
    max_retries: int = Field(3, ge=1)
    max_workers: int = Field(6, ge=1)


class DashboardConfig(BaseModel):
    """Schema for validated config.yaml contents."""
    sheets: SheetsConfig = SheetsConfig()
    fetch: FetchConfig = FetchConfig()
    exposure: ExposureConfig = ExposureConfig()
    phase: PhaseConfig = PhaseConfig()
    entry: EntryConfig = EntryConfig()
    screens: list[ScreenDef] = []
    screener: ScreenerConfig = ScreenerConfig()
    output: dict = {}

    @field_validator("screens")
    @classmethod
    def screen_keys_unique(cls, v: list[ScreenDef]) -> list[ScreenDef]:
        keys = [s.key for s in v]
        dupes = sorted({k for k in keys if keys.count(k) > 1})
        if dupes:
            raise ValueError(f"Duplicate screen keys: {dupes}")
        return v

    @property
    def screen_keys(self) -> list[str]:
        return [s.key for s in self.screens]


# =========================================================================
# Value objects
# =========================================================================

class BreadthSummary(BaseModel):
    """Latest market breadth reading (recomputed on every refresh)."""
    toraku_ratio_25: float = 100
    toraku_ratio_10: float = 100
    new_high_count: float = 0
    new_low_count: float = 0
    advancing_pct: float = 50
    advancing_count: float = 0
    declining_count: float = 0


class ExposureLabel(str, Enum):
    AGGRESSIVE = "AGGRESSIVE"
    BULLISH = "BULLISH"
    CAUTIOUS = "CAUTIOUS"
    DEFENSIVE = "DEFENSIVE"
    RISK_OFF = "RISK_OFF"


class ExposureComponent(BaseModel):
    name: str
    points: float
    max_points: float
    warning_label: Optional[str] = None
    warning_severity: Optional[str] = None  # "danger" | "warning"


class ExposureScore(BaseModel):
    score: float = Field(ge=0, le=100)
    raw: float
    label: ExposureLabel
    kill_switch: bool
    components: list[ExposureComponent]

    @model_validator(mode="after")
    def kill_switch_zeroes_score(self) -> "ExposureScore":
        if self.kill_switch and (self.score != 0 or self.label != ExposureLabel.RISK_OFF):
            raise ValueError("Kill-switch requires score 0 and RISK_OFF")
        return self


class OverlapEntry(BaseModel):
    """Per-ticker record of which screens it appeared in (first-seen order)."""
    ticker: str
    screens: list[str] = []
    display_name: str = ""
    sector: str = ""
    representative_row: dict = {}

    @property
    def count(self) -> int:
        return len(self.screens)


class ViewState(BaseModel):
    """Screener UI state; every interaction returns a new instance."""
    model_config = ConfigDict(frozen=True)

    screen: str = "ALL"
    sector: Optional[str] = None
    search: str = ""
    sort_option: str = "default"
    sort_col: Optional[str] = None
    sort_dir: Optional[str] = None  # "asc" | "desc"


class DashboardSnapshot(BaseModel):
    """Everything one refresh hands to the presentation layer."""
    refreshed_at: datetime
    view_date: Optional[str] = None
    # market
    scorecard: list[dict] = []
    breadth_rows: list[dict] = []
    breadth: BreadthSummary = BreadthSummary()
    exposure: Optional[ExposureScore] = None
    # sector
    sectors: list[dict] = []
    phase_distribution: dict[int, int] = {}
    sector_history: dict[str, list[dict]] = {}
    # screener
    screen_data: dict[str, list[dict]] = {}
    ticker_map: dict[str, OverlapEntry] = {}
    overlaps: list[OverlapEntry] = []
    sector_chips: list[dict] = []
    history_rows: list[dict] = []
    available_dates: list[str] = []
    # portfolio
    portfolio: dict = {}
    # per-source fetch faults and per-view build faults
    fetch_errors: dict[str, str] = {}
    view_errors: dict[str, str] = {}
