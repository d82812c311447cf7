"""Tests for breadth extraction, the Exposure Score and the Phase classifier."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
from exposure_engine import (
    _score_adv_pct,
    _score_nh_nl,
    _score_toraku,
    breadth_series,
    build_sector_history_map,
    calc_exposure,
    classify_phase,
    derive_phase,
    exposure_label,
    extract_breadth,
    normalize_sector_rows,
    phase_distribution,
    phase_label,
    sort_sectors,
    split_index_rows,
)
from schemas import BreadthSummary, ExposureConfig, ExposureLabel
from sheet_parser import parse_csv


# =====================================================================
# INDICES SHEET CLASSIFICATION
# =====================================================================

class TestSplitIndexRows:
    def test_fixture_split(self, read_sheet):
        scorecard, breadth = split_index_rows(parse_csv(read_sheet("Indices")))
        assert [r["Name"] for r in scorecard] == ["Nikkei 225", "TOPIX", "Growth 250"]
        assert len(breadth) == 2

    def test_row_with_name_but_no_price_is_neither(self):
        scorecard, breadth = split_index_rows([{"Name": "X", "Price": None, "Advances": 5}])
        assert scorecard == [] and breadth == []

    def test_declines_only_counts_as_breadth(self):
        _, breadth = split_index_rows([{"Name": None, "Advances": None, "Declines": 3}])
        assert len(breadth) == 1


class TestNormalizeSectorRows:
    def test_sector_from_blank_header(self):
        rows = [{"": "電気機器", "RS_21": 65}]
        out = normalize_sector_rows(rows)
        assert out[0]["Sector"] == "電気機器"
        assert "Sector" not in rows[0]

    def test_existing_sector_kept(self):
        out = normalize_sector_rows([{"": "x", "Sector": "銀行業"}])
        assert out[0]["Sector"] == "銀行業"


# =====================================================================
# BREADTH SUMMARY
# =====================================================================

class TestExtractBreadth:
    def test_latest_row_wins(self, read_sheet):
        b = extract_breadth(parse_csv(read_sheet("Indices")))
        assert b.toraku_ratio_25 == 105
        assert b.toraku_ratio_10 == 115
        assert b.new_high_count == 120
        assert b.new_low_count == 20
        assert b.advancing_count == 1100
        assert b.declining_count == 500
        assert b.advancing_pct == 69  # 68.75 rounded half-up

    def test_no_breadth_rows_is_neutral(self):
        b = extract_breadth([{"Name": "Nikkei 225", "Price": 1}])
        assert b == BreadthSummary()
        assert b.toraku_ratio_25 == 100 and b.advancing_pct == 50

    def test_zero_advances_and_declines(self):
        b = extract_breadth([{"Date": "2026-02-13", "Advances": 0, "Declines": 0}])
        assert b.advancing_pct == 50

    def test_fallback_headers(self):
        b = extract_breadth([{"Date": "2026-02-13", "Advances": 10, "Declines": 10,
                              "NH": 7, "NL": 3}])
        assert b.new_high_count == 7 and b.new_low_count == 3

    def test_breadth_series(self, read_sheet):
        _, breadth = split_index_rows(parse_csv(read_sheet("Indices")))
        df = breadth_series(breadth)
        assert list(df.columns) == ["Date", "AD_Ratio_25", "NH", "NL"]
        assert df["Date"].tolist() == ["2/12", "2/13"]
        assert df["AD_Ratio_25"].tolist() == [95, 105]


# =====================================================================
# PHASE CLASSIFIER
# =====================================================================

class TestPhase:
    @pytest.mark.parametrize("rs,rev,phase", [
        (50, 1, 4), (30, 1, 3), (30, 0, 2), (0, -1, 1),
        (49, 0.1, 3), (29, 1, 1), (80, -2, 2), (29, -1, 1),
    ])
    def test_classify(self, rs, rev, phase):
        assert classify_phase(rs, rev) == phase

    def test_missing_signals_use_defaults(self):
        assert derive_phase({"Sector": "x"}) == 2

    def test_zero_rs_is_not_defaulted(self):
        assert derive_phase({"Sector": "x", "RS_21": 0, "ER_1W": -1}) == 1

    def test_unparseable_rs_defaults(self):
        assert derive_phase({"Sector": "x", "RS_21": "n/a", "ER_1W": 1}) == 4

    def test_labels(self):
        assert phase_label(4) == "4:強↑"
        assert phase_label(1) == "1:弱↓"
        assert phase_label(None) == "--"

    def test_distribution(self, sample_sectors):
        assert phase_distribution(sample_sectors) == {4: 1, 3: 1, 2: 1, 1: 1}


# =====================================================================
# FACTORS
# =====================================================================

class TestFactors:
    @pytest.mark.parametrize("ratio,pts,label", [
        (65, 2, None), (70, 6, None), (80, 11, None), (100, 17, None),
        (120, 17, None), (130, 3, "過熱警戒"), (140, 3, "過熱警戒"), (150, 0, "危険過熱"),
    ])
    def test_toraku_buckets(self, ratio, pts, label):
        got, warn, _ = _score_toraku(ratio, ExposureConfig())
        assert got == pts and warn == label

    def test_nh_nl_zero_guard(self):
        assert _score_nh_nl(0, 0, ExposureConfig()) == 0

    def test_nh_nl_bonus_100(self):
        assert _score_nh_nl(120, 20, ExposureConfig()) == pytest.approx(11.6)

    def test_nh_nl_bonus_50(self):
        assert _score_nh_nl(60, 60, ExposureConfig()) == pytest.approx(7.0)

    def test_nh_nl_clamped(self):
        assert _score_nh_nl(500, 0, ExposureConfig()) == 13

    @pytest.mark.parametrize("pct,pts", [(55, 10), (54, 7), (45, 7), (35, 4), (34, 0)])
    def test_adv_pct_steps(self, pct, pts):
        assert _score_adv_pct(pct, ExposureConfig()) == pts

    def test_label_thresholds(self):
        assert exposure_label(80, False) == ExposureLabel.AGGRESSIVE
        assert exposure_label(60, False) == ExposureLabel.BULLISH
        assert exposure_label(40, False) == ExposureLabel.CAUTIOUS
        assert exposure_label(20, False) == ExposureLabel.DEFENSIVE
        assert exposure_label(19.9, False) == ExposureLabel.RISK_OFF
        assert exposure_label(95, True) == ExposureLabel.RISK_OFF


# =====================================================================
# EXPOSURE SCORE
# =====================================================================

class TestCalcExposure:
    def test_bullish_market(self, bullish_indices, sample_sectors):
        e = calc_exposure(bullish_indices, BreadthSummary(), sample_sectors)
        pts = {c.name: c.points for c in e.components}
        assert pts["Index×21EMA"] == pytest.approx(35)
        assert pts["Index×50SMA"] == pytest.approx(10)
        assert pts["騰落レシオ(25)"] == 17
        assert pts["NH/NL比率"] == 0
        assert pts["値上がり率"] == 7
        assert pts["Sector Breadth"] == pytest.approx(2.5)
        assert e.score == pytest.approx(71.5)
        assert e.label == ExposureLabel.BULLISH
        assert not e.kill_switch

    def test_kill_switch(self, bearish_indices, sample_sectors):
        e = calc_exposure(bearish_indices, BreadthSummary(), sample_sectors)
        assert e.kill_switch
        assert e.score == 0
        assert e.label == ExposureLabel.RISK_OFF
        assert e.raw == pytest.approx(36.5)

    def test_inside_band_is_half_share(self, sample_sectors):
        idx = [{"Name": n, "Price": 1, "Dist_21EMA%": 0.5} for n in "ABC"]
        e = calc_exposure(idx, BreadthSummary(), sample_sectors)
        assert e.components[0].points == pytest.approx(17.5)
        assert not e.kill_switch

    def test_fixture_market(self, read_sheet):
        rows = parse_csv(read_sheet("Indices"))
        scorecard, _ = split_index_rows(rows)
        sectors = normalize_sector_rows(parse_csv(read_sheet("Sectors")))
        e = calc_exposure(scorecard, extract_breadth(rows), sectors)
        assert e.score == pytest.approx(65.3)
        assert e.label == ExposureLabel.BULLISH

    def test_toraku_warning_surfaces(self, bullish_indices, sample_sectors):
        e = calc_exposure(bullish_indices, BreadthSummary(toraku_ratio_25=145), sample_sectors)
        toraku = e.components[2]
        assert toraku.warning_label == "危険過熱"
        assert toraku.warning_severity == "danger"

    def test_no_sectors(self, bullish_indices):
        e = calc_exposure(bullish_indices, BreadthSummary(), [])
        assert e.components[-1].points == 0

    def test_components_within_weights(self, bullish_indices, sample_sectors):
        e = calc_exposure(bullish_indices, BreadthSummary(new_high_count=400), sample_sectors)
        for c in e.components:
            assert 0 <= c.points <= c.max_points


# =====================================================================
# SECTOR VIEW HELPERS
# =====================================================================

class TestSectorHelpers:
    def test_rank_sort_drops_unnamed(self):
        rows = [{"Sector": "A", "RS_21": 10}, {"Sector": "B", "RS_21": 60}, {"Sector": ""}]
        assert [r["Sector"] for r in sort_sectors(rows)] == ["B", "A"]

    def test_rank_tie_breaks_on_er1w(self):
        rows = [{"Sector": "A", "RS_21": 50, "ER_1W": 0.1},
                {"Sector": "B", "RS_21": 50, "ER_1W": 0.9}]
        assert [r["Sector"] for r in sort_sectors(rows)] == ["B", "A"]

    def test_phase_sort(self):
        rows = [{"Sector": "weak", "RS_21": 10, "ER_1W": -1},
                {"Sector": "strong", "RS_21": 60, "ER_1W": 1}]
        assert sort_sectors(rows, "phase")[0]["Sector"] == "strong"

    def test_b80_sort_missing_is_zero(self):
        rows = [{"Sector": "A"}, {"Sector": "B", "Band80_Pct": 5}]
        assert [r["Sector"] for r in sort_sectors(rows, "b80")] == ["B", "A"]

    def test_history_map(self, read_sheet):
        hist = build_sector_history_map(parse_csv(read_sheet("SectorHistory")))
        assert [p["date"] for p in hist["電気機器"]] == ["2026-02-12", "2026-02-13"]
        assert hist["銀行業"][0]["rs21"] == 38
