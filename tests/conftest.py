"""Shared fixtures for Trading Dashboard tests."""

import sys
from pathlib import Path

import pytest
import yaml

# Ensure project root is importable
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from schemas import DashboardConfig  # noqa: E402

FIXTURES = Path(__file__).resolve().parent / "fixtures"
SHEETS_DIR = FIXTURES / "sheets"


@pytest.fixture
def raw_cfg():
    """The production config.yaml as a plain dict."""
    with open(ROOT / "config.yaml", encoding="utf-8") as f:
        return yaml.safe_load(f)


@pytest.fixture
def cfg(raw_cfg):
    """The production config.yaml, validated."""
    return DashboardConfig(**raw_cfg)


@pytest.fixture
def sheets_dir():
    return SHEETS_DIR


@pytest.fixture
def read_sheet():
    """Raw CSV text of one fixture sheet."""
    def _read(name: str) -> str:
        return (SHEETS_DIR / f"{name}.csv").read_text(encoding="utf-8")
    return _read


@pytest.fixture
def sample_sectors():
    return [
        {"Sector": "電気機器", "RS_21": 65, "ER_1W": 1.2, "Band80_Pct": 30},
        {"Sector": "銀行業", "RS_21": 40, "ER_1W": 0.8, "Band80_Pct": 25},
        {"Sector": "不動産業", "RS_21": 35, "ER_1W": -0.5, "Band80_Pct": 10},
        {"Sector": "海運業", "RS_21": 10, "ER_1W": -1.0, "Band80_Pct": 5},
    ]


@pytest.fixture
def bullish_indices():
    return [
        {"Name": "Nikkei 225", "Price": 38500, "Dist_21EMA%": 2.1, "Dist_50MA%": 3.5},
        {"Name": "TOPIX", "Price": 2700, "Dist_21EMA%": 1.5, "Dist_50MA%": 1.2},
        {"Name": "Growth 250", "Price": 650, "Dist_21EMA%": 3.0, "Dist_50MA%": 0.8},
    ]


@pytest.fixture
def bearish_indices():
    return [
        {"Name": "Nikkei 225", "Price": 36000, "Dist_21EMA%": -2.1, "Dist_50MA%": 3.5},
        {"Name": "TOPIX", "Price": 2500, "Dist_21EMA%": -1.0, "Dist_50MA%": 1.2},
        {"Name": "Growth 250", "Price": 600, "Dist_21EMA%": -3.0, "Dist_50MA%": 0.8},
    ]
