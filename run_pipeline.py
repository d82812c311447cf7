#!/usr/bin/env python3
"""
Trading Dashboard — Refresh Runner
===================================
Single-command entry point that runs one refresh cycle and writes the
run artifacts:

  runs/{run_id}/config.yaml          validated config snapshot
  runs/{run_id}/run.log              structured JSON log
  runs/{run_id}/snapshot.json        full dashboard output
  runs/{run_id}/breadth_series.csv   A/D ratio + NH/NL chart series
  runs/{run_id}/screener_all.csv     reconciled ALL view
  runs/{run_id}/meta.json            timing + package versions
  {report_dir}/refresh_trace.*       FETCH / PARSE / CALC / WRITE trace

Usage:
    python run_pipeline.py
    python run_pipeline.py --csv-dir exports/ --date 2026-02-13
"""

import argparse
import sys
import time
from pathlib import Path

import pandas as pd

from dashboard_pipeline import CONFIG_PATH, DashboardPipeline, load_config
from exposure_engine import breadth_series
from instrumentation import EventLog, trace_event
from run_context import RunContext
from schemas import ViewState
from sheet_fetcher import GoogleSheetSource, LocalSheetSource

ROOT = Path(__file__).resolve().parent


def banner(label: str):
    print(f"\n{'=' * 60}")
    print(f"  {label}")
    print(f"{'=' * 60}")


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Run one trading-dashboard refresh.")
    p.add_argument("--config", type=Path, default=CONFIG_PATH,
                   help="Path to config.yaml")
    p.add_argument("--csv-dir", type=Path, default=None,
                   help="Read <Sheet>.csv files from this directory instead of the network")
    p.add_argument("--date", default="today",
                   help="Screener date: 'today' or a St_History Date value")
    p.add_argument("--screen", default="ALL",
                   help="Screener tab to print (ALL or a screen key)")
    p.add_argument("--report-dir", type=Path, default=ROOT / "reports",
                   help="Where to write the refresh trace")
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    t0 = time.time()

    banner("TRADING DASHBOARD — REFRESH")
    cfg = load_config(args.config)
    ctx = RunContext(runs_dir=ROOT / cfg.output.get("runs_dir", "runs"))
    try:
        return _run(args, cfg, ctx, t0)
    finally:
        ctx.close()


def _run(args, cfg, ctx: RunContext, t0: float) -> int:
    ctx.save_config(cfg)
    events = EventLog()

    source = LocalSheetSource(args.csv_dir) if args.csv_dir else GoogleSheetSource(cfg)
    pipeline = DashboardPipeline(cfg, source=source, events=events)
    snap = pipeline.refresh()

    # Market
    banner("MARKET")
    if snap.exposure is not None:
        e = snap.exposure
        print(f"  Exposure Score: {e.score} ({e.label.value})"
              + ("  ** KILL-SWITCH **" if e.kill_switch else ""))
        for c in e.components:
            warn = f"  [{c.warning_label}]" if c.warning_label else ""
            print(f"    {c.name:<16} {c.points:>5} / {c.max_points:<5}{warn}")
    b = snap.breadth
    print(f"  騰落レシオ(25): {b.toraku_ratio_25}  NH/NL: {b.new_high_count:.0f}/"
          f"{b.new_low_count:.0f}  値上がり率: {b.advancing_pct:.0f}%")

    # Sectors
    banner("SECTORS")
    for row in snap.sectors[:10]:
        print(f"  {row['PhaseLabel']:<6} {row.get('Sector')}")
    print(f"  Phase distribution: {snap.phase_distribution}")

    # Screener
    banner(f"SCREENER — {args.screen} ({args.date})")
    table = pipeline.screener_table(ViewState(screen=args.screen), args.date)
    if not table["rows"] and args.date != "today":
        print(f"  {args.date}: no screener data")
    print(f"  {table['summary']}")
    for ov in snap.overlaps[:10]:
        print(f"  {ov.ticker:<6} {ov.display_name:<20} {ov.count} screens")

    # Portfolio
    if snap.portfolio:
        banner("PORTFOLIO")
        ro = snap.portfolio["risk_overview"]
        totals = snap.portfolio["position_totals"]
        print(f"  Positions: {totals['count']}  cost ¥{totals['total_cost']:,.0f}  "
              f"P&L ¥{totals['total_unrealized_pnl']:,.0f}")
        print(f"  DD ratio: {ro['dd_ratio']:.2f}"
              + ("  ** DD WARNING **" if ro["dd_warning"] else ""))

    # Artifacts
    with trace_event(events, "WRITE", "Save run artifacts"):
        ctx.save_table("breadth_series", breadth_series(snap.breadth_rows))
        ctx.save_table("screener_all", pd.DataFrame(
            pipeline.screener_table(ViewState(), "today")["rows"]))
        ctx.save_snapshot(snap)
    events.flush_all(args.report_dir)

    for sheet, err in snap.fetch_errors.items():
        print(f"  ! fetch {sheet}: {err}")
    for view, err in snap.view_errors.items():
        print(f"  ! view {view}: {err}")

    ctx.save_metadata({
        "config_hash": ctx.config_hash(cfg),
        "fetch_errors": snap.fetch_errors,
        "view_errors": snap.view_errors,
        "exposure_score": snap.exposure.score if snap.exposure else None,
    })

    elapsed = round(time.time() - t0, 1)
    banner(f"REFRESH COMPLETE — {elapsed}s total")
    return 1 if snap.view_errors else 0


if __name__ == "__main__":
    sys.exit(main())
