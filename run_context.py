#!/usr/bin/env python3
"""
Run Context — per-refresh artifacts and structured logging.

Provides:
  - run_id generation (UUID4)
  - Config snapshot saving + config hash
  - JSON snapshot of the dashboard output
  - Table artifacts as CSV (breadth series, reconciled screener rows, ...)
  - Structured JSON logging for the whole ``dashboard`` logger tree

Usage:
    ctx = RunContext()                   # generates run_id, creates runs/{run_id}/
    ctx.save_config(cfg)                 # snapshot of the validated config
    ctx.save_table("breadth_series", df)
    ctx.log.info("message", extra={"source": "Indices"})
    ctx.save_snapshot(snapshot)
    ctx.save_metadata({...})
"""

import hashlib
import json
import logging
import platform
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import pandas as pd
import yaml
from pydantic import BaseModel

ROOT = Path(__file__).resolve().parent
RUNS_DIR = ROOT / "runs"

_EXTRA_KEYS = ("source", "view", "rows", "phase", "step", "run_id",
               "fetch_time_ms")


class _JSONFormatter(logging.Formatter):
    """Structured JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
            "func": record.funcName,
            "msg": record.getMessage(),
        }
        for key in _EXTRA_KEYS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


class RunContext:
    """Owns one run directory and the handlers on the ``dashboard`` logger."""

    def __init__(self, run_id: str | None = None, runs_dir: Path | None = None):
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.start_time = datetime.now()
        self.run_dir = Path(runs_dir or RUNS_DIR) / self.run_id
        self.run_dir.mkdir(parents=True, exist_ok=True)

        self.log = logging.getLogger("dashboard")
        self.close()
        self.log.setLevel(logging.DEBUG)
        self.log.propagate = False

        fh = logging.FileHandler(str(self.run_dir / "run.log"), encoding="utf-8")
        fh.setFormatter(_JSONFormatter())
        self.log.addHandler(fh)

        ch = logging.StreamHandler(sys.stdout)
        ch.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%H:%M:%S"))
        ch.setLevel(logging.INFO)
        self.log.addHandler(ch)

        self.log.info("Run started", extra={"run_id": self.run_id})

    def close(self):
        """Detach and close this context's handlers."""
        for h in list(self.log.handlers):
            self.log.removeHandler(h)
            h.close()
        self.log.propagate = True

    def save_config(self, cfg: BaseModel) -> Path:
        path = self.run_dir / "config.yaml"
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(cfg.model_dump(mode="json"), f,
                           default_flow_style=False, sort_keys=False,
                           allow_unicode=True)
        self.log.info("Config snapshot saved", extra={"phase": "init"})
        return path

    @staticmethod
    def config_hash(cfg: BaseModel) -> str:
        """Deterministic hash of the scoring-relevant config sections."""
        dumped = cfg.model_dump(mode="json")
        relevant = {k: dumped.get(k) for k in ("exposure", "phase", "entry", "screens")}
        raw = json.dumps(relevant, sort_keys=True)
        return hashlib.sha256(raw.encode()).hexdigest()[:12]

    def save_table(self, name: str, df: pd.DataFrame) -> Path:
        path = self.run_dir / f"{name}.csv"
        df.to_csv(path, index=False, encoding="utf-8")
        self.log.info(f"Artifact saved: {name} ({len(df)} rows)",
                      extra={"phase": "artifact", "step": name, "rows": len(df)})
        return path

    def save_snapshot(self, snapshot: BaseModel) -> Path:
        path = self.run_dir / "snapshot.json"
        with open(path, "w", encoding="utf-8") as f:
            f.write(snapshot.model_dump_json(indent=2))
        self.log.info("Snapshot saved", extra={"phase": "artifact"})
        return path

    def save_metadata(self, extra: dict | None = None) -> Path:
        """Save run metadata (call at end of the refresh)."""
        end_time = datetime.now()
        meta = {
            "run_id": self.run_id,
            "start_time": self.start_time.isoformat(),
            "end_time": end_time.isoformat(),
            "elapsed_seconds": round((end_time - self.start_time).total_seconds(), 1),
            "python_version": sys.version,
            "platform": platform.platform(),
            "packages": _get_package_versions(),
        }
        if extra:
            meta.update(extra)
        path = self.run_dir / "meta.json"
        with open(path, "w", encoding="utf-8") as f:
            json.dump(meta, f, indent=2, default=str, ensure_ascii=False)
        self.log.info("Run metadata saved", extra={"run_id": self.run_id})
        return path


def _get_package_versions() -> dict:
    import importlib.metadata

    versions = {}
    for pkg in ["requests", "pandas", "numpy", "pyyaml", "pydantic"]:
        try:
            versions[pkg] = importlib.metadata.version(pkg)
        except importlib.metadata.PackageNotFoundError:
            versions[pkg] = "unknown"
    return versions
