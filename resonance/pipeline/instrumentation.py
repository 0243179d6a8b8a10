"""Lightweight structured logging for analysis sessions.

Sessions emit state transitions (gate, dominant zone, onsets, calibration)
as JSONL events and keep per-stage timing totals. All writes are
best-effort and must never break a tick.
"""
from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import asdict, is_dataclass
from typing import Any, Dict, Optional

import numpy as np

logger = logging.getLogger(__name__)


class SessionLogger:
    """Structured logger that emits JSONL events and timing summaries."""

    def __init__(self, base_dir: str = "results", run_name: Optional[str] = None):
        self.base_dir = base_dir
        self.run_name = run_name or f"session_{int(time.time())}"
        self.run_dir = os.path.join(self.base_dir, self.run_name)
        os.makedirs(self.run_dir, exist_ok=True)
        self.logs_path = os.path.join(self.run_dir, "events.jsonl")
        self.timing_path = os.path.join(self.run_dir, "timing.json")
        self._timing_total: Dict[str, float] = {}
        self._timing_count: Dict[str, int] = {}
        self._start_time = time.perf_counter()
        self.log_event("session", "start", {"run_dir": self.run_dir})

    def log_event(self, stage: str, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        entry: Dict[str, Any] = {
            "stage": stage,
            "event": event,
            "timestamp": time.time(),
        }
        if payload:
            for key, value in payload.items():
                try:
                    json.dumps(value, default=self._safe_json_default)
                    entry[key] = value
                except (TypeError, ValueError):
                    entry[key] = str(value)
        try:
            with open(self.logs_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=self._safe_json_default) + "\n")
        except OSError as exc:
            logger.warning("event log write failed: %s", exc)

    def record_timing(self, stage: str, duration_s: float) -> None:
        self._timing_total[stage] = self._timing_total.get(stage, 0.0) + float(duration_s)
        self._timing_count[stage] = self._timing_count.get(stage, 0) + 1

    @property
    def timing(self) -> Dict[str, Dict[str, float]]:
        out: Dict[str, Dict[str, float]] = {}
        for stage, total in self._timing_total.items():
            n = max(1, self._timing_count.get(stage, 1))
            out[stage] = {"total_s": total, "mean_ms": 1000.0 * total / n, "calls": float(n)}
        return out

    def finalize(self) -> None:
        summary = self.timing
        summary["session"] = {"total_s": float(time.perf_counter() - self._start_time)}
        try:
            with open(self.timing_path, "w", encoding="utf-8") as f:
                json.dump(summary, f, indent=2)
        except OSError as exc:
            logger.warning("timing summary write failed: %s", exc)
        self.log_event("session", "finish")

    def emit_config(self, stage: str, config_obj: Any, extras: Optional[Dict[str, Any]] = None) -> None:
        payload: Dict[str, Any] = {"config": {}}
        if is_dataclass(config_obj):
            payload["config"] = asdict(config_obj)
        else:
            payload["config"] = str(config_obj)
        if extras:
            payload.update(extras)
        self.log_event(stage, "config", payload)

    @staticmethod
    def _safe_json_default(o: Any) -> Any:
        if isinstance(o, np.floating):
            return float(o)
        if isinstance(o, np.integer):
            return int(o)
        if isinstance(o, np.ndarray):
            return o.tolist()

        if is_dataclass(o):
            return asdict(o)

        # enums
        v = getattr(o, "value", None)
        if v is not None:
            return v

        return str(o)
