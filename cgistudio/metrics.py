"""
In-memory metrics for the generation service, served by GET /metrics.

  - Counters:  stage attempts / failures, run outcomes, created projects
  - Latency:   per-stage duration samples (seconds)
  - Spend:     millicents booked per stage across finished runs
  - Gauges:    live runs in this process
  - Errors:    the last stage failures, for root-cause analysis

Everything is process-local and lost on restart; the projects table is the
durable record of status and cost.
"""

import time
import threading
from typing import Dict, Iterable, List, Tuple
from collections import defaultdict

_lock = threading.Lock()
_started_at = time.time()

_counters: Dict[str, int] = defaultdict(int)
_gauges: Dict[str, float] = {}
_spend: Dict[str, int] = defaultdict(int)

# ── Stage latency (bounded per stage) ────────────────────────────────────────
_stage_latency: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

# ── Failure log ──────────────────────────────────────────────────────────────
_failures: List[dict] = []
MAX_ERRORS = 50


def inc_counter(name: str, amount: int = 1):
    """Bump a counter, e.g. 'stage.video_generation.failures' or 'runs.cancelled'."""
    with _lock:
        _counters[name] += amount


def get_counter(name: str) -> int:
    with _lock:
        return _counters.get(name, 0)


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_latency(stage: str, seconds: float):
    with _lock:
        samples = _stage_latency[stage]
        samples.append(seconds)
        del samples[:-MAX_SAMPLES]


def record_spend(entries: Iterable[Tuple[str, int]]):
    """Add a finished run's ledger entries (stage, millicents) to the spend totals."""
    with _lock:
        for stage, amount in entries:
            _spend[stage] += amount


def record_error(stage: str, error_type: str, message: str, project_id: str = ""):
    with _lock:
        _failures.append({
            "timestamp": time.time(),
            "project_id": project_id,
            "stage": stage,
            "error_type": error_type,
            "message": message[:300],
        })
        del _failures[:-MAX_ERRORS]


def reset():
    """Drop all collected data."""
    with _lock:
        _counters.clear()
        _gauges.clear()
        _spend.clear()
        _stage_latency.clear()
        _failures.clear()


def _summarise(samples: List[float]) -> dict:
    ordered = sorted(samples)
    n = len(ordered)
    return {
        "p50": ordered[n // 2],
        "p95": ordered[int(n * 0.95)] if n >= 20 else ordered[-1],
        "max": ordered[-1],
        "avg": sum(ordered) / n,
        "count": n,
    }


def get_snapshot() -> dict:
    now = time.time()
    with _lock:
        failure_rates = {}
        for key, attempts in _counters.items():
            if not (key.startswith("stage.") and key.endswith(".attempts")) or not attempts:
                continue
            stage = key[len("stage."):-len(".attempts")]
            failures = _counters.get(f"stage.{stage}.failures", 0)
            failure_rates[stage] = round(failures / attempts * 100, 2)

        failure_patterns: Dict[str, int] = defaultdict(int)
        for failure in _failures:
            failure_patterns[f"{failure['stage']}:{failure['error_type']}"] += 1

        return {
            "timestamp": now,
            "uptime_seconds": now - _started_at,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": {stage: _summarise(s) for stage, s in _stage_latency.items() if s},
            "failure_rate_pct": failure_rates,
            "spend_millicents": dict(_spend),
            "recent_errors": list(_failures[-10:]),
            "error_patterns": dict(failure_patterns),
        }
