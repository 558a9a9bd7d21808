"""
Thread-safe in-memory metrics collector for the worker.

Tracks:
  - Traffic: scenes started / completed / failed, requests by route
  - Errors: failure counters by error code, plus the last 50 failures for RCA
  - Latency: per-step duration samples (last 100 per step)
  - Saturation: queue depth, in-flight scenes

All data is ephemeral (resets on restart). The durable record of every run
is the scene row and its generation_logs.
"""

import time
import threading
from typing import Dict, List
from collections import defaultdict

_lock = threading.Lock()

# ── Counters ──────────────────────────────────────────────────────────────────
_counters: Dict[str, int] = defaultdict(int)

# ── Latency samples (last 100 per step) ───────────────────────────────────────
_latency_samples: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

# ── Gauges ────────────────────────────────────────────────────────────────────
_gauges: Dict[str, float] = defaultdict(float)

# ── Error log (last 50 errors for RCA) ────────────────────────────────────────
_recent_errors: List[dict] = []
MAX_ERRORS = 50


# ── Public API ────────────────────────────────────────────────────────────────

def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'scenes.started', 'errors.POLL_TIMEOUT')."""
    with _lock:
        _counters[name] += amount


def record_latency(name: str, duration_ms: float):
    """Record a latency sample in milliseconds."""
    with _lock:
        samples = _latency_samples[name]
        samples.append(duration_ms)
        if len(samples) > MAX_SAMPLES:
            _latency_samples[name] = samples[-MAX_SAMPLES:]


def set_gauge(name: str, value: float):
    """Set a gauge value (e.g. 'queue_depth', 'active_scenes')."""
    with _lock:
        _gauges[name] = value


def add_gauge(name: str, delta: float):
    with _lock:
        _gauges[name] += delta


def record_error(step: str, error_code: str, message: str, scene_id: str = ""):
    """Record a failed run for root-cause analysis."""
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "step": step,
            "error_code": error_code,
            "message": message[:300],
            "scene_id": scene_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def reset():
    """Clear everything except start_time."""
    with _lock:
        start_time = _gauges.get("start_time")
        _counters.clear()
        _latency_samples.clear()
        _gauges.clear()
        _recent_errors.clear()
        if start_time:
            _gauges["start_time"] = start_time


def get_snapshot() -> dict:
    """
    Return a complete metrics snapshot for the /metrics endpoint.
    Thread-safe read of all collected data.
    """
    now = time.time()

    with _lock:
        latency_stats = {}
        for name, samples in _latency_samples.items():
            if not samples:
                continue
            sorted_s = sorted(samples)
            n = len(sorted_s)
            latency_stats[name] = {
                "p50": sorted_s[n // 2],
                "p95": sorted_s[int(n * 0.95)] if n >= 20 else sorted_s[-1],
                "avg": sum(sorted_s) / n,
                "count": n,
            }

        error_patterns: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            error_patterns[f"{err['step']}:{err['error_code']}"] += 1

        started = _counters.get("scenes.started", 0)
        failed = _counters.get("scenes.failed", 0)
        failure_rate = (failed / started * 100) if started > 0 else 0

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": latency_stats,
            "failure_rate": round(failure_rate, 2),
            "recent_errors": list(_recent_errors[-10:]),
            "error_patterns": dict(error_patterns),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }
