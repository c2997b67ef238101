"""
Thread-safe in-memory metrics for the shorts service.

Tracks traffic, credit movement and generation outcomes:
  - Counters: requests.<operation>, credits.deducted / credits.refunded,
    generation.success.<capability> / generation.failure.<capability>,
    errors.<code>
  - Latency: adapter call durations per capability
  - Gauges: start_time and anything main.py samples at /metrics time
  - Recent errors: last 50, for diagnosis

All data is ephemeral (resets on restart). Credit totals are authoritative
in usage_history, not here.
"""

import time
import threading
from typing import Dict, List
from collections import defaultdict

_lock = threading.Lock()

# ── Counters ──────────────────────────────────────────────────────────────────
_counters: Dict[str, float] = defaultdict(float)

# ── Latency samples (last 100 per name) ───────────────────────────────────────
_latency_samples: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

# ── Time-series (per-minute buckets, last 60 minutes) ─────────────────────────
_timeseries: Dict[str, Dict[int, float]] = defaultdict(lambda: defaultdict(float))
MAX_MINUTES = 60

# ── Gauges ────────────────────────────────────────────────────────────────────
_gauges: Dict[str, float] = defaultdict(float)

# ── Error log ─────────────────────────────────────────────────────────────────
_recent_errors: List[dict] = []
MAX_ERRORS = 50


def _minute_bucket() -> int:
    return int(time.time()) // 60 * 60


# ── Public API ────────────────────────────────────────────────────────────────

def inc_counter(name: str, amount: float = 1):
    """Increment a counter (e.g. 'requests.generate_media', 'credits.deducted')."""
    with _lock:
        _counters[name] += amount
        _timeseries[name][_minute_bucket()] += amount


def get_counter(name: str) -> float:
    with _lock:
        return _counters.get(name, 0)


def record_latency(name: str, duration_ms: float):
    """Record a latency sample in milliseconds."""
    with _lock:
        samples = _latency_samples[name]
        samples.append(duration_ms)
        if len(samples) > MAX_SAMPLES:
            _latency_samples[name] = samples[-MAX_SAMPLES:]


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_error(operation: str, error_type: str, message: str, user_id: str = ""):
    """Record an error for root-cause analysis."""
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "operation": operation,
            "error_type": error_type,
            "message": message[:300],
            "user_id": user_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def reset():
    """Clear everything (tests)."""
    with _lock:
        _counters.clear()
        _latency_samples.clear()
        _timeseries.clear()
        _gauges.clear()
        _recent_errors.clear()


def get_snapshot() -> dict:
    """Complete metrics snapshot for the /metrics endpoint."""
    now = time.time()
    minute_now = int(now) // 60 * 60

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

        # Drop buckets older than the window while summing the last 5 minutes
        cutoff = minute_now - MAX_MINUTES * 60
        recent_cutoff = minute_now - 5 * 60
        recent_requests = 0.0
        recent_errors = 0.0
        for metric_name, buckets in _timeseries.items():
            for k in [k for k in buckets if k < cutoff]:
                del buckets[k]
            for bucket_time, count in buckets.items():
                if bucket_time < recent_cutoff:
                    continue
                if metric_name.startswith("requests."):
                    recent_requests += count
                elif metric_name.startswith("errors."):
                    recent_errors += count

        error_rate = (recent_errors / recent_requests * 100) if recent_requests > 0 else 0

        error_patterns: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            error_patterns[f"{err['operation']}:{err['error_type']}"] += 1

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": latency_stats,
            "error_rate_5m": round(error_rate, 2),
            "recent_errors": list(_recent_errors[-10:]),
            "error_patterns": dict(error_patterns),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }
