"""
API health monitoring for Nearby Search dependencies.

Two monitoring modes:
  1. Active probe (Nominatim status endpoint), run by a background
     daemon thread every HEALTH_CHECK_INTERVAL seconds.
  2. Passive tracking (Nominatim and the listing search backend), which
     records outcomes from real calls made while users search.

The listing backend has no cheap probe endpoint, so it is passive only.

Module-level singleton: all callers in this process share one HealthMonitor.
"""

import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

HEALTH_CHECK_INTERVAL = int(
    os.environ.get("HEALTH_CHECK_INTERVAL", "300")
)

_PROBE_TIMEOUT = 10

# Rolling window size for passive call tracking per service.
_PASSIVE_WINDOW_SIZE = 50

_HEALTHY_THRESHOLD = 0.95
_DEGRADED_THRESHOLD = 0.70

_NOMINATIM_STATUS_URL = os.environ.get(
    "NOMINATIM_STATUS_URL",
    "https://nominatim.openstreetmap.org/status?format=json",
)

SERVICES = ("nominatim", "listings")


@dataclass
class HealthCheckResult:
    """Health status for a single API dependency."""
    service: str
    status: str          # "healthy" | "degraded" | "down" | "unknown"
    latency_ms: int
    last_checked: str    # ISO-8601 timestamp
    error: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


@dataclass
class _CallRecord:
    timestamp: float
    success: bool
    latency_ms: int
    error: Optional[str] = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _status_for_rate(success_rate: float) -> str:
    if success_rate >= _HEALTHY_THRESHOLD:
        return "healthy"
    if success_rate >= _DEGRADED_THRESHOLD:
        return "degraded"
    return "down"


def _probe_result(status: str, t0: float, error: Optional[str] = None) -> HealthCheckResult:
    """Active Nominatim probe outcome, timed from t0 (time.monotonic)."""
    return HealthCheckResult(
        service="nominatim",
        status=status,
        latency_ms=int((time.monotonic() - t0) * 1000),
        last_checked=_now_iso(),
        error=error,
        details={"mode": "active"},
    )


class HealthMonitor:
    """Thread-safe health status tracker for external API dependencies."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active_results: Dict[str, HealthCheckResult] = {}
        self._passive: Dict[str, deque] = {
            svc: deque(maxlen=_PASSIVE_WINDOW_SIZE) for svc in SERVICES
        }
        self._prev_status: Dict[str, str] = {}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Passive recording (called from API clients)
    # ------------------------------------------------------------------

    def record_call(
        self,
        service: str,
        success: bool,
        latency_ms: int,
        error: Optional[str] = None,
    ) -> None:
        record = _CallRecord(
            timestamp=time.time(),
            success=success,
            latency_ms=int(latency_ms),
            error=error,
        )
        with self._lock:
            if service not in self._passive:
                self._passive[service] = deque(maxlen=_PASSIVE_WINDOW_SIZE)
            self._passive[service].append(record)

    def _compute_passive_status(self, service: str) -> HealthCheckResult:
        """Derive health status from the rolling window of real API calls."""
        with self._lock:
            window = list(self._passive.get(service, []))

        if not window:
            return HealthCheckResult(
                service=service,
                status="unknown",
                latency_ms=0,
                last_checked=_now_iso(),
                details={"mode": "passive", "sample_size": 0},
            )

        total = len(window)
        rate = sum(1 for r in window if r.success) / total
        last_error = next(
            (r.error for r in reversed(window) if not r.success and r.error), None
        )

        return HealthCheckResult(
            service=service,
            status=_status_for_rate(rate),
            latency_ms=int(sum(r.latency_ms for r in window) / total),
            last_checked=datetime.fromtimestamp(
                max(r.timestamp for r in window), tz=timezone.utc
            ).isoformat(),
            error=last_error,
            details={
                "mode": "passive",
                "success_rate": round(rate, 3),
                "sample_size": total,
            },
        )

    # ------------------------------------------------------------------
    # Active health check
    # ------------------------------------------------------------------

    def _check_nominatim(self) -> HealthCheckResult:
        """Probe the Nominatim status endpoint (no geocoding quota used)."""
        t0 = time.monotonic()
        try:
            resp = requests.get(_NOMINATIM_STATUS_URL, timeout=_PROBE_TIMEOUT)
        except requests.Timeout:
            return _probe_result("down", t0, "timeout")
        except requests.RequestException as e:
            return _probe_result("down", t0, str(e))
        if resp.status_code == 200:
            return _probe_result("healthy", t0)
        return _probe_result("degraded", t0, f"HTTP {resp.status_code}")

    def run_active_checks(self) -> None:
        """Run the active probe and store the result. Called by the bg thread."""
        result = self._check_nominatim()
        with self._lock:
            prev = self._prev_status.get(result.service)
            self._active_results[result.service] = result
            self._prev_status[result.service] = result.status

        if prev and prev != result.status:
            logger.warning(
                "[health] %s status changed: %s -> %s (error=%s)",
                result.service, prev, result.status, result.error,
            )
        else:
            logger.info(
                "[health] %s: %s (%dms)",
                result.service, result.status, result.latency_ms,
            )

    # ------------------------------------------------------------------
    # Combined status view
    # ------------------------------------------------------------------

    def get_all_status(self) -> Dict[str, Dict[str, Any]]:
        """Nominatim: active probe if available, passive fallback. Listings: passive."""
        out: Dict[str, Dict[str, Any]] = {}
        with self._lock:
            active = self._active_results.get("nominatim")
        out["nominatim"] = self._result_to_dict(
            active or self._compute_passive_status("nominatim")
        )
        out["listings"] = self._result_to_dict(self._compute_passive_status("listings"))
        return out

    @staticmethod
    def _result_to_dict(result: HealthCheckResult) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "status": result.status,
            "latency_ms": result.latency_ms,
            "last_checked": result.last_checked,
        }
        if result.error:
            d["error"] = result.error
        if result.details:
            d.update(result.details)
        return d

    # ------------------------------------------------------------------
    # Background thread lifecycle
    # ------------------------------------------------------------------

    def _loop(self) -> None:
        logger.info("[health] Health monitor thread started (interval=%ds)", HEALTH_CHECK_INTERVAL)
        while not self._stop_event.is_set():
            try:
                self.run_active_checks()
            except Exception:
                logger.exception("[health] Unexpected error in active health checks")
            self._stop_event.wait(timeout=HEALTH_CHECK_INTERVAL)
        logger.info("[health] Health monitor thread stopped")

    def start(self) -> None:
        """Start the background health monitor thread (idempotent)."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()


# ---------------------------------------------------------------------------
# Module-level singleton and public API
# ---------------------------------------------------------------------------

_monitor = HealthMonitor()


def record_call(
    service: str,
    success: bool,
    latency_ms: int,
    error: Optional[str] = None,
) -> None:
    """Record an API call outcome for passive health tracking.

    Called from NominatimClient and ListingSearchService.  Failures in
    health tracking never propagate; callers wrap in try/except.
    """
    _monitor.record_call(service, success, latency_ms, error)


def get_status() -> Dict[str, Dict[str, Any]]:
    return _monitor.get_all_status()


def start_monitor() -> None:
    _monitor.start()


def stop_monitor() -> None:
    _monitor.stop()
