"""
Request-scoped tracing for Nearby Search.

A thread-local TraceContext records:
  - Per-stage timing (geocode, search, render) with the API calls made
  - Per-outbound-call timing (service, endpoint, elapsed_ms, HTTP status,
    provider status such as "cache_hit" or "timeout")
  - An end-of-request summary line

Usage:
    from ns_trace import TraceContext, get_trace, set_trace, clear_trace

    # In the request handler (app.py):
    ctx = TraceContext(trace_id=request_id)
    set_trace(ctx)
    with ctx.stage("search"):
        ...
    ctx.log_summary()
    clear_trace()

    # In API clients:
    trace = get_trace()
    if trace:
        trace.record_api_call(...)
"""

import time
import threading
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any

logger = logging.getLogger(__name__)


@dataclass
class APICallRecord:
    """One outbound HTTP call (Nominatim, listing search)."""
    service: str          # "nominatim" | "listings"
    endpoint: str         # "search", "reverse", "listings_search"
    elapsed_ms: int
    status_code: int
    provider_status: str = ""
    stage: str = ""


@dataclass
class StageRecord:
    stage_name: str
    elapsed_ms: int = 0
    api_calls_made: int = 0
    error_class: str = ""


@dataclass
class TraceContext:
    """Accumulates timing data for a single request."""
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)
    _current_stage: str = ""

    @contextmanager
    def stage(self, name: str):
        """Time a block as a named stage; exceptions are recorded and re-raised."""
        previous = self._current_stage
        self._current_stage = name
        t0 = time.time()
        error_class = ""
        try:
            yield self
        except Exception as e:
            error_class = type(e).__name__
            raise
        finally:
            self._current_stage = previous
            self._finish_stage(name, t0, error_class)

    def _finish_stage(self, name: str, t0: float, error_class: str):
        rec = StageRecord(
            stage_name=name,
            elapsed_ms=int((time.time() - t0) * 1000),
            api_calls_made=sum(1 for c in self.api_calls if c.stage == name),
            error_class=error_class,
        )
        self.stages.append(rec)
        logger.info(
            "  [stage] trace=%s %s %s %dms api_calls=%d",
            self.trace_id,
            name,
            "ERR" if error_class else "OK",
            rec.elapsed_ms,
            rec.api_calls_made,
        )

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
    ):
        rec = APICallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=int(elapsed_ms),
            status_code=status_code,
            provider_status=provider_status,
            stage=self._current_stage,
        )
        self.api_calls.append(rec)
        logger.info(
            "  [api] trace=%s stage=%s svc=%s ep=%s ms=%d http=%d provider=%s",
            self.trace_id,
            self._current_stage or "-",
            service,
            endpoint,
            rec.elapsed_ms,
            status_code,
            provider_status,
        )

    def summary_dict(self) -> Dict[str, Any]:
        errored = [s for s in self.stages if s.error_class]
        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": int((time.time() - self.request_start) * 1000),
            "total_api_calls": len(self.api_calls),
            "cache_hits": sum(1 for c in self.api_calls if c.provider_status == "cache_hit"),
            "stages": [s.stage_name for s in self.stages],
            "final_outcome": "error" if errored else "success",
        }

    def log_summary(self):
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d api_calls=%d cache_hits=%d outcome=%s",
            s["trace_id"],
            s["total_elapsed_ms"],
            s["total_api_calls"],
            s["cache_hits"],
            s["final_outcome"],
        )


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Get the current request's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    _trace_local.ctx = ctx


def clear_trace():
    _trace_local.ctx = None
