"""Request latency logging middleware and in-process latency stats."""

import logging
import re
import time
from collections import defaultdict, deque
from typing import Callable

from fastapi import Request, Response

logger = logging.getLogger(__name__)

# Thresholds for log levels (in milliseconds)
SLOW_REQUEST_THRESHOLD_MS = 1000
VERY_SLOW_FACTOR = 3

# Routes that wait on PayPal or Stripe before answering
PROVIDER_BOUND_PREFIXES = ("/api/v1/checkout/paypal/", "/api/v1/checkout/stripe/", "/api/v1/webhooks/")
PROVIDER_SLOW_REQUEST_THRESHOLD_MS = 5000

HEALTH_CHECK_PATHS = ("/health", "/health/ready", "/health/latency")

UUID_PATTERN = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)


def _percentile(sorted_values: list[float], fraction: float) -> float:
    return round(sorted_values[min(int(len(sorted_values) * fraction), len(sorted_values) - 1)], 2)


def normalize_path(path: str) -> str:
    """Collapse order ids so stats group by route."""
    return UUID_PATTERN.sub("{id}", path)


class LatencyStats:
    """Bounded window of recent request latencies.

    Exposed through /health/latency.
    """

    def __init__(self, max_samples: int = 1000):
        # (normalized path, latency_ms, status_code)
        self._samples: deque[tuple[str, float, int]] = deque(maxlen=max_samples)

    def record(self, path: str, latency_ms: float, status_code: int = 200) -> None:
        self._samples.append((normalize_path(path), latency_ms, status_code))

    def get_stats(self) -> dict:
        """Aggregate stats over the whole window."""
        if not self._samples:
            return {
                "total_requests": 0,
                "server_errors": 0,
                "avg_latency_ms": 0,
                "p50_latency_ms": 0,
                "p95_latency_ms": 0,
                "p99_latency_ms": 0,
            }

        latencies = sorted(sample[1] for sample in self._samples)
        total = len(latencies)
        return {
            "total_requests": total,
            "server_errors": sum(1 for sample in self._samples if sample[2] >= 500),
            "avg_latency_ms": round(sum(latencies) / total, 2),
            "p50_latency_ms": _percentile(latencies, 0.5),
            "p95_latency_ms": _percentile(latencies, 0.95),
            "p99_latency_ms": _percentile(latencies, 0.99),
        }

    def get_stats_by_path(self) -> dict:
        """Aggregate stats per normalized path."""
        latencies_by_path: dict[str, list[float]] = defaultdict(list)
        errors_by_path: dict[str, int] = defaultdict(int)
        for path, latency, status_code in self._samples:
            latencies_by_path[path].append(latency)
            if status_code >= 500:
                errors_by_path[path] += 1

        result = {}
        for path, latencies in latencies_by_path.items():
            latencies.sort()
            result[path] = {
                "count": len(latencies),
                "server_errors": errors_by_path[path],
                "avg_ms": round(sum(latencies) / len(latencies), 2),
                "p95_ms": _percentile(latencies, 0.95),
            }
        return result


_latency_stats: LatencyStats | None = None


def get_latency_stats() -> LatencyStats:
    """Get or create the process-wide latency stats."""
    global _latency_stats
    if _latency_stats is None:
        _latency_stats = LatencyStats()
    return _latency_stats


async def latency_logging_middleware(request: Request, call_next: Callable) -> Response:
    """Log request latency and record it for /health/latency.

    Capture, session and webhook routes wait on a payment provider, so they
    are only flagged slow past the provider threshold.
    """
    start_time = time.perf_counter()

    method = request.method
    path = request.url.path
    is_health_check = path in HEALTH_CHECK_PATHS
    slow_threshold = (
        PROVIDER_SLOW_REQUEST_THRESHOLD_MS if path.startswith(PROVIDER_BOUND_PREFIXES) else SLOW_REQUEST_THRESHOLD_MS
    )

    response = None
    error_occurred = False

    try:
        response = await call_next(request)
        return response
    except Exception:
        error_occurred = True
        raise
    finally:
        latency_ms = (time.perf_counter() - start_time) * 1000
        status_code = response.status_code if response else 500

        if not is_health_check:
            get_latency_stats().record(path, latency_ms, status_code)

        log_msg = "%s %s - %d - %.2fms"
        log_args = (method, path, status_code, latency_ms)

        if is_health_check:
            if latency_ms > 100:
                logger.debug(log_msg, *log_args)
        elif error_occurred or status_code >= 500:
            logger.error(log_msg, *log_args)
        elif latency_ms > slow_threshold * VERY_SLOW_FACTOR:
            logger.error("VERY SLOW REQUEST: " + log_msg, *log_args)
        elif latency_ms > slow_threshold:
            logger.warning("SLOW REQUEST: " + log_msg, *log_args)
        elif status_code >= 400:
            logger.warning(log_msg, *log_args)
        else:
            logger.info(log_msg, *log_args)
