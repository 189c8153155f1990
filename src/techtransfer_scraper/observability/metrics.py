"""
Defines and manages Prometheus metrics for the scraping engine.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any, Dict, Optional

import psutil
import structlog
from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

if TYPE_CHECKING:
    from techtransfer_scraper.config.config import MonitoringConfig

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Defined before any metric creation so that re-importing this module during
# the test suite reuses the registered collectors instead of failing.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            # Registration lost the race, fall back to the now-existing collector.
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]

_SCRAPE_BUCKETS = [0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0]


def _create_metrics() -> Dict[str, Any]:
    """Create all collectors, reusing any that are already registered."""
    return {
        # Job outcomes
        "jobs_processed": Counter(
            "scraper_jobs_processed_total",
            "Jobs that reached an outcome, by institution class and resulting status",
            ["institution_type", "status"],
        ),
        "jobs_failed": Counter(
            "scraper_jobs_failed_total",
            "Failed job attempts by error kind",
            ["institution_type", "error_kind"],
        ),
        "jobs_rate_limited": Counter(
            "scraper_jobs_rate_limited_total",
            "Jobs deferred because the institution had no rate-limit tokens",
            ["institution_type"],
        ),
        "jobs_retried": Counter(
            "scraper_jobs_retried_total",
            "Jobs scheduled for another attempt",
            ["institution_type"],
        ),
        "jobs_dead_lettered": Counter(
            "scraper_jobs_dead_lettered_total",
            "Jobs routed to the dead-letter destination",
            ["institution_type"],
        ),
        "jobs_in_flight": Gauge(
            "scraper_jobs_in_flight",
            "Jobs currently executing",
        ),
        "scrape_duration_seconds": Histogram(
            "scraper_scrape_duration_seconds",
            "Wall-clock time of a single scrape attempt",
            ["engine", "institution_type"],
            buckets=_SCRAPE_BUCKETS,
        ),
        # Engines
        "engine_pool_live": Gauge(
            "scraper_engine_pool_live",
            "Live engine handles per engine type",
            ["engine"],
        ),
        "engine_pool_evictions": Counter(
            "scraper_engine_pool_evictions_total",
            "Engine handles destroyed after a failed health probe",
            ["engine"],
        ),
        "render_recycles": Counter(
            "scraper_render_recycles_total",
            "Browser sessions recycled by the memory watchdog",
        ),
        "http_responses": Counter(
            "scraper_http_responses_total",
            "HTTP responses by status class",
            ["status_class"],
        ),
        "pages_deferred": Counter(
            "scraper_pages_deferred_total",
            "Paginated pages deferred because of rate limiting",
        ),
        # Circuit breaker
        "circuit_state": Gauge(
            "scraper_circuit_state",
            "Circuit breaker state (0 closed, 1 half-open, 2 open)",
            ["name"],
        ),
        "circuit_short_circuits": Counter(
            "scraper_circuit_short_circuits_total",
            "Calls rejected while the breaker was open",
            ["name"],
        ),
        # System
        "system_cpu_percent": Gauge(
            "scraper_system_cpu_percent",
            "Current CPU utilization of the system",
        ),
        "system_memory_percent": Gauge(
            "scraper_system_memory_percent",
            "Current memory utilization of the system",
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()


class MetricsManager:
    """Exposes the registry over HTTP and samples host resource usage."""

    def __init__(self, config: MonitoringConfig) -> None:
        self.config = config
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._http_started = False

    def start(self) -> None:
        if self.config.prometheus_port is not None and not self._http_started:
            start_http_server(self.config.prometheus_port)
            self._http_started = True
            logger.info("Prometheus exporter started", port=self.config.prometheus_port)

        if self._thread is None:
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._sample_loop, name="system-metrics", daemon=True)
            self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None

    def sample_once(self) -> Dict[str, float]:
        cpu = psutil.cpu_percent(interval=None)
        memory = psutil.virtual_memory().percent
        if "system_cpu_percent" in METRICS:
            METRICS["system_cpu_percent"].set(cpu)
        if "system_memory_percent" in METRICS:
            METRICS["system_memory_percent"].set(memory)
        return {"cpu_percent": cpu, "memory_percent": memory}

    def _sample_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.sample_once()
            except (psutil.Error, OSError) as e:
                logger.warning("System metrics sampling failed", error=str(e))
            self._stop_event.wait(timeout=self.config.system_metrics_interval)
