"""Metrics instrumentation that logs every sample and can export to Prometheus."""

from __future__ import annotations

import logging
import re
import time
from contextlib import contextmanager
from typing import Any, Tuple

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter as PromCounter,
    Gauge as PromGauge,
    Histogram as PromHistogram,
    generate_latest,
)

_PROM_NAME_RE = re.compile(r"[^a-zA-Z0-9_]")

_LabelKey = Tuple[str, Tuple[str, ...]]


class MetricsRecorder:
    """Emit structured metrics via logging and (optionally) Prometheus."""

    def __init__(
        self,
        *,
        enabled: bool = True,
        namespace: str = "skillbase",
        logger: logging.Logger | None = None,
        prometheus_enabled: bool = False,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self._enabled = enabled
        self._namespace = namespace.strip() or "skillbase"
        self._logger = logger or logging.getLogger("skillbase.metrics")
        self._prometheus_enabled = bool(prometheus_enabled)
        if registry is not None:
            self._prom_registry: CollectorRegistry | None = registry
        else:
            self._prom_registry = CollectorRegistry() if self._prometheus_enabled else None
        self._prom_counters: dict[_LabelKey, PromCounter] = {}
        self._prom_histograms: dict[_LabelKey, PromHistogram] = {}
        self._prom_gauges: dict[_LabelKey, PromGauge] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def prometheus_enabled(self) -> bool:
        return self._prometheus_enabled and self._prom_registry is not None

    @property
    def prometheus_registry(self) -> CollectorRegistry | None:
        return self._prom_registry

    @property
    def prometheus_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def render_prometheus(self) -> bytes:
        if not self.prometheus_enabled:
            raise RuntimeError("Prometheus export is disabled")
        return generate_latest(self._prom_registry)

    def increment(self, metric: str, *, value: int = 1, **tags: Any) -> None:
        """Increment a counter metric."""

        if not self._enabled:
            return
        value = int(value)
        clean_tags = _clean(tags)
        self._emit(metric, fields={"value": value}, tags=clean_tags)
        if self.prometheus_enabled:
            counter = self._prom_metric(self._prom_counters, PromCounter, metric, "counter", clean_tags)
            self._labelled(counter, clean_tags).inc(float(max(value, 0)))

    def set_gauge(self, metric: str, value: float, **tags: Any) -> None:
        """Set the value of a gauge metric."""

        if not self._enabled:
            return
        clean_tags = _clean(tags)
        self._emit(metric, fields={"value": value}, tags=clean_tags)
        if self.prometheus_enabled:
            gauge = self._prom_metric(self._prom_gauges, PromGauge, metric, "gauge", clean_tags)
            self._labelled(gauge, clean_tags).set(float(value))

    def record_timing(self, metric: str, duration_seconds: float, **tags: Any) -> None:
        """Emit a timing metric, recording milliseconds to logs."""

        if not self._enabled:
            return
        duration_ms = max(duration_seconds * 1000.0, 0.0)
        clean_tags = _clean(tags)
        self._emit(metric, fields={"duration_ms": round(duration_ms, 4)}, tags=clean_tags)
        if self.prometheus_enabled:
            histogram = self._prom_metric(
                self._prom_histograms, PromHistogram, metric, "duration", clean_tags
            )
            self._labelled(histogram, clean_tags).observe(max(duration_seconds, 0.0))

    @contextmanager
    def track_timing(self, metric: str, **tags: Any):
        """Context manager that records execution time for the wrapped block."""

        if not self._enabled:
            yield
            return

        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_timing(metric, time.perf_counter() - start, **tags)

    def _emit(self, metric: str, *, fields: dict[str, Any], tags: dict[str, Any]) -> None:
        segments = [f"{key}={self._stringify(value)}" for key, value in sorted(fields.items())]
        segments.extend(f"{key}={self._stringify(value)}" for key, value in sorted(tags.items()))
        message = f"{self._namespace}.{metric}"
        if segments:
            message = f"{message} {' '.join(segments)}"
        self._logger.info(message)

    def _prom_metric(self, cache: dict, factory: Any, metric: str, kind: str, tags: dict[str, Any]):
        label_names = tuple(self._sanitize_label(name) for name in sorted(tags))
        key = (metric, label_names)
        instrument = cache.get(key)
        if instrument is None:
            instrument = factory(
                self._prom_metric_name(metric),
                f"{metric} {kind}",
                labelnames=list(label_names),
                registry=self._prom_registry,
            )
            cache[key] = instrument
        return instrument

    def _labelled(self, instrument: Any, tags: dict[str, Any]):
        # prometheus_client rejects .labels() on metrics declared without label names
        if not tags:
            return instrument
        return instrument.labels(**self._label_values(tags))

    def _label_values(self, tags: dict[str, Any]) -> dict[str, str]:
        return {self._sanitize_label(key): self._stringify(tags[key]) for key in sorted(tags)}

    def _prom_metric_name(self, metric: str) -> str:
        cleaned = _PROM_NAME_RE.sub("_", metric)
        return f"{_PROM_NAME_RE.sub('_', self._namespace)}_{cleaned}".strip("_")

    @staticmethod
    def _sanitize_label(label: str) -> str:
        sanitized = _PROM_NAME_RE.sub("_", label)
        return sanitized or "label"

    @staticmethod
    def _stringify(value: Any) -> str:
        if isinstance(value, float):
            return f"{value:.4f}" if not value.is_integer() else f"{int(value)}"
        return str(value)


def _clean(tags: dict[str, Any]) -> dict[str, Any]:
    return {key: val for key, val in tags.items() if val is not None}


__all__ = ["MetricsRecorder"]
