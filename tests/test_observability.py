import io
import logging

import pytest

from skillbase.observability import MetricsRecorder


def _capture_logger_output(logger_name: str):
    logger = logging.getLogger(logger_name)
    buffer = io.StringIO()
    handler = logging.StreamHandler(buffer)
    handler.setLevel(logging.INFO)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger, handler, buffer


def test_metrics_recorder_logs_when_enabled() -> None:
    metrics = MetricsRecorder(enabled=True, namespace="skillbase.test")
    logger, handler, buffer = _capture_logger_output("skillbase.metrics")

    try:
        metrics.increment("questions.answered", feature="bulk")
        metrics.record_timing(
            "llm.call_duration",
            0.05,
            operation="answer_question",
            backend=None,
        )
    finally:
        logger.removeHandler(handler)

    output = buffer.getvalue()
    assert "skillbase.test.questions.answered value=1 feature=bulk" in output
    assert "skillbase.test.llm.call_duration duration_ms=50" in output
    assert "backend=" not in output


def test_metrics_recorder_disabled_suppresses_logs(caplog) -> None:
    metrics = MetricsRecorder(enabled=False)

    with caplog.at_level(logging.INFO, logger="skillbase.metrics"):
        metrics.increment("questions.answered", feature="bulk")
        metrics.record_timing("llm.call_duration", 0.1, operation="complete")
        with metrics.track_timing("bulk_import.generate"):
            pass

    assert not caplog.records


def test_prometheus_export_renders_counters() -> None:
    metrics = MetricsRecorder(enabled=True, namespace="skillbase", prometheus_enabled=True)

    metrics.increment("bulk_import.drafts", outcome="ready", type="create")
    metrics.increment("bulk_import.drafts", outcome="ready", type="create")
    metrics.set_gauge("jobs.running", 2)

    body = metrics.render_prometheus().decode("utf-8")
    assert 'skillbase_bulk_import_drafts_total{outcome="ready",type="create"} 2.0' in body
    assert "skillbase_jobs_running 2.0" in body


def test_render_prometheus_requires_export_enabled() -> None:
    metrics = MetricsRecorder(enabled=True)

    with pytest.raises(RuntimeError):
        metrics.render_prometheus()
