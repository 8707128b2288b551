"""Unit tests for metrics module."""

from unittest.mock import patch

from prometheus_client import CollectorRegistry

from migrator.metrics import MigratorMetrics


def test_counters(metrics: MigratorMetrics, registry: CollectorRegistry) -> None:
    """Test labelled counters."""
    metrics.record_run("safe", "success")
    metrics.record_run("safe", "success")
    metrics.record_user("failed")
    metrics.record_backup("snapshot")
    metrics.record_rollback("partial", "success")
    metrics.record_sync_item("retried")

    assert registry.get_sample_value(
        "migrator_runs_total", {"strategy": "safe", "status": "success"}
    ) == 2
    assert registry.get_sample_value("migrator_users_total", {"outcome": "failed"}) == 1
    assert registry.get_sample_value("migrator_backups_total", {"kind": "snapshot"}) == 1
    assert registry.get_sample_value(
        "migrator_rollbacks_total", {"kind": "partial", "outcome": "success"}
    ) == 1
    assert registry.get_sample_value("migrator_sync_items_total", {"outcome": "retried"}) == 1


def test_gauges_and_histogram(metrics: MigratorMetrics, registry: CollectorRegistry) -> None:
    """Test gauges and step durations."""
    metrics.set_sync_queue_size(4)
    metrics.set_validation_score(87)
    metrics.set_progress(30.0)
    metrics.observe_step("export", 0.2)

    assert registry.get_sample_value("migrator_sync_queue_size") == 4
    assert registry.get_sample_value("migrator_validation_score") == 87
    assert registry.get_sample_value("migrator_progress_percent") == 30.0
    assert registry.get_sample_value(
        "migrator_step_duration_seconds_count", {"step": "export"}
    ) == 1


def test_get_metrics(metrics: MigratorMetrics) -> None:
    """Test Prometheus text exposition."""
    metrics.record_backup("full")

    output = metrics.get_metrics()

    assert isinstance(output, bytes)
    assert b'migrator_backups_total{kind="full"} 1.0' in output


def test_start_metrics_server(metrics: MigratorMetrics, registry: CollectorRegistry) -> None:
    """Test that the HTTP server is started on the registry."""
    with patch("migrator.metrics.start_http_server") as start:
        metrics.start_metrics_server(9100)

    start.assert_called_once_with(9100, registry=registry)
