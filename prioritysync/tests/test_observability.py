import unittest
from unittest.mock import MagicMock, patch

from prioritysync.observability import otel


class ObservabilityTests(unittest.TestCase):
    def test_span_yields_none_when_tracing_is_off(self) -> None:
        with patch.object(otel, "_enabled", False):
            with otel.start_span("sync.execute", {"priority_id": "P-1"}) as span:
                self.assertIsNone(span)

    def test_recording_without_instruments_is_a_noop(self) -> None:
        with patch.object(otel, "_enabled", False), patch.object(otel, "_prom_enabled", False):
            otel.record_sync_outcome("synced", 12.5, installation_id="default")
            otel.record_remote_call("fetch_work_item", "ok", 3.0)

    def test_prometheus_fallback_receives_declared_labels(self) -> None:
        runs, latency = MagicMock(), MagicMock()
        instruments = {"sync_runs": runs, "sync_latency": latency}
        with patch.object(otel, "_enabled", False), patch.object(otel, "_prom_enabled", True), patch.dict(
            otel._prom_instruments, instruments, clear=True
        ):
            otel.record_sync_outcome("partial", 40.0, installation_id="")

        runs.labels.assert_called_once_with(result="partial", installation="unknown")
        runs.labels.return_value.inc.assert_called_once_with(1)
        latency.labels.return_value.observe.assert_called_once_with(40.0)

    def test_remote_latency_skipped_without_duration(self) -> None:
        calls, latency = MagicMock(), MagicMock()
        instruments = {"remote_calls": calls, "remote_latency": latency}
        with patch.object(otel, "_enabled", False), patch.object(otel, "_prom_enabled", True), patch.dict(
            otel._prom_instruments, instruments, clear=True
        ):
            otel.record_remote_call("patch_state", "rejected")

        calls.labels.assert_called_once_with(operation="patch_state", status="rejected")
        latency.labels.assert_not_called()

    def test_otlp_endpoint_normalization(self) -> None:
        self.assertEqual(
            otel._normalize_otlp_endpoint("http://collector:4318/", "/v1/traces"),
            "http://collector:4318/v1/traces",
        )
        self.assertEqual(
            otel._normalize_otlp_endpoint("http://collector:4318/v1", "/v1/metrics"),
            "http://collector:4318/v1/metrics",
        )
        self.assertEqual(otel._normalize_otlp_endpoint("  ", "/v1/traces"), "")


if __name__ == "__main__":
    unittest.main()
