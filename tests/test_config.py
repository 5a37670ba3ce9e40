"""
Tests for configuration, structured logging and system start-up
"""

import json
import sys
import logging
import pytest

from collections_core.config import CollectionsConfig, reload_config
from collections_core.errors import RuleSetValidationError
from collections_core.logging_config import JSONFormatter, log_action, setup_logging
from collections_core.metrics import AssignmentMetrics
from collections_core.system import CollectionsSystem


class TestCollectionsConfig:
    """Test environment-driven configuration"""

    def test_defaults(self):
        config = CollectionsConfig()
        assert config.api_port == 8090
        assert config.recent_decisions_limit == 10
        assert config.rules_path is None

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("COLLECTIONS_DATABASE_URL", "memory://")
        monkeypatch.setenv("COLLECTIONS_API_PORT", "9000")
        monkeypatch.setenv("COLLECTIONS_ENABLE_METRICS", "false")

        config = reload_config()
        assert config.database_url == "memory://"
        assert config.api_port == 9000
        assert config.enable_metrics is False

        monkeypatch.undo()
        reload_config()


class TestSystemStartup:
    """Test that the policy is validated before serving"""

    def test_invalid_rules_file_prevents_start(self, tmp_path):
        rules_file = tmp_path / "rules.json"
        rules_file.write_text(json.dumps([{"name": "DPD_BAD", "when": {"dpd": {"min": 10, "max": 1}}}]))

        config = CollectionsConfig(database_url="memory://", rules_path=str(rules_file))
        with pytest.raises(RuleSetValidationError, match="min \\(10\\) is greater than max \\(1\\)"):
            CollectionsSystem(config=config)

    def test_custom_rules_file(self, tmp_path):
        rules_file = tmp_path / "rules.json"
        rules_file.write_text(json.dumps([{"name": "DPD_ALL", "then": {"assignGroup": "Tier1"}}]))

        system = CollectionsSystem(config=CollectionsConfig(database_url="memory://", rules_path=str(rules_file)))
        assert system.rule_set.names == ("DPD_ALL",)
        system.close()

    def test_metrics_flag(self):
        system = CollectionsSystem(config=CollectionsConfig(database_url="memory://", enable_metrics=False))
        assert system.metrics.enabled is False
        system.close()


class TestStructuredLogging:
    """Test JSON log output"""

    def test_log_action_fields(self, tmp_path):
        log_file = tmp_path / "app.log"
        logger = setup_logging("INFO", logger_name="collections_core_test", log_file=str(log_file))

        log_action(logger, "info", "Assignment run for case 1 completed",
                   action="case_assign", resource="case:1", extra={"version": 1})
        for handler in logger.handlers:
            handler.flush()

        entry = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert entry["level"] == "INFO"
        assert entry["message"] == "Assignment run for case 1 completed"
        assert entry["action"] == "case_assign"
        assert entry["resource"] == "case:1"
        assert entry["extra"] == {"version": 1}
        assert "correlation_id" not in entry

    def test_log_action_respects_level(self, tmp_path):
        log_file = tmp_path / "app.log"
        logger = setup_logging("WARNING", logger_name="collections_core_quiet", log_file=str(log_file))

        log_action(logger, "info", "not written")
        for handler in logger.handlers:
            handler.flush()

        assert log_file.read_text() == ""

    def test_formatter_includes_exception(self):
        try:
            raise ValueError("bad rule")
        except ValueError:
            record = logging.getLogger("test").makeRecord(
                "test", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )

        entry = json.loads(JSONFormatter().format(record))
        assert "ValueError: bad rule" in entry["exception"]


class TestMetricsSnapshot:
    """Test metrics snapshot shape"""

    def test_snapshot(self):
        metrics = AssignmentMetrics()
        metrics.increment_assignment_run()
        metrics.increment_action_log_created()

        snapshot = metrics.snapshot()
        assert snapshot["service"] == "collections-core"
        assert snapshot["business"] == {
            "assignment_runs_total": 1,
            "assignment_conflicts_total": 0,
            "action_logs_created_total": 1
        }

    def test_http_counters(self):
        metrics = AssignmentMetrics()
        metrics.record_http_request("get", "/cases", 200)
        metrics.record_http_request("POST", "/cases/1/assign", 409)
        metrics.record_http_request("GET", "/cases", 200)

        snapshot = metrics.snapshot(db_counts={"total_cases": 3})
        assert snapshot["http"] == {
            "requests_total": 3,
            "requests_by_status": {"200": 2, "409": 1},
            "requests_by_method_path": {"GET /cases": 2, "POST /cases/1/assign": 1}
        }
        assert snapshot["db"] == {"total_cases": 3}

    def test_disabled_metrics_skip_requests(self):
        metrics = AssignmentMetrics(enabled=False)
        metrics.record_http_request("GET", "/health", 200)

        snapshot = metrics.snapshot()
        assert snapshot["http"]["requests_total"] == 0
        assert "db" not in snapshot
