"""
🧪 Unit Tests for Configuration and Logging
File: tests/unit/test_config.py

Tests config.py (ConfigManager) and logger.py (get_logger, track_time).

Run with: pytest tests/unit/test_config.py -v
"""

import json
import logging

import pytest

from config import CONFIG, ConfigManager
from logger import get_logger

pytestmark = pytest.mark.unit


class TestConfigManager:
    """Tests for ConfigManager."""

    def test_defaults(self):
        cfg = ConfigManager()
        assert cfg.get("analysis.conf_level") == 0.95
        assert cfg.get("analysis.coxreg_ties") == "exact"
        assert cfg.get("formatting.na_str") == "NA"

    def test_get_missing_returns_default(self):
        cfg = ConfigManager()
        assert cfg.get("analysis.nope", "fallback") == "fallback"

    def test_update_existing_only(self):
        cfg = ConfigManager()
        cfg.update("analysis.conf_level", 0.9)
        assert cfg.get("analysis.conf_level") == 0.9
        with pytest.raises(KeyError):
            cfg.update("analysis.unknown", 1)

    def test_set_nested_create(self):
        cfg = ConfigManager()
        cfg.set_nested("extra.section.value", 3, create=True)
        assert cfg.get("extra.section.value") == 3
        with pytest.raises(KeyError):
            cfg.set_nested("missing.value", 1)

    def test_env_override(self, monkeypatch):
        """🌍 TLGSTATS_<SECTION>_<KEY> overrides are typed like the default"""
        monkeypatch.setenv("TLGSTATS_ANALYSIS_CONF_LEVEL", "0.9")
        monkeypatch.setenv("TLGSTATS_LOGGING_FILE_ENABLED", "false")
        monkeypatch.setenv("TLGSTATS_FORMATTING_EXTREME_DIGITS", "3")
        cfg = ConfigManager()
        assert cfg.get("analysis.conf_level") == 0.9
        assert cfg.get("logging.file_enabled") is False
        assert cfg.get("formatting.extreme_digits") == 3

    def test_bad_env_override_warns(self, monkeypatch):
        monkeypatch.setenv("TLGSTATS_ANALYSIS_CONF_LEVEL", "high")
        with pytest.warns(UserWarning):
            cfg = ConfigManager()
        assert cfg.get("analysis.conf_level") == 0.95

    def test_validate(self):
        cfg = ConfigManager()
        assert cfg.validate() == (True, [])
        cfg.update("analysis.coxph_ties", "average")
        cfg.update("analysis.conf_level", 1.2)
        ok, errors = cfg.validate()
        assert not ok
        assert len(errors) == 2

    def test_sections_are_copies(self):
        cfg = ConfigManager()
        section = cfg.get_section("analysis")
        section["conf_level"] = 0.5
        assert cfg.get("analysis.conf_level") == 0.95
        assert json.loads(cfg.to_json())["analysis"]["conf_level"] == 0.95

    def test_global_instance(self):
        assert isinstance(CONFIG, ConfigManager)


class TestLogger:
    """Tests for the logger wrapper."""

    def test_names_nested_under_package(self):
        log = get_logger("some_module")
        assert log.name == "tlgstats.some_module"
        assert get_logger("tlgstats.cox").name == "tlgstats.cox"

    def test_log_operation(self, caplog):
        log = get_logger("tests.operations")
        with caplog.at_level(logging.INFO, logger="tlgstats"):
            log.log_operation("build", "completed", rows=3)
        assert "[build] COMPLETED rows=3" in caplog.text

    def test_track_time_records(self):
        log = get_logger("tests.timing")
        with log.track_time("unit_op"):
            pass
        assert len(log.get_timings()["unit_op"]) >= 1

    def test_log_analysis_summary(self, caplog):
        """📝 Model fits are summarised at INFO level"""
        log = get_logger("tests.analysis")
        with caplog.at_level(logging.INFO, logger="tlgstats"):
            log.log_analysis("Cox regression", "AVAL", 2, 160)
        assert "Cox regression: outcome='AVAL', predictors=2, n=160" in caplog.text

    def test_log_analysis_can_be_switched_off(self, caplog, monkeypatch):
        monkeypatch.setitem(CONFIG._config["logging"], "log_analysis_operations", False)
        log = get_logger("tests.analysis")
        with caplog.at_level(logging.INFO, logger="tlgstats"):
            log.log_analysis("Cox regression", "AVAL", 2, 160)
        assert "Cox regression" not in caplog.text

    def test_cox_fit_logs_analysis(self, survival_data, caplog):
        from tlgstats.cox import cox_fit

        with caplog.at_level(logging.INFO, logger="tlgstats"):
            cox_fit(survival_data, "AVAL", "is_event", arm="ARM", covariates=["AGE"])
        assert f"Cox regression: outcome='AVAL', predictors=2, n={len(survival_data)}" in caplog.text
