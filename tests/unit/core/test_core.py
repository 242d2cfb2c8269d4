"""Tests for configuration, identifiers, exceptions and logging setup."""

import logging

import pytest

from quant_engine.core import logging as engine_logging
from quant_engine.core.config import Settings, settings
from quant_engine.core.exceptions import (
    NotFoundError,
    OrderValidationError,
    QuantEngineError,
    RuleEvaluationError,
    ValidationError,
)
from quant_engine.core.id_utils import generate_id, is_valid_id

pytestmark = pytest.mark.unit


class TestSettings:
    def test_defaults(self):
        assert settings.TRADING_DAYS_PER_YEAR == 252
        assert settings.VAR99_SCALING == 1.5
        assert settings.RISK_BUDGET_PERCENT == 15.0
        assert settings.IGNORE_STALE_TICKS is True

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("RISK_BUDGET_PERCENT", "12.5")
        monkeypatch.setenv("IGNORE_STALE_TICKS", "false")

        overridden = Settings()

        assert overridden.RISK_BUDGET_PERCENT == 12.5
        assert overridden.IGNORE_STALE_TICKS is False


class TestIdentifiers:
    def test_generate_id(self):
        order_id = generate_id("sl")
        assert order_id.startswith("sl_")
        assert is_valid_id(order_id)
        assert is_valid_id(order_id, prefix="sl")
        assert not is_valid_id(order_id, prefix="tp")

    def test_ids_are_unique(self):
        assert len({generate_id("alert") for _ in range(1000)}) == 1000

    @pytest.mark.parametrize("value", [None, 42, "", "sl_", "sl_XYZ", "SL_0123456789ab"])
    def test_invalid_ids(self, value):
        assert not is_valid_id(value)


class TestExceptions:
    def test_hierarchy(self):
        assert issubclass(OrderValidationError, ValidationError)
        assert issubclass(NotFoundError, QuantEngineError)

    def test_detail(self):
        error = OrderValidationError("quantity must be positive")
        assert error.detail == "quantity must be positive"
        assert str(error) == "quantity must be positive"

    def test_rule_evaluation_error(self):
        error = RuleEvaluationError("max_position_size", "missing parameter")
        assert error.rule_id == "max_position_size"
        assert str(error) == "max_position_size: missing parameter"


class TestLoggingSetup:
    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        project = logging.getLogger("quant_engine")
        handlers, level, project_level = root.handlers[:], root.level, project.level
        yield
        for handler in root.handlers[:]:
            root.removeHandler(handler)
            handler.close()
        for handler in handlers:
            root.addHandler(handler)
        root.setLevel(level)
        project.setLevel(project_level)

    def test_log_dir_from_settings(self, monkeypatch, tmp_path):
        monkeypatch.setattr(settings, "LOG_DIR", str(tmp_path))
        assert engine_logging.get_default_log_dir() == tmp_path

    def test_file_logging(self, monkeypatch, tmp_path):
        monkeypatch.setattr(settings, "LOG_DIR", str(tmp_path))
        monkeypatch.setattr(settings, "LOG_LEVEL", "debug")

        engine_logging.setup_logging()
        logging.getLogger("quant_engine.services").debug("hello from the engine")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert logging.getLogger().level == logging.DEBUG
        assert "hello from the engine" in (tmp_path / "quant-engine.log").read_text()

    def test_stderr_only(self, monkeypatch, tmp_path):
        monkeypatch.setattr(settings, "LOG_DIR", str(tmp_path))
        monkeypatch.setattr(settings, "LOG_LEVEL", "bogus")

        engine_logging.setup_logging(log_to_file=False)

        assert logging.getLogger().level == logging.INFO
        assert not (tmp_path / "quant-engine.log").exists()

    def test_repeat_setup_replaces_handlers(self, monkeypatch, tmp_path):
        monkeypatch.setattr(settings, "LOG_DIR", str(tmp_path))

        first = engine_logging.setup_logging()
        second = engine_logging.setup_logging()

        assert first == second == tmp_path / "quant-engine.log"
        assert len(logging.getLogger().handlers) == 2

    def test_stderr_only_returns_no_file(self, monkeypatch, tmp_path):
        monkeypatch.setattr(settings, "LOG_DIR", str(tmp_path))
        assert engine_logging.setup_logging(log_to_file=False) is None
        assert len(logging.getLogger().handlers) == 1

    @pytest.mark.parametrize(
        "name,expected",
        [("debug", logging.DEBUG), (" Warning ", logging.WARNING), ("bogus", logging.INFO)],
    )
    def test_resolve_level(self, name, expected):
        assert engine_logging.resolve_level(name) == expected

    def test_xdg_state_home(self, monkeypatch, tmp_path):
        monkeypatch.setattr(settings, "LOG_DIR", None)
        monkeypatch.setattr(engine_logging.platform, "system", lambda: "Linux")
        monkeypatch.setattr(engine_logging.os, "geteuid", lambda: 1000, raising=False)
        monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path))

        assert engine_logging.get_default_log_dir() == tmp_path / "quant-engine" / "logs"
