"""Settings loading and logging setup."""

import logging

import pytest

from workshop_erp import WorkflowOptions
from workshop_erp.config import Settings
from workshop_erp.logging_config import LOGGER_NAME, configure_logging, reset_logging


def test_defaults(monkeypatch):
    for name in ("WORKSHOP_ORDER_NUMBER_PREFIX", "WORKSHOP_HOURS_DECIMAL_PLACES"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings(_env_file=None)
    assert settings.ORDER_NUMBER_PREFIX == "OS"
    assert settings.MAX_ORDER_BASE == 99_999_999
    assert settings.HOURS_DECIMAL_PLACES == 4


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("WORKSHOP_ORDER_NUMBER_PREFIX", "WO")
    monkeypatch.setenv("WORKSHOP_HOURS_DECIMAL_PLACES", "2")
    options = WorkflowOptions.from_settings(Settings(_env_file=None))
    assert options.order_number_prefix == "WO"
    assert options.hours_decimal_places == 2


def test_invalid_precision_rejected(monkeypatch):
    monkeypatch.setenv("WORKSHOP_HOURS_DECIMAL_PLACES", "12")
    with pytest.raises(ValueError):
        Settings(_env_file=None)


@pytest.fixture
def clean_logging():
    reset_logging()
    yield
    reset_logging()


def test_configure_logging_is_idempotent(clean_logging):
    logger = configure_logging("debug")
    configure_logging("WARNING")
    handlers = [h for h in logger.handlers if getattr(h, "_workshop_handler", False)]
    assert len(handlers) == 1
    assert logger.name == LOGGER_NAME
    assert logger.level == logging.WARNING


def test_unknown_level_falls_back_to_info(clean_logging):
    assert configure_logging("chatty").level == logging.INFO


def test_transitions_are_logged(service, order, caplog):
    caplog.set_level(logging.INFO, logger=LOGGER_NAME)
    service.put_on_hold(order.id, "Waiting")
    assert any("pending -> on_hold" in record.getMessage() for record in caplog.records)
