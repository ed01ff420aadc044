import logging

from niya.core.logging import setup_logging


def test_setup_logging_string_levels():
    setup_logging("ERROR")
    root = logging.getLogger()
    assert root.getEffectiveLevel() == logging.ERROR
    assert len(root.handlers) >= 1

    setup_logging("debug")
    assert logging.getLogger().getEffectiveLevel() == logging.DEBUG


def test_setup_logging_numeric():
    setup_logging(10)  # DEBUG
    assert logging.getLogger().getEffectiveLevel() == logging.DEBUG


def test_setup_logging_from_env(monkeypatch):
    monkeypatch.setenv("NIYA_LOG_LEVEL", "WARNING")
    setup_logging(None)
    assert logging.getLogger().getEffectiveLevel() == logging.WARNING


def test_setup_logging_falls_back_to_log_level(monkeypatch):
    monkeypatch.delenv("NIYA_LOG_LEVEL", raising=False)
    monkeypatch.setenv("LOG_LEVEL", "error")
    setup_logging()
    assert logging.getLogger().getEffectiveLevel() == logging.ERROR
