import logging

import pytest

from photomosaic.log import setup_logging, timer


def test_setup_logging_replaces_handlers(monkeypatch) -> None:
    monkeypatch.setenv("PHOTOMOSAIC_LOG_LEVEL", "debug")
    setup_logging()
    setup_logging()
    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert root.level == logging.DEBUG
    assert logging.getLogger("matplotlib").level == logging.WARNING

    setup_logging("nonsense")
    assert root.level == logging.INFO


def test_timer_logs_and_measures(caplog) -> None:
    caplog.set_level(logging.INFO)
    with timer("sample grid") as t:
        pass
    assert t.elapsed >= 0.0
    assert "sample grid" in caplog.text

    with pytest.raises(RuntimeError):
        with timer("broken"):
            raise RuntimeError("boom")
    assert "FAILED" in caplog.text
