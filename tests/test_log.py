import io
import logging
import re

import pytest

from clusterctl.core import log as log_module
from clusterctl.core.log import ROOT_LOGGER, init_logging, parse_level


@pytest.fixture
def fresh_logging(monkeypatch):
    monkeypatch.setattr(log_module, "_initialized", False)
    root = logging.getLogger(ROOT_LOGGER)
    saved = (list(root.handlers), root.level, root.propagate)
    yield
    for handler in root.handlers:
        if handler not in saved[0]:
            handler.close()
    root.handlers[:] = saved[0]
    root.setLevel(saved[1])
    root.propagate = saved[2]


@pytest.mark.parametrize("value, level", [
    ("debug", logging.DEBUG),
    ("INFO", logging.INFO),
    ("warn", logging.WARNING),
    ("warning", logging.WARNING),
    ("error", logging.ERROR),
    ("", logging.INFO),
    (None, logging.INFO),
    ("chatty", logging.INFO),
])
def test_parse_level(value, level):
    assert parse_level(value) == level


def test_line_format(fresh_logging):
    stream = io.StringIO()
    init_logging(level="debug", handler=logging.StreamHandler(stream))

    logging.getLogger("clusterctl.services.keepalived").info("✓ [node1] keepalived configured")

    line = stream.getvalue().strip()
    assert re.fullmatch(
        r"\[\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z\] - \[INFO\] - ✓ \[node1\] keepalived configured",
        line,
    )


def test_first_call_wins(fresh_logging, monkeypatch):
    monkeypatch.setenv("CLUSTERCTL_LOG_LEVEL", "error")
    first = io.StringIO()
    second = io.StringIO()

    init_logging(handler=logging.StreamHandler(first))
    init_logging(level="debug", handler=logging.StreamHandler(second))

    logger = logging.getLogger("clusterctl.ssh.executor")
    logger.warning("dropped")
    logger.error("kept")

    assert "dropped" not in first.getvalue()
    assert "kept" in first.getvalue()
    assert second.getvalue() == ""


def test_log_file(fresh_logging, tmp_path):
    log_file = tmp_path / "logs" / "clusterctl.log"
    init_logging(level="info", log_file=log_file, handler=logging.StreamHandler(io.StringIO()))

    logging.getLogger("clusterctl.core.retry").info("dial succeeded after 2 attempts")
    for handler in logging.getLogger(ROOT_LOGGER).handlers:
        handler.flush()

    assert "dial succeeded after 2 attempts" in log_file.read_text()
