import json
import logging

import pytest
import structlog

from ledgerql.logging import configure_logging

pytestmark = pytest.mark.usefixtures("restore_logging")


def test_json_output(capsys):
    configure_logging(json_output=True, level="INFO")
    structlog.get_logger("ledgerql.test").info("Query executed", rows=3)
    logging.getLogger("ledgerql.stdlib").warning("Standard library message")

    lines = [json.loads(line) for line in capsys.readouterr().err.splitlines()]
    assert lines[0]["event"] == "Query executed"
    assert lines[0]["rows"] == 3
    assert lines[0]["level"] == "info"
    assert "timestamp" in lines[0]
    assert lines[1]["event"] == "Standard library message"
    assert lines[1]["level"] == "warning"


def test_level(capsys):
    configure_logging(json_output=True, level="warning")
    structlog.get_logger("ledgerql.test").info("Hidden")
    structlog.get_logger("ledgerql.test").error("Shown")

    err = capsys.readouterr().err
    assert "Hidden" not in err
    assert "Shown" in err


def test_noisy_loggers():
    configure_logging(level="DEBUG")
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
    assert logging.getLogger("httpx").level == logging.WARNING


def test_unknown_level():
    with pytest.raises(ValueError) as excinfo:
        configure_logging(level="chatty")
    assert str(excinfo.value) == "Unknown log level: chatty"
