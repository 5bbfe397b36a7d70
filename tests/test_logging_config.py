import json
import logging
import sys

from toolchain_provisioner.logging_config import PACKAGE_LOGGER, JSONFormatter, configure_logging


def test_level_and_format_come_from_environment():
    logger = configure_logging(environ={"TOOLCHAIN_LOG_LEVEL": "debug", "TOOLCHAIN_LOG_FORMAT": "json"})

    assert logger.name == PACKAGE_LOGGER
    assert logger.level == logging.DEBUG
    assert isinstance(logger.handlers[0].formatter, JSONFormatter)
    assert logger.propagate is False


def test_explicit_arguments_win_and_handlers_are_replaced():
    configure_logging(level="DEBUG", environ={})
    logger = configure_logging(level="ERROR", fmt="text", environ={"TOOLCHAIN_LOG_LEVEL": "DEBUG"})

    assert logger.level == logging.ERROR
    assert len(logger.handlers) == 1
    assert not isinstance(logger.handlers[0].formatter, JSONFormatter)


def test_log_file_receives_json_lines(tmp_path):
    log_file = tmp_path / "provisioner.log"
    configure_logging(level="INFO", environ={"TOOLCHAIN_LOG_FILE": str(log_file)})

    logging.getLogger("toolchain_provisioner.execution.executor").info("create instance %s: applied", "nexus-server")
    for handler in logging.getLogger(PACKAGE_LOGGER).handlers:
        handler.flush()

    entry = json.loads(log_file.read_text(encoding="utf-8").splitlines()[-1])
    assert entry["level"] == "INFO"
    assert entry["logger"] == "toolchain_provisioner.execution.executor"
    assert entry["message"] == "create instance nexus-server: applied"
    assert entry["timestamp"].endswith("Z")


def test_json_formatter_includes_exception():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())

    entry = json.loads(JSONFormatter().format(record))
    assert "RuntimeError: boom" in entry["exception"]
