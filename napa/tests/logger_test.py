import logging

from napa.utils.logger import setup_logger


def test_writes_to_rotating_file(tmp_path):
    log_path = tmp_path / "logs" / "napa.log"
    logger = setup_logger("napa.tests.logger_file", log_path, console=False)

    logger.info("MACD 0.120 | SIGNAL 0.080")
    for handler in logger.handlers:
        handler.flush()

    text = log_path.read_text(encoding="utf-8")
    assert "INFO napa.tests.logger_file: MACD 0.120 | SIGNAL 0.080" in text
    assert text.startswith("[")


def test_repeated_setup_does_not_stack_handlers(tmp_path):
    log_path = tmp_path / "napa.log"
    setup_logger("napa.tests.logger_repeat", log_path, console=False)
    logger = setup_logger("napa.tests.logger_repeat", log_path, level=logging.DEBUG, console=False)

    assert len(logger.handlers) == 1
    assert logger.level == logging.DEBUG
    assert logger.propagate is False
