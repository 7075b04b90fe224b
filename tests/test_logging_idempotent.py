import logging
import os

from pureflow.utils import configure_logging, log_event


def test_configure_logging_idempotent(tmp_path, monkeypatch):
    log_file = tmp_path / "app.log"
    monkeypatch.setenv("PF_LOG_LEVEL", "INFO")
    monkeypatch.setenv("PF_LOG_FILE", str(log_file))
    monkeypatch.setenv("PF_LOG_LEVELS", "pureflow.linkhealth=DEBUG")

    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        root.handlers = []
        configure_logging("pureflow.worker")
        first = list(root.handlers)
        configure_logging("pureflow.worker")

        assert root.handlers == first
        file_handlers = [
            handler for handler in root.handlers if isinstance(handler, logging.FileHandler)
        ]
        assert len(file_handlers) == 1
        assert os.path.abspath(file_handlers[0].baseFilename) == os.path.abspath(str(log_file))
        assert logging.getLogger("pureflow.linkhealth").level == logging.DEBUG
    finally:
        for handler in root.handlers:
            if handler not in original_handlers:
                handler.close()
        root.handlers = original_handlers
        root.setLevel(original_level)
        logging.getLogger("pureflow.linkhealth").setLevel(logging.NOTSET)


def test_log_event_formats_key_values(caplog):
    logger = logging.getLogger("pureflow.test")
    with caplog.at_level(logging.INFO, logger="pureflow.test"):
        log_event(logger, logging.INFO, "job_claimed", job_id="job_1", attempts=2)

    assert "event=job_claimed job_id=job_1 attempts=2" in caplog.text
