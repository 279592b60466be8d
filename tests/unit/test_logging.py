import logging
from hvc.infrastructure.logging import LOG_FILE_NAME, setup_logging


def teardown_function():
    root = logging.getLogger()
    for handler in root.handlers[:]:
        if type(handler) in (logging.FileHandler, logging.StreamHandler):
            handler.close()
            root.removeHandler(handler)


def test_logs_to_conversion_log_in_dir(tmp_path):
    log_dir = tmp_path / "backup"
    setup_logging(log_dir)
    logging.getLogger("hvc.test").info("BACKUP_OK: clip.mov")
    for handler in logging.getLogger().handlers:
        handler.flush()

    content = (log_dir / LOG_FILE_NAME).read_text()
    assert "Logging initialized" in content
    assert " - INFO - BACKUP_OK: clip.mov" in content


def test_log_is_append_only(tmp_path):
    setup_logging(tmp_path)
    logging.getLogger("hvc.test").info("first run")
    setup_logging(tmp_path)
    logging.getLogger("hvc.test").info("second run")
    for handler in logging.getLogger().handlers:
        handler.flush()

    content = (tmp_path / LOG_FILE_NAME).read_text()
    assert "first run" in content
    assert "second run" in content


def test_explicit_log_path_wins(tmp_path):
    log_file = tmp_path / "logs" / "custom.log"
    setup_logging(tmp_path / "ignored", log_path=log_file)
    assert log_file.exists()
    assert not (tmp_path / "ignored").exists()


def test_debug_level(tmp_path):
    setup_logging(tmp_path, debug=True)
    assert logging.getLogger().level == logging.DEBUG
    setup_logging(tmp_path)
    assert logging.getLogger().level == logging.INFO


def test_no_target_writes_nothing(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    setup_logging(None)
    assert list(tmp_path.iterdir()) == []
    assert all(not isinstance(h, logging.FileHandler) for h in logging.getLogger().handlers)
