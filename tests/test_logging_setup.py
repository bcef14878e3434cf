from pathlib import Path

from controlsync.core.logging_setup import build_logger, get_logger


def test_logger_creates_files_and_redacts(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    logger = build_logger(
        name="cs",
        run_id="run123",
        action="apply",
        base_dir="logs",
        console_level="INFO",
        file_level="DEBUG",
        extra={"org": "org-1"},
    )

    logger.info("hello Authorization: Bearer abc123")
    logger.error("password=secret-x, token: tkn999 | api_key=AKIA123")

    app_log = Path("logs/app.log")
    assert app_log.exists()

    dated_dirs = list(Path("logs").glob("20*"))
    assert dated_dirs, "dated directory not created"
    files = list(dated_dirs[0].glob("apply_run123.log"))
    assert files, "action-based log file not created"

    content = app_log.read_text(encoding="utf-8")
    assert "[REDACTED]" in content
    assert "abc123" not in content and "secret-x" not in content and "AKIA123" not in content
    assert "org=org-1" in content

    action_content = files[0].read_text(encoding="utf-8")
    assert "[REDACTED]" in action_content
    assert "tkn999" not in action_content


def test_rotating_file_captures_debug(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    logger = build_logger(
        name="cs_test2",
        run_id="r42",
        action="plan",
        base_dir="logs",
        console_level="INFO",
        file_level="DEBUG",
    )
    logger.debug("debug-line-42")
    content = Path("logs/app.log").read_text(encoding="utf-8")
    assert "DEBUG" in content and "debug-line-42" in content


def test_get_logger_stays_under_package_tree():
    assert get_logger().name == "controlsync"
    assert get_logger("engine").name == "controlsync.engine"
    assert get_logger("controlsync.core.transport").name == "controlsync.core.transport"
