import json
import logging

from relaybridge.logging_utils import configure_logging
from relaybridge.proxy.logging_utils import JsonlLogger


def test_jsonl_logger_rotates(tmp_path, monkeypatch):
    log_file = tmp_path / "logs" / "requests.jsonl"
    request_log = JsonlLogger(str(log_file), max_bytes=5)

    monkeypatch.setattr(
        "relaybridge.proxy.logging_utils.time.strftime",
        lambda *_: "19700101-000000",
    )

    request_log.log({"a": 1})
    assert log_file.exists()

    request_log.log({"payload": "123456"})

    rotated = log_file.with_name(log_file.name + ".19700101-000000")
    assert rotated.exists(), "Rotated file missing"
    content = log_file.read_text(encoding="utf-8").strip()
    assert json.loads(content) == {"payload": "123456"}


def test_jsonl_logger_keeps_newest_rotations(tmp_path, monkeypatch):
    log_file = tmp_path / "requests.jsonl"
    request_log = JsonlLogger(str(log_file), max_bytes=1, keep_rotated=2)
    stamps = iter(["20240101-000001", "20240101-000002", "20240101-000003"])
    monkeypatch.setattr(
        "relaybridge.proxy.logging_utils.time.strftime", lambda *_: next(stamps)
    )

    for i in range(4):
        request_log.log({"n": i})

    names = [path.name for path in request_log.rotated_files()]
    assert names == [
        "requests.jsonl.20240101-000002",
        "requests.jsonl.20240101-000003",
    ]


def test_jsonl_logger_handles_missing_directory(tmp_path):
    log_file = tmp_path / "missing" / "requests.jsonl"
    JsonlLogger(str(log_file), max_bytes=100).log({"event": "ok"})
    assert log_file.exists()


def test_configure_logging_honours_env_override(monkeypatch, tmp_path):
    target_dir = tmp_path / "logs"
    monkeypatch.setenv("RELAY_LOG_DIR", str(target_dir))

    log_path = configure_logging("unit_test", include_console=False)
    logging.getLogger(__name__).info("env override works")

    assert log_path == target_dir / "unit_test.log"
    assert "env override works" in log_path.read_text()


def test_configure_logging_replaces_previous_handlers(tmp_path):
    first_path = configure_logging(
        "first_run", log_dir=tmp_path / "a", include_console=False
    )
    logging.getLogger(__name__).info("first run entry")
    second_path = configure_logging(
        "second_run", log_dir=tmp_path / "b", include_console=False
    )
    logging.getLogger(__name__).info("second run entry")

    assert "first run entry" in first_path.read_text()
    assert "second run entry" in second_path.read_text()
    assert "second run entry" not in first_path.read_text()


def test_configure_logging_quiets_access_log_outside_debug(tmp_path):
    configure_logging("quiet", log_dir=tmp_path, include_console=False)
    assert logging.getLogger("uvicorn.access").level == logging.WARNING

    configure_logging(
        "loud", log_dir=tmp_path, include_console=False, level=logging.DEBUG
    )
    assert logging.getLogger("uvicorn.access").level == logging.NOTSET
