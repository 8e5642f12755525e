import json
from pathlib import Path

import element_ldb


def test_capture_fatal_exception_writes_fatal(tmp_path: Path) -> None:
    out_dir = tmp_path / "out"
    out_dir.mkdir(parents=True, exist_ok=True)

    try:
        raise RuntimeError("boom")
    except RuntimeError as exc:
        exit_code = element_ldb.capture_fatal_exception(exc, out_dir=out_dir, errors_path=None)

    assert exit_code != 0
    text = (out_dir / "fatal.txt").read_text(encoding="utf-8", errors="replace")
    assert "RuntimeError: boom" in text


def test_capture_fatal_exception_outside_handler_keeps_traceback(tmp_path: Path) -> None:
    out_dir = tmp_path / "out"
    out_dir.mkdir(parents=True, exist_ok=True)
    errors_path = out_dir / "errors.jsonl"

    try:
        raise ValueError("trace me")
    except ValueError as exc:
        captured = exc

    exit_code = element_ldb.capture_fatal_exception(captured, out_dir=out_dir, errors_path=errors_path)

    assert exit_code == 2
    text = (out_dir / "fatal.txt").read_text(encoding="utf-8", errors="replace")
    assert "ValueError: trace me" in text
    assert "test_capture_fatal_exception_outside_handler_keeps_traceback" in text
    event = json.loads(errors_path.read_text(encoding="utf-8").splitlines()[-1])
    assert event["stage"] == "fatal"
    assert event["exc_type"] == "ValueError"
