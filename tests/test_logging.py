"""
Tests for voicepipe.observability.logger — JSON log lines and handler setup.
"""

import json
import logging

from voicepipe.observability.logger import JSONFormatter, setup_logging
from voicepipe.utils.config import ObservabilityConfig


def _record(**extra):
    record = logging.LogRecord(
        "voicepipe.stream.channel", logging.INFO, __file__, 1, "stream %s done", ("abc",), None
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_line_fields():
    entry = json.loads(JSONFormatter().format(_record()))
    assert entry["level"] == "INFO"
    assert entry["component"] == "voicepipe.stream.channel"
    assert entry["message"] == "stream abc done"
    assert entry["timestamp"].endswith("Z")
    assert "stream_id" not in entry


def test_correlation_extras_included():
    entry = json.loads(JSONFormatter().format(_record(stream_id="s1", session_id="cap1")))
    assert entry["stream_id"] == "s1"
    assert entry["session_id"] == "cap1"


def test_setup_logging_writes_jsonl(tmp_path):
    root = logging.getLogger()
    saved = root.handlers[:], root.level
    try:
        setup_logging(ObservabilityConfig(log_dir=str(tmp_path), log_file="test.jsonl"))
        logging.getLogger("voicepipe.test").info("hello %d", 42)
        for handler in root.handlers:
            handler.flush()
        lines = (tmp_path / "test.jsonl").read_text(encoding="utf-8").splitlines()
        assert json.loads(lines[-1])["message"] == "hello 42"
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])
