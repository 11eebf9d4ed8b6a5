import json
from datetime import datetime, timezone

from backend.app.config import Settings
from backend.app.sync.ack import SyncLogBuffer, build_ack, failed_ack, json_log
from backend.app.sync.schemas import SyncError


def test_log_buffer_formats_lines_with_timestamp():
    log = SyncLogBuffer(capacity=5)
    line = log.append("hello", at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))
    assert line == "[2024-05-01T12:00:00+00:00] hello"
    assert log.tail() == [line]


def test_log_buffer_evicts_oldest_and_tails_newest_first():
    log = SyncLogBuffer(capacity=3)
    for i in range(5):
        log.append(f"m{i}")
    assert len(log) == 3
    tail = log.tail(50)
    assert [t.split("] ", 1)[1] for t in tail] == ["m4", "m3", "m2"]
    assert [t.split("] ", 1)[1] for t in log.tail(2)] == ["m4", "m3"]


def test_log_buffer_tail_is_a_copy():
    log = SyncLogBuffer(capacity=3)
    log.append("a")
    tail = log.tail()
    tail.clear()
    assert len(log) == 1


def test_build_ack_status_rules():
    assert build_ack("p1").status == "SUCCESS"
    assert build_ack("p1").errors is None

    partial = build_ack("p1", [SyncError(entity="StockMovement", id="m1", error="product x not found")])
    assert partial.status == "PARTIAL"
    assert partial.errors[0].id == "m1"

    failed = failed_ack("p1", "Packet", "boom")
    assert failed.status == "FAILED"
    assert failed.to_wire()["errors"] == [{"entity": "Packet", "error": "boom"}]


def test_log_tail_setting_is_capped_at_fifty(monkeypatch):
    monkeypatch.setenv("SYNC_LOG_TAIL", "500")
    assert Settings().sync_log_tail == 50
    monkeypatch.setenv("SYNC_LOG_TAIL", "0")
    assert Settings().sync_log_tail == 1
    monkeypatch.setenv("SYNC_LOG_TAIL", "20")
    assert Settings().sync_log_tail == 20


def test_json_log_writes_one_utc_line_to_stderr(capsys):
    json_log("warning", "sync.packet.retry", packet_id="p1", attempt=2)
    rec = json.loads(capsys.readouterr().err.strip())
    assert rec["level"] == "warning"
    assert rec["event"] == "sync.packet.retry"
    assert rec["attempt"] == 2
    assert rec["ts"].endswith("+00:00")
