import logging
from datetime import datetime, timedelta

from hammr.joblog import (
    FileLogSink,
    LogEntry,
    MemoryLogSink,
    attach_sink,
    detach_sink,
    job_logger,
    select_sink,
)
from hammr.settings import LogCfg

T0 = datetime(2024, 5, 1, 18, 0, 0)


def entry(n, auction_id=1, item_id=2, level="INFO"):
    return LogEntry(T0 + timedelta(seconds=n), level, f"event {n}", auction_id, item_id)


def test_memory_sink_is_bounded_and_newest_first():
    sink = MemoryLogSink(per_job=3, global_max=4)
    for n in range(6):
        sink.append(entry(n))
    sink.append(LogEntry(T0 + timedelta(seconds=10), "WARNING", "global only"))

    assert [e.message for e in sink.job_entries(1, 2)] == ["event 5", "event 4", "event 3"]
    assert [e.message for e in sink.global_entries(2)] == ["global only", "event 5"]
    assert len(sink.global_entries()) == 4
    assert sink.keys() == ["1-2"]

    sink.purge(1, 2)
    assert sink.job_entries(1, 2) == []
    assert sink.keys() == []


def test_file_sink_round_trip(tmp_path):
    sink = FileLogSink(tmp_path, max_bytes=1_000_000, backup_count=2)
    sink.append(entry(0))
    sink.append(entry(1, auction_id=3, item_id=4))
    sink.append(LogEntry(T0 + timedelta(seconds=2), "ERROR", "boom", metadata={"errors": ["x"]}))

    assert [e.message for e in sink.job_entries(1, 2)] == ["event 0"]
    assert sink.global_entries()[0].metadata == {"errors": ["x"]}
    assert len(sink.global_entries()) == 3
    assert sink.keys() == ["1-2", "3-4"]

    sink.purge(1, 2)
    assert not sink.job_file(1, 2).exists()
    assert sink.keys() == ["3-4"]
    sink.close()


def test_file_sink_rotates_global_log(tmp_path):
    sink = FileLogSink(tmp_path, max_bytes=300, backup_count=2)
    for n in range(30):
        sink.append(entry(n))
    sink.close()

    assert (tmp_path / "global.jsonl.1").exists()
    assert not (tmp_path / "global.jsonl.3").exists()
    # per-job files are not rotated
    assert len(sink.job_entries(1, 2)) == 30


def test_file_sink_skips_garbage_lines(tmp_path):
    sink = FileLogSink(tmp_path, max_bytes=1_000_000, backup_count=1)
    sink.append(entry(0))
    with sink.job_file(1, 2).open("a", encoding="utf-8") as fh:
        fh.write("not json\n")
    assert len(sink.job_entries(1, 2)) == 1
    sink.close()


def test_select_sink_falls_back_to_memory(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")

    sink = select_sink(LogCfg(directory=str(blocker / "logs")))
    assert isinstance(sink, MemoryLogSink)

    sink = select_sink(LogCfg(directory=str(tmp_path / "logs")))
    assert isinstance(sink, FileLogSink)
    sink.close()


def test_job_logger_feeds_the_sink():
    sink = MemoryLogSink()
    handler = attach_sink(sink)
    try:
        job_logger(7, 8).warning("3 bids rejected", extra={"metadata": ["a", "b", "c"]})
        logging.getLogger("hammr.monitor").info("plain line")
    finally:
        detach_sink(handler)

    [job] = sink.job_entries(7, 8)
    assert job.level == "WARNING"
    assert job.message == "[7-8] 3 bids rejected"
    assert job.metadata == ["a", "b", "c"]
    assert [e.message for e in sink.global_entries()] == ["plain line", "[7-8] 3 bids rejected"]
