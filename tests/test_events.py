import threading

from mitm_sieve.core.events import EventLog
from mitm_sieve.models import Decision, LogLevel


def test_append_assigns_increasing_sequence_numbers(events):
    first = events.record_request("GET", "a.com/", Decision.ALLOWED)
    second = events.record_request("GET", "b.com/", Decision.DENIED)
    assert second.seq == first.seq + 1


def test_query_is_most_recent_first_and_limited(events):
    for i in range(5):
        events.record_request("GET", f"site{i}.com/", Decision.ALLOWED)
    entries = events.query(LogLevel.DEBUG, limit=3)
    assert [e.target for e in entries] == ["site4.com/", "site3.com/", "site2.com/"]
    assert len(events) == 5


def test_query_filters_by_level(events):
    events.record_request("GET", "ok.com/", Decision.ALLOWED)
    events.record_request("GET", "ads.com/", Decision.DENIED)
    events.record_request("GET", "down.com/", Decision.ERROR, cause="upstream")
    entries = events.query(LogLevel.WARNING)
    assert [e.decision for e in entries] == [Decision.ERROR, Decision.DENIED]


def test_query_after_sequence(events):
    marker = events.record_request("GET", "a.com/", Decision.ALLOWED)
    events.record_request("GET", "b.com/", Decision.ALLOWED)
    events.record_request("GET", "c.com/", Decision.ALLOWED)
    assert [e.target for e in events.query(after_seq=marker.seq)] == ["c.com/", "b.com/"]


def test_oldest_entries_are_evicted():
    log = EventLog(capacity=3)
    for i in range(5):
        log.record_request("GET", f"{i}.com/", Decision.ALLOWED)
    assert [e.target for e in log.query()] == ["4.com/", "3.com/", "2.com/"]


def test_entries_below_level_are_dropped():
    log = EventLog(level=LogLevel.WARNING)
    assert log.record_request("GET", "a.com/", Decision.ALLOWED) is None
    assert log.record_request("GET", "b.com/", Decision.DENIED) is not None
    assert len(log) == 1


def test_set_level_applies_immediately_and_is_announced():
    log = EventLog(level=LogLevel.ERROR)
    log.set_level(LogLevel.DEBUG)
    assert log.record(LogLevel.DEBUG, "debug message") is not None
    messages = [e.message for e in log.query()]
    assert "Log level has been set to: DEBUG" in messages


def test_global_entries_pass_every_level():
    log = EventLog(level=LogLevel.ERROR)
    assert log.record(LogLevel.GLOBAL, "Proxy running") is not None


def test_resize_keeps_newest():
    log = EventLog(capacity=10)
    for i in range(6):
        log.record_request("GET", f"{i}.com/", Decision.ALLOWED)
    log.resize(2)
    assert log.capacity == 2
    assert [e.target for e in log.query()] == ["5.com/", "4.com/"]


def test_request_rows_export(events):
    events.record(LogLevel.GLOBAL, "Proxy running")
    events.record_request("GET", "a.com/", Decision.ALLOWED)
    events.record_request("CONNECT", "b.com:443", Decision.DENIED)
    assert events.to_rows() == [
        {"method": "GET", "request": "a.com/", "blocked": False},
        {"method": "CONNECT", "request": "b.com:443", "blocked": True},
    ]


def test_concurrent_appends_are_all_recorded():
    log = EventLog(capacity=10_000)

    def producer(n):
        for i in range(500):
            log.record_request("GET", f"t{n}-{i}", Decision.ALLOWED)

    threads = [threading.Thread(target=producer, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    entries = log.query()
    assert len(entries) == 4000
    assert sorted(e.seq for e in entries) == list(range(1, 4001))
