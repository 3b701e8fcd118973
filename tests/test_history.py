from datetime import datetime

from aitotype import BackendError, HistoryCache


def test_history_is_capped_and_most_recent_first(history):
    for index in range(25):
        history.add(f"entry {index}")

    assert len(history) == HistoryCache.MAX_ENTRIES
    assert history.entries[0].text == "entry 24"
    assert history.entries[-1].text == "entry 5"


def test_history_entry_time_is_hours_and_minutes(backend):
    history = HistoryCache(backend, now=lambda: datetime(2026, 3, 1, 9, 5, 42))

    entry = history.add("hello")

    assert entry == HistoryCache.Entry(time="09:05", text="hello")


async def test_copy_entry(history, backend):
    history.add("first")
    history.add("second")

    assert await history.copy(1) is True
    assert backend.args_of("copy_to_clipboard") == [("first",)]


async def test_copy_missing_or_failing_entry(history, backend):
    assert await history.copy(0) is False

    history.add("text")
    backend.failures["copy_to_clipboard"] = BackendError("no clipboard")
    assert await history.copy(0) is False
