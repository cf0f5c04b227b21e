import asyncio

import pytest

from assessment_engine.services.reading import ReadingProgressTracker, estimate_completion


class CountingStore:
    def __init__(self, inner):
        self.inner = inner
        self.writes = 0

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def persist_reading_progress(self, progress):
        self.writes += 1
        return self.inner.persist_reading_progress(progress)


@pytest.mark.parametrize(
    "scroll_top,scroll_height,client_height,expected",
    [
        (0, 2000, 1000, 0),
        (500, 2000, 1000, 50),
        (333, 2000, 1000, 33),
        (995, 2000, 1000, 99),  # 99.5 rounds to 100, capped
        (1000, 2000, 1000, 99),
        (1400, 2000, 1000, 99),  # over-scroll
        (-20, 2000, 1000, 0),
        (0, 800, 1000, None),  # nothing to scroll
        (0, 1000, 1000, None),
    ],
)
def test_estimate_completion(scroll_top, scroll_height, client_height, expected):
    assert estimate_completion(scroll_top, scroll_height, client_height) == expected


def test_completed_content_reports_100():
    assert estimate_completion(0, 2000, 1000, is_completed=True) == 100


def test_scrolling_never_reaches_100():
    for top in range(0, 3001, 50):
        assert estimate_completion(top, 3000, 800) < 100


def test_open_creates_the_progress_row(store, tracker_options):
    async def scenario():
        tracker = await ReadingProgressTracker.open(store, "u1", "chapter-1", **tracker_options)
        assert tracker.last_accessed is not None
        stored = store.load_reading_progress("u1", "chapter-1")
        assert stored.last_accessed is not None
        await tracker.close()

    asyncio.run(scenario())


def test_scroll_writes_are_debounced(store, tracker_options):
    async def scenario():
        counting = CountingStore(store)
        tracker = await ReadingProgressTracker.open(counting, "u1", "chapter-1", **tracker_options)
        opened_writes = counting.writes

        for top in (100, 200, 300, 400):
            tracker.on_scroll(top, 1800, 800)
        assert counting.writes == opened_writes

        await asyncio.sleep(0.05)
        await tracker.autosave.drain()
        assert counting.writes == opened_writes + 1
        assert store.load_reading_progress("u1", "chapter-1").completion_percentage == 40

        await tracker.close()

    asyncio.run(scenario())


def test_scroll_to_bottom_stops_at_99_until_marked_complete(store, tracker_options):
    async def scenario():
        tracker = await ReadingProgressTracker.open(store, "u1", "chapter-1", **tracker_options)
        assert tracker.on_scroll(1000, 1800, 800) == 99

        done = await tracker.mark_complete()
        assert done.completion_percentage == 100
        assert done.is_completed

        # pinned: scrolling back up does not undo completion
        assert tracker.on_scroll(0, 1800, 800) == 100
        stored = store.load_reading_progress("u1", "chapter-1")
        assert stored.is_completed
        assert stored.completion_percentage == 100

        await tracker.close()

    asyncio.run(scenario())


def test_reset_clears_completion(store, tracker_options):
    async def scenario():
        tracker = await ReadingProgressTracker.open(store, "u1", "chapter-1", **tracker_options)
        await tracker.mark_complete()
        tracker.toggle_bookmark(4)

        progress = await tracker.reset()
        assert not progress.is_completed
        assert progress.completion_percentage == 0
        assert progress.bookmarks == [4]
        assert tracker.on_scroll(400, 1800, 800) == 40

        await tracker.close()

    asyncio.run(scenario())


def test_toggle_bookmark_keeps_a_sorted_set(store, tracker_options):
    async def scenario():
        tracker = await ReadingProgressTracker.open(store, "u1", "chapter-1", **tracker_options)
        tracker.toggle_bookmark(12)
        tracker.toggle_bookmark(3)
        assert tracker.toggle_bookmark(7) == [3, 7, 12]
        assert tracker.toggle_bookmark(3) == [7, 12]

        await tracker.close()
        assert store.load_reading_progress("u1", "chapter-1").bookmarks == [7, 12]

    asyncio.run(scenario())


def test_reading_time_skips_hidden_periods(store, clock, tracker_options):
    async def scenario():
        tracker = await ReadingProgressTracker.open(store, "u1", "chapter-1", **tracker_options)
        clock.advance(30)
        await tracker.suspend()
        assert store.load_reading_progress("u1", "chapter-1").time_spent_seconds == pytest.approx(30)

        clock.advance(100)
        tracker.resume()
        clock.advance(5)
        await tracker.close()
        assert store.load_reading_progress("u1", "chapter-1").time_spent_seconds == pytest.approx(35)

    asyncio.run(scenario())


def test_reading_time_continues_from_stored_total(store, clock, tracker_options):
    async def scenario():
        first = await ReadingProgressTracker.open(store, "u1", "chapter-1", **tracker_options)
        clock.advance(8)
        await first.close()

        second = await ReadingProgressTracker.open(store, "u1", "chapter-1", **tracker_options)
        clock.advance(4)
        assert second.snapshot().time_spent_seconds == pytest.approx(8)
        await second.close()
        assert store.load_reading_progress("u1", "chapter-1").time_spent_seconds == pytest.approx(12)

    asyncio.run(scenario())
