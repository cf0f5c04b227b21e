import asyncio

from pydantic import BaseModel

from assessment_engine.exceptions import PersistenceError
from assessment_engine.services.autosave import AutosaveScheduler, SaveStatus


class Doc(BaseModel):
    value: int = 0


class RecordingStore:
    """Stand-in persist target; can be told to fail or to block."""

    def __init__(self):
        self.writes = []
        self.fail = False
        self.gate = None

    async def persist(self, snapshot):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise PersistenceError("database is locked")
        self.writes.append(snapshot.value)
        return snapshot


def _scheduler(doc_holder, target, **kwargs):
    return AutosaveScheduler(lambda: doc_holder[0], target.persist, name="test", **kwargs)


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


def test_flush_writes_and_records_status():
    async def scenario():
        target = RecordingStore()
        holder = [Doc(value=1)]
        scheduler = _scheduler(holder, target)
        assert scheduler.status == SaveStatus.IDLE

        assert await scheduler.flush() is True
        assert target.writes == [1]
        assert scheduler.status == SaveStatus.SAVED
        assert scheduler.last_saved_at is not None
        assert not scheduler.has_unsaved_changes()

    asyncio.run(scenario())


def test_unchanged_snapshot_is_not_rewritten_unless_forced():
    async def scenario():
        target = RecordingStore()
        holder = [Doc(value=1)]
        scheduler = _scheduler(holder, target)

        await scheduler.flush()
        await scheduler.flush()
        assert target.writes == [1]

        holder[0] = Doc(value=2)
        assert scheduler.has_unsaved_changes()
        await scheduler.flush()
        await scheduler.flush(force=True)
        assert target.writes == [1, 2, 2]

    asyncio.run(scenario())


def test_second_flush_is_suppressed_while_one_is_in_flight():
    async def scenario():
        target = RecordingStore()
        target.gate = asyncio.Event()
        holder = [Doc(value=1)]
        scheduler = _scheduler(holder, target)

        first = asyncio.ensure_future(scheduler.flush())
        await _settle()
        assert scheduler.in_flight
        assert scheduler.status == SaveStatus.SAVING

        holder[0] = Doc(value=2)
        assert await scheduler.flush() is False

        target.gate.set()
        assert await first is True
        assert target.writes == [1]

    asyncio.run(scenario())


def test_flush_now_waits_for_the_write_in_flight_then_writes():
    async def scenario():
        target = RecordingStore()
        target.gate = asyncio.Event()
        holder = [Doc(value=1)]
        scheduler = _scheduler(holder, target)

        first = asyncio.ensure_future(scheduler.flush())
        await _settle()
        holder[0] = Doc(value=2)
        second = asyncio.ensure_future(scheduler.flush_now())
        await _settle()
        target.gate.set()

        assert await first is True
        assert await second is True
        assert target.writes == [1, 2]

    asyncio.run(scenario())


def test_failed_write_keeps_snapshot_unsaved_and_retries():
    async def scenario():
        target = RecordingStore()
        target.fail = True
        holder = [Doc(value=5)]
        scheduler = _scheduler(holder, target)

        assert await scheduler.flush() is False
        assert scheduler.status == SaveStatus.ERROR
        assert "locked" in scheduler.last_error
        assert scheduler.has_unsaved_changes()

        target.fail = False
        assert await scheduler.flush() is True
        assert target.writes == [5]
        assert scheduler.status == SaveStatus.SAVED
        assert scheduler.last_error is None

    asyncio.run(scenario())


def test_periodic_timer_writes_only_when_due():
    async def scenario():
        target = RecordingStore()
        holder = [Doc(value=1)]
        due = {"now": False}
        scheduler = _scheduler(holder, target, interval=0.01, due=lambda: due["now"])

        scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0.05)
        assert target.writes == []

        due["now"] = True
        await asyncio.sleep(0.05)
        scheduler.stop()
        assert not scheduler.running
        assert target.writes == [1]  # later ticks saw an unchanged snapshot

        holder[0] = Doc(value=2)
        await asyncio.sleep(0.05)
        assert target.writes == [1]

    asyncio.run(scenario())


def test_tick_callback_runs_until_stopped():
    async def scenario():
        ticks = []

        async def tick():
            ticks.append(1)

        scheduler = AutosaveScheduler(lambda: Doc(), RecordingStore().persist, tick=tick, tick_interval=0.01)
        scheduler.start()
        await asyncio.sleep(0.06)
        scheduler.stop()
        seen = len(ticks)
        await asyncio.sleep(0.03)

        assert seen >= 2
        assert len(ticks) == seen

    asyncio.run(scenario())


def test_background_flush_completes_on_drain():
    async def scenario():
        target = RecordingStore()
        scheduler = _scheduler([Doc(value=9)], target)
        task = scheduler.flush_in_background()
        assert task is not None
        await scheduler.drain()
        assert target.writes == [9]

    asyncio.run(scenario())


def test_background_flush_without_event_loop_is_skipped():
    target = RecordingStore()
    scheduler = _scheduler([Doc(value=9)], target)
    assert scheduler.flush_in_background() is None
    assert target.writes == []


def test_reset_forgets_last_payload():
    async def scenario():
        target = RecordingStore()
        scheduler = _scheduler([Doc(value=3)], target)
        await scheduler.flush()
        scheduler.reset()
        assert scheduler.status == SaveStatus.IDLE
        await scheduler.flush()
        assert target.writes == [3, 3]

    asyncio.run(scenario())
