import asyncio
import json
import logging
from pathlib import Path

import pytest

from fakes import FakeAPI, FakeDialer, FakeNotifier, FakeProber, FakeTranscoder, FakeWebSocket, live_status
from fanslyrecorder.chat_recorder import ChatRecorder
from fanslyrecorder.errors import WatchListError
from fanslyrecorder.monitor import CreatorStatus, MonitoringService
from fanslyrecorder.stream_monitor import MonitorEvent, StreamEvent
from fanslyrecorder.watchlist import WatchList


class FailingWatchList(WatchList):
    async def save(self) -> None:
        raise WatchListError("disk full")


def build_service(config, locks, media_store, prober=None, transcoder=None, notifier=None, watchlist=None):
    return MonitoringService(
        config,
        FakeAPI(),
        watchlist=watchlist,
        locks=locks,
        transcoder=transcoder or FakeTranscoder(),
        media_store=media_store,
        notifier=notifier or FakeNotifier(),
        chat_recorder=ChatRecorder("token", "ua", config.chat, ws_factory=FakeDialer(make=FakeWebSocket)),
        prober=prober or FakeProber(),
    )


async def wait_until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_toggle_twice_stops_polling_and_persists(config, locks, media_store):
    service = build_service(config, locks, media_store)
    await service.start()
    try:
        assert await service.toggle_monitoring("123", "alice") is True
        assert service.polling_ids() == ["123"]
        assert json.loads(Path(config.state.watchlist_file).read_text()) == {"123": "alice"}

        assert await service.toggle_monitoring("123", "alice") is False
        assert service.polling_ids() == []
        assert not service.is_watching("123")
        assert json.loads(Path(config.state.watchlist_file).read_text()) == {}
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_toggle_rolls_back_when_save_fails(config, locks, media_store):
    watchlist = FailingWatchList(config.state.watchlist_file)
    service = build_service(config, locks, media_store, watchlist=watchlist)
    await service.start()
    try:
        with pytest.raises(WatchListError):
            await service.toggle_monitoring("123", "alice")
        assert not service.is_watching("123")
        assert service.polling_ids() == []
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_start_loads_watchlist_and_cleans_stale_locks(config, locks, media_store):
    await WatchList(config.state.watchlist_file).toggle("123", "alice")
    stale = Path(config.state.locks_dir) / "999.lock"
    stale.write_text("")

    service = build_service(config, locks, media_store)
    await service.start()
    try:
        assert service.polling_ids() == ["123"]
        assert service.creator_states()["123"].status == CreatorStatus.POLLING
        assert not stale.exists()
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_live_tick_records_once_and_notifies(config, locks, media_store):
    prober = FakeProber([live_status(), live_status(), live_status()])
    transcoder = FakeTranscoder(auto_exit=False)
    notifier = FakeNotifier()
    service = build_service(config, locks, media_store, prober, transcoder, notifier)
    await service.start()
    try:
        await service.toggle_monitoring("123", "alice")
        await wait_until(lambda: prober.calls >= 3)

        assert notifier.live_start == [("alice", "123")]
        assert len(transcoder.captures) == 1
        assert service.active_recordings() == ["123"]
        assert service.is_recording("123")

        transcoder.processes[0].finish(0)
        await wait_until(lambda: not service.active_recordings())
        saved_name = transcoder.captures[0][1].name
        assert any(entry[2] == saved_name for entry in notifier.live_end)
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_went_offline_notifies_without_filename(config, locks, media_store):
    prober = FakeProber([live_status()])
    notifier = FakeNotifier()
    service = build_service(config, locks, media_store, prober, FakeTranscoder(), notifier)
    await service.start()
    try:
        await service.toggle_monitoring("123", "alice")
        await wait_until(lambda: ("alice", "123", None, None) in notifier.live_end)

        assert len(notifier.live_end) == 2
        assert service.creator_states()["123"].is_live is False
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_live_creator_with_held_lock_is_skipped(config, locks, media_store):
    locks.acquire("123")
    prober = FakeProber([live_status()])
    transcoder = FakeTranscoder()
    notifier = FakeNotifier()
    service = build_service(config, locks, media_store, prober, transcoder, notifier)
    await service.start()
    try:
        await service.toggle_monitoring("123", "alice")
        await wait_until(lambda: notifier.live_start)
        await asyncio.sleep(0.05)

        assert transcoder.captures == []
        assert service.active_recordings() == []
        assert service.is_recording("123")
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_rescan_follows_file_edits(config, locks, media_store):
    service = build_service(config, locks, media_store)
    await service.start()
    other = WatchList(config.state.watchlist_file)
    try:
        await other.toggle("123", "alice")
        await service.rescan()
        assert service.polling_ids() == ["123"]
        assert service.watched() == {"123": "alice"}

        await other.toggle("123", "alice")
        await service.rescan()
        assert service.polling_ids() == []
        assert "123" not in service.creator_states()
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_shutdown_stops_recordings_and_pollers(config, locks, media_store):
    prober = FakeProber([live_status()])
    transcoder = FakeTranscoder(auto_exit=False)
    notifier = FakeNotifier()
    service = build_service(config, locks, media_store, prober, transcoder, notifier)
    await service.start()
    await service.toggle_monitoring("123", "alice")
    await wait_until(lambda: transcoder.processes)

    await service.shutdown()
    await service.shutdown()

    assert transcoder.processes[0].killed
    assert service.active_recordings() == []
    assert service.polling_ids() == []
    assert not locks.is_held("123")
    assert any(entry[2] == transcoder.captures[0][1].name for entry in notifier.live_end)


@pytest.mark.asyncio
async def test_stop_recording_kills_active_session(config, locks, media_store):
    transcoder = FakeTranscoder(auto_exit=False)
    service = build_service(config, locks, media_store, transcoder=transcoder)
    await service.start()
    try:
        task = service.start_recording("123", "alice", live_status())
        assert service.start_recording("123", "alice", live_status()) is None
        await wait_until(lambda: transcoder.processes)

        assert await service.stop_recording("123")
        result = await asyncio.wait_for(task, timeout=5)
        assert result is not None
        assert transcoder.processes[0].killed
        assert not await service.stop_recording("123")
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_corrupt_file_keeps_current_watchlist(config, locks, media_store):
    service = build_service(config, locks, media_store)
    await service.start()
    try:
        await service.toggle_monitoring("123", "alice")
        await service.toggle_monitoring("456", "bob")
        path = Path(config.state.watchlist_file)
        path.write_text('{"123": "alice", "456": "bob",')

        await service.rescan()
        assert service.polling_ids() == ["123", "456"]
        assert service.watched() == {"123": "alice", "456": "bob"}

        assert await service.toggle_monitoring("789", "carol") is True
        assert json.loads(path.read_text()) == {"123": "alice", "456": "bob", "789": "carol"}
        assert service.polling_ids() == ["123", "456", "789"]
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_concurrent_toggles_and_live_ticks_record_once(config, locks, media_store):
    prober = FakeProber([live_status() for _ in range(50)])
    transcoder = FakeTranscoder(auto_exit=False)
    service = build_service(config, locks, media_store, prober, transcoder)
    await service.start()
    try:
        live = MonitorEvent(StreamEvent.LIVE, "123", "alice", live_status())
        results = await asyncio.gather(
            *(service.toggle_monitoring("123", "alice") for _ in range(3)),
            *(service._handle_event(live) for _ in range(5)),
        )
        assert results[:3].count(True) == 2

        await wait_until(lambda: transcoder.processes)
        await asyncio.sleep(0.1)

        poll_tasks = [t for t in asyncio.all_tasks() if t.get_name() == "poll-123" and not t.done()]
        assert len(poll_tasks) == 1
        assert service.polling_ids() == ["123"]
        assert len(transcoder.captures) == 1
        assert list(Path(config.state.locks_dir).glob("*.lock")) == [Path(config.state.locks_dir) / "123.lock"]
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_toggle_before_start_is_persisted_and_polled_on_start(config, locks, media_store, caplog):
    service = build_service(config, locks, media_store)

    with caplog.at_level(logging.WARNING, logger="fansly_recorder.monitor"):
        assert await service.toggle_monitoring("123", "alice") is True
    assert service.polling_ids() == []
    assert "will be polled after start" in caplog.text
    assert json.loads(Path(config.state.watchlist_file).read_text()) == {"123": "alice"}

    await service.start()
    try:
        assert service.polling_ids() == ["123"]
    finally:
        await service.shutdown()
