"""End-to-end tests for GameFetchOrchestrator against an in-process origin."""

import asyncio

import pytest

from gamefetch import GameFetchOrchestrator
from gamefetch.download import DownloadSession
from gamefetch.exceptions import DownloadCancelledError, ManifestError
from gamefetch.models import DownloadMode, EventType, FileState, Manifest
from tests.conftest import RecordingSink, make_config, sha256

PART0 = b"0" * 4096
PART1 = b"1" * 1024
BIG = PART0 + PART1


def single(path, data, **extra):
    return {"path": path, "checksum": sha256(data), "size": len(data), **extra}


def multi(path, parts):
    whole = b"".join(data for _, data in parts)
    return {
        "path": path,
        "checksum": sha256(whole),
        "size": len(whole),
        "parts": [single(name, data) for name, data in parts],
    }


def manifest(*files) -> Manifest:
    return Manifest.from_dict({"game_version": "1.0", "files": list(files)})


def serve(origin, *pairs):
    for path, data in pairs:
        origin.add(path, data)


@pytest.fixture
async def session(origin, tmp_path):
    session = DownloadSession(make_config(origin, tmp_path))
    yield session
    await session.close()


@pytest.fixture
def orchestrator(origin, tmp_path, session, sink):
    def build(**overrides):
        config = make_config(origin, tmp_path, **overrides)
        return GameFetchOrchestrator(config, sink=sink, session=session)

    return build


def done_paths(sink):
    return [e.path for e in sink.of(EventType.DONE)]


class TestRun:
    async def test_hello(self, origin, tmp_path, sink):
        serve(origin, ("a.bin", b"hello"))
        origin.set_manifest([single("a.bin", b"hello")])
        orch = GameFetchOrchestrator(make_config(origin, tmp_path), sink=sink)

        stats = await orch.run()

        assert (tmp_path / "a.bin").read_bytes() == b"hello"
        assert stats.total == 1
        assert stats.completed == 1
        assert stats.bytes_downloaded == 5
        assert sink.of(EventType.BYTES_TOTAL)[0].total_bytes == 5
        assert done_paths(sink) == ["a.bin"]
        assert orch.states["a.bin"] is FileState.DONE

    async def test_missing_manifest(self, origin, tmp_path):
        orch = GameFetchOrchestrator(make_config(origin, tmp_path))

        with pytest.raises(ManifestError):
            await orch.run()

    async def test_second_run_makes_no_file_requests(self, origin, tmp_path):
        serve(origin, ("a.bin", b"hello"), ("big.pak.p0", PART0), ("big.pak.p1", PART1))
        origin.set_manifest(
            [
                single("a.bin", b"hello"),
                multi("big.pak", [("big.pak.p0", PART0), ("big.pak.p1", PART1)]),
            ]
        )
        await GameFetchOrchestrator(make_config(origin, tmp_path)).run()
        before = origin.file_requests()

        sink = RecordingSink()
        orch = GameFetchOrchestrator(make_config(origin, tmp_path), sink=sink)
        stats = await orch.run()

        assert origin.file_requests() == before
        assert stats.skipped == 2
        assert stats.bytes_downloaded == 0
        assert len(sink.of(EventType.SKIP)) == 2
        assert sorted(done_paths(sink)) == ["a.bin", "big.pak"]
        assert orch.states["big.pak"] is FileState.SKIPPED

    async def test_repeated_download_all_starts_fresh_stats(
        self, origin, orchestrator, sink
    ):
        serve(origin, ("a.bin", b"hello"))
        m = manifest(single("a.bin", b"hello"))
        orch = orchestrator()

        first = await orch.download_all(m)
        sink.events.clear()
        second = await orch.download_all(m)

        assert first.completed == 1
        assert (second.total, second.completed, second.skipped) == (1, 0, 1)
        assert second.bytes_downloaded == 0
        assert orch.stats is second
        done = sink.of(EventType.DONE)
        assert [(e.completed, e.total) for e in done] == [(1, 1)]


class TestStages:
    async def test_singles_finish_before_multis_start(self, origin, orchestrator, sink):
        serve(
            origin,
            ("a.bin", b"alpha"),
            ("b.bin", b"bravo"),
            ("big.pak.p0", PART0),
            ("big.pak.p1", PART1),
        )
        m = manifest(
            multi("big.pak", [("big.pak.p0", PART0), ("big.pak.p1", PART1)]),
            single("a.bin", b"alpha"),
            single("b.bin", b"bravo"),
        )

        stats = await orchestrator(concurrency=2).download_all(m)

        assert stats.completed == 3
        events = sink.events
        last_single_done = max(
            i for i, e in enumerate(events)
            if e.type is EventType.DONE and e.path in ("a.bin", "b.bin")
        )
        multi_start = next(
            i for i, e in enumerate(events)
            if e.type is EventType.START and e.path == "big.pak"
        )
        assert last_single_done < multi_start
        # singles are indexed first
        start = {e.path: e.index for e in sink.of(EventType.START)}
        assert start["big.pak"] == 2

    async def test_multis_merge_and_report_done_after_verify(
        self, origin, orchestrator, sink, tmp_path
    ):
        other0, other1 = b"x" * 2048, b"y" * 100
        serve(
            origin,
            ("big.pak.p0", PART0),
            ("big.pak.p1", PART1),
            ("other.pak.p0", other0),
            ("other.pak.p1", other1),
        )
        m = manifest(
            multi("big.pak", [("big.pak.p0", PART0), ("big.pak.p1", PART1)]),
            multi("other.pak", [("other.pak.p0", other0), ("other.pak.p1", other1)]),
        )

        stats = await orchestrator().download_all(m)

        assert stats.completed == 2
        assert (tmp_path / "big.pak").read_bytes() == BIG
        assert (tmp_path / "other.pak").read_bytes() == other0 + other1
        for path in ("big.pak", "other.pak"):
            types = [e.type for e in sink.events if e.path == path]
            assert types.count(EventType.DONE) == 1
            assert types.index(EventType.VERIFY) < types.index(EventType.DONE)

    async def test_corrupt_part_scenario(self, origin, orchestrator, sink, tmp_path):
        serve(origin, ("big.pak.p0", PART0), ("big.pak.p1", PART1))
        origin.fail("big.pak.p1", "corrupt")
        m = manifest(multi("big.pak", [("big.pak.p0", PART0), ("big.pak.p1", PART1)]))

        stats = await orchestrator().download_all(m)

        assert (tmp_path / "big.pak").read_bytes() == BIG
        assert len(origin.requests_for("big.pak.p0")) == 1
        assert len(origin.requests_for("big.pak.p1")) == 2
        types = [e.type for e in sink.events if e.path == "big.pak"]
        assert types.count(EventType.DONE) == 1
        assert types.index(EventType.MERGE_DONE) < types.index(EventType.DONE)
        assert stats.bytes_downloaded == len(BIG)


class TestAccounting:
    async def test_bytes_match_final_artifacts(self, origin, orchestrator, sink):
        serve(
            origin,
            ("a.bin", b"hello"),
            ("b.bin", b"world!"),
            ("big.pak.p0", PART0),
            ("big.pak.p1", PART1),
        )
        origin.fail("a.bin", "corrupt")
        origin.fail("big.pak.p0", "corrupt")
        origin.fail("b.bin", "drop")
        m = manifest(
            single("a.bin", b"hello"),
            single("b.bin", b"world!"),
            multi("big.pak", [("big.pak.p0", PART0), ("big.pak.p1", PART1)]),
        )

        stats = await orchestrator().download_all(m)

        expected = 5 + 6 + len(BIG)
        assert stats.bytes_downloaded == expected
        assert sink.byte_total() == expected
        assert stats.total_bytes == expected

    async def test_failed_file_does_not_fail_batch(
        self, origin, orchestrator, sink, tmp_path
    ):
        serve(origin, ("a.bin", b"hello"))
        m = manifest(single("a.bin", b"hello"), single("gone.bin", b"nope"))

        orch = orchestrator()
        stats = await orch.download_all(m)

        assert stats.completed == 1
        assert stats.failed == 1
        assert stats.failed_paths == ["gone.bin"]
        # one retry after cleanup
        assert len(origin.requests_for("gone.bin")) == 2
        errors = sink.of(EventType.ERROR)
        assert [e.path for e in errors] == ["gone.bin"]
        failed_done = [e for e in sink.of(EventType.DONE) if e.path == "gone.bin"]
        assert len(failed_done) == 1 and failed_done[0].error
        assert orch.states["gone.bin"] is FileState.FAILED
        assert not (tmp_path / "gone.bin").exists()


class TestSelection:
    async def test_optional_files_are_filtered(self, origin, orchestrator):
        serve(origin, ("a.bin", b"hello"), ("hd.bin", b"textures"))
        m = manifest(single("a.bin", b"hello"), single("hd.bin", b"textures", optional=True))

        stats = await orchestrator().download_all(m)
        assert stats.total == 1
        assert origin.requests_for("hd.bin") == []

        stats = await orchestrator(include_optional=True).download_all(m)
        assert len(origin.requests_for("hd.bin")) == 1

    async def test_duplicate_paths_download_once(self, origin, orchestrator, tmp_path):
        serve(origin, ("Data/a.bin", b"hello"))
        m = manifest(
            single("Data/a.bin", b"hello"),
            single("data\\A.BIN", b"hello"),
            single("/Data/a.bin", b"hello"),
        )

        stats = await orchestrator().download_all(m)

        assert stats.total == 1
        assert len(origin.requests_for("Data/a.bin")) == 1

    @pytest.mark.parametrize(
        "mode, preserved",
        [(DownloadMode.INSTALL, False), (DownloadMode.REPAIR, True), (DownloadMode.UPDATE, True)],
    )
    async def test_preserve_paths(self, origin, orchestrator, tmp_path, mode, preserved):
        serve(origin, ("mods/mods.vdf", b"server copy"))
        local = tmp_path / "mods" / "mods.vdf"
        local.parent.mkdir()
        local.write_bytes(b"user edits")
        m = manifest(single("mods/mods.vdf", b"server copy"))

        await orchestrator(mode=mode).download_all(m)

        if preserved:
            assert local.read_bytes() == b"user edits"
            assert origin.requests_for("mods/mods.vdf") == []
        else:
            assert local.read_bytes() == b"server copy"


class TestControl:
    async def test_cancel(self, origin, orchestrator, sink, tmp_path):
        serve(origin, ("slow.bin", b"s" * 8192), ("later.bin", b"later"))
        origin.fail("slow.bin", "stall")
        origin.stall_for = 2.0
        m = manifest(single("slow.bin", b"s" * 8192), single("later.bin", b"later"))
        orch = orchestrator(concurrency=1)

        async def cancel_soon():
            await asyncio.sleep(0.3)
            await orch.cancel()

        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(DownloadCancelledError):
            await asyncio.wait_for(orch.download_all(m), timeout=1.5)
        await canceller

        assert not (tmp_path / "slow.bin").exists()
        assert origin.requests_for("later.bin") == []
        assert len(sink.of(EventType.CANCELLED)) == 1
        assert orch.session.inflight_tasks() == []

    async def test_pause_and_resume(self, origin, orchestrator, sink, tmp_path):
        serve(origin, ("a.bin", b"hello"))
        m = manifest(single("a.bin", b"hello"))
        orch = orchestrator()

        await orch.pause()
        task = asyncio.create_task(orch.download_all(m))
        await asyncio.sleep(0.2)
        assert origin.file_requests() == 0
        assert not task.done()

        await orch.resume()
        stats = await asyncio.wait_for(task, timeout=2)

        assert stats.completed == 1
        types = [e.type for e in sink.events]
        assert types.index(EventType.PAUSED) < types.index(EventType.RESUMED)
        assert types.index(EventType.RESUMED) < types.index(EventType.START)

    async def test_external_pause_poller(self, origin, tmp_path, session):
        serve(origin, ("a.bin", b"hello"))
        paused = [True]
        orch = GameFetchOrchestrator(
            make_config(origin, tmp_path), session=session, is_paused=lambda: paused[0]
        )

        task = asyncio.create_task(orch.download_all(manifest(single("a.bin", b"hello"))))
        await asyncio.sleep(0.2)
        assert origin.file_requests() == 0

        paused[0] = False
        await asyncio.wait_for(task, timeout=2)
        assert (tmp_path / "a.bin").read_bytes() == b"hello"

    async def test_cancel_while_paused(self, origin, orchestrator):
        serve(origin, ("a.bin", b"hello"))
        orch = orchestrator()
        await orch.pause()
        task = asyncio.create_task(orch.download_all(manifest(single("a.bin", b"hello"))))
        await asyncio.sleep(0.1)

        await orch.cancel()

        with pytest.raises(DownloadCancelledError):
            await asyncio.wait_for(task, timeout=1)
        assert not orch.is_paused()


class TestSharedSession:
    async def test_concurrent_calls_download_each_file_once(
        self, origin, session, tmp_path
    ):
        files = [(f"f{i}.bin", bytes([i]) * 3000) for i in range(6)]
        serve(origin, *files, ("big.pak.p0", PART0), ("big.pak.p1", PART1))
        m = manifest(
            *(single(path, data) for path, data in files),
            multi("big.pak", [("big.pak.p0", PART0), ("big.pak.p1", PART1)]),
        )
        sinks = [RecordingSink(), RecordingSink()]
        orchs = [
            GameFetchOrchestrator(
                make_config(origin, tmp_path, concurrency=3), sink=s, session=session
            )
            for s in sinks
        ]

        results = await asyncio.gather(*(o.download_all(m) for o in orchs))

        for path, data in files:
            assert (tmp_path / path).read_bytes() == data
            assert len(origin.requests_for(path)) == 1
        assert len(origin.requests_for("big.pak.p0")) == 1
        assert (tmp_path / "big.pak").read_bytes() == BIG
        for stats, s in zip(results, sinks):
            assert stats.failed == 0
            assert stats.completed + stats.skipped == 7
            assert len(s.of(EventType.DONE)) == 7
        assert session.inflight_tasks() == []

    async def test_waiters_hand_over_once_when_owner_is_cancelled(
        self, origin, session, tmp_path
    ):
        data = b"s" * 8192
        serve(origin, ("s.bin", data))
        origin.fail("s.bin", "stall")
        origin.stall_for = 2.0
        m = manifest(single("s.bin", data))
        owner, *waiters = [
            GameFetchOrchestrator(
                make_config(origin, tmp_path), sink=RecordingSink(), session=session
            )
            for _ in range(3)
        ]

        owner_task = asyncio.create_task(owner.download_all(m))
        await asyncio.sleep(0.1)
        waiter_tasks = [asyncio.create_task(o.download_all(m)) for o in waiters]
        await asyncio.sleep(0.2)
        await owner.cancel()

        with pytest.raises(DownloadCancelledError):
            await asyncio.wait_for(owner_task, timeout=1.5)
        results = await asyncio.wait_for(asyncio.gather(*waiter_tasks), timeout=3)

        # 一次被取消的请求 + 一次接手的请求
        assert len(origin.requests_for("s.bin")) == 2
        assert (tmp_path / "s.bin").read_bytes() == data
        for stats in results:
            assert stats.failed == 0
            assert stats.completed + stats.skipped == 1
        assert session.inflight_tasks() == []
