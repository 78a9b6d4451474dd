"""Tests for partitioning and the MirrorSync state machine."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
import pytest_asyncio

from pacman_mirror.crawler import FileTask
from pacman_mirror.state import SyncPhase, SyncState
from pacman_mirror.sync import LOCK_NAME, MirrorSync, partition

from tests.fakes import TREE

INCLUDED = sorted(p for p in TREE if p.startswith(("core/", "extra/")))


@pytest_asyncio.fixture
async def sync_factory():
    created = []

    async def factory(config):
        sync = MirrorSync(config, SyncState(config.mirror_path, echo=False))
        await sync.initialize()
        created.append(sync)
        return sync

    yield factory
    for sync in created:
        await sync.cleanup()


def tasks_of(n):
    return [FileTask(f"core/f{i:03d}.pkg") for i in range(n)]


class TestPartition:
    def test_single_shard_when_multithreading_disabled(self):
        tasks = tasks_of(7)
        shards = partition(tasks, ["http://a", "http://b"], multithreading=False)
        assert len(shards) == 1
        assert shards[0].tasks == tasks
        assert shards[0].mirrors == ["http://a", "http://b"]

    def test_single_shard_with_one_mirror(self):
        shards = partition(tasks_of(3), ["http://a"], multithreading=True)
        assert len(shards) == 1
        assert shards[0].mirrors == ["http://a"]

    def test_one_shard_per_mirror_round_robin(self):
        tasks = tasks_of(7)
        mirrors = ["http://a", "http://b", "http://c"]
        shards = partition(tasks, mirrors, multithreading=True)

        assert [s.worker for s in shards] == [0, 1, 2]
        assert [s.mirrors for s in shards] == [[m] for m in mirrors]
        assert shards[0].tasks == [tasks[0], tasks[3], tasks[6]]
        assert shards[1].tasks == [tasks[1], tasks[4]]
        assert shards[2].tasks == [tasks[2], tasks[5]]

    def test_union_of_shards_is_the_task_set_exactly_once(self):
        tasks = tasks_of(101)
        shards = partition(tasks, [f"http://m{i}" for i in range(4)], multithreading=True)
        assigned = [t for s in shards for t in s.tasks]
        assert len(assigned) == len(tasks)
        assert sorted(assigned) == sorted(tasks)

    def test_rate_is_divided_evenly(self):
        shards = partition(tasks_of(4), ["http://a", "http://b", "http://c"], True, rate=3000)
        assert [s.rate for s in shards] == [1000, 1000, 1000]

    def test_no_rate_means_unthrottled(self):
        shards = partition(tasks_of(4), ["http://a", "http://b"], True)
        assert [s.rate for s in shards] == [0, 0]

    def test_tiny_rate_never_becomes_zero(self):
        shards = partition(tasks_of(4), ["http://a", "http://b", "http://c"], True, rate=2)
        assert [s.rate for s in shards] == [1, 1, 1]


class TestMirrorSync:
    @pytest.mark.asyncio
    async def test_full_pass_mirrors_included_folders(self, mirror, make_config, sync_factory):
        config = make_config(mirror)
        sync = await sync_factory(config)
        phases = []
        sync.state.subscribe(lambda s: phases.append(s["phase"]))

        assert await sync.run() is SyncPhase.IDLE

        for path in INCLUDED:
            assert (sync.mirror_path / path).read_bytes() == TREE[path]
        assert not (sync.mirror_path / "testing").exists()
        assert not (sync.mirror_path / "lastsync").exists()
        assert phases[0] == "Idle"
        assert "Scanning" in phases
        assert phases.index("Scanning") < phases.index("Syncing")
        assert phases[-1] == "Idle"
        assert sync.state.progress == sync.state.total == len(INCLUDED)
        assert sync.state.eta == 0

    @pytest.mark.asyncio
    async def test_second_run_fetches_nothing(self, mirror, make_config, sync_factory):
        sync = await sync_factory(make_config(mirror))
        await sync.run()
        first = mirror.file_requests()
        assert first == len(INCLUDED)

        assert await sync.run() is SyncPhase.IDLE
        assert mirror.file_requests() == first
        assert sync.state.total == 0
        assert sync.state.present == len(INCLUDED)

    @pytest.mark.asyncio
    async def test_failed_file_does_not_abort_run(self, mirror, make_config, sync_factory):
        sync = await sync_factory(make_config(mirror))
        mirror.broken.add("core/os/x86_64/core.db")

        assert await sync.run() is SyncPhase.IDLE
        assert sync.state.failed == 1
        assert sync.state.progress == len(INCLUDED)
        assert not (sync.mirror_path / "core/os/x86_64/core.db").exists()
        assert (sync.mirror_path / "extra/os/x86_64/extra.db").exists()

    @pytest.mark.asyncio
    async def test_single_worker_fails_over(self, mirror, second_mirror, make_config, sync_factory):
        mirror.fail_files = True
        sync = await sync_factory(make_config(mirror, second_mirror))

        assert await sync.run() is SyncPhase.IDLE
        assert sync.state.failed == 0
        assert second_mirror.file_requests() == len(INCLUDED)
        for path in INCLUDED:
            assert (sync.mirror_path / path).exists()

    @pytest.mark.asyncio
    async def test_multi_mirror_round_robin_without_failover(self, mirror, second_mirror, make_config,
                                                             sync_factory):
        second_mirror.fail_files = True
        sync = await sync_factory(make_config(mirror, second_mirror, multithreading=True))

        assert await sync.run() is SyncPhase.IDLE

        assert mirror.file_requests() == len(INCLUDED[0::2])
        assert second_mirror.file_requests() == len(INCLUDED[1::2])
        assert sync.state.failed == len(INCLUDED[1::2])
        for path in INCLUDED[0::2]:
            assert (sync.mirror_path / path).exists()
        for path in INCLUDED[1::2]:
            assert not (sync.mirror_path / path).exists()
            assert mirror.requests[path] == 0

    @pytest.mark.asyncio
    async def test_multi_mirror_discovery_uses_first_mirror_only(self, mirror, second_mirror, make_config,
                                                                 sync_factory):
        sync = await sync_factory(make_config(mirror, second_mirror, multithreading=True))
        await sync.run()
        assert mirror.requests[""] == 1
        assert second_mirror.requests[""] == 0
        assert sorted(sync.state.workers) == [0, 1]

    @pytest.mark.asyncio
    async def test_unreachable_primary_ends_in_error(self, mirror, second_mirror, make_config, sync_factory):
        mirror.broken.add("")
        sync = await sync_factory(make_config(mirror, second_mirror))

        assert await sync.run() is SyncPhase.ERROR
        assert sync.state.phase is SyncPhase.ERROR
        assert second_mirror.file_requests() == 0
        assert list(sync.mirror_path.iterdir()) == []
        assert sync.state.log_entries[-1].level == "error"

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_download_finish(self, mirror, make_config, sync_factory):
        mirror.delay = 0.05
        sync = await sync_factory(make_config(mirror))

        def stop_after_first(snapshot):
            if snapshot["phase"] == "Syncing" and snapshot["workers"].get("0"):
                sync.stop()

        sync.state.subscribe(stop_after_first)
        assert await sync.run() is SyncPhase.STOPPED
        assert mirror.file_requests() == 1
        assert sync.state.progress == 1
        downloaded = [p for p in INCLUDED if (sync.mirror_path / p).exists()]
        assert len(downloaded) == 1

    @pytest.mark.asyncio
    async def test_stop_bound_with_multiple_workers(self, mirror, second_mirror, make_config, sync_factory):
        mirror.delay = second_mirror.delay = 0.05
        sync = await sync_factory(make_config(mirror, second_mirror, multithreading=True))

        def stop_on_first_completion(snapshot):
            if snapshot["progress"] >= 1:
                sync.stop()

        sync.state.subscribe(stop_on_first_completion)
        assert await sync.run() is SyncPhase.STOPPED
        assert mirror.file_requests() + second_mirror.file_requests() <= 2

    @pytest.mark.asyncio
    async def test_stop_during_scanning_skips_sync(self, mirror, make_config, sync_factory):
        sync = await sync_factory(make_config(mirror))

        def stop_when_scanning(snapshot):
            if snapshot["phase"] == "Scanning":
                sync.stop()

        sync.state.subscribe(stop_when_scanning)
        assert await sync.run() is SyncPhase.STOPPED
        assert mirror.file_requests() == 0

    @pytest.mark.asyncio
    async def test_start_is_noop_while_running(self, mirror, make_config, sync_factory):
        mirror.delay = 0.02
        sync = await sync_factory(make_config(mirror))

        assert sync.start() is True
        await asyncio.sleep(0)
        assert sync.running
        assert sync.start() is False
        await sync.wait()

        assert sync.state.phase is SyncPhase.IDLE
        assert mirror.requests[""] == 1
        assert sync.start() is True
        await sync.wait()

    @pytest.mark.asyncio
    async def test_pause_between_downloads(self, mirror, make_config, sync_factory):
        sync = await sync_factory(make_config(mirror, download_pause=0.05))
        loop = asyncio.get_running_loop()
        started = loop.time()
        await sync.run()
        assert loop.time() - started >= 0.05 * (len(INCLUDED) - 1)

    @pytest.mark.asyncio
    async def test_size_probe_projects_bytes(self, mirror, make_config, sync_factory):
        sync = await sync_factory(make_config(mirror, size_probe=True))
        await sync.run()
        assert sync.state.projected_bytes == sum(len(TREE[p]) for p in INCLUDED)
        assert sum(mirror.heads.values()) == len(INCLUDED)

    @pytest.mark.asyncio
    async def test_leftover_partial_file_is_replaced(self, mirror, make_config, sync_factory):
        sync = await sync_factory(make_config(mirror))
        path = "core/os/x86_64/linux-6.1-1-x86_64.pkg.tar.zst"
        partial = sync.mirror_path / (path + ".part")
        partial.parent.mkdir(parents=True)
        partial.write_bytes(b"half")

        await sync.run()

        assert (sync.mirror_path / path).read_bytes() == TREE[path]
        assert not partial.exists()

    @pytest.mark.asyncio
    async def test_stop_skips_queued_size_probes(self, mirror_factory, make_config, sync_factory):
        files = {f"core/os/x86_64/pkg-{i:02d}.pkg.tar.zst": b"p" * 100 for i in range(40)}
        fake = await mirror_factory(files)
        fake.delay = 0.05
        sync = await sync_factory(make_config(fake, size_probe=True, crawl_concurrency=1))

        def stop_on_first_completion(snapshot):
            if snapshot["progress"] >= 1:
                sync.stop()

        sync.state.subscribe(stop_on_first_completion)
        assert await sync.run() is SyncPhase.STOPPED
        assert fake.file_requests() == 1
        assert sum(fake.heads.values()) < 10

    @pytest.mark.asyncio
    async def test_disk_usage_reflects_mirrored_tree(self, mirror, make_config, sync_factory):
        sync = await sync_factory(make_config(mirror))
        snapshots = []
        sync.state.subscribe(snapshots.append)
        await sync.run()
        assert snapshots[-1]["diskUsage"] == sum(len(TREE[p]) for p in INCLUDED)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_lock_file_prevents_second_instance(self, mirror, make_config, sync_factory):
        config = make_config(mirror)
        await sync_factory(config)
        assert (Path(config.var_path) / LOCK_NAME).exists()

        other = MirrorSync(config, SyncState(config.mirror_path, echo=False))
        with pytest.raises(RuntimeError):
            await other.initialize()
        await other.cleanup()

    @pytest.mark.asyncio
    async def test_cleanup_releases_lock(self, mirror, make_config):
        config = make_config(mirror)
        sync = MirrorSync(config, SyncState(config.mirror_path, echo=False))
        await sync.initialize()
        assert sync.lock_file.exists()
        await sync.cleanup()
        assert not sync.lock_file.exists()

    @pytest.mark.asyncio
    async def test_run_requires_initialize(self, mirror, make_config):
        sync = MirrorSync(make_config(mirror))
        with pytest.raises(RuntimeError):
            await sync.run()
