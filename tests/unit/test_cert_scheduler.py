"""
Unit tests for the certificate scheduler.

The change notifier is replaced by a queue-fed fake; storage.reconcile
is an AsyncMock recording the groups it was called with.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from watchfiles import Change

from core.cert_scheduler import CertScheduler, SchedulerEvent, SchedulerEventKind
from core.change_notifier import ChangeEvent, ChangeKind, ChangeNotifier, WatchError
from core.reconciler import ReconcileError
from models.certificate import CertificateSource, DomainGroup, ReconcileResult


def fake_awatch(batches):
    """Stand-in for watchfiles.awatch yielding the given change batches."""

    async def _awatch(path, stop_event=None, recursive=True):
        for batch in batches:
            yield batch

    return _awatch


class FakeNotifier:
    instances: list["FakeNotifier"] = []

    def __init__(self, path, stop_event=None):
        self.path = path
        self.queue: asyncio.Queue = asyncio.Queue()
        FakeNotifier.instances.append(self)

    def emit(self, kind: ChangeKind = ChangeKind.WRITE) -> None:
        self.queue.put_nowait(ChangeEvent(path=self.path, kind=kind))

    def __aiter__(self):
        return self

    async def __anext__(self):
        return await self.queue.get()


async def wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def reconciled_roots(storage) -> list[str]:
    return [call.args[0].root for call in storage.reconcile.call_args_list]


@pytest.fixture
def storage():
    storage = MagicMock()
    storage.reconcile = AsyncMock(
        side_effect=lambda group: ReconcileResult(domain_root=group.root, source=CertificateSource.CACHED)
    )
    return storage


@pytest.fixture
def domains_file(tmp_path):
    path = tmp_path / "domains.json"
    path.write_text(json.dumps({"domains": [["a.com", "www.a.com"]]}))
    return path


@pytest.fixture
def scheduler(storage, domains_file):
    FakeNotifier.instances.clear()
    return CertScheduler(
        storage,
        domains_file,
        [DomainGroup.of("a.com", "www.a.com")],
        settle_delay=0,
        notifier_factory=FakeNotifier,
    )


class TestRunPass:
    @pytest.mark.asyncio
    async def test_groups_reconciled_in_order(self, storage, domains_file):
        groups = [DomainGroup.of("a.com"), DomainGroup.of("b.com"), DomainGroup.of("c.com")]
        scheduler = CertScheduler(storage, domains_file, groups, settle_delay=0, notifier_factory=FakeNotifier)

        results = await scheduler.run_pass("test")

        assert reconciled_roots(storage) == ["a.com", "b.com", "c.com"]
        assert [result.domain_root for result in results] == ["a.com", "b.com", "c.com"]

    @pytest.mark.asyncio
    async def test_group_failure_does_not_stop_pass(self, storage, domains_file):
        def reconcile(group):
            if group.root == "a.com":
                raise ReconcileError("disk full", domain="a.com", step="publish")
            if group.root == "b.com":
                raise RuntimeError("unexpected")
            return ReconcileResult(domain_root=group.root, source=CertificateSource.RENEWED, renewed=True)

        storage.reconcile = AsyncMock(side_effect=reconcile)
        groups = [DomainGroup.of("a.com"), DomainGroup.of("b.com"), DomainGroup.of("c.com")]
        scheduler = CertScheduler(storage, domains_file, groups, settle_delay=0, notifier_factory=FakeNotifier)

        results = await scheduler.run_pass("test")

        assert [result.domain_root for result in results] == ["c.com"]
        assert reconciled_roots(storage) == ["a.com", "b.com", "c.com"]


class TestConfigReload:
    @pytest.mark.asyncio
    async def test_change_event_reloads_and_reconciles(self, scheduler, storage, domains_file):
        domains_file.write_text(json.dumps({"domains": [["a.com"], ["b.com", "www.b.com"]]}))

        await scheduler.handle_event(SchedulerEvent(SchedulerEventKind.CHANGE))

        assert [group.domains for group in scheduler.groups] == [("a.com",), ("b.com", "www.b.com")]
        assert reconciled_roots(storage) == ["a.com", "b.com"]

    @pytest.mark.asyncio
    async def test_malformed_reload_keeps_groups(self, scheduler, storage, domains_file):
        domains_file.write_text("{not json")

        await scheduler.handle_event(SchedulerEvent(SchedulerEventKind.CHANGE))

        assert [group.root for group in scheduler.groups] == ["a.com"]
        storage.reconcile.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_group_keeps_groups(self, scheduler, storage, domains_file):
        domains_file.write_text(json.dumps({"domains": [["a.com", "a.com"]]}))

        assert await scheduler.reload_domains() is False
        assert [group.domains for group in scheduler.groups] == [("a.com", "www.a.com")]

    @pytest.mark.asyncio
    async def test_timer_event_uses_known_groups(self, scheduler, storage):
        await scheduler.handle_event(SchedulerEvent(SchedulerEventKind.TIMER))
        assert reconciled_roots(storage) == ["a.com"]


class TestRun:
    @pytest.mark.asyncio
    async def test_startup_change_and_stop(self, scheduler, storage, domains_file):
        task = asyncio.create_task(scheduler.run())
        await wait_for(lambda: storage.reconcile.await_count == 1)
        await wait_for(lambda: scheduler.scheduler is not None and scheduler.scheduler.running)

        domains_file.write_text(json.dumps({"domains": [["a.com"], ["b.com"]]}))
        FakeNotifier.instances[0].emit()
        await wait_for(lambda: storage.reconcile.await_count == 3)

        scheduler.stop()
        await asyncio.wait_for(task, timeout=2)

        assert reconciled_roots(storage) == ["a.com", "a.com", "b.com"]
        assert not scheduler.scheduler.running

    @pytest.mark.asyncio
    async def test_interval_job_registered(self, scheduler, storage):
        task = asyncio.create_task(scheduler.run())
        await wait_for(lambda: scheduler.scheduler is not None and scheduler.scheduler.running)

        jobs = scheduler.get_next_run_times()
        assert jobs["cert_reconcile_interval"]["next_run"] is not None

        scheduler.stop()
        await asyncio.wait_for(task, timeout=2)

    @pytest.mark.asyncio
    async def test_trigger_pass(self, scheduler, storage):
        task = asyncio.create_task(scheduler.run())
        await wait_for(lambda: storage.reconcile.await_count == 1)

        scheduler.trigger_pass()
        await wait_for(lambda: storage.reconcile.await_count == 2)

        scheduler.stop()
        await asyncio.wait_for(task, timeout=2)

    @pytest.mark.asyncio
    async def test_watch_error_is_fatal(self, storage, domains_file):
        def failing_factory(path, stop_event=None):
            raise WatchError("cannot watch", path=path)

        scheduler = CertScheduler(storage, domains_file, [DomainGroup.of("a.com")], notifier_factory=failing_factory)

        with pytest.raises(WatchError):
            await scheduler.run()
        storage.reconcile.assert_not_called()


class TestChangeNotifier:
    def test_missing_file(self, tmp_path):
        with pytest.raises(WatchError):
            ChangeNotifier(tmp_path / "domains.json")

    def test_missing_directory(self, tmp_path):
        with pytest.raises(WatchError):
            ChangeNotifier(tmp_path / "missing" / "domains.json")

    def test_resolves_path(self, domains_file):
        assert ChangeNotifier(domains_file).path == domains_file.resolve()

    @pytest.mark.asyncio
    async def test_events_filter_batches(self, domains_file, monkeypatch):
        sibling = domains_file.parent / "app.json"
        batches = [
            {(Change.modified, str(domains_file))},
            {(Change.modified, str(sibling)), (Change.deleted, str(domains_file))},
            {(Change.added, str(domains_file.parent / "sub" / ".." / domains_file.name))},
        ]
        monkeypatch.setattr("core.change_notifier.awatch", fake_awatch(batches))

        events = [event async for event in ChangeNotifier(domains_file)]

        assert [event.kind for event in events] == [ChangeKind.WRITE, ChangeKind.CREATE]
        assert all(event.path == domains_file.resolve() for event in events)

    @pytest.mark.asyncio
    async def test_one_event_per_batch(self, domains_file, monkeypatch):
        # a save by rename reports the file as both added and modified
        batches = [{(Change.added, str(domains_file)), (Change.modified, str(domains_file))}]
        monkeypatch.setattr("core.change_notifier.awatch", fake_awatch(batches))

        events = [event async for event in ChangeNotifier(domains_file)]

        assert events == [ChangeEvent(path=domains_file.resolve(), kind=ChangeKind.CREATE)]

    @pytest.mark.asyncio
    async def test_watches_parent_directory(self, domains_file, monkeypatch):
        calls = []

        async def recording_awatch(path, stop_event=None, recursive=True):
            calls.append((path, stop_event, recursive))
            return
            yield

        monkeypatch.setattr("core.change_notifier.awatch", recording_awatch)
        stop = asyncio.Event()

        events = [event async for event in ChangeNotifier(domains_file, stop_event=stop)]

        assert events == []
        assert calls == [(domains_file.resolve().parent, stop, False)]
