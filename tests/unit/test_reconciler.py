"""Unit tests for the reconciler."""

from __future__ import annotations

import asyncio

import pytest

from mailmirror.exceptions import AuthenticationError, StorageError
from mailmirror.models import INBOX_LABEL, UNREAD_LABEL, Label, LabelType
from mailmirror.sync import Reconciler, SyncPhase, SyncStatus


def _reconciler(store, gateway, **kwargs) -> Reconciler:
    kwargs.setdefault("retry_delay", 0)
    return Reconciler(gateway, store, SyncStatus(), **kwargs)


def _inbox_ids(store) -> list[str]:
    return [m.id for m in store.query_by_label(INBOX_LABEL)]


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


class TestRunPass:
    @pytest.mark.asyncio
    async def test_first_pass_fetches_everything(self, store, fake_gateway, make_message) -> None:
        fake_gateway.add(make_message("m1"))
        fake_gateway.add(make_message("m2", label_ids=[INBOX_LABEL, "WORK"]))
        reconciler = _reconciler(store, fake_gateway)

        report = await reconciler.run_pass()

        assert report.ok
        assert report.fetched == 2
        assert _inbox_ids(store) == ["m2", "m1"]
        assert [m.id for m in store.query_by_label("WORK")] == ["m2"]
        snap = reconciler.status.snapshot()
        assert snap.phase is SyncPhase.IDLE
        assert snap.last_synced_at is not None
        assert snap.synced_labels == frozenset({INBOX_LABEL, "WORK"})

    @pytest.mark.asyncio
    async def test_second_pass_is_a_noop(self, store, fake_gateway, make_message) -> None:
        fake_gateway.add(make_message("m1"))
        reconciler = _reconciler(store, fake_gateway)
        await reconciler.run_pass()
        fake_gateway.calls.clear()

        report = await reconciler.run_pass()

        assert (report.fetched, report.linked, report.unlinked, report.read_updates) == (0, 0, 0, 0)
        assert ("get_message", "m1") not in fake_gateway.calls

    @pytest.mark.asyncio
    async def test_label_table_is_replaced(self, store, fake_gateway) -> None:
        fake_gateway.labels = fake_gateway.labels[:1]

        await _reconciler(store, fake_gateway).run_pass()

        assert [label.id for label in store.list_labels()] == [INBOX_LABEL]

    @pytest.mark.asyncio
    async def test_newer_remote_version_is_refetched(self, store, fake_gateway, make_message) -> None:
        fake_gateway.add(make_message("m1", internal_date=1_000, subject="draft"))
        reconciler = _reconciler(store, fake_gateway)
        await reconciler.run_pass()

        fake_gateway.add(make_message("m1", internal_date=2_000, subject="final"))
        report = await reconciler.run_pass()

        assert report.fetched == 1
        assert store.get_message("m1").subject == "final"

    @pytest.mark.asyncio
    async def test_missing_association_is_added_without_fetch(self, store, fake_gateway, make_message) -> None:
        message = make_message("m1", label_ids=[INBOX_LABEL, "WORK"])
        fake_gateway.add(message)
        store.upsert_messages([make_message("m1", label_ids=[INBOX_LABEL])])

        report = await _reconciler(store, fake_gateway).run_pass()

        assert report.linked == 1
        assert report.fetched == 0
        assert ("get_message", "m1") not in fake_gateway.calls
        assert store.get_message("m1").label_ids == [INBOX_LABEL, "WORK"]

    @pytest.mark.asyncio
    async def test_remote_removal_drops_association_only(self, store, fake_gateway, make_message) -> None:
        fake_gateway.add(make_message("m1", label_ids=[INBOX_LABEL, "WORK"]))
        reconciler = _reconciler(store, fake_gateway)
        await reconciler.run_pass()

        await fake_gateway.archive("m1")
        report = await reconciler.run_pass()

        assert report.unlinked == 1
        assert _inbox_ids(store) == []
        assert store.get_message("m1").label_ids == ["WORK"]

    @pytest.mark.asyncio
    async def test_complete_empty_listing_is_authoritative(self, store, make_message, fake_gateway) -> None:
        store.upsert_messages([make_message("m1")])

        await _reconciler(store, fake_gateway).run_pass()

        assert _inbox_ids(store) == []
        assert store.get_message("m1") is not None

    @pytest.mark.asyncio
    async def test_truncated_listing_prunes_nothing(self, store, fake_gateway, make_message) -> None:
        for message_id, date in (("m3", 3_000), ("m4", 4_000), ("m5", 5_000)):
            fake_gateway.add(make_message(message_id, internal_date=date))
        store.upsert_messages(
            [
                make_message("m1", internal_date=1_000),
                make_message("m6", internal_date=6_000),
            ]
        )

        report = await _reconciler(store, fake_gateway, page_size=2, label_ids=[INBOX_LABEL]).run_pass()

        assert report.fetched == 2
        assert report.unlinked == 0
        assert _inbox_ids(store) == ["m6", "m5", "m4", "m1"]

    @pytest.mark.asyncio
    async def test_timestamp_tie_at_page_boundary_keeps_association(self, store, fake_gateway, make_message) -> None:
        fake_gateway.add(make_message("m1", internal_date=2_000))
        fake_gateway.add(make_message("m2", internal_date=1_000))
        fake_gateway.add(make_message("m3", internal_date=1_000))
        store.upsert_messages([make_message("m3", internal_date=1_000)])
        reconciler = _reconciler(store, fake_gateway, page_size=2, label_ids=[INBOX_LABEL])

        await reconciler.run_pass()
        await reconciler.run_pass()

        assert "m3" in _inbox_ids(store)

    @pytest.mark.asyncio
    async def test_leaving_unread_marks_message_read(self, store, fake_gateway, make_message) -> None:
        fake_gateway.labels.append(Label(id=UNREAD_LABEL, name="UNREAD", label_type=LabelType.SYSTEM))
        fake_gateway.add(make_message("m1", label_ids=[INBOX_LABEL, UNREAD_LABEL]))
        reconciler = _reconciler(store, fake_gateway, label_ids=[UNREAD_LABEL])
        await reconciler.run_pass()
        assert [m.id for m in store.query_by_label(UNREAD_LABEL)] == ["m1"]

        await fake_gateway.mark_read("m1")
        report = await reconciler.run_pass()

        assert report.unlinked == 1
        cached = store.get_message("m1")
        assert (cached.is_read, cached.label_ids) == (True, [INBOX_LABEL])

    @pytest.mark.asyncio
    async def test_read_state_drift_updates_cache(self, store, fake_gateway, make_message) -> None:
        fake_gateway.add(make_message("m1", label_ids=[INBOX_LABEL, "UNREAD"]))
        reconciler = _reconciler(store, fake_gateway, label_ids=[INBOX_LABEL])
        await reconciler.run_pass()
        assert store.get_message("m1").is_read is False

        await fake_gateway.mark_read("m1")
        report = await reconciler.run_pass()

        assert report.read_updates == 1
        assert store.get_message("m1").is_read is True

    @pytest.mark.asyncio
    async def test_item_failure_does_not_abort_pass(self, store, fake_gateway, make_message) -> None:
        fake_gateway.add(make_message("m1"))
        fake_gateway.add(make_message("m2"))
        fake_gateway.failing_message_ids.add("m1")
        reconciler = _reconciler(store, fake_gateway)

        report = await reconciler.run_pass()

        assert not report.ok
        assert len(report.failures) == 1
        assert _inbox_ids(store) == ["m2"]
        snap = reconciler.status.snapshot()
        assert snap.phase is SyncPhase.ERROR
        assert "m1" in snap.error

    @pytest.mark.asyncio
    async def test_listing_failure_skips_label(self, store, fake_gateway, make_message) -> None:
        fake_gateway.add(make_message("m1", label_ids=["WORK"]))
        fake_gateway.failing_message_ids.add(INBOX_LABEL)

        report = await _reconciler(store, fake_gateway).run_pass()

        assert len(report.failures) == 1
        assert [m.id for m in store.query_by_label("WORK")] == ["m1"]

    @pytest.mark.asyncio
    async def test_storage_errors_are_retried(self, store, fake_gateway, make_message, monkeypatch) -> None:
        fake_gateway.add(make_message("m1"))
        original = store.upsert_messages
        attempts = []

        def flaky(messages, context_label_id=None):
            attempts.append(1)
            if len(attempts) == 1:
                raise StorageError("database is locked")
            return original(messages, context_label_id)

        monkeypatch.setattr(store, "upsert_messages", flaky)

        report = await _reconciler(store, fake_gateway, label_ids=[INBOX_LABEL]).run_pass()

        assert report.ok
        assert len(attempts) == 2
        assert _inbox_ids(store) == ["m1"]

    @pytest.mark.asyncio
    async def test_authentication_failure_raises(self, store, fake_gateway) -> None:
        fake_gateway.auth_failure = True
        reconciler = _reconciler(store, fake_gateway)

        with pytest.raises(AuthenticationError):
            await reconciler.run_pass()

        assert reconciler.status.snapshot().phase is SyncPhase.ERROR

    @pytest.mark.asyncio
    async def test_on_change_reports_changed_labels(self, store, fake_gateway, make_message) -> None:
        fake_gateway.add(make_message("m1", label_ids=["WORK"]))
        changed: list[str] = []
        reconciler = _reconciler(store, fake_gateway, on_change=changed.append)

        await reconciler.run_pass()
        await reconciler.run_pass()

        assert changed == ["WORK"]

    @pytest.mark.asyncio
    async def test_prioritized_label_syncs_first(self, store, fake_gateway) -> None:
        reconciler = _reconciler(store, fake_gateway)

        reconciler.prioritize("WORK")
        await reconciler.run_pass()
        await reconciler.run_pass()

        listed = [label for op, label in fake_gateway.calls if op == "list_message_refs"]
        assert listed == ["WORK", INBOX_LABEL, INBOX_LABEL, "WORK"]


class TestBackgroundLoop:
    @pytest.mark.asyncio
    async def test_request_sync_triggers_a_pass(self, store, fake_gateway, make_message) -> None:
        reconciler = _reconciler(store, fake_gateway, interval_seconds=60)
        reconciler.start()
        await _wait_for(lambda: reconciler.status.snapshot().last_synced_at is not None)

        fake_gateway.add(make_message("m1"))
        reconciler.request_sync()
        await _wait_for(lambda: store.get_message("m1") is not None)

        await reconciler.stop()

    @pytest.mark.asyncio
    async def test_loop_stops_on_authentication_failure(self, store, fake_gateway) -> None:
        fake_gateway.auth_failure = True
        reconciler = _reconciler(store, fake_gateway, interval_seconds=0.01)

        task = reconciler.start()

        with pytest.raises(AuthenticationError):
            await task
        assert reconciler.status.snapshot().phase is SyncPhase.ERROR
        await reconciler.stop()
