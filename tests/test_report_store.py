"""
Tests para ReportStore
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from cr_mobile.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from cr_mobile.persistence.db import build_engine, build_session_factory, init_database
from cr_mobile.persistence.models import Base, ReportState, utcnow
from cr_mobile.services.report_store import ReportQuery, ReportStore


@pytest.fixture
def store(session_factory):
    return ReportStore(session_factory)


def _drive_to(store, report_id, *states):
    record = None
    for state in states:
        record = store.update_state(report_id, state)
    return record


class TestAppend:
    def test_append_persists_pending(self, store):
        report_id = store.append({"exception": {"type": "KeyError"}}, session_id="s-1")

        record = store.get(report_id)
        assert record.state is ReportState.PENDING
        assert record.attempts == 0
        assert record.session_id == "s-1"
        assert record.payload == {"exception": {"type": "KeyError"}}

    def test_report_survives_process_restart(self, db_path, store):
        """Un reporte confirmado se recupera con un engine nuevo sobre el mismo archivo."""
        report_id = store.append({"crash": 1})

        engine = create_engine(f"sqlite:///{db_path}")
        try:
            reopened = ReportStore(sessionmaker(bind=engine))
            pending = list(reopened.list_by_state(ReportState.PENDING))
        finally:
            engine.dispose()

        assert [r.id for r in pending] == [report_id]

    def test_non_serializable_payload(self, store):
        with pytest.raises(ValidationError):
            store.append({"obj": object()})

    def test_storage_unavailable(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'missing' / 'dir' / 'x.db'}")
        store = ReportStore(sessionmaker(bind=engine))

        with pytest.raises(StorageError):
            store.append({"crash": 1})

    def test_identical_payloads_create_new_reports(self, store):
        first = store.append({"crash": 1})
        second = store.append({"crash": 1})

        assert first != second

    def test_deduplicate_by_content(self, session_factory):
        store = ReportStore(session_factory, deduplicate=True)
        first = store.append({"b": 2, "a": 1})
        _drive_to(store, first, ReportState.APPROVED, ReportState.SENDING, ReportState.FAILED)

        second = store.append({"a": 1, "b": 2})

        assert second == first
        assert store.get(first).attempts == 1
        assert store.count_by_state() == {ReportState.FAILED: 1}

    def test_deduplicate_ignores_capture_time(self, session_factory):
        store = ReportStore(session_factory, deduplicate=True)
        fault = {"exception": {"type": "KeyError"}, "stacktrace": "line 1"}
        first = store.append({**fault, "capturedAt": "2026-01-01T00:00:00Z", "thread": "main"})

        second = store.append({**fault, "capturedAt": "2026-01-01T00:05:00Z", "thread": "worker"})

        assert second == first

    def test_deduplicate_skips_abandoned_reports(self, session_factory):
        store = ReportStore(session_factory, deduplicate=True)
        first = store.append({"crash": 1})
        _drive_to(store, first, ReportState.APPROVED, ReportState.SENDING)
        store.update_state(first, ReportState.FAILED, gave_up=True)

        second = store.append({"crash": 1})

        assert second != first
        assert store.get(second).state is ReportState.PENDING

    def test_payload_is_write_once(self, store):
        report_id = store.append({"frames": ["a", "b"]})

        record = store.get(report_id)
        record.payload["frames"].append("c")

        assert store.get(report_id).payload == {"frames": ["a", "b"]}


class TestListByState:
    def test_oldest_first_across_pages(self, store):
        ids = [store.append({"n": i}) for i in range(7)]

        query = ReportQuery(store, ReportState.PENDING, page_size=3)

        assert [r.id for r in query] == ids

    def test_sequence_is_restartable(self, store):
        first = store.append({"n": 1})
        query = store.list_by_state(ReportState.PENDING)
        assert [r.id for r in query] == [first]

        second = store.append({"n": 2})
        store.update_state(first, ReportState.DISCARDED)

        assert [r.id for r in query] == [second]

    def test_filters_by_state(self, store):
        pending = store.append({"n": 1})
        approved = store.append({"n": 2})
        store.update_state(approved, ReportState.APPROVED)

        assert [r.id for r in store.list_by_state(ReportState.PENDING)] == [pending]
        assert [r.id for r in store.list_by_state(ReportState.APPROVED)] == [approved]
        assert store.list_by_state(ReportState.APPROVED).count() == 1


class TestUpdateState:
    def test_unknown_id(self, store):
        with pytest.raises(NotFoundError):
            store.update_state("nope", ReportState.APPROVED)

    @pytest.mark.parametrize(
        "path, target",
        [
            ((), ReportState.SENT),
            ((), ReportState.SENDING),
            ((ReportState.AWAITING_CONSENT,), ReportState.PENDING),
            ((ReportState.AWAITING_CONSENT,), ReportState.SENDING),
            ((ReportState.APPROVED,), ReportState.AWAITING_CONSENT),
            ((ReportState.APPROVED, ReportState.SENDING, ReportState.SENT), ReportState.SENDING),
            ((ReportState.DISCARDED,), ReportState.APPROVED),
        ],
    )
    def test_invalid_transitions(self, store, path, target):
        report_id = store.append({"crash": 1})
        _drive_to(store, report_id, *path)

        with pytest.raises(InvalidTransitionError):
            store.update_state(report_id, target)

    def test_failed_delivery_counts_attempt(self, store):
        report_id = store.append({"crash": 1})
        _drive_to(store, report_id, ReportState.AWAITING_CONSENT, ReportState.APPROVED, ReportState.SENDING)

        record = store.update_state(report_id, ReportState.FAILED, error="timeout")

        assert record.attempts == 1
        assert record.last_error == "timeout"
        assert record.is_retryable

        record = _drive_to(store, report_id, ReportState.SENDING, ReportState.FAILED)
        assert record.attempts == 2

    def test_abandoned_report_is_not_retried(self, store):
        report_id = store.append({"crash": 1})
        _drive_to(store, report_id, ReportState.APPROVED, ReportState.SENDING)
        record = store.update_state(report_id, ReportState.FAILED, gave_up=True)

        assert record.is_terminal
        with pytest.raises(InvalidTransitionError):
            store.update_state(report_id, ReportState.SENDING)

        store.update_state(report_id, ReportState.DISCARDED)
        store.remove(report_id)
        assert store.count_by_state() == {}

    def test_mark_abandoned_requires_failed(self, store):
        report_id = store.append({"crash": 1})

        with pytest.raises(InvalidTransitionError):
            store.mark_abandoned(report_id)


class TestRemove:
    def test_remove_sent(self, store):
        report_id = store.append({"crash": 1})
        _drive_to(store, report_id, ReportState.APPROVED, ReportState.SENDING, ReportState.SENT)

        store.remove(report_id)

        with pytest.raises(NotFoundError):
            store.get(report_id)

    @pytest.mark.parametrize(
        "path",
        [
            (),
            (ReportState.APPROVED,),
            (ReportState.APPROVED, ReportState.SENDING),
            (ReportState.APPROVED, ReportState.SENDING, ReportState.FAILED),
        ],
    )
    def test_remove_rejects_live_reports(self, store, path):
        report_id = store.append({"crash": 1})
        _drive_to(store, report_id, *path)

        with pytest.raises(InvalidTransitionError):
            store.remove(report_id)


class TestReconcile:
    def test_interrupted_sending_becomes_retryable(self, store):
        report_id = store.append({"crash": 1})
        untouched = store.append({"crash": 2})
        _drive_to(store, report_id, ReportState.APPROVED, ReportState.SENDING)

        reconciled = store.reconcile_interrupted()

        assert reconciled == [report_id]
        record = store.get(report_id)
        assert record.state is ReportState.FAILED
        assert record.attempts == 1
        assert record.is_retryable
        assert store.get(untouched).state is ReportState.PENDING


class TestModels:
    def test_create_all_is_idempotent(self, temp_db):
        Base.metadata.create_all(temp_db)
        Base.metadata.create_all(temp_db)
        assert "error_reports" in Base.metadata.tables
        assert "reporter_state" in Base.metadata.tables

    def test_timestamps_are_utc(self, store):
        report_id = store.append({"crash": 1})

        created_at = store.get(report_id).created_at
        now = datetime.now(timezone.utc).replace(tzinfo=None)

        assert utcnow().tzinfo is None
        assert abs(now - created_at) < timedelta(minutes=1)


class TestFinalize:
    def test_sent_is_removed_in_same_transaction(self, store):
        report_id = store.append({"crash": 1})
        _drive_to(store, report_id, ReportState.APPROVED, ReportState.SENDING)

        record = store.finalize(report_id, ReportState.SENT)

        assert record.state is ReportState.SENT
        with pytest.raises(NotFoundError):
            store.get(report_id)

    def test_invalid_final_transition_keeps_report(self, store):
        report_id = store.append({"crash": 1})
        store.update_state(report_id, ReportState.APPROVED)

        with pytest.raises(InvalidTransitionError):
            store.finalize(report_id, ReportState.SENT)
        with pytest.raises(InvalidTransitionError):
            store.finalize(report_id, ReportState.FAILED)

        assert store.get(report_id).state is ReportState.APPROVED

    def test_purge_settled_removes_leftovers(self, store):
        sent = store.append({"crash": 1})
        _drive_to(store, sent, ReportState.APPROVED, ReportState.SENDING, ReportState.SENT)
        discarded = store.append({"crash": 2})
        store.update_state(discarded, ReportState.DISCARDED)
        live = store.append({"crash": 3})

        assert sorted(store.purge_settled()) == sorted([sent, discarded])
        assert store.count_by_state() == {ReportState.PENDING: 1}
        assert store.get(live).state is ReportState.PENDING


class TestConcurrentAccess:
    def test_reads_from_other_thread_do_not_lose_appends(self, settings):
        """Un append confirmado sobrevive aunque otro hilo lea el store a la vez."""
        engine = init_database(build_engine(settings))
        store = ReportStore(build_session_factory(engine))
        stop = threading.Event()
        reader_errors = []

        def reader():
            while not stop.is_set():
                try:
                    store.count_by_state()
                    list(store.list_by_state(ReportState.PENDING))
                except Exception as e:
                    reader_errors.append(e)

        thread = threading.Thread(target=reader)
        thread.start()
        try:
            ids = [store.append({"n": i}) for i in range(200)]
        finally:
            stop.set()
            thread.join()
            engine.dispose()

        fresh = create_engine(f"sqlite:///{settings.DB_PATH}")
        try:
            reopened = ReportStore(sessionmaker(bind=fresh))
            stored = [r.id for r in reopened.list_by_state(ReportState.PENDING)]
        finally:
            fresh.dispose()

        assert reader_errors == []
        assert stored == ids
