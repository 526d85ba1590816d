"""Unit tests for replay request validation and the replay controller."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pydantic
import pytest

from tidings.jobs.kinds import JobKind
from tidings.jobs.models import BatchStatus
from tidings.replay import ReplayController, ReplayPreview, ReplayRequest, ReplayStarted

pytestmark = pytest.mark.unit

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


class _AsyncCM:
    def __init__(self, value):
        self._value = value

    async def __aenter__(self):
        return self._value

    async def __aexit__(self, *args):
        return False


def _make_store(selected):
    conn = AsyncMock()
    conn.transaction = MagicMock(return_value=_AsyncCM(None))
    store = MagicMock()
    store.pool.acquire = MagicMock(return_value=_AsyncCM(conn))
    store.enqueue_many = AsyncMock(return_value=[uuid.uuid4() for _ in selected])
    store.enqueue = AsyncMock()
    return store, conn


@pytest.fixture
def window(monkeypatch):
    selected = [(uuid.uuid4(), "calendar") for _ in range(10)]
    list_in_window = AsyncMock(return_value=selected)
    monkeypatch.setattr("tidings.replay.raw_event_store.list_in_window", list_in_window)
    return selected, list_in_window


class TestReplayRequest:
    def test_defaults_and_provider_cleanup(self) -> None:
        request = ReplayRequest(user_id="u1", providers=[" Mail", "calendar", "mail"])
        assert request.providers == ["calendar", "mail"]
        assert request.days == 30
        assert request.batch_size == 200
        assert request.dry_run is False

    @pytest.mark.parametrize(
        "overrides",
        [
            {"providers": []},
            {"providers": ["  "]},
            {"days": 0},
            {"days": 366},
            {"batch_size": 0},
            {"batch_size": 1001},
            {"unexpected": True},
        ],
    )
    def test_rejects_out_of_range(self, overrides) -> None:
        values = {"user_id": "u1", "providers": ["mail"], **overrides}
        with pytest.raises(pydantic.ValidationError):
            ReplayRequest(**values)


class TestReplayController:
    async def test_dry_run_reports_without_enqueuing(self, window) -> None:
        selected, list_in_window = window
        store, conn = _make_store(selected)
        request = ReplayRequest(user_id="u1", providers=["calendar"], days=7, dry_run=True)

        result = await ReplayController(store).replay(request, now=NOW)

        assert isinstance(result, ReplayPreview)
        assert result.total == 10
        assert result.by_provider == {"calendar": 10}
        assert result.since == NOW - timedelta(days=7)
        store.enqueue_many.assert_not_awaited()
        store.enqueue.assert_not_awaited()
        conn.transaction.assert_not_called()
        assert list_in_window.call_args.kwargs["providers"] == ["calendar"]

    async def test_live_run_enqueues_normalize_jobs_under_one_batch(self, window) -> None:
        selected, list_in_window = window
        store, _ = _make_store(selected)
        request = ReplayRequest(user_id="u1", providers=["calendar"], days=7, batch_size=50)

        result = await ReplayController(store).replay(request, now=NOW)

        assert isinstance(result, ReplayStarted)
        assert result.enqueued == 10
        jobs = store.enqueue_many.call_args.args[1]
        assert {kind for kind, _ in jobs} == {JobKind.NORMALIZE}
        assert [payload["raw_event_id"] for _, payload in jobs] == [str(r) for r, _ in selected]
        assert store.enqueue_many.call_args.kwargs["batch_id"] == result.batch_id
        assert list_in_window.call_args.kwargs["limit"] == 50

    async def test_status_delegates_to_store(self) -> None:
        batch_id = uuid.uuid4()
        store = MagicMock()
        store.batch_status = AsyncMock(
            return_value=BatchStatus(batch_id, {"completed": 3, "dead": 1})
        )

        status = await ReplayController(store).status(batch_id)

        assert status.state == "completed_with_errors"
        assert status.total == 4


class TestBatchStatus:
    @pytest.mark.parametrize(
        ("counts", "state"),
        [
            ({}, "unknown"),
            ({"queued": 1, "completed": 2}, "running"),
            ({"error": 1}, "running"),
            ({"completed": 5}, "completed"),
            ({"completed": 5, "dead": 1}, "completed_with_errors"),
        ],
    )
    def test_state(self, counts, state) -> None:
        assert BatchStatus(uuid.uuid4(), counts).state == state
