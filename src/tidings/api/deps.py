"""FastAPI dependencies resolving the services stored on ``app.state``."""

from __future__ import annotations

from fastapi import Request

from tidings.jobs.store import JobStore
from tidings.replay import ReplayController


def get_store(request: Request) -> JobStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise RuntimeError("JobStore not initialized")
    return store


def get_replay(request: Request) -> ReplayController:
    replay = getattr(request.app.state, "replay", None)
    if replay is None:
        raise RuntimeError("ReplayController not initialized")
    return replay
