"""Root conftest: shared Postgres fixtures for DB-backed tests.

The container is started once per session; every ``provisioned_postgres_pool``
usage creates a fresh database with a random name and runs the migrations on
it, so rows never leak between tests.
"""

from __future__ import annotations

import logging
import shutil
import time
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING, Any

import pytest

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None
logger = logging.getLogger(__name__)

# pgvector ships the ``vector`` extension the embeddings table needs
POSTGRES_IMAGE = "pgvector/pgvector:pg16"

_TESTCONTAINER_STOP_RETRY_ATTEMPTS = 4
_TESTCONTAINER_STOP_BASE_DELAY_SECONDS = 0.1
_TRANSIENT_DOCKER_TEARDOWN_ERROR_MARKERS = (
    "did not receive an exit event",
    "tried to kill container",
    "no such container",
    "removal of container",
    "is already in progress",
    "is dead or marked for removal",
)


def _is_transient_testcontainer_teardown_error(exc: BaseException) -> bool:
    """True for known transient Docker API teardown races from force-remove."""
    message = str(getattr(exc, "explanation", "") or exc).lower()
    return any(marker in message for marker in _TRANSIENT_DOCKER_TEARDOWN_ERROR_MARKERS)


def _retry_testcontainer_stop(
    stop_call: Callable[[], None],
    *,
    max_attempts: int = _TESTCONTAINER_STOP_RETRY_ATTEMPTS,
    base_delay_seconds: float = _TESTCONTAINER_STOP_BASE_DELAY_SECONDS,
) -> None:
    """Retry transient Docker teardown races with bounded backoff."""
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    delay = base_delay_seconds
    for attempt in range(1, max_attempts + 1):
        try:
            stop_call()
            return
        except Exception as exc:
            if attempt >= max_attempts or not _is_transient_testcontainer_teardown_error(exc):
                raise
            logger.warning(
                "Transient Docker API teardown race (attempt %s/%s): %s",
                attempt,
                max_attempts,
                exc,
            )
            time.sleep(delay)
            delay *= 2


def _patch_testcontainers_stop_with_retry() -> None:
    """Patch testcontainers stop() to tolerate transient Docker daemon races."""
    try:
        from testcontainers.core.container import DockerContainer
    except ImportError:
        return

    if getattr(DockerContainer.stop, "_tidings_retry_patch", False):
        return

    original_stop = DockerContainer.stop

    def _stop_with_retry(self: Any, force: bool = True, delete_volume: bool = True) -> None:
        _retry_testcontainer_stop(
            lambda: original_stop(self, force=force, delete_volume=delete_volume)
        )

    _stop_with_retry._tidings_retry_patch = True  # type: ignore[attr-defined]
    DockerContainer.stop = _stop_with_retry


_patch_testcontainers_stop_with_retry()


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session."""
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer(POSTGRES_IMAGE) as pg:
        yield pg


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Create a fresh, migrated database and asyncpg pool for a single test usage.

    Tests should use this as:
        async with provisioned_postgres_pool() as pool:
            ...
    """
    from tidings.db import Database
    from tidings.migrations import run_migrations

    @asynccontextmanager
    async def _provision(
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 4,
    ) -> AsyncIterator[Pool]:
        db = Database(
            db_name=_unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        await run_migrations(db.url, chain="core")
        pool = await db.connect()
        try:
            yield pool
        finally:
            await db.close()

    return _provision


# ---------------------------------------------------------------------------
# Capability fakes shared by unit and integration tests
# ---------------------------------------------------------------------------


class FakeEmbedder:
    """Deterministic stand-in for the sentence-transformers embedder.

    Vectors are derived from the sha256 of the text, so equal texts get equal
    vectors, and every call is recorded in ``calls``.
    """

    dimension = 384

    def __init__(self, *, fail: Exception | None = None) -> None:
        self.calls: list[list[str]] = []
        self.fail = fail

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        import hashlib

        self.calls.append(list(texts))
        if self.fail is not None:
            raise self.fail
        vectors = []
        for text in texts:
            digest = hashlib.sha256(text.encode("utf-8")).digest()
            vectors.append([digest[i % len(digest)] / 255.0 for i in range(self.dimension)])
        return vectors


class FakeInsightCapability:
    """Records every generation request and returns a canned insight."""

    def __init__(
        self,
        *,
        model: str = "fake-model",
        title: str = "Relationship summary",
        fail: Exception | None = None,
    ) -> None:
        self._model = model
        self.title = title
        self.fail = fail
        self.contexts: list[Any] = []

    @property
    def model(self) -> str:
        return self._model

    async def generate(self, context: Any) -> Any:
        from tidings.insights.capability import GeneratedInsight

        self.contexts.append(context)
        if self.fail is not None:
            raise self.fail
        return GeneratedInsight(
            title=self.title,
            body={"summary": f"{len(context.interactions)} interaction(s)", "highlights": []},
        )


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def fake_insight_capability() -> FakeInsightCapability:
    return FakeInsightCapability()
