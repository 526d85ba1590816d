"""Tests for the CLI commands."""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime

import pytest
from click.testing import CliRunner

from tidings.cli import cli
from tidings.config import CONFIG_ENV_VAR
from tidings.jobs.models import BatchStatus
from tidings.replay import ReplayPreview

pytestmark = pytest.mark.unit


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def _no_ambient_config(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)


@pytest.fixture
def fake_pool(monkeypatch):
    """Replace the database round trip with a canned result."""
    calls = []

    def install(result):
        async def _with_pool(config, fn):
            calls.append(config)
            return result

        monkeypatch.setattr("tidings.cli._with_pool", _with_pool)
        return calls

    return install


class TestVersion:
    def test_version_flag(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestConfigOption:
    def test_missing_config_file_exits_2(self, runner, tmp_path):
        result = runner.invoke(
            cli, ["--config", str(tmp_path / "nope.toml"), "jobs", "stats"]
        )
        assert result.exit_code == 2
        assert "Configuration error" in result.output

    def test_config_file_is_used(self, runner, tmp_path, fake_pool):
        path = tmp_path / "custom.toml"
        path.write_text('[worker]\nworker_id = "from-file"\n')
        calls = fake_pool({"by_status": {}, "by_kind": {}})

        result = runner.invoke(cli, ["--config", str(path), "jobs", "stats"])

        assert result.exit_code == 0, result.output
        assert calls[0].worker.worker_id == "from-file"


class TestReplayCommand:
    def test_dry_run_prints_preview(self, runner, fake_pool):
        fake_pool(
            ReplayPreview(
                total=10, by_provider={"calendar": 10}, since=datetime(2026, 3, 8, tzinfo=UTC)
            )
        )

        result = runner.invoke(
            cli,
            ["replay", "--user", "u1", "--provider", "calendar", "--days", "7", "--dry-run"],
        )

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["dry_run"] is True
        assert data["total"] == 10

    def test_invalid_days_exits_2(self, runner, fake_pool):
        calls = fake_pool(None)

        result = runner.invoke(
            cli, ["replay", "--user", "u1", "--provider", "mail", "--days", "0"]
        )

        assert result.exit_code == 2
        assert "Invalid replay request" in result.output
        assert calls == []

    def test_provider_is_required(self, runner):
        result = runner.invoke(cli, ["replay", "--user", "u1"])
        assert result.exit_code == 2


def test_replay_status_prints_state(runner, fake_pool):
    batch_id = uuid.uuid4()
    fake_pool(BatchStatus(batch_id, {"queued": 1, "completed": 2}))

    result = runner.invoke(cli, ["replay-status", str(batch_id)])

    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data["state"] == "running"
    assert data["total"] == 3


class TestJobsCommands:
    def test_stats(self, runner, fake_pool):
        fake_pool({"by_status": {"dead": 2}, "by_kind": {"sync": 2}})

        result = runner.invoke(cli, ["jobs", "stats"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == {"by_kind": {"sync": 2}, "by_status": {"dead": 2}}

    def test_cleanup_defaults_to_retention(self, runner, fake_pool):
        fake_pool(4)

        result = runner.invoke(cli, ["jobs", "cleanup"])

        assert result.exit_code == 0, result.output
        assert "Removed 4 job(s) older than 30 day(s)" in result.output


class TestSyncCommand:
    @pytest.fixture
    def recorded(self, monkeypatch):
        enqueued = []

        class _Store:
            def __init__(self, pool):
                pass

            async def enqueue(self, kind, payload, user_id, batch_id=None, *, conn=None):
                enqueued.append((str(kind), payload, user_id))
                return uuid.UUID(int=len(enqueued))

        async def _with_pool(config, fn):
            return await fn(object())

        monkeypatch.setattr("tidings.cli.JobStore", _Store)
        monkeypatch.setattr("tidings.cli._with_pool", _with_pool)
        return enqueued

    def test_enqueues_one_job_per_provider(self, runner, recorded):
        result = runner.invoke(
            cli,
            [
                "sync",
                "--user", "u1",
                "--provider", "mail",
                "--provider", "calendar",
                "--provider", "mail",
                "--filter", "label=INBOX",
            ],
        )

        assert result.exit_code == 0, result.output
        assert recorded == [
            ("sync", {"provider": "mail", "filters": {"label": "INBOX"}}, "u1"),
            ("sync", {"provider": "calendar", "filters": {"label": "INBOX"}}, "u1"),
        ]
        data = json.loads(result.output)
        assert data == {
            "mail": str(uuid.UUID(int=1)),
            "calendar": str(uuid.UUID(int=2)),
        }

    def test_malformed_filter_exits_2(self, runner, recorded):
        result = runner.invoke(
            cli, ["sync", "--user", "u1", "--provider", "mail", "--filter", "INBOX"]
        )

        assert result.exit_code == 2
        assert "key=value" in result.output
        assert recorded == []
