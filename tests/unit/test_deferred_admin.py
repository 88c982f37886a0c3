"""Unit tests for the deferred admin command."""

import subprocess
import sys
import uuid
from datetime import datetime
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from backend.app.config import Settings
from backend.app.db.inmemory import InMemoryDeferredRequestStore
from backend.app.db.repositories import DeferredRequestRecord
from backend.app.deferred.errors import StoreUnavailableError
from backend.app.deferred.service import build_deferred_services
from backend.app.models.common import Priority
from backend.app.models.deferred import DeferredTask
from scripts.deferred_admin import build_parser, main, run, work


REPO_ROOT = Path(__file__).resolve().parents[2]


class UnreachableStore(InMemoryDeferredRequestStore):
    """Store whose claim fails as if the database went away."""

    async def begin_attempt(
        self, request_id: uuid.UUID, expected_attempts: int, now: datetime
    ) -> DeferredRequestRecord | None:
        raise StoreUnavailableError("connection refused")


def test_parser_defaults() -> None:
    parser = build_parser()

    cleanup = parser.parse_args(["cleanup", "--dry-run"])
    assert cleanup.command == "cleanup"
    assert cleanup.days is None
    assert cleanup.dry_run is True

    work = parser.parse_args(["work", "--lanes", "high"])
    assert work.lanes == "high"


def test_parser_requires_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


@pytest.mark.asyncio
async def test_status_prints_lanes_and_counts(
    settings: Settings, capsys: pytest.CaptureFixture[str]
) -> None:
    await run(build_parser().parse_args(["status"]), settings)

    out = capsys.readouterr().out
    assert "deferred-high" in out
    assert "pending" in out


@pytest.mark.asyncio
async def test_cleanup_dry_run_on_empty_store(
    settings: Settings, capsys: pytest.CaptureFixture[str]
) -> None:
    await run(build_parser().parse_args(["cleanup", "--days", "7", "--dry-run"]), settings)

    assert "Would delete 0" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_work_raises_when_a_consumer_dies(settings: Settings) -> None:
    settings = settings.model_copy(
        update={"deferred_lane_concurrency": {"high": 1, "default": 0, "low": 0}}
    )
    services = build_deferred_services(settings, replayer=AsyncMock(), store=UnreachableStore())
    await services.queue.put(
        DeferredTask(
            request_id=uuid.uuid4(),
            org_id=uuid.uuid4(),
            user_id=uuid.uuid4(),
            priority=Priority.high,
            timeout_seconds=30,
        )
    )

    with pytest.raises(StoreUnavailableError):
        await work(services, [Priority.high])

    assert not services.pool.running


def test_main_exits_non_zero_on_store_outage(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(
        "scripts.deferred_admin.run", AsyncMock(side_effect=StoreUnavailableError("down"))
    )

    assert main(["work"]) == 1
    assert "down" in capsys.readouterr().err


def test_importing_the_command_does_not_build_the_server_app() -> None:
    code = (
        "import sys, scripts.deferred_admin; "
        "sys.exit('backend.app.main' in sys.modules)"
    )

    result = subprocess.run(
        [sys.executable, "-c", code], capture_output=True, text=True, cwd=REPO_ROOT
    )

    assert result.returncode == 0, result.stderr
