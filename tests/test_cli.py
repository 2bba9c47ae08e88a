"""Tests for the oncely CLI.

Tests cover:
1. reap: one sweep against a SQLite database, JSON counts
2. inspect: record found (exit 0), not found / invalid key (exit 2)
3. migrate: missing admin URL fails closed (exit 2)
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from oncely.cli import main
from oncely.idempotency.keys import IdempotencyKey
from oncely.idempotency.sqlite_store import SqliteIdempotencyStore


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    """SQLite database with one expired claim, one expired and one live record."""
    path = str(tmp_path / "idem.sqlite3")
    store = SqliteIdempotencyStore(db_path=path)
    long_ago = datetime.now(UTC) - timedelta(hours=2)

    crashed = IdempotencyKey("payments", "crashed")
    store.try_claim(crashed, "owner-1", timedelta(minutes=1), long_ago)

    old = IdempotencyKey("payments", "old")
    store.try_claim(old, "owner-2", timedelta(minutes=1), long_ago)
    store.complete(old, "owner-2", b'"txn-0"', timedelta(minutes=5), long_ago)

    fresh = IdempotencyKey("payments", "abc123")
    now = datetime.now(UTC)
    store.try_claim(fresh, "owner-3", timedelta(minutes=1), now)
    store.complete(fresh, "owner-3", b'"txn-1"', timedelta(hours=1), now)

    store.close()
    return path


class TestCliReap:
    def test_reap_reports_counts(self, db_path: str, capsys: pytest.CaptureFixture[str]) -> None:
        exit_code = main(["--db-path", db_path, "reap"])
        output = json.loads(capsys.readouterr().out)

        assert exit_code == 0
        assert output == {"backend": "sqlite", "expired_leases": 1, "expired_records": 1}

    def test_second_reap_finds_nothing(
        self, db_path: str, capsys: pytest.CaptureFixture[str]
    ) -> None:
        main(["--db-path", db_path, "reap"])
        capsys.readouterr()

        exit_code = main(["--db-path", db_path, "reap"])
        output = json.loads(capsys.readouterr().out)

        assert exit_code == 0
        assert output["expired_leases"] == 0
        assert output["expired_records"] == 0


class TestCliInspect:
    def test_inspect_existing_record(
        self, db_path: str, capsys: pytest.CaptureFixture[str]
    ) -> None:
        exit_code = main(
            ["--db-path", db_path, "inspect", "--scope", "payments", "--token", "abc123"]
        )
        output = json.loads(capsys.readouterr().out)

        assert exit_code == 0
        assert output["status"] == "completed"
        assert output["result_payload"] == '"txn-1"'
        assert output["owner_token"] == "owner-3"
        assert output["error_payload"] is None

    def test_inspect_missing_record(self, db_path: str, capsys: pytest.CaptureFixture[str]) -> None:
        exit_code = main(
            ["--db-path", db_path, "inspect", "--scope", "payments", "--token", "nope"]
        )
        output = json.loads(capsys.readouterr().out)

        assert exit_code == 2
        assert output["code"] == "NOT_FOUND"

    def test_inspect_invalid_key(self, db_path: str, capsys: pytest.CaptureFixture[str]) -> None:
        exit_code = main(["--db-path", db_path, "inspect", "--scope", " ", "--token", "abc123"])
        output = json.loads(capsys.readouterr().out)

        assert exit_code == 2
        assert output["code"] == "INVALID_KEY"


class TestCliErrors:
    def test_migrate_without_admin_url(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.delenv("ONCELY_DATABASE_ADMIN_URL", raising=False)
        from oncely.persistence.db import reset_engines

        reset_engines()
        exit_code = main(["migrate"])
        output = json.loads(capsys.readouterr().out)

        assert exit_code == 2
        assert output["code"] == "CONFIG_ERROR"

    def test_unusable_database_path(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        exit_code = main(["--db-path", str(tmp_path), "reap"])
        output = json.loads(capsys.readouterr().out)

        assert exit_code == 1
        assert output["code"] == "STORE_UNAVAILABLE"

    def test_no_command_prints_help(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main([]) == 0
        assert "oncely" in capsys.readouterr().out
