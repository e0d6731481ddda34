"""Tests for the orbyt-sync CLI."""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from orbyt_sync.cli import cli
from orbyt_sync.models import RenewalReport

pytestmark = pytest.mark.unit


@pytest.fixture
def runner():
    return CliRunner()


def test_generate_key(runner):
    result = runner.invoke(cli, ["generate-key"])

    assert result.exit_code == 0
    key = result.output.strip()
    assert len(key) == 64
    int(key, 16)


def test_generate_key_is_random(runner):
    first = runner.invoke(cli, ["generate-key"]).output
    second = runner.invoke(cli, ["generate-key"]).output
    assert first != second


def test_renew_webhooks_requires_key(runner, monkeypatch):
    monkeypatch.delenv("INTEGRATION_ENCRYPTION_KEY", raising=False)

    result = runner.invoke(cli, ["renew-webhooks"])

    assert result.exit_code == 1
    assert "INTEGRATION_ENCRYPTION_KEY is not set" in result.output


def test_renew_webhooks_rejects_malformed_key(runner, monkeypatch):
    monkeypatch.setenv("INTEGRATION_ENCRYPTION_KEY", "not-hex")

    result = runner.invoke(cli, ["renew-webhooks"])

    assert result.exit_code == 1
    assert "hex" in result.output


def test_renew_webhooks_prints_report(runner, monkeypatch):
    monkeypatch.setenv("INTEGRATION_ENCRYPTION_KEY", "ab" * 32)
    failed_id = uuid.uuid4()
    report = RenewalReport(renewed=[uuid.uuid4()], failed={failed_id: "quota exceeded"})

    with (
        patch("orbyt_sync.cli._renew", new=AsyncMock(return_value=report)),
        patch("orbyt_sync.cli.configure_logging"),
    ):
        result = runner.invoke(cli, ["renew-webhooks"])

    assert result.exit_code == 0
    assert "renewed=1 deactivated=0 failed=1" in result.output
    assert f"failed: {failed_id}: quota exceeded" in result.output


def test_init_db_rejects_bad_database_url(runner, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///orbyt.db")

    result = runner.invoke(cli, ["init-db"])

    assert result.exit_code == 1
    assert "DATABASE_URL" in result.output


def test_init_db_bootstraps_schema(runner, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://sync:pw@db.internal/orbyt")
    monkeypatch.delenv("INTEGRATION_ENCRYPTION_KEY", raising=False)
    pool = AsyncMock()

    with (
        patch("orbyt_sync.db.asyncpg.create_pool", new_callable=AsyncMock) as create_pool,
        patch("orbyt_sync.db.ensure_schema", new_callable=AsyncMock) as ensure_schema,
    ):
        create_pool.return_value = pool
        result = runner.invoke(cli, ["init-db"])

    assert result.exit_code == 0, result.output
    assert "Schema is up to date" in result.output
    ensure_schema.assert_awaited_once_with(pool)
    pool.close.assert_awaited_once()
