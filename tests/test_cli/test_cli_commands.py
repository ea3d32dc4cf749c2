"""Tests for CLI commands — CliRunner against a temporary database."""

from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner, Result

from mailrelay.cli.main import cli
from mailrelay.storage.db import RelayDatabase
from mailrelay.storage.models import StoredCredentials


# ── Helpers ─────────────────────────────────────────────────────────────────────


@pytest.fixture
def env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    db_path = tmp_path / "cli.db"
    monkeypatch.chdir(tmp_path)  # keep a developer's .env out of the tests
    monkeypatch.setenv("DATABASE_PATH", str(db_path))
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
    monkeypatch.setenv("GOOGLE_OAUTH_CLIENT_ID", "cid")
    monkeypatch.setenv("GOOGLE_OAUTH_CLIENT_SECRET", "secret")
    return db_path


def invoke(*args: str) -> Result:
    return CliRunner().invoke(cli, list(args))


# ── status ──────────────────────────────────────────────────────────────────────


class TestStatus:
    def test_no_chats(self, env: Path) -> None:
        result = invoke("status")

        assert result.exit_code == 0
        assert "No chats authorized yet" in result.output

    def test_lists_authorized_chats(self, env: Path, make_email) -> None:
        db = RelayDatabase(db_path=env)
        db.save_credentials(StoredCredentials(77, "a", "r", email_address="me@example.com"))
        db.upsert(77, make_email("m1"))
        db.close()

        result = invoke("status")

        assert result.exit_code == 0
        assert "77" in result.output
        assert "me@example.com" in result.output


# ── actions ─────────────────────────────────────────────────────────────────────


class TestActions:
    def test_shows_log(self, env: Path) -> None:
        db = RelayDatabase(db_path=env)
        db.record_action(77, "m1", "error", details=["notification handle missing after delivery"])
        db.close()

        result = invoke("actions", "m1", "--chat-id", "77")

        assert result.exit_code == 0
        assert "error" in result.output
        assert "notification handle missing" in result.output

    def test_empty_log(self, env: Path) -> None:
        result = invoke("actions", "m1", "--chat-id", "77")

        assert result.exit_code == 0
        assert "No actions recorded" in result.output

    def test_chat_id_required(self, env: Path) -> None:
        result = invoke("actions", "m1")

        assert result.exit_code != 0


# ── authorize ───────────────────────────────────────────────────────────────────


class TestAuthorize:
    def test_stores_credentials(self, env: Path) -> None:
        creds = StoredCredentials(77, "a", "r", email_address="me@example.com")
        with patch("mailrelay.gmail.auth.authorize_chat", return_value=creds) as mock_auth:
            result = invoke("authorize", "--chat-id", "77", "--no-browser")

        assert result.exit_code == 0
        assert "Linked me@example.com to chat 77" in result.output
        assert mock_auth.call_args.kwargs["open_browser"] is False
        db = RelayDatabase(db_path=env)
        try:
            stored = db.get_credentials(77)
        finally:
            db.close()
        assert stored is not None and stored.refresh_token == "r"

    def test_missing_oauth_client_fails(self, env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("GOOGLE_OAUTH_CLIENT_SECRET")

        result = invoke("authorize", "--chat-id", "77")

        assert result.exit_code == 1
        assert "GOOGLE_OAUTH_CLIENT_ID" in result.output

    def test_flow_failure_exits_nonzero(self, env: Path) -> None:
        with patch("mailrelay.gmail.auth.authorize_chat", side_effect=RuntimeError("denied")):
            result = invoke("authorize", "--chat-id", "77")

        assert result.exit_code == 1
        assert "Authorization failed: denied" in result.output


# ── run ─────────────────────────────────────────────────────────────────────────


class TestRun:
    def test_starts_supervisor(self, env: Path) -> None:
        with patch("mailrelay.agent.supervisor.main") as mock_main:
            result = invoke("--verbose", "run")

        assert result.exit_code == 0
        mock_main.assert_called_once_with(verbose=True)

    def test_invalid_config_exits_nonzero(self, env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TELEGRAM_BOT_TOKEN")

        with patch("mailrelay.agent.supervisor.main") as mock_main:
            result = invoke("run")

        assert result.exit_code == 1
        assert "TELEGRAM_BOT_TOKEN" in result.output
        mock_main.assert_not_called()
