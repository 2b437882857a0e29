"""Tests for environment-driven configuration."""

import pytest

from traewelling_exporter.common.config import (
    DEFAULT_API_BASE_URL,
    AccountConfig,
    ConfigError,
    get_settings,
    parse_accounts,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in (
        "TRAEWELLING_API",
        "TRAEWELLING_TOKEN",
        "TRAEWELLING_ACCOUNTS",
        "TRAEWELLING_TOKEN_ALICE",
        "EXPORTER_HOST",
        "EXPORTER_PORT",
        "POLL_INTERVAL_SECONDS",
        "MAX_PAGES_PER_CYCLE",
        "MAX_BACKOFF_SECONDS",
        "REQUEST_TIMEOUT_SECONDS",
        "BACKOFF_JITTER",
        "SHUTDOWN_TIMEOUT_SECONDS",
        "LOG_LEVEL",
    ):
        # setenv first so teardown also removes values loaded from env files
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    monkeypatch.setenv("EXPORTER_ENV_FILE", str(tmp_path / "missing.env"))


class TestParseAccounts:
    def test_username_only(self):
        assert parse_accounts("alice") == [AccountConfig(account_id="alice", label="alice")]

    def test_label_and_interval(self):
        (account,) = parse_accounts(" alice:Alice:120 ")

        assert account.label == "Alice"
        assert account.poll_interval_seconds == 120.0

    def test_per_account_token(self, monkeypatch):
        monkeypatch.setenv("TRAEWELLING_TOKEN_ALICE", "t0k3n")

        alice, bob = parse_accounts("alice,bob")

        assert alice.token == "t0k3n"
        assert bob.token is None

    @pytest.mark.parametrize(
        "raw",
        [
            "alice:a:b",
            "alice:a:-5",
            ":label",
            "a:b:1:2",
            "alice,alice",
            # two accounts rendered under the same label
            "alice:x,bob:x",
            "alice,bob:alice",
        ],
    )
    def test_invalid_entries(self, raw):
        with pytest.raises(ConfigError):
            parse_accounts(raw)


class TestGetSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.setenv("TRAEWELLING_ACCOUNTS", "alice")

        settings = get_settings()

        assert settings.api_base_url == DEFAULT_API_BASE_URL
        assert settings.listen_port == 3000
        assert settings.poll_interval_seconds == 60.0
        assert settings.max_pages_per_cycle == 10
        assert settings.backoff_jitter is False
        assert settings.interval_for(settings.accounts[0]) == 60.0

    def test_overrides_from_env_file(self, monkeypatch, tmp_path):
        env_file = tmp_path / "exporter.env"
        env_file.write_text(
            "TRAEWELLING_ACCOUNTS=alice:Alice:30,bob\n"
            "TRAEWELLING_TOKEN=global\n"
            "EXPORTER_PORT=3100\n"
        )
        monkeypatch.setenv("EXPORTER_ENV_FILE", str(env_file))
        # Real environment variables win over the file
        monkeypatch.setenv("EXPORTER_PORT", "3200")

        settings = get_settings()

        assert [a.account_id for a in settings.accounts] == ["alice", "bob"]
        assert settings.listen_port == 3200
        alice, bob = settings.accounts
        assert settings.interval_for(alice) == 30.0
        assert settings.token_for(bob) == "global"

    def test_no_accounts_is_an_error(self):
        with pytest.raises(ConfigError):
            get_settings()

    @pytest.mark.parametrize(
        "name,value",
        [
            ("EXPORTER_PORT", "70000"),
            ("EXPORTER_PORT", "http"),
            ("POLL_INTERVAL_SECONDS", "0"),
            ("MAX_PAGES_PER_CYCLE", "0"),
            ("REQUEST_TIMEOUT_SECONDS", "-1"),
            ("SHUTDOWN_TIMEOUT_SECONDS", "-1"),
            ("SHUTDOWN_TIMEOUT_SECONDS", "soon"),
        ],
    )
    def test_invalid_values(self, monkeypatch, name, value):
        monkeypatch.setenv("TRAEWELLING_ACCOUNTS", "alice")
        monkeypatch.setenv(name, value)

        with pytest.raises(ConfigError):
            get_settings()
