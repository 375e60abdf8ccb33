"""Unit tests for Feishu configuration."""

import pytest

from feishu_channel.configuration.config import FeishuAccountConfig, Settings


@pytest.mark.unit
class TestFeishuAccountConfig:
    def test_defaults(self):
        account = FeishuAccountConfig(app_id="cli_a", app_secret="s")

        assert account.account_id == "default"
        assert account.configured
        assert not account.use_webhook
        assert account.api_base_url == "https://open.feishu.cn"

    def test_lark_defaults_to_webhook(self):
        account = FeishuAccountConfig(domain="lark")

        assert account.use_webhook
        assert account.api_base_url == "https://open.larksuite.com"
        assert not account.configured

    def test_explicit_mode_wins(self):
        assert not FeishuAccountConfig(domain="lark", connection_mode="websocket").use_webhook
        assert FeishuAccountConfig(connection_mode="webhook").use_webhook


@pytest.mark.unit
class TestSettings:
    def test_single_account_from_flat_variables(self):
        settings = Settings(FEISHU_APP_ID="cli_a", FEISHU_APP_SECRET="s", FEISHU_DOMAIN="lark")

        (account,) = settings.resolve_accounts()

        assert account.account_id == "default"
        assert account.app_id == "cli_a"
        assert account.domain == "lark"

    def test_multi_account(self):
        settings = Settings(
            FEISHU_ACCOUNTS={
                "alice": {"app_id": "cli_a", "app_secret": "s", "agent_id": "helper"},
                "bob": {"app_id": "cli_b", "app_secret": "s", "enabled": False},
            }
        )

        assert settings.list_account_ids() == ["alice", "bob"]
        assert [a.account_id for a in settings.resolve_accounts()] == ["alice"]
        assert settings.resolve_account("alice").agent_id == "helper"
        assert settings.resolve_account("carol") is None

    def test_account_id_key_wins(self):
        settings = Settings(FEISHU_ACCOUNTS={"alice": {"account_id": "other", "app_id": "x"}})

        assert settings.resolve_account("alice").account_id == "alice"

    def test_no_accounts(self):
        settings = Settings(FEISHU_APP_ID=None, FEISHU_ACCOUNTS={})

        assert settings.resolve_accounts() == []

    def test_timing_defaults(self):
        settings = Settings()

        assert settings.dedup_ttl_seconds == 60
        assert settings.dedup_expire_minutes == 30
        assert settings.reply_flush_delay_ms == 2000
        assert settings.reply_max_buffer_ms == 8000
        assert settings.forward_max_depth == 30
        assert settings.ack_emoji == "Salute"

    def test_log_level_normalized(self):
        assert Settings(LOG_LEVEL=" debug ").log_level == "DEBUG"
        with pytest.raises(ValueError):
            Settings(LOG_LEVEL="verbose")
