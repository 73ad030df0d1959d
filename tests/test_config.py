"""
Tests for environment-based configuration
"""

from decimal import Decimal

from core_ledger import config as config_module
from core_ledger.config import LedgerConfig, get_config, reload_config
from core_ledger.limits import LimitPolicy


class TestLedgerConfig:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("LEDGER_DAILY_TRANSFER_LIMIT", raising=False)
        config = LedgerConfig()
        assert config.daily_transfer_limit == Decimal('50000')
        assert config.step_up_threshold == Decimal('10000')
        assert config.otp_ttl_seconds == 300
        assert config.business_timezone == "UTC"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("LEDGER_DAILY_TRANSFER_LIMIT", "75000")
        monkeypatch.setenv("LEDGER_LOCK_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("LEDGER_AUTH_ENABLED", "false")
        config = LedgerConfig()
        assert config.daily_transfer_limit == Decimal('75000')
        assert config.lock_timeout_seconds == 2.5
        assert config.auth_enabled is False
        assert LimitPolicy.from_config(config).daily_transfer_limit == Decimal('75000')

    def test_reload_replaces_global(self, monkeypatch):
        original = get_config()
        try:
            monkeypatch.setenv("LEDGER_API_PORT", "8123")
            reloaded = reload_config()
            assert reloaded.api_port == 8123
            assert get_config() is reloaded
        finally:
            config_module.config = original
