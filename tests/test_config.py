"""
Unit tests for config.py.
"""

import pytest
from pydantic import ValidationError

from config import Config, load_config


class TestConfig:
    def test_defaults(self):
        cfg = Config(_env_file=None)
        assert cfg.dry_run is True
        assert cfg.signature_type == 1
        assert cfg.chain_id == 137
        assert cfg.poll_interval_seconds == 2.0
        assert cfg.window_duration_minutes == 15
        assert cfg.min_edge_margin == 0.01
        assert cfg.quote_staleness_ms == 500.0
        assert cfg.per_trade_risk_ceiling == 20.0
        assert cfg.risk_ceiling_is_fraction is False
        assert cfg.max_concurrent_positions_per_market_set == 1
        assert cfg.expiry_safety_buffer_sec == 30.0
        assert cfg.cross_asset_min_leg_price == 0.6

    def test_empty_credentials_allowed_for_dry_run(self, monkeypatch):
        """Credentials default to empty string (dry-run mode needs no wallet)."""
        monkeypatch.delenv("PRIVATE_KEY", raising=False)
        monkeypatch.delenv("POLYMARKET_PROFILE_ADDRESS", raising=False)
        cfg = Config(_env_file=None)
        assert cfg.private_key == ""
        assert cfg.polymarket_profile_address == ""

    def test_invalid_signature_type(self):
        with pytest.raises(ValidationError):
            Config(_env_file=None, signature_type=5)

    @pytest.mark.parametrize(
        "field,value",
        [
            ("min_edge_margin", -0.01),
            ("min_edge_margin", 1.0),
            ("per_trade_risk_ceiling", 0.0),
            ("max_concurrent_positions_per_market_set", 0),
            ("poll_interval_seconds", 0.0),
            ("paper_fill_ratio", 1.5),
            ("report_port", 70000),
        ],
    )
    def test_out_of_range_rejected(self, field, value):
        with pytest.raises(ValidationError):
            Config(_env_file=None, **{field: value})

    def test_frozen(self):
        cfg = Config(_env_file=None)
        with pytest.raises(ValidationError):
            cfg.dry_run = False

    def test_env_vars_load(self, monkeypatch):
        monkeypatch.setenv("MIN_EDGE_MARGIN", "0.02")
        monkeypatch.setenv("DRY_RUN", "false")
        monkeypatch.setenv("ASSETS", "BTC, eth ,")
        cfg = load_config()
        assert cfg.min_edge_margin == 0.02
        assert cfg.dry_run is False
        assert cfg.asset_list == ["btc", "eth"]

    def test_unknown_env_ignored(self, monkeypatch):
        monkeypatch.setenv("SOMETHING_ELSE", "1")
        Config(_env_file=None)
