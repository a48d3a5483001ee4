"""Unit tests for the session policy and deployment settings."""

import pytest

from ageverify import config
from ageverify.config import VerifyConfig, get_config_summary, validate_configuration
from ageverify.exceptions import ConfigurationError


class TestVerifyConfig:
    def test_defaults(self) -> None:
        cfg = VerifyConfig()
        assert cfg.min_age_threshold == 18
        assert cfg.min_liveness_score == 0.90
        assert cfg.min_age_confidence == 0.70
        assert cfg.min_surface_score == 0.40
        assert cfg.timeout_ms == 90_000
        assert cfg.max_retries == 3
        assert cfg.cooldown_minutes == 15
        assert cfg.challenges == ()

    def test_required_balance(self) -> None:
        assert VerifyConfig().required_balance_lamports == 1_000_000
        assert VerifyConfig(app_fee=0.002).required_balance_lamports == 3_000_000

    def test_challenges_frozen_to_tuple(self) -> None:
        assert VerifyConfig(challenges=["turn_left"]).challenges == ("turn_left",)

    def test_with_overrides(self) -> None:
        cfg = VerifyConfig().with_overrides(min_age_threshold=21)
        assert cfg.min_age_threshold == 21
        assert cfg.max_retries == 3

    def test_validate_returns_self(self) -> None:
        cfg = VerifyConfig()
        assert cfg.validate() is cfg

    def test_validate_collects_every_error(self) -> None:
        cfg = VerifyConfig(min_liveness_score=1.5, cooldown_minutes=0, app_fee=-1)
        with pytest.raises(ConfigurationError) as excinfo:
            cfg.validate()
        message = excinfo.value.message
        assert "min_liveness_score" in message
        assert "cooldown_minutes" in message
        assert "app_fee" in message

    def test_unknown_challenge_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown challenge kinds"):
            VerifyConfig(challenges=("wink",)).validate()

    def test_look_down_may_be_requested(self) -> None:
        VerifyConfig(challenges=("look_down",)).validate()


class TestFromEnv:
    def test_reads_environment(self, monkeypatch) -> None:
        monkeypatch.setenv("AGEVERIFY_MIN_AGE", "21")
        monkeypatch.setenv("AGEVERIFY_MAX_RETRIES", "5")
        monkeypatch.setenv("AGEVERIFY_CHALLENGES", "turn_left, look_up,")
        cfg = VerifyConfig.from_env()
        assert cfg.min_age_threshold == 21
        assert cfg.max_retries == 5
        assert cfg.challenges == ("turn_left", "look_up")

    def test_overrides_win(self, monkeypatch) -> None:
        monkeypatch.setenv("AGEVERIFY_APP_FEE", "0.01")
        assert VerifyConfig.from_env(app_fee=0.0).app_fee == 0.0

    def test_bad_number(self, monkeypatch) -> None:
        monkeypatch.setenv("AGEVERIFY_TIMEOUT_MS", "soon")
        with pytest.raises(ConfigurationError, match="AGEVERIFY_TIMEOUT_MS"):
            VerifyConfig.from_env()

    def test_result_is_validated(self, monkeypatch) -> None:
        monkeypatch.setenv("AGEVERIFY_MIN_SURFACE", "2")
        with pytest.raises(ConfigurationError, match="min_surface_score"):
            VerifyConfig.from_env()


class TestDeploymentSettings:
    def test_defaults_valid(self, monkeypatch) -> None:
        monkeypatch.setattr(config, "RPC_URLS", ["https://api.mainnet-beta.solana.com"])
        monkeypatch.setattr(config, "LOG_LEVEL", "INFO")
        assert validate_configuration() is True

    def test_rejects_non_http_endpoint(self, monkeypatch) -> None:
        monkeypatch.setattr(config, "RPC_URLS", ["ftp://node.example"])
        with pytest.raises(ConfigurationError, match="must be http"):
            validate_configuration()

    def test_rejects_empty_endpoint_list(self, monkeypatch) -> None:
        monkeypatch.setattr(config, "RPC_URLS", [])
        with pytest.raises(ConfigurationError, match="at least one endpoint"):
            validate_configuration()

    def test_summary_sections(self) -> None:
        summary = get_config_summary()
        assert set(summary) == {"ledger", "gatekeeper", "storage", "logging"}
        assert summary["ledger"]["rpc_urls"] == list(config.RPC_URLS)
