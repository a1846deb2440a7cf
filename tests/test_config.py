"""Tests for studyplan.toml loading, env interpolation and provider resolution."""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest

from studyplan.config import (
    ConfigError,
    PlannerConfig,
    load_config,
    parse_config,
    resolve_env_vars,
    resolve_provider,
)
from studyplan.core.pricing import ModelPricing, PricingConfig
from studyplan.providers.base import ProviderKind

pytestmark = pytest.mark.unit

_FULL = """\
[planner]
default_model = "gemini-2.5-flash"
max_iterations = 12
agent_threshold = 30
pricing_path = "conf/pricing.toml"

[planner.timeouts]
provider_s = 30
tool_s = 2.5

[planner.tiers]
free = "gemini-2.5-flash"
pro = "claude-sonnet-4-5"

[planner.providers.claude]
base_url = "https://proxy.internal/v1"
api_key = "${TEST_CLAUDE_KEY}"
max_output_tokens = 2048

[planner.db]
name = "plans"
min_pool_size = 1
max_pool_size = 4

[planner.logging]
level = "debug"
format = "JSON"
"""


@pytest.fixture
def table() -> PricingConfig:
    return PricingConfig(
        {
            "gemini-2.5-flash": ModelPricing(Decimal("0.3"), Decimal("2.5"), provider="gemini"),
            "claude-sonnet-4-5": ModelPricing(Decimal("3"), Decimal("15"), provider="claude"),
            "mystery": ModelPricing(Decimal("1"), Decimal("5"), provider="mistral"),
            "orphan": ModelPricing(Decimal("1"), Decimal("5")),
        },
        baseline_model="gemini-2.5-flash",
    )


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "studyplan.toml"
    path.write_text(text)
    return path


class TestLoadConfig:
    def test_full_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_CLAUDE_KEY", "sk-from-env")

        config = load_config(_write(tmp_path, _FULL))

        assert config.max_iterations == 12
        assert config.agent_threshold == 30
        assert config.provider_timeout_s == 30.0
        assert config.tool_timeout_s == 2.5
        assert config.pricing_path == tmp_path / "conf" / "pricing.toml"
        assert config.model_for_tier("pro") == "claude-sonnet-4-5"
        assert config.model_for_tier("enterprise") == "gemini-2.5-flash"
        assert config.model_for_tier(None) == "gemini-2.5-flash"
        claude = config.provider_config(ProviderKind.CLAUDE)
        assert claude.api_key == "sk-from-env"
        assert claude.max_output_tokens == 2048
        assert config.database.name == "plans"
        assert (config.logging.level, config.logging.format) == ("DEBUG", "json")

    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = load_config()
        assert config == PlannerConfig()
        assert config.max_iterations == 20
        assert config.agent_threshold == 50

    def test_picks_up_cwd_file(self, tmp_path, monkeypatch):
        _write(tmp_path, "[planner]\nmax_iterations = 7\n")
        monkeypatch.chdir(tmp_path)
        assert load_config().max_iterations == 7

    def test_explicit_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "missing.toml")

    def test_invalid_toml(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(_write(tmp_path, "[planner\n"))


class TestValidation:
    @pytest.mark.parametrize(
        "planner",
        [
            {"max_iterations": 0},
            {"max_iterations": "ten"},
            {"max_iterations": True},
            {"agent_threshold": -1},
            {"timeouts": {"provider_s": 0}},
            {"default_model": ""},
            {"tiers": {"pro": ""}},
            {"providers": {"mistral": {}}},
            {"providers": {"claude": "key"}},
            {"logging": {"format": "xml"}},
            {"db": {"min_pool_size": 5, "max_pool_size": 2}},
            {"db": "postgres"},
        ],
    )
    def test_rejects_invalid_values(self, planner):
        with pytest.raises(ConfigError):
            parse_config({"planner": planner})

    def test_unresolved_env_var(self, monkeypatch):
        monkeypatch.delenv("NOPE_NOT_SET", raising=False)
        with pytest.raises(ConfigError, match="NOPE_NOT_SET"):
            parse_config({"planner": {"default_model": "${NOPE_NOT_SET}"}})


def test_resolve_env_vars_walks_nested_values(monkeypatch):
    monkeypatch.setenv("A_VAR", "alpha")
    data = {"x": ["${A_VAR}-1", 2], "y": {"z": "pre-${A_VAR}"}, "n": 3}
    assert resolve_env_vars(data) == {"x": ["alpha-1", 2], "y": {"z": "pre-alpha"}, "n": 3}


class TestResolveProvider:
    def test_provider_from_pricing_and_key_from_env(self, table, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        monkeypatch.setenv("GOOGLE_API_KEY", "g-key")

        settings = resolve_provider(PlannerConfig(), table, "gemini-2.5-flash")

        assert settings.kind is ProviderKind.GEMINI
        assert settings.api_key == "g-key"
        assert settings.base_url is None

    def test_config_key_and_base_url_win(self, table, monkeypatch, tmp_path):
        monkeypatch.setenv("TEST_CLAUDE_KEY", "sk-config")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-env")
        config = load_config(_write(tmp_path, _FULL))

        settings = resolve_provider(config, table, "claude-sonnet-4-5")

        assert settings.api_key == "sk-config"
        assert settings.base_url == "https://proxy.internal/v1"
        assert settings.max_output_tokens == 2048

    def test_missing_key(self, table, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        with pytest.raises(ConfigError, match="ANTHROPIC_API_KEY"):
            resolve_provider(PlannerConfig(), table, "claude-sonnet-4-5")

    @pytest.mark.parametrize("model", ["unknown-model", "orphan", "mystery"])
    def test_unroutable_models(self, table, model):
        with pytest.raises(ConfigError):
            resolve_provider(PlannerConfig(), table, model)
