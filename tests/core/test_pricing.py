"""Tests for pricing.toml loading."""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest

from studyplan.core.pricing import ModelPricing, PricingConfig, PricingError, load_pricing

pytestmark = pytest.mark.unit

_VALID = """\
version = "2026-01"

[baseline]
model = "flash"

[models.flash]
provider = "gemini"
input_price_per_mtok = 0.075
output_price_per_mtok = 0.30

[models."sonnet"]
provider = "claude"
input_price_per_mtok = 3
output_price_per_mtok = 15
"""


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "pricing.toml"
    path.write_text(text)
    return path


def test_load_valid_table(tmp_path: Path):
    pricing = load_pricing(_write(tmp_path, _VALID))

    assert pricing.model_ids == ["flash", "sonnet"]
    assert pricing.baseline_model == "flash"
    assert pricing.version == "2026-01"
    assert pricing.baseline.input_price_per_mtok == Decimal("0.075")
    assert pricing.provider_for("sonnet") == "claude"
    assert pricing.provider_for("unknown") is None


def test_prices_parse_exactly_as_decimals(tmp_path: Path):
    """Float literals in TOML must not leak binary rounding into prices."""
    pricing = load_pricing(_write(tmp_path, _VALID))
    flash = pricing.get_model_pricing("flash")
    assert flash is not None
    assert flash.output_price_per_mtok == Decimal("0.30")
    assert flash.cost(1_000_000, 0) == Decimal("0.075")


def test_estimate_cost(tmp_path: Path):
    pricing = load_pricing(_write(tmp_path, _VALID))
    assert pricing.estimate_cost("sonnet", 1800, 700) == Decimal("0.0159")
    assert pricing.estimate_cost("unknown", 1, 1) is None


def test_default_table_ships_with_repo():
    pricing = load_pricing()
    assert pricing.baseline_model in pricing.model_ids
    baseline = pricing.baseline
    for model_id in pricing.model_ids:
        entry = pricing.get_model_pricing(model_id)
        assert entry is not None
        assert entry.provider in {"claude", "gemini", "openai"}
        assert entry.input_price_per_mtok >= baseline.input_price_per_mtok


def test_missing_file(tmp_path: Path):
    with pytest.raises(PricingError, match="not found"):
        load_pricing(tmp_path / "nope.toml")


def test_invalid_toml(tmp_path: Path):
    with pytest.raises(PricingError, match="Invalid TOML"):
        load_pricing(_write(tmp_path, "[baseline\nmodel = 1"))


def test_baseline_must_be_priced(tmp_path: Path):
    text = _VALID.replace('model = "flash"', 'model = "missing"')
    with pytest.raises(PricingError, match="no pricing entry"):
        load_pricing(_write(tmp_path, text))


def test_missing_baseline_section(tmp_path: Path):
    text = _VALID.replace('[baseline]\nmodel = "flash"\n', "")
    with pytest.raises(PricingError, match=r"\[baseline\]"):
        load_pricing(_write(tmp_path, text))


def test_missing_price_field(tmp_path: Path):
    text = _VALID.replace("output_price_per_mtok = 15\n", "")
    with pytest.raises(PricingError, match="Missing required field"):
        load_pricing(_write(tmp_path, text))


def test_negative_price(tmp_path: Path):
    text = _VALID.replace("input_price_per_mtok = 3", "input_price_per_mtok = -3")
    with pytest.raises(PricingError, match="Negative price"):
        load_pricing(_write(tmp_path, text))


def test_non_numeric_price(tmp_path: Path):
    text = _VALID.replace("input_price_per_mtok = 3", 'input_price_per_mtok = "cheap"')
    with pytest.raises(PricingError, match="Invalid price"):
        load_pricing(_write(tmp_path, text))


def test_config_rejects_unknown_baseline():
    with pytest.raises(PricingError):
        PricingConfig({"a": ModelPricing(Decimal("1"), Decimal("1"))}, baseline_model="b")


def test_config_rejects_model_cheaper_than_baseline():
    models = {
        "flash": ModelPricing(Decimal("0.075"), Decimal("0.30")),
        "lite": ModelPricing(Decimal("0.05"), Decimal("0.40")),
        "sonnet": ModelPricing(Decimal("3"), Decimal("15")),
    }
    with pytest.raises(PricingError, match="cheapest.*lite"):
        PricingConfig(models, baseline_model="flash")


def test_load_rejects_baseline_that_is_not_cheapest(tmp_path: Path):
    text = _VALID.replace('model = "flash"', 'model = "sonnet"')
    with pytest.raises(PricingError, match="priced below it: flash"):
        load_pricing(_write(tmp_path, text))
