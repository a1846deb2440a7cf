"""Per-model token pricing configuration.

Loads ``pricing.toml`` and exposes helpers for cost estimation. The file maps
model IDs to their input/output prices in USD per 1M tokens, the provider
that serves them, and names the baseline model that adjusted token counts
are normalized against.

The table is versioned configuration: it is loaded once and passed to the
cost engine explicitly, never read from module state.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

# Default location: <repo-root>/pricing.toml
_DEFAULT_PATH = Path(__file__).resolve().parents[3] / "pricing.toml"

_PER_MILLION = Decimal(1_000_000)


class PricingError(Exception):
    """Raised when pricing configuration is missing or malformed."""


@dataclass(frozen=True, slots=True)
class ModelPricing:
    """Prices (USD per 1M tokens) for a single model."""

    input_price_per_mtok: Decimal
    output_price_per_mtok: Decimal
    provider: str | None = None

    def cost(self, prompt_tokens: int, completion_tokens: int) -> Decimal:
        """Return the USD cost of a request with these token counts."""
        return (
            Decimal(prompt_tokens) * self.input_price_per_mtok / _PER_MILLION
            + Decimal(completion_tokens) * self.output_price_per_mtok / _PER_MILLION
        )


class PricingConfig:
    """Loaded pricing configuration.

    Parameters
    ----------
    models:
        Mapping of model ID to :class:`ModelPricing`.
    baseline_model:
        ID of the reference model used for cost normalization. Must be a key
        of *models*, and no model may be priced below it on input or output,
        so a table-priced turn never bills fewer adjusted tokens than raw ones.
    version:
        Free-form version label of the pricing table.
    """

    def __init__(
        self,
        models: dict[str, ModelPricing],
        baseline_model: str,
        version: str | None = None,
    ) -> None:
        if baseline_model not in models:
            raise PricingError(f"Baseline model {baseline_model!r} has no pricing entry")
        baseline = models[baseline_model]
        cheaper = sorted(
            model_id
            for model_id, pricing in models.items()
            if pricing.input_price_per_mtok < baseline.input_price_per_mtok
            or pricing.output_price_per_mtok < baseline.output_price_per_mtok
        )
        if cheaper:
            raise PricingError(
                f"Baseline model {baseline_model!r} must be the cheapest entry; "
                f"priced below it: {', '.join(cheaper)}"
            )
        self._models = models
        self.baseline_model = baseline_model
        self.version = version

    # -- public API ---------------------------------------------------------

    @property
    def model_ids(self) -> list[str]:
        """Return a sorted list of all known model IDs."""
        return sorted(self._models)

    @property
    def baseline(self) -> ModelPricing:
        """Pricing of the baseline model."""
        return self._models[self.baseline_model]

    def get_model_pricing(self, model_id: str) -> ModelPricing | None:
        """Return pricing for *model_id*, or ``None`` if unknown."""
        return self._models.get(model_id)

    def provider_for(self, model_id: str) -> str | None:
        """Return the provider that serves *model_id*, if the table says."""
        pricing = self._models.get(model_id)
        return pricing.provider if pricing is not None else None

    def estimate_cost(
        self,
        model_id: str,
        input_tokens: int,
        output_tokens: int,
    ) -> Decimal | None:
        """Estimate the USD cost of a request.

        Returns ``None`` when the model is not in the pricing table.
        """
        pricing = self._models.get(model_id)
        if pricing is None:
            return None
        return pricing.cost(input_tokens, output_tokens)


def _price(values: dict[str, Any], key: str, model_id: str) -> Decimal:
    try:
        price = Decimal(str(values[key]))
    except KeyError as exc:
        raise PricingError(f"Missing required field {exc} for model '{model_id}'") from exc
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise PricingError(f"Invalid price value for model '{model_id}': {exc}") from exc
    if price < 0:
        raise PricingError(f"Negative price for model '{model_id}': {price}")
    return price


def parse_pricing(data: dict[str, Any]) -> PricingConfig:
    """Build a :class:`PricingConfig` from already-parsed TOML data."""
    models_section = data.get("models")
    if not isinstance(models_section, dict):
        raise PricingError("Missing or invalid [models] section in pricing config")

    baseline_section = data.get("baseline")
    if not isinstance(baseline_section, dict) or not isinstance(
        baseline_section.get("model"), str
    ):
        raise PricingError("Missing or invalid [baseline] section in pricing config")

    models: dict[str, ModelPricing] = {}
    for model_id, values in models_section.items():
        if not isinstance(values, dict):
            raise PricingError(
                f"Expected table for model '{model_id}', got {type(values).__name__}"
            )
        provider = values.get("provider")
        if provider is not None and not isinstance(provider, str):
            raise PricingError(f"Invalid provider for model '{model_id}': {provider!r}")
        models[model_id] = ModelPricing(
            input_price_per_mtok=_price(values, "input_price_per_mtok", model_id),
            output_price_per_mtok=_price(values, "output_price_per_mtok", model_id),
            provider=provider,
        )

    version = data.get("version")
    return PricingConfig(
        models,
        baseline_model=baseline_section["model"],
        version=str(version) if version is not None else None,
    )


def load_pricing(path: Path | None = None) -> PricingConfig:
    """Load pricing from a TOML file.

    Parameters
    ----------
    path:
        Path to the ``pricing.toml`` file.  Falls back to the repo-root
        default when ``None``.

    Raises
    ------
    PricingError
        If the file is missing, unreadable, or contains invalid data.
    """
    if path is None:
        path = _DEFAULT_PATH

    if not path.exists():
        raise PricingError(f"Pricing file not found: {path}")

    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise PricingError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_pricing(data)
