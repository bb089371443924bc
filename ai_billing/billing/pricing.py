"""
ai_billing - Pricing Resolver

Turns a model invocation into a provider cost and a customer-facing price.

Token rates are quoted per ``unit_size`` units (one million tokens by
default); run-priced image and video models are charged per run. Customer
prices are always derived from cost and margin:

    price_per_x = cost_per_x * (1 + margin_percent / 100)

and are never stored on their own.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from ..core.errors import ConfigNotFoundError, InvalidRequestError
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics


logger = get_logger("ai_billing.billing.pricing")

DEFAULT_UNIT_SIZE = 1_000_000
DEFAULT_MARGIN_PERCENT = Decimal("40")


class BillingMode(str, Enum):
    """How a model is charged."""
    PER_TOKEN = "PER_TOKEN"
    PER_RUN = "PER_RUN"


class ModelCategory(str, Enum):
    """Model family, used to pick a default margin when seeding configs."""
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"


# Default margins by category (video is expensive, so the margin is thinner)
CATEGORY_MARGINS: Dict[ModelCategory, Decimal] = {
    ModelCategory.TEXT: Decimal("40"),
    ModelCategory.IMAGE: Decimal("50"),
    ModelCategory.VIDEO: Decimal("35"),
}


class PricingSource(str, Enum):
    """Where a quote's figures came from."""
    CONFIG = "config"
    DEFAULT_MARGIN = "default_margin"


def _to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    # str() keeps float literals like 0.15 from expanding to binary noise
    return Decimal(str(value))


@dataclass
class Quantities:
    """
    Usage quantities of one model invocation.

    PER_TOKEN models read input_units/output_units, PER_RUN models read runs.
    reported_cost is the provider's own cost figure, when it returned one;
    it is only used when no pricing config exists for the model.
    """
    input_units: int = 0
    output_units: int = 0
    runs: int = 1
    reported_cost: Optional[Decimal] = None

    @classmethod
    def tokens(
        cls,
        input_units: int,
        output_units: int,
        reported_cost: Optional[Decimal] = None,
    ) -> "Quantities":
        return cls(input_units=input_units, output_units=output_units, runs=0, reported_cost=reported_cost)

    @classmethod
    def run(cls, runs: int = 1, reported_cost: Optional[Decimal] = None) -> "Quantities":
        return cls(runs=runs, reported_cost=reported_cost)

    def validate(self) -> None:
        """Reject negative quantities."""
        for name in ("input_units", "output_units", "runs"):
            if getattr(self, name) < 0:
                raise InvalidRequestError(f"{name} must not be negative", param=name)
        if self.reported_cost is not None and self.reported_cost < 0:
            raise InvalidRequestError("reported_cost must not be negative", param="reported_cost")


@dataclass(frozen=True)
class PriceQuote:
    """Cost and price of a single invocation, in the pricing currency."""
    model_key: str
    cost_amount: Decimal
    price_amount: Decimal
    margin_percent: Decimal
    source: PricingSource = PricingSource.CONFIG


@dataclass
class ModelPricingConfig:
    """
    Per-model cost and margin configuration.

    Rows live in ``ai_model_configs``; the catalog also carries built-in
    defaults for the common OpenRouter and Replicate models.
    """
    model_key: str
    billing_mode: BillingMode
    cost_per_input_unit: Decimal = Decimal("0")
    cost_per_output_unit: Decimal = Decimal("0")
    cost_per_run: Decimal = Decimal("0")
    margin_percent: Decimal = DEFAULT_MARGIN_PERCENT
    unit_size: int = DEFAULT_UNIT_SIZE
    category: ModelCategory = ModelCategory.TEXT
    is_active: bool = True

    def __post_init__(self):
        self.billing_mode = BillingMode(self.billing_mode)
        self.category = ModelCategory(self.category)
        self.cost_per_input_unit = _to_decimal(self.cost_per_input_unit)
        self.cost_per_output_unit = _to_decimal(self.cost_per_output_unit)
        self.cost_per_run = _to_decimal(self.cost_per_run)
        self.margin_percent = _to_decimal(self.margin_percent)
        if self.unit_size <= 0:
            raise ValueError(f"unit_size must be positive for {self.model_key}")

    @classmethod
    def from_record(cls, record) -> "ModelPricingConfig":
        """Create ModelPricingConfig from database record."""
        return cls(
            model_key=record["model_key"],
            billing_mode=BillingMode(record["billing_mode"]),
            cost_per_input_unit=record["cost_per_input_unit"],
            cost_per_output_unit=record["cost_per_output_unit"],
            cost_per_run=record["cost_per_run"],
            margin_percent=record["margin_percent"],
            unit_size=record["unit_size"] or DEFAULT_UNIT_SIZE,
            category=ModelCategory(record["category"]),
            is_active=record["is_active"],
        )

    @property
    def markup(self) -> Decimal:
        return 1 + self.margin_percent / 100

    @property
    def price_per_input_unit(self) -> Decimal:
        return self.cost_per_input_unit * self.markup

    @property
    def price_per_output_unit(self) -> Decimal:
        return self.cost_per_output_unit * self.markup

    @property
    def price_per_run(self) -> Decimal:
        return self.cost_per_run * self.markup

    def quote(self, quantities: Quantities) -> PriceQuote:
        """
        Price one invocation.

        Cost and price go through the same formula, so the unit-size scaling
        is applied to both or to neither. Nothing is rounded here.
        """
        quantities.validate()

        if self.billing_mode == BillingMode.PER_TOKEN:
            unit_size = Decimal(self.unit_size)
            cost = (
                quantities.input_units * self.cost_per_input_unit
                + quantities.output_units * self.cost_per_output_unit
            ) / unit_size
            price = (
                quantities.input_units * self.price_per_input_unit
                + quantities.output_units * self.price_per_output_unit
            ) / unit_size
        else:
            cost = self.cost_per_run * quantities.runs
            price = self.price_per_run * quantities.runs

        return PriceQuote(
            model_key=self.model_key,
            cost_amount=cost,
            price_amount=price,
            margin_percent=self.margin_percent,
            source=PricingSource.CONFIG,
        )


class PricingCatalog:
    """
    Snapshot of per-model pricing configuration.

    Resolution is a pure function of the snapshot; ``load_from_db`` swaps
    in rows from ``ai_model_configs`` on top of the built-in defaults.
    """

    def __init__(self, load_defaults: bool = True):
        self._configs: Dict[str, ModelPricingConfig] = {}
        if load_defaults:
            self._load_default_pricing()

    def _add_text(self, model_key: str, cost_in: str, cost_out: str) -> None:
        self.add(ModelPricingConfig(
            model_key=model_key,
            billing_mode=BillingMode.PER_TOKEN,
            cost_per_input_unit=Decimal(cost_in),
            cost_per_output_unit=Decimal(cost_out),
            margin_percent=CATEGORY_MARGINS[ModelCategory.TEXT],
            category=ModelCategory.TEXT,
        ))

    def _add_run(self, model_key: str, cost_per_run: str, category: ModelCategory) -> None:
        self.add(ModelPricingConfig(
            model_key=model_key,
            billing_mode=BillingMode.PER_RUN,
            cost_per_run=Decimal(cost_per_run),
            margin_percent=CATEGORY_MARGINS[category],
            category=category,
        ))

    def _load_default_pricing(self):
        """Load built-in pricing (USD per 1M tokens, or per run)."""

        # ============================================================
        # OpenRouter text models
        # ============================================================

        self._add_text("gpt-4o", "2.5", "10")
        self._add_text("gpt-4o-mini", "0.15", "0.6")
        self._add_text("gpt-4-turbo", "10", "30")
        self._add_text("gpt-3.5-turbo", "0.5", "1.5")
        self._add_text("o1", "15", "60")
        self._add_text("o1-mini", "3", "12")
        self._add_text("o3-mini", "1.1", "4.4")

        self._add_text("claude-sonnet-4", "3", "15")
        self._add_text("claude-3.5-sonnet", "3", "15")
        self._add_text("claude-3-opus", "15", "75")
        self._add_text("claude-3-haiku", "0.25", "1.25")
        self._add_text("claude-3.5-haiku", "0.8", "4")

        self._add_text("gemini-2.5-pro", "1.25", "10")
        self._add_text("gemini-2.5-flash", "0.15", "0.6")
        self._add_text("gemini-2.0-flash", "0.1", "0.4")

        self._add_text("deepseek-chat", "0.14", "0.28")
        self._add_text("deepseek-r1", "0.55", "2.19")
        self._add_text("llama-3.3-70b", "0.3", "0.4")
        self._add_text("mistral-large", "2", "6")
        self._add_text("mistral-small-3.1", "0.1", "0.3")

        # ============================================================
        # Replicate image models
        # ============================================================

        self._add_run("flux-schnell", "0.003", ModelCategory.IMAGE)
        self._add_run("imagen-4-fast", "0.02", ModelCategory.IMAGE)
        self._add_run("ideogram-v3-turbo", "0.03", ModelCategory.IMAGE)
        self._add_run("flux-pro-11", "0.04", ModelCategory.IMAGE)
        self._add_run("imagen-4", "0.04", ModelCategory.IMAGE)
        self._add_run("seedream-4", "0.035", ModelCategory.IMAGE)
        self._add_run("flux-kontext-max", "0.05", ModelCategory.IMAGE)

        # ============================================================
        # Replicate video models
        # ============================================================

        self._add_run("minimax-video-01", "0.25", ModelCategory.VIDEO)
        self._add_run("stable-video-diffusion", "0.04", ModelCategory.VIDEO)
        self._add_run("cogvideox", "0.20", ModelCategory.VIDEO)
        self._add_run("animatediff", "0.05", ModelCategory.VIDEO)

    def add(self, config: ModelPricingConfig) -> None:
        """Add or replace a model's configuration."""
        self._configs[config.model_key] = config

    def get(self, model_key: str) -> Optional[ModelPricingConfig]:
        return self._configs.get(model_key)

    def list_models(self, category: Optional[ModelCategory] = None) -> List[ModelPricingConfig]:
        """List configured models, optionally filtered by category."""
        return [
            config for config in self._configs.values()
            if category is None or config.category == category
        ]

    async def load_from_db(self, db) -> int:
        """
        Overlay configs from the ``ai_model_configs`` table.

        Returns:
            Number of rows loaded
        """
        rows = await db.fetch("SELECT * FROM ai_model_configs")
        for row in rows:
            self.add(ModelPricingConfig.from_record(row))
        logger.info("Pricing configs loaded", count=len(rows))
        return len(rows)

    def resolve_price(self, model_key: str, quantities: Quantities) -> PriceQuote:
        """
        Resolve cost and price for one invocation.

        Raises:
            ConfigNotFoundError: No active config exists for model_key
            InvalidRequestError: Negative quantities
        """
        config = self._configs.get(model_key)
        if config is None or not config.is_active:
            raise ConfigNotFoundError(model_key)
        return config.quote(quantities)

    def resolve_price_or_default(
        self,
        model_key: str,
        quantities: Quantities,
        default_margin_percent: Decimal = DEFAULT_MARGIN_PERCENT,
    ) -> PriceQuote:
        """
        Resolve a price, falling back to the default margin on a config gap.

        The fallback applies ``default_margin_percent`` to the provider's
        reported cost (0 when none was reported) so the charge still goes
        through.
        """
        try:
            return self.resolve_price(model_key, quantities)
        except ConfigNotFoundError:
            quantities.validate()
            cost = _to_decimal(quantities.reported_cost)
            price = cost * (1 + default_margin_percent / 100)

            logger.warning(
                "Pricing config not found, applying default margin",
                model_key=model_key,
                error_code="pricing_config_not_found",
                margin_percent=str(default_margin_percent),
                reported_cost=str(cost),
            )
            get_metrics().record_pricing_fallback(model_key)

            return PriceQuote(
                model_key=model_key,
                cost_amount=cost,
                price_amount=price,
                margin_percent=default_margin_percent,
                source=PricingSource.DEFAULT_MARGIN,
            )


# Global catalog instance
_catalog: Optional[PricingCatalog] = None


def get_catalog() -> PricingCatalog:
    """Get the process-wide pricing catalog."""
    global _catalog
    if _catalog is None:
        _catalog = PricingCatalog()
    return _catalog


def resolve_price(model_key: str, quantities: Quantities) -> PriceQuote:
    """Resolve a price against the global catalog."""
    return get_catalog().resolve_price(model_key, quantities)
