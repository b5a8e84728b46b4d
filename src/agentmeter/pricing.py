from dataclasses import dataclass
from typing import Literal

from agentmeter.models import AgentType, TokenUsage

TOKENS_PER_MILLION = 1_000_000

# 'max' subscribers are not billed for cache tokens
BillingMode = Literal["api", "max"]

# agent types whose usage is billed through the Anthropic organization
ANTHROPIC_AGENT_TYPES = frozenset({AgentType.CLAUDE_CODE.value})


@dataclass(frozen=True, slots=True)
class ModelPricing:
    """
    ModelPricing holds per-million-token prices in USD.
    """

    display_name: "str"
    input_per_million: "float"
    output_per_million: "float"
    cache_read_per_million: "float"
    cache_creation_per_million: "float"


MODEL_PRICING: "dict[str, ModelPricing]" = {
    "claude-opus-4-5-20251101": ModelPricing("Claude Opus 4.5", 5, 25, 0.5, 6.25),
    "claude-opus-4-1-20250319": ModelPricing("Claude Opus 4.1", 15, 75, 1.5, 18.75),
    "claude-opus-4-20250514": ModelPricing("Claude Opus 4", 15, 75, 1.5, 18.75),
    "claude-sonnet-4-5-20250929": ModelPricing("Claude Sonnet 4.5", 3, 15, 0.3, 3.75),
    "claude-sonnet-4-20250514": ModelPricing("Claude Sonnet 4", 3, 15, 0.3, 3.75),
    "claude-haiku-4-5-20251001": ModelPricing("Claude Haiku 4.5", 1, 5, 0.1, 1.25),
    "claude-haiku-3-5-20241022": ModelPricing("Claude Haiku 3.5", 0.8, 4, 0.08, 1),
    "claude-3-haiku-20240307": ModelPricing("Claude Haiku 3", 0.25, 1.25, 0.03, 0.3),
}

MODEL_ALIASES: "dict[str, str]" = {
    "opus": "claude-opus-4-5-20251101",
    "sonnet": "claude-sonnet-4-20250514",
    "haiku": "claude-haiku-4-5-20251001",
    "opus-4.5": "claude-opus-4-5-20251101",
    "opus-4.1": "claude-opus-4-1-20250319",
    "opus-4": "claude-opus-4-20250514",
    "sonnet-4.5": "claude-sonnet-4-5-20250929",
    "sonnet-4": "claude-sonnet-4-20250514",
    "haiku-4.5": "claude-haiku-4-5-20251001",
    "haiku-3.5": "claude-haiku-3-5-20241022",
    "haiku-3": "claude-3-haiku-20240307",
}


def get_pricing(model: "str") -> "ModelPricing | None":
    """
    looks up pricing by full model id or alias.
    """
    model = model.strip().lower()
    return MODEL_PRICING.get(model) or MODEL_PRICING.get(MODEL_ALIASES.get(model, ""))


def calculate_cost(
    usage: "TokenUsage",
    pricing: "ModelPricing",
    billing_mode: "BillingMode" = "api",
) -> "float":
    cache_read_price = pricing.cache_read_per_million
    cache_creation_price = pricing.cache_creation_per_million
    if billing_mode == "max":
        cache_read_price = cache_creation_price = 0.0

    return (
        usage.input_tokens * pricing.input_per_million
        + usage.output_tokens * pricing.output_per_million
        + usage.cache_read_input_tokens * cache_read_price
        + usage.cache_creation_input_tokens * cache_creation_price
    ) / TOKENS_PER_MILLION



def is_claude_model(model: "str") -> "bool":
    """
    true for Anthropic model ids and aliases, whether or not the
    registry has prices for them.
    """
    model = model.strip().lower()
    return model.startswith("claude") or model in MODEL_ALIASES


@dataclass(frozen=True, slots=True)
class CostBreakdown:
    """
    CostBreakdown pairs the upstream reported cost with the one
    computed locally for the same usage.
    """

    reported_cost_usd: "float | None"
    calculated_cost_usd: "float | None"
    # 'api', 'max' or 'free'; None when nothing was priced
    billing_mode: "str | None"
    pricing_model: "str | None"

    @property
    def cost_usd(self) -> "float | None":
        if self.calculated_cost_usd is not None:
            return self.calculated_cost_usd
        return self.reported_cost_usd


def resolve_costs(
    usage: "TokenUsage",
    agent_type: "str",
    model: "str | None",
    reported_cost_usd: "float | None",
    billing_mode: "BillingMode" = "api",
) -> "CostBreakdown":
    """
    prices the usage with the registry when the model is known. An
    Anthropic agent running a third-party model is not billed by
    Anthropic, so its calculated cost is zero under the 'free' mode.
    Any other model falls back to the reported cost, billed as 'api'.
    """
    pricing = get_pricing(model) if model else None
    if pricing is not None:
        return CostBreakdown(
            reported_cost_usd=reported_cost_usd,
            calculated_cost_usd=calculate_cost(usage, pricing, billing_mode),
            billing_mode=billing_mode,
            pricing_model=model,
        )
    if model and agent_type in ANTHROPIC_AGENT_TYPES and not is_claude_model(model):
        return CostBreakdown(
            reported_cost_usd=reported_cost_usd,
            calculated_cost_usd=0.0,
            billing_mode="free",
            pricing_model=model,
        )
    return CostBreakdown(
        reported_cost_usd=reported_cost_usd,
        calculated_cost_usd=reported_cost_usd,
        billing_mode="api" if reported_cost_usd is not None else None,
        pricing_model=model,
    )
