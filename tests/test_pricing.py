import pytest

from agentmeter.models import TokenUsage
from agentmeter.pricing import (
    MODEL_PRICING,
    calculate_cost,
    get_pricing,
    is_claude_model,
    resolve_costs,
)


class TestGetPricing:
    def test_full_model_id(self) -> "None":
        pricing = get_pricing("claude-sonnet-4-20250514")
        assert pricing is not None
        assert pricing.display_name == "Claude Sonnet 4"

    def test_alias_is_case_insensitive(self) -> "None":
        assert get_pricing(" Opus ") == MODEL_PRICING["claude-opus-4-5-20251101"]

    def test_unknown_model(self) -> "None":
        assert get_pricing("gpt-4o") is None


class TestCalculateCost:
    def test_api_billing_charges_every_token_kind(self) -> "None":
        usage = TokenUsage(
            input_tokens=1_000_000,
            output_tokens=1_000_000,
            cache_read_input_tokens=1_000_000,
            cache_creation_input_tokens=1_000_000,
        )
        pricing = MODEL_PRICING["claude-sonnet-4-20250514"]
        assert calculate_cost(usage, pricing) == pytest.approx(3 + 15 + 0.3 + 3.75)

    def test_max_billing_skips_cache_tokens(self) -> "None":
        usage = TokenUsage(
            input_tokens=1_000_000,
            output_tokens=1_000_000,
            cache_read_input_tokens=1_000_000,
            cache_creation_input_tokens=1_000_000,
        )
        pricing = MODEL_PRICING["claude-sonnet-4-20250514"]
        assert calculate_cost(usage, pricing, billing_mode="max") == pytest.approx(18.0)

    def test_zero_usage_is_free(self) -> "None":
        pricing = MODEL_PRICING["claude-haiku-4-5-20251001"]
        assert calculate_cost(TokenUsage(), pricing) == 0.0


class TestIsClaudeModel:
    @pytest.mark.parametrize("model", ["claude-sonnet-4-20250514", "Claude-Next", "opus"])
    def test_anthropic_models(self, model: "str") -> "None":
        assert is_claude_model(model)

    @pytest.mark.parametrize("model", ["gpt-4o", "llama-3.1-70b", "qwen3-coder"])
    def test_third_party_models(self, model: "str") -> "None":
        assert not is_claude_model(model)


class TestResolveCosts:
    def test_known_model_is_priced_locally(self) -> "None":
        usage = TokenUsage(output_tokens=2_000_000)
        costs = resolve_costs(usage, "claude-code", "haiku-4.5", reported_cost_usd=9.0)

        assert costs.reported_cost_usd == 9.0
        assert costs.calculated_cost_usd == pytest.approx(10.0)
        assert costs.cost_usd == pytest.approx(10.0)
        assert costs.billing_mode == "api"
        assert costs.pricing_model == "haiku-4.5"

    def test_max_billing_drops_cache_from_calculated_cost(self) -> "None":
        usage = TokenUsage(output_tokens=1_000_000, cache_read_input_tokens=1_000_000)
        costs = resolve_costs(
            usage,
            "claude-code",
            "claude-sonnet-4-20250514",
            reported_cost_usd=15.3,
            billing_mode="max",
        )

        assert costs.calculated_cost_usd == pytest.approx(15.0)
        assert costs.reported_cost_usd == 15.3
        assert costs.billing_mode == "max"

    def test_third_party_model_on_anthropic_agent_is_free(self) -> "None":
        costs = resolve_costs(
            TokenUsage(output_tokens=10), "claude-code", "qwen3-coder", reported_cost_usd=0.4
        )

        assert costs.calculated_cost_usd == 0.0
        assert costs.cost_usd == 0.0
        assert costs.reported_cost_usd == 0.4
        assert costs.billing_mode == "free"

    def test_unpriced_model_falls_back_to_reported_cost(self) -> "None":
        costs = resolve_costs(
            TokenUsage(output_tokens=10), "opencode", "llama-3.1-70b", reported_cost_usd=0.2
        )

        assert costs.calculated_cost_usd == 0.2
        assert costs.cost_usd == 0.2
        assert costs.billing_mode == "api"

    @pytest.mark.parametrize("model", [None, "", "llama-3.1-70b"])
    def test_nothing_to_price(self, model: "str | None") -> "None":
        costs = resolve_costs(TokenUsage(output_tokens=10), "opencode", model, None)

        assert costs.cost_usd is None
        assert costs.billing_mode is None
