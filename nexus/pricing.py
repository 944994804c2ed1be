"""Cost estimation and context-fullness reporting for token stats."""

from typing import Any

from nexus.config import ContextConfig, ModelConfig
from nexus.session import TokenStats

CONTEXT_OK = "ok"
CONTEXT_WARN = "warn"
CONTEXT_CRITICAL = "critical"


def estimate_cost(stats: TokenStats, pricing: ModelConfig.AllowedModelConfig) -> float:
    """Cumulative USD cost of all recorded calls at the model's prices."""
    input_cost = stats.total_input_tokens / 1_000_000 * pricing.input_price
    output_cost = stats.total_output_tokens / 1_000_000 * pricing.output_price
    return input_cost + output_cost


def context_percent(stats: TokenStats, pricing: ModelConfig.AllowedModelConfig) -> int:
    """Share of the context window used by the last call, 0-100."""
    if stats.last_input_tokens <= 0 or pricing.context_window <= 0:
        return 0
    return min(round(stats.last_input_tokens / pricing.context_window * 100), 100)


def context_level(percent: int, thresholds: ContextConfig) -> str:
    if percent >= thresholds.critical_percent:
        return CONTEXT_CRITICAL
    if percent >= thresholds.warn_percent:
        return CONTEXT_WARN
    return CONTEXT_OK


def describe_token_stats(
    stats: TokenStats,
    pricing: ModelConfig.AllowedModelConfig,
    thresholds: ContextConfig,
) -> dict[str, Any]:
    """Token stats payload enriched with cost and context fullness."""
    percent = context_percent(stats, pricing)
    payload: dict[str, Any] = stats.to_dict()
    payload.update({
        "model": pricing.id,
        "context_window": pricing.context_window,
        "context_percent": percent,
        "context_level": context_level(percent, thresholds),
        "estimated_cost": round(estimate_cost(stats, pricing), 6),
    })
    return payload
