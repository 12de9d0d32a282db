"""
Usage and cost estimates for the external AI providers.
"""

import math

# USD prices
EMBEDDING_COST_PER_1K_TOKENS = 0.00002
TRANSCRIPTION_COST_PER_MINUTE = 0.006
INSIGHTS_COST_PER_1M_INPUT_TOKENS = 0.15
INSIGHTS_COST_PER_1M_OUTPUT_TOKENS = 0.60


def estimate_token_count(text: str) -> int:
    """Rough approximation: 1 token is about 4 characters."""
    return math.ceil(len(text) / 4)


def calculate_embedding_cost(token_count: int) -> float:
    return (token_count / 1000) * EMBEDDING_COST_PER_1K_TOKENS


def estimate_transcription_cost(duration_seconds: float) -> float:
    return (duration_seconds / 60) * TRANSCRIPTION_COST_PER_MINUTE


def calculate_insights_cost(prompt_tokens: int, completion_tokens: int) -> float:
    return (
        prompt_tokens / 1_000_000 * INSIGHTS_COST_PER_1M_INPUT_TOKENS
        + completion_tokens / 1_000_000 * INSIGHTS_COST_PER_1M_OUTPUT_TOKENS
    )
