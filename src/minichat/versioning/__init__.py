"""
Conversation versioning: divergence detection and context selection.
"""

from minichat.versioning.context import context_cost, select_context
from minichat.versioning.divergence import (
    DivergenceIndex,
    divergence_variants,
    prefix_divergence,
)

__all__ = [
    "DivergenceIndex",
    "context_cost",
    "divergence_variants",
    "prefix_divergence",
    "select_context",
]
