"""API cost estimation for model calls."""

from .tracker import ApiCosts, CostSummary, CostTracker, ModelPricing, ModelUsage, PipelineCosts

__all__ = [
    "ApiCosts",
    "CostSummary",
    "CostTracker",
    "ModelPricing",
    "ModelUsage",
    "PipelineCosts",
]
