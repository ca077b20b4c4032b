from .domain.aggregator import CostAggregator
from .domain.service import CostAnalysisService

__all__ = ["CostAggregator", "CostAnalysisService"]
