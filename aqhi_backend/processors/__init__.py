"""
Processors Package - AQHI Backend
Conversion, aggregation, fusion and formula services for the health index
"""

from .concentration_normalizer import ConcentrationNormalizer
from .temporal_aggregator import TemporalAggregator
from .source_fusion import SourceFusion, SupplementBudget, SupplementGrid
from .formula_engine import FormulaEngine, FormulaVariant
from .result_cache import ResultCache
from .health_index_service import HealthIndexService, summarize

__all__ = [
    'ConcentrationNormalizer',
    'TemporalAggregator',
    'SourceFusion',
    'SupplementBudget',
    'SupplementGrid',
    'FormulaEngine',
    'FormulaVariant',
    'ResultCache',
    'HealthIndexService',
    'summarize',
]
