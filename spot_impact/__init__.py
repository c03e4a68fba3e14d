"""
Spot Impact Analysis Engine
===========================

Measures whether a broadcast spot (TV / radio) moved website traffic and
projects the measured effect forward into ROI, conversion and risk
estimates.

Modules
-------
data_pipeline
    Telemetry normalisation, window slicing and data sources
reference
    Robust historical baselines per time window
temporal_analysis
    Window impact, temporal insights and temporal ROI
significance
    Significance ratios, confidence and the two-proportion test
validation
    Anomaly validation gate
conversion_analysis
    Five-stage conversion funnel and control groups
predictive_analysis
    Performance, ROI, engagement, conversion and timing projections
orchestrator
    Per-event sequencing and parallel batches
report_generator
    Plain-text summaries
api
    FastAPI REST API

Example
-------
>>> from spot_impact.data_pipeline import InMemoryDataSource
>>> from spot_impact.orchestrator import SpotImpactOrchestrator
>>> from spot_impact.types import EventRecord
>>>
>>> orchestrator = SpotImpactOrchestrator(InMemoryDataSource(samples))
>>> report = orchestrator.analyze_event(EventRecord(id='spot-1', timestamp=broadcast_time))
>>> report.temporal_impact['immediate'].impacts['active_users'].percentage_change
"""

__version__ = '1.0.0'
__author__ = 'Spot Impact Analysis Team'
__email__ = 'analytics@example.com'

# Define what gets exported
__all__ = [
    '__version__',
    '__author__',
    'DataPipeline',
    'ReferenceCalculator',
    'TemporalImpactAnalyzer',
    'SignificanceEngine',
    'AnomalyGate',
    'ConversionAnalyzer',
    'PredictiveProjector',
    'SpotImpactOrchestrator',
    'FinancialAnalyzer',
]

_LAZY_IMPORTS = {
    'DataPipeline': 'data_pipeline',
    'ReferenceCalculator': 'reference',
    'TemporalImpactAnalyzer': 'temporal_analysis',
    'SignificanceEngine': 'significance',
    'AnomalyGate': 'validation',
    'ConversionAnalyzer': 'conversion_analysis',
    'PredictiveProjector': 'predictive_analysis',
    'SpotImpactOrchestrator': 'orchestrator',
    'FinancialAnalyzer': 'financial_analysis',
}


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import modules on demand."""
    module_name = _LAZY_IMPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module 'spot_impact' has no attribute '{name}'")
    import importlib
    module = importlib.import_module(f'.{module_name}', __name__)
    return getattr(module, name)
