"""
REST API Module (FastAPI)
=========================

Thin HTTP adapter over the engine's function-level contracts: reference
computation, temporal impact, conversion funnel, control groups,
prediction and batch analysis. Request bodies carry the telemetry;
responses are the engine's result structures serialised to JSON.
"""

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .config import resolve_config
from .conversion_analysis import ConversionAnalyzer
from .data_pipeline import InMemoryDataSource
from .exceptions import ConfigurationError
from .logging_config import configure_logging, get_logger
from .orchestrator import SpotImpactOrchestrator
from .predictive_analysis import PredictiveProjector
from .reference import ReferenceCalculator
from .report_generator import summarize_report
from .temporal_analysis import TemporalImpactAnalyzer
from .types import EventRecord, MetricSample, to_serializable
from .validation import AnomalyGate

logger = get_logger("spot_impact.api")

API_VERSION = "1.0.0"


# ============== Pydantic Models ==============

class SampleModel(BaseModel):
    """One telemetry bucket."""
    timestamp: datetime
    active_users: float = 0.0
    sessions: float = 0.0
    pageviews: float = 0.0
    bounces: Optional[float] = None
    session_duration: Optional[float] = None
    conversions: Optional[float] = None

    def to_sample(self) -> MetricSample:
        return MetricSample(**self.model_dump())


class EventModel(BaseModel):
    """One broadcast spot."""
    id: str = Field(..., description="Spot identifier")
    timestamp: Optional[datetime] = Field(None, description="Broadcast date and time")
    duration_seconds: float = Field(0.0, ge=0)
    channel: str = ""
    program_title: str = ""
    commercial_type: str = ""
    version: str = ""
    investment: Optional[float] = Field(None, description="Spend on the spot", ge=0)

    def to_event(self) -> EventRecord:
        return EventRecord(**self.model_dump())


class ReferenceRequest(BaseModel):
    event_timestamp: datetime
    historical_samples: List[SampleModel] = Field(default_factory=list)


class TemporalRequest(BaseModel):
    event: EventModel
    historical_samples: List[SampleModel] = Field(default_factory=list)
    observed_samples: List[SampleModel] = Field(
        default_factory=list, description="Telemetry from the broadcast onwards"
    )


class FunnelRequest(BaseModel):
    event: EventModel
    conversion_rows: List[Dict[str, Any]] = Field(default_factory=list)
    reference_rows: Optional[List[Dict[str, Any]]] = None


class ControlRequest(BaseModel):
    event: EventModel
    conversion_rows: List[Dict[str, Any]] = Field(default_factory=list)
    control_rows: List[Dict[str, Any]] = Field(default_factory=list)


class PredictRequest(BaseModel):
    event: EventModel
    historical_samples: List[SampleModel] = Field(default_factory=list)
    market_data: Dict[str, Any] = Field(default_factory=dict)


class BatchRequest(BaseModel):
    events: List[EventModel]
    samples: List[SampleModel] = Field(
        default_factory=list, description="Telemetry covering the history and observation windows"
    )
    conversion_data: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)
    control_data: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)
    market_data: Dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    timestamp: str
    config_loaded: bool


def _samples(models: List[SampleModel]) -> List[MetricSample]:
    return [model.to_sample() for model in models]


def _unprocessable(e: ConfigurationError) -> HTTPException:
    return HTTPException(status_code=422, detail=str(e))


# ============== Application ==============

def create_app(config: Optional[Mapping[str, Any]] = None) -> FastAPI:
    """Build the API with its own services; nothing is shared between apps"""
    resolved = resolve_config(config)
    configure_logging(resolved)
    gate = AnomalyGate(resolved)
    reference_calculator = ReferenceCalculator(resolved)
    temporal = TemporalImpactAnalyzer(resolved, gate=gate)
    conversion = ConversionAnalyzer(resolved, gate=gate)
    projector = PredictiveProjector(resolved, gate=gate)

    app = FastAPI(
        title="Spot Impact Analysis API",
        description="Temporal impact and predictive analytics for broadcast spots",
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    @app.get("/health", response_model=HealthResponse, tags=["General"])
    def health_check():
        """Current status and configuration state."""
        return HealthResponse(
            status="healthy",
            version=API_VERSION,
            timestamp=datetime.now().isoformat(),
            config_loaded=bool(resolved),
        )

    @app.post("/reference", tags=["Analysis"])
    def reference(request: ReferenceRequest):
        """Per-window baseline statistics for an event timestamp."""
        result = reference_calculator.compute_reference(
            request.event_timestamp, _samples(request.historical_samples)
        )
        return to_serializable(result)

    @app.post("/analyze/temporal", tags=["Analysis"])
    def analyze_temporal(request: TemporalRequest):
        """
        Temporal impact of a spot.

        Builds the reference from the historical samples and compares the
        observed samples against it in the four windows.
        """
        event = request.event.to_event()
        try:
            reference_map = reference_calculator.compute_reference(
                event.timestamp, _samples(request.historical_samples)
            )
            impact = temporal.analyze_temporal_impact(event, _samples(request.observed_samples), reference_map)
        except ConfigurationError as e:
            raise _unprocessable(e)

        return {
            'event_id': event.id,
            'impact': to_serializable(impact),
            'insights': to_serializable(temporal.generate_temporal_insights(impact)),
            'temporal_roi': to_serializable(temporal.calculate_temporal_roi(impact, event.investment or 0.0)),
        }

    @app.post("/analyze/funnel", tags=["Analysis"])
    def analyze_funnel(request: FunnelRequest):
        """Five-stage conversion funnel with ROI and drop-off analysis."""
        event = request.event.to_event()
        funnel = conversion.analyze_funnel(event, request.conversion_rows, request.reference_rows)
        return to_serializable(funnel)

    @app.post("/analyze/control", tags=["Analysis"])
    def analyze_control(request: ControlRequest):
        """Spot funnel compared against a control group."""
        event = request.event.to_event()
        analysis = conversion.analyze_control_groups(event, request.conversion_rows, request.control_rows)
        return to_serializable(analysis)

    @app.post("/predict", tags=["Prediction"])
    def predict(request: PredictRequest):
        """Forward projection of performance, ROI, engagement and risk."""
        event = request.event.to_event()
        try:
            bundle = projector.generate_predictive_analysis(
                event, _samples(request.historical_samples), request.market_data
            )
        except ConfigurationError as e:
            raise _unprocessable(e)
        return to_serializable(bundle)

    @app.post("/analyze/batch", tags=["Analysis"])
    def analyze_batch(request: BatchRequest):
        """
        Full analysis of several spots.

        Each event is analysed independently; events without a timestamp
        come back with status "unavailable" instead of failing the batch.
        """
        orchestrator = SpotImpactOrchestrator(
            InMemoryDataSource(_samples(request.samples)), config=resolved, gate=gate
        )
        reports = orchestrator.analyze_batch(
            [model.to_event() for model in request.events],
            conversion_data=request.conversion_data,
            control_data=request.control_data,
            market_data=request.market_data,
        )
        return {
            'reports': to_serializable(reports),
            'summaries': {report.event_id: summarize_report(report) for report in reports},
        }

    return app


app = create_app()


# ============== Main ==============

def main():
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
