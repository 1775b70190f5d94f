"""
Hemogen Web Server

FastAPI server exposing the manual triggers of the hemogram generator:
force a backfill, inject an outbreak, run a full anomaly scenario, sweep
pending deliveries, and inspect stored records.
"""

import logging
import threading
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, Field

from hemogen import __version__
from hemogen.db import StorageError
from hemogen.delivery import DeliveryError
from hemogen.exporters import export_json_summary
from hemogen.services import Services, get_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Backfill gate and scheduler threads live as long as the app."""
    services = get_services()
    services.startup()
    yield
    services.shutdown()


# Create FastAPI app
app = FastAPI(
    title="Hemogen",
    description="Hemogen - Synthetic Hemogram Generator API",
    version=__version__,
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Background trigger jobs (backfill and scenarios can take minutes)
jobs: dict[str, dict] = {}


# Request/Response models
class BackfillRequest(BaseModel):
    """Request model for a forced historical backfill."""
    days: Optional[int] = Field(None, ge=1, description="Window length in days")
    daily_count: Optional[int] = Field(None, ge=1, description="Records per day across all locations")
    anomaly_rate: Optional[float] = Field(None, ge=0.0, le=1.0, description="Baseline anomaly rate")


class OutbreakRequest(BaseModel):
    """Request model for an outbreak injection."""
    location: str = Field(..., description='Target location as "city|region"')
    count: int = Field(100, ge=1, description="Number of records to inject")
    anomaly_rate: Optional[float] = Field(None, ge=0.0, le=1.0, description="Defaults to the burst anomaly rate")
    target_date: Optional[date] = Field(None, description="Collection date; defaults to the detection lag")


class ScenarioRequest(BaseModel):
    """Request model for a full anomaly scenario."""
    location: str = Field(..., description='Target location as "city|region"')
    days: int = Field(30, ge=1)
    daily_count: int = Field(20, ge=1)
    anomaly_rate: float = Field(0.05, ge=0.0, le=1.0)
    outbreak_count: int = Field(100, ge=0)
    outbreak_rate: float = Field(0.9, ge=0.0, le=1.0)


class DeliverySummary(BaseModel):
    """Aggregate delivery counts."""
    total: int
    succeeded: int
    failed: int
    skipped: int
    batch_sizes: list[int]
    duration_seconds: float


class StatsResponse(BaseModel):
    total: int
    sent: int
    pending: int
    in_flight: int


def _summarize(report) -> Optional[DeliverySummary]:
    if report is None:
        return None
    return DeliverySummary(
        total=report.total,
        succeeded=report.succeeded,
        failed=report.failed,
        skipped=report.skipped,
        batch_sizes=report.batch_sizes,
        duration_seconds=round(report.duration_seconds, 3),
    )


def _backfill_payload(result) -> dict:
    return {
        "baseline_records": result.baseline_records,
        "outbreak_records": result.outbreak_records,
        "total": result.total,
        "days": len(result.days),
        "first_day": result.days[0].isoformat() if result.days else None,
        "last_day": result.days[-1].isoformat() if result.days else None,
        "per_location_daily": result.per_location_daily,
        "delivery": _summarize(result.delivery),
    }


def _run_job(job_id: str, func, *args):
    """Run a trigger in the background and record its outcome."""
    try:
        jobs[job_id]["status"] = "running"
        jobs[job_id]["started_at"] = datetime.now().isoformat()
        jobs[job_id]["result"] = _backfill_payload(func(*args))
        jobs[job_id]["status"] = "completed"
    except Exception as e:
        logger.exception("Job %s failed", job_id)
        jobs[job_id]["status"] = "failed"
        jobs[job_id]["error"] = str(e)
    finally:
        jobs[job_id]["completed_at"] = datetime.now().isoformat()


def _start_job(kind: str, func, *args) -> dict:
    job_id = str(uuid4())
    jobs[job_id] = {"id": job_id, "kind": kind, "status": "pending", "created_at": datetime.now().isoformat()}
    thread = threading.Thread(target=_run_job, args=(job_id, func, *args), daemon=True)
    thread.start()
    return {"job_id": job_id, "status": "pending", "poll": f"/api/jobs/{job_id}"}


# Routes
@app.get("/api/health")
async def health_check(services: Services = Depends(get_services)):
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "scheduler_running": services.scheduler.running,
        "sink": services.config.sink.url,
    }


@app.get("/api/stats", response_model=StatsResponse)
def get_stats(services: Services = Depends(get_services)):
    """Stored, sent and pending record counts."""
    try:
        return services.stats()
    except StorageError as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/records/subject/{subject_id}")
def get_subject_records(subject_id: str, services: Services = Depends(get_services)):
    """Every record for one subject."""
    records = services.store.find_by_subject(subject_id)
    if not records:
        raise HTTPException(status_code=404, detail="Subject not found")
    return [export_json_summary(r) for r in records]


@app.get("/api/debug/fhir")
def debug_fhir(services: Services = Depends(get_services)):
    """A sample FHIR bundle as it would be sent to the sink. Not persisted."""
    return Response(content=services.debug_bundle(), media_type="application/fhir+json")


@app.post("/api/backfill")
def trigger_backfill(
    request: BackfillRequest,
    wait: bool = Query(False, description="Run inline instead of as a background job"),
    services: Services = Depends(get_services),
):
    """Force a historical backfill and deliver the result."""
    args = (request.days, request.daily_count, request.anomaly_rate)
    if wait:
        return _backfill_payload(services.run_backfill(*args))
    return _start_job("backfill", services.run_backfill, *args)


@app.post("/api/outbreak")
def trigger_outbreak(request: OutbreakRequest, services: Services = Depends(get_services)):
    """Inject an outbreak at one location and deliver it."""
    try:
        records, report = services.inject_outbreak(
            request.location, request.count, request.anomaly_rate, request.target_date,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (StorageError, DeliveryError) as e:
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "location": request.location,
        "generated": len(records),
        "anomalies": sum(1 for r in records if r.category.is_anomalous),
        "collected_at": records[0].collected_at.isoformat() if records else None,
        "delivery": _summarize(report),
    }


@app.post("/api/anomaly-scenario")
def trigger_anomaly_scenario(
    request: ScenarioRequest,
    wait: bool = Query(False, description="Run inline instead of as a background job"),
    services: Services = Depends(get_services),
):
    """Baseline for one location, an outbreak at the detection lag, then delivery."""
    args = (
        request.location, request.days, request.daily_count,
        request.anomaly_rate, request.outbreak_count, request.outbreak_rate,
    )
    if wait:
        try:
            return _backfill_payload(services.anomaly_scenario(*args))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    return _start_job("anomaly-scenario", services.anomaly_scenario, *args)


@app.post("/api/deliver", response_model=DeliverySummary)
def trigger_delivery(services: Services = Depends(get_services)):
    """Immediate retry sweep over every undelivered record."""
    try:
        return _summarize(services.deliver_pending())
    except (StorageError, DeliveryError) as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/jobs/{job_id}")
async def get_job_status(job_id: str):
    """Get the status of a background trigger job."""
    if job_id not in jobs:
        raise HTTPException(status_code=404, detail="Job not found")
    return jobs[job_id]


def run_server(host: str = "0.0.0.0", port: int = 8000):
    """Run the server."""
    import uvicorn
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run_server()
