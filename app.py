import os
import time
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from integrations.config import settings
from integrations.crm import CrmClient
from integrations.idempotency import Idem
from integrations.slack import SlackNotifier
from lifecycle.checklist import ChecklistGate
from lifecycle.conversion import ConversionBridge
from lifecycle.deals import DealPipeline
from lifecycle.errors import (
    BackendError,
    ConflictError,
    NetworkError,
    PartialBatchError,
    ProjectProvisioningError,
    ValidationError,
)
from lifecycle.forecast import ForecastAggregator
from lifecycle.leads import LeadFunnel
from lifecycle.models import TrackingInfo
from lifecycle.projects import ProjectWorkflow

# Configure logging
logger.add(settings.log_file, rotation="1 day", retention="7 days", level=settings.log_level)

# Initialize FastAPI app
app = FastAPI(
    title="Case Lifecycle Engine",
    description="Lead, deal and project lifecycle for immigration cases",
    version="1.0.0"
)


@dataclass
class Services:
    client: CrmClient
    gate: ChecklistGate
    bridge: ConversionBridge
    leads: LeadFunnel
    deals: DealPipeline
    projects: ProjectWorkflow
    forecast: ForecastAggregator


def build_services(client: Optional[CrmClient] = None, idem: Optional[Idem] = None,
                   notifier: Optional[SlackNotifier] = None) -> Services:
    """Wire the lifecycle components around one backend client."""
    client = client or CrmClient()
    notifier = notifier or SlackNotifier()
    gate = ChecklistGate(client, notifier)
    bridge = ConversionBridge(client, gate, idem or Idem(), notifier)
    deals = DealPipeline(client, bridge)
    return Services(
        client=client,
        gate=gate,
        bridge=bridge,
        leads=LeadFunnel(client, bridge),
        deals=deals,
        projects=ProjectWorkflow(client, gate),
        forecast=ForecastAggregator(deals),
    )


services = build_services()


# Request bodies

class LeadBody(BaseModel):
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    source: Optional[str] = None
    assigned_employee_id: Optional[str] = None


class LeadStageBody(BaseModel):
    stage_id: int


class AssignBody(BaseModel):
    employee_id: Optional[str] = None


class CommentBody(BaseModel):
    text: str
    author: Optional[str] = None


class ReasonBody(BaseModel):
    reason: str


class DuplicatesBody(BaseModel):
    pairs: Dict[str, str]


class DealStageBody(BaseModel):
    stage: str
    confirmed: bool = False


class ConfirmBody(BaseModel):
    confirmed: bool = False


class CaseTypeBody(BaseModel):
    case_type: str


class QuoteBody(BaseModel):
    amount: float
    discount: float = 0.0


class ForecastBody(BaseModel):
    amount: Optional[float] = None
    probability: Optional[float] = None
    expected_closing_date: Optional[date] = None
    expected_payment_date: Optional[date] = None


class TagsBody(BaseModel):
    tags: List[str] = Field(default_factory=list)


class TasksBody(BaseModel):
    supervisor_reviewed: Optional[bool] = None
    submitted: Optional[bool] = None


class SubmissionBody(BaseModel):
    status: str


class TrackingBody(BaseModel):
    tracking: TrackingInfo = Field(default_factory=TrackingInfo)
    finalize: bool = False


class ReceivedBody(BaseModel):
    received: bool = True


def _dump(record: Any) -> Any:
    if isinstance(record, list):
        return [_dump(r) for r in record]
    if isinstance(record, dict):
        return {k: _dump(v) for k, v in record.items()}
    if isinstance(record, BaseModel):
        return record.model_dump(mode="json")
    return record


@app.get("/health")
def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "version": "1.0.0",
        "services": {
            "backend": "mock" if services.client.mock else "remote",
            "redis": "connected" if services.bridge.idem.r else "in-memory",
            "slack": "mock" if services.bridge.notifier.mock_mode else "enabled",
        }
    }


# Leads

@app.get("/leads")
def list_leads(employee_id: Optional[str] = None, lost: bool = False):
    services.leads.refresh()
    if lost:
        return _dump(services.leads.lost())
    return {str(stage): _dump(leads) for stage, leads in services.leads.by_stage(employee_id).items()}


@app.post("/leads")
def create_lead(body: LeadBody):
    return _dump(services.leads.create(body.model_dump(exclude_none=True)))


@app.post("/leads/{lead_id}/advance")
def advance_lead(lead_id: str):
    return _dump(services.leads.advance(lead_id))


@app.patch("/leads/{lead_id}/stage")
def set_lead_stage(lead_id: str, body: LeadStageBody):
    return _dump(services.leads.set_stage(lead_id, body.stage_id))


@app.patch("/leads/{lead_id}/assign")
def assign_lead(lead_id: str, body: AssignBody):
    return _dump(services.leads.assign(lead_id, body.employee_id))


@app.post("/leads/{lead_id}/comments")
def comment_lead(lead_id: str, body: CommentBody):
    return _dump(services.leads.add_comment(lead_id, body.text, body.author))


@app.patch("/leads/{lead_id}/lost")
def mark_lead_lost(lead_id: str, body: ReasonBody):
    return _dump(services.leads.mark_lost(lead_id, body.reason))


@app.patch("/leads/{lead_id}/recover")
def recover_lead(lead_id: str):
    return _dump(services.leads.recover(lead_id))


@app.delete("/leads/{lead_id}")
def delete_lead(lead_id: str, duplicate_of: str):
    services.leads.delete(lead_id, duplicate_of)
    return {"status": "deleted", "lead_id": lead_id}


@app.post("/leads/duplicates/delete")
def delete_duplicate_leads(body: DuplicatesBody):
    return services.leads.delete_duplicates(body.pairs).as_dict()


# Deals

@app.get("/deals")
def list_deals(lost: bool = False):
    services.deals.refresh()
    if lost:
        return _dump(services.deals.lost())
    return _dump(services.deals.by_stage())


@app.get("/deals/stats")
def deal_stats():
    services.deals.refresh()
    return _dump(services.deals.stats())


@app.get("/deals/{deal_id}")
def get_deal(deal_id: str):
    deal = services.deals.get(deal_id)
    return {**_dump(deal), "controls": services.deals.controls(deal)}


@app.patch("/deals/{deal_id}/stage")
def move_deal(deal_id: str, body: DealStageBody):
    return _dump(services.deals.move_stage(deal_id, body.stage, confirmed=body.confirmed))


@app.post("/deals/{deal_id}/back")
def deal_back(deal_id: str):
    return _dump(services.deals.back(deal_id))


@app.post("/deals/{deal_id}/next")
def deal_next(deal_id: str):
    return _dump(services.deals.next(deal_id))


@app.post("/deals/{deal_id}/won")
def mark_deal_won(deal_id: str, body: ConfirmBody):
    result = services.deals.mark_won(deal_id, confirmed=body.confirmed)
    return {"status": "won", **_dump(result)}


@app.patch("/deals/{deal_id}/lost")
def mark_deal_lost(deal_id: str, body: ReasonBody):
    return _dump(services.deals.mark_lost(deal_id, body.reason))


@app.patch("/deals/{deal_id}/recover")
def recover_deal(deal_id: str):
    return _dump(services.deals.recover(deal_id))


@app.patch("/deals/{deal_id}/case-type")
def set_case_type(deal_id: str, body: CaseTypeBody):
    return _dump(services.deals.set_case_type(deal_id, body.case_type))


@app.patch("/deals/{deal_id}/quote")
def set_quote(deal_id: str, body: QuoteBody):
    return _dump(services.deals.set_quote(deal_id, body.amount, body.discount))


@app.patch("/deals/{deal_id}/forecast")
def set_forecast(deal_id: str, body: ForecastBody):
    return _dump(services.deals.set_forecast(
        deal_id,
        amount=body.amount,
        probability=body.probability,
        expected_closing_date=body.expected_closing_date,
        expected_payment_date=body.expected_payment_date,
    ))


@app.post("/deals/{deal_id}/tags")
def add_tags(deal_id: str, body: TagsBody):
    return _dump(services.deals.add_tags(deal_id, body.tags))


@app.delete("/deals/{deal_id}")
def delete_deal(deal_id: str):
    services.deals.delete(deal_id)
    return {"status": "deleted", "deal_id": deal_id}


# Projects

@app.get("/projects")
def list_projects():
    return _dump(services.projects.refresh())


@app.get("/projects/{project_id}")
def get_project(project_id: str):
    project = services.projects.get(project_id)
    return {**_dump(project), "blocker": services.projects.blocker(project)}


@app.post("/projects/{project_id}/advance")
def advance_project(project_id: str):
    return _dump(services.projects.advance(project_id))


@app.post("/projects/{project_id}/introduction")
def complete_introduction(project_id: str):
    return _dump(services.projects.complete_introduction(project_id))


@app.post("/projects/{project_id}/back")
def project_back(project_id: str):
    return _dump(services.projects.back(project_id))


@app.patch("/projects/{project_id}/tasks")
def update_tasks(project_id: str, body: TasksBody):
    return _dump(services.projects.update_tasks(
        project_id, supervisor_reviewed=body.supervisor_reviewed, submitted=body.submitted
    ))


@app.patch("/projects/{project_id}/submission")
def set_submission_status(project_id: str, body: SubmissionBody):
    return _dump(services.projects.set_submission_status(project_id, body.status))


@app.patch("/projects/{project_id}/tracking")
def save_tracking(project_id: str, body: TrackingBody):
    return _dump(services.projects.save_tracking(project_id, body.tracking, finalize=body.finalize))


@app.delete("/projects/{project_id}")
def delete_project(project_id: str):
    services.projects.delete(project_id)
    return {"status": "deleted", "project_id": project_id}


# Document checklist

@app.get("/projects/{project_id}/checklist")
def get_checklist(project_id: str):
    items = services.gate.items(project_id)
    return {
        "items": _dump(items),
        "complete": services.gate.is_complete(project_id),
        "missing": [i.name for i in services.gate.missing_required(project_id)],
    }


@app.patch("/checklist/{item_id}")
def mark_received(item_id: str, body: ReceivedBody):
    return _dump(services.gate.mark_received(item_id, body.received))


@app.post("/projects/{project_id}/checklist/reminders")
def send_reminders(project_id: str):
    return services.gate.send_reminder(project_id).as_dict()


# Forecast & reconciliation

@app.get("/forecast")
def get_forecast(granularity: str = "month"):
    services.deals.refresh()
    periods = services.forecast.periods(granularity)
    return {
        "granularity": granularity,
        "periods": _dump(periods),
        "total": sum(p.total for p in periods),
    }


@app.get("/reconcile")
def unprovisioned_deals():
    services.deals.refresh()
    missing = services.deals.unprovisioned()
    return {"unprovisioned": [d.id for d in missing], "count": len(missing)}


@app.post("/reconcile")
def reconcile():
    services.deals.refresh()
    return services.deals.reconcile().as_dict()


# Error handlers
@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=422,
        content={"status": "rejected", "message": exc.message, "entity_id": exc.entity_id}
    )


@app.exception_handler(ConflictError)
async def conflict_error_handler(request: Request, exc: ConflictError):
    return JSONResponse(
        status_code=409,
        content={"status": "conflict", "message": exc.message, "entity_id": exc.entity_id}
    )


@app.exception_handler(BackendError)
async def backend_error_handler(request: Request, exc: BackendError):
    status_code = 404 if exc.status_code == 404 else 502
    return JSONResponse(
        status_code=status_code,
        content={"status": "error", "message": exc.message, "entity_id": exc.entity_id}
    )


@app.exception_handler(NetworkError)
async def network_error_handler(request: Request, exc: NetworkError):
    return JSONResponse(
        status_code=502,
        content={"status": "error", "message": exc.message, "entity_id": exc.entity_id}
    )


@app.exception_handler(ProjectProvisioningError)
async def provisioning_error_handler(request: Request, exc: ProjectProvisioningError):
    return JSONResponse(
        status_code=500,
        content={
            "status": "partial_failure",
            "message": exc.message,
            "deal_id": exc.deal_id,
            "project_id": exc.project_id,
        }
    )


@app.exception_handler(PartialBatchError)
async def batch_error_handler(request: Request, exc: PartialBatchError):
    return JSONResponse(
        status_code=207,
        content={"status": "partial", "operation": exc.operation, **exc.result.as_dict()}
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn

    # Create logs directory if it doesn't exist
    os.makedirs(os.path.dirname(settings.log_file) or ".", exist_ok=True)

    logger.info(f"Starting {settings.service_name} ({settings.env})")

    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.env == "local",
        log_level="info"
    )
