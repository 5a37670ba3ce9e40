"""
FastAPI REST API Module

Thin HTTP surface over case intake, agent actions and the assignment
coordinator. Runs on port 8090 by default.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging
import time
import uuid

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from pydantic import BaseModel, Field
import uvicorn

from . import __version__
from .audit import RuleDecision
from .cases import (
    MAX_PAGE_SIZE, ActionLog, ActionOutcome, ActionType, CaseStatus, CollectionCase, Customer, Loan, LoanStatus
)
from .delinquency import CaseStage
from .errors import AssignmentConflictError, CaseNotFoundError, StoreError
from .logging_config import log_action
from .system import CollectionsSystem


logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-request-id"


# Pydantic models for API requests
class CreateCustomerRequest(BaseModel):
    name: str = Field(..., min_length=1)
    risk_score: float
    phone: Optional[str] = None
    email: Optional[str] = None
    country: Optional[str] = None


class CreateLoanRequest(BaseModel):
    customer_id: int = Field(..., gt=0)
    due_date: datetime
    principal: str = Field(..., description="Decimal amount as string")
    outstanding: Optional[str] = Field(None, description="Decimal amount as string")
    status: LoanStatus = LoanStatus.DELINQUENT


class CreateCaseRequest(BaseModel):
    customer_id: int = Field(..., gt=0)
    loan_id: int = Field(..., gt=0)


class AddActionRequest(BaseModel):
    type: ActionType
    outcome: ActionOutcome
    notes: str = Field(..., max_length=1000)


class AssignCaseRequest(BaseModel):
    expected_version: Optional[int] = Field(
        None, ge=0, description="Optional optimistic-lock version from the latest case read"
    )


# Response serializers

def _case_to_response(case: CollectionCase) -> Dict[str, Any]:
    return {
        "id": case.id,
        "customer_id": case.customer_id,
        "loan_id": case.loan_id,
        "dpd": case.dpd,
        "stage": case.stage.value,
        "status": case.status.value,
        "assigned_to": case.assigned_to,
        "version": case.version,
        "created_at": case.created_at.isoformat(),
        "updated_at": case.updated_at.isoformat()
    }


def _customer_to_response(customer: Customer) -> Dict[str, Any]:
    return {
        "id": customer.id,
        "name": customer.name,
        "risk_score": customer.risk_score,
        "phone": customer.phone,
        "email": customer.email,
        "country": customer.country
    }


def _loan_to_response(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "customer_id": loan.customer_id,
        "due_date": loan.due_date.isoformat(),
        "principal": str(loan.principal),
        "outstanding": str(loan.outstanding),
        "status": loan.status.value
    }


def _action_to_response(action: ActionLog) -> Dict[str, Any]:
    return {
        "id": action.id,
        "case_id": action.case_id,
        "type": action.action_type.value,
        "outcome": action.outcome.value,
        "notes": action.notes,
        "created_at": action.created_at.isoformat()
    }


def _decision_to_response(decision: RuleDecision) -> Dict[str, Any]:
    return {
        "id": decision.id,
        "case_id": decision.case_id,
        "matched_rules": decision.matched_rules,
        "reason": decision.reason,
        "created_at": decision.created_at.isoformat(),
        "current_hash": decision.current_hash
    }


def get_collections_system(request: Request) -> CollectionsSystem:
    """Dependency returning the system bound to the running app"""
    return request.app.state.system


router = APIRouter()


@router.post("/customers", status_code=status.HTTP_201_CREATED)
def create_customer(
    request: CreateCustomerRequest,
    system: CollectionsSystem = Depends(get_collections_system)
):
    """Register a borrower"""
    try:
        customer = system.case_manager.create_customer(
            name=request.name,
            risk_score=request.risk_score,
            phone=request.phone,
            email=request.email,
            country=request.country
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _customer_to_response(customer)


@router.post("/loans", status_code=status.HTTP_201_CREATED)
def create_loan(
    request: CreateLoanRequest,
    system: CollectionsSystem = Depends(get_collections_system)
):
    """Register a loan for a borrower"""
    try:
        loan = system.case_manager.create_loan(
            customer_id=request.customer_id,
            due_date=request.due_date,
            principal=request.principal,
            outstanding=request.outstanding,
            status=request.status
        )
    except CaseNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _loan_to_response(loan)


@router.post("/cases", status_code=status.HTTP_201_CREATED)
def create_case(
    request: CreateCaseRequest,
    system: CollectionsSystem = Depends(get_collections_system)
):
    """Open a delinquency case"""
    try:
        case = system.case_manager.open_case(request.customer_id, request.loan_id)
    except CaseNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _case_to_response(case)


@router.get("/cases")
def list_cases(
    case_status: Optional[CaseStatus] = Query(None, alias="status", description="Filter by case status"),
    stage: Optional[CaseStage] = Query(None, description="Filter by stage"),
    assigned_to: Optional[str] = Query(None, description="Filter by queue or agent"),
    dpd_min: Optional[int] = Query(None, ge=0),
    dpd_max: Optional[int] = Query(None, ge=0),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
    system: CollectionsSystem = Depends(get_collections_system)
):
    """Filtered, paginated case list, newest first"""
    try:
        listing = system.case_manager.list_cases(
            status=case_status,
            stage=stage,
            assigned_to=assigned_to,
            dpd_min=dpd_min,
            dpd_max=dpd_max,
            page=page,
            page_size=page_size
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "data": [_case_to_response(case) for case in listing["items"]],
        "meta": listing["meta"]
    }


@router.get("/cases/kpis")
def get_case_kpis(system: CollectionsSystem = Depends(get_collections_system)):
    """Dashboard KPIs over all cases"""
    return system.case_manager.get_kpis()


@router.get("/cases/{case_id}")
def get_case(case_id: int, system: CollectionsSystem = Depends(get_collections_system)):
    """Case details with actions and recent decisions"""
    try:
        details = system.case_manager.get_case_details(
            case_id, decisions_limit=system.config.recent_decisions_limit
        )
    except CaseNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    response = _case_to_response(details["case"])
    response["customer"] = _customer_to_response(details["customer"]) if details["customer"] else None
    response["loan"] = _loan_to_response(details["loan"]) if details["loan"] else None
    response["actions"] = [_action_to_response(a) for a in details["actions"]]
    response["decisions"] = [_decision_to_response(d) for d in details["decisions"]]
    return response


@router.post("/cases/{case_id}/actions", status_code=status.HTTP_201_CREATED)
def add_action(
    case_id: int,
    request: AddActionRequest,
    system: CollectionsSystem = Depends(get_collections_system)
):
    """Add an action log entry to a case"""
    try:
        action = system.case_manager.add_action(case_id, request.type, request.outcome, request.notes)
    except CaseNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _action_to_response(action)


@router.post("/cases/{case_id}/assign")
def assign_case(
    case_id: int,
    request: Optional[AssignCaseRequest] = None,
    system: CollectionsSystem = Depends(get_collections_system)
):
    """Run rules-based assignment with optional optimistic lock and decision audit"""
    expected_version = request.expected_version if request else None
    try:
        result = system.coordinator.assign(case_id, expected_version)
    except CaseNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AssignmentConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StoreError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return result.to_dict()


@router.get("/audit/verify")
def verify_audit_trail(system: CollectionsSystem = Depends(get_collections_system)):
    """Verify the decision hash chain"""
    return system.audit_trail.verify_integrity()


@router.get("/metrics")
def get_metrics(system: CollectionsSystem = Depends(get_collections_system)):
    """Request, business and store counters"""
    return system.metrics.snapshot(db_counts=system.case_manager.store_counts())


def create_app(system: Optional[CollectionsSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Collections Case Assignment API",
        description="Rules-based case assignment with optimistic concurrency and a hash-chained decision audit",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system or CollectionsSystem()
    app.include_router(router, tags=["Collections"])

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Tag each request with an id, then log and count it once answered"""
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        started = time.perf_counter()

        response = await call_next(request)

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers[REQUEST_ID_HEADER] = request_id
        path = request.url.path
        app.state.system.metrics.record_http_request(request.method, path, response.status_code)
        log_action(
            logger, "info", "http_request", action="http_request", correlation_id=request_id,
            extra={
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                "user_agent": request.headers.get("user-agent", ""),
                "ip": request.client.host if request.client else None
            }
        )
        return response

    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "collections_core_api",
            "version": __version__,
            "rules": list(app.state.system.rule_set.names)
        }

    return app


def run_server(system: CollectionsSystem, host: str = "0.0.0.0", port: int = 8090) -> None:
    """Run the API with uvicorn"""
    uvicorn.run(create_app(system), host=host, port=port)
