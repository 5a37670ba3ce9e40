"""
Collection Cases Module

Customers, loans and delinquency cases, plus case intake and agent action
logging. Case stage/assignment changes happen only through the assignment
coordinator; this module creates cases and records what agents did.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import logging
import math

from .storage import StorageInterface, StorageRecord
from .audit import DecisionAuditTrail
from .delinquency import CaseStage, calculate_days_past_due, stage_for_days_past_due, to_utc_datetime
from .errors import CaseNotFoundError
from .logging_config import log_action
from .metrics import AssignmentMetrics


logger = logging.getLogger(__name__)

MAX_NOTES_LENGTH = 1000
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


class CaseStatus(Enum):
    """Lifecycle status of a collection case"""
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class LoanStatus(Enum):
    """Repayment status of a loan"""
    ACTIVE = "ACTIVE"
    DELINQUENT = "DELINQUENT"
    CLOSED = "CLOSED"


class ActionType(Enum):
    """Channel of a collection action"""
    CALL = "CALL"
    SMS = "SMS"
    EMAIL = "EMAIL"
    WHATSAPP = "WHATSAPP"
    VISIT = "VISIT"


class ActionOutcome(Enum):
    """Result of a collection action"""
    NO_ANSWER = "NO_ANSWER"
    PROMISE_TO_PAY = "PROMISE_TO_PAY"
    PAID = "PAID"
    REFUSED = "REFUSED"
    WRONG_NUMBER = "WRONG_NUMBER"
    CALLBACK_REQUESTED = "CALLBACK_REQUESTED"


@dataclass
class Customer(StorageRecord):
    """Borrower; read-only input to assignment"""
    name: str
    risk_score: Union[int, float]
    phone: Optional[str] = None
    email: Optional[str] = None
    country: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.risk_score, bool) or not isinstance(self.risk_score, (int, float)):
            raise ValueError(f"risk_score must be numeric, got {self.risk_score!r}")


@dataclass
class Loan(StorageRecord):
    """Loan under collection; its due date drives days past due"""
    customer_id: int
    due_date: datetime
    principal: Decimal
    outstanding: Decimal
    status: LoanStatus = LoanStatus.DELINQUENT

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['due_date'] = self.due_date.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        data['due_date'] = datetime.fromisoformat(data['due_date'])
        data['principal'] = Decimal(data['principal'])
        data['outstanding'] = Decimal(data['outstanding'])
        data['status'] = LoanStatus(data['status'])
        return super().from_dict(data)


@dataclass
class CollectionCase(StorageRecord):
    """Collection case for a delinquent loan"""
    customer_id: int
    loan_id: int
    dpd: int = 0
    stage: CaseStage = CaseStage.SOFT
    status: CaseStatus = CaseStatus.OPEN
    assigned_to: Optional[str] = None
    version: int = 0  # Optimistic concurrency token

    def __post_init__(self):
        if self.dpd < 0:
            raise ValueError(f"dpd cannot be negative: {self.dpd}")
        if self.version < 0:
            raise ValueError(f"version cannot be negative: {self.version}")

    @property
    def is_open(self) -> bool:
        """Case is still being worked"""
        return self.status in (CaseStatus.OPEN, CaseStatus.IN_PROGRESS)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CollectionCase':
        data = dict(data)
        data['stage'] = CaseStage(data['stage'])
        data['status'] = CaseStatus(data['status'])
        return super().from_dict(data)


@dataclass
class ActionLog(StorageRecord):
    """Record of a collection action performed by an agent"""
    case_id: int
    action_type: ActionType
    outcome: ActionOutcome
    notes: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ActionLog':
        data = dict(data)
        data['action_type'] = ActionType(data['action_type'])
        data['outcome'] = ActionOutcome(data['outcome'])
        return super().from_dict(data)


def _to_decimal(value, label: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{label} must be a decimal amount, got {value!r}")
    if amount < 0:
        raise ValueError(f"{label} cannot be negative: {amount}")
    return amount


class CaseManager:
    """Intake and lookup of collection cases"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: DecisionAuditTrail,
        metrics: Optional[AssignmentMetrics] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.metrics = metrics or AssignmentMetrics(enabled=False)

        self.customers_table = "customers"
        self.loans_table = "loans"
        self.cases_table = "collection_cases"
        self.actions_table = "action_logs"

    def create_customer(
        self,
        name: str,
        risk_score: Union[int, float],
        phone: Optional[str] = None,
        email: Optional[str] = None,
        country: Optional[str] = None
    ) -> Customer:
        """Register a borrower"""
        if not name or not name.strip():
            raise ValueError("Customer name is required")

        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            customer = Customer(
                id=self.storage.next_id(self.customers_table),
                created_at=now,
                updated_at=now,
                name=name.strip(),
                risk_score=risk_score,
                phone=phone,
                email=email,
                country=country
            )
            self.storage.save(self.customers_table, customer.id, customer.to_dict())

        return customer

    def create_loan(
        self,
        customer_id: int,
        due_date: Union[date, datetime],
        principal,
        outstanding=None,
        status: LoanStatus = LoanStatus.DELINQUENT
    ) -> Loan:
        """Register a loan for an existing customer"""
        self._require_customer(customer_id)

        principal_amount = _to_decimal(principal, "principal")
        outstanding_amount = _to_decimal(outstanding, "outstanding") if outstanding is not None else principal_amount

        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            loan = Loan(
                id=self.storage.next_id(self.loans_table),
                created_at=now,
                updated_at=now,
                customer_id=customer_id,
                due_date=to_utc_datetime(due_date, "due_date"),
                principal=principal_amount,
                outstanding=outstanding_amount,
                status=status
            )
            self.storage.save(self.loans_table, loan.id, loan.to_dict())

        return loan

    def open_case(
        self,
        customer_id: int,
        loan_id: int,
        now: Optional[Union[date, datetime]] = None,
        assigned_to: Optional[str] = None
    ) -> CollectionCase:
        """
        Open a collection case for a delinquent loan

        Days past due are derived from the loan's due date and the case
        starts in the stage those days map to.

        Args:
            customer_id: Borrower
            loan_id: Loan that must belong to the borrower
            now: Reference time for days past due (defaults to now)
            assigned_to: Optional initial queue/agent

        Returns:
            New CollectionCase with version 0 and status OPEN
        """
        self._require_customer(customer_id)
        loan = self._require_loan(loan_id)

        if loan.customer_id != customer_id:
            raise ValueError(f"Loan {loan_id} does not belong to customer {customer_id}")

        dpd = calculate_days_past_due(loan.due_date, now)
        created = datetime.now(timezone.utc)

        with self.storage.atomic():
            case = CollectionCase(
                id=self.storage.next_id(self.cases_table),
                created_at=created,
                updated_at=created,
                customer_id=customer_id,
                loan_id=loan_id,
                dpd=dpd,
                stage=stage_for_days_past_due(dpd),
                status=CaseStatus.OPEN,
                assigned_to=assigned_to,
                version=0
            )
            self.storage.save(self.cases_table, case.id, case.to_dict())

        log_action(
            logger, "info", f"Opened case {case.id} at {case.stage.value} with dpd={dpd}",
            action="case_open", resource=f"case:{case.id}",
            extra={"customer_id": customer_id, "loan_id": loan_id, "dpd": dpd, "stage": case.stage.value}
        )
        return case

    def get_case(self, case_id: int) -> Optional[CollectionCase]:
        """Get collection case by ID"""
        data = self.storage.load(self.cases_table, case_id)
        if data:
            return CollectionCase.from_dict(data)
        return None

    def get_customer(self, customer_id: int) -> Optional[Customer]:
        data = self.storage.load(self.customers_table, customer_id)
        if data:
            return Customer.from_dict(data)
        return None

    def get_loan(self, loan_id: int) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def add_action(
        self,
        case_id: int,
        action_type: ActionType,
        outcome: ActionOutcome,
        notes: str
    ) -> ActionLog:
        """Record a collection action against a case"""
        self._require_case(case_id)

        if len(notes) > MAX_NOTES_LENGTH:
            raise ValueError(f"Notes cannot exceed {MAX_NOTES_LENGTH} characters")

        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            action = ActionLog(
                id=self.storage.next_id(self.actions_table),
                created_at=now,
                updated_at=now,
                case_id=case_id,
                action_type=action_type,
                outcome=outcome,
                notes=notes
            )
            self.storage.save(self.actions_table, action.id, action.to_dict())

        self.metrics.increment_action_log_created()
        return action

    def get_actions(self, case_id: int) -> List[ActionLog]:
        """Actions for a case, newest first"""
        actions = [ActionLog.from_dict(data) for data in self.storage.find(self.actions_table, {"case_id": case_id})]
        actions.sort(key=lambda a: a.id, reverse=True)
        return actions

    def get_case_details(self, case_id: int, decisions_limit: int = 10) -> Dict[str, Any]:
        """Case with its customer, loan, actions and most recent decisions (newest first)"""
        case = self._require_case(case_id)
        decisions = self.audit_trail.get_decisions_for_case(case_id, limit=decisions_limit)

        return {
            "case": case,
            "customer": self.get_customer(case.customer_id),
            "loan": self.get_loan(case.loan_id),
            "actions": self.get_actions(case_id),
            "decisions": list(reversed(decisions))
        }

    def list_cases(
        self,
        status: Optional[CaseStatus] = None,
        stage: Optional[CaseStage] = None,
        assigned_to: Optional[str] = None,
        dpd_min: Optional[int] = None,
        dpd_max: Optional[int] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE
    ) -> Dict[str, Any]:
        """
        Filtered page of cases, newest first

        Args:
            status: Only cases with this status
            stage: Only cases in this stage
            assigned_to: Only cases assigned to this queue/agent
            dpd_min: Lowest days past due (inclusive)
            dpd_max: Highest days past due (inclusive)
            page: 1-based page number
            page_size: Cases per page (1 to MAX_PAGE_SIZE)

        Returns:
            Dictionary with the page "items" and pagination "meta"
        """
        if dpd_min is not None and dpd_max is not None and dpd_min > dpd_max:
            raise ValueError("dpd_min cannot be greater than dpd_max")
        if page < 1:
            raise ValueError(f"page must be at least 1, got {page}")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {page_size}")

        filters: Dict[str, Any] = {}
        if status is not None:
            filters["status"] = status.value
        if stage is not None:
            filters["stage"] = stage.value
        if assigned_to is not None:
            filters["assigned_to"] = assigned_to

        cases = [CollectionCase.from_dict(data) for data in self.storage.find(self.cases_table, filters)]
        if dpd_min is not None:
            cases = [c for c in cases if c.dpd >= dpd_min]
        if dpd_max is not None:
            cases = [c for c in cases if c.dpd <= dpd_max]
        cases.sort(key=lambda c: (c.created_at, c.id), reverse=True)

        total_items = len(cases)
        start = (page - 1) * page_size
        return {
            "items": cases[start:start + page_size],
            "meta": {
                "page": page,
                "page_size": page_size,
                "total_items": total_items,
                "total_pages": max(1, math.ceil(total_items / page_size))
            }
        }

    def get_kpis(self, now: Optional[Union[date, datetime]] = None) -> Dict[str, Any]:
        """Open case count, cases resolved since midnight UTC and average dpd of open cases"""
        now = to_utc_datetime(now, "now") if now is not None else datetime.now(timezone.utc)
        start_of_today = now.replace(hour=0, minute=0, second=0, microsecond=0)

        cases = [CollectionCase.from_dict(data) for data in self.storage.load_all(self.cases_table)]
        open_cases = [c for c in cases if c.is_open]
        resolved_today = [
            c for c in cases
            if c.status == CaseStatus.RESOLVED and to_utc_datetime(c.updated_at) >= start_of_today
        ]
        average_dpd = sum(c.dpd for c in open_cases) / len(open_cases) if open_cases else 0

        return {
            "open_cases_count": len(open_cases),
            "resolved_today_count": len(resolved_today),
            "average_dpd_open_cases": f"{average_dpd:.2f}"
        }

    def store_counts(self) -> Dict[str, int]:
        """Row counts reported in the metrics snapshot"""
        cases = self.storage.load_all(self.cases_table)
        open_statuses = (CaseStatus.OPEN.value, CaseStatus.IN_PROGRESS.value)
        return {
            "total_cases": len(cases),
            "open_cases": sum(1 for c in cases if c["status"] in open_statuses),
            "total_action_logs": self.storage.count(self.actions_table),
            "total_rule_decisions": self.audit_trail.count_decisions()
        }

    # Private helper methods

    def _require_case(self, case_id: int) -> CollectionCase:
        case = self.get_case(case_id)
        if not case:
            raise CaseNotFoundError("case", case_id)
        return case

    def _require_customer(self, customer_id: int) -> Customer:
        customer = self.get_customer(customer_id)
        if not customer:
            raise CaseNotFoundError("customer", customer_id)
        return customer

    def _require_loan(self, loan_id: int) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise CaseNotFoundError("loan", loan_id)
        return loan
