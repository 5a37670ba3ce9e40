"""
Case Unit of Work

Typed transactional operations the assignment coordinator needs from the
store: read a case with its customer, conditionally update the case on its
version, and append a decision. Everything done through one unit of work
is committed or rolled back together.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional, Sequence, Tuple
import logging

from .audit import DecisionAuditTrail, RuleDecision
from .cases import CaseStatus, CollectionCase, Customer
from .delinquency import CaseStage
from .errors import CaseNotFoundError, CollectionsError, StoreError
from .storage import StorageInterface


logger = logging.getLogger(__name__)

CASES_TABLE = "collection_cases"
CUSTOMERS_TABLE = "customers"


class CaseUnitOfWork:
    """
    One atomic read-evaluate-write-audit sequence.

    Use as a context manager: the transaction begins on entry, commits on a
    clean exit and rolls back if anything raises. begin/commit/rollback are
    also available for explicit control.
    """

    def __init__(self, storage: StorageInterface, audit_trail: DecisionAuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def __enter__(self) -> 'CaseUnitOfWork':
        self.begin()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> bool:
        if exc_type is None:
            self.commit()
        else:
            self.rollback()
        return False

    @contextmanager
    def _store_errors(self, operation: str):
        """Surface unexpected storage failures as StoreError"""
        try:
            yield
        except CollectionsError:
            raise
        except Exception as e:
            raise StoreError(f"Store failure during {operation}: {e}") from e

    def begin(self) -> None:
        if self._active:
            raise StoreError("Unit of work already started")
        with self._store_errors("begin"):
            self.storage.begin_transaction()
        self._active = True

    def commit(self) -> None:
        if not self._active:
            return
        try:
            with self._store_errors("commit"):
                self.storage.commit()
        except StoreError:
            self.rollback()
            raise
        self._active = False

    def rollback(self) -> None:
        if not self._active:
            return
        self._active = False
        with self._store_errors("rollback"):
            self.storage.rollback()

    def read_case_with_customer(self, case_id: int) -> Tuple[CollectionCase, Customer]:
        """
        Load a case joined with its customer.

        Raises:
            CaseNotFoundError: if the case (or its customer) does not exist
        """
        with self._store_errors("read_case_with_customer"):
            case_data = self.storage.load(CASES_TABLE, case_id)
            if not case_data:
                raise CaseNotFoundError("case", case_id)

            customer_data = self.storage.load(CUSTOMERS_TABLE, case_data['customer_id'])
            if not customer_data:
                raise CaseNotFoundError("customer", case_data['customer_id'])

            return CollectionCase.from_dict(case_data), Customer.from_dict(customer_data)

    def conditional_update_case(
        self,
        case_id: int,
        expected_version: int,
        new_stage: CaseStage,
        new_assigned_to: Optional[str],
        new_status: CaseStatus
    ) -> int:
        """
        Update stage/assignee/status and bump the version, but only if the
        case is still at expected_version.

        Returns:
            Affected row count (0 means a concurrent writer got there first)
        """
        with self._store_errors("conditional_update_case"):
            return self.storage.update_if(
                CASES_TABLE,
                case_id,
                expected={'version': expected_version},
                changes={
                    'stage': new_stage.value,
                    'assigned_to': new_assigned_to,
                    'status': new_status.value,
                    'version': expected_version + 1,
                    'updated_at': datetime.now(timezone.utc).isoformat()
                }
            )

    def insert_decision(self, case_id: int, matched_rules: Sequence[str], reason: str) -> RuleDecision:
        """Append the audit record for this run"""
        with self._store_errors("insert_decision"):
            return self.audit_trail.record_decision(case_id, matched_rules, reason)
