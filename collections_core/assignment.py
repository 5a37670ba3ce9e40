"""
Assignment Coordinator Module

Runs one rules-based assignment for one case inside a single unit of work:
read the case, check the caller's expected version, evaluate the policy,
conditionally update the case on its version and always append a decision
to the audit trail. Either all of it commits or none of it does.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
import logging

from .audit import DecisionAuditTrail
from .cases import CaseStatus
from .delinquency import CaseStage
from .errors import AssignmentConflictError, CaseNotFoundError, StoreError
from .logging_config import log_action
from .metrics import AssignmentMetrics
from .rule_engine import RuleEngine
from .rules import RuleSet
from .storage import StorageInterface
from .unit_of_work import CaseUnitOfWork


logger = logging.getLogger(__name__)

NO_CHANGES_SUFFIX = "; no case field changes"


@dataclass(frozen=True)
class DecisionSummary:
    """Audit decision as returned to the caller"""
    decision_id: int
    matched_rules: Tuple[str, ...]
    reason: str


@dataclass(frozen=True)
class AssignmentResult:
    """Case snapshot after an assignment run"""
    case_id: int
    stage: CaseStage
    assigned_to: Optional[str]
    version: int
    decision: DecisionSummary
    updated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "case_id": self.case_id,
            "stage": self.stage.value,
            "assigned_to": self.assigned_to,
            "version": self.version,
            "decision": {
                "decision_id": self.decision.decision_id,
                "matched_rules": list(self.decision.matched_rules),
                "reason": self.decision.reason
            }
        }


class AssignmentCoordinator:
    """Orchestrates assignment runs with optimistic concurrency and mandatory audit"""

    def __init__(
        self,
        storage: StorageInterface,
        rule_set: RuleSet,
        audit_trail: Optional[DecisionAuditTrail] = None,
        rule_engine: Optional[RuleEngine] = None,
        metrics: Optional[AssignmentMetrics] = None
    ):
        self.storage = storage
        self.rule_set = rule_set
        self.audit_trail = audit_trail or DecisionAuditTrail(storage)
        self.rule_engine = rule_engine or RuleEngine()
        self.metrics = metrics or AssignmentMetrics(enabled=False)

    def assign(self, case_id: int, expected_version: Optional[int] = None) -> AssignmentResult:
        """
        Entry point for the API layer: counts and logs the run around run().

        Raises:
            CaseNotFoundError: case does not exist
            AssignmentConflictError: stale expected_version or lost update race
            StoreError: store failure; nothing was persisted
        """
        self.metrics.increment_assignment_run()
        resource = f"case:{case_id}"

        try:
            result = self.run(case_id, expected_version)
        except AssignmentConflictError as e:
            self.metrics.increment_assignment_conflict()
            log_action(
                logger, "warning", str(e), action="case_assign_conflict", resource=resource,
                extra={"expected_version": e.expected_version, "current_version": e.current_version}
            )
            raise
        except CaseNotFoundError as e:
            log_action(logger, "warning", str(e), action="case_assign_not_found", resource=resource)
            raise
        except StoreError as e:
            logger.error(f"Assignment run for case {case_id} rolled back: {e}", exc_info=True)
            raise

        log_action(
            logger, "info", f"Assignment run for case {case_id} completed",
            action="case_assign", resource=resource,
            extra={
                "stage": result.stage.value,
                "assigned_to": result.assigned_to,
                "version": result.version,
                "updated": result.updated,
                "matched_rules": list(result.decision.matched_rules)
            }
        )
        return result

    def run(self, case_id: int, expected_version: Optional[int] = None) -> AssignmentResult:
        """
        Execute one assignment run atomically.

        Args:
            case_id: Case to assign
            expected_version: Version the caller last read; a mismatch is a conflict

        Returns:
            AssignmentResult with the resulting stage, assignee, version and decision
        """
        with CaseUnitOfWork(self.storage, self.audit_trail) as uow:
            case, customer = uow.read_case_with_customer(case_id)

            if expected_version is not None and expected_version != case.version:
                raise AssignmentConflictError(
                    f"Assignment conflict: expectedVersion={expected_version}, currentVersion={case.version}",
                    case_id=case_id,
                    expected_version=expected_version,
                    current_version=case.version
                )

            decision = self.rule_engine.evaluate(
                dpd=case.dpd,
                risk_score=customer.risk_score,
                current_stage=case.stage,
                current_assigned_to=case.assigned_to,
                rule_set=self.rule_set
            )

            should_update = (
                decision.stage != case.stage
                or decision.assigned_to != case.assigned_to
                or case.status != CaseStatus.IN_PROGRESS
            )

            version = case.version
            if should_update:
                affected = uow.conditional_update_case(
                    case_id,
                    expected_version=case.version,
                    new_stage=decision.stage,
                    new_assigned_to=decision.assigned_to,
                    new_status=CaseStatus.IN_PROGRESS
                )
                if affected == 0:
                    raise AssignmentConflictError(
                        "Assignment conflict: case was modified by another process",
                        case_id=case_id,
                        expected_version=case.version
                    )
                version = case.version + 1
                reason = decision.reason
            else:
                reason = decision.reason + NO_CHANGES_SUFFIX

            record = uow.insert_decision(case_id, decision.matched_rules, reason)

        return AssignmentResult(
            case_id=case.id,
            stage=decision.stage,
            assigned_to=decision.assigned_to,
            version=version,
            decision=DecisionSummary(
                decision_id=record.id,
                matched_rules=decision.matched_rules,
                reason=reason
            ),
            updated=should_update
        )
