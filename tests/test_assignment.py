"""
Test suite for the assignment coordinator

Tests the read-evaluate-update-audit run: version handling, the mandatory
decision record, conflicts (stale versions and lost races), rollback on
store failure, and metrics.
"""

import pytest
import threading
from datetime import datetime, timezone, timedelta

from collections_core.assignment import NO_CHANGES_SUFFIX, AssignmentCoordinator
from collections_core.audit import DecisionAuditTrail
from collections_core.cases import CaseManager, CaseStatus
from collections_core.config import CollectionsConfig
from collections_core.delinquency import CaseStage
from collections_core.errors import AssignmentConflictError, CaseNotFoundError, StoreError
from collections_core.metrics import AssignmentMetrics
from collections_core.rule_engine import NO_MATCH_REASON, RuleEngine
from collections_core.rules import RuleSet, load_rule_set
from collections_core.storage import InMemoryStorage, SQLiteStorage
from collections_core.system import CollectionsSystem
from collections_core.unit_of_work import CaseUnitOfWork


NOW = datetime(2024, 6, 15, 9, 30, tzinfo=timezone.utc)


class RecordingRuleEngine(RuleEngine):
    """Counts evaluations"""

    def __init__(self):
        self.calls = 0

    def evaluate(self, *args, **kwargs):
        self.calls += 1
        return super().evaluate(*args, **kwargs)


class BarrierRuleEngine(RuleEngine):
    """Holds every run at evaluation until all parties have read the case"""

    def __init__(self, parties):
        self.barrier = threading.Barrier(parties, timeout=5)

    def evaluate(self, *args, **kwargs):
        self.barrier.wait()
        return super().evaluate(*args, **kwargs)


class FailingDecisionStorage(InMemoryStorage):
    """Storage whose decision table rejects writes"""

    def save(self, table, record_id, data):
        if table == "rule_decisions":
            raise RuntimeError("disk full")
        super().save(table, record_id, data)


@pytest.fixture
def storage():
    """In-memory storage for tests"""
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    """Decision audit trail for tests"""
    return DecisionAuditTrail(storage)


@pytest.fixture
def metrics():
    return AssignmentMetrics()


@pytest.fixture
def rule_set():
    """Packaged assignment policy"""
    return load_rule_set()


@pytest.fixture
def case_manager(storage, audit_trail, metrics):
    return CaseManager(storage, audit_trail, metrics)


@pytest.fixture
def coordinator(storage, rule_set, audit_trail, metrics):
    """Assignment coordinator instance for tests"""
    return AssignmentCoordinator(storage, rule_set, audit_trail=audit_trail, metrics=metrics)


def open_case(case_manager, risk_score, days_overdue, assigned_to=None):
    customer = case_manager.create_customer("Test Borrower", risk_score)
    loan = case_manager.create_loan(customer.id, NOW - timedelta(days=days_overdue), "5000")
    return case_manager.open_case(customer.id, loan.id, now=NOW, assigned_to=assigned_to)


class TestAssignmentRun:
    """Test a single assignment run"""

    def test_high_risk_case_goes_to_senior_agent(self, coordinator, case_manager, audit_trail):
        case = open_case(case_manager, 92, 12)

        result = coordinator.run(case.id)

        assert result.case_id == case.id
        assert result.stage == CaseStage.HARD
        assert result.assigned_to == "SeniorAgent"
        assert result.version == 1
        assert result.updated
        assert result.decision.matched_rules == ("DPD_8_30", "RISK_GT_80_OVERRIDE")
        assert result.decision.reason == "dpd=12 -> Tier2; riskScore=92 -> SeniorAgent override"

        stored = case_manager.get_case(case.id)
        assert stored.stage == CaseStage.HARD
        assert stored.assigned_to == "SeniorAgent"
        assert stored.status == CaseStatus.IN_PROGRESS
        assert stored.version == 1

        decisions = audit_trail.get_decisions_for_case(case.id)
        assert len(decisions) == 1
        assert decisions[0].id == result.decision.decision_id
        assert decisions[0].matched_rules == ["DPD_8_30", "RISK_GT_80_OVERRIDE"]
        assert decisions[0].reason == result.decision.reason

    def test_legal_case_moves_to_legal_queue(self, coordinator, case_manager):
        case = open_case(case_manager, 78, 40, assigned_to="Tier2")

        result = coordinator.run(case.id, expected_version=0)

        assert result.stage == CaseStage.LEGAL
        assert result.assigned_to == "Legal"
        assert result.decision.matched_rules == ("DPD_GT_30",)
        assert result.decision.reason == "dpd=40 -> Legal"

    def test_open_case_with_matching_assignment_still_moves_to_in_progress(self, coordinator, case_manager):
        case = open_case(case_manager, 45, 5, assigned_to="Tier1")

        result = coordinator.run(case.id)

        # Stage and assignee already match; only the status changes
        assert result.updated
        assert result.version == 1
        assert result.decision.reason == "dpd=5 -> Tier1"
        assert case_manager.get_case(case.id).status == CaseStatus.IN_PROGRESS

    def test_result_serialization(self, coordinator, case_manager):
        case = open_case(case_manager, 92, 12)
        result = coordinator.run(case.id)

        assert result.to_dict() == {
            "case_id": case.id,
            "stage": "HARD",
            "assigned_to": "SeniorAgent",
            "version": 1,
            "decision": {
                "decision_id": result.decision.decision_id,
                "matched_rules": ["DPD_8_30", "RISK_GT_80_OVERRIDE"],
                "reason": "dpd=12 -> Tier2; riskScore=92 -> SeniorAgent override"
            }
        }


class TestRepeatedRuns:
    """Test that unchanged outcomes keep the version but are still audited"""

    def test_version_stays_constant_across_runs(self, coordinator, case_manager, audit_trail):
        case = open_case(case_manager, 92, 12)
        first = coordinator.run(case.id)

        runs = [coordinator.run(case.id, expected_version=first.version) for _ in range(3)]

        assert [r.version for r in runs] == [1, 1, 1]
        assert not any(r.updated for r in runs)
        for r in runs:
            assert r.decision.reason.endswith(NO_CHANGES_SUFFIX)
            assert r.decision.reason == first.decision.reason + NO_CHANGES_SUFFIX

        assert case_manager.get_case(case.id).version == 1
        assert audit_trail.count_decisions(case.id) == 4

    def test_no_matching_rules(self, storage, audit_trail, case_manager):
        coordinator = AssignmentCoordinator(storage, RuleSet(), audit_trail=audit_trail)
        case = open_case(case_manager, 10, 3, assigned_to="Tier1")

        first = coordinator.run(case.id)
        assert first.version == 1
        assert first.stage == CaseStage.SOFT
        assert first.assigned_to == "Tier1"
        assert first.decision.matched_rules == ()
        assert first.decision.reason == NO_MATCH_REASON

        second = coordinator.run(case.id)
        assert second.version == 1
        assert second.decision.reason == "No rules matched; assignment unchanged; no case field changes"

    def test_each_change_bumps_version_by_one(self, storage, audit_trail, case_manager):
        case = open_case(case_manager, 50, 12)
        hard_rules = RuleSet.from_definitions([
            {"name": "DPD_ANY", "then": {"stage": "HARD", "assignGroup": "Tier2"}}
        ])
        legal_rules = RuleSet.from_definitions([
            {"name": "DPD_ANY", "then": {"stage": "LEGAL", "assignGroup": "Legal"}}
        ])

        first = AssignmentCoordinator(storage, hard_rules, audit_trail=audit_trail).run(case.id, 0)
        second = AssignmentCoordinator(storage, legal_rules, audit_trail=audit_trail).run(case.id, 1)

        assert (first.version, second.version) == (1, 2)
        assert second.stage == CaseStage.LEGAL
        assert not second.decision.reason.endswith(NO_CHANGES_SUFFIX)


class TestConflicts:
    """Test optimistic concurrency failures"""

    def test_stale_expected_version(self, storage, rule_set, audit_trail, case_manager):
        engine = RecordingRuleEngine()
        coordinator = AssignmentCoordinator(storage, rule_set, audit_trail=audit_trail, rule_engine=engine)
        case = open_case(case_manager, 92, 12)

        with pytest.raises(AssignmentConflictError) as exc_info:
            coordinator.run(case.id, expected_version=3)

        assert str(exc_info.value) == "Assignment conflict: expectedVersion=3, currentVersion=0"
        assert exc_info.value.expected_version == 3
        assert exc_info.value.current_version == 0
        assert engine.calls == 0
        assert audit_trail.count_decisions() == 0
        assert case_manager.get_case(case.id).version == 0

    def test_expected_version_after_update_is_stale(self, coordinator, case_manager):
        case = open_case(case_manager, 92, 12)
        coordinator.run(case.id, expected_version=0)

        with pytest.raises(AssignmentConflictError, match="expectedVersion=0, currentVersion=1"):
            coordinator.run(case.id, expected_version=0)

    @pytest.mark.parametrize("backend", ["memory", "sqlite"])
    def test_concurrent_runs_only_one_wins(self, backend, rule_set, metrics, tmp_path):
        if backend == "memory":
            storage = InMemoryStorage()
        else:
            storage = SQLiteStorage(tmp_path / "race.db", timeout=5.0)
        audit_trail = DecisionAuditTrail(storage)
        case_manager = CaseManager(storage, audit_trail, metrics)
        engine = BarrierRuleEngine(parties=2)
        coordinator = AssignmentCoordinator(
            storage, rule_set, audit_trail=audit_trail, rule_engine=engine, metrics=metrics
        )
        case = open_case(case_manager, 92, 12)

        results = []
        errors = []

        def run_assignment():
            try:
                results.append(coordinator.assign(case.id, expected_version=0))
            except AssignmentConflictError as e:
                errors.append(e)

        workers = [threading.Thread(target=run_assignment) for _ in range(2)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        assert len(results) == 1
        assert len(errors) == 1
        assert str(errors[0]) == "Assignment conflict: case was modified by another process"

        stored = case_manager.get_case(case.id)
        assert stored.version == 1
        assert audit_trail.count_decisions(case.id) == 1
        assert audit_trail.verify_integrity()["valid"]
        assert metrics.assignment_runs_total == 2
        assert metrics.assignment_conflicts_total == 1
        storage.close()

    def test_run_waits_for_uncommitted_update_to_roll_back(self, storage, coordinator, case_manager, audit_trail):
        case = open_case(case_manager, 92, 12)
        written = threading.Event()
        release = threading.Event()

        def abandoned_update():
            with pytest.raises(RuntimeError):
                with CaseUnitOfWork(storage, audit_trail) as uow:
                    uow.conditional_update_case(case.id, 0, CaseStage.LEGAL, "Legal", CaseStatus.IN_PROGRESS)
                    written.set()
                    release.wait(timeout=5)
                    raise RuntimeError("abandoned")

        worker = threading.Thread(target=abandoned_update)
        worker.start()
        assert written.wait(timeout=5)
        threading.Timer(0.2, release.set).start()

        # Blocks on the writer lock until the other unit of work rolls back
        result = coordinator.assign(case.id)
        worker.join()

        stored = case_manager.get_case(case.id)
        assert result.version == 1
        assert stored.version == result.version
        assert stored.assigned_to == "SeniorAgent"
        assert audit_trail.count_decisions(case.id) == 1
        assert audit_trail.verify_integrity()["valid"]


class TestFailures:
    """Test not-found and store failures leave nothing behind"""

    def test_missing_case(self, coordinator, audit_trail, metrics):
        with pytest.raises(CaseNotFoundError, match="Case 404 not found"):
            coordinator.assign(404)

        assert audit_trail.count_decisions() == 0
        assert metrics.assignment_runs_total == 1
        assert metrics.assignment_conflicts_total == 0

    def test_decision_write_failure_rolls_back_case_update(self, rule_set):
        storage = FailingDecisionStorage()
        audit_trail = DecisionAuditTrail(storage)
        case_manager = CaseManager(storage, audit_trail)
        coordinator = AssignmentCoordinator(storage, rule_set, audit_trail=audit_trail)
        case = open_case(case_manager, 92, 12)

        with pytest.raises(StoreError, match="disk full") as exc_info:
            coordinator.assign(case.id)

        assert exc_info.value.retryable
        stored = case_manager.get_case(case.id)
        assert stored.version == 0
        assert stored.status == CaseStatus.OPEN
        assert stored.assigned_to is None
        assert not storage.in_transaction


class TestMetrics:
    """Test run counters"""

    def test_runs_and_conflicts_are_counted(self, coordinator, case_manager, metrics):
        case = open_case(case_manager, 92, 12)

        coordinator.assign(case.id)
        coordinator.assign(case.id, expected_version=1)
        with pytest.raises(AssignmentConflictError):
            coordinator.assign(case.id, expected_version=0)

        assert metrics.assignment_runs_total == 3
        assert metrics.assignment_conflicts_total == 1

    def test_disabled_metrics_stay_zero(self, storage, rule_set, audit_trail, case_manager):
        metrics = AssignmentMetrics(enabled=False)
        coordinator = AssignmentCoordinator(storage, rule_set, audit_trail=audit_trail, metrics=metrics)
        case = open_case(case_manager, 92, 12)

        coordinator.assign(case.id)
        assert metrics.snapshot()["business"]["assignment_runs_total"] == 0


class TestSQLiteAssignment:
    """End-to-end runs against the SQLite backend"""

    @pytest.fixture
    def system(self, tmp_path):
        config = CollectionsConfig(database_url=f"sqlite:///{tmp_path / 'collections.db'}")
        system = CollectionsSystem(config=config)
        yield system
        system.close()

    def test_run_and_repeat(self, system):
        case = open_case(system.case_manager, 92, 12)

        first = system.coordinator.assign(case.id, expected_version=0)
        second = system.coordinator.assign(case.id, expected_version=1)

        assert first.version == 1
        assert second.version == 1
        assert second.decision.reason.endswith(NO_CHANGES_SUFFIX)
        assert system.case_manager.get_case(case.id).assigned_to == "SeniorAgent"
        assert system.audit_trail.count_decisions(case.id) == 2
        assert system.audit_trail.verify_integrity()["valid"]

    def test_conflict_writes_nothing(self, system):
        case = open_case(system.case_manager, 92, 12)

        with pytest.raises(AssignmentConflictError):
            system.coordinator.assign(case.id, expected_version=7)

        assert system.audit_trail.count_decisions() == 0
        assert system.case_manager.get_case(case.id).version == 0
        assert not system.storage.in_transaction
