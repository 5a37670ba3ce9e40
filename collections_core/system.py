"""
System Wiring

Builds every component once at process start. The rule set is loaded and
validated here; an invalid policy raises RuleSetValidationError and the
process must not start serving.
"""

import logging
from typing import Optional

from .assignment import AssignmentCoordinator
from .audit import DecisionAuditTrail
from .cases import CaseManager
from .config import CollectionsConfig, get_config
from .metrics import AssignmentMetrics
from .rule_engine import RuleEngine
from .rules import RuleSet, load_rule_set
from .storage import StorageInterface, create_storage


logger = logging.getLogger(__name__)


class CollectionsSystem:
    """Collections engine with all components initialized"""

    def __init__(
        self,
        config: Optional[CollectionsConfig] = None,
        storage: Optional[StorageInterface] = None,
        rule_set: Optional[RuleSet] = None
    ):
        self.config = config or get_config()

        # Policy first: nothing else is worth building if it is invalid
        self.rule_set = rule_set if rule_set is not None else load_rule_set(self.config.rules_path)

        self.storage = storage or create_storage(
            self.config.database_url, timeout=self.config.transaction_timeout
        )

        self.metrics = AssignmentMetrics(enabled=self.config.enable_metrics)
        self.audit_trail = DecisionAuditTrail(self.storage)
        self.rule_engine = RuleEngine()
        self.case_manager = CaseManager(self.storage, self.audit_trail, self.metrics)
        self.coordinator = AssignmentCoordinator(
            self.storage,
            self.rule_set,
            audit_trail=self.audit_trail,
            rule_engine=self.rule_engine,
            metrics=self.metrics
        )

        logger.info(f"Collections system ready with {len(self.rule_set)} rules: {', '.join(self.rule_set.names)}")

    def close(self) -> None:
        """Release the storage backend"""
        self.storage.close()
