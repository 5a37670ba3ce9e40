"""
Decision Audit Module

Hash-chained, append-only record of every assignment run. Each decision
carries the SHA-256 hash of the previous decision, so any edited, removed
or reordered record breaks the chain and is reported by verify_integrity.
"""

import hashlib
import json
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Sequence

from .storage import StorageInterface, StorageRecord


@dataclass
class RuleDecision(StorageRecord):
    """
    Immutable audit record of one assignment run
    """
    case_id: int
    matched_rules: List[str] = field(default_factory=list)  # Rule names in evaluation order
    reason: str = ""
    previous_hash: str = ""  # Hash of the previous decision for chaining
    current_hash: str = ""   # SHA-256 hash of this decision

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this decision
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'case_id': self.case_id,
            'matched_rules': list(self.matched_rules),
            'reason': self.reason,
            'previous_hash': self.previous_hash
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()


class DecisionAuditTrail:
    """
    Append-only, hash-chained store of rule decisions.

    Writes go through the storage passed in, so a decision recorded inside
    a transaction is committed or rolled back together with the case update.
    Allocating the id opens the storage write phase, which serializes
    chaining across threads and processes sharing the store.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "rule_decisions"):
        self.storage = storage
        self.table_name = table_name

    def _load_last_hash(self) -> str:
        """Hash of the most recent decision, or "" for an empty trail"""
        decisions = self.storage.load_all(self.table_name)
        if decisions:
            return decisions[-1].get('current_hash', "")
        return ""

    def record_decision(self, case_id: int, matched_rules: Sequence[str], reason: str) -> RuleDecision:
        """
        Append a decision to the trail

        Args:
            case_id: Case the assignment run was for
            matched_rules: Names of matched rules in evaluation order
            reason: Human-readable trace of the decision

        Returns:
            Stored RuleDecision with its chain hashes
        """
        with self.storage.atomic():
            now = datetime.now(timezone.utc)

            decision = RuleDecision(
                id=self.storage.next_id(self.table_name),
                created_at=now,
                updated_at=now,
                case_id=case_id,
                matched_rules=list(matched_rules),
                reason=reason,
                previous_hash=self._load_last_hash()
            )
            decision.current_hash = decision.calculate_hash()

            self.storage.save(self.table_name, decision.id, decision.to_dict())
            return decision

    def get_decisions_for_case(self, case_id: int, limit: Optional[int] = None) -> List[RuleDecision]:
        """
        Get decisions for a case, oldest first

        Args:
            case_id: Case to look up
            limit: Return only the most recent N decisions

        Returns:
            List of RuleDecision objects in chain order
        """
        decisions_data = self.storage.find(self.table_name, {'case_id': case_id})
        decisions = [RuleDecision.from_dict(data) for data in decisions_data]
        decisions.sort(key=lambda d: d.id)

        if limit:
            decisions = decisions[-limit:]

        return decisions

    def get_decision_by_id(self, decision_id: int) -> Optional[RuleDecision]:
        """Get a specific decision by ID"""
        data = self.storage.load(self.table_name, decision_id)
        if data:
            return RuleDecision.from_dict(data)
        return None

    def count_decisions(self, case_id: Optional[int] = None) -> int:
        """Total number of decisions, optionally for one case"""
        if case_id is None:
            return self.storage.count(self.table_name)
        return len(self.storage.find(self.table_name, {'case_id': case_id}))

    def get_latest_hash(self) -> str:
        """Get the hash of the most recent decision"""
        return self._load_last_hash()

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire decision chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_decisions': 0,
            'hash_errors': [],
            'chain_breaks': [],
            'details': {}
        }

        decisions_data = self.storage.load_all(self.table_name)
        if not decisions_data:
            return result

        decisions = [RuleDecision.from_dict(data) for data in decisions_data]
        decisions.sort(key=lambda d: d.id)
        result['total_decisions'] = len(decisions)

        previous_hash = ""
        for position, decision in enumerate(decisions):
            if not decision.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'decision_id': decision.id,
                    'position': position,
                    'expected_hash': decision.calculate_hash(),
                    'actual_hash': decision.current_hash
                })

            if decision.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'decision_id': decision.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': decision.previous_hash
                })
            previous_hash = decision.current_hash

        result['details'] = {
            'first_decision_time': decisions[0].created_at.isoformat(),
            'last_decision_time': decisions[-1].created_at.isoformat(),
            'cases': sorted(set(d.case_id for d in decisions))
        }

        return result
