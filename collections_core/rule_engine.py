"""
Rule Engine Module

Folds an ordered RuleSet over a case's current attributes to produce an
assignment decision. Evaluation is pure: no I/O, no shared state, safe to
call from any number of concurrent assignment runs.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from .delinquency import CaseStage
from .rules import Rule, RuleCategory, RuleSet


NO_MATCH_REASON = "No rules matched; assignment unchanged"
REASON_SEPARATOR = "; "
UNASSIGNED_LABEL = "null"


@dataclass(frozen=True)
class AssignmentDecision:
    """Outcome of evaluating the policy against one case"""
    stage: CaseStage
    assigned_to: Optional[str]
    matched_rules: Tuple[str, ...]
    reason: str

    @property
    def matched(self) -> bool:
        return bool(self.matched_rules)


def _format_number(value: Union[int, float]) -> str:
    """Render 92.0 as 92 so reasons read the same for int and float inputs"""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _format_assignee(assigned_to: Optional[str]) -> str:
    return assigned_to if assigned_to is not None else UNASSIGNED_LABEL


class RuleEngine:
    """
    Sequential last-write-wins evaluation of assignment rules.

    Later matching rules take priority for the fields they set. A rule that
    does not set a field leaves whatever an earlier rule (or the current
    case state) put there.
    """

    def evaluate(
        self,
        dpd: int,
        risk_score: Union[int, float],
        current_stage: CaseStage,
        current_assigned_to: Optional[str],
        rule_set: RuleSet
    ) -> AssignmentDecision:
        """
        Evaluate the rule set for one case.

        Args:
            dpd: Current days past due of the case
            risk_score: Customer risk score
            current_stage: Stage the case is in now
            current_assigned_to: Current assignee label (may be None)
            rule_set: Ordered policy to apply

        Returns:
            AssignmentDecision with the resulting stage/assignee, the names of
            matched rules in evaluation order and a human-readable reason
        """
        stage = current_stage
        assigned_to = current_assigned_to
        matched_rules: List[str] = []
        reason_parts: List[str] = []

        for rule in rule_set:
            if not rule.matches(dpd, risk_score):
                continue

            matched_rules.append(rule.name)
            action = rule.action

            if action.stage is not None:
                stage = action.stage

            if action.assign_group is not None:
                assigned_to = action.assign_group

            if action.override and action.assigned_to is not None:
                assigned_to = action.assigned_to

            reason_parts.append(self._reason_fragment(rule, dpd, risk_score, stage, assigned_to))

        if reason_parts:
            reason = REASON_SEPARATOR.join(reason_parts)
        else:
            reason = NO_MATCH_REASON

        return AssignmentDecision(
            stage=stage,
            assigned_to=assigned_to,
            matched_rules=tuple(matched_rules),
            reason=reason
        )

    def _reason_fragment(
        self,
        rule: Rule,
        dpd: int,
        risk_score: Union[int, float],
        stage: CaseStage,
        assigned_to: Optional[str]
    ) -> str:
        """Audit phrasing for one matched rule, chosen by its category"""
        if rule.category == RuleCategory.DPD:
            target = rule.action.assign_group if rule.action.assign_group is not None else stage.value
            return f"dpd={_format_number(dpd)} -> {target}"

        if rule.category == RuleCategory.RISK:
            suffix = " override" if rule.action.override else ""
            return f"riskScore={_format_number(risk_score)} -> {_format_assignee(assigned_to)}{suffix}"

        return rule.name
