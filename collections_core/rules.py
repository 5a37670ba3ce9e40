"""
Assignment Rules Module

Immutable, ordered assignment policy loaded once at process start from a JSON
resource. Definitions are parsed with pydantic and then checked for
semantic consistency; any problem makes the whole rule set invalid.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictFloat, StrictInt, ValidationError

from .delinquency import CaseStage
from .errors import RuleSetValidationError


logger = logging.getLogger(__name__)

DEFAULT_RULES_PATH = Path(__file__).parent / "data" / "rules.json"

Number = Union[int, float]


class RuleCategory(Enum):
    """Controls how a matched rule is phrased in the audit reason"""
    DPD = "DPD"
    RISK = "RISK"
    CUSTOM = "CUSTOM"

    @classmethod
    def from_rule_name(cls, name: str) -> 'RuleCategory':
        """Legacy fallback: derive the category from a DPD/RISK name prefix"""
        if name.startswith("DPD"):
            return cls.DPD
        if name.startswith("RISK"):
            return cls.RISK
        return cls.CUSTOM


@dataclass(frozen=True)
class NumericCondition:
    """
    Bounds on a numeric attribute. All set bounds must hold; a condition
    with no bounds matches everything.
    """
    min: Optional[Number] = None  # inclusive lower bound
    max: Optional[Number] = None  # inclusive upper bound
    gt: Optional[Number] = None   # exclusive lower bound

    def matches(self, value: Number) -> bool:
        if self.min is not None and value < self.min:
            return False
        if self.max is not None and value > self.max:
            return False
        if self.gt is not None and value <= self.gt:
            return False
        return True

    def validate(self, label: str) -> List[str]:
        """Return consistency problems for this condition"""
        problems = []
        if self.min is not None and self.max is not None and self.min > self.max:
            problems.append(f"{label}: min ({self.min}) is greater than max ({self.max})")
        if self.gt is not None and self.min is not None:
            problems.append(f"{label}: gt ({self.gt}) combined with min ({self.min}) is ambiguous")
        if self.gt is not None and self.max is not None and self.gt >= self.max:
            problems.append(f"{label}: gt ({self.gt}) leaves no value up to max ({self.max})")
        return problems

    def to_dict(self) -> Dict[str, Number]:
        return {k: v for k, v in (("min", self.min), ("max", self.max), ("gt", self.gt)) if v is not None}


@dataclass(frozen=True)
class RuleAction:
    """What a matching rule does to the running assignment"""
    stage: Optional[CaseStage] = None
    assign_group: Optional[str] = None
    assigned_to: Optional[str] = None
    override: bool = False


@dataclass(frozen=True)
class Rule:
    """A single named policy rule"""
    name: str
    category: RuleCategory
    action: RuleAction
    dpd: Optional[NumericCondition] = None
    risk_score: Optional[NumericCondition] = None

    def matches(self, dpd: Number, risk_score: Number) -> bool:
        """Both conditions must hold; a missing condition holds"""
        dpd_match = self.dpd is None or self.dpd.matches(dpd)
        risk_match = self.risk_score is None or self.risk_score.matches(risk_score)
        return dpd_match and risk_match

    def to_dict(self) -> Dict[str, Any]:
        when = {}
        if self.dpd is not None:
            when["dpd"] = self.dpd.to_dict()
        if self.risk_score is not None:
            when["riskScore"] = self.risk_score.to_dict()

        then: Dict[str, Any] = {}
        if self.action.stage is not None:
            then["stage"] = self.action.stage.value
        if self.action.assign_group is not None:
            then["assignGroup"] = self.action.assign_group
        if self.action.assigned_to is not None:
            then["assignedTo"] = self.action.assigned_to
        if self.action.override:
            then["override"] = True

        return {"name": self.name, "category": self.category.value, "when": when, "then": then}


# Configuration file schema

class _ConditionDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min: Optional[Union[StrictInt, StrictFloat]] = None
    max: Optional[Union[StrictInt, StrictFloat]] = None
    gt: Optional[Union[StrictInt, StrictFloat]] = None


class _WhenDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    dpd: Optional[_ConditionDefinition] = None
    risk_score: Optional[_ConditionDefinition] = Field(None, alias="riskScore")


class _ThenDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    stage: Optional[CaseStage] = None
    assign_group: Optional[str] = Field(None, alias="assignGroup", min_length=1)
    assigned_to: Optional[str] = Field(None, alias="assignedTo", min_length=1)
    override: Optional[StrictBool] = None


class _RuleDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    category: Optional[RuleCategory] = None
    when: _WhenDefinition = Field(default_factory=_WhenDefinition)
    then: _ThenDefinition = Field(default_factory=_ThenDefinition)


def _condition_from_definition(definition: Optional[_ConditionDefinition]) -> Optional[NumericCondition]:
    if definition is None:
        return None
    return NumericCondition(min=definition.min, max=definition.max, gt=definition.gt)


def _rule_from_definition(definition: _RuleDefinition) -> Rule:
    name = definition.name.strip()
    category = definition.category or RuleCategory.from_rule_name(name)
    action = RuleAction(
        stage=definition.then.stage,
        assign_group=definition.then.assign_group,
        assigned_to=definition.then.assigned_to,
        override=bool(definition.then.override)
    )
    return Rule(
        name=name,
        category=category,
        action=action,
        dpd=_condition_from_definition(definition.when.dpd),
        risk_score=_condition_from_definition(definition.when.risk_score)
    )


class RuleSet:
    """
    Immutable ordered collection of rules.

    Built once at start-up and passed explicitly to whatever evaluates it;
    there is no way to add, remove or reorder rules afterwards.
    """

    __slots__ = ("_rules", "_source")

    def __init__(self, rules: Sequence[Rule] = (), source: Optional[str] = None):
        object.__setattr__(self, "_rules", tuple(rules))
        object.__setattr__(self, "_source", source)

    def __setattr__(self, name, value):
        raise AttributeError("RuleSet is immutable")

    def __iter__(self) -> Iterator[Rule]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def __getitem__(self, index: int) -> Rule:
        return self._rules[index]

    def __repr__(self) -> str:
        return f"RuleSet(rules={len(self._rules)}, source={self._source!r})"

    @property
    def rules(self) -> Tuple[Rule, ...]:
        return self._rules

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(rule.name for rule in self._rules)

    @property
    def source(self) -> Optional[str]:
        return self._source

    @classmethod
    def from_definitions(cls, definitions: Any, source: Optional[str] = None) -> 'RuleSet':
        """
        Parse and validate raw rule definitions (as decoded from JSON).

        Raises:
            RuleSetValidationError: listing every problem found
        """
        if not isinstance(definitions, list):
            raise RuleSetValidationError(
                [f"rule set must be a JSON array, got {type(definitions).__name__}"], source
            )

        errors: List[str] = []
        rules: List[Rule] = []
        seen_names = set()

        for position, raw in enumerate(definitions):
            label = f"rule #{position}"
            if isinstance(raw, dict) and isinstance(raw.get("name"), str) and raw["name"].strip():
                label = f"rule '{raw['name'].strip()}'"

            try:
                definition = _RuleDefinition.model_validate(raw)
            except ValidationError as e:
                for problem in e.errors():
                    location = ".".join(str(part) for part in problem["loc"])
                    errors.append(f"{label}: {location or 'definition'}: {problem['msg']}")
                continue

            rule = _rule_from_definition(definition)

            if not rule.name:
                errors.append(f"{label}: name must not be empty")
            elif rule.name in seen_names:
                errors.append(f"{label}: duplicate rule name")
            seen_names.add(rule.name)

            if rule.dpd is not None:
                errors.extend(rule.dpd.validate(f"{label} when.dpd"))
            if rule.risk_score is not None:
                errors.extend(rule.risk_score.validate(f"{label} when.riskScore"))

            if rule.action.override and rule.action.assigned_to is None:
                logger.warning(f"{label}: override is set without assignedTo and has no effect")
            if rule.action.assigned_to is not None and not rule.action.override:
                logger.warning(f"{label}: assignedTo is ignored unless override is true")

            rules.append(rule)

        if errors:
            raise RuleSetValidationError(errors, source)

        if not rules:
            logger.warning(f"Rule set from {source or 'definitions'} is empty; assignments will never change")

        return cls(rules, source=source)


def load_rule_set(path: Optional[Union[str, Path]] = None) -> RuleSet:
    """
    Load the assignment policy from a JSON file.

    Args:
        path: Rules file; defaults to the packaged data/rules.json

    Returns:
        Validated immutable RuleSet

    Raises:
        RuleSetValidationError: if the file is missing, unreadable or invalid
    """
    rules_path = Path(path) if path else DEFAULT_RULES_PATH
    source = str(rules_path)

    try:
        with open(rules_path, "r", encoding="utf-8") as fh:
            definitions = json.load(fh)
    except FileNotFoundError:
        raise RuleSetValidationError(["rules file not found"], source)
    except json.JSONDecodeError as e:
        raise RuleSetValidationError([f"invalid JSON: {e}"], source)

    rule_set = RuleSet.from_definitions(definitions, source=source)
    logger.info(f"Loaded {len(rule_set)} assignment rules from {source}")
    return rule_set
