"""
Error Taxonomy

Errors raised by the assignment engine. Domain errors subclass ValueError so
callers that only catch ValueError keep working; storage failures subclass
RuntimeError and are safe to retry from scratch.
"""

from typing import List, Optional


class CollectionsError(Exception):
    """Base class for all collections engine errors"""


class CaseNotFoundError(CollectionsError, ValueError):
    """Referenced case (or customer/loan) does not exist"""

    def __init__(self, entity_type: str, entity_id):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.capitalize()} {entity_id} not found")


class AssignmentConflictError(CollectionsError, ValueError):
    """
    Optimistic concurrency check failed.

    Raised when the caller's expected version is stale or when a concurrent
    writer won the conditional update. Retry only after re-reading the case.
    """

    def __init__(self, message: str, case_id: Optional[int] = None,
                 expected_version: Optional[int] = None,
                 current_version: Optional[int] = None):
        self.case_id = case_id
        self.expected_version = expected_version
        self.current_version = current_version
        super().__init__(message)


class RuleSetValidationError(CollectionsError, ValueError):
    """Rule policy failed validation at load time"""

    def __init__(self, errors: List[str], source: Optional[str] = None):
        self.errors = list(errors)
        self.source = source
        where = f" in {source}" if source else ""
        details = "; ".join(self.errors)
        super().__init__(f"Invalid rule set{where}: {details}")


class StoreError(CollectionsError, RuntimeError):
    """Unexpected failure of the transactional store; the unit of work was rolled back"""

    retryable = True
