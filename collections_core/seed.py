"""
Demo data: three borrowers at 5, 12 and 40 days past due.
"""

from datetime import datetime, timezone, timedelta
from typing import List, Optional
import logging

from .cases import CollectionCase, LoanStatus
from .system import CollectionsSystem


logger = logging.getLogger(__name__)

DEMO_BORROWERS = [
    # name, phone, email, risk score, principal, outstanding, days overdue, initial assignee
    ("Anita Rao", "+1-555-0101", "anita.rao@example.com", 45, "8000", "3200", 5, "Tier1"),
    ("Carlos Mendez", "+1-555-0102", "carlos.mendez@example.com", 92, "16000", "9600", 12, "SeniorAgent"),
    ("Mina Khan", "+1-555-0103", "mina.khan@example.com", 78, "12000", "12000", 40, "Legal"),
]


def seed_demo_data(system: CollectionsSystem, now: Optional[datetime] = None) -> List[CollectionCase]:
    """Create demo customers, loans and cases unless customers already exist"""
    manager = system.case_manager
    if system.storage.count(manager.customers_table) > 0:
        logger.info("Demo data skipped: customers already exist")
        return []

    now = now or datetime.now(timezone.utc)
    cases = []
    for name, phone, email, risk_score, principal, outstanding, days_overdue, assignee in DEMO_BORROWERS:
        customer = manager.create_customer(name, risk_score, phone=phone, email=email, country="US")
        loan = manager.create_loan(
            customer.id,
            due_date=now - timedelta(days=days_overdue),
            principal=principal,
            outstanding=outstanding,
            status=LoanStatus.DELINQUENT
        )
        cases.append(manager.open_case(customer.id, loan.id, now=now, assigned_to=assignee))

    logger.info(f"Seeded {len(cases)} demo cases")
    return cases
