from __future__ import annotations

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from autopilot.db import _enable_sqlite_foreign_keys
from autopilot.heuristics import RuleBasedScorer
from autopilot.models import Base


# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(eng, "connect", _enable_sqlite_foreign_keys)
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory):
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


# ---------------------------------------------------------------------------
# Fixtures: sample input
# ---------------------------------------------------------------------------


@pytest.fixture()
def form_data() -> dict:
    """A valid submission that the rule-based scorer rates 86 (Very Good)."""
    return {
        "contact_name": "Dana Whitfield",
        "contact_email": "dana@northwindlogistics.com",
        "contact_phone": "+1 555 0100",
        "company_name": "Northwind Logistics",
        "project_name": "Dispatch Copilot",
        "project_type": "ai-integration",
        "project_description": (
            "We want a machine learning assistant that drafts dispatch plans for our "
            "drivers and flags late deliveries before customers call us."
        ),
        "key_requirements": "Route suggestions, ETA prediction, automation of daily dispatch emails",
        "business_goals": "Reduce dispatcher overtime",
        "success_metrics": "30% fewer late deliveries",
        "timeline": "3-6-months",
        "budget_range": "50k-100k",
        "budget_flexibility": "somewhat-flexible",
        "preferred_tech_stack": ["python", "fastapi", "postgresql"],
        "existing_systems": "Legacy TMS on SQL Server",
        "integration_requirements": "Read-only access to the TMS database",
    }


@pytest.fixture()
def low_form_data(form_data) -> dict:
    """A valid submission that the rule-based scorer rates 44 (Poor)."""
    return {
        **form_data,
        "project_name": "Bakery Site",
        "project_type": "web-app",
        "project_description": (
            "We need a simple brochure website for our bakery with a menu page "
            "and a contact form."
        ),
        "key_requirements": "Menu page, contact form, photo gallery",
        "business_goals": None,
        "timeline": "1-2-weeks",
        "budget_range": "under-10k",
    }


@pytest.fixture()
def rules_scorer() -> RuleBasedScorer:
    return RuleBasedScorer()
