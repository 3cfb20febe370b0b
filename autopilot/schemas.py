"""Pydantic request/response schemas and intake form validation."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Mapping

from pydantic import BaseModel, EmailStr, Field, ValidationError, field_validator

# ---------------------------------------------------------------------------
# Option tables: (value, label)
# ---------------------------------------------------------------------------

PROJECT_TYPE_OPTIONS: tuple[tuple[str, str], ...] = (
    ("web-app", "Web Application"),
    ("mobile-app", "Mobile Application"),
    ("e-commerce", "E-commerce Platform"),
    ("ai-integration", "AI Integration"),
    ("data-analytics", "Data Analytics"),
    ("api-development", "API Development"),
    ("custom-software", "Custom Software"),
    ("other", "Other"),
)

TIMELINE_OPTIONS: tuple[tuple[str, str], ...] = (
    ("1-2-weeks", "1-2 weeks"),
    ("1-month", "1 month"),
    ("2-3-months", "2-3 months"),
    ("3-6-months", "3-6 months"),
    ("6+months", "6+ months"),
)

BUDGET_RANGE_OPTIONS: tuple[tuple[str, str], ...] = (
    ("under-10k", "Under $10,000"),
    ("10k-25k", "$10,000 - $25,000"),
    ("25k-50k", "$25,000 - $50,000"),
    ("50k-100k", "$50,000 - $100,000"),
    ("100k+", "$100,000+"),
)

BUDGET_FLEXIBILITY_OPTIONS: tuple[tuple[str, str], ...] = (
    ("fixed", "Fixed"),
    ("somewhat-flexible", "Somewhat Flexible"),
    ("very-flexible", "Very Flexible"),
)

# Suggestions only; preferred_tech_stack accepts any tag.
TECH_STACK_OPTIONS: tuple[tuple[str, str], ...] = (
    ("react", "React"), ("vue", "Vue.js"), ("angular", "Angular"), ("nextjs", "Next.js"),
    ("nodejs", "Node.js"), ("python", "Python"), ("django", "Django"), ("flask", "Flask"),
    ("fastapi", "FastAPI"), ("php", "PHP"), ("laravel", "Laravel"), ("ruby", "Ruby"),
    ("rails", "Ruby on Rails"), ("java", "Java"), ("spring", "Spring Boot"), ("csharp", "C#"),
    ("dotnet", ".NET"), ("go", "Go"), ("rust", "Rust"), ("swift", "Swift"),
    ("kotlin", "Kotlin"), ("flutter", "Flutter"), ("react-native", "React Native"),
    ("mongodb", "MongoDB"), ("postgresql", "PostgreSQL"), ("mysql", "MySQL"),
    ("redis", "Redis"), ("aws", "AWS"), ("azure", "Azure"), ("gcp", "Google Cloud"),
    ("docker", "Docker"), ("kubernetes", "Kubernetes"),
)

PRIORITY_VALUES = ("low", "medium", "high", "urgent")


def option_label(options: tuple[tuple[str, str], ...], value: str) -> str:
    """Human label for *value*, or *value* itself when it is not a known option."""
    for opt_value, label in options:
        if opt_value == value:
            return label
    return value


ProjectType = Literal[
    "web-app", "mobile-app", "e-commerce", "ai-integration",
    "data-analytics", "api-development", "custom-software", "other",
]
Timeline = Literal["1-2-weeks", "1-month", "2-3-months", "3-6-months", "6+months"]
BudgetRange = Literal["under-10k", "10k-25k", "25k-50k", "50k-100k", "100k+"]
BudgetFlexibility = Literal["fixed", "somewhat-flexible", "very-flexible"]
Priority = Literal["low", "medium", "high", "urgent"]
Status = Literal[
    "submitted", "under-review", "qualified", "disqualified", "scheduled", "completed", "archived",
]

_OPTIONAL_TEXT_FIELDS = (
    "contact_phone", "company_name", "business_goals", "success_metrics",
    "existing_systems", "integration_requirements", "budget_flexibility",
)

# ---------------------------------------------------------------------------
# Intake form input
# ---------------------------------------------------------------------------


class _BlankAsNone(BaseModel):
    @field_validator(*_OPTIONAL_TEXT_FIELDS, mode="before", check_fields=False)
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


class IntakeFormCreate(_BlankAsNone):
    user_id: str | None = None

    contact_name: str = Field(min_length=2, max_length=100)
    contact_email: EmailStr
    contact_phone: str | None = None
    company_name: str | None = None

    project_name: str = Field(min_length=3, max_length=200)
    project_type: ProjectType
    project_description: str = Field(min_length=50, max_length=2000)

    key_requirements: str = Field(min_length=20, max_length=1000)
    business_goals: str | None = None
    success_metrics: str | None = None

    timeline: Timeline
    budget_range: BudgetRange
    budget_flexibility: BudgetFlexibility | None = None

    preferred_tech_stack: list[str] = []
    existing_systems: str | None = None
    integration_requirements: str | None = None

    preferred_meeting_times: list[str] = []
    timezone: str = "UTC"

    priority: Priority = "medium"
    metadata: dict[str, Any] = {}


class IntakeFormUpdate(_BlankAsNone):
    contact_name: str | None = Field(None, min_length=2, max_length=100)
    contact_email: EmailStr | None = None
    contact_phone: str | None = None
    company_name: str | None = None
    project_name: str | None = Field(None, min_length=3, max_length=200)
    project_type: ProjectType | None = None
    project_description: str | None = Field(None, min_length=50, max_length=2000)
    key_requirements: str | None = Field(None, min_length=20, max_length=1000)
    business_goals: str | None = None
    success_metrics: str | None = None
    timeline: Timeline | None = None
    budget_range: BudgetRange | None = None
    budget_flexibility: BudgetFlexibility | None = None
    preferred_tech_stack: list[str] | None = None
    existing_systems: str | None = None
    integration_requirements: str | None = None
    preferred_meeting_times: list[str] | None = None
    timezone: str | None = None
    status: Status | None = None
    priority: Priority | None = None
    meeting_scheduled_at: datetime | None = None
    meeting_completed_at: datetime | None = None
    metadata: dict[str, Any] | None = None


class IntakeScoreUpdate(BaseModel):
    budget_score: float | None = Field(None, ge=0, le=100)
    timeline_score: float | None = Field(None, ge=0, le=100)
    technical_complexity_score: float | None = Field(None, ge=0, le=100)
    business_impact_score: float | None = Field(None, ge=0, le=100)
    market_potential_score: float | None = Field(None, ge=0, le=100)
    overall_score: float | None = Field(None, ge=0, le=100)
    confidence_level: float | None = Field(None, ge=0, le=100)
    ai_analysis: dict[str, Any] | None = None
    risk_factors: list[str] | None = None
    opportunity_factors: list[str] | None = None
    recommended_approach: str | None = None
    estimated_project_duration: str | None = None
    suggested_team_size: int | None = Field(None, ge=1)
    next_steps: list[str] | None = None


class TransitionRequest(BaseModel):
    """A reviewer's status change.  System moves happen only inside scoring."""
    status: Status


# ---------------------------------------------------------------------------
# Validation result
# ---------------------------------------------------------------------------


@dataclass
class FieldViolation:
    field: str
    message: str


@dataclass
class ValidationResult:
    ok: bool
    value: IntakeFormCreate | None = None
    errors: list[FieldViolation] = field(default_factory=list)


def violations_from(exc: ValidationError) -> list[FieldViolation]:
    """Flatten a pydantic error into one violation per failing field location."""
    out: list[FieldViolation] = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "__root__"
        out.append(FieldViolation(field=loc, message=err.get("msg", "Invalid value")))
    return out


def validate_intake(data: Mapping[str, Any]) -> ValidationResult:
    """Validate a candidate intake form, collecting every violation at once."""
    try:
        return ValidationResult(ok=True, value=IntakeFormCreate.model_validate(dict(data)))
    except ValidationError as exc:
        return ValidationResult(ok=False, errors=violations_from(exc))


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class IntakeScoreOut(BaseModel):
    id: str
    intake_form_id: str
    budget_score: float
    timeline_score: float
    technical_complexity_score: float
    business_impact_score: float
    market_potential_score: float
    overall_score: float
    confidence_level: float
    ai_analysis: dict[str, Any] = {}
    risk_factors: list[str] = []
    opportunity_factors: list[str] = []
    recommended_approach: str | None = None
    estimated_project_duration: str | None = None
    suggested_team_size: int | None = None
    next_steps: list[str] = []
    scoring_model: str = ""
    score_label: str
    score_color: str
    created_at: str | None = None
    updated_at: str | None = None


class IntakeFormOut(BaseModel):
    id: str
    user_id: str | None = None
    contact_name: str
    contact_email: str
    contact_phone: str | None = None
    company_name: str | None = None
    project_name: str
    project_type: str
    project_description: str
    key_requirements: str
    business_goals: str | None = None
    success_metrics: str | None = None
    timeline: str
    budget_range: str
    budget_flexibility: str | None = None
    preferred_tech_stack: list[str] = []
    existing_systems: str | None = None
    integration_requirements: str | None = None
    ai_qualification_score: float = 0.0
    ai_confidence_score: float = 0.0
    ai_insights: dict[str, Any] = {}
    ai_recommendations: str | None = None
    status: str
    priority: str
    preferred_meeting_times: list[str] = []
    timezone: str = "UTC"
    meeting_scheduled_at: str | None = None
    meeting_completed_at: str | None = None
    metadata: dict[str, Any] = {}
    created_at: str | None = None
    updated_at: str | None = None
    scored: bool = False


class FieldViolationOut(BaseModel):
    field: str
    message: str


class ValidationResultOut(BaseModel):
    ok: bool
    errors: list[FieldViolationOut] = []


class StatsOut(BaseModel):
    total: int
    scored: int
    average_score: float | None
    by_status: dict[str, int]
    by_priority: dict[str, int]
    by_project_type: dict[str, int]
