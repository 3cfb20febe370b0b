"""Service-layer tests over an in-memory database."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from autopilot import services, store
from autopilot.models import IntakeForm, IntakeScore
from autopilot.schemas import IntakeFormCreate, IntakeFormUpdate, IntakeScoreUpdate
from autopilot.scorer import LLMCallError
from autopilot.workflow import Actor, InvalidTransitionError


def _create(session, data) -> IntakeForm:
    form = services.create_form(session, IntakeFormCreate.model_validate(data))
    session.commit()
    return form


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class TestStore:
    def test_get_missing_row(self, session):
        with pytest.raises(store.RecordNotFoundError) as exc_info:
            store.get_row(session, IntakeForm, "nope")
        assert exc_info.value.table == "intake_forms"

    def test_unknown_column(self, session):
        with pytest.raises(store.StoreError, match="Unknown column"):
            store.select_rows(session, IntakeForm, eq={"colour": "red"})

    def test_range_and_order(self, session, form_data):
        for score in (30.0, 55.0, 90.0):
            store.insert_row(session, IntakeForm, {
                **services._form_columns(IntakeFormCreate.model_validate(form_data).model_dump()),
                "ai_qualification_score": score,
            })
        rows = store.select_rows(
            session, IntakeForm,
            gte={"ai_qualification_score": 50}, order_by={"ai_qualification_score": "desc"},
        )
        assert [r.ai_qualification_score for r in rows] == [90.0, 55.0]

    def test_offset_pages_by_default_size(self, session, form_data):
        columns = services._form_columns(IntakeFormCreate.model_validate(form_data).model_dump())
        for _ in range(store.DEFAULT_PAGE_SIZE + 3):
            store.insert_row(session, IntakeForm, dict(columns))
        assert len(store.select_rows(session, IntakeForm, offset=2)) == store.DEFAULT_PAGE_SIZE
        assert len(store.select_rows(session, IntakeForm, limit=4)) == 4


# ---------------------------------------------------------------------------
# Forms
# ---------------------------------------------------------------------------


class TestForms:
    def test_round_trip(self, session, form_data):
        form = _create(session, form_data)
        session.expire_all()
        out = services.form_summary(services.get_form(session, form.id))
        for key, value in form_data.items():
            assert out[key] == value, key
        assert out["timezone"] == "UTC"
        assert out["status"] == "submitted"
        assert out["priority"] == "medium"
        assert out["scored"] is False

    def test_create_starts_submitted(self, session, form_data):
        payload = IntakeFormCreate.model_validate(form_data)
        form = services.create_form(session, payload)
        assert form.status == "submitted"

    def test_list_by_user(self, session, form_data):
        _create(session, {**form_data, "user_id": "u-1"})
        _create(session, {**form_data, "user_id": "u-2"})
        assert [f.user_id for f in services.list_forms(session, "u-1")] == ["u-1"]
        assert len(services.list_forms(session)) == 2

    def test_partial_update(self, session, form_data):
        form = _create(session, form_data)
        services.update_form(session, form.id, IntakeFormUpdate(
            project_name="Dispatch Copilot v2", preferred_tech_stack=["go"],
        ))
        session.commit()
        out = services.form_summary(services.get_form(session, form.id))
        assert out["project_name"] == "Dispatch Copilot v2"
        assert out["preferred_tech_stack"] == ["go"]
        assert out["contact_name"] == form_data["contact_name"]

    def test_update_cannot_clear_required_field(self, session, form_data):
        form = _create(session, form_data)
        services.update_form(session, form.id, IntakeFormUpdate(contact_name=None, company_name=None))
        assert form.contact_name == form_data["contact_name"]
        assert form.company_name is None

    def test_rejected_status_change_applies_nothing(self, session, form_data):
        form = _create(session, form_data)
        form.status = "completed"
        session.commit()
        with pytest.raises(InvalidTransitionError):
            services.update_form(session, form.id, IntakeFormUpdate(
                status="qualified", project_name="Should not stick",
            ))
        session.rollback()
        stored = services.get_form(session, form.id)
        assert stored.status == "completed"
        assert stored.project_name == form_data["project_name"]

    def test_status_change_through_update(self, session, form_data):
        form = _create(session, form_data)
        form.status = "qualified"
        session.commit()
        services.update_form(session, form.id, IntakeFormUpdate(status="scheduled"))
        assert form.status == "scheduled"
        assert form.meeting_scheduled_at is not None

    def test_transition_form(self, session, form_data):
        form = _create(session, form_data)
        services.transition_form(session, form.id, "archived", Actor.REVIEWER)
        assert form.status == "archived"

    def test_filter_and_sort(self, session, form_data, low_form_data):
        items = [
            {**services.form_summary(_create(session, form_data)), "ai_qualification_score": 86.0, "scored": True},
            {**services.form_summary(_create(session, low_form_data)), "priority": "low"},
        ]
        assert [i["project_name"] for i in services.filter_and_sort(items, sort_by="score")] == \
            ["Dispatch Copilot", "Bakery Site"]
        assert [i["project_name"] for i in services.filter_and_sort(items, sort_by="name", sort_dir="asc")] == \
            ["Bakery Site", "Dispatch Copilot"]
        assert len(services.filter_and_sort(items, project_type="web-app,mobile-app")) == 1
        assert len(services.filter_and_sort(items, priority="low")) == 1
        assert len(services.filter_and_sort(items, search="northwind")) == 2
        assert services.filter_and_sort(items, search="bakery")[0]["project_type"] == "web-app"
        assert services.filter_and_sort(items, status="archived") == []


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


class TestScoring:
    @pytest.mark.asyncio
    async def test_submit_scores_and_moves_to_review(self, session, form_data, rules_scorer):
        form, score = await services.submit_form(session, IntakeFormCreate.model_validate(form_data), rules_scorer)
        session.commit()

        assert score.intake_form_id == form.id
        assert score.overall_score == 86.0
        assert score.scoring_model == "rules"
        assert form.status == "under-review"
        assert form.ai_qualification_score == 86.0
        assert form.ai_confidence_score == 86.0
        assert form.priority == "high"
        assert form.ai_recommendations.startswith("High-priority lead")
        summary = services.form_summary(form)
        assert summary["scored"] is True
        assert summary["ai_insights"]["market_fit"] == "High"
        out = services.score_summary(score)
        assert out["score_label"] == "Very Good"
        assert out["score_color"] == "green"

    @pytest.mark.asyncio
    async def test_rescore_updates_in_place(self, session, form_data, rules_scorer):
        form, first = await services.submit_form(session, IntakeFormCreate.model_validate(form_data), rules_scorer)
        session.commit()

        scorer = MagicMock()
        scorer.model = "test-model"
        scorer.score = AsyncMock(return_value={
            "budget_score": 50.0, "timeline_score": 50.0, "technical_complexity_score": 50.0,
            "business_impact_score": 50.0, "market_potential_score": 50.0,
            "overall_score": 55.0, "confidence_level": 60.0,
            "ai_analysis": {}, "risk_factors": [], "opportunity_factors": [], "next_steps": [],
            "recommended_approach": None, "estimated_project_duration": None, "suggested_team_size": None,
        })
        second = await services.run_scoring(session, form, scorer)
        session.commit()

        assert second.id == first.id
        assert len(session.execute(select(IntakeScore)).scalars().all()) == 1
        assert second.overall_score == 55.0
        assert second.scoring_model == "test-model"
        assert form.priority == "low"
        # Already past submitted, so status is left alone.
        assert form.status == "under-review"

    @pytest.mark.asyncio
    async def test_rescore_keeps_urgent_priority(self, session, low_form_data, rules_scorer):
        form, _ = await services.submit_form(session, IntakeFormCreate.model_validate(low_form_data), rules_scorer)
        services.update_form(session, form.id, IntakeFormUpdate(priority="urgent"))
        session.commit()

        await services.run_scoring(session, form, rules_scorer)
        assert form.priority == "urgent"
        assert form.ai_qualification_score == 44.0

    @pytest.mark.asyncio
    async def test_scorer_failure_leaves_no_score(self, session, form_data):
        form = _create(session, form_data)
        scorer = MagicMock()
        scorer.model = "test-model"
        scorer.score = AsyncMock(side_effect=LLMCallError("timeout", retryable=True))
        with pytest.raises(LLMCallError):
            await services.run_scoring(session, form, scorer)
        assert services.get_score(session, form.id) is None
        assert form.status == "submitted"

    @pytest.mark.asyncio
    async def test_update_score(self, session, form_data, rules_scorer):
        _, score = await services.submit_form(session, IntakeFormCreate.model_validate(form_data), rules_scorer)
        services.update_score(session, score.id, IntakeScoreUpdate(overall_score=72, risk_factors=["Scope creep"]))
        session.commit()
        out = services.score_summary(services.get_score(session, score.intake_form_id))
        assert out["overall_score"] == 72.0
        assert out["risk_factors"] == ["Scope creep"]
        assert out["budget_score"] == 85.0

    @pytest.mark.asyncio
    async def test_delete_cascades_to_score(self, session, form_data, rules_scorer):
        form, _ = await services.submit_form(session, IntakeFormCreate.model_validate(form_data), rules_scorer)
        session.commit()
        services.delete_form(session, form.id)
        session.commit()
        assert session.execute(select(IntakeScore)).scalars().all() == []
        with pytest.raises(store.RecordNotFoundError):
            services.get_form(session, form.id)


class TestStats:
    @pytest.mark.asyncio
    async def test_compute_stats(self, session, form_data, low_form_data, rules_scorer):
        await services.submit_form(session, IntakeFormCreate.model_validate(form_data), rules_scorer)
        await services.submit_form(session, IntakeFormCreate.model_validate(low_form_data), rules_scorer)
        _create(session, form_data)

        stats = services.compute_stats(session)
        assert stats["total"] == 3
        assert stats["scored"] == 2
        assert stats["average_score"] == 65.0
        assert stats["by_status"] == {"under-review": 2, "submitted": 1}
        assert stats["by_priority"] == {"high": 1, "low": 1, "medium": 1}
        assert stats["by_project_type"] == {"ai-integration": 2, "web-app": 1}

    def test_empty(self, session):
        stats = services.compute_stats(session)
        assert stats["total"] == 0
        assert stats["average_score"] is None
