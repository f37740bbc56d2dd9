"""
Tests for survey status transitions and their role rules.
"""

from django.contrib.auth import get_user_model
import pytest

from pulse_app.core.models import Company, UserProfile
from pulse_app.surveys.exceptions import (
    ForbiddenTransition,
    StaleState,
    ValidationError,
)
from pulse_app.surveys.models import Survey, SurveyBlock, SurveyQuestion
from pulse_app.surveys.services import build_engine
from pulse_app.surveys.services.lifecycle import TRANSITIONS, allowed_targets

User = get_user_model()
TEST_PASSWORD = "testpass123"


def make_user(username, role, company=None):
    user = User.objects.create_user(username=username, password=TEST_PASSWORD)
    user.profile.role = role
    user.profile.company = company
    user.profile.save()
    return user


def add_question(survey, key="q1"):
    block = SurveyBlock.objects.create(survey=survey, title="General")
    return SurveyQuestion.objects.create(block=block, key=key, text="Happy at work?")


@pytest.fixture
def engine(db):
    return build_engine()


@pytest.fixture
def company_x(db):
    return Company.objects.create(name="Company X")


@pytest.fixture
def company_y(db):
    return Company.objects.create(name="Company Y")


@pytest.fixture
def operator_actor(engine):
    user = make_user("operator", UserProfile.Role.OPERATOR_ADMIN)
    return engine.identity.actor_for(user)


@pytest.fixture
def admin_x(engine, company_x):
    user = make_user("admin_x", UserProfile.Role.COMPANY_ADMIN, company_x)
    return engine.identity.actor_for(user)


@pytest.fixture
def admin_y(engine, company_y):
    user = make_user("admin_y", UserProfile.Role.COMPANY_ADMIN, company_y)
    return engine.identity.actor_for(user)


@pytest.fixture
def survey(company_x):
    s = Survey.objects.create(
        title="Pulse", assigned_companies=[company_x.canonical_id]
    )
    add_question(s)
    return s


@pytest.mark.django_db
class TestOperatorTransitions:
    def test_draft_to_scheduled(self, engine, survey, operator_actor):
        updated = engine.lifecycle.request_transition(
            survey, operator_actor, Survey.Status.SCHEDULED
        )
        assert updated.status == Survey.Status.SCHEDULED
        assert updated.last_status_change_by_id == operator_actor.user_id
        assert updated.last_status_change_at is not None

    def test_rollbacks_to_draft(self, engine, survey, operator_actor):
        for start in (Survey.Status.SCHEDULED, Survey.Status.ACTIVE):
            Survey.objects.filter(pk=survey.pk).update(status=start)
            survey.refresh_from_db()
            updated = engine.lifecycle.request_transition(
                survey, operator_actor, Survey.Status.DRAFT
            )
            assert updated.status == Survey.Status.DRAFT

    def test_operator_cannot_activate(self, engine, survey, operator_actor):
        Survey.objects.filter(pk=survey.pk).update(status=Survey.Status.SCHEDULED)
        survey.refresh_from_db()
        with pytest.raises(ForbiddenTransition):
            engine.lifecycle.request_transition(
                survey, operator_actor, Survey.Status.ACTIVE
            )
        survey.refresh_from_db()
        assert survey.status == Survey.Status.SCHEDULED

    def test_accepts_survey_id(self, engine, survey, operator_actor):
        updated = engine.lifecycle.request_transition(
            survey.pk, operator_actor, Survey.Status.SCHEDULED
        )
        assert updated.status == Survey.Status.SCHEDULED


@pytest.mark.django_db
class TestCompanyAdminTransitions:
    def test_unassigned_admin_is_forbidden(
        self, engine, survey, operator_actor, admin_y
    ):
        survey = engine.lifecycle.request_transition(
            survey, operator_actor, Survey.Status.SCHEDULED
        )
        assert survey.status == Survey.Status.SCHEDULED

        with pytest.raises(ForbiddenTransition):
            engine.lifecycle.request_transition(survey, admin_y, Survey.Status.ACTIVE)
        survey.refresh_from_db()
        assert survey.status == Survey.Status.SCHEDULED

    def test_assigned_admin_activates_and_completes(self, engine, survey, admin_x):
        Survey.objects.filter(pk=survey.pk).update(status=Survey.Status.SCHEDULED)
        survey.refresh_from_db()

        survey = engine.lifecycle.request_transition(
            survey, admin_x, Survey.Status.ACTIVE
        )
        assert survey.status == Survey.Status.ACTIVE
        survey = engine.lifecycle.request_transition(
            survey, admin_x, Survey.Status.COMPLETED
        )
        assert survey.status == Survey.Status.COMPLETED

    def test_admin_assigned_by_name(self, engine, admin_x, company_x):
        survey = Survey.objects.create(
            title="Named",
            status=Survey.Status.SCHEDULED,
            special_company_names=[company_x.name],
        )
        updated = engine.lifecycle.request_transition(
            survey, admin_x, Survey.Status.ACTIVE
        )
        assert updated.status == Survey.Status.ACTIVE

    def test_admin_cannot_roll_back(self, engine, survey, admin_x):
        Survey.objects.filter(pk=survey.pk).update(status=Survey.Status.ACTIVE)
        survey.refresh_from_db()
        with pytest.raises(ForbiddenTransition):
            engine.lifecycle.request_transition(survey, admin_x, Survey.Status.DRAFT)

    def test_employee_cannot_transition(self, engine, survey, company_x):
        employee = engine.identity.actor_for(
            make_user("emp", UserProfile.Role.EMPLOYEE, company_x)
        )
        with pytest.raises(ForbiddenTransition):
            engine.lifecycle.request_transition(
                survey, employee, Survey.Status.SCHEDULED
            )


@pytest.mark.django_db
class TestTransitionGuards:
    def test_stale_state(self, engine, survey, operator_actor):
        # Another request scheduled the survey after we loaded it
        Survey.objects.filter(pk=survey.pk).update(status=Survey.Status.SCHEDULED)
        with pytest.raises(StaleState):
            engine.lifecycle.request_transition(
                survey, operator_actor, Survey.Status.SCHEDULED
            )
        survey.refresh_from_db()
        assert survey.last_status_change_by_id is None

    def test_unknown_status(self, engine, survey, operator_actor):
        with pytest.raises(ValidationError):
            engine.lifecycle.request_transition(survey, operator_actor, "published")

    @pytest.mark.parametrize("target", [Survey.Status.PENDING, Survey.Status.IN_PROGRESS])
    def test_reserved_statuses_unreachable(self, engine, survey, operator_actor, target):
        with pytest.raises(ForbiddenTransition):
            engine.lifecycle.request_transition(survey, operator_actor, target)

    def test_archived_has_no_way_out(self, engine, survey, operator_actor):
        Survey.objects.filter(pk=survey.pk).update(status=Survey.Status.ARCHIVED)
        survey.refresh_from_db()
        for target in Survey.Status.values:
            with pytest.raises((ForbiddenTransition, ValidationError)):
                engine.lifecycle.request_transition(survey, operator_actor, target)

    def test_draft_without_questions_cannot_be_scheduled(self, engine, operator_actor):
        survey = Survey.objects.create(title="Empty")
        with pytest.raises(ValidationError):
            engine.lifecycle.request_transition(
                survey, operator_actor, Survey.Status.SCHEDULED
            )

    def test_draft_with_empty_block_cannot_be_scheduled(
        self, engine, survey, operator_actor
    ):
        SurveyBlock.objects.create(survey=survey, title="Nothing here", order=1)
        with pytest.raises(ValidationError):
            engine.lifecycle.request_transition(
                survey, operator_actor, Survey.Status.SCHEDULED
            )
        survey.refresh_from_db()
        assert survey.status == Survey.Status.DRAFT


def test_transition_table_targets_are_not_reserved():
    for pairs in TRANSITIONS.values():
        for frm, to in pairs:
            assert to not in Survey.RESERVED_STATUSES
            assert frm != Survey.Status.ARCHIVED


def test_allowed_targets():
    assert allowed_targets(UserProfile.Role.OPERATOR_ADMIN, Survey.Status.ACTIVE) == [
        Survey.Status.DRAFT
    ]
    assert allowed_targets(UserProfile.Role.COMPANY_ADMIN, Survey.Status.ACTIVE) == [
        Survey.Status.COMPLETED
    ]
    assert allowed_targets(UserProfile.Role.EMPLOYEE, Survey.Status.DRAFT) == []
