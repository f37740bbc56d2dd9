"""
Tests for the invitation ledger: issuing, validating, redeeming, resending and
deleting company and survey invitations.
"""

from datetime import timedelta
import threading

from django.contrib.auth import get_user_model
from django.db import connection
from django.utils import timezone
import pytest

from pulse_app.core.models import Company, UserProfile
from pulse_app.surveys.exceptions import (
    AlreadyUsed,
    DuplicateActiveInvitation,
    Expired,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from pulse_app.surveys.models import Invitation, Survey
from pulse_app.surveys.services import build_engine

User = get_user_model()
TEST_PASSWORD = "testpass123"


class BrokenMailer:
    def send_invitation(self, invitation, target, message=""):
        raise ConnectionError("SMTP server unavailable")


@pytest.fixture
def engine(db):
    return build_engine()


@pytest.fixture
def company(db):
    return Company.objects.create(name="Acme GmbH")


@pytest.fixture
def operator(db):
    user = User.objects.create_user(username="operator", password=TEST_PASSWORD)
    user.profile.role = UserProfile.Role.OPERATOR_ADMIN
    user.profile.save()
    return user


@pytest.fixture
def survey(company):
    return Survey.objects.create(
        title="Pulse Q1",
        status=Survey.Status.ACTIVE,
        assigned_companies=[company.canonical_id],
    )


def expire(invitation):
    Invitation.objects.filter(pk=invitation.pk).update(
        expires_at=timezone.now() - timedelta(days=1)
    )
    invitation.refresh_from_db()
    return invitation


@pytest.mark.django_db
class TestIssue:
    """Issuing invitations of both flavors."""

    def test_company_invitation_gets_short_uppercase_code(self, engine, company):
        invitation = engine.ledger.issue(company, "Jane@Example.com", "Jane")
        assert invitation.kind == Invitation.Kind.COMPANY
        assert invitation.survey is None
        assert invitation.role == Invitation.Role.EMPLOYEE
        assert invitation.email == "jane@example.com"
        assert len(invitation.code) == 6
        assert invitation.code == invitation.code.upper()
        assert invitation.redeemed_at is None

    def test_survey_invitation_gets_long_code(self, engine, company, survey):
        invitation = engine.ledger.issue(
            company, "jane@example.com", "Jane", survey=survey
        )
        assert invitation.kind == Invitation.Kind.SURVEY
        assert invitation.survey_id == survey.pk
        # 32 random bytes, url-safe base64
        assert len(invitation.code) >= 43

    def test_default_expiry_is_seven_days(self, engine, company):
        invitation = engine.ledger.issue(company, "jane@example.com", "Jane")
        window = invitation.expires_at - invitation.issued_at
        assert window == timedelta(days=7)

    def test_duplicate_active_invitation_is_rejected(self, engine, company):
        engine.ledger.issue(company, "jane@example.com", "Jane")
        with pytest.raises(DuplicateActiveInvitation):
            engine.ledger.issue(company, "JANE@example.com", "Jane Again")

    def test_expired_invitation_does_not_block_new_one(self, engine, company):
        old = engine.ledger.issue(company, "jane@example.com", "Jane")
        expire(old)
        new = engine.ledger.issue(company, "jane@example.com", "Jane")
        assert new.pk != old.pk

    def test_same_email_different_survey_is_allowed(self, engine, company, survey):
        other = Survey.objects.create(title="Pulse Q2", status=Survey.Status.ACTIVE)
        engine.ledger.issue(company, "jane@example.com", "Jane", survey=survey)
        engine.ledger.issue(company, "jane@example.com", "Jane", survey=other)
        assert Invitation.objects.filter(email="jane@example.com").count() == 2

    @pytest.mark.parametrize(
        "email,name", [("", "Jane"), ("jane@example.com", " "), ("not-an-email", "J")]
    )
    def test_invalid_input_is_rejected(self, engine, company, email, name):
        with pytest.raises(ValidationError):
            engine.ledger.issue(company, email, name)
        assert Invitation.objects.count() == 0

    def test_issue_sends_email(self, engine, company, survey, mailoutbox):
        engine.ledger.issue(company, "jane@example.com", "Jane", survey=survey)
        assert len(mailoutbox) == 1
        assert mailoutbox[0].to == ["jane@example.com"]
        assert "Pulse Q1" in mailoutbox[0].subject

    def test_mailer_failure_keeps_invitation(self, company):
        engine = build_engine(mailer=BrokenMailer())
        invitation = engine.ledger.issue(company, "jane@example.com", "Jane")
        assert Invitation.objects.filter(pk=invitation.pk).exists()

    def test_code_collision_retries(self, engine, company, monkeypatch):
        first = engine.ledger.issue(company, "a@example.com", "A")
        codes = iter([first.code, "FFFFFF"])
        monkeypatch.setattr(engine.ledger, "generate_code", lambda kind: next(codes))
        second = engine.ledger.issue(company, "b@example.com", "B")
        assert second.code == "FFFFFF"


@pytest.mark.django_db
class TestValidateAndRedeem:
    """Single-use semantics of invitation codes."""

    def test_issue_validate_redeem_then_redeem_again(
        self, engine, company, operator, monkeypatch
    ):
        monkeypatch.setattr(engine.ledger, "generate_code", lambda kind: "A1B2C3")
        issued = engine.ledger.issue(company, "jane@example.com", "Jane")
        assert issued.code == "A1B2C3"

        validated = engine.ledger.validate("A1B2C3")
        assert validated.pk == issued.pk

        redeemed = engine.ledger.redeem(issued.pk, redeemed_by=operator)
        assert redeemed.redeemed_at is not None
        assert redeemed.redeemed_by_id == operator.pk

        with pytest.raises(AlreadyUsed):
            engine.ledger.redeem(issued.pk)
        with pytest.raises(AlreadyUsed):
            engine.ledger.validate("A1B2C3")

    def test_both_validated_then_only_one_redeems(self, engine, company):
        issued = engine.ledger.issue(company, "jane@example.com", "Jane")
        first = engine.ledger.validate(issued.code)
        second = engine.ledger.validate(issued.code)

        engine.ledger.redeem(first.pk)
        with pytest.raises(AlreadyUsed):
            engine.ledger.redeem(second.pk)
        assert Invitation.objects.get(pk=issued.pk).redeemed_at is not None

    def test_unknown_code(self, engine):
        with pytest.raises(NotFound):
            engine.ledger.validate("NOPE00")
        with pytest.raises(NotFound):
            engine.ledger.validate("")

    def test_expired_code(self, engine, company):
        invitation = expire(engine.ledger.issue(company, "jane@example.com", "Jane"))
        with pytest.raises(Expired):
            engine.ledger.validate(invitation.code)
        with pytest.raises(Expired):
            engine.ledger.redeem(invitation.pk)
        invitation.refresh_from_db()
        assert invitation.redeemed_at is None

    def test_redeemed_wins_over_expired(self, engine, company):
        invitation = engine.ledger.issue(company, "jane@example.com", "Jane")
        engine.ledger.redeem(invitation.pk)
        expire(invitation)
        with pytest.raises(AlreadyUsed):
            engine.ledger.validate(invitation.code)
        assert invitation.status == "redeemed"

    def test_survey_code_for_other_survey_is_not_found(self, engine, company, survey):
        other = Survey.objects.create(title="Other", status=Survey.Status.ACTIVE)
        invitation = engine.ledger.issue(
            company, "jane@example.com", "Jane", survey=survey
        )
        with pytest.raises(NotFound):
            engine.ledger.validate(invitation.code, survey=other)

    def test_company_code_requires_matching_email(self, engine, company):
        invitation = engine.ledger.issue(company, "jane@example.com", "Jane")
        with pytest.raises(NotFound):
            engine.ledger.validate(invitation.code, email="john@example.com")
        assert engine.ledger.validate(invitation.code, email=" Jane@Example.com ")


@pytest.mark.django_db
class TestResendAndDelete:
    def test_resend_refreshes_issued_at_and_keeps_code(self, engine, company):
        invitation = engine.ledger.issue(company, "jane@example.com", "Jane")
        Invitation.objects.filter(pk=invitation.pk).update(
            issued_at=timezone.now() - timedelta(days=2)
        )
        resent = engine.ledger.resend(invitation.pk)
        assert resent.code == invitation.code
        assert resent.issued_at > timezone.now() - timedelta(minutes=1)
        # Still valid, so the original window is kept
        assert resent.expires_at == invitation.expires_at

    def test_resend_extends_expired_invitation(self, engine, company):
        invitation = expire(engine.ledger.issue(company, "jane@example.com", "Jane"))
        assert invitation.status == "expired"
        resent = engine.ledger.resend(invitation.pk)
        assert resent.status == "pending"
        assert resent.expires_at > timezone.now() + timedelta(days=6)
        assert engine.ledger.validate(resent.code).pk == invitation.pk

    def test_resend_redeemed_fails(self, engine, company, mailoutbox):
        invitation = engine.ledger.issue(company, "jane@example.com", "Jane")
        engine.ledger.redeem(invitation.pk)
        with pytest.raises(AlreadyUsed):
            engine.ledger.resend(invitation.pk)
        assert len(mailoutbox) == 1

    def test_resend_unknown(self, engine):
        with pytest.raises(NotFound):
            engine.ledger.resend(999999)

    def test_delete_pending(self, engine, company):
        invitation = engine.ledger.issue(company, "jane@example.com", "Jane")
        engine.ledger.delete(invitation.pk)
        assert not Invitation.objects.filter(pk=invitation.pk).exists()

    def test_delete_redeemed_fails(self, engine, company):
        invitation = engine.ledger.issue(company, "jane@example.com", "Jane")
        engine.ledger.redeem(invitation.pk)
        with pytest.raises(AlreadyUsed):
            engine.ledger.delete(invitation.pk)
        assert Invitation.objects.filter(pk=invitation.pk).exists()


@pytest.mark.django_db
class TestAcceptCompanyInvitation:
    """Joining a company with code + email."""

    def test_accept_attaches_user_with_role(self, engine, company):
        invitation = engine.ledger.issue(
            company,
            "boss@example.com",
            "Boss",
            role=Invitation.Role.COMPANY_ADMIN,
        )
        user = User.objects.create_user(username="boss", password=TEST_PASSWORD)

        engine.ledger.accept_company_invitation(
            invitation.code, "boss@example.com", user
        )

        profile = UserProfile.objects.get(user=user)
        assert profile.company == company
        assert profile.role == UserProfile.Role.COMPANY_ADMIN
        invitation.refresh_from_db()
        assert invitation.redeemed_by_id == user.pk

    def test_accept_twice_fails(self, engine, company):
        invitation = engine.ledger.issue(company, "emp@example.com", "Emp")
        user = User.objects.create_user(username="emp", password=TEST_PASSWORD)
        engine.ledger.accept_company_invitation(invitation.code, "emp@example.com", user)
        other = User.objects.create_user(username="emp2", password=TEST_PASSWORD)
        with pytest.raises(AlreadyUsed):
            engine.ledger.accept_company_invitation(
                invitation.code, "emp@example.com", other
            )
        assert UserProfile.objects.get(user=other).company is None

    def test_operator_admin_cannot_be_demoted(self, engine, company, operator):
        invitation = engine.ledger.issue(company, "op@example.com", "Op")
        with pytest.raises(PermissionDenied):
            engine.ledger.accept_company_invitation(
                invitation.code, "op@example.com", operator
            )
        profile = UserProfile.objects.get(user=operator)
        assert profile.role == UserProfile.Role.OPERATOR_ADMIN
        assert profile.company is None
        invitation.refresh_from_db()
        assert invitation.redeemed_at is None

    def test_superuser_cannot_join_company(self, engine, company):
        admin = User.objects.create_superuser(username="root", password=TEST_PASSWORD)
        invitation = engine.ledger.issue(company, "root@example.com", "Root")
        with pytest.raises(PermissionDenied):
            engine.ledger.accept_company_invitation(
                invitation.code, "root@example.com", admin
            )

    def test_member_of_other_company_is_refused(self, engine, company):
        beta = Company.objects.create(name="Beta AG")
        user = User.objects.create_user(username="beta_admin", password=TEST_PASSWORD)
        user.profile.company = beta
        user.profile.role = UserProfile.Role.COMPANY_ADMIN
        user.profile.save()
        invitation = engine.ledger.issue(company, "beta@example.com", "Beta")

        with pytest.raises(PermissionDenied):
            engine.ledger.accept_company_invitation(
                invitation.code, "beta@example.com", user
            )
        profile = UserProfile.objects.get(user=user)
        assert profile.company == beta
        assert profile.role == UserProfile.Role.COMPANY_ADMIN
        invitation.refresh_from_db()
        assert invitation.redeemed_at is None

    def test_company_admin_keeps_role_on_employee_invitation(self, engine, company):
        user = User.objects.create_user(username="acme_admin", password=TEST_PASSWORD)
        user.profile.company = company
        user.profile.role = UserProfile.Role.COMPANY_ADMIN
        user.profile.save()
        invitation = engine.ledger.issue(company, "admin@example.com", "Admin")

        engine.ledger.accept_company_invitation(invitation.code, "admin@example.com", user)
        assert UserProfile.objects.get(user=user).role == UserProfile.Role.COMPANY_ADMIN

    def test_survey_code_cannot_join_company(self, engine, company, survey):
        invitation = engine.ledger.issue(
            company, "emp@example.com", "Emp", survey=survey
        )
        user = User.objects.create_user(username="emp", password=TEST_PASSWORD)
        with pytest.raises(NotFound):
            engine.ledger.accept_company_invitation(
                invitation.code, "emp@example.com", user
            )


@pytest.mark.django_db(transaction=True)
def test_simultaneous_redemptions_succeed_exactly_once(engine, company):
    invitation = engine.ledger.issue(company, "jane@example.com", "Jane")
    attempts = 8
    barrier = threading.Barrier(attempts)
    outcomes = []
    lock = threading.Lock()

    def attempt():
        try:
            barrier.wait()
            try:
                engine.ledger.redeem(invitation.pk)
                outcome = "redeemed"
            except AlreadyUsed:
                outcome = "already_used"
            with lock:
                outcomes.append(outcome)
        finally:
            connection.close()

    threads = [threading.Thread(target=attempt) for _ in range(attempts)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes) == ["already_used"] * (attempts - 1) + ["redeemed"]
    assert Invitation.objects.get(pk=invitation.pk).redeemed_at is not None
