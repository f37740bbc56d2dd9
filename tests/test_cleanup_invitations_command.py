"""
Tests for the cleanup_expired_invitations management command.
"""

from datetime import timedelta
from io import StringIO

from django.core.management import call_command
from django.utils import timezone
import pytest

from pulse_app.core.models import Company
from pulse_app.surveys.models import Invitation


@pytest.fixture
def company(db):
    return Company.objects.create(name="Acme GmbH")


def make_invitation(company, code, expired_days_ago, redeemed=False):
    now = timezone.now()
    return Invitation.objects.create(
        kind=Invitation.Kind.COMPANY,
        company=company,
        email=f"{code.lower()}@example.com",
        name=code,
        role=Invitation.Role.EMPLOYEE,
        code=code,
        expires_at=now - timedelta(days=expired_days_ago),
        redeemed_at=now - timedelta(days=60) if redeemed else None,
    )


@pytest.mark.django_db
class TestCleanupExpiredInvitations:
    @pytest.fixture
    def invitations(self, company):
        return {
            "stale": make_invitation(company, "STALE1", expired_days_ago=45),
            "recent": make_invitation(company, "RECNT1", expired_days_ago=3),
            "valid": make_invitation(company, "VALID1", expired_days_ago=-5),
            "redeemed": make_invitation(
                company, "REDMD1", expired_days_ago=45, redeemed=True
            ),
        }

    def test_deletes_only_stale_unredeemed(self, invitations):
        out = StringIO()
        call_command("cleanup_expired_invitations", stdout=out)

        remaining = set(Invitation.objects.values_list("code", flat=True))
        assert remaining == {"RECNT1", "VALID1", "REDMD1"}
        assert "Deleted 1 stale invitations" in out.getvalue()

    def test_dry_run_changes_nothing(self, invitations):
        out = StringIO()
        call_command("cleanup_expired_invitations", "--dry-run", "--verbose", stdout=out)

        assert Invitation.objects.count() == 4
        output = out.getvalue()
        assert "DRY RUN MODE" in output
        assert "Would delete 1 stale invitations" in output
        assert "stale1@example.com" in output

    def test_days_option(self, invitations):
        call_command("cleanup_expired_invitations", "--days", "0", stdout=StringIO())
        remaining = set(Invitation.objects.values_list("code", flat=True))
        assert remaining == {"VALID1", "REDMD1"}
