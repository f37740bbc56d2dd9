"""
Persistence boundary for the survey engine.

Every mutation that must not race is a single conditional statement here:

- survey status changes filter on the previously observed status,
- invitation redemption filters on ``redeemed_at IS NULL``,
- response inserts rely on the ``(survey, respondent_key)`` unique constraint.

Services receive a ``Store`` by injection; ``DjangoStore`` is the ORM-backed
implementation built once per process (see ``pulse_app.surveys.services.build_engine``).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Iterable, Protocol
import uuid

from django.contrib.auth import get_user_model
from django.db import IntegrityError, models, transaction
from django.db.models import Case, F, Q, Value, When

from pulse_app.core.models import Company

from .models import Invitation, Survey, SurveyResponse

User = get_user_model()
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditMeta:
    """Who changed a survey's status, and when."""

    changed_by_id: int | None
    changed_at: datetime


class Store(Protocol):
    def find_survey_by_id(self, survey_id) -> Survey | None: ...

    def conditional_update_survey_status(
        self, survey_id, expected_status: str, new_status: str, audit: AuditMeta
    ) -> bool: ...

    def find_invitation_by_id(self, invitation_id) -> Invitation | None: ...

    def find_invitation_by_code(self, code: str) -> Invitation | None: ...

    def find_active_invitation(
        self, kind: str, company_id, survey_id, email: str, now: datetime
    ) -> Invitation | None: ...

    def insert_invitation(self, **fields) -> Invitation | None: ...

    def conditional_redeem_invitation(
        self, invitation_id, redeemed_by_id, now: datetime
    ) -> bool: ...

    def conditional_refresh_invitation(
        self, invitation_id, now: datetime, fresh_expiry: datetime
    ) -> bool: ...

    def conditional_delete_invitation(self, invitation_id) -> bool: ...

    def insert_response_if_absent(
        self, survey_id, respondent_key: str, payload: dict[str, Any]
    ) -> SurveyResponse | None: ...

    def response_exists(self, survey_id, respondent_key: str) -> bool: ...

    def count_users(self, companies, active_only: bool = True) -> int: ...

    def count_responses(self, survey_id, companies) -> int: ...

    def find_company_by_id(self, company_id) -> Company | None: ...

    def company_name_for_id(self, company_id: str) -> str | None: ...

    def company_id_for_name(self, name: str) -> str | None: ...

    def companies_for_assignment(
        self, company_ids: Iterable[str], company_names: Iterable[str]
    ): ...


class DjangoStore:
    """ORM-backed store."""

    # Surveys

    def find_survey_by_id(self, survey_id) -> Survey | None:
        return Survey.objects.filter(pk=survey_id).first()

    def conditional_update_survey_status(
        self, survey_id, expected_status: str, new_status: str, audit: AuditMeta
    ) -> bool:
        updated = Survey.objects.filter(pk=survey_id, status=expected_status).update(
            status=new_status,
            updated_at=audit.changed_at,
            last_status_change_by_id=audit.changed_by_id,
            last_status_change_at=audit.changed_at,
        )
        return updated == 1

    # Invitations

    def find_invitation_by_id(self, invitation_id) -> Invitation | None:
        return (
            Invitation.objects.select_related("company", "survey")
            .filter(pk=invitation_id)
            .first()
        )

    def find_invitation_by_code(self, code: str) -> Invitation | None:
        return (
            Invitation.objects.select_related("company", "survey")
            .filter(code=code)
            .first()
        )

    def find_active_invitation(
        self, kind: str, company_id, survey_id, email: str, now: datetime
    ) -> Invitation | None:
        return Invitation.objects.filter(
            kind=kind,
            company_id=company_id,
            survey_id=survey_id,
            email__iexact=email,
            redeemed_at__isnull=True,
            expires_at__gte=now,
        ).first()

    def insert_invitation(self, **fields) -> Invitation | None:
        """Insert an invitation; ``None`` when the code collides with another."""
        try:
            with transaction.atomic():
                return Invitation.objects.create(**fields)
        except IntegrityError:
            if Invitation.objects.filter(code=fields.get("code")).exists():
                return None
            raise

    def conditional_redeem_invitation(
        self, invitation_id, redeemed_by_id, now: datetime
    ) -> bool:
        updated = Invitation.objects.filter(
            pk=invitation_id,
            redeemed_at__isnull=True,
            expires_at__gte=now,
        ).update(redeemed_at=now, redeemed_by_id=redeemed_by_id)
        return updated == 1

    def conditional_refresh_invitation(
        self, invitation_id, now: datetime, fresh_expiry: datetime
    ) -> bool:
        # Only an already expired invitation gets a new window
        updated = Invitation.objects.filter(
            pk=invitation_id, redeemed_at__isnull=True
        ).update(
            issued_at=now,
            expires_at=Case(
                When(expires_at__lt=now, then=Value(fresh_expiry)),
                default=F("expires_at"),
                output_field=models.DateTimeField(),
            ),
        )
        return updated == 1

    def conditional_delete_invitation(self, invitation_id) -> bool:
        deleted, _ = Invitation.objects.filter(
            pk=invitation_id, redeemed_at__isnull=True
        ).delete()
        return deleted > 0

    def expired_unredeemed_invitations(self, cutoff: datetime):
        return Invitation.objects.filter(
            redeemed_at__isnull=True, expires_at__lt=cutoff
        )

    # Responses

    def insert_response_if_absent(
        self, survey_id, respondent_key: str, payload: dict[str, Any]
    ) -> SurveyResponse | None:
        """Insert a response; ``None`` when this respondent already has one."""
        try:
            with transaction.atomic():
                return SurveyResponse.objects.create(
                    survey_id=survey_id, respondent_key=respondent_key, **payload
                )
        except IntegrityError:
            if SurveyResponse.objects.filter(
                survey_id=survey_id, respondent_key=respondent_key
            ).exists():
                return None
            raise

    def response_exists(self, survey_id, respondent_key: str) -> bool:
        return SurveyResponse.objects.filter(
            survey_id=survey_id, respondent_key=respondent_key
        ).exists()

    # Counting

    def count_users(self, companies, active_only: bool = True) -> int:
        users = User.objects.filter(profile__company__in=companies)
        if active_only:
            users = users.filter(is_active=True)
        return users.count()

    def count_responses(self, survey_id, companies) -> int:
        return SurveyResponse.objects.filter(
            survey_id=survey_id, company__in=companies
        ).count()

    # Companies

    def find_company_by_id(self, company_id) -> Company | None:
        try:
            public_id = uuid.UUID(str(company_id))
        except ValueError:
            return None
        return Company.objects.filter(public_id=public_id).first()

    def company_name_for_id(self, company_id: str) -> str | None:
        try:
            public_id = uuid.UUID(str(company_id))
        except ValueError:
            return None
        return (
            Company.objects.filter(public_id=public_id)
            .values_list("name", flat=True)
            .first()
        )

    def company_id_for_name(self, name: str) -> str | None:
        public_id = (
            Company.objects.filter(name=name).values_list("public_id", flat=True).first()
        )
        return str(public_id) if public_id else None

    def companies_for_assignment(
        self, company_ids: Iterable[str], company_names: Iterable[str]
    ):
        public_ids = []
        for value in company_ids:
            try:
                public_ids.append(uuid.UUID(str(value)))
            except ValueError:
                logger.warning(f"Ignoring malformed company id in assignment: {value!r}")
        return Company.objects.filter(
            Q(public_id__in=public_ids) | Q(name__in=list(company_names))
        )
