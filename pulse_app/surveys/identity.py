"""Who is acting: session actors for lifecycle changes, participants for responses."""

from __future__ import annotations

from dataclasses import dataclass

from django.utils.crypto import salted_hmac

from pulse_app.core.models import Company, UserProfile

from .identifiers import CompanyRef
from .models import Invitation, Survey

RESPONDENT_KEY_SALT = "pulse_app.surveys.respondent_key"


@dataclass(frozen=True)
class Actor:
    user_id: int | None
    role: str
    company: Company | None = None

    @property
    def company_ref(self) -> CompanyRef | None:
        return CompanyRef.for_company(self.company) if self.company else None

    @property
    def is_operator_admin(self) -> bool:
        return self.role == UserProfile.Role.OPERATOR_ADMIN

    @property
    def is_company_admin(self) -> bool:
        return self.role == UserProfile.Role.COMPANY_ADMIN


@dataclass(frozen=True)
class Participant:
    """Someone submitting a response: a signed-in user or an invitation holder."""

    USER = "user"
    INVITATION = "invitation"

    kind: str
    user_id: int | None = None
    company: Company | None = None
    invitation: Invitation | None = None

    @classmethod
    def for_user(cls, user) -> Participant:
        profile = getattr(user, "profile", None)
        return cls(
            kind=cls.USER,
            user_id=user.pk,
            company=profile.company if profile else None,
        )

    @classmethod
    def for_invitation(cls, invitation: Invitation) -> Participant:
        return cls(
            kind=cls.INVITATION,
            company=invitation.company,
            invitation=invitation,
        )

    @property
    def is_invitation(self) -> bool:
        return self.kind == self.INVITATION

    @property
    def company_ref(self) -> CompanyRef | None:
        return CompanyRef.for_company(self.company) if self.company else None

    def respondent_key(self, survey: Survey) -> str:
        """Key enforcing one response per participant per survey.

        User keys are keyed with the survey's stored ``respondent_salt``, so they
        survive SECRET_KEY rotation and anonymity changes without exposing the
        user id.
        """
        if self.is_invitation:
            return f"invitation:{self.invitation.pk}"
        digest = salted_hmac(
            RESPONDENT_KEY_SALT,
            f"{survey.pk}:{self.user_id}",
            secret=survey.respondent_salt,
            algorithm="sha256",
        ).hexdigest()
        return f"user:{digest}"


class IdentityProvider:
    """Maps an authenticated Django user onto the engine's actor and participant."""

    def actor_for(self, user) -> Actor:
        profile = getattr(user, "profile", None)
        if user.is_superuser:
            role = UserProfile.Role.OPERATOR_ADMIN
        else:
            role = profile.role if profile else UserProfile.Role.EMPLOYEE
        return Actor(
            user_id=user.pk,
            role=role,
            company=profile.company if profile else None,
        )

    def participant_for(self, user) -> Participant:
        return Participant.for_user(user)
