"""
InvitationLedger - issues, validates and redeems single-use invitation codes.

Two flavors share one table:
- company invitations ("join this company"), short uppercase hex codes,
  validated together with the invitee's email
- survey invitations ("respond to this survey"), url-safe codes with at least
  128 bits of entropy

Redemption is exactly-once: the store write re-checks ``redeemed_at IS NULL`` in
the same statement, so of N simultaneous attempts only one can succeed.
"""

from __future__ import annotations

from datetime import timedelta
import logging
import secrets
from typing import TYPE_CHECKING, Callable

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.validators import validate_email
from django.db import transaction
from django.utils import timezone

from pulse_app.core.models import UserProfile

from ..exceptions import (
    AlreadyUsed,
    DuplicateActiveInvitation,
    Expired,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from ..models import Invitation

if TYPE_CHECKING:
    from pulse_app.core.models import Company

    from ..models import Survey
    from ..store import Store

logger = logging.getLogger(__name__)

MIN_SURVEY_CODE_BYTES = 16
CODE_ATTEMPTS = 5


class InvitationLedger:
    def __init__(
        self,
        store: Store,
        mailer=None,
        *,
        expiry_days: int | None = None,
        survey_code_bytes: int | None = None,
        company_code_bytes: int | None = None,
        clock: Callable = timezone.now,
    ):
        self.store = store
        self.mailer = mailer
        self.expiry_days = expiry_days or settings.PULSE_INVITATION_EXPIRY_DAYS
        self.survey_code_bytes = max(
            survey_code_bytes or settings.PULSE_SURVEY_CODE_BYTES,
            MIN_SURVEY_CODE_BYTES,
        )
        self.company_code_bytes = (
            company_code_bytes or settings.PULSE_COMPANY_CODE_BYTES
        )
        self.clock = clock

    # Codes

    def generate_code(self, kind: str) -> str:
        if kind == Invitation.Kind.SURVEY:
            return secrets.token_urlsafe(self.survey_code_bytes)
        return secrets.token_hex(self.company_code_bytes).upper()

    # Issuing

    def issue(
        self,
        company: Company,
        email: str,
        name: str,
        *,
        survey: Survey | None = None,
        role: str = "",
        expiry_days: int | None = None,
        issued_by=None,
        message: str = "",
    ) -> Invitation:
        """
        Issue an invitation for ``company`` (or ``company`` + ``survey``).

        Raises:
            ValidationError: email or name missing or malformed
            DuplicateActiveInvitation: an unredeemed, unexpired invitation
                already exists for the same target and email
        """
        email = (email or "").strip().lower()
        name = (name or "").strip()
        if not email or not name:
            raise ValidationError("Name and email are required.")
        try:
            validate_email(email)
        except DjangoValidationError:
            raise ValidationError(f"'{email}' is not a valid email address.")

        kind = Invitation.Kind.SURVEY if survey is not None else Invitation.Kind.COMPANY
        if kind == Invitation.Kind.COMPANY:
            role = role or Invitation.Role.EMPLOYEE
            if role not in Invitation.Role.values:
                raise ValidationError(f"Unknown role '{role}'.")
        else:
            role = ""

        days = expiry_days or self.expiry_days
        if days < 1:
            raise ValidationError("Invitations must be valid for at least one day.")

        now = self.clock()
        survey_id = survey.pk if survey is not None else None
        # Plain read: two concurrent issues for the same address can both pass
        if self.store.find_active_invitation(kind, company.pk, survey_id, email, now):
            raise DuplicateActiveInvitation()

        invitation = None
        for _ in range(CODE_ATTEMPTS):
            invitation = self.store.insert_invitation(
                kind=kind,
                company=company,
                survey=survey,
                email=email,
                name=name,
                role=role,
                code=self.generate_code(kind),
                issued_by=issued_by,
                issued_at=now,
                expires_at=now + timedelta(days=days),
            )
            if invitation is not None:
                break
            logger.warning(f"Invitation code collision for {kind} invitation, retrying")
        if invitation is None:
            raise RuntimeError("Could not generate a unique invitation code")

        logger.info(
            f"Issued {kind} invitation {invitation.pk} for {email} "
            f"(company={company.pk}, survey={survey_id})"
        )
        self._notify(invitation, message)
        return invitation

    # Checking

    def validate(self, code: str, *, survey=None, email: str | None = None) -> Invitation:
        """
        Look up an invitation by code and check it is still usable.

        ``survey`` restricts the lookup to invitations for that survey; ``email``
        must match for company invitations. A mismatch is reported as
        ``NotFound`` so that neither reveals which codes exist.
        """
        code = (code or "").strip()
        if not code:
            raise NotFound()

        invitation = self.store.find_invitation_by_code(code)
        if invitation is None:
            raise NotFound()
        if survey is not None and invitation.survey_id != survey.pk:
            raise NotFound()
        if email is not None and invitation.email.lower() != email.strip().lower():
            raise NotFound()

        self._check_usable(invitation)
        return invitation

    def _check_usable(self, invitation: Invitation) -> None:
        if invitation.redeemed_at is not None:
            raise AlreadyUsed()
        if invitation.is_expired(self.clock()):
            raise Expired()

    # Mutations

    def redeem(self, invitation_id, redeemed_by=None) -> Invitation:
        """Mark the invitation used. Only one caller can ever succeed."""
        now = self.clock()
        redeemed_by_id = getattr(redeemed_by, "pk", redeemed_by)
        if not self.store.conditional_redeem_invitation(invitation_id, redeemed_by_id, now):
            # Lost the race or never usable: report why from the stored state
            invitation = self.store.find_invitation_by_id(invitation_id)
            if invitation is None:
                raise NotFound()
            self._check_usable(invitation)
            logger.warning(f"Redemption of invitation {invitation_id} was not applied")
            raise AlreadyUsed()

        logger.info(f"Redeemed invitation {invitation_id} (by user {redeemed_by_id})")
        return self.store.find_invitation_by_id(invitation_id)

    def resend(self, invitation_id, message: str = "") -> Invitation:
        """
        Re-send an unredeemed invitation.

        Refreshes ``issued_at``; an expired invitation also gets a fresh validity
        window. The code never changes.
        """
        now = self.clock()
        fresh_expiry = now + timedelta(days=self.expiry_days)
        if not self.store.conditional_refresh_invitation(invitation_id, now, fresh_expiry):
            if self.store.find_invitation_by_id(invitation_id) is None:
                raise NotFound()
            raise AlreadyUsed()

        invitation = self.store.find_invitation_by_id(invitation_id)
        logger.info(f"Resent invitation {invitation_id} to {invitation.email}")
        self._notify(invitation, message)
        return invitation

    def delete(self, invitation_id) -> None:
        """Hard-delete an invitation that has not been redeemed."""
        if not self.store.conditional_delete_invitation(invitation_id):
            if self.store.find_invitation_by_id(invitation_id) is None:
                raise NotFound()
            raise AlreadyUsed("A redeemed invitation cannot be deleted.")
        logger.info(f"Deleted invitation {invitation_id}")

    def accept_company_invitation(self, code: str, email: str, user) -> Invitation:
        """Join ``user`` to the invitation's company with the invited role.

        Operator admins and members of another company are refused before the
        code is redeemed. An existing company admin keeps that role when
        accepting an employee invitation to the same company.
        """
        invitation = self.validate(code, email=email)
        if invitation.kind != Invitation.Kind.COMPANY:
            raise NotFound()

        with transaction.atomic():
            profile, _ = UserProfile.objects.get_or_create(user=user)
            if user.is_superuser or profile.role == UserProfile.Role.OPERATOR_ADMIN:
                raise PermissionDenied(
                    "Operator admins cannot join a company with an invitation."
                )
            if profile.company_id and profile.company_id != invitation.company_id:
                raise PermissionDenied("You already belong to another company.")

            invitation = self.redeem(invitation.pk, redeemed_by=user)
            profile.company = invitation.company
            if invitation.role == Invitation.Role.COMPANY_ADMIN:
                profile.role = UserProfile.Role.COMPANY_ADMIN
            elif profile.role != UserProfile.Role.COMPANY_ADMIN:
                profile.role = UserProfile.Role.EMPLOYEE
            profile.save(update_fields=["company", "role", "updated_at"])

        logger.info(
            f"User {user.pk} joined company {invitation.company_id} as {profile.role}"
        )
        return invitation

    def _notify(self, invitation: Invitation, message: str = "") -> None:
        # Mail is best-effort; the ledger change above stays committed
        if self.mailer is None:
            return
        target = invitation.survey if invitation.survey_id else invitation.company
        try:
            sent = self.mailer.send_invitation(invitation, target, message)
        except Exception:
            logger.error(
                f"Mailer raised while sending invitation {invitation.pk}", exc_info=True
            )
            return
        if not sent:
            logger.warning(f"Invitation {invitation.pk} email was not delivered")
