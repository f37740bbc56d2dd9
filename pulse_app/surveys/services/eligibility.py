"""EligibilityGate - may this participant respond to this survey?"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from django.utils import timezone

from ..exceptions import AlreadyResponded, SurveyNotOpen
from ..models import Survey

if TYPE_CHECKING:
    from ..identifiers import IdentifierResolver
    from ..identity import Participant
    from ..store import Store
    from .invitations import InvitationLedger

logger = logging.getLogger(__name__)


class EligibilityGate:
    def __init__(
        self,
        store: Store,
        resolver: IdentifierResolver,
        ledger: InvitationLedger,
        clock: Callable = timezone.now,
    ):
        self.store = store
        self.resolver = resolver
        self.ledger = ledger
        self.clock = clock

    def can_respond(self, survey: Survey, participant: Participant) -> bool:
        """
        Return whether ``participant`` may respond to ``survey``.

        ``False`` means the participant is outside the survey's audience. Typed
        errors report the other outcomes: ``SurveyNotOpen`` for a survey that is
        not active or outside its window, ``AlreadyResponded`` for a repeat, and
        the ledger's errors for an unusable invitation.

        The duplicate check here is advisory; the unique constraint on the
        response insert is what actually enforces one response per participant.
        """
        if survey.status != Survey.Status.ACTIVE:
            raise SurveyNotOpen()
        if not survey.is_within_window(self.clock()):
            raise SurveyNotOpen("This survey is outside its response window.")

        if participant.is_invitation:
            invitation = participant.invitation
            if invitation.survey_id != survey.pk:
                return False
            self.ledger.validate(invitation.code, survey=survey)
        elif not self.resolver.resolve_assignment(survey, participant.company_ref):
            return False

        if self.store.response_exists(survey.pk, participant.respondent_key(survey)):
            raise AlreadyResponded()
        return True
