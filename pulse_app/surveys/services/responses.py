"""
ResponseCollector - accepts survey submissions.

One response per participant per survey is enforced by the unique constraint on
``(survey, respondent_key)``; the insert itself is the guard. For invitation
holders the invitation is redeemed in the same transaction, before the insert,
so a failed insert also undoes the redemption.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from django.db import transaction

from ..exceptions import AlreadyResponded, NotEligible, ValidationError
from ..models import Survey, SurveyQuestion, SurveyResponse

if TYPE_CHECKING:
    from ..identity import Participant
    from ..store import Store
    from .eligibility import EligibilityGate
    from .invitations import InvitationLedger

logger = logging.getLogger(__name__)

YES_NO_VALUES = {"yes", "no"}
RATING_RANGE = range(1, 6)


def _parse_rating(key: str, value) -> int:
    # Exact integers only: 4.0 and "4" pass, 4.9 and True do not
    if isinstance(value, bool):
        raise ValidationError(f"Answer to '{key}' must be a whole number.")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValidationError(f"Answer to '{key}' must be a whole number.")


def validate_answers(survey: Survey, answers) -> dict[str, Any]:
    """Check ``answers`` against the survey's questions and return a clean copy."""
    if not isinstance(answers, dict):
        raise ValidationError("Answers must be an object keyed by question.")

    questions = {
        q.key: q for q in SurveyQuestion.objects.filter(block__survey=survey)
    }
    unknown = sorted(set(answers) - set(questions))
    if unknown:
        raise ValidationError(f"Unknown questions: {', '.join(unknown)}")

    cleaned = {}
    missing = []
    for key, question in questions.items():
        value = answers.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            if question.required:
                missing.append(key)
            continue

        if question.type == SurveyQuestion.Types.YES_NO:
            if isinstance(value, bool):
                value = "yes" if value else "no"
            if str(value).lower() not in YES_NO_VALUES:
                raise ValidationError(f"Answer to '{key}' must be yes or no.")
            value = str(value).lower()
        elif question.type == SurveyQuestion.Types.RATING:
            value = _parse_rating(key, value)
            if value not in RATING_RANGE:
                raise ValidationError(
                    f"Answer to '{key}' must be between "
                    f"{RATING_RANGE.start} and {RATING_RANGE.stop - 1}."
                )
        cleaned[key] = value

    if missing:
        raise ValidationError(f"Missing required answers: {', '.join(missing)}")
    return cleaned


class ResponseCollector:
    def __init__(self, store: Store, gate: EligibilityGate, ledger: InvitationLedger):
        self.store = store
        self.gate = gate
        self.ledger = ledger

    def submit(
        self, survey: Survey, participant: Participant, answers
    ) -> SurveyResponse:
        """
        Record ``participant``'s answers to ``survey``.

        Raises:
            SurveyNotOpen: survey not active or outside its window
            NotEligible: participant outside the survey's audience
            AlreadyResponded: participant already has a response
            ValidationError: answers do not fit the survey's questions
            AlreadyUsed / Expired / NotFound: unusable invitation
        """
        if not self.gate.can_respond(survey, participant):
            raise NotEligible()

        cleaned = validate_answers(survey, answers)
        respondent_key = participant.respondent_key(survey)
        payload = self._build_payload(survey, participant, cleaned)

        with transaction.atomic():
            if participant.is_invitation:
                self.ledger.redeem(participant.invitation.pk)
            response = self.store.insert_response_if_absent(
                survey.pk, respondent_key, payload
            )
            if response is None:
                logger.warning(
                    f"Duplicate response to survey {survey.pk} rejected "
                    f"({payload['respondent_type']})"
                )
                raise AlreadyResponded()

        logger.info(
            f"Recorded response {response.pk} to survey {survey.pk} "
            f"({response.respondent_type}, company={response.company_id})"
        )
        return response

    @staticmethod
    def _build_payload(
        survey: Survey, participant: Participant, answers: dict[str, Any]
    ) -> dict[str, Any]:
        # Anonymity removes identity, never the company attribution
        payload = {
            "answers": answers,
            "company": participant.company,
            "user_id": None,
            "invitation": None,
            "respondent_info": {},
        }
        if participant.is_invitation:
            invitation = participant.invitation
            payload["respondent_type"] = SurveyResponse.RespondentType.INVITATION
            payload["invitation"] = invitation
            if not survey.is_anonymous:
                payload["respondent_info"] = {
                    "name": invitation.name,
                    "email": invitation.email,
                }
        elif survey.is_anonymous:
            payload["respondent_type"] = SurveyResponse.RespondentType.ANONYMOUS
        else:
            payload["respondent_type"] = SurveyResponse.RespondentType.USER
            payload["user_id"] = participant.user_id
        return payload
