"""
SurveyLifecycle - role-gated status transitions for surveys.

    draft ──operator──▶ scheduled ──company──▶ active ──company──▶ completed
      ▲                     │                    │
      └──────operator───────┴──────operator──────┘

``archived`` has no outbound transitions; ``pending`` and ``in_progress`` are
reserved and unreachable.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from django.utils import timezone

from pulse_app.core.models import UserProfile

from ..exceptions import ForbiddenTransition, NotFound, StaleState, ValidationError
from ..models import Survey
from ..store import AuditMeta

if TYPE_CHECKING:
    from ..identifiers import IdentifierResolver
    from ..identity import Actor
    from ..store import Store

logger = logging.getLogger(__name__)

Status = Survey.Status

# role -> allowed (from, to) pairs
TRANSITIONS: dict[str, frozenset[tuple[str, str]]] = {
    UserProfile.Role.OPERATOR_ADMIN: frozenset(
        {
            (Status.DRAFT, Status.SCHEDULED),
            (Status.SCHEDULED, Status.DRAFT),
            (Status.ACTIVE, Status.DRAFT),
        }
    ),
    UserProfile.Role.COMPANY_ADMIN: frozenset(
        {
            (Status.SCHEDULED, Status.ACTIVE),
            (Status.ACTIVE, Status.COMPLETED),
        }
    ),
}


def allowed_targets(role: str, current: str) -> list[str]:
    """Statuses ``role`` may move a survey in ``current`` status to."""
    return sorted(to for frm, to in TRANSITIONS.get(role, ()) if frm == current)


class SurveyLifecycle:
    def __init__(
        self,
        store: Store,
        resolver: IdentifierResolver,
        clock: Callable = timezone.now,
    ):
        self.store = store
        self.resolver = resolver
        self.clock = clock

    def request_transition(self, survey, actor: Actor, target_status: str) -> Survey:
        """
        Move ``survey`` to ``target_status`` on behalf of ``actor``.

        The write is conditional on the status observed here; if another request
        changed it in between, ``StaleState`` is raised and nothing is written.

        Raises:
            ValidationError: unknown target status, or a draft that is not ready
            ForbiddenTransition: the (role, from, to) triple is not allowed
            StaleState: the stored status no longer matches
        """
        if not isinstance(survey, Survey):
            survey = self.store.find_survey_by_id(survey)
            if survey is None:
                raise NotFound("Survey not found.")

        if target_status not in Status.values:
            raise ValidationError(f"Unknown survey status '{target_status}'.")

        current = survey.status
        if (current, target_status) not in TRANSITIONS.get(actor.role, frozenset()):
            logger.warning(
                f"Rejected transition {current} -> {target_status} on survey "
                f"{survey.pk} by user {actor.user_id} ({actor.role})"
            )
            raise ForbiddenTransition()

        if actor.is_company_admin and not self.resolver.resolve_assignment(
            survey, actor.company_ref
        ):
            logger.warning(
                f"Company admin {actor.user_id} is not assigned to survey {survey.pk}"
            )
            raise ForbiddenTransition("This survey is not assigned to your company.")

        if (current, target_status) == (Status.DRAFT, Status.SCHEDULED):
            self.check_ready_to_schedule(survey)

        audit = AuditMeta(changed_by_id=actor.user_id, changed_at=self.clock())
        if not self.store.conditional_update_survey_status(
            survey.pk, current, target_status, audit
        ):
            logger.warning(
                f"Stale transition {current} -> {target_status} on survey {survey.pk}"
            )
            raise StaleState()

        logger.info(
            f"Survey {survey.pk} moved {current} -> {target_status} "
            f"by user {actor.user_id}"
        )
        return self.store.find_survey_by_id(survey.pk)

    @staticmethod
    def check_ready_to_schedule(survey: Survey) -> None:
        if survey.question_count() == 0:
            raise ValidationError("A survey needs at least one question to be scheduled.")
        if survey.has_empty_blocks():
            raise ValidationError(
                "Every block needs at least one question before scheduling."
            )
