"""Creating surveys and editing their company assignment."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable

from django.db import transaction
from django.utils.dateparse import parse_datetime

from ..exceptions import PermissionDenied, ValidationError
from ..identifiers import partition_assignment
from ..models import Survey, SurveyBlock, SurveyQuestion

if TYPE_CHECKING:
    from ..identity import Actor

logger = logging.getLogger(__name__)


def _parse_when(value, field_name: str):
    if value in (None, ""):
        return None
    if hasattr(value, "tzinfo"):
        return value
    parsed = parse_datetime(str(value))
    if parsed is None:
        raise ValidationError(f"'{field_name}' is not a valid date and time.")
    return parsed


def _require_operator(actor: Actor) -> None:
    if not actor.is_operator_admin:
        raise PermissionDenied("Only operator admins can edit surveys.")


@transaction.atomic
def create_survey(
    actor: Actor,
    title: str,
    *,
    description: str = "",
    is_anonymous: bool = True,
    company_refs: Iterable = (),
    blocks: Iterable[dict] = (),
    start_at=None,
    end_at=None,
) -> Survey:
    """
    Create a draft survey with its blocks and questions.

    ``company_refs`` may mix canonical company ids and literal names; they are
    sorted into the two assignment lists here, once.

    ``blocks`` is a list of ``{"title", "description", "questions": [...]}`` with
    questions given as ``{"key", "text", "type", "required"}``.
    """
    _require_operator(actor)

    title = (title or "").strip()
    if not title:
        raise ValidationError("A survey needs a title.")
    start_at = _parse_when(start_at, "start_at")
    end_at = _parse_when(end_at, "end_at")
    if start_at and end_at and end_at <= start_at:
        raise ValidationError("The end of the survey must be after its start.")

    assignment = partition_assignment(company_refs)
    survey = Survey.objects.create(
        title=title,
        description=description or "",
        is_anonymous=bool(is_anonymous),
        start_at=start_at,
        end_at=end_at,
        assigned_companies=assignment.company_ids,
        special_company_names=assignment.company_names,
        created_by_id=actor.user_id,
    )

    seen_keys = set()
    for block_order, block_data in enumerate(blocks or []):
        block = SurveyBlock.objects.create(
            survey=survey,
            title=(block_data.get("title") or f"Block {block_order + 1}").strip(),
            description=block_data.get("description", ""),
            order=block_order,
        )
        for question_order, question in enumerate(block_data.get("questions") or []):
            key = str(question.get("key") or "").strip()
            text = str(question.get("text") or "").strip()
            if not key or not text:
                raise ValidationError("Every question needs a key and a text.")
            # Answer maps are keyed by question key, so keys are survey-wide
            if key in seen_keys:
                raise ValidationError(f"Duplicate question key '{key}'.")
            seen_keys.add(key)
            qtype = question.get("type") or SurveyQuestion.Types.YES_NO
            if qtype not in SurveyQuestion.Types.values:
                raise ValidationError(f"Unknown question type '{qtype}'.")
            SurveyQuestion.objects.create(
                block=block,
                key=key,
                text=text,
                type=qtype,
                required=bool(question.get("required", True)),
                order=question_order,
            )

    logger.info(
        f"Survey {survey.pk} created by user {actor.user_id} "
        f"({len(assignment.company_ids)} companies, "
        f"{len(assignment.company_names)} named)"
    )
    return survey


def update_assignment(actor: Actor, survey: Survey, company_refs: Iterable) -> Survey:
    """Replace the survey's company assignment."""
    _require_operator(actor)
    assignment = partition_assignment(company_refs)
    survey.assigned_companies = assignment.company_ids
    survey.special_company_names = assignment.company_names
    survey.save(
        update_fields=["assigned_companies", "special_company_names", "updated_at"]
    )
    logger.info(f"Survey {survey.pk} assignment updated by user {actor.user_id}")
    return survey
