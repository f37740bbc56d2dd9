from __future__ import annotations

from typing import TYPE_CHECKING

from .exceptions import PermissionDenied

if TYPE_CHECKING:
    from pulse_app.core.models import Company

    from .identifiers import IdentifierResolver
    from .identity import Actor
    from .models import Invitation, Survey


def is_company_admin_of(actor: Actor, company: Company | None) -> bool:
    if company is None or not actor.is_company_admin or actor.company is None:
        return False
    return actor.company.pk == company.pk


def can_manage_survey(actor: Actor, survey: Survey, resolver: IdentifierResolver) -> bool:
    # Operator admins see every survey; company admins only assigned ones
    if actor.is_operator_admin:
        return True
    if not actor.is_company_admin or actor.company is None:
        return False
    return resolver.resolve_assignment(survey, actor.company_ref)


def can_manage_invitation(actor: Actor, invitation: Invitation) -> bool:
    if actor.is_operator_admin:
        return True
    return is_company_admin_of(actor, invitation.company)


def can_manage_company(actor: Actor, company: Company) -> bool:
    if actor.is_operator_admin:
        return True
    return is_company_admin_of(actor, company)


def require_can_manage_survey(
    actor: Actor, survey: Survey, resolver: IdentifierResolver
) -> None:
    if not can_manage_survey(actor, survey, resolver):
        raise PermissionDenied("This survey is not assigned to your company.")


def require_can_manage_invitation(actor: Actor, invitation: Invitation) -> None:
    if not can_manage_invitation(actor, invitation):
        raise PermissionDenied("You do not have permission to manage this invitation.")


def require_can_manage_company(actor: Actor, company: Company) -> None:
    if not can_manage_company(actor, company):
        raise PermissionDenied("You do not have permission to manage this company.")
