"""Invitation emails.

Delivery is best-effort: every function here logs failures and returns ``False``
instead of raising, so a mail outage never undoes the ledger change that
triggered the message.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string
from django.utils.html import strip_tags
import markdown

if TYPE_CHECKING:
    from pulse_app.core.models import Company

    from .models import Invitation, Survey

logger = logging.getLogger(__name__)


def markdown_to_html(markdown_text: str) -> str:
    return markdown.markdown(
        markdown_text,
        extensions=["extra", "nl2br", "sane_lists"],
    )


def _site_url() -> str:
    return getattr(settings, "SITE_URL", "http://localhost:8000").rstrip("/")


def send_branded_email(
    to_email: str,
    subject: str,
    markdown_content: str,
    context: Optional[Dict[str, Any]] = None,
    from_email: Optional[str] = None,
) -> bool:
    """Send a multipart (plain + HTML) email built from markdown content.

    The HTML part wraps the rendered markdown in ``emails/base_email.html``.

    Returns:
        True if email sent successfully, False otherwise
    """
    html_content = markdown_to_html(markdown_content)
    email_context = {
        "subject": subject,
        "content": html_content,
        "brand_title": getattr(settings, "BRAND_TITLE", "Pulse"),
        "site_url": _site_url(),
        **(context or {}),
    }
    plain_message = strip_tags(html_content)

    try:
        html_message = render_to_string("emails/base_email.html", email_context)
        email = EmailMultiAlternatives(
            subject=subject,
            body=plain_message,
            from_email=from_email or settings.DEFAULT_FROM_EMAIL,
            to=[to_email],
        )
        email.attach_alternative(html_message, "text/html")
        email.send()
        logger.info(f"Email sent successfully to {to_email}: {subject}")
        return True
    except Exception as e:
        logger.error(
            f"Failed to send email to {to_email}: {subject}",
            exc_info=True,
            extra={
                "recipient": to_email,
                "subject": subject,
                "error_type": type(e).__name__,
                "email_backend": settings.EMAIL_BACKEND,
            },
        )
        return False


def send_survey_invitation_email(
    invitation: Invitation, survey: Survey, message: str = ""
) -> bool:
    """Invite someone to respond to a survey with their personal code."""
    survey_link = f"{_site_url()}/surveys/participate/{survey.pk}?code={invitation.code}"
    context = {
        "name": invitation.name,
        "company_name": invitation.company.name,
        "survey_title": survey.title,
        "survey_link": survey_link,
        "code": invitation.code,
        "expires_at": invitation.expires_at,
        "message": message,
    }
    markdown_content = render_to_string("emails/survey_invitation.md", context)
    return send_branded_email(
        invitation.email,
        f"Invitation to the survey: {survey.title}",
        markdown_content,
        context={"survey_title": survey.title},
    )


def send_company_invitation_email(invitation: Invitation, company: Company) -> bool:
    """Invite someone to join a company with a short code."""
    brand_title = getattr(settings, "BRAND_TITLE", "Pulse")
    markdown_content = render_to_string(
        "emails/company_invitation.md",
        {
            "name": invitation.name,
            "company_name": company.name,
            "role": invitation.get_role_display(),
            "register_link": f"{_site_url()}/auth/register?code={invitation.code}",
            "code": invitation.code,
            "expires_at": invitation.expires_at,
        },
    )
    return send_branded_email(
        invitation.email,
        f"Invitation to {brand_title} from {company.name}",
        markdown_content,
    )


class DjangoMailer:
    """Mailer collaborator used by the invitation ledger."""

    def send_invitation(self, invitation: Invitation, target, message: str = "") -> bool:
        """Send the invitation email for ``target`` (a survey or a company)."""
        if invitation.kind == invitation.Kind.SURVEY:
            return send_survey_invitation_email(invitation, target, message)
        return send_company_invitation_email(invitation, target)
