from __future__ import annotations

import secrets

from django.contrib.auth import get_user_model
from django.db import models
from django.db.models import Q
from django.utils import timezone

from pulse_app.core.models import Company

User = get_user_model()


def generate_respondent_salt() -> str:
    return secrets.token_hex(32)


class Survey(models.Model):
    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        SCHEDULED = "scheduled", "Scheduled"
        ACTIVE = "active", "Active"
        COMPLETED = "completed", "Completed"
        ARCHIVED = "archived", "Archived"
        # Reserved: no transition leads into or out of these yet.
        PENDING = "pending", "Pending"
        IN_PROGRESS = "in_progress", "In progress"

    RESERVED_STATUSES = frozenset({Status.PENDING, Status.IN_PROGRESS})

    title = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    status = models.CharField(
        max_length=20, choices=Status.choices, default=Status.DRAFT
    )
    is_anonymous = models.BooleanField(default=True)
    start_at = models.DateTimeField(null=True, blank=True)
    end_at = models.DateTimeField(null=True, blank=True)

    # Assignment: canonical company ids and literal company names are stored
    # separately; membership is the union of both lists.
    assigned_companies = models.JSONField(default=list, blank=True)
    special_company_names = models.JSONField(default=list, blank=True)
    # Secret for hashing respondent keys; fixed for the life of the survey.
    respondent_salt = models.CharField(
        max_length=64, default=generate_respondent_salt, editable=False
    )

    created_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="created_surveys",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    last_status_change_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    last_status_change_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        indexes = [
            models.Index(
                fields=["status", "updated_at"], name="surveys_sur_status_5c1e0a_idx"
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover
        return self.title

    def question_count(self) -> int:
        return SurveyQuestion.objects.filter(block__survey=self).count()

    def has_empty_blocks(self) -> bool:
        return self.blocks.filter(questions__isnull=True).exists()

    def is_within_window(self, now=None) -> bool:
        """Check the optional start/end window (both bounds inclusive)."""
        now = now or timezone.now()
        if self.start_at and now < self.start_at:
            return False
        if self.end_at and now > self.end_at:
            return False
        return True


class SurveyBlock(models.Model):
    survey = models.ForeignKey(Survey, on_delete=models.CASCADE, related_name="blocks")
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    order = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["order", "id"]

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.survey.title} / {self.title}"


class SurveyQuestion(models.Model):
    class Types(models.TextChoices):
        YES_NO = "yes_no", "Yes / No"
        TEXT = "text", "Free text"
        MULTIPLE_CHOICE = "multiple_choice", "Multiple choice"
        AGREE_DISAGREE = "agree_disagree", "Agree / Disagree"
        RATING = "rating", "Rating"

    block = models.ForeignKey(
        SurveyBlock, on_delete=models.CASCADE, related_name="questions"
    )
    # Stable key used in the response answer map
    key = models.CharField(max_length=64)
    text = models.TextField()
    type = models.CharField(max_length=32, choices=Types.choices, default=Types.YES_NO)
    required = models.BooleanField(default=True)
    order = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["order", "id"]
        constraints = [
            models.UniqueConstraint(
                fields=["block", "key"], name="unique_question_key_per_block"
            )
        ]

    def __str__(self) -> str:  # pragma: no cover
        return self.text[:50]


class Invitation(models.Model):
    """Single-use code granting company membership or survey-response access.

    ``redeemed_at`` is monotonic: once set it is never cleared, and a redeemed
    invitation is inert regardless of its expiry.
    """

    class Kind(models.TextChoices):
        COMPANY = "company", "Join company"
        SURVEY = "survey", "Respond to survey"

    class Role(models.TextChoices):
        EMPLOYEE = "employee", "Employee"
        COMPANY_ADMIN = "company_admin", "Company admin"

    kind = models.CharField(max_length=20, choices=Kind.choices)
    company = models.ForeignKey(
        Company, on_delete=models.CASCADE, related_name="invitations"
    )
    survey = models.ForeignKey(
        Survey,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="invitations",
    )
    email = models.EmailField()
    name = models.CharField(max_length=255)
    role = models.CharField(max_length=20, choices=Role.choices, blank=True)
    code = models.CharField(max_length=64, unique=True)
    issued_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="issued_invitations",
    )
    issued_at = models.DateTimeField(default=timezone.now)
    expires_at = models.DateTimeField()
    redeemed_at = models.DateTimeField(null=True, blank=True)
    redeemed_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="redeemed_invitations",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=Q(kind="company", survey__isnull=True)
                | Q(kind="survey", survey__isnull=False),
                name="invitation_target_matches_kind",
            )
        ]
        indexes = [
            models.Index(fields=["email"], name="surveys_inv_email_3a9f1d_idx"),
            models.Index(
                fields=["redeemed_at", "expires_at"],
                name="surveys_inv_redeeme_8b2c4e_idx",
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.get_kind_display()} invitation for {self.email}"

    @property
    def is_redeemed(self) -> bool:
        return self.redeemed_at is not None

    def is_expired(self, now=None) -> bool:
        return (now or timezone.now()) > self.expires_at

    @property
    def status(self) -> str:
        """Display status: redeemed wins over expired."""
        if self.redeemed_at:
            return "redeemed"
        if self.is_expired():
            return "expired"
        return "pending"


class SurveyResponse(models.Model):
    """Append-only record of one completed submission.

    ``respondent_key`` identifies the participant (user or invitation) for
    duplicate prevention; for anonymous surveys it is a keyed hash, never the
    raw user id.
    """

    class RespondentType(models.TextChoices):
        USER = "user", "User"
        INVITATION = "invitation", "Invitation"
        ANONYMOUS = "anonymous", "Anonymous"

    survey = models.ForeignKey(
        Survey, on_delete=models.CASCADE, related_name="responses"
    )
    user = models.ForeignKey(
        User,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="survey_responses",
    )
    company = models.ForeignKey(
        Company,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="survey_responses",
    )
    invitation = models.OneToOneField(
        Invitation,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="response",
    )
    respondent_type = models.CharField(max_length=20, choices=RespondentType.choices)
    respondent_key = models.CharField(max_length=128)
    answers = models.JSONField(default=dict)
    # Name/email of invitation-based respondents on non-anonymous surveys
    respondent_info = models.JSONField(default=dict, blank=True)
    anonymized = models.BooleanField(default=False)
    completed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["survey", "respondent_key"],
                name="one_response_per_respondent_per_survey",
            )
        ]
        indexes = [
            models.Index(
                fields=["survey", "company"], name="surveys_sur_survey__7d4e2b_idx"
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover
        return f"Response {self.pk} to survey {self.survey_id}"

    @property
    def respondent(self) -> dict:
        """Respondent descriptor: ``{"type": ..., "id": ...}``."""
        if self.respondent_type == self.RespondentType.USER:
            return {"type": self.respondent_type, "id": self.user_id}
        if self.respondent_type == self.RespondentType.INVITATION:
            return {"type": self.respondent_type, "id": self.invitation_id}
        return {"type": self.respondent_type, "id": None}
