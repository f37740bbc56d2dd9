"""Signal handlers for core app models."""

import logging

from django.contrib.auth import get_user_model
from django.db.models.signals import post_save, pre_delete
from django.dispatch import receiver

from .models import UserProfile

User = get_user_model()
logger = logging.getLogger(__name__)


@receiver(post_save, sender=User)
def create_user_profile(sender, instance, created, **kwargs):
    """Create UserProfile automatically when a new user is created."""
    if created:
        UserProfile.objects.get_or_create(user=instance)


@receiver(pre_delete, sender=User)
def anonymize_user_responses(sender, instance, **kwargs):
    """Detach a deleted user's survey responses instead of deleting them.

    Responses are append-only; deleting the account nulls the user reference and
    marks the row as anonymized so aggregate counts stay intact.
    """
    # Import here to avoid circular imports
    from pulse_app.surveys.models import SurveyResponse

    updated = SurveyResponse.objects.filter(user=instance).update(
        user=None, anonymized=True
    )
    if updated:
        logger.info(f"Anonymized {updated} survey responses for deleted user {instance.pk}")
