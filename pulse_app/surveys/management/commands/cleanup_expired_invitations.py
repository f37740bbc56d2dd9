"""
Django management command to delete stale invitations.

Removes invitations that were never redeemed and expired more than
PULSE_INVITATION_RETENTION_DAYS ago. Redeemed invitations are kept since
responses and company memberships point back at them.

Usage:
    python manage.py cleanup_expired_invitations
    python manage.py cleanup_expired_invitations --dry-run
    python manage.py cleanup_expired_invitations --days 7 --verbose
"""

from datetime import timedelta
import logging

from django.conf import settings
from django.core.management.base import BaseCommand
from django.utils import timezone

from pulse_app.surveys.store import DjangoStore

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Delete never-redeemed invitations that expired long ago"

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would be done without actually doing it",
        )
        parser.add_argument(
            "--verbose",
            action="store_true",
            help="Show detailed output",
        )
        parser.add_argument(
            "--days",
            type=int,
            default=None,
            help="Days after expiry before an invitation is deleted "
            "(default: PULSE_INVITATION_RETENTION_DAYS)",
        )

    def handle(self, *args, **options):
        dry_run = options["dry_run"]
        verbose = options["verbose"]
        days = options["days"]
        if days is None:
            days = settings.PULSE_INVITATION_RETENTION_DAYS

        now = timezone.now()
        cutoff = now - timedelta(days=max(days, 0))
        self.stdout.write(
            self.style.SUCCESS(
                f"Starting invitation cleanup at {now} (expired before {cutoff})"
            )
        )
        if dry_run:
            self.stdout.write(self.style.WARNING("DRY RUN MODE - No changes will be made"))

        stale = DjangoStore().expired_unredeemed_invitations(cutoff)
        stale_count = stale.count()

        if verbose:
            self.stdout.write(f"Found {stale_count} stale invitations")
            for invitation in stale.select_related("company")[:20]:
                self.stdout.write(
                    f"  - {invitation.kind} invitation {invitation.pk} "
                    f"for {invitation.email} ({invitation.company.name}), "
                    f"expired {invitation.expires_at}"
                )

        if dry_run:
            self.stdout.write(
                self.style.WARNING(f"Would delete {stale_count} stale invitations")
            )
            return

        deleted_count, _ = stale.delete()
        logger.info(f"Deleted {deleted_count} stale invitations (cutoff {cutoff})")
        self.stdout.write(
            self.style.SUCCESS(f"Deleted {deleted_count} stale invitations")
        )
