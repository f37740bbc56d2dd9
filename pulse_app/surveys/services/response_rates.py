"""
Response rates for survey dashboards.

A survey's eligible population is the active users of every company in its
assignment; responses are counted within the same company scope.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..models import Survey

if TYPE_CHECKING:
    from pulse_app.core.models import Company

    from ..identifiers import IdentifierResolver
    from ..store import Store


@dataclass
class ResponseRate:
    """Completed vs. eligible counts for one survey."""

    survey_id: int
    eligible: int
    responded: int
    pct: int

    def as_dict(self) -> dict:
        return {
            "survey_id": self.survey_id,
            "eligible": self.eligible,
            "responded": self.responded,
            "pct": self.pct,
        }


def percentage(responded: int, eligible: int) -> int:
    """Whole-number percentage, rounded half up; 0 when nobody is eligible."""
    if eligible <= 0:
        return 0
    return (200 * responded + eligible) // (2 * eligible)


class ResponseRateCalculator:
    REPORTED_STATUSES = (Survey.Status.ACTIVE, Survey.Status.COMPLETED)

    def __init__(self, store: Store, resolver: IdentifierResolver):
        self.store = store
        self.resolver = resolver

    def rate_for(self, survey: Survey, company: Company | None = None) -> ResponseRate:
        """Rate for ``survey``, optionally narrowed to one assigned company."""
        companies = self.resolver.companies_in_scope(survey)
        if company is not None:
            companies = companies.filter(pk=company.pk)
        eligible = self.store.count_users(companies, active_only=True)
        responded = self.store.count_responses(survey.pk, companies)
        return ResponseRate(
            survey_id=survey.pk,
            eligible=eligible,
            responded=responded,
            pct=percentage(responded, eligible),
        )

    def rates_for_company(self, company: Company, limit: int = 5) -> list[ResponseRate]:
        """Rates of the most recently updated reported surveys assigned to ``company``."""
        rates = []
        surveys = Survey.objects.filter(status__in=self.REPORTED_STATUSES).order_by(
            "-updated_at", "-pk"
        )
        for survey in surveys.iterator():
            if not self.resolver.resolve_assignment(survey, company):
                continue
            rates.append(self.rate_for(survey, company=company))
            if len(rates) >= limit:
                break
        return rates
