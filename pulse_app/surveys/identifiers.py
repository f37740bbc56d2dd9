"""
Company reference handling for survey assignments.

A survey is assigned to companies in two disjoint shapes: canonical company ids
(``Company.public_id``) and literal company names for organisations without a
record. A raw reference is sorted into one shape exactly once, when the assignment
is written; read sites work with ``CompanyRef`` values and never re-sniff strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import re
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from pulse_app.core.models import Company

    from .models import Survey
    from .store import Store

# Canonical ids are UUIDs in their 8-4-4-4-12 hex form
CANONICAL_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


def is_canonical_id(value: str) -> bool:
    return bool(CANONICAL_ID_RE.match(value))


@dataclass(frozen=True)
class CompanyRef:
    """Tagged company reference: either a canonical id or a literal name."""

    ID = "id"
    NAME = "name"

    kind: str
    value: str

    @classmethod
    def parse(cls, raw) -> CompanyRef | None:
        """Classify a raw reference. Blank references yield ``None``."""
        if raw is None:
            return None
        text = str(raw).strip()
        if not text:
            return None
        if is_canonical_id(text):
            return cls(cls.ID, text.lower())
        return cls(cls.NAME, text)

    @classmethod
    def for_company(cls, company: Company) -> CompanyRef:
        return cls(cls.ID, company.canonical_id)

    @property
    def is_id(self) -> bool:
        return self.kind == self.ID


@dataclass
class Assignment:
    """The two canonical buckets of a survey assignment."""

    company_ids: list[str] = field(default_factory=list)
    company_names: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.company_ids or self.company_names)


def partition_assignment(raw_refs: Iterable) -> Assignment:
    """Split mixed raw references into canonical ids and literal names.

    Blank entries are dropped and duplicates collapse, so running the partition
    over its own output is a no-op.
    """
    assignment = Assignment()
    for raw in raw_refs or []:
        ref = CompanyRef.parse(raw)
        if ref is None:
            continue
        bucket = assignment.company_ids if ref.is_id else assignment.company_names
        if ref.value not in bucket:
            bucket.append(ref.value)
    return assignment


class IdentifierResolver:
    """Answers "is this company assigned to this survey?".

    Data may have been entered in either shape, so membership is cross-checked in
    both directions: an id also matches when its company's name is listed, and a
    name also matches when a company with that name has its id listed.
    """

    def __init__(self, store: Store):
        self.store = store

    def resolve_assignment(self, survey: Survey, company_ref) -> bool:
        ref = self._coerce(company_ref)
        if ref is None:
            return False

        ids = {str(v).lower() for v in survey.assigned_companies or []}
        names = set(survey.special_company_names or [])

        if ref.is_id:
            if ref.value in ids:
                return True
            name = self.store.company_name_for_id(ref.value)
            return name is not None and name in names

        if ref.value in names:
            return True
        company_id = self.store.company_id_for_name(ref.value)
        return company_id is not None and company_id in ids

    def companies_in_scope(self, survey: Survey):
        """Company records covered by the survey's assignment (either shape)."""
        return self.store.companies_for_assignment(
            survey.assigned_companies or [], survey.special_company_names or []
        )

    @staticmethod
    def _coerce(company_ref) -> CompanyRef | None:
        if company_ref is None or isinstance(company_ref, CompanyRef):
            return company_ref
        if hasattr(company_ref, "public_id"):
            return CompanyRef.for_company(company_ref)
        return CompanyRef.parse(company_ref)
