"""Survey engine services and their wiring."""

from __future__ import annotations

from dataclasses import dataclass

from ..email_utils import DjangoMailer
from ..identifiers import IdentifierResolver
from ..identity import IdentityProvider
from ..store import DjangoStore, Store
from .eligibility import EligibilityGate
from .invitations import InvitationLedger
from .lifecycle import SurveyLifecycle
from .response_rates import ResponseRateCalculator
from .responses import ResponseCollector


@dataclass
class Engine:
    store: Store
    identity: IdentityProvider
    resolver: IdentifierResolver
    ledger: InvitationLedger
    lifecycle: SurveyLifecycle
    gate: EligibilityGate
    collector: ResponseCollector
    rates: ResponseRateCalculator


def build_engine(store: Store | None = None, mailer=None) -> Engine:
    """Wire the engine around one store. Called once per process (and per test)."""
    store = store or DjangoStore()
    mailer = mailer if mailer is not None else DjangoMailer()
    resolver = IdentifierResolver(store)
    ledger = InvitationLedger(store, mailer)
    gate = EligibilityGate(store, resolver, ledger)
    return Engine(
        store=store,
        identity=IdentityProvider(),
        resolver=resolver,
        ledger=ledger,
        lifecycle=SurveyLifecycle(store, resolver),
        gate=gate,
        collector=ResponseCollector(store, gate, ledger),
        rates=ResponseRateCalculator(store, resolver),
    )
