"""
Scheduled reconciliation: re-fetch each source over a trailing window and
backfill any event the live pipeline missed.

Records are keyed with the same idempotency builders as live ingestion, so a
recovered event and a late webhook for the same upstream object collapse to
one row. Sources are independent: a failing source is recorded and the rest
still run. Within a source, an unmappable record is skipped on its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from supporter_app.ingestion.metrics import record_job_duration, record_reconciliation
from supporter_app.ingestion.processors import futureticketing as ft_mapping
from supporter_app.ingestion.processors import gocardless as gocardless_mapping
from supporter_app.ingestion.processors import shopify as shopify_mapping
from supporter_app.ingestion.processors import stripe as stripe_mapping
from supporter_app.ingestion.utils import clean_str, utcnow
from supporter_app.models import SourceSystem, db

from .event_store import EventDraft, EventStore
from .identity import IdentityResolver
from .product_meanings import ProductMeaningResolver
from .settings import KEY_RECONCILIATION_LAST_RUN, ConfigStore, ReconciliationSettings

logger = logging.getLogger(__name__)

ALERT_THRESHOLD = 100


@dataclass(frozen=True)
class ReconcileRecord:
    external_id: str
    linked_system: str
    linked_id: str | None
    draft: EventDraft


@dataclass
class SourceReconcileResult:
    source_system: str
    events_found: int = 0
    events_recovered: int = 0
    events_already_exists: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_system": self.source_system,
            "events_found": self.events_found,
            "events_recovered": self.events_recovered,
            "events_already_exists": self.events_already_exists,
            "errors": list(self.errors),
        }


@dataclass
class ReconciliationRun:
    started_at: datetime
    lookback_hours: int
    results: list[SourceReconcileResult] = field(default_factory=list)
    last_run: str | None = None

    @property
    def total_recovered(self) -> int:
        return sum(result.events_recovered for result in self.results)

    @property
    def status(self) -> str:
        return "alert" if self.total_recovered > ALERT_THRESHOLD else "ok"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "lookback_hours": self.lookback_hours,
            "total_recovered": self.total_recovered,
            "last_run": self.last_run,
            "results": [result.to_dict() for result in self.results],
        }


class SourceReconciler:
    """
    One source's view of recent activity.

    ``fetch`` yields raw API records and ``build`` maps one of them to a
    reconcile record, so a bad record only costs that record.
    """

    source_system: str

    def fetch(self, since: datetime) -> Iterable[Any]:
        raise NotImplementedError

    def build(self, item: Any) -> ReconcileRecord:
        raise NotImplementedError


class ShopifyOrderReconciler(SourceReconciler):
    source_system = SourceSystem.SHOPIFY.value

    def __init__(self, client):
        self.client = client

    def fetch(self, since: datetime) -> Iterator[Mapping[str, Any]]:
        return self.client.iter_orders_since(since)

    def build(self, order: Mapping[str, Any]) -> ReconcileRecord:
        draft = shopify_mapping.map_order(order, topic="reconciliation")
        customer = order.get("customer") if isinstance(order.get("customer"), Mapping) else {}
        return ReconcileRecord(draft.external_id, self.source_system, clean_str(customer.get("id")), draft)


class FutureTicketingReconciler(SourceReconciler):
    source_system = SourceSystem.FUTURE_TICKETING.value

    def __init__(self, client, meanings: ProductMeaningResolver):
        self.client = client
        self.meanings = meanings

    def fetch(self, since: datetime) -> Iterator[tuple[str, Mapping[str, Any]]]:
        for order in self.client.iter_orders(since):
            yield "order", order
        for entry in self.client.iter_entries(since):
            yield "entry", entry

    def build(self, item: tuple[str, Mapping[str, Any]]) -> ReconcileRecord:
        kind, payload = item
        if kind == "order":
            draft = ft_mapping.map_order(payload)
            draft = draft.with_metadata(product_meanings=self.meanings.meanings_for_items(draft.metadata["items"]))
        else:
            draft = ft_mapping.map_entry(payload)
        return ReconcileRecord(draft.external_id, self.source_system, clean_str(payload.get("CustomerID")), draft)


class StripeChargeReconciler(SourceReconciler):
    source_system = SourceSystem.STRIPE.value

    def __init__(self, client):
        self.client = client

    def fetch(self, since: datetime) -> Iterator[Mapping[str, Any]]:
        for charge in self.client.iter_charges_since(since):
            if charge.get("status") == "succeeded":
                yield charge

    def build(self, charge: Mapping[str, Any]) -> ReconcileRecord:
        draft = stripe_mapping.map_charge(charge)
        return ReconcileRecord(draft.external_id, self.source_system, clean_str(charge.get("customer")), draft)


class GoCardlessPaymentReconciler(SourceReconciler):
    source_system = SourceSystem.GOCARDLESS.value

    def __init__(self, client):
        self.client = client

    def fetch(self, since: datetime) -> Iterator[Mapping[str, Any]]:
        return self.client.iter_payments_since(since)

    def build(self, payment: Mapping[str, Any]) -> ReconcileRecord:
        draft = gocardless_mapping.map_payment(payment)
        links = payment.get("links") if isinstance(payment.get("links"), Mapping) else {}
        return ReconcileRecord(draft.external_id, self.source_system, clean_str(links.get("customer")), draft)


def build_reconcilers(clients, session: Session | None = None) -> list[SourceReconciler]:
    """Reconcilers for every source that has a configured client."""

    reconcilers: list[SourceReconciler] = []
    if clients.shopify is not None:
        reconcilers.append(ShopifyOrderReconciler(clients.shopify))
    if clients.futureticketing is not None:
        reconcilers.append(FutureTicketingReconciler(clients.futureticketing, ProductMeaningResolver(session)))
    if clients.stripe is not None:
        reconcilers.append(StripeChargeReconciler(clients.stripe))
    if clients.gocardless is not None:
        reconcilers.append(GoCardlessPaymentReconciler(clients.gocardless))
    return reconcilers


class ReconciliationJob:
    def __init__(
        self,
        reconcilers: Sequence[SourceReconciler],
        session: Session | None = None,
        *,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.session = session or db.session
        self.reconcilers = list(reconcilers)
        self.now_fn = now_fn
        self.events = EventStore(self.session)
        self.resolver = IdentityResolver(self.session)

    def run(self, *, lookback_hours: int | None = None) -> ReconciliationRun:
        store = ConfigStore(self.session)
        settings = ReconciliationSettings.load(store)
        hours = lookback_hours if lookback_hours is not None else settings.lookback_hours
        started_at = self.now_fn()
        since = started_at - timedelta(hours=hours)
        run = ReconciliationRun(started_at=started_at, lookback_hours=hours)

        for reconciler in self.reconcilers:
            run.results.append(self._reconcile_source(reconciler, since))

        run.last_run = store.stamp(KEY_RECONCILIATION_LAST_RUN, at=started_at, description="Reconciliation last run")
        self.session.commit()

        record_reconciliation(
            {result.source_system: result.events_recovered for result in run.results},
            alert=run.status == "alert",
        )
        record_job_duration("reconciliation", (utcnow() - started_at).total_seconds())
        if run.status == "alert":
            logger.warning(
                "Reconciliation recovered %s events (threshold %s); live ingestion may be dropping messages",
                run.total_recovered,
                ALERT_THRESHOLD,
                extra={"total_recovered": run.total_recovered},
            )
        else:
            logger.info("Reconciliation complete", extra={"total_recovered": run.total_recovered})
        return run

    def _reconcile_source(self, reconciler: SourceReconciler, since: datetime) -> SourceReconcileResult:
        result = SourceReconcileResult(source_system=reconciler.source_system)
        try:
            for item in reconciler.fetch(since):
                result.events_found += 1
                try:
                    self._apply(reconciler.build(item), result)
                except Exception as exc:
                    self.session.rollback()
                    result.errors.append(f"{reconciler.source_system} record skipped: {exc}")
                    logger.warning(
                        "Skipping unusable reconciliation record",
                        extra={"source_system": reconciler.source_system, "error": str(exc)},
                    )
        except Exception as exc:
            self.session.rollback()
            result.errors.append(f"{reconciler.source_system} reconciliation failed: {exc}")
            logger.exception(
                "Reconciliation failed for source",
                extra={"source_system": reconciler.source_system},
            )
        return result

    def _apply(self, record: ReconcileRecord, result: SourceReconcileResult) -> None:
        draft = record.draft
        if self.events.exists(draft.key):
            result.events_already_exists += 1
            return

        supporter = None
        if record.linked_id:
            supporter = self.resolver.find_by_linked_id(record.linked_system, record.linked_id)
        if supporter is None:
            result.errors.append(
                f"No supporter linked to {record.linked_system} customer {record.linked_id or '?'} "
                f"for {record.external_id}"
            )
            return

        try:
            self.events.insert(supporter, draft)
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            if self.events.exists(draft.key):
                result.events_already_exists += 1
                return
            raise
        result.events_recovered += 1
        logger.info(
            "Recovered missing event",
            extra={
                "source_system": record.linked_system,
                "external_id": record.external_id,
                "supporter_id": supporter.id,
            },
        )
