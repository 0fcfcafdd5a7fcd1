import itertools
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from supporter_app.models import (
    EmailAlias,
    Event,
    EventType,
    Membership,
    MembershipStatus,
    SourceSystem,
    Supporter,
    SupporterType,
    SupporterTypeSource,
    db,
)

FIXED_NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def fixed_now():
    return FIXED_NOW


@pytest.fixture
def supporter_factory(app):
    counter = itertools.count(1)

    def _create(
        *,
        email: str | None = "__auto__",
        name: str | None = None,
        phone: str | None = None,
        supporter_type: SupporterType = SupporterType.UNKNOWN,
        admin_override: bool = False,
        linked_ids: dict | None = None,
        flags: dict | None = None,
        aliases: tuple[str, ...] = (),
        commit: bool = True,
    ) -> Supporter:
        index = next(counter)
        if email == "__auto__":
            email = f"supporter{index}@example.com"
        supporter = Supporter(
            name=name or f"Supporter {index}",
            primary_email=email,
            phone=phone,
            supporter_type=supporter_type,
            supporter_type_source=(
                SupporterTypeSource.ADMIN_OVERRIDE if admin_override else SupporterTypeSource.AUTO
            ),
            linked_ids=dict(linked_ids or {}),
            flags=dict(flags or {}),
        )
        db.session.add(supporter)
        db.session.flush()
        for alias in ({email} if email else set()) | set(aliases):
            db.session.add(EmailAlias(email=alias, supporter_id=supporter.id, is_shared=False))
        if commit:
            db.session.commit()
        return supporter

    return _create


@pytest.fixture
def event_factory(app):
    counter = itertools.count(1)

    def _create(
        supporter: Supporter,
        event_type: EventType = EventType.TICKET_PURCHASE,
        *,
        event_time: datetime = FIXED_NOW,
        source_system: str = SourceSystem.FUTURE_TICKETING.value,
        external_id: str | None = None,
        meanings: tuple[str, ...] = (),
        amount: Decimal | None = None,
    ) -> Event:
        event = Event(
            supporter_id=supporter.id,
            source_system=source_system,
            event_type=event_type,
            event_time=event_time,
            external_id=external_id or f"test-event-{next(counter)}",
            amount=amount,
            currency="EUR" if amount is not None else None,
            metadata_json={"product_meanings": list(meanings)} if meanings else {},
        )
        db.session.add(event)
        db.session.commit()
        return event

    return _create


@pytest.fixture
def membership_factory(app):
    def _create(
        supporter: Supporter,
        *,
        status: MembershipStatus = MembershipStatus.ACTIVE,
        last_payment_date=None,
        **fields,
    ) -> Membership:
        membership = Membership(
            supporter_id=supporter.id,
            status=status,
            last_payment_date=last_payment_date,
            **fields,
        )
        db.session.add(membership)
        db.session.commit()
        return membership

    return _create
