"""
Tests for the supporter MergeService.

Covers history reassignment, linked-id union, audit logging, conflict
detection and rollback on failure.
"""

from datetime import date, datetime, timezone

import pytest
from sqlalchemy import select

from supporter_app.ingestion.errors import InvalidMergeRequest, MergeConflict, SupporterNotFound
from supporter_app.ingestion.pipeline.merge_service import MergeService
from supporter_app.models import (
    FLAG_SHARED_EMAIL,
    AudienceMembership,
    AuditLog,
    EmailAlias,
    EngagementAggregate,
    Event,
    Membership,
    MembershipStatus,
    Supporter,
    db,
)


@pytest.fixture
def merge_service(app):
    return MergeService()


@pytest.fixture
def pair(supporter_factory, event_factory):
    source = supporter_factory(
        email="old@example.com",
        linked_ids={"shopify": "S-OLD", "stripe": "cus_old"},
    )
    target = supporter_factory(
        email="new@example.com",
        linked_ids={"shopify": "S-NEW", "futureticketing": "FT-1"},
    )
    event_factory(source, external_id="evt-source-1")
    event_factory(source, external_id="evt-source-2")
    event_factory(target, external_id="evt-target-1")
    return source.id, target.id


def test_merge_moves_history_and_deletes_source(merge_service, pair):
    source_id, target_id = pair

    merge_service.merge(source_id, target_id, actor="ops@club", reason="Same person, two emails")

    assert db.session.get(Supporter, source_id) is None
    events = db.session.scalars(select(Event).where(Event.supporter_id == target_id)).all()
    assert len(events) == 3
    aliases = set(db.session.scalars(select(EmailAlias.email).where(EmailAlias.supporter_id == target_id)))
    assert aliases == {"old@example.com", "new@example.com"}


def test_linked_ids_union_target_wins(merge_service, pair):
    source_id, target_id = pair

    merge_service.merge(source_id, target_id, actor="ops", reason="duplicate")

    target = db.session.get(Supporter, target_id)
    assert target.linked_ids == {"shopify": "S-NEW", "stripe": "cus_old", "futureticketing": "FT-1"}


def test_merge_writes_audit_entry(merge_service, pair):
    source_id, target_id = pair

    merge_service.merge(source_id, target_id, actor="ops", reason="duplicate")

    entry = db.session.scalar(select(AuditLog).where(AuditLog.action_type == "merge"))
    assert entry.actor == "ops"
    assert entry.reason == "duplicate"
    assert entry.before_state["source"]["id"] == source_id
    assert entry.after_state["merged_into"] == target_id
    assert entry.after_state["moved"]["events_moved"] == 2


def test_audiences_and_engagement_are_combined(merge_service, supporter_factory):
    source = supporter_factory()
    target = supporter_factory()
    db.session.add_all(
        [
            AudienceMembership(supporter_id=source.id, audience_id="main", tags=[]),
            AudienceMembership(supporter_id=source.id, audience_id="kids", tags=[]),
            AudienceMembership(supporter_id=target.id, audience_id="main", tags=[]),
            EngagementAggregate(
                supporter_id=source.id, click_count=3, last_click_at=datetime(2026, 1, 5, tzinfo=timezone.utc)
            ),
            EngagementAggregate(
                supporter_id=target.id, click_count=2, last_click_at=datetime(2026, 1, 1, tzinfo=timezone.utc)
            ),
        ]
    )
    db.session.commit()
    source_id, target_id = source.id, target.id

    merge_service.merge(source_id, target_id, actor="ops", reason="duplicate")

    audiences = sorted(
        db.session.scalars(select(AudienceMembership.audience_id).where(AudienceMembership.supporter_id == target_id))
    )
    assert audiences == ["kids", "main"]
    aggregate = db.session.scalar(select(EngagementAggregate).where(EngagementAggregate.supporter_id == target_id))
    assert aggregate.click_count == 5
    assert aggregate.last_click_at.replace(tzinfo=timezone.utc) == datetime(2026, 1, 5, tzinfo=timezone.utc)


def test_source_membership_moves_when_target_has_none(merge_service, supporter_factory, membership_factory):
    source = supporter_factory()
    target = supporter_factory()
    membership_factory(source, status=MembershipStatus.ACTIVE, last_payment_date=date(2026, 1, 1))
    source_id, target_id = source.id, target.id

    merge_service.merge(source_id, target_id, actor="ops", reason="duplicate")

    membership = db.session.scalar(select(Membership))
    assert membership.supporter_id == target_id


def test_shared_email_flag_blocks_merge(merge_service, supporter_factory):
    source = supporter_factory(flags={FLAG_SHARED_EMAIL: True})
    target = supporter_factory()

    with pytest.raises(MergeConflict, match="shared email flag"):
        merge_service.merge(source.id, target.id, actor="ops", reason="duplicate")


def test_identical_primary_email_blocks_merge(merge_service, supporter_factory):
    source = supporter_factory(email="same@example.com")
    target = supporter_factory(email=None, aliases=())
    target.primary_email = "same@example.com"
    db.session.commit()

    with pytest.raises(MergeConflict, match="identical primary email"):
        merge_service.merge(source.id, target.id, actor="ops", reason="duplicate")


def test_primary_email_differing_only_in_case_blocks_merge(merge_service, supporter_factory):
    source = supporter_factory(email="same@example.com")
    target = supporter_factory(email=None, aliases=())
    target.primary_email = " Same@Example.COM"
    db.session.commit()

    with pytest.raises(MergeConflict, match="identical primary email"):
        merge_service.merge(source.id, target.id, actor="ops", reason="duplicate")
    assert db.session.get(Supporter, source.id) is not None


def test_shared_alias_blocks_merge(merge_service, supporter_factory):
    source = supporter_factory(aliases=("house@example.com",))
    target = supporter_factory(aliases=("house@example.com",))

    with pytest.raises(MergeConflict, match="shared email addresses"):
        merge_service.merge(source.id, target.id, actor="ops", reason="duplicate")


def test_self_merge_and_blank_reason_are_rejected(merge_service, supporter_factory):
    supporter = supporter_factory()
    other = supporter_factory()

    with pytest.raises(MergeConflict):
        merge_service.merge(supporter.id, supporter.id, actor="ops", reason="oops")
    with pytest.raises(InvalidMergeRequest):
        merge_service.merge(supporter.id, other.id, actor="ops", reason="   ")


def test_missing_supporter(merge_service, supporter_factory):
    target = supporter_factory()

    with pytest.raises(SupporterNotFound) as excinfo:
        merge_service.merge("does-not-exist", target.id, actor="ops", reason="duplicate")
    assert excinfo.value.supporter_id == "does-not-exist"


def test_failure_rolls_back_everything(merge_service, pair, monkeypatch):
    source_id, target_id = pair

    def explode(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(merge_service, "_merge_engagement", explode)

    with pytest.raises(RuntimeError):
        merge_service.merge(source_id, target_id, actor="ops", reason="duplicate")

    assert db.session.get(Supporter, source_id) is not None
    source_events = db.session.scalars(select(Event).where(Event.supporter_id == source_id)).all()
    assert len(source_events) == 2
    assert db.session.scalar(select(AuditLog)) is None
    assert db.session.get(Supporter, target_id).linked_ids == {"shopify": "S-NEW", "futureticketing": "FT-1"}
