from datetime import timedelta

from sqlalchemy import select

from supporter_app.ingestion.pipeline.tag_sync import TagContext, TagSyncJob, compute_tags, diff_tags, is_managed
from supporter_app.models import (
    AudienceMembership,
    AuditLog,
    EventType,
    Membership,
    MembershipStatus,
    MembershipTier,
    Supporter,
    SupporterType,
    db,
)


class FakeMailchimpClient:
    def __init__(self, tags=None, fail_audiences=()):
        self.tags = tags or {}
        self.fail_audiences = set(fail_audiences)
        self.updates = []

    def get_member_tags(self, audience_id, email):
        return list(self.tags.get((audience_id, email), []))

    def update_member_tags(self, audience_id, email, *, add, remove):
        if audience_id in self.fail_audiences:
            raise RuntimeError("mailchimp 500")
        self.updates.append((audience_id, email, sorted(add), sorted(remove)))


def test_compute_tags_for_member_with_activity(fixed_now):
    supporter = Supporter(primary_email="a@example.com", supporter_type=SupporterType.MEMBER)
    membership = Membership(status=MembershipStatus.ACTIVE, tier=MembershipTier.STUDENT)
    from supporter_app.models import Event

    events = [
        Event(event_type=EventType.SHOP_ORDER, event_time=fixed_now - timedelta(days=5), metadata_json={}),
        Event(
            event_type=EventType.TICKET_PURCHASE,
            event_time=fixed_now - timedelta(days=200),
            metadata_json={"product_meanings": ["AwaySupporter"]},
        ),
    ]

    tags = compute_tags(TagContext(supporter=supporter, membership=membership, events=events, now=fixed_now))

    assert tags == [
        "Member:Active",
        "Member:Tier:Student",
        "ShopBuyer:Last90Days",
        "AwaySupporter:Last365Days",
        "Member",
    ]


def test_diff_only_removes_managed_tags():
    add, remove = diff_tags(["VIP-manual", "ShopBuyer:Last90Days", "Member"], ["Member", "TicketBuyer:Last90Days"])
    assert add == {"TicketBuyer:Last90Days"}
    assert remove == {"ShopBuyer:Last90Days"}
    assert not is_managed("VIP-manual")
    assert is_managed("Shop Buyer")


def test_sync_pushes_diff_and_audits(supporter_factory, event_factory, fixed_now):
    supporter = supporter_factory(email="fan@example.com", supporter_type=SupporterType.TICKET_BUYER)
    event_factory(supporter, EventType.TICKET_PURCHASE)
    db.session.add(AudienceMembership(supporter_id=supporter.id, audience_id="main", tags=[]))
    db.session.commit()
    client = FakeMailchimpClient(tags={("main", "fan@example.com"): ["Newsletter", "ShopBuyer:Last90Days"]})

    summary = TagSyncJob(client, now_fn=lambda: fixed_now).run()

    assert client.updates == [
        ("main", "fan@example.com", ["Ticket Buyer", "TicketBuyer:Last90Days"], ["ShopBuyer:Last90Days"])
    ]
    assert summary.total_supporters == 1
    assert summary.total_tags_updated == 3
    audience = db.session.scalar(select(AudienceMembership))
    assert audience.tags == ["Newsletter", "Ticket Buyer", "TicketBuyer:Last90Days"]
    assert audience.last_synced_at is not None
    entry = db.session.scalar(select(AuditLog))
    assert entry.action_type == "mailchimp_tag_sync"


def test_unchanged_tags_are_not_pushed(supporter_factory, fixed_now):
    supporter = supporter_factory(email="quiet@example.com")
    db.session.add(AudienceMembership(supporter_id=supporter.id, audience_id="main", tags=[]))
    db.session.commit()
    client = FakeMailchimpClient(tags={("main", "quiet@example.com"): ["Unknown"]})

    summary = TagSyncJob(client, now_fn=lambda: fixed_now).run()

    assert client.updates == []
    assert summary.total_tags_updated == 0
    assert db.session.scalar(select(AuditLog)) is None


def test_failed_audience_does_not_block_others(supporter_factory, fixed_now):
    supporter = supporter_factory(email="fan@example.com", supporter_type=SupporterType.SHOP_BUYER)
    db.session.add_all(
        [
            AudienceMembership(supporter_id=supporter.id, audience_id="broken", tags=[]),
            AudienceMembership(supporter_id=supporter.id, audience_id="main", tags=[]),
        ]
    )
    db.session.commit()
    client = FakeMailchimpClient(fail_audiences={"broken"})

    summary = TagSyncJob(client, now_fn=lambda: fixed_now).run()

    assert len(summary.errors) == 1 and "broken" in summary.errors[0]
    assert [update[0] for update in client.updates] == ["main"]
    broken = db.session.scalar(select(AudienceMembership).where(AudienceMembership.audience_id == "broken"))
    assert broken.last_synced_at is None
