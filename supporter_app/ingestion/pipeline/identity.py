"""
Identity resolution for inbound source records.

Matching is deterministic: linked external id first, then email (primary or
alias), then phone when no email was supplied. More than one candidate is an
ambiguous outcome that callers must branch on; the resolver never picks one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal, Sequence

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from supporter_app.ingestion.utils import clean_str, normalize_email, normalize_phone
from supporter_app.models import (
    FLAG_SHARED_EMAIL,
    EmailAlias,
    Supporter,
    SupporterType,
    SupporterTypeSource,
    db,
)


@dataclass(frozen=True)
class IdentitySignals:
    """Identity hints extracted from one source record."""

    email: str | None = None
    phone: str | None = None
    linked_system: str | None = None
    linked_id: str | None = None
    name: str | None = None

    @classmethod
    def build(
        cls,
        *,
        email: object | None = None,
        phone: object | None = None,
        linked_system: str | None = None,
        linked_id: object | None = None,
        name: object | None = None,
    ) -> "IdentitySignals":
        return cls(
            email=normalize_email(email),
            phone=normalize_phone(phone),
            linked_system=linked_system,
            linked_id=clean_str(linked_id),
            name=clean_str(name),
        )

    @property
    def has_linked_id(self) -> bool:
        return bool(self.linked_system and self.linked_id)


@dataclass(frozen=True)
class Resolution:
    """
    Outcome of resolving identity signals.

    `matched_by` values:
    - ``linked_id``: supporter already linked to the source customer id.
    - ``email`` / ``phone``: exactly one supporter owns the identifier.
    - ``created``: no match; a new supporter was provisioned.
    - ``ambiguous``: several supporters matched; all were flagged.
    - ``none``: nothing matched and creation was not requested.
    """

    supporter: Supporter | None
    matched_by: Literal["linked_id", "email", "phone", "created", "ambiguous", "none"]
    matches: tuple[str, ...] = ()

    @property
    def ambiguous(self) -> bool:
        return self.matched_by == "ambiguous"

    @property
    def created(self) -> bool:
        return self.matched_by == "created"

    @property
    def is_match(self) -> bool:
        return self.supporter is not None and not self.ambiguous


class IdentityResolver:
    """Find, link or create the supporter behind a set of identity signals."""

    def __init__(self, session: Session | None = None, *, logger: logging.Logger | None = None):
        self.session = session or db.session
        self.logger = logger or logging.getLogger(__name__)

    # Lookups ---------------------------------------------------------------------

    def find_by_linked_id(self, system: str, external_id: object) -> Supporter | None:
        token = clean_str(external_id)
        if not system or token is None:
            return None
        stmt = (
            select(Supporter)
            .where(Supporter.linked_ids[system].as_string() == token)
            .order_by(Supporter.created_at, Supporter.id)
        )
        matches = list(self.session.scalars(stmt))
        if len(matches) > 1:
            self.logger.warning(
                "Multiple supporters share a linked id; using the oldest",
                extra={"linked_system": system, "linked_id": token, "supporter_ids": [s.id for s in matches]},
            )
        return matches[0] if matches else None

    def find_by_email(self, email: object) -> list[Supporter]:
        normalized = normalize_email(email)
        if normalized is None:
            return []
        alias_owner_ids = select(EmailAlias.supporter_id).where(EmailAlias.email == normalized)
        stmt = (
            select(Supporter)
            .where(or_(Supporter.primary_email == normalized, Supporter.id.in_(alias_owner_ids)))
            .order_by(Supporter.created_at, Supporter.id)
        )
        return list(self.session.scalars(stmt).unique())

    def find_by_phone(self, phone: object) -> list[Supporter]:
        normalized = normalize_phone(phone)
        if normalized is None:
            return []
        stmt = select(Supporter).where(Supporter.phone == normalized).order_by(Supporter.created_at, Supporter.id)
        return list(self.session.scalars(stmt))

    # Resolution -------------------------------------------------------------------

    def resolve(self, signals: IdentitySignals, *, create_if_missing: bool = False) -> Resolution:
        if signals.has_linked_id:
            linked = self.find_by_linked_id(signals.linked_system, signals.linked_id)
            if linked is not None:
                return Resolution(supporter=linked, matched_by="linked_id", matches=(linked.id,))

        if signals.email:
            outcome = self._resolve_candidates(self.find_by_email(signals.email), signals, matched_by="email")
            if outcome is not None:
                return outcome
        elif signals.phone:
            outcome = self._resolve_candidates(self.find_by_phone(signals.phone), signals, matched_by="phone")
            if outcome is not None:
                return outcome

        if create_if_missing and (signals.email or signals.has_linked_id):
            supporter = self.create_supporter(signals)
            return Resolution(supporter=supporter, matched_by="created", matches=(supporter.id,))

        return Resolution(supporter=None, matched_by="none")

    def _resolve_candidates(
        self,
        candidates: Sequence[Supporter],
        signals: IdentitySignals,
        *,
        matched_by: Literal["email", "phone"],
    ) -> Resolution | None:
        if not candidates:
            return None
        if len(candidates) > 1:
            self.flag_shared(candidates)
            self.logger.warning(
                "Ambiguous identity: %s supporters match %s",
                len(candidates),
                matched_by,
                extra={
                    "identity_signal": matched_by,
                    "supporter_ids": [supporter.id for supporter in candidates],
                    "linked_system": signals.linked_system,
                },
            )
            return Resolution(
                supporter=None,
                matched_by="ambiguous",
                matches=tuple(supporter.id for supporter in candidates),
            )
        supporter = candidates[0]
        if signals.has_linked_id:
            self.link(supporter, signals.linked_system, signals.linked_id)
        return Resolution(supporter=supporter, matched_by=matched_by, matches=(supporter.id,))

    # Mutations ---------------------------------------------------------------------

    def link(self, supporter: Supporter, system: str, external_id: str) -> bool:
        existing = supporter.linked_id(system)
        if existing is not None and existing != str(external_id):
            self.logger.warning(
                "Supporter already linked to a different %s id; leaving for manual merge",
                system,
                extra={
                    "supporter_id": supporter.id,
                    "linked_system": system,
                    "existing_linked_id": existing,
                    "incoming_linked_id": external_id,
                },
            )
            return False
        return supporter.attach_linked_id(system, external_id)

    def flag_shared(self, supporters: Sequence[Supporter]) -> None:
        for supporter in supporters:
            if not supporter.has_flag(FLAG_SHARED_EMAIL):
                supporter.set_flag(FLAG_SHARED_EMAIL, True)

    def create_supporter(self, signals: IdentitySignals) -> Supporter:
        linked_ids = {signals.linked_system: signals.linked_id} if signals.has_linked_id else {}
        supporter = Supporter(
            name=signals.name,
            primary_email=signals.email,
            phone=signals.phone,
            supporter_type=SupporterType.UNKNOWN,
            supporter_type_source=SupporterTypeSource.AUTO,
            flags={},
            linked_ids=linked_ids,
        )
        self.session.add(supporter)
        self.session.flush()
        if signals.email:
            self.add_alias(supporter, signals.email, is_shared=False)
        self.logger.info(
            "Created supporter",
            extra={"supporter_id": supporter.id, "linked_system": signals.linked_system},
        )
        return supporter

    def add_alias(self, supporter: Supporter, email: str, *, is_shared: bool = False) -> EmailAlias | None:
        normalized = normalize_email(email)
        if normalized is None:
            return None
        existing = self.session.scalar(
            select(EmailAlias).where(EmailAlias.email == normalized, EmailAlias.supporter_id == supporter.id)
        )
        if existing is not None:
            return existing
        alias = EmailAlias(email=normalized, supporter_id=supporter.id, is_shared=is_shared)
        self.session.add(alias)
        return alias
