"""Mailchimp Marketing API client (member tags)."""

from __future__ import annotations

import hashlib
from typing import Iterable

from supporter_app.models import SourceSystem

from .http import HTTPSettings, SourceHTTPClient


def data_center_from_key(api_key: str) -> str:
    """Mailchimp keys end with ``-<dc>`` (e.g. ``...-us1``)."""

    _, sep, dc = api_key.rpartition("-")
    if not sep or not dc:
        raise ValueError("Mailchimp API key has no data-center suffix; set MAILCHIMP_DC")
    return dc


def subscriber_hash(email: str) -> str:
    return hashlib.md5(email.strip().lower().encode("utf-8")).hexdigest()


class MailchimpClient(SourceHTTPClient):
    source_system = SourceSystem.MAILCHIMP.value

    def __init__(self, api_key: str, *, dc: str | None = None, settings: HTTPSettings | None = None, session=None):
        dc = dc or data_center_from_key(api_key)
        super().__init__(
            f"https://{dc}.api.mailchimp.com/3.0",
            auth=("anystring", api_key),
            settings=settings,
            session=session,
        )

    def get_member_tags(self, audience_id: str, email: str) -> list[str]:
        payload = self.get(f"lists/{audience_id}/members/{subscriber_hash(email)}/tags") or {}
        return [tag["name"] for tag in payload.get("tags") or [] if tag.get("name")]

    def update_member_tags(
        self,
        audience_id: str,
        email: str,
        *,
        add: Iterable[str] = (),
        remove: Iterable[str] = (),
    ) -> None:
        operations = [{"name": tag, "status": "active"} for tag in sorted(add)]
        operations += [{"name": tag, "status": "inactive"} for tag in sorted(remove)]
        if not operations:
            return
        self.post(f"lists/{audience_id}/members/{subscriber_hash(email)}/tags", json={"tags": operations})
