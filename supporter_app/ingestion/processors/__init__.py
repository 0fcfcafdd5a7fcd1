"""
Source processors keyed by source system name.
"""

from __future__ import annotations

from typing import Dict, Type

from sqlalchemy.orm import Session

from supporter_app.ingestion.errors import UnknownSourceSystem

from .base import BaseProcessor, IngestMessage, IngestResult
from .futureticketing import FutureTicketingProcessor
from .gocardless import GoCardlessProcessor
from .mailchimp import MailchimpProcessor
from .shopify import ShopifyProcessor
from .stripe import StripeProcessor

PROCESSORS: Dict[str, Type[BaseProcessor]] = {
    processor.source_system: processor
    for processor in (
        ShopifyProcessor,
        FutureTicketingProcessor,
        MailchimpProcessor,
        StripeProcessor,
        GoCardlessProcessor,
    )
}


def get_processor(source_system: str, session: Session | None = None) -> BaseProcessor:
    try:
        processor_cls = PROCESSORS[source_system]
    except KeyError as exc:
        raise UnknownSourceSystem(source_system) from exc
    return processor_cls(session)


__all__ = [
    "BaseProcessor",
    "IngestMessage",
    "IngestResult",
    "PROCESSORS",
    "get_processor",
    "ShopifyProcessor",
    "FutureTicketingProcessor",
    "MailchimpProcessor",
    "StripeProcessor",
    "GoCardlessProcessor",
]
