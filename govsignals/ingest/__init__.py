"""Feed dialect registry."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from govsignals.ingest.base import BaseDialect

DIALECTS: dict[str, type[BaseDialect]] = {}


def register_dialect(name: str):
    """Decorator to register a feed dialect parser."""

    def decorator(cls):
        DIALECTS[name] = cls
        return cls

    return decorator


# Import implementations to trigger registration
from govsignals.ingest.generic import GenericXMLDialect  # noqa: E402, F401
from govsignals.ingest.rss import RSSDialect  # noqa: E402, F401
from govsignals.ingest.xml_data import MultilingualXMLDialect  # noqa: E402, F401
