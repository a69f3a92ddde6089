"""Engagement source selection from settings."""
from typing import Optional

from config.settings import ENGAGEMENT_SOURCE
from ingest.base import BaseEngagementSource
from ingest.reddit import RedditEngagementSource
from ingest.simulated import SimulatedEngagementSource

SOURCES = {
    "reddit": RedditEngagementSource,
    "simulated": SimulatedEngagementSource,
}


def make_engagement_source(name: str = ENGAGEMENT_SOURCE) -> Optional[BaseEngagementSource]:
    """Build the configured source; "none" disables engagement lookups."""
    if name in ("none", ""):
        return None
    if name not in SOURCES:
        raise ValueError(f"Unknown ENGAGEMENT_SOURCE: {name!r} (expected one of {sorted(SOURCES)} or 'none')")
    return SOURCES[name]()
