"""
Sources package - Clients for listing feeds.

Each client handles:
1. Paginated queries against the feed (resource, modified-since, offset/limit)
2. Retrying transient failures
3. Returning raw records for normalization
"""

from .base import (
    BaseFeedClient,
    FeedPage,
    FeedError,
    TransientFeedError,
    FeedAuthError,
    FeedUnavailableError,
)
from .reso import ResoFeedClient

__all__ = [
    "BaseFeedClient",
    "FeedPage",
    "FeedError",
    "TransientFeedError",
    "FeedAuthError",
    "FeedUnavailableError",
    "ResoFeedClient",
]
