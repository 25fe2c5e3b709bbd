"""
RESO Web API client for MLS listing feeds.

Speaks the OData flavour of the RESO Web API used by most MLS
aggregators: $filter on ModificationTimestamp, $orderby so pages
arrive in watermark order, and $top/$skip paging.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

import requests

from .base import (
    BaseFeedClient,
    FeedAuthError,
    FeedError,
    FeedPage,
    TransientFeedError,
)
from ..config import FeedConfig

logger = logging.getLogger(__name__)


class ResoFeedClient(BaseFeedClient):
    """
    Client for a RESO Web API (OData) listing feed.

    Usage:
        client = ResoFeedClient()
        for page in client.iter_pages("Property", modified_since=cursor.watermark):
            ...
    """

    def __init__(self, config: Optional[FeedConfig] = None):
        super().__init__(config)
        if not self.config.base_url:
            raise ValueError("FEED_BASE_URL must be set in environment variables")
        if self.config.token:
            self.session.headers["Authorization"] = f"Bearer {self.config.token}"

    @staticmethod
    def build_filter(modified_since: Optional[datetime]) -> Optional[str]:
        """
        Build the $filter clause for an incremental query.

        Uses "ge" so records sharing the watermark timestamp are redelivered
        rather than skipped; reconciliation treats them as no-ops.
        """
        if modified_since is None:
            return None
        if modified_since.tzinfo is not None:
            modified_since = modified_since.astimezone(timezone.utc)
        ts = modified_since.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        return f"ModificationTimestamp ge {ts}"

    def _fetch_page(
        self,
        resource: str,
        modified_since: Optional[datetime],
        offset: int,
        limit: int,
    ) -> FeedPage:
        url = f"{self.config.base_url.rstrip('/')}/{resource}"
        params = {
            "$orderby": "ModificationTimestamp asc",
            "$top": str(limit),
            "$skip": str(offset),
        }
        filter_str = self.build_filter(modified_since)
        if filter_str:
            params["$filter"] = filter_str

        self._rate_limit()
        self.stats["requests"] += 1

        try:
            response = self.session.get(url, params=params, timeout=self.config.request_timeout)
        except requests.exceptions.Timeout as e:
            raise TransientFeedError(f"Timeout fetching {resource}: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise TransientFeedError(f"Connection failed fetching {resource}: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise FeedAuthError(f"Feed rejected credentials ({status}). Check FEED_TOKEN.")
        if status == 429 or status >= 500:
            raise TransientFeedError(f"Feed returned {status} for {resource}")
        if status != 200:
            raise FeedError(f"Feed error {status}: {response.text[:500]}")

        try:
            data = response.json()
        except ValueError as e:
            raise FeedError(f"Feed returned a non-JSON body for {resource}: {response.text[:200]}") from e

        records = data.get("value", []) if isinstance(data, dict) else None
        if not isinstance(records, list):
            raise FeedError(f"Feed response for {resource} has no record list")

        if "@odata.nextLink" in data:
            end_of_results = False
        else:
            end_of_results = len(records) < limit

        return FeedPage(records=records, end_of_results=end_of_results, offset=offset)
