"""
Base feed client for listing sources.

All feed clients inherit from BaseFeedClient and implement:
- _fetch_page(): Issue one paginated query against the feed

The base class adds bounded exponential-backoff retries for transient
failures and page iteration.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, Optional
import requests
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import FeedConfig, get_feed_config

logger = logging.getLogger(__name__)


class FeedError(Exception):
    """Base exception for feed errors."""
    pass


class TransientFeedError(FeedError):
    """Timeout, server error or rate limit; safe to retry."""
    pass


class FeedAuthError(FeedError):
    """Authentication/authorization failure; retrying will not help."""
    pass


class FeedUnavailableError(FeedError):
    """Transient failures persisted past the retry budget."""
    pass


@dataclass
class FeedPage:
    """One page of raw records from the feed."""
    records: list[dict] = field(default_factory=list)
    end_of_results: bool = True
    offset: int = 0


class BaseFeedClient(ABC):
    """
    Abstract base class for listing feed clients.

    Provides common functionality:
    - HTTP session with rate limiting
    - Retries with exponential backoff for transient errors
    - Page iteration

    Subclasses must implement:
    - _fetch_page(): One query against the feed, raising TransientFeedError
      for anything worth retrying
    """

    def __init__(self, config: Optional[FeedConfig] = None):
        """Initialize the client."""
        self.config = config or get_feed_config()
        self.session = requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "User-Agent": "ListingAlerts/1.0",
        })

        self._last_request_time: float = 0
        self.stats = {
            "requests": 0,
            "records_fetched": 0,
            "retries": 0,
        }

    def _rate_limit(self) -> None:
        """Enforce rate limiting between requests."""
        elapsed = time.time() - self._last_request_time
        if elapsed < self.config.request_delay:
            time.sleep(self.config.request_delay - elapsed)
        self._last_request_time = time.time()

    @abstractmethod
    def _fetch_page(
        self,
        resource: str,
        modified_since: Optional[datetime],
        offset: int,
        limit: int,
    ) -> FeedPage:
        """
        Fetch one page of records.

        Args:
            resource: Feed resource type (e.g. "Property")
            modified_since: Lower bound on modification time (None = everything)
            offset: Records to skip
            limit: Page size

        Returns:
            FeedPage with raw record dictionaries (not yet normalized)
        """
        pass

    def _before_retry(self, retry_state) -> None:
        self.stats["retries"] += 1
        logger.warning(
            f"Transient feed error (attempt {retry_state.attempt_number}/"
            f"{self.config.max_retries}): {retry_state.outcome.exception()}"
        )

    def fetch_page(
        self,
        resource: str,
        modified_since: Optional[datetime] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> FeedPage:
        """
        Fetch one page, retrying transient failures with exponential backoff.

        Raises:
            FeedAuthError: Credentials rejected
            FeedUnavailableError: Still failing after max_retries attempts
        """
        limit = limit or self.config.page_size
        retrying = Retrying(
            stop=stop_after_attempt(self.config.max_retries),
            wait=wait_exponential(
                multiplier=self.config.backoff_multiplier,
                max=self.config.backoff_max,
            ),
            retry=retry_if_exception_type(TransientFeedError),
            before_sleep=self._before_retry,
        )

        try:
            page = retrying(self._fetch_page, resource, modified_since, offset, limit)
        except RetryError as e:
            last = e.last_attempt.exception()
            raise FeedUnavailableError(
                f"{resource} page at offset {offset} failed after "
                f"{self.config.max_retries} attempts: {last}"
            ) from last

        self.stats["records_fetched"] += len(page.records)
        return page

    def iter_pages(
        self,
        resource: str,
        modified_since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> Iterator[FeedPage]:
        """
        Yield pages in modification-time order until the feed reports the end.

        Each page is one reconciliation batch.
        """
        limit = limit or self.config.page_size
        offset = 0

        while True:
            page = self.fetch_page(resource, modified_since, offset, limit)
            logger.info(f"{resource} page at offset {offset}: {len(page.records)} records")
            yield page

            if page.end_of_results or not page.records:
                return
            offset += len(page.records)

    def get_stats(self) -> dict[str, int]:
        """Return stats for the current run."""
        return dict(self.stats)
