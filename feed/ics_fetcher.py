"""HTTP fetcher for external ICS calendar feeds."""
import logging

import requests

from sync.exceptions import TransportError

logger = logging.getLogger(__name__)


class IcsFeedFetcher:
    """Downloads ICS feed content with a single GET per sync run."""

    HEADERS = {
        'Accept': 'text/calendar, text/plain;q=0.9, */*;q=0.5',
        'User-Agent': 'calendar-feed-sync/1.0'
    }

    def __init__(self, timeout: int = 30):
        """
        Initialize the feed fetcher.

        Args:
            timeout: HTTP request timeout in seconds (default: 30)
        """
        self.timeout = timeout

    def fetch(self, url: str) -> str:
        """
        Fetch raw ICS text from a feed URL.

        Retries are left to the scheduler; a failed request fails the run.

        Args:
            url: HTTP(S) URL of the calendar feed

        Returns:
            Feed content decoded as UTF-8

        Raises:
            TransportError: If the request fails or the status is not 2xx
        """
        logger.info(f"Fetching ICS feed from {url}")

        try:
            response = requests.get(
                url,
                headers=self.HEADERS,
                timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.error(f"Request for ICS feed failed: {e}")
            raise TransportError(f"Failed to fetch ICS: {e}") from e

        if not response.ok:
            logger.error(
                f"ICS feed returned HTTP {response.status_code}",
                extra={'url': url, 'status_code': response.status_code}
            )
            raise TransportError(
                f"Failed to fetch ICS: {response.status_code} {response.reason}",
                status_code=response.status_code
            )

        # requests assumes ISO-8859-1 for text/* without a charset
        content = response.content.decode('utf-8', errors='replace')
        logger.info(f"Fetched {len(response.content)} bytes of ICS data")
        return content
