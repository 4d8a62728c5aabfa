"""Unit tests for the ICS feed fetcher."""
import pytest
import requests
import responses

from feed.ics_fetcher import IcsFeedFetcher
from sync.exceptions import TransportError

FEED_URL = 'https://calendar.example.com/club.ics'

SAMPLE_ICS = (
    "BEGIN:VCALENDAR\r\n"
    "BEGIN:VEVENT\r\n"
    "UID:abc\r\n"
    "DTSTART:20250601T100000Z\r\n"
    "SUMMARY:Keiko in Jyväskylä\r\n"
    "END:VEVENT\r\n"
    "END:VCALENDAR\r\n"
)


@pytest.fixture
def fetcher():
    """Create IcsFeedFetcher instance."""
    return IcsFeedFetcher(timeout=5)


class TestIcsFeedFetcher:
    """Tests for IcsFeedFetcher class."""

    @responses.activate
    def test_fetch_success(self, fetcher):
        """Test feed content is returned decoded as UTF-8."""
        responses.add(
            responses.GET,
            FEED_URL,
            body=SAMPLE_ICS.encode('utf-8'),
            status=200,
            content_type='text/calendar'
        )

        content = fetcher.fetch(FEED_URL)

        assert 'Keiko in Jyväskylä' in content
        assert len(responses.calls) == 1
        assert 'text/calendar' in responses.calls[0].request.headers['Accept']

    @responses.activate
    def test_fetch_http_error(self, fetcher):
        """Test a non-2xx status raises TransportError with the status code."""
        responses.add(responses.GET, FEED_URL, status=404)

        with pytest.raises(TransportError) as exc_info:
            fetcher.fetch(FEED_URL)

        assert exc_info.value.status_code == 404
        assert 'Failed to fetch ICS' in str(exc_info.value)
        assert len(responses.calls) == 1

    @responses.activate
    def test_fetch_server_error_is_not_retried(self, fetcher):
        """Test a single request is made per fetch."""
        responses.add(responses.GET, FEED_URL, status=503)

        with pytest.raises(TransportError):
            fetcher.fetch(FEED_URL)

        assert len(responses.calls) == 1

    @responses.activate
    def test_fetch_timeout(self, fetcher):
        """Test a timeout is wrapped in TransportError."""
        responses.add(
            responses.GET,
            FEED_URL,
            body=requests.exceptions.Timeout('Request timed out')
        )

        with pytest.raises(TransportError) as exc_info:
            fetcher.fetch(FEED_URL)

        assert exc_info.value.status_code is None

    @responses.activate
    def test_fetch_connection_error(self, fetcher):
        responses.add(
            responses.GET,
            FEED_URL,
            body=requests.exceptions.ConnectionError('Connection refused')
        )

        with pytest.raises(TransportError):
            fetcher.fetch(FEED_URL)

    def test_default_timeout(self):
        assert IcsFeedFetcher().timeout == 30
