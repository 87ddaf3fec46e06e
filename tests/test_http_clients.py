"""
Tests for the HTTP helper, SupabaseLeadsClient and EnrichmentWebhookClient.
"""

import io
import json
import socket
from unittest.mock import MagicMock, Mock, patch
from urllib.error import HTTPError, URLError

import pytest

from report_sync import (
    CanonicalRecord,
    DispatchError,
    EnrichmentEvent,
    EnrichmentWebhookClient,
    RecordSourceError,
    SupabaseLeadsClient,
    _http_request,
)


def _http_error(code, url="http://example.com"):
    return HTTPError(url, code, "error", {}, io.BytesIO(b""))


def _response(body: bytes):
    response = Mock()
    response.read.return_value = body
    return response


@pytest.mark.unit
@pytest.mark.http
class TestHTTPRequest:
    """Test the shared request helper."""

    @patch("report_sync.urllib.request.urlopen")
    def test_json_body_decoded(self, mock_urlopen):
        mock_urlopen.return_value.__enter__.return_value = _response(b'[{"a": 1}]')

        assert _http_request("GET", "http://example.com") == [{"a": 1}]

    @patch("report_sync.urllib.request.urlopen")
    def test_text_body_returned_as_text(self, mock_urlopen):
        mock_urlopen.return_value.__enter__.return_value = _response(b"Accepted")

        assert _http_request("POST", "http://example.com", json_body={"x": 1}) == "Accepted"

    @patch("report_sync.urllib.request.urlopen")
    def test_post_serializes_json(self, mock_urlopen):
        mock_urlopen.return_value.__enter__.return_value = _response(b"")

        result = _http_request("POST", "http://example.com", json_body={"email": "a@x.com"})

        request = mock_urlopen.call_args[0][0]
        assert result == {}
        assert json.loads(request.data) == {"email": "a@x.com"}
        assert request.get_header("Content-type") == "application/json"
        assert request.get_method() == "POST"

    @patch("report_sync.time.sleep")
    @patch("report_sync.urllib.request.urlopen")
    def test_server_error_retried(self, mock_urlopen, mock_sleep):
        ok = MagicMock()
        ok.__enter__.return_value = _response(b"[]")
        mock_urlopen.side_effect = [_http_error(503), ok]

        assert _http_request("GET", "http://example.com", max_retries=2) == []
        assert mock_sleep.call_count == 1

    @patch("report_sync.time.sleep")
    @patch("report_sync.urllib.request.urlopen")
    def test_client_error_not_retried(self, mock_urlopen, mock_sleep):
        mock_urlopen.side_effect = _http_error(401)

        with pytest.raises(HTTPError):
            _http_request("GET", "http://example.com", max_retries=3)
        assert mock_urlopen.call_count == 1
        mock_sleep.assert_not_called()

    @patch("report_sync.time.sleep")
    @patch("report_sync.urllib.request.urlopen")
    def test_single_attempt_raises_network_error(self, mock_urlopen, mock_sleep):
        mock_urlopen.side_effect = URLError("refused")

        with pytest.raises(URLError):
            _http_request("GET", "http://example.com", max_retries=1)
        mock_sleep.assert_not_called()

    @patch("report_sync.time.sleep")
    @patch("report_sync.urllib.request.urlopen")
    def test_read_timeout_retried(self, mock_urlopen, mock_sleep):
        stalled = MagicMock()
        stalled.__enter__.return_value.read.side_effect = socket.timeout("timed out")
        ok = MagicMock()
        ok.__enter__.return_value = _response(b"[]")
        mock_urlopen.side_effect = [stalled, ok]

        assert _http_request("GET", "http://example.com", max_retries=2) == []
        assert mock_sleep.call_count == 1

    @patch("report_sync.urllib.request.urlopen")
    def test_status_returned_on_request(self, mock_urlopen):
        response = _response(b'{"ok": true}')
        response.status = 201
        mock_urlopen.return_value.__enter__.return_value = response

        assert _http_request("POST", "http://example.com", json_body={}, with_status=True) == (201, {"ok": True})


@pytest.mark.unit
@pytest.mark.http
class TestSupabaseLeadsClient:
    """Test converted lead fetching."""

    def test_headers_and_url(self, base_config):
        client = SupabaseLeadsClient(base_config)

        assert client.headers["apikey"] == "test_anon_key"
        assert client.headers["Authorization"] == "Bearer test_anon_key"
        assert client.url == (
            "https://testproject.supabase.co/rest/v1/converted_leads"
            "?select=id,converted_lead_email,created_at,account_name&limit=5"
        )

    def test_full_url_project_accepted(self, base_config):
        base_config.supabase_project = "http://localhost:54321/"

        client = SupabaseLeadsClient(base_config)

        assert client.url.startswith("http://localhost:54321/rest/v1/converted_leads?")

    def test_fetch_parses_records_in_order(self, base_config):
        payload = [
            {"id": 1, "converted_lead_email": "a@x.com", "account_name": "Acme Corp", "created_at": "2024-01-01"},
            {"id": 2, "converted_lead_email": "b@y.com", "account_name": "Globex"},
        ]
        client = SupabaseLeadsClient(base_config)

        with patch("report_sync._http_request", return_value=payload) as mock_http:
            records = client.fetch()

        assert records == [
            CanonicalRecord(account_name="Acme Corp", contact_email="a@x.com"),
            CanonicalRecord(account_name="Globex", contact_email="b@y.com"),
        ]
        assert mock_http.call_args[0][0] == "GET"
        assert mock_http.call_args[1]["headers"]["apikey"] == "test_anon_key"

    def test_http_failure_is_record_source_error(self, base_config):
        client = SupabaseLeadsClient(base_config)

        with patch("report_sync._http_request", side_effect=_http_error(401)):
            with pytest.raises(RecordSourceError) as excinfo:
                client.fetch()

        assert "Request failed: 401" in str(excinfo.value)

    def test_network_failure_is_record_source_error(self, base_config):
        client = SupabaseLeadsClient(base_config)

        with patch("report_sync._http_request", side_effect=URLError("no route")):
            with pytest.raises(RecordSourceError):
                client.fetch()

    @patch("report_sync.time.sleep")
    @patch("report_sync.urllib.request.urlopen")
    def test_read_timeout_is_record_source_error(self, mock_urlopen, mock_sleep, base_config):
        mock_urlopen.return_value.__enter__.return_value.read.side_effect = socket.timeout("timed out")
        client = SupabaseLeadsClient(base_config)

        with pytest.raises(RecordSourceError, match="timed out"):
            client.fetch()

    @pytest.mark.parametrize(
        "payload",
        [
            "<html>not json</html>",
            {"message": "not a list"},
            [["a@x.com", "Acme"]],
            [{"converted_lead_email": "a@x.com"}],
            [{"converted_lead_email": None, "account_name": "Acme"}],
        ],
    )
    def test_malformed_body_is_record_source_error(self, base_config, payload):
        client = SupabaseLeadsClient(base_config)

        with patch("report_sync._http_request", return_value=payload):
            with pytest.raises(RecordSourceError):
                client.fetch()

    def test_empty_table(self, base_config):
        client = SupabaseLeadsClient(base_config)

        with patch("report_sync._http_request", return_value=[]):
            assert client.fetch() == []


@pytest.mark.unit
@pytest.mark.http
class TestEnrichmentWebhookClient:
    """Test webhook dispatch semantics."""

    def test_posts_event_payload_once(self):
        client = EnrichmentWebhookClient("http://localhost/webhook", timeout=5)
        event = EnrichmentEvent.create("a@x.com", "https://portal.test/file/555")

        with patch("report_sync._http_request", return_value=(200, "Accepted")) as mock_http:
            status = client.dispatch(event)

        assert status == 200
        mock_http.assert_called_once_with(
            "POST",
            "http://localhost/webhook",
            json_body={"email": "a@x.com", "file_number": "https://portal.test/file/555"},
            timeout=5,
            max_retries=1,
            with_status=True,
        )

    @patch("report_sync.urllib.request.urlopen")
    def test_success_status_reported_as_received(self, mock_urlopen):
        response = _response(b"")
        response.status = 204
        mock_urlopen.return_value.__enter__.return_value = response
        client = EnrichmentWebhookClient("http://localhost/webhook")
        event = EnrichmentEvent.create("a@x.com", "https://portal.test/file/1")

        assert client.dispatch(event) == 204

    @patch("report_sync.urllib.request.urlopen")
    def test_read_timeout_raises_dispatch_error(self, mock_urlopen):
        response = _response(b"")
        response.read.side_effect = socket.timeout("timed out")
        mock_urlopen.return_value.__enter__.return_value = response
        client = EnrichmentWebhookClient("http://localhost/webhook")
        event = EnrichmentEvent.create("a@x.com", "https://portal.test/file/1")

        with pytest.raises(DispatchError):
            client.dispatch(event)
        assert mock_urlopen.call_count == 1

    def test_error_status_counts_as_delivered(self):
        client = EnrichmentWebhookClient("http://localhost/webhook")
        event = EnrichmentEvent.create("a@x.com", "https://portal.test/file/1")

        with patch("report_sync._http_request", side_effect=_http_error(500)):
            assert client.dispatch(event) == 500

    def test_transport_failure_raises(self):
        client = EnrichmentWebhookClient("http://localhost/webhook")
        event = EnrichmentEvent.create("a@x.com", "https://portal.test/file/1")

        with patch("report_sync._http_request", side_effect=URLError("connection refused")):
            with pytest.raises(DispatchError):
                client.dispatch(event)
