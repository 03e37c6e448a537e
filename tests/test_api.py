"""Tests for tclcloud.api: the HTTP client and error translation."""

import json
from unittest.mock import MagicMock

import pytest
import requests

from tclcloud.api import ApiClient, decode_json, quote_segment, raise_for_status
from tclcloud.util import AuthError, ConnectivityError, DecodeError, ProtocolError

BASE = "https://api.test/api/v1"


def _resp(status=200, body=None, text=None):
    resp = MagicMock()
    resp.status_code = status
    if text is None:
        text = json.dumps(body) if body is not None else ""
    resp.text = text
    resp.content = text.encode()
    if body is not None:
        resp.json.return_value = body
    else:
        resp.json.side_effect = ValueError("Expecting value")
    return resp


class TestApiClient:
    def test_url_joins_path(self):
        client = ApiClient(BASE + "/", session=MagicMock())
        assert client.url("/users/me") == f"{BASE}/users/me"
        assert client.url("users/me") == f"{BASE}/users/me"

    def test_default_base_url_from_env(self, monkeypatch):
        monkeypatch.setenv("THREATCL_API_URL", "http://localhost:9000")
        client = ApiClient(session=MagicMock())
        assert client.base_url == "http://localhost:9000/api/v1"

    def test_bearer_header_sent(self):
        session = MagicMock()
        session.request.return_value = _resp(200, {})
        ApiClient(BASE, token="tok", session=session).request("GET", "/users/me")

        _, kwargs = session.request.call_args
        assert kwargs["headers"]["Authorization"] == "Bearer tok"
        assert kwargs["timeout"] == 10.0

    def test_no_header_without_token(self):
        session = MagicMock()
        session.request.return_value = _resp(200, {})
        ApiClient(BASE, session=session).request("POST", "/auth/device")

        _, kwargs = session.request.call_args
        assert "Authorization" not in kwargs["headers"]

    def test_explicit_timeout_kept(self):
        session = MagicMock()
        session.request.return_value = _resp(200, {})
        ApiClient(BASE, session=session).request("GET", "/x", timeout=2)
        assert session.request.call_args.kwargs["timeout"] == 2

    def test_transport_error_becomes_connectivity_error(self):
        session = MagicMock()
        session.request.side_effect = requests.ConnectionError("refused")
        client = ApiClient(BASE, session=session)
        with pytest.raises(ConnectivityError, match="failed to connect to API"):
            client.request("GET", "/users/me")

    def test_with_token_shares_session(self):
        session = MagicMock()
        client = ApiClient(BASE, session=session, timeout=3)
        other = client.with_token("t2")
        assert other.session is session
        assert other.token == "t2"
        assert other.timeout == 3
        assert client.token == ""


class TestRaiseForStatus:
    def test_expected_status_passes(self):
        raise_for_status(_resp(201, {}), expected=(200, 201))

    def test_401_is_auth_error(self):
        with pytest.raises(AuthError, match="login"):
            raise_for_status(_resp(401, text="nope"))

    def test_structured_error_body(self):
        body = {"error": {"code": "forbidden", "message": "no access"}}
        with pytest.raises(ProtocolError) as exc:
            raise_for_status(_resp(403, body))
        assert exc.value.status == 403
        assert exc.value.code == "forbidden"
        assert "no access" in str(exc.value)

    def test_plain_text_body(self):
        with pytest.raises(ProtocolError, match="status 500: server exploded") as exc:
            raise_for_status(_resp(500, text="server exploded\n"))
        assert exc.value.code == ""


class TestDecodeJson:
    def test_valid(self):
        assert decode_json(_resp(200, {"a": 1})) == {"a": 1}

    def test_invalid(self):
        with pytest.raises(DecodeError, match="failed to parse response"):
            decode_json(_resp(200, text="<html>"))


class TestQuoteSegment:
    def test_slash_escaped(self):
        assert quote_segment("a/b c") == "a%2Fb%20c"
