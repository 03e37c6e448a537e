"""Tests for tclcloud.auth: device code request, polling, and login."""

import json
from unittest.mock import MagicMock

import pytest
import requests

from tclcloud.api import ApiClient
from tclcloud.auth import (
    DeviceAuthorizationSession,
    authenticate,
    poll_for_credential,
    request_authorization,
)
from tclcloud.tokens import CredentialStore, TokenFile
from tclcloud.util import AuthTimeoutError, DecodeError, ProtocolError, TclError

BASE = "https://api.test/api/v1"

WHOAMI = {
    "user": {"id": "u-1", "email": "ada@example.com"},
    "organizations": [
        {"organization": {"id": "org-1", "name": "Test Org", "slug": "test-org"},
         "role": "admin"},
    ],
}


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class MemoryVault:
    def __init__(self):
        self.blob = None

    def read(self):
        return self.blob

    def write(self, blob):
        self.blob = blob


def _resp(status, body=None, text=None):
    resp = MagicMock(status_code=status)
    if text is None:
        text = json.dumps(body) if body is not None else ""
    resp.text = text
    resp.content = text.encode()
    if body is not None:
        resp.json.return_value = body
    else:
        resp.json.side_effect = ValueError("Expecting value")
    return resp


def _pending():
    return _resp(400, {"error": {"code": "authorization_pending", "message": "waiting"}})


def _client(*responses):
    session = MagicMock()
    session.request.side_effect = list(responses)
    return ApiClient(BASE, session=session), session


def _session(clock, expires_in=5, interval=1.0):
    return DeviceAuthorizationSession(
        device_code="dev-123",
        user_code="ABCD-1234",
        verification_url="https://threatcl.com/device",
        expires_in=expires_in,
        interval=interval,
        issued_at=clock(),
    )


class TestRequestAuthorization:
    def test_success(self):
        clock = FakeClock()
        client, session = _client(_resp(200, {
            "device_code": "dev-123",
            "user_code": "ABCD-1234",
            "verification_url": "https://threatcl.com/device",
            "expires_in": 600,
            "interval": 5,
        }))
        auth = request_authorization(client, clock=clock)

        assert session.request.call_args.args == ("POST", f"{BASE}/auth/device")
        assert auth.user_code == "ABCD-1234"
        assert auth.expires_at == 700.0
        assert auth.interval == 5.0

    def test_interval_clamped_to_one_second(self):
        client, _ = _client(_resp(200, {
            "device_code": "d", "user_code": "u", "verification_url": "v",
            "expires_in": 60, "interval": 0,
        }))
        assert request_authorization(client, clock=FakeClock()).interval == 1.0

    def test_non_200(self):
        client, _ = _client(_resp(503, text="down"))
        with pytest.raises(ProtocolError) as exc:
            request_authorization(client)
        assert exc.value.status == 503

    def test_missing_fields(self):
        client, _ = _client(_resp(200, {"device_code": "d"}))
        with pytest.raises(DecodeError):
            request_authorization(client)


class TestPollForCredential:
    def test_token_on_first_poll(self):
        clock = FakeClock()
        client, session = _client(_resp(200, {"access_token": "tok", "expires_in": 3600}))
        token = poll_for_credential(client, _session(clock), sleep=clock.sleep,
                                    clock=clock, progress=lambda: None)

        assert token.access_token == "tok"
        assert token.token_type == "Bearer"
        assert token.expires_in == 3600
        assert session.request.call_args.kwargs["json"] == {"device_code": "dev-123"}
        assert clock.sleeps == []

    def test_pending_until_timeout_never_exceeds_deadline(self):
        clock = FakeClock()
        start = clock()
        session = MagicMock()
        session.request.side_effect = lambda *a, **kw: _pending()
        client = ApiClient(BASE, session=session)

        with pytest.raises(AuthTimeoutError, match="timed out"):
            poll_for_credential(client, _session(clock, expires_in=5), sleep=clock.sleep,
                                clock=clock, progress=lambda: None)

        assert clock.now - start <= 5
        assert session.request.call_count == 5

    def test_sleep_truncated_to_remaining_time(self):
        clock = FakeClock()
        session = MagicMock()
        session.request.side_effect = lambda *a, **kw: _pending()
        client = ApiClient(BASE, session=session)

        with pytest.raises(AuthTimeoutError):
            poll_for_credential(client, _session(clock, expires_in=5, interval=2.0),
                                sleep=clock.sleep, clock=clock, progress=lambda: None)
        assert clock.sleeps == [2.0, 2.0, 1.0]

    def test_request_timeout_bounded_by_interval_and_deadline(self):
        clock = FakeClock()
        session = MagicMock()
        session.request.side_effect = lambda *a, **kw: _pending()
        client = ApiClient(BASE, session=session, timeout=30)
        auth = _session(clock, expires_in=5, interval=2.0)
        clock.now += 0.5

        with pytest.raises(AuthTimeoutError):
            poll_for_credential(client, auth, sleep=clock.sleep, clock=clock,
                                progress=lambda: None)

        timeouts = [c.kwargs["timeout"] for c in session.request.call_args_list]
        assert timeouts == [2.0, 2.0, 0.5]
        assert clock.sleeps == [2.0, 2.0, 0.5]

    def test_fatal_error_code(self):
        clock = FakeClock()
        client, _ = _client(
            _pending(),
            _resp(400, {"error": {"code": "access_denied", "message": "user declined"}}),
        )
        with pytest.raises(ProtocolError, match="user declined") as exc:
            poll_for_credential(client, _session(clock), sleep=clock.sleep,
                                clock=clock, progress=lambda: None)
        assert exc.value.code == "access_denied"

    def test_transient_failures_retried(self):
        clock = FakeClock()
        session = MagicMock()
        session.request.side_effect = [
            requests.ConnectionError("reset"),
            _resp(502, text="<html>bad gateway</html>"),
            _resp(200, {"access_token": "tok"}),
        ]
        client = ApiClient(BASE, session=session)
        ticks = []

        token = poll_for_credential(client, _session(clock, expires_in=60), sleep=clock.sleep,
                                    clock=clock, progress=lambda: ticks.append("."))
        assert token.access_token == "tok"
        assert len(ticks) == 2
        assert clock.sleeps == [1.0, 1.0]

    def test_malformed_token_body(self):
        clock = FakeClock()
        client, _ = _client(_resp(200, text="not json"))
        with pytest.raises(DecodeError, match="token response"):
            poll_for_credential(client, _session(clock), sleep=clock.sleep,
                                clock=clock, progress=lambda: None)


class TestAuthenticate:
    def _device(self):
        return _resp(200, {
            "device_code": "dev-123", "user_code": "ABCD-1234",
            "verification_url": "https://threatcl.com/device",
            "expires_in": 60, "interval": 1,
        })

    def test_stores_credential_under_primary_org(self, tmp_path, capsys):
        clock = FakeClock()
        vault = MemoryVault()
        store = CredentialStore(vault, TokenFile(tmp_path / "tokens.json"))
        client, session = _client(
            self._device(),
            _pending(),
            _resp(200, {"access_token": "tok", "expires_in": 3600}),
            _resp(200, WHOAMI),
        )

        credential = authenticate(store, client, sleep=clock.sleep, clock=clock)

        assert credential.org_id == "org-1"
        assert credential.org_name == "Test Org"
        assert credential.expires_at is not None
        assert store.get_credential().access_token == "tok"
        assert "ABCD-1234" in capsys.readouterr().err
        whoami_call = session.request.call_args_list[-1]
        assert whoami_call.kwargs["headers"]["Authorization"] == "Bearer tok"

    def test_refuses_when_already_authenticated(self, tmp_path):
        store = CredentialStore(MemoryVault(), TokenFile(tmp_path / "tokens.json"))
        store.set_credential("org-1", "old-tok")
        client, session = _client(_resp(200, WHOAMI))

        with pytest.raises(TclError, match="already authenticated"):
            authenticate(store, client)
        assert session.request.call_count == 1

    def test_force_skips_existing_check(self, tmp_path):
        clock = FakeClock()
        store = CredentialStore(MemoryVault(), TokenFile(tmp_path / "tokens.json"))
        store.set_credential("org-1", "old-tok")
        client, _ = _client(
            self._device(),
            _resp(200, {"access_token": "new-tok"}),
            _resp(200, WHOAMI),
        )

        credential = authenticate(store, client, force=True, sleep=clock.sleep, clock=clock)
        assert credential.access_token == "new-tok"
        assert credential.expires_at is None

    def test_invalid_existing_token_proceeds(self, tmp_path):
        clock = FakeClock()
        store = CredentialStore(MemoryVault(), TokenFile(tmp_path / "tokens.json"))
        store.set_credential("org-1", "stale")
        client, _ = _client(
            _resp(401, text="unauthorized"),
            self._device(),
            _resp(200, {"access_token": "fresh"}),
            _resp(200, WHOAMI),
        )

        credential = authenticate(store, client, sleep=clock.sleep, clock=clock)
        assert credential.access_token == "fresh"
