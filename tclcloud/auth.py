"""Device-flow authentication and token hand-off to the credential store."""

import json
import sys
import time
from dataclasses import dataclass

import requests

from tclcloud.api import ApiClient
from tclcloud.api.users import fetch_user_info
from tclcloud.tokens import CredentialStore
from tclcloud.util import (
    AuthTimeoutError,
    ConnectivityError,
    DecodeError,
    NoTokenError,
    ProtocolError,
    TclError,
    warn,
)

PENDING = "authorization_pending"
MIN_INTERVAL = 1.0
MIN_REQUEST_TIMEOUT = 0.1


@dataclass
class DeviceAuthorizationSession:
    """One login attempt, as issued by POST /auth/device."""
    device_code: str
    user_code: str
    verification_url: str
    expires_in: int
    interval: float
    issued_at: float                      # monotonic clock reading

    @property
    def expires_at(self) -> float:
        return self.issued_at + self.expires_in


@dataclass
class TokenResponse:
    access_token: str
    token_type: str = "Bearer"
    expires_in: int | None = None


def request_authorization(client: ApiClient, clock=time.monotonic) -> DeviceAuthorizationSession:
    """Ask the API for a device code. Raises ConnectivityError, ProtocolError, DecodeError."""
    resp = client.request("POST", "/auth/device")
    if resp.status_code != 200:
        raise ProtocolError(
            f"API returned status {resp.status_code}: {resp.text.strip()}",
            status=resp.status_code,
        )
    try:
        data = resp.json()
        return DeviceAuthorizationSession(
            device_code=data["device_code"],
            user_code=data["user_code"],
            verification_url=data["verification_url"],
            expires_in=int(data["expires_in"]),
            interval=max(float(data.get("interval") or 0), MIN_INTERVAL),
            issued_at=clock(),
        )
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise DecodeError(f"failed to parse device code response: {e}")


def _parse_token(body: bytes) -> TokenResponse:
    try:
        data = json.loads(body)
        expires_in = data.get("expires_in")
        return TokenResponse(
            access_token=data["access_token"],
            token_type=data.get("token_type") or "Bearer",
            expires_in=int(expires_in) if expires_in is not None else None,
        )
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise DecodeError(f"failed to parse token response: {e}")


def _parse_poll_error(body: bytes) -> dict | None:
    """Return the ``error`` object of a structured error body, or None."""
    try:
        data = json.loads(body)
    except ValueError:
        return None
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict) and error.get("code"):
        return error
    return None


def _progress() -> None:
    print(".", end="", file=sys.stderr, flush=True)


def poll_for_credential(
    client: ApiClient,
    session: DeviceAuthorizationSession,
    sleep=time.sleep,
    clock=time.monotonic,
    progress=_progress,
) -> TokenResponse:
    """Poll until the user approves the device, the code expires, or the API refuses.

    Transport errors, unreadable bodies, unstructured error bodies and
    ``authorization_pending`` all mean "try again after one interval". Any
    other structured error code is fatal. Neither a single request nor the
    wait between requests may run past one interval or the session's expiry.
    """
    payload = {"device_code": session.device_code}

    while True:
        remaining = session.expires_at - clock()
        if remaining <= 0:
            raise AuthTimeoutError(
                f"authentication timed out after {session.expires_in} seconds"
            )

        try:
            resp = client.request(
                "POST", "/auth/device/poll", json=payload,
                timeout=max(min(client.timeout, session.interval, remaining),
                            MIN_REQUEST_TIMEOUT),
            )
            body = resp.content
        except (ConnectivityError, requests.RequestException):
            body = None

        if body is not None:
            if resp.status_code == 200:
                return _parse_token(body)

            error = _parse_poll_error(body)
            if error is not None and error.get("code") != PENDING:
                raise ProtocolError(
                    f"API error: {error.get('message', '')} (code: {error['code']})",
                    status=error.get("status") or resp.status_code,
                    code=error["code"],
                )

        progress()
        sleep(min(session.interval, max(session.expires_at - clock(), 0)))


def _existing_session_valid(store: CredentialStore, client: ApiClient) -> bool:
    """True if the default stored token still authenticates."""
    try:
        credential = store.get_credential()
    except NoTokenError:
        return False
    try:
        fetch_user_info(client.with_token(credential.access_token))
    except ConnectivityError as e:
        warn(f"could not validate existing token ({e}). Proceeding with login...")
        return False
    except TclError:
        return False
    return True


def _print_instructions(session: DeviceAuthorizationSession) -> None:
    print(
        "To complete authentication:\n\n"
        f"  1. Visit: {session.verification_url}\n"
        f"  2. Enter this code: {session.user_code}\n\n"
        "Waiting for authorization...",
        file=sys.stderr,
    )


def authenticate(store: CredentialStore, client: ApiClient, force: bool = False,
                 sleep=time.sleep, clock=time.monotonic):
    """Run the full device flow. Called by `tclcloud login`.

    Returns the stored AccessCredential.
    """
    if not force and _existing_session_valid(store, client):
        raise TclError(
            "You are already authenticated. Use `tclcloud whoami` to verify "
            "your session, or `tclcloud login --force` to log in again."
        )

    session = request_authorization(client, clock=clock)
    _print_instructions(session)
    token = poll_for_credential(client, session, sleep=sleep, clock=clock)
    print("", file=sys.stderr)

    whoami = fetch_user_info(client.with_token(token.access_token))
    org_id, org_name = whoami.primary_org()
    if not org_id:
        raise TclError("no organizations found for this account")

    expires_at = None
    if token.expires_in is not None:
        expires_at = int(time.time()) + token.expires_in

    return store.set_credential(
        org_id, token.access_token, token.token_type, org_name, expires_at,
    )
