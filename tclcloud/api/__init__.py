"""HTTP client for the ThreatCL Cloud API with error translation."""

from urllib.parse import quote

import requests

from tclcloud.util import (
    AuthError,
    ConnectivityError,
    DecodeError,
    ProtocolError,
    api_base_url,
)

DEFAULT_TIMEOUT = 10.0
UPLOAD_TIMEOUT = 30.0

AUTH_FAILED = (
    "Authentication failed - token may be invalid or expired. "
    "Run `tclcloud login` again."
)


def quote_segment(value: str) -> str:
    """Escape a value for use as a single URL path segment."""
    return quote(value, safe="")


class ApiClient:
    """Thin wrapper around a requests.Session bound to one API root.

    The session is injectable so tests can hand in a stub; ``token`` is
    sent as a bearer credential when set.
    """

    def __init__(self, base_url: str | None = None, token: str = "",
                 session=None, timeout: float = DEFAULT_TIMEOUT):
        self.base_url = (base_url or api_base_url()).rstrip("/")
        self.token = token
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout

    def with_token(self, token: str) -> "ApiClient":
        """Return a client sharing this session but authenticating as ``token``."""
        return ApiClient(self.base_url, token=token, session=self.session,
                         timeout=self.timeout)

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def request(self, method: str, path: str, **kwargs) -> requests.Response:
        """Send a request. Transport failures become ConnectivityError."""
        headers = dict(kwargs.pop("headers", None) or {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        kwargs.setdefault("timeout", self.timeout)
        try:
            return self.session.request(method, self.url(path),
                                        headers=headers, **kwargs)
        except requests.RequestException as e:
            raise ConnectivityError(f"failed to connect to API: {e}")

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "ApiClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def raise_for_status(resp, expected=(200,)) -> None:
    """Translate a non-success response into AuthError or ProtocolError."""
    if resp.status_code in expected:
        return
    if resp.status_code == 401:
        raise AuthError(AUTH_FAILED)
    message, code = _error_details(resp)
    raise ProtocolError(
        f"API returned status {resp.status_code}: {message}",
        status=resp.status_code,
        code=code,
    )


def _error_details(resp) -> tuple[str, str]:
    """Pull ``{error: {code, message}}`` out of a body, falling back to raw text."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text.strip(), ""
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message", "")), str(error.get("code", ""))
    if isinstance(error, str):
        return error, ""
    return resp.text.strip(), ""


def decode_json(resp):
    """Decode a JSON body, raising DecodeError when it is not JSON."""
    try:
        return resp.json()
    except ValueError as e:
        raise DecodeError(f"failed to parse response: {e}")
