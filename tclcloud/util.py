"""Error classes, constants, and environment lookups."""

import os
import sys
from pathlib import Path


class TclError(Exception):
    """Base error for tclcloud operations."""

    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


class AuthError(TclError):
    """Authentication error (exit code 2)."""

    def __init__(self, message: str):
        super().__init__(message, exit_code=2)


class ConnectivityError(TclError):
    """The API could not be reached."""


class ProtocolError(TclError):
    """The API answered with an unexpected status or error body."""

    def __init__(self, message: str, status: int | None = None, code: str = ""):
        super().__init__(message)
        self.status = status
        self.code = code


class DecodeError(TclError):
    """A response body did not have the expected shape."""


class AuthTimeoutError(TclError):
    """The device authorization expired before the user approved it."""


class NoTokenError(TclError):
    """No stored credential for the requested organization."""


class NotFoundError(TclError):
    """The organization is not present in the token store."""


class StorageError(TclError):
    """Neither the keyring nor the token file could be used."""


class DocumentError(TclError):
    """The local threat model file could not be read or parsed."""


class ConfigurationError(TclError):
    """The backend block of the local file is missing or invalid."""


class MembershipError(TclError):
    """The caller is not a member of the organization the file declares."""

    def __init__(self, organization: str, available: list | None = None):
        message = f"you are not a member of organization '{organization}'"
        if available:
            slugs = ", ".join(f"{m.slug} ({m.role})" for m in available)
            message += f". Available organizations: {slugs}"
        super().__init__(message)
        self.organization = organization
        self.available = available or []


class DocumentNotFoundError(ProtocolError):
    """The threat model named by the backend block does not exist remotely."""

    def __init__(self, name: str, org_id: str = ""):
        super().__init__(f"threat model not found: {name}", status=404)
        self.name = name
        self.org_id = org_id


class AlreadySetError(TclError):
    """The backend block already declares a threat model."""


class RewriteError(TclError):
    """The backend block could not be located for rewriting."""


DEFAULT_API_URL = "https://api.threatcl.com"
API_PREFIX = "/api/v1"
API_URL_ENV = "THREATCL_API_URL"
ORG_ENV = "THREATCL_CLOUD_ORG"

BACKEND_NAME = "threatcl-cloud"
KEYRING_SERVICE = "threatcl"
KEYRING_KEY = "token_store"
TOKEN_FILENAME = "tokens.json"

LOGIN_HINT = "Run `tclcloud login` to authenticate."


def config_dir(environ=None) -> Path:
    """Return the per-user configuration directory for tclcloud.

    Honors $XDG_CONFIG_HOME, then $HOME/.config. Raises StorageError if
    neither is set.
    """
    env = os.environ if environ is None else environ
    base = env.get("XDG_CONFIG_HOME", "")
    if not base:
        home = env.get("HOME", "")
        if not home:
            raise StorageError("could not determine home directory")
        base = os.path.join(home, ".config")
    return Path(base) / "threatcl"


def token_path(environ=None) -> Path:
    return config_dir(environ) / TOKEN_FILENAME


def api_base_url(environ=None) -> str:
    """Return the API root, e.g. https://api.threatcl.com/api/v1."""
    env = os.environ if environ is None else environ
    url = env.get(API_URL_ENV, "") or DEFAULT_API_URL
    return url.rstrip("/") + API_PREFIX


def warn(message: str) -> None:
    print(f"WARN: {message}", file=sys.stderr)


def confirm_destructive(message: str, force: bool = False) -> None:
    """Prompt for confirmation on destructive ops. Raises TclError on decline."""
    if force:
        return

    if not sys.stdin.isatty():
        raise TclError(
            f"Refusing to {message} without --force (non-interactive)",
            exit_code=3,
        )
    print(f"{message} [y/N]: ", end="", file=sys.stderr, flush=True)
    answer = input().strip().lower()
    if answer not in ("y", "yes"):
        raise TclError("Cancelled", exit_code=3)
