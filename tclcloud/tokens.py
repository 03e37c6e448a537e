"""Per-organization credential storage: OS keyring with a JSON file fallback."""

import json
import os
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path

import keyring
from keyring.errors import KeyringError

from tclcloud.util import (
    KEYRING_KEY,
    KEYRING_SERVICE,
    LOGIN_HINT,
    ORG_ENV,
    NoTokenError,
    NotFoundError,
    StorageError,
    token_path,
    warn,
)

SCHEMA_VERSION = 2


@dataclass
class AccessCredential:
    """A bearer token for one organization."""
    org_id: str
    access_token: str
    token_type: str = "Bearer"
    org_name: str = ""
    expires_at: int | None = None               # Unix seconds

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (time.time() if now is None else now) >= self.expires_at

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "org_name": self.org_name,
            "expires_at": self.expires_at,
        }


@dataclass
class TokenStore:
    """The persisted aggregate. Mutated only through CredentialStore."""
    version: int = SCHEMA_VERSION
    default_org: str = ""
    tokens: dict[str, AccessCredential] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps({
            "version": self.version,
            "default_org": self.default_org,
            "tokens": {org: cred.to_dict() for org, cred in self.tokens.items()},
        }, indent=2)

    @classmethod
    def from_json(cls, raw: str) -> "TokenStore":
        """Decode a v2 store. Raises ValueError for anything else.

        Legacy single-token blobs have no ``version``/``tokens`` wrapper and
        are rejected rather than migrated.
        """
        data = json.loads(raw)
        if not isinstance(data, dict) or data.get("version") != SCHEMA_VERSION:
            raise ValueError("unsupported token store format")
        entries = data.get("tokens")
        if not isinstance(entries, dict):
            raise ValueError("token store has no tokens mapping")

        tokens = {}
        for org_id, entry in entries.items():
            if not isinstance(entry, dict) or not entry.get("access_token"):
                raise ValueError(f"invalid token entry for {org_id}")
            expires_at = entry.get("expires_at")
            tokens[org_id] = AccessCredential(
                org_id=org_id,
                access_token=entry["access_token"],
                token_type=entry.get("token_type") or "Bearer",
                org_name=entry.get("org_name") or "",
                expires_at=int(expires_at) if expires_at is not None else None,
            )

        default_org = data.get("default_org") or ""
        if default_org not in tokens:
            default_org = ""
        return cls(version=SCHEMA_VERSION, default_org=default_org, tokens=tokens)


class KeyringVault:
    """The whole token store as one secret in the OS keyring."""

    def __init__(self, service: str = KEYRING_SERVICE, key: str = KEYRING_KEY):
        self.service = service
        self.key = key

    def read(self) -> str | None:
        try:
            return keyring.get_password(self.service, self.key)
        except (KeyringError, RuntimeError) as e:
            raise StorageError(f"failed to read from keyring: {e}")

    def write(self, blob: str) -> None:
        try:
            keyring.set_password(self.service, self.key, blob)
        except (KeyringError, RuntimeError) as e:
            raise StorageError(f"failed to save to keyring: {e}")


class TokenFile:
    """The whole token store as an owner-only JSON file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def read(self) -> str | None:
        if not self.path.exists():
            return None
        return self.path.read_text()

    def write(self, blob: str) -> None:
        """Write atomically using temp file + rename, mode 0600."""
        directory = self.path.parent
        directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(blob)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise


class CredentialStore:
    """Reads and writes the TokenStore through an injected vault and file.

    Every write persists the whole store to exactly one backend: the vault
    when it accepts the write, otherwise the file.
    """

    def __init__(self, vault, token_file: TokenFile, warn=warn):
        self.vault = vault
        self.token_file = token_file
        self._warn = warn

    def load(self) -> TokenStore:
        """Return the first store that decodes (vault, then file), or an empty one."""
        for reader in (self._read_vault, self._read_file):
            raw = reader()
            if not raw:
                continue
            try:
                return TokenStore.from_json(raw)
            except (ValueError, TypeError):
                continue
        return TokenStore()

    def _read_vault(self) -> str | None:
        try:
            return self.vault.read()
        except StorageError:
            return None

    def _read_file(self) -> str | None:
        try:
            return self.token_file.read()
        except OSError:
            return None

    def save(self, store: TokenStore) -> str:
        """Persist the store. Returns "keyring" or "file"."""
        blob = store.to_json()
        try:
            self.vault.write(blob)
            return "keyring"
        except StorageError as e:
            self._warn(f"{e}; falling back to {self.token_file.path}")

        try:
            self.token_file.write(blob)
        except OSError as e:
            raise StorageError(
                f"could not save tokens to the keyring or to {self.token_file.path}: {e}"
            )
        return "file"

    def set_credential(self, org_id: str, token: str, token_type: str = "Bearer",
                       org_name: str = "", expires_at: int | None = None) -> AccessCredential:
        if not org_id:
            raise NoTokenError("cannot store a token without an organization ID")
        store = self.load()
        credential = AccessCredential(
            org_id=org_id,
            access_token=token,
            token_type=token_type or "Bearer",
            org_name=org_name,
            expires_at=expires_at,
        )
        store.tokens[org_id] = credential
        if not store.default_org:
            store.default_org = org_id
        self.save(store)
        return credential

    def get_credential(self, org_id: str = "") -> AccessCredential:
        store = self.load()
        if not store.tokens:
            raise NoTokenError(f"no tokens stored. {LOGIN_HINT}")
        if not org_id:
            org_id = _effective_default(store)
            if not org_id:
                raise NoTokenError(
                    "multiple tokens stored and no default organization set. "
                    "Use --org-id or `tclcloud token default <org-id>`."
                )
        credential = store.tokens.get(org_id)
        if credential is None:
            raise NoTokenError(f"no token found for organization {org_id}")
        return credential

    def list_credentials(self) -> tuple[dict[str, AccessCredential], str]:
        store = self.load()
        return store.tokens, store.default_org

    def remove_credential(self, org_id: str) -> AccessCredential:
        store = self.load()
        if org_id not in store.tokens:
            raise NotFoundError(f"no token found for organization {org_id}")
        removed = store.tokens.pop(org_id)
        if store.default_org == org_id:
            store.default_org = ""
        if len(store.tokens) == 1:
            store.default_org = next(iter(store.tokens))
        elif not store.tokens:
            store.default_org = ""
        self.save(store)
        return removed

    def remove_all(self) -> int:
        store = self.load()
        count = len(store.tokens)
        store.tokens.clear()
        store.default_org = ""
        self.save(store)
        return count

    def get_default(self) -> str:
        return _effective_default(self.load())

    def set_default(self, org_id: str) -> None:
        store = self.load()
        if org_id not in store.tokens:
            raise NotFoundError(f"no token found for organization {org_id}")
        store.default_org = org_id
        self.save(store)


def _effective_default(store: TokenStore) -> str:
    if store.default_org:
        return store.default_org
    if len(store.tokens) == 1:
        return next(iter(store.tokens))
    return ""


def default_store(environ=None) -> CredentialStore:
    """Build the store backed by the real keyring and the per-user token file."""
    return CredentialStore(KeyringVault(), TokenFile(token_path(environ)))


def resolve_org_id(store: CredentialStore, flag_org_id: str = "", environ=None,
                   token: str = "", client=None) -> str:
    """Pick the organization a command acts on.

    Priority: 1) --org-id flag, 2) $THREATCL_CLOUD_ORG, 3) the stored default,
    4) the first organization /users/me reports for ``token``, consulted only
    when the store holds no tokens at all.
    """
    if flag_org_id:
        return flag_org_id

    env = os.environ if environ is None else environ
    env_org = env.get(ORG_ENV, "")
    if env_org:
        return env_org

    store_data = store.load()
    org_id = _effective_default(store_data)
    if org_id:
        return org_id

    if not store_data.tokens and token and client is not None:
        from tclcloud.api.users import fetch_user_info

        org_id, _ = fetch_user_info(client.with_token(token)).primary_org()
        if org_id:
            return org_id

    if store_data.tokens:
        raise NoTokenError(
            "multiple tokens stored and no default organization set. "
            "Use --org-id or `tclcloud token default <org-id>`."
        )
    raise NoTokenError(f"no tokens stored. {LOGIN_HINT}")
