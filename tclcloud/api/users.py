"""Caller identity and organization memberships."""

from dataclasses import dataclass, field

from tclcloud.api import ApiClient, decode_json, raise_for_status
from tclcloud.util import DecodeError


@dataclass
class OrgMembership:
    org_id: str
    name: str
    slug: str
    role: str = ""
    joined_at: str = ""


@dataclass
class WhoAmI:
    user_id: str = ""
    email: str = ""
    full_name: str = ""
    email_verified: bool = False
    organizations: list[OrgMembership] = field(default_factory=list)
    # Set when the bearer token is an org-scoped API token
    token_org_id: str = ""
    token_org_name: str = ""

    def find_org(self, slug: str) -> OrgMembership | None:
        for membership in self.organizations:
            if membership.slug == slug:
                return membership
        return None

    def primary_org(self) -> tuple[str, str]:
        """Return (org_id, org_name) a fresh token should be stored under."""
        if self.token_org_id:
            return self.token_org_id, self.token_org_name
        if self.organizations:
            first = self.organizations[0]
            return first.org_id, first.name
        return "", ""


def _parse_whoami(data) -> WhoAmI:
    try:
        user = data.get("user") or {}
        orgs = [
            OrgMembership(
                org_id=m["organization"]["id"],
                name=m["organization"].get("name", ""),
                slug=m["organization"].get("slug", ""),
                role=m.get("role", ""),
                joined_at=m.get("joined_at", ""),
            )
            for m in data.get("organizations") or []
        ]
        return WhoAmI(
            user_id=user.get("id", ""),
            email=user.get("email", ""),
            full_name=user.get("full_name", ""),
            email_verified=bool(user.get("email_verified", False)),
            organizations=orgs,
            token_org_id=data.get("api_token_organization_id") or "",
            token_org_name=data.get("api_token_organization_name") or "",
        )
    except (AttributeError, KeyError, TypeError) as e:
        raise DecodeError(f"failed to parse user information: {e}")


def fetch_user_info(client: ApiClient) -> WhoAmI:
    """GET /users/me with the client's bearer token."""
    resp = client.request("GET", "/users/me")
    raise_for_status(resp)
    return _parse_whoami(decode_json(resp))
