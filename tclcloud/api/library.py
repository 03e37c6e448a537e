"""Organization control and threat libraries, looked up by reference ID."""

from dataclasses import dataclass

from tclcloud.api import ApiClient, decode_json, raise_for_status
from tclcloud.util import DecodeError, ProtocolError

PUBLISHED = "PUBLISHED"

_CONTROLS_QUERY = """query controlLibraryItemsByRefs($orgId: ID!, $referenceIds: [String!]!) {
  controlLibraryItemsByRefs(orgId: $orgId, referenceIds: $referenceIds) {
    id
    referenceId
    name
    status
  }
}"""

_THREATS_QUERY = """query threatLibraryItemsByRefs($orgId: ID!, $referenceIds: [String!]!) {
  threatLibraryItemsByRefs(orgId: $orgId, referenceIds: $referenceIds) {
    id
    referenceId
    name
    status
  }
}"""


@dataclass
class LibraryItem:
    id: str
    reference_id: str
    name: str = ""
    status: str = ""

    @property
    def published(self) -> bool:
        return self.status == PUBLISHED


def _graphql(client: ApiClient, query: str, variables: dict) -> dict:
    resp = client.request("POST", "/graphql",
                          json={"query": query, "variables": variables})
    raise_for_status(resp)
    body = decode_json(resp)
    if not isinstance(body, dict):
        raise DecodeError("failed to parse response: expected a JSON object")
    errors = body.get("errors") or []
    if errors:
        message = errors[0].get("message", "") if isinstance(errors[0], dict) else errors[0]
        raise ProtocolError(f"GraphQL error: {message}", status=resp.status_code)
    return body.get("data") or {}


def _fetch_by_refs(client, org_id, refs, query, field) -> dict[str, LibraryItem]:
    if not refs:
        return {}
    data = _graphql(client, query, {"orgId": org_id, "referenceIds": list(refs)})
    found = {}
    try:
        for item in data.get(field) or []:
            if item is None:
                continue
            found[item["referenceId"]] = LibraryItem(
                id=item.get("id", ""),
                reference_id=item["referenceId"],
                name=item.get("name") or "",
                status=item.get("status") or "",
            )
    except (AttributeError, KeyError, TypeError) as e:
        raise DecodeError(f"failed to parse library items: {e}")
    return found


def fetch_controls_by_refs(client: ApiClient, org_id: str, refs) -> dict[str, LibraryItem]:
    """Look up control library items; refs unknown to the library are absent."""
    return _fetch_by_refs(client, org_id, refs, _CONTROLS_QUERY,
                          "controlLibraryItemsByRefs")


def fetch_threats_by_refs(client: ApiClient, org_id: str, refs) -> dict[str, LibraryItem]:
    """Look up threat library items; refs unknown to the library are absent."""
    return _fetch_by_refs(client, org_id, refs, _THREATS_QUERY,
                          "threatLibraryItemsByRefs")
