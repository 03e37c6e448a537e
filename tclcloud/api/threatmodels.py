"""Threat model endpoints: CRUD, version history, and file upload."""

import os
from dataclasses import dataclass

from tclcloud.api import (
    UPLOAD_TIMEOUT,
    ApiClient,
    decode_json,
    quote_segment,
    raise_for_status,
)
from tclcloud.util import DecodeError, DocumentError, DocumentNotFoundError

STATUSES = ("draft", "in_review", "approved", "archived")


@dataclass
class ThreatModel:
    id: str
    name: str
    slug: str
    description: str = ""
    status: str = ""
    version: str = ""
    organization_id: str = ""
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data) -> "ThreatModel":
        try:
            return cls(
                id=data["id"],
                name=data.get("name", ""),
                slug=data.get("slug", ""),
                description=data.get("description") or "",
                status=data.get("status") or "",
                version=data.get("version") or "",
                organization_id=data.get("organization_id") or "",
                created_at=data.get("created_at") or "",
                updated_at=data.get("updated_at") or "",
            )
        except (AttributeError, KeyError, TypeError) as e:
            raise DecodeError(f"failed to parse threat model: {e}")


@dataclass
class RemoteDocumentVersion:
    id: str
    version: str
    fingerprint: str
    is_current: bool = False
    author: str = ""
    created_at: str = ""

    @classmethod
    def from_dict(cls, data) -> "RemoteDocumentVersion":
        try:
            return cls(
                id=data.get("id", ""),
                version=data["version"],
                fingerprint=data.get("spec_file_hash") or "",
                is_current=bool(data.get("is_current", False)),
                author=data.get("changed_by") or "",
                created_at=data.get("created_at") or "",
            )
        except (AttributeError, KeyError, TypeError) as e:
            raise DecodeError(f"failed to parse threat model version: {e}")


def _models_path(org_id: str, *parts: str) -> str:
    path = f"/org/{quote_segment(org_id)}/models"
    for part in parts:
        path += "/" + quote_segment(part)
    return path


def _raise_model_error(resp, model: str) -> None:
    if resp.status_code == 404:
        raise DocumentNotFoundError(model)
    raise_for_status(resp)


def list_threat_models(client: ApiClient, org_id: str) -> list[ThreatModel]:
    resp = client.request("GET", _models_path(org_id))
    raise_for_status(resp)
    data = decode_json(resp)
    if not isinstance(data, list):
        raise DecodeError("failed to parse response: expected a list of threat models")
    return [ThreatModel.from_dict(item) for item in data]


def fetch_threat_model(client: ApiClient, org_id: str, model: str) -> ThreatModel:
    """Fetch one threat model by id or slug. Raises DocumentNotFoundError on 404."""
    resp = client.request("GET", _models_path(org_id, model))
    if resp.status_code != 200:
        _raise_model_error(resp, model)
    return ThreatModel.from_dict(decode_json(resp))


def fetch_versions(client: ApiClient, org_id: str, model_id: str) -> list[RemoteDocumentVersion]:
    """Fetch the version history of a threat model, newest first as served."""
    resp = client.request("GET", _models_path(org_id, model_id, "versions"))
    if resp.status_code != 200:
        _raise_model_error(resp, model_id)
    data = decode_json(resp)
    try:
        items = data.get("versions") or []
    except AttributeError:
        raise DecodeError("failed to parse response: expected a versions object")
    return [RemoteDocumentVersion.from_dict(item) for item in items]


def create_threat_model(client: ApiClient, org_id: str, name: str,
                        description: str = "") -> ThreatModel:
    resp = client.request(
        "POST", _models_path(org_id),
        json={"name": name, "description": description},
    )
    raise_for_status(resp, expected=(200, 201))
    return ThreatModel.from_dict(decode_json(resp))


def upload_file(client: ApiClient, org_id: str, model: str, file_path: str) -> None:
    """Upload an HCL file as a new version of ``model`` (id or slug)."""
    try:
        with open(file_path, "rb") as f:
            content = f.read()
    except OSError as e:
        raise DocumentError(f"failed to read file: {e}")

    resp = client.request(
        "POST", _models_path(org_id, model, "upload"),
        files={"file": (os.path.basename(file_path), content)},
        timeout=max(client.timeout, UPLOAD_TIMEOUT),
    )
    if resp.status_code != 200:
        _raise_model_error(resp, model)


def delete_threat_model(client: ApiClient, org_id: str, model: str) -> None:
    resp = client.request("DELETE", _models_path(org_id, model))
    if resp.status_code not in (200, 204):
        _raise_model_error(resp, model)


def update_status(client: ApiClient, org_id: str, model: str, status: str) -> None:
    resp = client.request(
        "POST", _models_path(org_id, model, "status"),
        json={"status": status},
    )
    if resp.status_code != 200:
        _raise_model_error(resp, model)
