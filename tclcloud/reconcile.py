"""Reconcile a local threat model file with its ThreatCL Cloud counterpart.

``validate_document`` answers three questions, each gated on the previous
one: is the caller a member of the declared organization, does the declared
threat model exist, and does the local file equal its current version.
``push`` turns the answer into create, upload or no-op.
"""

from dataclasses import dataclass, field

from tclcloud.api import ApiClient
from tclcloud.api import library as library_api
from tclcloud.api import threatmodels as tm_api
from tclcloud.api.threatmodels import ThreatModel
from tclcloud.api.users import fetch_user_info
from tclcloud.document import BackendBlock, LocalDocument, read_document
from tclcloud.rewrite import rewrite_backend_file
from tclcloud.util import (
    BACKEND_NAME,
    ConfigurationError,
    DocumentNotFoundError,
    MembershipError,
    TclError,
)


@dataclass
class ReconciliationOutcome:
    org_id: str = ""
    threatmodel: str = ""
    version: str = ""
    document: LocalDocument | None = None


@dataclass
class PushResult:
    action: str                             # unchanged | uploaded | created | skipped
    org_id: str
    threatmodel: str = ""
    version: str = ""
    created: ThreatModel | None = None
    rewritten: bool = False
    uploaded: bool = False
    rewrite_error: TclError | None = None


@dataclass
class RefCheck:
    """Library lookup result for one kind of ref (`control` or `threat`)."""
    kind: str
    published: list[str] = field(default_factory=list)
    unpublished: list[tuple[str, str]] = field(default_factory=list)  # (ref, status)
    missing: list[str] = field(default_factory=list)
    error: TclError | None = None


def _line_list(backends: list[BackendBlock]) -> str:
    lines = [str(b.line) for b in backends if b.line]
    return f" at lines {', '.join(lines)}" if lines else ""


def check_backend(backends: list[BackendBlock]) -> BackendBlock:
    """Enforce the single-backend invariants. No network involved."""
    if not backends:
        raise ConfigurationError(
            "validation failed: no backend block found. Add a backend "
            f'"{BACKEND_NAME}" block with an organization'
        )
    if len(backends) > 1:
        raise ConfigurationError(
            f"validation failed: multiple backend blocks found ({len(backends)})"
            f"{_line_list(backends)}. "
            "Only one backend block is allowed"
        )
    backend = backends[0]
    if backend.name != BACKEND_NAME:
        raise ConfigurationError(
            f"validation failed: backend name is '{backend.name}', "
            f"expected '{BACKEND_NAME}'"
        )
    if not backend.organization:
        raise ConfigurationError(
            "validation failed: backend organization is not specified. "
            "Set the 'organization' attribute in the backend block"
        )
    return backend


def validate_document(client: ApiClient, path: str) -> ReconciliationOutcome:
    """Validate a local file against the cloud.

    Raises ConfigurationError (backend invariants, checked before any
    request), MembershipError, DocumentNotFoundError (carrying the declared
    name and the org id), and the api layer's connectivity/protocol errors.
    """
    document = read_document(path)
    backend = check_backend(document.backends)

    whoami = fetch_user_info(client)
    membership = whoami.find_org(backend.organization)
    if membership is None:
        raise MembershipError(backend.organization, whoami.organizations)

    outcome = ReconciliationOutcome(org_id=membership.org_id, document=document)
    if not backend.threatmodel:
        return outcome

    try:
        model = tm_api.fetch_threat_model(client, membership.org_id, backend.threatmodel)
    except DocumentNotFoundError:
        raise DocumentNotFoundError(backend.threatmodel, org_id=membership.org_id)
    outcome.threatmodel = model.slug or backend.threatmodel

    versions = tm_api.fetch_versions(client, membership.org_id, model.id)
    for version in versions:
        if version.fingerprint == document.fingerprint and version.is_current:
            outcome.version = version.version
            break
    return outcome


def _check_refs(kind, refs, fetch, client, org_id) -> RefCheck:
    check = RefCheck(kind)
    try:
        found = fetch(client, org_id, refs)
    except TclError as e:
        check.error = e
        return check
    for ref in refs:
        item = found.get(ref)
        if item is None:
            check.missing.append(ref)
        elif item.published:
            check.published.append(ref)
        else:
            check.unpublished.append((ref, item.status))
    return check


def check_library_refs(client: ApiClient, org_id: str,
                       document: LocalDocument) -> list[RefCheck]:
    """Look up the document's control and threat refs in the org libraries.

    Only kinds the document actually references are checked. A failed
    lookup is recorded on its RefCheck rather than raised, so callers can
    report it as a warning.
    """
    checks = []
    if document.control_refs:
        checks.append(_check_refs("control", document.control_refs,
                                  library_api.fetch_controls_by_refs, client, org_id))
    if document.threat_refs:
        checks.append(_check_refs("threat", document.threat_refs,
                                  library_api.fetch_threats_by_refs, client, org_id))
    return checks


def _single_threatmodel(document: LocalDocument):
    count = len(document.threatmodels)
    if count != 1:
        raise ConfigurationError(
            f"file must contain exactly one threat model, found {count}"
        )
    return document.threatmodels[0]


def push(client: ApiClient, path: str, create: bool = True,
         update_local: bool = True) -> PushResult:
    """Bring the cloud copy of ``path`` up to date.

    Decision table on the validation outcome:
      org only                 -> create, rewrite local backend block, upload
      org + model + version    -> nothing to do
      org + model, no version  -> upload as a new version
    A declared model that does not exist remotely is handled like "org only";
    the stale declaration is replaced by the created slug.
    """
    stale_declaration = False
    try:
        outcome = validate_document(client, path)
    except DocumentNotFoundError as e:
        if not e.org_id:
            raise
        outcome = ReconciliationOutcome(org_id=e.org_id, document=read_document(path))
        stale_declaration = True

    if outcome.threatmodel and outcome.version:
        return PushResult("unchanged", outcome.org_id, outcome.threatmodel, outcome.version)

    if outcome.threatmodel:
        tm_api.upload_file(client, outcome.org_id, outcome.threatmodel, path)
        return PushResult("uploaded", outcome.org_id, outcome.threatmodel, uploaded=True)

    if not create:
        return PushResult("skipped", outcome.org_id)

    declared = _single_threatmodel(outcome.document)
    model = tm_api.create_threat_model(
        client, outcome.org_id, declared.name, declared.description,
    )
    result = PushResult("created", outcome.org_id, model.slug, created=model)
    if not update_local:
        return result

    try:
        rewrite_backend_file(path, model.slug, replace=stale_declaration)
    except (TclError, OSError, UnicodeDecodeError) as e:
        result.rewrite_error = e if isinstance(e, TclError) else TclError(
            f"could not update {path}: {e}"
        )
        return result
    result.rewritten = True

    try:
        tm_api.upload_file(client, outcome.org_id, model.slug, path)
    except TclError as e:
        raise TclError(
            f"{e}. The threat model '{model.slug}' was created and the local "
            "file updated, but the upload failed",
            exit_code=e.exit_code,
        )
    result.uploaded = True
    return result
