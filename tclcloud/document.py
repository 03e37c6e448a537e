"""Local threat model files: content fingerprint and backend metadata."""

import hashlib
from dataclasses import dataclass, field

from tclcloud import hclparse
from tclcloud.util import DocumentError


@dataclass
class BackendBlock:
    name: str
    organization: str = ""
    threatmodel: str = ""
    line: int = 0


@dataclass
class ThreatmodelBlock:
    name: str
    description: str = ""
    author: str = ""


@dataclass
class LocalDocument:
    path: str
    content: bytes
    fingerprint: str
    backends: list[BackendBlock] = field(default_factory=list)
    threatmodels: list[ThreatmodelBlock] = field(default_factory=list)
    # Library reference IDs, unique, in file order
    threat_refs: list[str] = field(default_factory=list)
    control_refs: list[str] = field(default_factory=list)


def fingerprint(content: bytes) -> str:
    """SHA-256 hex digest of the exact bytes on disk."""
    return hashlib.sha256(content).hexdigest()


def _text(value) -> str:
    return value if isinstance(value, str) else ""


def _library_refs(root) -> tuple[list[str], list[str]]:
    """Collect `ref` attributes of threats and of the controls nested in them."""
    threat_refs, control_refs = [], []
    for model in root.blocks_of("threatmodel"):
        for threat in model.blocks_of("threat"):
            ref = _text(threat.attributes.get("ref"))
            if ref and ref not in threat_refs:
                threat_refs.append(ref)
            for control in threat.blocks_of("control"):
                ref = _text(control.attributes.get("ref"))
                if ref and ref not in control_refs:
                    control_refs.append(ref)
    return threat_refs, control_refs


def parse_document(content: bytes, path: str = "<memory>") -> LocalDocument:
    try:
        text = content.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DocumentError(f"{path} is not valid UTF-8: {e}")
    try:
        root = hclparse.parse(text)
    except ValueError as e:
        raise DocumentError(f"error parsing HCL file {path}: {e}")

    backends = [
        BackendBlock(
            name=b.labels[0] if b.labels else "",
            organization=_text(b.attributes.get("organization")),
            threatmodel=_text(b.attributes.get("threatmodel")),
            line=b.line,
        )
        for b in root.blocks_of("backend")
    ]
    threatmodels = [
        ThreatmodelBlock(
            name=b.labels[0] if b.labels else "",
            description=_text(b.attributes.get("description")),
            author=_text(b.attributes.get("author")),
        )
        for b in root.blocks_of("threatmodel")
    ]
    threat_refs, control_refs = _library_refs(root)
    return LocalDocument(
        path=path,
        content=content,
        fingerprint=fingerprint(content),
        backends=backends,
        threatmodels=threatmodels,
        threat_refs=threat_refs,
        control_refs=control_refs,
    )


def read_document(path: str) -> LocalDocument:
    """Read, fingerprint and parse a local HCL file. Raises DocumentError."""
    try:
        with open(path, "rb") as f:
            content = f.read()
    except OSError as e:
        raise DocumentError(f"error reading file: {e}")
    return parse_document(content, path)
