"""JSON document framing shared by every persistable object.

Each document is a single JSON object::

    {"kind": "TemporalMemory", "version": 1, "payload": {...}}

Python's ``json`` writes floats with their shortest round-tripping repr, so
permanences come back bit-identical.
"""
from __future__ import annotations

import json
from typing import Any, Dict, TextIO

from .errors import SerializationError

FORMAT_VERSION = 1


def write_document(stream: TextIO, kind: str, payload: Dict[str, Any]) -> None:
    """Write ``payload`` to ``stream`` as a versioned document of type ``kind``."""
    json.dump({"kind": kind, "version": FORMAT_VERSION, "payload": payload}, stream)


def read_document(stream: TextIO, kind: str) -> Dict[str, Any]:
    """Read a document from ``stream`` and return its payload.

    Raises:
        SerializationError: If the stream is truncated or not JSON, holds a
            different kind of object, or was written by another format version.
    """
    try:
        document = json.load(stream)
    except json.JSONDecodeError as exc:
        raise SerializationError(f"Could not decode {kind} document: {exc}") from exc

    if not isinstance(document, dict):
        raise SerializationError(f"Expected a JSON object for {kind}, got {type(document).__name__}")
    if document.get("kind") != kind:
        raise SerializationError(f"Expected a {kind} document, found {document.get('kind')!r}")
    if document.get("version") != FORMAT_VERSION:
        raise SerializationError(
            f"Unsupported {kind} format version {document.get('version')!r} "
            f"(this build reads version {FORMAT_VERSION})"
        )
    payload = document.get("payload")
    if not isinstance(payload, dict):
        raise SerializationError(f"{kind} document has no payload")
    return payload
