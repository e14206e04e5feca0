"""
Versioned JSON encoding for component state kept in the key-value store.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from .errors import StateDecodeError, StoreError
from .store import Store

logger = logging.getLogger(__name__)

STATE_VERSION = 1


def encode_state(kind: str, payload: Dict[str, Any], version: int = STATE_VERSION) -> str:
    document = {"version": version, "kind": kind}
    document.update(payload)
    return json.dumps(document, sort_keys=True)


def decode_state(raw: str, kind: str) -> Dict[str, Any]:
    """
    Decode a document written by `encode_state`.

    Raises StateDecodeError when the text is not a JSON object of the
    expected kind. Newer versions are accepted; unknown fields are left for
    the caller to ignore.
    """
    try:
        document = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise StateDecodeError(f"{kind}: not valid JSON ({exc})") from exc
    if not isinstance(document, dict):
        raise StateDecodeError(f"{kind}: expected an object")
    version = document.get("version")
    if not isinstance(version, int):
        raise StateDecodeError(f"{kind}: missing version")
    if document.get("kind") != kind:
        raise StateDecodeError(f"{kind}: unexpected kind {document.get('kind')!r}")
    if version > STATE_VERSION:
        logger.warning(f"{kind}: reading version {version} state with a version {STATE_VERSION} reader")
    return document


class VersionedState:
    """
    One store key holding one component's state document.
    """

    def __init__(self, store: Store, key: str, kind: str) -> None:
        self.store = store
        self.key = key
        self.kind = kind

    def load(self) -> Optional[Dict[str, Any]]:
        """
        Return the stored document, or None when it is missing, unreadable
        or malformed. Callers substitute their default state on None.
        """
        try:
            raw = self.store.get(self.key)
        except StoreError as exc:
            logger.warning(f"Failed to read {self.key}, using defaults: {exc}")
            return None
        if raw is None:
            return None
        try:
            return decode_state(raw, self.kind)
        except StateDecodeError as exc:
            logger.warning(f"Discarding malformed state under {self.key}: {exc}")
            return None

    def save(self, payload: Dict[str, Any]) -> bool:
        try:
            self.store.set(self.key, encode_state(self.kind, payload))
        except StoreError as exc:
            logger.warning(f"Failed to write {self.key}, update dropped: {exc}")
            return False
        return True

    def clear(self) -> None:
        try:
            self.store.delete(self.key)
        except StoreError as exc:
            logger.warning(f"Failed to clear {self.key}: {exc}")
