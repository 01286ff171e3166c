"""Collection identity and raw record types.

A collection identity is the key that partitions raw and extracted data:
a raw table name (which encodes plugin and sub-resource) plus the parameter
set the collection ran with (connection id, repository, workspace, ...).
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


@dataclass(frozen=True, eq=False)
class CollectionIdentity:
    """Stable key for one raw-staging partition.

    Two identities are equal when their table names match and their
    parameters serialize to the same canonical JSON, regardless of the
    order the parameters were given in.

    Example:
        identity = CollectionIdentity.of("github_graphql_prs", connection_id=1, name="a/b")
        identity.params_key  # '{"connection_id":1,"name":"a/b"}'
    """

    table: str
    params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.table or not self.table.strip():
            raise ValueError("CollectionIdentity.table must be a non-empty string")
        # Freeze a private copy so later mutation of the caller's dict cannot
        # move this identity to another partition.
        object.__setattr__(self, "params", dict(self.params))

    @classmethod
    def of(cls, table: str, **params: Any) -> "CollectionIdentity":
        return cls(table=table, params=params)

    @property
    def params_key(self) -> str:
        """Canonical JSON form of the parameters, used as the storage key."""
        return _canonical_json(self.params)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CollectionIdentity):
            return NotImplemented
        return self.table == other.table and self.params_key == other.params_key

    def __hash__(self) -> int:
        return hash((self.table, self.params_key))

    def __str__(self) -> str:
        return f"{self.table}{self.params_key}"

    def __repr__(self) -> str:
        return f"CollectionIdentity(table='{self.table}', params={self.params_key})"


@dataclass
class RawRecord:
    """One staged unit of external data.

    Produced only by the collector, read only by the extractor.
    ``data`` is the decoded JSON payload as returned by the source;
    ``source_input`` holds the request parameters that produced it.
    ``source_key`` identifies the upstream entity; an incremental run
    supersedes previously published rows that share it.
    """

    identity: CollectionIdentity
    data: Any
    source_input: dict[str, Any] = field(default_factory=dict)
    sequence: int = 0
    url: Optional[str] = None
    record_id: Optional[int] = None
    created_at: Optional[datetime] = None
    source_key: Optional[str] = None


def decode_payload(payload: Any) -> Any:
    """Decode a staged payload into a JSON-compatible value.

    Bytes and strings are parsed as JSON documents; anything else must
    already be JSON-compatible and is returned as-is.

    Raises:
        ValueError: If a bytes/str payload is not valid JSON
    """
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8")
    if isinstance(payload, str):
        return json.loads(payload)
    return payload


def content_key(data: Any) -> str:
    """
    Source key for a payload whose source exposes no stable id.

    Two payloads get the same key only if their canonical JSON is equal,
    so an unchanged record re-fetched by an overlapping run is recognised.

    Examples:
        >>> content_key({"b": 1, "a": 2}) == content_key({"a": 2, "b": 1})
        True
    """
    return hashlib.md5(_canonical_json(data).encode("utf-8")).hexdigest()


__all__ = ["CollectionIdentity", "RawRecord", "content_key", "decode_payload"]
