from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Union


@dataclass(frozen=True, slots=True)
class Resolved:
    """Reference whose referent is persisted; carries both identifiers."""

    internal_id: str
    external_key: str


@dataclass(frozen=True, slots=True)
class Pending:
    """Reference known only by its upstream business key."""

    external_key: str

    @property
    def internal_id(self) -> None:
        return None


Reference = Union[Resolved, Pending]


def resolve(external_key: str, mapping: Mapping[str, str]) -> Reference:
    # Upgrade to Resolved when the referent's internal id is known.
    internal_id = mapping.get(external_key)
    if internal_id is None:
        return Pending(external_key)
    return Resolved(internal_id=internal_id, external_key=external_key)


def upgrade(reference: Reference, mapping: Mapping[str, str]) -> Reference:
    if isinstance(reference, Resolved):
        return reference
    return resolve(reference.external_key, mapping)


def from_columns(internal_id: str | None, external_key: str) -> Reference:
    # Rebuild a reference from its persisted (internal id, external key) column pair.
    if internal_id is None:
        return Pending(external_key)
    return Resolved(internal_id=internal_id, external_key=external_key)
