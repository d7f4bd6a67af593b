"""Outcomes of idempotent writes.

A unique-constraint conflict is a normal outcome meaning another attempt
already succeeded, so writes report it as a value instead of raising.
"""

import uuid
from dataclasses import dataclass


@dataclass(frozen=True)
class Created:
    id: uuid.UUID


@dataclass(frozen=True)
class AlreadyExists:
    existing_id: uuid.UUID

    @property
    def id(self) -> uuid.UUID:
        return self.existing_id


@dataclass(frozen=True)
class Duplicate:
    """The event was already handled according to the processed-events ledger."""

    event_id: str


WriteResult = Created | AlreadyExists
