from __future__ import annotations


class LifeTrackerError(Exception):
    """Base class for every error the engine reports to its host."""


class ValidationError(LifeTrackerError):
    """Malformed input: empty title, enum out of range, bad numeric target."""


class NotFoundError(LifeTrackerError):
    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(f"Unknown {kind}: {record_id}")
        self.kind = kind
        self.record_id = record_id


class InvalidStateError(LifeTrackerError):
    """Operation not legal for the record's current kind or state."""


class SchemaError(LifeTrackerError):
    """Import blob is malformed or from a newer schema."""


class StorageError(LifeTrackerError):
    """The underlying write or flush failed; the mutation did not happen."""
