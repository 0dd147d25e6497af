"""
Error taxonomy for the migration core.

Recovery policy is dispatched on the error *kind*, never on database message
text:

- configuration: fatal, raised before any I/O
- connectivity: retried with bounded exponential backoff; exhaustion fails
  the entity, not the run
- unresolved_reference: not an error; the row is skipped and counted
- constraint_violation / transform: the row is marked failed, the entity
  continues
- validation: reported, never fatal to the run
"""

from enum import Enum
from typing import List, Optional, Sequence

from sqlalchemy import exc as sa_exc


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    CONNECTIVITY = "connectivity"
    UNRESOLVED_REFERENCE = "unresolved_reference"
    CONSTRAINT_VIOLATION = "constraint_violation"
    TRANSFORM = "transform"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class MigrationError(Exception):
    """Base class for all migration core errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, *, entity: Optional[str] = None):
        super().__init__(message)
        self.entity = entity


class ConfigurationError(MigrationError):
    """Invalid entity definitions or run configuration."""

    kind = ErrorKind.CONFIGURATION


class DependencyCycleError(ConfigurationError):
    """Raised when the depends-on graph contains a cycle."""

    def __init__(self, entities: Sequence[str]):
        self.entities: List[str] = sorted(set(entities))
        super().__init__(
            "Circular dependency detected between entities: "
            + " -> ".join(entities)
        )


class UnknownEntityError(ConfigurationError):
    """Raised when an entity depends on (or references) an undefined entity."""

    def __init__(self, entity: str, missing: Sequence[str], available: Sequence[str]):
        self.missing = list(missing)
        super().__init__(
            f"Entity '{entity}' depends on unknown entities {list(missing)}. "
            f"Available entities: {sorted(available)}",
            entity=entity,
        )


class ConnectivityError(MigrationError):
    """Transient store unavailability that survived every retry."""

    kind = ErrorKind.CONNECTIVITY


class UnresolvedReferenceError(MigrationError):
    """A required foreign reference has no mapping yet."""

    kind = ErrorKind.UNRESOLVED_REFERENCE

    def __init__(self, label: str, legacy_id, *, entity: Optional[str] = None):
        self.label = label
        self.legacy_id = legacy_id
        super().__init__(f"unresolved {label} reference: {legacy_id}", entity=entity)


class ConstraintViolationError(MigrationError):
    """Duplicate key or broken reference reported by the target store."""

    kind = ErrorKind.CONSTRAINT_VIOLATION


class TransformError(MigrationError):
    """The per-entity transform rejected a source row."""

    kind = ErrorKind.TRANSFORM


class ValidationFailure(MigrationError):
    """A validation check could not be evaluated."""

    kind = ErrorKind.VALIDATION


class InvalidCheckpointTransition(MigrationError):
    """Checkpoint state machine was asked for an illegal transition."""

    kind = ErrorKind.CONFIGURATION


def classify_error(exc: BaseException) -> ErrorKind:
    """
    Map an exception to its recovery kind by type.

    Example:
        >>> classify_error(TimeoutError())
        <ErrorKind.CONNECTIVITY: 'connectivity'>
    """
    if isinstance(exc, MigrationError):
        return exc.kind
    if isinstance(exc, sa_exc.IntegrityError):
        return ErrorKind.CONSTRAINT_VIOLATION
    if isinstance(exc, sa_exc.DBAPIError) and exc.connection_invalidated:
        return ErrorKind.CONNECTIVITY
    if isinstance(
        exc,
        (
            sa_exc.OperationalError,
            sa_exc.InterfaceError,
            sa_exc.DisconnectionError,
            sa_exc.TimeoutError,
            TimeoutError,
            ConnectionError,
        ),
    ):
        return ErrorKind.CONNECTIVITY
    return ErrorKind.UNKNOWN
