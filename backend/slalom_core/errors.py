"""Error taxonomy shared by the roster, start list and results services.

Every error except :class:`StorageFailure` is raised before any record is
written. Input problems subclass ``ValueError``, missing records subclass
``LookupError`` and ``StorageFailure`` subclasses ``RuntimeError``.
"""

from __future__ import annotations


class SlalomError(Exception):
    """Base class for all domain errors."""


class ValidationError(SlalomError, ValueError):
    """Malformed or unsupported input."""


class NotFound(SlalomError, LookupError):
    """Referenced race, team, racer or roster entry does not exist."""


class CapacityExceeded(ValidationError):
    """A Varsity or Varsity Alternate cap would be exceeded."""


class ProvisionalLocked(ValidationError):
    """A Provisional racer may only be Provisional or DNS."""


class RaceLocked(SlalomError):
    """The race is locked against roster, start list and result changes."""


class InvalidState(ValidationError):
    """The operation does not apply to the record in its current state."""


class DuplicateEntry(SlalomError):
    """The roster already holds an entry for this racer."""


class StorageFailure(SlalomError, RuntimeError):
    """The backing store rejected or failed a read or write."""
