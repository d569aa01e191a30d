"""Core slalom race-day domain reused by the API."""

from .directory import Directory
from .errors import (
    CapacityExceeded,
    DuplicateEntry,
    InvalidState,
    NotFound,
    ProvisionalLocked,
    RaceLocked,
    SlalomError,
    StorageFailure,
    ValidationError,
)
from .races import RaceService
from .results import ResultSet, ResultsService
from .roster import Roster, RosterService
from .startlist import StartListService
from .store import DataStore

__all__ = [
    "CapacityExceeded",
    "DataStore",
    "Directory",
    "DuplicateEntry",
    "InvalidState",
    "NotFound",
    "ProvisionalLocked",
    "RaceLocked",
    "RaceService",
    "ResultSet",
    "ResultsService",
    "Roster",
    "RosterService",
    "SlalomError",
    "StartListService",
    "StorageFailure",
    "ValidationError",
]
