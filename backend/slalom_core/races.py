from __future__ import annotations

import dataclasses
import logging
import re
from typing import Any, Dict, List

from .directory import Directory
from .entry import Race
from .errors import NotFound, RaceLocked, ValidationError
from .store import DataStore

logger = logging.getLogger(__name__)

RACE_TYPES = ("Slalom", "Giant Slalom")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_UPDATABLE = ("locked", "independent", "name", "location", "date", "type")


def _race_from_row(row: Dict[str, Any]) -> Race:
    return Race(
        race_id=str(row["race_id"]),
        name=str(row.get("name") or ""),
        location=str(row.get("location") or ""),
        date=str(row.get("date") or ""),
        type=str(row.get("type") or ""),
        locked=bool(row.get("locked")),
        independent=bool(row.get("independent")),
    )


class RaceService:
    """Race metadata, the lock flag, and race deletion with cascade."""

    def __init__(self, store: DataStore) -> None:
        self.store = store

    def list_races(self) -> List[Race]:
        races = [_race_from_row(row) for row in self.store.scan("races")]
        races.sort(key=lambda race: (race.date, race.name))
        return races

    def get_race(self, race_id: str) -> Race:
        row = self.store.get("races", {"race_id": race_id})
        if not row:
            raise NotFound("Race not found")
        return _race_from_row(row)

    def ensure_unlocked(self, race_id: str) -> Race:
        race = self.get_race(race_id)
        if race.locked:
            raise RaceLocked(f"Race {race_id} is locked.")
        return race

    def update_race(self, race_id: str, changes: Dict[str, Any]) -> Race:
        updates = {key: value for key, value in changes.items() if key in _UPDATABLE and value is not None}
        if not updates:
            raise ValidationError("No fields to update")

        for flag in ("locked", "independent"):
            if flag in updates and not isinstance(updates[flag], bool):
                raise ValidationError(f"{flag} must be a boolean")
        for text in ("name", "location"):
            if text in updates:
                value = updates[text]
                if not isinstance(value, str) or not value.strip():
                    raise ValidationError(f"{text} must be a non-empty string")
                updates[text] = value.strip()
        if "date" in updates and not (isinstance(updates["date"], str) and _DATE_RE.match(updates["date"])):
            raise ValidationError("date must be YYYY-MM-DD")
        if "type" in updates and updates["type"] not in RACE_TYPES:
            raise ValidationError("type must be Slalom or Giant Slalom")

        race = dataclasses.replace(self.get_race(race_id), **updates)
        self.store.put("races", dataclasses.asdict(race))
        logger.info("Updated race %s: %s", race_id, sorted(updates))
        return race

    def delete_race(self, race_id: str) -> None:
        """Delete a race with its rosters, start list and results.

        Not atomic: a failure part way leaves the remaining records in place
        and the call can be repeated.
        """
        self.ensure_unlocked(race_id)
        for team in Directory(self.store).teams():
            for row in self.store.query_all("rosters", {"race_id": race_id, "team_id": team.team_id}):
                self.store.delete(
                    "rosters",
                    {"race_id": race_id, "team_id": team.team_id, "racer_id": row["racer_id"]},
                )
        for table in ("start_lists", "results"):
            for row in self.store.query_all(table, {"race_id": race_id}):
                self.store.delete(table, {"race_id": race_id, "bib": row["bib"]})
        self.store.delete("races", {"race_id": race_id})
        logger.info("Deleted race %s", race_id)
