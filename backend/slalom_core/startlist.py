"""Snake-seeded start list generation."""

from __future__ import annotations

import dataclasses
import logging
import random
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .directory import Directory
from .entry import (
    FEMALE,
    GENDERS,
    MALE,
    RACING_CLASSES,
    RosterEntry,
    StartListEntry,
    StartListMeta,
)
from .errors import NotFound, ValidationError
from .races import RaceService
from .store import DataStore

logger = logging.getLogger(__name__)

META_BIB = 0
FIRST_BIB = {FEMALE: 1, MALE: 100}


def normalise_excluded(values: Iterable[Any]) -> List[int]:
    """Sorted, de-duplicated positive bib numbers."""

    bibs: Set[int] = set()
    for value in values:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"Excluded bib '{value}' is not a number")
        if value != int(value):
            raise ValidationError(f"Excluded bib '{value}' is not a whole number")
        if value > 0:
            bibs.add(int(value))
    return sorted(bibs)


def draw_order(previous: Sequence[str], team_ids: Sequence[str], rng: random.Random) -> List[str]:
    """Keep the recorded order for known teams and append the rest shuffled."""

    current = set(team_ids)
    kept = list(dict.fromkeys(team_id for team_id in previous if team_id in current))
    remaining = [team_id for team_id in team_ids if team_id not in kept]
    rng.shuffle(remaining)
    return kept + remaining


def snake(order: Sequence[str], slots: int) -> List[Tuple[int, str]]:
    """(position, team) pairs: odd positions in draw order, even ones reversed."""

    pairs: List[Tuple[int, str]] = []
    for position in range(1, slots + 1):
        teams = order if position % 2 == 1 else list(reversed(order))
        pairs.extend((position, team_id) for team_id in teams)
    return pairs


def allocate_bibs(count: int, first: int, excluded: Set[int]) -> List[int]:
    bibs: List[int] = []
    bib = first
    while len(bibs) < count:
        if bib not in excluded:
            bibs.append(bib)
        bib += 1
    return bibs


def _meta_from_row(row: Optional[Dict[str, Any]]) -> StartListMeta:
    if not row:
        return StartListMeta()
    order = row.get("draw_order") or {}
    return StartListMeta(
        excluded_bibs=[int(bib) for bib in row.get("excluded_bibs") or []],
        draw_order={str(gender): [str(team) for team in teams] for gender, teams in order.items()},
    )


def _meta_record(race_id: str, meta: StartListMeta) -> Dict[str, Any]:
    return {
        "race_id": race_id,
        "bib": META_BIB,
        "excluded_bibs": list(meta.excluded_bibs),
        "draw_order": {gender: list(teams) for gender, teams in meta.draw_order.items()},
    }


class StartListService:
    def __init__(self, store: DataStore, rng: random.Random | None = None) -> None:
        self.store = store
        self.rng = rng or random.Random()
        self.races = RaceService(store)
        self.directory = Directory(store)

    # ------------------------------------------------------------------
    # Reads

    def fetch(self, race_id: str) -> Tuple[List[StartListEntry], StartListMeta]:
        rows = self.store.query_all("start_lists", {"race_id": race_id})
        meta = _meta_from_row(next((row for row in rows if int(row["bib"]) == META_BIB), None))
        entries = [StartListEntry.from_record(row) for row in rows if int(row["bib"]) != META_BIB]
        entries.sort(key=lambda entry: entry.bib)
        return entries, meta

    def get_excluded(self, race_id: str) -> List[int]:
        return self._meta(race_id).excluded_bibs

    # ------------------------------------------------------------------
    # Mutations

    def set_excluded(self, race_id: str, bibs: Iterable[Any]) -> List[int]:
        self.races.ensure_unlocked(race_id)
        meta = self._meta(race_id)
        meta.excluded_bibs = normalise_excluded(bibs)
        self.store.put("start_lists", _meta_record(race_id, meta))
        logger.info("Set %d excluded bib(s) for race %s", len(meta.excluded_bibs), race_id)
        return meta.excluded_bibs

    def generate(
        self,
        race_id: str,
        excluded_bibs: Optional[Iterable[Any]] = None,
        rng: random.Random | None = None,
    ) -> Tuple[List[StartListEntry], StartListMeta]:
        """Build and store the start list from every team's roster for the race."""

        self.races.ensure_unlocked(race_id)
        rng = rng or self.rng
        previous = self._meta(race_id)
        excluded = normalise_excluded(excluded_bibs) if excluded_bibs is not None else previous.excluded_bibs

        teams = self.directory.teams()
        team_names = {team.team_id: team.name for team in teams}
        team_ids = [team.team_id for team in teams]
        racer_names = {racer.racer_id: racer.name for racer in self.directory.racers()}

        slots: Dict[Tuple[str, str, str, int], RosterEntry] = {}
        for team_id in team_ids:
            for row in self.store.query_all("rosters", {"race_id": race_id, "team_id": team_id}):
                entry = RosterEntry.from_record(row)
                if entry.racer_class in RACING_CLASSES and entry.start_order is not None:
                    slots[(entry.gender, entry.racer_class, team_id, entry.start_order)] = entry

        meta = StartListMeta(excluded_bibs=excluded)
        entries: List[StartListEntry] = []
        excluded_set = set(excluded)
        next_first = FIRST_BIB[FEMALE]
        for gender in GENDERS:
            order = draw_order(previous.draw_order.get(gender, []), team_ids, rng)
            meta.draw_order[gender] = order

            seeded: List[RosterEntry] = []
            for racer_class in RACING_CLASSES:
                depth = max(
                    (key[3] for key in slots if key[0] == gender and key[1] == racer_class),
                    default=0,
                )
                for position, team_id in snake(order, depth):
                    entry = slots.get((gender, racer_class, team_id, position))
                    if entry is None:
                        continue
                    if entry.racer_id not in racer_names:
                        logger.warning("Skipping racer %s on team %s: not in directory", entry.racer_id, team_id)
                        continue
                    seeded.append(entry)

            first = max(FIRST_BIB[gender], next_first)
            bibs = allocate_bibs(len(seeded), first, excluded_set)
            for bib, entry in zip(bibs, seeded):
                entries.append(
                    StartListEntry(
                        race_id=race_id,
                        bib=bib,
                        racer_id=entry.racer_id,
                        racer_name=racer_names[entry.racer_id],
                        team_id=entry.team_id,
                        team_name=team_names.get(entry.team_id, ""),
                        gender=gender,
                        racer_class=entry.racer_class,
                    )
                )
            if bibs:
                next_first = bibs[-1] + 1

        self._replace(race_id, entries, meta)
        logger.info("Generated start list for race %s with %d racers", race_id, len(entries))
        return self.fetch(race_id)

    def copy(self, race_id: str, from_race_id: str) -> Tuple[List[StartListEntry], StartListMeta]:
        if not from_race_id:
            raise ValidationError("fromRaceId required")
        if from_race_id == race_id:
            raise ValidationError("Cannot copy a start list onto itself")
        self.races.ensure_unlocked(race_id)

        source_entries, source_meta = self.fetch(from_race_id)
        if not source_entries:
            raise NotFound("Source start list is empty")

        entries = [dataclasses.replace(entry, race_id=race_id) for entry in source_entries]
        self._replace(race_id, entries, source_meta)
        logger.info("Copied start list from %s to %s", from_race_id, race_id)
        return self.fetch(race_id)

    # ------------------------------------------------------------------

    def _meta(self, race_id: str) -> StartListMeta:
        return _meta_from_row(self.store.get("start_lists", {"race_id": race_id, "bib": META_BIB}))

    def _replace(self, race_id: str, entries: Sequence[StartListEntry], meta: StartListMeta) -> None:
        for row in self.store.query_all("start_lists", {"race_id": race_id}):
            self.store.delete("start_lists", {"race_id": race_id, "bib": row["bib"]})
        self.store.put("start_lists", _meta_record(race_id, meta))
        for entry in entries:
            self.store.put("start_lists", entry.to_record())
