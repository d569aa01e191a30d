"""Roster ordering engine.

A team's roster for a race is split into buckets, one per (gender, class).
Each racing bucket is an ordered sequence whose start orders are always
1..N; DNS entries sit in an unordered pool with no start order. Every change
goes through :class:`Bucket` so compaction and renumbering happen in one
place, and caps are checked by :class:`Roster` before anything moves.

The four class-boundary moves (alternate up/down, JV leader up, last varsity
down) are rows in ``MOVE_TABLE``; anything else is a plain swap with the
neighbouring entry.
"""

from __future__ import annotations

import copy
import enum
import logging
from typing import Any, Dict, Iterable, Iterator, List, Literal, Optional, Sequence, Tuple

from .directory import Directory
from .entry import (
    BASE_CLASSES,
    CLASS_CAPS,
    CLASS_ORDER,
    DNS,
    JR_VARSITY,
    PROVISIONAL,
    VARSITY,
    VARSITY_ALTERNATE,
    RosterEntry,
    normalise_class,
    normalise_gender,
)
from .errors import (
    CapacityExceeded,
    DuplicateEntry,
    InvalidState,
    NotFound,
    ProvisionalLocked,
    ValidationError,
)
from .races import RaceService
from .store import DataStore

logger = logging.getLogger(__name__)

Direction = Literal["up", "down"]
DIRECTIONS = ("up", "down")


class Bucket:
    """Ordered entries sharing (gender, class); start orders are 1..N."""

    def __init__(self, gender: str, racer_class: str, entries: Sequence[RosterEntry] = ()) -> None:
        self.gender = gender
        self.racer_class = racer_class
        self.entries: List[RosterEntry] = sorted(
            entries, key=lambda entry: (entry.start_order or 0, entry.racer_id)
        )

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[RosterEntry]:
        return iter(self.entries)

    def position(self, entry: RosterEntry) -> int:
        """1-based position of ``entry`` in the bucket."""
        return self.entries.index(entry) + 1

    def at(self, position: int) -> Optional[RosterEntry]:
        if 1 <= position <= len(self.entries):
            return self.entries[position - 1]
        return None

    def append(self, entry: RosterEntry) -> None:
        self.entries.append(entry)
        self._renumber()

    def insert(self, position: int, entry: RosterEntry) -> None:
        self.entries.insert(position - 1, entry)
        self._renumber()

    def remove(self, entry: RosterEntry) -> None:
        self.entries.remove(entry)
        self._renumber()

    def replace(self, old: RosterEntry, new: RosterEntry) -> None:
        self.entries[self.entries.index(old)] = new
        self._renumber()

    def swap(self, first: int, second: int) -> None:
        entries = self.entries
        entries[first - 1], entries[second - 1] = entries[second - 1], entries[first - 1]
        self._renumber()

    def _renumber(self) -> None:
        for index, entry in enumerate(self.entries, start=1):
            entry.racer_class = self.racer_class
            entry.start_order = index


class MoveRule(enum.Enum):
    PROMOTE_ALTERNATE = "promote_alternate"
    DEMOTE_ALTERNATE = "demote_alternate"
    PROMOTE_JV_LEADER = "promote_jv_leader"
    RELEGATE_LAST_VARSITY = "relegate_last_varsity"
    SWAP = "swap"


# (class, direction, required position in bucket, rule); first match wins.
MOVE_TABLE: Tuple[Tuple[str, str, str, MoveRule], ...] = (
    (VARSITY_ALTERNATE, "up", "any", MoveRule.PROMOTE_ALTERNATE),
    (VARSITY_ALTERNATE, "down", "any", MoveRule.DEMOTE_ALTERNATE),
    (JR_VARSITY, "up", "first", MoveRule.PROMOTE_JV_LEADER),
    (VARSITY, "down", "last", MoveRule.RELEGATE_LAST_VARSITY),
)


def resolve_add_class(base_class: str, desired_class: Optional[str]) -> str:
    """Class a racer is entered with.

    Provisional racers stay Provisional unless DNS is asked for explicitly.
    """
    if base_class == PROVISIONAL:
        return DNS if desired_class == DNS else PROVISIONAL
    return desired_class or base_class


def sort_entries(entries: Sequence[RosterEntry]) -> List[RosterEntry]:
    def _key(entry: RosterEntry):
        class_rank = CLASS_ORDER.index(entry.racer_class) if entry.racer_class in CLASS_ORDER else len(CLASS_ORDER)
        start = entry.start_order if entry.start_order is not None else 10**6
        return (entry.gender, class_rank, start, entry.racer_id)

    return sorted(entries, key=_key)


class Roster:
    """In-memory view of one (race, team) roster."""

    def __init__(self, race_id: str, team_id: str, entries: Sequence[RosterEntry] = ()) -> None:
        self.race_id = race_id
        self.team_id = team_id
        self._buckets: Dict[Tuple[str, str], Bucket] = {}
        self._dns: List[RosterEntry] = []

        grouped: Dict[Tuple[str, str], List[RosterEntry]] = {}
        for entry in copy.deepcopy(list(entries)):
            if entry.racer_class == DNS:
                entry.start_order = None
                self._dns.append(entry)
            else:
                grouped.setdefault((entry.gender, entry.racer_class), []).append(entry)
        for (gender, racer_class), members in grouped.items():
            self._buckets[(gender, racer_class)] = Bucket(gender, racer_class, members)

    def bucket(self, gender: str, racer_class: str) -> Bucket:
        key = (gender, racer_class)
        if key not in self._buckets:
            self._buckets[key] = Bucket(gender, racer_class)
        return self._buckets[key]

    def entries(self) -> List[RosterEntry]:
        items: List[RosterEntry] = list(self._dns)
        for bucket in self._buckets.values():
            items.extend(bucket)
        return sort_entries(items)

    def find(self, racer_id: str) -> Optional[RosterEntry]:
        for entry in self._dns:
            if entry.racer_id == racer_id:
                return entry
        for bucket in self._buckets.values():
            for entry in bucket:
                if entry.racer_id == racer_id:
                    return entry
        return None

    def count(self, gender: str, racer_class: str) -> int:
        if racer_class == DNS:
            return sum(1 for entry in self._dns if entry.gender == gender)
        return len(self.bucket(gender, racer_class))

    def ensure_capacity(self, gender: str, racer_class: str) -> None:
        cap = CLASS_CAPS.get(racer_class)
        if cap is not None and self.count(gender, racer_class) >= cap:
            raise CapacityExceeded(f"{racer_class} is capped at {cap} for {gender}.")

    def has_room(self, gender: str, racer_class: str) -> bool:
        cap = CLASS_CAPS.get(racer_class)
        return cap is None or self.count(gender, racer_class) < cap

    # ------------------------------------------------------------------
    # Placement primitives

    def place(self, entry: RosterEntry, racer_class: str) -> None:
        if racer_class == DNS:
            entry.racer_class = DNS
            entry.start_order = None
            self._dns.append(entry)
        else:
            self.bucket(entry.gender, racer_class).append(entry)

    def take(self, entry: RosterEntry) -> None:
        if entry.racer_class == DNS:
            self._dns.remove(entry)
        else:
            self.bucket(entry.gender, entry.racer_class).remove(entry)

    # ------------------------------------------------------------------
    # Operations

    def add(self, entry: RosterEntry) -> RosterEntry:
        if self.find(entry.racer_id) is not None:
            raise DuplicateEntry(f"Racer {entry.racer_id} is already on this roster.")
        self.ensure_capacity(entry.gender, entry.racer_class)
        self.place(entry, entry.racer_class)
        return entry

    def reclassify(self, entry: RosterEntry, new_class: str) -> bool:
        """Move ``entry`` to ``new_class``; returns False when nothing changed."""

        if entry.racer_class == new_class:
            return False
        locked = PROVISIONAL in (entry.racer_class, entry.base_class)
        if locked and new_class not in (PROVISIONAL, DNS):
            raise ProvisionalLocked("Provisional racers must remain Provisional for all races.")
        self.ensure_capacity(entry.gender, new_class)
        self.take(entry)
        self.place(entry, new_class)
        return True

    def remove(self, entry: RosterEntry) -> None:
        self.take(entry)

    def classify_move(self, entry: RosterEntry, direction: Direction) -> MoveRule:
        if entry.racer_class == DNS:
            raise InvalidState("DNS racers are not in the start order.")
        if direction not in DIRECTIONS:
            raise ValidationError("direction must be 'up' or 'down'")

        bucket = self.bucket(entry.gender, entry.racer_class)
        position = bucket.position(entry)
        for racer_class, move_direction, where, rule in MOVE_TABLE:
            if racer_class != entry.racer_class or move_direction != direction:
                continue
            if where == "first" and position != 1:
                continue
            if where == "last" and position != len(bucket):
                continue
            return rule
        return MoveRule.SWAP

    def move(self, entry: RosterEntry, direction: Direction) -> MoveRule:
        rule = self.classify_move(entry, direction)
        handler = {
            MoveRule.PROMOTE_ALTERNATE: self._promote_alternate,
            MoveRule.DEMOTE_ALTERNATE: self._demote_alternate,
            MoveRule.PROMOTE_JV_LEADER: self._promote_jv_leader,
            MoveRule.RELEGATE_LAST_VARSITY: self._relegate_last_varsity,
        }.get(rule)
        if handler is None:
            self._swap(entry, direction)
        else:
            handler(entry)
        return rule

    def _promote_alternate(self, entry: RosterEntry) -> None:
        varsity = self.bucket(entry.gender, VARSITY)
        alternates = self.bucket(entry.gender, VARSITY_ALTERNATE)
        fifth = varsity.at(CLASS_CAPS[VARSITY])
        if fifth is not None:
            varsity.replace(fifth, entry)
            alternates.replace(entry, fifth)
        else:
            alternates.remove(entry)
            varsity.append(entry)

    def _demote_alternate(self, entry: RosterEntry) -> None:
        alternates = self.bucket(entry.gender, VARSITY_ALTERNATE)
        jv = self.bucket(entry.gender, JR_VARSITY)
        leader = jv.at(1)
        if leader is not None:
            jv.replace(leader, entry)
            alternates.replace(entry, leader)
        else:
            alternates.remove(entry)
            jv.insert(1, entry)

    def _promote_jv_leader(self, entry: RosterEntry) -> None:
        jv = self.bucket(entry.gender, JR_VARSITY)
        alternates = self.bucket(entry.gender, VARSITY_ALTERNATE)
        alternate = alternates.at(1)
        if alternate is not None:
            alternates.replace(alternate, entry)
            jv.replace(entry, alternate)
        else:
            jv.remove(entry)
            alternates.append(entry)

    def _relegate_last_varsity(self, entry: RosterEntry) -> None:
        varsity = self.bucket(entry.gender, VARSITY)
        alternates = self.bucket(entry.gender, VARSITY_ALTERNATE)
        alternate = alternates.at(1)
        if alternate is not None:
            varsity.replace(entry, alternate)
            alternates.replace(alternate, entry)
        else:
            varsity.remove(entry)
            alternates.append(entry)

    def _swap(self, entry: RosterEntry, direction: Direction) -> None:
        bucket = self.bucket(entry.gender, entry.racer_class)
        position = bucket.position(entry)
        neighbour = position - 1 if direction == "up" else position + 1
        if bucket.at(neighbour) is None:
            return
        bucket.swap(position, neighbour)


def _snapshot(entries: Iterable[RosterEntry]) -> Dict[str, Dict[str, Any]]:
    """Stored form of each entry keyed by racer; taken before any mutation."""

    return {entry.racer_id: entry.to_record() for entry in entries}


class RosterService:
    """Persisted roster operations; every mutation returns the full roster."""

    def __init__(self, store: DataStore) -> None:
        self.store = store
        self.races = RaceService(store)
        self.directory = Directory(store)

    def fetch_roster(self, race_id: str, team_id: str) -> List[RosterEntry]:
        rows = self.store.query_all("rosters", {"race_id": race_id, "team_id": team_id})
        return sort_entries([RosterEntry.from_record(row) for row in rows])

    def roster_counts(self, race_ids: Sequence[str], team_ids: Sequence[str]) -> Dict[str, Dict[str, int]]:
        race_ids = [race_id for race_id in race_ids if race_id]
        team_ids = [team_id for team_id in team_ids if team_id]
        if not race_ids or not team_ids:
            raise ValidationError("raceIds and teamIds are required")
        return {
            race_id: {
                team_id: len(self.store.query_all("rosters", {"race_id": race_id, "team_id": team_id}))
                for team_id in team_ids
            }
            for race_id in race_ids
        }

    def add_entry(
        self,
        race_id: str,
        team_id: str,
        racer_id: str,
        desired_class: Optional[str] = None,
        gender: Optional[str] = None,
        base_class: Optional[str] = None,
    ) -> List[RosterEntry]:
        self.races.ensure_unlocked(race_id)
        if not racer_id:
            raise ValidationError("racerId required")

        if gender is None or base_class is None:
            racer = self.directory.racer(racer_id)
            if racer is None:
                raise NotFound("Racer not found")
            if racer.team_id != team_id:
                raise ValidationError(f"Racer {racer_id} does not belong to team {team_id}")
            gender = gender or racer.gender
            base_class = base_class or racer.base_class

        try:
            gender = normalise_gender(gender)
            base_class = normalise_class(base_class)
            desired = normalise_class(desired_class) if desired_class else None
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if base_class not in BASE_CLASSES:
            raise ValidationError(f"Base class cannot be {base_class}")

        roster = self._load(race_id, team_id)
        entry = RosterEntry(
            race_id=race_id,
            team_id=team_id,
            racer_id=racer_id,
            gender=gender,
            racer_class=resolve_add_class(base_class, desired),
            base_class=base_class,
        )
        roster.add(entry)
        if not self.store.put("rosters", entry.to_record(), if_absent=True):
            raise DuplicateEntry(f"Racer {racer_id} is already on this roster.")
        logger.info("Added %s to %s/%s as %s #%s", racer_id, race_id, team_id, entry.racer_class, entry.start_order)
        return self.fetch_roster(race_id, team_id)

    def reclassify_entry(self, race_id: str, team_id: str, racer_id: str, new_class: str) -> List[RosterEntry]:
        self.races.ensure_unlocked(race_id)
        try:
            new_class = normalise_class(new_class)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        roster = self._load(race_id, team_id)
        before = _snapshot(roster.entries())
        entry = self._require(roster, racer_id)
        if roster.reclassify(entry, new_class):
            self._save(before, roster)
            logger.info("Reclassified %s in %s/%s to %s", racer_id, race_id, team_id, new_class)
        return self.fetch_roster(race_id, team_id)

    def remove_entry(self, race_id: str, team_id: str, racer_id: str) -> List[RosterEntry]:
        self.races.ensure_unlocked(race_id)
        roster = self._load(race_id, team_id)
        before = _snapshot(roster.entries())
        entry = roster.find(racer_id)
        if entry is None:
            return self.fetch_roster(race_id, team_id)
        roster.remove(entry)
        self._save(before, roster)
        logger.info("Removed %s from %s/%s", racer_id, race_id, team_id)
        return self.fetch_roster(race_id, team_id)

    def move_entry(self, race_id: str, team_id: str, racer_id: str, direction: Direction) -> List[RosterEntry]:
        self.races.ensure_unlocked(race_id)
        roster = self._load(race_id, team_id)
        before = _snapshot(roster.entries())
        entry = self._require(roster, racer_id)
        rule = roster.move(entry, direction)
        self._save(before, roster)
        logger.info("Moved %s %s in %s/%s (%s)", racer_id, direction, race_id, team_id, rule.value)
        return self.fetch_roster(race_id, team_id)

    def copy_roster(self, from_race_id: str, race_id: str, team_id: str) -> List[RosterEntry]:
        """Replace the team's roster for ``race_id`` with the one from ``from_race_id``.

        Entries are re-added in (gender, class, start order) order so caps are
        applied again and numbering is contiguous; DNS entries are not copied.
        """
        if not from_race_id:
            raise ValidationError("fromRaceId required")
        self.races.ensure_unlocked(race_id)

        source = self.fetch_roster(from_race_id, team_id)
        before = _snapshot(self.fetch_roster(race_id, team_id))
        target = Roster(race_id, team_id)
        for item in source:
            if item.racer_class == DNS:
                continue
            if not target.has_room(item.gender, item.racer_class):
                logger.warning(
                    "Dropping %s from copied roster: %s is full for %s",
                    item.racer_id,
                    item.racer_class,
                    item.gender,
                )
                continue
            entry = RosterEntry(
                race_id=race_id,
                team_id=team_id,
                racer_id=item.racer_id,
                gender=item.gender,
                racer_class=item.racer_class,
                base_class=item.base_class,
            )
            target.place(entry, item.racer_class)

        self._save(before, target)
        logger.info("Copied roster for team %s from %s to %s", team_id, from_race_id, race_id)
        return self.fetch_roster(race_id, team_id)

    # ------------------------------------------------------------------

    def _load(self, race_id: str, team_id: str) -> Roster:
        return Roster(race_id, team_id, self.fetch_roster(race_id, team_id))

    @staticmethod
    def _require(roster: Roster, racer_id: str) -> RosterEntry:
        entry = roster.find(racer_id)
        if entry is None:
            raise NotFound("Entry not found")
        return entry

    def _save(self, before: Dict[str, Dict[str, Any]], roster: Roster) -> None:
        """Write the difference between ``before`` and the roster's current state.

        Deletes go first, then changed records; each write is independent.
        """
        after = _snapshot(roster.entries())
        for racer_id in before.keys() - after.keys():
            self.store.delete(
                "rosters",
                {"race_id": roster.race_id, "team_id": roster.team_id, "racer_id": racer_id},
            )
        for racer_id, record in after.items():
            if before.get(racer_id) != record:
                self.store.put("rosters", record)


__all__ = [
    "Bucket",
    "DIRECTIONS",
    "MOVE_TABLE",
    "MoveRule",
    "Roster",
    "RosterService",
    "resolve_add_class",
    "sort_entries",
]
