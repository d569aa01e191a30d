"""CLI helper for loading teams, racers and races into the configured data store.

Usage: ``python scripts/seed_directory.py data/sample_directory.json``

The file holds ``teams`` (each optionally with nested ``racers``), top-level
``racers`` and ``races``. Records without an ``id`` get a generated UUID.
"""

from __future__ import annotations

import json
import sys
import uuid
from pathlib import Path
from typing import Any, Dict, List, Tuple

from slalom_core import DataStore, StorageFailure
from slalom_core.entry import BASE_CLASSES, normalise_gender
from slalom_core.races import RACE_TYPES


def _id(record: Dict[str, Any]) -> str:
    return str(record.get("id") or uuid.uuid4())


def build_records(payload: Dict[str, Any]) -> Tuple[List[Dict], List[Dict], List[Dict]]:
    teams: List[Dict[str, Any]] = []
    racers: List[Dict[str, Any]] = []
    races: List[Dict[str, Any]] = []

    def add_racer(raw: Dict[str, Any], team_id: str | None) -> None:
        base_class = str(raw.get("class") or "").strip()
        if base_class not in BASE_CLASSES:
            raise ValueError(f"Racer {raw.get('name')!r} has unsupported class {base_class!r}")
        owner = str(raw.get("teamId") or team_id or "")
        if not owner:
            raise ValueError(f"Racer {raw.get('name')!r} has no team")
        racers.append(
            {
                "racer_id": _id(raw),
                "team_id": owner,
                "name": str(raw.get("name") or "").strip(),
                "gender": normalise_gender(raw.get("gender")),
                "class": base_class,
            }
        )

    for raw in payload.get("teams") or []:
        team_id = _id(raw)
        teams.append(
            {
                "team_id": team_id,
                "name": str(raw.get("name") or "").strip(),
                "non_league": bool(raw.get("nonLeague")),
            }
        )
        for racer in raw.get("racers") or []:
            add_racer(racer, team_id)

    for racer in payload.get("racers") or []:
        add_racer(racer, None)

    for raw in payload.get("races") or []:
        race_type = str(raw.get("type") or "Slalom")
        if race_type not in RACE_TYPES:
            raise ValueError(f"Race {raw.get('name')!r} has unsupported type {race_type!r}")
        races.append(
            {
                "race_id": _id(raw),
                "name": str(raw.get("name") or "").strip(),
                "location": str(raw.get("location") or "").strip(),
                "date": str(raw.get("date") or ""),
                "type": race_type,
                "locked": bool(raw.get("locked")),
                "independent": bool(raw.get("independent")),
            }
        )
    return teams, racers, races


def main(argv: List[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("usage: seed_directory.py <directory.json>", file=sys.stderr)
        return 2

    try:
        payload = json.loads(Path(args[0]).read_text(encoding="utf-8"))
        teams, racers, races = build_records(payload)
    except (OSError, json.JSONDecodeError, ValueError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    store = DataStore()
    try:
        for table, records in (("teams", teams), ("racers", racers), ("races", races)):
            for record in records:
                store.put(table, record)
    except StorageFailure as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    print(f"Seeded {len(teams)} team(s), {len(racers)} racer(s), {len(races)} race(s)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
