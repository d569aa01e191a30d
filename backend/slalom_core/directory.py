"""Read-only team and racer lookups used for denormalized fields."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Set

from .entry import Racer, Team
from .store import DataStore

logger = logging.getLogger(__name__)


def _team_from_row(row: Dict) -> Team:
    return Team(
        team_id=str(row["team_id"]),
        name=str(row.get("name") or ""),
        non_league=bool(row.get("non_league")),
    )


def _racer_from_row(row: Dict) -> Racer:
    return Racer(
        racer_id=str(row["racer_id"]),
        team_id=str(row.get("team_id") or ""),
        name=str(row.get("name") or ""),
        gender=str(row.get("gender") or ""),
        base_class=str(row.get("class") or ""),
    )


class Directory:
    def __init__(self, store: DataStore) -> None:
        self.store = store

    def teams(self) -> List[Team]:
        teams = [_team_from_row(row) for row in self.store.scan("teams")]
        teams.sort(key=lambda team: (team.name.lower(), team.team_id))
        return teams

    def team(self, team_id: str) -> Optional[Team]:
        row = self.store.get("teams", {"team_id": team_id})
        return _team_from_row(row) if row else None

    def racers(self) -> List[Racer]:
        return [_racer_from_row(row) for row in self.store.scan("racers")]

    def racer(self, racer_id: str) -> Optional[Racer]:
        row = self.store.get("racers", {"racer_id": racer_id})
        return _racer_from_row(row) if row else None

    def non_league_team_ids(self, team_ids: Iterable[Optional[str]]) -> Set[str]:
        non_league: Set[str] = set()
        for team_id in {tid for tid in team_ids if tid}:
            team = self.team(team_id)
            if team is None:
                logger.debug("Team %s not in directory; treating as league", team_id)
                continue
            if team.non_league:
                non_league.add(team.team_id)
        return non_league
