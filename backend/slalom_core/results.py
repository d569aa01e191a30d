from __future__ import annotations

import dataclasses
import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .directory import Directory
from .entry import (
    FEMALE,
    JR_VARSITY,
    MALE,
    PROVISIONAL,
    VARSITY,
    Contribution,
    ResultEntry,
    StartListEntry,
    TeamScore,
)
from .races import RaceService
from .startlist import META_BIB, StartListService
from .store import DataStore
from .timing import MICRO_UNITS, TimingDocument, normalise_name, parse_document, scoring_class

logger = logging.getLogger(__name__)

POINTS_LADDER: Tuple[int, ...] = (
    100, 80, 60, 50, 45, 40, 36, 32, 29, 26,
    24, 22, 20, 18, 16, 15, 14, 13, 12, 11,
    10, 9, 8, 7, 6, 5, 4, 3, 2, 1,
)

DISPLAY_GROUPS: Tuple[Tuple[str, str], ...] = (
    (FEMALE, VARSITY),
    (MALE, VARSITY),
    (FEMALE, JR_VARSITY),
    (MALE, JR_VARSITY),
    (FEMALE, PROVISIONAL),
    (MALE, PROVISIONAL),
)

TEAM_SIZE = 3


@dataclass
class ResultGroup:
    gender: str
    racer_class: str
    entries: List[ResultEntry] = field(default_factory=list)


@dataclass
class ResultSet:
    entries: List[ResultEntry] = field(default_factory=list)
    issues: List[str] = field(default_factory=list)
    team_scores: List[TeamScore] = field(default_factory=list)
    groups: List[ResultGroup] = field(default_factory=list)
    generated_at: Optional[str] = None


def points_for_rank(rank: int) -> int:
    return POINTS_LADDER[rank - 1] if 1 <= rank <= len(POINTS_LADDER) else 0


def competition_ranks(items: Sequence[Any], key: Callable[[Any], float]) -> List[Tuple[Any, int]]:
    """Pair each item with its 1-2-2-4 rank by ascending ``key``."""

    ordered = sorted(items, key=key)
    ranked: List[Tuple[Any, int]] = []
    previous: Optional[float] = None
    rank = 0
    for index, item in enumerate(ordered, start=1):
        value = key(item)
        if previous is None or value != previous:
            rank = index
        ranked.append((item, rank))
        previous = value
    return ranked


def reconcile(
    race_id: str,
    document: TimingDocument,
    start_list: Iterable[StartListEntry],
) -> Tuple[List[ResultEntry], List[str]]:
    """Match timing competitors to the start list by bib.

    Mismatches are reported as issue strings; they never stop processing.
    """

    by_bib = {entry.bib: entry for entry in start_list}
    entries: List[ResultEntry] = []
    issues: List[str] = []
    seen: Set[int] = set()
    for comp in document.competitors:
        if comp.bib in seen:
            issues.append(f"Bib {comp.bib} appears more than once in file (ignoring {comp.name})")
            continue
        seen.add(comp.bib)
        listed = by_bib.get(comp.bib)
        if listed is None:
            issues.append(f"Bib {comp.bib} not found in start list (file shows {comp.name})")
            entries.append(
                ResultEntry(
                    race_id=race_id,
                    bib=comp.bib,
                    racer_name=comp.name,
                    team_name=comp.team,
                    gender=comp.gender,
                    racer_class=comp.racer_class,
                    run1=comp.run1,
                    run2=comp.run2,
                )
            )
            continue

        file_name = normalise_name(comp.name)
        listed_name = normalise_name(listed.racer_name)
        if file_name and listed_name and file_name != listed_name:
            issues.append(
                f'Bib {comp.bib} name mismatch: file "{comp.name}" vs start list "{listed.racer_name}"'
            )
        entries.append(
            ResultEntry(
                race_id=race_id,
                bib=comp.bib,
                racer_id=listed.racer_id,
                racer_name=listed.racer_name,
                team_id=listed.team_id,
                team_name=listed.team_name,
                gender=listed.gender or comp.gender,
                racer_class=listed.racer_class,
                run1=comp.run1,
                run2=comp.run2,
            )
        )
    for issue in issues:
        logger.warning("Race %s: %s", race_id, issue)
    return entries, issues


def _is_league(entry: ResultEntry, non_league: Set[str]) -> bool:
    return (entry.team_id or "") not in non_league


def award_points(entries: Sequence[ResultEntry], non_league: Set[str]) -> None:
    """Set run and total points in place; non-league entries score nothing."""

    groups: Dict[Tuple[str, str], List[ResultEntry]] = {}
    for entry in entries:
        entry.run1_points = entry.run2_points = entry.total_points = 0
        if _is_league(entry, non_league):
            groups.setdefault((entry.gender, scoring_class(entry.racer_class)), []).append(entry)

    for members in groups.values():
        for run, attr in (("run1", "run1_points"), ("run2", "run2_points")):
            finishers = [entry for entry in members if getattr(entry, run).completed]
            for entry, rank in competition_ranks(finishers, key=lambda e, run=run: getattr(e, run).time_sec):
                setattr(entry, attr, points_for_rank(rank))
    for entry in entries:
        entry.total_points = entry.run1_points + entry.run2_points


def _best_three(entries: Sequence[ResultEntry], run: str) -> List[Contribution]:
    finishers = sorted(
        (entry for entry in entries if getattr(entry, run).completed),
        key=lambda entry: getattr(entry, run).time_sec,
    )
    return [
        Contribution(bib=entry.bib, racer_name=entry.racer_name, time_sec=getattr(entry, run).time_sec)
        for entry in finishers[:TEAM_SIZE]
    ]


def _total(contribs: Sequence[Contribution]) -> Optional[float]:
    if len(contribs) < TEAM_SIZE:
        return None
    return round(sum(contrib.time_sec for contrib in contribs), 6)


def compute_team_scores(entries: Sequence[ResultEntry], non_league: Set[str]) -> List[TeamScore]:
    scores: List[TeamScore] = []
    for gender in (FEMALE, MALE):
        by_team: Dict[str, List[ResultEntry]] = {}
        for entry in entries:
            if entry.gender != gender or scoring_class(entry.racer_class) != VARSITY:
                continue
            if not entry.team_id or not _is_league(entry, non_league):
                continue
            by_team.setdefault(entry.team_id, []).append(entry)

        team_scores: List[TeamScore] = []
        full_teams = 0
        for team_id, members in by_team.items():
            racers = {entry.racer_id or str(entry.bib) for entry in members}
            if len(racers) >= TEAM_SIZE:
                full_teams += 1
            run1 = _best_three(members, "run1")
            run2 = _best_three(members, "run2")
            run1_total = _total(run1)
            run2_total = _total(run2)
            combined = (
                round(run1_total + run2_total, 6)
                if run1_total is not None and run2_total is not None
                else None
            )
            team_scores.append(
                TeamScore(
                    gender=gender,
                    team_id=team_id,
                    team_name=next((entry.team_name for entry in members if entry.team_name), ""),
                    run1_total_sec=run1_total,
                    run2_total_sec=run2_total,
                    total_time_sec=combined,
                    run1_contribs=run1,
                    run2_contribs=run2,
                )
            )

        team_scores.sort(
            key=lambda score: (
                score.total_time_sec is None,
                score.total_time_sec or 0.0,
                score.team_name.lower(),
            )
        )
        complete = [score for score in team_scores if score.total_time_sec is not None]
        for score, rank in competition_ranks(complete, key=lambda score: score.total_time_sec):
            score.points = max(0, 2 * full_teams - 2 * (rank - 1))
        scores.extend(team_scores)
    return scores


def _entry_sort_key(entry: ResultEntry) -> Tuple[int, int]:
    return (-entry.total_points, entry.bib)


def build_groups(entries: Sequence[ResultEntry], non_league: Set[str]) -> List[ResultGroup]:
    groups = [ResultGroup(gender=gender, racer_class=racer_class) for gender, racer_class in DISPLAY_GROUPS]
    index = {(group.gender, group.racer_class): group for group in groups}
    for entry in entries:
        if not _is_league(entry, non_league):
            continue
        group = index.get((entry.gender, scoring_class(entry.racer_class)))
        if group is not None:
            group.entries.append(entry)
    for group in groups:
        group.entries.sort(key=_entry_sort_key)
    return groups


def _team_score_from_dict(data: Dict[str, Any]) -> TeamScore:
    def _contribs(items: Any) -> List[Contribution]:
        return [Contribution(**item) for item in items or [] if isinstance(item, dict)]

    return TeamScore(
        gender=str(data.get("gender") or ""),
        team_id=str(data.get("team_id") or ""),
        team_name=str(data.get("team_name") or ""),
        run1_total_sec=data.get("run1_total_sec"),
        run2_total_sec=data.get("run2_total_sec"),
        total_time_sec=data.get("total_time_sec"),
        run1_contribs=_contribs(data.get("run1_contribs")),
        run2_contribs=_contribs(data.get("run2_contribs")),
        points=int(data.get("points") or 0),
    )


class ResultsService:
    def __init__(self, store: DataStore, time_unit: int = MICRO_UNITS) -> None:
        self.store = store
        self.time_unit = time_unit
        self.races = RaceService(store)
        self.directory = Directory(store)
        self.start_lists = StartListService(store)

    def fetch_results(self, race_id: str) -> ResultSet:
        rows = self.store.query_all("results", {"race_id": race_id})
        summary = next((row for row in rows if int(row["bib"]) == META_BIB), None) or {}
        entries = [ResultEntry.from_record(row) for row in rows if int(row["bib"]) != META_BIB]
        entries.sort(key=_entry_sort_key)
        non_league = self.directory.non_league_team_ids(entry.team_id for entry in entries)
        return ResultSet(
            entries=entries,
            issues=[str(issue) for issue in summary.get("issues") or []],
            team_scores=[_team_score_from_dict(item) for item in summary.get("team_scores") or []],
            groups=build_groups(entries, non_league),
            generated_at=summary.get("generated_at"),
        )

    def submit_results(self, race_id: str, xml: str) -> ResultSet:
        """Score a timing export against the race's start list and store the outcome."""

        self.races.ensure_unlocked(race_id)
        document = parse_document(xml, self.time_unit)
        start_list, _ = self.start_lists.fetch(race_id)
        non_league = self.directory.non_league_team_ids(entry.team_id for entry in start_list)

        entries, issues = reconcile(race_id, document, start_list)
        award_points(entries, non_league)
        entries.sort(key=_entry_sort_key)
        team_scores = compute_team_scores(entries, non_league)
        generated_at = self._utc_now_iso()

        self._replace(race_id, entries, issues, team_scores, generated_at)
        logger.info(
            "Scored %d competitor(s) for race %s with %d issue(s)", len(entries), race_id, len(issues)
        )
        return ResultSet(
            entries=entries,
            issues=issues,
            team_scores=team_scores,
            groups=build_groups(entries, non_league),
            generated_at=generated_at,
        )

    def _replace(
        self,
        race_id: str,
        entries: Sequence[ResultEntry],
        issues: Sequence[str],
        team_scores: Sequence[TeamScore],
        generated_at: str,
    ) -> None:
        for row in self.store.query_all("results", {"race_id": race_id}):
            self.store.delete("results", {"race_id": race_id, "bib": row["bib"]})
        self.store.put(
            "results",
            {
                "race_id": race_id,
                "bib": META_BIB,
                "generated_at": generated_at,
                "issues": list(issues),
                "team_scores": [dataclasses.asdict(score) for score in team_scores],
            },
        )
        for entry in entries:
            self.store.put("results", entry.to_record())

    @staticmethod
    def _utc_now_iso() -> str:
        return dt.datetime.now(dt.UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")
