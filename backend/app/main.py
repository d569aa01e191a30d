from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from slalom_core import (
    DataStore,
    Directory,
    DuplicateEntry,
    NotFound,
    RaceLocked,
    RaceService,
    ResultSet,
    ResultsService,
    RosterService,
    SlalomError,
    StartListService,
    StorageFailure,
)
from slalom_core.entry import Race, ResultEntry, RosterEntry, StartListEntry, StartListMeta, Team, TeamScore

app = FastAPI(title="Slalom Results API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

logger = logging.getLogger(__name__)


class TeamModel(BaseModel):
    team_id: str = Field(alias="teamId")
    name: str
    non_league: bool = Field(default=False, alias="nonLeague")

    model_config = ConfigDict(populate_by_name=True)


class TeamListResponse(BaseModel):
    teams: List[TeamModel]


class RaceModel(BaseModel):
    race_id: str = Field(alias="raceId")
    name: str = ""
    location: str = ""
    date: str = ""
    type: str = ""
    locked: bool = False
    independent: bool = False

    model_config = ConfigDict(populate_by_name=True)


class RaceListResponse(BaseModel):
    races: List[RaceModel]


class RaceUpdatePayload(BaseModel):
    locked: Optional[bool] = None
    independent: Optional[bool] = None
    name: Optional[str] = None
    location: Optional[str] = None
    date: Optional[str] = None
    type: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class RosterEntryModel(BaseModel):
    race_id: str = Field(alias="raceId")
    team_id: str = Field(alias="teamId")
    racer_id: str = Field(alias="racerId")
    gender: str
    racer_class: str = Field(alias="class")
    start_order: Optional[int] = Field(default=None, alias="startOrder")
    base_class: Optional[str] = Field(default=None, alias="baseClass")

    model_config = ConfigDict(populate_by_name=True)


class RosterResponse(BaseModel):
    race_id: str = Field(alias="raceId")
    team_id: str = Field(alias="teamId")
    entries: List[RosterEntryModel]

    model_config = ConfigDict(populate_by_name=True)


class RosterAddPayload(BaseModel):
    racer_id: str = Field(alias="racerId")
    racer_class: Optional[str] = Field(default=None, alias="class")
    gender: Optional[str] = None
    base_class: Optional[str] = Field(default=None, alias="baseClass")

    model_config = ConfigDict(populate_by_name=True)


class RosterUpdatePayload(BaseModel):
    racer_class: str = Field(alias="class")

    model_config = ConfigDict(populate_by_name=True)


class RosterMovePayload(BaseModel):
    racer_id: str = Field(alias="racerId")
    direction: str

    model_config = ConfigDict(populate_by_name=True)


class CopyPayload(BaseModel):
    from_race_id: str = Field(alias="fromRaceId")

    model_config = ConfigDict(populate_by_name=True)


class RosterCountsPayload(BaseModel):
    race_ids: List[str] = Field(default_factory=list, alias="raceIds")
    team_ids: List[str] = Field(default_factory=list, alias="teamIds")

    model_config = ConfigDict(populate_by_name=True)


class RosterCountsResponse(BaseModel):
    counts: Dict[str, Dict[str, int]]


class StartListEntryModel(BaseModel):
    bib: int
    racer_id: str = Field(alias="racerId")
    racer_name: str = Field(alias="racerName")
    team_id: str = Field(alias="teamId")
    team_name: str = Field(alias="teamName")
    gender: str
    racer_class: str = Field(alias="class")

    model_config = ConfigDict(populate_by_name=True)


class StartListResponse(BaseModel):
    race_id: str = Field(alias="raceId")
    entries: List[StartListEntryModel]
    excluded_bibs: List[int] = Field(default_factory=list, alias="excludedBibs")
    draw_order: Dict[str, List[str]] = Field(default_factory=dict, alias="drawOrder")

    model_config = ConfigDict(populate_by_name=True)


class ExcludedBibsPayload(BaseModel):
    excluded_bibs: List[int] = Field(default_factory=list, alias="excludedBibs")

    model_config = ConfigDict(populate_by_name=True)


class ExcludedBibsResponse(BaseModel):
    race_id: str = Field(alias="raceId")
    excluded_bibs: List[int] = Field(alias="excludedBibs")

    model_config = ConfigDict(populate_by_name=True)


class StartListGeneratePayload(BaseModel):
    excluded_bibs: Optional[List[int]] = Field(default=None, alias="excludedBibs")

    model_config = ConfigDict(populate_by_name=True)


class ResultEntryModel(BaseModel):
    bib: int
    racer_id: Optional[str] = Field(default=None, alias="racerId")
    racer_name: str = Field(alias="racerName")
    team_id: Optional[str] = Field(default=None, alias="teamId")
    team_name: str = Field(alias="teamName")
    gender: str
    racer_class: str = Field(alias="class")
    run1_status: int = Field(alias="run1Status")
    run2_status: int = Field(alias="run2Status")
    run1_time_sec: Optional[float] = Field(default=None, alias="run1TimeSec")
    run2_time_sec: Optional[float] = Field(default=None, alias="run2TimeSec")
    run1_points: int = Field(alias="run1Points")
    run2_points: int = Field(alias="run2Points")
    total_points: int = Field(alias="totalPoints")

    model_config = ConfigDict(populate_by_name=True)


class ContributionModel(BaseModel):
    bib: int
    racer_name: str = Field(alias="racerName")
    time_sec: float = Field(alias="timeSec")

    model_config = ConfigDict(populate_by_name=True)


class TeamScoreModel(BaseModel):
    gender: str
    team_id: str = Field(alias="teamId")
    team_name: str = Field(alias="teamName")
    run1_total_sec: Optional[float] = Field(default=None, alias="run1TotalSec")
    run2_total_sec: Optional[float] = Field(default=None, alias="run2TotalSec")
    total_time_sec: Optional[float] = Field(default=None, alias="totalTimeSec")
    run1_contribs: List[ContributionModel] = Field(default_factory=list, alias="run1Contribs")
    run2_contribs: List[ContributionModel] = Field(default_factory=list, alias="run2Contribs")
    points: int = 0

    model_config = ConfigDict(populate_by_name=True)


class ResultGroupModel(BaseModel):
    gender: str
    racer_class: str = Field(alias="class")
    entries: List[ResultEntryModel]

    model_config = ConfigDict(populate_by_name=True)


class ResultsResponse(BaseModel):
    race_id: str = Field(alias="raceId")
    entries: List[ResultEntryModel]
    issues: List[str]
    groups: List[ResultGroupModel]
    team_scores: List[TeamScoreModel] = Field(alias="teamScores")
    generated_at: Optional[str] = Field(default=None, alias="generatedAt")

    model_config = ConfigDict(populate_by_name=True)


class ResultsSubmitPayload(BaseModel):
    xml: str = ""


@lru_cache(maxsize=1)
def store() -> DataStore:
    return DataStore()


def _http_error(exc: SlalomError) -> HTTPException:
    if isinstance(exc, NotFound):
        status = 404
    elif isinstance(exc, DuplicateEntry):
        status = 409
    elif isinstance(exc, RaceLocked):
        status = 423
    elif isinstance(exc, StorageFailure):
        logger.error("Data store request failed: %s", exc)
        status = 502
    else:
        status = 400
    return HTTPException(status_code=status, detail=str(exc))


def _team_model(team: Team) -> TeamModel:
    return TeamModel(team_id=team.team_id, name=team.name, non_league=team.non_league)


def _race_model(race: Race) -> RaceModel:
    return RaceModel(
        race_id=race.race_id,
        name=race.name,
        location=race.location,
        date=race.date,
        type=race.type,
        locked=race.locked,
        independent=race.independent,
    )


def _roster_response(race_id: str, team_id: str, entries: List[RosterEntry]) -> RosterResponse:
    return RosterResponse(
        race_id=race_id,
        team_id=team_id,
        entries=[
            RosterEntryModel(
                race_id=entry.race_id,
                team_id=entry.team_id,
                racer_id=entry.racer_id,
                gender=entry.gender,
                racer_class=entry.racer_class,
                start_order=entry.start_order,
                base_class=entry.base_class or None,
            )
            for entry in entries
        ],
    )


def _start_list_response(race_id: str, entries: List[StartListEntry], meta: StartListMeta) -> StartListResponse:
    return StartListResponse(
        race_id=race_id,
        entries=[
            StartListEntryModel(
                bib=entry.bib,
                racer_id=entry.racer_id,
                racer_name=entry.racer_name,
                team_id=entry.team_id,
                team_name=entry.team_name,
                gender=entry.gender,
                racer_class=entry.racer_class,
            )
            for entry in entries
        ],
        excluded_bibs=meta.excluded_bibs,
        draw_order=meta.draw_order,
    )


def _result_entry_model(entry: ResultEntry) -> ResultEntryModel:
    record: Dict[str, Any] = entry.to_record()
    record.pop("race_id")
    record["racer_class"] = record.pop("class")
    return ResultEntryModel(**record)


def _team_score_model(score: TeamScore) -> TeamScoreModel:
    return TeamScoreModel(
        gender=score.gender,
        team_id=score.team_id,
        team_name=score.team_name,
        run1_total_sec=score.run1_total_sec,
        run2_total_sec=score.run2_total_sec,
        total_time_sec=score.total_time_sec,
        run1_contribs=[
            ContributionModel(bib=item.bib, racer_name=item.racer_name, time_sec=item.time_sec)
            for item in score.run1_contribs
        ],
        run2_contribs=[
            ContributionModel(bib=item.bib, racer_name=item.racer_name, time_sec=item.time_sec)
            for item in score.run2_contribs
        ],
        points=score.points,
    )


def _results_response(race_id: str, results: ResultSet) -> ResultsResponse:
    return ResultsResponse(
        race_id=race_id,
        entries=[_result_entry_model(entry) for entry in results.entries],
        issues=results.issues,
        groups=[
            ResultGroupModel(
                gender=group.gender,
                racer_class=group.racer_class,
                entries=[_result_entry_model(entry) for entry in group.entries],
            )
            for group in results.groups
        ],
        team_scores=[_team_score_model(score) for score in results.team_scores],
        generated_at=results.generated_at,
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# ----------------------------------------------------------------------
# Directory


@app.get("/teams", response_model=TeamListResponse)
def list_teams():
    try:
        teams = Directory(store()).teams()
    except SlalomError as exc:
        raise _http_error(exc) from exc
    return TeamListResponse(teams=[_team_model(team) for team in teams])


@app.get("/teams/{team_id}", response_model=TeamModel)
def get_team(team_id: str):
    try:
        team = Directory(store()).team(team_id)
    except SlalomError as exc:
        raise _http_error(exc) from exc
    if team is None:
        raise HTTPException(status_code=404, detail="Team not found")
    return _team_model(team)


# ----------------------------------------------------------------------
# Races


@app.get("/races", response_model=RaceListResponse)
def list_races():
    try:
        races = RaceService(store()).list_races()
    except SlalomError as exc:
        raise _http_error(exc) from exc
    return RaceListResponse(races=[_race_model(race) for race in races])


@app.post("/races/roster-counts", response_model=RosterCountsResponse)
def roster_counts(payload: RosterCountsPayload):
    try:
        counts = RosterService(store()).roster_counts(payload.race_ids, payload.team_ids)
    except SlalomError as exc:
        raise _http_error(exc) from exc
    return RosterCountsResponse(counts=counts)


@app.get("/races/{race_id}", response_model=RaceModel)
def get_race(race_id: str):
    try:
        race = RaceService(store()).get_race(race_id)
    except SlalomError as exc:
        raise _http_error(exc) from exc
    return _race_model(race)


@app.patch("/races/{race_id}", response_model=RaceModel)
def update_race(race_id: str, payload: RaceUpdatePayload):
    try:
        race = RaceService(store()).update_race(race_id, payload.model_dump(exclude_unset=True))
    except SlalomError as exc:
        raise _http_error(exc) from exc
    return _race_model(race)


@app.delete("/races/{race_id}")
def delete_race(race_id: str) -> dict[str, str]:
    try:
        RaceService(store()).delete_race(race_id)
    except SlalomError as exc:
        raise _http_error(exc) from exc
    return {"status": "deleted", "raceId": race_id}


# ----------------------------------------------------------------------
# Rosters


@app.get("/races/{race_id}/roster/{team_id}", response_model=RosterResponse)
def get_roster(race_id: str, team_id: str):
    try:
        entries = RosterService(store()).fetch_roster(race_id, team_id)
    except SlalomError as exc:
        raise _http_error(exc) from exc
    return _roster_response(race_id, team_id, entries)


@app.post("/races/{race_id}/roster/{team_id}/add", response_model=RosterResponse, status_code=201)
def add_roster_entry(race_id: str, team_id: str, payload: RosterAddPayload):
    try:
        entries = RosterService(store()).add_entry(
            race_id,
            team_id,
            payload.racer_id,
            desired_class=payload.racer_class,
            gender=payload.gender,
            base_class=payload.base_class,
        )
    except SlalomError as exc:
        raise _http_error(exc) from exc
    return _roster_response(race_id, team_id, entries)


@app.patch("/races/{race_id}/roster/{team_id}/entry/{racer_id}", response_model=RosterResponse)
def reclassify_roster_entry(race_id: str, team_id: str, racer_id: str, payload: RosterUpdatePayload):
    try:
        entries = RosterService(store()).reclassify_entry(race_id, team_id, racer_id, payload.racer_class)
    except SlalomError as exc:
        raise _http_error(exc) from exc
    return _roster_response(race_id, team_id, entries)


@app.delete("/races/{race_id}/roster/{team_id}/entry/{racer_id}", response_model=RosterResponse)
def remove_roster_entry(race_id: str, team_id: str, racer_id: str):
    try:
        entries = RosterService(store()).remove_entry(race_id, team_id, racer_id)
    except SlalomError as exc:
        raise _http_error(exc) from exc
    return _roster_response(race_id, team_id, entries)


@app.post("/races/{race_id}/roster/{team_id}/move", response_model=RosterResponse)
def move_roster_entry(race_id: str, team_id: str, payload: RosterMovePayload):
    try:
        entries = RosterService(store()).move_entry(race_id, team_id, payload.racer_id, payload.direction)
    except SlalomError as exc:
        raise _http_error(exc) from exc
    return _roster_response(race_id, team_id, entries)


@app.post("/races/{race_id}/roster/{team_id}/copy", response_model=RosterResponse)
def copy_roster(race_id: str, team_id: str, payload: CopyPayload):
    try:
        entries = RosterService(store()).copy_roster(payload.from_race_id, race_id, team_id)
    except SlalomError as exc:
        raise _http_error(exc) from exc
    return _roster_response(race_id, team_id, entries)


# ----------------------------------------------------------------------
# Start lists


@app.get("/races/{race_id}/start-list", response_model=StartListResponse)
def get_start_list(race_id: str):
    try:
        entries, meta = StartListService(store()).fetch(race_id)
    except SlalomError as exc:
        raise _http_error(exc) from exc
    return _start_list_response(race_id, entries, meta)


@app.get("/races/{race_id}/start-list/excluded", response_model=ExcludedBibsResponse)
def get_excluded_bibs(race_id: str):
    try:
        bibs = StartListService(store()).get_excluded(race_id)
    except SlalomError as exc:
        raise _http_error(exc) from exc
    return ExcludedBibsResponse(race_id=race_id, excluded_bibs=bibs)


@app.post("/races/{race_id}/start-list/excluded", response_model=ExcludedBibsResponse)
def set_excluded_bibs(race_id: str, payload: ExcludedBibsPayload):
    try:
        bibs = StartListService(store()).set_excluded(race_id, payload.excluded_bibs)
    except SlalomError as exc:
        raise _http_error(exc) from exc
    return ExcludedBibsResponse(race_id=race_id, excluded_bibs=bibs)


@app.post("/races/{race_id}/start-list/generate", response_model=StartListResponse)
def generate_start_list(race_id: str, payload: Optional[StartListGeneratePayload] = None):
    excluded = payload.excluded_bibs if payload is not None else None
    try:
        entries, meta = StartListService(store()).generate(race_id, excluded_bibs=excluded)
    except SlalomError as exc:
        raise _http_error(exc) from exc
    return _start_list_response(race_id, entries, meta)


@app.post("/races/{race_id}/start-list/copy", response_model=StartListResponse)
def copy_start_list(race_id: str, payload: CopyPayload):
    try:
        entries, meta = StartListService(store()).copy(race_id, payload.from_race_id)
    except SlalomError as exc:
        raise _http_error(exc) from exc
    return _start_list_response(race_id, entries, meta)


# ----------------------------------------------------------------------
# Results


@app.get("/races/{race_id}/results", response_model=ResultsResponse)
def get_results(race_id: str):
    try:
        results = ResultsService(store()).fetch_results(race_id)
    except SlalomError as exc:
        raise _http_error(exc) from exc
    return _results_response(race_id, results)


@app.post("/races/{race_id}/results", response_model=ResultsResponse)
def submit_results(race_id: str, payload: ResultsSubmitPayload):
    try:
        results = ResultsService(store()).submit_results(race_id, payload.xml)
    except SlalomError as exc:
        raise _http_error(exc) from exc
    return _results_response(race_id, results)
