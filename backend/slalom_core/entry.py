from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

Gender = Literal["Male", "Female"]
RacerClass = Literal["Varsity", "Varsity Alternate", "Jr Varsity", "Provisional", "DNS"]

MALE = "Male"
FEMALE = "Female"
GENDERS = (FEMALE, MALE)

VARSITY = "Varsity"
VARSITY_ALTERNATE = "Varsity Alternate"
JR_VARSITY = "Jr Varsity"
PROVISIONAL = "Provisional"
DNS = "DNS"
DNS_ALIAS = "DNS - Did Not Start"

# Racing precedence; DNS sorts after every racing class.
CLASS_ORDER = (VARSITY, VARSITY_ALTERNATE, JR_VARSITY, PROVISIONAL, DNS)
RACING_CLASSES = CLASS_ORDER[:-1]
BASE_CLASSES = RACING_CLASSES

CLASS_CAPS: Dict[str, int] = {VARSITY: 5, VARSITY_ALTERNATE: 1}


def normalise_class(value: Any) -> str:
    """Return the canonical class label or raise ``ValueError``."""

    label = str(value or "").strip()
    if label == DNS_ALIAS:
        return DNS
    if label not in CLASS_ORDER:
        raise ValueError(f"Unknown racer class '{value}'")
    return label


def normalise_gender(value: Any) -> str:
    label = str(value or "").strip()
    if label not in GENDERS:
        raise ValueError(f"Unknown gender '{value}'")
    return label


@dataclass
class Team:
    team_id: str
    name: str
    non_league: bool = False


@dataclass
class Racer:
    racer_id: str
    team_id: str
    name: str
    gender: Gender
    base_class: str


@dataclass
class Race:
    race_id: str
    name: str = ""
    location: str = ""
    date: str = ""
    type: str = ""
    locked: bool = False
    independent: bool = False


@dataclass
class RosterEntry:
    """One racer's slot on a team roster for a race.

    ``start_order`` is unique within the (race, team, gender, class) bucket and
    is ``None`` only for DNS entries.
    """

    race_id: str
    team_id: str
    racer_id: str
    gender: Gender
    racer_class: RacerClass
    start_order: Optional[int] = None
    base_class: str = ""

    def to_record(self) -> Dict[str, Any]:
        return {
            "race_id": self.race_id,
            "team_id": self.team_id,
            "racer_id": self.racer_id,
            "gender": self.gender,
            "class": self.racer_class,
            "start_order": self.start_order,
            "base_class": self.base_class or None,
        }

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "RosterEntry":
        start_order = row.get("start_order")
        return cls(
            race_id=str(row["race_id"]),
            team_id=str(row["team_id"]),
            racer_id=str(row["racer_id"]),
            gender=str(row.get("gender") or ""),
            racer_class=str(row.get("class") or ""),
            start_order=int(start_order) if start_order is not None else None,
            base_class=str(row.get("base_class") or ""),
        )


@dataclass
class StartListEntry:
    race_id: str
    bib: int
    racer_id: str
    racer_name: str
    team_id: str
    team_name: str
    gender: Gender
    racer_class: RacerClass

    def to_record(self) -> Dict[str, Any]:
        return {
            "race_id": self.race_id,
            "bib": self.bib,
            "racer_id": self.racer_id,
            "racer_name": self.racer_name,
            "team_id": self.team_id,
            "team_name": self.team_name,
            "gender": self.gender,
            "class": self.racer_class,
        }

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "StartListEntry":
        return cls(
            race_id=str(row["race_id"]),
            bib=int(row["bib"]),
            racer_id=str(row.get("racer_id") or ""),
            racer_name=str(row.get("racer_name") or ""),
            team_id=str(row.get("team_id") or ""),
            team_name=str(row.get("team_name") or ""),
            gender=str(row.get("gender") or ""),
            racer_class=str(row.get("class") or ""),
        )


@dataclass
class StartListMeta:
    """Race-level start list data stored under bib 0."""

    excluded_bibs: List[int] = field(default_factory=list)
    draw_order: Dict[str, List[str]] = field(default_factory=dict)


@dataclass
class RunInfo:
    status: int = 0
    time_sec: Optional[float] = None

    @property
    def completed(self) -> bool:
        return self.status == 1 and self.time_sec is not None


@dataclass
class ResultEntry:
    race_id: str
    bib: int
    racer_name: str
    team_name: str
    gender: str
    racer_class: str
    run1: RunInfo = field(default_factory=RunInfo)
    run2: RunInfo = field(default_factory=RunInfo)
    racer_id: Optional[str] = None
    team_id: Optional[str] = None
    run1_points: int = 0
    run2_points: int = 0
    total_points: int = 0

    def to_record(self) -> Dict[str, Any]:
        return {
            "race_id": self.race_id,
            "bib": self.bib,
            "racer_id": self.racer_id,
            "racer_name": self.racer_name,
            "team_id": self.team_id,
            "team_name": self.team_name,
            "gender": self.gender,
            "class": self.racer_class,
            "run1_status": self.run1.status,
            "run2_status": self.run2.status,
            "run1_time_sec": self.run1.time_sec,
            "run2_time_sec": self.run2.time_sec,
            "run1_points": self.run1_points,
            "run2_points": self.run2_points,
            "total_points": self.total_points,
        }

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "ResultEntry":
        def _time(value: Any) -> Optional[float]:
            return float(value) if isinstance(value, (int, float)) else None

        return cls(
            race_id=str(row["race_id"]),
            bib=int(row["bib"]),
            racer_id=row.get("racer_id"),
            racer_name=str(row.get("racer_name") or ""),
            team_id=row.get("team_id"),
            team_name=str(row.get("team_name") or ""),
            gender=str(row.get("gender") or ""),
            racer_class=str(row.get("class") or ""),
            run1=RunInfo(int(row.get("run1_status") or 0), _time(row.get("run1_time_sec"))),
            run2=RunInfo(int(row.get("run2_status") or 0), _time(row.get("run2_time_sec"))),
            run1_points=int(row.get("run1_points") or 0),
            run2_points=int(row.get("run2_points") or 0),
            total_points=int(row.get("total_points") or 0),
        )


@dataclass
class Contribution:
    bib: int
    racer_name: str
    time_sec: float


@dataclass
class TeamScore:
    gender: str
    team_id: str
    team_name: str
    run1_total_sec: Optional[float] = None
    run2_total_sec: Optional[float] = None
    total_time_sec: Optional[float] = None
    run1_contribs: List[Contribution] = field(default_factory=list)
    run2_contribs: List[Contribution] = field(default_factory=list)
    points: int = 0
