"""Parsing of timing-system result exports.

The export is a loose XML document holding repeated ``<Comp>`` blocks, one
per competitor, each with ``<Time1>`` / ``<Time2>`` run blocks whose start and
finish instants are expressed in micro-units. Exports are not always a single
well-formed tree (some concatenate several sections), so the text is wrapped
in a synthetic root before parsing.
"""

from __future__ import annotations

import logging
import math
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import List, Optional

from .entry import FEMALE, JR_VARSITY, MALE, PROVISIONAL, RunInfo, VARSITY, VARSITY_ALTERNATE
from .errors import ValidationError

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"
MICRO_UNITS = 1_000_000

_DECLARATION_RE = re.compile(r"<\?xml[^>]*\?>", re.IGNORECASE)
_DOCTYPE_RE = re.compile(r"<!DOCTYPE[^>]*>", re.IGNORECASE)


@dataclass
class RawCompetitor:
    bib: int
    name: str
    team: str
    racer_class: str
    gender: str
    run1: RunInfo = field(default_factory=RunInfo)
    run2: RunInfo = field(default_factory=RunInfo)


@dataclass
class TimingDocument:
    gender: str
    competitors: List[RawCompetitor] = field(default_factory=list)


def normalise_name(name: str) -> str:
    """Comparable form of a racer name; ``"Doe, Jane"`` and ``"jane doe"`` match."""

    raw = (name or "").strip()
    if "," in raw:
        last, first = raw.split(",", 1)
        raw = f"{first} {last}"
    cleaned = re.sub(r"[^a-z0-9\s]", " ", raw, flags=re.IGNORECASE).lower()
    return re.sub(r"\s+", " ", cleaned).strip()


def normalise_timing_class(value: Optional[str]) -> str:
    label = (value or "").lower()
    if "jv" in label or "jr" in label:
        return JR_VARSITY
    if label.startswith("p"):
        return PROVISIONAL
    if label == "va" or "alt" in label:
        return VARSITY_ALTERNATE
    if label == "v" or "varsity" in label:
        return VARSITY
    return UNKNOWN


def scoring_class(value: Optional[str]) -> str:
    """Class used for points and team scores; alternates score as varsity."""

    label = normalise_timing_class(value)
    return VARSITY if label == VARSITY_ALTERNATE else label


def normalise_timing_gender(value: Optional[str]) -> str:
    label = (value or "").strip().lower()
    if label.startswith("m"):
        return MALE
    if label.startswith("f") or "lad" in label:
        return FEMALE
    return UNKNOWN


def _number(element: Optional[ET.Element], tag: str) -> float:
    if element is None:
        return 0
    text = (element.findtext(tag) or "").strip()
    try:
        value = float(text) if text else 0
    except ValueError:
        return 0
    return value if math.isfinite(value) else 0


def parse_run(element: Optional[ET.Element], unit: int = MICRO_UNITS) -> RunInfo:
    """Run outcome; timed only for status 1 with a finish after the start."""

    if element is None:
        return RunInfo()
    status = int(_number(element, "Status"))
    start = _number(element, "MicroStart")
    finish = _number(element, "MicroFinish")
    if start <= 0 or finish <= 0:
        return RunInfo()
    if status != 1:
        return RunInfo(status=status)
    if finish <= start:
        return RunInfo()
    return RunInfo(status=status, time_sec=(finish - start) / unit)


def parse_document(text: str, unit: int = MICRO_UNITS) -> TimingDocument:
    if not text or not text.strip():
        raise ValidationError("xml required")

    body = _DOCTYPE_RE.sub("", _DECLARATION_RE.sub("", text))
    try:
        root = ET.fromstring(f"<Export>{body}</Export>")
    except ET.ParseError as exc:
        raise ValidationError(f"Malformed timing document: {exc}") from exc

    gender = normalise_timing_gender(root.findtext(".//CurrentSex"))
    document = TimingDocument(gender=gender)
    for comp in root.iter("Comp"):
        bib_text = (comp.findtext("Bib") or "").strip()
        try:
            bib = int(float(bib_text))
        except (ValueError, OverflowError):
            logger.warning("Skipping competitor with non-numeric bib %r", bib_text)
            continue
        if bib <= 0:
            continue
        document.competitors.append(
            RawCompetitor(
                bib=bib,
                name=(comp.findtext("Name") or "").strip(),
                team=(comp.findtext("Team") or "").strip(),
                racer_class=normalise_timing_class(comp.findtext("CompClass")),
                gender=gender,
                run1=parse_run(comp.find("Time1"), unit),
                run2=parse_run(comp.find("Time2"), unit),
            )
        )
    return document
