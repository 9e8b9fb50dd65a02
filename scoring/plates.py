"""
Per-plate danger scores.

Each report adds a fixed per-report weight plus a severity weight to the
plate's score. There is no decay: a deleted report is taken back with a
compensating adjustment of exactly what it added. Every change is kept as a
``ScoreAdjustment``, so a plate's score always equals the sum of its
adjustments.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from uuid import uuid4

from .errors import DuplicateEntryError, InvalidEventError, InvariantViolationError, RecordNotFoundError
from .models import (
    FlaggedPlateAggregate,
    PlateHistory,
    PlateIncident,
    PlateStats,
    ScoreAdjustment,
    Severity,
    ensure_aware,
)
from .store import KeyedLocks

logger = logging.getLogger(__name__)

SEVERITY_WEIGHTS: dict[Severity, int] = {
    Severity.CRITICAL: 25,
    Severity.HIGH: 15,
    Severity.MEDIUM: 5,
    Severity.LOW: 0,
}

REPEAT_OFFENDER_REPORTS = 3
MIN_SEARCH_LENGTH = 3

_NON_ALNUM = re.compile(r"[^A-Z0-9]")


def normalize_plate(plate: Optional[str]) -> str:
    """Uppercase and strip everything that is not a letter or digit."""
    normalized = _NON_ALNUM.sub("", (plate or "").upper())
    if not normalized:
        raise InvalidEventError(f"Invalid plate {plate!r}")
    return normalized


def validate_plate_format(plate: Optional[str], region: str = "US") -> bool:
    cleaned = _NON_ALNUM.sub("", (plate or "").upper())
    if region == "US":
        return 5 <= len(cleaned) <= 8
    return 4 <= len(cleaned) <= 10


@dataclass
class _PlateState:
    plate: str
    first_seen: datetime
    last_seen: datetime
    report_count: int = 0
    danger_score: int = 0
    type_counts: Counter = field(default_factory=Counter)
    recent: list[PlateIncident] = field(default_factory=list)
    contributions: dict[str, tuple[int, PlateIncident]] = field(default_factory=dict)
    removed: set[str] = field(default_factory=set)

    def snapshot(self) -> FlaggedPlateAggregate:
        return FlaggedPlateAggregate(
            plate=self.plate,
            report_count=self.report_count,
            danger_score=self.danger_score,
            types={t for t, n in self.type_counts.items() if n > 0},
            first_seen=self.first_seen,
            last_seen=self.last_seen,
            recent_incidents=list(self.recent),
        )

    def rank_key(self) -> tuple:
        return (-self.danger_score, -self.report_count, self.first_seen, self.plate)


class DangerScoreAggregator:
    def __init__(self, report_weight: int = 10, recent_limit: int = 10):
        self.report_weight = report_weight
        self.recent_limit = recent_limit
        self.locks = KeyedLocks()
        self._plates: dict[str, _PlateState] = {}
        self._adjustments: list[ScoreAdjustment] = []

    def record_report(
        self,
        plate: str,
        type: str,
        severity: Severity,
        occurred_at: datetime,
        location_label: Optional[str] = None,
        report_id: Optional[str] = None,
    ) -> FlaggedPlateAggregate:
        normalized = normalize_plate(plate)
        severity = Severity(severity)
        occurred_at = ensure_aware(occurred_at)
        incident = PlateIncident(
            report_id=report_id or str(uuid4()),
            type=type,
            severity=severity,
            occurred_at=occurred_at,
            location_label=location_label,
        )
        delta = self.report_weight + SEVERITY_WEIGHTS[severity]

        with self.locks.hold(normalized):
            state = self._plates.get(normalized)
            if state is None:
                state = _PlateState(plate=normalized, first_seen=occurred_at, last_seen=occurred_at)
            elif incident.report_id in state.contributions:
                raise DuplicateEntryError(
                    f"Report {incident.report_id} already counted for plate {normalized}",
                    existing_id=incident.report_id,
                )

            state.report_count += 1
            state.danger_score += delta
            state.type_counts[type] += 1
            state.first_seen = min(state.first_seen, occurred_at)
            state.last_seen = max(state.last_seen, occurred_at)
            state.recent.insert(0, incident)
            state.recent.sort(key=lambda i: i.occurred_at, reverse=True)
            del state.recent[self.recent_limit:]
            state.contributions[incident.report_id] = (delta, incident)
            self._plates[normalized] = state
            self._adjustments.append(ScoreAdjustment(
                plate=normalized, report_id=incident.report_id, delta=delta,
                reason=f"{severity.value} {type} report",
            ))
            snapshot = state.snapshot()

        logger.info("Plate %s scored +%d (now %d)", normalized, delta, snapshot.danger_score)
        return snapshot

    def remove_report(self, plate: str, report_id: str, reason: str = "report deleted") -> ScoreAdjustment:
        normalized = normalize_plate(plate)
        with self.locks.hold(normalized):
            state = self._plates.get(normalized)
            if state is None or report_id not in state.contributions:
                raise RecordNotFoundError(f"Report {report_id} is not counted for plate {normalized}")
            if report_id in state.removed:
                raise DuplicateEntryError(
                    f"Report {report_id} was already removed from plate {normalized}", existing_id=report_id
                )

            delta, incident = state.contributions[report_id]
            if state.danger_score - delta < 0:
                logger.error(
                    "Removing report %s would drive plate %s below zero (%d - %d)",
                    report_id, normalized, state.danger_score, delta,
                )
                raise InvariantViolationError(f"Danger score for {normalized} would go negative")

            state.danger_score -= delta
            state.report_count -= 1
            state.type_counts[incident.type] -= 1
            state.removed.add(report_id)
            # Rebuild the window from what is still counted so older incidents resurface.
            remaining = sorted(
                (i for rid, (_, i) in state.contributions.items() if rid not in state.removed),
                key=lambda i: i.occurred_at, reverse=True,
            )
            state.recent = remaining[:self.recent_limit]
            if remaining:
                state.first_seen = remaining[-1].occurred_at
                state.last_seen = remaining[0].occurred_at
            adjustment = ScoreAdjustment(plate=normalized, report_id=report_id, delta=-delta, reason=reason)
            self._adjustments.append(adjustment)

        logger.info("Plate %s compensated -%d for removed report %s", normalized, delta, report_id)
        return adjustment

    def get(self, plate: str) -> Optional[FlaggedPlateAggregate]:
        state = self._plates.get(normalize_plate(plate))
        return state.snapshot() if state else None

    def rank(self, filter_type: Optional[str] = None, limit: Optional[int] = None) -> list[FlaggedPlateAggregate]:
        states = [
            s for s in list(self._plates.values())
            if s.report_count > 0 and (filter_type is None or s.type_counts.get(filter_type, 0) > 0)
        ]
        states.sort(key=_PlateState.rank_key)
        if limit is not None:
            states = states[:limit]

        ranked = []
        for position, state in enumerate(states, 1):
            aggregate = state.snapshot()
            aggregate.rank = position
            ranked.append(aggregate)
        return ranked

    def search(self, query: str, limit: int = 50) -> list[FlaggedPlateAggregate]:
        needle = _NON_ALNUM.sub("", (query or "").upper())
        if len(needle) < MIN_SEARCH_LENGTH:
            raise InvalidEventError(f"Plate search needs at least {MIN_SEARCH_LENGTH} characters")
        matches = [s for s in list(self._plates.values()) if needle in s.plate and s.report_count > 0]
        matches.sort(key=lambda s: s.last_seen, reverse=True)
        return [s.snapshot() for s in matches[:limit]]

    def history(self, plate: str, limit: int = 10) -> PlateHistory:
        normalized = normalize_plate(plate)
        state = self._plates.get(normalized)
        if state is None or state.report_count == 0:
            return PlateHistory(plate=normalized, found=False)
        incidents = sorted(
            (incident for report_id, (_, incident) in state.contributions.items() if report_id not in state.removed),
            key=lambda i: i.occurred_at,
            reverse=True,
        )
        return PlateHistory(
            plate=normalized,
            found=True,
            count=state.report_count,
            incidents=incidents[:limit],
            is_repeat_offender=state.report_count >= REPEAT_OFFENDER_REPORTS,
        )

    def adjustments(self, plate: Optional[str] = None) -> list[ScoreAdjustment]:
        if plate is None:
            return list(self._adjustments)
        normalized = normalize_plate(plate)
        return [a for a in self._adjustments if a.plate == normalized]

    def stats(self) -> PlateStats:
        breakdown: Counter = Counter()
        total = 0
        unique = 0
        for state in list(self._plates.values()):
            if state.report_count == 0:
                continue
            unique += 1
            total += state.report_count
            breakdown.update({t: n for t, n in state.type_counts.items() if n > 0})
        return PlateStats(total_reports=total, unique_plates=unique, type_breakdown=dict(breakdown))


def replay_score(adjustments: list[ScoreAdjustment]) -> int:
    return sum(a.delta for a in adjustments)
