"""Roster approval and duty scoring.

Approving a unit's month converts each assigned slot into an immutable
``DutyScoreEvent`` and adds its points to the person's cached total. The
``ApprovedRoster`` lock keeps a month from being scored twice; unapproving
lifts the lock and reopens the slots but never takes points back.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import date

import structlog

from .core.holidays import HolidayCalendar
from .entities import (
    APPROVED_ROSTERS,
    DUTY_SCORE_EVENTS,
    DUTY_SLOTS,
    DUTY_TYPES,
    DUTY_VALUES,
    PERSONNEL,
    UNITS,
    ApprovedRoster,
    DutyScoreEvent,
    DutyValue,
    SlotStatus,
    utc_now_naive,
)
from .hierarchy import HierarchyResolver
from .sync import NaturalKeyResolver

logger = structlog.get_logger("dutysync.rosters")

DEFAULT_DUTY_VALUE = DutyValue(duty_type_id="", base_weight=1.0, weekend_multiplier=1.5, holiday_multiplier=2.0)


@dataclass
class RosterApprovalResult:
    roster: ApprovedRoster
    events: list[DutyScoreEvent] = field(default_factory=list)
    diagnostics: dict[str, int] = field(default_factory=dict)
    persisted: bool = True

    @property
    def scores_applied(self) -> int:
        return len(self.events)


def roster_month(year: int, month: int) -> str:
    return f"{int(year):04d}-{int(month):02d}"


def _validate_period(year: int, month: int) -> None:
    if not 1 <= int(month) <= 12:
        raise ValueError("Month must be between 1 and 12")
    if not 1900 <= int(year) <= 9999:
        raise ValueError("Year is out of range")


def calculate_duty_points(day: date, duty_value: DutyValue | None, calendar: HolidayCalendar) -> float:
    value = duty_value or DEFAULT_DUTY_VALUE
    if calendar.is_holiday(day):
        return float(value.base_weight) * float(value.holiday_multiplier)
    if calendar.is_weekend(day):
        return float(value.base_weight) * float(value.weekend_multiplier)
    return float(value.base_weight)


def get_roster_approval(ctx, *, unit_id: str, year: int, month: int) -> ApprovedRoster | None:
    for roster in ctx.store.all(APPROVED_ROSTERS):
        if roster.unit_id == unit_id and roster.year == int(year) and roster.month == int(month):
            return roster
    return None


def approve_roster(
    ctx,
    *,
    unit_id: str,
    year: int,
    month: int,
    approved_by: str | None = None,
) -> RosterApprovalResult | None:
    _validate_period(year, month)
    period = roster_month(year, month)

    with ctx.store.batch():
        data = ctx.store.snapshot(
            UNITS, PERSONNEL, DUTY_TYPES, DUTY_VALUES, DUTY_SLOTS, APPROVED_ROSTERS, DUTY_SCORE_EVENTS
        )
        resolver = HierarchyResolver(data[UNITS], data[PERSONNEL])
        if unit_id not in resolver.units:
            return None
        if get_roster_approval(ctx, unit_id=unit_id, year=year, month=month) is not None:
            raise ValueError(f"Roster for {period} is already approved")

        scope = resolver.descendant_unit_ids(unit_id)
        duty_types = {d.id: d for d in data[DUTY_TYPES]}
        values = {v.duty_type_id: v for v in data[DUTY_VALUES]}
        people = {p.id: p for p in data[PERSONNEL]}
        diagnostics: Counter = Counter()
        # the event ledger is immutable, so a slot is scored at most once
        already_scored = {e.duty_slot_id for e in data[DUTY_SCORE_EVENTS]}

        now = utc_now_naive()
        approver = (approved_by or "").strip()[:160] or None
        events: list[DutyScoreEvent] = []
        relocked: set[str] = set()
        for slot in data[DUTY_SLOTS]:
            if slot.date_assigned.year != int(year) or slot.date_assigned.month != int(month):
                continue
            duty_type = duty_types.get(slot.duty_type_id)
            if duty_type is None:
                diagnostics["missing_duty_type"] += 1
                continue
            if duty_type.unit_id not in scope:
                continue
            if slot.status == SlotStatus.APPROVED:
                diagnostics["already_approved"] += 1
                continue
            if not slot.personnel_id:
                diagnostics["unassigned"] += 1
                continue
            person = people.get(slot.personnel_id)
            if person is None:
                diagnostics["missing_personnel"] += 1
                continue

            if slot.id in already_scored:
                diagnostics["already_scored"] += 1
                slot.status = SlotStatus.APPROVED
                slot.updated_at = now
                relocked.add(slot.id)
                continue

            points = calculate_duty_points(slot.date_assigned, values.get(duty_type.id), ctx.calendar)
            events.append(
                DutyScoreEvent(
                    personnel_id=person.id,
                    duty_slot_id=slot.id,
                    unit_id=duty_type.unit_id,
                    duty_type_name=duty_type.duty_name,
                    points=points,
                    date_earned=slot.date_assigned,
                    roster_month=period,
                    approved_by=approver,
                    created_at=now,
                )
            )
            person.current_duty_score = round(person.current_duty_score + points, 4)
            person.updated_at = now
            slot.status = SlotStatus.APPROVED
            slot.updated_at = now

        roster = ApprovedRoster(
            unit_id=unit_id,
            year=int(year),
            month=int(month),
            approved_by=approver,
            approved_at=now,
            scores_applied=len(events),
            total_points=round(sum(e.points for e in events), 4),
        )
        persisted = ctx.store.save_many(
            {
                DUTY_SCORE_EVENTS: data[DUTY_SCORE_EVENTS] + events,
                PERSONNEL: data[PERSONNEL],
                DUTY_SLOTS: data[DUTY_SLOTS],
                APPROVED_ROSTERS: data[APPROVED_ROSTERS] + [roster],
            }
        )

    if diagnostics:
        logger.warning("roster_slots_skipped", unit_id=unit_id, roster_month=period, **diagnostics)
    logger.info(
        "roster_approved",
        unit_id=unit_id,
        roster_month=period,
        scores_applied=roster.scores_applied,
        total_points=roster.total_points,
        persisted=persisted,
    )

    scored_ids = {e.duty_slot_id for e in events} | relocked
    scored_people = {e.personnel_id for e in events}
    keys = NaturalKeyResolver.from_store(ctx.store)
    ops = keys.score_event_operations(events)
    ops.extend(keys.slot_operations(s for s in data[DUTY_SLOTS] if s.id in scored_ids))
    ops.extend(keys.personnel_operations(p for p in data[PERSONNEL] if p.id in scored_people))
    ops.extend(keys.roster_operations([roster]))
    ctx.relay.submit_many(ops)

    return RosterApprovalResult(roster=roster, events=events, diagnostics=dict(diagnostics), persisted=persisted)


def unapprove_roster(ctx, *, unit_id: str, year: int, month: int) -> ApprovedRoster | None:
    _validate_period(year, month)
    with ctx.store.batch():
        data = ctx.store.snapshot(UNITS, DUTY_TYPES, DUTY_SLOTS, APPROVED_ROSTERS)
        roster = next(
            (
                r
                for r in data[APPROVED_ROSTERS]
                if r.unit_id == unit_id and r.year == int(year) and r.month == int(month)
            ),
            None,
        )
        if roster is None:
            return None

        scope = HierarchyResolver(data[UNITS]).descendant_unit_ids(unit_id)
        unit_types = {d.id for d in data[DUTY_TYPES] if d.unit_id in scope}
        now = utc_now_naive()
        reopened = []
        for slot in data[DUTY_SLOTS]:
            if (
                slot.duty_type_id in unit_types
                and slot.status == SlotStatus.APPROVED
                and slot.date_assigned.year == int(year)
                and slot.date_assigned.month == int(month)
            ):
                slot.status = SlotStatus.SCHEDULED
                slot.updated_at = now
                reopened.append(slot)

        ctx.store.save_many(
            {
                DUTY_SLOTS: data[DUTY_SLOTS],
                APPROVED_ROSTERS: [r for r in data[APPROVED_ROSTERS] if r.id != roster.id],
            }
        )

    logger.info(
        "roster_unapproved",
        unit_id=unit_id,
        roster_month=roster_month(year, month),
        slots_reopened=len(reopened),
    )
    keys = NaturalKeyResolver.from_store(ctx.store)
    ops = keys.slot_operations(reopened)
    ops.extend(keys.roster_operations([roster], operation="delete"))
    ctx.relay.submit_many(ops)
    return roster


def list_score_events(
    ctx,
    *,
    personnel_id: str | None = None,
    roster_month_filter: str | None = None,
) -> list[DutyScoreEvent]:
    events = ctx.store.all(DUTY_SCORE_EVENTS)
    if personnel_id:
        events = [e for e in events if e.personnel_id == personnel_id]
    if roster_month_filter:
        events = [e for e in events if e.roster_month == roster_month_filter.strip()]
    return sorted(events, key=lambda e: (e.date_earned, e.created_at))


def recompute_personnel_scores(ctx) -> dict[str, float]:
    """Rebuild each person's cached total from the score ledger.

    Returns the people whose cached value changed, mapped to the new total.
    """
    with ctx.store.batch():
        data = ctx.store.snapshot(PERSONNEL, DUTY_SCORE_EVENTS)
        totals: dict[str, float] = {}
        for event in data[DUTY_SCORE_EVENTS]:
            totals[event.personnel_id] = totals.get(event.personnel_id, 0.0) + float(event.points)

        now = utc_now_naive()
        changed: dict[str, float] = {}
        for person in data[PERSONNEL]:
            total = round(totals.get(person.id, 0.0), 4)
            if abs(person.current_duty_score - total) > 1e-9:
                person.current_duty_score = total
                person.updated_at = now
                changed[person.id] = total
        if changed:
            ctx.store.save(PERSONNEL, data[PERSONNEL])

    orphaned = set(totals) - {p.id for p in data[PERSONNEL]}
    if orphaned:
        logger.warning("score_events_orphaned", personnel=len(orphaned))
    logger.info("personnel_scores_recomputed", changed=len(changed), personnel=len(data[PERSONNEL]))
    if changed:
        keys = NaturalKeyResolver.from_store(ctx.store)
        ctx.relay.submit_many(keys.personnel_operations(p for p in data[PERSONNEL] if p.id in changed))
    return changed
