"""Units, personnel, duty types and slots.

Maintenance operations for the reference data the swap and roster engines
work on, plus the import merges used by CSV uploads.
"""

from dataclasses import dataclass, field
from datetime import date

import structlog
from pydantic import BaseModel, Field, ValidationError

from .entities import (
    DUTY_CHANGE_REQUESTS,
    DUTY_SLOTS,
    DUTY_TYPES,
    DUTY_VALUES,
    PERSONNEL,
    UNITS,
    DutySlot,
    DutyType,
    DutyValue,
    HierarchyLevel,
    Personnel,
    RequestStatus,
    SlotStatus,
    Unit,
    utc_now_naive,
)
from .hierarchy import HierarchyResolver
from .sync import NaturalKeyResolver

logger = structlog.get_logger("dutysync.directory")


def _clean(value: str | None, limit: int = 160) -> str | None:
    return (value or "").strip()[:limit] or None


def _level(value) -> HierarchyLevel:
    try:
        return HierarchyLevel((value.value if isinstance(value, HierarchyLevel) else str(value)).strip().lower())
    except ValueError:
        raise ValueError(f"Unknown hierarchy level: {value}") from None


def _mirror(ctx, *, units=(), people=(), slots=(), operation: str = "upsert") -> None:
    keys = NaturalKeyResolver.from_store(ctx.store)
    ops = keys.unit_operations(units, operation=operation)
    ops.extend(keys.personnel_operations(people, operation=operation))
    ops.extend(keys.slot_operations(slots, operation=operation))
    ctx.relay.submit_many(ops)


def _slots_in_pending_swaps(ctx) -> set[str]:
    busy: set[str] = set()
    for row in ctx.store.all(DUTY_CHANGE_REQUESTS):
        if row.status == RequestStatus.PENDING:
            busy.update((row.giving_slot_id, row.receiving_slot_id))
    return busy


# ----------------------------------------------------------------------
# Units
# ----------------------------------------------------------------------


def list_units(ctx) -> list[Unit]:
    return sorted(ctx.store.all(UNITS), key=lambda u: (u.hierarchy_level != HierarchyLevel.UNIT, u.unit_name))


def get_unit(ctx, unit_id: str) -> Unit | None:
    return ctx.store.get(UNITS, unit_id)


def create_unit(
    ctx,
    *,
    unit_name: str,
    hierarchy_level,
    parent_id: str | None = None,
    unit_code: str | None = None,
    description: str | None = None,
) -> Unit:
    name = _clean(unit_name)
    if not name:
        raise ValueError("Unit name is required")

    with ctx.store.batch():
        units = ctx.store.all(UNITS)
        code = _clean(unit_code, 40)
        if code and any((u.unit_code or "").lower() == code.lower() for u in units):
            raise ValueError(f"Unit code already exists: {code}")
        unit = Unit(
            unit_name=name,
            unit_code=code,
            hierarchy_level=_level(hierarchy_level),
            parent_id=parent_id or None,
            description=_clean(description, 500),
        )
        HierarchyResolver(units).validate_placement(unit)
        units.append(unit)
        ctx.store.save(UNITS, units)

    logger.info("unit_created", unit_id=unit.id, level=unit.hierarchy_level.value)
    _mirror(ctx, units=[unit])
    return unit


def update_unit(
    ctx,
    unit_id: str,
    *,
    unit_name: str | None = None,
    unit_code: str | None = None,
    hierarchy_level=None,
    parent_id: str | None = None,
    description: str | None = None,
    move: bool = False,
) -> Unit | None:
    """Update a unit in place; ``move`` applies ``parent_id`` even when it is None."""
    with ctx.store.batch():
        units = ctx.store.all(UNITS)
        unit = next((u for u in units if u.id == unit_id), None)
        if unit is None:
            return None

        candidate = unit.model_copy()
        if unit_name is not None:
            candidate.unit_name = _clean(unit_name) or unit.unit_name
        if unit_code is not None:
            code = _clean(unit_code, 40)
            if code and any(u.id != unit_id and (u.unit_code or "").lower() == code.lower() for u in units):
                raise ValueError(f"Unit code already exists: {code}")
            candidate.unit_code = code
        if hierarchy_level is not None:
            candidate.hierarchy_level = _level(hierarchy_level)
        if move or parent_id is not None:
            candidate.parent_id = parent_id or None
        if description is not None:
            candidate.description = _clean(description, 500)

        HierarchyResolver(units).validate_placement(candidate)
        candidate.updated_at = utc_now_naive()
        units = [candidate if u.id == unit_id else u for u in units]
        ctx.store.save(UNITS, units)

    logger.info("unit_updated", unit_id=unit_id)
    _mirror(ctx, units=[candidate])
    return candidate


def delete_unit(ctx, unit_id: str) -> bool:
    with ctx.store.batch():
        units = ctx.store.all(UNITS)
        unit = next((u for u in units if u.id == unit_id), None)
        if unit is None:
            return False
        if any(u.parent_id == unit_id for u in units):
            raise ValueError("Cannot delete a unit that still has child units")
        ctx.store.save(UNITS, [u for u in units if u.id != unit_id])

    logger.info("unit_deleted", unit_id=unit_id)
    _mirror(ctx, units=[unit], operation="delete")
    return True


# ----------------------------------------------------------------------
# Personnel
# ----------------------------------------------------------------------


def list_personnel(ctx, *, unit_id: str | None = None, include_descendants: bool = True) -> list[Personnel]:
    people = ctx.store.all(PERSONNEL)
    if unit_id:
        if include_descendants:
            scope = HierarchyResolver.from_store(ctx.store).descendant_unit_ids(unit_id)
        else:
            scope = {unit_id}
        people = [p for p in people if p.unit_id in scope]
    return sorted(people, key=lambda p: (p.last_name.lower(), p.first_name.lower()))


def get_personnel(ctx, personnel_id: str) -> Personnel | None:
    return ctx.store.get(PERSONNEL, personnel_id)


def create_personnel(
    ctx,
    *,
    service_id: str,
    unit_id: str,
    first_name: str,
    last_name: str,
    rank: str | None = None,
) -> Personnel | None:
    sid = _clean(service_id, 40)
    if not sid:
        raise ValueError("Service id is required")
    if not _clean(first_name) or not _clean(last_name):
        raise ValueError("First and last name are required")

    with ctx.store.batch():
        if ctx.store.get(UNITS, unit_id) is None:
            return None
        people = ctx.store.all(PERSONNEL)
        if any(p.service_id == sid for p in people):
            raise ValueError(f"Service id already exists: {sid}")
        person = Personnel(
            service_id=sid,
            unit_id=unit_id,
            first_name=_clean(first_name),
            last_name=_clean(last_name),
            rank=_clean(rank, 20) or "",
        )
        people.append(person)
        ctx.store.save(PERSONNEL, people)

    logger.info("personnel_created", personnel_id=person.id, unit_id=unit_id)
    _mirror(ctx, people=[person])
    return person


def update_personnel(
    ctx,
    personnel_id: str,
    *,
    unit_id: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
    rank: str | None = None,
) -> Personnel | None:
    with ctx.store.batch():
        people = ctx.store.all(PERSONNEL)
        person = next((p for p in people if p.id == personnel_id), None)
        if person is None:
            return None
        if unit_id is not None:
            if ctx.store.get(UNITS, unit_id) is None:
                raise ValueError("Unit not found")
            person.unit_id = unit_id
        if first_name is not None:
            person.first_name = _clean(first_name) or person.first_name
        if last_name is not None:
            person.last_name = _clean(last_name) or person.last_name
        if rank is not None:
            person.rank = _clean(rank, 20) or ""
        person.updated_at = utc_now_naive()
        ctx.store.save(PERSONNEL, people)

    _mirror(ctx, people=[person])
    return person


# ----------------------------------------------------------------------
# Duty types and values
# ----------------------------------------------------------------------


def list_duty_types(ctx, *, unit_id: str | None = None, active_only: bool = False) -> list[DutyType]:
    duty_types = ctx.store.all(DUTY_TYPES)
    if unit_id:
        duty_types = [d for d in duty_types if d.unit_id == unit_id]
    if active_only:
        duty_types = [d for d in duty_types if d.is_active]
    return sorted(duty_types, key=lambda d: d.duty_name.lower())


def create_duty_type(
    ctx,
    *,
    unit_id: str,
    duty_name: str,
    description: str | None = None,
    slots_needed: int = 1,
    is_active: bool = True,
) -> DutyType | None:
    name = _clean(duty_name)
    if not name:
        raise ValueError("Duty name is required")
    if int(slots_needed) < 1:
        raise ValueError("Slots needed must be at least 1")

    with ctx.store.batch():
        if ctx.store.get(UNITS, unit_id) is None:
            return None
        duty_types = ctx.store.all(DUTY_TYPES)
        if any(d.unit_id == unit_id and d.duty_name.lower() == name.lower() for d in duty_types):
            raise ValueError(f"Duty type already exists in this unit: {name}")
        duty_type = DutyType(
            unit_id=unit_id,
            duty_name=name,
            description=_clean(description, 500),
            slots_needed=int(slots_needed),
            is_active=bool(is_active),
        )
        duty_types.append(duty_type)
        ctx.store.save(DUTY_TYPES, duty_types)

    logger.info("duty_type_created", duty_type_id=duty_type.id, unit_id=unit_id)
    return duty_type


def set_duty_value(
    ctx,
    duty_type_id: str,
    *,
    base_weight: float = 1.0,
    weekend_multiplier: float = 1.5,
    holiday_multiplier: float = 2.0,
) -> DutyValue | None:
    if min(base_weight, weekend_multiplier, holiday_multiplier) < 0:
        raise ValueError("Duty weights cannot be negative")

    with ctx.store.batch():
        if ctx.store.get(DUTY_TYPES, duty_type_id) is None:
            return None
        values = [v for v in ctx.store.all(DUTY_VALUES) if v.duty_type_id != duty_type_id]
        value = DutyValue(
            duty_type_id=duty_type_id,
            base_weight=float(base_weight),
            weekend_multiplier=float(weekend_multiplier),
            holiday_multiplier=float(holiday_multiplier),
        )
        values.append(value)
        ctx.store.save(DUTY_VALUES, values)
    return value


def get_duty_value(ctx, duty_type_id: str) -> DutyValue | None:
    for value in ctx.store.all(DUTY_VALUES):
        if value.duty_type_id == duty_type_id:
            return value
    return None


def delete_duty_type(ctx, duty_type_id: str) -> bool:
    with ctx.store.batch():
        duty_types = ctx.store.all(DUTY_TYPES)
        if not any(d.id == duty_type_id for d in duty_types):
            return False
        if any(s.duty_type_id == duty_type_id for s in ctx.store.all(DUTY_SLOTS)):
            raise ValueError("Cannot delete a duty type that still has slots")
        ctx.store.save_many(
            {
                DUTY_TYPES: [d for d in duty_types if d.id != duty_type_id],
                DUTY_VALUES: [v for v in ctx.store.all(DUTY_VALUES) if v.duty_type_id != duty_type_id],
            }
        )
    logger.info("duty_type_deleted", duty_type_id=duty_type_id)
    return True


# ----------------------------------------------------------------------
# Slots
# ----------------------------------------------------------------------


def assign_slot(
    ctx,
    *,
    duty_type_id: str,
    date_assigned: date,
    personnel_id: str | None = None,
    assigned_by: str | None = None,
) -> DutySlot | None:
    with ctx.store.batch():
        duty_type = ctx.store.get(DUTY_TYPES, duty_type_id)
        if duty_type is None:
            return None
        if personnel_id and ctx.store.get(PERSONNEL, personnel_id) is None:
            return None
        if not duty_type.is_active:
            raise ValueError("Duty type is not active")

        slots = ctx.store.all(DUTY_SLOTS)
        same_day = [s for s in slots if s.duty_type_id == duty_type_id and s.date_assigned == date_assigned]
        if len(same_day) >= duty_type.slots_needed:
            raise ValueError("All slots for this duty and date are already filled")
        if personnel_id and any(s.personnel_id == personnel_id for s in same_day):
            raise ValueError("Personnel already assigned to this duty on that date")

        slot = DutySlot(
            duty_type_id=duty_type_id,
            personnel_id=personnel_id or None,
            date_assigned=date_assigned,
            assigned_by=_clean(assigned_by),
        )
        slots.append(slot)
        ctx.store.save(DUTY_SLOTS, slots)

    logger.info("slot_assigned", slot_id=slot.id, duty_type_id=duty_type_id, day=date_assigned.isoformat())
    _mirror(ctx, slots=[slot])
    return slot


def reassign_slot(ctx, slot_id: str, *, personnel_id: str | None, assigned_by: str | None = None) -> DutySlot | None:
    with ctx.store.batch():
        slots = ctx.store.all(DUTY_SLOTS)
        slot = next((s for s in slots if s.id == slot_id), None)
        if slot is None:
            return None
        if personnel_id and ctx.store.get(PERSONNEL, personnel_id) is None:
            raise ValueError("Personnel not found")
        if slot.status == SlotStatus.APPROVED:
            raise ValueError("Slot belongs to an approved roster")
        if slot_id in _slots_in_pending_swaps(ctx):
            raise ValueError("Slot is part of a pending swap")

        previous = slot.personnel_id
        slot.personnel_id = personnel_id or None
        slot.assigned_by = _clean(assigned_by) or slot.assigned_by
        slot.updated_at = utc_now_naive()
        ctx.store.save(DUTY_SLOTS, slots)

    # the remote still files the slot under its previous occupant
    old_view = slot.model_copy(update={"swapped_from_personnel_id": previous})
    _mirror(ctx, slots=[old_view])
    return slot


def delete_slot(ctx, slot_id: str) -> bool:
    with ctx.store.batch():
        slots = ctx.store.all(DUTY_SLOTS)
        slot = next((s for s in slots if s.id == slot_id), None)
        if slot is None:
            return False
        if slot.status == SlotStatus.APPROVED:
            raise ValueError("Slot belongs to an approved roster")
        if slot_id in _slots_in_pending_swaps(ctx):
            raise ValueError("Slot is part of a pending swap")
        ctx.store.save(DUTY_SLOTS, [s for s in slots if s.id != slot_id])

    _mirror(ctx, slots=[slot], operation="delete")
    return True


def list_slots(
    ctx,
    *,
    unit_id: str | None = None,
    personnel_id: str | None = None,
    start_day: date | None = None,
    end_day: date | None = None,
) -> list[DutySlot]:
    slots = ctx.store.all(DUTY_SLOTS)
    if unit_id:
        scope = HierarchyResolver.from_store(ctx.store).descendant_unit_ids(unit_id)
        type_ids = {d.id for d in ctx.store.all(DUTY_TYPES) if d.unit_id in scope}
        slots = [s for s in slots if s.duty_type_id in type_ids]
    if personnel_id:
        slots = [s for s in slots if s.personnel_id == personnel_id]
    if start_day:
        slots = [s for s in slots if s.date_assigned >= start_day]
    if end_day:
        slots = [s for s in slots if s.date_assigned <= end_day]
    return sorted(slots, key=lambda s: (s.date_assigned, s.duty_type_id))


def enriched_slots(ctx, slots: list[DutySlot]) -> list[dict]:
    """Slots joined with their duty type, person and unit for display."""
    data = ctx.store.snapshot(UNITS, PERSONNEL, DUTY_TYPES)
    units = {u.id: u for u in data[UNITS]}
    people = {p.id: p for p in data[PERSONNEL]}
    duty_types = {d.id: d for d in data[DUTY_TYPES]}

    rows = []
    for slot in slots:
        duty_type = duty_types.get(slot.duty_type_id)
        person = people.get(slot.personnel_id or "")
        unit = units.get(duty_type.unit_id) if duty_type else None
        row = slot.model_dump(mode="json")
        row["duty_type"] = (
            {"id": duty_type.id, "duty_name": duty_type.duty_name, "unit_id": duty_type.unit_id}
            if duty_type
            else None
        )
        row["personnel"] = (
            {
                "id": person.id,
                "service_id": person.service_id,
                "display_name": person.display_name,
            }
            if person
            else None
        )
        row["unit_name"] = unit.unit_name if unit else None
        rows.append(row)
    return rows


# ----------------------------------------------------------------------
# Imports
# ----------------------------------------------------------------------


class UnitImportRecord(BaseModel):
    id: str | None = None
    unit_name: str = Field(min_length=1, max_length=160)
    unit_code: str | None = Field(default=None, max_length=40)
    hierarchy_level: HierarchyLevel
    parent_id: str | None = None
    parent_code: str | None = None
    description: str | None = None


class PersonnelImportRecord(BaseModel):
    service_id: str = Field(min_length=1, max_length=40)
    first_name: str = Field(min_length=1, max_length=160)
    last_name: str = Field(min_length=1, max_length=160)
    rank: str = Field(default="", max_length=20)
    unit_id: str | None = None
    unit_code: str | None = None
    unit_name: str | None = None


@dataclass
class ImportReport:
    created: int = 0
    updated: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {"created": self.created, "updated": self.updated, "errors": list(self.errors)}


def _record_label(raw, *fields: str) -> str:
    if isinstance(raw, dict):
        for name in fields:
            if raw.get(name):
                return str(raw[name])
    return "record"


def import_units(ctx, records: list[dict]) -> ImportReport:
    """Merge unit records, matched by unit code or id, parents before children."""
    report = ImportReport()
    touched: list[Unit] = []
    with ctx.store.batch():
        units = ctx.store.all(UNITS)
        for raw in records:
            label = _record_label(raw, "unit_code", "unit_name")
            try:
                record = UnitImportRecord.model_validate(raw)
            except ValidationError as exc:
                report.errors.append(f"Invalid unit {label}: {exc.errors()[0]['msg']}")
                continue

            by_code = {(u.unit_code or "").lower(): u for u in units if u.unit_code}
            parent_id = record.parent_id
            if not parent_id and record.parent_code:
                parent = by_code.get(record.parent_code.strip().lower())
                if parent is None:
                    report.errors.append(f"Parent {record.parent_code} not found for {label}")
                    continue
                parent_id = parent.id

            existing = None
            if record.unit_code:
                existing = by_code.get(record.unit_code.strip().lower())
            if existing is None and record.id:
                existing = next((u for u in units if u.id == record.id), None)

            fields = {
                "unit_name": record.unit_name.strip(),
                "unit_code": (record.unit_code or "").strip() or None,
                "hierarchy_level": record.hierarchy_level,
                "parent_id": parent_id or None,
                "description": record.description,
            }
            if existing is not None:
                candidate = existing.model_copy(update={**fields, "updated_at": utc_now_naive()})
            else:
                candidate = Unit(**({"id": record.id} if record.id else {}), **fields)

            try:
                HierarchyResolver(units).validate_placement(candidate)
            except ValueError as exc:
                report.errors.append(f"Unit {label}: {exc}")
                continue

            if existing is not None:
                units = [candidate if u.id == existing.id else u for u in units]
                report.updated += 1
            else:
                units.append(candidate)
                report.created += 1
            touched.append(candidate)

        if touched:
            ctx.store.save(UNITS, units)

    logger.info("units_imported", created=report.created, updated=report.updated, errors=len(report.errors))
    _mirror(ctx, units=touched)
    return report


def import_personnel(ctx, records: list[dict], default_unit_id: str | None = None) -> ImportReport:
    """Merge personnel records by service id; unknown units are reported per record."""
    report = ImportReport()
    touched: list[Personnel] = []
    with ctx.store.batch():
        units = ctx.store.all(UNITS)
        unit_ids = {u.id for u in units}
        by_code = {(u.unit_code or "").lower(): u.id for u in units if u.unit_code}
        by_name = {u.unit_name.lower(): u.id for u in units}
        people = ctx.store.all(PERSONNEL)
        by_service_id = {p.service_id: p for p in people}

        for raw in records:
            label = _record_label(raw, "service_id")
            try:
                record = PersonnelImportRecord.model_validate(raw)
            except ValidationError as exc:
                report.errors.append(f"Invalid record {label}: {exc.errors()[0]['msg']}")
                continue

            unit_id = record.unit_id or None
            if not unit_id and record.unit_code:
                unit_id = by_code.get(record.unit_code.strip().lower())
            if not unit_id and record.unit_name:
                unit_id = by_name.get(record.unit_name.strip().lower())
            unit_id = unit_id or default_unit_id
            if not unit_id or unit_id not in unit_ids:
                report.errors.append(f"No unit found for {record.service_id}")
                continue

            now = utc_now_naive()
            service_id = record.service_id.strip()
            person = by_service_id.get(service_id)
            if person is not None:
                person.first_name = record.first_name.strip()
                person.last_name = record.last_name.strip()
                person.rank = record.rank.strip()
                person.unit_id = unit_id
                person.updated_at = now
                report.updated += 1
            else:
                person = Personnel(
                    service_id=service_id,
                    unit_id=unit_id,
                    first_name=record.first_name.strip(),
                    last_name=record.last_name.strip(),
                    rank=record.rank.strip(),
                )
                people.append(person)
                by_service_id[service_id] = person
                report.created += 1
            touched.append(person)

        if touched:
            ctx.store.save(PERSONNEL, people)

    logger.info("personnel_imported", created=report.created, updated=report.updated, errors=len(report.errors))
    _mirror(ctx, people=touched)
    return report
