import json
from datetime import date
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status

from . import directory, rosters, swaps
from .context import AppContext
from .entities import DutyScoreEvent, DutySlot, DutyType, DutyValue, Personnel, SwapRecommendation, Unit
from .schemas import (
    DutyTypeCreate,
    DutyValueUpdate,
    ImportResultOut,
    PersonnelCreate,
    PersonnelImportPayload,
    RecommendationCreate,
    RosterApprovalOut,
    RosterApprove,
    SlotCreate,
    SlotReassign,
    SwapCreate,
    SwapDecision,
    SyncFailureOut,
    UnitCreate,
    UnitImportPayload,
    UnitUpdate,
)
from .sync import pull_remote_collections

router = APIRouter(prefix="/api")


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def _run(fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    except RuntimeError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _require_actor(x_actor_id: Optional[str]) -> str:
    actor = (x_actor_id or "").strip()
    if not actor:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-Actor-Id header is required")
    return actor


# ----------------------------------------------------------------------
# Units and personnel
# ----------------------------------------------------------------------


@router.get("/units", response_model=list[Unit])
def get_units(ctx: AppContext = Depends(get_context)):
    return directory.list_units(ctx)


@router.post("/units", response_model=Unit, status_code=status.HTTP_201_CREATED)
def post_unit(payload: UnitCreate, ctx: AppContext = Depends(get_context)):
    return _run(
        directory.create_unit,
        ctx,
        unit_name=payload.unit_name,
        hierarchy_level=payload.hierarchy_level,
        parent_id=payload.parent_id,
        unit_code=payload.unit_code,
        description=payload.description,
    )


@router.patch("/units/{unit_id}", response_model=Unit)
def patch_unit(unit_id: str, payload: UnitUpdate, ctx: AppContext = Depends(get_context)):
    unit = _run(
        directory.update_unit,
        ctx,
        unit_id,
        unit_name=payload.unit_name,
        unit_code=payload.unit_code,
        hierarchy_level=payload.hierarchy_level,
        parent_id=payload.parent_id,
        description=payload.description,
        move="parent_id" in payload.model_fields_set,
    )
    if unit is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unit not found")
    return unit


@router.delete("/units/{unit_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_unit(unit_id: str, ctx: AppContext = Depends(get_context)):
    if not _run(directory.delete_unit, ctx, unit_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unit not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/units/import", response_model=ImportResultOut)
def post_units_import(payload: UnitImportPayload, ctx: AppContext = Depends(get_context)):
    return directory.import_units(ctx, payload.records).as_dict()


@router.get("/personnel", response_model=list[Personnel])
def get_personnel(
    unit_id: Optional[str] = Query(default=None),
    ctx: AppContext = Depends(get_context),
):
    return directory.list_personnel(ctx, unit_id=unit_id)


@router.post("/personnel", response_model=Personnel, status_code=status.HTTP_201_CREATED)
def post_personnel(payload: PersonnelCreate, ctx: AppContext = Depends(get_context)):
    person = _run(
        directory.create_personnel,
        ctx,
        service_id=payload.service_id,
        unit_id=payload.unit_id,
        first_name=payload.first_name,
        last_name=payload.last_name,
        rank=payload.rank,
    )
    if person is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unit not found")
    return person


@router.post("/personnel/import", response_model=ImportResultOut)
def post_personnel_import(payload: PersonnelImportPayload, ctx: AppContext = Depends(get_context)):
    return directory.import_personnel(ctx, payload.records, default_unit_id=payload.default_unit_id).as_dict()


@router.get("/personnel/{personnel_id}/score-events", response_model=list[DutyScoreEvent])
def get_personnel_score_events(personnel_id: str, ctx: AppContext = Depends(get_context)):
    if directory.get_personnel(ctx, personnel_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Personnel not found")
    return rosters.list_score_events(ctx, personnel_id=personnel_id)


# ----------------------------------------------------------------------
# Duty types and slots
# ----------------------------------------------------------------------


@router.get("/duty-types", response_model=list[DutyType])
def get_duty_types(
    unit_id: Optional[str] = Query(default=None),
    ctx: AppContext = Depends(get_context),
):
    return directory.list_duty_types(ctx, unit_id=unit_id)


@router.post("/duty-types", response_model=DutyType, status_code=status.HTTP_201_CREATED)
def post_duty_type(payload: DutyTypeCreate, ctx: AppContext = Depends(get_context)):
    duty_type = _run(
        directory.create_duty_type,
        ctx,
        unit_id=payload.unit_id,
        duty_name=payload.duty_name,
        description=payload.description,
        slots_needed=payload.slots_needed,
        is_active=payload.is_active,
    )
    if duty_type is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unit not found")
    return duty_type


@router.put("/duty-types/{duty_type_id}/value", response_model=DutyValue)
def put_duty_value(duty_type_id: str, payload: DutyValueUpdate, ctx: AppContext = Depends(get_context)):
    value = _run(
        directory.set_duty_value,
        ctx,
        duty_type_id,
        base_weight=payload.base_weight,
        weekend_multiplier=payload.weekend_multiplier,
        holiday_multiplier=payload.holiday_multiplier,
    )
    if value is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Duty type not found")
    return value


@router.delete("/duty-types/{duty_type_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_duty_type(duty_type_id: str, ctx: AppContext = Depends(get_context)):
    if not _run(directory.delete_duty_type, ctx, duty_type_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Duty type not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/slots")
def get_slots(
    unit_id: Optional[str] = Query(default=None),
    personnel_id: Optional[str] = Query(default=None),
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    ctx: AppContext = Depends(get_context),
):
    if start and end and end < start:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end must be on or after start")
    slots = directory.list_slots(ctx, unit_id=unit_id, personnel_id=personnel_id, start_day=start, end_day=end)
    return directory.enriched_slots(ctx, slots)


@router.post("/slots", response_model=DutySlot, status_code=status.HTTP_201_CREATED)
def post_slot(
    payload: SlotCreate,
    x_actor_id: Optional[str] = Header(default=None),
    ctx: AppContext = Depends(get_context),
):
    slot = _run(
        directory.assign_slot,
        ctx,
        duty_type_id=payload.duty_type_id,
        date_assigned=payload.date_assigned,
        personnel_id=payload.personnel_id,
        assigned_by=x_actor_id,
    )
    if slot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Duty type or personnel not found")
    return slot


@router.patch("/slots/{slot_id}", response_model=DutySlot)
def patch_slot(
    slot_id: str,
    payload: SlotReassign,
    x_actor_id: Optional[str] = Header(default=None),
    ctx: AppContext = Depends(get_context),
):
    slot = _run(directory.reassign_slot, ctx, slot_id, personnel_id=payload.personnel_id, assigned_by=x_actor_id)
    if slot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Slot not found")
    return slot


@router.delete("/slots/{slot_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_slot(slot_id: str, ctx: AppContext = Depends(get_context)):
    if not _run(directory.delete_slot, ctx, slot_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Slot not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ----------------------------------------------------------------------
# Swaps
# ----------------------------------------------------------------------


@router.get("/swaps")
def get_swaps(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    personnel_id: Optional[str] = Query(default=None),
    ctx: AppContext = Depends(get_context),
):
    pairs = swaps.list_swap_pairs(ctx, status_filter=status_filter, personnel_id=personnel_id)
    return [swaps.swap_pair_view(ctx, pair) for pair in pairs]


@router.post("/swaps", status_code=status.HTTP_201_CREATED)
def post_swap(
    payload: SwapCreate,
    x_actor_id: Optional[str] = Header(default=None),
    ctx: AppContext = Depends(get_context),
):
    actor = _require_actor(x_actor_id)
    if actor != payload.personnel_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Swaps can only be requested for yourself")
    pair = _run(
        swaps.create_swap_request,
        ctx,
        personnel_id=payload.personnel_id,
        giving_slot_id=payload.giving_slot_id,
        partner_id=payload.partner_id,
        partner_slot_id=payload.partner_slot_id,
        reason=payload.reason,
    )
    if pair is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Personnel or slot not found")
    return swaps.swap_pair_view(ctx, pair)


@router.get("/swaps/{swap_pair_id}")
def get_swap(swap_pair_id: str, ctx: AppContext = Depends(get_context)):
    pair = swaps.get_swap_pair(ctx, swap_pair_id)
    if pair is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Swap not found")
    return swaps.swap_pair_view(ctx, pair)


@router.delete("/swaps/{swap_pair_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_swap(swap_pair_id: str, ctx: AppContext = Depends(get_context)):
    if not swaps.delete_swap_pair(ctx, swap_pair_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Swap not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/swaps/requests/{request_id}/accept")
def post_swap_accept(
    request_id: str,
    x_actor_id: Optional[str] = Header(default=None),
    ctx: AppContext = Depends(get_context),
):
    actor = _require_actor(x_actor_id)
    pair = _run(swaps.accept_swap, ctx, request_id=request_id, accepted_by=actor)
    if pair is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Swap request not found")
    return swaps.swap_pair_view(ctx, pair)


@router.post("/swaps/requests/{request_id}/reject")
def post_swap_reject(
    request_id: str,
    payload: SwapDecision,
    x_actor_id: Optional[str] = Header(default=None),
    ctx: AppContext = Depends(get_context),
):
    actor = _require_actor(x_actor_id)
    pair = _run(swaps.reject_swap, ctx, request_id=request_id, rejected_by=actor, reason=payload.reason)
    if pair is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Swap request not found")
    return swaps.swap_pair_view(ctx, pair)


@router.post(
    "/swaps/requests/{request_id}/recommendations",
    response_model=SwapRecommendation,
    status_code=status.HTTP_201_CREATED,
)
def post_swap_recommendation(
    request_id: str,
    payload: RecommendationCreate,
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_scope_unit: Optional[str] = Header(default=None),
    ctx: AppContext = Depends(get_context),
):
    actor = _require_actor(x_actor_id)
    row = _run(
        swaps.add_swap_recommendation,
        ctx,
        request_id=request_id,
        recommender_id=actor,
        recommender_scope_unit_id=x_actor_scope_unit,
        recommendation=payload.recommendation.value,
        comment=payload.comment,
    )
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Swap request not found")
    return row


@router.post("/swaps/approvals/{approval_id}/approve")
def post_swap_step_approve(
    approval_id: str,
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_scope_unit: Optional[str] = Header(default=None),
    ctx: AppContext = Depends(get_context),
):
    actor = _require_actor(x_actor_id)
    pair = _run(
        swaps.approve_swap_step,
        ctx,
        approval_id=approval_id,
        approved_by=actor,
        actor_scope_unit_id=x_actor_scope_unit,
    )
    if pair is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Approval step not found")
    return swaps.swap_pair_view(ctx, pair)


@router.post("/swaps/approvals/{approval_id}/reject")
def post_swap_step_reject(
    approval_id: str,
    payload: SwapDecision,
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_scope_unit: Optional[str] = Header(default=None),
    ctx: AppContext = Depends(get_context),
):
    actor = _require_actor(x_actor_id)
    pair = _run(
        swaps.reject_swap_step,
        ctx,
        approval_id=approval_id,
        rejected_by=actor,
        reason=payload.reason,
        actor_scope_unit_id=x_actor_scope_unit,
    )
    if pair is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Approval step not found")
    return swaps.swap_pair_view(ctx, pair)


# ----------------------------------------------------------------------
# Rosters and scores
# ----------------------------------------------------------------------


def _roster_out(result: rosters.RosterApprovalResult) -> RosterApprovalOut:
    return RosterApprovalOut(
        roster=result.roster,
        scores_applied=result.scores_applied,
        total_points=result.roster.total_points,
        diagnostics=result.diagnostics,
        persisted=result.persisted,
    )


@router.post("/rosters/approve", response_model=RosterApprovalOut)
def post_roster_approve(
    payload: RosterApprove,
    x_actor_id: Optional[str] = Header(default=None),
    ctx: AppContext = Depends(get_context),
):
    actor = _require_actor(x_actor_id)
    result = _run(
        rosters.approve_roster,
        ctx,
        unit_id=payload.unit_id,
        year=payload.year,
        month=payload.month,
        approved_by=actor,
    )
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unit not found")
    return _roster_out(result)


@router.get("/rosters/{unit_id}/{year}/{month}")
def get_roster(unit_id: str, year: int, month: int, ctx: AppContext = Depends(get_context)):
    roster = rosters.get_roster_approval(ctx, unit_id=unit_id, year=year, month=month)
    if roster is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Roster is not approved")
    return roster


@router.delete("/rosters/{unit_id}/{year}/{month}", status_code=status.HTTP_204_NO_CONTENT)
def remove_roster_approval(unit_id: str, year: int, month: int, ctx: AppContext = Depends(get_context)):
    roster = _run(rosters.unapprove_roster, ctx, unit_id=unit_id, year=year, month=month)
    if roster is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Roster is not approved")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/scores/recompute")
def post_scores_recompute(ctx: AppContext = Depends(get_context)):
    changed = rosters.recompute_personnel_scores(ctx)
    return {"changed": len(changed), "personnel": changed}


# ----------------------------------------------------------------------
# Ops
# ----------------------------------------------------------------------


@router.get("/ops/sync")
def get_sync_stats(ctx: AppContext = Depends(get_context)):
    stats = ctx.relay.stats()
    stats["store_failed_writes"] = ctx.store.failed_writes
    stats["store_last_error"] = ctx.store.last_error
    return stats


@router.get("/ops/sync/failures", response_model=list[SyncFailureOut])
def get_sync_failures(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=1000),
    ctx: AppContext = Depends(get_context),
):
    rows = ctx.relay.list_failures(status=status_filter, limit=limit)
    return [
        SyncFailureOut(
            id=row.id,
            entity=row.entity,
            operation=row.operation,
            natural_key=json.loads(row.natural_key_json or "{}"),
            attempts=int(row.attempts or 0),
            last_error=row.last_error,
            status=row.status,
            created_at=row.created_at,
            replayed_at=row.replayed_at,
        )
        for row in rows
    ]


@router.post("/ops/sync/replay")
def post_sync_replay(
    limit: int = Query(default=100, ge=1, le=1000),
    ctx: AppContext = Depends(get_context),
):
    return {"requeued": ctx.relay.replay_failures(limit=limit)}


@router.post("/ops/sync/pull")
def post_sync_pull(ctx: AppContext = Depends(get_context)):
    if ctx.remote is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Remote sync is not configured")
    try:
        return pull_remote_collections(ctx.store, ctx.remote)
    except httpx.HTTPError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Remote pull failed: {exc}")


@router.post("/ops/store/poll")
def post_store_poll(ctx: AppContext = Depends(get_context)):
    return {"invalidated": ctx.store.poll_changes()}
