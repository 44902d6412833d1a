"""Two-sided duty swaps and their approval chains.

A swap is stored as two ``DutyChangeRequest`` rows sharing a ``swap_pair_id``,
one per participant, each with its own chain of ``SwapApproval`` steps. All
workflow changes go through the ``SwapPair`` aggregate so both rows are read
and written together.
"""

from dataclasses import dataclass, field

import structlog

from .entities import (
    DUTY_CHANGE_REQUESTS,
    DUTY_SLOTS,
    PERSONNEL,
    SWAP_APPROVALS,
    SWAP_RECOMMENDATIONS,
    UNITS,
    ApproverType,
    DutyChangeRequest,
    DutySlot,
    Recommendation,
    RequestStatus,
    SlotStatus,
    SwapApproval,
    SwapRecommendation,
    new_id,
    utc_now_naive,
)
from .hierarchy import HierarchyResolver
from .sync import NaturalKeyResolver

logger = structlog.get_logger("dutysync.swaps")

# Chain steps from the participant's own unit upwards; step N is scoped to the
# N-th unit of the participant's ancestor chain.
APPROVAL_SEQUENCE = (
    ApproverType.WORK_SECTION_MANAGER,
    ApproverType.SECTION_MANAGER,
    ApproverType.COMPANY_MANAGER,
)
_APPROVER_RANK = {approver: rank for rank, approver in enumerate(APPROVAL_SEQUENCE)}


@dataclass
class SwapSide:
    request: DutyChangeRequest
    approvals: list[SwapApproval] = field(default_factory=list)
    recommendations: list[SwapRecommendation] = field(default_factory=list)

    @property
    def steps_approved(self) -> bool:
        return all(a.status == RequestStatus.APPROVED for a in self.approvals)

    def approval(self, approval_id: str) -> SwapApproval | None:
        for approval in self.approvals:
            if approval.id == approval_id:
                return approval
        return None


@dataclass
class SwapPair:
    swap_pair_id: str
    sides: tuple[SwapSide, SwapSide]

    @property
    def initiator(self) -> SwapSide:
        return self.sides[0]

    @property
    def partner(self) -> SwapSide:
        return self.sides[1]

    @property
    def status(self) -> RequestStatus:
        statuses = {side.request.status for side in self.sides}
        if RequestStatus.REJECTED in statuses:
            return RequestStatus.REJECTED
        if statuses == {RequestStatus.APPROVED}:
            return RequestStatus.APPROVED
        return RequestStatus.PENDING

    @property
    def requests(self) -> list[DutyChangeRequest]:
        return [side.request for side in self.sides]

    @property
    def ready_to_execute(self) -> bool:
        return all(side.request.partner_accepted and side.steps_approved for side in self.sides)

    def side_for_request(self, request_id: str) -> SwapSide | None:
        for side in self.sides:
            if side.request.id == request_id:
                return side
        return None

    def side_for_personnel(self, personnel_id: str) -> SwapSide | None:
        for side in self.sides:
            if side.request.personnel_id == personnel_id:
                return side
        return None

    def mark_rejected(self, reason: str | None, now) -> None:
        for side in self.sides:
            side.request.status = RequestStatus.REJECTED
            side.request.rejection_reason = reason
            side.request.updated_at = now


class _SwapWorkspace:
    """Mutable snapshot of the swap collections plus slots."""

    def __init__(self, store):
        data = store.snapshot(DUTY_CHANGE_REQUESTS, SWAP_APPROVALS, SWAP_RECOMMENDATIONS, DUTY_SLOTS)
        self.requests: list[DutyChangeRequest] = data[DUTY_CHANGE_REQUESTS]
        self.approvals: list[SwapApproval] = data[SWAP_APPROVALS]
        self.recommendations: list[SwapRecommendation] = data[SWAP_RECOMMENDATIONS]
        self.slots: list[DutySlot] = data[DUTY_SLOTS]

    @property
    def slots_by_id(self) -> dict[str, DutySlot]:
        return {slot.id: slot for slot in self.slots}

    def pair(self, swap_pair_id: str) -> SwapPair | None:
        rows = [r for r in self.requests if r.swap_pair_id == swap_pair_id]
        if len(rows) != 2:
            return None
        rows.sort(key=lambda r: (r.personnel_id != r.requester_id, r.created_at))
        sides = []
        for row in rows:
            approvals = sorted(
                (a for a in self.approvals if a.duty_change_request_id == row.id),
                key=lambda a: a.approval_order,
            )
            recommendations = [rec for rec in self.recommendations if rec.duty_change_request_id == row.id]
            sides.append(SwapSide(request=row, approvals=approvals, recommendations=recommendations))
        return SwapPair(swap_pair_id=swap_pair_id, sides=(sides[0], sides[1]))

    def pair_for_request(self, request_id: str) -> SwapPair | None:
        for row in self.requests:
            if row.id == request_id:
                return self.pair(row.swap_pair_id)
        return None

    def pair_for_approval(self, approval_id: str) -> tuple[SwapPair, SwapSide, SwapApproval] | None:
        for approval in self.approvals:
            if approval.id != approval_id:
                continue
            pair = self.pair_for_request(approval.duty_change_request_id)
            if pair is None:
                return None
            side = pair.side_for_request(approval.duty_change_request_id)
            return pair, side, side.approval(approval_id)
        return None

    def pairs(self) -> list[SwapPair]:
        seen: list[str] = []
        for row in sorted(self.requests, key=lambda r: r.created_at):
            if row.swap_pair_id not in seen:
                seen.append(row.swap_pair_id)
        return [pair for pair in (self.pair(pid) for pid in seen) if pair is not None]

    def save(self, store) -> bool:
        return store.save_many(
            {
                DUTY_CHANGE_REQUESTS: self.requests,
                SWAP_APPROVALS: self.approvals,
                SWAP_RECOMMENDATIONS: self.recommendations,
                DUTY_SLOTS: self.slots,
            }
        )


def build_approval_chain(
    resolver: HierarchyResolver,
    request: DutyChangeRequest,
    lca_level: ApproverType,
) -> list[SwapApproval]:
    """Steps for one side, up to the level that decides the swap."""
    person = resolver.personnel[request.personnel_id]
    scopes = resolver.ancestor_chain(person.unit_id) or [person.unit_id]
    target = _APPROVER_RANK[lca_level]
    steps: list[SwapApproval] = []
    for order, approver_type in enumerate(APPROVAL_SEQUENCE):
        rank = _APPROVER_RANK[approver_type]
        if rank > target or order >= len(scopes):
            break
        steps.append(
            SwapApproval(
                duty_change_request_id=request.id,
                approval_order=order + 1,
                approver_type=approver_type,
                scope_unit_id=scopes[order],
                is_approver=rank == target,
            )
        )
    return steps


def _mirror(ctx, pair: SwapPair, slots_by_id: dict, slots=(), operation: str = "upsert") -> None:
    resolver = NaturalKeyResolver.from_store(ctx.store)
    ops = resolver.request_operations(pair.requests, slots_by_id, operation=operation)
    ops.extend(resolver.slot_operations(slots))
    ctx.relay.submit_many(ops)
    if resolver.unresolved:
        logger.warning("swap_sync_unresolved", swap_pair_id=pair.swap_pair_id, count=resolver.unresolved)


def create_swap_request(
    ctx,
    *,
    personnel_id: str,
    giving_slot_id: str,
    partner_id: str,
    partner_slot_id: str,
    reason: str | None = None,
) -> SwapPair | None:
    if personnel_id == partner_id:
        raise ValueError("Swap participants must be different personnel")
    if giving_slot_id == partner_slot_id:
        raise ValueError("Swap slots must be different")

    with ctx.store.batch():
        resolver = HierarchyResolver.from_store(ctx.store)
        if personnel_id not in resolver.personnel or partner_id not in resolver.personnel:
            return None

        ws = _SwapWorkspace(ctx.store)
        slots = ws.slots_by_id
        giving = slots.get(giving_slot_id)
        receiving = slots.get(partner_slot_id)
        if giving is None or receiving is None:
            return None
        if giving.personnel_id != personnel_id:
            raise ValueError("Giving slot is not assigned to the requester")
        if receiving.personnel_id != partner_id:
            raise ValueError("Partner slot is not assigned to the swap partner")
        if SlotStatus.APPROVED in (giving.status, receiving.status):
            raise ValueError("Slot belongs to an approved roster")

        busy = set()
        for row in ws.requests:
            if row.status == RequestStatus.PENDING:
                busy.update((row.giving_slot_id, row.receiving_slot_id))
        if giving.id in busy or receiving.id in busy:
            raise ValueError("Slot is already part of a pending swap")

        _, lca_level = resolver.lowest_common_ancestor(personnel_id, partner_id)

        now = utc_now_naive()
        pair_id = new_id()
        note = (reason or "").strip()[:500]
        requester_row = DutyChangeRequest(
            swap_pair_id=pair_id,
            personnel_id=personnel_id,
            giving_slot_id=giving.id,
            receiving_slot_id=receiving.id,
            swap_partner_id=partner_id,
            requester_id=personnel_id,
            reason=note,
            required_approver_level=lca_level,
            partner_accepted=True,
            partner_accepted_at=now,
            partner_accepted_by=personnel_id,
            created_at=now,
            updated_at=now,
        )
        partner_row = DutyChangeRequest(
            swap_pair_id=pair_id,
            personnel_id=partner_id,
            giving_slot_id=receiving.id,
            receiving_slot_id=giving.id,
            swap_partner_id=personnel_id,
            requester_id=personnel_id,
            reason=note,
            required_approver_level=lca_level,
            partner_accepted=False,
            created_at=now,
            updated_at=now,
        )
        ws.requests.extend([requester_row, partner_row])
        for row in (requester_row, partner_row):
            ws.approvals.extend(build_approval_chain(resolver, row, lca_level))

        ws.save(ctx.store)
        pair = ws.pair(pair_id)

    logger.info(
        "swap_created",
        swap_pair_id=pair_id,
        approver_level=lca_level.value,
        steps=[len(side.approvals) for side in pair.sides],
    )
    _mirror(ctx, pair, ws.slots_by_id)
    return pair


def accept_swap(ctx, *, request_id: str, accepted_by: str) -> SwapPair | None:
    with ctx.store.batch():
        ws = _SwapWorkspace(ctx.store)
        pair = ws.pair_for_request(request_id)
        if pair is None:
            return None
        if pair.status != RequestStatus.PENDING:
            raise ValueError("Swap request is no longer pending")
        if accepted_by != pair.partner.request.personnel_id:
            raise PermissionError("Only the swap partner can accept this request")
        if pair.partner.request.partner_accepted:
            raise ValueError("Swap request already accepted")

        now = utc_now_naive()
        for row in pair.requests:
            row.partner_accepted = True
            row.partner_accepted_at = row.partner_accepted_at or now
            row.partner_accepted_by = row.partner_accepted_by or accepted_by
            row.updated_at = now
        ws.save(ctx.store)

    logger.info("swap_accepted", swap_pair_id=pair.swap_pair_id, accepted_by=accepted_by)
    _mirror(ctx, pair, ws.slots_by_id)
    return pair


def _execute_swap(pair: SwapPair, slots_by_id: dict[str, DutySlot], now) -> list[DutySlot]:
    first, second = pair.sides
    slot_a = slots_by_id.get(first.request.giving_slot_id)
    slot_b = slots_by_id.get(second.request.giving_slot_id)
    if slot_a is None or slot_b is None:
        raise RuntimeError("Swap cannot be executed: a duty slot no longer exists")
    if SlotStatus.APPROVED in (slot_a.status, slot_b.status):
        raise RuntimeError("Swap cannot be executed: a duty slot belongs to an approved roster")

    person_a = first.request.personnel_id
    person_b = second.request.personnel_id
    for slot, previous, incoming in ((slot_a, person_a, person_b), (slot_b, person_b, person_a)):
        slot.personnel_id = incoming
        slot.swapped_from_personnel_id = previous
        slot.swap_pair_id = pair.swap_pair_id
        slot.swapped_at = now
        slot.status = SlotStatus.SWAPPED
        slot.updated_at = now
    for row in pair.requests:
        row.status = RequestStatus.APPROVED
        row.updated_at = now
    return [slot_a, slot_b]


def approve_swap_step(
    ctx,
    *,
    approval_id: str,
    approved_by: str,
    actor_scope_unit_id: str | None = None,
) -> SwapPair | None:
    executed: list[DutySlot] = []
    with ctx.store.batch():
        ws = _SwapWorkspace(ctx.store)
        found = ws.pair_for_approval(approval_id)
        if found is None:
            return None
        pair, side, step = found

        if pair.status != RequestStatus.PENDING:
            raise ValueError("Swap request is no longer pending")
        if not side.request.partner_accepted:
            raise ValueError("Swap partner has not accepted yet")
        if step.status != RequestStatus.PENDING:
            raise ValueError("Approval step already decided")
        for earlier in side.approvals:
            if earlier.approval_order < step.approval_order and earlier.status != RequestStatus.APPROVED:
                raise ValueError("Earlier approval steps must be approved first")
        if actor_scope_unit_id:
            resolver = HierarchyResolver.from_store(ctx.store)
            if not resolver.covers(actor_scope_unit_id, step.scope_unit_id):
                raise PermissionError("Approver scope does not cover this step")

        now = utc_now_naive()
        step.status = RequestStatus.APPROVED
        step.approved_by = (approved_by or "").strip()[:160] or None
        step.approved_at = now

        if pair.ready_to_execute:
            executed = _execute_swap(pair, ws.slots_by_id, now)
        ws.save(ctx.store)

    logger.info(
        "swap_step_approved",
        swap_pair_id=pair.swap_pair_id,
        approval_order=step.approval_order,
        approver_type=step.approver_type.value,
        executed=bool(executed),
    )
    if executed:
        logger.info("swap_executed", swap_pair_id=pair.swap_pair_id, slots=[s.id for s in executed])
    _mirror(ctx, pair, ws.slots_by_id, slots=executed)
    return pair


def reject_swap(ctx, *, request_id: str, rejected_by: str, reason: str | None = None) -> SwapPair | None:
    with ctx.store.batch():
        ws = _SwapWorkspace(ctx.store)
        pair = ws.pair_for_request(request_id)
        if pair is None:
            return None
        if pair.status != RequestStatus.PENDING:
            raise ValueError("Swap request is no longer pending")

        pair.mark_rejected((reason or "").strip()[:500] or None, utc_now_naive())
        ws.save(ctx.store)

    logger.info("swap_rejected", swap_pair_id=pair.swap_pair_id, rejected_by=rejected_by)
    _mirror(ctx, pair, ws.slots_by_id)
    return pair


def reject_swap_step(
    ctx,
    *,
    approval_id: str,
    rejected_by: str,
    reason: str | None = None,
    actor_scope_unit_id: str | None = None,
) -> SwapPair | None:
    with ctx.store.batch():
        ws = _SwapWorkspace(ctx.store)
        found = ws.pair_for_approval(approval_id)
        if found is None:
            return None
        pair, _, step = found

        if pair.status != RequestStatus.PENDING:
            raise ValueError("Swap request is no longer pending")
        if step.status != RequestStatus.PENDING:
            raise ValueError("Approval step already decided")
        if actor_scope_unit_id:
            resolver = HierarchyResolver.from_store(ctx.store)
            if not resolver.covers(actor_scope_unit_id, step.scope_unit_id):
                raise PermissionError("Approver scope does not cover this step")

        now = utc_now_naive()
        note = (reason or "").strip()[:500] or None
        step.status = RequestStatus.REJECTED
        step.approved_by = (rejected_by or "").strip()[:160] or None
        step.approved_at = now
        step.rejection_reason = note
        pair.mark_rejected(note, now)
        ws.save(ctx.store)

    logger.info(
        "swap_step_rejected",
        swap_pair_id=pair.swap_pair_id,
        approval_order=step.approval_order,
        rejected_by=rejected_by,
    )
    _mirror(ctx, pair, ws.slots_by_id)
    return pair


def delete_swap_pair(ctx, swap_pair_id: str) -> bool:
    with ctx.store.batch():
        ws = _SwapWorkspace(ctx.store)
        pair = ws.pair(swap_pair_id)
        if pair is None:
            return False
        request_ids = {row.id for row in pair.requests}
        ws.requests = [r for r in ws.requests if r.id not in request_ids]
        ws.approvals = [a for a in ws.approvals if a.duty_change_request_id not in request_ids]
        ws.recommendations = [
            rec for rec in ws.recommendations if rec.duty_change_request_id not in request_ids
        ]
        ws.save(ctx.store)

    logger.info("swap_deleted", swap_pair_id=swap_pair_id)
    _mirror(ctx, pair, ws.slots_by_id, operation="delete")
    return True


def add_swap_recommendation(
    ctx,
    *,
    request_id: str,
    recommender_id: str,
    recommender_scope_unit_id: str | None,
    recommendation: str,
    comment: str | None = None,
) -> SwapRecommendation | None:
    try:
        verdict = Recommendation((recommendation or "").strip().lower())
    except ValueError:
        raise ValueError("Recommendation must be 'recommend' or 'not_recommend'") from None
    if not recommender_scope_unit_id:
        raise ValueError("Recommender scope unit is required")

    with ctx.store.batch():
        ws = _SwapWorkspace(ctx.store)
        pair = ws.pair_for_request(request_id)
        if pair is None:
            return None
        if pair.status != RequestStatus.PENDING:
            raise ValueError("Swap request is no longer pending")

        resolver = HierarchyResolver.from_store(ctx.store)
        for row in pair.requests:
            person = resolver.personnel.get(row.personnel_id)
            if person is not None and resolver.covers(recommender_scope_unit_id, person.unit_id):
                raise PermissionError("Managers in the approval chain cannot add recommendations")

        side = pair.side_for_request(request_id)
        if any(rec.recommender_id == recommender_id for rec in side.recommendations):
            raise ValueError("Recommendation already recorded for this request")

        row = SwapRecommendation(
            duty_change_request_id=request_id,
            recommender_id=recommender_id,
            recommendation=verdict,
            comment=(comment or "").strip()[:500] or None,
        )
        ws.recommendations.append(row)
        ws.save(ctx.store)

    logger.info(
        "swap_recommendation_added",
        swap_pair_id=pair.swap_pair_id,
        recommendation=verdict.value,
    )
    return row


def get_swap_pair(ctx, swap_pair_id: str) -> SwapPair | None:
    return _SwapWorkspace(ctx.store).pair(swap_pair_id)


def list_swap_pairs(
    ctx,
    *,
    status_filter: str | None = None,
    personnel_id: str | None = None,
) -> list[SwapPair]:
    pairs = _SwapWorkspace(ctx.store).pairs()
    if status_filter:
        wanted = status_filter.strip().lower()
        pairs = [p for p in pairs if p.status.value == wanted]
    if personnel_id:
        pairs = [p for p in pairs if p.side_for_personnel(personnel_id) is not None]
    return pairs


def swap_pair_view(ctx, pair: SwapPair) -> dict:
    data = ctx.store.snapshot(DUTY_SLOTS, PERSONNEL, UNITS)
    slots = {slot.id: slot for slot in data[DUTY_SLOTS]}
    people = {p.id: p for p in data[PERSONNEL]}

    def side_view(side: SwapSide) -> dict:
        giving = slots.get(side.request.giving_slot_id)
        person = people.get(side.request.personnel_id)
        return {
            "request": side.request.model_dump(mode="json"),
            "personnel_name": person.display_name if person else None,
            "giving_slot": giving.model_dump(mode="json") if giving else None,
            "approvals": [a.model_dump(mode="json") for a in side.approvals],
            "recommendations": [r.model_dump(mode="json") for r in side.recommendations],
        }

    return {
        "swap_pair_id": pair.swap_pair_id,
        "status": pair.status.value,
        "required_approver_level": pair.initiator.request.required_approver_level.value,
        "initiator": side_view(pair.initiator),
        "partner": side_view(pair.partner),
    }
