"""Unit tree queries: ancestor chains, descendants and approval LCA."""

from typing import Iterable

from .entities import (
    LEVEL_ORDER,
    PERSONNEL,
    UNITS,
    ApproverType,
    HierarchyLevel,
    Personnel,
    Unit,
)


def approver_level_for_unit(unit: Unit) -> ApproverType:
    if unit.hierarchy_level == HierarchyLevel.WORK_SECTION:
        return ApproverType.WORK_SECTION_MANAGER
    if unit.hierarchy_level == HierarchyLevel.SECTION:
        return ApproverType.SECTION_MANAGER
    return ApproverType.COMPANY_MANAGER


class HierarchyResolver:
    def __init__(self, units: Iterable[Unit], personnel: Iterable[Personnel] = ()):
        self.units: dict[str, Unit] = {u.id: u for u in units}
        self.personnel: dict[str, Personnel] = {p.id: p for p in personnel}
        self._children: dict[str, list[str]] = {}
        for unit in self.units.values():
            if unit.parent_id:
                self._children.setdefault(unit.parent_id, []).append(unit.id)

    @classmethod
    def from_store(cls, store) -> "HierarchyResolver":
        data = store.snapshot(UNITS, PERSONNEL)
        return cls(data[UNITS], data[PERSONNEL])

    def parent_of(self, unit_id: str | None) -> Unit | None:
        unit = self.units.get(unit_id or "")
        if unit is None or not unit.parent_id:
            return None
        return self.units.get(unit.parent_id)

    def children_of(self, unit_id: str) -> list[str]:
        return list(self._children.get(unit_id, []))

    def ancestor_chain(self, unit_id: str) -> list[str]:
        """The unit itself followed by each parent up to the root."""
        chain: list[str] = []
        seen: set[str] = set()
        current = self.units.get(unit_id)
        while current is not None and current.id not in seen:
            chain.append(current.id)
            seen.add(current.id)
            current = self.units.get(current.parent_id) if current.parent_id else None
        return chain

    def descendant_unit_ids(self, unit_id: str) -> set[str]:
        result = {unit_id}
        stack = [unit_id]
        while stack:
            for child_id in self._children.get(stack.pop(), []):
                if child_id not in result:
                    result.add(child_id)
                    stack.append(child_id)
        return result

    def covers(self, scope_unit_id: str | None, unit_id: str | None) -> bool:
        if not scope_unit_id or not unit_id:
            return False
        return scope_unit_id in self.ancestor_chain(unit_id)

    def lowest_common_ancestor(
        self, personnel_a_id: str, personnel_b_id: str
    ) -> tuple[str | None, ApproverType]:
        person_a = self.personnel.get(personnel_a_id)
        person_b = self.personnel.get(personnel_b_id)
        if person_a is None or person_b is None:
            raise ValueError("Personnel not found for swap participants")

        if person_a.unit_id == person_b.unit_id:
            return person_a.unit_id, ApproverType.WORK_SECTION_MANAGER

        unit_a = self.units.get(person_a.unit_id)
        unit_b = self.units.get(person_b.unit_id)
        if unit_a and unit_b and unit_a.parent_id and unit_a.parent_id == unit_b.parent_id:
            return unit_a.parent_id, ApproverType.SECTION_MANAGER

        chain_a = set(self.ancestor_chain(person_a.unit_id))
        for unit_id in self.ancestor_chain(person_b.unit_id):
            if unit_id in chain_a:
                return unit_id, approver_level_for_unit(self.units[unit_id])

        return None, ApproverType.COMPANY_MANAGER

    def validate_placement(self, unit: Unit) -> None:
        """Raise ValueError if ``unit`` would break the unit tree."""
        if not unit.parent_id:
            return
        if unit.parent_id == unit.id:
            raise ValueError("Unit cannot be its own parent")
        parent = self.units.get(unit.parent_id)
        if parent is None:
            raise ValueError("Parent unit not found")
        if LEVEL_ORDER[unit.hierarchy_level] <= LEVEL_ORDER[parent.hierarchy_level]:
            raise ValueError(
                f"A {unit.hierarchy_level.value} cannot be placed under a {parent.hierarchy_level.value}"
            )
        if unit.id in self.ancestor_chain(parent.id):
            raise ValueError("Unit move would create a cycle")
        for child_id in self._children.get(unit.id, []):
            child = self.units[child_id]
            if LEVEL_ORDER[child.hierarchy_level] <= LEVEL_ORDER[unit.hierarchy_level]:
                raise ValueError(
                    f"Existing child {child.unit_name} must sit below a {unit.hierarchy_level.value}"
                )
