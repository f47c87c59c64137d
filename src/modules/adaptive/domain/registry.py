from __future__ import annotations

from typing import Iterable, Optional

from .models import Slot


class SlotRegistry:
    """Read-only id -> slot index for a single resolution."""

    def __init__(self, slots: Iterable[Slot]) -> None:
        self._slots: dict[str, Slot] = {}
        for slot in slots:
            # first declaration wins on duplicate ids
            self._slots.setdefault(slot.id, slot)

    def get(self, slot_id: Optional[str]) -> Optional[Slot]:
        if not slot_id:
            return None
        return self._slots.get(slot_id)

    def __contains__(self, slot_id: object) -> bool:
        return slot_id in self._slots

    def __len__(self) -> int:
        return len(self._slots)


def resolve_slot_by_id(slots: Iterable[Slot], slot_id: Optional[str]) -> Optional[Slot]:
    return SlotRegistry(slots).get(slot_id)
