#provisioning_engine\jobs\slots.py

"""Slot manager bounding how many jobs a worker runs at once."""

from threading import Lock
from typing import List, Optional
from uuid import UUID


class Slot:
    """A single job slot."""

    def __init__(self, slot_id: int):
        self.slot_id = slot_id
        self.job_id: Optional[UUID] = None

    def is_free(self) -> bool:
        return self.job_id is None

    def bind(self, job_id: UUID) -> None:
        if not self.is_free():
            raise ValueError(f"Slot {self.slot_id} already occupied")
        self.job_id = job_id

    def release(self) -> None:
        self.job_id = None

    def __repr__(self) -> str:
        status = "free" if self.is_free() else f"occupied({self.job_id})"
        return f"<Slot(id={self.slot_id}, {status})>"


class SlotManager:
    """Thread-safe pool of slots; one per concurrently running job."""

    def __init__(self, max_slots: int):
        if max_slots < 1:
            raise ValueError("max_slots must be at least 1")

        self._slots = [Slot(i) for i in range(max_slots)]
        self._lock = Lock()

    def acquire(self, job_id: UUID) -> Optional[Slot]:
        """Bind ``job_id`` to a free slot, or return None when all are busy."""
        with self._lock:
            for slot in self._slots:
                if slot.is_free():
                    slot.bind(job_id)
                    return slot
        return None

    def has_free_slot(self) -> bool:
        with self._lock:
            return any(s.is_free() for s in self._slots)

    def release(self, job_id: UUID) -> None:
        with self._lock:
            for slot in self._slots:
                if slot.job_id == job_id:
                    slot.release()

    def active_slots(self) -> List[Slot]:
        return [s for s in self._slots if not s.is_free()]

    def total_slots(self) -> int:
        return len(self._slots)

    def free_slots(self) -> int:
        return sum(1 for s in self._slots if s.is_free())

    def __repr__(self) -> str:
        return (
            f"<SlotManager(total={self.total_slots()}, "
            f"free={self.free_slots()}, "
            f"active={len(self.active_slots())})>"
        )
