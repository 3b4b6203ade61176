from __future__ import annotations

from .report import END_MARKER, START_MARKER

HEADER_SLOT = 0


class StageError(RuntimeError):
    pass


class Stage:
    """Fixed-size arena of write-once report fragments, addressed by position.

    Slot 0 holds the header; slots 1..size belong to work items. Each slot has
    a single writer, so concurrent workers never contend for the same slot.
    """

    def __init__(self, size: int) -> None:
        if size < 0:
            raise ValueError("stage size must be >= 0")
        self.size = size
        self._slots: list[str | None] = [None] * (size + 1)

    def put(self, index: int, fragment: str) -> None:
        if not 0 <= index <= self.size:
            raise StageError(f"slot {index} is outside 0..{self.size}")
        if self._slots[index] is not None:
            raise StageError(f"slot {index} is already populated")
        self._slots[index] = fragment

    def get(self, index: int) -> str | None:
        if not 0 <= index <= self.size:
            raise StageError(f"slot {index} is outside 0..{self.size}")
        return self._slots[index]

    def populated(self) -> list[int]:
        return [index for index, fragment in enumerate(self._slots) if fragment is not None]

    def missing(self) -> list[int]:
        return [index for index in range(1, self.size + 1) if self._slots[index] is None]

    def assemble(self) -> str:
        body = "".join(fragment for fragment in self._slots if fragment is not None)
        return f"{START_MARKER}\n{body}{END_MARKER}\n"
