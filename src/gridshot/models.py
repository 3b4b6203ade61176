from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class Status(str, Enum):
    FAILING = "FAILING"
    FLAKY = "FLAKY"
    PASSING = "PASSING"


@dataclass(frozen=True, slots=True)
class WorkItem:
    board_test_id: str
    status: Status
    position: int

    def __post_init__(self) -> None:
        if self.position < 1:
            raise ValueError(f"work item position must be >= 1, got {self.position}")


@dataclass(frozen=True, slots=True)
class CaptureResult:
    image_path: Path
    captured_at_url: str
    captured_at: str


@dataclass(frozen=True, slots=True)
class UploadResult:
    public_url: str
    raw_metadata: str
