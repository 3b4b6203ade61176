from __future__ import annotations

from collections.abc import Callable, Mapping
import logging
from pathlib import Path
from typing import Protocol, TypeVar

from .app_logging import log_with_fields
from .config import RenderConfig
from .models import CaptureResult, UploadResult, WorkItem
from .remote import NetworkError, ResponseError
from .report import format_fragment, item_url
from .stage import Stage
from .utils import sanitize_identifier, utc_now_iso

T = TypeVar("T")


class WorkerFailure(RuntimeError):
    def __init__(self, position: int, step: str, cause: Exception) -> None:
        super().__init__(f"work item #{position} failed during {step}: {cause}")
        self.position = position
        self.step = step


class Renderer(Protocol):
    def render(
        self,
        target_url: str,
        width: int,
        height: int,
        *,
        log_fields: Mapping[str, object] | None = None,
    ) -> bytes: ...


class Uploader(Protocol):
    def upload(
        self,
        image_path: Path,
        title: str,
        *,
        log_fields: Mapping[str, object] | None = None,
    ) -> UploadResult: ...


def image_path_for(work_dir: Path, item: WorkItem) -> Path:
    return work_dir / f"{item.position:04d}-{sanitize_identifier(item.board_test_id)}.png"


class CaptureUploadWorker:
    """Screenshot one work item, upload it, and fill the item's stage slot."""

    def __init__(
        self,
        item: WorkItem,
        *,
        stage: Stage,
        renderer: Renderer,
        uploader: Uploader,
        render_config: RenderConfig,
        testgrid_url: str,
        image_path: Path,
        logger: logging.Logger,
    ) -> None:
        self.item = item
        self.stage = stage
        self.renderer = renderer
        self.uploader = uploader
        self.render_config = render_config
        self.testgrid_url = testgrid_url
        self.image_path = image_path
        self.logger = logger

    def process(self) -> None:
        link = item_url(self.testgrid_url, self.item.board_test_id, self.render_config.block_width)
        self._log(logging.INFO, "capture_started", url=link)

        capture = self._step("render", lambda: self.capture(link))
        self._log(logging.INFO, "captured", file=capture.image_path.name)

        upload = self._step(
            "upload",
            lambda: self.uploader.upload(
                capture.image_path,
                self.item.board_test_id,
                log_fields=self.log_fields,
            ),
        )
        self._log(logging.INFO, "uploaded", image=upload.public_url)
        self._log(logging.DEBUG, "upload_metadata", metadata=upload.raw_metadata)

        fragment = format_fragment(
            self.item,
            captured_at=capture.captured_at,
            link=capture.captured_at_url,
            upload=upload,
        )
        self.stage.put(self.item.position, fragment)
        self._log(logging.INFO, "staged")

    def capture(self, link: str) -> CaptureResult:
        image = self.renderer.render(
            link,
            self.render_config.width,
            self.render_config.height,
            log_fields=self.log_fields,
        )
        captured_at = utc_now_iso()
        self.image_path.write_bytes(image)
        return CaptureResult(image_path=self.image_path, captured_at_url=link, captured_at=captured_at)

    @property
    def log_fields(self) -> dict[str, object]:
        return {"position": self.item.position, "item": self.item.board_test_id}

    def _step(self, step: str, action: Callable[[], T]) -> T:
        try:
            return action()
        except (NetworkError, ResponseError, OSError) as exc:
            self._log(logging.ERROR, "step_failed", step=step, error=str(exc))
            raise WorkerFailure(self.item.position, step, exc) from exc

    def _log(self, level: int, message: str, **fields: object) -> None:
        log_with_fields(
            self.logger,
            level,
            message,
            **self.log_fields,
            **fields,
        )
