from __future__ import annotations

from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
import logging
from pathlib import Path
import tempfile

from .app_logging import log_with_fields
from .config import RenderConfig
from .discover import Discoverer
from .models import Status, WorkItem
from .report import format_header
from .stage import HEADER_SLOT, Stage
from .worker import CaptureUploadWorker, Renderer, Uploader, image_path_for


class RunState(str, Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    DISPATCHING = "dispatching"
    AWAITING_COMPLETION = "awaiting_completion"
    ASSEMBLING = "assembling"
    DONE = "done"


@dataclass(slots=True)
class RunResult:
    document: str
    discovered: int
    succeeded: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


class Dispatcher:
    def __init__(
        self,
        *,
        discoverer: Discoverer,
        renderer: Renderer,
        uploader: Uploader,
        boards: Sequence[str],
        statuses: Sequence[Status],
        render_config: RenderConfig,
        testgrid_url: str,
        logger: logging.Logger,
    ) -> None:
        self.discoverer = discoverer
        self.renderer = renderer
        self.uploader = uploader
        self.boards = tuple(boards)
        self.statuses = tuple(statuses)
        self.render_config = render_config
        self.testgrid_url = testgrid_url
        self.logger = logger
        self.state = RunState.IDLE

    def run(self) -> RunResult:
        # The temp dir is removed on every exit path, including discovery
        # failures and KeyboardInterrupt/SystemExit.
        with tempfile.TemporaryDirectory(prefix="gridshot-") as temp_dir:
            self._transition(RunState.DISCOVERING)
            items = self.discoverer.discover(self.boards, self.statuses)

            self._transition(RunState.DISPATCHING, items=len(items))
            stage = Stage(len(items))
            stage.put(HEADER_SLOT, format_header(self.testgrid_url, self.boards, self.statuses))
            failed = self._dispatch(items, stage, Path(temp_dir))

            self._transition(RunState.ASSEMBLING)
            document = stage.assemble()
            result = RunResult(
                document=document,
                discovered=len(items),
                succeeded=[index for index in stage.populated() if index != HEADER_SLOT],
                failed=failed,
            )
        self._transition(RunState.DONE, succeeded=len(result.succeeded), failed=len(result.failed))
        return result

    def _dispatch(self, items: list[WorkItem], stage: Stage, work_dir: Path) -> list[int]:
        if not items:
            self._transition(RunState.AWAITING_COMPLETION)
            return []

        futures: dict[Future[None], WorkItem] = {}
        # One thread per item: no admission limit beyond the work list itself.
        with ThreadPoolExecutor(max_workers=len(items), thread_name_prefix="gridshot-worker") as executor:
            for item in items:
                worker = self._build_worker(item, stage, work_dir)
                futures[executor.submit(worker.process)] = item
            self._transition(RunState.AWAITING_COMPLETION)
            wait(futures)

        failed: list[int] = []
        for future, item in sorted(futures.items(), key=lambda pair: pair[1].position):
            error = future.exception()
            if error is None:
                continue
            failed.append(item.position)
            log_with_fields(
                self.logger,
                logging.ERROR,
                "work_item_failed",
                position=item.position,
                item=item.board_test_id,
                error=str(error),
            )
        return failed

    def _build_worker(self, item: WorkItem, stage: Stage, work_dir: Path) -> CaptureUploadWorker:
        return CaptureUploadWorker(
            item,
            stage=stage,
            renderer=self.renderer,
            uploader=self.uploader,
            render_config=self.render_config,
            testgrid_url=self.testgrid_url,
            image_path=image_path_for(work_dir, item),
            logger=self.logger,
        )

    def _transition(self, state: RunState, **fields: object) -> None:
        self.state = state
        log_with_fields(self.logger, logging.DEBUG, "run_state", state=state.value, **fields)
