from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any
from unittest import mock
import logging
import tempfile
import threading
import unittest

import httpx

from gridshot.config import RenderConfig
from gridshot.discover import Discoverer, DiscoveryError
from gridshot.dispatcher import Dispatcher, RunState
from gridshot.models import Status, UploadResult
from gridshot.remote import NetworkError
from gridshot.report import END_MARKER, START_MARKER, format_header

BOARD = "sig-release-1.20-blocking"
TESTGRID = "https://testgrid.k8s.io"


class FakeStatusService:
    def __init__(self, summaries: dict[str, dict[str, dict[str, Any]]], broken: bool = False) -> None:
        self.summaries = summaries
        self.broken = broken

    def summary(self, board: str) -> dict[str, dict[str, Any]]:
        if self.broken:
            raise NetworkError("GET", f"{TESTGRID}/{board}/summary", 4, httpx.ConnectError("down"))
        return self.summaries.get(board, {})


class GatedRenderer:
    """Renders instantly, except items listed in `gates` wait for their event."""

    def __init__(self, gates: dict[str, threading.Event] | None = None) -> None:
        self.gates = gates or {}

    def render(
        self,
        target_url: str,
        width: int,
        height: int,
        *,
        log_fields: Mapping[str, object] | None = None,
    ) -> bytes:
        for test_id, gate in self.gates.items():
            if f"#{test_id}&" in target_url:
                if not gate.wait(timeout=5):
                    raise AssertionError(f"gate for {test_id} never opened")
        return b"\x89PNG"


class RecordingUploader:
    def __init__(
        self,
        failing: set[str] | None = None,
        on_upload: dict[str, threading.Event] | None = None,
    ) -> None:
        self.failing = failing or set()
        self.on_upload = on_upload or {}
        self.completed: list[str] = []
        self.paths: list[Path] = []
        self._lock = threading.Lock()

    def upload(
        self,
        image_path: Path,
        title: str,
        *,
        log_fields: Mapping[str, object] | None = None,
    ) -> UploadResult:
        assert image_path.exists()
        test_id = title.split("#", 1)[1]
        if test_id in self.failing:
            raise NetworkError("POST", "https://upload.example", 4, httpx.ConnectError("down"))
        with self._lock:
            self.completed.append(test_id)
            self.paths.append(image_path)
        if test_id in self.on_upload:
            self.on_upload[test_id].set()
        return UploadResult(public_url=f"https://i.example/{test_id}.png", raw_metadata="{}")


def _logger() -> logging.Logger:
    logger = logging.getLogger("test_gridshot.dispatcher")
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


def _summary(*tests: str, status: str = "FAILING") -> dict[str, dict[str, Any]]:
    return {test: {"overall_status": status, "dashboard_name": BOARD} for test in tests}


def _dispatcher(
    status_service: FakeStatusService,
    renderer: GatedRenderer,
    uploader: RecordingUploader,
    *,
    statuses: tuple[Status, ...] = (Status.FAILING,),
) -> Dispatcher:
    logger = _logger()
    return Dispatcher(
        discoverer=Discoverer(status_service, logger),
        renderer=renderer,
        uploader=uploader,
        boards=[BOARD],
        statuses=statuses,
        render_config=RenderConfig(),
        testgrid_url=TESTGRID,
        logger=logger,
    )


class DispatcherTest(unittest.TestCase):
    def test_two_failing_items_keep_discovery_order(self) -> None:
        # The first item cannot finish rendering until the second has uploaded.
        second_done = threading.Event()
        uploader = RecordingUploader(on_upload={"second": second_done})
        dispatcher = _dispatcher(
            FakeStatusService({BOARD: _summary("first", "second")}),
            GatedRenderer({"first": second_done}),
            uploader,
        )
        result = dispatcher.run()

        self.assertEqual(uploader.completed, ["second", "first"])
        self.assertEqual(result.discovered, 2)
        self.assertEqual(result.succeeded, [1, 2])
        self.assertEqual(result.failed, [])
        self.assertEqual(dispatcher.state, RunState.DONE)

        document = result.document
        header = format_header(TESTGRID, [BOARD], [Status.FAILING])
        self.assertTrue(document.startswith(f"{START_MARKER}\n{header}<details>"))
        self.assertTrue(document.endswith(f"</details>\n\n{END_MARKER}\n"))
        self.assertLess(document.index(f"{BOARD}#first"), document.index(f"{BOARD}#second"))
        self.assertEqual(document.count("<details>"), 2)

    def test_no_matches_yields_header_only(self) -> None:
        dispatcher = _dispatcher(
            FakeStatusService({BOARD: _summary("passing", status="PASSING")}),
            GatedRenderer(),
            RecordingUploader(),
        )
        result = dispatcher.run()
        header = format_header(TESTGRID, [BOARD], [Status.FAILING])
        self.assertEqual(result.document, f"{START_MARKER}\n{header}{END_MARKER}\n")
        self.assertEqual(result.discovered, 0)
        self.assertEqual(dispatcher.state, RunState.DONE)

    def test_failed_upload_only_drops_its_own_slot(self) -> None:
        uploader = RecordingUploader(failing={"b"})
        result = _dispatcher(
            FakeStatusService({BOARD: _summary("a", "b", "c")}),
            GatedRenderer(),
            uploader,
        ).run()
        self.assertEqual(result.succeeded, [1, 3])
        self.assertEqual(result.failed, [2])
        self.assertIn("https://i.example/a.png", result.document)
        self.assertNotIn(f"{BOARD}#b ", result.document)
        self.assertIn("https://i.example/c.png", result.document)
        self.assertLess(result.document.index("a.png"), result.document.index("c.png"))

    def test_workers_run_concurrently(self) -> None:
        barrier = threading.Barrier(3, timeout=5)

        class BarrierRenderer:
            def render(
                self,
                target_url: str,
                width: int,
                height: int,
                *,
                log_fields: Mapping[str, object] | None = None,
            ) -> bytes:
                barrier.wait()
                return b"png"

        dispatcher = Dispatcher(
            discoverer=Discoverer(FakeStatusService({BOARD: _summary("x", "y", "z")}), _logger()),
            renderer=BarrierRenderer(),
            uploader=RecordingUploader(),
            boards=[BOARD],
            statuses=[Status.FAILING],
            render_config=RenderConfig(),
            testgrid_url=TESTGRID,
            logger=_logger(),
        )
        result = dispatcher.run()
        self.assertEqual(result.succeeded, [1, 2, 3])

    def test_temp_files_removed_after_run(self) -> None:
        uploader = RecordingUploader()
        with TemporaryDirectory() as root:
            with mock.patch.object(tempfile, "tempdir", root):
                _dispatcher(
                    FakeStatusService({BOARD: _summary("a", "b")}),
                    GatedRenderer(),
                    uploader,
                ).run()
            self.assertEqual(len(uploader.paths), 2)
            self.assertEqual(len({path.name for path in uploader.paths}), 2)
            for path in uploader.paths:
                self.assertEqual(path.parent.parent, Path(root))
                self.assertFalse(path.exists())
            self.assertEqual(list(Path(root).iterdir()), [])

    def test_discovery_failure_aborts_run_and_cleans_up(self) -> None:
        uploader = RecordingUploader()
        with TemporaryDirectory() as root:
            with mock.patch.object(tempfile, "tempdir", root):
                dispatcher = _dispatcher(FakeStatusService({}, broken=True), GatedRenderer(), uploader)
                with self.assertRaises(DiscoveryError):
                    dispatcher.run()
            self.assertEqual(list(Path(root).iterdir()), [])
        self.assertEqual(dispatcher.state, RunState.DISCOVERING)
        self.assertEqual(uploader.completed, [])

    def test_interrupt_still_cleans_up(self) -> None:
        with TemporaryDirectory() as root:
            with mock.patch.object(tempfile, "tempdir", root):
                dispatcher = _dispatcher(
                    FakeStatusService({BOARD: _summary("a")}),
                    GatedRenderer(),
                    RecordingUploader(),
                )
                with mock.patch.object(dispatcher, "_dispatch", side_effect=KeyboardInterrupt):
                    with self.assertRaises(KeyboardInterrupt):
                        dispatcher.run()
            self.assertEqual(list(Path(root).iterdir()), [])

    def test_multiple_statuses_are_grouped(self) -> None:
        summary = {
            "flaky-one": {"overall_status": "FLAKY", "dashboard_name": BOARD},
            "failing-one": {"overall_status": "FAILING", "dashboard_name": BOARD},
        }
        result = _dispatcher(
            FakeStatusService({BOARD: summary}),
            GatedRenderer(),
            RecordingUploader(),
            statuses=(Status.FAILING, Status.FLAKY),
        ).run()
        self.assertLess(result.document.index("failing-one"), result.document.index("flaky-one"))


if __name__ == "__main__":
    unittest.main()
