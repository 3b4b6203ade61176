from __future__ import annotations

from collections.abc import Sequence
import logging
from typing import Any, Protocol

from .app_logging import log_with_fields
from .models import Status, WorkItem
from .remote import NetworkError, ResponseError


class DiscoveryError(RuntimeError):
    pass


class SummarySource(Protocol):
    def summary(self, board: str) -> dict[str, dict[str, Any]]: ...


class Discoverer:
    """Turns board summaries into position-numbered work items.

    Statuses form the outer loop and boards the inner one, so every FAILING
    item of every board comes before any FLAKY item when both are requested.
    Positions start at 1; slot 0 of the stage belongs to the report header.
    """

    def __init__(self, status_service: SummarySource, logger: logging.Logger) -> None:
        self.status_service = status_service
        self.logger = logger

    def discover(self, boards: Sequence[str], statuses: Sequence[Status]) -> list[WorkItem]:
        summaries: dict[str, dict[str, dict[str, Any]]] = {}
        items: list[WorkItem] = []
        for status in statuses:
            for board in boards:
                if board not in summaries:
                    summaries[board] = self._fetch_summary(board)
                matches = self._matching_ids(board, summaries[board], status)
                for board_test_id in matches:
                    items.append(WorkItem(board_test_id, status, len(items) + 1))
                log_with_fields(
                    self.logger,
                    logging.INFO,
                    "board_checked",
                    board=board,
                    status=status.value,
                    matches=len(matches),
                )
        return items

    def _fetch_summary(self, board: str) -> dict[str, dict[str, Any]]:
        try:
            return self.status_service.summary(board)
        except (NetworkError, ResponseError) as exc:
            log_with_fields(self.logger, logging.ERROR, "board_query_failed", board=board, error=str(exc))
            raise DiscoveryError(f"status query for {board} failed: {exc}") from exc

    @staticmethod
    def _matching_ids(board: str, summary: dict[str, dict[str, Any]], status: Status) -> list[str]:
        matches: list[str] = []
        for test, entry in summary.items():
            if entry.get("overall_status") != status.value:
                continue
            if not test.strip():
                continue
            dashboard = str(entry.get("dashboard_name") or board)
            matches.append(f"{dashboard}#{test}")
        return matches
