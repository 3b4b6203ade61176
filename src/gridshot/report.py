"""Markdown pieces of the triage report."""

from __future__ import annotations

from collections.abc import Sequence

from .models import Status, UploadResult, WorkItem

START_MARKER = "<!-- ----[ gridshot report: start ]---- -->"
END_MARKER = "<!-- ----[ gridshot report: end ]---- -->"


def dashboard_url(testgrid_url: str, board: str) -> str:
    return f"{testgrid_url.rstrip('/')}/{board}"


def item_url(testgrid_url: str, board_test_id: str, block_width: int) -> str:
    """TestGrid view of one test; ``block_width`` controls how many runs are drawn."""
    return f"{testgrid_url.rstrip('/')}/{board_test_id}&width={block_width}"


def format_header(testgrid_url: str, boards: Sequence[str], statuses: Sequence[Status]) -> str:
    states = ", ".join(f"`{status.value}`" for status in statuses)
    lines = [f"Testgrid dashboards checked for {states}:", ""]
    lines.extend(f"- [{board}]({dashboard_url(testgrid_url, board)})" for board in boards)
    lines.append("")
    return "\n".join(lines) + "\n"


def _escape_comment(text: str) -> str:
    return text.replace("-->", "--&gt;")


def format_fragment(
    item: WorkItem,
    *,
    captured_at: str,
    link: str,
    upload: UploadResult,
) -> str:
    lines = [
        "<details>",
        f"<summary><code>{item.status.value}</code> {item.board_test_id} (captured {captured_at})</summary>",
        "",
        f"- [Testgrid]({link})",
        "",
        f"![{item.board_test_id}]({upload.public_url})",
        "",
        f"<!-- upload metadata: {_escape_comment(upload.raw_metadata.strip())} -->",
        "</details>",
        "",
    ]
    return "\n".join(lines) + "\n"
