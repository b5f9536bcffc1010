"""Per-user bandwidth accounting over a nethogs trace file."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable

import structlog

from ..common.errors import UserError, UserErrorKind

LOGGER = structlog.get_logger("sshmgmt.node_agent.usage")

# nethogs -t lines look like "sshd: alice@pts/0/4242/1001\t0.12\t3.4"
_TRACE_LINE_RE = re.compile(r".+/.+/\w+[\s|\t]+(.+)")


def _mentions(line: str, username: str) -> bool:
    return re.search(rf"(?<![\w-]){re.escape(username)}(?![\w-])", line) is not None


def _to_float(token: str) -> float:
    try:
        return float(token.strip())
    except ValueError:
        return 0.0


def line_usage(line: str) -> float:
    """Sum the tab-separated usage columns of one trace line.

    Lines that do not look like a process record count as zero, as do
    non-numeric columns.
    """
    match = _TRACE_LINE_RE.search(line)
    if match is None:
        LOGGER.debug("trace_line_unparsed", line=line)
        return 0.0
    return sum(_to_float(part) for part in match.group(1).split("\t"))


def parse_usage(lines: Iterable[str], usernames: Iterable[str]) -> dict[str, float]:
    lines = list(lines)
    usage: dict[str, float] = {}
    for username in usernames:
        total = 0.0
        for line in lines:
            if _mentions(line, username):
                total += line_usage(line)
        usage[username] = total
    return usage


class UsageAccountant:
    """Reads the live trace on every query; nothing is cached between calls."""

    def __init__(self, trace_path: Path | str) -> None:
        self.trace_path = Path(trace_path)

    def read_trace(self) -> list[str]:
        try:
            content = self.trace_path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            LOGGER.warning("trace_file_unreadable", path=str(self.trace_path), error=str(exc))
            raise UserError(UserErrorKind.INVALID_TRACE_FILE, raw_message=str(exc)) from exc
        return content.split("\n")

    def usage_for(self, usernames: Iterable[str]) -> dict[str, float]:
        return parse_usage(self.read_trace(), usernames)
