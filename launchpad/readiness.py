"""Readiness signals in preview server output.

External tools only tell us they are listening through their console output,
so every framework gets a small detector fed line by line.
"""

from typing import List, Pattern, Tuple

import re

from launchpad.constants import Framework


ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")

READY = [
    re.compile(r"Local:", re.IGNORECASE),
    re.compile(r"https?://(?:localhost|127\.0\.0\.1|0\.0\.0\.0|\[::1?\]):\d+", re.IGNORECASE),
    re.compile(r"\bready\b", re.IGNORECASE),
    re.compile(r"Serving HTTP on"),
    re.compile(r"Accepting connections at"),
    re.compile(r"started server on", re.IGNORECASE),
]
STATIC_EXPORT = re.compile(r'does not work with "output: export"')
# node prints EADDRINUSE, python's http.server "[Errno 98] Address already in use"
ADDRESS_IN_USE = re.compile(r"EADDRINUSE|address already in use", re.IGNORECASE)

# prioritised: the first pattern matching anywhere in the output wins
PORT_PATTERNS = [
    re.compile(r"Local:\s+https?://(?:\[[^\]]*\]|[^\s/:]+):(\d+)", re.IGNORECASE),
    re.compile(r"https?://(?:localhost|127\.0\.0\.1|0\.0\.0\.0|\[[0-9a-fA-F:]*\]|[\w.-]+):(\d+)"),
    re.compile(r"started server on [^\s]+?:(\d+)", re.IGNORECASE),
    re.compile(r"\bon port (\d+)", re.IGNORECASE),
    re.compile(r"\bport (\d+)", re.IGNORECASE),
]


def strip_ansi(line: str) -> str:
    return ANSI_ESCAPE.sub("", line)


class ReadinessDetector:
    ready_patterns: List[Pattern] = READY
    failure_patterns: List[Tuple[Pattern, str]] = [(ADDRESS_IN_USE, "address_in_use")]

    def __init__(self):
        self.lines: List[str] = []

    @property
    def output(self) -> str:
        return "\n".join(self.lines)

    def feed(self, line: str) -> str | None:
        """Inspect one output line.

        Args:
            line (str): raw line, ANSI colour codes allowed.

        Returns:
            str | None: ``ready``, a failure status, or None.
        """
        line = strip_ansi(line).rstrip("\r\n")
        self.lines.append(line)
        for pattern, status in self.failure_patterns:
            if pattern.search(line):
                return status
        for pattern in self.ready_patterns:
            if pattern.search(line):
                return "ready"
        return None

    def bound_port(self, default: int) -> int:
        """Port announced by the server, ``default`` when none was printed."""
        for pattern in PORT_PATTERNS:
            for line in self.lines:
                if match := pattern.search(line):
                    return int(match.group(1))
        return default


class NextReadinessDetector(ReadinessDetector):
    failure_patterns = [
        (ADDRESS_IN_USE, "address_in_use"),
        (STATIC_EXPORT, "static_export"),
    ]


def detector_for(framework: Framework) -> ReadinessDetector:
    if framework == Framework.nextjs:
        return NextReadinessDetector()
    return ReadinessDetector()
