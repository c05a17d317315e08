"""
Result Parser - Tolerant decoding of TruffleHog's JSON-lines output.

TruffleHog prints one JSON object per finding on stdout. Lines are decoded
independently, so the parser can be fed while the process is still running:

    >>> parser = ResultParser()
    >>> for line in lines:
    ...     parser.feed(line)
    >>> parser.findings

A line that cannot be decoded is dropped with a warning and counted in
``malformed_lines``; it never stops the lines after it from being parsed and
never fails the scan.
"""

import json
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Union

import structlog
from pydantic import ValidationError

from ..errors import ParseLineError
from .models import Finding


# Enough of a bad line to recognise it in logs without dumping a whole secret
LOG_EXCERPT_CHARS = 200


@dataclass
class ParseOutcome:
    """Findings decoded from one output stream"""
    findings: List[Finding] = field(default_factory=list)
    malformed_lines: int = 0


class ResultParser:
    """
    Incremental parser for TruffleHog JSON-lines output.

    One instance parses one stream; ``feed()`` keeps the running findings and
    malformed line count, ``parse()`` is the one-shot form for a complete
    buffer.
    """

    def __init__(self):
        self.findings: List[Finding] = []
        self.malformed_lines = 0
        self.line_number = 0

        self.logger = structlog.get_logger(__name__)

    @staticmethod
    def parse_line(line: str, line_number: int = 0) -> Finding:
        """
        Decode a single non-empty output line.

        Raises:
            ParseLineError: If the line is not a JSON object TruffleHog could
                have produced
        """
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise ParseLineError(line_number, f"invalid JSON: {e.msg}") from e

        if not isinstance(data, dict):
            raise ParseLineError(line_number, f"expected object, got {type(data).__name__}")

        try:
            return Finding.from_trufflehog(data)
        except ValidationError as e:
            raise ParseLineError(line_number, f"unexpected field types ({e.error_count()} errors)") from e

    def feed(self, line: Union[str, bytes]) -> Optional[Finding]:
        """
        Parse the next line of output.

        Args:
            line: One line, with or without its trailing newline

        Returns:
            The decoded Finding, or None for blank and malformed lines
        """
        self.line_number += 1

        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        line = line.strip()
        if not line:
            return None

        try:
            finding = self.parse_line(line, self.line_number)
        except ParseLineError as e:
            self.malformed_lines += 1
            self.logger.warning(
                "scanner_output_line_skipped",
                line_number=e.line_number,
                reason=e.reason,
                excerpt=line[:LOG_EXCERPT_CHARS],
            )
            return None

        self.findings.append(finding)
        return finding

    def outcome(self) -> ParseOutcome:
        """Snapshot of everything parsed so far"""
        return ParseOutcome(findings=list(self.findings), malformed_lines=self.malformed_lines)

    def parse(self, raw: Union[str, bytes, Iterable[Union[str, bytes]]]) -> ParseOutcome:
        """
        Parse a complete output buffer or an iterable of lines.

        Args:
            raw: Whole stdout as str/bytes, or any iterable of lines

        Returns:
            ParseOutcome (empty for empty input)
        """
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        lines = raw.splitlines() if isinstance(raw, str) else raw

        for line in lines:
            self.feed(line)

        if self.malformed_lines:
            self.logger.warning(
                "scanner_output_partially_parsed",
                findings=len(self.findings),
                malformed_lines=self.malformed_lines,
            )

        return self.outcome()
