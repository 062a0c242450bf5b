#!/usr/bin/env python3
"""
Shared coverage data structures and trace parsing for the Helm coverage tools.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Set, Tuple

logger = logging.getLogger(__name__)

POINT_MODE = "point"
RANGE_MODE = "range"

FILE_SENTINEL = "HELM_COVERAGE_FILE"
HELPER_SENTINEL = "HELM_COVERAGE_HELPER"
REPORT_SENTINEL = "HELM_COVERAGE_REPORT"

SENTINEL_PATTERN = re.compile(
    r'^\s*#\s*(' + FILE_SENTINEL + '|' + HELPER_SENTINEL + r'):\s*(\S.*?)\s*$'
)


class CoverageError(Exception):
    """Base class for errors that abort a coverage computation."""


class ChartValidationError(CoverageError):
    """The chart directory is not a usable Helm chart."""


class RenderError(CoverageError):
    """helm template failed (or could not be started) for one values input."""

    def __init__(self, message: str, values_file=None, returncode: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.values_file = values_file
        self.returncode = returncode
        self.output = output


@dataclass(frozen=True)
class Branch:
    file: str
    line: int
    start_line: int
    end_line: int
    occurrence: int = 1
    column: int = 0
    kind: str = "end"
    define: Optional[str] = None
    decision_line: int = 0
    point_id: str = ""
    range_id: str = ""

    @property
    def category(self) -> str:
        return "helper" if self.define is not None else "file"

    @property
    def is_helper(self) -> bool:
        return self.define is not None

    def marker_id(self, mode: str = POINT_MODE) -> str:
        return self.range_id if mode == RANGE_MODE else self.point_id


@dataclass
class RunCoverage:
    values_file: Optional[str]
    files: Set[str] = field(default_factory=set)
    helpers: Set[str] = field(default_factory=set)

    @property
    def covered(self) -> Set[str]:
        return self.files | self.helpers

    @property
    def label(self) -> str:
        return self.values_file or "default values"


@dataclass
class LineCoverage:
    line_no: int
    hit_count: int = 0
    arms: list = field(default_factory=list)

    @property
    def arms_taken(self) -> int:
        return sum(1 for _, taken in self.arms if taken)


@dataclass
class FileCoverage:
    filename: str
    lines: dict = field(default_factory=dict)
    branch_data: dict = field(default_factory=dict)

    @property
    def branches_found(self) -> int:
        return len(self.branch_data)

    @property
    def branches_hit(self) -> int:
        return sum(1 for taken in self.branch_data.values() if taken > 0)

    @property
    def lines_found(self) -> int:
        return len(self.lines)

    @property
    def lines_hit(self) -> int:
        return sum(1 for l in self.lines.values() if l.hit_count > 0)


@dataclass
class CoverageReport:
    branches: Dict[str, Branch] = field(default_factory=dict)
    chart: str = ""
    mode: str = POINT_MODE
    runs: list = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def add_run(self, run: RunCoverage) -> RunCoverage:
        """Clamp a run to the discovered branch set and record it."""
        unknown = run.covered - self.branches.keys()
        if unknown:
            logger.debug("Ignoring %d marker(s) not found by the scanner: %s",
                         len(unknown), ", ".join(sorted(unknown)))
        run.files &= self.branches.keys()
        run.helpers &= self.branches.keys()
        self.runs.append(run)
        return run

    def rekeyed(self, mode: str) -> "CoverageReport":
        """Same coverage, with branches and runs addressed by ``mode`` IDs."""
        if mode == self.mode:
            return self
        translate = {marker: branch.marker_id(mode) for marker, branch in self.branches.items()}
        return CoverageReport(
            branches={translate[m]: b for m, b in self.branches.items()},
            chart=self.chart,
            mode=mode,
            runs=[
                RunCoverage(
                    values_file=run.values_file,
                    files={translate[m] for m in run.files},
                    helpers={translate[m] for m in run.helpers},
                )
                for run in self.runs
            ],
            timestamp=self.timestamp,
        )

    @property
    def file_branches(self) -> Set[str]:
        return {bid for bid, b in self.branches.items() if not b.is_helper}

    @property
    def helper_branches(self) -> Set[str]:
        return {bid for bid, b in self.branches.items() if b.is_helper}

    @property
    def total_branches(self) -> int:
        return len(self.branches)

    @property
    def covered_files(self) -> Set[str]:
        covered = set()
        for run in self.runs:
            covered |= run.files
        return covered

    @property
    def covered_helpers(self) -> Set[str]:
        covered = set()
        for run in self.runs:
            covered |= run.helpers
        return covered

    @property
    def covered(self) -> Set[str]:
        return self.covered_files | self.covered_helpers

    @property
    def uncovered(self) -> Set[str]:
        return set(self.branches) - self.covered

    @property
    def uncovered_files(self) -> Set[str]:
        return self.file_branches - self.covered

    @property
    def uncovered_helpers(self) -> Set[str]:
        return self.helper_branches - self.covered

    @property
    def coverage_pct(self) -> Optional[float]:
        return coverage_percent(len(self.covered), self.total_branches)


def coverage_percent(covered: int, total: int) -> Optional[float]:
    """Percentage of covered branches, None when there is nothing to cover."""
    if total == 0:
        return None
    return (covered / total) * 100


def parse_trace(rendered: str) -> Tuple[Set[str], Set[str]]:
    """Extract executed file and helper marker IDs from rendered chart output."""
    files = set()
    helpers = set()
    for line in rendered.splitlines():
        match = SENTINEL_PATTERN.match(line)
        if not match:
            continue
        kind, marker = match.groups()
        if kind == FILE_SENTINEL:
            files.add(marker)
        else:
            helpers.add(marker)
    return files, helpers


def collect_run(values_file, rendered: str) -> RunCoverage:
    files, helpers = parse_trace(rendered)
    return RunCoverage(
        values_file=str(values_file) if values_file is not None else None,
        files=files,
        helpers=helpers,
    )


def build_file_coverage(report: CoverageReport) -> Dict[str, FileCoverage]:
    """Project range-addressed branches onto per-file line and decision data.

    Every line spanned by a branch becomes a line row whose hit flag is the OR
    of all branches touching it. Branches are grouped by (file, decision line)
    to produce per-decision arm counts on the decision line.
    """
    covered = report.covered
    files: Dict[str, FileCoverage] = {}

    for marker, branch in sorted(report.branches.items()):
        fc = files.get(branch.file)
        if fc is None:
            fc = files[branch.file] = FileCoverage(filename=branch.file)
        taken = 1 if marker in covered else 0
        fc.branch_data[marker] = taken

        for line_no in range(branch.start_line, branch.end_line + 1):
            lc = fc.lines.get(line_no)
            if lc is None:
                lc = fc.lines[line_no] = LineCoverage(line_no=line_no)
            lc.hit_count = max(lc.hit_count, taken)

        decision_line = branch.decision_line or branch.start_line
        lc = fc.lines.get(decision_line)
        if lc is None:
            lc = fc.lines[decision_line] = LineCoverage(line_no=decision_line)
        lc.arms.append((marker, taken))

    return files
