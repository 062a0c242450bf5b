#!/usr/bin/env python3
"""
Helm chart instrumentation.

Copies a chart into a scratch workspace, injects branch tracking calls in
front of every discovered else / else-if / end token and adds a generated
helper template that records executed branches on the root render context
and prints them back as sentinel comment lines.
"""

import json
import logging
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from coverage_common import (
    Branch, ChartValidationError, POINT_MODE,
    FILE_SENTINEL, HELPER_SENTINEL, REPORT_SENTINEL,
)
from template_scanner import BlockScanner, MarkerAllocator

logger = logging.getLogger(__name__)

HELPER_FILENAME = "_coverage_helper.tpl"
TEMPLATE_SUFFIXES = (".yaml", ".yml")
HELPER_SUFFIX = ".tpl"

INIT_TEMPLATE = "helm-coverage.init"
TRACK_FILE_TEMPLATE = "helm-coverage.trackFile"
TRACK_HELPER_TEMPLATE = "helm-coverage.trackHelper"
REPORT_TEMPLATE = "helm-coverage.printReport"

INIT_CALL = '{{ include "' + INIT_TEMPLATE + '" . }}'
REPORT_CALL = '{{ include "' + REPORT_TEMPLATE + '" $ }}'

COVERAGE_HELPER = '''{{- /*
Generated by helm-coverage. Executed branches are collected in ._cov on the
root context of a single render; every template file and helper touched by
that render appends to the same lists.
*/ -}}

{{- define "%(init)s" -}}
{{- if not (hasKey . "_cov") -}}
{{- $_ := set . "_cov" (dict "files" (list) "helpers" (list)) -}}
{{- end -}}
{{- end -}}

{{- define "%(track_file)s" -}}
{{- $ctx := index . 0 -}}
{{- $marker := index . 1 -}}
{{- $_ := set $ctx._cov "files" (append $ctx._cov.files $marker) -}}
{{- end -}}

{{- /* Accepts the root context, or a dict carrying it under "context"; anything else is ignored */ -}}
{{- define "%(track_helper)s" -}}
{{- $ctx := index . 0 -}}
{{- $marker := index . 1 -}}
{{- $root := dict -}}
{{- if kindIs "map" $ctx -}}
{{- if hasKey $ctx "_cov" -}}
{{- $root = $ctx -}}
{{- else if hasKey $ctx "context" -}}
{{- if kindIs "map" $ctx.context -}}
{{- if hasKey $ctx.context "_cov" -}}
{{- $root = $ctx.context -}}
{{- end -}}
{{- end -}}
{{- end -}}
{{- end -}}
{{- if hasKey $root "_cov" -}}
{{- $_ := set $root._cov "helpers" (append $root._cov.helpers $marker) -}}
{{- end -}}
{{- end -}}

{{- define "%(report)s" }}
# %(report_sentinel)s: {{ len ._cov.files }}/{{ len ._cov.helpers }}
{{- range ._cov.files }}
# %(file_sentinel)s: {{ . }}
{{- end }}
{{- range ._cov.helpers }}
# %(helper_sentinel)s: {{ . }}
{{- end }}
{{- end -}}
''' % {
    "init": INIT_TEMPLATE,
    "track_file": TRACK_FILE_TEMPLATE,
    "track_helper": TRACK_HELPER_TEMPLATE,
    "report": REPORT_TEMPLATE,
    "report_sentinel": REPORT_SENTINEL,
    "file_sentinel": FILE_SENTINEL,
    "helper_sentinel": HELPER_SENTINEL,
}


@dataclass
class InstrumentedChart:
    chart_dir: Path
    mode: str = POINT_MODE
    branches: List[Branch] = field(default_factory=list)
    files: Dict[str, int] = field(default_factory=dict)

    @property
    def discovered(self) -> Dict[str, Branch]:
        return {b.marker_id(self.mode): b for b in self.branches}

    @property
    def file_branch_count(self) -> int:
        return sum(1 for b in self.branches if not b.is_helper)

    @property
    def helper_branch_count(self) -> int:
        return sum(1 for b in self.branches if b.is_helper)


def validate_chart(chart_path) -> Path:
    """Check that chart_path looks like a Helm chart, return it as a Path."""
    chart = Path(chart_path)
    if not chart.is_dir():
        raise ChartValidationError(f"Chart directory not found: {chart}")
    if not (chart / "templates").is_dir():
        raise ChartValidationError(f"No templates/ directory in: {chart}")
    if not (chart / "Chart.yaml").is_file():
        raise ChartValidationError(f"No Chart.yaml found in: {chart}")
    return chart


def matches_filter(rel_path: str, filters: Optional[Sequence[str]]) -> bool:
    """Select filter: equal to, prefixed by, or ending in /<filter>."""
    if not filters:
        return True
    for flt in filters:
        if rel_path == flt or rel_path.startswith(flt) or rel_path.endswith("/" + flt):
            return True
    return False


def go_string(value: str) -> str:
    return json.dumps(value)


def tracking_call(branch: Branch, mode: str = POINT_MODE, trim_left: bool = False) -> str:
    template = TRACK_HELPER_TEMPLATE if branch.is_helper else TRACK_FILE_TEMPLATE
    opener = "{{- " if trim_left else "{{ "
    return f'{opener}include "{template}" (list $ {go_string(branch.marker_id(mode))}) }}}}'


def instrument_source(text: str, rel_path: str, helper: bool = False,
                      allocator: Optional[MarkerAllocator] = None, mode: str = POINT_MODE):
    """Instrument one template file's text.

    Returns the rewritten text and the branches found in it. A tracking call
    goes directly in front of each branch token on the same line and copies
    the token's left trim, so rendered output is unchanged. Template files
    also get the init call prefixed to their first line and the report call
    on a new last line.
    """
    scanner = BlockScanner(rel_path, helper=helper, allocator=allocator)
    branches = scanner.scan(text)

    lines = text.split("\n")
    by_line: Dict[int, List[Branch]] = {}
    for branch in branches:
        by_line.setdefault(branch.line, []).append(branch)

    for line_no, line_branches in by_line.items():
        line = lines[line_no - 1]
        for branch in sorted(line_branches, key=lambda b: b.column, reverse=True):
            trim_left = line.startswith("{{-", branch.column)
            call = tracking_call(branch, mode, trim_left)
            line = line[:branch.column] + call + line[branch.column:]
        lines[line_no - 1] = line

    if not helper:
        lines[0] = INIT_CALL + lines[0]
        if lines[-1]:
            lines.append("")
        lines[-1] = REPORT_CALL
        lines.append("")

    return "\n".join(lines), branches


def _read(path: Path) -> str:
    with open(path, encoding="utf-8", newline="") as f:
        return f.read()


def _write(path: Path, text: str):
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(text)


def instrument_chart(chart_dir, select: Optional[Sequence[str]] = None, mode: str = POINT_MODE) -> InstrumentedChart:
    """Instrument a staged chart copy in place.

    Template files (templates/**/*.yaml|yml, not starting with "_") are
    instrumented when they match the select filters; helper files
    (templates/**/*.tpl) are always instrumented.
    """
    chart_dir = Path(chart_dir)
    templates_dir = chart_dir / "templates"
    result = InstrumentedChart(chart_dir=chart_dir, mode=mode)
    allocator = MarkerAllocator()

    if select:
        logger.info("Filtering templates: %s", " ".join(select))

    for path in sorted(templates_dir.rglob("*")):
        if not path.is_file() or path.name == HELPER_FILENAME:
            continue
        rel_path = path.relative_to(templates_dir).as_posix()
        if path.suffix in TEMPLATE_SUFFIXES:
            if path.name.startswith("_") or not matches_filter(rel_path, select):
                continue
            helper = False
        elif path.suffix == HELPER_SUFFIX:
            helper = True
        else:
            continue

        text, branches = instrument_source(_read(path), rel_path, helper=helper,
                                           allocator=allocator, mode=mode)
        if helper and not branches:
            continue
        _write(path, text)
        result.branches.extend(branches)
        result.files[rel_path] = len(branches)
        kind = "helper" if helper else "file"
        logger.info("Instrumented %s: %s (%d branches)", kind, rel_path, len(branches))

    _write(templates_dir / HELPER_FILENAME, COVERAGE_HELPER)
    logger.debug("Created helper: %s", HELPER_FILENAME)
    return result


def instrumented_path(chart_path) -> Path:
    chart = Path(chart_path).resolve()
    return chart.parent / f"{chart.name}-instrumented"


def stage_chart(chart_path, dest) -> Path:
    """Copy the chart to dest, replacing whatever is there."""
    dest = Path(dest)
    if dest.exists():
        shutil.rmtree(dest)
    shutil.copytree(chart_path, dest)
    return dest


@contextmanager
def chart_workspace(chart_path):
    """Yield a disposable copy of the chart, removed on exit even on errors."""
    chart = Path(chart_path).resolve()
    with tempfile.TemporaryDirectory(prefix="helm-coverage-") as tmp:
        yield stage_chart(chart, Path(tmp) / chart.name)
