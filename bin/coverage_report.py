#!/usr/bin/env python3
"""
Report generation for Helm chart branch coverage.

Three formats:
1. Plain text (per values run and cumulative, with uncovered branches)
2. JSON summary
3. Cobertura XML, with every branch expanded over the lines it spans
"""

import json
from pathlib import Path
from typing import Optional
from xml.etree import ElementTree as ET

from coverage_common import (
    CoverageReport, RunCoverage, build_file_coverage, coverage_percent,
)

JSON_REPORT_VERSION = "1.0"
RULE = "=" * 40
THIN_RULE = "-" * 40


def coverage_indicator(pct: Optional[float]) -> str:
    """Tri-state marker: full, at least half, less than half."""
    if pct is None:
        return "-"
    if pct >= 100:
        return "✓"
    elif pct >= 50:
        return "~"
    return "✗"


def integer_percent(covered: int, total: int) -> Optional[int]:
    if total == 0:
        return None
    return covered * 100 // total


def _total_line(label: str, covered: int, total: int) -> str:
    pct = integer_percent(covered, total)
    if pct is None:
        return "No conditional branches found"
    return f"{coverage_indicator(pct)} {label}: {covered}/{total} branches ({pct}%)"


def format_run_report(run: RunCoverage, total_branches: int) -> str:
    """Plain text block for a single values run."""
    lines = ["", RULE, f"Coverage Report: {run.label}", RULE]

    if run.files:
        lines.append("")
        lines.append(f"Covered file branches ({len(run.files)}):")
        lines.extend(f"  ✓ {marker}" for marker in sorted(run.files))

    if run.helpers:
        lines.append("")
        lines.append(f"Covered helper branches ({len(run.helpers)}):")
        lines.extend(f"  ✓ {marker}" for marker in sorted(run.helpers))

    lines.append("")
    lines.append(THIN_RULE)
    lines.append(f"Files:   {len(run.files)} branches covered")
    lines.append(f"Helpers: {len(run.helpers)} branches covered")
    lines.append(THIN_RULE)
    lines.append(_total_line("Total", len(run.covered), total_branches))
    return "\n".join(lines)


def format_summary(report: CoverageReport) -> str:
    """Plain text cumulative summary over every run, listing uncovered branches."""
    if report.total_branches == 0:
        return "No conditional branches found"

    covered_files = report.covered_files
    covered_helpers = report.covered_helpers
    lines = ["", RULE, "CUMULATIVE COVERAGE (all values files)", RULE]

    lines.append("")
    lines.append("Unique file branches covered:")
    lines.extend(f"  ✓ {marker}" for marker in sorted(covered_files))
    lines.append("")
    lines.append("Unique helper branches covered:")
    lines.extend(f"  ✓ {marker}" for marker in sorted(covered_helpers))

    if report.uncovered_files:
        lines.append("")
        lines.append("Uncovered file branches:")
        lines.extend(f"  ✗ {marker}" for marker in sorted(report.uncovered_files))

    if report.uncovered_helpers:
        lines.append("")
        lines.append("Uncovered helper branches:")
        lines.extend(f"  ✗ {marker}" for marker in sorted(report.uncovered_helpers))

    lines.append("")
    lines.append(THIN_RULE)
    lines.append(f"Files:   {len(covered_files)} unique branches")
    lines.append(f"Helpers: {len(covered_helpers)} unique branches")
    lines.append(THIN_RULE)
    lines.append(_total_line("TOTAL", len(report.covered), report.total_branches))
    return "\n".join(lines)


def build_json_report(report: CoverageReport) -> dict:
    pct = report.coverage_pct
    return {
        "version": JSON_REPORT_VERSION,
        "chart": report.chart,
        "timestamp": report.timestamp.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "summary": {
            "total_branches": report.total_branches,
            "covered_branches": len(report.covered),
            "coverage_percent": round(pct, 2) if pct is not None else None,
            "file_branches_covered": len(report.covered_files),
            "helper_branches_covered": len(report.covered_helpers),
        },
        "covered": {
            "files": sorted(report.covered_files),
            "helpers": sorted(report.covered_helpers),
        },
        "uncovered": {
            "files": sorted(report.uncovered_files),
            "helpers": sorted(report.uncovered_helpers),
        },
        "runs": [
            {"values": run.values_file, "covered_branches": len(run.covered)}
            for run in report.runs
        ],
    }


def render_json_report(report: CoverageReport) -> str:
    return json.dumps(build_json_report(report), indent=2)


def _rate(covered: int, total: int) -> str:
    pct = coverage_percent(covered, total)
    return f"{(pct or 0.0) / 100:.4f}"


def build_cobertura_xml(report: CoverageReport, source_root) -> ET.ElementTree:
    """Cobertura document: one package for the chart, one class per template file."""
    files = build_file_coverage(report)

    lines_valid = sum(fc.lines_found for fc in files.values())
    lines_covered = sum(fc.lines_hit for fc in files.values())
    branches_valid = sum(fc.branches_found for fc in files.values())
    branches_covered = sum(fc.branches_hit for fc in files.values())

    coverage = ET.Element("coverage")
    coverage.set("version", JSON_REPORT_VERSION)
    coverage.set("timestamp", str(int(report.timestamp.timestamp() * 1000)))
    coverage.set("lines-valid", str(lines_valid))
    coverage.set("lines-covered", str(lines_covered))
    coverage.set("line-rate", _rate(lines_covered, lines_valid))
    coverage.set("branches-valid", str(branches_valid))
    coverage.set("branches-covered", str(branches_covered))
    coverage.set("branch-rate", _rate(branches_covered, branches_valid))
    coverage.set("complexity", "0")

    sources = ET.SubElement(coverage, "sources")
    source = ET.SubElement(sources, "source")
    source.text = str(source_root)

    packages = ET.SubElement(coverage, "packages")
    package = ET.SubElement(packages, "package")
    package.set("name", report.chart or "chart")
    package.set("line-rate", _rate(lines_covered, lines_valid))
    package.set("branch-rate", _rate(branches_covered, branches_valid))
    package.set("complexity", "0")
    classes = ET.SubElement(package, "classes")

    for rel_path, fc in sorted(files.items()):
        cls = ET.SubElement(classes, "class")
        cls.set("name", rel_path)
        cls.set("filename", f"templates/{rel_path}")
        cls.set("line-rate", _rate(fc.lines_hit, fc.lines_found))
        cls.set("branch-rate", _rate(fc.branches_hit, fc.branches_found))
        cls.set("complexity", "0")

        ET.SubElement(cls, "methods")
        lines_elem = ET.SubElement(cls, "lines")

        for line_no, lc in sorted(fc.lines.items()):
            line_elem = ET.SubElement(lines_elem, "line")
            line_elem.set("number", str(line_no))
            line_elem.set("hits", str(lc.hit_count))
            if lc.arms:
                total = len(lc.arms)
                taken = lc.arms_taken
                line_elem.set("branch", "true")
                line_elem.set("condition-coverage", f"{taken / total * 100:.0f}% ({taken}/{total})")
            else:
                line_elem.set("branch", "false")

    tree = ET.ElementTree(coverage)
    ET.indent(tree, space="  ")
    return tree


def write_cobertura_xml(report: CoverageReport, output_path, source_root):
    """Generate Cobertura XML format coverage report."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    tree = build_cobertura_xml(report, source_root)
    tree.write(output_path, encoding="utf-8", xml_declaration=True)
