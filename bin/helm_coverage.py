#!/usr/bin/env python3
"""Branch coverage for Helm chart templates.

Instruments a copy of the chart, renders it once per values file with
`helm template`, collects the branches each render executed and reports
per-run and cumulative coverage.

Usage:
  helm_coverage.py ./my-chart                          # chart defaults only
  helm_coverage.py ./my-chart values.yaml              # one run
  helm_coverage.py ./my-chart ./values-dir/            # one run per yaml file
  helm_coverage.py -s patterns/nested.yaml ./my-chart values.yaml
  helm_coverage.py --helm-args "--set version=2025.10" ./my-chart values.yaml
  helm_coverage.py --json ./my-chart ./values/ > coverage.json
  helm_coverage.py --xml coverage.xml ./my-chart ./values/
  helm_coverage.py --instrument-only ./my-chart        # keep <chart>-instrumented
"""

import argparse
import functools
import logging
import shlex
import sys
from pathlib import Path

from coverage_common import (
    ChartValidationError, CoverageReport, POINT_MODE, RANGE_MODE, RenderError,
    collect_run,
)
from coverage_report import (
    format_run_report, format_summary, render_json_report, write_cobertura_xml,
)
from helm_render import DEFAULT_HELM, expand_values_inputs, find_helm, render_chart
from instrument import (
    chart_workspace, instrument_chart, instrumented_path, stage_chart, validate_chart,
)
from logging_config import setup_logging

logger = logging.getLogger("helm_coverage")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_BELOW_THRESHOLD = 2


def run_coverage(instrumented, values_files, renderer, chart_name="") -> CoverageReport:
    """Render the instrumented chart once per values file, fail-fast.

    ``renderer(chart_dir, values_file)`` returns a RenderResult. A failed render
    raises RenderError and nothing collected so far is kept.
    """
    report = CoverageReport(
        branches=instrumented.discovered,
        chart=chart_name,
        mode=instrumented.mode,
    )
    for values_file in (values_files or [None]):
        label = Path(values_file).name if values_file is not None else "default values"
        logger.info("Running with: %s", label)
        result = renderer(instrumented.chart_dir, values_file)
        if not result.ok:
            raise RenderError(
                f"helm template failed for {label} (exit {result.returncode})",
                values_file=values_file,
                returncode=result.returncode,
                output=result.output,
            )
        run = report.add_run(collect_run(values_file, result.stdout))
        logger.debug("%s: %d/%d branches", label, len(run.covered), report.total_branches)
    return report


def build_parser():
    parser = argparse.ArgumentParser(
        prog="helm-coverage",
        description="Measure conditional branch coverage of Helm chart templates",
    )
    parser.add_argument("chart", help="Path to the Helm chart directory")
    parser.add_argument("values", nargs="*",
                        help="Values files (.yaml/.yml) or directories containing them")
    parser.add_argument("-s", "--select", action="append", default=[], metavar="PATH",
                        help="Only instrument matching template(s). Can be repeated.")
    parser.add_argument("--helm-args", default="",
                        help='Extra arguments for helm template (e.g. "--set key=val")')
    parser.add_argument("--helm", default=DEFAULT_HELM,
                        help=f"helm executable (default: $HELM_BIN or helm, currently {DEFAULT_HELM})")
    parser.add_argument("--timeout", type=float, default=None,
                        help="Per-render timeout in seconds")
    parser.add_argument("--instrument-only", action="store_true",
                        help="Write the instrumented chart to <chart>-instrumented and stop")
    parser.add_argument("--json", action="store_true",
                        help="Output results in JSON format (to stdout)")
    parser.add_argument("--xml", metavar="PATH",
                        help="Also write a Cobertura XML report to PATH")
    parser.add_argument("--fail-under", type=float, default=None, metavar="PCT",
                        help="Exit with status 2 when cumulative coverage is below PCT")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def _instrument_only(chart_path, select, mode):
    dest = stage_chart(chart_path, instrumented_path(chart_path))
    instrumented = instrument_chart(dest, select, mode)
    if not instrumented.branches:
        logger.warning("No conditional branches found")
    else:
        logger.info("Found %d total branches", len(instrumented.branches))
    for rel_path, count in instrumented.files.items():
        print(f"  {rel_path}: {count} branches")
    logger.info("Instrumented chart saved to: %s", dest)
    logger.info("Run manually with: helm template %s -f <values>", dest)
    return EXIT_OK


def main(argv=None, renderer=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        chart_path = validate_chart(args.chart)
    except ChartValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    values_files = expand_values_inputs(args.values)
    mode = RANGE_MODE if args.xml else POINT_MODE
    chart_name = chart_path.resolve().name

    logger.info("Helm Coverage Analysis")
    logger.info("Chart: %s", chart_path)

    if args.instrument_only:
        return _instrument_only(chart_path, args.select, mode)

    if renderer is None:
        if find_helm([args.helm]) is None:
            print(f"Error: helm executable not found or not working: {args.helm}", file=sys.stderr)
            return EXIT_ERROR
        renderer = functools.partial(
            render_chart,
            extra_args=shlex.split(args.helm_args),
            helm_bin=args.helm,
            timeout=args.timeout,
        )

    with chart_workspace(chart_path) as workdir:
        logger.info("Instrumenting templates...")
        instrumented = instrument_chart(workdir, args.select, mode)

        if not instrumented.branches:
            logger.warning("No conditional branches found")
            report = CoverageReport(chart=chart_name, mode=mode)
            print(render_json_report(report) if args.json else format_summary(report))
            return EXIT_OK

        logger.info("Found %d total branches", len(instrumented.branches))
        try:
            report = run_coverage(instrumented, values_files, renderer, chart_name)
        except RenderError as e:
            print(f"Error: {e}", file=sys.stderr)
            if e.output:
                sys.stderr.write(e.output if e.output.endswith("\n") else e.output + "\n")
            return EXIT_ERROR

    # text and JSON always name branches by point ID
    summary = report.rekeyed(POINT_MODE)
    if args.json:
        print(render_json_report(summary))
    else:
        for run in summary.runs:
            print(format_run_report(run, summary.total_branches))
        print(format_summary(summary))

    if args.xml:
        write_cobertura_xml(report, args.xml, chart_path.resolve())
        logger.info("XML: %s", args.xml)

    pct = report.coverage_pct
    if args.fail_under is not None and pct is not None and pct < args.fail_under:
        logger.error("Coverage %.2f%% is below the required %.2f%%", pct, args.fail_under)
        return EXIT_BELOW_THRESHOLD

    logger.info("Done")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
