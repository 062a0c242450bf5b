#!/usr/bin/env python3
"""
Thin wrapper around `helm template` plus values-file discovery.
"""

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from coverage_common import RenderError

logger = logging.getLogger(__name__)

RELEASE_NAME = "coverage-test"
VALUES_SUFFIXES = (".yaml", ".yml")
DEFAULT_HELM = os.environ.get("HELM_BIN", "helm")


@dataclass
class RenderResult:
    stdout: str
    stderr: str
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        if self.stderr and self.stdout:
            return self.stdout.rstrip("\n") + "\n" + self.stderr
        return self.stdout or self.stderr


def find_helm(candidates: Optional[Sequence[str]] = None) -> Optional[str]:
    """Find a working helm executable on the system."""
    if candidates is None:
        candidates = [
            DEFAULT_HELM,
            "helm",
            "/usr/local/bin/helm",
            "/opt/homebrew/bin/helm",
        ]

    for candidate in candidates:
        try:
            result = subprocess.run(
                [candidate, "version", "--short"],
                capture_output=True,
                text=True,
                timeout=5
            )
            if result.returncode == 0:
                return candidate
        except (FileNotFoundError, PermissionError, subprocess.TimeoutExpired):
            continue

    return None


def build_helm_command(chart_dir, values_file=None, extra_args: Optional[Sequence[str]] = None,
                       helm_bin: str = DEFAULT_HELM) -> List[str]:
    cmd = [helm_bin, "template", RELEASE_NAME, str(chart_dir)]
    if values_file is not None:
        cmd += ["-f", str(values_file)]
    if extra_args:
        cmd += list(extra_args)
    return cmd


def render_chart(chart_dir, values_file=None, extra_args: Optional[Sequence[str]] = None,
                 helm_bin: str = DEFAULT_HELM, timeout: Optional[float] = None) -> RenderResult:
    """Run helm template once. A non-zero exit is returned, not raised.

    RenderError is raised only when helm cannot be started or times out.
    """
    cmd = build_helm_command(chart_dir, values_file, extra_args, helm_bin)
    logger.debug("Running: %s", " ".join(cmd))
    try:
        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        raise RenderError(f"helm executable not found: {helm_bin}", values_file=values_file)
    except subprocess.TimeoutExpired as e:
        output = e.stdout or ""
        if isinstance(output, bytes):
            output = output.decode("utf-8", errors="replace")
        raise RenderError(f"helm template timed out after {timeout}s",
                          values_file=values_file, output=output)
    return RenderResult(stdout=proc.stdout or "", stderr=proc.stderr or "", returncode=proc.returncode)


def expand_values_inputs(paths: Sequence) -> List[Path]:
    """Expand values arguments: files are kept, directories contribute their
    *.yaml / *.yml files recursively in sorted order, anything else is skipped.
    """
    expanded = []
    for item in paths:
        p = Path(item)
        if p.is_dir():
            found = sorted(f for f in p.rglob("*") if f.is_file() and f.suffix in VALUES_SUFFIXES)
            logger.info("Expanded directory %s: %d yaml files (recursive)", p, len(found))
            expanded.extend(found)
        elif p.is_file():
            expanded.append(p)
        else:
            logger.warning("Skipping invalid path: %s", p)
    return expanded
