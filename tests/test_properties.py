import re

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from coverage_common import CoverageReport, RANGE_MODE, RunCoverage
from instrument import INIT_CALL, REPORT_CALL, instrument_source
from template_scanner import MarkerAllocator, scan_template

CALL_PATTERN = re.compile(
    r'\{\{-? include "helm-coverage\.track(?:File|Helper)" \(list \$ "[^"]*"\) \}\}'
)

leaves = st.sampled_from([
    "a: 1\n",
    "b: {{ .Values.b | quote }}\n",
    "  - item\n",
    "\n",
])


def _token(keyword, trim):
    return ("{{- " if trim else "{{ ") + keyword + " }}"


def _block(keyword, trims, body, alternative):
    open_trim, else_trim, end_trim = trims
    text = _token(f"{keyword} .Values.flag", open_trim) + "\n" + body
    if alternative is not None:
        text += _token("else", else_trim) + "\n" + alternative
    return text + _token("end", end_trim) + "\n"


def _extend(inner):
    bodies = st.lists(inner, max_size=3).map("".join)
    return st.builds(
        _block,
        st.sampled_from(["if", "with", "range"]),
        st.tuples(st.booleans(), st.booleans(), st.booleans()),
        bodies,
        st.none() | bodies,
    )


templates = st.lists(st.recursive(leaves, _extend, max_leaves=12), min_size=1, max_size=4).map("".join)


def expected_branches(text):
    return text.count("end }}") + text.count("else }}")


@pytest.mark.property
@settings(deadline=None)
@given(templates)
def test_scanning_is_deterministic(text):
    assert scan_template(text, "t.yaml") == scan_template(text, "t.yaml")


@pytest.mark.property
@settings(deadline=None)
@given(templates)
def test_every_else_and_end_is_a_branch(text):
    branches = scan_template(text, "t.yaml")

    assert len(branches) == expected_branches(text)
    assert len({b.point_id for b in branches}) == len(branches)
    assert len({b.range_id for b in branches}) == len(branches)
    for b in branches:
        assert 1 <= b.start_line <= b.end_line <= b.line


@pytest.mark.property
@settings(deadline=None)
@given(templates)
def test_instrumentation_only_adds_calls(text):
    instrumented, branches = instrument_source(text, "t.yaml", mode=RANGE_MODE)

    assert len(CALL_PATTERN.findall(instrumented)) == len(branches)
    stripped = CALL_PATTERN.sub("", instrumented)
    assert stripped == INIT_CALL + text + REPORT_CALL + "\n"


@pytest.mark.property
@settings(deadline=None)
@given(st.lists(templates, min_size=1, max_size=3))
def test_shared_allocator_gives_unique_ids(texts):
    allocator = MarkerAllocator()
    ids = []
    for i, text in enumerate(texts):
        ids.extend(b.point_id for b in scan_template(text, f"t{i}.yaml", allocator=allocator))

    assert len(ids) == len(set(ids)) == sum(expected_branches(t) for t in texts)


@pytest.mark.property
@settings(deadline=None)
@given(templates, st.data())
def test_union_is_monotonic_and_partitions(text, data):
    branches = scan_template(text, "t.yaml")
    report = CoverageReport(branches={b.point_id: b for b in branches})
    ids = sorted(report.branches)

    previous = set()
    for _ in range(data.draw(st.integers(min_value=1, max_value=4))):
        hit = data.draw(st.sets(st.sampled_from(ids))) if ids else set()
        report.add_run(RunCoverage(None, files=set(hit)))

        assert previous <= report.covered
        assert report.covered | report.uncovered == set(ids)
        assert not report.covered & report.uncovered
        previous = report.covered

    if ids:
        assert report.coverage_pct == pytest.approx(len(report.covered) * 100 / len(ids))
    else:
        assert report.coverage_pct is None
