import pytest

from template_scanner import (
    BlockScanner, MarkerAllocator, is_in_string, mask_comments, scan_template, tokenize_line,
)

NESTED = (
    "{{ if .Values.a }}\n"
    "  {{- if .Values.b }}\n"
    "  b: true\n"
    "  {{- end }}\n"
    "{{- else }}\n"
    "a: false\n"
    "{{- end }}\n"
)

IF_ELSE = (
    "{{ if .Values.enabled }}\n"
    "enabled: true\n"
    "{{ else }}\n"
    "enabled: false\n"
    "{{ end }}\n"
)

HELPERS = (
    '{{- define "demo.labels" -}}\n'
    "{{- if .Values.x }}\n"
    "x: 1\n"
    "{{- end }}\n"
    "{{- end }}\n"
    "\n"
    '{{- define "demo.name" -}}\n'
    "{{ .Chart.Name }}\n"
    "{{- end }}\n"
)


def test_nested_blocks_yield_three_branches():
    branches = scan_template(NESTED, "deploy.yaml")

    assert [b.point_id for b in branches] == ["deploy.yaml:L4", "deploy.yaml:L5", "deploy.yaml:L7"]
    assert [b.range_id for b in branches] == [
        "deploy.yaml:L2-L3", "deploy.yaml:L1-L4", "deploy.yaml:L5-L6",
    ]
    inner, outer, _ = branches
    assert outer.start_line < inner.start_line
    assert inner.end_line < outer.end_line


def test_if_else_arms_share_a_decision():
    branches = scan_template(IF_ELSE, "demo.yaml")

    assert [b.point_id for b in branches] == ["demo.yaml:L3", "demo.yaml:L5"]
    assert [b.kind for b in branches] == ["else", "end"]
    assert [b.decision_line for b in branches] == [1, 1]
    assert not any(b.is_helper for b in branches)


def test_else_if_chain():
    text = (
        "{{ if .a }}\n"
        "a\n"
        "{{ else if .b }}\n"
        "b\n"
        "{{ else }}\n"
        "c\n"
        "{{ end }}\n"
    )
    branches = scan_template(text, "t.yaml")

    assert [b.kind for b in branches] == ["else-if", "else", "end"]
    assert [(b.start_line, b.end_line) for b in branches] == [(1, 2), (3, 4), (5, 6)]
    assert {b.decision_line for b in branches} == {1}


def test_with_and_range_are_blocks():
    text = (
        "{{- range .Values.items }}\n"
        "- {{ . }}\n"
        "{{- end }}\n"
        "{{- with .Values.extra }}\n"
        "extra: {{ . }}\n"
        "{{- else }}\n"
        "extra: none\n"
        "{{- end }}\n"
    )
    branches = scan_template(text, "t.yaml")

    assert [b.range_id for b in branches] == ["t.yaml:L1-L2", "t.yaml:L4-L5", "t.yaml:L6-L7"]


def test_inline_tokens_get_occurrence_suffix():
    branches = scan_template("a: {{ if .x }}1{{ else }}2{{ end }}\n", "t.yaml")

    assert [b.point_id for b in branches] == ["t.yaml:L1", "t.yaml:L1.2"]
    assert [b.range_id for b in branches] == ["t.yaml:L1-L1", "t.yaml:L1-L1.2"]
    assert [b.occurrence for b in branches] == [1, 2]


def test_colliding_ranges_are_made_unique():
    text = (
        "{{ if .a }}{{ if .b }}x{{ end }}\n"
        "{{ end }}\n"
    )
    branches = scan_template(text, "t.yaml")

    assert [b.point_id for b in branches] == ["t.yaml:L1", "t.yaml:L2"]
    assert [b.range_id for b in branches] == ["t.yaml:L1-L1", "t.yaml:L1-L1.2"]


def test_tokens_inside_tpl_string_are_skipped():
    text = (
        '{{ tpl "{{ if .a }}x{{ end }}" . }}\n'
        "{{ if .b }}y{{ end }}\n"
    )
    branches = scan_template(text, "t.yaml")

    assert [b.point_id for b in branches] == ["t.yaml:L2"]


def test_tokens_after_closed_printf_string_count():
    text = '{{ $x := printf "%s" .a }}{{ if $x }}ok{{ end }}\n'

    assert len(scan_template(text, "t.yaml")) == 1


def test_is_in_string_needs_dynamic_evaluation():
    line = 'note: "{{ if .a }}"'
    assert not is_in_string(line, line.index("{{"))
    line = '{{ tpl "{{ if .a }}" . }}'
    assert is_in_string(line, line.index("{{", 2))
    line = '{{ tpl "a \\" {{ end }}" . }}'
    assert is_in_string(line, line.index("{{ end"))


@pytest.mark.parametrize("line", [
    'label: "{{ .Values.cat }}-{{ if .Values.x }}a{{ else }}b{{ end }}"',
    'label: "{{ $print := 1 }}{{ if .Values.x }}a{{ else }}b{{ end }}"',
    'label: "{{ .Values.tplName }}{{ if .Values.x }}a{{ else }}b{{ end }}"',
])
def test_field_named_like_a_function_does_not_suppress(line):
    branches = scan_template(line + "\n", "t.yaml")

    assert [b.point_id for b in branches] == ["t.yaml:L1", "t.yaml:L1.2"]


def test_function_call_after_paren_still_suppresses():
    line = '{{ include "x" (cat "y" "{{ if .a }}x{{ end }}") }}'

    assert is_in_string(line, line.index("{{ if"))
    assert scan_template(line + "\n", "t.yaml") == []


def test_helper_branches_carry_define_name():
    branches = scan_template(HELPERS, "_helpers.tpl", helper=True)

    assert [b.point_id for b in branches] == [
        "_helpers.tpl:demo.labels:L4",
        "_helpers.tpl:demo.labels:L5",
        "_helpers.tpl:demo.name:L9",
    ]
    assert [b.range_id for b in branches] == [
        "_helpers.tpl:demo.labels:L2-L3",
        "_helpers.tpl:demo.labels:L1-L4",
        "_helpers.tpl:demo.name:L7-L8",
    ]
    assert all(b.is_helper for b in branches)
    assert {b.define for b in branches} == {"demo.labels", "demo.name"}


def test_helper_tokens_outside_define_are_ignored():
    text = "{{ if .x }}a{{ end }}\n" + HELPERS

    branches = scan_template(text, "_helpers.tpl", helper=True)

    assert len(branches) == 3
    assert branches[0].point_id == "_helpers.tpl:demo.labels:L5"


def test_define_in_template_file_is_helper_category():
    text = (
        '{{- define "inline.thing" }}\n'
        "{{- if .x }}x{{ end }}\n"
        "{{- end }}\n"
        "{{ if .y }}y{{ end }}\n"
    )
    branches = scan_template(text, "cm.yaml")

    assert [b.point_id for b in branches] == [
        "cm.yaml:inline.thing:L2", "cm.yaml:inline.thing:L3", "cm.yaml:L4",
    ]
    assert [b.category for b in branches] == ["helper", "helper", "file"]


def test_close_without_open_degrades_to_single_line_block():
    scanner = BlockScanner("t.yaml")
    branches = scanner.scan("{{ end }}\n{{ if .a }}\n{{ end }}\n")

    assert [b.range_id for b in branches] == ["t.yaml:L1-L1", "t.yaml:L2-L2"]
    assert len(scanner.notes) == 1


def test_unclosed_block_is_only_a_note():
    scanner = BlockScanner("t.yaml")

    assert scanner.scan("{{ if .a }}\nx\n") == []
    assert len(scanner.notes) == 1


def test_comments_are_masked():
    text = (
        "{{/*\n"
        "{{ end }}\n"
        "*/}}\n"
        "{{- /* {{ else }} */ -}}\n"
        "{{ if .a }}x{{ end }}\n"
    )
    branches = scan_template(text, "t.yaml")

    assert [b.point_id for b in branches] == ["t.yaml:L5"]


def test_mask_comments_keeps_columns():
    line = "a {{/* x */}} b"
    masked, open_comment = mask_comments(line, False)

    assert len(masked) == len(line)
    assert masked == "a " + " " * len("{{/* x */}}") + " b"
    assert not open_comment
    assert mask_comments("{{/* start", False) == (" " * len("{{/* start"), True)


def test_multiline_opener():
    text = (
        "{{- if and\n"
        "    .Values.a\n"
        "    .Values.b }}\n"
        "ok\n"
        "{{- end }}\n"
    )
    branches = scan_template(text, "t.yaml")

    assert [b.range_id for b in branches] == ["t.yaml:L1-L4"]


@pytest.mark.parametrize("line", [
    "{{ .Values.endpoint }}",
    '{{ include "x" . }}',
    "{{ if }}",
    "{{ end .x }}",
    "ifelse: end",
])
def test_non_tokens(line):
    assert tokenize_line(line, 1) == []


def test_tokenize_line_reports_trim_and_standalone():
    tokens = tokenize_line("  {{- else }}", 3)

    assert len(tokens) == 1
    assert tokens[0].kind == "else"
    assert tokens[0].trim_left
    assert tokens[0].standalone
    assert tokens[0].column == 2


def test_rescanning_is_deterministic():
    first = scan_template(NESTED + HELPERS, "t.yaml", allocator=MarkerAllocator())
    second = scan_template(NESTED + HELPERS, "t.yaml", allocator=MarkerAllocator())

    assert first == second


def test_shared_allocator_keeps_ids_unique_across_files():
    allocator = MarkerAllocator()
    a = scan_template(IF_ELSE, "a.yaml", allocator=allocator)
    b = scan_template(IF_ELSE, "b.yaml", allocator=allocator)

    ids = [x.point_id for x in a + b]
    assert len(ids) == len(set(ids)) == 4
