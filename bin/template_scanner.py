#!/usr/bin/env python3
"""
Static control-flow scanner for Helm templates.

Walks template text line by line, recognises Go template control actions
(if / with / range / define / block / else / else if / end) with plain regular
expressions, keeps block nesting on an explicit frame stack and emits one
Branch for every else, else-if and end that closes a conditional arm.

No template grammar is built. Actions spanning several lines are only
recognised for their opening keyword, and string literals are only tracked
within a single line.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from coverage_common import Branch

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(
    r'\{\{(?P<trim>-)?\s*'
    r'(?P<kw>if|with|range|define|block|else|end)\b'
    r'(?P<args>.*?)'
    r'\s*-?\}\}'
)
UNTERMINATED_OPEN_PATTERN = re.compile(
    r'\{\{(?P<trim>-)?\s*(?P<kw>if|with|range|define|block|else)\b(?P<args>.*)$'
)
ELSE_CHAIN_PATTERN = re.compile(r'^(?:if|with)\s+\S')
DEFINE_NAME_PATTERN = re.compile(r'"([^"]+)"')
# function calls only, not fields or variables such as .Values.cat or $print
DYNAMIC_EVAL_PATTERN = re.compile(r'\{\{-?[^}]*?(?<![\w.$])(?:tpl|printf|print|cat)\b')
COMMENT_OPEN_PATTERN = re.compile(r'\{\{-?\s*/\*')
COMMENT_CLOSE_PATTERN = re.compile(r'\*/\s*-?\}\}')

OPENERS = ("if", "with", "range", "define", "block")
NAMED_OPENERS = ("define", "block")


@dataclass
class ControlToken:
    kind: str
    line: int
    column: int
    trim_left: bool = False
    standalone: bool = False
    name: Optional[str] = None


@dataclass
class Frame:
    kind: str
    open_line: int
    open_column: int
    decision_line: int
    define: Optional[str] = None


def mask_comments(line: str, in_comment: bool) -> Tuple[str, bool]:
    """Blank out template comments on a line, keeping column positions.

    Returns the masked line and whether a comment is still open at its end.
    """
    out = []
    pos = 0
    while pos <= len(line):
        if in_comment:
            match = COMMENT_CLOSE_PATTERN.search(line, pos)
            if not match:
                out.append(" " * (len(line) - pos))
                return "".join(out), True
            out.append(" " * (match.end() - pos))
            pos = match.end()
            in_comment = False
        else:
            match = COMMENT_OPEN_PATTERN.search(line, pos)
            if not match:
                out.append(line[pos:])
                return "".join(out), False
            out.append(line[pos:match.start()])
            out.append(" " * (match.end() - match.start()))
            pos = match.end()
            in_comment = True
    return "".join(out), in_comment


def count_unescaped_quotes(line: str, end: int) -> int:
    count = 0
    for i in range(min(end, len(line))):
        if line[i] == '"' and (i == 0 or line[i - 1] != "\\"):
            count += 1
    return count


def is_in_string(line: str, column: int) -> bool:
    """True when a token sits inside a string handed to tpl/printf/print/cat.

    Line-local heuristic: the line must call one of those functions and an
    odd number of unescaped double quotes must precede the token.
    """
    if not DYNAMIC_EVAL_PATTERN.search(line):
        return False
    return count_unescaped_quotes(line, column) % 2 == 1


def _classify(kw: str, args: str) -> Optional[str]:
    args = args.strip()
    if kw == "end":
        return "end" if not args else None
    if kw == "else":
        if not args:
            return "else"
        if ELSE_CHAIN_PATTERN.match(args):
            return "else-if"
        return None
    if not args:
        return None
    return kw


def tokenize_line(line: str, line_no: int) -> List[ControlToken]:
    """Find the control tokens of one (comment-masked) line, in column order.

    Tokens inside dynamically evaluated string literals are dropped.
    """
    tokens = []
    standalone = False
    matches = list(TOKEN_PATTERN.finditer(line))
    if len(matches) == 1:
        m = matches[0]
        standalone = not line[:m.start()].strip() and not line[m.end():].strip()

    candidates = [(m.start(), m.group("trim"), m.group("kw"), m.group("args")) for m in matches]
    tail_start = matches[-1].end() if matches else 0
    tail = UNTERMINATED_OPEN_PATTERN.search(line, tail_start)
    if tail and "}}" not in line[tail.start():]:
        # the argument continues on a later line
        args = tail.group("args") if tail.group("kw") == "else" else tail.group("args") or " ..."
        candidates.append((tail.start(), tail.group("trim"), tail.group("kw"), args))

    for column, trim, kw, args in candidates:
        kind = _classify(kw, args)
        if kind is None:
            continue
        if is_in_string(line, column):
            logger.debug("L%d:%d: %s inside a string literal, skipped", line_no, column, kind)
            continue
        name = None
        if kind in NAMED_OPENERS:
            found = DEFINE_NAME_PATTERN.search(args)
            name = found.group(1) if found else args.strip()
        tokens.append(ControlToken(
            kind=kind,
            line=line_no,
            column=column,
            trim_left=bool(trim),
            standalone=standalone,
            name=name,
        ))
    return tokens


class MarkerAllocator:
    """Hands out deterministic, globally unique marker IDs.

    Point IDs look like ``deployment.yaml:L12`` and range IDs like
    ``deployment.yaml:L8-L11``; helper branches carry the define name
    (``_helpers.tpl:chart.labels:L5``). The second and later branches on one
    line get a ``.N`` suffix. A range ID that is already taken bumps its
    suffix to the next free number.
    """

    def __init__(self):
        self._taken = set()

    @staticmethod
    def _prefix(file: str, define: Optional[str]) -> str:
        if define is not None:
            return f"{file}:{define}:"
        return f"{file}:"

    def _claim(self, base: str, occurrence: int) -> str:
        n = occurrence
        marker = base if n <= 1 else f"{base}.{n}"
        while marker in self._taken:
            n = max(n, 1) + 1
            marker = f"{base}.{n}"
        self._taken.add(marker)
        return marker

    def allocate(self, file: str, define: Optional[str], line: int,
                 start_line: int, end_line: int, occurrence: int) -> Tuple[str, str]:
        prefix = self._prefix(file, define)
        point_id = self._claim(f"{prefix}L{line}", occurrence)
        range_id = self._claim(f"{prefix}L{start_line}-L{end_line}", occurrence)
        return point_id, range_id


class BlockScanner:
    """Single left-to-right pass over one template file.

    ``helper`` files (``.tpl``) only yield branches inside define blocks.
    """

    def __init__(self, file: str, helper: bool = False, allocator: Optional[MarkerAllocator] = None):
        self.file = file
        self.helper = helper
        self.allocator = allocator or MarkerAllocator()
        self.stack: List[Frame] = []
        self.branches: List[Branch] = []
        self.notes: List[str] = []
        self._line_occurrences = {}

    def _note(self, message: str):
        self.notes.append(message)
        logger.info("%s: %s", self.file, message)

    def _current_define(self) -> Optional[str]:
        return self.stack[-1].define if self.stack else None

    def _push(self, token: ControlToken, decision_line: Optional[int] = None, define: Optional[str] = None):
        if token.kind in NAMED_OPENERS:
            define = token.name
        elif define is None:
            define = self._current_define()
        self.stack.append(Frame(
            kind=token.kind,
            open_line=token.line,
            open_column=token.column,
            decision_line=decision_line if decision_line is not None else token.line,
            define=define,
        ))

    def _close(self, token: ControlToken) -> Frame:
        if self.stack:
            return self.stack.pop()
        self._note(f"L{token.line}: '{token.kind}' without an open block, treated as a single-line block")
        return Frame(
            kind="if",
            open_line=token.line,
            open_column=token.column,
            decision_line=token.line,
            define=None,
        )

    def _record(self, token: ControlToken, frame: Frame):
        if self.helper and frame.define is None:
            return
        start_line = frame.open_line
        end_line = token.line - 1 if token.line > start_line else token.line
        occurrence = self._line_occurrences.get(token.line, 0) + 1
        self._line_occurrences[token.line] = occurrence
        point_id, range_id = self.allocator.allocate(
            self.file, frame.define, token.line, start_line, end_line, occurrence)
        self.branches.append(Branch(
            file=self.file,
            line=token.line,
            start_line=start_line,
            end_line=end_line,
            occurrence=occurrence,
            column=token.column,
            kind=token.kind,
            define=frame.define,
            decision_line=frame.decision_line,
            point_id=point_id,
            range_id=range_id,
        ))

    def feed(self, token: ControlToken):
        if token.kind in OPENERS:
            self._push(token)
        elif token.kind in ("else", "else-if"):
            frame = self._close(token)
            self._record(token, frame)
            self._push(token, decision_line=frame.decision_line, define=frame.define)
            self.stack[-1].kind = frame.kind
        elif token.kind == "end":
            frame = self._close(token)
            self._record(token, frame)

    def scan(self, text: str) -> List[Branch]:
        in_comment = False
        for line_no, line in enumerate(text.split("\n"), 1):
            masked, in_comment = mask_comments(line, in_comment)
            for token in tokenize_line(masked, line_no):
                self.feed(token)
        for frame in self.stack:
            self._note(f"L{frame.open_line}: '{frame.kind}' is never closed")
        return self.branches


def scan_template(text: str, file: str, helper: bool = False,
                  allocator: Optional[MarkerAllocator] = None) -> List[Branch]:
    """Discover the branches of one template file."""
    return BlockScanner(file, helper=helper, allocator=allocator).scan(text)
