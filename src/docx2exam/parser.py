"""Recovery of sections and graded questions from extracted exam text."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .models import MCQ, MCQ_LETTERS, STATEMENT_LETTERS, ParsedExam, Question, Section, ShortAnswer, TrueFalseSet

LOG = logging.getLogger("docx2exam")

QUESTION_ANCHOR_RE = re.compile(r"Câu\s+(\d+)\s*\.")
SECTION_ANCHOR_RE = re.compile(
    r"(?m)^[ \t]*(?:<u>[ \t]*)?(?:[•\-–*][ \t]*)?(?:<u>[ \t]*)?"
    r"(PHẦN[ \t]+([0-9]+|[IVXLC]+|[A-Z])\b)(?:[ \t]*</u>)?[ \t]*[.:\-–]?[ \t]*([^\n]*)$"
)
SOLUTION_MARKER_RE = re.compile(
    r"(?im)^[ \t]*(?:<u>)?[ \t]*(?:Lời giải(?![ \t]+chi tiết)|Hướng dẫn giải|Hướng dẫn|Đáp án|Giải[ \t]*:)"
)
DETAIL_MARKER_RE = re.compile(r"(?i)(?:Lời giải chi tiết|Giải chi tiết)")
MARKER_TAIL_RE = re.compile(r"(?:[ \t]*</u>)?[ \t]*[:.\-–]*")
UNDERLINE_TAG_RE = re.compile(r"</?u>")

UNDERLINED_CHOICE_RES = (
    re.compile(r"<u>[ \t]*\*?[ \t]*([A-D])[ \t]*</u>[ \t]*\."),
    re.compile(r"<u>[ \t]*\*?[ \t]*([A-D])[ \t]*\."),
)
UNDERLINED_STATEMENT_RES = (
    re.compile(r"<u>[ \t]*([a-d])[ \t]*</u>[ \t]*\)"),
    re.compile(r"<u>[ \t]*([a-d])[ \t]*\)"),
)
CHOICE_MARKER_RES = (
    re.compile(r"(?m)^[ \t]*(\*?)[ \t]*([A-D])\."),
    re.compile(r"(?:^|(?<=\s))(\*?)[ \t]*([A-D])\.(?=\s|$|\[|<)"),
)
STATEMENT_MARKER_RES = (
    re.compile(r"(?m)^[ \t]*(\*?)[ \t]*([a-d])\)"),
    re.compile(r"(?:^|(?<=\s))(\*?)[ \t]*([a-d])\)"),
)


@dataclass
class _Anchor:
    offset: int
    end: int
    number: int


@dataclass
class _Boundary:
    letter: str
    start: int
    end: int
    starred: bool


def find_question_anchors(text: str) -> List[_Anchor]:
    return [
        _Anchor(offset=match.start(), end=match.end(), number=int(match.group(1)))
        for match in QUESTION_ANCHOR_RE.finditer(text)
    ]


def find_sections(text: str) -> List[Section]:
    matches = list(SECTION_ANCHOR_RE.finditer(text))
    sections: List[Section] = []
    for order, match in enumerate(matches, start=1):
        label = UNDERLINE_TAG_RE.sub("", match.group(3))
        cut = QUESTION_ANCHOR_RE.search(label)
        if cut is not None:
            label = label[:cut.start()]
        label = label.strip()
        heading = match.group(1).strip()
        title = f"{heading}. {label}" if label else heading
        end = matches[order].start() if order < len(matches) else len(text)
        sections.append(
            Section(
                order=order,
                section_id=match.group(2),
                title=title,
                label=label,
                start_offset=match.start(),
                end_offset=end,
            )
        )
    return sections


def assign_question_ranges(sections: Sequence[Section], anchors: Sequence[_Anchor]) -> None:
    cursor = 0
    for section in sections:
        while cursor < len(anchors) and anchors[cursor].offset < section.start_offset:
            cursor += 1
        section.question_start = cursor
        while cursor < len(anchors) and anchors[cursor].offset < section.end_offset:
            cursor += 1
        section.question_end = cursor


def strip_underline(text: str) -> str:
    return UNDERLINE_TAG_RE.sub("", text)


def clean_text(text: str) -> str:
    lines = [" ".join(line.split()) for line in strip_underline(text).split("\n")]
    return "\n".join(line for line in lines if line).strip()


def split_solution(block: str) -> Tuple[str, str, str]:
    """Split a question block into ``(main, solution, detail)``."""
    marker = SOLUTION_MARKER_RE.search(block)
    if marker is None:
        detail = DETAIL_MARKER_RE.search(block)
        if detail is None:
            return block, "", ""
        return block[:detail.start()], "", _after_marker(block, detail.end())
    main = block[:marker.start()]
    tail_start = MARKER_TAIL_RE.match(block, marker.end()).end()
    tail = block[tail_start:]
    detail = DETAIL_MARKER_RE.search(tail)
    if detail is None:
        return main, tail, ""
    return main, tail[:detail.start()], _after_marker(tail, detail.end())


def _after_marker(text: str, position: int) -> str:
    return text[MARKER_TAIL_RE.match(text, position).end():]


def detect_underlined(raw: str, patterns: Sequence[re.Pattern]) -> List[str]:
    found: Dict[int, str] = {}
    for pattern in patterns:
        for match in pattern.finditer(raw):
            found.setdefault(match.start(), match.group(1))
    letters: List[str] = []
    for _, letter in sorted(found.items()):
        if letter not in letters:
            letters.append(letter)
    return letters


def normalize_markers(raw: str) -> str:
    """Rewrite underlined choice/statement markers back to their plain form."""
    text = re.sub(r"<u>([ \t]*\*?[ \t]*[A-D])[ \t]*</u>([ \t]*\.)", r"\1\2", raw)
    text = re.sub(r"<u>([ \t]*[a-d])[ \t]*</u>([ \t]*\))", r"\1\2", text)
    # marker opens an underline that continues into the body
    text = re.sub(r"<u>([ \t]*\*?[ \t]*[A-D]\.)", r"\1<u>", text)
    text = re.sub(r"<u>([ \t]*[a-d]\))", r"\1<u>", text)
    return text.replace("<u></u>", "")


def _candidates(text: str, pattern: re.Pattern, floor: int = 0) -> List[_Boundary]:
    found: List[_Boundary] = []
    for match in pattern.finditer(text, floor):
        start = match.start()
        while start < match.end() and text[start] in " \t\n":
            start += 1
        found.append(_Boundary(letter=match.group(2), start=start, end=match.end(), starred=bool(match.group(1))))
    return found


def _in_letter_order(candidates: Sequence[_Boundary], letters: Sequence[str]) -> List[_Boundary]:
    chosen: List[_Boundary] = []
    last_index = -1
    position = 0
    for boundary in sorted(candidates, key=lambda b: (b.start, -b.end)):
        index = letters.index(boundary.letter)
        if index <= last_index or boundary.start < position:
            continue
        chosen.append(boundary)
        last_index = index
        position = boundary.end
    return chosen


def find_boundaries(text: str, patterns: Sequence[re.Pattern], letters: Sequence[str]) -> List[_Boundary]:
    """Locate one marker per letter, in letter order.

    Line-leading markers anchor the list; once two of them exist, markers
    after whitespace are merged in from the first one onwards, so layouts
    with two choices per line keep every letter. Without two line-leading
    markers only the whitespace-separated ones are used.
    """
    leading_pattern, inline_pattern = patterns
    leading = _candidates(text, leading_pattern)
    boundaries = _in_letter_order(leading, letters)
    if len(boundaries) >= 2:
        inline = _candidates(text, inline_pattern, boundaries[0].start)
        return _in_letter_order(leading + inline, letters)
    boundaries = _in_letter_order(_candidates(text, inline_pattern), letters)
    return boundaries if len(boundaries) >= 2 else []


def _bodies(text: str, boundaries: Sequence[_Boundary], letters: Sequence[str]) -> Dict[str, str]:
    bodies = {letter: "" for letter in letters}
    for index, boundary in enumerate(boundaries):
        stop = boundaries[index + 1].start if index + 1 < len(boundaries) else len(text)
        bodies[boundary.letter] = clean_text(text[boundary.end:stop])
    return bodies


def parse_question(index: int, anchor: _Anchor, raw: str) -> Question:
    raw_main, raw_solution, raw_detail = split_solution(raw)
    plain = strip_underline(normalize_markers(raw_main))
    base = dict(
        index=index,
        number=anchor.number,
        offset=anchor.offset,
        solution=clean_text(raw_solution),
        detail=clean_text(raw_detail),
    )

    boundaries = find_boundaries(plain, CHOICE_MARKER_RES, MCQ_LETTERS)
    if boundaries:
        starred = [boundary.letter for boundary in boundaries if boundary.starred]
        underlined = detect_underlined(raw, UNDERLINED_CHOICE_RES)
        answer: Optional[str] = starred[0] if starred else (underlined[0] if underlined else None)
        return MCQ(
            stem=clean_text(plain[:boundaries[0].start]),
            choices=_bodies(plain, boundaries, MCQ_LETTERS),
            answer=answer,
            **base,
        )

    boundaries = find_boundaries(plain, STATEMENT_MARKER_RES, STATEMENT_LETTERS)
    if boundaries:
        underlined_letters = set(detect_underlined(raw, UNDERLINED_STATEMENT_RES))
        return TrueFalseSet(
            stem=clean_text(plain[:boundaries[0].start]),
            statements=_bodies(plain, boundaries, STATEMENT_LETTERS),
            answer={letter: (True if letter in underlined_letters else None) for letter in STATEMENT_LETTERS},
            **base,
        )

    return ShortAnswer(stem=clean_text(plain), **base)


def parse_exam(text: str) -> ParsedExam:
    anchors = find_question_anchors(text)
    sections = find_sections(text)
    assign_question_ranges(sections, anchors)
    section_starts = [section.start_offset for section in sections]

    questions: List[Question] = []
    for position, anchor in enumerate(anchors):
        stop = anchors[position + 1].offset if position + 1 < len(anchors) else len(text)
        for start in section_starts:
            if anchor.end <= start < stop:
                stop = start
                break
        question = parse_question(position + 1, anchor, text[anchor.end:stop])
        questions.append(question)

    for section in sections:
        for question in questions[section.question_start:section.question_end]:
            question.section_order = section.order
            question.section_title = section.title

    LOG.debug(
        "Parsed %d question(s) in %d section(s): %s",
        len(questions),
        len(sections),
        ", ".join(f"{q.number}:{q.kind}" for q in questions),
    )
    return ParsedExam(sections=sections, questions=questions)
