"""Data model shared by the docx2exam pipeline."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

MCQ_LETTERS = ("A", "B", "C", "D")
STATEMENT_LETTERS = ("a", "b", "c", "d")


@dataclass
class FormulaObject:
    key: str
    binary_ref: str
    preview_ref: Optional[str] = None
    content_hash: Optional[str] = None


@dataclass
class ImageRef:
    key: str
    rel_id: str


@dataclass
class ImageAsset:
    key: str
    mime_type: str
    payload: bytes

    def data_uri(self) -> str:
        encoded = base64.b64encode(self.payload).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass
class MathNode:
    tag: str
    attrs: Dict[str, str] = field(default_factory=dict)
    children: List["MathNode"] = field(default_factory=list)
    text: str = ""


@dataclass
class Section:
    order: int
    section_id: str
    title: str
    label: str
    start_offset: int
    end_offset: int
    question_start: int = 0
    question_end: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order,
            "id": self.section_id,
            "title": self.title,
            "label": self.label,
            "startOffset": self.start_offset,
            "endOffset": self.end_offset,
            "questionStart": self.question_start,
            "questionEnd": self.question_end,
        }


@dataclass
class _QuestionBase:
    index: int
    number: int
    offset: int
    stem: str
    solution: str = ""
    detail: str = ""
    section_order: Optional[int] = None
    section_title: Optional[str] = None

    def _base_dict(self, kind: str) -> Dict[str, Any]:
        return {
            "index": self.index,
            "number": self.number,
            "type": kind,
            "stem": self.stem,
            "solution": self.solution,
            "detail": self.detail,
            "sectionOrder": self.section_order,
            "sectionTitle": self.section_title,
        }


@dataclass
class MCQ(_QuestionBase):
    choices: Dict[str, str] = field(default_factory=lambda: {letter: "" for letter in MCQ_LETTERS})
    answer: Optional[str] = None

    kind = "mcq"

    def to_dict(self) -> Dict[str, Any]:
        data = self._base_dict(self.kind)
        data["choices"] = dict(self.choices)
        data["answer"] = self.answer
        return data


@dataclass
class TrueFalseSet(_QuestionBase):
    statements: Dict[str, str] = field(default_factory=lambda: {letter: "" for letter in STATEMENT_LETTERS})
    answer: Dict[str, Optional[bool]] = field(default_factory=lambda: {letter: None for letter in STATEMENT_LETTERS})

    kind = "true_false"

    def to_dict(self) -> Dict[str, Any]:
        data = self._base_dict(self.kind)
        data["statements"] = dict(self.statements)
        data["answer"] = dict(self.answer)
        return data


@dataclass
class ShortAnswer(_QuestionBase):
    kind = "short_answer"

    def to_dict(self) -> Dict[str, Any]:
        return self._base_dict(self.kind)


Question = Union[MCQ, TrueFalseSet, ShortAnswer]


@dataclass
class ParsedExam:
    sections: List[Section]
    questions: List[Question]
