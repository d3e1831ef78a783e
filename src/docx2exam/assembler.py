"""Linear block assembly of a parsed exam, legacy question list, Markdown rendering."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from .markup import PLACEHOLDER_RE
from .models import MCQ, MCQ_LETTERS, STATEMENT_LETTERS, ParsedExam, TrueFalseSet
from .resolver import FALLBACK_PREFIX

FORMULA_UNAVAILABLE = "[formula unavailable]"


def assemble_blocks(exam: ParsedExam) -> List[Dict[str, Any]]:
    by_order = {section.order: section for section in exam.sections}
    blocks: List[Dict[str, Any]] = []
    last_order: Optional[int] = None
    for question in exam.questions:
        order = question.section_order
        if order != last_order and order is not None:
            section = by_order[order]
            blocks.append(
                {
                    "type": "section",
                    "order": section.order,
                    "id": section.section_id,
                    "title": section.title,
                    "label": section.label,
                }
            )
        last_order = order
        data = question.to_dict()
        data["questionType"] = data.pop("type")
        blocks.append({"type": "question", **data})
    return blocks


def legacy_questions(exam: ParsedExam) -> List[Dict[str, Any]]:
    """Flat multiple-choice list kept for older consumers."""
    legacy: List[Dict[str, Any]] = []
    for question in exam.questions:
        if not isinstance(question, MCQ):
            continue
        legacy.append(
            {
                "id": question.index,
                "content": question.stem,
                "answers": [{"label": letter, "text": question.choices.get(letter, "")} for letter in MCQ_LETTERS],
                "correct": question.answer,
            }
        )
    return legacy


def substitute_placeholders(
    text: str,
    math: Mapping[str, str],
    images: Mapping[str, str],
    links: Optional[Mapping[str, str]] = None,
) -> str:
    links = links or {}

    def _image(key: str) -> Optional[str]:
        target = links.get(key) or images.get(key)
        return f"![{key}]({target})" if target else None

    def _replace(match) -> str:
        kind, key = match.group(1), match.group(3)
        if kind == "m":
            latex = math.get(key, "")
            if latex:
                return f"${latex}$"
            return _image(FALLBACK_PREFIX + key) or FORMULA_UNAVAILABLE
        return _image(key) or ""

    return PLACEHOLDER_RE.sub(_replace, text)


def render_markdown(
    blocks: List[Dict[str, Any]],
    math: Mapping[str, str],
    images: Mapping[str, str],
    links: Optional[Mapping[str, str]] = None,
) -> str:
    def sub(text: str) -> str:
        return substitute_placeholders(text, math, images, links)

    lines: List[str] = []
    for block in blocks:
        if block["type"] == "section":
            lines.extend([f"## {sub(block['title'])}", ""])
            continue
        lines.append(f"**Câu {block['number']}.** {sub(block['stem'])}".rstrip())
        lines.append("")
        kind = block["questionType"]
        if kind == MCQ.kind:
            for letter in MCQ_LETTERS:
                lines.append(f"- {letter}. {sub(block['choices'].get(letter, ''))}".rstrip())
            lines.append("")
            if block["answer"]:
                lines.extend([f"**Đáp án:** {block['answer']}", ""])
        elif kind == TrueFalseSet.kind:
            for letter in STATEMENT_LETTERS:
                line = f"- {letter}) {sub(block['statements'].get(letter, ''))}".rstrip()
                if block["answer"].get(letter):
                    line += " (Đúng)"
                lines.append(line)
            lines.append("")
        if block["solution"]:
            lines.extend(["**Lời giải:**", "", sub(block["solution"]), ""])
        if block["detail"]:
            lines.extend(["**Lời giải chi tiết:**", "", sub(block["detail"]), ""])
    return "\n".join(lines).strip() + "\n"
