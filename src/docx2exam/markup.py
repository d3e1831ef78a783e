"""Scanning of WordprocessingML markup: relationships, formula/image placeholders, text extraction."""

from __future__ import annotations

import posixpath
import re
import unicodedata
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .models import FormulaObject, ImageRef

DOCUMENT_XML = "word/document.xml"
DOCUMENT_RELS = "word/_rels/document.xml.rels"

MATH_TOKEN = "[!m:${key}$]"
IMAGE_TOKEN = "[!img:${key}$]"
PLACEHOLDER_RE = re.compile(r"\[!(m|img):\$(\$?)([A-Za-z0-9_]+)\2\$\]")

OLE_OBJECT_RE = re.compile(r"<o:OLEObject\b[^>]*>", re.IGNORECASE)
REL_ID_ATTR_RE = re.compile(r"\br:id\s*=\s*\"([^\"]+)\"")
PROG_ID_ATTR_RE = re.compile(r"\bProgID\s*=\s*\"([^\"]*)\"", re.IGNORECASE)
EQUATION_PROG_ID_RE = re.compile(r"^Equation\b", re.IGNORECASE)
PREVIEW_REF_RES = (
    re.compile(r"<v:imagedata\b[^>]*?\br:id\s*=\s*\"([^\"]+)\"", re.IGNORECASE),
    re.compile(r"<a:blip\b[^>]*?\br:embed\s*=\s*\"([^\"]+)\"", re.IGNORECASE),
)
IMAGE_BLOCK_TAGS = ("w:drawing", "w:pict", "w:object")

TEXT_TAGS = {"w:t", "m:t"}
LINE_BREAK_TAGS = {"w:br", "w:cr"}
SKIPPED_TAGS = {"w:instrtext", "w:deltext", "w:delinstrtext", "w:rpr", "w:ppr", "w:sectpr", "mc:fallback"}
UNDERLINE_JOIN_RE = re.compile(r"</u><u>")
INLINE_SPACE_RE = re.compile(r"[ \t\u00a0\u2009\u202f]+")


def find_balanced_blocks(markup: str, tag: str) -> List[Tuple[int, int]]:
    """Return ``(start, end)`` spans of the outermost ``<tag>...</tag>`` blocks.

    Nesting of the same tag is tracked with an explicit depth counter; an
    unterminated block is ignored.
    """
    token_re = re.compile(rf"<(/?){re.escape(tag)}(?=[\s/>])[^>]*>", re.IGNORECASE)
    spans: List[Tuple[int, int]] = []
    depth = 0
    start = 0
    for match in token_re.finditer(markup or ""):
        if match.group(1):
            if depth == 0:
                continue
            depth -= 1
            if depth == 0:
                spans.append((start, match.end()))
        elif match.group(0).endswith("/>"):
            if depth == 0:
                spans.append((match.start(), match.end()))
        else:
            if depth == 0:
                start = match.start()
            depth += 1
    return spans


def _merge_spans(spans: Sequence[Tuple[int, int]]) -> List[Tuple[int, int]]:
    merged: List[Tuple[int, int]] = []
    for start, end in sorted(spans):
        if merged and start < merged[-1][1]:
            continue
        merged.append((start, end))
    return merged


def _replace_spans(markup: str, replacements: Sequence[Tuple[int, int, str]]) -> str:
    if not replacements:
        return markup
    out: List[str] = []
    cursor = 0
    for start, end, text in replacements:
        out.append(markup[cursor:start])
        out.append(text)
        cursor = end
    out.append(markup[cursor:])
    return "".join(out)


def resolve_target(target: str, base_dir: str = "word") -> str:
    target = target.replace("\\", "/").strip()
    if target.startswith("/"):
        return posixpath.normpath(target.lstrip("/"))
    return posixpath.normpath(posixpath.join(base_dir, target))


def parse_relationships(rels_xml: str) -> Mapping[str, str]:
    try:
        from bs4 import BeautifulSoup  # type: ignore
    except Exception as exc:
        raise RuntimeError(f"beautifulsoup4 not available: {exc}") from exc

    soup = BeautifulSoup(rels_xml or "", "html.parser")
    mapping: Dict[str, str] = {}
    for rel in soup.find_all("relationship"):
        rel_id = (rel.get("id") or "").strip()
        target = (rel.get("target") or "").strip()
        if not rel_id or not target:
            continue
        if (rel.get("targetmode") or "").strip().lower() == "external":
            continue
        mapping[rel_id] = resolve_target(target)
    return MappingProxyType(mapping)


def _first_preview_ref(block: str) -> Optional[str]:
    for pattern in PREVIEW_REF_RES:
        match = pattern.search(block)
        if match:
            return match.group(1)
    return None


def locate_formulas(markup: str, relationships: Mapping[str, str]) -> Tuple[str, Dict[str, FormulaObject]]:
    formulas: Dict[str, FormulaObject] = {}
    replacements: List[Tuple[int, int, str]] = []
    for start, end in find_balanced_blocks(markup, "w:object"):
        block = markup[start:end]
        ole = OLE_OBJECT_RE.search(block)
        if ole is None:
            continue
        ole_tag = ole.group(0)
        prog_id = PROG_ID_ATTR_RE.search(ole_tag)
        if prog_id and prog_id.group(1) and not EQUATION_PROG_ID_RE.match(prog_id.group(1)):
            continue
        rel_match = REL_ID_ATTR_RE.search(ole_tag)
        if rel_match is None or rel_match.group(1) not in relationships:
            continue
        key = f"mathtype_{len(formulas) + 1}"
        formulas[key] = FormulaObject(
            key=key,
            binary_ref=rel_match.group(1),
            preview_ref=_first_preview_ref(block),
        )
        replacements.append((start, end, MATH_TOKEN.format(key=key)))
    return _replace_spans(markup, replacements), formulas


def strip_alternate_fallbacks(markup: str) -> str:
    spans = find_balanced_blocks(markup, "mc:Fallback")
    return _replace_spans(markup, [(start, end, "") for start, end in spans])


def locate_images(markup: str, relationships: Mapping[str, str]) -> Tuple[str, Dict[str, ImageRef]]:
    markup = strip_alternate_fallbacks(markup)
    spans: List[Tuple[int, int]] = []
    for tag in IMAGE_BLOCK_TAGS:
        spans.extend(find_balanced_blocks(markup, tag))

    images: Dict[str, ImageRef] = {}
    replacements: List[Tuple[int, int, str]] = []
    for start, end in _merge_spans(spans):
        rel_id = _first_preview_ref(markup[start:end])
        if rel_id is None or rel_id not in relationships:
            continue
        key = f"img_{len(images) + 1}"
        images[key] = ImageRef(key=key, rel_id=rel_id)
        replacements.append((start, end, IMAGE_TOKEN.format(key=key)))
    return _replace_spans(markup, replacements), images


def _run_underlined(run) -> bool:
    props = run.find("w:rpr", recursive=False)
    if props is None:
        return False
    underline = props.find("w:u", recursive=False)
    if underline is None:
        return False
    value = (underline.get("w:val") or "single").strip().lower()
    return value not in {"none", "0", "false"}


def _walk(node, parts: List[str]) -> None:
    from bs4.element import NavigableString, PreformattedString  # type: ignore

    for child in node.children:
        if isinstance(child, NavigableString):
            if isinstance(child, PreformattedString):
                continue
            if node.name in TEXT_TAGS:
                parts.append(str(child))
            else:
                parts.extend(match.group(0) for match in PLACEHOLDER_RE.finditer(str(child)))
            continue
        name = (child.name or "").lower()
        if name in SKIPPED_TAGS:
            continue
        if name in LINE_BREAK_TAGS:
            parts.append("\n")
            continue
        if name == "w:tab":
            parts.append("\t")
            continue
        if name == "w:r":
            run_parts: List[str] = []
            _walk(child, run_parts)
            run_text = "".join(run_parts)
            if run_text.strip() and _run_underlined(child):
                run_text = f"<u>{run_text}</u>"
            parts.append(run_text)
            continue
        _walk(child, parts)
        if name == "w:p":
            parts.append("\n")


def normalize_extracted_text(text: str) -> str:
    text = UNDERLINE_JOIN_RE.sub("", text.replace("\r\n", "\n").replace("\r", "\n"))
    lines = [INLINE_SPACE_RE.sub(" ", line).strip() for line in text.split("\n")]
    text = "\n".join(line for line in lines if line)
    return unicodedata.normalize("NFC", text)


def extract_text(markup: str) -> str:
    try:
        from bs4 import BeautifulSoup  # type: ignore
    except Exception as exc:
        raise RuntimeError(f"beautifulsoup4 not available: {exc}") from exc

    soup = BeautifulSoup(markup or "", "html.parser")
    root = soup.find("w:body") or soup
    parts: List[str] = []
    _walk(root, parts)
    return normalize_extracted_text("".join(parts))


