"""LaTeX fixups applied after MathML conversion, and a structural validator."""

from __future__ import annotations

import re
from typing import List, Optional, Tuple

LEFT_RE = re.compile(r"\\left(?![A-Za-z])")
RIGHT_RE = re.compile(r"\\right(?![A-Za-z])")
LIM_RES = (
    re.compile(r"\\(?:mathrm|text|operatorname)\s*\{\s*lim\s*\}"),
    re.compile(r"(?<![\\A-Za-z])l\s*i\s*m(?![A-Za-z])"),
)
ARROW_REPLACEMENTS = (
    (re.compile(r"<\s*=\s*>"), r"\\Leftrightarrow "),
    (re.compile(r"(?<![<\\])=\s*>"), r"\\Rightarrow "),
    (re.compile(r"(?<![<\\])-\s*>"), r"\\to "),
    (re.compile(r"<-(?=\s|$|\})"), r"\\leftarrow "),
)
SET_BRACE_REPLACEMENTS = (
    (re.compile(r"\\left\s*\{"), r"\\left\\{"),
    (re.compile(r"\\right\s*\}"), r"\\right\\}"),
)
FRAC_RE = re.compile(r"\\[dt]?frac(?![A-Za-z])")
SPLIT_DIGITS_RE = re.compile(r"^\s*\d+(?:\s+\d+)+\s*$")
CASES_OPEN_RE = re.compile(r"\\left\\\{\s*\\begin\{(array|matrix|aligned)\}")
ENV_TOKEN_RE = re.compile(r"\\(begin|end)\{([A-Za-z*]+)\}")
RIGHT_DOT_RE = re.compile(r"\s*\\right\.")
BARE_SQRT_RE = re.compile(r"\\sqrt(?:\s+|(?=\d))(\\[A-Za-z]+|[A-Za-z0-9])")
RADICAL_INDICATOR_RE = re.compile(
    r"<(?:[\w.-]+:)?(?:msqrt|mroot)\b|√|&#8730;|&#x0*221a;|&radic;|notation\s*=\s*[\"'][^\"']*\bradical\b",
    re.IGNORECASE,
)
WHITESPACE_RE = re.compile(r"\s+")


def _skip_group(text: str, index: int) -> Optional[int]:
    """Return the index just past the brace group opening at ``index``."""
    if index >= len(text) or text[index] != "{":
        return None
    depth = 0
    i = index
    while i < len(text):
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    return None


def _skip_parens(text: str, index: int) -> Optional[int]:
    depth = 0
    for i in range(index, len(text)):
        if text[i] == "(":
            depth += 1
        elif text[i] == ")":
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def balance_left_right(latex: str) -> str:
    lefts = len(LEFT_RE.findall(latex))
    rights = len(RIGHT_RE.findall(latex))
    if lefts > rights:
        latex = latex + r" \right." * (lefts - rights)
    elif rights > lefts:
        latex = r"\left. " * (rights - lefts) + latex
    return latex


def repair_garbled_sequences(latex: str) -> str:
    for pattern in LIM_RES:
        latex = pattern.sub(r"\\lim ", latex)
    for pattern, replacement in ARROW_REPLACEMENTS:
        latex = pattern.sub(replacement, latex)
    for pattern, replacement in SET_BRACE_REPLACEMENTS:
        latex = pattern.sub(replacement, latex)
    return latex


def join_fraction_groups(latex: str) -> str:
    out: List[str] = []
    cursor = 0
    for match in FRAC_RE.finditer(latex):
        if match.start() < cursor:
            continue
        out.append(latex[cursor:match.end()])
        i = match.end()
        while i < len(latex) and latex[i].isspace():
            i += 1
        numerator_end = _skip_group(latex, i)
        if numerator_end is None:
            cursor = match.end()
            continue
        out.append(latex[i:numerator_end])
        j = numerator_end
        while j < len(latex) and latex[j].isspace():
            j += 1
        denominator_end = _skip_group(latex, j)
        if denominator_end is None:
            cursor = numerator_end
            continue
        denominator = latex[j + 1:denominator_end - 1]
        if SPLIT_DIGITS_RE.match(denominator):
            denominator = WHITESPACE_RE.sub("", denominator)
        out.append("{" + denominator + "}")
        cursor = denominator_end
    out.append(latex[cursor:])
    return "".join(out)


def _find_environment_end(latex: str, env: str, start: int) -> Optional[Tuple[int, int]]:
    depth = 0
    for match in ENV_TOKEN_RE.finditer(latex, start):
        if match.group(2) != env:
            continue
        if match.group(1) == "begin":
            depth += 1
        else:
            depth -= 1
            if depth == 0:
                return match.start(), match.end()
    return None


def rewrite_cases(latex: str) -> str:
    search_from = 0
    while True:
        match = CASES_OPEN_RE.search(latex, search_from)
        if match is None:
            return latex
        env = match.group(1)
        begin_at = latex.index("\\begin", match.start())
        end_span = _find_environment_end(latex, env, begin_at)
        if end_span is None:
            search_from = match.end()
            continue
        right = RIGHT_DOT_RE.match(latex, end_span[1])
        if right is None:
            search_from = match.end()
            continue
        body_start = match.end()
        if env == "array":
            spec_end = _skip_group(latex, body_start)
            if spec_end is not None:
                body_start = spec_end
        body = latex[body_start:end_span[0]].strip()
        replacement = r"\begin{cases} " + body + r" \end{cases}"
        latex = latex[:match.start()] + replacement + latex[right.end():]
        search_from = match.start() + len(replacement)


def repair_radical_glyphs(latex: str) -> str:
    out: List[str] = []
    i = 0
    while i < len(latex):
        ch = latex[i]
        if ch != "√":
            out.append(ch)
            i += 1
            continue
        j = i + 1
        while j < len(latex) and latex[j].isspace():
            j += 1
        end: Optional[int] = None
        if j < len(latex) and latex[j] == "{":
            end = _skip_group(latex, j)
            argument = latex[j + 1:end - 1] if end else None
        elif j < len(latex) and latex[j] == "(":
            end = _skip_parens(latex, j)
            argument = latex[j:end] if end else None
        else:
            token = re.match(r"\\[A-Za-z]+|[A-Za-z0-9]+", latex[j:])
            if token:
                end = j + token.end()
            argument = token.group(0) if token else None
        if argument is None or end is None:
            out.append(r"\sqrt{}")
            i += 1
            continue
        out.append(r"\sqrt{" + argument + "}")
        i = end
    latex = "".join(out)
    return BARE_SQRT_RE.sub(lambda m: r"\sqrt{" + m.group(1) + "}", latex)


def has_radical_indicator(source_markup: Optional[str]) -> bool:
    return bool(source_markup) and RADICAL_INDICATOR_RE.search(source_markup) is not None


def postprocess_latex(latex: str, source_markup: Optional[str] = None) -> str:
    if not latex or not latex.strip():
        return ""
    latex = balance_left_right(latex)
    latex = repair_garbled_sequences(latex)
    latex = join_fraction_groups(latex)
    latex = rewrite_cases(latex)
    latex = repair_radical_glyphs(latex)
    if has_radical_indicator(source_markup) and "\\sqrt" not in latex:
        latex = r"\sqrt{" + latex + "}"
    return WHITESPACE_RE.sub(" ", latex).strip()


def validate_latex_formula(latex: Optional[str]) -> bool:
    if latex is None or not latex.strip():
        return False
    depth = 0
    i = 0
    while i < len(latex):
        ch = latex[i]
        if ch == "\\":
            i += 2
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth < 0:
                return False
        i += 1
    if depth != 0:
        return False
    if len(LEFT_RE.findall(latex)) != len(RIGHT_RE.findall(latex)):
        return False
    stack: List[str] = []
    for match in ENV_TOKEN_RE.finditer(latex):
        if match.group(1) == "begin":
            stack.append(match.group(2))
        elif not stack or stack.pop() != match.group(2):
            return False
    return not stack
