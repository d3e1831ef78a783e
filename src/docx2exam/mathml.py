"""MathML normalization, MathTree parsing and the flat MathML to LaTeX walker."""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional

from .models import MathNode

MATHML_NAMESPACE = "http://www.w3.org/1998/Math/MathML"

NS_PREFIX_TAG_RE = re.compile(r"<(/?)[A-Za-z][\w.-]*:(?=[A-Za-z])")
XMLNS_PREFIXED_RE = re.compile(r"\s+xmlns:[\w.-]+\s*=\s*(?:\"[^\"]*\"|'[^']*')")
MATH_OPEN_RE = re.compile(r"<math\b([^>]*)>", re.IGNORECASE)
XML_DECL_RE = re.compile(r"<\?xml[^>]*\?>|<!DOCTYPE[^>]*>", re.IGNORECASE)

TOKEN_TAGS = {"mi", "mn", "mo", "mtext", "ms"}
IGNORED_TAGS = {"annotation", "annotation-xml", "mprescripts", "none", "malignmark", "maligngroup"}
INVISIBLE_OPERATORS = {"⁡", "⁢", "⁣", "⁤", "​"}

UNICODE_TO_LATEX: Dict[str, str] = {
    "∫": r"\int", "∬": r"\iint", "∭": r"\iiint", "∮": r"\oint",
    "∑": r"\sum", "∏": r"\prod", "∐": r"\coprod",
    "⋃": r"\bigcup", "⋂": r"\bigcap", "∪": r"\cup", "∩": r"\cap",
    "−": "-", "±": r"\pm", "∓": r"\mp", "×": r"\times", "÷": r"\div",
    "⋅": r"\cdot", "·": r"\cdot", "∙": r"\cdot", "∗": "*", "⋆": "*",
    "≤": r"\le", "≥": r"\ge", "⩽": r"\le", "⩾": r"\ge", "≠": r"\ne",
    "≈": r"\approx", "≡": r"\equiv", "∼": r"\sim", "≅": r"\cong", "∝": r"\propto",
    "∞": r"\infty", "∂": r"\partial", "∇": r"\nabla", "∀": r"\forall", "∃": r"\exists",
    "∈": r"\in", "∉": r"\notin", "∋": r"\ni", "∅": r"\varnothing", "ℝ": r"\mathbb{R}",
    "ℕ": r"\mathbb{N}", "ℤ": r"\mathbb{Z}", "ℚ": r"\mathbb{Q}", "ℂ": r"\mathbb{C}",
    "⊂": r"\subset", "⊃": r"\supset", "⊆": r"\subseteq", "⊇": r"\supseteq", "⊄": r"\not\subset",
    "∠": r"\angle", "⊥": r"\perp", "∥": r"\parallel", "//": r"\parallel", "△": r"\triangle",
    "°": r"^{\circ}", "′": "'", "″": "''", "…": r"\ldots", "⋯": r"\cdots", "⋮": r"\vdots",
    "→": r"\to", "←": r"\leftarrow", "↔": r"\leftrightarrow", "⇒": r"\Rightarrow",
    "⇐": r"\Leftarrow", "⇔": r"\Leftrightarrow", "↑": r"\uparrow", "↓": r"\downarrow",
    "∧": r"\wedge", "∨": r"\vee", "¬": r"\neg",
    "α": r"\alpha", "β": r"\beta", "γ": r"\gamma", "δ": r"\delta", "ε": r"\varepsilon",
    "ϵ": r"\epsilon", "ζ": r"\zeta", "η": r"\eta", "θ": r"\theta", "ϑ": r"\vartheta",
    "ι": r"\iota", "κ": r"\kappa", "λ": r"\lambda", "μ": r"\mu", "ν": r"\nu", "ξ": r"\xi",
    "π": r"\pi", "ρ": r"\rho", "σ": r"\sigma", "τ": r"\tau", "υ": r"\upsilon",
    "φ": r"\varphi", "ϕ": r"\phi", "χ": r"\chi", "ψ": r"\psi", "ω": r"\omega",
    "Γ": r"\Gamma", "Δ": r"\Delta", "Θ": r"\Theta", "Λ": r"\Lambda", "Ξ": r"\Xi",
    "Π": r"\Pi", "Σ": r"\Sigma", "Φ": r"\Phi", "Ψ": r"\Psi", "Ω": r"\Omega",
    "{": r"\{", "}": r"\}", "%": r"\%", "&": r"\&", "#": r"\#", "$": r"\$",
    "⟨": r"\langle", "⟩": r"\rangle", "〈": r"\langle", "〉": r"\rangle",
    "‖": r"\|", "⌊": r"\lfloor", "⌋": r"\rfloor", "⌈": r"\lceil", "⌉": r"\rceil",
}

FUNCTION_NAMES = {
    "sin", "cos", "tan", "cot", "sec", "csc", "arcsin", "arccos", "arctan",
    "sinh", "cosh", "tanh", "log", "ln", "lg", "exp", "lim", "max", "min",
    "sup", "inf", "det", "gcd", "deg", "arg",
}
LIMIT_STYLE_BASES = {r"\sum", r"\prod", r"\coprod", r"\bigcup", r"\bigcap", r"\lim", r"\max", r"\min", r"\sup", r"\inf"}
OVER_ACCENTS = {
    "→": r"\overrightarrow", "⃗": r"\vec", "¯": r"\overline", "‾": r"\overline", "_": r"\overline",
    "^": r"\hat", "ˆ": r"\hat", "~": r"\tilde", "˜": r"\tilde", "˙": r"\dot", "¨": r"\ddot",
    "⌢": r"\widehat", "⏜": r"\overparen",
}
UNDER_ACCENTS = {"_": r"\underline", "¯": r"\underline", "‾": r"\underline", "⏟": r"\underbrace"}
FENCE_TO_LATEX = {"": ".", "{": r"\{", "}": r"\}", "⟨": r"\langle", "⟩": r"\rangle", "‖": r"\|", "|": "|"}
COMMAND_TAIL_RE = re.compile(r"\\[A-Za-z]+$")


def normalize_mathml(markup: str) -> str:
    text = XML_DECL_RE.sub("", markup or "").strip()
    text = NS_PREFIX_TAG_RE.sub(r"<\1", text)
    text = XMLNS_PREFIXED_RE.sub("", text)

    def _ensure_namespace(match: re.Match) -> str:
        attrs = match.group(1)
        if "xmlns=" in attrs:
            return match.group(0)
        return f'<math xmlns="{MATHML_NAMESPACE}"{attrs}>'

    return MATH_OPEN_RE.sub(_ensure_namespace, text, count=1)


def _tag_to_node(tag) -> Optional[MathNode]:
    from bs4.element import NavigableString, Tag  # type: ignore

    name = (tag.name or "").lower()
    if name in IGNORED_TAGS:
        return None
    attrs = {str(k).lower(): " ".join(v) if isinstance(v, list) else str(v) for k, v in tag.attrs.items()}
    if name in TOKEN_TAGS:
        return MathNode(tag=name, attrs=attrs, text=tag.get_text())
    children: List[MathNode] = []
    for child in tag.children:
        if isinstance(child, Tag):
            node = _tag_to_node(child)
            if node is not None:
                children.append(node)
        elif isinstance(child, NavigableString) and str(child).strip():
            children.append(MathNode(tag="mtext", text=str(child).strip()))
    if name == "semantics" and children:
        children = children[:1]
    return MathNode(tag=name, attrs=attrs, children=children)


def _inline_single_row_tables(node: MathNode) -> MathNode:
    children = [_inline_single_row_tables(child) for child in node.children]
    node.children = children
    if node.tag != "mtable":
        return node
    rows = [child for child in children if child.tag in {"mtr", "mlabeledtr"}]
    if len(rows) != 1 or len(rows) != len(children):
        return node
    cells: List[MathNode] = []
    for cell in rows[0].children:
        cells.extend(cell.children if cell.tag == "mtd" else [cell])
    return MathNode(tag="mrow", children=cells)


def _rewrite_legacy_radicals(node: MathNode) -> MathNode:
    children = [_rewrite_legacy_radicals(child) for child in node.children]
    rewritten: List[MathNode] = []
    i = 0
    while i < len(children):
        child = children[i]
        is_glyph = child.tag == "mo" and child.text.strip() == "√"
        if is_glyph and i + 1 < len(children):
            rewritten.append(MathNode(tag="msqrt", children=[children[i + 1]]))
            i += 2
            continue
        rewritten.append(child)
        i += 1
    node.children = rewritten
    if node.tag == "menclose" and "radical" in node.attrs.get("notation", "").split():
        return MathNode(tag="msqrt", children=node.children)
    return node


def normalize_tree(node: MathNode) -> MathNode:
    node = _inline_single_row_tables(node)
    return _rewrite_legacy_radicals(node)


def parse_mathml(markup: str) -> Optional[MathNode]:
    try:
        from bs4 import BeautifulSoup  # type: ignore
    except Exception as exc:
        raise RuntimeError(f"beautifulsoup4 not available: {exc}") from exc

    if not markup or not markup.strip():
        return None
    soup = BeautifulSoup(markup, "html.parser")
    root = soup.find("math")
    if root is None:
        return None
    node = _tag_to_node(root)
    if node is None:
        return None
    return normalize_tree(node)


def serialize_mathml(node: MathNode) -> str:
    attrs = "".join(f' {key}="{value}"' for key, value in node.attrs.items())
    if node.tag in TOKEN_TAGS:
        text = node.text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
        return f"<{node.tag}{attrs}>{text}</{node.tag}>"
    inner = "".join(serialize_mathml(child) for child in node.children)
    return f"<{node.tag}{attrs}>{inner}</{node.tag}>"


def join_latex(parts: Iterable[str]) -> str:
    out = ""
    for part in parts:
        if not part:
            continue
        if out and COMMAND_TAIL_RE.search(out) and part[0].isalpha():
            out += " "
        out += part
    return out


def _group(latex: str) -> str:
    return "{" + latex + "}"


class MathmlToLatex:
    """Single-pass MathML to LaTeX conversion.

    Every element is rendered from its children only; there is no lookahead
    across siblings, so structures spread over several siblings (legacy
    radicals, fences built from loose ``mo`` elements) are rendered as-is.
    """

    def __call__(self, node: MathNode) -> str:
        return self.convert(node)

    def convert(self, node: MathNode) -> str:
        return self._render(node).strip()

    def _render_children(self, children: Iterable[MathNode]) -> str:
        return join_latex(self._render(child) for child in children)

    def _render(self, node: MathNode) -> str:
        handler = getattr(self, f"_render_{node.tag.replace('-', '_')}", None)
        if handler is not None:
            return handler(node)
        return self._render_children(node.children)

    def _render_mi(self, node: MathNode) -> str:
        text = node.text.strip()
        if not text:
            return ""
        if text in FUNCTION_NAMES:
            return "\\" + text
        if len(text) == 1:
            return UNICODE_TO_LATEX.get(text, text)
        return join_latex(UNICODE_TO_LATEX.get(ch, ch) for ch in text)

    def _render_mn(self, node: MathNode) -> str:
        return node.text.strip().replace(",", "{,}")

    def _render_mo(self, node: MathNode) -> str:
        text = node.text.strip()
        if not text or text in INVISIBLE_OPERATORS:
            return ""
        if text in FUNCTION_NAMES:
            return "\\" + text
        if text in UNICODE_TO_LATEX:
            return UNICODE_TO_LATEX[text]
        return join_latex(UNICODE_TO_LATEX.get(ch, ch) for ch in text if ch not in INVISIBLE_OPERATORS)

    def _render_mtext(self, node: MathNode) -> str:
        text = node.text
        if not text.strip():
            return " " if text else ""
        escaped = text.replace("\\", r"\backslash ").replace("{", r"\{").replace("}", r"\}")
        return r"\text{" + escaped + "}"

    _render_ms = _render_mtext

    def _render_mspace(self, node: MathNode) -> str:
        return " "

    def _render_mphantom(self, node: MathNode) -> str:
        return ""

    def _render_mfrac(self, node: MathNode) -> str:
        parts = [self._render(child) for child in node.children[:2]]
        while len(parts) < 2:
            parts.append("")
        if node.attrs.get("linethickness", "").strip() in {"0", "0px", "0pt"}:
            return r"\binom" + _group(parts[0]) + _group(parts[1])
        return r"\frac" + _group(parts[0]) + _group(parts[1])

    def _render_base(self, node: Optional[MathNode]) -> str:
        if node is None:
            return "{}"
        latex = self._render(node)
        if node.tag == "mrow" and len(node.children) > 1:
            return _group(latex)
        return latex

    def _render_msup(self, node: MathNode) -> str:
        base = self._render_base(node.children[0] if node.children else None)
        sup = self._render(node.children[1]) if len(node.children) > 1 else ""
        return f"{base}^{_group(sup)}"

    def _render_msub(self, node: MathNode) -> str:
        base = self._render_base(node.children[0] if node.children else None)
        sub = self._render(node.children[1]) if len(node.children) > 1 else ""
        return f"{base}_{_group(sub)}"

    def _render_msubsup(self, node: MathNode) -> str:
        base = self._render_base(node.children[0] if node.children else None)
        sub = self._render(node.children[1]) if len(node.children) > 1 else ""
        sup = self._render(node.children[2]) if len(node.children) > 2 else ""
        return f"{base}_{_group(sub)}^{_group(sup)}"

    def _render_munder(self, node: MathNode) -> str:
        base_node = node.children[0] if node.children else None
        under_node = node.children[1] if len(node.children) > 1 else None
        base = self._render(base_node) if base_node else ""
        if under_node is not None and under_node.tag == "mo" and under_node.text.strip() in UNDER_ACCENTS:
            return UNDER_ACCENTS[under_node.text.strip()] + _group(base)
        under = self._render(under_node) if under_node else ""
        if base in LIMIT_STYLE_BASES or base in {r"\int", r"\oint"}:
            return f"{base}_{_group(under)}"
        return r"\underset" + _group(under) + _group(base)

    def _render_mover(self, node: MathNode) -> str:
        base_node = node.children[0] if node.children else None
        over_node = node.children[1] if len(node.children) > 1 else None
        base = self._render(base_node) if base_node else ""
        if over_node is not None and over_node.tag == "mo" and over_node.text.strip() in OVER_ACCENTS:
            return OVER_ACCENTS[over_node.text.strip()] + _group(base)
        over = self._render(over_node) if over_node else ""
        if base in LIMIT_STYLE_BASES or base in {r"\int", r"\oint"}:
            return f"{base}^{_group(over)}"
        return r"\overset" + _group(over) + _group(base)

    def _render_munderover(self, node: MathNode) -> str:
        base = self._render(node.children[0]) if node.children else ""
        under = self._render(node.children[1]) if len(node.children) > 1 else ""
        over = self._render(node.children[2]) if len(node.children) > 2 else ""
        return f"{base}_{_group(under)}^{_group(over)}"

    def _render_mfenced(self, node: MathNode) -> str:
        open_fence = node.attrs.get("open", "(")
        close_fence = node.attrs.get("close", ")")
        separators = [ch for ch in node.attrs.get("separators", ",") if not ch.isspace()]
        pieces: List[str] = []
        for index, child in enumerate(node.children):
            if index and separators:
                pieces.append(separators[min(index - 1, len(separators) - 1)])
            pieces.append(self._render(child))
        inner = join_latex(pieces)
        left = FENCE_TO_LATEX.get(open_fence, UNICODE_TO_LATEX.get(open_fence, open_fence))
        right = FENCE_TO_LATEX.get(close_fence, UNICODE_TO_LATEX.get(close_fence, close_fence))
        return r"\left" + left + " " + inner + r" \right" + right

    def _render_mtable(self, node: MathNode) -> str:
        rows = [self._render(row) for row in node.children]
        return r"\begin{matrix} " + r" \\ ".join(rows) + r" \end{matrix}"

    def _render_mtr(self, node: MathNode) -> str:
        return " & ".join(self._render(cell) for cell in node.children)

    def _render_mlabeledtr(self, node: MathNode) -> str:
        return " & ".join(self._render(cell) for cell in node.children[1:])

    def _render_menclose(self, node: MathNode) -> str:
        notation = node.attrs.get("notation", "").split()
        inner = self._render_children(node.children)
        if "radical" in notation:
            return r"\sqrt" + _group(inner)
        if "box" in notation or "roundedbox" in notation:
            return r"\boxed" + _group(inner)
        if "updiagonalstrike" in notation or "downdiagonalstrike" in notation:
            return r"\cancel" + _group(inner)
        return inner

    def _render_msqrt(self, node: MathNode) -> str:
        return r"\sqrt" + _group(self._render_children(node.children))

    def _render_mroot(self, node: MathNode) -> str:
        base = self._render(node.children[0]) if node.children else ""
        index = self._render_children(node.children[1:])
        if not index:
            return r"\sqrt" + _group(base)
        return r"\sqrt[" + index + "]" + _group(base)

    def _render_maction(self, node: MathNode) -> str:
        return self._render(node.children[0]) if node.children else ""
