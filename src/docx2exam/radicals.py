"""Radical-preserving wrapper around a flat MathML to LaTeX converter."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .models import MathNode

LOG = logging.getLogger("docx2exam")

RADICAL_TAGS = {"msqrt", "mroot"}
TOKEN_TEMPLATE = "QRADTOKEN{n}Q"


@dataclass
class _Isolated:
    token: str
    node: MathNode


class RadicalPreservingConverter:
    """Convert a MathTree so that every radical survives the flat converter.

    Each outermost ``msqrt``/``mroot`` is swapped for an opaque ``mi`` token,
    the flat converter runs once over the substituted tree, and each token is
    then replaced by the recursively converted radical.
    """

    def __init__(self, flat: Callable[[MathNode], str]) -> None:
        self._flat = flat
        self._counter = 0

    def convert(self, node: Optional[MathNode]) -> str:
        if node is None:
            return ""
        substituted, isolated = self._isolate(node)
        latex = self._flat(substituted) or ""
        for item in isolated:
            rendered = self._render_radical(item.node)
            if item.token in latex:
                latex = latex.replace(item.token, rendered)
            else:
                LOG.warning("Flat converter lost radical placeholder %s; appending it", item.token)
                latex = f"{latex} {rendered}".strip()
        return latex

    __call__ = convert

    def _next_token(self) -> str:
        self._counter += 1
        return TOKEN_TEMPLATE.format(n=self._counter)

    def _isolate(self, node: MathNode) -> Tuple[MathNode, List[_Isolated]]:
        isolated: List[_Isolated] = []

        def _copy(current: MathNode) -> MathNode:
            if current.tag in RADICAL_TAGS:
                # nested radicals stay inside their outermost ancestor
                token = self._next_token()
                isolated.append(_Isolated(token=token, node=current))
                return MathNode(tag="mi", text=token)
            return MathNode(
                tag=current.tag,
                attrs=dict(current.attrs),
                children=[_copy(child) for child in current.children],
                text=current.text,
            )

        return _copy(node), isolated

    def _convert_children(self, children: List[MathNode]) -> str:
        if not children:
            return ""
        if len(children) == 1:
            return self.convert(children[0])
        return self.convert(MathNode(tag="mrow", children=list(children)))

    def _render_radical(self, node: MathNode) -> str:
        if node.tag == "mroot":
            radicand = self._convert_children(node.children[:1])
            index = self._convert_children(node.children[1:])
            if index:
                return "\\sqrt[" + index + "]{" + radicand + "}"
            return "\\sqrt{" + radicand + "}"
        return "\\sqrt{" + self._convert_children(node.children) + "}"
