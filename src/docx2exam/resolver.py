"""Formula and image resolution: payload reads, markup strategies, caching and fallbacks."""

from __future__ import annotations

import asyncio
import hashlib
import html
import io
import logging
import mimetypes
import posixpath
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from .latex import postprocess_latex, validate_latex_formula
from .mathml import normalize_mathml, parse_mathml
from .models import FormulaObject, ImageAsset, ImageRef, MathNode

LOG = logging.getLogger("docx2exam")

MATH_BLOCK_RE = re.compile(r"<(?:[\w.-]+:)?math\b.*?</(?:[\w.-]+:)?math\s*>", re.DOTALL | re.IGNORECASE)
ESCAPED_MATH_BLOCK_RE = re.compile(
    r"&lt;(?:[\w.-]+:)?math\b.*?&lt;/(?:[\w.-]+:)?math\s*&gt;", re.DOTALL | re.IGNORECASE
)

MIME_BY_EXTENSION = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    ".wmf": "image/x-wmf",
    ".emf": "image/x-emf",
}
VECTOR_SUFFIXES = {"image/x-wmf": ".wmf", "image/x-emf": ".emf"}
FALLBACK_PREFIX = "fallback_"

ProgressCallback = Callable[[str, int, int, Optional[str]], None]


class PackageReader(Protocol):
    async def read(self, path: str) -> Optional[bytes]:
        ...


class Translator(Protocol):
    async def translate(self, payload: bytes) -> Optional[str]:
        ...


class Rasterizer(Protocol):
    async def rasterize(self, payload: bytes, suffix: str) -> Optional[bytes]:
        ...


class ConcurrencyLimiter:
    """FIFO-fair bound on the number of in-flight units.

    A finishing unit hands its slot directly to the oldest waiter, so the
    in-flight count never exceeds ``limit`` and admission order is arrival
    order.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError(f"Concurrency limit must be >= 1, got {limit}")
        self.limit = limit
        self.in_flight = 0
        self.peak = 0
        self._waiters: Deque[asyncio.Future] = deque()

    def _admit(self) -> None:
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)

    async def acquire(self) -> None:
        if self.in_flight < self.limit and not self._waiters:
            self._admit()
            return
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        await waiter

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self.in_flight -= 1

    async def run(self, factory: Callable[[], Awaitable[Any]]) -> Any:
        await self.acquire()
        try:
            return await factory()
        finally:
            self.release()


class FormulaCache:
    """Per-request LaTeX memo keyed by payload hash.

    The pending future is stored before computing, so a second unit with the
    same hash awaits the first one instead of computing again.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, asyncio.Future] = {}
        self.hits = 0

    def __contains__(self, content_hash: str) -> bool:
        return content_hash in self._entries

    async def get_or_compute(self, content_hash: str, compute: Callable[[], Awaitable[str]]) -> str:
        existing = self._entries.get(content_hash)
        if existing is not None:
            self.hits += 1
            return await existing
        future = asyncio.get_running_loop().create_future()
        self._entries[content_hash] = future
        try:
            value = await compute()
        except Exception:
            future.set_result("")
            raise
        future.set_result(value)
        return value


def content_hash(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def scan_embedded_mathml(payload: bytes) -> Optional[str]:
    candidates = (
        payload.decode("utf-8", errors="ignore"),
        payload.decode("utf-16-le", errors="ignore"),
        payload[1:].decode("utf-16-le", errors="ignore"),
    )
    for text in candidates:
        match = MATH_BLOCK_RE.search(text)
        if match:
            return match.group(0)
        escaped = ESCAPED_MATH_BLOCK_RE.search(text)
        if escaped:
            return html.unescape(escaped.group(0))
    return None


class EmbeddedMarkupScan:
    name = "embedded-scan"

    async def find_markup(self, payload: bytes) -> Optional[str]:
        return scan_embedded_mathml(payload)


class TranslatorStrategy:
    name = "translator"

    def __init__(self, translator: Translator) -> None:
        self.translator = translator

    async def find_markup(self, payload: bytes) -> Optional[str]:
        return await self.translator.translate(payload)


def default_strategies(translator: Optional[Translator]) -> List[Any]:
    strategies: List[Any] = [EmbeddedMarkupScan()]
    if translator is not None:
        strategies.append(TranslatorStrategy(translator))
    return strategies


def guess_mime_type(path: str) -> str:
    suffix = posixpath.splitext(path)[1].lower()
    if suffix in MIME_BY_EXTENSION:
        return MIME_BY_EXTENSION[suffix]
    mime, _ = mimetypes.guess_type(path)
    return mime or "application/octet-stream"


def sniff_mime_type(payload: bytes) -> Optional[str]:
    try:
        from PIL import Image  # type: ignore
    except Exception as exc:
        raise RuntimeError(f"Pillow not available: {exc}") from exc

    try:
        with Image.open(io.BytesIO(payload)) as img:
            fmt = img.format
    except Exception:
        return None
    return Image.MIME.get(fmt or "")


class ImageResolver:
    def __init__(
        self,
        package: PackageReader,
        relationships: Mapping[str, str],
        rasterizer: Optional[Rasterizer] = None,
    ) -> None:
        self.package = package
        self.relationships = relationships
        self.rasterizer = rasterizer
        self.rasterized = 0

    async def load(self, key: str, path: str) -> Optional[ImageAsset]:
        try:
            payload = await self.package.read(path)
        except Exception as exc:
            LOG.debug("Image %s: unable to read %s: %s", key, path, exc)
            return None
        if not payload:
            LOG.debug("Image %s: %s missing or empty", key, path)
            return None

        mime_type = guess_mime_type(path)
        if mime_type in VECTOR_SUFFIXES:
            return await self._rasterize(key, path, payload, VECTOR_SUFFIXES[mime_type])
        if mime_type == "application/octet-stream":
            try:
                mime_type = sniff_mime_type(payload) or mime_type
            except RuntimeError as exc:
                LOG.debug("Image %s: %s", key, exc)
        return ImageAsset(key=key, mime_type=mime_type, payload=payload)

    async def _rasterize(self, key: str, path: str, payload: bytes, suffix: str) -> Optional[ImageAsset]:
        if self.rasterizer is None:
            LOG.info("Image %s: no rasterizer configured for %s", key, path)
            return None
        try:
            png = await self.rasterizer.rasterize(payload, suffix)
        except Exception as exc:
            LOG.debug("Image %s: rasterization of %s failed: %s", key, path, exc)
            return None
        if not png:
            LOG.info("Image %s: rasterization of %s produced no output", key, path)
            return None
        self.rasterized += 1
        return ImageAsset(key=key, mime_type="image/png", payload=png)

    async def load_ref(self, key: str, rel_id: Optional[str]) -> Optional[ImageAsset]:
        if not rel_id:
            return None
        path = self.relationships.get(rel_id)
        if path is None:
            LOG.debug("Image %s: relationship %s not found", key, rel_id)
            return None
        return await self.load(key, path)

    async def resolve_all(self, images: Mapping[str, ImageRef]) -> Dict[str, ImageAsset]:
        refs = list(images.values())
        results = await asyncio.gather(*(self.load_ref(ref.key, ref.rel_id) for ref in refs))
        return {ref.key: asset for ref, asset in zip(refs, results) if asset is not None}


class Pix2TexRecognizer:
    """Opt-in OCR of formula preview rasters.

    ``canned_formula`` replaces the model entirely (automated test runs).
    """

    def __init__(self, canned_formula: Optional[str] = None) -> None:
        self.canned_formula = canned_formula
        self._model: Any = None

    def _load_model(self) -> Any:
        if self._model is None:
            try:
                from pix2tex.cli import LatexOCR  # type: ignore
            except Exception as exc:
                raise RuntimeError(f"pix2tex not available: {exc}") from exc
            self._model = LatexOCR()
        return self._model

    def _recognize_sync(self, payload: bytes) -> Optional[str]:
        try:
            from PIL import Image  # type: ignore
        except Exception as exc:
            raise RuntimeError(f"Pillow not available: {exc}") from exc

        model = self._load_model()
        with Image.open(io.BytesIO(payload)) as img:
            return str(model(img)).strip()

    async def recognize(self, payload: bytes) -> Optional[str]:
        if self.canned_formula is not None:
            return self.canned_formula
        return await asyncio.to_thread(self._recognize_sync, payload)


@dataclass
class FormulaStats:
    located: int = 0
    resolved: int = 0
    fallback: int = 0
    unavailable: int = 0
    recognized: int = 0
    strategies: Dict[str, int] = field(default_factory=dict)


class FormulaResolver:
    def __init__(
        self,
        package: PackageReader,
        relationships: Mapping[str, str],
        *,
        converter: Callable[[Optional[MathNode]], str],
        strategies: Sequence[Any],
        limiter: ConcurrencyLimiter,
        cache: FormulaCache,
        images: ImageResolver,
        recognizer: Optional[Pix2TexRecognizer] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.package = package
        self.relationships = relationships
        self.converter = converter
        self.strategies = list(strategies)
        self.limiter = limiter
        self.cache = cache
        self.images = images
        self.recognizer = recognizer
        self.progress = progress
        self.stats = FormulaStats()
        self._done = 0

    def markup_to_latex(self, markup: str) -> str:
        normalized = normalize_mathml(markup)
        tree = parse_mathml(normalized)
        if tree is None:
            return ""
        return postprocess_latex(self.converter(tree), source_markup=markup)

    async def _latex_from_payload(self, formula: FormulaObject, payload: bytes) -> str:
        for strategy in self.strategies:
            try:
                markup = await strategy.find_markup(payload)
            except Exception as exc:
                LOG.debug("Formula %s: strategy %s failed: %s", formula.key, strategy.name, exc)
                continue
            if not markup:
                continue
            self.stats.strategies[strategy.name] = self.stats.strategies.get(strategy.name, 0) + 1
            try:
                return self.markup_to_latex(markup)
            except Exception as exc:
                LOG.debug("Formula %s: conversion failed: %s", formula.key, exc, exc_info=LOG.isEnabledFor(logging.DEBUG))
                return ""
        return ""

    async def _recognize(self, formula: FormulaObject, asset: ImageAsset) -> str:
        if self.recognizer is None:
            return ""
        try:
            candidate = await self.recognizer.recognize(asset.payload)
        except Exception as exc:
            LOG.debug("Pix2Tex failed on %s: %s", asset.key, exc)
            return ""
        if candidate and validate_latex_formula(candidate):
            LOG.info("Pix2Tex %s validation result: PASSED", formula.key)
            self.stats.recognized += 1
            return candidate.strip()
        LOG.info("Pix2Tex %s validation result: FAILED", formula.key)
        return ""

    async def resolve(self, formula: FormulaObject) -> Tuple[str, Optional[ImageAsset]]:
        latex = ""
        path = self.relationships.get(formula.binary_ref)
        payload: Optional[bytes] = None
        if path is not None:
            try:
                payload = await self.package.read(path)
            except Exception as exc:
                LOG.debug("Formula %s: unable to read %s: %s", formula.key, path, exc)
        if payload:
            formula.content_hash = content_hash(payload)
            latex = await self.cache.get_or_compute(
                formula.content_hash, lambda: self._latex_from_payload(formula, payload)
            )
        else:
            LOG.debug("Formula %s: payload unavailable", formula.key)

        if latex:
            self.stats.resolved += 1
            return latex, None

        fallback_key = FALLBACK_PREFIX + formula.key
        asset = await self.images.load_ref(fallback_key, formula.preview_ref)
        if asset is None:
            LOG.info("Formula %s: no markup and no preview image", formula.key)
            self.stats.unavailable += 1
            return "", None
        self.stats.fallback += 1
        LOG.info("Formula %s: using preview image %s", formula.key, fallback_key)
        recognized = await self._recognize(formula, asset)
        return recognized, asset

    async def _resolve_limited(self, formula: FormulaObject, total: int) -> Tuple[str, Optional[ImageAsset]]:
        result = await self.limiter.run(lambda: self.resolve(formula))
        self._done += 1
        if self.progress is not None:
            self.progress("Formulas", self._done, total, formula.key)
        return result

    async def resolve_all(self, formulas: Mapping[str, FormulaObject]) -> Tuple[Dict[str, str], Dict[str, ImageAsset]]:
        ordered = list(formulas.values())
        self.stats.located = len(ordered)
        self._done = 0
        results = await asyncio.gather(*(self._resolve_limited(formula, len(ordered)) for formula in ordered))
        latex_by_key: Dict[str, str] = {}
        fallbacks: Dict[str, ImageAsset] = {}
        for formula, (latex, asset) in zip(ordered, results):
            latex_by_key[formula.key] = latex
            if asset is not None:
                fallbacks[asset.key] = asset
        return latex_by_key, fallbacks
