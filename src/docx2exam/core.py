"""Core pipeline for docx2exam."""

from __future__ import annotations

import asyncio
import io
import json
import logging
import mimetypes
import os
import re
import zipfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .assembler import assemble_blocks, legacy_questions, render_markdown
from .external import (
    DEFAULT_OUTPUT_LIMIT,
    DEFAULT_PROCESS_TIMEOUT,
    DEFAULT_RASTERIZER_COMMAND,
    DEFAULT_TRANSLATOR_COMMAND,
    CommandRasterizer,
    CommandTranslator,
)
from .markup import DOCUMENT_RELS, DOCUMENT_XML, extract_text, locate_formulas, locate_images, parse_relationships
from .mathml import MathmlToLatex
from .models import ImageAsset, MathNode
from .parser import parse_exam
from .radicals import RadicalPreservingConverter
from .resolver import (
    ConcurrencyLimiter,
    FormulaCache,
    FormulaResolver,
    ImageResolver,
    Pix2TexRecognizer,
    Rasterizer,
    Translator,
    default_strategies,
)

LOG = logging.getLogger("docx2exam")

EXIT_INVALID_ARGS = 6
EXIT_OUTPUT_DIR = 7

DEFAULT_CONCURRENCY = 3
CONCURRENCY_ENV = "DOCX2EXAM_CONCURRENCY"
TRANSLATOR_CMD_ENV = "DOCX2EXAM_TRANSLATOR_CMD"
RASTERIZER_CMD_ENV = "DOCX2EXAM_RASTERIZER_CMD"
TEST_MODE_ENV = "DOCX2EXAM_TEST_MODE"
TEST_PIX2TEX_FORMULA_ENV = "DOCX2EXAM_TEST_PIX2TEX_FORMULA"
TEST_PIX2TEX_DEFAULT_FORMULA = r"\int_{0}^{1} x^2 \, dx = \frac{1}{3}"

EXTENSION_BY_MIME = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/gif": ".gif",
    "image/bmp": ".bmp",
    "image/tiff": ".tif",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
}


class ConversionError(RuntimeError):
    """Fatal conversion failure: the document cannot be processed at all."""


@dataclass
class ConversionConfig:
    concurrency: int = DEFAULT_CONCURRENCY
    translator_command: Optional[str] = DEFAULT_TRANSLATOR_COMMAND
    rasterizer_command: Optional[str] = DEFAULT_RASTERIZER_COMMAND
    process_timeout: float = DEFAULT_PROCESS_TIMEOUT
    output_limit: int = DEFAULT_OUTPUT_LIMIT
    enable_pix2tex: bool = False
    verbose: bool = False
    debug: bool = False
    test_mode: bool = False


@dataclass
class ConversionResult:
    payload: Dict[str, Any]
    assets: Dict[str, ImageAsset] = field(default_factory=dict)


def _env_flag_enabled(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() not in {"", "0", "false", "off", "no"}


def is_test_mode() -> bool:
    env_flag = os.environ.get(TEST_MODE_ENV)
    if env_flag is not None:
        return _env_flag_enabled(env_flag)
    return bool(os.environ.get("PYTEST_CURRENT_TEST"))


def _get_test_pix2tex_formula() -> str:
    override = os.environ.get(TEST_PIX2TEX_FORMULA_ENV)
    if override is not None and override.strip():
        return override.strip()
    return TEST_PIX2TEX_DEFAULT_FORMULA


def parse_concurrency(value: Any) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid concurrency value: {value!r}") from exc
    if parsed < 1:
        raise ValueError(f"Invalid concurrency value: {value!r} (must be >= 1)")
    return parsed


def config_from_env(environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> ConversionConfig:
    env = os.environ if environ is None else environ
    config = ConversionConfig(test_mode=is_test_mode())
    raw_concurrency = env.get(CONCURRENCY_ENV)
    if raw_concurrency:
        try:
            config.concurrency = parse_concurrency(raw_concurrency)
        except ValueError as exc:
            LOG.warning("%s; using %d", exc, DEFAULT_CONCURRENCY)
    if env.get(TRANSLATOR_CMD_ENV) is not None:
        config.translator_command = env[TRANSLATOR_CMD_ENV].strip() or None
    if env.get(RASTERIZER_CMD_ENV) is not None:
        config.rasterizer_command = env[RASTERIZER_CMD_ENV].strip() or None
    for name, value in overrides.items():
        if value is None:
            continue
        if not hasattr(config, name):
            raise TypeError(f"Unknown configuration field: {name}")
        setattr(config, name, value)
    return config


def _resolve_log_level(verbose: bool, debug: bool) -> int:
    return logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)


def _configure_docx2exam_logger(level: int) -> None:
    LOG.setLevel(level)
    LOG.propagate = False
    if not LOG.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        handler.setLevel(level)
        LOG.addHandler(handler)
    else:
        for handler in LOG.handlers:
            handler.setLevel(level)
            if handler.formatter is None:
                handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))


def setup_logging(verbose: bool, debug: bool) -> None:
    level = _resolve_log_level(verbose, debug)
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    _configure_docx2exam_logger(level)


def _progress_bar_line(current: int, total: int, width: int = 24) -> str:
    if total <= 0:
        return "[?]"
    clamped = max(0, min(current, total))
    filled = min(int((clamped / total) * width), width)
    return "[" + "#" * filled + "." * (width - filled) + "]"


def _log_verbose_progress(prefix: str, current: int, total: int, detail: Optional[str] = None) -> None:
    bar = _progress_bar_line(current, total)
    counter = f"[{current}/{total}]" if total > 0 else f"[{current}]"
    if total > 0:
        msg = f"{prefix} {bar} {counter} ({(current / total) * 100.0:.1f}%)"
    else:
        msg = f"{prefix} {bar} {counter}"
    if detail:
        msg = f"{msg} | {detail}"
    LOG.info(msg)


def slugify_filename(name: str) -> str:
    name = name.strip().replace(" ", "_")
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name)
    return name or "document"


def safe_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8", newline="\n")


class DocxPackage:
    """Read-only access to the entries of an in-memory ``.docx`` container."""

    def __init__(self, data: Optional[bytes]) -> None:
        if not data:
            raise ConversionError("No document payload provided")
        try:
            self._zip = zipfile.ZipFile(io.BytesIO(data))
        except zipfile.BadZipFile as exc:
            raise ConversionError(f"Not a valid .docx container: {exc}") from exc
        self._names = {name.lstrip("/").lower(): name for name in self._zip.namelist()}

    def close(self) -> None:
        self._zip.close()

    def get(self, path: str) -> Optional[bytes]:
        name = self._names.get(path.lstrip("/").lower())
        if name is None:
            return None
        try:
            return self._zip.read(name)
        except (KeyError, zipfile.BadZipFile, OSError, zlib.error, NotImplementedError) as exc:
            LOG.debug("Unable to read package entry %s: %s", path, exc)
            return None

    async def read(self, path: str) -> Optional[bytes]:
        return await asyncio.to_thread(self.get, path)

    def require_text(self, path: str) -> str:
        data = self.get(path)
        if data is None:
            raise ConversionError(f"Required entry missing or unreadable in document: {path}")
        return data.decode("utf-8", errors="replace")


def build_error_payload(message: str) -> Dict[str, Any]:
    return {"ok": False, "error": message}


def _count_types(questions: Any) -> Dict[str, int]:
    counts = {"mcq": 0, "true_false": 0, "short_answer": 0}
    for question in questions:
        counts[question.kind] = counts.get(question.kind, 0) + 1
    return counts


async def run_conversion(
    data: Optional[bytes],
    config: Optional[ConversionConfig] = None,
    *,
    translator: Optional[Translator] = None,
    rasterizer: Optional[Rasterizer] = None,
    flat_converter: Optional[Callable[[MathNode], str]] = None,
) -> ConversionResult:
    """Convert a ``.docx`` payload; raises :class:`ConversionError` on fatal input problems."""
    config = config or ConversionConfig()
    package = DocxPackage(data)
    try:
        document_xml = package.require_text(DOCUMENT_XML)
        relationships = parse_relationships(package.require_text(DOCUMENT_RELS))

        markup, formulas = locate_formulas(document_xml, relationships)
        markup, image_refs = locate_images(markup, relationships)
        if config.verbose:
            LOG.info("Located %d formula(s) and %d image(s)", len(formulas), len(image_refs))

        if translator is None and config.translator_command:
            translator = CommandTranslator(config.translator_command, config.process_timeout, config.output_limit)
        if rasterizer is None and config.rasterizer_command:
            rasterizer = CommandRasterizer(config.rasterizer_command, config.process_timeout, config.output_limit)

        recognizer: Optional[Pix2TexRecognizer] = None
        if config.enable_pix2tex:
            recognizer = Pix2TexRecognizer(_get_test_pix2tex_formula() if config.test_mode else None)
        elif config.verbose:
            LOG.info("Pix2Tex disabled by default (use --enable-pic2tex to activate)")

        limiter = ConcurrencyLimiter(config.concurrency)
        cache = FormulaCache()
        images = ImageResolver(package, relationships, rasterizer)
        formulas_resolver = FormulaResolver(
            package,
            relationships,
            converter=RadicalPreservingConverter(flat_converter or MathmlToLatex()),
            strategies=default_strategies(translator),
            limiter=limiter,
            cache=cache,
            images=images,
            recognizer=recognizer,
            progress=_log_verbose_progress if config.verbose else None,
        )

        latex_by_key, fallbacks = await formulas_resolver.resolve_all(formulas)
        plain_images = await images.resolve_all(image_refs)
    finally:
        package.close()

    text = extract_text(markup)
    exam = parse_exam(text)
    blocks = assemble_blocks(exam)
    assets: Dict[str, ImageAsset] = dict(plain_images)
    assets.update(fallbacks)

    stats = formulas_resolver.stats
    payload: Dict[str, Any] = {
        "ok": True,
        "total": len(exam.questions),
        "sections": [section.to_dict() for section in exam.sections],
        "blocks": blocks,
        "exam": {
            "sections": [section.to_dict() for section in exam.sections],
            "questions": [question.to_dict() for question in exam.questions],
        },
        "questions": legacy_questions(exam),
        "math": latex_by_key,
        "images": {key: asset.data_uri() for key, asset in assets.items()},
        "text": text,
        "debug": {
            "counts": _count_types(exam.questions),
            "concurrency": config.concurrency,
            "formulas": {
                "located": stats.located,
                "resolved": stats.resolved,
                "fallback": stats.fallback,
                "unavailable": stats.unavailable,
                "recognized": stats.recognized,
                "strategies": dict(stats.strategies),
            },
            "images": {
                "located": len(image_refs),
                "resolved": len(plain_images),
                "rasterized": images.rasterized,
            },
            "cacheHits": cache.hits,
            "peakInFlight": limiter.peak,
        },
    }
    if config.debug:
        LOG.debug("Conversion summary: %s", json.dumps(payload["debug"], ensure_ascii=False))
    return ConversionResult(payload=payload, assets=assets)


def convert_document(
    data: Optional[bytes],
    config: Optional[ConversionConfig] = None,
    *,
    translator: Optional[Translator] = None,
    rasterizer: Optional[Rasterizer] = None,
    flat_converter: Optional[Callable[[MathNode], str]] = None,
) -> Dict[str, Any]:
    """Synchronous entry point returning the result payload or the error payload."""
    try:
        result = asyncio.run(
            run_conversion(
                data,
                config,
                translator=translator,
                rasterizer=rasterizer,
                flat_converter=flat_converter,
            )
        )
    except ConversionError as exc:
        LOG.error("Conversion failed: %s", exc)
        return build_error_payload(str(exc))
    return result.payload


def _asset_filename(asset: ImageAsset) -> str:
    ext = EXTENSION_BY_MIME.get(asset.mime_type) or mimetypes.guess_extension(asset.mime_type) or ".bin"
    return f"{slugify_filename(asset.key)}{ext}"


def write_assets(assets: Mapping[str, ImageAsset], assets_dir: Path) -> Dict[str, str]:
    links: Dict[str, str] = {}
    if not assets:
        return links
    assets_dir.mkdir(parents=True, exist_ok=True)
    for key, asset in assets.items():
        filename = _asset_filename(asset)
        (assets_dir / filename).write_bytes(asset.payload)
        links[key] = f"{assets_dir.name}/{filename}"
    return links


def run_conversion_pipeline(input_path: Path, out_dir: Path, config: ConversionConfig) -> Tuple[Dict[str, Any], Path, Path]:
    try:
        data = input_path.read_bytes()
    except OSError as exc:
        raise ConversionError(f"Unable to read input file {input_path}: {exc}") from exc

    result = asyncio.run(run_conversion(data, config))
    payload = result.payload

    out_dir.mkdir(parents=True, exist_ok=True)
    links = write_assets(result.assets, out_dir / "assets")
    if config.verbose and links:
        LOG.info("Wrote %d asset(s) to %s", len(links), out_dir / "assets")

    base = slugify_filename(input_path.stem)
    md_out = out_dir / f"{base}.md"
    json_out = out_dir / f"{base}.json"
    safe_write_text(md_out, render_markdown(payload["blocks"], payload["math"], payload["images"], links))
    safe_write_text(json_out, json.dumps(payload, ensure_ascii=False, indent=2) + "\n")
    if config.verbose:
        LOG.info("Wrote %s and %s", md_out, json_out)
    return payload, md_out, json_out
