import asyncio
import io
import shlex
import sys
import time
from typing import Dict, Optional

import pytest

from docx2exam.external import CommandRasterizer, CommandTranslator, build_command
from docx2exam.mathml import MathmlToLatex
from docx2exam.models import FormulaObject, ImageRef
from docx2exam.radicals import RadicalPreservingConverter
from docx2exam.resolver import (
    ConcurrencyLimiter,
    FormulaCache,
    FormulaResolver,
    ImageResolver,
    Pix2TexRecognizer,
    default_strategies,
    scan_embedded_mathml,
)

SQRT_MATHML = "<math><msqrt><mn>2</mn></msqrt></math>"


def _png_bytes(width: int = 4, height: int = 4) -> bytes:
    from PIL import Image

    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color=(10, 200, 10)).save(buffer, format="PNG")
    return buffer.getvalue()


class _FakePackage:
    def __init__(self, entries: Dict[str, bytes]) -> None:
        self.entries = entries
        self.reads = []

    async def read(self, path: str) -> Optional[bytes]:
        self.reads.append(path)
        await asyncio.sleep(0)
        return self.entries.get(path)


class _FailingTranslator:
    def __init__(self) -> None:
        self.calls = 0

    async def translate(self, payload: bytes) -> Optional[str]:
        self.calls += 1
        return None


class _StaticTranslator:
    def __init__(self, markup: str) -> None:
        self.markup = markup
        self.calls = 0

    async def translate(self, payload: bytes) -> Optional[str]:
        self.calls += 1
        return self.markup


class _RecordingRasterizer:
    def __init__(self, output: Optional[bytes]) -> None:
        self.output = output
        self.calls = []

    async def rasterize(self, payload: bytes, suffix: str) -> Optional[bytes]:
        self.calls.append((payload, suffix))
        return self.output


def _make_resolver(entries, relationships, *, translator=None, rasterizer=None, recognizer=None, limit=3):
    package = _FakePackage(entries)
    images = ImageResolver(package, relationships, rasterizer)
    resolver = FormulaResolver(
        package,
        relationships,
        converter=RadicalPreservingConverter(MathmlToLatex()),
        strategies=default_strategies(translator),
        limiter=ConcurrencyLimiter(limit),
        cache=FormulaCache(),
        images=images,
        recognizer=recognizer,
    )
    return resolver, package


def test_limiter_bounds_in_flight_units_and_admits_in_order():
    async def scenario():
        limiter = ConcurrencyLimiter(3)
        state = {"active": 0, "max": 0}
        started = []

        async def unit(index: int) -> int:
            started.append(index)
            state["active"] += 1
            state["max"] = max(state["max"], state["active"])
            for _ in range(3):
                await asyncio.sleep(0)
            state["active"] -= 1
            return index

        results = await asyncio.gather(*(limiter.run(lambda i=i: unit(i)) for i in range(10)))
        return limiter, state, started, results

    limiter, state, started, results = asyncio.run(scenario())

    assert state["max"] == 3
    assert limiter.peak == 3
    assert limiter.in_flight == 0
    assert started == list(range(10))
    assert results == list(range(10))


def test_limiter_releases_slot_when_unit_fails():
    async def scenario():
        limiter = ConcurrencyLimiter(1)

        async def boom():
            raise ValueError("boom")

        async def ok():
            return "ok"

        return limiter, await asyncio.gather(limiter.run(boom), limiter.run(ok), return_exceptions=True)

    limiter, results = asyncio.run(scenario())

    assert isinstance(results[0], ValueError)
    assert results[1] == "ok"
    assert limiter.in_flight == 0


def test_limiter_rejects_non_positive_bound():
    with pytest.raises(ValueError):
        ConcurrencyLimiter(0)


def test_cache_computes_each_hash_once_even_when_pending():
    async def scenario():
        cache = FormulaCache()
        calls = []

        async def compute():
            calls.append(1)
            await asyncio.sleep(0)
            return "x^{2}"

        values = await asyncio.gather(cache.get_or_compute("h", compute), cache.get_or_compute("h", compute))
        return cache, calls, values

    cache, calls, values = asyncio.run(scenario())

    assert values == ["x^{2}", "x^{2}"]
    assert calls == [1]
    assert cache.hits == 1


def test_scan_finds_utf8_utf16_and_escaped_markup():
    mathml = "<math><mi>x</mi></math>"

    assert scan_embedded_mathml(b"\x00junk" + mathml.encode("utf-8") + b"tail") == mathml
    assert scan_embedded_mathml(b"\x01\x02" + mathml.encode("utf-16-le")) == mathml
    assert scan_embedded_mathml(b"\x01\x02\x03" + mathml.encode("utf-16-le")) == mathml
    assert scan_embedded_mathml(b"..&lt;math&gt;&lt;mi&gt;x&lt;/mi&gt;&lt;/math&gt;..") == mathml
    assert scan_embedded_mathml(b"\xd0\xcf\x11\xe0 no markup here") is None


def test_embedded_markup_converts_without_translator():
    translator = _FailingTranslator()
    resolver, _ = _make_resolver(
        {"word/embeddings/oleObject1.bin": b"\x00\x01" + SQRT_MATHML.encode("utf-8")},
        {"rId1": "word/embeddings/oleObject1.bin"},
        translator=translator,
    )

    latex, fallbacks = asyncio.run(resolver.resolve_all({"mathtype_1": FormulaObject("mathtype_1", "rId1")}))

    assert latex == {"mathtype_1": r"\sqrt{2}"}
    assert fallbacks == {}
    assert translator.calls == 0
    assert resolver.stats.strategies == {"embedded-scan": 1}


def test_translator_is_used_when_scan_finds_nothing():
    translator = _StaticTranslator("<math><mfrac><mn>1</mn><mn>2</mn></mfrac></math>")
    resolver, _ = _make_resolver(
        {"word/embeddings/oleObject1.bin": b"\xd0\xcf\x11\xe0 binary"},
        {"rId1": "word/embeddings/oleObject1.bin"},
        translator=translator,
    )

    latex, _ = asyncio.run(resolver.resolve_all({"mathtype_1": FormulaObject("mathtype_1", "rId1")}))

    assert latex == {"mathtype_1": r"\frac{1}{2}"}
    assert translator.calls == 1


def test_identical_payloads_share_one_conversion():
    payload = SQRT_MATHML.encode("utf-8")
    resolver, _ = _make_resolver(
        {"word/embeddings/a.bin": payload, "word/embeddings/b.bin": payload},
        {"rId1": "word/embeddings/a.bin", "rId2": "word/embeddings/b.bin"},
    )
    formulas = {
        "mathtype_1": FormulaObject("mathtype_1", "rId1"),
        "mathtype_2": FormulaObject("mathtype_2", "rId2"),
    }

    latex, _ = asyncio.run(resolver.resolve_all(formulas))

    assert latex["mathtype_1"] == latex["mathtype_2"] == r"\sqrt{2}"
    assert resolver.cache.hits == 1
    assert resolver.stats.strategies == {"embedded-scan": 1}
    assert formulas["mathtype_1"].content_hash == formulas["mathtype_2"].content_hash


def test_failed_translation_falls_back_to_preview_png():
    translator = _FailingTranslator()
    resolver, _ = _make_resolver(
        {
            "word/embeddings/oleObject1.bin": b"\xd0\xcf\x11\xe0 binary",
            "word/media/image1.png": _png_bytes(),
        },
        {"rId1": "word/embeddings/oleObject1.bin", "rId2": "word/media/image1.png"},
        translator=translator,
    )

    latex, fallbacks = asyncio.run(
        resolver.resolve_all({"mathtype_1": FormulaObject("mathtype_1", "rId1", preview_ref="rId2")})
    )

    assert latex == {"mathtype_1": ""}
    assert list(fallbacks) == ["fallback_mathtype_1"]
    assert fallbacks["fallback_mathtype_1"].data_uri().startswith("data:image/png;base64,")
    assert translator.calls == 1
    assert resolver.stats.fallback == 1


def test_unreadable_payload_without_preview_yields_empty_latex():
    resolver, _ = _make_resolver({}, {"rId1": "word/embeddings/missing.bin"})

    latex, fallbacks = asyncio.run(resolver.resolve_all({"mathtype_1": FormulaObject("mathtype_1", "rId1")}))

    assert latex == {"mathtype_1": ""}
    assert fallbacks == {}
    assert resolver.stats.unavailable == 1


def test_vector_preview_is_rasterized_before_storage():
    png = _png_bytes()
    rasterizer = _RecordingRasterizer(png)
    resolver, _ = _make_resolver(
        {"word/embeddings/oleObject1.bin": b"opaque", "word/media/image1.wmf": b"\xd7\xcd\xc6\x9a wmf"},
        {"rId1": "word/embeddings/oleObject1.bin", "rId2": "word/media/image1.wmf"},
        rasterizer=rasterizer,
    )

    _, fallbacks = asyncio.run(
        resolver.resolve_all({"mathtype_1": FormulaObject("mathtype_1", "rId1", preview_ref="rId2")})
    )

    asset = fallbacks["fallback_mathtype_1"]
    assert asset.mime_type == "image/png"
    assert asset.payload == png
    assert rasterizer.calls == [(b"\xd7\xcd\xc6\x9a wmf", ".wmf")]


def test_pix2tex_recognizer_recovers_latex_from_preview():
    resolver, _ = _make_resolver(
        {"word/embeddings/oleObject1.bin": b"opaque", "word/media/image1.png": _png_bytes()},
        {"rId1": "word/embeddings/oleObject1.bin", "rId2": "word/media/image1.png"},
        recognizer=Pix2TexRecognizer(canned_formula=r"\frac{a}{b}"),
    )

    latex, fallbacks = asyncio.run(
        resolver.resolve_all({"mathtype_1": FormulaObject("mathtype_1", "rId1", preview_ref="rId2")})
    )

    assert latex == {"mathtype_1": r"\frac{a}{b}"}
    assert "fallback_mathtype_1" in fallbacks
    assert resolver.stats.recognized == 1


def test_pix2tex_output_failing_validation_is_discarded():
    resolver, _ = _make_resolver(
        {"word/embeddings/oleObject1.bin": b"opaque", "word/media/image1.png": _png_bytes()},
        {"rId1": "word/embeddings/oleObject1.bin", "rId2": "word/media/image1.png"},
        recognizer=Pix2TexRecognizer(canned_formula=r"\frac{a}{b"),
    )

    latex, _ = asyncio.run(
        resolver.resolve_all({"mathtype_1": FormulaObject("mathtype_1", "rId1", preview_ref="rId2")})
    )

    assert latex == {"mathtype_1": ""}


def test_image_resolver_handles_plain_vector_and_missing_images():
    png = _png_bytes()
    package = _FakePackage(
        {
            "word/media/image1.png": png,
            "word/media/image2.emf": b"emf-bytes",
            "word/media/image3.bin": png,
        }
    )
    relationships = {
        "rId1": "word/media/image1.png",
        "rId2": "word/media/image2.emf",
        "rId3": "word/media/image3.bin",
        "rId4": "word/media/missing.png",
    }
    rasterizer = _RecordingRasterizer(None)
    resolver = ImageResolver(package, relationships, rasterizer)
    refs = {key: ImageRef(key, rel) for key, rel in [("img_1", "rId1"), ("img_2", "rId2"), ("img_3", "rId3"), ("img_4", "rId4")]}

    assets = asyncio.run(resolver.resolve_all(refs))

    assert sorted(assets) == ["img_1", "img_3"]
    assert assets["img_1"].mime_type == "image/png"
    assert assets["img_3"].mime_type == "image/png"
    assert rasterizer.calls == [(b"emf-bytes", ".emf")]


def test_build_command_substitutes_or_appends_paths():
    assert build_command("mt2mml {input}", input="/tmp/a.bin") == ["mt2mml", "/tmp/a.bin"]
    assert build_command("mt2mml --mathml", input="/tmp/a.bin") == ["mt2mml", "--mathml", "/tmp/a.bin"]
    assert build_command("conv {input} --out={output}", input="/a.wmf", output="/b.png") == [
        "conv",
        "/a.wmf",
        "--out=/b.png",
    ]


def test_command_translator_reads_mathml_from_stdout():
    script = "import sys; sys.stdout.write('noise ' + open(sys.argv[1]).read() + ' trailer')"
    translator = CommandTranslator(f"{shlex.quote(sys.executable)} -c {shlex.quote(script)} {{input}}")

    assert asyncio.run(translator.translate(SQRT_MATHML.encode("utf-8"))) == SQRT_MATHML


def test_command_translator_failures_yield_none():
    missing = CommandTranslator("docx2exam-definitely-missing-tool {input}")
    failing = CommandTranslator(f"{shlex.quote(sys.executable)} -c {shlex.quote('raise SystemExit(3)')}")
    slow = CommandTranslator(
        f"{shlex.quote(sys.executable)} -c {shlex.quote('import time; time.sleep(5)')}",
        timeout=0.2,
    )
    no_math = CommandTranslator(f"{shlex.quote(sys.executable)} -c {shlex.quote('print(42)')}")

    for translator in (missing, failing, slow, no_math):
        assert asyncio.run(translator.translate(b"payload")) is None


def test_timeout_kills_commands_spawned_by_a_wrapper():
    translator = CommandTranslator("sh -c 'sleep 30; echo \"<math/>\"' {input}", timeout=0.5)

    started = time.monotonic()
    assert asyncio.run(translator.translate(b"payload")) is None
    assert time.monotonic() - started < 10


def test_flooding_output_stops_at_the_ceiling():
    script = "import sys; w = sys.stdout.write; [w('y' * 65536) for _ in iter(int, 1)]"
    translator = CommandTranslator(
        f"{shlex.quote(sys.executable)} -c {shlex.quote(script)}",
        timeout=20.0,
        output_limit=1000,
    )

    started = time.monotonic()
    assert asyncio.run(translator.translate(b"payload")) is None
    assert time.monotonic() - started < 10


def test_command_rasterizer_reencodes_output_to_png(tmp_path):
    from PIL import Image

    script = (
        "import sys; from PIL import Image; "
        "Image.new('RGB', (3, 3)).save(sys.argv[2], format='BMP')"
    )
    rasterizer = CommandRasterizer(f"{shlex.quote(sys.executable)} -c {shlex.quote(script)} {{input}} {{output}}")

    data = asyncio.run(rasterizer.rasterize(b"wmf", ".wmf"))

    assert data is not None
    with Image.open(io.BytesIO(data)) as img:
        assert img.format == "PNG"
        assert img.size == (3, 3)
