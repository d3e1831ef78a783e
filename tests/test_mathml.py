from docx2exam.latex import postprocess_latex
from docx2exam.mathml import MATHML_NAMESPACE, MathmlToLatex, normalize_mathml, parse_mathml, serialize_mathml


def _to_latex(markup: str) -> str:
    return MathmlToLatex().convert(parse_mathml(normalize_mathml(markup)))


def test_normalize_strips_prefixes_and_ensures_namespace():
    markup = (
        '<?xml version="1.0"?>'
        '<mml:math xmlns:mml="http://www.w3.org/1998/Math/MathML"><mml:mi>x</mml:mi></mml:math>'
    )

    assert normalize_mathml(markup) == f'<math xmlns="{MATHML_NAMESPACE}"><mi>x</mi></math>'


def test_normalize_keeps_existing_default_namespace():
    markup = f'<math xmlns="{MATHML_NAMESPACE}" display="block"><mn>1</mn></math>'

    assert normalize_mathml(markup) == markup


def test_parse_inlines_single_row_tables():
    tree = parse_mathml(
        "<math><mtable><mtr><mtd><mi>a</mi></mtd><mtd><mo>=</mo><mn>1</mn></mtd></mtr></mtable></math>"
    )

    assert tree is not None
    assert [child.tag for child in tree.children] == ["mrow"]
    assert serialize_mathml(tree) == "<math><mrow><mi>a</mi><mo>=</mo><mn>1</mn></mrow></math>"


def test_parse_rewrites_legacy_radical_forms():
    enclosed = parse_mathml('<math><menclose notation="radical"><mi>x</mi></menclose></math>')
    glyph = parse_mathml("<math><mi>y</mi><mo>+</mo><mo>√</mo><mn>2</mn></math>")

    assert serialize_mathml(enclosed) == "<math><msqrt><mi>x</mi></msqrt></math>"
    assert serialize_mathml(glyph) == "<math><mi>y</mi><mo>+</mo><msqrt><mn>2</mn></msqrt></math>"


def test_parse_returns_none_without_math_element():
    assert parse_mathml("") is None
    assert parse_mathml("<p>not math</p>") is None


def test_flat_converter_renders_common_structures():
    assert _to_latex("<math><mfrac><mn>1</mn><mn>2</mn></mfrac></math>") == r"\frac{1}{2}"
    assert _to_latex("<math><msup><mi>x</mi><mn>2</mn></msup></math>") == "x^{2}"
    assert _to_latex("<math><msub><mi>a</mi><mi>n</mi></msub></math>") == "a_{n}"
    assert _to_latex("<math><mi>sin</mi><mi>x</mi></math>") == r"\sin x"
    assert _to_latex("<math><mi>α</mi><mo>≤</mo><mi>π</mi></math>") == r"\alpha\le\pi"
    assert _to_latex("<math><mfenced><mi>a</mi><mi>b</mi></mfenced></math>") == r"\left( a,b \right)"
    assert _to_latex("<math><mtext>và</mtext></math>") == r"\text{và}"


def test_flat_converter_wraps_multi_token_bases():
    markup = "<math><msup><mrow><mi>a</mi><mi>b</mi></mrow><mn>2</mn></msup></math>"

    assert _to_latex(markup) == "{ab}^{2}"


def test_flat_converter_renders_accents_and_limits():
    vector = "<math><mover><mrow><mi>A</mi><mi>B</mi></mrow><mo>→</mo></mover></math>"
    total = "<math><munderover><mo>∑</mo><mrow><mi>i</mi><mo>=</mo><mn>1</mn></mrow><mi>n</mi></munderover></math>"

    assert _to_latex(vector) == r"\overrightarrow{AB}"
    assert _to_latex(total) == r"\sum_{i=1}^{n}"


def test_piecewise_table_becomes_cases_after_postprocessing():
    markup = (
        '<math><mfenced open="{" close="">'
        "<mtable><mtr><mtd><mi>x</mi></mtd></mtr><mtr><mtd><mi>y</mi></mtd></mtr></mtable>"
        "</mfenced></math>"
    )

    latex = _to_latex(markup)

    assert latex == r"\left\{ \begin{matrix} x \\ y \end{matrix} \right."
    assert postprocess_latex(latex, markup) == r"\begin{cases} x \\ y \end{cases}"
