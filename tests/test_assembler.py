from docx2exam.assembler import (
    FORMULA_UNAVAILABLE,
    assemble_blocks,
    legacy_questions,
    render_markdown,
    substitute_placeholders,
)
from docx2exam.parser import parse_exam

SECTIONED = (
    "Câu 1. Mở đầu?\n"
    "PHẦN I. Trắc nghiệm\n"
    "Câu 2. Chọn?\nA. 1\n*B. 2\n"
    "PHẦN II. Đúng sai\n"
    "PHẦN III. Trả lời ngắn\n"
    "Câu 3. Tính?\n"
)


def test_blocks_interleave_section_headers_in_question_order():
    blocks = assemble_blocks(parse_exam(SECTIONED))

    assert [block["type"] for block in blocks] == ["question", "section", "question", "section", "question"]
    assert blocks[1] == {"type": "section", "order": 1, "id": "I", "title": "PHẦN I. Trắc nghiệm", "label": "Trắc nghiệm"}
    assert blocks[3]["id"] == "III"
    assert [block["questionType"] for block in blocks if block["type"] == "question"] == [
        "short_answer",
        "mcq",
        "short_answer",
    ]


def test_empty_section_is_listed_but_has_no_header_block():
    exam = parse_exam(SECTIONED)
    blocks = assemble_blocks(exam)

    assert [section.section_id for section in exam.sections] == ["I", "II", "III"]
    assert "II" not in [block.get("id") for block in blocks if block["type"] == "section"]


def test_legacy_questions_only_list_multiple_choice():
    legacy = legacy_questions(parse_exam(SECTIONED))

    assert legacy == [
        {
            "id": 2,
            "content": "Chọn?",
            "answers": [
                {"label": "A", "text": "1"},
                {"label": "B", "text": "2"},
                {"label": "C", "text": ""},
                {"label": "D", "text": ""},
            ],
            "correct": "B",
        }
    ]


def test_placeholders_become_latex_fallback_images_or_notice():
    math = {"mathtype_1": "x^{2}", "mathtype_2": "", "mathtype_3": ""}
    images = {"fallback_mathtype_2": "data:image/png;base64,AAA", "img_1": "data:image/png;base64,BBB"}
    links = {"img_1": "assets/img_1.png"}
    text = "[!m:$mathtype_1$] [!m:$mathtype_2$] [!m:$mathtype_3$] [!img:$img_1$] [!img:$img_9$]"

    result = substitute_placeholders(text, math, images, links)

    assert result == (
        "$x^{2}$ ![fallback_mathtype_2](data:image/png;base64,AAA) "
        f"{FORMULA_UNAVAILABLE} ![img_1](assets/img_1.png) "
    )


def test_render_markdown_for_mcq():
    exam = parse_exam("Câu 1. Tính [!m:$mathtype_1$]\nA. [!img:$img_1$]\nB. 2\n*C. 3\nD. 4\nLời giải: xem hình")
    blocks = assemble_blocks(exam)

    markdown = render_markdown(blocks, {"mathtype_1": r"\sqrt{2}"}, {}, {"img_1": "assets/img_1.png"})

    assert markdown == (
        "**Câu 1.** Tính $\\sqrt{2}$\n"
        "\n"
        "- A. ![img_1](assets/img_1.png)\n"
        "- B. 2\n"
        "- C. 3\n"
        "- D. 4\n"
        "\n"
        "**Đáp án:** C\n"
        "\n"
        "**Lời giải:**\n"
        "\n"
        "xem hình\n"
    )


def test_render_markdown_for_sections_and_true_false():
    exam = parse_exam("PHẦN II. Đúng sai\nCâu 1. Xét\na) một\n<u>b</u>) hai\nLời giải chi tiết: vì vậy")

    markdown = render_markdown(assemble_blocks(exam), {}, {})

    assert markdown.startswith("## PHẦN II. Đúng sai\n\n**Câu 1.** Xét\n")
    assert "- a) một\n" in markdown
    assert "- b) hai (Đúng)\n" in markdown
    assert "- c)\n" in markdown
    assert "**Lời giải chi tiết:**\n\nvì vậy\n" in markdown
    assert "**Lời giải:**" not in markdown
