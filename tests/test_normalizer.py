from audiobook_pipeline.normalizer import NormalizeOptions, clean_stats, normalize


def test_normalize_strips_markdown_and_folds_paragraphs():
    text = "# Title\n\n**Bold** and [link](http://example.com) text."

    assert normalize(text) == "Title. Bold and link text."


def test_normalize_preserve_newlines_keeps_paragraph_breaks():
    text = "Line one  \n\n\n\n   Line two"

    assert normalize(text, NormalizeOptions(preserve_newlines=True)) == "Line one\n\nLine two"


def test_normalize_removes_emoji_hashtags_and_symbols():
    assert normalize("Hello 😀 world & friends #tag") == "Hello world friends"


def test_normalize_unescapes_html_entities():
    assert normalize("Tom &amp; Jerry&nbsp;go") == "Tom Jerry go"


def test_normalize_replaces_em_dash():
    out = normalize("Wait — what")

    assert "—" not in out
    assert "," in out

    dotted = normalize("Wait — what", NormalizeOptions(dash_replacement="."))
    assert "." in dotted


def test_normalize_drops_single_character_lines():
    out = normalize("a\nReal line", NormalizeOptions(preserve_newlines=True))

    assert out == "Real line"


def test_normalize_keeps_vietnamese_letters_and_fixes_chapter_dash():
    assert normalize("Chương 1 - Khởi đầu") == "Chương 1. Khởi đầu"


def test_normalize_empty_and_deterministic():
    assert normalize("") == ""
    assert normalize("   \n\t ") == ""

    text = "Some *markdown* -- with `code` and > quotes\n\n- item one\n- item two"
    assert normalize(text) == normalize(text)


def test_clean_stats_reports_removed_percentage():
    stats = clean_stats("abcd", "ab")

    assert stats.original_length == 4
    assert stats.cleaned_length == 2
    assert stats.removed == 2
    assert stats.percentage == 50
    assert clean_stats("", "").percentage == 0
