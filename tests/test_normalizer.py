from element_index.services.normalizer import UnicodeQueryNormalizer


def test_plain_text_is_folded_and_valid():
    result = UnicodeQueryNormalizer().normalize("  Creative   WRITER ")
    assert result.is_valid
    assert result.normalized_text == "creative writer"
    assert result.issues == []


def test_zero_width_and_bidi_characters_are_stripped():
    result = UnicodeQueryNormalizer().normalize("wri\u200bter\u202e")
    assert not result.is_valid
    assert result.normalized_text == "writer"
    assert "zero-width characters" in result.issues
    assert "direction override characters" in result.issues


def test_confusables_fold_to_latin():
    # Cyrillic a and ie inside an otherwise Latin word.
    result = UnicodeQueryNormalizer().normalize("p\u0430ss\u0435r")
    assert result.normalized_text == "passer"
    assert "confusable characters" in result.issues


def test_compatibility_forms_are_normalized():
    result = UnicodeQueryNormalizer().normalize("\uff37riter")  # fullwidth W
    assert result.normalized_text == "writer"
    assert not result.is_valid


def test_overlong_query_is_truncated():
    result = UnicodeQueryNormalizer(max_length=5).normalize("abcdefgh")
    assert result.normalized_text == "abcde"
    assert "too long" in result.issues
