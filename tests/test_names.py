import pytest

from matching.names import are_similar_names, name_score, normalize_name, significant_words


def test_normalize_name():
    assert normalize_name("The Regent's Park") == "regents park"
    assert normalize_name("  Clapham   Common ") == "clapham common"
    assert normalize_name("Lincoln's Inn Fields &amp; Gardens") == "lincolns inn fields & gardens"
    assert normalize_name("") == ""


def test_exact_and_containment_scores():
    assert name_score("Hyde Park", "hyde park") == 1.0
    assert name_score("The Regent's Park", "Regents Park") == 1.0
    assert name_score("Hyde Park", "Hyde Park Corner Gardens") == 0.8
    assert name_score("Hyde Park", "Hyde Park Corner Gardens", method="tokens") == 0.8


def test_empty_names_score_zero():
    assert name_score("", "Hyde Park") == 0.0
    assert name_score("Hyde Park", "") == 0.0


def test_token_jaccard_fallback():
    assert name_score("Clapham Common", "Tooting Common", method="tokens") == pytest.approx(1 / 3)
    assert name_score("Mile End Park", "Mile End Gardens", method="tokens") == pytest.approx(0.5)


def test_character_jaccard_fallback():
    score = name_score("Clapham Common", "Tooting Common")
    assert 0 < score < 1


def test_ignore_generic_words():
    assert name_score("Victoria Park", "Victoria Gardens", method="tokens") == pytest.approx(1 / 3)
    assert name_score("Victoria Park", "Victoria Gardens", method="tokens", ignore_generic=True) == 1.0
    # A name made only of generic words is kept as is
    assert name_score("The Park", "Park", ignore_generic=True) == 1.0


def test_unknown_method_rejected():
    with pytest.raises(ValueError):
        name_score("a", "b", method="soundex")


def test_similar_names_for_duplicate_check():
    assert are_similar_names("St James's Park", "St. James Park")
    assert are_similar_names("Burgess Park", "Burgess Park Lake")
    assert not are_similar_names("Hyde Park", "Green Park")
    assert not are_similar_names("", "Hyde Park")


def test_significant_words():
    assert significant_words("Bethnal Green Gardens") == ["bethnal"]


NAME_PAIRS = [
    ("Hyde Park", "Hyde Park Corner Gardens"),
    ("St. James's Park", "The St James Park"),
    ("Clapham Common", "Wandsworth Common"),
    ("Burgess Park", "Burgess Park Lake"),
    ("Victoria Embankment Gardens", "Embankment Gardens (Main)"),
    ("Mile End Park", "Bow Common"),
    ("The Green", "Green"),
    ("", "Holland Park"),
]


@pytest.mark.parametrize("method", ["chars", "tokens"])
@pytest.mark.parametrize("ignore_generic", [False, True])
@pytest.mark.parametrize("a,b", NAME_PAIRS)
def test_scores_are_symmetric_and_bounded(a, b, method, ignore_generic):
    forward = name_score(a, b, method=method, ignore_generic=ignore_generic)
    backward = name_score(b, a, method=method, ignore_generic=ignore_generic)
    assert forward == backward
    assert 0.0 <= forward <= 1.0
    if a:
        assert name_score(a, a, method=method, ignore_generic=ignore_generic) == 1.0
