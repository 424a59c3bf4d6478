from app.utils import generate_pair_code, random_token, title_sort_key, utcnow


def test_generate_pair_code_is_six_digits():
    for _ in range(50):
        code = generate_pair_code()
        assert len(code) == 6
        assert code.isdigit()


def test_random_token_length_and_alphabet():
    token = random_token(24)
    assert len(token) == 24
    assert token.isalnum()
    assert random_token() != random_token()


def test_title_sort_key_ignores_case_and_accents():
    titles = ["Élan", "alpha", "Zeta", "beta"]
    assert sorted(titles, key=title_sort_key) == ["alpha", "beta", "Élan", "Zeta"]


def test_title_sort_key_follows_russian_alphabet():
    titles = ["Йеллоустоун", "Иллюзия обмана", "Ёлки", "ежик в тумане", "Жмурки"]
    assert sorted(titles, key=title_sort_key) == [
        "ежик в тумане",
        "Ёлки",
        "Жмурки",
        "Иллюзия обмана",
        "Йеллоустоун",
    ]


def test_title_sort_key_keeps_short_i_when_decomposed():
    decomposed = "\u0418\u0306" + "еллоустоун"
    assert sorted([decomposed, "Иллюзия обмана"], key=title_sort_key) == [
        "Иллюзия обмана",
        decomposed,
    ]


def test_title_sort_key_places_cyrillic_before_latin():
    assert sorted(["Amelie", "Амели", "12 стульев"], key=title_sort_key) == [
        "12 стульев",
        "Амели",
        "Amelie",
    ]


def test_title_sort_key_handles_missing_titles():
    assert title_sort_key(None) == ((), "")
    assert sorted(["b", None, "a"], key=title_sort_key) == [None, "a", "b"]


def test_utcnow_is_naive():
    assert utcnow().tzinfo is None
