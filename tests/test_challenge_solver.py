import pytest

from challenge_solver import clean_text, extract_numbers, solve


@pytest.mark.parametrize("text, expected", [
    ("What is thirty two plus seven?", "39.00"),
    ("twenty minus five", "15.00"),
    ("A lobster has thirty two claws and loses seven", "25.00"),
    ("Multiply: six times seven!", "42.00"),
    ("eighty divided by four", "20.00"),
    ("twenty-two plus three", "25.00"),
    ("ThIrTy~TwO pLuS sEvEn??", "39.00"),
    ("seven and three", "10.00"),
])
def test_solves_arithmetic(text, expected):
    assert solve(text) == expected


@pytest.mark.parametrize("text", ["", None, "hello world", "only seven here", "ten divided by zero"])
def test_unanswerable_gives_zero(text):
    assert solve(text) == "0.00"


def test_clean_text_strips_noise():
    assert clean_text("  Th]irty^  TWO, ok ") == "th irty two, ok"


def test_compound_numbers_merge_once():
    assert extract_numbers("thirty two seven") == [32, 7]
    assert extract_numbers("thirty forty") == [30, 40]
    assert extract_numbers("seventeen") == [17]


def test_deterministic():
    text = "What is the total of fifty and nine?"
    assert solve(text) == solve(text) == "59.00"
