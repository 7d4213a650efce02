"""
Solver for the community platform's arithmetic verification challenges.

Challenges look like "A lobster has thirty two claws and gains seven, what
is the total?" with noise characters sprinkled through the text. solve()
returns the answer formatted to two decimals, e.g. "39.00".
"""

import re

NUMBER_WORDS = {
    "zero": 0, "one": 1, "two": 2, "three": 3, "four": 4,
    "five": 5, "six": 6, "seven": 7, "eight": 8, "nine": 9,
    "ten": 10, "eleven": 11, "twelve": 12, "thirteen": 13,
    "fourteen": 14, "fifteen": 15, "sixteen": 16, "seventeen": 17,
    "eighteen": 18, "nineteen": 19, "twenty": 20, "thirty": 30,
    "forty": 40, "fifty": 50, "sixty": 60, "seventy": 70,
    "eighty": 80, "ninety": 90, "hundred": 100,
}

# Checked in this order; the first family with a hit wins.
OPERATIONS = [
    ("add", re.compile(r"\b(add|plus|total|sum)")),
    ("subtract", re.compile(r"\b(subtract|minus|difference|remain|los(?:e|es|t|ing)\b)")),
    ("multiply", re.compile(r"\b(multipl|times|product)")),
    ("divide", re.compile(r"\b(divid|quotient)")),
]

_NOISE = re.compile(r"[^a-zA-Z0-9\s.,+\-]")
_WORD_PATTERNS = [
    (re.compile(rf"\b{word}\b"), value) for word, value in NUMBER_WORDS.items()
]
_JOINER = re.compile(r"^[\s\-]*$")

ZERO = "0.00"


def clean_text(text):
    cleaned = _NOISE.sub(" ", text or "")
    return re.sub(r"\s+", " ", cleaned).strip().lower()


def extract_numbers(clean):
    """Number words in reading order, with tens+units pairs merged (thirty two -> 32)."""
    found = []
    for pattern, value in _WORD_PATTERNS:
        for match in pattern.finditer(clean):
            found.append((match.start(), match.end(), value))
    found.sort()

    numbers = []
    i = 0
    while i < len(found):
        start, end, value = found[i]
        if i + 1 < len(found):
            next_start, _, next_value = found[i + 1]
            if value >= 20 and next_value < 20 and _JOINER.match(clean[end:next_start]):
                numbers.append(value + next_value)
                i += 2
                continue
        numbers.append(value)
        i += 1
    return numbers


def detect_operation(clean):
    for name, pattern in OPERATIONS:
        if pattern.search(clean):
            return name
    return "add"


def solve(text):
    """Answer an arithmetic challenge. Unparseable input yields "0.00"."""
    clean = clean_text(text)
    numbers = extract_numbers(clean)
    if len(numbers) < 2:
        return ZERO

    op = detect_operation(clean)
    if op == "add":
        result = sum(numbers)
    elif op == "subtract":
        result = numbers[0] - numbers[1]
    elif op == "multiply":
        result = 1
        for n in numbers:
            result *= n
    else:
        if numbers[1] == 0:
            return ZERO
        result = numbers[0] / numbers[1]

    return f"{result:.2f}"
