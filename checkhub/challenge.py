"""
Arithmetic challenge sent as the probe prompt.

A fixed "hi" can be answered by a proxy that never runs a model; a fresh
random sum cannot. The reply passes if any number in it equals the answer.
"""

import random
import re
from dataclasses import dataclass, field
from typing import Optional

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")

OPERATORS = ("+", "-", "*")


@dataclass(frozen=True)
class Challenge:
    prompt: str
    expected_answer: str


@dataclass
class ValidationResult:
    valid: bool
    extracted_numbers: list[str] = field(default_factory=list)


def generate_challenge(rng: Optional[random.Random] = None) -> Challenge:
    """Build a small arithmetic question with a single integer answer."""
    rng = rng or random.Random()
    op = rng.choice(OPERATORS)
    if op == "*":
        a, b = rng.randint(2, 12), rng.randint(2, 12)
        answer = a * b
    elif op == "-":
        a, b = rng.randint(10, 99), rng.randint(1, 9)
        # an echoed prompt must never contain the answer (18 - 9 = 9)
        while a == 2 * b:
            a = rng.randint(10, 99)
        answer = a - b
    else:
        a, b = rng.randint(1, 50), rng.randint(1, 50)
        answer = a + b

    prompt = f"What is {a} {op} {b}? Reply with the number only."
    return Challenge(prompt=prompt, expected_answer=str(answer))


def extract_numbers(text: str) -> list[str]:
    return _NUMBER_RE.findall(text or "")


def _normalize(number: str) -> str:
    # "42.0" and "42" are the same answer
    if "." in number:
        number = number.rstrip("0").rstrip(".")
    return number


def validate_response(text: str, expected_answer: str) -> ValidationResult:
    numbers = extract_numbers(text)
    expected = _normalize(expected_answer)
    valid = any(_normalize(n) == expected for n in numbers)
    return ValidationResult(valid=valid, extracted_numbers=numbers)
