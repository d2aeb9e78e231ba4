"""Guess evaluation and time-decayed scoring.

Pure functions: the same (guess, target, elapsed) always yields the same
classification and points.
"""

import math
import unicodedata
from dataclasses import dataclass
from fractions import Fraction

ROUND_DURATION_MS = 30000
MIN_GUESS_LENGTH = 3
FUZZY_MAX_DISTANCE = 3

EXACT = 'exact'
FUZZY = 'fuzzy'
SUBSTRING = 'substring'
NO_MATCH = 'none'

MULTIPLIERS = {
    EXACT: Fraction(1),
    FUZZY: Fraction(4, 5),
    SUBSTRING: Fraction(1, 2),
    NO_MATCH: Fraction(0),
}


@dataclass(frozen=True)
class MatchResult:
    kind: str
    points: int

    @property
    def correct(self) -> bool:
        return self.kind != NO_MATCH


def normalize(text: str) -> str:
    """Decompose, strip diacritics, lowercase and trim."""
    decomposed = unicodedata.normalize('NFD', text or '')
    stripped = ''.join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.lower().strip()


def edit_distance(a: str, b: str) -> int:
    # Levenshtein: insertion, deletion and substitution all cost 1
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def classify_guess(raw_guess: str, target_name: str) -> str:
    """Return the match kind for a guess against the card name.

    Priority order: exact, fuzzy (edit distance <= 3), substring. Guesses
    shorter than three characters after normalization never match.
    """
    guess = normalize(raw_guess)
    target = normalize(target_name)
    if len(guess) < MIN_GUESS_LENGTH:
        return NO_MATCH
    if guess == target:
        return EXACT
    if edit_distance(guess, target) <= FUZZY_MAX_DISTANCE:
        return FUZZY
    if guess in target:
        return SUBSTRING
    return NO_MATCH


def remaining_ms(elapsed_ms: int, round_duration_ms: int = ROUND_DURATION_MS) -> int:
    return max(0, round_duration_ms - max(0, int(elapsed_ms)))


def score_for(kind: str, elapsed_ms: int, round_duration_ms: int = ROUND_DURATION_MS) -> int:
    return math.floor(remaining_ms(elapsed_ms, round_duration_ms) * MULTIPLIERS[kind])


def evaluate_guess(raw_guess: str, target_name: str, elapsed_ms: int = 0,
                   round_duration_ms: int = ROUND_DURATION_MS) -> MatchResult:
    kind = classify_guess(raw_guess, target_name)
    return MatchResult(kind=kind, points=score_for(kind, elapsed_ms, round_duration_ms))
