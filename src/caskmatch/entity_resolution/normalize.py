"""Name normalisation and free-text field extraction.

Normalised names are used for comparison only and are never persisted.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date

from unidecode import unidecode

# ---------------------------------------------------------------------------
# Domain rewrites (applied in order, after punctuation is stripped)
# ---------------------------------------------------------------------------

_PHRASE_REWRITES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\bstraight bourbon whiskey\b"), "straight bourbon"),
    (re.compile(r"\bkentucky straight bourbon\b"), "straight bourbon"),
    (re.compile(r"\bsingle barrel\b"), "single brl"),
    (re.compile(r"\bsmall batch\b"), "small btch"),
    (re.compile(r"\bbottled in bond\b"), "bib"),
)

_PERCENT_TOKEN = re.compile(r",?\s*\d+(?:\.\d+)?\s*%")

# Characters with special meaning in POSIX/ARE and Python regular expressions.
_PATTERN_METACHARACTERS = re.compile(r"([.*+?^${}()|\[\]\\])")


def normalize_name(name: str | None) -> str:
    """Normalise a product name for fuzzy comparison.

    Steps:
      1. Transliterate Unicode to ASCII and lowercase.
      2. Drop ABV percentage tokens ("46%", ", 50.5%").
      3. Replace punctuation with spaces and collapse whitespace.
      4. Collapse synonymous phrasings ("kentucky straight bourbon" and
         "straight bourbon whiskey" both become "straight bourbon").
    """
    if not name:
        return ""

    text = unidecode(name).lower()
    text = _PERCENT_TOKEN.sub(" ", text)
    text = re.sub(r"[^a-z0-9\s]", " ", text)
    text = re.sub(r"\s+", " ", text).strip()

    for pattern, replacement in _PHRASE_REWRITES:
        text = pattern.sub(replacement, text)

    return text


def key_words(name: str | None) -> str:
    """Return the first one or two normalised tokens longer than two characters.

    Serves as a coarse brand proxy when no brand field is available.
    """
    words = [w for w in normalize_name(name).split(" ") if len(w) > 2]
    return " ".join(words[:2])


def first_token(name: str | None) -> str:
    """Lowercased first whitespace-separated token of *name*, punctuation kept."""
    if not name:
        return ""
    parts = name.split()
    return parts[0].lower() if parts else ""


def escape_pattern(text: str) -> str:
    """Escape regex metacharacters so *text* matches literally inside ``~*``."""
    return _PATTERN_METACHARACTERS.sub(r"\\\1", text)


def contains_words(haystack: str | None, phrase: str | None) -> bool:
    """True when every word (len > 2) of *phrase* occurs as a whole word in *haystack*."""
    if not haystack or not phrase:
        return False

    words = [w for w in phrase.lower().split() if len(w) > 2]
    if not words:
        return False

    target = haystack.lower()
    return all(
        re.search(rf"(?<!\w){re.escape(word)}(?!\w)", target) is not None
        for word in words
    )


# ---------------------------------------------------------------------------
# Strength (ABV / proof) extraction
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Strength:
    abv: float | None = None
    proof: float | None = None
    stated_proof: str | None = None


# (pattern, is_proof); first match wins.
_STRENGTH_PATTERNS: tuple[tuple[re.Pattern[str], bool], ...] = (
    (re.compile(r"(\d+(?:\.\d+)?)\s*%"), False),
    (re.compile(r"(\d+(?:\.\d+)?)\s*proof", re.IGNORECASE), True),
    (re.compile(r"ABV\s*:?\s*(\d+(?:\.\d+)?)\s*%", re.IGNORECASE), False),
    (re.compile(r"(\d+(?:\.\d+)?)\s*°"), True),
)

_STRENGTH_STRIP_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\s*\(\d+(?:\.\d+)?\s*%\)"),
    re.compile(r"\s*\(\d+(?:\.\d+)?\s*proof\)", re.IGNORECASE),
    re.compile(r"\s*\d+(?:\.\d+)?\s*%\s*ABV", re.IGNORECASE),
    re.compile(r"\s*ABV\s*:?\s*\d+(?:\.\d+)?\s*%", re.IGNORECASE),
    re.compile(r"\s*\d+(?:\.\d+)?\s*%"),
    re.compile(r"\s*\d+(?:\.\d+)?\s*proof", re.IGNORECASE),
    re.compile(r"\s*\d+(?:\.\d+)?\s*°"),
)

MIN_WHISKEY_ABV = 20.0
MAX_WHISKEY_ABV = 75.0


def extract_strength(text: str | None) -> Strength:
    """Pull an ABV/proof pair out of free text such as a product name.

    A value tagged "proof" (or "°"), or any value above 100, is read as
    proof; anything else is ABV.  Results whose ABV falls outside the
    plausible whiskey range are discarded as misreads.
    """
    if not text:
        return Strength()

    for pattern, is_proof in _STRENGTH_PATTERNS:
        match = pattern.search(text)
        if match is None:
            continue

        value = float(match.group(1))
        if is_proof or value > 100:
            proof, abv = value, value / 2
        else:
            proof, abv = value * 2, value

        if abv < MIN_WHISKEY_ABV or abv > MAX_WHISKEY_ABV:
            return Strength()
        return Strength(abv=abv, proof=proof, stated_proof=match.group(0).strip())

    return Strength()


def strip_strength(name: str) -> str:
    """Remove ABV/proof tokens from a display name."""
    cleaned = name
    for pattern in _STRENGTH_STRIP_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    return re.sub(r"\s+", " ", cleaned).strip()


# ---------------------------------------------------------------------------
# Age derivation
# ---------------------------------------------------------------------------

_AGE_IN_NAME = re.compile(r"(\d+)\s*year", re.IGNORECASE)


def derive_age(
    vintage: str | None,
    name: str | None = None,
    *,
    today: date | None = None,
) -> int | None:
    """Derive an age statement from a vintage column or the product name.

    A vintage between 1900 and 2100 is a calendar year and is converted to
    years elapsed; any other integer is taken as the literal age.  Without
    a usable vintage, "<n> Year" in the name is used.  Only ages strictly
    between 0 and 100 are returned.
    """
    today = today or date.today()
    age: int | None = None

    vintage = (vintage or "").strip()
    match = re.match(r"\d+", vintage)
    if match:
        value = int(match.group(0))
        age = today.year - value if 1900 < value < 2100 else value
    elif name:
        name_match = _AGE_IN_NAME.search(name)
        if name_match:
            age = int(name_match.group(1))

    if age is not None and 0 < age < 100:
        return age
    return None
