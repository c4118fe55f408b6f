"""Text normalization helpers used to build comparable event fingerprints."""

import re
import unicodedata

# Tokens of this length or shorter carry no matching signal ("at", "de", "&")
MIN_TOKEN_LENGTH = 3

# Generic venue nouns stripped before venue names are compared
VENUE_STOPWORDS = (
    "the",
    "at",
    "venue",
    "hall",
    "center",
    "centre",
    "theatre",
    "theater",
    "club",
    "bar",
    "pub",
    "restaurant",
)

# Street suffixes stripped before addresses are compared
ADDRESS_STOPWORDS = (
    "street",
    "st",
    "avenue",
    "ave",
    "road",
    "rd",
    "drive",
    "dr",
    "boulevard",
    "blvd",
    "lane",
    "ln",
)

_PUNCTUATION_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")
_VENUE_STOPWORDS_RE = re.compile(r"\b(" + "|".join(VENUE_STOPWORDS) + r")\b")
_ADDRESS_STOPWORDS_RE = re.compile(r"\b(" + "|".join(ADDRESS_STOPWORDS) + r")\b")


def strip_accents(text: str) -> str:
    """Remove combining accents ("Opéra" -> "Opera")."""
    nfkd = unicodedata.normalize("NFKD", text)
    return "".join(c for c in nfkd if not unicodedata.combining(c))


def normalize_text(text: str | None) -> str:
    """Lowercase, strip accents, replace punctuation with spaces, collapse whitespace."""
    if not text:
        return ""
    text = strip_accents(str(text).lower())
    text = _PUNCTUATION_RE.sub(" ", text)
    # \w keeps underscores, which never separate words in event titles
    text = text.replace("_", " ")
    return _WHITESPACE_RE.sub(" ", text).strip()


def tokenize(text: str | None) -> list[str]:
    """Split text into normalized tokens, dropping tokens of two characters or less."""
    return [token for token in normalize_text(text).split() if len(token) >= MIN_TOKEN_LENGTH]


def normalize_venue(venue: str | None) -> str:
    """Normalize a venue name and drop generic venue nouns ("The Blue Note" -> "blue note")."""
    text = normalize_text(venue)
    if not text:
        return ""
    text = _VENUE_STOPWORDS_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def normalize_address(address: str | None) -> str:
    """Normalize a street address and drop street-type suffixes."""
    text = normalize_text(address)
    if not text:
        return ""
    text = _ADDRESS_STOPWORDS_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text).strip()
