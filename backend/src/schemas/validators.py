"""
Field validators shared by the request schemas.

The tagging stage also uses `slugify_tags` to turn whatever the AI tagger
returned into names that pass `validate_and_normalize_tag`.
"""
import re

from core.config import get_settings

# Lowercase words of letters and digits joined by single hyphens: 'web-dev', 'python3'
TAG_PATTERN = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")
MAX_TAG_LENGTH = 100

_SLUG_SEPARATORS = re.compile(r"[^a-z0-9]+")


def validate_and_normalize_tag(tag: str) -> str:
    """
    Lowercase and trim a tag name, then check it against TAG_PATTERN.

    Raises:
        ValueError: The name is blank, too long or not in tag format.
    """
    name = tag.strip().lower()
    if not name:
        raise ValueError("Tag name cannot be empty")
    if len(name) > MAX_TAG_LENGTH:
        raise ValueError(f"Tag name is longer than {MAX_TAG_LENGTH} characters")
    if TAG_PATTERN.fullmatch(name) is None:
        raise ValueError(
            f"Invalid tag '{name}': use lowercase letters, digits and single hyphens "
            "(e.g. 'machine-learning')",
        )
    return name


def validate_and_normalize_tags(tags: list[str]) -> list[str]:
    """
    Normalize a list of tag names.

    Blank entries are ignored and repeats collapse onto their first occurrence.
    Any other invalid name fails the whole list.
    """
    names = [validate_and_normalize_tag(tag) for tag in tags if tag.strip()]
    return list(dict.fromkeys(names))


def slugify_tags(tags: list[str]) -> list[str]:
    """
    Coerce free-form tags into valid tag names: 'Machine Learning' becomes
    'machine-learning'.

    Unlike `validate_and_normalize_tags` this never raises. Non-strings,
    entries with nothing left after slugifying and over-long entries are
    dropped.
    """
    slugs = (
        _SLUG_SEPARATORS.sub("-", tag.lower()).strip("-")
        for tag in tags
        if isinstance(tag, str)
    )
    return list(dict.fromkeys(s for s in slugs if s and len(s) <= MAX_TAG_LENGTH))


def _check_length(value: str | None, limit: int, label: str) -> str | None:
    if value is not None and len(value) > limit:
        raise ValueError(
            f"{label} exceeds maximum length of {limit:,} characters "
            f"(got {len(value):,} characters).",
        )
    return value


def validate_text_edit_length(text: str | None) -> str | None:
    """Text typed into a text bookmark by hand (MAX_TEXT_EDIT_LENGTH)."""
    return _check_length(text, get_settings().max_text_edit_length, "Text")


def validate_content_length(content: str | None) -> str | None:
    """Text of a new text bookmark (MAX_CONTENT_LENGTH)."""
    return _check_length(content, get_settings().max_content_length, "Content")


def validate_note_length(note: str | None) -> str | None:
    return _check_length(note, get_settings().max_note_length, "Note")
