"""Node slug rules.

Slugs are the human-readable handles used inside template references
(``{{ slug.path }}``), so they share the template grammar: lowercase letter
first, then lowercase letters, digits and underscores.
"""

import re
import unicodedata

from flowcore.core.errors import SlugError

SLUG_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")
MAX_SLUG_LENGTH = 64

# Names with meaning inside transform code or the execution envelope
RESERVED_SLUGS = frozenset(
    {
        "env",
        "execution",
        "flow",
        "input",
        "inputs",
        "main",
        "output",
        "secrets",
        "self",
        "system",
        "this",
    }
)


def to_slug(name: str) -> str:
    """Convert a display name to a slug candidate.

    "Get Weather (v2)" -> "get_weather_v2". Names that start with a digit
    get an ``n_`` prefix, empty results fall back to ``node``.
    """
    normalized = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode()
    slug = re.sub(r"[^a-z0-9]+", "_", normalized.lower()).strip("_")
    if not slug:
        slug = "node"
    if slug[0].isdigit():
        slug = f"n_{slug}"
    return slug[:MAX_SLUG_LENGTH]


def generate_unique_slug(name: str, existing: set[str]) -> str:
    """Slug for ``name`` that is not reserved and not in ``existing``."""
    base = to_slug(name)
    if base not in existing and base not in RESERVED_SLUGS:
        return base

    counter = 2
    while True:
        suffix = f"_{counter}"
        candidate = f"{base[: MAX_SLUG_LENGTH - len(suffix)]}{suffix}"
        if candidate not in existing and candidate not in RESERVED_SLUGS:
            return candidate
        counter += 1


def validate_slug(slug: str) -> None:
    """Raise SlugError if ``slug`` is malformed or reserved."""
    if not SLUG_PATTERN.match(slug):
        raise SlugError(
            f"Invalid slug '{slug}'. Must start with a lowercase letter and contain "
            f"only lowercase letters, digits and underscores."
        )
    if len(slug) > MAX_SLUG_LENGTH:
        raise SlugError(f"Slug '{slug}' exceeds {MAX_SLUG_LENGTH} characters")
    if slug in RESERVED_SLUGS:
        raise SlugError(f"Slug '{slug}' is reserved")
