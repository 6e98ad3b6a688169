from typing import Iterable, Optional, Sequence

from artscout.search.search_models import ArtistProfile

DEFAULT_OPPORTUNITY_TYPES: tuple[str, ...] = (
    "grants",
    "residencies",
    "exhibitions",
    "fellowships",
)

# Only the first mediums listed on a profile get their own query variants
PRIMARY_MEDIUM_COUNT = 2


def expand_queries(
    base_queries: Iterable[str],
    profile: ArtistProfile,
    locations: Optional[Sequence[str]],
    max_queries: int,
) -> list[str]:
    """Add location and medium variants to each base query.

    Explicit ``locations`` replace the profile's own location. Mediums named
    ``"other"`` get no variant. The result keeps first-seen order, drops
    duplicates and is capped at ``max_queries``.
    """
    primary_mediums = [
        medium for medium in profile.mediums[:PRIMARY_MEDIUM_COUNT] if medium != "other"
    ]

    expanded: list[str] = []
    for query in base_queries:
        expanded.append(query)

        if locations:
            expanded.extend(f"{query} {location}" for location in locations)
        elif profile.location:
            expanded.append(f"{query} {profile.location}")

        expanded.extend(f"{query} {medium}" for medium in primary_mediums)

    unique = list(dict.fromkeys(expanded))
    return unique[:max_queries]
