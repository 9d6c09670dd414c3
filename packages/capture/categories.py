"""
Curated Polymarket categories.

Sports leagues are queried by ``series_id``; everything else by ``tag_id``.
MAIN_CATEGORIES are the top-level slugs offered for the single ``category``
filter, which is resolved against the events ``tag_slug`` parameter.
"""

from dataclasses import dataclass
from typing import Literal, Optional

# Preferred labels when inferring an event's category from its tags
CATEGORY_PREFERENCE = ("politics", "sports", "crypto", "science", "business", "entertainment")


@dataclass(frozen=True)
class Category:
    id: str
    label: str
    slug: str
    type: Literal["sport", "tag"]
    series_id: Optional[str] = None
    tag_id: Optional[str] = None


SPORTS_CATEGORIES: tuple[Category, ...] = (
    Category("nfl", "NFL", "nfl", "sport", series_id="1"),
    Category("nba", "NBA", "nba", "sport", series_id="2"),
    Category("mlb", "MLB", "mlb", "sport", series_id="10"),
    Category("nhl", "NHL", "nhl", "sport", series_id="10247"),
    Category("epl", "Premier League", "epl", "sport", series_id="10188"),
    Category("ufc", "UFC", "ufc", "sport", series_id="11"),
    Category("ncaab", "NCAA Basketball", "ncaab", "sport", series_id="39"),
    Category("ncaaf", "NCAA Football", "ncaaf", "sport", series_id="10324"),
)

TAG_CATEGORIES: tuple[Category, ...] = (
    Category("politics", "Politics", "politics", "tag", tag_id="2"),
    Category("crypto", "Cryptocurrency", "crypto", "tag", tag_id="744"),
    Category("bitcoin", "Bitcoin", "bitcoin", "tag", tag_id="102115"),
    Category("elections", "Elections", "elections", "tag", tag_id="339"),
    Category("trump", "Trump", "trump", "tag", tag_id="126"),
)

ALL_CATEGORIES: tuple[Category, ...] = SPORTS_CATEGORIES + TAG_CATEGORIES

MAIN_CATEGORIES: tuple[dict, ...] = tuple(
    {"id": slug, "label": label, "slug": slug}
    for slug, label in (
        ("politics", "Politics"),
        ("sports", "Sports"),
        ("crypto", "Crypto"),
        ("business", "Business"),
        ("science", "Science"),
        ("pop-culture", "Pop Culture"),
        ("world", "World"),
        ("nba", "NBA"),
        ("nfl", "NFL"),
        ("mlb", "MLB"),
        ("nhl", "NHL"),
        ("soccer", "Soccer"),
        ("ufc", "UFC / MMA"),
        ("tennis", "Tennis"),
        ("golf", "Golf"),
        ("f1", "Formula 1"),
        ("boxing", "Boxing"),
        ("elections", "Elections"),
        ("trump", "Trump"),
        ("congress", "Congress"),
        ("federal-reserve", "Federal Reserve"),
        ("bitcoin", "Bitcoin"),
        ("ethereum", "Ethereum"),
        ("solana", "Solana"),
        ("memecoins", "Memecoins"),
        ("ai", "AI"),
        ("tech", "Tech"),
        ("china", "China"),
        ("russia", "Russia"),
        ("ukraine", "Ukraine"),
        ("israel", "Israel"),
        ("middle-east", "Middle East"),
    )
)


def get_category(category_id: str) -> Optional[Category]:
    """Look up a curated category by id."""
    for category in ALL_CATEGORIES:
        if category.id == category_id:
            return category
    return None


def to_tag_slug(category: str) -> str:
    """Normalize a free-form category name into a Gamma tag slug."""
    return "-".join(category.lower().split())


def infer_event_category(api_category: Optional[str], tag_labels: list[str]) -> Optional[str]:
    """
    Pick a category for an event.

    Uses the API-supplied category when present, else the first preferred
    label found among the event's tags, else the first tag.
    """
    if api_category:
        return api_category
    labels = [label.lower().strip() for label in tag_labels if label]
    if not labels:
        return None
    for label in labels:
        if label in CATEGORY_PREFERENCE:
            return label
    return labels[0]
