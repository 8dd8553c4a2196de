"""Community id and display-name derivation.

Ids are content-derived slugs so that independent clustering decisions over
similar content converge on the same community without a merge step.
"""
import re
from collections import Counter
from typing import Iterable, Optional, Sequence

from .types import ClusterMember

MISC_COMMUNITY_ID = "misc"

ACTION_PART_LENGTH = 12
HASHTAG_PART_LENGTH = 15

# Keyword categories used when no similarity search is possible
KEYWORD_CATEGORIES = [
    ("skatepark", ("skate", "skateboard", "skatepark")),
    ("cafe_study", ("study", "cafe", "café", "coffee", "notebook", "laptop")),
]

FIXED_COMMUNITIES = {
    "skatepark": (
        "Skatepark",
        "Videos featuring skateboarding, tricks, and skatepark scenes",
    ),
    "cafe_study": (
        "Café Study",
        "Study sessions, café vibes, and academic content",
    ),
    MISC_COMMUNITY_ID: (
        "Misc Milk Mob",
        "General milk-related content and everyday moments",
    ),
}

_NON_SLUG = re.compile(r"[^a-z0-9]")
_NUMERIC = re.compile(r"^\d+$")


def slugify(text: str, max_length: int) -> str:
    """Lowercase, replace non-alphanumerics with ``_``, truncate."""
    return _NON_SLUG.sub("_", text.lower().strip())[:max_length]


def normalize_hashtag(tag: str) -> str:
    """``"#GotMilk "`` -> ``"gotmilk"``."""
    return tag.lower().strip().lstrip("#").strip()


def most_frequent(values: Iterable[str]) -> Optional[str]:
    """Most frequent non-empty value; ties go to the first seen."""
    counts = Counter(v for v in values if v)
    if not counts:
        return None
    return counts.most_common(1)[0][0]


def derive_community_id(members: Sequence[ClusterMember], index: Optional[int] = None) -> str:
    """
    Derive a community id from the dominant content signal across members.

    Prefers the most frequent detected action and object/scene tags, then the
    most frequent hashtag, then the fixed misc id.

    Args:
        members: Cluster members (order breaks frequency ties)
        index: Positional suffix for batch clusters; omitted for online
            provisional clusters so they converge on the bare slug

    Returns:
        Community id slug
    """
    top_action = most_frequent(a.lower().strip() for m in members for a in m.actions)
    top_scene = most_frequent(o.lower().strip() for m in members for o in m.objects_scenes)

    parts = []
    if top_action:
        parts.append(slugify(top_action, ACTION_PART_LENGTH))
    if top_scene:
        parts.append(slugify(top_scene, ACTION_PART_LENGTH))

    if not parts:
        top_hashtag = most_frequent(normalize_hashtag(h) for m in members for h in m.hashtags)
        parts.append(slugify(top_hashtag, HASHTAG_PART_LENGTH) if top_hashtag else MISC_COMMUNITY_ID)

    base = "_".join(parts)
    if index is None:
        return base
    return f"{base}_{index}"


def keyword_community_id(
    hashtags: Sequence[str],
    actions: Sequence[str],
    objects_scenes: Sequence[str],
) -> str:
    """Assign a fixed category by keyword substrings. Never fails."""
    text = " ".join(
        [h.lower() for h in hashtags]
        + [a.lower() for a in actions]
        + [o.lower() for o in objects_scenes]
    )
    for community_id, keywords in KEYWORD_CATEGORIES:
        if any(keyword in text for keyword in keywords):
            return community_id
    return MISC_COMMUNITY_ID


def _name_parts(community_id: str) -> list:
    return [p for p in community_id.split("_") if p and not _NUMERIC.match(p)]


def community_name(community_id: str) -> str:
    """
    Human-readable name for a community id.

    ``"skate_drink_skatepark_0"`` -> ``"Skate & Drink at Skatepark"``
    """
    if community_id in FIXED_COMMUNITIES:
        return FIXED_COMMUNITIES[community_id][0]

    parts = [p.capitalize() for p in _name_parts(community_id)]
    if not parts:
        return FIXED_COMMUNITIES[MISC_COMMUNITY_ID][0]
    if len(parts) == 1:
        return f"{parts[0]} Mob"
    if len(parts) == 2:
        return f"{parts[0]} & {parts[1]}"
    # 3+ parts: last one reads as the location
    return f"{' & '.join(parts[:-1])} at {parts[-1]}"


def community_description(community_id: str) -> str:
    """Short description for a community id."""
    if community_id in FIXED_COMMUNITIES:
        return FIXED_COMMUNITIES[community_id][1]

    parts = [p.capitalize() for p in _name_parts(community_id)]
    if not parts:
        return FIXED_COMMUNITIES[MISC_COMMUNITY_ID][1]
    return f"Videos featuring {', '.join(parts)}"


def member_tags(members: Sequence[ClusterMember]) -> list:
    """Hashtags contributed by members, normalized, repeats kept."""
    return [normalize_hashtag(h) for m in members for h in m.hashtags if normalize_hashtag(h)]
