from __future__ import annotations

from enum import Enum


class PostType(str, Enum):
    """Post subtypes shown on the feed, marketplace and lost-and-found board."""

    PLAIN = "plain"
    PRODUCT = "product"
    LOST_FOUND = "lost_found"


class LostFoundKind(str, Enum):
    LOST = "lost"
    FOUND = "found"


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
