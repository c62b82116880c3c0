"""Constants for the Troop Stores integration.

Defines the integration domain, the key layout inside the key-value backend,
the category/space vocabularies and the tunables used by the data layer.
"""

from typing import Final

# Integration domain used across all modules
DOMAIN: str = "troop_stores"

# -----------------------------
# Key layout
# -----------------------------

ITEMS_PREFIX: Final[tuple[str, ...]] = ("inventory", "items")
CHECKOUTS_PREFIX: Final[tuple[str, ...]] = ("inventory", "checkouts")
NECKERS_KEY: Final[tuple[str, ...]] = ("inventory", "neckers", "count")
STATS_KEY: Final[tuple[str, ...]] = ("inventory", "stats", "computed")

INDEX_PREFIX: Final[tuple[str, ...]] = ("inventory", "idx")
CATEGORY_INDEX_PREFIX: Final[tuple[str, ...]] = (*INDEX_PREFIX, "category")
SPACE_INDEX_PREFIX: Final[tuple[str, ...]] = (*INDEX_PREFIX, "space")
EXPIRY_INDEX_PREFIX: Final[tuple[str, ...]] = (*INDEX_PREFIX, "expiry")

ACTIVITY_PREFIX: Final[tuple[str, ...]] = ("activity", "log")

# -----------------------------
# Vocabularies
# -----------------------------

CATEGORY_TENT: Final = "tent"
CATEGORY_COOKING: Final = "cooking"
CATEGORY_FOOD: Final = "food"
CATEGORY_CAMPING_TOOLS: Final = "camping-tools"
CATEGORY_GAMES: Final = "games"
CATEGORY_FIRST_AID: Final = "first-aid"

CATEGORIES: Final[tuple[str, ...]] = (
    CATEGORY_TENT,
    CATEGORY_COOKING,
    CATEGORY_FOOD,
    CATEGORY_CAMPING_TOOLS,
    CATEGORY_GAMES,
    CATEGORY_FIRST_AID,
)

SPACE_CAMP_STORE: Final = "camp-store"
SPACE_SCOUT_POST_LOFT: Final = "scout-post-loft"
SPACES: Final[tuple[str, ...]] = (SPACE_CAMP_STORE, SPACE_SCOUT_POST_LOFT)
DEFAULT_SPACE: Final = SPACE_CAMP_STORE

DEFAULT_LOCATION: Final = "N/A"

CONDITION_NEEDS_REPAIR: Final = "needs-repair"
CONDITIONS: Final[frozenset[str]] = frozenset({"excellent", "good", "fair", CONDITION_NEEDS_REPAIR})

STATUS_CHECKED_OUT: Final = "checked-out"
STATUS_OVERDUE: Final = "overdue"
STATUS_RETURNED: Final = "returned"

# -----------------------------
# Tunables
# -----------------------------

# Writes invalidate the read cache immediately; the TTL only guards against
# out-of-band store mutation.
CACHE_TTL_SECONDS: Final[float] = 300.0

NAME_MAX_LENGTH: Final[int] = 120
BORROWER_MAX_LENGTH: Final[int] = 100
NOTES_MAX_LENGTH: Final[int] = 500

ACTIVITY_RETENTION_SECONDS: Final[int] = 90 * 24 * 60 * 60
ACTIVITY_DEFAULT_LIMIT: Final[int] = 100
ACTIVITY_MAX_LIMIT: Final[int] = 500

LOAN_RETENTION_DAYS: Final[int] = 90
