# Strategy identifiers. Dispatch is a table lookup over this closed set.
STRATEGY_TRENDING = "trending"
STRATEGY_NEW = "new"
STRATEGY_SIMILAR = "similar"
STRATEGY_PERSONALIZED = "personalized"
STRATEGY_COLLABORATIVE = "collaborative"
STRATEGY_CATEGORY = "category"
STRATEGY_TAG = "tag"
STRATEGY_POPULAR = "popular"
STRATEGY_HYBRID = "hybrid"
STRATEGY_FEED = "feed"  # cache family of blended home feeds

ENGINE_STRATEGIES = {
    STRATEGY_TRENDING,
    STRATEGY_NEW,
    STRATEGY_SIMILAR,
    STRATEGY_PERSONALIZED,
    STRATEGY_COLLABORATIVE,
    STRATEGY_CATEGORY,
    STRATEGY_TAG,
    STRATEGY_POPULAR,
}
ALL_STRATEGIES = ENGINE_STRATEGIES | {STRATEGY_HYBRID}

# Strategies that need a signed-in user
AUTH_STRATEGIES = {STRATEGY_PERSONALIZED, STRATEGY_COLLABORATIVE}

# Cache key prefix per strategy family
CACHE_PREFIXES = {
    STRATEGY_TRENDING: "rec:trend",
    STRATEGY_NEW: "rec:new",
    STRATEGY_PERSONALIZED: "rec:pers",
    STRATEGY_CATEGORY: "rec:cat",
    STRATEGY_TAG: "rec:tag",
    STRATEGY_SIMILAR: "rec:sim",
    STRATEGY_FEED: "rec:feed",
    STRATEGY_HYBRID: "rec:feed",
    STRATEGY_COLLABORATIVE: "rec:collab",
    STRATEGY_POPULAR: "rec:pop",
}
MISC_PREFIX = "rec:misc"

# Strategies whose key carries its anchor right after the prefix
ANCHORED = {
    STRATEGY_SIMILAR: "product_id",
    STRATEGY_CATEGORY: "category_id",
    STRATEGY_TAG: "tags",
}

# Reason tags
REASON_UNAVAILABLE = "unavailable"
REASON_COLD_START = "cold_start"

# Candidate pool sizes
CANDIDATE_POOL = 200
SIMILAR_POOL = 300
NEW_DEFAULT_DAYS = 30
POPULAR_DEFAULT_DAYS = 90
INTEREST_WINDOW_DAYS = 90

# Similar-to-X score mix
SIMILAR_TAG_WEIGHT = 0.6
SIMILAR_CATEGORY_WEIGHT = 0.2
SIMILAR_TRENDING_WEIGHT = 0.2

# Personalized interest weights per interaction kind
INTEREST_WEIGHTS = {"upvote": 3.0, "bookmark": 2.0, "comment": 1.5, "view": 1.0}
CATEGORY_INTEREST_FACTOR = 0.5
PERSONALIZED_RECENCY_WEIGHT = 0.5
