"""Curated upstream services exposed in the storefront.

Only ids listed here are sold; the upstream list is filtered down to them and
their display metadata replaces the upstream naming.
"""

CURATED_SERVICES: dict[int, dict[str, str]] = {
    # Instagram followers
    5951: {"name": "Followers - Elite", "platform": "instagram", "type": "followers",
           "description": "Premium USA followers, non-drop guarantee"},
    6074: {"name": "Followers - Premium", "platform": "instagram", "type": "followers",
           "description": "USA/Europe exclusive, never drops"},
    9132: {"name": "Followers - Pro", "platform": "instagram", "type": "followers",
           "description": "Algorithm-safe, boosts reach"},
    7446: {"name": "Followers - Standard", "platform": "instagram", "type": "followers",
           "description": "USA/Europe, fast delivery"},
    # Instagram likes
    1761: {"name": "Likes - Elite", "platform": "instagram", "type": "likes",
           "description": "Top quality, 30-day refill"},
    6073: {"name": "Likes - Premium", "platform": "instagram", "type": "likes",
           "description": "USA/Europe exclusive, never drops"},
    10066: {"name": "Likes - Pro", "platform": "instagram", "type": "likes",
            "description": "Real engagement, 1-year refill"},
    7445: {"name": "Likes - Standard", "platform": "instagram", "type": "likes",
           "description": "USA/Europe, fast delivery"},
    # Instagram views / comments
    7444: {"name": "Story Views - Premium", "platform": "instagram", "type": "views",
           "description": "USA/Europe viewers"},
    6075: {"name": "Comments - Custom", "platform": "instagram", "type": "comments",
           "description": "USA/Europe, your own text"},
    6384: {"name": "Comments - Random", "platform": "instagram", "type": "comments",
           "description": "USA/Europe, engaging comments"},
    # Instagram packages
    5882: {"name": "Growth Package - Pro", "platform": "instagram", "type": "package",
           "description": "Followers + Likes + Comments bundle"},
    5883: {"name": "Growth Package - Elite", "platform": "instagram", "type": "package",
           "description": "Maximum engagement bundle"},
    8753: {"name": "Monthly Growth - Premium", "platform": "instagram", "type": "package",
           "description": "~5K followers/month, AI-powered"},
}

# Bounds served while no upstream snapshot has ever been obtained.
FALLBACK_MIN_QUANTITY = 100
FALLBACK_MAX_QUANTITY = 10_000
