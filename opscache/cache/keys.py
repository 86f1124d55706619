"""Key naming conventions shared with every writer of the store.

These formats are read by other processes; change them only together.
"""

import re

from opscache.core.errors import ValidationError

TAG_INDEX_PREFIX = "cache_tags:"
TAG_REFRESH_KEY = "cache_tags_refreshed"
TAG_INDEX_TTL_SECONDS = 86400

# Default TTL in seconds per report family
DEFAULT_TTLS = {
    "dashboard": 600,
    "sales_analytics": 300,
    "employee_performance": 900,
    "inventory_insights": 1800,
    "financial_summary": 600,
    "restaurant_stats": 300,
    "user_permissions": 3600,
    "api_response": 120,
}

# Key prefixes owned by each scope; a trailing "_" marks a prefix, anything
# else is an exact key.
SCOPE_PREFIXES = {
    "restaurant": (
        "dashboard_{id}_",
        "sales_analytics_{id}_",
        "employee_performance_{id}_",
        "inventory_insights_{id}_",
        "financial_summary_{id}_",
        "restaurant_stats_{id}_",
    ),
    "user": (
        "user_permissions_{id}",
        "user_activity_{id}_",
    ),
}

_TOKEN_RE = re.compile(r"^[^\s*?\[\]\\]+$")
_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def ttl_for(family: str) -> int:
    return DEFAULT_TTLS.get(family, DEFAULT_TTLS["api_response"])


def tag_index_key(tag: str) -> str:
    return f"{TAG_INDEX_PREFIX}{tag}"


def scope_tag(scope_type: str, scope_id) -> str:
    return f"{scope_type}:{scope_id}"


def report_key(report: str, scope_id, params: str) -> str:
    """``{report}_{scope_id}_{params}``, e.g. ``dashboard_r1_2024-01-01``."""
    return f"{report}_{scope_id}_{params}"


def escape_glob(value: str) -> str:
    return _GLOB_SPECIAL.sub(r"\\\1", value)


def check_key(key: str) -> str:
    if not isinstance(key, str) or not key:
        raise ValidationError("Cache key must be a non-empty string")
    if key.startswith(TAG_INDEX_PREFIX) or key == TAG_REFRESH_KEY:
        raise ValidationError(f"Cache key {key!r} collides with the tag index namespace")
    return key


def check_tag(tag: str) -> str:
    if not isinstance(tag, str) or not _TOKEN_RE.match(tag):
        raise ValidationError(f"Invalid cache tag {tag!r}")
    return tag


def check_scope(scope_type: str, scope_id) -> tuple[str, str]:
    if scope_type not in SCOPE_PREFIXES:
        raise ValidationError(
            f"Unknown scope type {scope_type!r}; expected one of {sorted(SCOPE_PREFIXES)}"
        )
    scope_id = str(scope_id)
    if not _TOKEN_RE.match(scope_id):
        raise ValidationError(f"Invalid scope id {scope_id!r}")
    return scope_type, scope_id
