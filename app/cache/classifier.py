"""
Request classification: route each intercepted request to one category and strategy.

Rules are evaluated in priority order, first match wins.
"""
import re
from typing import Tuple

from .core import CacheCategory, Classification, FetchRequest, Strategy
from .ttl_policies import get_policy


INTERCEPTED_SCHEMES = ("http", "https")

API_PREFIX = "/api/"

# Single item fetched by numeric id, e.g. /api/v1/training/workouts/42
WORKOUT_ITEM_PATTERN = re.compile(
    r"^/api/(?:[\w-]+/)*(?:workouts|sessions|workout-sessions|training-sessions)/\d+/?$"
)
TEMPLATE_ITEM_PATTERN = re.compile(
    r"^/api/(?:[\w-]+/)*(?:templates|workout-templates|equipment)/\d+/?$"
)

IMAGE_EXTENSIONS: Tuple[str, ...] = (
    ".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".ico", ".avif",
)


def should_intercept(request: FetchRequest) -> bool:
    """Only http(s) requests are handled; extension and data URLs pass through."""
    return request.scheme in INTERCEPTED_SCHEMES


def _is_image(request: FetchRequest) -> bool:
    if request.destination == "image":
        return True
    return request.path.lower().endswith(IMAGE_EXTENSIONS)


def _routed(category: CacheCategory) -> Classification:
    return Classification(strategy=get_policy(category).strategy, category=category)


def classify(request: FetchRequest) -> Classification:
    """
    Pick the category and retrieval strategy for a request.

    Args:
        request: The intercepted request (must be http or https)

    Returns:
        Classification; mutations carry no category
    """
    if request.method != "GET":
        return Classification(strategy=Strategy.MUTATION)

    path = request.path

    if WORKOUT_ITEM_PATTERN.match(path):
        return _routed(CacheCategory.WORKOUTS)
    if TEMPLATE_ITEM_PATTERN.match(path):
        return _routed(CacheCategory.TEMPLATES)

    if path.startswith(API_PREFIX):
        return _routed(CacheCategory.API)

    if _is_image(request):
        return _routed(CacheCategory.IMAGES)

    if request.accepts("text/html") or request.is_navigation:
        return _routed(CacheCategory.DYNAMIC)

    return _routed(CacheCategory.STATIC)
