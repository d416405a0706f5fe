"""Review sessions module."""

from .schemas import REVIEW_PREFIX, Review
from .service import ReviewService, choose_review, review_completeness

__all__ = [
    "REVIEW_PREFIX",
    "Review",
    "ReviewService",
    "choose_review",
    "review_completeness",
]
