"""Cards module: card storage, progress and overdueness ranking."""

from .ranking import (
    CARDS_VIEW,
    FAILED_SCORE,
    MAX_OVERDUE_SCORE,
    NEW_CARDS_VIEW,
    OVERDUE_VIEW,
    OverduenessRanking,
    overdueness,
)
from .schemas import (
    CARD_PREFIX,
    PROGRESS_PREFIX,
    AvailableCards,
    Card,
    CardChange,
    CardContent,
    CardQuery,
    Progress,
    ProgressUpdate,
)
from .service import CardRepository, CardService, ProgressRepository

__all__ = [
    "AvailableCards",
    "CARDS_VIEW",
    "CARD_PREFIX",
    "Card",
    "CardChange",
    "CardContent",
    "CardQuery",
    "CardRepository",
    "CardService",
    "FAILED_SCORE",
    "MAX_OVERDUE_SCORE",
    "NEW_CARDS_VIEW",
    "OVERDUE_VIEW",
    "OverduenessRanking",
    "PROGRESS_PREFIX",
    "Progress",
    "ProgressRepository",
    "ProgressUpdate",
    "overdueness",
]
