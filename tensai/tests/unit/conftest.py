"""Fixtures shared by the unit tests."""

import pytest


@pytest.fixture
def sample_content() -> dict:
    """Card content with an extra user field."""
    return {"question": "水", "answer": "water", "hint": "radical 85"}


@pytest.fixture
def sample_review_doc() -> dict:
    """Stored review document (camelCase, reviewTime in ms)."""
    return {
        "reviewTime": 1_704_067_200_000,
        "maxCards": 20,
        "maxNewCards": 5,
        "completed": 7,
        "newCardsCompleted": 2,
        "history": [],
        "failedCardsLevel1": ["a"],
        "failedCardsLevel2": ["b"],
    }
