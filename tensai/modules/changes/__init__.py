"""Change notification module."""

from .service import TOPICS, ChangeNotifier

__all__ = ["TOPICS", "ChangeNotifier"]
