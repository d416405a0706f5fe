"""tensai - spaced repetition card store with live replication."""

from tensai.store import CardStore, open_store

__version__ = "0.1.0"

__all__ = ["CardStore", "open_store", "__version__"]
