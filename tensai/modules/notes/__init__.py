"""Notes module."""

from .schemas import NOTE_PREFIX, Note, NoteChange, NoteUpdate
from .service import NoteService, choose_note

__all__ = [
    "NOTE_PREFIX",
    "Note",
    "NoteChange",
    "NoteService",
    "NoteUpdate",
    "choose_note",
]
