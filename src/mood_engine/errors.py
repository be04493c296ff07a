"""Typed errors surfaced to callers of the calibration engine.

Expected-empty outcomes (too few labelled rows, no retrieval support) are
reported through result fields, not exceptions.  Storage failures propagate
as the driver raised them.
"""

from __future__ import annotations


class MoodEngineError(Exception):
    """Base class for engine errors that callers are expected to handle."""


class MissingInputsError(MoodEngineError):
    """A prediction request carried neither an entry id nor usable text."""


class EntryNotFoundError(MoodEngineError):
    """The requested entry does not exist for the given user."""

    def __init__(self, user_id: str, entry_id: str) -> None:
        super().__init__(f"Entry {entry_id} not found for user {user_id}.")
        self.user_id = user_id
        self.entry_id = entry_id


class EmbeddingDimensionError(MoodEngineError):
    """A query embedding does not match the configured index dimension."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Embedding has {actual} dimensions; index expects {expected}.")
        self.expected = expected
        self.actual = actual


class EmbeddingServiceError(MoodEngineError):
    """The text-understanding service failed to return an embedding."""
