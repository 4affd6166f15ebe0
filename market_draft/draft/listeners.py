"""
Observer interface for draft session changes.

The orchestrator notifies listeners after every committed mutation. Both the
scoring engine and the persistence relay are listeners. Listeners receive
snapshots, never the orchestrator's live objects.
"""

from .draft_event import DraftSession, Pick


class DraftListener:
    """Base class with no-op hooks; override what you need."""

    def on_session_state(self, session: DraftSession) -> None:
        """Session was started, advanced, completed or aborted."""

    def on_pick_committed(self, pick: Pick) -> None:
        """A pick was committed."""

    def on_session_restored(self, session: DraftSession) -> None:
        """A session was rebuilt from persisted state after a restart."""
