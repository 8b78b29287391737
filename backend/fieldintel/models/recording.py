"""Recording lifecycle status and the forward-only transition rule."""

from enum import Enum


class RecordingStatus(str, Enum):
    """Pipeline status of a recording, in pipeline order."""

    RECORDING = "recording"
    COMPLETED = "completed"
    TRANSCRIBING = "transcribing"
    TRANSCRIBED = "transcribed"
    ANALYZING = "analyzing"
    ANALYZED = "analyzed"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        """Position in the forward walk; ``failed`` sits outside it."""
        return _RANKS[self]


_RANKS: dict[RecordingStatus, int] = {
    RecordingStatus.RECORDING: 0,
    RecordingStatus.COMPLETED: 1,
    RecordingStatus.TRANSCRIBING: 2,
    RecordingStatus.TRANSCRIBED: 3,
    RecordingStatus.ANALYZING: 4,
    RecordingStatus.ANALYZED: 5,
    RecordingStatus.SYNCING: 6,
    RecordingStatus.SYNCED: 7,
    RecordingStatus.FAILED: -1,
}

# A stage re-invoked after a failure may only restart at its own in-progress status
RETRY_ENTRY_STATUSES = frozenset(
    {
        RecordingStatus.TRANSCRIBING,
        RecordingStatus.ANALYZING,
        RecordingStatus.SYNCING,
    }
)


def can_transition(current: RecordingStatus | str, target: RecordingStatus | str) -> bool:
    """Return True if moving from ``current`` to ``target`` keeps status monotonic.

    Rules:
        - Any non-failed status may move to ``failed``.
        - Otherwise the target's rank must be greater than or equal to the
          current rank (re-writing the same status is allowed).
        - From ``failed``, only a stage's in-progress status is reachable.
    """
    current = RecordingStatus(current)
    target = RecordingStatus(target)

    if target is RecordingStatus.FAILED:
        return True
    if current is RecordingStatus.FAILED:
        return target in RETRY_ENTRY_STATUSES
    return target.rank >= current.rank


def allowed_sources(target: RecordingStatus | str) -> list[str]:
    """All statuses from which ``target`` may be written.

    Used to build the conditional ``status IN (...)`` filter on updates.
    """
    target = RecordingStatus(target)
    return [s.value for s in RecordingStatus if can_transition(s, target)]
