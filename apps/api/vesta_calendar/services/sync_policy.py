"""Sync direction policy.

Pure functions deciding whether a change may flow in a given direction and
which side wins when both changed the same appointment.
"""

from datetime import datetime

from vesta_calendar.db.enums import ChangeOrigin, SyncDirection
from vesta_calendar.utils.datetime_parsing import to_utc


_APPLY: dict[SyncDirection, frozenset[ChangeOrigin]] = {
    SyncDirection.BIDIRECTIONAL: frozenset({ChangeOrigin.REMOTE, ChangeOrigin.LOCAL}),
    # Pulling still runs so local data stays consistent with Google.
    SyncDirection.VESTA_TO_GOOGLE: frozenset({ChangeOrigin.REMOTE, ChangeOrigin.LOCAL}),
    SyncDirection.GOOGLE_TO_VESTA: frozenset({ChangeOrigin.REMOTE}),
    SyncDirection.NONE: frozenset(),
}


def should_apply(direction: SyncDirection | str, change_origin: ChangeOrigin | str) -> bool:
    """Whether a change from `change_origin` is applied under `direction`."""
    return ChangeOrigin(change_origin) in _APPLY[SyncDirection(direction)]


def resolve_conflict(
    direction: SyncDirection | str,
    local_updated_at: datetime | None,
    remote_updated_at: datetime | None,
) -> ChangeOrigin:
    """
    Pick the winner when an appointment changed on both sides since the last sync.

    Last writer wins on modification timestamps. Ties and unknown timestamps
    go to Google, and so does everything when local changes are never pushed.
    """
    direction = SyncDirection(direction)
    if not should_apply(direction, ChangeOrigin.LOCAL):
        return ChangeOrigin.REMOTE

    local = to_utc(local_updated_at)
    remote = to_utc(remote_updated_at)
    if local is None or remote is None:
        return ChangeOrigin.REMOTE
    return ChangeOrigin.LOCAL if local > remote else ChangeOrigin.REMOTE
