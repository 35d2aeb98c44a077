"""Enum definitions for application constants."""

from enum import Enum


GOOGLE_CALENDAR_PROVIDER = "google_calendar"


class SyncDirection(str, Enum):
    """
    Which way changes flow between Vesta appointments and Google Calendar.

    - BIDIRECTIONAL: pull remote changes and push local changes
    - VESTA_TO_GOOGLE: push local changes (pull still keeps local consistent)
    - GOOGLE_TO_VESTA: pull only, local edits are never pushed
    - NONE: sync paused; only a connectivity check runs
    """
    BIDIRECTIONAL = "bidirectional"
    VESTA_TO_GOOGLE = "vesta_to_google"
    GOOGLE_TO_VESTA = "google_to_vesta"
    NONE = "none"

    @classmethod
    def _missing_(cls, value):
        aliases = {
            "local_to_remote": cls.VESTA_TO_GOOGLE,
            "remote_to_local": cls.GOOGLE_TO_VESTA,
        }
        if isinstance(value, str):
            return aliases.get(value.strip().lower())
        return None

    @classmethod
    def has_value(cls, value: str) -> bool:
        """Check if value (or an accepted alias) is a valid direction."""
        try:
            cls(value)
        except ValueError:
            return False
        return True


class ChangeOrigin(str, Enum):
    """Where a change to an appointment came from."""
    REMOTE = "remote"  # Google -> Vesta
    LOCAL = "local"  # Vesta -> Google


class AppointmentStatus(str, Enum):
    SCHEDULED = "Scheduled"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    RESCHEDULED = "Rescheduled"
    NO_SHOW = "NoShow"


class AppointmentType(str, Enum):
    """Appointment kinds, recognised in Google event titles."""
    VISITA = "Visita"
    REUNION = "Reunión"
    FIRMA = "Firma"
    CIERRE = "Cierre"
    VIAJE = "Viaje"


class SyncOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
