"""Google Calendar integration schemas (camelCase on the wire)."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from vesta_calendar.db.enums import SyncDirection


class CalendarStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    connected: bool
    last_sync: datetime | None = Field(default=None, alias="lastSync")
    calendar_id: str | None = Field(default=None, alias="calendarId")


class ManualSyncResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    synced_events: int = Field(alias="syncedEvents")


class SyncSettingsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sync_direction: SyncDirection = Field(alias="syncDirection")


class SyncSettingsUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sync_direction: SyncDirection = Field(alias="syncDirection")

    @field_validator("sync_direction", mode="before")
    @classmethod
    def normalize_direction(cls, value):
        """Accept local_to_remote/remote_to_local aliases."""
        if isinstance(value, str):
            return SyncDirection(value)
        return value


class ActionResponse(BaseModel):
    success: bool
    message: str


class WatchRefreshResponse(BaseModel):
    checked: int
    renewed: int
    failed: int


class PollingSyncResponse(BaseModel):
    checked: int
    synced: int
    failed: int
