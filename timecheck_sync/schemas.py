from datetime import datetime, timezone
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def _as_naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class _Payload(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    @field_validator("*", mode="after")
    @classmethod
    def _normalize_timestamps(cls, value):
        if isinstance(value, datetime):
            return _as_naive_utc(value)
        return value


class TaskPayload(_Payload):
    id: str
    title: str
    description: str | None = None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None
    client_updated_at: datetime


class TimeEntryPayload(_Payload):
    id: str
    task_id: str
    started_at: datetime
    stopped_at: datetime | None = None
    comment: str | None = None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None
    client_updated_at: datetime


class TaskChange(BaseModel):
    op: Literal["upsert", "delete"]
    data: TaskPayload


class TimeEntryChange(BaseModel):
    op: Literal["upsert", "delete"]
    data: TimeEntryPayload


class SyncChanges(BaseModel):
    tasks: list[TaskChange] = []
    time_entries: list[TimeEntryChange] = []


class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cursor: str | None = Field(default=None, serialization_alias="last_sync_at")
    changes: SyncChanges

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class SyncResponse(BaseModel):
    server_time: str = Field(validation_alias=AliasChoices("server_time", "serverTime"))
    tasks: list[TaskPayload]
    time_entries: list[TimeEntryPayload]

    @field_validator("server_time")
    @classmethod
    def _server_time_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("server_time must not be empty")
        return value
