"""Data models using Pydantic."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class RoastResponse(BaseModel):
    """Buffered roast response."""

    model_config = ConfigDict(populate_by_name=True)

    shame: str
    language: str
    model: str
    from_cache: bool = Field(False, alias="fromCache")
    avatar_url: str | None = Field(None, alias="avatarUrl")


class RefreshAvatarsRequest(BaseModel):
    """Body of the avatar backfill endpoint."""

    secret: str = Field(..., min_length=1)


class AvatarUpdateModel(BaseModel):
    """Per-user outcome of an avatar backfill."""

    model_config = ConfigDict(populate_by_name=True)

    username: str
    updated_count: int = Field(alias="updatedCount")
    avatar_url: str = Field(alias="avatarUrl")


class RefreshAvatarsResponse(BaseModel):
    """Summary returned by the avatar backfill endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str = "Avatars updated for all users with missing avatars"
    unique_users_updated: int = Field(alias="uniqueUsersUpdated")
    total_records_updated: int = Field(alias="totalRecordsUpdated")
    updates: list[AvatarUpdateModel] = Field(default_factory=list)


class ReportEntry(BaseModel):
    """One cache row as shown by the admin report."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    username: str
    language: str
    model: str
    text: str
    avatar_url: str | None = Field(None, alias="avatarUrl")
    created_at: datetime = Field(alias="createdAt")
    last_access: datetime = Field(alias="lastAccess")


class ReportResponse(BaseModel):
    """Admin report of every cached roast."""

    total: int
    entries: list[ReportEntry]
