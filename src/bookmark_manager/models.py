# src/bookmark_manager/models.py

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class Session(BaseModel):
    """
    The authenticated identity plus the tokens proving it.
    Owned by the auth service; the controller only caches a read-only copy.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str] = None
    access_token: str
    refresh_token: str
    expires_at: Optional[int] = None  # Unix timestamp, when the auth service reports one


class Bookmark(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    url: str
    title: str
    owner_id: str = Field(alias="user_id")
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Bookmark":
        # Row ids may be bigint or uuid depending on the table definition
        data = dict(row)
        data["id"] = str(data.get("id"))
        if data.get("user_id") is not None:
            data["user_id"] = str(data["user_id"])
        return cls.model_validate(data)


class NewBookmark(BaseModel):
    url: str
    title: str
    user_id: str


class ChangeEvent(BaseModel):
    """
    A row-level notification from the change feed.
    `record` is the new row (INSERT/UPDATE), `old_record` the old row (DELETE).
    """
    type: str
    record: Optional[Dict[str, Any]] = None
    old_record: Optional[Dict[str, Any]] = None

    @property
    def old_id(self) -> Optional[str]:
        if not self.old_record or self.old_record.get("id") is None:
            return None
        return str(self.old_record["id"])


class OAuthRedirect(BaseModel):
    url: str
    code_verifier: str
