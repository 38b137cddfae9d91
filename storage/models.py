# /storage/models.py
# Pydantic shapes shared by the stores, services and API. Field aliases keep the camelCase
# wire format the browser client has always sent (selectedFiles, userId, ...).
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChatMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1)
    role: Literal["user", "assistant", "system"]
    content: str = Field(..., min_length=1)
    timestamp: int = Field(..., gt=0, description="Epoch milliseconds")
    selected_files: List[str] = Field(default_factory=list, alias="selectedFiles")


class ConversationSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    provider: str
    owner: str
    repo: str
    title: Optional[str] = None
    feedback: Optional[str] = None
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")


class RepoHistoryItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    provider: str
    owner: str
    repo: str
    viewed_at: datetime
