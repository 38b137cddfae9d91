# /api/schemas.py
# This module defines the request and response schemas for the ExplainGithub API, as well as a
# standard error response format. Aliases keep the camelCase field names the browser client sends.
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from storage.models import ChatMessage, ConversationSummary, RepoHistoryItem

__all__ = [
    "ChatMessage", "ConversationSummary", "RepoHistoryItem",
    "RepoContextIn", "ChatRequest", "ChatReply",
    "SaveMessageRequest", "FeedbackRequest",
    "SaveTokenRequest", "ValidateTokenRequest", "RefreshTokenRequest",
    "FileContentResponse", "ErrorResponse",
]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RepoContextIn(_CamelModel):
    structure: Any = ""
    readme: str = ""
    tagged_files: Dict[str, str] = Field(default_factory=dict, alias="taggedFiles")


class ChatRequest(_CamelModel):
    message: Optional[str] = None
    prompt: Optional[str] = None

    owner: Optional[str] = None
    repo: Optional[str] = None
    repo_path: Optional[str] = Field(default=None, alias="repoPath")
    provider: str = "github"

    # Either the nested context or the flat alternative
    repo_context: Optional[RepoContextIn] = Field(default=None, alias="repoContext")
    repo_structure: Any = Field(default=None, alias="repoStructure")
    readme_content: Optional[str] = Field(default=None, alias="readmeContent")
    tagged_files: Optional[Dict[str, str]] = Field(default=None, alias="taggedFiles")

    stream: bool = True
    anonymous_id: Optional[str] = Field(default=None, alias="anonymousId")


class ChatReply(BaseModel):
    message: str


class SaveMessageRequest(_CamelModel):
    message: ChatMessage
    owner: str = Field(..., min_length=1)
    repo: str = Field(..., min_length=1)
    provider: str = "github"


class FeedbackRequest(_CamelModel):
    conversation_id: str = Field(..., min_length=1, alias="conversationId")
    feedback: Literal["like", "dislike"]


class SaveTokenRequest(_CamelModel):
    provider: str
    token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")
    username: Optional[str] = None


class ValidateTokenRequest(_CamelModel):
    provider: str
    token: str = Field(..., min_length=1)


class RefreshTokenRequest(_CamelModel):
    provider: str


class FileContentResponse(BaseModel):
    path: str
    branch: Optional[str] = None
    content: str


class ErrorResponse(BaseModel):
    status: str = "error"
    message: str
