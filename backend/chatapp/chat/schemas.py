from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ChatTurn(BaseModel):
    role: str = "user"
    content: str = Field(..., max_length=20000)
    timestamp: datetime = Field(default_factory=_now)


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: Optional[str] = Field(None, max_length=10000)
    messages: list[ChatTurn] = []
    ai_mode: str = Field("chat", alias="aiMode")
    selected_language: Optional[str] = Field(None, alias="selectedLanguage")
    conversation_id: Optional[str] = Field(None, alias="conversationId")
    guest_prompt_count: int = Field(0, alias="guestPromptCount", ge=0)
    request_id: Optional[str] = Field(None, alias="requestId", max_length=100)
    stream: bool = False

    @model_validator(mode="after")
    def _split_query(self) -> "ChatRequest":
        """Without `query`, the trailing user message is the new prompt."""
        if self.query is None or not self.query.strip():
            if not self.messages or self.messages[-1].role != "user":
                raise ValueError("Either query or a trailing user message is required")
            last = self.messages[-1]
            self.query = last.content
            self.messages = self.messages[:-1]
        elif self.messages and self.messages[-1].role == "user" and self.messages[-1].content == self.query:
            # The web client sends the new prompt both ways
            self.messages = self.messages[:-1]
        if not self.query.strip():
            raise ValueError("query must not be empty")
        return self


class RenameConversation(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
