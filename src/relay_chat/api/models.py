from pydantic import BaseModel, Field

from ..data.models import Conversation, Message, Role


class ModelIn(BaseModel):
    name: str = ""
    provider: str
    config: dict = Field(default_factory=dict)


class ConversationIn(BaseModel):
    model_id: int
    message: str = Field(min_length=1)


class ConversationOut(BaseModel):
    conversation: Conversation
    message: Message


class MessageIn(BaseModel):
    conversation_id: int
    role: Role = Role.USER
    content: str


class OptionsIn(BaseModel):
    options: str


class StreamReplyRequest(BaseModel):
    session_id: str = Field(min_length=1)


class StreamReplyAccepted(BaseModel):
    conversation_id: int
    session_id: str


class StopResult(BaseModel):
    delivered: bool
