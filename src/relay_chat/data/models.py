from enum import IntEnum

from pydantic import BaseModel


class Role(IntEnum):
    USER = 0
    BOT = 1


class Model(BaseModel):
    id: int
    name: str
    provider: str
    config: str
    created_at: str


class NewModel(BaseModel):
    name: str = ""
    provider: str
    config: str


class Setting(BaseModel):
    key: str
    value: str


class Conversation(BaseModel):
    id: int
    model_id: int
    subject: str
    options: str
    created_at: str


class NewConversation(BaseModel):
    model_id: int
    subject: str


class ConversationListItem(Conversation):
    model_provider: str
    message_count: int


class ConversationOptions(BaseModel):
    conversation_id: int
    provider: str
    options: str


class Message(BaseModel):
    id: int
    conversation_id: int
    role: Role
    content: str
    created_at: str


class NewMessage(BaseModel):
    conversation_id: int
    role: Role
    content: str


class SeedMessage(BaseModel):
    """First message of a conversation, created before the conversation id exists."""

    role: Role = Role.USER
    content: str
