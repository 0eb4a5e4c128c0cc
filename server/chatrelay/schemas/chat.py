from __future__ import annotations
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

ALLOWED_ATTACHMENT_TYPES = ("image/png", "image/jpeg", "image/webp", "application/pdf")


class AttachedFile(BaseModel):
    name: str
    type: str
    url: str
    # Location in the object store, when the uploader recorded it
    bucket: Optional[str] = None
    path: Optional[str] = None

    @field_validator("type")
    @classmethod
    def _check_type(cls, value: str) -> str:
        if value not in ALLOWED_ATTACHMENT_TYPES:
            raise ValueError(f"Unsupported attachment type: {value}")
        return value

    @property
    def is_image(self) -> bool:
        return self.type.startswith("image/")


class ChatRequest(BaseModel):
    chatId: Optional[str] = None
    userMessageContent: str = ""
    userId: str = ""
    model: str = ""
    webSearchEnabled: bool = False
    attachedFiles: List[AttachedFile] = Field(default_factory=list)


class EditRequest(BaseModel):
    id: str
    newContent: str = ""
    modelOverride: Optional[str] = None


class DeleteChatRequest(BaseModel):
    chatId: str


class CreateChatRequest(BaseModel):
    title: Optional[str] = Field(default=None, max_length=200)
    prompt: Optional[str] = None


class UpdateChatRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    visibility: Optional[str] = Field(default=None, pattern=r"^(public|private)$")


class ModelInfo(BaseModel):
    id: str
    name: str
    context_length: int = 128000
