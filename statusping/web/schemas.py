from typing import Optional

from pydantic import BaseModel, field_validator

from statusping.database import MAX_IMAGES_PER_UPDATE


class ImageIn(BaseModel):
    url: str
    filename: Optional[str] = None
    size_bytes: Optional[int] = None


class LinkIn(BaseModel):
    url: str
    title: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None


class UpdateCreateRequest(BaseModel):
    content: str
    images: list[ImageIn] = []
    link: Optional[LinkIn] = None

    @field_validator("content")
    @classmethod
    def content_must_not_be_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("content must not be empty")
        return v

    @field_validator("images")
    @classmethod
    def at_most_four_images(cls, v: list) -> list:
        if len(v) > MAX_IMAGES_PER_UPDATE:
            raise ValueError("an update can have at most {} images".format(MAX_IMAGES_PER_UPDATE))
        return v


class SubscribeRequest(BaseModel):
    # Validated in the route so bad input gets a 400 like the rest of the public API
    email: Optional[str] = None
    frequency: Optional[str] = None


class SampleEmailRequest(BaseModel):
    email: Optional[str] = None
    kind: str = "instant"  # instant, daily, weekly, confirmation
    project_id: Optional[int] = None
