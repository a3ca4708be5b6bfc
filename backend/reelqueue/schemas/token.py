"""Pydantic schemas for playback token requests."""

from __future__ import annotations

from typing import Union

from pydantic import BaseModel, Field

AttributeValue = Union[bool, int, float, str]


class TokenRequest(BaseModel):
    id: str
    expires: str = ""
    attributes: dict[str, AttributeValue] = Field(default_factory=dict)


class TokenOut(BaseModel):
    token: str
    player_url: str
    expires: int


class VideoOut(BaseModel):
    id: str
    sizes: list[str]
    source: str
