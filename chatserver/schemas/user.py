from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SenderPublic(BaseModel):
    """Public profile fields attached to every delivered message."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    full_name: Optional[str] = Field(default=None, alias="fullName")
    user_name: Optional[str] = Field(default=None, alias="userName")
    avatar: Optional[str] = None


class TokenPayload(BaseModel):

    sub: str
    exp: int
