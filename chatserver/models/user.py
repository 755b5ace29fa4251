from typing import Optional, TypedDict


class UserDocument(TypedDict, total=False):

    _id: str
    email: str
    user_name: str
    full_name: Optional[str]
    avatar: Optional[str]
