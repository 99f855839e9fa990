from datetime import datetime, timezone
from typing import Annotated, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, model_validator
from pydantic.alias_generators import to_camel

EXCERPT_LENGTH = 200

# Post columns an update may not clear
REQUIRED_POST_FIELDS = ("title", "content", "excerpt", "published")


def as_utc(value: datetime) -> datetime:
    # SQLite drops the offset on the way back
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ---------------------------------------------------------------------------
# Stored entities
# ---------------------------------------------------------------------------
class User(CamelModel):
    id: int
    email: str
    username: str
    password: str
    display_name: str
    bio: Optional[str] = None
    avatar: Optional[str] = None
    created_at: UtcDatetime


class Post(CamelModel):
    id: int
    title: str
    content: str
    excerpt: str
    author_id: int
    image: Optional[str] = None
    tags: Optional[List[str]] = None
    published: bool = True
    created_at: UtcDatetime
    updated_at: UtcDatetime


class Like(CamelModel):
    id: int
    user_id: int
    post_id: int
    created_at: UtcDatetime


class Comment(CamelModel):
    id: int
    post_id: int
    user_id: int
    content: str
    created_at: UtcDatetime


class Bookmark(CamelModel):
    id: int
    user_id: int
    post_id: int
    created_at: UtcDatetime


class Follow(CamelModel):
    id: int
    follower_id: int
    following_id: int
    created_at: UtcDatetime


class Message(CamelModel):
    id: int
    sender_id: int
    receiver_id: int
    content: str
    is_read: bool = False
    created_at: UtcDatetime


# ---------------------------------------------------------------------------
# Derived views
# ---------------------------------------------------------------------------
class AuthorSummary(CamelModel):
    id: int
    display_name: str
    username: str
    avatar: Optional[str] = None

    @classmethod
    def of(cls, user: Optional[User]) -> "AuthorSummary":
        # Dangling references render as a placeholder instead of failing the read
        if user is None:
            return cls(id=0, display_name="Unknown User", username="unknown", avatar=None)
        return cls(
            id=user.id,
            display_name=user.display_name,
            username=user.username,
            avatar=user.avatar,
        )


class UserPublic(CamelModel):
    id: int
    email: str
    username: str
    display_name: str
    bio: Optional[str] = None
    avatar: Optional[str] = None
    created_at: UtcDatetime


class UserProfile(UserPublic):
    post_count: int = 0
    follower_count: int = 0
    following_count: int = 0
    is_following: bool = False


class PostWithAuthor(Post):
    author: AuthorSummary
    like_count: int = 0
    comment_count: int = 0
    is_liked: bool = False
    is_bookmarked: bool = False


class CommentWithAuthor(Comment):
    author: AuthorSummary


class MessageWithSender(Message):
    sender: AuthorSummary


class Conversation(CamelModel):
    participant: AuthorSummary
    last_message: Message
    unread_count: int = 0


class TrendingTag(CamelModel):
    tag: str
    count: int


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------
class UserCreate(CamelModel):
    username: str = Field(min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(min_length=6)
    display_name: str = Field(min_length=1, max_length=100)
    bio: Optional[str] = None
    avatar: Optional[str] = None


class LoginRequest(CamelModel):
    email: EmailStr
    password: str


class PostCreate(CamelModel):
    title: str = Field(min_length=1, max_length=200)
    content: str = Field(min_length=1)
    excerpt: Optional[str] = None
    image: Optional[str] = None
    tags: Optional[List[str]] = Field(default=None, max_length=5)
    published: bool = True

    @model_validator(mode="after")
    def fill_excerpt(self):
        if not self.excerpt:
            if len(self.content) > EXCERPT_LENGTH:
                self.excerpt = self.content[:EXCERPT_LENGTH] + "..."
            else:
                self.excerpt = self.content
        return self


class PostUpdate(CamelModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    content: Optional[str] = Field(default=None, min_length=1)
    excerpt: Optional[str] = None
    image: Optional[str] = None
    tags: Optional[List[str]] = Field(default=None, max_length=5)
    published: Optional[bool] = None

    @model_validator(mode="after")
    def reject_cleared_required_fields(self):
        cleared = [
            field for field in REQUIRED_POST_FIELDS
            if field in self.model_fields_set and getattr(self, field) is None
        ]
        if cleared:
            raise ValueError(f"{', '.join(cleared)} cannot be null")
        return self


class CommentCreate(CamelModel):
    content: str = Field(min_length=1, max_length=5000)


class MessageCreate(CamelModel):
    receiver_id: int
    content: str = Field(min_length=1, max_length=5000)


# ---------------------------------------------------------------------------
# Response envelopes
# ---------------------------------------------------------------------------
class AuthResponse(BaseModel):
    user: UserPublic
    access_token: str
    token_type: str = "bearer"
