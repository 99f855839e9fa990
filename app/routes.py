import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.config import settings
from app.dependencies import get_current_user, get_storage, viewer_id
from app.schemas import (
    AuthResponse,
    CommentCreate,
    LoginRequest,
    MessageCreate,
    PostCreate,
    PostUpdate,
    User,
    UserCreate,
    UserPublic,
)
from app.storage import SelfFollowError, Storage
from app.utils import create_access_token, hash_password, verify_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def public(user: User) -> UserPublic:
    return UserPublic(**user.model_dump(exclude={"password"}))


def issue_token(user: User) -> AuthResponse:
    access_token = create_access_token(data={"sub": str(user.id)})
    return AuthResponse(user=public(user), access_token=access_token)


def require_post(storage: Storage, post_id: int):
    post = storage.get_post(post_id)
    if post is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Post not found")
    return post


def require_user(storage: Storage, user_id: int) -> User:
    user = storage.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------
@router.post("/auth/register", status_code=status.HTTP_201_CREATED, tags=["Users"])
def register_user(user: UserCreate, storage: Storage = Depends(get_storage)):
    if storage.get_user_by_email(user.email):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="User already exists with this email",
        )
    if storage.get_user_by_username(user.username):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Username already taken",
        )

    hashed = user.model_copy(update={"password": hash_password(user.password)})
    new_user = storage.create_user(hashed)
    return issue_token(new_user)


@router.post("/auth/login", tags=["Users"])
def login_user(credentials: LoginRequest, storage: Storage = Depends(get_storage)):
    user = storage.get_user_by_email(credentials.email)
    if not user or not verify_password(credentials.password, user.password):
        logger.warning("Failed login for %s", credentials.email)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
        )
    return issue_token(user)


@router.get("/auth/me", tags=["Users"])
def read_users_me(current_user: User = Depends(get_current_user)):
    return {"user": public(current_user)}


# Tokens are stateless, the client discards its copy
@router.post("/auth/logout", tags=["Users"])
def logout_user():
    return {"message": "Logged out successfully"}


# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------
@router.get("/posts", tags=["Posts"])
def get_posts(
    search: Optional[str] = None,
    tag: Optional[str] = None,
    author_id: Optional[int] = Query(None, alias="authorId"),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=100),
    offset: int = Query(0, ge=0),
    viewer: Optional[int] = Depends(viewer_id),
    storage: Storage = Depends(get_storage),
):
    posts = storage.list_posts(
        search=search, tag=tag, author_id=author_id, limit=limit, offset=offset, viewer_id=viewer
    )
    return {"posts": posts}


@router.get("/posts/{post_id}", tags=["Posts"])
def get_post(post_id: int, viewer: Optional[int] = Depends(viewer_id), storage: Storage = Depends(get_storage)):
    post = storage.get_post(post_id, viewer)
    if not post:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Post not found")
    return {"post": post}


@router.post("/posts", status_code=status.HTTP_201_CREATED, tags=["Posts"])
def create_post(
    post: PostCreate,
    current_user: User = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    return {"post": storage.create_post(current_user.id, post)}


@router.put("/posts/{post_id}", tags=["Posts"])
def update_post(
    post_id: int,
    changes: PostUpdate,
    current_user: User = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    if storage.get_own_post(post_id, current_user.id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Post not found or not authorized")
    return {"post": storage.update_post(post_id, changes)}


@router.delete("/posts/{post_id}", tags=["Posts"])
def delete_post(post_id: int, current_user: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    if not storage.delete_post(post_id, current_user.id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Post not found or not authorized")
    return {"message": "Post deleted successfully"}


# ---------------------------------------------------------------------------
# Likes, bookmarks and comments
# ---------------------------------------------------------------------------
@router.post("/posts/{post_id}/like", tags=["Comments & Likes"])
def like_post(post_id: int, current_user: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    require_post(storage, post_id)
    return {"like": storage.like_post(current_user.id, post_id)}


@router.delete("/posts/{post_id}/like", tags=["Comments & Likes"])
def unlike_post(post_id: int, current_user: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    return {"success": storage.unlike_post(current_user.id, post_id)}


@router.post("/posts/{post_id}/bookmark", tags=["Bookmarks"])
def bookmark_post(post_id: int, current_user: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    require_post(storage, post_id)
    return {"bookmark": storage.bookmark_post(current_user.id, post_id)}


@router.delete("/posts/{post_id}/bookmark", tags=["Bookmarks"])
def unbookmark_post(post_id: int, current_user: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    return {"success": storage.unbookmark_post(current_user.id, post_id)}


@router.get("/bookmarks", tags=["Bookmarks"])
def get_bookmarks(current_user: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    return {"posts": storage.get_user_bookmarks(current_user.id)}


@router.get("/posts/{post_id}/comments", tags=["Comments & Likes"])
def get_comments(post_id: int, storage: Storage = Depends(get_storage)):
    return {"comments": storage.get_comments(post_id)}


@router.post("/posts/{post_id}/comments", status_code=status.HTTP_201_CREATED, tags=["Comments & Likes"])
def create_comment(
    post_id: int,
    comment: CommentCreate,
    current_user: User = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    require_post(storage, post_id)
    return {"comment": storage.create_comment(post_id, current_user.id, comment.content)}


@router.delete("/comments/{comment_id}", tags=["Comments & Likes"])
def delete_comment(comment_id: int, current_user: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    if not storage.delete_comment(comment_id, current_user.id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Comment not found or not authorized")
    return {"message": "Comment deleted successfully"}


# ---------------------------------------------------------------------------
# Users and follows
# ---------------------------------------------------------------------------
@router.get("/users/{user_id}", tags=["Users"])
def get_user_profile(user_id: int, viewer: Optional[int] = Depends(viewer_id), storage: Storage = Depends(get_storage)):
    profile = storage.get_user_profile(user_id, viewer)
    if not profile:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return {"user": profile}


@router.post("/users/{user_id}/follow", tags=["Follow & Unfollow"])
def follow_user(user_id: int, current_user: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    require_user(storage, user_id)
    try:
        follow = storage.follow_user(current_user.id, user_id)
    except SelfFollowError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return {"follow": follow}


@router.delete("/users/{user_id}/follow", tags=["Follow & Unfollow"])
def unfollow_user(user_id: int, current_user: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    return {"success": storage.unfollow_user(current_user.id, user_id)}


@router.get("/users/{user_id}/followers", tags=["Follow & Unfollow"])
def get_followers(user_id: int, storage: Storage = Depends(get_storage)):
    return {"users": [public(u) for u in storage.get_followers(user_id)]}


@router.get("/users/{user_id}/following", tags=["Follow & Unfollow"])
def get_following(user_id: int, storage: Storage = Depends(get_storage)):
    return {"users": [public(u) for u in storage.get_following(user_id)]}


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------
@router.get("/trending/tags", tags=["Discovery"])
def get_trending_tags(storage: Storage = Depends(get_storage)):
    return {"tags": storage.get_trending_tags()}


@router.get("/suggested/authors", tags=["Discovery"])
def get_suggested_authors(
    limit: int = Query(settings.SUGGESTED_AUTHORS_LIMIT, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    return {"authors": storage.get_suggested_authors(current_user.id, limit)}


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------
@router.get("/messages/conversations", tags=["Messages"])
def get_conversations(current_user: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    return {"conversations": storage.get_conversations(current_user.id)}


# Declared ahead of /messages/{user_id} so the literal path wins
@router.get("/messages/unread-count", tags=["Messages"])
def get_unread_count(current_user: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    return {"count": storage.get_unread_message_count(current_user.id)}


@router.get("/messages/{user_id}", tags=["Messages"])
def get_messages(
    user_id: int,
    limit: int = Query(settings.MESSAGE_PAGE_SIZE, ge=1, le=500),
    current_user: User = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    return {"messages": storage.get_messages(current_user.id, user_id, limit)}


@router.post("/messages", status_code=status.HTTP_201_CREATED, tags=["Messages"])
def send_message(
    message: MessageCreate,
    current_user: User = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    require_user(storage, message.receiver_id)
    return {"message": storage.send_message(current_user.id, message)}


@router.post("/messages/{user_id}/read", tags=["Messages"])
def mark_messages_read(user_id: int, current_user: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    return {"success": storage.mark_messages_as_read(current_user.id, user_id)}
