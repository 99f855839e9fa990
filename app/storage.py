"""
Storage layer for the blogging app.

`Storage` is the capability set the HTTP layer talks to. `MemStorage` keeps
every entity in process memory; `app.sql_storage.SqlStorage` implements the
same interface over SQLAlchemy. Lookups return None when an id does not
resolve and ownership-gated deletes return False, so callers cannot tell
"missing" from "not yours". The only raised condition is a self-follow.
"""
import functools
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from collections import Counter
from typing import Callable, Dict, List, Optional, Tuple

from app.config import settings
from app.schemas import (
    REQUIRED_POST_FIELDS,
    AuthorSummary,
    Bookmark,
    Comment,
    CommentWithAuthor,
    Conversation,
    Follow,
    Like,
    Message,
    MessageCreate,
    MessageWithSender,
    Post,
    PostCreate,
    PostUpdate,
    PostWithAuthor,
    TrendingTag,
    User,
    UserCreate,
    UserProfile,
)
from app.utils import utcnow

logger = logging.getLogger(__name__)


class StorageError(ValueError):
    pass


class SelfFollowError(StorageError):
    def __init__(self):
        super().__init__("Cannot follow yourself")


def newest_first(items):
    return sorted(items, key=lambda item: (item.created_at, item.id), reverse=True)


def oldest_first(items):
    return sorted(items, key=lambda item: (item.created_at, item.id))


def rank_tags(tag_counts: Counter, limit: int) -> List[TrendingTag]:
    ranked = sorted(tag_counts.items(), key=lambda pair: (-pair[1], pair[0]))
    return [TrendingTag(tag=tag, count=count) for tag, count in ranked[:limit]]


def matches_query(post: Post, query: str) -> bool:
    needle = query.lower()
    if needle in post.title.lower() or needle in post.content.lower():
        return True
    return any(needle in tag.lower() for tag in post.tags or [])


def post_changes(changes: PostUpdate) -> dict:
    """Fields the caller actually set, minus nulls for required columns."""
    update = changes.model_dump(exclude_unset=True)
    return {
        field: value for field, value in update.items()
        if value is not None or field not in REQUIRED_POST_FIELDS
    }


def synchronized(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper


class Storage(ABC):
    # Users
    @abstractmethod
    def get_user(self, user_id: int) -> Optional[User]: ...

    @abstractmethod
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    @abstractmethod
    def get_user_by_username(self, username: str) -> Optional[User]: ...

    @abstractmethod
    def create_user(self, data: UserCreate) -> User:
        """Insert a user. `data.password` must already be hashed."""

    @abstractmethod
    def get_user_profile(self, user_id: int, viewer_id: Optional[int] = None) -> Optional[UserProfile]: ...

    # Posts
    @abstractmethod
    def get_posts(self, limit: int = 10, offset: int = 0, viewer_id: Optional[int] = None) -> List[PostWithAuthor]: ...

    @abstractmethod
    def get_post(self, post_id: int, viewer_id: Optional[int] = None) -> Optional[PostWithAuthor]: ...

    @abstractmethod
    def get_posts_by_author(self, author_id: int, viewer_id: Optional[int] = None) -> List[PostWithAuthor]: ...

    @abstractmethod
    def get_posts_by_tag(self, tag: str, viewer_id: Optional[int] = None) -> List[PostWithAuthor]: ...

    @abstractmethod
    def search_posts(self, query: str, viewer_id: Optional[int] = None) -> List[PostWithAuthor]: ...

    @abstractmethod
    def create_post(self, author_id: int, data: PostCreate) -> Post: ...

    @abstractmethod
    def get_own_post(self, post_id: int, author_id: int) -> Optional[Post]:
        """The raw post, drafts included, when `author_id` owns it."""

    @abstractmethod
    def update_post(self, post_id: int, changes: PostUpdate) -> Optional[Post]: ...

    @abstractmethod
    def delete_post(self, post_id: int, author_id: int) -> bool: ...

    def list_posts(
        self,
        search: Optional[str] = None,
        tag: Optional[str] = None,
        author_id: Optional[int] = None,
        limit: int = 10,
        offset: int = 0,
        viewer_id: Optional[int] = None,
    ) -> List[PostWithAuthor]:
        """
        Pick one filter mode: search, then tag, then author, then the
        default feed. Only the default feed is paginated.
        """
        if search:
            return self.search_posts(search, viewer_id)
        if tag:
            return self.get_posts_by_tag(tag, viewer_id)
        if author_id:
            return self.get_posts_by_author(author_id, viewer_id)
        return self.get_posts(limit, offset, viewer_id)

    # Likes
    @abstractmethod
    def like_post(self, user_id: int, post_id: int) -> Like: ...

    @abstractmethod
    def unlike_post(self, user_id: int, post_id: int) -> bool: ...

    @abstractmethod
    def is_post_liked(self, user_id: int, post_id: int) -> bool: ...

    @abstractmethod
    def get_post_like_count(self, post_id: int) -> int: ...

    # Comments
    @abstractmethod
    def get_comments(self, post_id: int) -> List[CommentWithAuthor]: ...

    @abstractmethod
    def create_comment(self, post_id: int, user_id: int, content: str) -> Comment: ...

    @abstractmethod
    def delete_comment(self, comment_id: int, user_id: int) -> bool: ...

    @abstractmethod
    def get_comment_count(self, post_id: int) -> int: ...

    # Bookmarks
    @abstractmethod
    def bookmark_post(self, user_id: int, post_id: int) -> Bookmark: ...

    @abstractmethod
    def unbookmark_post(self, user_id: int, post_id: int) -> bool: ...

    @abstractmethod
    def is_post_bookmarked(self, user_id: int, post_id: int) -> bool: ...

    @abstractmethod
    def get_user_bookmarks(self, user_id: int) -> List[PostWithAuthor]: ...

    # Follows
    @abstractmethod
    def follow_user(self, follower_id: int, following_id: int) -> Follow: ...

    @abstractmethod
    def unfollow_user(self, follower_id: int, following_id: int) -> bool: ...

    @abstractmethod
    def is_user_following(self, follower_id: int, following_id: int) -> bool: ...

    @abstractmethod
    def get_followers(self, user_id: int) -> List[User]: ...

    @abstractmethod
    def get_following(self, user_id: int) -> List[User]: ...

    @abstractmethod
    def get_follower_count(self, user_id: int) -> int: ...

    @abstractmethod
    def get_following_count(self, user_id: int) -> int: ...

    # Discovery
    @abstractmethod
    def get_trending_tags(self) -> List[TrendingTag]: ...

    @abstractmethod
    def get_suggested_authors(self, user_id: int, limit: int = 5) -> List[UserProfile]: ...

    # Messages
    @abstractmethod
    def send_message(self, sender_id: int, data: MessageCreate) -> Message: ...

    @abstractmethod
    def get_conversations(self, user_id: int) -> List[Conversation]: ...

    @abstractmethod
    def get_messages(self, user_id: int, other_user_id: int, limit: int = 50) -> List[MessageWithSender]: ...

    @abstractmethod
    def mark_messages_as_read(self, user_id: int, other_user_id: int) -> bool: ...

    @abstractmethod
    def get_unread_message_count(self, user_id: int) -> int: ...


class MemStorage(Storage):
    """Process-lifetime store backed by dicts keyed on entity id."""

    def __init__(self, clock: Callable = utcnow):
        self._clock = clock
        self._lock = threading.RLock()

        self.users: Dict[int, User] = {}
        self.posts: Dict[int, Post] = {}
        self.likes: Dict[int, Like] = {}
        self.comments: Dict[int, Comment] = {}
        self.bookmarks: Dict[int, Bookmark] = {}
        self.follows: Dict[int, Follow] = {}
        self.messages: Dict[int, Message] = {}

        self._ids = {
            name: itertools.count(1)
            for name in ("users", "posts", "likes", "comments", "bookmarks", "follows", "messages")
        }

        # (user_id, post_id) -> like id, and so on
        self._like_index: Dict[Tuple[int, int], int] = {}
        self._bookmark_index: Dict[Tuple[int, int], int] = {}
        self._follow_index: Dict[Tuple[int, int], int] = {}

    def _next_id(self, name: str) -> int:
        return next(self._ids[name])

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    @synchronized
    def get_user(self, user_id: int) -> Optional[User]:
        return self.users.get(user_id)

    @synchronized
    def get_user_by_email(self, email: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.email == email), None)

    @synchronized
    def get_user_by_username(self, username: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.username == username), None)

    def create_user(self, data: UserCreate) -> User:
        with self._lock:
            user = User(
                id=self._next_id("users"),
                email=data.email,
                username=data.username,
                password=data.password,
                display_name=data.display_name,
                bio=data.bio or None,
                avatar=data.avatar or None,
                created_at=self._clock(),
            )
            self.users[user.id] = user
        logger.info("Created user %s (id=%s)", user.username, user.id)
        return user

    @synchronized
    def get_user_profile(self, user_id: int, viewer_id: Optional[int] = None) -> Optional[UserProfile]:
        user = self.users.get(user_id)
        if user is None:
            return None

        post_count = sum(1 for p in self.posts.values() if p.author_id == user_id)
        return UserProfile(
            **user.model_dump(exclude={"password"}),
            post_count=post_count,
            follower_count=self.get_follower_count(user_id),
            following_count=self.get_following_count(user_id),
            is_following=bool(viewer_id) and self.is_user_following(viewer_id, user_id),
        )

    # ------------------------------------------------------------------
    # Posts
    # ------------------------------------------------------------------
    def _published(self) -> List[Post]:
        return [p for p in self.posts.values() if p.published]

    def _enrich(self, post: Post, viewer_id: Optional[int]) -> PostWithAuthor:
        return PostWithAuthor(
            **post.model_dump(),
            author=AuthorSummary.of(self.users.get(post.author_id)),
            like_count=self.get_post_like_count(post.id),
            comment_count=self.get_comment_count(post.id),
            is_liked=bool(viewer_id) and self.is_post_liked(viewer_id, post.id),
            is_bookmarked=bool(viewer_id) and self.is_post_bookmarked(viewer_id, post.id),
        )

    def _enrich_all(self, posts, viewer_id: Optional[int]) -> List[PostWithAuthor]:
        return [self._enrich(p, viewer_id) for p in posts]

    @synchronized
    def get_posts(self, limit: int = 10, offset: int = 0, viewer_id: Optional[int] = None) -> List[PostWithAuthor]:
        page = newest_first(self._published())[offset:offset + limit]
        return self._enrich_all(page, viewer_id)

    @synchronized
    def get_post(self, post_id: int, viewer_id: Optional[int] = None) -> Optional[PostWithAuthor]:
        post = self.posts.get(post_id)
        if post is None or not post.published:
            return None
        return self._enrich(post, viewer_id)

    @synchronized
    def get_posts_by_author(self, author_id: int, viewer_id: Optional[int] = None) -> List[PostWithAuthor]:
        posts = [p for p in self._published() if p.author_id == author_id]
        return self._enrich_all(newest_first(posts), viewer_id)

    @synchronized
    def get_posts_by_tag(self, tag: str, viewer_id: Optional[int] = None) -> List[PostWithAuthor]:
        posts = [p for p in self._published() if tag in (p.tags or [])]
        return self._enrich_all(newest_first(posts), viewer_id)

    @synchronized
    def search_posts(self, query: str, viewer_id: Optional[int] = None) -> List[PostWithAuthor]:
        posts = [p for p in self._published() if matches_query(p, query)]
        return self._enrich_all(newest_first(posts), viewer_id)

    def create_post(self, author_id: int, data: PostCreate) -> Post:
        with self._lock:
            now = self._clock()
            post = Post(
                id=self._next_id("posts"),
                title=data.title,
                content=data.content,
                excerpt=data.excerpt,
                author_id=author_id,
                image=data.image or None,
                tags=data.tags or None,
                published=data.published,
                created_at=now,
                updated_at=now,
            )
            self.posts[post.id] = post
        logger.info("Post %s created by user %s", post.id, author_id)
        return post

    @synchronized
    def get_own_post(self, post_id: int, author_id: int) -> Optional[Post]:
        post = self.posts.get(post_id)
        if post is None or post.author_id != author_id:
            return None
        return post

    def update_post(self, post_id: int, changes: PostUpdate) -> Optional[Post]:
        with self._lock:
            post = self.posts.get(post_id)
            if post is None:
                return None
            update = post_changes(changes)
            update["updated_at"] = self._clock()
            post = post.model_copy(update=update)
            self.posts[post_id] = post
        return post

    def delete_post(self, post_id: int, author_id: int) -> bool:
        with self._lock:
            post = self.posts.get(post_id)
            if post is None or post.author_id != author_id:
                return False
            del self.posts[post_id]

            for like in [l for l in self.likes.values() if l.post_id == post_id]:
                del self.likes[like.id]
                self._like_index.pop((like.user_id, post_id), None)
            for bookmark in [b for b in self.bookmarks.values() if b.post_id == post_id]:
                del self.bookmarks[bookmark.id]
                self._bookmark_index.pop((bookmark.user_id, post_id), None)
            for comment_id in [c.id for c in self.comments.values() if c.post_id == post_id]:
                del self.comments[comment_id]
        logger.info("Post %s deleted by user %s", post_id, author_id)
        return True

    # ------------------------------------------------------------------
    # Likes
    # ------------------------------------------------------------------
    def like_post(self, user_id: int, post_id: int) -> Like:
        with self._lock:
            existing = self._like_index.get((user_id, post_id))
            if existing is not None:
                return self.likes[existing]
            like = Like(id=self._next_id("likes"), user_id=user_id, post_id=post_id, created_at=self._clock())
            self.likes[like.id] = like
            self._like_index[(user_id, post_id)] = like.id
        return like

    def unlike_post(self, user_id: int, post_id: int) -> bool:
        with self._lock:
            like_id = self._like_index.pop((user_id, post_id), None)
            if like_id is None:
                return False
            del self.likes[like_id]
        return True

    @synchronized
    def is_post_liked(self, user_id: int, post_id: int) -> bool:
        return (user_id, post_id) in self._like_index

    @synchronized
    def get_post_like_count(self, post_id: int) -> int:
        return sum(1 for l in self.likes.values() if l.post_id == post_id)

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------
    @synchronized
    def get_comments(self, post_id: int) -> List[CommentWithAuthor]:
        comments = oldest_first(c for c in self.comments.values() if c.post_id == post_id)
        return [
            CommentWithAuthor(**c.model_dump(), author=AuthorSummary.of(self.users.get(c.user_id)))
            for c in comments
        ]

    def create_comment(self, post_id: int, user_id: int, content: str) -> Comment:
        with self._lock:
            comment = Comment(
                id=self._next_id("comments"),
                post_id=post_id,
                user_id=user_id,
                content=content,
                created_at=self._clock(),
            )
            self.comments[comment.id] = comment
        return comment

    def delete_comment(self, comment_id: int, user_id: int) -> bool:
        with self._lock:
            comment = self.comments.get(comment_id)
            if comment is None or comment.user_id != user_id:
                return False
            del self.comments[comment_id]
        return True

    @synchronized
    def get_comment_count(self, post_id: int) -> int:
        return sum(1 for c in self.comments.values() if c.post_id == post_id)

    # ------------------------------------------------------------------
    # Bookmarks
    # ------------------------------------------------------------------
    def bookmark_post(self, user_id: int, post_id: int) -> Bookmark:
        with self._lock:
            existing = self._bookmark_index.get((user_id, post_id))
            if existing is not None:
                return self.bookmarks[existing]
            bookmark = Bookmark(
                id=self._next_id("bookmarks"), user_id=user_id, post_id=post_id, created_at=self._clock()
            )
            self.bookmarks[bookmark.id] = bookmark
            self._bookmark_index[(user_id, post_id)] = bookmark.id
        return bookmark

    def unbookmark_post(self, user_id: int, post_id: int) -> bool:
        with self._lock:
            bookmark_id = self._bookmark_index.pop((user_id, post_id), None)
            if bookmark_id is None:
                return False
            del self.bookmarks[bookmark_id]
        return True

    @synchronized
    def is_post_bookmarked(self, user_id: int, post_id: int) -> bool:
        return (user_id, post_id) in self._bookmark_index

    @synchronized
    def get_user_bookmarks(self, user_id: int) -> List[PostWithAuthor]:
        bookmarks = newest_first(b for b in self.bookmarks.values() if b.user_id == user_id)
        posts = [self.posts[b.post_id] for b in bookmarks if b.post_id in self.posts]
        return self._enrich_all(posts, user_id)

    # ------------------------------------------------------------------
    # Follows
    # ------------------------------------------------------------------
    def follow_user(self, follower_id: int, following_id: int) -> Follow:
        if follower_id == following_id:
            raise SelfFollowError()
        with self._lock:
            existing = self._follow_index.get((follower_id, following_id))
            if existing is not None:
                return self.follows[existing]
            follow = Follow(
                id=self._next_id("follows"),
                follower_id=follower_id,
                following_id=following_id,
                created_at=self._clock(),
            )
            self.follows[follow.id] = follow
            self._follow_index[(follower_id, following_id)] = follow.id
        logger.info("User %s followed %s", follower_id, following_id)
        return follow

    def unfollow_user(self, follower_id: int, following_id: int) -> bool:
        with self._lock:
            follow_id = self._follow_index.pop((follower_id, following_id), None)
            if follow_id is None:
                return False
            del self.follows[follow_id]
        return True

    @synchronized
    def is_user_following(self, follower_id: int, following_id: int) -> bool:
        return (follower_id, following_id) in self._follow_index

    @synchronized
    def get_followers(self, user_id: int) -> List[User]:
        ids = [f.follower_id for f in self.follows.values() if f.following_id == user_id]
        return [self.users[i] for i in ids if i in self.users]

    @synchronized
    def get_following(self, user_id: int) -> List[User]:
        ids = [f.following_id for f in self.follows.values() if f.follower_id == user_id]
        return [self.users[i] for i in ids if i in self.users]

    @synchronized
    def get_follower_count(self, user_id: int) -> int:
        return sum(1 for f in self.follows.values() if f.following_id == user_id)

    @synchronized
    def get_following_count(self, user_id: int) -> int:
        return sum(1 for f in self.follows.values() if f.follower_id == user_id)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------
    @synchronized
    def get_trending_tags(self) -> List[TrendingTag]:
        counts = Counter()
        for post in self._published():
            counts.update(post.tags or [])
        return rank_tags(counts, settings.TRENDING_TAGS_LIMIT)

    @synchronized
    def get_suggested_authors(self, user_id: int, limit: int = 5) -> List[UserProfile]:
        candidates = [uid for uid in sorted(self.users) if uid != user_id][:limit]
        return [self.get_user_profile(uid, user_id) for uid in candidates]

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    def send_message(self, sender_id: int, data: MessageCreate) -> Message:
        with self._lock:
            message = Message(
                id=self._next_id("messages"),
                sender_id=sender_id,
                receiver_id=data.receiver_id,
                content=data.content,
                is_read=False,
                created_at=self._clock(),
            )
            self.messages[message.id] = message
        logger.debug("Message %s sent from %s to %s", message.id, sender_id, data.receiver_id)
        return message

    def _unread_from(self, sender_id: int, receiver_id: int) -> List[Message]:
        return [
            m for m in self.messages.values()
            if m.sender_id == sender_id and m.receiver_id == receiver_id and not m.is_read
        ]

    @synchronized
    def get_conversations(self, user_id: int) -> List[Conversation]:
        involved = newest_first(
            m for m in self.messages.values() if user_id in (m.sender_id, m.receiver_id)
        )

        latest: Dict[int, Message] = {}
        for message in involved:
            other_id = message.receiver_id if message.sender_id == user_id else message.sender_id
            latest.setdefault(other_id, message)

        conversations = []
        for other_id, last_message in latest.items():
            participant = self.users.get(other_id)
            if participant is None:
                continue
            conversations.append(Conversation(
                participant=AuthorSummary.of(participant),
                last_message=last_message,
                unread_count=len(self._unread_from(other_id, user_id)),
            ))
        # `latest` was filled newest-first, so insertion order is already sorted
        return conversations

    @synchronized
    def get_messages(self, user_id: int, other_user_id: int, limit: int = 50) -> List[MessageWithSender]:
        if limit <= 0:
            return []
        thread = oldest_first(
            m for m in self.messages.values()
            if (m.sender_id, m.receiver_id) in ((user_id, other_user_id), (other_user_id, user_id))
        )
        return [
            MessageWithSender(**m.model_dump(), sender=AuthorSummary.of(self.users.get(m.sender_id)))
            for m in thread[-limit:]
        ]

    def mark_messages_as_read(self, user_id: int, other_user_id: int) -> bool:
        with self._lock:
            unread = self._unread_from(other_user_id, user_id)
            for message in unread:
                self.messages[message.id] = message.model_copy(update={"is_read": True})
        if unread:
            logger.debug("Marked %s messages from %s to %s as read", len(unread), other_user_id, user_id)
        return bool(unread)

    @synchronized
    def get_unread_message_count(self, user_id: int) -> int:
        return sum(1 for m in self.messages.values() if m.receiver_id == user_id and not m.is_read)
