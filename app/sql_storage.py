"""
SQLAlchemy implementation of `Storage`.

Each call opens its own session and commits before returning, so the
pydantic records handed back are detached snapshots. Pair uniqueness for
likes, bookmarks and follows is enforced by unique constraints; a losing
concurrent insert falls back to the row that won.
"""
import logging
from collections import Counter
from typing import Callable, Dict, List, Optional

from sqlalchemy import func, or_, and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import models, schemas
from app.config import settings
from app.database import Base, make_engine, make_session_factory
from app.schemas import AuthorSummary, MessageCreate, PostCreate, PostUpdate, UserCreate
from app.storage import SelfFollowError, Storage, matches_query, post_changes, rank_tags
from app.utils import utcnow

logger = logging.getLogger(__name__)


class SqlStorage(Storage):

    def __init__(self, engine=None, clock: Callable = utcnow):
        self.engine = engine if engine is not None else make_engine()
        self._session_factory = make_session_factory(self.engine)
        self._clock = clock
        Base.metadata.create_all(bind=self.engine)

    def _session(self) -> Session:
        return self._session_factory()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def get_user(self, user_id: int) -> Optional[schemas.User]:
        with self._session() as db:
            user = db.get(models.User, user_id)
            return schemas.User.model_validate(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[schemas.User]:
        with self._session() as db:
            user = db.query(models.User).filter(models.User.email == email).first()
            return schemas.User.model_validate(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[schemas.User]:
        with self._session() as db:
            user = db.query(models.User).filter(models.User.username == username).first()
            return schemas.User.model_validate(user) if user else None

    def create_user(self, data: UserCreate) -> schemas.User:
        with self._session() as db:
            user = models.User(
                email=data.email,
                username=data.username,
                password=data.password,
                display_name=data.display_name,
                bio=data.bio or None,
                avatar=data.avatar or None,
                created_at=self._clock(),
            )
            db.add(user)
            db.commit()
            db.refresh(user)
            logger.info("Created user %s (id=%s)", user.username, user.id)
            return schemas.User.model_validate(user)

    def _profile(self, db: Session, user: models.User, viewer_id: Optional[int]) -> schemas.UserProfile:
        post_count = db.query(models.Post).filter(models.Post.author_id == user.id).count()
        return schemas.UserProfile(
            **schemas.User.model_validate(user).model_dump(exclude={"password"}),
            post_count=post_count,
            follower_count=self._count_follows(db, following_id=user.id),
            following_count=self._count_follows(db, follower_id=user.id),
            is_following=bool(viewer_id) and self._follow_row(db, viewer_id, user.id) is not None,
        )

    def get_user_profile(self, user_id: int, viewer_id: Optional[int] = None) -> Optional[schemas.UserProfile]:
        with self._session() as db:
            user = db.get(models.User, user_id)
            if user is None:
                return None
            return self._profile(db, user, viewer_id)

    # ------------------------------------------------------------------
    # Posts
    # ------------------------------------------------------------------
    @staticmethod
    def _newest(query):
        return query.order_by(models.Post.created_at.desc(), models.Post.id.desc())

    def _published(self, db: Session):
        return self._newest(db.query(models.Post).filter(models.Post.published.is_(True)))

    def _enrich(self, db: Session, post: models.Post, viewer_id: Optional[int]) -> schemas.PostWithAuthor:
        like_count = db.query(models.Like).filter(models.Like.post_id == post.id).count()
        comment_count = db.query(models.Comment).filter(models.Comment.post_id == post.id).count()
        is_liked = is_bookmarked = False
        if viewer_id:
            is_liked = self._like_row(db, viewer_id, post.id) is not None
            is_bookmarked = self._bookmark_row(db, viewer_id, post.id) is not None
        return schemas.PostWithAuthor(
            **schemas.Post.model_validate(post).model_dump(),
            author=AuthorSummary.of(db.get(models.User, post.author_id)),
            like_count=like_count,
            comment_count=comment_count,
            is_liked=is_liked,
            is_bookmarked=is_bookmarked,
        )

    def get_posts(self, limit: int = 10, offset: int = 0, viewer_id: Optional[int] = None) -> List[schemas.PostWithAuthor]:
        with self._session() as db:
            posts = self._published(db).offset(offset).limit(limit).all()
            return [self._enrich(db, p, viewer_id) for p in posts]

    def get_post(self, post_id: int, viewer_id: Optional[int] = None) -> Optional[schemas.PostWithAuthor]:
        with self._session() as db:
            post = db.get(models.Post, post_id)
            if post is None or not post.published:
                return None
            return self._enrich(db, post, viewer_id)

    def get_posts_by_author(self, author_id: int, viewer_id: Optional[int] = None) -> List[schemas.PostWithAuthor]:
        with self._session() as db:
            posts = self._published(db).filter(models.Post.author_id == author_id).all()
            return [self._enrich(db, p, viewer_id) for p in posts]

    # Tags live in a JSON column; membership and substring tests run in Python
    # so behaviour does not depend on the dialect's JSON operators.
    def get_posts_by_tag(self, tag: str, viewer_id: Optional[int] = None) -> List[schemas.PostWithAuthor]:
        with self._session() as db:
            posts = [p for p in self._published(db).all() if tag in (p.tags or [])]
            return [self._enrich(db, p, viewer_id) for p in posts]

    def search_posts(self, query: str, viewer_id: Optional[int] = None) -> List[schemas.PostWithAuthor]:
        with self._session() as db:
            posts = [p for p in self._published(db).all() if matches_query(p, query)]
            return [self._enrich(db, p, viewer_id) for p in posts]

    def create_post(self, author_id: int, data: PostCreate) -> schemas.Post:
        with self._session() as db:
            now = self._clock()
            post = models.Post(
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
            db.add(post)
            db.commit()
            db.refresh(post)
            logger.info("Post %s created by user %s", post.id, author_id)
            return schemas.Post.model_validate(post)

    def get_own_post(self, post_id: int, author_id: int) -> Optional[schemas.Post]:
        with self._session() as db:
            post = db.get(models.Post, post_id)
            if post is None or post.author_id != author_id:
                return None
            return schemas.Post.model_validate(post)

    def update_post(self, post_id: int, changes: PostUpdate) -> Optional[schemas.Post]:
        with self._session() as db:
            post = db.get(models.Post, post_id)
            if post is None:
                return None
            for field, value in post_changes(changes).items():
                setattr(post, field, value)
            post.updated_at = self._clock()
            db.commit()
            db.refresh(post)
            return schemas.Post.model_validate(post)

    def delete_post(self, post_id: int, author_id: int) -> bool:
        with self._session() as db:
            post = db.get(models.Post, post_id)
            if post is None or post.author_id != author_id:
                return False
            # likes, comments and bookmarks go with it via relationship cascade
            db.delete(post)
            db.commit()
        logger.info("Post %s deleted by user %s", post_id, author_id)
        return True

    # ------------------------------------------------------------------
    # Likes
    # ------------------------------------------------------------------
    @staticmethod
    def _like_row(db: Session, user_id: int, post_id: int) -> Optional[models.Like]:
        return db.query(models.Like).filter(
            models.Like.user_id == user_id, models.Like.post_id == post_id
        ).first()

    def like_post(self, user_id: int, post_id: int) -> schemas.Like:
        with self._session() as db:
            like = self._like_row(db, user_id, post_id)
            if like is None:
                like = models.Like(user_id=user_id, post_id=post_id, created_at=self._clock())
                db.add(like)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    like = self._like_row(db, user_id, post_id)
            return schemas.Like.model_validate(like)

    def unlike_post(self, user_id: int, post_id: int) -> bool:
        with self._session() as db:
            like = self._like_row(db, user_id, post_id)
            if like is None:
                return False
            db.delete(like)
            db.commit()
            return True

    def is_post_liked(self, user_id: int, post_id: int) -> bool:
        with self._session() as db:
            return self._like_row(db, user_id, post_id) is not None

    def get_post_like_count(self, post_id: int) -> int:
        with self._session() as db:
            return db.query(models.Like).filter(models.Like.post_id == post_id).count()

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------
    def get_comments(self, post_id: int) -> List[schemas.CommentWithAuthor]:
        with self._session() as db:
            comments = (
                db.query(models.Comment)
                .filter(models.Comment.post_id == post_id)
                .order_by(models.Comment.created_at, models.Comment.id)
                .all()
            )
            return [
                schemas.CommentWithAuthor(
                    **schemas.Comment.model_validate(c).model_dump(),
                    author=AuthorSummary.of(db.get(models.User, c.user_id)),
                )
                for c in comments
            ]

    def create_comment(self, post_id: int, user_id: int, content: str) -> schemas.Comment:
        with self._session() as db:
            comment = models.Comment(post_id=post_id, user_id=user_id, content=content, created_at=self._clock())
            db.add(comment)
            db.commit()
            db.refresh(comment)
            return schemas.Comment.model_validate(comment)

    def delete_comment(self, comment_id: int, user_id: int) -> bool:
        with self._session() as db:
            comment = db.get(models.Comment, comment_id)
            if comment is None or comment.user_id != user_id:
                return False
            db.delete(comment)
            db.commit()
            return True

    def get_comment_count(self, post_id: int) -> int:
        with self._session() as db:
            return db.query(models.Comment).filter(models.Comment.post_id == post_id).count()

    # ------------------------------------------------------------------
    # Bookmarks
    # ------------------------------------------------------------------
    @staticmethod
    def _bookmark_row(db: Session, user_id: int, post_id: int) -> Optional[models.Bookmark]:
        return db.query(models.Bookmark).filter(
            models.Bookmark.user_id == user_id, models.Bookmark.post_id == post_id
        ).first()

    def bookmark_post(self, user_id: int, post_id: int) -> schemas.Bookmark:
        with self._session() as db:
            bookmark = self._bookmark_row(db, user_id, post_id)
            if bookmark is None:
                bookmark = models.Bookmark(user_id=user_id, post_id=post_id, created_at=self._clock())
                db.add(bookmark)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    bookmark = self._bookmark_row(db, user_id, post_id)
            return schemas.Bookmark.model_validate(bookmark)

    def unbookmark_post(self, user_id: int, post_id: int) -> bool:
        with self._session() as db:
            bookmark = self._bookmark_row(db, user_id, post_id)
            if bookmark is None:
                return False
            db.delete(bookmark)
            db.commit()
            return True

    def is_post_bookmarked(self, user_id: int, post_id: int) -> bool:
        with self._session() as db:
            return self._bookmark_row(db, user_id, post_id) is not None

    def get_user_bookmarks(self, user_id: int) -> List[schemas.PostWithAuthor]:
        with self._session() as db:
            bookmarks = (
                db.query(models.Bookmark)
                .filter(models.Bookmark.user_id == user_id)
                .order_by(models.Bookmark.created_at.desc(), models.Bookmark.id.desc())
                .all()
            )
            posts = [db.get(models.Post, b.post_id) for b in bookmarks]
            return [self._enrich(db, p, user_id) for p in posts if p is not None]

    # ------------------------------------------------------------------
    # Follows
    # ------------------------------------------------------------------
    @staticmethod
    def _follow_row(db: Session, follower_id: int, following_id: int) -> Optional[models.Follow]:
        return db.query(models.Follow).filter(
            models.Follow.follower_id == follower_id, models.Follow.following_id == following_id
        ).first()

    @staticmethod
    def _count_follows(db: Session, **criteria) -> int:
        return db.query(models.Follow).filter_by(**criteria).count()

    def follow_user(self, follower_id: int, following_id: int) -> schemas.Follow:
        if follower_id == following_id:
            raise SelfFollowError()
        with self._session() as db:
            follow = self._follow_row(db, follower_id, following_id)
            if follow is None:
                follow = models.Follow(follower_id=follower_id, following_id=following_id, created_at=self._clock())
                db.add(follow)
                try:
                    db.commit()
                    logger.info("User %s followed %s", follower_id, following_id)
                except IntegrityError:
                    db.rollback()
                    follow = self._follow_row(db, follower_id, following_id)
            return schemas.Follow.model_validate(follow)

    def unfollow_user(self, follower_id: int, following_id: int) -> bool:
        with self._session() as db:
            follow = self._follow_row(db, follower_id, following_id)
            if follow is None:
                return False
            db.delete(follow)
            db.commit()
            return True

    def is_user_following(self, follower_id: int, following_id: int) -> bool:
        with self._session() as db:
            return self._follow_row(db, follower_id, following_id) is not None

    def get_followers(self, user_id: int) -> List[schemas.User]:
        with self._session() as db:
            users = (
                db.query(models.User)
                .join(models.Follow, models.Follow.follower_id == models.User.id)
                .filter(models.Follow.following_id == user_id)
                .order_by(models.Follow.id)
                .all()
            )
            return [schemas.User.model_validate(u) for u in users]

    def get_following(self, user_id: int) -> List[schemas.User]:
        with self._session() as db:
            users = (
                db.query(models.User)
                .join(models.Follow, models.Follow.following_id == models.User.id)
                .filter(models.Follow.follower_id == user_id)
                .order_by(models.Follow.id)
                .all()
            )
            return [schemas.User.model_validate(u) for u in users]

    def get_follower_count(self, user_id: int) -> int:
        with self._session() as db:
            return self._count_follows(db, following_id=user_id)

    def get_following_count(self, user_id: int) -> int:
        with self._session() as db:
            return self._count_follows(db, follower_id=user_id)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------
    def get_trending_tags(self) -> List[schemas.TrendingTag]:
        with self._session() as db:
            rows = db.execute(
                select(models.Post.tags).where(models.Post.published.is_(True))
            ).scalars()
            counts = Counter()
            for tags in rows:
                counts.update(tags or [])
        return rank_tags(counts, settings.TRENDING_TAGS_LIMIT)

    def get_suggested_authors(self, user_id: int, limit: int = 5) -> List[schemas.UserProfile]:
        with self._session() as db:
            users = (
                db.query(models.User)
                .filter(models.User.id != user_id)
                .order_by(models.User.id)
                .limit(limit)
                .all()
            )
            return [self._profile(db, u, user_id) for u in users]

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    def send_message(self, sender_id: int, data: MessageCreate) -> schemas.Message:
        with self._session() as db:
            message = models.Message(
                sender_id=sender_id,
                receiver_id=data.receiver_id,
                content=data.content,
                is_read=False,
                created_at=self._clock(),
            )
            db.add(message)
            db.commit()
            db.refresh(message)
            logger.debug("Message %s sent from %s to %s", message.id, sender_id, data.receiver_id)
            return schemas.Message.model_validate(message)

    @staticmethod
    def _unread_filter(sender_id: int, receiver_id: int):
        return and_(
            models.Message.sender_id == sender_id,
            models.Message.receiver_id == receiver_id,
            models.Message.is_read.is_(False),
        )

    def get_conversations(self, user_id: int) -> List[schemas.Conversation]:
        with self._session() as db:
            involved = (
                db.query(models.Message)
                .filter(or_(models.Message.sender_id == user_id, models.Message.receiver_id == user_id))
                .order_by(models.Message.created_at.desc(), models.Message.id.desc())
                .all()
            )

            latest: Dict[int, models.Message] = {}
            for message in involved:
                other_id = message.receiver_id if message.sender_id == user_id else message.sender_id
                latest.setdefault(other_id, message)

            conversations = []
            for other_id, last_message in latest.items():
                participant = db.get(models.User, other_id)
                if participant is None:
                    continue
                unread = (
                    db.query(func.count(models.Message.id))
                    .filter(self._unread_filter(other_id, user_id))
                    .scalar()
                )
                conversations.append(schemas.Conversation(
                    participant=AuthorSummary.of(participant),
                    last_message=schemas.Message.model_validate(last_message),
                    unread_count=unread,
                ))
            return conversations

    def get_messages(self, user_id: int, other_user_id: int, limit: int = 50) -> List[schemas.MessageWithSender]:
        if limit <= 0:
            return []
        with self._session() as db:
            recent = (
                db.query(models.Message)
                .filter(or_(
                    and_(models.Message.sender_id == user_id, models.Message.receiver_id == other_user_id),
                    and_(models.Message.sender_id == other_user_id, models.Message.receiver_id == user_id),
                ))
                .order_by(models.Message.created_at.desc(), models.Message.id.desc())
                .limit(limit)
                .all()
            )
            return [
                schemas.MessageWithSender(
                    **schemas.Message.model_validate(m).model_dump(),
                    sender=AuthorSummary.of(db.get(models.User, m.sender_id)),
                )
                for m in reversed(recent)
            ]

    def mark_messages_as_read(self, user_id: int, other_user_id: int) -> bool:
        with self._session() as db:
            result = db.execute(
                update(models.Message)
                .where(self._unread_filter(other_user_id, user_id))
                .values(is_read=True)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount > 0

    def get_unread_message_count(self, user_id: int) -> int:
        with self._session() as db:
            return (
                db.query(func.count(models.Message.id))
                .filter(models.Message.receiver_id == user_id, models.Message.is_read.is_(False))
                .scalar()
            )
