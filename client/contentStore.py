"""
Content store contract and an in-memory implementation

Posts are plain dicts carrying at least 'id', 'author_id' and 'created_at'
(ISO-8601). Everything else is passed through untouched.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from dateutil import parser

logger = logging.getLogger(__name__)


class ContentStore(Protocol):
    async def get_recent_posts(self, exclude_author: Optional[str], offset: int, limit: int) -> List[Dict]:
        ...

    async def get_top_posts(self, exclude_author: Optional[str], offset: int, limit: int) -> List[Dict]:
        ...

    async def get_user_profile(self, user_id: str) -> Optional[Dict]:
        ...


def parse_timestamp(value) -> datetime:
    """Parse a post timestamp, treating missing/invalid values as the epoch"""
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = parser.isoparse(str(value))
        except (TypeError, ValueError):
            return datetime.min.replace(tzinfo=timezone.utc)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def engagement_count(post: Dict) -> int:
    """Raw engagement used to order the simplified feed"""
    return (
        int(post.get('like_count', 0) or 0) +
        int(post.get('repost_count', 0) or 0) +
        int(post.get('reply_count', 0) or 0)
    )


class InMemoryContentStore:
    """List-backed content store for local runs and tests"""

    def __init__(self, posts: Optional[List[Dict]] = None, users: Optional[List[Dict]] = None):
        self.posts: List[Dict] = list(posts or [])
        self.users: Dict[str, Dict] = {u['user_id']: u for u in (users or [])}

    def add_post(self, post: Dict):
        self.posts.append(post)

    def add_user(self, user: Dict):
        self.users[user['user_id']] = user

    def _visible(self, exclude_author: Optional[str]) -> List[Dict]:
        return [
            p for p in self.posts
            if p.get('is_public', True) and (exclude_author is None or p.get('author_id') != exclude_author)
        ]

    async def get_recent_posts(self, exclude_author: Optional[str], offset: int, limit: int) -> List[Dict]:
        """
        Read public posts ordered by recency

        Args:
            exclude_author: Author whose posts are left out (the requesting user)
            offset: Number of posts to skip
            limit: Maximum number of posts to return

        Returns:
            Newest-first slice of posts
        """
        posts = sorted(self._visible(exclude_author), key=lambda p: parse_timestamp(p.get('created_at')), reverse=True)
        return [dict(p) for p in posts[offset:offset + limit]]

    async def get_top_posts(self, exclude_author: Optional[str], offset: int, limit: int) -> List[Dict]:
        """Read public posts ordered by engagement, newest first on ties"""
        posts = sorted(
            self._visible(exclude_author),
            key=lambda p: (engagement_count(p), parse_timestamp(p.get('created_at'))),
            reverse=True
        )
        return [dict(p) for p in posts[offset:offset + limit]]

    async def get_user_profile(self, user_id: str) -> Optional[Dict]:
        user = self.users.get(user_id)
        return dict(user) if user else None
