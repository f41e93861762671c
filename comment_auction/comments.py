"""Comment sources: the Graph API in automatic mode, an in-process inbox in manual mode."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import requests

from comment_auction.exceptions import CommentSourceError
from comment_auction.logger import get_logger
from comment_auction.models import as_utc, utcnow

logger = get_logger("comments")

COMMENT_FIELDS = "id,message,created_time,from{id,name}"


@dataclass(frozen=True)
class Comment:
    """One comment on an external post"""

    comment_id: str
    post_id: Optional[str]
    author_id: str
    author_name: str
    text: str
    created_at: datetime


def parse_platform_time(value) -> datetime:
    """
    Platform timestamps arrive as epoch seconds (webhooks) or ISO-8601 with
    a ``+0000`` offset (Graph API). Missing values mean "now".
    """
    if value is None or value == "":
        return utcnow()
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value)
    if text.isdigit():
        return datetime.fromtimestamp(int(text), tz=timezone.utc)
    for fmt in ("%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%S.%f%z"):
        try:
            return as_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue
    return as_utc(datetime.fromisoformat(text))


def comment_from_graph(data: dict, post_id: Optional[str] = None) -> Comment:
    author = data.get("from") or {}
    return Comment(
        comment_id=str(data["id"]),
        post_id=post_id or data.get("post_id"),
        author_id=str(author.get("id") or ""),
        author_name=author.get("name") or "Unknown",
        text=data.get("message") or "",
        created_at=parse_platform_time(data.get("created_time")),
    )


def select_since(comments: List[Comment], cursor: Optional[datetime]) -> Tuple[List[Comment], Optional[datetime]]:
    """
    Comments at or after ``cursor``, oldest first, and the cursor to resume
    from. Comments sharing the cursor's second are returned again; the
    external comment id dedup absorbs the repeats.
    """
    fresh = [c for c in comments if cursor is None or c.created_at >= cursor]
    fresh.sort(key=lambda c: (c.created_at, c.comment_id))
    new_cursor = fresh[-1].created_at if fresh else cursor
    return fresh, new_cursor


class CommentSource(ABC):
    @abstractmethod
    async def fetch_comments_since(
        self, post_id: str, cursor: Optional[datetime]
    ) -> Tuple[List[Comment], Optional[datetime]]:
        """Comments newer than ``cursor`` (oldest first) and the advanced cursor."""

    @abstractmethod
    async def reply_to_comment(self, comment_id: str, text: str) -> bool:
        """Best-effort acknowledgement; failures are logged, never raised."""

    @abstractmethod
    async def get_comment(self, comment_id: str, post_id: Optional[str] = None) -> Optional[Comment]: ...


class GraphCommentSource(CommentSource):
    def __init__(self, access_token: str, base_url: str, timeout: float = 10, max_pages: int = 10):
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_pages = max_pages

    def _get(self, url: str, params: Optional[dict] = None) -> dict:
        try:
            response = requests.get(url, params=params, timeout=self._timeout)
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as exc:
            raise CommentSourceError(f"GET {url} failed: {exc}") from exc

    def _fetch_all(self, post_id: str, cursor: Optional[datetime]) -> List[Comment]:
        params = {
            "access_token": self._access_token,
            "fields": COMMENT_FIELDS,
            "order": "chronological",
            "filter": "stream",
            "limit": 100,
        }
        if cursor is not None:
            params["since"] = int(cursor.timestamp())

        comments = []
        url = f"{self._base_url}/{post_id}/comments"
        for _ in range(self._max_pages):
            payload = self._get(url, params)
            comments.extend(comment_from_graph(item, post_id) for item in payload.get("data", []))
            url = (payload.get("paging") or {}).get("next")
            if not url:
                break
            # the "next" link already carries every query parameter
            params = None
        return comments

    async def fetch_comments_since(self, post_id, cursor):
        comments = await asyncio.to_thread(self._fetch_all, post_id, cursor)
        fresh, new_cursor = select_since(comments, cursor)
        logger.debug(f"Post {post_id}: {len(comments)} comments fetched, {len(fresh)} since cursor")
        return fresh, new_cursor

    def _post_reply(self, comment_id: str, text: str):
        response = requests.post(
            f"{self._base_url}/{comment_id}/comments",
            data={"message": text, "access_token": self._access_token},
            timeout=self._timeout,
        )
        response.raise_for_status()

    async def reply_to_comment(self, comment_id, text):
        try:
            await asyncio.to_thread(self._post_reply, comment_id, text)
            return True
        except requests.RequestException as exc:
            logger.warning(f"Failed to reply to comment {comment_id}: {exc}")
            return False

    async def get_comment(self, comment_id, post_id=None):
        params = {"access_token": self._access_token, "fields": COMMENT_FIELDS}
        try:
            data = await asyncio.to_thread(self._get, f"{self._base_url}/{comment_id}", params)
        except CommentSourceError as exc:
            logger.warning(f"Failed to load comment {comment_id}: {exc}")
            return None
        return comment_from_graph(data, post_id)


class ManualCommentSource(CommentSource):
    """Operator-fed comment inbox; replies are recorded instead of sent."""

    def __init__(self):
        self._posts: Dict[str, List[Comment]] = {}
        self._by_id: Dict[str, Comment] = {}
        self.replies: List[Tuple[str, str]] = []

    def push(self, comment: Comment):
        self._posts.setdefault(comment.post_id, []).append(comment)
        self._by_id[comment.comment_id] = comment

    async def fetch_comments_since(self, post_id, cursor):
        return select_since(self._posts.get(post_id, []), cursor)

    async def reply_to_comment(self, comment_id, text):
        logger.info(f"Reply to {comment_id}: {text}")
        self.replies.append((comment_id, text))
        return True

    async def get_comment(self, comment_id, post_id=None):
        return self._by_id.get(comment_id)
