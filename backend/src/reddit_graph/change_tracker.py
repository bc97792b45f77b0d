"""Change tracker - finds source rows written since the last successful run.

Source rows carry a per-table monotonic change sequence (see models.ChangeTracked).
The last run's high marks live in precalc_state.watermarks_json; anything
stamped above them is new work. Missing or unreadable marks fail closed into a
full rebuild.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Set, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .config import Settings, settings as default_settings
from .models import ChangeSequence, Comment, Post, PrecalcState, Subreddit, User


logger = logging.getLogger(__name__)

WATERMARK_TABLES = ("subreddits", "users", "posts", "comments")


@dataclass
class ChangeSet:
    """Work detected for one run."""
    full_rebuild: bool
    reason: str
    watermarks: Dict[str, int]  # high marks to persist once the run completes
    subreddit_ids: Set[int] = field(default_factory=set)
    user_ids: Set[int] = field(default_factory=set)
    post_ids: Set[str] = field(default_factory=set)
    comment_ids: Set[str] = field(default_factory=set)
    # Not changed themselves, but their activity weight may have
    affected_user_ids: Set[int] = field(default_factory=set)
    affected_subreddit_ids: Set[int] = field(default_factory=set)

    @property
    def changed_count(self) -> int:
        return (
            len(self.subreddit_ids) + len(self.user_ids)
            + len(self.post_ids) + len(self.comment_ids)
        )

    def is_empty(self) -> bool:
        return (
            not self.full_rebuild
            and self.changed_count == 0
            and not self.affected_user_ids
            and not self.affected_subreddit_ids
        )


def parse_watermarks(raw: Optional[str]) -> Tuple[Optional[Dict[str, int]], str]:
    """Decode stored marks. Returns (marks, "") or (None, reason)."""
    if not raw:
        return None, "no watermark"
    try:
        data = json.loads(raw)
    except ValueError:
        return None, "watermark is not valid JSON"
    if not isinstance(data, dict):
        return None, "watermark is not a mapping"

    marks = {}
    for table in WATERMARK_TABLES:
        value = data.get(table)
        # bool is an int subclass; reject it explicitly
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            return None, f"watermark for {table} is missing or invalid"
        marks[table] = value
    return marks, ""


class ChangeTracker:
    """Computes the ChangeSet for the next run."""

    def __init__(self, db: Session, settings: Settings = None):
        self.db = db
        self.settings = settings or default_settings

    def high_watermarks(self) -> Dict[str, int]:
        """Current counter value of every source table (0 if never written)."""
        rows = self.db.execute(select(ChangeSequence.table_name, ChangeSequence.value)).all()
        current = {name: value for name, value in rows}
        return {table: int(current.get(table, 0)) for table in WATERMARK_TABLES}

    def stored_watermarks(self) -> Tuple[Optional[Dict[str, int]], str]:
        state = self.db.get(PrecalcState, 1)
        if state is None:
            return None, "no previous run"
        return parse_watermarks(state.watermarks_json)

    def detect(self, force_full: bool = False, mode_corrupt: bool = False) -> ChangeSet:
        """Decide between a full and an incremental run and collect the changed ids."""
        high = self.high_watermarks()

        if mode_corrupt:
            return self._everything(high, "admin mode unreadable")
        if force_full:
            return self._everything(high, "full rebuild requested")

        low, problem = self.stored_watermarks()
        if low is None:
            logger.warning(f"Falling back to full rebuild: {problem}")
            return self._everything(high, problem)

        for table in WATERMARK_TABLES:
            if low[table] > high[table]:
                reason = f"watermark for {table} ({low[table]}) is ahead of its counter ({high[table]})"
                logger.warning(f"Falling back to full rebuild: {reason}")
                return self._everything(high, reason)

        changes = self._incremental(low, high)

        total = self._total_rows()
        ratio = self.settings.full_rebuild_change_ratio
        if total and changes.changed_count / total > ratio:
            reason = f"{changes.changed_count}/{total} source rows changed (> {ratio:.0%})"
            logger.info(f"Switching to full rebuild: {reason}")
            return self._everything(high, reason)

        logger.info(
            f"Incremental changes: {len(changes.subreddit_ids)} subreddits, "
            f"{len(changes.user_ids)} users, {len(changes.post_ids)} posts, "
            f"{len(changes.comment_ids)} comments "
            f"(+{len(changes.affected_user_ids)} affected users, "
            f"+{len(changes.affected_subreddit_ids)} affected subreddits)"
        )
        return changes

    def _incremental(self, low: Dict[str, int], high: Dict[str, int]) -> ChangeSet:
        def window(model, table):
            return (model.change_seq > low[table]) & (model.change_seq <= high[table])

        changes = ChangeSet(full_rebuild=False, reason="incremental", watermarks=high)
        changes.subreddit_ids = set(
            self.db.scalars(select(Subreddit.id).where(window(Subreddit, "subreddits")))
        )
        changes.user_ids = set(self.db.scalars(select(User.id).where(window(User, "users"))))

        for post_id, author_id, subreddit_id in self.db.execute(
            select(Post.id, Post.author_id, Post.subreddit_id).where(window(Post, "posts"))
        ):
            changes.post_ids.add(post_id)
            if author_id is not None:
                changes.affected_user_ids.add(author_id)
            changes.affected_subreddit_ids.add(subreddit_id)

        for comment_id, author_id, subreddit_id, post_subreddit_id in self.db.execute(
            select(Comment.id, Comment.author_id, Comment.subreddit_id, Post.subreddit_id)
            .outerjoin(Post, Post.id == Comment.post_id)
            .where(window(Comment, "comments"))
        ):
            changes.comment_ids.add(comment_id)
            if author_id is not None:
                changes.affected_user_ids.add(author_id)
            sub_id = subreddit_id if subreddit_id is not None else post_subreddit_id
            if sub_id is not None:
                changes.affected_subreddit_ids.add(sub_id)

        changes.affected_user_ids -= changes.user_ids
        changes.affected_subreddit_ids -= changes.subreddit_ids
        return changes

    def _everything(self, high: Dict[str, int], reason: str) -> ChangeSet:
        changes = ChangeSet(full_rebuild=True, reason=reason, watermarks=high)
        changes.subreddit_ids = set(self.db.scalars(select(Subreddit.id)))
        changes.user_ids = set(self.db.scalars(select(User.id)))
        changes.post_ids = set(self.db.scalars(select(Post.id)))
        changes.comment_ids = set(self.db.scalars(select(Comment.id)))
        logger.info(f"Full rebuild ({reason}): {changes.changed_count} source rows")
        return changes

    def _total_rows(self) -> int:
        return sum(
            self.db.scalar(select(func.count()).select_from(model)) or 0
            for model in (Subreddit, User, Post, Comment)
        )
