"""SQLAlchemy models for the Reddit graph engine.

Three layers:
- Source (crawler-owned): subreddits, users, posts, comments, change_sequences
- Graph (engine-owned, recomputable): graph_nodes, graph_links, communities,
  hierarchy, bundles
- Bookkeeping: graph_versions, graph_diffs, precalc_state, precalc_leases,
  service_settings
"""
from collections import defaultdict
from datetime import datetime, timezone


def utc_now():
    """Timezone-aware UTC now (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)
from typing import Optional
from sqlalchemy import (
    String, Integer, Text, DateTime, ForeignKey, Boolean, Float,
    UniqueConstraint, Index, event, insert, select, update
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from .database import Base


# =============================================================================
# SOURCE LAYER (written by the crawler, read by the engine)
# =============================================================================

class ChangeSequence(Base):
    """Monotonic change counter, one row per source table."""
    __tablename__ = "change_sequences"

    table_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[int] = mapped_column(Integer, default=0)


class ChangeTracked:
    """Mixin for source rows stamped with their table's change sequence on every write."""
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    change_seq: Mapped[int] = mapped_column(Integer, default=0, index=True)


class Subreddit(ChangeTracked, Base):
    """Crawled subreddit."""
    __tablename__ = "subreddits"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), unique=True)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    subscribers: Mapped[int] = mapped_column(Integer, default=0)

    # Relationships
    posts: Mapped[list["Post"]] = relationship(back_populates="subreddit")


class User(ChangeTracked, Base):
    """Crawled reddit account."""
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    username: Mapped[str] = mapped_column(String(255), unique=True)

    # Relationships
    posts: Mapped[list["Post"]] = relationship(back_populates="author")


class Post(ChangeTracked, Base):
    """Crawled submission."""
    __tablename__ = "posts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)  # reddit base36 id
    subreddit_id: Mapped[int] = mapped_column(ForeignKey("subreddits.id"), index=True)
    author_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), index=True, nullable=True)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    score: Mapped[int] = mapped_column(Integer, default=0)

    # Relationships
    subreddit: Mapped["Subreddit"] = relationship(back_populates="posts")
    author: Mapped[Optional["User"]] = relationship(back_populates="posts")
    comments: Mapped[list["Comment"]] = relationship(back_populates="post")


class Comment(ChangeTracked, Base):
    """Crawled comment. parent_id is a reddit fullname: t1_<comment> or t3_<post>."""
    __tablename__ = "comments"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    post_id: Mapped[str] = mapped_column(ForeignKey("posts.id"), index=True)
    subreddit_id: Mapped[Optional[int]] = mapped_column(ForeignKey("subreddits.id"), index=True, nullable=True)
    author_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), index=True, nullable=True)
    parent_id: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    score: Mapped[int] = mapped_column(Integer, default=0)

    # Relationships
    post: Mapped["Post"] = relationship(back_populates="comments")


SOURCE_MODELS = {
    "subreddits": Subreddit,
    "users": User,
    "posts": Post,
    "comments": Comment,
}


def next_change_seq(session: Session, table_name: str, count: int = 1) -> int:
    """Reserve `count` sequence values for a source table, return the first one.

    Bulk writers that bypass the ORM must call this and stamp rows themselves.
    """
    table = ChangeSequence.__table__
    conn = session.connection()
    result = conn.execute(
        update(table)
        .where(table.c.table_name == table_name)
        .values(value=table.c.value + count)
    )
    if result.rowcount == 0:
        conn.execute(insert(table).values(table_name=table_name, value=count))
    last = conn.execute(
        select(table.c.value).where(table.c.table_name == table_name)
    ).scalar_one()
    return last - count + 1


@event.listens_for(Session, "before_flush")
def stamp_change_sequences(session, flush_context, instances):
    """Give every new or modified source row the next sequence value of its table."""
    pending: dict[str, list] = defaultdict(list)

    for obj in session.new:
        if isinstance(obj, ChangeTracked):
            pending[obj.__tablename__].append(obj)

    for obj in session.dirty:
        if isinstance(obj, ChangeTracked) and session.is_modified(obj, include_collections=False):
            obj.updated_at = utc_now()
            pending[obj.__tablename__].append(obj)

    for table_name, objs in pending.items():
        first = next_change_seq(session, table_name, len(objs))
        for offset, obj in enumerate(objs):
            obj.change_seq = first + offset


# =============================================================================
# GRAPH LAYER (derived, recomputable)
# =============================================================================

class GraphNode(Base):
    """Materialized graph vertex."""
    __tablename__ = "graph_nodes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # e.g. "subreddit_42"
    name: Mapped[str] = mapped_column(String(256))
    val: Mapped[int] = mapped_column(Integer, default=0)
    type: Mapped[str] = mapped_column(String(20), index=True)  # subreddit, user, post, comment
    pos_x: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    pos_y: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    pos_z: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class GraphLink(Base):
    """Materialized graph edge. Endpoints are checked on write, not by FK."""
    __tablename__ = "graph_links"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(String(64), index=True)
    target: Mapped[str] = mapped_column(String(64), index=True)
    weight: Mapped[int] = mapped_column(Integer, default=1)

    __table_args__ = (
        UniqueConstraint("source", "target", name="uq_graph_link"),
    )


class GraphCommunity(Base):
    """Flat (level 0) community."""
    __tablename__ = "graph_communities"

    id: Mapped[int] = mapped_column(primary_key=True)
    label: Mapped[str] = mapped_column(String(256))
    size: Mapped[int] = mapped_column(Integer)
    modularity: Mapped[float] = mapped_column(Float, default=0.0)  # contribution to Q
    centroid_x: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    centroid_y: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    centroid_z: Mapped[Optional[float]] = mapped_column(Float, nullable=True)


class GraphCommunityMember(Base):
    """Node membership in a flat community."""
    __tablename__ = "graph_community_members"

    id: Mapped[int] = mapped_column(primary_key=True)
    community_id: Mapped[int] = mapped_column(Integer, index=True)
    node_id: Mapped[str] = mapped_column(String(64))

    __table_args__ = (
        UniqueConstraint("node_id", name="uq_community_member_node"),
        UniqueConstraint("community_id", "node_id", name="uq_community_member"),
    )


class GraphCommunityLink(Base):
    """Aggregated link count between two communities (one row per unordered pair)."""
    __tablename__ = "graph_community_links"

    id: Mapped[int] = mapped_column(primary_key=True)
    source_community_id: Mapped[int] = mapped_column(Integer)
    target_community_id: Mapped[int] = mapped_column(Integer)
    weight: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        UniqueConstraint("source_community_id", "target_community_id", name="uq_community_link"),
    )


class GraphCommunityHierarchy(Base):
    """Per-node community at each hierarchy level (0 = finest)."""
    __tablename__ = "graph_community_hierarchy"

    node_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    level: Mapped[int] = mapped_column(Integer, primary_key=True)
    community_id: Mapped[int] = mapped_column(Integer)
    parent_community_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    centroid_x: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    centroid_y: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    centroid_z: Mapped[Optional[float]] = mapped_column(Float, nullable=True)


class GraphBundle(Base):
    """Curved aggregate edge between two communities."""
    __tablename__ = "graph_bundles"

    id: Mapped[int] = mapped_column(primary_key=True)
    source_community_id: Mapped[int] = mapped_column(Integer)
    target_community_id: Mapped[int] = mapped_column(Integer)
    weight: Mapped[int] = mapped_column(Integer)
    avg_strength: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    control_x: Mapped[float] = mapped_column(Float)
    control_y: Mapped[float] = mapped_column(Float)
    control_z: Mapped[float] = mapped_column(Float)

    __table_args__ = (
        UniqueConstraint("source_community_id", "target_community_id", name="uq_graph_bundle"),
    )


# =============================================================================
# VERSIONING / BOOKKEEPING
# =============================================================================

class GraphVersion(Base):
    """One precalculation run."""
    __tablename__ = "graph_versions"

    id: Mapped[int] = mapped_column(primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    node_count: Mapped[int] = mapped_column(Integer, default=0)
    link_count: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), default="running")  # running, completed, failed
    precalc_duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_full_rebuild: Mapped[bool] = mapped_column(Boolean, default=False)
    meta_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Relationships
    diffs: Mapped[list["GraphDiff"]] = relationship(back_populates="version")


class GraphDiff(Base):
    """Entity-level change recorded by a version."""
    __tablename__ = "graph_diffs"

    id: Mapped[int] = mapped_column(primary_key=True)
    version_id: Mapped[int] = mapped_column(ForeignKey("graph_versions.id"), index=True)
    action: Mapped[str] = mapped_column(String(10))  # add, update, delete
    entity_type: Mapped[str] = mapped_column(String(10))  # node, link
    entity_id: Mapped[str] = mapped_column(String(140))  # node id or "source->target"
    node_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    old_val: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    new_val: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    old_pos_x: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    old_pos_y: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    old_pos_z: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    new_pos_x: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    new_pos_y: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    new_pos_z: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Relationships
    version: Mapped["GraphVersion"] = relationship(back_populates="diffs")


class PrecalcState(Base):
    """Singleton row (id=1) holding the watermarks of the last successful run."""
    __tablename__ = "precalc_state"

    id: Mapped[int] = mapped_column(primary_key=True)
    last_precalc_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_full_precalc_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    watermarks_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    current_version_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_nodes: Mapped[int] = mapped_column(Integer, default=0)
    total_links: Mapped[int] = mapped_column(Integer, default=0)
    precalc_duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class PrecalcLease(Base):
    """Expiring mutual-exclusion record for precalculation runs."""
    __tablename__ = "precalc_leases"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    holder: Mapped[str] = mapped_column(String(64))
    acquired_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    expires_at: Mapped[datetime] = mapped_column(DateTime)


class ServiceSetting(Base):
    """Admin-controlled key/value switch."""
    __tablename__ = "service_settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(String(255))
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)


# =============================================================================
# INDEXES
# =============================================================================

Index("ix_graph_nodes_val_id", GraphNode.val, GraphNode.id)
Index("ix_graph_nodes_position", GraphNode.pos_x, GraphNode.pos_y)
Index("ix_graph_diffs_version_entity", GraphDiff.version_id, GraphDiff.entity_type)
Index("ix_graph_hierarchy_level_community", GraphCommunityHierarchy.level, GraphCommunityHierarchy.community_id)
Index("ix_comments_parent", Comment.parent_id)
