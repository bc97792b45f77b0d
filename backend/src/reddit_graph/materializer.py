"""Graph materializer - turns source rows into graph nodes and links.

The source tables are read once into a SourceIndex and the current graph
tables into a GraphState. Materialization mutates the GraphState in memory;
nothing is written to the database here (see versioning.VersionRecorder).

Node ids are "<type>_<source id>", so re-materializing unchanged data
produces the same ids and the same rows.
"""
import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from .change_tracker import ChangeSet
from .config import Settings, settings as default_settings
from .models import Comment, GraphLink, GraphNode, Post, Subreddit, User


logger = logging.getLogger(__name__)

NODE_TYPES = ("subreddit", "user", "post", "comment")
CONTENT_TYPES = ("post", "comment")
MAX_NAME_LENGTH = 256

LinkKey = Tuple[str, str]


def node_id(node_type: str, source_id) -> str:
    return f"{node_type}_{source_id}"


def parse_node_id(nid: str) -> Tuple[str, str]:
    """Split "comment_abc" into ("comment", "abc")."""
    node_type, sep, source_id = nid.partition("_")
    if not sep or not source_id or node_type not in NODE_TYPES:
        raise ValueError(f"Malformed node id: {nid!r}")
    return node_type, source_id


def link_id(key: LinkKey) -> str:
    return f"{key[0]}->{key[1]}"


def display_name(text: Optional[str], fallback: str) -> str:
    text = (text or "").strip()
    if not text:
        return fallback
    return text[:MAX_NAME_LENGTH]


# =============================================================================
# In-memory graph
# =============================================================================

@dataclass
class NodeRecord:
    """Node as held in memory during a run."""
    id: str
    name: str
    val: int
    type: str
    pos_x: Optional[float] = None
    pos_y: Optional[float] = None
    pos_z: Optional[float] = None

    @property
    def position(self) -> Optional[Tuple[float, float, float]]:
        if self.pos_x is None or self.pos_y is None or self.pos_z is None:
            return None
        return (self.pos_x, self.pos_y, self.pos_z)

    def set_position(self, pos: Optional[Tuple[float, float, float]]) -> None:
        if pos is None:
            self.pos_x = self.pos_y = self.pos_z = None
        else:
            self.pos_x, self.pos_y, self.pos_z = pos


class GraphState:
    """Nodes by id and link weights by (source, target), with an incidence index."""

    def __init__(self):
        self.nodes: Dict[str, NodeRecord] = {}
        self.links: Dict[LinkKey, int] = {}
        self._incident: Dict[str, Set[LinkKey]] = defaultdict(set)

    def add_node(self, node: NodeRecord) -> None:
        self.nodes[node.id] = node

    def remove_node(self, nid: str) -> None:
        # Links are left for the sweep, which drops everything dangling
        self.nodes.pop(nid, None)

    def set_link(self, key: LinkKey, weight: int) -> None:
        self.links[key] = weight
        self._incident[key[0]].add(key)
        self._incident[key[1]].add(key)

    def remove_link(self, key: LinkKey) -> None:
        if self.links.pop(key, None) is None:
            return
        for endpoint in key:
            keys = self._incident.get(endpoint)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._incident[endpoint]

    def incident(self, nid: str) -> Set[LinkKey]:
        return set(self._incident.get(nid, ()))

    def degree(self, nid: str) -> int:
        return len(self._incident.get(nid, ()))

    def copy(self) -> "GraphState":
        clone = GraphState()
        for node in self.nodes.values():
            clone.add_node(NodeRecord(**vars(node)))
        for key, weight in self.links.items():
            clone.set_link(key, weight)
        return clone


def load_graph_state(db: Session) -> GraphState:
    """Read graph_nodes and graph_links into memory."""
    state = GraphState()
    for row in db.execute(select(
        GraphNode.id, GraphNode.name, GraphNode.val, GraphNode.type,
        GraphNode.pos_x, GraphNode.pos_y, GraphNode.pos_z
    )):
        state.add_node(NodeRecord(
            id=row.id, name=row.name, val=row.val, type=row.type,
            pos_x=row.pos_x, pos_y=row.pos_y, pos_z=row.pos_z
        ))
    for source, target, weight in db.execute(
        select(GraphLink.source, GraphLink.target, GraphLink.weight)
    ):
        state.set_link((source, target), weight)
    return state


# =============================================================================
# Source index
# =============================================================================

@dataclass
class PostRow:
    id: str
    subreddit_id: int
    author_id: Optional[int]
    title: Optional[str]
    score: int


@dataclass
class CommentRow:
    id: str
    post_id: str
    subreddit_id: Optional[int]
    author_id: Optional[int]
    parent_comment_id: Optional[str]
    body: Optional[str]
    score: int


def parent_comment_id(parent_id: Optional[str]) -> Optional[str]:
    """Comment id of a t1_ parent fullname, None for posts or missing parents."""
    if parent_id and parent_id.startswith("t1_"):
        return parent_id[3:] or None
    return None


class SourceIndex:
    """Read-only view of the source tables with the adjacency needed to derive links."""

    def __init__(
        self,
        subreddits: Dict[int, str],
        users: Dict[int, str],
        posts: Dict[str, PostRow],
        comments: Dict[str, CommentRow],
    ):
        self.subreddits = subreddits
        self.users = users
        self.posts = posts
        self.comments = comments

        self.posts_by_subreddit: Dict[int, List[str]] = defaultdict(list)
        self.posts_by_author: Dict[int, List[str]] = defaultdict(list)
        self.top_level_comments: Dict[str, List[str]] = defaultdict(list)
        self.replies: Dict[str, List[str]] = defaultdict(list)
        self.activity: Dict[Tuple[int, int], int] = defaultdict(int)
        self.users_by_subreddit: Dict[int, Set[int]] = defaultdict(set)
        self.subreddits_by_user: Dict[int, Set[int]] = defaultdict(set)
        self.subreddit_activity: Dict[int, int] = defaultdict(int)
        self.user_activity: Dict[int, int] = defaultdict(int)

        for post in posts.values():
            self.posts_by_subreddit[post.subreddit_id].append(post.id)
            self._count_activity(post.author_id, post.subreddit_id)
            if post.author_id is not None:
                self.posts_by_author[post.author_id].append(post.id)

        for comment in comments.values():
            if comment.parent_comment_id in comments:
                self.replies[comment.parent_comment_id].append(comment.id)
            else:
                self.top_level_comments[comment.post_id].append(comment.id)
            self._count_activity(comment.author_id, self.comment_subreddit(comment))

        # Each author's content in node-id order, for cross-subreddit links
        self.content_by_author: Dict[int, List[Tuple[str, int]]] = defaultdict(list)
        for post in posts.values():
            if post.author_id is not None:
                self.content_by_author[post.author_id].append((node_id("post", post.id), post.subreddit_id))
        for comment in comments.values():
            sid = self.comment_subreddit(comment)
            if comment.author_id is not None and sid is not None:
                self.content_by_author[comment.author_id].append((node_id("comment", comment.id), sid))
        self.author_position: Dict[str, Tuple[int, int]] = {}
        for author_id, items in self.content_by_author.items():
            items.sort()
            for position, (nid, _) in enumerate(items):
                self.author_position[nid] = (author_id, position)

    def _count_activity(self, author_id: Optional[int], subreddit_id: Optional[int]) -> None:
        if subreddit_id is not None:
            self.subreddit_activity[subreddit_id] += 1
        if author_id is not None:
            self.user_activity[author_id] += 1
        if author_id is not None and subreddit_id is not None:
            self.activity[(author_id, subreddit_id)] += 1
            self.users_by_subreddit[subreddit_id].add(author_id)
            self.subreddits_by_user[author_id].add(subreddit_id)

    @classmethod
    def load(cls, db: Session) -> "SourceIndex":
        """Load the working set with one query per source table."""
        subreddits = dict(db.execute(select(Subreddit.id, Subreddit.name)).all())
        users = dict(db.execute(select(User.id, User.username)).all())
        posts = {
            row.id: PostRow(row.id, row.subreddit_id, row.author_id, row.title, row.score or 0)
            for row in db.execute(select(
                Post.id, Post.subreddit_id, Post.author_id, Post.title, Post.score
            ))
        }
        comments = {
            row.id: CommentRow(
                row.id, row.post_id, row.subreddit_id, row.author_id,
                parent_comment_id(row.parent_id), row.body, row.score or 0
            )
            for row in db.execute(select(
                Comment.id, Comment.post_id, Comment.subreddit_id, Comment.author_id,
                Comment.parent_id, Comment.body, Comment.score
            ))
        }
        logger.info(
            f"Loaded source: {len(subreddits)} subreddits, {len(users)} users, "
            f"{len(posts)} posts, {len(comments)} comments"
        )
        return cls(subreddits, users, posts, comments)

    def comment_subreddit(self, comment: CommentRow) -> Optional[int]:
        if comment.subreddit_id is not None:
            return comment.subreddit_id
        post = self.posts.get(comment.post_id)
        return post.subreddit_id if post else None

    def comment_parent_node(self, comment: CommentRow) -> str:
        if comment.parent_comment_id in self.comments:
            return node_id("comment", comment.parent_comment_id)
        return node_id("post", comment.post_id)

    def author_links(self, nid: str, cap: int) -> Dict[LinkKey, int]:
        """Links between one author's content in different subreddits.

        Each item links to the next `cap` items of the same author in node-id
        order, skipping pairs in the same subreddit, so the set comes out the
        same from either endpoint.
        """
        links: Dict[LinkKey, int] = {}
        if cap <= 0 or nid not in self.author_position:
            return links
        author_id, position = self.author_position[nid]
        items = self.content_by_author[author_id]
        subreddit = items[position][1]
        for other in range(max(0, position - cap), min(len(items), position + cap + 1)):
            other_id, other_subreddit = items[other]
            if other != position and other_subreddit != subreddit:
                links[_ordered(nid, other_id)] = 1
        return links

    # -- nodes ---------------------------------------------------------------

    def all_node_ids(self, detailed: bool = True) -> Set[str]:
        ids = {node_id("subreddit", sid) for sid in self.subreddits}
        ids.update(node_id("user", uid) for uid in self.users)
        if detailed:
            ids.update(node_id("post", pid) for pid in self.posts)
            ids.update(node_id("comment", cid) for cid in self.comments)
        return ids

    def exists(self, nid: str, detailed: bool = True) -> bool:
        node_type, source_id = parse_node_id(nid)
        if node_type == "subreddit":
            return _int_key(source_id) in self.subreddits
        if node_type == "user":
            return _int_key(source_id) in self.users
        if not detailed:
            return False
        if node_type == "post":
            return source_id in self.posts
        return source_id in self.comments

    def node_record(self, nid: str) -> Optional[NodeRecord]:
        """Name and weight of a node from current source data, None if the row is gone."""
        node_type, source_id = parse_node_id(nid)
        if node_type == "subreddit":
            sid = _int_key(source_id)
            if sid not in self.subreddits:
                return None
            return NodeRecord(nid, display_name(self.subreddits[sid], nid),
                              self.subreddit_activity.get(sid, 0), node_type)
        if node_type == "user":
            uid = _int_key(source_id)
            if uid not in self.users:
                return None
            return NodeRecord(nid, display_name(self.users[uid], nid),
                              self.user_activity.get(uid, 0), node_type)
        if node_type == "post":
            post = self.posts.get(source_id)
            if post is None:
                return None
            return NodeRecord(nid, display_name(post.title, f"post {source_id}"), post.score, node_type)
        comment = self.comments.get(source_id)
        if comment is None:
            return None
        return NodeRecord(nid, display_name(comment.body, f"comment {source_id}"), comment.score, node_type)

    # -- links ---------------------------------------------------------------

    def incident_links(
        self, nid: str, detailed: bool = True, min_overlap: int = 1, author_cap: int = 0
    ) -> Dict[LinkKey, int]:
        """Every link the node takes part in, with its weight.

        Derivation is symmetric: a link comes out the same from either endpoint.
        """
        node_type, source_id = parse_node_id(nid)
        links: Dict[LinkKey, int] = {}

        if node_type == "subreddit":
            sid = _int_key(source_id)
            if detailed:
                for pid in self.posts_by_subreddit.get(sid, ()):
                    links[(node_id("post", pid), nid)] = 1
            overlap: Dict[int, int] = defaultdict(int)
            for uid in self.users_by_subreddit.get(sid, ()):
                links[(node_id("user", uid), nid)] = self.activity[(uid, sid)]
                for other in self.subreddits_by_user[uid]:
                    if other != sid:
                        overlap[other] += 1
            for other, count in overlap.items():
                if count >= min_overlap:
                    links[_ordered(nid, node_id("subreddit", other))] = count

        elif node_type == "user":
            uid = _int_key(source_id)
            if detailed:
                for pid in self.posts_by_author.get(uid, ()):
                    links[(nid, node_id("post", pid))] = 1
            for sid in self.subreddits_by_user.get(uid, ()):
                links[(nid, node_id("subreddit", sid))] = self.activity[(uid, sid)]

        elif node_type == "post" and detailed:
            post = self.posts.get(source_id)
            if post is not None:
                links[(nid, node_id("subreddit", post.subreddit_id))] = 1
                if post.author_id is not None:
                    links[(node_id("user", post.author_id), nid)] = 1
            for cid in self.top_level_comments.get(source_id, ()):
                links[(node_id("comment", cid), nid)] = 1
            links.update(self.author_links(nid, author_cap))

        elif node_type == "comment" and detailed:
            comment = self.comments.get(source_id)
            if comment is not None:
                links[(nid, self.comment_parent_node(comment))] = 1
            for cid in self.replies.get(source_id, ()):
                links[(node_id("comment", cid), nid)] = 1
            links.update(self.author_links(nid, author_cap))

        return links


def _int_key(source_id: str) -> Optional[int]:
    try:
        return int(source_id)
    except ValueError:
        return None


def _ordered(a: str, b: str) -> LinkKey:
    return (a, b) if a < b else (b, a)


# =============================================================================
# Materializer
# =============================================================================

@dataclass
class MaterializeStats:
    """What one materialization pass changed in memory."""
    nodes_added: Set[str] = field(default_factory=set)
    nodes_updated: Set[str] = field(default_factory=set)
    nodes_reweighted: Set[str] = field(default_factory=set)
    nodes_removed: Set[str] = field(default_factory=set)
    links_added: int = 0
    links_updated: int = 0
    links_removed: int = 0
    skipped_links: Set[LinkKey] = field(default_factory=set)

    @property
    def moved_candidates(self) -> Set[str]:
        """Nodes the layout may move on an incremental run."""
        return self.nodes_added | self.nodes_reweighted


class Materializer:
    """Applies a ChangeSet to a GraphState: upsert touched nodes and links, then sweep."""

    def __init__(self, source: SourceIndex, settings: Settings = None):
        self.source = source
        self.settings = settings or default_settings

    @property
    def detailed(self) -> bool:
        return self.settings.detailed_graph

    def apply(self, state: GraphState, changes: ChangeSet) -> MaterializeStats:
        stats = MaterializeStats()

        if changes.full_rebuild:
            targets = self.source.all_node_ids(self.detailed)
        else:
            targets = self.incremental_targets(state, changes)

        # Upsert every node first so link endpoint checks see this pass's nodes
        ordered = sorted(targets)
        present = []
        for nid in ordered:
            node_type, _ = parse_node_id(nid)
            if node_type in CONTENT_TYPES and not self.detailed:
                continue
            record = self.source.node_record(nid)
            if record is None:
                continue
            self._upsert_node(state, record, stats)
            present.append(nid)

        derived = self._derive_links(present)
        for nid in present:
            wanted = derived[nid]
            for key, weight in wanted.items():
                if key[0] not in state.nodes or key[1] not in state.nodes:
                    stats.skipped_links.add(key)
                    continue
                existing = state.links.get(key)
                if existing is None:
                    state.set_link(key, weight)
                    stats.links_added += 1
                elif existing != weight:
                    state.set_link(key, weight)
                    stats.links_updated += 1
            for key in state.incident(nid):
                if key not in wanted:
                    state.remove_link(key)
                    stats.links_removed += 1

        self.sweep(state, stats)

        if stats.skipped_links:
            logger.warning(f"Skipped {len(stats.skipped_links)} links with a missing endpoint")
        logger.info(
            f"Materialized: +{len(stats.nodes_added)} nodes, ~{len(stats.nodes_updated)} updated, "
            f"-{len(stats.nodes_removed)} removed; links +{stats.links_added} "
            f"~{stats.links_updated} -{stats.links_removed}"
        )
        return stats

    def incremental_targets(self, state: GraphState, changes: ChangeSet) -> Set[str]:
        """Changed and derived ids, plus drifted or missing nodes."""
        targets: Set[str] = set()
        targets.update(node_id("subreddit", sid) for sid in changes.subreddit_ids)
        targets.update(node_id("subreddit", sid) for sid in changes.affected_subreddit_ids)
        targets.update(node_id("user", uid) for uid in changes.user_ids)
        targets.update(node_id("user", uid) for uid in changes.affected_user_ids)
        if self.detailed:
            targets.update(node_id("post", pid) for pid in changes.post_ids)
            targets.update(node_id("comment", cid) for cid in changes.comment_ids)

        # Deleted content changes author/subreddit weights without bumping any sequence
        for sid in self.source.subreddits:
            nid = node_id("subreddit", sid)
            node = state.nodes.get(nid)
            if node is not None and node.val != self.source.subreddit_activity.get(sid, 0):
                targets.add(nid)
        for uid in self.source.users:
            nid = node_id("user", uid)
            node = state.nodes.get(nid)
            if node is not None and node.val != self.source.user_activity.get(uid, 0):
                targets.add(nid)

        # A reply whose parent comment is gone re-attaches to the post
        for nid in list(state.nodes):
            if not self._alive(nid):
                for source, target in state.incident(nid):
                    targets.add(target if source == nid else source)

        missing = self.source.all_node_ids(self.detailed) - state.nodes.keys()
        targets.update(missing)

        if self.detailed:
            # A reply moves from its post to its parent comment once the parent arrives
            for cid, comment in self.source.comments.items():
                nid = node_id("comment", cid)
                if nid in state.nodes and (nid, self.source.comment_parent_node(comment)) not in state.links:
                    targets.add(nid)

            # Added or removed content shifts the author's other cross-subreddit links
            if self.settings.max_author_content_links > 0:
                for nid in [t for t in targets if t.startswith("user_")]:
                    uid = _int_key(parse_node_id(nid)[1])
                    targets.update(item for item, _ in self.source.content_by_author.get(uid, ()))
        return targets

    def _alive(self, nid: str) -> bool:
        try:
            return self.source.exists(nid, self.detailed)
        except ValueError:
            logger.warning(f"Malformed node id {nid!r}")
            return False

    def _upsert_node(self, state: GraphState, record: NodeRecord, stats: MaterializeStats) -> None:
        existing = state.nodes.get(record.id)
        if existing is None:
            state.add_node(record)
            stats.nodes_added.add(record.id)
            return
        if existing.val != record.val:
            existing.val = record.val
            stats.nodes_reweighted.add(record.id)
            stats.nodes_updated.add(record.id)
        if existing.name != record.name:
            existing.name = record.name
            stats.nodes_updated.add(record.id)

    def _derive_links(self, node_ids: List[str]) -> Dict[str, Dict[LinkKey, int]]:
        workers = max(1, self.settings.worker_concurrency)
        if workers == 1 or len(node_ids) < 2 * workers:
            return self._links_for(node_ids)

        chunks = [node_ids[i::workers] for i in range(workers)]
        derived: Dict[str, Dict[LinkKey, int]] = {}
        with ThreadPoolExecutor(max_workers=workers) as pool:
            for part in pool.map(self._links_for, chunks):
                derived.update(part)
        return derived

    def _links_for(self, node_ids: Iterable[str]) -> Dict[str, Dict[LinkKey, int]]:
        return {
            nid: self.source.incident_links(
                nid, self.detailed, self.settings.min_subreddit_overlap,
                self.settings.max_author_content_links,
            )
            for nid in node_ids
        }

    def sweep(self, state: GraphState, stats: MaterializeStats) -> None:
        """Drop nodes whose source row is gone, then every link left dangling."""
        for nid in list(state.nodes):
            if not self._alive(nid):
                state.remove_node(nid)
                stats.nodes_removed.add(nid)

        for key in list(state.links):
            if key[0] not in state.nodes or key[1] not in state.nodes:
                state.remove_link(key)
                stats.links_removed += 1
