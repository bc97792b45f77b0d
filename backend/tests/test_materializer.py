"""Test graph materialization from source rows."""
import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from reddit_graph.config import Settings
from reddit_graph.database import Base
from reddit_graph.models import Comment, Post, Subreddit, User
from reddit_graph.change_tracker import ChangeSet, ChangeTracker
from reddit_graph.materializer import (
    CommentRow, GraphState, Materializer, NodeRecord, PostRow, SourceIndex,
    display_name, link_id, node_id, parse_node_id
)
from reddit_graph.sample_data import seed_sample_graph


@pytest.fixture
def db_session():
    """Create in-memory database session for testing."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def settings():
    return Settings(worker_concurrency=1)


def _full(db, settings):
    changes = ChangeTracker(db, settings).detect(force_full=True)
    state = GraphState()
    stats = Materializer(SourceIndex.load(db), settings).apply(state, changes)
    return state, stats


def _no_changes():
    return ChangeSet(full_rebuild=False, reason="incremental", watermarks={})


def _snapshot(state):
    return (
        {nid: (n.name, n.val, n.type) for nid, n in state.nodes.items()},
        dict(state.links),
    )


class TestNodeIds:
    """Test node id helpers."""

    def test_round_trip(self):
        """Ids split back into type and source id."""
        assert node_id("subreddit", 42) == "subreddit_42"
        assert parse_node_id("comment_c_1") == ("comment", "c_1")

    @pytest.mark.parametrize("bad", ["", "subreddit", "subreddit_", "widget_1"])
    def test_malformed_ids_raise(self, bad):
        """Unknown types and missing source ids are rejected."""
        with pytest.raises(ValueError):
            parse_node_id(bad)

    def test_link_id_format(self):
        assert link_id(("user_1", "post_p1")) == "user_1->post_p1"

    def test_display_name_fallback_and_truncation(self):
        """Blank names fall back; long names are cut."""
        assert display_name("  ", "post p1") == "post p1"
        assert len(display_name("x" * 1000, "fallback")) == 256


class TestFullMaterialization:
    """Test building the graph from scratch."""

    def test_every_source_row_becomes_a_node(self, db_session, settings):
        """3 subreddits + 5 users + 20 posts + 50 comments."""
        seed_sample_graph(db_session)
        state, stats = _full(db_session, settings)

        assert len(state.nodes) == 78
        assert len(stats.nodes_added) == 78
        types = {n.type for n in state.nodes.values()}
        assert types == {"subreddit", "user", "post", "comment"}

    def test_content_links(self, db_session, settings):
        """Posts link to subreddit and author; comments link to their parent."""
        seed_sample_graph(db_session)
        state, _ = _full(db_session, settings)

        for post in db_session.query(Post).all():
            assert ("post_" + post.id, f"subreddit_{post.subreddit_id}") in state.links
            assert (f"user_{post.author_id}", "post_" + post.id) in state.links

        for comment in db_session.query(Comment).all():
            parent = comment.parent_id
            expected = "comment_" + parent[3:] if parent.startswith("t1_") else "post_" + comment.post_id
            assert ("comment_" + comment.id, expected) in state.links

    def test_subreddit_weight_counts_activity(self, db_session, settings):
        """Subreddit val is the number of posts and comments in it."""
        seed_sample_graph(db_session)
        state, _ = _full(db_session, settings)

        for sub in db_session.query(Subreddit).all():
            posts = db_session.scalar(select(func.count()).select_from(Post).where(Post.subreddit_id == sub.id))
            comments = db_session.scalar(
                select(func.count()).select_from(Comment).where(Comment.subreddit_id == sub.id)
            )
            assert state.nodes[f"subreddit_{sub.id}"].val == posts + comments

    def test_user_activity_links_are_weighted(self, db_session, settings):
        """user -> subreddit carries the number of items the user wrote there."""
        seed_sample_graph(db_session)
        state, _ = _full(db_session, settings)
        source = SourceIndex.load(db_session)

        for (uid, sid), count in source.activity.items():
            assert state.links[(f"user_{uid}", f"subreddit_{sid}")] == count

    def test_summary_graph_without_content(self, db_session):
        """With detailed_graph off only subreddits and users remain."""
        seed_sample_graph(db_session)
        state, _ = _full(db_session, Settings(detailed_graph=False, worker_concurrency=1))

        assert {n.type for n in state.nodes.values()} == {"subreddit", "user"}
        assert len(state.nodes) == 8
        for source, target in state.links:
            assert not source.startswith(("post_", "comment_"))
            assert not target.startswith(("post_", "comment_"))

    def test_parallel_derivation_matches_serial(self, db_session):
        """Worker threads produce the same graph as a single worker."""
        seed_sample_graph(db_session)
        serial, _ = _full(db_session, Settings(worker_concurrency=1))
        parallel, _ = _full(db_session, Settings(worker_concurrency=4))
        assert _snapshot(serial) == _snapshot(parallel)


class TestIdempotence:
    """Materializing unchanged data changes nothing."""

    def test_repeated_full_pass(self, db_session, settings):
        """A second full pass over the same state is a no-op."""
        seed_sample_graph(db_session)
        state, _ = _full(db_session, settings)
        before = _snapshot(state)

        changes = ChangeTracker(db_session, settings).detect(force_full=True)
        stats = Materializer(SourceIndex.load(db_session), settings).apply(state, changes)

        assert _snapshot(state) == before
        assert not stats.nodes_added
        assert not stats.nodes_updated
        assert not stats.nodes_removed
        assert stats.links_added == stats.links_updated == stats.links_removed == 0

    def test_empty_incremental_pass(self, db_session, settings):
        """No changes and no drift means no targets."""
        seed_sample_graph(db_session)
        state, _ = _full(db_session, settings)
        before = _snapshot(state)

        materializer = Materializer(SourceIndex.load(db_session), settings)
        assert materializer.incremental_targets(state, _no_changes()) == set()
        materializer.apply(state, _no_changes())
        assert _snapshot(state) == before


class TestOrphanSweep:
    """Deleted source rows disappear from the graph with their links."""

    def _leaf_comment_with_active_author(self, db):
        for comment in db.query(Comment).order_by(Comment.id).all():
            replies = db.scalar(
                select(func.count()).select_from(Comment).where(Comment.parent_id == f"t1_{comment.id}")
            )
            if replies:
                continue
            other_posts = db.scalar(select(func.count()).select_from(Post).where(
                Post.author_id == comment.author_id, Post.subreddit_id == comment.subreddit_id
            ))
            other_comments = db.scalar(select(func.count()).select_from(Comment).where(
                Comment.author_id == comment.author_id,
                Comment.subreddit_id == comment.subreddit_id,
                Comment.id != comment.id,
            ))
            if other_posts + other_comments:
                return comment
        pytest.fail("sample data has no leaf comment with an otherwise active author")

    def test_deleted_comment_is_swept(self, db_session, settings):
        """The node and its parent link go; the author's activity link only loses weight."""
        seed_sample_graph(db_session)
        state, _ = _full(db_session, settings)

        comment = self._leaf_comment_with_active_author(db_session)
        nid = f"comment_{comment.id}"
        user = f"user_{comment.author_id}"
        sub = f"subreddit_{comment.subreddit_id}"
        activity_before = state.links[(user, sub)]
        user_val_before = state.nodes[user].val
        db_session.delete(comment)
        db_session.commit()

        # Deletes do not advance any sequence; weight drift finds the affected nodes
        stats = Materializer(SourceIndex.load(db_session), settings).apply(state, _no_changes())

        assert nid not in state.nodes
        assert nid in stats.nodes_removed
        assert not any(nid in key for key in state.links)
        assert state.links[(user, sub)] == activity_before - 1
        assert state.nodes[user].val == user_val_before - 1
        assert user in state.nodes

    def test_deleted_user_loses_all_links(self, db_session, settings):
        """Removing a user removes its node and everything touching it."""
        seed_sample_graph(db_session)
        state, _ = _full(db_session, settings)

        db_session.delete(db_session.get(User, 5))
        db_session.commit()
        Materializer(SourceIndex.load(db_session), settings).apply(state, _no_changes())

        assert "user_5" not in state.nodes
        assert all("user_5" not in key for key in state.links)
        for source, target in state.links:
            assert source in state.nodes and target in state.nodes


class TestAuthorContentLinks:
    """Cross-subreddit links between one author's posts and comments."""

    def _index(self):
        posts = {
            "a": PostRow("a", 1, 7, "a", 1),
            "b": PostRow("b", 1, 7, "b", 1),
            "c": PostRow("c", 2, 7, "c", 1),
        }
        comments = {"d": CommentRow("d", "a", 3, 7, None, "d", 1)}
        return SourceIndex({1: "one", 2: "two", 3: "three"}, {7: "sam"}, posts, comments)

    def test_window_skips_same_subreddit(self):
        """Order is comment_d, post_a, post_b, post_c; a and b share a subreddit."""
        index = self._index()
        assert index.author_links("post_a", 1) == {("comment_d", "post_a"): 1}
        assert index.author_links("post_b", 1) == {("post_b", "post_c"): 1}
        assert index.author_links("post_a", 0) == {}

    def test_links_agree_from_both_endpoints(self):
        index = self._index()
        ids = ["comment_d", "post_a", "post_b", "post_c"]
        for nid in ids:
            for key in index.author_links(nid, 2):
                other = key[1] if key[0] == nid else key[0]
                assert key in index.author_links(other, 2)

    def test_disabled_by_default(self, db_session, settings):
        seed_sample_graph(db_session)
        state, _ = _full(db_session, settings)
        assert not any(s.startswith("post_") and t.startswith("post_") for s, t in state.links)


class TestSkippedLinks:
    """Links whose endpoint does not exist are skipped, not written."""

    def test_comment_on_missing_post(self, db_session, settings):
        """A comment pointing at an unknown post keeps its node but not the link."""
        seed_sample_graph(db_session)
        db_session.add(Comment(
            id="orphan", post_id="ghost", subreddit_id=1, author_id=1,
            parent_id="t3_ghost", body="lost", score=0,
        ))
        db_session.commit()

        state, stats = _full(db_session, settings)

        assert "comment_orphan" in state.nodes
        assert ("comment_orphan", "post_ghost") in stats.skipped_links
        assert ("comment_orphan", "post_ghost") not in state.links


class TestGraphState:
    """Test the in-memory graph container."""

    def test_copy_is_independent(self):
        """Mutating a copy leaves the original alone."""
        state = GraphState()
        state.add_node(NodeRecord("user_1", "alex", 1, "user", 1.0, 2.0, 3.0))
        state.add_node(NodeRecord("subreddit_1", "python", 1, "subreddit"))
        state.set_link(("user_1", "subreddit_1"), 1)

        clone = state.copy()
        clone.nodes["user_1"].set_position((0.0, 0.0, 0.0))
        clone.remove_link(("user_1", "subreddit_1"))

        assert state.nodes["user_1"].position == (1.0, 2.0, 3.0)
        assert state.degree("user_1") == 1
        assert clone.degree("user_1") == 0
