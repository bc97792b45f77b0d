"""Test version publishing, diffs, replay and retention."""
import pytest
import json
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from reddit_graph.config import Settings
from reddit_graph.database import Base
from reddit_graph.models import (
    Comment, GraphDiff, GraphNode, GraphVersion, Post, PrecalcState
)
from reddit_graph.materializer import GraphState, NodeRecord
from reddit_graph.engine import PrecalcEngine
from reddit_graph.versioning import (
    VersionRecorder, compute_diffs, positions_differ, replay_diffs, settle_positions,
    snapshot_from_db,
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
    return Settings(layout_iterations=20, worker_concurrency=1, version_retention=3)


def _state(nodes, links):
    state = GraphState()
    for node in nodes:
        state.add_node(node)
    for key, weight in links.items():
        state.set_link(key, weight)
    return state


def _assert_snapshots_match(replayed, actual):
    assert replayed["links"] == actual["links"]
    assert replayed["nodes"].keys() == actual["nodes"].keys()
    for nid, node in actual["nodes"].items():
        other = replayed["nodes"][nid]
        assert other["name"] == node["name"]
        assert other["val"] == node["val"]
        assert other["type"] == node["type"]
        assert other["pos"] == node["pos"]


class TestComputeDiffs:
    """Test entity-level diffs between two states."""

    def test_node_add_update_delete(self):
        previous = _state([
            NodeRecord("user_1", "alex", 1, "user", 0.0, 0.0, 0.0),
            NodeRecord("user_2", "sam", 2, "user", 1.0, 1.0, 1.0),
            NodeRecord("user_3", "kim", 3, "user", 2.0, 2.0, 2.0),
        ], {})
        current = _state([
            NodeRecord("user_1", "alex", 1, "user", 0.0, 0.0, 0.0),
            NodeRecord("user_2", "sam", 5, "user", 1.0, 1.0, 1.0),
            NodeRecord("user_4", "lee", 1, "user", 3.0, 3.0, 3.0),
        ], {})

        diffs = {(d.action, d.entity_id): d for d in compute_diffs(previous, current)}

        assert set(diffs) == {("update", "user_2"), ("delete", "user_3"), ("add", "user_4")}
        assert diffs[("update", "user_2")].old_val == 2
        assert diffs[("update", "user_2")].new_val == 5
        assert diffs[("delete", "user_3")].old_pos == (2.0, 2.0, 2.0)
        assert diffs[("add", "user_4")].new_pos == (3.0, 3.0, 3.0)

    def test_tiny_moves_are_not_updates(self):
        """Position changes below the epsilon are ignored."""
        previous = _state([NodeRecord("user_1", "alex", 1, "user", 0.0, 0.0, 0.0)], {})
        current = _state([NodeRecord("user_1", "alex", 1, "user", 0.00001, 0.0, 0.0)], {})
        assert compute_diffs(previous, current) == []
        assert not positions_differ((0.0, 0.0, 0.0), (0.00001, 0.0, 0.0))
        assert positions_differ((0.0, 0.0, 0.0), None)

    def test_tiny_moves_are_not_written(self):
        """Settled nodes keep their old coordinates; real moves are left alone."""
        previous = _state([
            NodeRecord("user_1", "alex", 1, "user", 0.0, 0.0, 0.0),
            NodeRecord("user_2", "sam", 1, "user", 0.0, 0.0, 0.0),
        ], {})
        current = _state([
            NodeRecord("user_1", "alex", 1, "user", 0.00001, 0.0, 0.0),
            NodeRecord("user_2", "sam", 1, "user", 0.5, 0.0, 0.0),
            NodeRecord("user_3", "kim", 1, "user", 0.00001, 0.0, 0.0),
        ], {})

        assert settle_positions(previous, current) == 1
        assert current.nodes["user_1"].position == (0.0, 0.0, 0.0)
        assert current.nodes["user_2"].position == (0.5, 0.0, 0.0)
        assert current.nodes["user_3"].position == (0.00001, 0.0, 0.0)

    def test_links_are_diffed_by_existence_only(self):
        """Reweighting is not a diff; adds and deletes are."""
        nodes = [NodeRecord(n, n, 1, "user") for n in ("user_1", "user_2", "user_3")]
        previous = _state(nodes, {("user_1", "user_2"): 1, ("user_2", "user_3"): 1})
        current = _state(
            [NodeRecord(**vars(n)) for n in nodes],
            {("user_1", "user_2"): 7, ("user_1", "user_3"): 1},
        )

        diffs = [(d.action, d.entity_type, d.entity_id) for d in compute_diffs(previous, current)]
        assert diffs == [
            ("add", "link", "user_1->user_3"),
            ("delete", "link", "user_2->user_3"),
        ]

    def test_identical_states(self):
        nodes = [NodeRecord("user_1", "alex", 1, "user", 1.0, 2.0, 3.0)]
        assert compute_diffs(_state(nodes, {}), _state([NodeRecord(**vars(nodes[0]))], {})) == []


class TestPublish:
    """Test the single-transaction publish through real runs."""

    def test_first_run_records_only_adds(self, db_session, settings):
        seed_sample_graph(db_session)
        result = PrecalcEngine(db_session, settings).run()

        version = db_session.get(GraphVersion, result.version_id)
        assert version.status == "completed"
        assert version.is_full_rebuild
        assert version.node_count == 78
        assert json.loads(version.meta_json)["communities"] >= 1

        actions = set(db_session.scalars(select(GraphDiff.action).where(GraphDiff.version_id == version.id)))
        assert actions == {"add"}

        state = db_session.get(PrecalcState, 1)
        assert state.current_version_id == version.id
        assert state.total_nodes == 78
        assert json.loads(state.watermarks_json)["comments"] == 50

    def test_diffs_replay_to_the_published_graph(self, db_session, settings):
        """Previous snapshot + recorded diffs == new snapshot."""
        seed_sample_graph(db_session)
        PrecalcEngine(db_session, settings).run()
        before = snapshot_from_db(db_session)

        post = db_session.get(Post, "p3")
        db_session.add(Comment(
            id="c900", post_id=post.id, subreddit_id=post.subreddit_id,
            author_id=1, parent_id=f"t3_{post.id}", body="new", score=9,
        ))
        post.title = "Edited title"
        db_session.delete(db_session.get(Comment, "c7"))
        db_session.commit()

        result = PrecalcEngine(db_session, settings).run()
        assert result.status == "completed"
        diffs = db_session.scalars(
            select(GraphDiff).where(GraphDiff.version_id == result.version_id).order_by(GraphDiff.id)
        ).all()

        _assert_snapshots_match(replay_diffs(before, diffs), snapshot_from_db(db_session))

    def test_graph_tables_match_state_after_incremental_run(self, db_session, settings):
        """Incremental writes leave exactly the materialized nodes."""
        seed_sample_graph(db_session)
        PrecalcEngine(db_session, settings).run()

        db_session.delete(db_session.get(Comment, "c1"))
        db_session.commit()
        result = PrecalcEngine(db_session, settings).run()

        assert not result.full_rebuild
        count = len(db_session.scalars(select(GraphNode.id)).all())
        assert count == result.node_count


class TestFailVersion:
    """Test failure bookkeeping."""

    def test_failed_version_keeps_error(self, db_session, settings):
        recorder = VersionRecorder(db_session, settings)
        version = recorder.start_version(is_full_rebuild=False)
        recorder.fail_version(version.id, "boom")

        stored = db_session.get(GraphVersion, version.id)
        assert stored.status == "failed"
        assert json.loads(stored.meta_json) == {"error": "boom"}


class TestRetention:
    """Test pruning of old versions."""

    def test_only_recent_versions_are_kept(self, db_session, settings):
        seed_sample_graph(db_session)
        for _ in range(5):
            PrecalcEngine(db_session, settings).run(force_full=True)

        ids = db_session.scalars(select(GraphVersion.id).order_by(GraphVersion.id)).all()
        assert ids == [3, 4, 5]
        orphaned = db_session.scalars(select(GraphDiff).where(GraphDiff.version_id < 3)).all()
        assert orphaned == []
        assert db_session.get(PrecalcState, 1).current_version_id == 5

    def test_current_version_is_never_pruned(self, db_session, settings):
        recorder = VersionRecorder(db_session, Settings(version_retention=1))
        first = recorder.start_version(True)
        recorder.start_version(True)
        recorder.start_version(True)

        pruned = recorder.prune(first.id)
        db_session.commit()

        assert first.id not in pruned
        assert db_session.get(GraphVersion, first.id) is not None
