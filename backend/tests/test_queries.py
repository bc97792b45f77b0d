"""Test the read-only query layer."""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from reddit_graph.database import Base
from reddit_graph.models import (
    GraphCommunity, GraphCommunityHierarchy, GraphCommunityMember, GraphDiff,
    GraphLink, GraphNode, GraphVersion, PrecalcState
)
from reddit_graph import queries
from reddit_graph.queries import QueryError


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
def small_graph(db_session):
    """Four weighted nodes in a square with one diagonal."""
    db_session.add_all([
        GraphNode(id="subreddit_1", name="python", val=10, type="subreddit", pos_x=0.0, pos_y=0.0, pos_z=0.0),
        GraphNode(id="user_1", name="alex", val=9, type="user", pos_x=5.0, pos_y=5.0, pos_z=1.0),
        GraphNode(id="post_p1", name="Hello", val=8, type="post", pos_x=50.0, pos_y=50.0, pos_z=-1.0),
        GraphNode(id="comment_c1", name="Reply", val=1, type="comment", pos_x=-5.0, pos_y=2.0, pos_z=9.0),
    ])
    db_session.add_all([
        GraphLink(source="user_1", target="subreddit_1", weight=3),
        GraphLink(source="post_p1", target="subreddit_1", weight=1),
        GraphLink(source="user_1", target="post_p1", weight=1),
        GraphLink(source="comment_c1", target="post_p1", weight=1),
        GraphLink(source="comment_c1", target="subreddit_1", weight=2),
    ])
    db_session.add(PrecalcState(id=1, current_version_id=1))
    db_session.add(GraphVersion(id=1, status="completed", node_count=4, link_count=5))
    db_session.commit()
    return db_session


@pytest.fixture
def many_nodes(db_session):
    """25 nodes with repeated weights, for paging."""
    for i in range(25):
        db_session.add(GraphNode(id=f"user_{i:02d}", name=f"user{i}", val=i % 4, type="user"))
    db_session.commit()
    return db_session


class TestGraphSnapshot:
    """Nodes are capped first, then links are filtered to the survivors."""

    def test_cap_then_filter(self, small_graph):
        result = queries.get_graph_snapshot(small_graph, max_nodes=2)

        assert [n["id"] for n in result["nodes"]] == ["subreddit_1", "user_1"]
        assert result["links"] == [{"source": "user_1", "target": "subreddit_1", "weight": 3}]
        assert result["version_id"] == 1

    def test_links_ordered_and_capped(self, small_graph):
        result = queries.get_graph_snapshot(small_graph, max_nodes=10, max_links=2)
        assert [(l["source"], l["target"]) for l in result["links"]] == [
            ("user_1", "subreddit_1"),
            ("comment_c1", "subreddit_1"),
        ]

    def test_zero_nodes(self, small_graph):
        result = queries.get_graph_snapshot(small_graph, max_nodes=0)
        assert result["nodes"] == []
        assert result["links"] == []

    def test_zero_links(self, small_graph):
        result = queries.get_graph_snapshot(small_graph, max_nodes=10, max_links=0)
        assert len(result["nodes"]) == 4
        assert result["links"] == []

    def test_type_filter(self, small_graph):
        result = queries.get_graph_snapshot(small_graph, types="user,subreddit")
        assert {n["type"] for n in result["nodes"]} == {"user", "subreddit"}
        assert len(result["links"]) == 1

    def test_without_positions(self, small_graph):
        result = queries.get_graph_snapshot(small_graph, with_positions=False)
        assert "x" not in result["nodes"][0]

    @pytest.mark.parametrize("kwargs", [
        {"max_nodes": -1},
        {"max_links": -5},
        {"types": "user,widget"},
    ])
    def test_rejects_bad_parameters(self, small_graph, kwargs):
        with pytest.raises(QueryError):
            queries.get_graph_snapshot(small_graph, **kwargs)


class TestPagination:
    """Cursor pagination visits every node exactly once."""

    def test_pages_cover_everything(self, many_nodes):
        seen, cursor, pages = [], None, 0
        while True:
            page = queries.get_graph_page(many_nodes, cursor=cursor, limit=7)
            seen.extend(n["id"] for n in page["nodes"])
            pages += 1
            cursor = page["next_cursor"]
            if cursor is None:
                break

        assert pages == 4
        assert len(seen) == 25
        assert len(set(seen)) == 25
        full = queries.get_graph_snapshot(many_nodes, max_nodes=100)
        assert seen == [n["id"] for n in full["nodes"]]

    def test_exact_fit_has_no_next_cursor(self, many_nodes):
        page = queries.get_graph_page(many_nodes, limit=25)
        assert len(page["nodes"]) == 25
        assert page["next_cursor"] is None

    def test_page_links_stay_inside_page(self, small_graph):
        page = queries.get_graph_page(small_graph, limit=2)
        assert page["links"] == [{"source": "user_1", "target": "subreddit_1", "weight": 3}]
        assert page["next_cursor"] == "9:user_1"

    @pytest.mark.parametrize("cursor", ["garbage", "abc:user_1", "5:"])
    def test_bad_cursor(self, many_nodes, cursor):
        with pytest.raises(QueryError):
            queries.get_graph_page(many_nodes, cursor=cursor)

    @pytest.mark.parametrize("limit", [0, -1, 5001])
    def test_bad_limit(self, many_nodes, limit):
        with pytest.raises(QueryError):
            queries.get_graph_page(many_nodes, limit=limit)


class TestRegion:
    """Test bounding-box queries."""

    def test_2d_box(self, small_graph):
        result = queries.get_region(small_graph, -10, 10, -10, 10)
        assert {n["id"] for n in result["nodes"]} == {"subreddit_1", "user_1", "comment_c1"}
        assert {(l["source"], l["target"]) for l in result["links"]} == {
            ("user_1", "subreddit_1"), ("comment_c1", "subreddit_1"),
        }

    def test_3d_box(self, small_graph):
        result = queries.get_region(small_graph, -10, 10, -10, 10, 0, 5)
        assert {n["id"] for n in result["nodes"]} == {"subreddit_1", "user_1"}

    def test_unpositioned_nodes_excluded(self, many_nodes):
        assert queries.get_region(many_nodes, -1e9, 1e9, -1e9, 1e9)["nodes"] == []

    @pytest.mark.parametrize("args", [
        (10, -10, -10, 10, None, None),
        (-10, 10, -10, 10, 0, None),
        (float("nan"), 10, -10, 10, None, None),
        (-10, float("inf"), -10, 10, None, None),
    ])
    def test_bad_box(self, small_graph, args):
        with pytest.raises(QueryError):
            queries.get_region(small_graph, *args)


class TestSearch:
    """Exact matches first, then prefixes, then by weight."""

    def test_ranking(self, db_session):
        db_session.add_all([
            GraphNode(id="subreddit_1", name="learnpython", val=100, type="subreddit"),
            GraphNode(id="subreddit_2", name="pythonista", val=50, type="subreddit"),
            GraphNode(id="subreddit_3", name="Python", val=1, type="subreddit"),
            GraphNode(id="subreddit_4", name="rust", val=500, type="subreddit"),
        ])
        db_session.commit()

        results = queries.search_nodes(db_session, "python")
        assert [r["id"] for r in results] == ["subreddit_3", "subreddit_2", "subreddit_1"]

    def test_matches_ids(self, small_graph):
        assert [r["id"] for r in queries.search_nodes(small_graph, "post_p1")] == ["post_p1"]

    def test_wildcards_are_literal(self, small_graph):
        assert queries.search_nodes(small_graph, "%") == []

    def test_limit(self, many_nodes):
        assert len(queries.search_nodes(many_nodes, "user", limit=3)) == 3

    @pytest.mark.parametrize("text", ["", "   "])
    def test_empty_query(self, small_graph, text):
        with pytest.raises(QueryError):
            queries.search_nodes(small_graph, text)


class TestNodeDetails:
    """Test neighbourhood lookups."""

    def test_neighbours_ranked_by_shared_links(self, small_graph):
        details = queries.get_node_details(small_graph, "subreddit_1")

        assert details["degree"] == 3
        assert [(n["id"], n["shared_links"]) for n in details["neighbors"]] == [
            ("user_1", 3), ("comment_c1", 2), ("post_p1", 1),
        ]

    def test_neighbour_limit(self, small_graph):
        details = queries.get_node_details(small_graph, "subreddit_1", neighbor_limit=1)
        assert [n["id"] for n in details["neighbors"]] == ["user_1"]

    def test_community_id(self, small_graph):
        small_graph.add(GraphCommunityMember(community_id=7, node_id="user_1"))
        small_graph.commit()
        assert queries.get_node_details(small_graph, "user_1")["community_id"] == 7

    def test_missing_node(self, small_graph):
        assert queries.get_node_details(small_graph, "user_404") is None

    def test_bad_limit(self, small_graph):
        with pytest.raises(QueryError):
            queries.get_node_details(small_graph, "user_1", neighbor_limit=101)


class TestCommunities:
    """Test community browsing."""

    @pytest.fixture
    def communities(self, small_graph):
        small_graph.add_all([
            GraphCommunity(id=1, label="python", size=3, modularity=0.2, centroid_x=1.0, centroid_y=1.0, centroid_z=0.0),
            GraphCommunity(id=2, label="Reply", size=1, modularity=0.0),
            GraphCommunityMember(community_id=1, node_id="subreddit_1"),
            GraphCommunityMember(community_id=1, node_id="user_1"),
            GraphCommunityMember(community_id=1, node_id="post_p1"),
            GraphCommunityMember(community_id=2, node_id="comment_c1"),
            GraphCommunityHierarchy(node_id="subreddit_1", level=0, community_id=1, parent_community_id=1),
            GraphCommunityHierarchy(node_id="user_1", level=0, community_id=1, parent_community_id=1),
            GraphCommunityHierarchy(node_id="comment_c1", level=0, community_id=2, parent_community_id=1),
            GraphCommunityHierarchy(node_id="subreddit_1", level=1, community_id=1),
            GraphCommunityHierarchy(node_id="user_1", level=1, community_id=1),
            GraphCommunityHierarchy(node_id="comment_c1", level=1, community_id=1),
        ])
        small_graph.commit()
        return small_graph

    def test_list_largest_first(self, communities):
        assert [c["id"] for c in queries.list_communities(communities)] == [1, 2]

    def test_community_members_by_weight(self, communities):
        community = queries.get_community(communities, 1)
        assert [m["id"] for m in community["members"]] == ["subreddit_1", "user_1", "post_p1"]
        assert queries.get_community(communities, 99) is None

    def test_hierarchy_children(self, communities):
        level0 = queries.get_hierarchy_level(communities, 0, parent_community_id=1)
        assert [(c["community_id"], c["size"]) for c in level0] == [(1, 2), (2, 1)]
        level1 = queries.get_hierarchy_level(communities, 1)
        assert level1[0]["size"] == 3
        assert level1[0]["parent_community_id"] is None

    def test_conflicting_parents_list_once(self, communities):
        """A community whose rows disagree on the parent still shows up as one entry."""
        communities.add_all([
            GraphCommunityHierarchy(node_id="subreddit_1", level=2, community_id=5, parent_community_id=1),
            GraphCommunityHierarchy(node_id="user_1", level=2, community_id=5, parent_community_id=None),
        ])
        communities.commit()

        level2 = queries.get_hierarchy_level(communities, 2)
        assert [(c["community_id"], c["size"], c["parent_community_id"]) for c in level2] == [(5, 2, 1)]
        assert len(queries.get_hierarchy_level(communities, 2, parent_community_id=1)) == 1


class TestVersions:
    """Test version listing and diff feeds."""

    @pytest.fixture
    def history(self, db_session):
        for vid, status in [(5, "completed"), (6, "failed"), (7, "completed")]:
            db_session.add(GraphVersion(id=vid, status=status))
        db_session.add_all([
            GraphDiff(version_id=5, action="add", entity_type="node", entity_id="user_1",
                      node_type="user", name="alex", new_val=1, new_pos_x=1.0, new_pos_y=2.0, new_pos_z=3.0),
            GraphDiff(version_id=6, action="add", entity_type="node", entity_id="user_2",
                      node_type="user", name="ghost", new_val=1),
            GraphDiff(version_id=7, action="add", entity_type="link", entity_id="user_1->subreddit_1", new_val=1),
            GraphDiff(version_id=7, action="update", entity_type="node", entity_id="user_1",
                      node_type="user", name="alex", old_val=1, new_val=2),
        ])
        db_session.add(PrecalcState(id=1, current_version_id=7))
        db_session.commit()
        return db_session

    def test_diffs_skip_failed_versions(self, history):
        feed = queries.get_diffs_since(history, 4)

        assert not feed["resync_required"]
        assert feed["current_version"] == 7
        assert [d["entity_id"] for d in feed["diffs"]] == ["user_1", "user_1->subreddit_1", "user_1"]
        assert feed["summary"] == {"nodes_add": 1, "links_add": 1, "nodes_update": 1}
        assert feed["diffs"][0]["new_pos"] == {"x": 1.0, "y": 2.0, "z": 3.0}

    def test_up_to_date_client(self, history):
        feed = queries.get_diffs_since(history, 7)
        assert feed["diffs"] == []
        assert not feed["resync_required"]

    def test_pruned_history_requires_resync(self, history):
        feed = queries.get_diffs_since(history, 2)
        assert feed["resync_required"]
        assert feed["diffs"] == []

    def test_future_version_rejected(self, history):
        with pytest.raises(QueryError):
            queries.get_diffs_since(history, 8)

    def test_current_and_list(self, history):
        assert queries.get_current_version(history)["id"] == 7
        assert [v["id"] for v in queries.list_versions(history, limit=2)] == [7, 6]

    def test_no_versions_yet(self, db_session):
        assert queries.get_current_version(db_session) is None
        assert queries.get_diffs_since(db_session, 0)["diffs"] == []


class TestStats:
    def test_counts(self, small_graph):
        stats = queries.get_stats(small_graph)
        assert stats["total_nodes"] == 4
        assert stats["total_links"] == 5
        assert stats["nodes_by_type"]["user"] == 1
        assert stats["source"]["posts"] == 0
        assert stats["current_version_id"] == 1
