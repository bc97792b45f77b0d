"""Version & diff recorder.

A run owns one graph_versions row. It is committed as "running" up front;
everything the run produced (graph tables, community tables, diffs, the
completed status and precalc_state) is then written in a single transaction,
so readers see either the previous version or the new one, never a mix.
"""
import copy
import json
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import bindparam, delete, insert, select, update
from sqlalchemy.orm import Session

from .change_tracker import ChangeSet
from .communities import CommunityResult
from .config import Settings, settings as default_settings
from .layout import LayoutResult
from .materializer import GraphState, NodeRecord, link_id
from .models import (
    GraphBundle, GraphCommunity, GraphCommunityHierarchy, GraphCommunityLink,
    GraphCommunityMember, GraphDiff, GraphLink, GraphNode, GraphVersion,
    PrecalcState, utc_now
)


logger = logging.getLogger(__name__)

POSITION_EPSILON = 1e-4

Vec3 = Tuple[float, float, float]


@dataclass
class DiffRecord:
    """One entity change between two graph states."""
    action: str  # add, update, delete
    entity_type: str  # node, link
    entity_id: str
    node_type: Optional[str] = None
    name: Optional[str] = None
    old_val: Optional[int] = None
    new_val: Optional[int] = None
    old_pos: Optional[Vec3] = None
    new_pos: Optional[Vec3] = None

    def to_row(self, version_id: int) -> dict:
        old_pos = self.old_pos or (None, None, None)
        new_pos = self.new_pos or (None, None, None)
        return {
            "version_id": version_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "node_type": self.node_type,
            "name": self.name,
            "old_val": self.old_val,
            "new_val": self.new_val,
            "old_pos_x": old_pos[0],
            "old_pos_y": old_pos[1],
            "old_pos_z": old_pos[2],
            "new_pos_x": new_pos[0],
            "new_pos_y": new_pos[1],
            "new_pos_z": new_pos[2],
        }


def positions_differ(a: Optional[Vec3], b: Optional[Vec3], epsilon: float = POSITION_EPSILON) -> bool:
    if a is None or b is None:
        return a is not b
    return any(abs(x - y) > epsilon for x, y in zip(a, b))


def settle_positions(previous: GraphState, current: GraphState) -> int:
    """Put back the previous position of nodes that moved no more than the epsilon.

    Such moves are not recorded as diffs, so they are not written either.
    Returns the number of nodes settled.
    """
    settled = 0
    for nid, node in current.nodes.items():
        old = previous.nodes.get(nid)
        if old is None or old.position is None or node.position is None:
            continue
        if node.position != old.position and not positions_differ(old.position, node.position):
            node.set_position(old.position)
            settled += 1
    return settled


def compute_diffs(previous: GraphState, current: GraphState) -> List[DiffRecord]:
    """Node add/update/delete and link add/delete between two states, in id order."""
    diffs: List[DiffRecord] = []

    for nid in sorted(previous.nodes.keys() | current.nodes.keys()):
        old = previous.nodes.get(nid)
        new = current.nodes.get(nid)
        if old is None:
            diffs.append(DiffRecord(
                "add", "node", nid, node_type=new.type, name=new.name,
                new_val=new.val, new_pos=new.position,
            ))
        elif new is None:
            diffs.append(DiffRecord(
                "delete", "node", nid, node_type=old.type, name=old.name,
                old_val=old.val, old_pos=old.position,
            ))
        elif (
            old.val != new.val
            or old.name != new.name
            or positions_differ(old.position, new.position)
        ):
            diffs.append(DiffRecord(
                "update", "node", nid, node_type=new.type, name=new.name,
                old_val=old.val, new_val=new.val,
                old_pos=old.position, new_pos=new.position,
            ))

    # Link weights are not versioned; only existence is
    for key in sorted(previous.links.keys() | current.links.keys()):
        if key not in previous.links:
            diffs.append(DiffRecord("add", "link", link_id(key), new_val=current.links[key]))
        elif key not in current.links:
            diffs.append(DiffRecord("delete", "link", link_id(key), old_val=previous.links[key]))

    return diffs


def _node_row(node: NodeRecord, now) -> dict:
    return {
        "id": node.id,
        "name": node.name,
        "val": node.val,
        "type": node.type,
        "pos_x": node.pos_x,
        "pos_y": node.pos_y,
        "pos_z": node.pos_z,
        "created_at": now,
        "updated_at": now,
    }


def _chunks(items: List, size: int) -> Iterable[List]:
    size = max(1, size)
    for start in range(0, len(items), size):
        yield items[start:start + size]


class VersionRecorder:
    """Creates, publishes, fails and prunes graph versions."""

    def __init__(self, db: Session, settings: Settings = None):
        self.db = db
        self.settings = settings or default_settings

    def start_version(self, is_full_rebuild: bool) -> GraphVersion:
        version = GraphVersion(status="running", is_full_rebuild=is_full_rebuild)
        self.db.add(version)
        self.db.commit()
        self.db.refresh(version)
        logger.info(f"Started graph version {version.id} ({'full' if is_full_rebuild else 'incremental'})")
        return version

    def fail_version(self, version_id: int, error: str) -> None:
        """Mark a version failed; whatever the run computed is discarded."""
        self.db.rollback()
        version = self.db.get(GraphVersion, version_id)
        if version is None:
            return
        version.status = "failed"
        version.completed_at = utc_now()
        version.meta_json = json.dumps({"error": error})
        self.db.commit()
        logger.warning(f"Graph version {version_id} failed: {error}")

    def publish(
        self,
        version_id: int,
        previous: GraphState,
        current: GraphState,
        communities: CommunityResult,
        layout: LayoutResult,
        changes: ChangeSet,
        duration_ms: int,
        meta: Optional[dict] = None,
    ) -> List[DiffRecord]:
        """Write the run's results and complete the version in one transaction."""
        settled = settle_positions(previous, current)
        if settled:
            logger.debug(f"Kept previous position for {settled} nodes that barely moved")
        diffs = compute_diffs(previous, current)
        try:
            if changes.full_rebuild:
                self._replace_graph(current)
            else:
                self._apply_graph_changes(previous, current)
            self._replace_communities(communities, layout)

            batch = self.settings.write_batch_size
            rows = [diff.to_row(version_id) for diff in diffs]
            for chunk in _chunks(rows, batch):
                self.db.execute(insert(GraphDiff), chunk)

            now = utc_now()
            version = self.db.get(GraphVersion, version_id)
            version.status = "completed"
            version.completed_at = now
            version.node_count = len(current.nodes)
            version.link_count = len(current.links)
            version.precalc_duration_ms = duration_ms
            version.meta_json = json.dumps(meta or {})

            state = self.db.get(PrecalcState, 1)
            if state is None:
                state = PrecalcState(id=1)
                self.db.add(state)
            state.last_precalc_at = now
            if changes.full_rebuild:
                state.last_full_precalc_at = now
            state.watermarks_json = json.dumps(changes.watermarks)
            state.current_version_id = version_id
            state.total_nodes = len(current.nodes)
            state.total_links = len(current.links)
            state.precalc_duration_ms = duration_ms

            self.db.flush()
            self.prune(version_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Published graph version {version_id}: {len(current.nodes)} nodes, "
            f"{len(current.links)} links, {len(diffs)} diffs"
        )
        return diffs

    # -- graph tables --------------------------------------------------------

    def _replace_graph(self, current: GraphState) -> None:
        batch = self.settings.write_batch_size
        now = utc_now()
        self.db.execute(delete(GraphLink))
        self.db.execute(delete(GraphNode))
        node_rows = [_node_row(current.nodes[nid], now) for nid in sorted(current.nodes)]
        for chunk in _chunks(node_rows, batch):
            self.db.execute(insert(GraphNode), chunk)
        link_rows = [
            {"source": source, "target": target, "weight": weight}
            for (source, target), weight in sorted(current.links.items())
        ]
        for chunk in _chunks(link_rows, batch):
            self.db.execute(insert(GraphLink), chunk)

    def _apply_graph_changes(self, previous: GraphState, current: GraphState) -> None:
        batch = self.settings.write_batch_size
        now = utc_now()

        removed = sorted(previous.nodes.keys() - current.nodes.keys())
        added = [current.nodes[nid] for nid in sorted(current.nodes.keys() - previous.nodes.keys())]
        changed = [
            node for nid, node in sorted(current.nodes.items())
            if nid in previous.nodes and vars(previous.nodes[nid]) != vars(node)
        ]

        for chunk in _chunks(removed, batch):
            self.db.execute(delete(GraphNode).where(GraphNode.id.in_(chunk)))
        for chunk in _chunks([_node_row(node, now) for node in added], batch):
            self.db.execute(insert(GraphNode), chunk)
        updates = [
            {
                "id": node.id, "name": node.name, "val": node.val,
                "pos_x": node.pos_x, "pos_y": node.pos_y, "pos_z": node.pos_z,
                "updated_at": now,
            }
            for node in changed
        ]
        for chunk in _chunks(updates, batch):
            self.db.execute(update(GraphNode), chunk)

        links = GraphLink.__table__
        link_removed = [
            {"b_source": s, "b_target": t}
            for s, t in sorted(previous.links.keys() - current.links.keys())
        ]
        link_added = [
            {"source": s, "target": t, "weight": current.links[(s, t)]}
            for s, t in sorted(current.links.keys() - previous.links.keys())
        ]
        link_reweighted = [
            {"b_source": s, "b_target": t, "b_weight": w}
            for (s, t), w in sorted(current.links.items())
            if (s, t) in previous.links and previous.links[(s, t)] != w
        ]
        if link_removed:
            stmt = links.delete().where(
                links.c.source == bindparam("b_source"),
                links.c.target == bindparam("b_target"),
            )
            for chunk in _chunks(link_removed, batch):
                self.db.execute(stmt, chunk)
        for chunk in _chunks(link_added, batch):
            self.db.execute(insert(GraphLink), chunk)
        if link_reweighted:
            stmt = links.update().where(
                links.c.source == bindparam("b_source"),
                links.c.target == bindparam("b_target"),
            ).values(weight=bindparam("b_weight"))
            for chunk in _chunks(link_reweighted, batch):
                self.db.execute(stmt, chunk)

    def _replace_communities(self, communities: CommunityResult, layout: LayoutResult) -> None:
        batch = self.settings.write_batch_size
        for model in (GraphBundle, GraphCommunityHierarchy, GraphCommunityLink,
                      GraphCommunityMember, GraphCommunity):
            self.db.execute(delete(model))

        community_rows = []
        for info in communities.communities:
            centroid = layout.centroids.get(info.id, (None, None, None))
            community_rows.append({
                "id": info.id, "label": info.label, "size": info.size,
                "modularity": info.modularity,
                "centroid_x": centroid[0], "centroid_y": centroid[1], "centroid_z": centroid[2],
            })
        member_rows = [
            {"community_id": cid, "node_id": nid}
            for nid, cid in sorted(communities.membership.items())
        ]
        link_rows = [
            {"source_community_id": s, "target_community_id": t, "weight": w}
            for (s, t), w in sorted(communities.community_links.items())
        ]

        hierarchy_rows = []
        for level, mapping in enumerate(communities.hierarchy):
            parents = communities.parents[level] if level < len(communities.parents) else {}
            centroids = layout.level_centroids[level] if level < len(layout.level_centroids) else {}
            for nid, cid in sorted(mapping.items()):
                centroid = centroids.get(cid, (None, None, None))
                hierarchy_rows.append({
                    "node_id": nid, "level": level, "community_id": cid,
                    "parent_community_id": parents.get(cid),
                    "centroid_x": centroid[0], "centroid_y": centroid[1], "centroid_z": centroid[2],
                })

        bundle_rows = [
            {
                "source_community_id": b.source_community_id,
                "target_community_id": b.target_community_id,
                "weight": b.weight, "avg_strength": b.avg_strength,
                "control_x": b.control[0], "control_y": b.control[1], "control_z": b.control[2],
            }
            for b in layout.bundles
        ]

        for model, rows in (
            (GraphCommunity, community_rows),
            (GraphCommunityMember, member_rows),
            (GraphCommunityLink, link_rows),
            (GraphCommunityHierarchy, hierarchy_rows),
            (GraphBundle, bundle_rows),
        ):
            for chunk in _chunks(rows, batch):
                self.db.execute(insert(model), chunk)

    # -- retention -----------------------------------------------------------

    def prune(self, current_version_id: int) -> List[int]:
        """Drop versions (and diffs) beyond the retention count, never the current one."""
        keep = max(1, self.settings.version_retention)
        ids = self.db.scalars(select(GraphVersion.id).order_by(GraphVersion.id.desc())).all()
        stale = [vid for vid in ids[keep:] if vid != current_version_id]
        if stale:
            self.db.execute(delete(GraphDiff).where(GraphDiff.version_id.in_(stale)))
            self.db.execute(delete(GraphVersion).where(GraphVersion.id.in_(stale)))
            logger.info(f"Pruned {len(stale)} old graph versions")
        return stale


# =============================================================================
# Client-side replay
# =============================================================================

def snapshot_from_db(db: Session) -> dict:
    """Replayable snapshot of the published graph: nodes by id plus the link id set."""
    nodes = {}
    for node in db.scalars(select(GraphNode)):
        pos = None
        if node.pos_x is not None:
            pos = (node.pos_x, node.pos_y, node.pos_z)
        nodes[node.id] = {"name": node.name, "val": node.val, "type": node.type, "pos": pos}
    links = {f"{source}->{target}" for source, target in db.execute(select(GraphLink.source, GraphLink.target))}
    return {"nodes": nodes, "links": links}


def replay_diffs(snapshot: dict, diffs: Iterable) -> dict:
    """Apply GraphDiff rows in order to a copy of `snapshot`."""
    result = copy.deepcopy(snapshot)
    nodes: Dict[str, dict] = result["nodes"]
    links: set = result["links"]

    for diff in diffs:
        if diff.entity_type == "link":
            if diff.action == "add":
                links.add(diff.entity_id)
            elif diff.action == "delete":
                links.discard(diff.entity_id)
            continue

        if diff.action == "delete":
            nodes.pop(diff.entity_id, None)
            continue

        pos = None
        if diff.new_pos_x is not None:
            pos = (diff.new_pos_x, diff.new_pos_y, diff.new_pos_z)
        entry = nodes.setdefault(diff.entity_id, {"type": diff.node_type})
        entry.update({"name": diff.name, "val": diff.new_val, "pos": pos, "type": diff.node_type})
    return result
