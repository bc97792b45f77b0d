"""Query serving layer - read-only access to the published graph.

Every function only reads committed tables, so callers always see the last
completed version. Bad parameters raise QueryError before any query runs.
"""
import math
from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Set, Tuple

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.orm import Session

from .materializer import NODE_TYPES
from .models import (
    GraphBundle, GraphCommunity, GraphCommunityHierarchy, GraphCommunityLink,
    GraphCommunityMember, GraphDiff, GraphLink, GraphNode, GraphVersion, PrecalcState,
    SOURCE_MODELS,
)


DEFAULT_MAX_NODES = 20000
DEFAULT_PAGE_SIZE = 500
MAX_PAGE_SIZE = 5000
DEFAULT_SEARCH_LIMIT = 50
MAX_SEARCH_LIMIT = 500
DEFAULT_NEIGHBOR_LIMIT = 10
MAX_NEIGHBOR_LIMIT = 100


class QueryError(ValueError):
    """Rejected query parameters."""
    pass


# =============================================================================
# Parameter handling
# =============================================================================

def parse_types(types) -> Optional[List[str]]:
    """Accept None, a comma-separated string or a sequence of node types."""
    if types is None:
        return None
    if isinstance(types, str):
        items = [t.strip() for t in types.split(",")]
    else:
        items = [str(t).strip() for t in types]
    items = [t for t in items if t]
    if not items:
        return None
    unknown = sorted(set(items) - set(NODE_TYPES))
    if unknown:
        raise QueryError(f"Unknown node type(s): {', '.join(unknown)}; expected {', '.join(NODE_TYPES)}")
    return sorted(set(items))


def _check_limit(name: str, value: int, maximum: Optional[int] = None, allow_zero: bool = True) -> int:
    if value is None:
        raise QueryError(f"{name} is required")
    if value < 0 or (value == 0 and not allow_zero):
        raise QueryError(f"{name} must be {'>= 0' if allow_zero else '> 0'}, got {value}")
    if maximum is not None and value > maximum:
        raise QueryError(f"{name} must be <= {maximum}, got {value}")
    return value


def encode_cursor(val: int, node_id: str) -> str:
    return f"{val}:{node_id}"


def decode_cursor(cursor: str) -> Tuple[int, str]:
    """Split a "<val>:<node id>" cursor."""
    raw_val, sep, node_id = (cursor or "").partition(":")
    if not sep or not node_id:
        raise QueryError(f"Invalid cursor {cursor!r}: expected '<weight>:<node id>'")
    try:
        val = int(raw_val)
    except ValueError:
        raise QueryError(f"Invalid cursor {cursor!r}: weight is not an integer")
    return val, node_id


def node_payload(node: GraphNode, with_positions: bool = True) -> dict:
    data = {"id": node.id, "name": node.name, "val": node.val, "type": node.type}
    if with_positions:
        data["x"] = node.pos_x
        data["y"] = node.pos_y
        data["z"] = node.pos_z
    return data


def _links_among(db: Session, node_ids: Set[str], max_links: Optional[int] = None) -> List[dict]:
    """Links whose both endpoints are in node_ids, heaviest first."""
    if not node_ids or max_links == 0:
        return []
    ids = list(node_ids)
    query = (
        select(GraphLink.source, GraphLink.target, GraphLink.weight)
        .where(GraphLink.source.in_(ids), GraphLink.target.in_(ids))
        .order_by(GraphLink.weight.desc(), GraphLink.source, GraphLink.target)
    )
    if max_links is not None:
        query = query.limit(max_links)
    return [
        {"source": source, "target": target, "weight": weight}
        for source, target, weight in db.execute(query)
    ]


def _ranked_nodes():
    return select(GraphNode).order_by(GraphNode.val.desc(), GraphNode.id)


# =============================================================================
# Graph snapshots
# =============================================================================

def get_graph_snapshot(
    db: Session,
    max_nodes: int = DEFAULT_MAX_NODES,
    max_links: Optional[int] = None,
    types=None,
    with_positions: bool = True,
) -> dict:
    """Top nodes by weight, then only the links among them."""
    _check_limit("max_nodes", max_nodes)
    if max_links is not None:
        _check_limit("max_links", max_links)
    node_types = parse_types(types)

    query = _ranked_nodes()
    if node_types:
        query = query.where(GraphNode.type.in_(node_types))
    nodes = db.scalars(query.limit(max_nodes)).all() if max_nodes else []

    # Cap nodes first, then filter links to the survivors
    node_ids = {n.id for n in nodes}
    links = _links_among(db, node_ids, max_links)
    return {
        "nodes": [node_payload(n, with_positions) for n in nodes],
        "links": links,
        "version_id": current_version_id(db),
    }


def get_graph_page(
    db: Session,
    cursor: Optional[str] = None,
    limit: int = DEFAULT_PAGE_SIZE,
    types=None,
    with_positions: bool = True,
) -> dict:
    """One page of nodes in (val desc, id asc) order, plus the links inside the page."""
    _check_limit("limit", limit, MAX_PAGE_SIZE, allow_zero=False)
    node_types = parse_types(types)

    query = _ranked_nodes()
    if node_types:
        query = query.where(GraphNode.type.in_(node_types))
    if cursor:
        after_val, after_id = decode_cursor(cursor)
        query = query.where(or_(
            GraphNode.val < after_val,
            and_(GraphNode.val == after_val, GraphNode.id > after_id),
        ))

    rows = db.scalars(query.limit(limit + 1)).all()
    has_more = len(rows) > limit
    nodes = rows[:limit]
    next_cursor = encode_cursor(nodes[-1].val, nodes[-1].id) if has_more else None

    return {
        "nodes": [node_payload(n, with_positions) for n in nodes],
        "links": _links_among(db, {n.id for n in nodes}),
        "next_cursor": next_cursor,
    }


def get_region(
    db: Session,
    x_min: float,
    x_max: float,
    y_min: float,
    y_max: float,
    z_min: Optional[float] = None,
    z_max: Optional[float] = None,
    max_nodes: int = DEFAULT_MAX_NODES,
    max_links: Optional[int] = None,
) -> dict:
    """Positioned nodes inside a 2D (x/y) or 3D box, heaviest first, with links among them."""
    if (z_min is None) != (z_max is None):
        raise QueryError("z_min and z_max must be given together")
    bounds = [("x", x_min, x_max), ("y", y_min, y_max)]
    if z_min is not None:
        bounds.append(("z", z_min, z_max))
    for axis, low, high in bounds:
        if low is None or high is None:
            raise QueryError(f"{axis}_min and {axis}_max are required")
        if not (math.isfinite(low) and math.isfinite(high)):
            raise QueryError(f"{axis} bounds must be finite")
        if low > high:
            raise QueryError(f"{axis}_min ({low}) is greater than {axis}_max ({high})")
    _check_limit("max_nodes", max_nodes)
    if max_links is not None:
        _check_limit("max_links", max_links)

    query = _ranked_nodes().where(
        GraphNode.pos_x.between(x_min, x_max),
        GraphNode.pos_y.between(y_min, y_max),
    )
    if z_min is not None:
        query = query.where(GraphNode.pos_z.between(z_min, z_max))
    nodes = db.scalars(query.limit(max_nodes)).all() if max_nodes else []
    return {
        "nodes": [node_payload(n) for n in nodes],
        "links": _links_among(db, {n.id for n in nodes}, max_links),
    }


# =============================================================================
# Search and neighbours
# =============================================================================

def search_nodes(db: Session, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> List[dict]:
    """Case-insensitive substring search on name or id: exact, then prefix, then weight."""
    text = (query or "").strip()
    if not text:
        raise QueryError("Search text must not be empty")
    _check_limit("limit", limit, MAX_SEARCH_LIMIT, allow_zero=False)

    needle = text.lower()
    escaped = needle.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    name = func.lower(GraphNode.name)
    nid = func.lower(GraphNode.id)
    rank = case(
        (or_(name == needle, nid == needle), 0),
        (or_(name.like(f"{escaped}%", escape="\\"), nid.like(f"{escaped}%", escape="\\")), 1),
        else_=2,
    )
    rows = db.scalars(
        select(GraphNode)
        .where(or_(
            name.like(f"%{escaped}%", escape="\\"),
            nid.like(f"%{escaped}%", escape="\\"),
        ))
        .order_by(rank, GraphNode.val.desc(), GraphNode.id)
        .limit(limit)
    ).all()
    return [node_payload(n) for n in rows]


def get_node_details(db: Session, node_id: str, neighbor_limit: int = DEFAULT_NEIGHBOR_LIMIT) -> Optional[dict]:
    """Node, its degree, community and neighbours ranked by shared-link count. None if absent."""
    _check_limit("neighbor_limit", neighbor_limit, MAX_NEIGHBOR_LIMIT)
    node = db.get(GraphNode, node_id)
    if node is None:
        return None

    shared: Dict[str, int] = defaultdict(int)
    degree = 0
    for source, target, weight in db.execute(
        select(GraphLink.source, GraphLink.target, GraphLink.weight)
        .where(or_(GraphLink.source == node_id, GraphLink.target == node_id))
    ):
        degree += 1
        other = target if source == node_id else source
        if other != node_id:
            shared[other] += weight

    neighbours = []
    if shared and neighbor_limit:
        others = {n.id: n for n in db.scalars(select(GraphNode).where(GraphNode.id.in_(list(shared))))}
        ranked = sorted(
            (nid for nid in shared if nid in others),
            key=lambda nid: (-shared[nid], -others[nid].val, nid),
        )
        for nid in ranked[:neighbor_limit]:
            entry = node_payload(others[nid])
            entry["shared_links"] = shared[nid]
            neighbours.append(entry)

    community_id = db.scalar(
        select(GraphCommunityMember.community_id).where(GraphCommunityMember.node_id == node_id)
    )
    details = node_payload(node)
    details.update({"degree": degree, "community_id": community_id, "neighbors": neighbours})
    return details


# =============================================================================
# Communities
# =============================================================================

def _community_payload(c: GraphCommunity) -> dict:
    return {
        "id": c.id, "label": c.label, "size": c.size, "modularity": c.modularity,
        "x": c.centroid_x, "y": c.centroid_y, "z": c.centroid_z,
    }


def list_communities(db: Session, limit: int = 100, offset: int = 0) -> List[dict]:
    _check_limit("limit", limit, MAX_PAGE_SIZE, allow_zero=False)
    _check_limit("offset", offset)
    rows = db.scalars(
        select(GraphCommunity)
        .order_by(GraphCommunity.size.desc(), GraphCommunity.id)
        .offset(offset).limit(limit)
    ).all()
    return [_community_payload(c) for c in rows]


def get_community(db: Session, community_id: int, member_limit: int = 100) -> Optional[dict]:
    _check_limit("member_limit", member_limit, MAX_PAGE_SIZE)
    community = db.get(GraphCommunity, community_id)
    if community is None:
        return None
    members = db.scalars(
        select(GraphNode)
        .join(GraphCommunityMember, GraphCommunityMember.node_id == GraphNode.id)
        .where(GraphCommunityMember.community_id == community_id)
        .order_by(GraphNode.val.desc(), GraphNode.id)
        .limit(member_limit)
    ).all()
    payload = _community_payload(community)
    payload["members"] = [node_payload(n) for n in members]
    return payload


def list_community_links(db: Session, limit: int = 1000) -> List[dict]:
    _check_limit("limit", limit, MAX_PAGE_SIZE * 10, allow_zero=False)
    rows = db.scalars(
        select(GraphCommunityLink)
        .order_by(
            GraphCommunityLink.weight.desc(),
            GraphCommunityLink.source_community_id,
            GraphCommunityLink.target_community_id,
        )
        .limit(limit)
    ).all()
    return [
        {"source": r.source_community_id, "target": r.target_community_id, "weight": r.weight}
        for r in rows
    ]


def get_hierarchy_level(db: Session, level: int, parent_community_id: Optional[int] = None) -> List[dict]:
    """Communities at one hierarchy level, optionally only the children of a coarser community."""
    _check_limit("level", level)
    query = (
        select(
            GraphCommunityHierarchy.community_id,
            func.max(GraphCommunityHierarchy.parent_community_id).label("parent"),
            func.count().label("size"),
            func.min(GraphCommunityHierarchy.centroid_x),
            func.min(GraphCommunityHierarchy.centroid_y),
            func.min(GraphCommunityHierarchy.centroid_z),
        )
        .where(GraphCommunityHierarchy.level == level)
        .group_by(GraphCommunityHierarchy.community_id)
        .order_by(func.count().desc(), GraphCommunityHierarchy.community_id)
    )
    if parent_community_id is not None:
        query = query.having(func.max(GraphCommunityHierarchy.parent_community_id) == parent_community_id)
    return [
        {
            "level": level, "community_id": cid, "parent_community_id": parent,
            "size": size, "x": x, "y": y, "z": z,
        }
        for cid, parent, size, x, y, z in db.execute(query)
    ]


def list_edge_bundles(db: Session, min_weight: int = 1) -> List[dict]:
    _check_limit("min_weight", min_weight)
    rows = db.scalars(
        select(GraphBundle)
        .where(GraphBundle.weight >= min_weight)
        .order_by(GraphBundle.weight.desc(), GraphBundle.source_community_id, GraphBundle.target_community_id)
    ).all()
    return [
        {
            "source": b.source_community_id, "target": b.target_community_id,
            "weight": b.weight, "avg_strength": b.avg_strength,
            "control": {"x": b.control_x, "y": b.control_y, "z": b.control_z},
        }
        for b in rows
    ]


# =============================================================================
# Versions
# =============================================================================

def current_version_id(db: Session) -> Optional[int]:
    state = db.get(PrecalcState, 1)
    return state.current_version_id if state else None


def _version_payload(v: GraphVersion) -> dict:
    return {
        "id": v.id, "status": v.status, "created_at": v.created_at,
        "completed_at": v.completed_at, "node_count": v.node_count,
        "link_count": v.link_count, "precalc_duration_ms": v.precalc_duration_ms,
        "is_full_rebuild": v.is_full_rebuild,
    }


def get_current_version(db: Session) -> Optional[dict]:
    vid = current_version_id(db)
    if vid is None:
        return None
    version = db.get(GraphVersion, vid)
    return _version_payload(version) if version else None


def list_versions(db: Session, limit: int = 10) -> List[dict]:
    _check_limit("limit", limit, 1000, allow_zero=False)
    rows = db.scalars(select(GraphVersion).order_by(GraphVersion.id.desc()).limit(limit)).all()
    return [_version_payload(v) for v in rows]


def _diff_payload(d: GraphDiff) -> dict:
    data = {
        "version_id": d.version_id, "action": d.action, "entity_type": d.entity_type,
        "entity_id": d.entity_id, "old_val": d.old_val, "new_val": d.new_val,
    }
    if d.entity_type == "node":
        data.update({
            "node_type": d.node_type, "name": d.name,
            "old_pos": _pos(d.old_pos_x, d.old_pos_y, d.old_pos_z),
            "new_pos": _pos(d.new_pos_x, d.new_pos_y, d.new_pos_z),
        })
    return data


def _pos(x, y, z) -> Optional[dict]:
    if x is None:
        return None
    return {"x": x, "y": y, "z": z}


def completed_diffs_since(db: Session, since_version: int) -> Sequence[GraphDiff]:
    """GraphDiff rows of completed versions after `since_version`, in replay order."""
    return db.scalars(
        select(GraphDiff)
        .join(GraphVersion, GraphVersion.id == GraphDiff.version_id)
        .where(GraphVersion.status == "completed", GraphDiff.version_id > since_version)
        .order_by(GraphDiff.version_id, GraphDiff.id)
    ).all()


def get_diffs_since(db: Session, since_version: int) -> dict:
    """Everything a client at `since_version` must replay to reach the current version."""
    _check_limit("since", since_version)
    current = current_version_id(db)
    if current is not None and since_version > current:
        raise QueryError(f"since ({since_version}) is ahead of the current version ({current})")

    oldest = db.scalar(select(func.min(GraphVersion.id)))
    resync = (
        current is not None
        and since_version < current
        and oldest is not None
        and since_version < oldest - 1
    )
    diffs = [] if resync else completed_diffs_since(db, since_version)

    summary = defaultdict(int)
    for d in diffs:
        summary[f"{d.entity_type}s_{d.action}"] += 1
    return {
        "since_version": since_version,
        "current_version": current,
        "resync_required": resync,
        "summary": dict(summary),
        "diffs": [_diff_payload(d) for d in diffs],
    }


def get_stats(db: Session) -> dict:
    """Row counts of source and graph tables plus the last run's bookkeeping."""
    state = db.get(PrecalcState, 1)
    nodes_by_type = dict(
        db.execute(select(GraphNode.type, func.count()).group_by(GraphNode.type)).all()
    )
    return {
        "source": {
            table: db.scalar(select(func.count()).select_from(model)) or 0
            for table, model in SOURCE_MODELS.items()
        },
        "nodes_by_type": nodes_by_type,
        "total_nodes": sum(nodes_by_type.values()),
        "total_links": db.scalar(select(func.count()).select_from(GraphLink)) or 0,
        "communities": db.scalar(select(func.count()).select_from(GraphCommunity)) or 0,
        "current_version_id": state.current_version_id if state else None,
        "last_precalc_at": state.last_precalc_at if state else None,
        "last_full_precalc_at": state.last_full_precalc_at if state else None,
        "precalc_duration_ms": state.precalc_duration_ms if state else None,
    }
