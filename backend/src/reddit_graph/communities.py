"""Community detection - greedy modularity optimization with a coarsening hierarchy.

Clauset-Newman-Moore agglomeration: every node starts alone and the pair of
communities with the largest modularity gain is merged until no merge helps.
Nodes are processed in sorted id order and ties go to the lowest id pair, so
the same graph always yields the same partition.

Higher hierarchy levels rerun the optimizer on the community meta-graph with a
smaller resolution, which makes merging cheaper and the clusters coarser.
"""
import heapq
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Hashable, List, Optional, Sequence, Tuple

from .config import Settings, settings as default_settings
from .materializer import GraphState


logger = logging.getLogger(__name__)


@dataclass
class CommunityInfo:
    id: int
    label: str
    size: int
    modularity: float
    members: List[str]


@dataclass
class CommunityResult:
    """Partition of the graph plus everything derived from it."""
    membership: Dict[str, int]
    communities: List[CommunityInfo]
    community_links: Dict[Tuple[int, int], int]
    link_strength: Dict[Tuple[int, int], float]  # summed weight of crossing links
    hierarchy: List[Dict[str, int]] = field(default_factory=list)
    parents: List[Dict[int, Optional[int]]] = field(default_factory=list)
    modularity: float = 0.0
    converged: bool = True
    merges: int = 0
    hierarchy_conflicts: int = 0


# =============================================================================
# Core optimizer
# =============================================================================

def greedy_modularity(
    nodes: Sequence[Hashable],
    edges: Dict[Tuple[Hashable, Hashable], float],
    self_loops: Optional[Dict[Hashable, float]] = None,
    resolution: float = 1.0,
    max_merges: Optional[int] = None,
) -> Tuple[Dict[Hashable, Hashable], bool, int]:
    """
    Agglomerate `nodes` (already sorted) into communities.

    Returns (node -> representative node, converged, merges). The
    representative is the lowest member. Every merge raises modularity, so
    stopping at `max_merges` still returns the best partition seen.
    """
    index = {node: i for i, node in enumerate(nodes)}
    n = len(nodes)
    adjacency: List[Dict[int, float]] = [dict() for _ in range(n)]
    degree = [0.0] * n

    for (a, b), weight in edges.items():
        if weight <= 0:
            continue
        i, j = index[a], index[b]
        if i == j:
            degree[i] += 2 * weight
            continue
        adjacency[i][j] = adjacency[i].get(j, 0.0) + weight
        adjacency[j][i] = adjacency[j].get(i, 0.0) + weight
        degree[i] += weight
        degree[j] += weight

    for node, weight in (self_loops or {}).items():
        degree[index[node]] += 2 * weight

    members: Dict[int, List[int]] = {i: [i] for i in range(n)}
    two_m = sum(degree)
    if two_m == 0:
        return {node: node for node in nodes}, True, 0

    a = [d / two_m for d in degree]
    dq: List[Dict[int, float]] = [
        {j: 2 * (w / two_m - resolution * a[i] * a[j]) for j, w in adjacency[i].items()}
        for i in range(n)
    ]
    heap = [(-q, i, j) for i in range(n) for j, q in dq[i].items() if i < j]
    heapq.heapify(heap)

    alive = [True] * n
    merges = 0
    converged = True

    while heap:
        neg_q, i, j = heap[0]
        if not alive[i] or not alive[j] or dq[i].get(j) != -neg_q:
            heapq.heappop(heap)  # stale
            continue
        if -neg_q <= 0:
            break
        if max_merges is not None and merges >= max_merges:
            converged = False
            break
        heapq.heappop(heap)

        # Merge j into i (i < j, so the lower id survives)
        merged: Dict[int, float] = {}
        for k in (set(dq[i]) | set(dq[j])) - {i, j}:
            if k in dq[i] and k in dq[j]:
                q = dq[i][k] + dq[j][k]
            elif k in dq[i]:
                q = dq[i][k] - 2 * resolution * a[j] * a[k]
            else:
                q = dq[j][k] - 2 * resolution * a[i] * a[k]
            merged[k] = q

        for k in dq[j]:
            if k != i:
                dq[k].pop(j, None)
        for k, q in merged.items():
            dq[k][i] = q
            heapq.heappush(heap, (-q, min(i, k), max(i, k)))

        dq[i] = merged
        dq[j] = {}
        alive[j] = False
        a[i] += a[j]
        a[j] = 0.0
        members[i].extend(members.pop(j))
        merges += 1

    labels = {}
    for rep, group in members.items():
        for member in group:
            labels[nodes[member]] = nodes[rep]
    return labels, converged, merges


def partition_modularity(
    membership: Dict[Hashable, Hashable],
    edges: Dict[Tuple[Hashable, Hashable], float],
    self_loops: Optional[Dict[Hashable, float]] = None,
    resolution: float = 1.0,
) -> Tuple[float, Dict[Hashable, float]]:
    """Q and per-community contributions: Q_c = L_c/m - resolution * (d_c/2m)^2."""
    internal: Dict[Hashable, float] = defaultdict(float)
    total: Dict[Hashable, float] = defaultdict(float)
    m = 0.0

    for (a, b), weight in edges.items():
        ca, cb = membership[a], membership[b]
        m += weight
        total[ca] += weight
        total[cb] += weight
        if ca == cb:
            internal[ca] += weight

    for node, weight in (self_loops or {}).items():
        c = membership[node]
        m += weight
        internal[c] += weight
        total[c] += 2 * weight

    communities = set(membership.values())
    if m == 0:
        return 0.0, {c: 0.0 for c in communities}

    contributions = {
        c: internal[c] / m - resolution * (total[c] / (2 * m)) ** 2
        for c in communities
    }
    return sum(contributions.values()), contributions


def number_groups(labels: Dict[str, Hashable]) -> Dict[str, int]:
    """Renumber groups 1..k by size descending, then lowest member id."""
    groups: Dict[Hashable, List[str]] = defaultdict(list)
    for node, key in labels.items():
        groups[key].append(node)
    ordered = sorted(groups.values(), key=lambda group: (-len(group), min(group)))
    numbered = {}
    for cid, group in enumerate(ordered, start=1):
        for node in group:
            numbered[node] = cid
    return numbered


def undirected_edges(state: GraphState) -> Dict[Tuple[str, str], float]:
    """Collapse directed links into one weighted pair per node pair, ignoring self links."""
    edges: Dict[Tuple[str, str], float] = defaultdict(float)
    for (source, target), weight in state.links.items():
        if source == target:
            continue
        key = (source, target) if source < target else (target, source)
        edges[key] += weight
    return dict(edges)


def _meta_graph(
    edges: Dict[Tuple[str, str], float],
    membership: Dict[str, int]
) -> Tuple[Dict[Tuple[int, int], float], Dict[int, float]]:
    meta_edges: Dict[Tuple[int, int], float] = defaultdict(float)
    loops: Dict[int, float] = defaultdict(float)
    for (a, b), weight in edges.items():
        ca, cb = membership[a], membership[b]
        if ca == cb:
            loops[ca] += weight
        else:
            meta_edges[(min(ca, cb), max(ca, cb))] += weight
    return dict(meta_edges), dict(loops)


# =============================================================================
# Detector
# =============================================================================

def detect_communities(state: GraphState, settings: Settings = None) -> CommunityResult:
    """Partition the graph, label communities, aggregate their links and build the hierarchy."""
    settings = settings or default_settings
    nodes = sorted(state.nodes)
    edges = undirected_edges(state)

    labels, converged, merges = greedy_modularity(
        nodes, edges, max_merges=settings.community_max_merges
    )
    if not converged:
        logger.warning(f"Community detection stopped after {merges} merges without converging")

    membership = number_groups(labels)
    total_q, contributions = partition_modularity(membership, edges)

    groups: Dict[int, List[str]] = defaultdict(list)
    for node in nodes:
        groups[membership[node]].append(node)

    communities = []
    for cid in sorted(groups):
        members = groups[cid]
        hub = min(members, key=lambda nid: (-state.degree(nid), nid))
        communities.append(CommunityInfo(
            id=cid,
            label=state.nodes[hub].name,
            size=len(members),
            modularity=contributions.get(cid, 0.0),
            members=members,
        ))

    community_links: Dict[Tuple[int, int], int] = defaultdict(int)
    link_strength: Dict[Tuple[int, int], float] = defaultdict(float)
    for (source, target), weight in state.links.items():
        cs, ct = membership.get(source), membership.get(target)
        if cs is None or ct is None or cs == ct:
            continue
        pair = (min(cs, ct), max(cs, ct))
        community_links[pair] += 1
        link_strength[pair] += weight

    result = CommunityResult(
        membership=membership,
        communities=communities,
        community_links=dict(community_links),
        link_strength=dict(link_strength),
        modularity=total_q,
        converged=converged,
        merges=merges,
    )
    build_hierarchy(result, edges, settings)

    logger.info(
        f"Detected {len(communities)} communities (Q={total_q:.4f}, "
        f"{len(result.hierarchy)} hierarchy levels)"
    )
    return result


def build_hierarchy(
    result: CommunityResult,
    edges: Dict[Tuple[str, str], float],
    settings: Settings
) -> None:
    """Fill result.hierarchy/parents; level 0 is the flat partition."""
    result.hierarchy = [dict(result.membership)]
    result.parents = []
    current = result.membership

    for level in range(1, max(1, settings.community_hierarchy_levels)):
        meta_nodes = sorted(set(current.values()))
        if len(meta_nodes) < 3:
            break
        meta_edges, loops = _meta_graph(edges, current)
        if not meta_edges:
            break

        groups, converged, merges = greedy_modularity(
            meta_nodes, meta_edges, loops,
            resolution=settings.community_resolution_decay ** level,
            max_merges=settings.community_max_merges,
        )
        if merges == 0:
            break
        if not converged:
            result.converged = False

        coarser = number_groups({node: groups[cid] for node, cid in current.items()})

        parents: Dict[int, Optional[int]] = {}
        for node, cid in current.items():
            parent = coarser[node]
            if cid not in parents:
                parents[cid] = parent
            elif parents[cid] is not None and parents[cid] != parent:
                logger.warning(f"Level {level - 1} community {cid} maps to several parents, unlinking")
                parents[cid] = None
                result.hierarchy_conflicts += 1
        result.parents.append(parents)
        result.hierarchy.append(coarser)
        current = coarser

        if len(set(coarser.values())) == 1:
            break

    # Top level has no parent
    result.parents.append({cid: None for cid in set(current.values())})
