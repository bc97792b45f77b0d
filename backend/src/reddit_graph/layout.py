"""Spatial layout - 3D force-directed positions, community centroids, edge bundles.

Repulsion uses a Barnes-Hut octree so large graphs stay tractable; with
theta=0 every pair is evaluated exactly. Nodes without links never enter the
force computation.
"""
import logging
import math
import random
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .communities import CommunityResult
from .config import Settings, settings as default_settings
from .materializer import GraphState


logger = logging.getLogger(__name__)

Vec3 = Tuple[float, float, float]

MAX_TREE_DEPTH = 24
DISTANCE_SOFTENING = 0.01


@dataclass
class LayoutResult:
    moved: Set[str] = field(default_factory=set)
    iterations: int = 0
    diverged: bool = False
    centroids: Dict[int, Vec3] = field(default_factory=dict)
    level_centroids: List[Dict[int, Vec3]] = field(default_factory=list)
    bundles: List["EdgeBundle"] = field(default_factory=list)


@dataclass
class EdgeBundle:
    source_community_id: int
    target_community_id: int
    weight: int
    avg_strength: Optional[float]
    control: Vec3


# =============================================================================
# Barnes-Hut octree
# =============================================================================

class _Cell:
    __slots__ = ("center", "half", "mass", "com", "children", "points")

    def __init__(self, center: Vec3, half: float):
        self.center = center
        self.half = half
        self.mass = 0
        self.com = [0.0, 0.0, 0.0]
        self.children: Optional[List[Optional["_Cell"]]] = None
        self.points: List[Tuple[str, Vec3]] = []


class Octree:
    """Point-mass octree over node positions (every node has unit mass)."""

    def __init__(self, points: Dict[str, Vec3]):
        if points:
            xs, ys, zs = zip(*points.values())
            lo = (min(xs), min(ys), min(zs))
            hi = (max(xs), max(ys), max(zs))
            center = tuple((l + h) / 2 for l, h in zip(lo, hi))
            half = max(max(h - l for l, h in zip(lo, hi)) / 2, 1.0) * 1.01
        else:
            center, half = (0.0, 0.0, 0.0), 1.0
        self.root = _Cell(center, half)
        for nid, pos in points.items():
            self._insert(self.root, nid, pos, 0)

    def _insert(self, cell: _Cell, nid: str, pos: Vec3, depth: int) -> None:
        while True:
            cell.mass += 1
            for axis in range(3):
                cell.com[axis] += (pos[axis] - cell.com[axis]) / cell.mass

            if cell.children is None:
                if not cell.points or depth >= MAX_TREE_DEPTH:
                    cell.points.append((nid, pos))
                    return
                # Split the leaf and push its points down
                cell.children = [None] * 8
                existing, cell.points = cell.points, []
                for other_id, other_pos in existing:
                    child = self._child(cell, other_pos)
                    child.mass += 1
                    for axis in range(3):
                        child.com[axis] += (other_pos[axis] - child.com[axis]) / child.mass
                    child.points.append((other_id, other_pos))

            cell = self._child(cell, pos)
            depth += 1

    @staticmethod
    def _child(cell: _Cell, pos: Vec3) -> _Cell:
        octant = (
            (1 if pos[0] >= cell.center[0] else 0)
            | (2 if pos[1] >= cell.center[1] else 0)
            | (4 if pos[2] >= cell.center[2] else 0)
        )
        child = cell.children[octant]
        if child is None:
            half = cell.half / 2
            center = (
                cell.center[0] + (half if octant & 1 else -half),
                cell.center[1] + (half if octant & 2 else -half),
                cell.center[2] + (half if octant & 4 else -half),
            )
            child = _Cell(center, half)
            cell.children[octant] = child
        return child

    def repulsion(self, nid: str, pos: Vec3, strength: float, theta: float) -> Vec3:
        """Summed repulsive force on the point `nid` at `pos`."""
        fx = fy = fz = 0.0
        stack = [self.root]
        while stack:
            cell = stack.pop()
            if cell.mass == 0:
                continue
            if cell.children is None:
                for other_id, other in cell.points:
                    if other_id == nid:
                        continue
                    dx, dy, dz = pos[0] - other[0], pos[1] - other[1], pos[2] - other[2]
                    dist = math.sqrt(dx * dx + dy * dy + dz * dz) + DISTANCE_SOFTENING
                    force = strength / (dist * dist)
                    fx += force * dx / dist
                    fy += force * dy / dist
                    fz += force * dz / dist
                continue

            dx, dy, dz = pos[0] - cell.com[0], pos[1] - cell.com[1], pos[2] - cell.com[2]
            dist = math.sqrt(dx * dx + dy * dy + dz * dz) + DISTANCE_SOFTENING
            if theta > 0 and (2 * cell.half) / dist < theta and not _inside(cell, pos):
                force = strength * cell.mass / (dist * dist)
                fx += force * dx / dist
                fy += force * dy / dist
                fz += force * dz / dist
            else:
                stack.extend(child for child in cell.children if child is not None)
        return (fx, fy, fz)


def _inside(cell: _Cell, pos: Vec3) -> bool:
    return all(abs(pos[axis] - cell.center[axis]) <= cell.half for axis in range(3))


# =============================================================================
# Seeding and relaxation
# =============================================================================

def seed_positions(
    state: GraphState,
    communities: CommunityResult,
    movable: Iterable[str],
    rng: random.Random,
    reset: bool,
    settings: Settings,
) -> Dict[str, Vec3]:
    """
    Initial positions for a relaxation pass.

    - reset: every node goes on its community's ring (deterministic from the rng)
    - otherwise existing positions are kept; new nodes start next to their
      strongest positioned neighbour, or on the ring when they have none
    """
    positions: Dict[str, Vec3] = {}
    if not reset:
        for nid, node in state.nodes.items():
            if node.position is not None:
                positions[nid] = node.position

    neighbours: Dict[str, List[Tuple[int, str]]] = defaultdict(list)
    for (source, target), weight in state.links.items():
        neighbours[source].append((weight, target))
        neighbours[target].append((weight, source))

    num_communities = max(len(communities.communities), 1)
    for nid in sorted(movable):
        if nid in positions:
            continue
        if state.degree(nid) == 0:
            jitter = settings.layout_isolated_jitter
            positions[nid] = (
                rng.uniform(-jitter, jitter),
                rng.uniform(-jitter, jitter),
                rng.uniform(-jitter, jitter),
            )
            continue

        placed = False
        for _, other in sorted(neighbours[nid], key=lambda item: (-item[0], item[1])):
            if other in positions:
                ox, oy, oz = positions[other]
                positions[nid] = (
                    ox + rng.uniform(-2.0, 2.0),
                    oy + rng.uniform(-2.0, 2.0),
                    oz + rng.uniform(-2.0, 2.0),
                )
                placed = True
                break
        if not placed:
            community = communities.membership.get(nid, 1)
            angle = community * 2.0 * math.pi / num_communities
            radius = 50 + rng.uniform(0, 30)
            positions[nid] = (
                radius * math.cos(angle) + rng.uniform(-5, 5),
                radius * math.sin(angle) + rng.uniform(-5, 5),
                rng.uniform(-10, 10),
            )
    return positions


def force_directed_layout(
    positions: Dict[str, Vec3],
    links: Dict[Tuple[str, str], int],
    movable: Set[str],
    settings: Settings,
) -> Tuple[Dict[str, Vec3], int]:
    """
    Relax `movable` nodes against every linked node; others stay put.

    Returns (positions, iterations run).
    """
    positions = dict(positions)
    linked: Set[str] = set()
    for source, target in links:
        linked.add(source)
        linked.add(target)
    active = sorted(nid for nid in movable if nid in linked and nid in positions)
    if not active:
        return positions, 0

    active_set = set(active)
    relevant_links = [
        (source, target, weight) for (source, target), weight in links.items()
        if (source in active_set or target in active_set)
        and source in positions and target in positions and source != target
    ]

    temperature = settings.layout_initial_temperature
    iterations = 0
    for _ in range(settings.layout_iterations):
        iterations += 1
        tree = Octree({nid: positions[nid] for nid in linked if nid in positions})

        forces = {
            nid: list(tree.repulsion(nid, positions[nid], settings.layout_repulsion, settings.layout_theta))
            for nid in active
        }

        for source, target, weight in relevant_links:
            x1, y1, z1 = positions[source]
            x2, y2, z2 = positions[target]
            dx, dy, dz = x2 - x1, y2 - y1, z2 - z1
            dist = math.sqrt(dx * dx + dy * dy + dz * dz) + DISTANCE_SOFTENING
            force = settings.layout_attraction * dist * weight
            fx, fy, fz = force * dx / dist, force * dy / dist, force * dz / dist
            if source in forces:
                f = forces[source]
                f[0] += fx
                f[1] += fy
                f[2] += fz
            if target in forces:
                f = forces[target]
                f[0] -= fx
                f[1] -= fy
                f[2] -= fz

        max_step = 0.0
        for nid in active:
            fx, fy, fz = forces[nid]
            magnitude = math.sqrt(fx * fx + fy * fy + fz * fz) + DISTANCE_SOFTENING
            step = min(magnitude, temperature)
            x, y, z = positions[nid]
            positions[nid] = (
                x + fx / magnitude * step,
                y + fy / magnitude * step,
                z + fz / magnitude * step,
            )
            max_step = max(max_step, step)

        temperature *= settings.layout_cooling
        if max_step < settings.layout_epsilon:
            break

    return positions, iterations


def clamp_position(pos: Vec3, limit: float) -> Optional[Vec3]:
    """Clamp into [-limit, limit]; None when any coordinate is not finite."""
    if not all(math.isfinite(c) for c in pos):
        return None
    return tuple(max(-limit, min(limit, c)) for c in pos)


# =============================================================================
# Centroids and bundles
# =============================================================================

def compute_centroids(membership: Dict[str, int], state: GraphState) -> Dict[int, Vec3]:
    """Mean position of each community's positioned members."""
    sums: Dict[int, List[float]] = defaultdict(lambda: [0.0, 0.0, 0.0, 0])
    for nid, cid in membership.items():
        node = state.nodes.get(nid)
        if node is None or node.position is None:
            continue
        acc = sums[cid]
        acc[0] += node.pos_x
        acc[1] += node.pos_y
        acc[2] += node.pos_z
        acc[3] += 1
    return {
        cid: (acc[0] / acc[3], acc[1] / acc[3], acc[2] / acc[3])
        for cid, acc in sums.items() if acc[3]
    }


def bundle_control_point(
    start: Vec3,
    end: Vec3,
    weight: int,
    max_weight: int,
    curvature: float,
) -> Vec3:
    """Midpoint pushed sideways (XY perpendicular), further for heavier bundles."""
    mid = tuple((a + b) / 2 for a, b in zip(start, end))
    dx, dy, dz = end[0] - start[0], end[1] - start[1], end[2] - start[2]
    distance = math.sqrt(dx * dx + dy * dy + dz * dz)
    perp_len = math.sqrt(dx * dx + dy * dy)
    if perp_len == 0 or distance == 0:
        return mid
    share = weight / max_weight if max_weight > 0 else 1.0
    offset = distance * curvature * (0.5 + 0.5 * share)
    return (
        mid[0] + (-dy / perp_len) * offset,
        mid[1] + (dx / perp_len) * offset,
        mid[2],
    )


def build_bundles(
    communities: CommunityResult,
    centroids: Dict[int, Vec3],
    curvature: float,
) -> List[EdgeBundle]:
    if not communities.community_links:
        return []
    max_weight = max(communities.community_links.values())
    bundles = []
    for (source, target), weight in sorted(communities.community_links.items()):
        if source not in centroids or target not in centroids:
            continue
        strength = communities.link_strength.get((source, target))
        bundles.append(EdgeBundle(
            source_community_id=source,
            target_community_id=target,
            weight=weight,
            avg_strength=strength / weight if strength is not None and weight else None,
            control=bundle_control_point(centroids[source], centroids[target], weight, max_weight, curvature),
        ))
    return bundles


# =============================================================================
# Entry point
# =============================================================================

def assign_layout(
    state: GraphState,
    communities: CommunityResult,
    settings: Settings = None,
    full_rebuild: bool = False,
    moved_candidates: Optional[Set[str]] = None,
) -> LayoutResult:
    """
    Position nodes in place on `state` and derive centroids and bundles.

    Full rebuilds lay out every node from a seeded rng, so identical input
    gives identical coordinates. Incremental runs only move new and
    reweighted nodes (plus any node that lost its position).
    """
    settings = settings or default_settings
    rng = random.Random(settings.layout_seed)

    if full_rebuild:
        movable = set(state.nodes)
    else:
        movable = {nid for nid in (moved_candidates or set()) if nid in state.nodes}
        movable.update(nid for nid, node in state.nodes.items() if node.position is None)

    result = LayoutResult()
    if movable:
        seeds = seed_positions(state, communities, movable, rng, reset=full_rebuild, settings=settings)
        positions, iterations = force_directed_layout(seeds, state.links, movable, settings)
        result.iterations = iterations

        for nid in sorted(movable):
            pos = clamp_position(positions[nid], settings.layout_max_coordinate)
            if pos is None:
                logger.warning(f"Layout produced a non-finite position for {nid}, reverting")
                result.diverged = True
                pos = clamp_position(seeds[nid], settings.layout_max_coordinate) or (0.0, 0.0, 0.0)
            node = state.nodes[nid]
            if node.position != pos:
                node.set_position(pos)
                result.moved.add(nid)

    result.centroids = compute_centroids(communities.membership, state)
    result.level_centroids = [compute_centroids(level, state) for level in communities.hierarchy]
    result.bundles = build_bundles(communities, result.centroids, settings.bundle_curvature)

    logger.info(
        f"Layout: moved {len(result.moved)} of {len(state.nodes)} nodes in "
        f"{result.iterations} iterations, {len(result.bundles)} bundles"
    )
    return result
