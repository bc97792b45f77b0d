"""FastAPI application for the Reddit graph."""
from datetime import datetime
from typing import Optional
from fastapi import FastAPI, Depends, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy.orm import Session

from . import queries
from .config import settings
from .database import get_db, init_db


app = FastAPI(
    title="Reddit Graph API",
    description="Read-only access to the precalculated Reddit graph",
    version="0.1.0"
)

# CORS middleware for the visualization client
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.api_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Startup
# =============================================================================

@app.on_event("startup")
async def startup():
    """Initialize database on startup."""
    init_db()


# =============================================================================
# Schemas
# =============================================================================

class VersionSummary(BaseModel):
    """Summary of a graph version."""
    id: int
    status: str
    created_at: datetime
    completed_at: Optional[datetime]
    node_count: int
    link_count: int
    precalc_duration_ms: Optional[int]
    is_full_rebuild: bool


class CommunitySummary(BaseModel):
    """Summary of a community."""
    id: int
    label: Optional[str]
    size: int
    modularity: float
    x: Optional[float]
    y: Optional[float]
    z: Optional[float]


def _bad_request(exc: queries.QueryError) -> HTTPException:
    return HTTPException(status_code=400, detail=str(exc))


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/")
async def root():
    """Health check."""
    return {
        "service": "reddit-graph",
        "status": "healthy",
        "version": "0.1.0"
    }


@app.get("/stats")
async def get_stats(db: Session = Depends(get_db)):
    """Get overall statistics."""
    return queries.get_stats(db)


# =============================================================================
# Graph Endpoints
# =============================================================================

@app.get("/graph")
async def get_graph(
    max_nodes: int = queries.DEFAULT_MAX_NODES,
    max_links: Optional[int] = None,
    types: Optional[str] = None,
    with_positions: bool = True,
    db: Session = Depends(get_db)
):
    """
    Get the heaviest nodes and the links among them.
    Nodes are capped first; links are then filtered to surviving nodes.
    """
    try:
        return queries.get_graph_snapshot(db, max_nodes, max_links, types, with_positions)
    except queries.QueryError as e:
        raise _bad_request(e)


@app.get("/graph/page")
async def get_graph_page(
    cursor: Optional[str] = None,
    limit: int = queries.DEFAULT_PAGE_SIZE,
    types: Optional[str] = None,
    with_positions: bool = True,
    db: Session = Depends(get_db)
):
    """Get one page of nodes; pass next_cursor back to continue."""
    try:
        return queries.get_graph_page(db, cursor, limit, types, with_positions)
    except queries.QueryError as e:
        raise _bad_request(e)


@app.get("/graph/region")
async def get_region(
    x_min: float,
    x_max: float,
    y_min: float,
    y_max: float,
    z_min: Optional[float] = None,
    z_max: Optional[float] = None,
    max_nodes: int = queries.DEFAULT_MAX_NODES,
    max_links: Optional[int] = None,
    db: Session = Depends(get_db)
):
    """Get positioned nodes inside a bounding box."""
    try:
        return queries.get_region(
            db, x_min, x_max, y_min, y_max, z_min, z_max, max_nodes, max_links
        )
    except queries.QueryError as e:
        raise _bad_request(e)


@app.get("/search")
async def search(
    q: str = Query(..., description="Substring of a node name or id"),
    limit: int = queries.DEFAULT_SEARCH_LIMIT,
    db: Session = Depends(get_db)
):
    """Search nodes by name or id."""
    try:
        return queries.search_nodes(db, q, limit)
    except queries.QueryError as e:
        raise _bad_request(e)


@app.get("/nodes/{node_id}")
async def get_node(
    node_id: str,
    neighbor_limit: int = queries.DEFAULT_NEIGHBOR_LIMIT,
    db: Session = Depends(get_db)
):
    """Get a node with its degree, community and strongest neighbours."""
    try:
        details = queries.get_node_details(db, node_id, neighbor_limit)
    except queries.QueryError as e:
        raise _bad_request(e)
    if not details:
        raise HTTPException(status_code=404, detail="Node not found")
    return details


# =============================================================================
# Community Endpoints
# =============================================================================

@app.get("/communities", response_model=list[CommunitySummary])
async def list_communities(
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db)
):
    """List communities, largest first."""
    try:
        return queries.list_communities(db, limit, offset)
    except queries.QueryError as e:
        raise _bad_request(e)


@app.get("/communities/links")
async def list_community_links(
    limit: int = 1000,
    db: Session = Depends(get_db)
):
    """List inter-community link weights."""
    try:
        return queries.list_community_links(db, limit)
    except queries.QueryError as e:
        raise _bad_request(e)


@app.get("/communities/{community_id}")
async def get_community(
    community_id: int,
    member_limit: int = 100,
    db: Session = Depends(get_db)
):
    """Get a community with its heaviest members."""
    try:
        community = queries.get_community(db, community_id, member_limit)
    except queries.QueryError as e:
        raise _bad_request(e)
    if not community:
        raise HTTPException(status_code=404, detail="Community not found")
    return community


@app.get("/hierarchy/{level}")
async def get_hierarchy_level(
    level: int,
    parent: Optional[int] = None,
    db: Session = Depends(get_db)
):
    """Get the communities of one hierarchy level."""
    try:
        return queries.get_hierarchy_level(db, level, parent)
    except queries.QueryError as e:
        raise _bad_request(e)


@app.get("/bundles")
async def list_bundles(
    min_weight: int = 1,
    db: Session = Depends(get_db)
):
    """Get edge bundles between communities."""
    try:
        return queries.list_edge_bundles(db, min_weight)
    except queries.QueryError as e:
        raise _bad_request(e)


# =============================================================================
# Version Endpoints
# =============================================================================

@app.get("/versions", response_model=list[VersionSummary])
async def list_versions(
    limit: int = 10,
    db: Session = Depends(get_db)
):
    """List recent graph versions."""
    try:
        return queries.list_versions(db, limit)
    except queries.QueryError as e:
        raise _bad_request(e)


@app.get("/versions/current", response_model=VersionSummary)
async def get_current_version(db: Session = Depends(get_db)):
    """Get the version readers currently see."""
    version = queries.get_current_version(db)
    if not version:
        raise HTTPException(status_code=404, detail="No completed version yet")
    return version


@app.get("/versions/diff")
async def get_diffs(
    since: int = Query(..., description="Version the client currently holds (0 for none)"),
    db: Session = Depends(get_db)
):
    """
    Get the diffs a client must replay to reach the current version.
    resync_required means the client should reload a full snapshot instead.
    """
    try:
        return queries.get_diffs_since(db, since)
    except queries.QueryError as e:
        raise _bad_request(e)
