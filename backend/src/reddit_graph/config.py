"""Configuration management."""
from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application settings."""

    # Database
    database_url: str = Field(
        default="sqlite:///./reddit_graph.db",
        description="SQLAlchemy database URL"
    )

    # Scheduling (admin switches in service_settings override these per run)
    precalc_enabled: bool = Field(default=True)
    precalc_interval_seconds: int = Field(default=3600)
    min_subreddits_with_posts: int = Field(
        default=2,
        description="Defer the first build until this many subreddits have posts"
    )
    lease_ttl_seconds: int = Field(default=1800)

    # Change tracking
    full_rebuild_change_ratio: float = Field(
        default=0.2,
        description="Share of changed source rows above which a run becomes a full rebuild"
    )

    # Materialization
    detailed_graph: bool = Field(default=True, description="Include post and comment nodes")
    min_subreddit_overlap: int = Field(default=1)
    max_author_content_links: int = Field(
        default=0,
        description="Cross-subreddit links from each post or comment to the same author's later content"
    )
    worker_concurrency: int = Field(default=4)
    write_batch_size: int = Field(default=1000)

    # Community detection
    community_max_merges: int = Field(default=1_000_000)
    community_hierarchy_levels: int = Field(default=4)
    community_resolution_decay: float = Field(default=0.5)

    # Layout
    layout_iterations: int = Field(default=100)
    layout_cooling: float = Field(default=0.95)
    layout_initial_temperature: float = Field(default=10.0)
    layout_repulsion: float = Field(default=1000.0)
    layout_attraction: float = Field(default=0.01)
    layout_theta: float = Field(default=0.8, description="Barnes-Hut opening angle, 0 = exact")
    layout_epsilon: float = Field(default=0.01)
    layout_max_coordinate: float = Field(default=1e6)
    layout_seed: int = Field(default=42)
    layout_isolated_jitter: float = Field(default=5.0)
    bundle_curvature: float = Field(default=0.2)

    # Versioning
    version_retention: int = Field(default=10)

    # API / logging
    api_cors_origins: list[str] = Field(
        default=["http://localhost:5173", "http://localhost:3000", "http://127.0.0.1:5173"]
    )
    log_level: str = Field(default="INFO")

    class Config:
        env_prefix = "REDDIT_GRAPH_"
        env_file = ".env"


def get_settings() -> Settings:
    """Get settings from the environment (and .env)."""
    return Settings()


settings = get_settings()
