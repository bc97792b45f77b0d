"""Precalculation engine - runs change tracking, materialization, communities,
layout and version publishing as one leased, cancellable run.

Phases work on in-memory state; the only write of a run is the publish step,
so stopping between phases (or crashing anywhere) leaves the previous version
untouched.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import tenacity
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from .admin import read_admin_switches
from .change_tracker import ChangeTracker
from .communities import detect_communities
from .config import Settings, settings as default_settings
from .database import SessionLocal
from .layout import assign_layout
from .lease import RunLease
from .materializer import GraphState, Materializer, SourceIndex, load_graph_state
from .models import Post, PrecalcState
from .versioning import VersionRecorder


logger = logging.getLogger(__name__)


class PrecalcError(Exception):
    """Precalculation engine error."""
    pass


class RunCancelled(PrecalcError):
    """Stop signal observed at a phase boundary."""
    pass


class LeaseLost(PrecalcError):
    """Another run took over the lease while this one was in flight."""
    pass


@dataclass
class RunResult:
    """Outcome of one trigger."""
    status: str  # completed, skipped, disabled, deferred, cancelled
    version_id: Optional[int] = None
    full_rebuild: bool = False
    reason: str = ""
    node_count: int = 0
    link_count: int = 0
    diff_count: int = 0
    duration_ms: int = 0


def _log_retry(retry_state: tenacity.RetryCallState) -> None:
    """Log retry attempts for debugging."""
    logger.warning(
        f"Retry attempt {retry_state.attempt_number} after "
        f"{retry_state.outcome.exception() if retry_state.outcome else 'unknown error'}"
    )


# Transient storage failures retry the whole run with exponential backoff
storage_retry = tenacity.retry(
    stop=tenacity.stop_after_attempt(3),
    wait=tenacity.wait_exponential(multiplier=1, min=2, max=30),
    retry=tenacity.retry_if_exception_type(OperationalError),
    before_sleep=_log_retry,
    reraise=True,
)


class PrecalcEngine:
    """
    One precalculation run against a session:
    1. Read admin switches, check readiness, take the lease
    2. Detect changes
    3. Materialize nodes/links in memory
    4. Detect communities
    5. Assign layout
    6. Publish version + diffs in one transaction
    """

    def __init__(
        self,
        db: Session,
        settings: Settings = None,
        stop_event: Optional[threading.Event] = None,
    ):
        self.db = db
        self.settings = settings or default_settings
        self.stop_event = stop_event or threading.Event()
        self.lease: Optional[RunLease] = None

    def run(self, force_full: bool = False) -> RunResult:
        switches = read_admin_switches(self.db, self.settings)
        if not switches.enabled:
            logger.info("Precalculation disabled by admin switch")
            return RunResult(status="disabled", reason="precalc_enabled is off")

        ready, reason = self._source_ready()
        if not ready:
            logger.info(f"Deferring first graph build: {reason}")
            return RunResult(status="deferred", reason=reason)

        self.lease = RunLease(self.db, self.settings.lease_ttl_seconds)
        if not self.lease.acquire():
            return RunResult(status="skipped", reason="another run holds the lease")

        try:
            return self._run_leased(
                force_full=force_full or switches.full_rebuild,
                mode_corrupt=switches.mode_corrupt,
            )
        finally:
            self.lease.release()

    def _source_ready(self):
        """The first build waits until enough subreddits have posts."""
        state = self.db.get(PrecalcState, 1)
        if state is not None and state.current_version_id is not None:
            return True, ""
        required = self.settings.min_subreddits_with_posts
        if required <= 0:
            return True, ""
        have = self.db.scalar(select(func.count(func.distinct(Post.subreddit_id)))) or 0
        if have < required:
            return False, f"{have} of {required} subreddits have posts"
        return True, ""

    def checkpoint(self, phase: str) -> None:
        """Phase boundary: honour the stop signal and keep the lease alive."""
        if self.stop_event.is_set():
            raise RunCancelled(f"stopped after {phase}")
        if self.lease is not None and not self.lease.renew():
            raise LeaseLost(f"lease lost after {phase}")
        logger.info(f"Phase complete: {phase}")

    def _run_leased(self, force_full: bool, mode_corrupt: bool) -> RunResult:
        started = time.monotonic()
        changes = ChangeTracker(self.db, self.settings).detect(
            force_full=force_full, mode_corrupt=mode_corrupt
        )
        recorder = VersionRecorder(self.db, self.settings)
        version = recorder.start_version(changes.full_rebuild)
        version_id = version.id

        try:
            self.checkpoint("change tracking")

            previous = load_graph_state(self.db)
            source = SourceIndex.load(self.db)
            current = GraphState() if changes.full_rebuild else previous.copy()
            stats = Materializer(source, self.settings).apply(current, changes)
            self.checkpoint("materialization")

            communities = detect_communities(current, self.settings)
            self.checkpoint("community detection")

            layout = assign_layout(
                current, communities, self.settings,
                full_rebuild=changes.full_rebuild,
                moved_candidates=stats.moved_candidates,
            )
            self.checkpoint("layout")

            duration_ms = int((time.monotonic() - started) * 1000)
            meta = {
                "reason": changes.reason,
                "communities": len(communities.communities),
                "modularity": communities.modularity,
                "communities_converged": communities.converged,
                "hierarchy_levels": len(communities.hierarchy),
                "hierarchy_conflicts": communities.hierarchy_conflicts,
                "layout_iterations": layout.iterations,
                "layout_diverged": layout.diverged,
                "skipped_links": len(stats.skipped_links),
            }
            diffs = recorder.publish(
                version_id, previous, current, communities, layout,
                changes, duration_ms, meta,
            )
        except RunCancelled as exc:
            recorder.fail_version(version_id, f"cancelled: {exc}")
            logger.info(f"Run for version {version_id} cancelled ({exc})")
            return RunResult(
                status="cancelled", version_id=version_id,
                full_rebuild=changes.full_rebuild, reason=str(exc),
            )
        except Exception as exc:
            recorder.fail_version(version_id, f"{type(exc).__name__}: {exc}")
            raise

        return RunResult(
            status="completed",
            version_id=version_id,
            full_rebuild=changes.full_rebuild,
            reason=changes.reason,
            node_count=len(current.nodes),
            link_count=len(current.links),
            diff_count=len(diffs),
            duration_ms=duration_ms,
        )


class PrecalcJob:
    """Periodic driver: one run per interval, each in a fresh session."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        settings: Settings = None,
        stop_event: Optional[threading.Event] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or default_settings
        self.stop_event = stop_event or threading.Event()

    @storage_retry
    def run_once(self, force_full: bool = False) -> RunResult:
        db = self.session_factory()
        try:
            return PrecalcEngine(db, self.settings, self.stop_event).run(force_full=force_full)
        finally:
            db.close()

    def interval_seconds(self) -> int:
        db = self.session_factory()
        try:
            return read_admin_switches(db, self.settings).interval_seconds
        finally:
            db.close()

    def run_forever(self) -> None:
        """Run until the stop event is set. A failing run never stops the loop."""
        logger.info("Precalculation job started")
        while not self.stop_event.is_set():
            try:
                result = self.run_once()
                logger.info(f"Run finished: {result.status} (version {result.version_id})")
            except Exception:
                logger.exception("Precalculation run failed")

            try:
                interval = self.interval_seconds()
            except OperationalError as exc:
                logger.warning(f"Could not read interval, using default: {exc}")
                interval = self.settings.precalc_interval_seconds
            self.stop_event.wait(interval)
        logger.info("Precalculation job stopped")
