"""CLI for the Reddit graph precalculation engine."""
import argparse
import logging
import signal
import sys
import threading

from . import queries
from .admin import KNOWN_KEYS, get_setting, set_setting
from .config import settings
from .database import init_db, SessionLocal
from .engine import PrecalcJob
from .sample_data import seed_sample_graph


def cmd_init(args):
    """Initialize the database."""
    print("Initializing database...")
    init_db()
    print("Database initialized successfully")


def cmd_seed(args):
    """Seed deterministic sample source data."""
    init_db()
    db = SessionLocal()

    try:
        counts = seed_sample_graph(
            db,
            subreddits=args.subreddits,
            users=args.users,
            posts=args.posts,
            comments=args.comments,
            seed=args.seed,
        )
        print("Sample data seeded:")
        for table, count in counts.items():
            print(f"  {table}: {count}")
    finally:
        db.close()


def cmd_run(args):
    """Run one precalculation."""
    init_db()
    result = PrecalcJob().run_once(force_full=args.full)

    print(f"Run {result.status}")
    if result.reason:
        print(f"  Reason: {result.reason}")
    if result.status == "completed":
        mode = "full rebuild" if result.full_rebuild else "incremental"
        print(f"  Version: {result.version_id} ({mode})")
        print(f"  Nodes: {result.node_count}")
        print(f"  Links: {result.link_count}")
        print(f"  Diffs: {result.diff_count}")
        print(f"  Duration: {result.duration_ms}ms")
    return 0 if result.status != "cancelled" else 1


def cmd_schedule(args):
    """Run precalculation periodically until interrupted."""
    init_db()
    stop_event = threading.Event()

    def _stop(signum, frame):
        print("\nStopping after the current phase...")
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    PrecalcJob(stop_event=stop_event).run_forever()


def cmd_serve(args):
    """Serve the read API."""
    import uvicorn

    uvicorn.run("reddit_graph.api:app", host=args.host, port=args.port, reload=args.reload)


def cmd_versions(args):
    """List graph versions."""
    init_db()
    db = SessionLocal()

    try:
        versions = queries.list_versions(db, args.limit)
        current = queries.current_version_id(db)

        if not versions:
            print("No versions found")
            return

        print(f"Recent versions (limit {args.limit}):")
        print("-" * 70)
        for version in versions:
            marker = " (current)" if version["id"] == current else ""
            mode = "full" if version["is_full_rebuild"] else "incremental"
            print(f"  #{version['id']}: {version['status']} {mode}{marker}")
            print(f"    Created: {version['created_at']}")
            print(f"    Nodes/links: {version['node_count']}/{version['link_count']}")
            if version["precalc_duration_ms"] is not None:
                print(f"    Duration: {version['precalc_duration_ms']}ms")
            print()
    finally:
        db.close()


def cmd_stats(args):
    """Show database statistics."""
    init_db()
    db = SessionLocal()

    try:
        stats = queries.get_stats(db)

        print("Reddit Graph Statistics")
        print("=" * 40)
        for table, count in stats["source"].items():
            print(f"{table.capitalize()}: {count}")
        print(f"\nGraph nodes: {stats['total_nodes']}")
        for node_type, count in sorted(stats["nodes_by_type"].items()):
            print(f"  {node_type}: {count}")
        print(f"Graph links: {stats['total_links']}")
        print(f"Communities: {stats['communities']}")

        if stats["current_version_id"] is not None:
            print(f"\nCurrent version: {stats['current_version_id']}")
            print(f"  Last run: {stats['last_precalc_at']}")
            print(f"  Last full rebuild: {stats['last_full_precalc_at']}")
    finally:
        db.close()


def cmd_settings(args):
    """Read or change an admin switch."""
    init_db()
    db = SessionLocal()

    try:
        if args.action == "set":
            if args.value is None:
                print("A value is required for 'set'")
                return 1
            set_setting(db, args.key, args.value)
            print(f"{args.key} = {args.value}")
        else:
            value = get_setting(db, args.key)
            print(f"{args.key} = {value if value is not None else '(unset)'}")
    finally:
        db.close()
    return 0


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Reddit Graph - incremental graph precalculation"
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init
    init_parser = subparsers.add_parser("init", help="Initialize database")
    init_parser.set_defaults(func=cmd_init)

    # seed
    seed_parser = subparsers.add_parser("seed", help="Seed sample source data")
    seed_parser.add_argument("--subreddits", type=int, default=3, help="Number of subreddits")
    seed_parser.add_argument("--users", type=int, default=5, help="Number of users")
    seed_parser.add_argument("--posts", type=int, default=20, help="Number of posts")
    seed_parser.add_argument("--comments", type=int, default=50, help="Number of comments")
    seed_parser.add_argument("--seed", type=int, default=42, help="Random seed")
    seed_parser.set_defaults(func=cmd_seed)

    # run
    run_parser = subparsers.add_parser("run", help="Run one precalculation")
    run_parser.add_argument("--full", action="store_true", help="Force a full rebuild")
    run_parser.set_defaults(func=cmd_run)

    # schedule
    schedule_parser = subparsers.add_parser("schedule", help="Run precalculation periodically")
    schedule_parser.set_defaults(func=cmd_schedule)

    # serve
    serve_parser = subparsers.add_parser("serve", help="Serve the read API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port")
    serve_parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    serve_parser.set_defaults(func=cmd_serve)

    # versions
    versions_parser = subparsers.add_parser("versions", help="List graph versions")
    versions_parser.add_argument("--limit", type=int, default=10, help="Number of versions")
    versions_parser.set_defaults(func=cmd_versions)

    # stats
    stats_parser = subparsers.add_parser("stats", help="Show statistics")
    stats_parser.set_defaults(func=cmd_stats)

    # settings
    settings_parser = subparsers.add_parser("settings", help="Read or change admin switches")
    settings_parser.add_argument("action", choices=["get", "set"])
    settings_parser.add_argument("key", choices=KNOWN_KEYS)
    settings_parser.add_argument("value", nargs="?", help="New value (for set)")
    settings_parser.set_defaults(func=cmd_settings)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args) or 0


if __name__ == "__main__":
    sys.exit(main())
