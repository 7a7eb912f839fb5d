import argparse
import json
import logging
import atexit
import time
from pathlib import Path

from .database import init_db, close_pool, purge_stale_profiles
from .config import DEFAULT_PRECOMPUTE_TOP_N, NOTIFICATION_WEBHOOK_URL
from .catalog import import_catalog_file
from .engine import RecommendationEngine, RebuildInProgressError
from .models import MediaRef, Recommendation

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)


def send_notification(message: str) -> None:
    """Send a notification to a configured webhook (Discord/Slack-style)."""
    if not NOTIFICATION_WEBHOOK_URL:
        return

    try:
        import httpx

        httpx.post(
            NOTIFICATION_WEBHOOK_URL,
            json={"content": message},
            timeout=10,
        )
    except Exception as exc:  # pragma: no cover - best-effort notifications
        logger.warning(f"Failed to send notification: {exc}")


def _parse_ref(value: str) -> MediaRef:
    """argparse type for TYPE:ID arguments."""
    try:
        return MediaRef.parse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def _make_engine() -> RecommendationEngine:
    init_db()
    return RecommendationEngine()


def _output_recommendations(recs: list[Recommendation], args: argparse.Namespace, heading: str) -> None:
    """Log recommendations in the requested format."""
    recs = recs or []
    if getattr(args, 'format', 'text') == 'json':
        logger.info(json.dumps([r.to_dict() for r in recs], indent=2))
        return

    if not recs:
        logger.info(f"\nNo recommendations for {heading}")
        return

    logger.info(f"\nTop {len(recs)} recommendations for {heading}:")
    for i, r in enumerate(recs, 1):
        creator = f" by {r.creator}" if r.creator else ""
        logger.info(f"{i}. [{r.media_type}] {r.title}{creator} - Score: {r.score:.2f}")
        if r.reason:
            logger.info(f"   Why: {r.reason}")


def _output_mapping(data: dict, args: argparse.Namespace, heading: str) -> None:
    if getattr(args, 'format', 'text') == 'json':
        logger.info(json.dumps(data, indent=2, default=str))
        return
    logger.info(f"\n{heading}:")
    for key, value in data.items():
        logger.info(f"  {key}: {value}")


def cmd_init(args: argparse.Namespace) -> None:
    """Create the database schema and drop profiles from an older schema version."""
    init_db()
    purged = purge_stale_profiles()
    logger.info(f"Database initialized ({purged} outdated profiles removed)")


def cmd_import_catalog(args: argparse.Namespace) -> None:
    init_db()
    path = Path(args.file)
    if not path.exists():
        logger.error(f"Catalog file not found: {path}")
        return
    count = import_catalog_file(path)
    logger.info(f"Imported {count} items")


def cmd_rebuild_vectors(args: argparse.Namespace) -> None:
    """Rebuild every item vector, optionally followed by the similar-items index."""
    engine = _make_engine()
    start = time.time()
    try:
        result = engine.rebuild_all_vectors(show_progress=True)
        message = f"Vector rebuild: {result.processed} processed, {result.errors} errors"
        if args.precompute:
            similar = engine.precompute_similar_items(args.top_n, show_progress=True)
            message += f"; similar items: {similar.processed} processed, {similar.errors} errors"
    except RebuildInProgressError as e:
        logger.error(str(e))
        return
    finally:
        engine.close()

    message += f" ({time.time() - start:.1f}s)"
    logger.info(message)
    send_notification(message)


def cmd_precompute_similar(args: argparse.Namespace) -> None:
    engine = _make_engine()
    start = time.time()
    try:
        result = engine.precompute_similar_items(args.top_n, show_progress=True)
    except RebuildInProgressError as e:
        logger.error(str(e))
        return
    finally:
        engine.close()

    message = (
        f"Similar items precompute: {result.processed} processed, {result.errors} errors "
        f"({time.time() - start:.1f}s)"
    )
    logger.info(message)
    send_notification(message)


def cmd_prune_cache(args: argparse.Namespace) -> None:
    engine = _make_engine()
    try:
        deleted = engine.prune_expired_cache()
    finally:
        engine.close()
    logger.info(f"Removed {deleted} expired cache entries")


def cmd_similar(args: argparse.Namespace) -> None:
    """Content-based recommendations for one item."""
    ref = MediaRef.parse(f"{args.media_type}:{args.media_id}")
    engine = _make_engine()
    try:
        recs = engine.get_content_based(ref, limit=args.limit, min_score=args.min_score)
    finally:
        engine.close()
    _output_recommendations(recs, args, str(ref))


def cmd_recommend(args: argparse.Namespace) -> None:
    """Personalized (collaborative) recommendations for a user."""
    engine = _make_engine()
    try:
        recs = engine.get_personalized(
            args.user_id,
            limit=args.limit,
            min_score=args.min_score,
            exclude_viewed=not args.include_viewed,
        )
    finally:
        engine.close()
    _output_recommendations(recs, args, args.user_id)


def cmd_hybrid(args: argparse.Namespace) -> None:
    engine = _make_engine()
    try:
        recs = engine.get_hybrid(
            args.user_id,
            anchor=args.anchor,
            limit=args.limit,
            content_weight=args.content_weight,
            collaborative_weight=args.collaborative_weight,
            diversity_factor=args.diversity,
            exploration_rate=args.exploration,
            min_score=args.min_score,
            rerank=args.rerank,
        )
    finally:
        engine.close()
    heading = f"{args.user_id} (hybrid" + (f", anchor {args.anchor})" if args.anchor else ")")
    _output_recommendations(recs, args, heading)


def cmd_track(args: argparse.Namespace) -> None:
    """Record an interaction event."""
    ref = MediaRef.parse(f"{args.media_type}:{args.media_id}")
    metadata = json.loads(args.metadata) if args.metadata else None
    engine = _make_engine()
    try:
        value = engine.track_interaction(
            args.user_id,
            ref,
            args.kind,
            duration_seconds=args.duration,
            progress_percentage=args.progress,
            metadata=metadata,
        )
    finally:
        engine.close()
    logger.info(f"Tracked {args.kind} for {args.user_id} on {ref} (value {value})")


def cmd_metrics(args: argparse.Namespace) -> None:
    engine = _make_engine()
    try:
        report = engine.get_metrics(days=args.days)
    finally:
        engine.close()

    if args.format == 'json':
        logger.info(json.dumps(report, indent=2, default=str))
        return

    logger.info(f"\nRecommendation metrics (last {report['period_days']} days):")
    if not report['metrics']:
        logger.info("  No recommendations shown in this period")
    for row in report['metrics']:
        logger.info(
            f"  {row['kind']}: shown {row['shown_count']}, clicked {row['clicked_count']}, "
            f"CTR {row['click_through_rate']:.2f}%, avg position {row['avg_position']:.2f}"
        )


def cmd_stats(args: argparse.Namespace) -> None:
    """Show database statistics."""
    engine = _make_engine()
    try:
        counts = engine.stats()
    finally:
        engine.close()
    _output_mapping(counts, args, "Database Statistics")


def main():
    parser = argparse.ArgumentParser(description="Media Recommendation Engine")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--format", choices=["text", "json"], default="text", help="Output format")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Create database tables")
    init_parser.set_defaults(func=cmd_init)

    import_parser = subparsers.add_parser("import-catalog", help="Load catalog records from a JSON file")
    import_parser.add_argument("file", help="JSON list of records, or {type: [records]}")
    import_parser.set_defaults(func=cmd_import_catalog)

    rebuild_parser = subparsers.add_parser("rebuild-vectors", help="Rebuild TF-IDF vectors for the whole catalog")
    rebuild_parser.add_argument("--precompute", action="store_true",
                                help="Recompute the similar-items index afterwards")
    rebuild_parser.add_argument("--top-n", type=int, default=DEFAULT_PRECOMPUTE_TOP_N,
                                help=f"Neighbours per item with --precompute (default: {DEFAULT_PRECOMPUTE_TOP_N})")
    rebuild_parser.set_defaults(func=cmd_rebuild_vectors)

    precompute_parser = subparsers.add_parser("precompute-similar", help="Recompute the similar-items index")
    precompute_parser.add_argument("--top-n", type=int, default=DEFAULT_PRECOMPUTE_TOP_N,
                                   help=f"Neighbours per item (default: {DEFAULT_PRECOMPUTE_TOP_N})")
    precompute_parser.set_defaults(func=cmd_precompute_similar)

    prune_parser = subparsers.add_parser("prune-cache", help="Delete expired recommendation cache entries")
    prune_parser.set_defaults(func=cmd_prune_cache)

    similar_parser = subparsers.add_parser("similar", help="Items similar to one item")
    similar_parser.add_argument("media_type", choices=["book", "audio", "video"])
    similar_parser.add_argument("media_id")
    similar_parser.add_argument("--limit", type=int, default=10)
    similar_parser.add_argument("--min-score", type=float, default=0.1)
    similar_parser.set_defaults(func=cmd_similar)

    recommend_parser = subparsers.add_parser("recommend", help="Personalized recommendations for a user")
    recommend_parser.add_argument("user_id")
    recommend_parser.add_argument("--limit", type=int, default=10)
    recommend_parser.add_argument("--min-score", type=float, default=0.1)
    recommend_parser.add_argument("--include-viewed", action="store_true",
                                  help="Allow items the user already interacted with")
    recommend_parser.set_defaults(func=cmd_recommend)

    hybrid_parser = subparsers.add_parser("hybrid", help="Hybrid recommendations for a user")
    hybrid_parser.add_argument("user_id")
    hybrid_parser.add_argument("--anchor", type=_parse_ref, metavar="TYPE:ID",
                               help="Item to find similar content for")
    hybrid_parser.add_argument("--limit", type=int, default=10)
    hybrid_parser.add_argument("--content-weight", type=float,
                               help="Content weight (default: adaptive)")
    hybrid_parser.add_argument("--collaborative-weight", type=float,
                               help="Collaborative weight (default: adaptive)")
    hybrid_parser.add_argument("--diversity", type=float, default=0.15)
    hybrid_parser.add_argument("--exploration", type=float, default=0.1)
    hybrid_parser.add_argument("--min-score", type=float, default=0.1)
    hybrid_parser.add_argument("--rerank", action="store_true",
                               help="Boost the user's favourite genres and languages")
    hybrid_parser.set_defaults(func=cmd_hybrid)

    track_parser = subparsers.add_parser("track", help="Record a user interaction")
    track_parser.add_argument("user_id")
    track_parser.add_argument("media_type", choices=["book", "audio", "video"])
    track_parser.add_argument("media_id")
    track_parser.add_argument("kind", choices=["view", "like", "share", "complete", "progress"])
    track_parser.add_argument("--duration", type=int, default=0, help="Engagement duration in seconds")
    track_parser.add_argument("--progress", type=int, default=0, help="Progress percentage")
    track_parser.add_argument("--metadata", help="JSON object stored with the interaction")
    track_parser.set_defaults(func=cmd_track)

    metrics_parser = subparsers.add_parser("metrics", help="Recommendation click-through metrics")
    metrics_parser.add_argument("--days", type=int, default=7)
    metrics_parser.set_defaults(func=cmd_metrics)

    stats_parser = subparsers.add_parser("stats", help="Show database statistics")
    stats_parser.set_defaults(func=cmd_stats)

    args = parser.parse_args()

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    args.func(args)


if __name__ == "__main__":
    main()
