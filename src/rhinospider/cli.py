from __future__ import annotations

import argparse
import json
import logging
import os

from .config import ConfigError, load_config, load_topics_file
from .storage import (
    count_pending_submissions,
    get_topic,
    init_db,
    list_pending_submissions,
    list_topics,
    upsert_topic,
)
from .utils import configure_logging, log_event
from .worker import build_orchestrator, build_session


def _setup_logging() -> logging.Logger:
    return configure_logging("rhinospider")


def _cmd_run(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        config = load_config(args.config)
        orchestrator = build_orchestrator(
            config,
            topics_file=args.topics_file,
            concurrency=args.concurrency,
        )
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    if args.once:
        results = orchestrator.run_iteration()
        log_event(logger, logging.INFO, "run_complete", topics=len(results), **orchestrator.status()["counters"])
        return 0
    try:
        return orchestrator.run_loop(args.sleep)
    except KeyboardInterrupt:
        orchestrator.stop()
        return 0


def _cmd_discover(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    conn = init_db(config.paths.state_db)
    topic = get_topic(conn, args.topic_id)
    if topic is None:
        log_event(
            logger,
            logging.ERROR,
            "topic_not_found",
            topic_id=args.topic_id,
            hint="Import topics with `rhinospider topics import topics.yml`",
        )
        return 1
    session = build_session(
        conn,
        config,
        principal_id=os.environ.get("RS_PRINCIPAL_ID", "anonymous"),
        password=os.environ.get("RS_PROXY_PASSWORD"),
        use_search_proxy=not args.no_search_proxy,
    )
    try:
        records = session.discoverer.discover(topic, args.count, include_cached=False)
    finally:
        session.close()
    for record in records:
        log_event(logger, logging.INFO, "url", url=record.url, source=record.source, title=record.title)
    log_event(logger, logging.INFO, "discover_complete", topic_id=topic.id, count=len(records))
    return 0


def _cmd_topics_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    topics_path = args.path or os.environ.get("RS_TOPICS_FILE")
    if not topics_path:
        log_event(logger, logging.ERROR, "topics_import_error", error="no topics file given")
        return 1
    log_event(logger, logging.INFO, "topics_import_path", path=topics_path)
    try:
        topics = load_topics_file(topics_path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "topics_import_error", error=str(exc))
        return 1
    if not topics:
        log_event(logger, logging.ERROR, "topics_import_error", error="no topics found")
        return 1

    conn = init_db(config.paths.state_db)
    for topic in topics:
        upsert_topic(conn, topic)
    log_event(logger, logging.INFO, "topics_imported", count=len(topics))
    return 0


def _cmd_topics_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    conn = init_db(config.paths.state_db)
    topics = list_topics(conn)
    if not topics:
        log_event(
            logger,
            logging.WARNING,
            "no_topics",
            hint="Import topics with `rhinospider topics import topics.yml`",
        )
        return 1
    for topic in topics:
        log_event(
            logger,
            logging.INFO,
            "topic",
            topic_id=topic.id,
            name=topic.name,
            status=topic.status,
            priority=topic.priority,
            samples=len(topic.sample_article_urls),
        )
    log_event(logger, logging.INFO, "topics_listed", count=len(topics))
    return 0


def _cmd_pending_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    conn = init_db(config.paths.state_db)
    status = None if args.status == "all" else args.status
    rows = list_pending_submissions(conn, status=status, limit=args.limit)
    for row in rows:
        logger.info(
            json.dumps(
                {
                    "id": row.id,
                    "url": row.record.url,
                    "topic_id": row.record.topic_id,
                    "status": row.status,
                    "retry_count": row.retry_count,
                    "next_retry_at": row.next_retry_at,
                    "last_error": row.last_error,
                },
                sort_keys=True,
            )
        )
    log_event(
        logger,
        logging.INFO,
        "pending_listed",
        shown=len(rows),
        total=count_pending_submissions(conn, status),
    )
    return 0


def _cmd_pending_reconcile(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    conn = init_db(config.paths.state_db)
    session = build_session(
        conn,
        config,
        principal_id=os.environ.get("RS_PRINCIPAL_ID", "anonymous"),
        password=os.environ.get("RS_PROXY_PASSWORD"),
        use_search_proxy=False,
    )
    try:
        summary = session.pipeline.reconcile_pending(args.limit)
    finally:
        session.close()
    return 0 if summary["failed"] == 0 else 2


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    init_db(config.paths.state_db)
    log_event(logger, logging.INFO, "db_migrated", path=config.paths.state_db)
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    log_event(logger, logging.INFO, "proxy_starting", host=args.host, port=args.port)
    uvicorn.run("rhinospider.proxy_app:app", host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rhinospider", description="RhinoSpider CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to RS_CONFIG_PATH)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Discover, scrape and submit for active topics")
    run_parser.add_argument("--once", action="store_true", help="Run a single iteration and exit")
    run_parser.add_argument("--sleep", type=int, default=None, help="Sleep seconds between iterations")
    run_parser.add_argument("--topics-file", default=None, help="Use topics from a YAML file")
    run_parser.add_argument("--concurrency", type=int, default=None, help="Topics scraped in parallel")
    run_parser.set_defaults(func=_cmd_run)

    discover_parser = subparsers.add_parser("discover", help="Print discovered URLs for a topic")
    discover_parser.add_argument("topic_id", help="Topic id")
    discover_parser.add_argument("--count", type=int, default=5, help="Number of URLs")
    discover_parser.add_argument(
        "--no-search-proxy",
        action="store_true",
        help="Skip the remote search proxy",
    )
    discover_parser.set_defaults(func=_cmd_discover)

    topics_parser = subparsers.add_parser("topics", help="Manage topics")
    topics_subparsers = topics_parser.add_subparsers(dest="topics_command", required=True)

    topics_import = topics_subparsers.add_parser("import", help="Import topics from YAML")
    topics_import.add_argument("path", nargs="?", default=None, help="Path to topics.yml")
    topics_import.set_defaults(func=_cmd_topics_import)

    topics_list_parser = topics_subparsers.add_parser("list", help="List topics")
    topics_list_parser.set_defaults(func=_cmd_topics_list)

    pending_parser = subparsers.add_parser("pending", help="Locally queued submissions")
    pending_subparsers = pending_parser.add_subparsers(dest="pending_command", required=True)

    pending_list = pending_subparsers.add_parser("list", help="List queued submissions")
    pending_list.add_argument(
        "--status",
        choices=["pending", "rejected", "all"],
        default="pending",
        help="Filter by status",
    )
    pending_list.add_argument("--limit", type=int, default=20, help="Number of rows to show")
    pending_list.set_defaults(func=_cmd_pending_list)

    pending_reconcile = pending_subparsers.add_parser("reconcile", help="Resubmit due submissions")
    pending_reconcile.add_argument("--limit", type=int, default=None, help="Maximum rows to process")
    pending_reconcile.set_defaults(func=_cmd_pending_reconcile)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)

    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    serve_parser = subparsers.add_parser("serve", help="Run the proxy API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=3001)
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
