"""Remove expired handshake records from the correlation store.

Resolved, failed, and abandoned handshakes are kept until their state TTL
elapses so late or replayed callbacks are still rejected deterministically.
Run this periodically (cron/systemd timer) for the SQLite backend; the
DynamoDB backend also relies on the table's native ``ttl`` attribute.

Example usages::

    # Purge using the configured backend.
    python -m scripts.purge_handshakes

    # Purge a specific SQLite database.
    python -m scripts.purge_handshakes --db-path /var/lib/shim-server/shim_server.db
"""

from __future__ import annotations

import argparse
import logging
import sys

from pydantic import ValidationError

from shim_server.clients import (
    CorrelationStore,
    DynamoDBCorrelationStore,
    SQLiteCorrelationStore,
)
from shim_server.core.config import AppSettings
from shim_server.core.logging import configure_logging

EXIT_OK = 0
EXIT_VALIDATION_ERROR = 2
EXIT_RUNTIME_ERROR = 5

logger = logging.getLogger("scripts.purge_handshakes")


def _build_store(settings: AppSettings, db_path: str | None) -> CorrelationStore:
    if db_path:
        return SQLiteCorrelationStore(db_path)
    if settings.storage.backend == "dynamodb":
        return DynamoDBCorrelationStore(settings.storage)
    return SQLiteCorrelationStore(settings.storage.sqlite_path)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Delete handshake records whose state TTL has elapsed."
    )
    parser.add_argument(
        "--db-path",
        default=None,
        help="SQLite database to purge instead of the configured backend.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override APP_LOG_LEVEL for this run.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        settings = AppSettings()  # type: ignore[call-arg]
    except ValidationError as exc:
        print(
            "Settings validation failed. Missing or invalid values detected:\n"
            f"{exc.json(indent=2)}",
            file=sys.stderr,
        )
        return EXIT_VALIDATION_ERROR

    configure_logging(args.log_level or settings.log_level)

    try:
        store = _build_store(settings, args.db_path)
        removed = store.purge_expired()
    except Exception as exc:  # pylint: disable=broad-except
        print(f"Unexpected error during purge: {exc}", file=sys.stderr)
        return EXIT_RUNTIME_ERROR

    logger.info("Purged %s expired handshake record(s)", removed)
    print(f"Removed {removed} expired handshake record(s).")
    return EXIT_OK


if __name__ == "__main__":  # pragma: no cover - script entry point
    sys.exit(main())
