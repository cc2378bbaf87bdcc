# =============================================================================
# Hawk-Sync Application
# =============================================================================
# Wires the engine together and runs it until interrupted:
#
#   Config -> KeyringAccountRegistry, Database/SqliteMessageStore
#          -> CredentialGuard(OAuthRefresher)
#          -> MessageProcessor(RuleClassifier, TextContentPipeline, notifiers)
#          -> SyncScheduler -> ConnectionManager
#
# Every lifecycle event is logged. SIGINT/SIGTERM disconnect all accounts
# cleanly before exit.
# =============================================================================

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from hawk_sync import __app_name__, __version__
from hawk_sync.auth import CredentialGuard, OAuthRefresher
from hawk_sync.classify import RuleClassifier
from hawk_sync.config import Config, ConfigError, print_paths
from hawk_sync.core.events import (
    AuthFailed,
    ConnectionErrorEvent,
    MaxReconnectAttemptsReached,
    SyncEvent,
)
from hawk_sync.imap.sync import SyncScheduler
from hawk_sync.manager import ConnectionManager
from hawk_sync.notify import SlackNotifier, WebhookNotifier
from hawk_sync.processing import MessageProcessor, TextContentPipeline
from hawk_sync.reconnect import ReconnectPolicy
from hawk_sync.storage import Database, KeyringAccountRegistry, SqliteMessageStore
from hawk_sync.timers import AsyncioScheduler

logger = logging.getLogger(__name__)


def log_event(event: SyncEvent) -> None:
    """Event listener that writes every event to the log."""
    if isinstance(event, (AuthFailed, MaxReconnectAttemptsReached)):
        level = logging.ERROR
    elif isinstance(event, ConnectionErrorEvent):
        level = logging.WARNING
    else:
        level = logging.INFO
    logger.log(level, f"[{event.account_id}] {event}")


async def run(config: Config, account_ids: list[str] | None = None) -> int:
    """
    Run the sync engine until SIGINT/SIGTERM.

    Args:
        config: Loaded configuration.
        account_ids: Only connect these accounts (default: all active).

    Returns:
        Exit code.
    """
    registry = KeyringAccountRegistry(config)
    if account_ids:
        accounts = [a for a in [await registry.get_account(i) for i in account_ids] if a]
    else:
        accounts = await registry.list_active()

    if not accounts:
        logger.error("No usable accounts configured")
        return 1

    database = Database(Config.database_path())
    await database.connect()
    store = SqliteMessageStore(database)

    refresher = OAuthRefresher(config.oauth)
    notifiers: list[WebhookNotifier | SlackNotifier] = []
    if config.notifications.webhook_url:
        notifiers.append(WebhookNotifier(config.notifications.webhook_url))
    slack_urls = {a.id: a.slack_webhook_url for a in accounts if a.slack_webhook_url}
    if config.notifications.slack_webhook_url or slack_urls:
        notifiers.append(SlackNotifier(config.notifications.slack_webhook_url, slack_urls))

    scheduler = AsyncioScheduler()
    processor = MessageProcessor(
        classifier=RuleClassifier(),
        notifiers=notifiers,
        pipeline=TextContentPipeline(),
        priority_categories=config.priority_categories,
    )
    manager = ConnectionManager(
        CredentialGuard(registry, refresher),
        SyncScheduler(config.sync, processor, store, scheduler),
        policy=ReconnectPolicy.from_config(config.reconnect),
        scheduler=scheduler,
        connection=config.connection,
    )
    manager.events.subscribe(log_event)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        results = await asyncio.gather(*(manager.connect(a) for a in accounts))
        logger.info(f"{sum(results)} of {len(accounts)} account(s) connected")
        await stop.wait()
        logger.info("Shutting down")
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await manager.disconnect_all()
        for notifier in notifiers:
            await notifier.aclose()
        await refresher.aclose()
        await database.close()

    return 0


# =============================================================================
# CLI Entry Point
# =============================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description="Hawk-Sync: real-time multi-account IMAP synchronization",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--paths",
        action="store_true",
        help="Print configuration paths and exit",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: XDG config location)",
    )

    parser.add_argument(
        "--account",
        action="append",
        dest="accounts",
        metavar="ID",
        help="Only sync this account (repeatable; default: all active accounts)",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (verbose logging)",
    )

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for Hawk-Sync.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = parse_args(argv)

    if args.paths:
        print_paths()
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    # aioimaplib is very chatty at DEBUG
    logging.getLogger("aioimaplib").setLevel(logging.INFO)

    try:
        config = Config.load(args.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    try:
        return asyncio.run(run(config, args.accounts))
    except KeyboardInterrupt:
        return 130
