"""PopThread Core Entry Point.

Main entry point for the PopThread coordinator. It handles configuration,
logging, initialization of the entity store and the service managers, and
runs the realtime push server and expiry sweep until interrupted.
"""

import sys
import signal
import argparse
import logging
import logging.handlers
import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


# Import configuration
from config.config_manager import ConfigManager

# Import core components
from core.clock import Clock
from core.crypto_manager import CryptoManager
from core.db_manager import DBManager
from core.error_handler import get_error_handler
from core.expiry import ExpiryScheduler
from core.fanout import RealtimeFanout

# Import logic layer
from logic.user_manager import UserManager
from logic.thread_manager import ThreadManager
from logic.membership_manager import MembershipManager
from logic.chat_manager import ChatManager
from logic.gossip_manager import GossipManager
from logic.comment_manager import CommentManager
from logic.moderation_manager import ModerationManager


@dataclass
class Services:
    """Every service object an HTTP layer needs, wired to one store."""
    config: ConfigManager
    clock: Clock
    db: DBManager
    fanout: RealtimeFanout
    expiry: ExpiryScheduler
    users: UserManager
    threads: ThreadManager
    membership: MembershipManager
    chat: ChatManager
    gossips: GossipManager
    comments: CommentManager
    moderation: ModerationManager


# Configure logging
def setup_logging(log_level: str, log_path: Path, max_bytes: int = 10485760, backup_count: int = 5):
    """
    Configure application logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_path: Path to log file
        max_bytes: Size at which the log file is rotated
        backup_count: Rotated files to keep
    """
    # Ensure log directory exists
    log_path.parent.mkdir(parents=True, exist_ok=True)

    # Configure root logger
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.handlers.RotatingFileHandler(
                log_path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
            ),
            logging.StreamHandler(sys.stdout)
        ]
    )

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized at level {log_level}")
    logger.info(f"Log file: {log_path}")


def parse_arguments(argv=None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description='PopThread Core - thread lifecycle and ephemeral messaging coordinator',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with bundled defaults
  python main.py

  # Push server on another port
  python main.py --port 9400

  # Specify custom config file
  python main.py --config /path/to/settings.yaml
        """
    )

    parser.add_argument(
        '--config',
        type=str,
        default=None,
        metavar='PATH',
        help='Path to configuration file'
    )

    parser.add_argument(
        '--host',
        type=str,
        default=None,
        help='Push server bind address (default: from config)'
    )

    parser.add_argument(
        '--port',
        type=int,
        default=None,
        help='Push server port (default: from config or 9300)'
    )

    parser.add_argument(
        '--log-level',
        type=str,
        default=None,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Override logging level from config'
    )

    return parser.parse_args(argv)


def build_services(config_manager: ConfigManager, clock: Optional[Clock] = None) -> Services:
    """
    Create the entity store and every manager from configuration.

    Args:
        config_manager: Loaded configuration
        clock: Clock to share across services; the system clock by default

    Returns:
        Services with an initialized database
    """
    logger = logging.getLogger(__name__)
    clock = clock or Clock()

    storage_config = config_manager.get_storage_config()
    threads_config = config_manager.get_threads_config()
    expiry_config = config_manager.get_expiry_config()
    limits_config = config_manager.get_limits_config()
    fanout_config = config_manager.get_fanout_config()
    security_config = config_manager.get_security_config()

    # Initialize database
    db_path = config_manager.expand_path(storage_config.db_path)
    db_manager = DBManager(
        db_path,
        read_retries=storage_config.read_retries,
        retry_backoff=storage_config.retry_backoff,
    )
    db_manager.initialize_database()
    logger.info(f"Database initialized: {db_path}")

    fanout = RealtimeFanout(
        queue_size=fanout_config.queue_size,
        max_frame_size=fanout_config.max_frame_size,
    )
    crypto_manager = CryptoManager(scrypt_n=security_config.scrypt_n)

    users = UserManager(
        db_manager=db_manager,
        crypto_manager=crypto_manager,
        clock=clock,
        min_password_length=security_config.min_password_length,
    )

    # Initialize application logic managers
    return Services(
        config=config_manager,
        clock=clock,
        db=db_manager,
        fanout=fanout,
        expiry=ExpiryScheduler(
            db_manager, fanout, clock,
            urgent_minutes=expiry_config.urgent_minutes,
            soon_minutes=expiry_config.soon_minutes,
        ),
        users=users,
        threads=ThreadManager(
            db_manager, fanout, clock, users,
            allowed_durations=threads_config.allowed_durations,
            default_duration=threads_config.default_duration,
        ),
        membership=MembershipManager(db_manager, fanout, clock, users),
        chat=ChatManager(
            db_manager, fanout, clock, users,
            max_message_length=limits_config.max_message_length,
            reply_preview_length=limits_config.reply_preview_length,
        ),
        gossips=GossipManager(
            db_manager, fanout, clock, users,
            max_gossip_length=limits_config.max_gossip_length,
        ),
        comments=CommentManager(
            db_manager, fanout, clock, users,
            max_comment_length=limits_config.max_comment_length,
        ),
        moderation=ModerationManager(db_manager, fanout, clock, users),
    )


async def run(services: Services) -> None:
    """
    Serve realtime pushes and sweep expiry until SIGINT/SIGTERM.

    Args:
        services: Wired services
    """
    logger = logging.getLogger(__name__)
    server_config = services.config.get_server_config()
    expiry_config = services.config.get_expiry_config()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Signal handlers are unavailable on some platforms (Windows)
            pass

    await services.fanout.start(port=server_config.port, host=server_config.host)
    await services.expiry.start_sweep(expiry_config.sweep_interval)
    logger.info("Service started successfully")

    try:
        await stop_event.wait()
    finally:
        logger.info("Service shutting down...")
        await services.expiry.stop_sweep()
        await services.fanout.stop()
        services.db.close()


def main(argv=None):
    """
    Main application entry point.

    Loads configuration, sets up logging, wires services and runs them.
    """
    # Parse command-line arguments
    args = parse_arguments(argv)

    config_path = Path(args.config) if args.config else None
    config_manager = ConfigManager(config_path)

    # Override server settings if specified
    if args.port:
        config_manager.set_config('server', 'port', args.port)
    if args.host:
        config_manager.set_config('server', 'host', args.host)

    logging_config = config_manager.get_logging_config()
    if args.log_level:
        logging_config.level = args.log_level

    setup_logging(
        logging_config.level,
        config_manager.expand_path(logging_config.log_path),
        logging_config.max_log_size,
        logging_config.backup_count,
    )

    logger = logging.getLogger(__name__)
    logger.info("=" * 60)
    logger.info("PopThread Core Starting")
    logger.info("=" * 60)

    try:
        services = build_services(config_manager)
        asyncio.run(run(services))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except Exception as e:
        context = get_error_handler().handle_error(e, "startup")
        logger.critical(f"Startup failed: {context.user_message}")
        sys.exit(1)

    logger.info("Shutdown complete")
    logger.info("=" * 60)


if __name__ == '__main__':
    main()
