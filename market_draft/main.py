"""
Main CLI entry point for the prediction-market draft service.
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from . import config


def setup_logging(verbose: bool = False):
    """
    Configure logging for the application.

    Args:
        verbose: Enable verbose (DEBUG) logging
    """
    level = logging.DEBUG if verbose else getattr(logging, config.LOG_LEVEL)
    logging.basicConfig(
        level=level,
        format=config.LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


def parse_arguments(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description='Prediction-Market Fantasy Draft Service',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the draft API with the live market feed
  python -m market_draft.main --serve

  # Bind to all interfaces on a custom port
  python -m market_draft.main --serve --host 0.0.0.0 --port 9000

  # List draftable assets for markets resolving this week
  python -m market_draft.main --list-assets --ending-within-days 7

  # Export a session's picks to CSV
  python -m market_draft.main --export-session <session_id> --output picks.csv
        """
    )

    parser.add_argument(
        '--serve',
        action='store_true',
        help='Run the draft API server with the live market feed'
    )

    parser.add_argument(
        '--host',
        type=str,
        default=config.API_HOST,
        help=f'API bind host (default: {config.API_HOST})'
    )

    parser.add_argument(
        '--port',
        type=int,
        default=config.API_PORT,
        help=f'API port (default: {config.API_PORT})'
    )

    parser.add_argument(
        '--feed-url',
        type=str,
        default=None,
        help='Market websocket URL (or set MARKET_DRAFT_FEED_URL environment variable)'
    )

    parser.add_argument(
        '--events-dir',
        type=str,
        default=config.DRAFT_EVENTS_DIR,
        help=f'Directory for draft event logs (default: {config.DRAFT_EVENTS_DIR})'
    )

    parser.add_argument(
        '--list-assets',
        action='store_true',
        help='Print draftable outcome tokens from the market catalog'
    )

    parser.add_argument(
        '--ending-within-days',
        type=int,
        default=None,
        help='With --list-assets: only markets resolving within this many days'
    )

    parser.add_argument(
        '--export-session',
        type=str,
        default=None,
        help='Export the picks of a persisted session to CSV'
    )

    parser.add_argument(
        '--output',
        type=str,
        default=None,
        help='Output filename for --export-session (default: picks_<session_id>.csv)'
    )

    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    return parser.parse_args(argv)


def run_server(args):
    """Run the API server and the live market feed."""
    import uvicorn

    from .draft.api_server import create_app
    from .services import build_services

    logger = logging.getLogger(__name__)

    feed_url = args.feed_url or os.getenv('MARKET_DRAFT_FEED_URL') or config.FEED_WS_URL

    logger.info("="*60)
    logger.info("Market Draft Server")
    logger.info("="*60)
    logger.info(f"Feed: {feed_url}")
    logger.info(f"Event logs: {args.events_dir}")
    logger.info(f"Listening on http://{args.host}:{args.port}")

    try:
        services = build_services(events_dir=Path(args.events_dir), feed_url=feed_url)
        app = create_app(services)
        uvicorn.run(app, host=args.host, port=args.port, log_level='debug' if args.verbose else 'info')

    except KeyboardInterrupt:
        logger.info("\nServer interrupted by user")
    except Exception as e:
        logger.exception(f"Error while serving: {e}")
        sys.exit(1)


def run_list_assets(args):
    """Print draftable assets from the Gamma catalog."""
    from .feed.market_catalog import GammaMarketClient

    logger = logging.getLogger(__name__)

    try:
        assets = GammaMarketClient().list_assets(ending_within_days=args.ending_within_days)
    except Exception as e:
        logger.exception(f"Failed to fetch market catalog: {e}")
        sys.exit(1)

    logger.info("="*60)
    logger.info(f"Draftable assets: {len(assets)}")
    logger.info("="*60)

    for asset in assets:
        price = asset.price if asset.price is not None else '-'
        print(f"{asset.asset_id}\t{asset.outcome}\t{price}\t{asset.question}")


def run_export(args):
    """Export a persisted session's picks to CSV."""
    from .draft.event_store import DraftEventStore

    logger = logging.getLogger(__name__)

    store = DraftEventStore(Path(args.events_dir))
    output = Path(args.output or f"picks_{args.export_session}.csv")

    try:
        store.export_to_csv(args.export_session, output)
    except Exception as e:
        logger.exception(f"Export failed: {e}")
        sys.exit(1)


def main(argv=None):
    """Main execution function with mode branching."""
    # Parse arguments
    args = parse_arguments(argv)

    # Setup logging
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    # Branch to appropriate mode
    if args.list_assets:
        run_list_assets(args)
    elif args.export_session:
        run_export(args)
    elif args.serve:
        run_server(args)
    else:
        logger.error("Nothing to do: pass --serve, --list-assets or --export-session")
        sys.exit(2)


if __name__ == '__main__':
    main()
