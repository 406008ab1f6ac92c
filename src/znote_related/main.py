#!/usr/bin/env python
"""Main entry point for the related-notes MCP server."""
import argparse
import atexit
import logging
import os
import sys
from pathlib import Path

from znote_related.config import config
from znote_related.observability import configure_logging, metrics
from znote_related.server.mcp_server import RelatedNotesMcpServer


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Related Notes MCP Server")
    parser.add_argument(
        "--vault-dir",
        help="Directory holding the markdown vault",
        type=str,
        default=os.environ.get("ZNOTE_RELATED_VAULT_DIR"),
    )
    parser.add_argument(
        "--embeddings-path",
        help="JSON file for locally generated embeddings",
        type=str,
        default=os.environ.get("ZNOTE_RELATED_EMBEDDINGS_PATH"),
    )
    parser.add_argument(
        "--embedding-source",
        help="Where embeddings come from",
        choices=["local", "vault"],
        default=None,
    )
    parser.add_argument(
        "--graph-source",
        help="Knowledge graph used for link-based recommendations",
        choices=["none", "wikilinks"],
        default=None,
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("ZNOTE_RELATED_LOG_LEVEL", "INFO"),
    )
    return parser.parse_args()


def update_config(args):
    """Update the global config with command line arguments."""
    if args.vault_dir:
        config.vault_dir = Path(args.vault_dir)
    if args.embeddings_path:
        config.embeddings_path = Path(args.embeddings_path)
    if args.embedding_source:
        config.embedding_source = args.embedding_source
    if args.graph_source:
        config.graph_source = args.graph_source


def _save_metrics_on_exit():
    """Save metrics to disk on server shutdown."""
    try:
        if metrics.save_metrics():
            logging.getLogger(__name__).info("Metrics saved to disk on shutdown")
    except Exception as e:
        logging.getLogger(__name__).warning(f"Failed to save metrics on shutdown: {e}")


def main():
    """Run the related-notes MCP server."""
    args = parse_args()
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        log_dir = configure_logging(level=log_level, console=True)
    except OSError as e:
        # Fall back to console logging if the log directory is unusable
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")
        log_dir = None

    logger = logging.getLogger(__name__)
    if log_dir:
        logger.info(f"Persistent logging enabled: {log_dir}")

    atexit.register(_save_metrics_on_exit)

    vault_dir = config.get_vault_dir()
    if vault_dir is None:
        logger.error(
            f"Vault directory not found: {config.get_absolute_path(config.vault_dir)}"
        )
        sys.exit(1)
    config.get_absolute_path(config.embeddings_path).parent.mkdir(
        parents=True, exist_ok=True
    )

    try:
        logger.info(f"Starting related-notes MCP server for {vault_dir}")
        # The server registers its own atexit hook that saves connection reasons
        server = RelatedNotesMcpServer()
        server.run()
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
