#!/usr/bin/env python3
"""
Poolkeeper Controller Daemon

Main entry point for running the Poolkeeper controller as a daemon.
Renders and validates the configuration template, then starts the FastAPI
server and all background services.
"""

import os
import sys
import logging
import signal
import argparse
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

def setup_logging(level: str = "INFO"):
    """Set up logging configuration."""
    # POOLKEEPER_LOG_DIR wins, otherwise ./logs relative to the working directory
    logs_dir = Path(os.getenv("POOLKEEPER_LOG_DIR", "logs"))

    # Ensure logs directory exists
    logs_dir.mkdir(parents=True, exist_ok=True)

    log_file_path = logs_dir / 'poolkeeper-controller.log'

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_file_path)
        ]
    )

    # Log where we're writing logs to
    logger = logging.getLogger(__name__)
    logger.info(f"Logging to file: {log_file_path}")

def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    logging.info(f"Received signal {signum}, shutting down...")
    sys.exit(0)

def main():
    """Main entry point for the controller daemon."""
    parser = argparse.ArgumentParser(description="Poolkeeper Controller Daemon")
    parser.add_argument("--config", default=None,
                       help="Configuration template (default: POOLKEEPER_CONFIG_TEMPLATE)")
    parser.add_argument("--host", default=None, help="Host to bind to (default: from configuration)")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to (default: from configuration)")
    parser.add_argument("--log-level", default=None,
                       choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                       help="Logging level (default: from configuration)")

    args = parser.parse_args()

    # Set up logging before anything can fail
    setup_logging(args.log_level or os.getenv("POOLKEEPER_LOG_LEVEL", "INFO"))
    logger = logging.getLogger(__name__)

    # Set up signal handlers
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    from config_spec import load_settings
    from controller.errors import ConfigurationError
    from controller.utils import lifecycle

    # A template that cannot be rendered or validated is fatal at startup
    try:
        template = lifecycle.read_template(args.config)
        settings, _ = load_settings(template, os.environ)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        for name in e.missing:
            logger.error(f"  missing variable: {name}")
        for error in e.errors:
            logger.error(f"  {error}")
        sys.exit(1)

    if args.log_level is None:
        logging.getLogger().setLevel(getattr(logging, settings.server.log_level.upper(), logging.INFO))

    host = args.host or os.getenv("POOLKEEPER_HOST") or settings.server.host
    port = args.port or (int(os.getenv("POOLKEEPER_PORT")) if os.getenv("POOLKEEPER_PORT") else settings.server.port)

    logger.info("Starting Poolkeeper Controller...")
    logger.info(f"Serving on http://{host}:{port}, pools: {', '.join(sorted(settings.pools))}")

    try:
        lifecycle.initialize(settings, template, source_path=args.config or os.getenv("POOLKEEPER_CONFIG_TEMPLATE"))
    except Exception as e:
        logger.error(f"Failed to initialize controller: {e}")
        sys.exit(1)

    import uvicorn
    from controller.api import app

    # Configure uvicorn logging to work with our setup
    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["handlers"]["default"]["stream"] = "ext://sys.stdout"

    try:
        # Run the FastAPI server
        uvicorn.run(
            app,
            host=host,
            port=port,
            log_level=logging.getLevelName(logging.getLogger().level).lower(),
            access_log=True,
            log_config=log_config
        )
    except Exception as e:
        logger.error(f"Failed to start controller: {e}")
        sys.exit(1)

if __name__ == "__main__":
    main()
