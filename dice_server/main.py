"""
Entry point for dice-server.
Initialises telemetry, then serves HTTP until interrupted.
"""

import argparse
import signal
import sys

from .config import ConfigError, load_config, validate_config
from .constants import APP_NAME, DEFAULT_CONFIG_PATH
from .observability.logging import setup_structured_logger
from .observability.metrics import InstrumentError
from .telemetry import init_telemetry
from .web_server import DiceServer


def main():
    """Main entry point - telemetry first, then the web server"""
    parser = argparse.ArgumentParser(description="Dice rolling server with OpenTelemetry export")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to config file")
    parser.add_argument("--host", help="Host address (overrides config)")
    parser.add_argument("--port", type=int, help="Port number (overrides config)")
    parser.add_argument(
        "--no-console-export", action="store_true", help="Disable the stdout trace/metric sinks"
    )
    parser.add_argument(
        "--no-otlp-export", action="store_true", help="Disable export to the OTLP collector"
    )
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"  Config error: {e}", file=sys.stderr)
        sys.exit(1)

    # Validate configuration at startup
    config_errors = validate_config(config)
    if config_errors:
        for err in config_errors:
            print(f"  Config error: {err}", file=sys.stderr)
        sys.exit(1)

    debug_mode = config.get("logging", {}).get("debug", False)
    logger = setup_structured_logger("main", "main.log", debug=debug_mode)
    logger.info("=" * 60)
    logger.info("%s starting", APP_NAME)
    logger.info("=" * 60)

    # Providers must be registered before the first request is served
    telemetry = init_telemetry(
        config,
        console=False if args.no_console_export else None,
        otlp=False if args.no_otlp_export else None,
    )

    try:
        server = DiceServer(config=config)
    except InstrumentError as e:
        logger.critical("Failed to create instruments: %s", e)
        telemetry.shutdown()
        sys.exit(1)

    def shutdown(signum, frame):
        logger.info("Shutdown signal received")
        print("\n Shutting down...")
        telemetry.shutdown()
        sys.exit(0)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    server.run(host=args.host, port=args.port)


if __name__ == "__main__":
    main()
