#!/usr/bin/env python3
"""
Bemfa MCP Gateway CLI

Command-line interface for running the Bemfa MCP gateway.
"""

import asyncio
import argparse
import logging
import os
import sys

from .bridge import BemfaGateway
from .data_models import GatewayConfig
from .mcp_http_server import MCPHTTPServer


def setup_logging(log_level: str = "INFO"):
    """Setup logging configuration"""
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f'Invalid log level: {log_level}')

    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


def parse_args(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Bemfa MCP Gateway - control Bemfa cloud lights over MCP"
    )

    # Broker settings
    parser.add_argument(
        "--bemfa-server",
        default=os.getenv("BEMFA_SERVER", "bemfa.com"),
        help="Default MQTT broker host (default: bemfa.com)"
    )
    parser.add_argument(
        "--bemfa-port",
        type=int,
        default=int(os.getenv("BEMFA_PORT", "9501")),
        help="Default MQTT broker port (default: 9501)"
    )
    parser.add_argument(
        "--keepalive",
        type=int,
        default=int(os.getenv("MQTT_KEEPALIVE", "60")),
        help="MQTT keepalive in seconds (default: 60)"
    )

    # Server settings
    parser.add_argument(
        "--host",
        default=os.getenv("MCP_HOST", "0.0.0.0"),
        help="Host to bind the HTTP server to (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("SERVER_PORT", "4000")),
        help="HTTP server port (default: 4000)"
    )
    parser.add_argument(
        "--heartbeat-interval",
        type=float,
        default=float(os.getenv("HEARTBEAT_INTERVAL", "30")),
        help="Seconds between SSE heartbeat events (default: 30)"
    )
    parser.add_argument(
        "--operation-timeout",
        type=float,
        default=float(os.getenv("OPERATION_TIMEOUT", "5")),
        help="Timeout in seconds for connect, publish and disconnect (default: 5)"
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )

    return parser.parse_args(argv)


def build_config(args) -> GatewayConfig:
    return GatewayConfig(
        bemfa_server=args.bemfa_server,
        bemfa_port=args.bemfa_port,
        host=args.host,
        port=args.port,
        heartbeat_interval=args.heartbeat_interval,
        operation_timeout=args.operation_timeout,
        keepalive=args.keepalive,
        log_level=args.log_level,
    )


async def run(config: GatewayConfig):
    """Run the gateway until cancelled"""
    logger = logging.getLogger(__name__)
    logger.info("Starting Bemfa MCP gateway...")
    logger.info(f"Default broker: {config.bemfa_server}:{config.bemfa_port}")

    gateway = BemfaGateway(config)
    http_server = MCPHTTPServer(gateway, host=config.host, port=config.port)
    await http_server.start()
    try:
        logger.info("Gateway running... Press Ctrl+C to stop")
        await asyncio.Event().wait()
    finally:
        await http_server.stop()
        logger.info("Gateway stopped")


def main(argv=None) -> int:
    """Main entry point"""
    args = parse_args(argv)
    config = build_config(args)
    setup_logging(config.log_level)
    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Received interrupt signal, shutting down...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
