#!/usr/bin/env python3
"""
Relay Manager - Main Entry Point
Serves the OAuth proxy, webhook relay and MCP process API over HTTP
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from aiohttp import web

from relay_manager.api_handlers import create_app
from relay_manager.config import RelayConfig, load_config
from relay_manager.errors import ConfigError
from relay_manager.providers import get_provider_config, get_supported_providers, mask_client_id

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class RelayServer:
    """aiohttp server hosting the relay application"""

    def __init__(self, config: RelayConfig, port: Optional[int] = None, host: Optional[str] = None):
        self.config = config
        self.port = port or config.server.port
        self.host = host or config.server.host
        self.app = None
        self.runner = None
        self.site = None
        self._shutdown_event = asyncio.Event()

    async def start_server(self):
        """Start the HTTP server"""
        try:
            self.app = create_app(self.config)
            self.runner = web.AppRunner(self.app)
            await self.runner.setup()

            self.site = web.TCPSite(self.runner, self.host, self.port)
            await self.site.start()

            logger.info(f"Relay Manager started on http://{self.host}:{self.port}")
            if self.config.server.public_url:
                logger.info(f"Public URL: {self.config.server.public_url}")
            else:
                logger.info("No public URL configured, callback URLs use the request origin")
            logger.info(f"Store backend: {self.config.store.backend}")
            logger.info("Available endpoints:")
            logger.info("  GET  /health - Health check")
            logger.info("  GET  /api/oauth/proxy/start - Start OAuth flow")
            logger.info("  GET  /api/oauth/proxy/callback - OAuth callback")
            logger.info("  POST /api/oauth/proxy/dynamic - Start flow with app credentials")
            logger.info("  GET  /api/oauth/proxy/tokens/{sessionId} - Pick up tokens")
            logger.info("  POST /api/oauth/projects - Register project credentials")
            logger.info("  POST /api/webhook/session - Create webhook session")
            logger.info("  *    /api/webhook/proxy/{sessionId} - Webhook ingress")
            logger.info("  GET  /api/webhook/poll/{sessionId} - Poll webhooks")
            logger.info("  POST /api/spawn - Spawn stdio MCP server")
            logger.info("  POST /api/execute/{sessionId} - Execute MCP tool")

        except Exception as e:
            logger.error(f"Failed to start server: {e}")
            raise

    async def stop_server(self):
        """Stop the HTTP server; app cleanup closes MCP processes and stores"""
        try:
            if self.site:
                await self.site.stop()
                logger.info("Server site stopped")

            if self.runner:
                await self.runner.cleanup()
                logger.info("Server runner cleaned up")

        except Exception as e:
            logger.error(f"Error stopping server: {e}")

    async def run_forever(self):
        """Run server until shutdown signal"""
        await self.start_server()

        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self._request_shutdown, signum)

        try:
            await self._shutdown_event.wait()
        finally:
            logger.info("Shutting down Relay Manager...")
            await self.stop_server()

    def _request_shutdown(self, signum):
        logger.info(f"Received signal {signum}, shutting down...")
        self._shutdown_event.set()


def list_providers(config: RelayConfig):
    """Print supported OAuth providers and their credential status"""
    print("\n=== OAuth Providers ===")
    for name in get_supported_providers():
        provider = get_provider_config(name, config)
        if provider.has_credentials:
            print(f"✅ {name}: configured (client id {mask_client_id(provider.client_id)})")
        else:
            print(f"❌ {name}: not configured")
        print(f"   authorize: {provider.authorization_url}")
        print(f"   scopes:    {' '.join(provider.scopes)}")


def main():
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        description="OAuth / webhook / MCP relay",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python relay_main.py                        # Start server on default port 3100
  python relay_main.py --port 8080            # Start server on custom port
  python relay_main.py --config relay.toml    # Use a settings file
  python relay_main.py --list-providers       # Show OAuth provider status
  python relay_main.py --verbose              # Enable debug logging
        """
    )

    parser.add_argument(
        '--port', '-p',
        type=int,
        default=None,
        help='Port to run the server on (default: 3100 or MCP_PROXY_PORT)'
    )

    parser.add_argument(
        '--host',
        type=str,
        default=None,
        help='Host to bind the server to (default: localhost)'
    )

    parser.add_argument(
        '--config', '-c',
        type=str,
        default=None,
        help='Path to TOML settings file (default: $RELAY_SETTINGS or settings.toml)'
    )

    parser.add_argument(
        '--list-providers', '-l',
        action='store_true',
        help='List OAuth providers and whether credentials are configured'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable debug logging'
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Debug logging enabled")

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(2)

    if args.list_providers:
        list_providers(config)
        return

    server = RelayServer(config, port=args.port, host=args.host)

    try:
        asyncio.run(server.run_forever())
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
    except Exception as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
