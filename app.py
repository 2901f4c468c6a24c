import logging

from aiohttp import web

import config
from services.relay_proxy import RelayProxy
from services.upstream import UpstreamClient

logger = logging.getLogger(__name__)

# Cancel the handler as soon as the client goes away so the upstream fetch is aborted
RUNNER_KWARGS = {'handler_cancellation': True}


def create_upstream_client():
    """Builds the shared outbound client from the environment configuration."""
    return UpstreamClient(
        user_agent=config.UPSTREAM_USER_AGENT,
        connect_timeout=config.UPSTREAM_CONNECT_TIMEOUT,
        read_timeout=config.UPSTREAM_READ_TIMEOUT,
        max_redirects=config.UPSTREAM_MAX_REDIRECTS,
        pool_limit=config.UPSTREAM_POOL_LIMIT,
        limit_per_host=config.UPSTREAM_LIMIT_PER_HOST,
        read_bufsize=config.RELAY_READ_BUFFER,
        verify_tls=config.UPSTREAM_VERIFY_TLS,
        global_proxies=config.GLOBAL_PROXIES,
        transport_routes=config.TRANSPORT_ROUTES,
    )


def create_app(upstream=None, relay_path=None, api_password=None, rewrite_attribute_uris=None):
    """Creates and configures the aiohttp application."""
    relay_path = relay_path or config.RELAY_PATH
    proxy = RelayProxy(
        upstream if upstream is not None else create_upstream_client(),
        relay_path=relay_path,
        api_password=api_password if api_password is not None else config.API_PASSWORD,
        chunk_size=config.RELAY_CHUNK_SIZE,
        rewrite_attribute_uris=(config.REWRITE_ATTRIBUTE_URIS
                                if rewrite_attribute_uris is None else rewrite_attribute_uris),
    )

    app = web.Application()

    # Register routes (add_get also answers HEAD)
    app.router.add_get(relay_path, proxy.handle_relay_request)
    if relay_path != '/api/proxy':
        app.router.add_get('/api/proxy', proxy.handle_relay_request)
    app.router.add_get('/api/ping', proxy.handle_ping)
    app.router.add_get('/api/health', proxy.handle_health)
    app.router.add_get('/api/info', proxy.handle_api_info)

    # Generic OPTIONS handler for CORS
    app.router.add_route('OPTIONS', '/{tail:.*}', proxy.handle_options)

    async def cleanup_handler(app):
        await proxy.cleanup()
    app.on_cleanup.append(cleanup_handler)

    return app


def main():
    """Main function to start the server."""
    logger.info("🚀 Starting StreamFlix Relay...")
    logger.info(f"📡 Server available at: http://{config.HOST}:{config.PORT}")
    logger.info(f"🔗 Relay endpoint: {config.RELAY_PATH}?url=<URL>")

    web.run_app(create_app(), host=config.HOST, port=config.PORT, **RUNNER_KWARGS)


if __name__ == '__main__':
    main()
