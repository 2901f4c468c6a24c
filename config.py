import os
import logging
import random
from dotenv import load_dotenv

load_dotenv() # Load variables from .env file

# Logging configuration
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(levelname)s - %(message)s'
)

# Silence the asyncio "Unknown child process pid" warning (known race condition in asyncio)
class AsyncioWarningFilter(logging.Filter):
    def filter(self, record):
        return "Unknown child process pid" not in record.getMessage()

logging.getLogger('asyncio').addFilter(AsyncioWarningFilter())

logger = logging.getLogger(__name__)


def env_flag(name: str, default: bool = False) -> bool:
    """Reads a boolean environment variable ('true', '1', 'yes', 'on')."""
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ('true', '1', 'yes', 'on')

def env_int(name: str, default: int) -> int:
    """Reads an integer environment variable, falling back to the default on garbage."""
    value = os.environ.get(name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"⚠️ Invalid integer for {name}: '{value}'. Using {default}.")
        return default

# --- Proxy configuration ---
def parse_proxies(proxy_env_var: str) -> list:
    """Parses a comma-separated proxy string from an environment variable."""
    proxies_str = os.environ.get(proxy_env_var, "").strip()
    if proxies_str:
        return [p.strip() for p in proxies_str.split(',') if p.strip()]
    return []

def parse_transport_routes(routes_str: str = None) -> list:
    """Parses TRANSPORT_ROUTES in the format {URL=domain, PROXY=proxy}, {URL=domain2, PROXY=proxy2}"""
    if routes_str is None:
        routes_str = os.environ.get('TRANSPORT_ROUTES', "")
    routes_str = routes_str.strip()
    if not routes_str:
        return []

    routes = []
    # Remove spaces and split by },{
    route_parts = [part.strip() for part in routes_str.replace(' ', '').split('},{')]

    for part in route_parts:
        part = part.strip('{}')
        if not part:
            continue

        url_match = None
        proxy_match = None
        for item in part.split(','):
            if item.startswith('URL='):
                url_match = item[4:]
            elif item.startswith('PROXY='):
                proxy_match = item[6:]

        if url_match:
            routes.append({
                'url': url_match,
                'proxy': proxy_match if proxy_match else None,
            })
        else:
            logger.warning(f"⚠️ Ignoring transport route without URL: {part}")

    return routes

def get_proxy_for_url(url: str, transport_routes: list, global_proxies: list) -> str:
    """Finds the appropriate egress proxy for a URL based on TRANSPORT_ROUTES"""
    if not url or not transport_routes:
        return random.choice(global_proxies) if global_proxies else None

    for route in transport_routes:
        if route['url'] in url:
            # An empty proxy means direct connection for this pattern
            return route['proxy']

    return random.choice(global_proxies) if global_proxies else None

GLOBAL_PROXIES = parse_proxies('GLOBAL_PROXY')
TRANSPORT_ROUTES = parse_transport_routes()

if GLOBAL_PROXIES: logging.info(f"🌍 Loaded {len(GLOBAL_PROXIES)} global proxies.")
if TRANSPORT_ROUTES: logging.info(f"🚦 Loaded {len(TRANSPORT_ROUTES)} transport rules.")

API_PASSWORD = os.environ.get("API_PASSWORD")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = env_int("PORT", 1402)

# --- Relay configuration ---
RELAY_PATH = os.environ.get("RELAY_PATH", "/relay")
if not RELAY_PATH.startswith('/'):
    RELAY_PATH = '/' + RELAY_PATH

DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/136.0.0.0 Safari/537.36"
UPSTREAM_USER_AGENT = os.environ.get("UPSTREAM_USER_AGENT", DEFAULT_USER_AGENT)

UPSTREAM_CONNECT_TIMEOUT = env_int("UPSTREAM_CONNECT_TIMEOUT", 30)
UPSTREAM_READ_TIMEOUT = env_int("UPSTREAM_READ_TIMEOUT", 60)
UPSTREAM_MAX_REDIRECTS = env_int("UPSTREAM_MAX_REDIRECTS", 5)
UPSTREAM_POOL_LIMIT = env_int("UPSTREAM_POOL_LIMIT", 0)  # 0 = unbounded
UPSTREAM_LIMIT_PER_HOST = env_int("UPSTREAM_LIMIT_PER_HOST", 20)
UPSTREAM_VERIFY_TLS = env_flag("UPSTREAM_VERIFY_TLS", False)

RELAY_READ_BUFFER = env_int("RELAY_READ_BUFFER", 4 * 1024 * 1024)
RELAY_CHUNK_SIZE = env_int("RELAY_CHUNK_SIZE", 64 * 1024)
REWRITE_ATTRIBUTE_URIS = env_flag("REWRITE_ATTRIBUTE_URIS", False)

if UPSTREAM_VERIFY_TLS:
    logging.info("🔒 Upstream TLS verification enabled.")

def check_password(request, api_password=None):
    """Verifies the API password if set."""
    # An explicit empty string turns protection off even when the env sets one
    if api_password is None:
        api_password = API_PASSWORD
    if not api_password:
        return True

    # Check query param
    api_password_param = request.query.get("api_password")
    if api_password_param == api_password:
        return True

    # Check header
    if request.headers.get("x-api-password") == api_password:
        return True

    return False
