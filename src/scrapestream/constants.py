"""Centralized constants for all modules."""

# Attempt budget & timeouts
MAX_ATTEMPTS = 3
PAGE_LOAD_TIMEOUT_SECONDS = 10
MAX_QUERY_COUNT = 10
MAX_ROUNDS = 5

# Proxy share links
MAX_PROXY_LINE_LENGTH = 2048
MAX_PORT = 65535
V2RAY_LOCAL_HOST = "127.0.0.1"

# Domains never scraped: search engines, social networks, marketplaces, encyclopedias
BLOCKED_DOMAINS = [
    "google.com",
    "youtube.com",
    "facebook.com",
    "twitter.com",
    "instagram.com",
    "linkedin.com",
    "pinterest.com",
    "tiktok.com",
    "reddit.com",
    "wikipedia.org",
    "yahoo.com",
    "bing.com",
    "amazon.com",
    "ebay.com",
    "netflix.com",
]

# Search API
SEARCH_API_TEMPLATE = (
    "https://www.googleapis.com/customsearch/v1"
    "?q=<query>&key=<api_key>&cx=<search_engine_id>&start=<start_index>&num=<count>"
)

# Browser-like headers for page fetches
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
MAX_PAGE_BYTES = 5 * 1024 * 1024  # 5 MB

# Proxy health check target; any 2xx response counts as working
PROXY_TEST_URL = "https://httpbin.org/ip"
