import os
from dataclasses import dataclass

from .constants import MAX_ATTEMPTS, MAX_ROUNDS, PAGE_LOAD_TIMEOUT_SECONDS, PROXY_TEST_URL


@dataclass
class AppSettings:
    """Centralized configuration for pipeline runs and the proxy pool"""

    # Attempt budget and per-attempt deadline
    MAX_ATTEMPTS: int = int(os.getenv("MAX_ATTEMPTS", str(MAX_ATTEMPTS)))
    PAGE_LOAD_TIMEOUT_SECONDS: float = float(
        os.getenv("PAGE_LOAD_TIMEOUT_SECONDS", str(PAGE_LOAD_TIMEOUT_SECONDS))
    )
    API_CALL_TIMEOUT_SECONDS: float = float(os.getenv("API_CALL_TIMEOUT_SECONDS", "20"))

    # Scrape/parse rounds
    MAX_ROUNDS: int = int(os.getenv("MAX_ROUNDS", str(MAX_ROUNDS)))
    SCRAPE_BATCH_SIZE: int = int(os.getenv("SCRAPE_BATCH_SIZE", "5"))

    # Retry backoff (milliseconds)
    BACKOFF_INITIAL_MS: int = int(os.getenv("BACKOFF_INITIAL_MS", "1000"))
    BACKOFF_MULTIPLIER: float = float(os.getenv("BACKOFF_MULTIPLIER", "2.0"))
    BACKOFF_MAX_MS: int = int(os.getenv("BACKOFF_MAX_MS", "10000"))

    # Proxy health thresholds
    HEALTH_DEGRADE_STREAK: int = int(os.getenv("HEALTH_DEGRADE_STREAK", "3"))
    HEALTH_BAN_STREAK: int = int(os.getenv("HEALTH_BAN_STREAK", "6"))
    HEALTH_RECOVERY_SUCCESSES: int = int(os.getenv("HEALTH_RECOVERY_SUCCESSES", "2"))
    HEALTH_DECAY: float = float(os.getenv("HEALTH_DECAY", "0.9"))
    PROXY_BAN_SECONDS: int = int(os.getenv("PROXY_BAN_SECONDS", "600"))

    # Proxy testing
    PROXY_TEST_URL: str = os.getenv("PROXY_TEST_URL", PROXY_TEST_URL)
    PROXY_TEST_TIMEOUT_SECONDS: float = float(os.getenv("PROXY_TEST_TIMEOUT_SECONDS", "15"))
    PROXY_TEST_CONCURRENCY: int = int(os.getenv("PROXY_TEST_CONCURRENCY", "10"))

    # Proxy scoring
    LATENCY_EWMA_ALPHA: float = float(os.getenv("LATENCY_EWMA_ALPHA", "0.3"))
    LATENCY_REFERENCE_MS: float = float(os.getenv("LATENCY_REFERENCE_MS", "1500"))
    SCORE_SUCCESS_WEIGHT: float = float(os.getenv("SCORE_SUCCESS_WEIGHT", "0.7"))
    SCORE_LATENCY_WEIGHT: float = float(os.getenv("SCORE_LATENCY_WEIGHT", "0.3"))

    # Search API paging
    MAX_SEARCH_PAGES: int = int(os.getenv("MAX_SEARCH_PAGES", "3"))
    SEARCH_RESULTS_PER_PAGE: int = int(os.getenv("SEARCH_RESULTS_PER_PAGE", "10"))

    # Logging
    MASK_SENSITIVE_DATA: bool = os.getenv("MASK_SENSITIVE_DATA", "True").lower() == "true"
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
