import os

DEFAULT_QUERY_URL = "http://localhost:8093/query/service"


def get_query_url() -> str:
    """Returns the Couchbase query service endpoint"""
    return os.getenv("COUCHBASE_QUERY_URL", DEFAULT_QUERY_URL)


def get_credentials() -> tuple[str, str]:
    """Returns (username, password) for the query service"""
    return (
        os.getenv("COUCHBASE_USERNAME", "Administrator"),
        os.getenv("COUCHBASE_PASSWORD", ""),
    )


def get_query_timeout() -> float:
    """Default per-statement timeout in seconds"""
    return float(os.getenv("COOKBOOK_QUERY_TIMEOUT_S", "75"))


def get_max_retries() -> int:
    """Retries on top of the first attempt for transient failures"""
    return int(os.getenv("COOKBOOK_MAX_RETRIES", "3"))


def get_concurrency() -> int:
    return int(os.getenv("COOKBOOK_CONCURRENCY", "1"))


def get_log_format() -> str:
    return os.getenv("COOKBOOK_LOG_FORMAT", "json").lower()


def get_log_level() -> str:
    return os.getenv("COOKBOOK_LOG_LEVEL", "INFO").upper()
