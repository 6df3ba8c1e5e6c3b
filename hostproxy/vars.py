import os


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, "")
    if not raw:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, ""))
    except ValueError:
        return default


SERVICE_NAME = os.getenv("SERVICE_NAME", "hostproxy")

# Management API access
PROXY_API_KEY = os.environ.get("PROXY_API_KEY", "")
PROXY_API_DOMAIN = os.environ.get("PROXY_API_DOMAIN", "")

DB_PATH = os.environ.get("DB_PATH", "data/proxy.db")

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = _env_int("PORT", 80)
DEBUG = _env_bool("DEBUG", False)

# Seconds before an outbound request to a backend is abandoned
PROXY_TIMEOUT = _env_int("PROXY_TIMEOUT", 300)

METRICS_PATH = os.getenv("METRICS_PATH", "/_proxy/metrics")

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
