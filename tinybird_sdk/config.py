from os import environ

from tinybird_sdk import __cli__

DEFAULT_API_HOST = "https://api.tinybird.co"
LOCAL_BASE_URL = "http://localhost:7181"
CURRENT_VERSION = f"{__cli__.__version__}"

# Every request is tagged with this value so the server can attribute traffic to this SDK
CLIENT_FROM_PARAM = "py-sdk"

DEFAULT_TIMEOUT_SECONDS = 30.0
LOCAL_HEALTH_TIMEOUT_SECONDS = 5.0

DEFAULT_POLL_MAX_ATTEMPTS = 120
DEFAULT_POLL_INTERVAL_SECONDS = 1.0

MAIN_GIT_BRANCHES = ("main", "master")


class FeatureFlags:
    @classmethod
    def ignore_ssl_errors(cls) -> bool:
        return environ.get("TB_DISABLE_SSL_CHECKS", "0").lower() in ("1", "true")

    @classmethod
    def debug(cls) -> bool:
        return environ.get("TINYBIRD_DEBUG", "").lower() not in ("", "0", "false")
