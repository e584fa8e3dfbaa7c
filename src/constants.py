"""Constants used in the project."""

import logging
import os
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FILE_ERROR = 1
    CONNECTION_ERROR = 2
    RESOLUTION_ERROR = 3
    STALE_LOCK = 4


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    INDEX_URL = "https://pypi.org/pypi/"
    LOCKFILE_NAME = "depforge.lock"
    LOCKFILE_FORMAT_VERSION = 1
    PYPROJECT_TOML_FILE = "pyproject.toml"
    CONFIG_FILE = "depforge.yml"
    DEFAULT_GROUP = "main"
    LOG_FORMAT = "[%(levelname)s] %(message)s"
    REQUEST_TIMEOUT = 30  # Timeout in seconds for all HTTP requests

    # Retry boundary for catalog calls
    HTTP_RETRY_MAX = 3
    HTTP_RETRY_BASE_DELAY_SEC = 0.3

    # Solver tunables
    MAX_ATTEMPTS_PER_PACKAGE = 200
    FETCH_CONCURRENCY = 8
    PREFETCH_CANDIDATES = 2

    # Metadata cache
    METADATA_CACHE_TTL_SEC = 3600
    METADATA_CACHE_MAX_ENTRIES = 10000

    ENV_CONFIG = "DEPFORGE_CONFIG"
    ENV_INDEX_URL = "DEPFORGE_INDEX_URL"
    ENV_LOG_LEVEL = "DEPFORGE_LOG_LEVEL"


def _default_config_paths():
    """Candidate YAML config locations in priority order."""
    paths = []
    env_path = os.environ.get(Constants.ENV_CONFIG)
    if env_path:
        paths.append(env_path)
    paths.append(os.path.join(os.getcwd(), Constants.CONFIG_FILE))
    paths.append(os.path.join(os.path.expanduser("~"), ".config", "depforge", Constants.CONFIG_FILE))
    return paths


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load the YAML configuration.

    An explicit path must exist; otherwise the first default location found
    is used. Missing defaults yield an empty config.

    Args:
        path: Explicit config path (e.g. from --config).

    Returns:
        dict: Parsed configuration mapping.
    """
    import yaml  # pylint: disable=import-outside-toplevel

    if path:
        candidates = [path]
    else:
        candidates = [p for p in _default_config_paths() if os.path.isfile(p)]
    if not candidates:
        return {}

    chosen = candidates[0]
    with open(chosen, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {chosen} must contain a mapping")
    logger.debug("Loaded configuration from %s", chosen)
    return data


def apply_config(cfg: Dict[str, Any]) -> None:
    """Apply config sections and environment overrides onto Constants."""
    resolver = cfg.get("resolver") or {}
    if "index_url" in resolver:
        Constants.INDEX_URL = str(resolver["index_url"])
    if "max_attempts_per_package" in resolver:
        Constants.MAX_ATTEMPTS_PER_PACKAGE = int(resolver["max_attempts_per_package"])
    if "fetch_concurrency" in resolver:
        Constants.FETCH_CONCURRENCY = max(1, int(resolver["fetch_concurrency"]))
    if "prefetch_candidates" in resolver:
        Constants.PREFETCH_CANDIDATES = max(0, int(resolver["prefetch_candidates"]))
    if "lockfile" in resolver:
        Constants.LOCKFILE_NAME = str(resolver["lockfile"])

    http = cfg.get("http") or {}
    if "timeout" in http:
        Constants.REQUEST_TIMEOUT = int(http["timeout"])
    if "retry_max" in http:
        Constants.HTTP_RETRY_MAX = max(1, int(http["retry_max"]))
    if "retry_base_delay" in http:
        Constants.HTTP_RETRY_BASE_DELAY_SEC = float(http["retry_base_delay"])

    cache = cfg.get("cache") or {}
    if "ttl" in cache:
        Constants.METADATA_CACHE_TTL_SEC = int(cache["ttl"])
    if "max_entries" in cache:
        Constants.METADATA_CACHE_MAX_ENTRIES = int(cache["max_entries"])

    env_index = os.environ.get(Constants.ENV_INDEX_URL)
    if env_index and env_index.strip():
        Constants.INDEX_URL = env_index.strip()
