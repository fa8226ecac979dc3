from __future__ import annotations

import requests
from requests.adapters import HTTPAdapter, Retry

from agentext.internal_config import (
    DEFAULT_USER_AGENT,
    HTTP_RETRY_ALLOWED_METHODS,
    HTTP_RETRY_BACKOFF_FACTOR,
    HTTP_RETRY_STATUS_FORCELIST,
    HTTP_RETRY_TOTAL,
)


def create_session(user_agent: str = DEFAULT_USER_AGENT) -> requests.Session:
    """Return a requests session that retries transient server errors."""
    retry_strategy = Retry(
        total=HTTP_RETRY_TOTAL,
        backoff_factor=HTTP_RETRY_BACKOFF_FACTOR,
        status_forcelist=HTTP_RETRY_STATUS_FORCELIST,
        allowed_methods=HTTP_RETRY_ALLOWED_METHODS,
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session = requests.Session()
    session.headers.update({"User-Agent": user_agent})
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session
