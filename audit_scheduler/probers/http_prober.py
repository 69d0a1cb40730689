"""
HTTP reachability prober built on requests.
"""

import time
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter

from audit_scheduler.utils.errors import ProbeError, ProbeTimeoutError
from .base import BaseProber, ProbeContext


DEFAULT_USER_AGENT = "audit-scheduler/1.0"


class HttpStatusProber(BaseProber):
    """
    Fetches a URL and reports its status.

    Retries are left to the task queue, so the session adapter never
    retries on its own.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__("http", config)
        self.timeout = float(self.config.get("timeout", 30.0))
        self.success_statuses: List[int] = list(self.config.get("success_statuses", range(200, 400)))
        self.allow_redirects = bool(self.config.get("allow_redirects", True))
        self.user_agent = self.config.get("user_agent", DEFAULT_USER_AGENT)
        self.pool_size = int(self.config.get("pool_size", 10))
        self.session: Optional[requests.Session] = None

    def initialize(self) -> None:
        """Create the pooled session shared by all workers."""
        session = requests.Session()
        adapter = HTTPAdapter(pool_connections=self.pool_size, pool_maxsize=self.pool_size, max_retries=0)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.headers.update({"User-Agent": self.user_agent})
        self.session = session
        self.logger.info(f"HTTP prober initialized (timeout={self.timeout}s, pool={self.pool_size})")

    def cleanup(self) -> None:
        if self.session is not None:
            self.session.close()
            self.session = None

    def _request_timeout(self, context: ProbeContext) -> float:
        remaining = context.remaining()
        if remaining is None:
            return self.timeout
        return max(0.1, min(self.timeout, remaining))

    def probe(self, url: str, context: ProbeContext) -> Dict[str, Any]:
        """
        GET the URL.

        Returns:
            Dictionary with status_code, ok, elapsed, content_length, final_url

        Raises:
            ProbeError: On connection errors or a non-success status
            ProbeTimeoutError: If the request times out
        """
        if self.session is None:
            self.initialize()
        context.raise_if_cancelled()

        started = time.monotonic()
        try:
            response = self.session.get(
                url,
                timeout=self._request_timeout(context),
                allow_redirects=self.allow_redirects,
                stream=True,
            )
        except requests.Timeout as e:
            raise ProbeTimeoutError(f"Request to {url} timed out", {"url": url, "error": str(e)})
        except requests.RequestException as e:
            raise ProbeError(f"Request to {url} failed: {e}", {"url": url})

        try:
            elapsed = time.monotonic() - started
            content_length = response.headers.get("Content-Length")
            result = {
                "url": url,
                "status_code": response.status_code,
                "ok": response.status_code in self.success_statuses,
                "elapsed": round(elapsed, 3),
                "content_length": int(content_length) if content_length and content_length.isdigit() else None,
                "final_url": response.url,
            }
        finally:
            response.close()

        if not result["ok"]:
            raise ProbeError(
                f"HTTP {result['status_code']} for {url}",
                {"url": url, "status_code": result["status_code"]}
            )

        self.logger.debug(f"Probed {url}: HTTP {result['status_code']} in {result['elapsed']}s")
        return result
