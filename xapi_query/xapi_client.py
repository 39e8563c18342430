"""
xAPI LRS REST API Client
─────────────────────────────────────────────────────────────────────────────
Standard xAPI statements resource:

    GET <endpoint>/statements?verb=...&since=...
    Response: { "statements": [...], "more": "/statements?..." }

Pagination follows the "more" link until it is empty. Some stores nest the
link (e.g. "pagination.more"), so its location is a dotted path.

Auth: Basic Auth or Bearer token
"""

from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import DEFAULT_XAPI_VERSION, Connection
from .errors import HttpError, StoreUnreachableError

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 500
DEFAULT_TIMEOUT = 120
MAX_STATEMENTS = 50_000
RATE_LIMIT_SLEEP = 0.1


def _iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _dig(body: Any, path: str) -> Any:
    current = body
    for key in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


class XAPIClient:
    """
    Client for one standard xAPI LRS endpoint.
    """

    def __init__(
        self,
        endpoint: str,
        username: str = "",
        password: str = "",
        token: str = "",
        version: str = DEFAULT_XAPI_VERSION,
        more_attribute: str = "more",
        timeout: int = DEFAULT_TIMEOUT,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_retries: int = 3,
        rate_limit_sleep: float = RATE_LIMIT_SLEEP,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.username = username or os.getenv("LRS_USERNAME", "")
        self.password = password or os.getenv("LRS_PASSWORD", "")
        self.token = token or os.getenv("LRS_TOKEN", "")
        self.version = version
        self.more_attribute = more_attribute or "more"
        self.timeout = timeout
        self.page_size = page_size
        self.rate_limit_sleep = rate_limit_sleep

        self.session = requests.Session()
        retry = Retry(
            total=max_retries,
            backoff_factor=1.0,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
            respect_retry_after_header=True,
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)
        self.session.headers.update({
            "X-Experience-API-Version": self.version,
            "Accept": "application/json",
        })
        if self.token:
            self.session.headers["Authorization"] = f"Bearer {self.token}"
        elif self.username:
            self.session.auth = (self.username, self.password)

    @classmethod
    def from_connection(cls, connection: Connection, **kwargs) -> "XAPIClient":
        return cls(
            endpoint=connection.url,
            username=connection.username,
            password=connection.password,
            version=connection.version,
            more_attribute=connection.more_attribute,
            **kwargs,
        )

    def _statements_url(self) -> str:
        if self.endpoint.endswith("statements"):
            return self.endpoint
        return self.endpoint + "/statements"

    def _get(self, url: str, params: Optional[Dict] = None, timeout: Optional[int] = None) -> Dict:
        try:
            resp = self.session.get(url, params=params, timeout=timeout or self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"Request to {url} failed: {e}")
            raise StoreUnreachableError(f"LRS unreachable at {url}: {e}") from e

        logger.debug(f"GET {resp.url} -> {resp.status_code}")
        if not resp.ok:
            try:
                body = resp.json()
            except ValueError:
                body = resp.text
            raise HttpError(
                f"LRS request failed ({resp.status_code}): {body!r}",
                status=resp.status_code,
                body=body,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise HttpError(
                f"LRS returned a non-JSON body ({resp.status_code})",
                status=resp.status_code,
                body=resp.text,
            ) from e

    def fetch_statements(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        verb: Optional[str] = None,
        activity: Optional[str] = None,
        max_statements: Optional[int] = None,
        progress_cb: Optional[Callable[[int, int], None]] = None,
        **extra_params,
    ) -> List[Dict]:
        """Fetch every page of the statements resource matching the filters."""
        params: Dict[str, Any] = {"limit": self.page_size, "ascending": "true"}
        if since:
            params["since"] = _iso(since)
        if until:
            params["until"] = _iso(until)
        if verb:
            params["verb"] = verb
        if activity:
            params["activity"] = activity
        params.update(extra_params)

        url: Optional[str] = self._statements_url()
        current_params: Optional[Dict] = params
        all_statements: List[Dict] = []
        page_num = 0

        logger.info(f"Fetching statements from {url} (verb={verb})")
        while url:
            page_num += 1
            body = self._get(url, params=current_params)

            page = body.get("statements", []) if isinstance(body, dict) else []
            all_statements.extend(page)
            fetched = len(all_statements)

            if progress_cb:
                progress_cb(fetched, fetched)
            logger.debug(f"Page {page_num}: got {len(page)}, total={fetched}")

            more = _dig(body, self.more_attribute)
            if more:
                url = urljoin(self.endpoint + "/", more)
                current_params = None
            else:
                url = None

            if not page:
                break
            if max_statements and fetched >= max_statements:
                logger.info(f"Cap reached: {max_statements}")
                all_statements = all_statements[:max_statements]
                break
            if url:
                time.sleep(self.rate_limit_sleep)

        logger.info(f"Total fetched: {len(all_statements):,} statements")
        return all_statements

    def fetch_statement(self, statement_id: str) -> Dict:
        return self._get(self._statements_url(), params={"statementId": statement_id})

    def ping(self) -> bool:
        try:
            self._get(self._statements_url(), params={"limit": 1}, timeout=10)
            return True
        except (HttpError, StoreUnreachableError):
            return False

    def get_lrs_info(self) -> Dict:
        return {
            "endpoint": self.endpoint,
            "version": self.version,
            "connected": self.ping(),
            "auth": "bearer" if self.token else ("basic" if self.username else "none"),
        }
