"""
Microsoft Graph / Defender for Endpoint REST client.

Provides authenticated access to Microsoft Graph (v1.0 and beta) and the
Defender for Endpoint API with token caching, throttling retry, pagination
and Intune report export jobs.

Authentication uses azure-identity ClientSecretCredential:
  - Tokens are cached and refreshed 5 minutes before expiry
  - Graph and Defender use different token scopes

Throttling (HTTP 429, or an error body mentioning "throttled") is retried
according to the client's RetryPolicy. Every other non-2xx response raises
GraphError immediately, as do transport failures and undecodable bodies.
"""
import csv
import io
import logging
import time
import zipfile
from typing import Any, Callable, Dict, List, Optional

import requests
from azure.identity import ClientSecretCredential
from tenacity import RetryError

from .constants import (
    DEFAULT_EXPORT_MAX_POLLS,
    DEFAULT_EXPORT_POLL_INTERVAL,
    DEFENDER_BASE_URL,
    DEFENDER_SCOPE,
    GRAPH_API_VERSION,
    GRAPH_BASE_URL,
    GRAPH_BETA_VERSION,
    GRAPH_PERMISSION_ERROR_CODES,
    GRAPH_SCOPE,
    HTTP_TIMEOUT_SECS,
    PERMISSION_HINTS,
    PERMISSION_MESSAGE_PATTERNS,
    TOKEN_REFRESH_BUFFER_SECS,
)
from .utils import RetryPolicy

logger = logging.getLogger(__name__)


# =============================================================================
# Errors
# =============================================================================

class GraphError(Exception):
    """A non-successful response from Graph or the Defender API."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 code: Optional[str] = None, url: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.url = url

    def __str__(self) -> str:
        parts = []
        if self.status_code:
            parts.append(f"HTTP {self.status_code}")
        if self.code:
            parts.append(self.code)
        prefix = " ".join(parts)
        return f"{prefix}: {self.message}" if prefix else self.message


class ThrottledError(GraphError):
    """Request rejected by the service's rate limiter."""

    def __init__(self, message: str, status_code: Optional[int] = 429,
                 code: Optional[str] = None, url: Optional[str] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message, status_code=status_code, code=code, url=url)
        self.retry_after = retry_after


class RetryExhaustedError(GraphError):
    """Throttling persisted beyond the retry policy's attempt limit."""

    def __init__(self, attempts: int, last_error: BaseException, url: Optional[str] = None):
        super().__init__(
            f"retry exhausted after {attempts} attempts: {last_error}",
            status_code=getattr(last_error, 'status_code', None),
            code=getattr(last_error, 'code', None),
            url=url,
        )
        self.attempts = attempts
        self.last_error = last_error


class ExportTimeoutError(GraphError):
    """Report export job did not complete within its polling window."""


def is_throttle_response(status_code: int, body: str) -> bool:
    """Return True if a response signals throttling."""
    return status_code == 429 or 'throttl' in (body or '').lower()


def is_permission_error(exc: BaseException) -> bool:
    """
    Return True if the error indicates missing permissions or licensing.

    These are not retried; the collector reports them with a hint.
    """
    if isinstance(exc, GraphError):
        if exc.status_code in (401, 403):
            return True
        if exc.code in GRAPH_PERMISSION_ERROR_CODES:
            return True
    message = str(exc).lower()
    return any(pattern in message for pattern in PERMISSION_MESSAGE_PATTERNS)


def permission_hint(exc: BaseException) -> Optional[str]:
    """Map a permission/licensing failure to an operator hint."""
    if not is_permission_error(exc):
        return None
    url = (getattr(exc, 'url', None) or '').lower()
    for fragment, hint in PERMISSION_HINTS:
        if fragment.lower() in url:
            return hint
    return "check the app registration's API permissions and admin consent"


# =============================================================================
# Pagination
# =============================================================================

class PagedList(list):
    """
    Items gathered across pages, with what the server said about the total.

    truncated is True when a page cap stopped pagination while a next link
    was still outstanding. total_count carries @odata.count from the first
    page when the request asked for it ($count=true), otherwise None.
    """

    def __init__(self, items=(), truncated: bool = False, total_count: Optional[int] = None):
        super().__init__(items)
        self.truncated = truncated
        self.total_count = total_count


def collect_all_pages(first_page: Dict[str, Any],
                      fetch_next: Callable[[str], Dict[str, Any]],
                      max_pages: Optional[int] = None,
                      label: str = "") -> PagedList:
    """Collect all items from a paginated Graph response.

    Follows @odata.nextLink until no link is present. A page with zero items
    does not end pagination while a next link is still returned.

    Args:
        first_page: The first decoded response
        fetch_next: Function that fetches a next link and returns the decoded page
        max_pages: Stop after this many pages (None for no limit)
        label: Name used in log messages

    Returns:
        PagedList of all items from all pages, in server order
    """
    all_items = PagedList(total_count=_odata_count(first_page))
    page = first_page
    pages = 0

    while page is not None:
        pages += 1
        items = page.get('value')
        if items is None:
            items = page.get('Value')
        if items:
            all_items.extend(items)

        next_link = page.get('@odata.nextLink') or page.get('odata.nextLink')
        if not next_link:
            break
        if max_pages is not None and pages >= max_pages:
            logger.info(f"Page limit ({max_pages}) reached for {label or 'request'}; "
                        f"returning first {len(all_items)} items")
            all_items.truncated = True
            break
        page = fetch_next(next_link)

    return all_items


# =============================================================================
# Client
# =============================================================================

class GraphClient:
    """REST client for Microsoft Graph or the Defender for Endpoint API."""

    def __init__(self, credential, base_url: str = GRAPH_BASE_URL, scope: str = GRAPH_SCOPE,
                 api_version: str = GRAPH_API_VERSION, retry_policy: Optional[RetryPolicy] = None,
                 session: Optional[requests.Session] = None):
        self.credential = credential
        self.base_url = base_url.rstrip('/')
        self.scope = scope
        self.api_version = api_version
        self.retry_policy = retry_policy or RetryPolicy()
        self.session = session or requests.Session()

        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    # -------------------------------------------------------------------------
    # Token management
    # -------------------------------------------------------------------------

    def _get_token(self) -> str:
        """Obtain or refresh the bearer token."""
        now = time.time()
        if self._access_token and now < self._token_expires_at:
            return self._access_token

        token = self.credential.get_token(self.scope)
        self._access_token = token.token
        self._token_expires_at = token.expires_on - TOKEN_REFRESH_BUFFER_SECS
        return self._access_token

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            'Authorization': f"Bearer {self._get_token()}",
            'Content-Type': 'application/json',
        }
        if extra:
            headers.update(extra)
        return headers

    def _url(self, path: str, beta: bool = False) -> str:
        if path.startswith('http://') or path.startswith('https://'):
            return path
        version = GRAPH_BETA_VERSION if beta else self.api_version
        if version:
            return f"{self.base_url}/{version}/{path.lstrip('/')}"
        return f"{self.base_url}/{path.lstrip('/')}"

    # -------------------------------------------------------------------------
    # Core HTTP
    # -------------------------------------------------------------------------

    def _send(self, method: str, url: str, params: Optional[Dict[str, Any]],
              body: Optional[Any], headers: Optional[Dict[str, str]]) -> Dict[str, Any]:
        try:
            resp = self.session.request(
                method, url,
                params=params,
                json=body,
                headers=self._headers(headers),
                timeout=HTTP_TIMEOUT_SECS,
            )
        except requests.RequestException as e:
            raise GraphError(str(e), url=url) from e

        if resp.status_code >= 400:
            text = resp.text or ''
            code, message = _parse_error(resp)
            if is_throttle_response(resp.status_code, text):
                raise ThrottledError(message, status_code=resp.status_code, code=code, url=url,
                                     retry_after=_parse_retry_after(resp))
            if resp.status_code == 401:
                # Force a fresh token on the next call
                self._access_token = None
            raise GraphError(message, status_code=resp.status_code, code=code, url=url)

        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise GraphError(f"invalid JSON response: {e}", status_code=resp.status_code, url=url) from e

    def request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                body: Optional[Any] = None, headers: Optional[Dict[str, str]] = None,
                beta: bool = False) -> Dict[str, Any]:
        """
        Execute a request with throttling retry and return the decoded body.

        Raises:
            RetryExhaustedError: throttling persisted through every attempt
            GraphError: any other non-2xx response
        """
        url = self._url(path, beta)
        # Next links already carry their query string
        send_params = None if url == path else params

        retrying = self.retry_policy.retrying((ThrottledError,))
        try:
            return retrying(self._send, method, url, send_params, body, headers)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            raise RetryExhaustedError(e.last_attempt.attempt_number, last_error, url=url) from last_error

    def get(self, path: str, params: Optional[Dict[str, Any]] = None,
            headers: Optional[Dict[str, str]] = None, beta: bool = False) -> Dict[str, Any]:
        return self.request('GET', path, params=params, headers=headers, beta=beta)

    def post(self, path: str, body: Optional[Any] = None, beta: bool = False) -> Dict[str, Any]:
        return self.request('POST', path, body=body, beta=beta)

    def get_all(self, path: str, params: Optional[Dict[str, Any]] = None,
                max_pages: Optional[int] = None, headers: Optional[Dict[str, str]] = None,
                beta: bool = False) -> PagedList:
        """Fetch a list endpoint and follow next links."""
        first = self.get(path, params=params, headers=headers, beta=beta)
        return collect_all_pages(
            first,
            lambda link: self.get(link, headers=headers),
            max_pages=max_pages,
            label=path,
        )

    # -------------------------------------------------------------------------
    # Intune report export jobs
    # -------------------------------------------------------------------------

    def run_export_job(self, report_name: str, select: Optional[List[str]] = None,
                       filter: Optional[str] = None,
                       poll_interval: float = DEFAULT_EXPORT_POLL_INTERVAL,
                       max_polls: int = DEFAULT_EXPORT_MAX_POLLS) -> List[Dict[str, str]]:
        """
        Create an Intune report export job, wait for it and return its rows.

        Raises:
            ExportTimeoutError: job still running after max_polls checks
            GraphError: job reported failure or the download failed
        """
        body: Dict[str, Any] = {'reportName': report_name, 'format': 'csv'}
        if select:
            body['select'] = select
        if filter:
            body['filter'] = filter

        job = self.post('deviceManagement/reports/exportJobs', body=body, beta=True)
        job_id = job.get('id')
        logger.debug(f"Export job {report_name} created: {job_id}")

        for _ in range(max_polls):
            status = (job.get('status') or '').lower()
            if status == 'completed':
                return self._download_export(job.get('url'))
            if status == 'failed':
                raise GraphError(f"export job {report_name} failed", code='exportFailed',
                                 url=self._url('deviceManagement/reports/exportJobs', beta=True))
            self.retry_policy.sleep(poll_interval)
            job = self.get(f"deviceManagement/reports/exportJobs('{job_id}')", beta=True)

        if (job.get('status') or '').lower() == 'completed':
            return self._download_export(job.get('url'))
        raise ExportTimeoutError(f"export job {report_name} not complete after {max_polls} polls",
                                 url=self._url('deviceManagement/reports/exportJobs', beta=True))

    def _download_export(self, url: Optional[str]) -> List[Dict[str, str]]:
        if not url:
            raise GraphError("export job completed without a download URL")
        # Pre-signed storage URL; no bearer token
        try:
            resp = self.session.get(url, timeout=HTTP_TIMEOUT_SECS)
        except requests.RequestException as e:
            raise GraphError(f"export download failed: {e}", url=url) from e
        if resp.status_code >= 400:
            raise GraphError("export download failed", status_code=resp.status_code, url=url)
        try:
            return parse_export_archive(resp.content)
        except (zipfile.BadZipFile, csv.Error, UnicodeDecodeError) as e:
            raise GraphError(f"export archive unreadable: {e}", code='exportUnreadable', url=url) from e


def parse_export_archive(content: bytes) -> List[Dict[str, str]]:
    """Parse the CSV inside an export job ZIP into row dicts."""
    rows: List[Dict[str, str]] = []
    with zipfile.ZipFile(io.BytesIO(content)) as archive:
        for name in archive.namelist():
            if not name.lower().endswith('.csv'):
                continue
            with archive.open(name) as raw:
                reader = csv.DictReader(io.TextIOWrapper(raw, encoding='utf-8-sig'))
                rows.extend(dict(row) for row in reader)
    return rows


def _parse_error(resp: requests.Response):
    """Extract (code, message) from a Graph or Defender error body."""
    try:
        data = resp.json()
    except ValueError:
        return None, (resp.text or resp.reason or 'request failed')[:500]
    error = data.get('error') if isinstance(data, dict) else None
    if isinstance(error, dict):
        return error.get('code'), error.get('message') or resp.reason or 'request failed'
    return None, (resp.text or resp.reason or 'request failed')[:500]


def _odata_count(page: Dict[str, Any]) -> Optional[int]:
    value = page.get('@odata.count') if isinstance(page, dict) else None
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def _parse_retry_after(resp: requests.Response) -> Optional[float]:
    value = resp.headers.get('Retry-After')
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


# =============================================================================
# Client factories
# =============================================================================

def get_graph_client(tenant_id: str, client_id: str, client_secret: str,
                     retry_policy: Optional[RetryPolicy] = None) -> GraphClient:
    """Create a Microsoft Graph client."""
    credential = ClientSecretCredential(
        tenant_id=tenant_id,
        client_id=client_id,
        client_secret=client_secret
    )
    return GraphClient(credential, retry_policy=retry_policy)


def get_defender_client(tenant_id: str, client_id: str, client_secret: str,
                        retry_policy: Optional[RetryPolicy] = None) -> GraphClient:
    """Create a Defender for Endpoint API client."""
    credential = ClientSecretCredential(
        tenant_id=tenant_id,
        client_id=client_id,
        client_secret=client_secret
    )
    return GraphClient(credential, base_url=DEFENDER_BASE_URL, scope=DEFENDER_SCOPE,
                       api_version="", retry_policy=retry_policy)
