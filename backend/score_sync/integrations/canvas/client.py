"""
Canvas LMS REST and GraphQL client.
"""

import asyncio
import re
import aiohttp
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import urljoin

from score_sync.core.config import settings
from score_sync.core.errors import (
    FatalRemoteError, RetryConfig, TransientRemoteError, retry_on_error
)


logger = logging.getLogger(__name__)

Params = Union[Mapping[str, Any], Sequence[Tuple[str, Any]], None]

PER_PAGE = 100
_NEXT_LINK = re.compile(r'<([^>]+)>\s*;\s*rel="next"')


def parse_next_link(link_header: Optional[str]) -> Optional[str]:
    """Return the rel="next" URL of a Link header, if any."""
    if not link_header:
        return None
    for part in link_header.split(','):
        match = _NEXT_LINK.search(part)
        if match:
            return match.group(1)
    return None


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def raise_for_status(status: int, body: str, headers: Optional[Mapping[str, str]] = None,
                     context: str = "request") -> None:
    """
    Map an HTTP status onto the error taxonomy.

    429 and 5xx are transient; every other status >= 400 is fatal.
    """
    if status < 400:
        return
    message = f"[{context}] Canvas request failed: {status} - {body[:500]}"
    if status == 429 or status >= 500:
        retry_after = _parse_retry_after((headers or {}).get('Retry-After'))
        raise TransientRemoteError(message, status_code=status, retry_after=retry_after)
    raise FatalRemoteError(message, status_code=status)


def _with_per_page(params: Params) -> List[Tuple[str, Any]]:
    if params is None:
        items: List[Tuple[str, Any]] = []
    elif isinstance(params, Mapping):
        items = list(params.items())
    else:
        items = list(params)
    if not any(key == 'per_page' for key, _ in items):
        items.append(('per_page', PER_PAGE))
    return items


class CanvasClient:
    """
    Thin async client over the Canvas REST API and GraphQL endpoint.

    Use as an async context manager; the aiohttp session lives for the
    duration of the block. GET requests are retried on transient errors,
    writes are never retried here.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout: Optional[float] = None,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.base_url = (base_url or settings.CANVAS_BASE_URL).rstrip('/') + '/'
        self.api_token = api_token if api_token is not None else settings.CANVAS_API_TOKEN
        self.timeout = timeout or settings.CANVAS_TIMEOUT_SECONDS
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=1.0, max_delay=30.0)
        self._http_session = session
        self._owns_session = session is None
        self.total_api_calls = 0

    async def __aenter__(self):
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={
                    'User-Agent': 'Outcome-Score-Sync/1.0',
                    'Accept': 'application/json',
                    'Authorization': f"Bearer {self.api_token}",
                }
            )
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._http_session and self._owns_session:
            await self._http_session.close()
            self._http_session = None

    def _url(self, path: str) -> str:
        if path.startswith('http://') or path.startswith('https://'):
            return path
        return urljoin(self.base_url, path.lstrip('/'))

    async def _request(
        self,
        method: str,
        path: str,
        params: Params = None,
        json: Any = None,
        data: Any = None,
        headers: Optional[Dict[str, str]] = None,
        context: str = "request"
    ) -> Tuple[Any, Mapping[str, str]]:
        """Send one request and return the decoded body with the response headers."""
        if not self._http_session:
            raise RuntimeError("HTTP session not initialized")

        url = self._url(path)
        self.total_api_calls += 1
        logger.debug(f"[{context}] {method} {url}")

        try:
            async with self._http_session.request(
                method,
                url,
                params=params,
                json=json,
                data=data,
                headers=headers
            ) as response:
                body = await response.text()
                raise_for_status(response.status, body, response.headers, context)
                if not body:
                    return None, response.headers
                try:
                    return await response.json(content_type=None), response.headers
                except ValueError as e:
                    raise FatalRemoteError(
                        f"[{context}] Canvas returned invalid JSON: {e}", status_code=response.status
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientRemoteError(f"[{context}] Network error talking to Canvas: {e}")

    async def get(self, path: str, params: Params = None, context: str = "get") -> Any:
        async def _get():
            body, _ = await self._request('GET', path, params=_with_per_page(params), context=context)
            return body

        return await retry_on_error(_get, self.retry_config)

    async def get_all_pages(self, path: str, params: Params = None, merge_key: Optional[str] = None,
                            context: str = "get_all_pages") -> Any:
        """
        Follow Link headers and concatenate every page.

        List endpoints return the concatenated list. Object endpoints return
        the first page as-is, with ``merge_key``'s list extended by the
        same key of every later page when a key is given.
        """
        items: List[Any] = []
        first_object: Optional[Dict[str, Any]] = None
        url: Optional[str] = path
        page_params: Params = _with_per_page(params)
        page_count = 0

        while url:
            page_count += 1

            async def _get_page(page_url=url, query=page_params):
                return await self._request('GET', page_url, params=query, context=context)

            body, headers = await retry_on_error(_get_page, self.retry_config)
            if isinstance(body, list):
                items.extend(body)
            elif merge_key is None or not isinstance(body, dict):
                return body
            else:
                if first_object is None:
                    first_object = body
                items.extend(body.get(merge_key) or [])

            url = parse_next_link(headers.get('Link'))
            # the next link already carries the query string
            page_params = None

        logger.debug(f"[{context}] Fetched {len(items)} items in {page_count} pages")
        if first_object is not None:
            return {**first_object, merge_key: items}
        return items

    async def post(self, path: str, json: Any = None, data: Any = None,
                   content_type: Optional[str] = None, context: str = "post") -> Any:
        headers = {'Content-Type': content_type} if content_type else None
        body, _ = await self._request('POST', path, json=json, data=data, headers=headers, context=context)
        return body

    async def put(self, path: str, json: Any = None, context: str = "put") -> Any:
        body, _ = await self._request('PUT', path, json=json, context=context)
        return body

    async def graphql(self, query: str, variables: Optional[Dict[str, Any]] = None,
                      context: str = "graphql") -> Dict[str, Any]:
        body, _ = await self._request(
            'POST',
            '/api/graphql',
            json={'query': query, 'variables': variables or {}},
            context=context
        )
        body = body or {}
        if body.get('errors'):
            raise FatalRemoteError(f"[{context}] GraphQL error: {body['errors']}")
        return body
