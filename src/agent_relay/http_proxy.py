"""HTTP proxy preprocessing for prompts.

The agent runs with a narrow tool allow-list, so URLs and ``curl`` commands in
the user's prompt are fetched here and their responses inlined before the
prompt is sent. Fetching arbitrary user-supplied URLs is a policy decision:
``RelayConfig.http_proxy_enabled`` turns it off and
``RelayConfig.http_allowed_hosts`` restricts it to known hosts.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from urllib.parse import urlparse

import httpx
import structlog

from agent_relay._common import strip_control_chars
from agent_relay.errors import HttpFetchError

logger = structlog.get_logger(__name__)

USER_AGENT = "agent-relay/1.0"
MAX_BODY_BYTES = 1024 * 1024
DEFAULT_PREVIEW_CHARS = 2000

HTTP_NOTE = "[Note: HTTP requests have been executed by the bot and their responses are included below]\n\n"

_CURL_RE = re.compile(r"""curl\s+(?:-[a-zA-Z]*\s+)*["']?(https?://[^\s"']+)["']?""", re.IGNORECASE)
_URL_RE = re.compile(r"""\b(https?://[^\s<>"{}|\\^`\[\]]+)""", re.IGNORECASE)


@dataclass(frozen=True)
class HttpRequestMatch:
    url: str
    start: int
    end: int

    def original(self, text: str) -> str:
        return text[self.start:self.end]


@dataclass(frozen=True)
class HttpResponse:
    status_code: int
    reason: str
    headers: dict[str, str]
    body: str
    url: str


def find_http_requests(text: str) -> list[HttpRequestMatch]:
    """URLs to fetch, curl invocations first.

    Each URL is fetched at most once, and a match overlapping an earlier
    one (the URL inside a curl command) is dropped.
    """
    found: list[HttpRequestMatch] = []
    seen: set[str] = set()
    for pattern in (_CURL_RE, _URL_RE):
        for match in pattern.finditer(text):
            url = match.group(1)
            if not url.startswith("http") or url in seen:
                continue
            if any(match.start() < f.end and f.start < match.end() for f in found):
                continue
            seen.add(url)
            found.append(HttpRequestMatch(url=url, start=match.start(), end=match.end()))
    return found


def is_host_allowed(url: str, allowed_hosts: list[str] | None) -> bool:
    if not allowed_hosts:
        return True
    host = (urlparse(url).hostname or "").lower()
    for allowed in allowed_hosts:
        allowed = allowed.lower().lstrip(".")
        if host == allowed or host.endswith("." + allowed):
            return True
    return False


async def execute_http_request(
    url: str,
    *,
    method: str = "GET",
    headers: dict[str, str] | None = None,
    body: str | bytes | None = None,
    timeout: float = 30.0,
    client: httpx.AsyncClient | None = None,
) -> HttpResponse:
    """Perform one request and return the (size-capped) decoded response.

    Raises HttpFetchError on invalid URLs, timeouts and transport errors.
    """
    request_headers = {"User-Agent": USER_AGENT, **(headers or {})}
    logger.info("http_request", method=method, url=url)

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=timeout)
    try:
        async with client.stream(method, url, headers=request_headers, content=body, timeout=timeout) as response:
            chunks: list[bytes] = []
            total = 0
            async for chunk in response.aiter_bytes():
                chunks.append(chunk)
                total += len(chunk)
                if total >= MAX_BODY_BYTES:
                    break
            raw = b"".join(chunks)[:MAX_BODY_BYTES]
            text = raw.decode(response.encoding or "utf-8", errors="replace")
            result = HttpResponse(
                status_code=response.status_code,
                reason=response.reason_phrase,
                headers=dict(response.headers),
                body=text,
                url=url,
            )
    except httpx.TimeoutException as exc:
        logger.error("http_request_timeout", url=url)
        raise HttpFetchError(url, "HTTP request timeout") from exc
    except httpx.HTTPError as exc:
        logger.error("http_request_failed", url=url, error=str(exc))
        raise HttpFetchError(url, f"HTTP request failed: {exc}") from exc
    except (httpx.InvalidURL, ValueError) as exc:
        raise HttpFetchError(url, f"Invalid URL or request: {exc}") from exc
    finally:
        if owns_client:
            await client.aclose()

    logger.info("http_response", url=url, status=result.status_code, reason=result.reason)
    return result


def format_response_block(response: HttpResponse, *, preview_chars: int = DEFAULT_PREVIEW_CHARS) -> str:
    body = strip_control_chars(response.body)
    preview = body if len(body) <= preview_chars else body[:preview_chars] + "\n... (truncated)"
    content_type = response.headers.get("content-type", "unknown")
    return (
        f"\n\n[HTTP Response from {response.url}]\n"
        f"Status: {response.status_code} {response.reason}\n"
        f"Content-Type: {content_type}\n"
        f"Content-Length: {len(body)} bytes\n\n"
        f"Response Body:\n{preview}\n"
        "[End of HTTP Response]\n\n"
    )


def format_error_block(url: str, message: str) -> str:
    return f"\n\n[HTTP Request Error for {url}]\nError: {message}\n[End of Error]\n\n"


async def preprocess_http_requests(
    text: str,
    *,
    timeout: float = 30.0,
    preview_chars: int = DEFAULT_PREVIEW_CHARS,
    allowed_hosts: list[str] | None = None,
    client: httpx.AsyncClient | None = None,
) -> str:
    """Fetch every URL in ``text`` and inline the responses.

    Each matched span (a curl command or a bare URL) is replaced by a
    response or error block. Control bytes are always stripped from the
    result.
    """
    requests = find_http_requests(text)
    if not requests:
        return strip_control_chars(text)

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=timeout)
    replacements: list[tuple[HttpRequestMatch, str]] = []
    try:
        for req in requests:
            logger.info("http_proxy_detected", url=req.url)
            if not is_host_allowed(req.url, allowed_hosts):
                logger.warning("http_proxy_host_blocked", url=req.url)
                replacements.append((req, format_error_block(req.url, "Host is not in the allow-list")))
                continue
            try:
                response = await execute_http_request(req.url, timeout=timeout, client=client)
            except HttpFetchError as exc:
                logger.error("http_proxy_fetch_failed", url=req.url, error=exc.reason)
                replacements.append((req, format_error_block(req.url, exc.reason)))
                continue
            replacements.append((req, format_response_block(response, preview_chars=preview_chars)))
    finally:
        if owns_client:
            await client.aclose()

    # Splice by position so inserted bodies are never themselves rewritten.
    out: list[str] = []
    cursor = 0
    for req, block in sorted(replacements, key=lambda item: item[0].start):
        if req.start < cursor:
            continue
        out.append(text[cursor:req.start])
        out.append(block)
        cursor = req.end
    out.append(text[cursor:])

    logger.info("http_proxy_processed", count=len(requests))
    return strip_control_chars(HTTP_NOTE + "".join(out))
