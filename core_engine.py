import os
import ssl
import json
import time
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterator, List, NamedTuple, Optional
from urllib.parse import quote

import aiohttp
import certifi
import requests
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, stop_never

from config import settings
from data_extract import (
    InputSource,
    collect_document_urns,
    write_custom_attributes_csv,
    write_documents_csv,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------
# ERRORS
# ---------------------------------------------------------

class AccExtractError(Exception):
    """Base class for extract failures."""


class AuthError(AccExtractError):
    """Client credentials could not be exchanged for an access token."""


class ApiError(AccExtractError):
    """Non-2xx response from the ACC API."""

    def __init__(self, status: int, method: str, path: str, body: Any = None):
        self.status = status
        self.method = method
        self.path = path
        self.body = body
        super().__init__(f"{method} {path} failed (Status {status}): {body}")


class RateLimited(ApiError):
    """HTTP 429 carrying a retry-after header."""

    def __init__(self, retry_after: float, method: str, path: str, body: Any = None):
        super().__init__(429, method, path, body)
        self.retry_after = retry_after


class ChunkFetchError(AccExtractError):
    """A 2xx response whose body reports errors or has an unexpected shape."""

    def __init__(self, message: str, errors: Any = None):
        self.errors = errors
        super().__init__(f"{message}: {errors}" if errors else message)


# ---------------------------------------------------------
# SECTION 1: CREDENTIAL PROVIDER
# ---------------------------------------------------------

class TokenProvider:
    """Two-legged APS token, fetched lazily and cached for the process run."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        scopes: Optional[List[str]] = None,
        token_url: Optional[str] = None,
        timeout: int = 30
    ):
        self.client_id = settings.APS_CLIENT_ID if client_id is None else client_id
        self.client_secret = settings.APS_CLIENT_SECRET if client_secret is None else client_secret
        self.scopes = list(settings.APS_SCOPES if scopes is None else scopes)
        self.token_url = settings.token_url if token_url is None else token_url
        self.timeout = timeout
        self._access_token: Optional[str] = None

    @property
    def has_token(self) -> bool:
        return self._access_token is not None

    def build_payload(self) -> str:
        """Form body; scopes are joined with a literal %20."""
        scope = "%20".join(self.scopes)
        return (
            f"client_id={quote(self.client_id, safe='')}"
            f"&client_secret={quote(self.client_secret, safe='')}"
            f"&grant_type=client_credentials"
            f"&scope={scope}"
        )

    def fetch_token(self) -> str:
        """Exchange client id/secret for a bearer token (blocking)."""
        if not self.client_id or not self.client_secret:
            raise AuthError("APS_CLIENT_ID and APS_CLIENT_SECRET must be set")

        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json"
        }
        try:
            r = requests.post(self.token_url, data=self.build_payload(), headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise AuthError(f"Token request failed: {type(e).__name__}: {e}") from e

        if not 200 <= r.status_code < 300:
            raise AuthError(f"Token request failed (Status {r.status_code}): {r.text}")

        try:
            data = r.json()
        except ValueError as e:
            raise AuthError("Token response is not valid JSON") from e

        token = data.get("access_token") if isinstance(data, dict) else None
        if not token or not isinstance(token, str):
            raise AuthError("Token response has no access_token")
        return token

    async def get_token(self) -> str:
        if self._access_token is None:
            self._access_token = await asyncio.to_thread(self.fetch_token)
            logger.info("Obtained APS access token")
        return self._access_token


# ---------------------------------------------------------
# SECTION 2: RATE-LIMITED ACC API CLIENT
# ---------------------------------------------------------

class RequestSpec(NamedTuple):
    """Everything needed to issue (and re-issue) one API request."""
    method: str
    path: str
    headers: Optional[Dict[str, str]] = None
    json: Any = None
    params: Optional[Dict[str, Any]] = None


def create_ssl_context() -> ssl.SSLContext:
    """SSL context backed by certifi's CA bundle."""
    return ssl.create_default_context(cafile=certifi.where())


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a retry-after header, or None when absent/unparseable."""
    if value is None:
        return None
    try:
        seconds = float(str(value).strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def _wait_retry_after(retry_state: RetryCallState) -> float:
    # One extra second on top of the advertised backoff
    exc = retry_state.outcome.exception()
    return exc.retry_after + 1


def _log_rate_limit(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception()
    logger.warning(
        f"⏸️  Rate limited on {exc.method} {exc.path}. Waiting {exc.retry_after + 1:.0f}s "
        f"(attempt {retry_state.attempt_number})",
        extra={"retry_after": exc.retry_after, "status": 429}
    )


class AsyncAccClient:
    """Async client for ACC API calls; honours 429 retry-after and propagates everything else."""

    def __init__(
        self,
        token_provider: TokenProvider,
        base_url: Optional[str] = None,
        max_rate_limit_retries: Optional[int] = None,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.token_provider = token_provider
        self.base_url = (settings.APS_BASE_URL if base_url is None else base_url).rstrip("/")
        self.max_rate_limit_retries = max_rate_limit_retries
        self.default_headers = {"Accept": "application/json"}
        self.session = session
        self._owns_session = session is None
        self._sleep = sleep

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _ensure_session(self):
        """Ensure persistent session is created with Keep-Alive."""
        if self.session is None or self.session.closed:
            connector = aiohttp.TCPConnector(
                ssl=create_ssl_context(),
                limit=1,  # One outstanding request at a time
                enable_cleanup_closed=True,
                force_close=False,
                keepalive_timeout=60,
                ttl_dns_cache=300
            )
            self.session = aiohttp.ClientSession(connector=connector)
            self._owns_session = True
            logger.debug("AsyncAccClient: Created new persistent ClientSession")

    async def _build_headers(self, spec: RequestSpec) -> Dict[str, str]:
        supplied = dict(spec.headers or {})
        headers = dict(self.default_headers)
        if not any(key.lower() == "authorization" for key in supplied):
            token = await self.token_provider.get_token()
            headers["Authorization"] = f"Bearer {token}"
        headers.update(supplied)
        return headers

    @staticmethod
    async def _read_body(response) -> Any:
        text = await response.text()
        if not text:
            return None
        if "json" in response.headers.get("Content-Type", ""):
            try:
                return json.loads(text)
            except ValueError:
                return text
        return text

    async def _send(self, spec: RequestSpec, url: str, headers: Dict[str, str]) -> Any:
        async with self.session.request(
            spec.method, url, headers=headers, json=spec.json, params=spec.params
        ) as response:
            body = await self._read_body(response)

            if response.status == 429:
                retry_after = parse_retry_after(response.headers.get("retry-after"))
                if retry_after is not None:
                    raise RateLimited(retry_after, spec.method, spec.path, body)

            if not 200 <= response.status < 300:
                raise ApiError(response.status, spec.method, spec.path, body)

            return body

    async def call(self, spec: RequestSpec) -> Any:
        """Issue the request, re-issuing it unchanged for as long as the API answers 429 + retry-after."""
        await self._ensure_session()
        url = f"{self.base_url}{spec.path}"
        headers = await self._build_headers(spec)

        if self.max_rate_limit_retries is None:
            stop = stop_never
        else:
            stop = stop_after_attempt(self.max_rate_limit_retries + 1)

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(RateLimited),
            wait=_wait_retry_after,
            stop=stop,
            sleep=self._sleep,
            before_sleep=_log_rate_limit,
            reraise=True
        )
        async for attempt in retrying:
            with attempt:
                return await self._send(spec, url, headers)

    async def close(self):
        if self.session and self._owns_session and not self.session.closed:
            await self.session.close()


# ---------------------------------------------------------
# SECTION 3: BATCH FETCHER
# ---------------------------------------------------------

LIST_ITEMS_EXTENSION = {"type": "commands:autodesk.core:ListItems", "version": "1.1.0"}

# Enriched document key -> version detail key
VERSION_FIELDS = {
    "versionUrn": "urn",
    "versionNumber": "number",
    "revisionNumber": "revisionNumber",
    "storageSize": "storageSize",
    "customAttributes": "customAttributes",
}


def chunked(urns: List[str], size: int) -> Iterator[List[str]]:
    """Contiguous slices of at most `size` urns, in order."""
    if size < 1:
        raise ValueError("chunk size must be at least 1")
    for start in range(0, len(urns), size):
        yield urns[start:start + size]


def data_management_project_id(project_id: str) -> str:
    """Data Management API project ids carry the `b.` prefix."""
    return project_id if project_id.startswith("b.") else f"b.{project_id}"


def docs_project_id(project_id: str) -> str:
    """ACC Docs API project ids do not."""
    return project_id[2:] if project_id.startswith("b.") else project_id


def build_list_items_payload(urns: List[str]) -> Dict[str, Any]:
    return {
        "jsonapi": {"version": "1.0"},
        "data": {
            "type": "commands",
            "attributes": {
                "extension": {
                    **LIST_ITEMS_EXTENSION,
                    "data": {"includePathInProject": True}
                }
            },
            "relationships": {
                "resources": {
                    "data": [{"type": "items", "id": urn} for urn in urns]
                }
            }
        }
    }


def join_version_details(
    items: List[Dict[str, Any]],
    versions: List[Dict[str, Any]],
    project_id: str
) -> List[Dict[str, Any]]:
    """
    Left join of items to version details on item.id == version.itemUrn.
    When several details share an itemUrn the first one wins.
    Items without a match keep no version fields.
    """
    by_item_urn: Dict[str, Dict[str, Any]] = {}
    for version in versions:
        item_urn = version.get("itemUrn")
        if isinstance(item_urn, str) and item_urn not in by_item_urn:
            by_item_urn[item_urn] = version

    documents = []
    for item in items:
        document = dict(item)
        document["project_id"] = project_id
        item_id = item.get("id")
        version = by_item_urn.get(item_id) if isinstance(item_id, str) else None
        if version is not None:
            for target, source in VERSION_FIELDS.items():
                if source in version:
                    document[target] = version[source]
        documents.append(document)
    return documents


@dataclass
class FetchSummary:
    projects: int = 0
    chunks: int = 0
    failed_chunks: int = 0
    documents: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)


class BatchFetcher:
    """Fetches item and version details for every project, one chunk at a time."""

    def __init__(self, client: AsyncAccClient, chunk_size: Optional[int] = None):
        self.client = client
        self.chunk_size = settings.CHUNK_SIZE if chunk_size is None else chunk_size
        self.summary = FetchSummary()

    async def list_items(self, project_id: str, urns: List[str]) -> List[Dict[str, Any]]:
        """ListItems command for a chunk of item urns."""
        spec = RequestSpec(
            "POST",
            f"/data/v1/projects/{data_management_project_id(project_id)}/commands",
            headers={"Content-Type": "application/vnd.api+json"},
            json=build_list_items_payload(urns)
        )
        body = await self.client.call(spec)

        if not isinstance(body, dict):
            raise ChunkFetchError("Unexpected ListItems response", body)
        if body.get("errors"):
            raise ChunkFetchError("ListItems returned errors", body["errors"])

        node: Any = body
        for key in ("data", "relationships", "resources"):
            node = node.get(key) or {}
            if not isinstance(node, dict):
                raise ChunkFetchError("Unexpected ListItems response", body)
        resources = node.get("data") or []
        if not isinstance(resources, list):
            raise ChunkFetchError("Unexpected ListItems response", body)
        return [item for item in resources if isinstance(item, dict)]

    async def batch_get_versions(self, project_id: str, urns: List[str]) -> List[Dict[str, Any]]:
        """versions:batch-get for the same chunk. Per-urn errors are logged, not raised."""
        spec = RequestSpec(
            "POST",
            f"/construction/docs/v1/projects/{docs_project_id(project_id)}/versions:batch-get",
            headers={"Content-Type": "application/json"},
            json={"urns": urns}
        )
        body = await self.client.call(spec)

        if not isinstance(body, dict):
            raise ChunkFetchError("Unexpected versions:batch-get response", body)

        for error in body.get("errors") or []:
            logger.warning(f"Version details unavailable: {error}", extra={"project_id": project_id})

        return [result for result in body.get("results") or [] if isinstance(result, dict)]

    async def fetch_chunk(self, project_id: str, urns: List[str]) -> List[Dict[str, Any]]:
        # Sequential: both calls share one rate-limited client
        items = await self.list_items(project_id, urns)
        versions = await self.batch_get_versions(project_id, urns)
        return join_version_details(items, versions, project_id)

    async def fetch_project(self, project_id: str, urns: List[str]) -> List[Dict[str, Any]]:
        documents: List[Dict[str, Any]] = []
        chunks = list(chunked(urns, self.chunk_size))
        total = len(urns)
        processed = 0

        for index, chunk in enumerate(chunks, start=1):
            self.summary.chunks += 1
            try:
                chunk_documents = await self.fetch_chunk(project_id, chunk)
            except (ApiError, ChunkFetchError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                self.summary.failed_chunks += 1
                self.summary.failures.append({
                    "project_id": project_id,
                    "chunk": index,
                    "error": f"{type(e).__name__}: {e}",
                })
                logger.error(
                    f"✗ Chunk {index}/{len(chunks)} of project {project_id} failed - {type(e).__name__}: {e}",
                    extra={"project_id": project_id, "chunk": index, "status": getattr(e, "status", None)}
                )
            else:
                documents.extend(chunk_documents)

            processed += len(chunk)
            logger.info(
                f"Project {project_id}: processed {processed}/{total} documents",
                extra={"project_id": project_id, "chunk": index}
            )

        return documents

    async def fetch_details(self, groups: Dict[str, List[str]]) -> List[Dict[str, Any]]:
        """Enriched documents for every project, in project -> chunk -> item order."""
        results: List[Dict[str, Any]] = []
        for project_id, urns in groups.items():
            if not urns:
                logger.debug(f"Project {project_id}: no document urns, skipping")
                continue
            self.summary.projects += 1
            results.extend(await self.fetch_project(project_id, urns))

        self.summary.documents = len(results)
        return results


# ---------------------------------------------------------
# SECTION 4: MAIN EXTRACT RUNNER (ASYNC)
# ---------------------------------------------------------

async def run_extract_async(
    input_dir: Optional[str] = None,
    output_dir: Optional[str] = None,
    chunk_size: Optional[int] = None,
    sources: Optional[List[InputSource]] = None,
    token_provider: Optional[TokenProvider] = None,
    session: Optional[aiohttp.ClientSession] = None
) -> Dict[str, Any]:
    """Collect urns, fetch details, write the enriched CSVs."""
    start_time = time.time()
    input_dir = settings.INPUT_DIR if input_dir is None else input_dir
    output_dir = settings.OUTPUT_DIR if output_dir is None else output_dir

    logger.info(f"═══════════════════════════════════════════════════════════")
    logger.info(f"🚀 STARTING ACC DOCUMENTS EXTRACT")
    logger.info(f"   Input dir: {input_dir}")
    logger.info(f"   Output dir: {output_dir}")
    logger.info(f"   Started at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    logger.info(f"═══════════════════════════════════════════════════════════")

    # STEP 1: Collect urns from Data Extract files
    step_start = time.time()
    logger.info(f"[STEP 1/3] Collecting document urns...")
    groups = collect_document_urns(sources, input_dir)
    total_urns = sum(len(urns) for urns in groups.values())
    logger.info(f"         ✓ {total_urns} unique urns across {len(groups)} project(s) (took {time.time() - step_start:.2f}s)")

    # STEP 2: Fetch item + version details
    step_start = time.time()
    logger.info(f"[STEP 2/3] Fetching document details...")
    provider = token_provider or TokenProvider()
    async with AsyncAccClient(
        provider,
        max_rate_limit_retries=settings.MAX_RATE_LIMIT_RETRIES,
        session=session
    ) as client:
        fetcher = BatchFetcher(client, chunk_size)
        documents = await fetcher.fetch_details(groups)
    summary = fetcher.summary
    logger.info(
        f"         ✓ {summary.documents} documents from {summary.chunks} chunk(s), "
        f"{summary.failed_chunks} failed (took {time.time() - step_start:.2f}s)"
    )

    # STEP 3: Write enriched output
    step_start = time.time()
    logger.info(f"[STEP 3/3] Writing output files...")
    os.makedirs(output_dir, exist_ok=True)
    documents_path = write_documents_csv(documents, output_dir)
    attributes_path = write_custom_attributes_csv(documents, output_dir)
    logger.info(f"         ✓ Output written (took {time.time() - step_start:.2f}s)")

    total_time = time.time() - start_time
    logger.info(f"═══════════════════════════════════════════════════════════")
    logger.info(f"✅ EXTRACT COMPLETED")
    logger.info(f"   Documents: {summary.documents}")
    logger.info(f"   Failed chunks: {summary.failed_chunks}")
    logger.info(f"   Total time: {total_time:.2f}s")
    logger.info(f"═══════════════════════════════════════════════════════════")

    return {
        "documents_path": documents_path,
        "custom_attributes_path": attributes_path,
        "documents": documents,
        "summary": summary,
    }


# ---------------------------------------------------------
# SYNC WRAPPER
# ---------------------------------------------------------

def run_extract(
    input_dir: Optional[str] = None,
    output_dir: Optional[str] = None,
    chunk_size: Optional[int] = None
) -> Dict[str, Any]:
    """Synchronous wrapper for the async extract runner."""
    return asyncio.run(run_extract_async(input_dir, output_dir, chunk_size))
