import asyncio
import collections.abc
import inspect
import re
import socket
import time
from typing import Any, Callable, Iterable, Iterator, List, Optional, Tuple

import aiohttp
from loguru import logger
from cloudfront_invalidator.backoff import Backoff, SleepFunc
from cloudfront_invalidator.errors import (
    ClassifiedError,
    CloudFrontServiceError,
    InvalidPathsError,
    ResponseParseError,
    is_retryable,
    taxonomy,
)
from cloudfront_invalidator.models import (
    Credentials,
    Invalidation,
    InvalidationBatch,
    InvalidationList,
    InvalidationProgress,
    InvalidatorConfig,
    SubmitResult,
)
from cloudfront_invalidator.signer import sign_headers
from cloudfront_invalidator.xml_codec import (
    build_invalidation_batch,
    parse_error,
    parse_invalidation,
    parse_invalidation_list,
)

ProgressCallback = Callable[[InvalidationProgress], Any]
RetryCallback = Callable[[ClassifiedError, Backoff], Any]

# Characters outside the XML 1.0 Char production cannot appear in the batch
_NON_XML_CHARS = re.compile(
    "[^\t\n\r\x20-\ud7ff\ue000-\ufffd\U00010000-\U0010ffff]"
)


def _flatten(items: Iterable[Any]) -> Iterator[Any]:
    for item in items:
        if isinstance(item, (str, bytes)) or not isinstance(
            item, collections.abc.Iterable
        ):
            yield item
        else:
            yield from _flatten(item)


def normalize_paths(paths: Iterable[Any]) -> List[str]:
    """Flattens nested path collections and prefixes '/' where it is missing.

    Order is kept and duplicates are not removed.
    """
    normalized = []
    for path in _flatten(paths):
        if not isinstance(path, str) or not path:
            raise InvalidPathsError(f"Invalid path {path!r}")
        if _NON_XML_CHARS.search(path):
            raise InvalidPathsError(
                f"Path {path!r} contains characters XML cannot carry"
            )
        normalized.append(path if path.startswith("/") else "/" + path)
    if not normalized:
        raise InvalidPathsError("No paths given to invalidate")
    return normalized


async def _invoke(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class CloudFrontInvalidator:
    def __init__(
        self,
        access_key_id: str,
        secret_access_key: str,
        distribution_id: str,
        config: Optional[InvalidatorConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: SleepFunc = asyncio.sleep,
        on_retry: Optional[RetryCallback] = None,
    ):
        self.access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self.distribution_id = distribution_id
        self.config = config or InvalidatorConfig()
        self.logger = logger
        self.sleep = sleep
        self.on_retry = on_retry
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_env(cls, distribution_id: str, **kwargs: Any) -> "CloudFrontInvalidator":
        credentials = Credentials.from_env()
        return cls(
            credentials.access_key_id,
            credentials.secret_access_key.get_secret_value(),
            distribution_id,
            **kwargs,
        )

    async def __aenter__(self) -> "CloudFrontInvalidator":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def invalidation_url(self) -> str:
        return f"{self.config.base_url}{self.distribution_id}/invalidation"

    def caller_reference(self) -> str:
        """Host name plus the current Unix second.

        Two submissions from the same host within one second produce the same
        reference; pass ``caller_reference`` to ``invalidate`` when that matters.
        """
        return (
            f"{self.config.caller_reference_prefix} on {socket.gethostname()}"
            f" at {int(time.time())}"
        )

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _request(
        self, method: str, url: str, data: Optional[bytes] = None
    ) -> Tuple[int, str]:
        """Sends one signed request and returns the status code and body"""
        headers = sign_headers(self.access_key_id, self._secret_access_key)
        if data is not None:
            headers["Content-Type"] = "text/xml"
        self.logger.debug(f"{method} {url}")

        try:
            async with self._get_session().request(
                method, url, data=data, headers=headers, ssl=self.config.verify_ssl
            ) as response:
                body = await response.text()
                return response.status, body
        except aiohttp.ClientError as e:
            self.logger.error(f"Transport error on {method} {url}: {e}")
            raise

    def _service_error(self, status: int, body: str) -> CloudFrontServiceError:
        try:
            parsed = parse_error(body)
        except ResponseParseError as e:
            self.logger.error(f"HTTP {status} with an unreadable error body: {e}")
            raise ResponseParseError(f"HTTP {status}: {e}") from e
        classified = taxonomy.classify(parsed.code, parsed.message)
        return CloudFrontServiceError(
            classified, status_code=status, request_id=parsed.request_id
        )

    async def _wait_before_retry(
        self, error: CloudFrontServiceError, backoff: Backoff
    ) -> None:
        self.logger.warning(
            f"{error.code} (attempt {backoff.attempts + 1}): {error.message}; "
            f"retrying in {backoff.current_delay():.3f}s"
        )
        await _invoke(self.on_retry, error.error, backoff)
        await backoff.wait(self.sleep)

    async def invalidate(
        self,
        *paths: Any,
        on_progress: Optional[ProgressCallback] = None,
        caller_reference: Optional[str] = None,
    ) -> SubmitResult:
        """Submits an invalidation, retrying while too many are in progress.

        With ``on_progress`` the new invalidation is polled until it leaves
        InProgress, and the returned result holds its last observed state.
        """
        batch = InvalidationBatch(
            paths=normalize_paths(paths),
            caller_reference=caller_reference or self.caller_reference(),
        )
        body = build_invalidation_batch(
            batch.paths, batch.caller_reference, self.config.doc_url
        )
        backoff = Backoff(self.config.backoff)

        while True:
            status, text = await self._request("POST", self.invalidation_url, body)
            if status == 201:
                break

            error = self._service_error(status, text)
            if not is_retryable(error.kind):
                self.logger.error(f"Invalidation rejected with HTTP {status}: {error}")
                raise error
            await self._wait_before_retry(error, backoff)

        invalidation = parse_invalidation(text)
        self.logger.info(
            f"Invalidation {invalidation.id} accepted for {len(batch.paths)} path(s)"
            f" after {backoff.attempts} retries"
        )

        if on_progress is not None:
            invalidation = await self.poll_invalidation(invalidation.id, on_progress)

        return SubmitResult(
            invalidation=invalidation,
            status_code=status,
            raw_response=text,
            retries=backoff.attempts,
        )

    async def _get_invalidation_detail(
        self, invalidation_id: str
    ) -> Tuple[Invalidation, str]:
        status, text = await self._request(
            "GET", f"{self.invalidation_url}/{invalidation_id}"
        )
        if status != 200:
            error = self._service_error(status, text)
            self.logger.error(
                f"Fetching invalidation {invalidation_id} failed with HTTP {status}: {error}"
            )
            raise error
        return parse_invalidation(text), text

    async def get_invalidation(self, invalidation_id: str) -> Invalidation:
        invalidation, _ = await self._get_invalidation_detail(invalidation_id)
        return invalidation

    async def poll_invalidation(
        self,
        invalidation_id: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Invalidation:
        """Polls an invalidation with truncated exponential backoff until it leaves InProgress"""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        backoff = Backoff(self.config.backoff)

        while True:
            invalidation, text = await self._get_invalidation_detail(invalidation_id)
            progress = InvalidationProgress(
                invalidation_id=invalidation_id,
                status=invalidation.status,
                elapsed_time=loop.time() - start_time,
                raw_response=text,
            )
            await _invoke(on_progress, progress)

            if not invalidation.in_progress:
                self.logger.info(
                    f"Invalidation {invalidation_id} is {invalidation.status}"
                    f" after {progress.elapsed_time:.2f}s"
                )
                return invalidation

            self.logger.debug(
                f"Invalidation {invalidation_id} still in progress, "
                f"waiting {backoff.current_delay():.3f}s before next check"
            )
            await backoff.wait(self.sleep)

    async def list_invalidations(self, show_detail: bool = False) -> InvalidationList:
        """Lists the distribution's invalidations, fetching each one's detail if asked"""
        status, text = await self._request("GET", self.invalidation_url)
        if status != 200:
            error = self._service_error(status, text)
            self.logger.error(f"Listing invalidations failed with HTTP {status}: {error}")
            raise error

        listing = parse_invalidation_list(text)
        if show_detail:
            for summary in listing.items:
                listing.details[summary.id] = await self.get_invalidation(summary.id)
        return listing

    async def list_detail(self) -> InvalidationList:
        return await self.list_invalidations(show_detail=True)
