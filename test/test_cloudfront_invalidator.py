import asyncio
from typing import AsyncGenerator, List

import aiohttp
import pytest
import pytest_asyncio
from cloudfront_server import FakeCloudFrontServer
from cloudfront_invalidator.cloudfront_invalidator import CloudFrontInvalidator
from cloudfront_invalidator.errors import (
    TOO_MANY_INVALIDATIONS_IN_PROGRESS,
    CloudFrontServiceError,
    InvalidPathsError,
    ResponseParseError,
    taxonomy,
)
from cloudfront_invalidator.models import InvalidationStatus, InvalidatorConfig

ENDPOINT_TEMPLATE = "http://localhost:{}"
DISTRIBUTION_ID = "E2EXAMPLE"


class RecordingSleep:
    """Replaces asyncio.sleep, recording the requested delays"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest_asyncio.fixture
async def server(
    unused_tcp_port_factory,
) -> AsyncGenerator[FakeCloudFrontServer, None]:
    """Start and yield a fake CloudFront API on a random port."""
    port = unused_tcp_port_factory()
    server_instance = FakeCloudFrontServer()
    await server_instance.start(port=port)
    try:
        yield server_instance, port
    finally:
        await server_instance.stop()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


def make_client(port: int, sleep: RecordingSleep, **kwargs) -> CloudFrontInvalidator:
    config = InvalidatorConfig(endpoint=ENDPOINT_TEMPLATE.format(port))
    return CloudFrontInvalidator(
        "AKIDEXAMPLE", "secret", DISTRIBUTION_ID, config=config, sleep=sleep, **kwargs
    )


def posts(server_instance: FakeCloudFrontServer) -> int:
    return sum(1 for method, _ in server_instance.requests if method == "POST")


@pytest.mark.asyncio
async def test_successful_invalidation(server, sleep):
    """Accepted on the first attempt, paths normalized."""
    server_instance, port = server

    async with make_client(port, sleep) as client:
        result = await client.invalidate("foo", "/bar", caller_reference="ref-1")

    assert result.status_code == 201
    assert result.retries == 0
    assert result.invalidation.status == InvalidationStatus.in_progress
    stored = server_instance.invalidations[result.invalidation.id]
    assert stored["paths"] == ["/foo", "/bar"]
    assert stored["caller_reference"] == "ref-1"
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_nested_paths_are_flattened(server, sleep):
    server_instance, port = server

    async with make_client(port, sleep) as client:
        result = await client.invalidate(["a.css", ("b.js", "/c.html")], "a.css")

    stored = server_instance.invalidations[result.invalidation.id]
    assert stored["paths"] == ["/a.css", "/b.js", "/c.html", "/a.css"]


@pytest.mark.asyncio
async def test_default_caller_reference_names_host(server, sleep):
    server_instance, port = server

    async with make_client(port, sleep) as client:
        result = await client.invalidate("/index.html")

    reference = server_instance.invalidations[result.invalidation.id]["caller_reference"]
    assert reference.startswith("CloudfrontInvalidator on ")
    assert " at " in reference


@pytest.mark.asyncio
async def test_too_many_in_progress_is_retried(server, sleep):
    """Admission-control rejections are absorbed with doubling delays."""
    server_instance, port = server
    server_instance.busy_responses = 3
    retried = []

    def on_retry(error, backoff):
        retried.append((error.kind, backoff.attempts, backoff.multiplier))

    async with make_client(port, sleep, on_retry=on_retry) as client:
        result = await client.invalidate("/index.html")

    assert result.status_code == 201
    assert result.retries == 3
    assert posts(server_instance) == 4
    assert sleep.delays == pytest.approx([0.025, 0.05, 0.1])
    kind = taxonomy.get(TOO_MANY_INVALIDATIONS_IN_PROGRESS)
    assert retried == [(kind, 0, 1), (kind, 1, 2), (kind, 2, 4)]


@pytest.mark.asyncio
async def test_backoff_is_capped(server, sleep):
    server_instance, port = server
    server_instance.busy_responses = 5
    config = InvalidatorConfig(endpoint=ENDPOINT_TEMPLATE.format(port))
    config.backoff.max_multiplier = 4

    async with CloudFrontInvalidator(
        "AKIDEXAMPLE", "secret", DISTRIBUTION_ID, config=config, sleep=sleep
    ) as client:
        await client.invalidate("/index.html")

    assert sleep.delays == pytest.approx([0.025, 0.05, 0.1, 0.1, 0.1])


@pytest.mark.asyncio
async def test_terminal_error_is_not_retried(server, sleep):
    server_instance, port = server
    server_instance.fail_with = "InvalidArgument"

    async with make_client(port, sleep) as client:
        with pytest.raises(CloudFrontServiceError) as excinfo:
            await client.invalidate("/index.html")

    error = excinfo.value
    assert error.code == "InvalidArgument"
    assert error.message == "InvalidArgument (fake)"
    assert error.status_code == 400
    assert error.kind == taxonomy.get("InvalidArgument")
    assert posts(server_instance) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_empty_paths_make_no_request(server, sleep):
    server_instance, port = server

    async with make_client(port, sleep) as client:
        with pytest.raises(InvalidPathsError):
            await client.invalidate()
        with pytest.raises(InvalidPathsError):
            await client.invalidate([])

    assert server_instance.requests == []


@pytest.mark.asyncio
async def test_paths_xml_cannot_carry_make_no_request(server, sleep):
    server_instance, port = server

    async with make_client(port, sleep) as client:
        with pytest.raises(InvalidPathsError):
            await client.invalidate("/ok.html", "bad\x01path")

    assert server_instance.requests == []


@pytest.mark.asyncio
async def test_whitespace_in_paths_reaches_server(server, sleep):
    server_instance, port = server

    async with make_client(port, sleep) as client:
        result = await client.invalidate(
            "file name.txt ", " lead", caller_reference=" ref "
        )

    stored = server_instance.invalidations[result.invalidation.id]
    assert stored["paths"] == ["/file name.txt ", "/ lead"]
    assert stored["caller_reference"] == " ref "
    assert result.invalidation.paths == ["/file name.txt ", "/ lead"]


@pytest.mark.asyncio
async def test_unreadable_error_body_reports_status(server, sleep):
    """A non-XML error page is surfaced with its HTTP status, not retried."""
    server_instance, port = server
    server_instance.outage = True

    async with make_client(port, sleep) as client:
        with pytest.raises(ResponseParseError, match="HTTP 503"):
            await client.invalidate("/index.html")

    assert posts(server_instance) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_invalidate_with_progress(server, sleep):
    """Polling reports every observation until the job completes."""
    server_instance, port = server
    observed = []

    def on_progress(progress):
        observed.append(progress)

    async with make_client(port, sleep) as client:
        result = await client.invalidate("/index.html", on_progress=on_progress)

    assert [p.status for p in observed] == ["InProgress", "InProgress", "Completed"]
    assert all(p.invalidation_id == result.invalidation.id for p in observed)
    assert observed[-1].status is InvalidationStatus.completed
    assert observed[0].elapsed_time <= observed[-1].elapsed_time
    assert sleep.delays == pytest.approx([0.025, 0.05])
    assert result.invalidation.status == InvalidationStatus.completed


@pytest.mark.asyncio
async def test_poll_invalidation_with_async_callback(server, sleep):
    server_instance, port = server
    server_instance.polls_until_complete = 0
    statuses = []

    async def on_progress(progress):
        statuses.append(progress.status)

    async with make_client(port, sleep) as client:
        submitted = await client.invalidate("/index.html")
        final = await client.poll_invalidation(submitted.invalidation.id, on_progress)

    assert statuses == ["Completed"]
    assert final.status == "Completed"
    assert final.paths == ["/index.html"]
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_unknown_invalidation(server, sleep):
    _, port = server

    async with make_client(port, sleep) as client:
        with pytest.raises(CloudFrontServiceError) as excinfo:
            await client.get_invalidation("IDOESNOTEXIST")

    assert excinfo.value.code == "NoSuchInvalidation"
    assert excinfo.value.status_code == 404


@pytest.mark.asyncio
async def test_list_invalidations(server, sleep):
    _, port = server

    async with make_client(port, sleep) as client:
        first = await client.invalidate("/a", caller_reference="ref-a")
        second = await client.invalidate("/b", "/c", caller_reference="ref-b")
        listing = await client.list_invalidations()
        detailed = await client.list_detail()

    assert [item.id for item in listing.items] == [
        first.invalidation.id,
        second.invalidation.id,
    ]
    assert listing.is_truncated is False
    assert listing.details == {}
    detail = detailed.details[second.invalidation.id]
    assert detail.caller_reference == "ref-b"
    assert detail.paths == ["/b", "/c"]
    assert detail.create_time is not None


@pytest.mark.asyncio
async def test_list_reports_truncation(server, sleep):
    server_instance, port = server
    server_instance.max_items = 1

    async with make_client(port, sleep) as client:
        await client.invalidate("/a")
        await client.invalidate("/b")
        listing = await client.list_invalidations()

    assert listing.is_truncated is True
    assert listing.max_items == 1
    assert len(listing.items) == 1
    assert listing.next_marker == listing.items[0].id


@pytest.mark.asyncio
async def test_server_unavailable(sleep):
    """Transport errors propagate unchanged."""
    config = InvalidatorConfig(endpoint="http://localhost:9999")  # Invalid port
    async with CloudFrontInvalidator(
        "AKIDEXAMPLE", "secret", DISTRIBUTION_ID, config=config, sleep=sleep
    ) as client:
        with pytest.raises(aiohttp.ClientConnectionError):
            await client.invalidate("/index.html")


@pytest.mark.asyncio
async def test_multiple_clients(server, sleep):
    """Independent lifecycles running concurrently all complete."""
    server_instance, port = server
    server_instance.busy_responses = 2

    async def run_client(path):
        async with make_client(port, sleep) as client:
            return await client.invalidate(path, on_progress=lambda progress: None)

    results = await asyncio.gather(*[run_client(f"/{i}") for i in range(3)])

    assert all(r.invalidation.status == "Completed" for r in results)
    assert len({r.invalidation.id for r in results}) == 3
    assert sum(r.retries for r in results) == 2
