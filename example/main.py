import asyncio
from typing import List

from cloudfront_server import FakeCloudFrontServer
from cloudfront_invalidator.cloudfront_invalidator import CloudFrontInvalidator
from cloudfront_invalidator.errors import CloudFrontServiceError
from cloudfront_invalidator.models import InvalidationList, InvalidatorConfig


def format_invalidation_list(listing: InvalidationList) -> List[str]:
    """Renders a listing as human-readable lines"""
    lines = [
        f"MaxItems {listing.max_items}; "
        + ("truncated" if listing.is_truncated else "not truncated")
    ]
    for summary in listing.items:
        summary_text = f"ID {summary.id}: {summary.status}"
        detail = listing.details.get(summary.id)
        if detail is None:
            lines.append(summary_text)
            continue
        lines.append(
            f"{summary_text}; Created at: {detail.create_time}; "
            f'Caller reference: "{detail.caller_reference}"'
        )
        lines.append(" Invalidated URL paths:")
        lines.append(" " + " ".join(detail.paths))
    return lines


async def status_changed(progress):
    print(f"Invalidation {progress.invalidation_id}: {progress.status}")
    print(f"Elapsed time: {progress.elapsed_time:.6f}s")


async def main():
    PORT = 8000
    server = FakeCloudFrontServer(busy_responses=2, polls_until_complete=3)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    config = InvalidatorConfig(endpoint=f"http://localhost:{PORT}")

    async with CloudFrontInvalidator(
        "AKIDEXAMPLE", "example-secret", "E2EXAMPLE", config
    ) as client:
        try:
            result = await client.invalidate(
                "index.html", "/css/site.css", on_progress=status_changed
            )
            print(f"Final status: {result.invalidation.status}")
            print(f"Retries absorbed: {result.retries}")

            for line in format_invalidation_list(await client.list_detail()):
                print(line)
        except CloudFrontServiceError as e:
            print(f"Invalidation failed: {e.code}: {e.message}")
        except Exception as e:
            print(f"Error occurred: {e}")

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
