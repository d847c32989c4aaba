import itertools
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from aiohttp import web
from loguru import logger

from cloudfront_invalidator.errors import TOO_MANY_INVALIDATIONS_IN_PROGRESS
from cloudfront_invalidator.models import DEFAULT_API_VERSION
from cloudfront_invalidator.xml_codec import parse_invalidation_batch


class FakeCloudFrontServer:
    """In-process stand-in for the CloudFront invalidation API.

    ``busy_responses`` POSTs are answered with TooManyInvalidationsInProgress
    before one is accepted; ``fail_with`` makes every POST fail with that code.
    Each invalidation reports InProgress for ``polls_until_complete`` detail
    requests and Completed afterwards. ``outage`` answers every POST with a
    plain-text 503.
    """

    def __init__(
        self,
        api_version: str = DEFAULT_API_VERSION,
        busy_responses: int = 0,
        polls_until_complete: int = 2,
        fail_with: Optional[str] = None,
        max_items: int = 100,
        outage: bool = False,
    ):
        self.api_version = api_version
        self.busy_responses = busy_responses
        self.polls_until_complete = polls_until_complete
        self.fail_with = fail_with
        self.max_items = max_items
        self.outage = outage
        self.invalidations: Dict[str, dict] = {}
        self.requests: List[Tuple[str, str]] = []
        self._ids = itertools.count(1)
        self.app = web.Application()
        prefix = f"/{api_version}/distribution/{{distribution_id}}/invalidation"
        self.app.router.add_post(prefix, self.handle_create)
        self.app.router.add_get(prefix, self.handle_list)
        self.app.router.add_get(prefix + "/{invalidation_id}", self.handle_detail)
        self.logger = logger
        self.runner: Optional[web.AppRunner] = None

    @property
    def namespace(self) -> str:
        return f"http://cloudfront.amazonaws.com/doc/{self.api_version}/"

    def _xml_response(self, root: ET.Element, status: int = 200) -> web.Response:
        return web.Response(
            body=ET.tostring(root, encoding="UTF-8", xml_declaration=True),
            status=status,
            content_type="text/xml",
            charset="utf-8",
        )

    def _error(self, status: int, code: str, message: str) -> web.Response:
        root = ET.Element("ErrorResponse", xmlns=self.namespace)
        error = ET.SubElement(root, "Error")
        ET.SubElement(error, "Type").text = "Sender"
        ET.SubElement(error, "Code").text = code
        ET.SubElement(error, "Message").text = message
        ET.SubElement(root, "RequestId").text = f"request-{len(self.requests)}"
        return self._xml_response(root, status)

    def _invalidation_document(self, invalidation: dict) -> ET.Element:
        root = ET.Element("Invalidation", xmlns=self.namespace)
        ET.SubElement(root, "Id").text = invalidation["id"]
        ET.SubElement(root, "Status").text = invalidation["status"]
        ET.SubElement(root, "CreateTime").text = invalidation["create_time"]
        batch = ET.SubElement(root, "InvalidationBatch")
        paths = ET.SubElement(batch, "Paths")
        ET.SubElement(paths, "Quantity").text = str(len(invalidation["paths"]))
        items = ET.SubElement(paths, "Items")
        for path in invalidation["paths"]:
            ET.SubElement(items, "Path").text = path
        ET.SubElement(batch, "CallerReference").text = invalidation["caller_reference"]
        return root

    def _unauthorized(self, request: web.Request) -> bool:
        authorization = request.headers.get("Authorization", "")
        return "Date" not in request.headers or not authorization.startswith("AWS ")

    async def handle_create(self, request: web.Request) -> web.Response:
        self.requests.append((request.method, request.path))
        if self._unauthorized(request):
            return self._error(403, "MissingAuthenticationToken", "Missing signature")

        if self.outage:
            self.logger.info("Returning 503 Service Unavailable")
            return web.Response(status=503, text="Service Unavailable")

        if self.fail_with is not None:
            self.logger.info(f"Returning {self.fail_with} error")
            return self._error(400, self.fail_with, f"{self.fail_with} (fake)")

        if self.busy_responses > 0:
            self.busy_responses -= 1
            self.logger.info("Returning TooManyInvalidationsInProgress")
            return self._error(
                400,
                TOO_MANY_INVALIDATIONS_IN_PROGRESS,
                "Processing your request will cause you to exceed the maximum "
                "number of in-progress wildcard invalidations.",
            )

        batch = parse_invalidation_batch(await request.read())
        invalidation = {
            "id": f"I{next(self._ids):013d}",
            "status": "InProgress",
            "create_time": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "caller_reference": batch.caller_reference,
            "paths": batch.paths,
            "polls": 0,
        }
        self.invalidations[invalidation["id"]] = invalidation
        self.logger.info(f"Created invalidation {invalidation['id']}")
        return self._xml_response(self._invalidation_document(invalidation), 201)

    async def handle_detail(self, request: web.Request) -> web.Response:
        self.requests.append((request.method, request.path))
        invalidation = self.invalidations.get(request.match_info["invalidation_id"])
        if invalidation is None:
            return self._error(
                404, "NoSuchInvalidation", "The specified invalidation does not exist."
            )

        invalidation["polls"] += 1
        if invalidation["polls"] > self.polls_until_complete:
            invalidation["status"] = "Completed"
        self.logger.info(
            f"Returning {invalidation['status']} for {invalidation['id']}"
        )
        return self._xml_response(self._invalidation_document(invalidation))

    async def handle_list(self, request: web.Request) -> web.Response:
        self.requests.append((request.method, request.path))
        summaries = list(self.invalidations.values())
        root = ET.Element("InvalidationList", xmlns=self.namespace)
        ET.SubElement(root, "Marker")
        ET.SubElement(root, "MaxItems").text = str(self.max_items)
        truncated = len(summaries) > self.max_items
        ET.SubElement(root, "IsTruncated").text = "true" if truncated else "false"
        shown = summaries[: self.max_items]
        if truncated:
            ET.SubElement(root, "NextMarker").text = shown[-1]["id"]
        ET.SubElement(root, "Quantity").text = str(len(shown))
        items = ET.SubElement(root, "Items")
        for invalidation in shown:
            summary = ET.SubElement(items, "InvalidationSummary")
            ET.SubElement(summary, "Id").text = invalidation["id"]
            ET.SubElement(summary, "Status").text = invalidation["status"]
        return self._xml_response(root)

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Fake CloudFront API started on port {port}")
        return site

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
