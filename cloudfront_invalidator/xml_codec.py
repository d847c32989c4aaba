"""Encoding and decoding of the CloudFront invalidation XML documents.

Responses are matched on local element names, so documents are accepted with
or without the versioned ``http://cloudfront.amazonaws.com/doc/<version>/``
namespace.
"""

import xml.etree.ElementTree as ET
from typing import Any, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from cloudfront_invalidator.errors import ResponseParseError
from cloudfront_invalidator.models import (
    Invalidation,
    InvalidationBatch,
    InvalidationList,
    InvalidationSummary,
    ServiceErrorBody,
)

Body = Union[str, bytes]
ModelT = TypeVar("ModelT", bound=BaseModel)


def build_invalidation_batch(
    paths: List[str], caller_reference: str, namespace: str
) -> bytes:
    root = ET.Element("InvalidationBatch", xmlns=namespace)
    paths_element = ET.SubElement(root, "Paths")
    ET.SubElement(paths_element, "Quantity").text = str(len(paths))
    items = ET.SubElement(paths_element, "Items")
    for path in paths:
        ET.SubElement(items, "Path").text = path
    ET.SubElement(root, "CallerReference").text = caller_reference
    return ET.tostring(root, encoding="UTF-8", xml_declaration=True)


def _parse(body: Body, expected_root: str) -> ET.Element:
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise ResponseParseError(f"Response is not valid XML: {e}") from e

    for element in root.iter():
        if isinstance(element.tag, str) and "}" in element.tag:
            element.tag = element.tag.split("}", 1)[1]

    if root.tag != expected_root:
        raise ResponseParseError(
            f"Expected <{expected_root}> document, got <{root.tag}>"
        )
    return root


def _text(
    element: ET.Element, path: str, required: bool = True, strip: bool = True
) -> Optional[str]:
    found = element.find(path)
    if found is None or found.text is None:
        if required:
            raise ResponseParseError(f"Missing <{path}> in <{element.tag}>")
        return None
    return found.text.strip() if strip else found.text


def _int(element: ET.Element, path: str) -> Optional[int]:
    value = _text(element, path, required=False)
    if not value:
        return None
    try:
        return int(value)
    except ValueError as e:
        raise ResponseParseError(f"<{path}> is not an integer: {value!r}") from e


def _model(model: Type[ModelT], **fields: Any) -> ModelT:
    try:
        return model(**fields)
    except ValidationError as e:
        raise ResponseParseError(f"Invalid <{model.__name__}> document: {e}") from e


def _batch_paths(batch: ET.Element) -> List[str]:
    # Older API versions list <Path> directly under <InvalidationBatch>
    paths = batch.findall("Paths/Items/Path") or batch.findall("Path")
    return [path.text for path in paths if path.text]


def parse_invalidation_batch(body: Body) -> InvalidationBatch:
    root = _parse(body, "InvalidationBatch")
    return _model(
        InvalidationBatch,
        paths=_batch_paths(root),
        caller_reference=_text(root, "CallerReference", strip=False),
    )


def parse_invalidation(body: Body) -> Invalidation:
    root = _parse(body, "Invalidation")
    batch = root.find("InvalidationBatch")
    return _model(
        Invalidation,
        id=_text(root, "Id"),
        status=_text(root, "Status"),
        create_time=_text(root, "CreateTime", required=False),
        caller_reference=(
            _text(batch, "CallerReference", required=False, strip=False)
            if batch is not None
            else None
        ),
        paths=_batch_paths(batch) if batch is not None else [],
    )


def parse_error(body: Body) -> ServiceErrorBody:
    root = _parse(body, "ErrorResponse")
    error = root.find("Error")
    if error is None:
        raise ResponseParseError("Missing <Error> in <ErrorResponse>")
    return _model(
        ServiceErrorBody,
        type=_text(error, "Type", required=False),
        code=_text(error, "Code"),
        message=_text(error, "Message", required=False) or "",
        request_id=_text(root, "RequestId", required=False),
    )


def parse_invalidation_list(body: Body) -> InvalidationList:
    root = _parse(body, "InvalidationList")
    summaries = root.findall("Items/InvalidationSummary") or root.findall(
        "InvalidationSummary"
    )
    items = [
        _model(
            InvalidationSummary,
            id=_text(summary, "Id"),
            status=_text(summary, "Status"),
        )
        for summary in summaries
    ]
    quantity = _int(root, "Quantity")
    return _model(
        InvalidationList,
        marker=_text(root, "Marker", required=False),
        next_marker=_text(root, "NextMarker", required=False),
        max_items=_int(root, "MaxItems"),
        is_truncated=(_text(root, "IsTruncated", required=False) or "").lower()
        == "true",
        quantity=len(items) if quantity is None else quantity,
        items=items,
    )
