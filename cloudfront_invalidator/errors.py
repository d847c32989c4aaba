import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

TOO_MANY_INVALIDATIONS_IN_PROGRESS = "TooManyInvalidationsInProgress"


class InvalidatorError(Exception):
    """Base exception for invalidation client errors."""


class InvalidPathsError(InvalidatorError, ValueError):
    """Empty or malformed path set, rejected before any request is sent."""


class ConfigurationError(InvalidatorError):
    """Missing credentials or configuration values."""


class ResponseParseError(InvalidatorError):
    """Response body is not the XML document the API was expected to return."""


@dataclass(frozen=True)
class ErrorKind:
    code: str

    def __str__(self) -> str:
        return self.code


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    message: str

    @property
    def code(self) -> str:
        return self.kind.code


class ErrorTaxonomy:
    """Registry mapping service error codes to ErrorKind instances.

    Kinds are created the first time a code is seen and the same instance is
    handed out for every later sighting, so callers can compare on the kind
    instead of the raw code string. Registration is thread-safe.
    """

    def __init__(self):
        self._kinds: Dict[str, ErrorKind] = {}
        self._lock = threading.Lock()

    def classify(self, code: str, message: str = "") -> ClassifiedError:
        with self._lock:
            kind = self._kinds.get(code)
            if kind is None:
                kind = ErrorKind(code)
                self._kinds[code] = kind
        return ClassifiedError(kind=kind, message=message)

    def get(self, code: str) -> Optional[ErrorKind]:
        with self._lock:
            return self._kinds.get(code)

    def kinds(self) -> List[ErrorKind]:
        with self._lock:
            return list(self._kinds.values())

    def __contains__(self, code: str) -> bool:
        with self._lock:
            return code in self._kinds


taxonomy = ErrorTaxonomy()


def classify(code: str, message: str = "") -> ClassifiedError:
    return taxonomy.classify(code, message)


def is_retryable(kind: ErrorKind) -> bool:
    """Only the admission-control rejection is retried, matched by exact code."""
    return kind.code == TOO_MANY_INVALIDATIONS_IN_PROGRESS


class CloudFrontServiceError(InvalidatorError):
    """Terminal error reported by the API, carrying its classified kind."""

    def __init__(
        self,
        error: ClassifiedError,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
    ):
        self.error = error
        self.kind = error.kind
        self.code = error.code
        self.message = error.message
        self.status_code = status_code
        self.request_id = request_id
        super().__init__(f"{self.code}: {self.message}")
