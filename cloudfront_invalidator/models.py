import os
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional, Union

from pydantic import BaseModel, BeforeValidator, Field, SecretStr, field_validator

from cloudfront_invalidator.errors import ConfigurationError

DEFAULT_API_VERSION = "2012-07-01"


class InvalidationStatus(str, Enum):
    in_progress = "InProgress"
    completed = "Completed"

    def __str__(self) -> str:
        return self.value


def _known_status(value: Any) -> Any:
    try:
        return InvalidationStatus(value)
    except ValueError:
        return value


# Statuses the service adds later are kept as plain strings
Status = Annotated[Union[InvalidationStatus, str], BeforeValidator(_known_status)]


class InvalidationBatch(BaseModel):
    paths: List[str]
    caller_reference: str

    @field_validator("paths")
    @classmethod
    def _require_absolute_paths(cls, paths: List[str]) -> List[str]:
        if not paths:
            raise ValueError("an invalidation batch needs at least one path")
        for path in paths:
            if not path.startswith("/"):
                raise ValueError(f"path {path!r} does not start with '/'")
        return paths


class Invalidation(BaseModel):
    id: str
    status: Status
    create_time: Optional[datetime] = None
    caller_reference: Optional[str] = None
    paths: List[str] = Field(default_factory=list)

    @property
    def in_progress(self) -> bool:
        return self.status == InvalidationStatus.in_progress


class InvalidationSummary(BaseModel):
    id: str
    status: Status


class InvalidationList(BaseModel):
    marker: Optional[str] = None
    next_marker: Optional[str] = None
    max_items: Optional[int] = None
    is_truncated: bool = False
    quantity: int = 0
    items: List[InvalidationSummary] = Field(default_factory=list)
    details: Dict[str, Invalidation] = Field(default_factory=dict)


class InvalidationProgress(BaseModel):
    invalidation_id: str
    status: Status
    elapsed_time: float
    raw_response: str = ""


class SubmitResult(BaseModel):
    invalidation: Invalidation
    status_code: int
    raw_response: str
    retries: int = 0


class ServiceErrorBody(BaseModel):
    type: Optional[str] = None
    code: str
    message: str = ""
    request_id: Optional[str] = None


class BackoffConfig(BaseModel):
    base_delay: float = 0.025
    max_multiplier: int = 8192


class InvalidatorConfig(BaseModel):
    api_version: str = DEFAULT_API_VERSION
    endpoint: str = "https://cloudfront.amazonaws.com"
    verify_ssl: bool = True
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)
    caller_reference_prefix: str = "CloudfrontInvalidator"

    @property
    def base_url(self) -> str:
        return f"{self.endpoint.rstrip('/')}/{self.api_version}/distribution/"

    @property
    def doc_url(self) -> str:
        """XML namespace of request and response documents"""
        return f"http://cloudfront.amazonaws.com/doc/{self.api_version}/"


class Credentials(BaseModel):
    access_key_id: str
    secret_access_key: SecretStr

    @classmethod
    def from_env(cls) -> "Credentials":
        """Read the key pair from AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY"""
        access_key_id = os.environ.get("AWS_ACCESS_KEY_ID")
        secret_access_key = os.environ.get("AWS_SECRET_ACCESS_KEY")
        missing = [
            name
            for name, value in (
                ("AWS_ACCESS_KEY_ID", access_key_id),
                ("AWS_SECRET_ACCESS_KEY", secret_access_key),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}"
            )
        return cls(access_key_id=access_key_id, secret_access_key=secret_access_key)
