import io
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, BinaryIO, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReasonCode(str, Enum):
    NO_FILE = "no_file"
    TOO_LARGE = "too_large"
    UNSUPPORTED_TYPE = "unsupported_type"
    UNSUPPORTED_EXTENSION = "unsupported_extension"
    INVALID_FILENAME = "invalid_filename"
    SCAN_INFECTED = "scan_infected"
    SCAN_UNAVAILABLE = "scan_unavailable"


class UploadCandidate(BaseModel):
    """Read-only view of one inbound file for the lifetime of a request."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    filename: Optional[str] = None
    declared_content_type: Optional[str] = None
    content_type: Optional[str] = None
    size: int = 0
    # bytes or a seekable binary file object
    source: Any = None

    @classmethod
    def from_upload(
        cls,
        data: Optional[Union[bytes, bytearray, memoryview, BinaryIO]],
        filename: Optional[str] = None,
        declared_content_type: Optional[str] = None,
    ) -> "UploadCandidate":
        if data is None:
            return cls(filename=filename, declared_content_type=declared_content_type)

        if isinstance(data, (bytearray, memoryview)):
            data = bytes(data)

        if isinstance(data, bytes):
            size = len(data)
        elif hasattr(data, "read") and hasattr(data, "seek"):
            data.seek(0, io.SEEK_END)
            size = data.tell()
            data.seek(0)
        else:
            raise TypeError(f"Unsupported upload source type: {type(data).__name__}")

        return cls(
            filename=filename,
            declared_content_type=declared_content_type,
            size=size,
            source=data,
        )

    def head(self, length: int) -> bytes:
        """Return up to ``length`` leading bytes without consuming the source."""
        if self.source is None:
            return b""
        if isinstance(self.source, bytes):
            return self.source[:length]

        self.source.seek(0)
        sample = self.source.read(length)
        self.source.seek(0)
        return sample


# Scan outcomes


class ScanClean(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["clean"] = "clean"
    skipped: bool = False
    raw_response: Optional[str] = None
    scanned_at: datetime = Field(default_factory=utc_now)


class ScanInfected(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["infected"] = "infected"
    threat_name: str
    raw_response: Optional[str] = None
    scanned_at: datetime = Field(default_factory=utc_now)


class ScanFailed(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["error"] = "error"
    kind: Literal["unavailable", "timeout", "protocol"]
    detail: str
    raw_response: Optional[str] = None
    scanned_at: datetime = Field(default_factory=utc_now)


ScanOutcome = Annotated[
    Union[ScanClean, ScanInfected, ScanFailed], Field(discriminator="status")
]


class PolicyDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    outcome: ScanOutcome
    warning: Optional[str] = None


# Filename / type verdicts


class VerdictAccepted(BaseModel):
    model_config = ConfigDict(frozen=True)

    verdict: Literal["accepted"] = "accepted"
    normalized_content_type: Optional[str] = None


class VerdictRejected(BaseModel):
    model_config = ConfigDict(frozen=True)

    verdict: Literal["rejected"] = "rejected"
    reason_code: ReasonCode
    message: str


ValidationVerdict = Annotated[
    Union[VerdictAccepted, VerdictRejected], Field(discriminator="verdict")
]


# Pipeline decisions


class UploadAccepted(BaseModel):
    model_config = ConfigDict(frozen=True)

    decision: Literal["accept"] = "accept"
    filename: str
    content_type: str
    file_size: int
    scan_outcome: ScanOutcome
    warning: Optional[str] = None


class UploadRejected(BaseModel):
    model_config = ConfigDict(frozen=True)

    decision: Literal["reject"] = "reject"
    reason_code: ReasonCode
    message: str
    detail: Dict[str, Any] = Field(default_factory=dict)


PipelineDecision = Annotated[
    Union[UploadAccepted, UploadRejected], Field(discriminator="decision")
]


# HTTP payloads


class FilenameCheckRequest(BaseModel):
    filename: str


class FilenameCheckResponse(BaseModel):
    valid: bool
    filename: str
    content_type: Optional[str] = None
    reason: Optional[ReasonCode] = None
    message: Optional[str] = None


class AcceptedFile(BaseModel):
    filename: str
    content_type: str
    file_size: int
    human_readable_size: str
    is_image: bool
    is_text: bool
    scan_status: str
    scan_skipped: bool = False
    scanned_at: datetime
    warning: Optional[str] = None


class UploadResponse(BaseModel):
    message: str
    file: AcceptedFile
