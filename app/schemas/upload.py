from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from typing import ClassVar, List, Optional
import ntpath
import posixpath

from app.core.errors import InvalidInputError

SESSION_ID_PATTERN = r"^[A-Za-z0-9._-]{1,128}$"


class HeaderModel(BaseModel):
    """Request schema carried in headers; validated once at the route boundary."""

    error_message: ClassVar[str] = "Invalid headers"

    @classmethod
    def from_headers(cls, **values):
        try:
            return cls(**values)
        except ValidationError as e:
            problems = ", ".join(
                str(err["loc"][0]) if err.get("loc") else err["msg"] for err in e.errors()
            )
            raise InvalidInputError(f"{cls.error_message}: {problems}") from e


class StatusHeaders(HeaderModel):
    error_message: ClassVar[str] = "X-File-Id header is required"

    file_id: str = Field(..., pattern=SESSION_ID_PATTERN)


class ChunkUploadHeaders(HeaderModel):
    file_id: str = Field(..., pattern=SESSION_ID_PATTERN)
    chunk_number: int = Field(..., gt=0)
    total_chunks: int = Field(..., gt=0)

    @model_validator(mode="after")
    def chunk_within_total(self):
        if self.chunk_number > self.total_chunks:
            raise ValueError("chunk_number exceeds total_chunks")
        return self


class CompleteUploadHeaders(HeaderModel):
    error_message: ClassVar[str] = "X-File-Id, X-File-Name and X-Total-Chunks are required"

    file_id: str = Field(..., pattern=SESSION_ID_PATTERN)
    file_name: str = Field(..., min_length=1)
    total_chunks: int = Field(..., gt=0)
    background: bool = False

    @field_validator("file_name")
    @classmethod
    def plain_file_name(cls, value: str) -> str:
        return safe_file_name(value)


def safe_file_name(value: str) -> str:
    """Keep only the last path component so the name cannot leave its directory."""
    name = posixpath.basename(ntpath.basename(value.strip()))
    if name in ("", ".", ".."):
        raise ValueError("invalid file name")
    return name


class ChunkUploadResponse(BaseModel):
    message: str = "Chunk uploaded successfully"


class UploadStatusResponse(BaseModel):
    uploaded: List[int]
    total_received: int


class CompleteUploadResponse(BaseModel):
    message: str = "File merged successfully"
    path: str


class CompletionScheduledResponse(BaseModel):
    message: str = "File merge scheduled"
    status: str = "pending"


class CompletionStatusResponse(BaseModel):
    state: str
    path: Optional[str] = None
    error: Optional[str] = None


class FileUploadResponse(BaseModel):
    message: str
    path: str


class ErrorResponse(BaseModel):
    error: str
    code: str
