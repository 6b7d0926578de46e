from typing import Optional

from fastapi import Header, Request

from app.schemas.upload import ChunkUploadHeaders, CompleteUploadHeaders, StatusHeaders
from app.services.upload_service import UploadService


def get_upload_service(request: Request) -> UploadService:
    return request.app.state.upload_service


def chunk_upload_headers(
    x_file_id: Optional[str] = Header(None),
    x_chunk_number: Optional[str] = Header(None),
    x_total_chunks: Optional[str] = Header(None),
) -> ChunkUploadHeaders:
    return ChunkUploadHeaders.from_headers(
        file_id=x_file_id,
        chunk_number=x_chunk_number,
        total_chunks=x_total_chunks,
    )


def status_headers(x_file_id: Optional[str] = Header(None)) -> StatusHeaders:
    return StatusHeaders.from_headers(file_id=x_file_id)


def complete_upload_headers(
    x_file_id: Optional[str] = Header(None),
    x_file_name: Optional[str] = Header(None),
    x_total_chunks: Optional[str] = Header(None),
    x_background: Optional[str] = Header(None),
) -> CompleteUploadHeaders:
    values = dict(file_id=x_file_id, file_name=x_file_name, total_chunks=x_total_chunks)
    if x_background is not None:
        values["background"] = x_background
    return CompleteUploadHeaders.from_headers(**values)
