from fastapi import APIRouter, BackgroundTasks, Depends, File, UploadFile, status
from fastapi.responses import JSONResponse
from typing import Optional
import logging

from app.api.dependencies import (
    chunk_upload_headers, complete_upload_headers, get_upload_service, status_headers
)
from app.core.errors import InvalidInputError
from app.schemas.upload import (
    ChunkUploadHeaders, CompleteUploadHeaders, StatusHeaders,
    ChunkUploadResponse, UploadStatusResponse, CompleteUploadResponse,
    CompletionScheduledResponse, CompletionStatusResponse, FileUploadResponse,
    safe_file_name,
)
from app.services.upload_service import UploadService

logger = logging.getLogger(__name__)

router = APIRouter()

@router.post("", response_model=FileUploadResponse)
async def upload_file(
    file: Optional[UploadFile] = File(None),
    service: UploadService = Depends(get_upload_service),
):
    """
    POST /upload - Store a whole file in one request
    """
    if file is None:
        raise InvalidInputError("file is nil")
    try:
        file_name = safe_file_name(file.filename or "")
    except ValueError:
        raise InvalidInputError("file name is required")

    await service.save_file(file_name, file.file)
    return FileUploadResponse(message=f"'{file_name}' uploaded!", path=f"/media/{file_name}")

@router.post("/check", response_model=ChunkUploadResponse)
async def upload_chunk(
    headers: ChunkUploadHeaders = Depends(chunk_upload_headers),
    file: Optional[UploadFile] = File(None),
    service: UploadService = Depends(get_upload_service),
):
    """
    POST /upload/check - Store one chunk and record it in the upload status
    """
    if file is None:
        raise InvalidInputError("File is required")

    await service.receive_chunk(headers.file_id, headers.chunk_number, file.file)
    return ChunkUploadResponse()

@router.get("/status", response_model=UploadStatusResponse)
async def upload_status(
    headers: StatusHeaders = Depends(status_headers),
    service: UploadService = Depends(get_upload_service),
):
    """
    GET /upload/status - Chunk numbers received so far for X-File-Id
    """
    uploaded = await service.get_status(headers.file_id)
    return UploadStatusResponse(uploaded=uploaded, total_received=len(uploaded))

@router.post("/complete", response_model=CompleteUploadResponse, responses={202: {"model": CompletionScheduledResponse}})
async def complete_upload(
    background_tasks: BackgroundTasks,
    headers: CompleteUploadHeaders = Depends(complete_upload_headers),
    service: UploadService = Depends(get_upload_service),
):
    """
    POST /upload/complete - Merge all chunks into the final file

    With ``X-Background: true`` the merge runs after the response is sent;
    poll GET /upload/complete/status for the outcome.
    """
    if headers.background:
        if await service.schedule_completion(headers.file_id, headers.total_chunks):
            background_tasks.add_task(
                service.run_completion, headers.file_id, headers.file_name, headers.total_chunks
            )
            scheduled = CompletionScheduledResponse()
        else:
            job = await service.get_completion_status(headers.file_id)
            scheduled = CompletionScheduledResponse(message="File merge already in progress", status=job["state"])
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=scheduled.model_dump(),
        )

    path = await service.complete_upload(headers.file_id, headers.file_name, headers.total_chunks)
    return CompleteUploadResponse(path=path)

@router.get("/complete/status", response_model=CompletionStatusResponse)
async def completion_status(
    headers: StatusHeaders = Depends(status_headers),
    service: UploadService = Depends(get_upload_service),
):
    """
    GET /upload/complete/status - State of a background merge
    """
    job = await service.get_completion_status(headers.file_id)
    return CompletionStatusResponse(**job)
