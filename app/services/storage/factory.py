from app.core.config import Settings
from .internal import InternalStorage
from .base import BaseStorage

def build_storage(settings: Settings) -> BaseStorage:
    return InternalStorage(
        chunk_dir=settings.CHUNK_DIR,
        completed_dir=settings.COMPLETED_DIR,
        upload_dir=settings.UPLOAD_DIR,
        buffer_size=settings.MERGE_BUFFER_SIZE,
        max_workers=settings.IO_WORKERS,
    )
