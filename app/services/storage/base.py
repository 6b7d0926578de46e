from abc import ABC, abstractmethod
from typing import BinaryIO, List

class BaseStorage(ABC):
    @abstractmethod
    async def save_chunk(self, upload_session_id: str, chunk_number: int, chunk_data: BinaryIO) -> str:
        pass

    @abstractmethod
    async def merge_chunks(self, upload_session_id: str, total_chunks: int, merged_file_path: str) -> dict:
        pass

    @abstractmethod
    async def cleanup_session(self, upload_session_id: str, total_chunks: int) -> dict:
        pass

    @abstractmethod
    async def save_file(self, file_name: str, file_data: BinaryIO) -> str:
        pass

    @abstractmethod
    async def list_sessions(self) -> List[str]:
        pass

    @abstractmethod
    async def purge_session(self, upload_session_id: str, older_than: float) -> int:
        pass

    @abstractmethod
    async def purge_temp_files(self, older_than: float) -> int:
        pass

    def close(self) -> None:
        pass
