from .object_writer import (
    MultipartObjectWriter,
    UploadSession,
    WriterState,
)

__all__ = [
    "MultipartObjectWriter",
    "UploadSession",
    "WriterState",
]
