"""Server module exports"""
from .main import create_app
from .storage import StorageRejection, UploadStorage, generate_storage_key

__all__ = [
    "create_app",
    "StorageRejection",
    "UploadStorage",
    "generate_storage_key",
]
