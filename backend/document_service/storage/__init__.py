from document_service.storage.base import StorageBackend, StoredObject, build_object_key
from document_service.storage.gateway import StorageGateway, build_storage_backend, build_storage_gateway

__all__ = [
    "StorageBackend",
    "StoredObject",
    "StorageGateway",
    "build_object_key",
    "build_storage_backend",
    "build_storage_gateway",
]
