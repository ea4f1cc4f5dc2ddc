from .blob_store import BlobStore, HttpBlobStore, LocalBlobStore, get_blob_store, publish_directory

__all__ = ["BlobStore", "HttpBlobStore", "LocalBlobStore", "get_blob_store", "publish_directory"]
