from dashsync.datastore.blobstore import BlobStore, FileBlobStore, MemoryBlobStore

__all__ = ["BlobStore", "FileBlobStore", "MemoryBlobStore"]
