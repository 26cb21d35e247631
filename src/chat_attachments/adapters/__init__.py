"""
Reference implementations of the attachment collaborators.
"""

from chat_attachments.adapters.filesystem_store import FileSystemAttachmentStore
from chat_attachments.adapters.http_transport import HttpTransport
from chat_attachments.adapters.local_assets import LocalAssetLoader
from chat_attachments.adapters.media_info import DefaultMediaInfoExtractor
from chat_attachments.adapters.memory_store import InMemoryAttachmentStore

__all__ = [
    "DefaultMediaInfoExtractor",
    "FileSystemAttachmentStore",
    "HttpTransport",
    "InMemoryAttachmentStore",
    "LocalAssetLoader",
]
