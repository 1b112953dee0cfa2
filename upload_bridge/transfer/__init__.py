"""
Transfer Module - Handshake and Ingest

Gates each upload on the front-end's acknowledgment, then streams the
received files to disk.
"""

from .handshake import HandshakeResult, handshake
from .ingestor import CHUNK_SIZE, SavedFile, UploadedFile, UploadIngestor, safe_filename
from .multipart import MultipartStream, PartEvent, PartHeaders

__all__ = [
    'HandshakeResult',
    'handshake',
    'CHUNK_SIZE',
    'SavedFile',
    'UploadedFile',
    'UploadIngestor',
    'safe_filename',
    'MultipartStream',
    'PartEvent',
    'PartHeaders',
]
