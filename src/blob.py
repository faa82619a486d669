"""Blob objects stored on named storage bins.

A bucket is addressed as '<storage-name>[/sub/dir]'; objects live at
'<sub/dir>/<object>' within the storage bin.
"""

import io
import json
import logging
from typing import BinaryIO, Optional

from config import DriverConfig
from errors import MalformedResponse, ResourceNotFound
from models import BlobEntry
from tasks import TaskTracker
from transfer import ChunkedTransferSession, TransferProgress
from transport import Transport

logger = logging.getLogger(__name__)


def split_bucket(bucket: str) -> tuple[str, str]:
    """Split 'store/sub/dir' into ('store', '/sub/dir'); a bare name has path ''."""
    bucket = bucket.strip('/')
    if '/' in bucket:
        name, path = bucket.split('/', 1)
        return name, '/' + path
    return bucket, ''


class BlobStore:
    """Object operations on top of the chunked transfer session."""

    def __init__(self, transport: Transport, tracker: TaskTracker, config: DriverConfig):
        self.transport = transport
        self.tracker = tracker
        self.session = ChunkedTransferSession(transport, tracker, chunk_size=config.chunk_size)
        self._storage_ids: dict[str, str] = {}

    def find_storage_id(self, name: str) -> str:
        """Resolve a storage bin name to its id.

        Raises:
            ResourceNotFound: No storage bin with that name
        """
        if name in self._storage_ids:
            return self._storage_ids[name]
        for item in self.transport.get_json('/Storage?$filter=IsRemoved eq false') or []:
            if item.get('Name') == name:
                self._storage_ids[name] = str(item['StorageID'])
                return self._storage_ids[name]
        raise ResourceNotFound(f"Storage {name} not found")

    def _locate(self, bucket: str, name: str) -> tuple[str, str]:
        storage_name, path = split_bucket(bucket)
        return self.find_storage_id(storage_name), f"{path}/{name}"

    def put(self, bucket: str, name: str, stream: BinaryIO, size: int,
            progress: Optional[TransferProgress] = None) -> None:
        """Upload size bytes from stream as bucket/name."""
        storage_id, file_path = self._locate(bucket, name)
        self.session.upload(storage_id, file_path, stream, size, progress)

    def put_bytes(self, bucket: str, name: str, content: bytes) -> None:
        self.put(bucket, name, io.BytesIO(content), len(content))

    def get(self, bucket: str, name: str, progress: Optional[TransferProgress] = None) -> bytes:
        """Download bucket/name and return its content."""
        storage_id, file_path = self._locate(bucket, name)
        return self.session.download(storage_id, file_path, progress).read()

    def _search(self, storage_id: str, path: str, pattern: str, bucket: str) -> list[BlobEntry]:
        """Run a StorageSearchFile task and decode its result listing."""
        response = self.transport.post_json('/Storage/StorageSearchFile', {
            'StorageID': storage_id,
            'Path': path or '/',
            'Pattern': pattern,
        })
        result = self.tracker.wait_for_response(response)
        if not result:
            return []
        if isinstance(result, str):
            try:
                result = json.loads(result)
            except json.JSONDecodeError as e:
                raise MalformedResponse(200, 'Invalid JSON', f"StorageSearchFile result: {e}") from e
        return [BlobEntry.from_dict(item, bucket) for item in result]

    def list(self, bucket: Optional[str] = None) -> list[BlobEntry]:
        """List storage bins, or the entries directly under a bucket."""
        if bucket is None:
            data = self.transport.get_json('/Storage?$filter=IsRemoved eq false') or []
            return [BlobEntry.from_dict(item) for item in data]
        storage_name, path = split_bucket(bucket)
        return self._search(self.find_storage_id(storage_name), path, '*', bucket)

    def get_object(self, bucket: str, name: str) -> Optional[BlobEntry]:
        """Look up one entry by name (case-insensitive); None when absent."""
        storage_name, path = split_bucket(bucket)
        for entry in self._search(self.find_storage_id(storage_name), path, name, bucket):
            if entry.name.lower() == name.lower():
                return entry
        return None

    def get_size(self, bucket: str, name: str) -> Optional[int]:
        """Size in bytes of bucket/name, or None when it does not exist."""
        entry = self.get_object(bucket, name)
        return entry.size if entry is not None else None

    def exists(self, location: str) -> bool:
        """Check '<storage-name>[/sub/dir]/<object>' or a bare storage name.

        A trailing '/' never names an object.
        """
        if location.endswith('/'):
            return False
        storage_name, path = split_bucket(location)
        try:
            self.find_storage_id(storage_name)
        except ResourceNotFound:
            return False
        if not path:
            return True
        directory, _, name = path.rpartition('/')
        bucket = storage_name + directory
        return self.get_object(bucket, name) is not None

    def remove(self, bucket: str, name: str) -> None:
        """Delete bucket/name and wait for the delete task."""
        storage_id, file_path = self._locate(bucket, name)
        logger.info(f"Removing {bucket}/{name}")
        response = self.transport.post_json('/Storage/DeleteFile', {
            'StorageID': storage_id,
            'FilePath': file_path,
        })
        if self.tracker.wait_for_storage_response(response) is None:
            logger.warning("No confirmation of DeleteFile task completion but no error either")
