"""Chunked upload/download of object content.

A transfer is a short-lived server-side session:

    POST /fileService                       begin (BeginUpload / BeginDownload)
    POST /fileService/<id>                  upload one chunk {Sequence, Data}
    GET  /fileService/<id>?Position=&ChunkSize=   download one chunk
    POST /fileService/<id>/Complete{Upload,Download}
    POST /fileService/<id>/Cancel{Upload,Download}

Chunks move strictly in order, one at a time. Session state lives only in
the calling frame; an interrupted transfer cannot be resumed. Any failure
after begin cancels the session before the error propagates.
"""

import base64
import io
import logging
from dataclasses import dataclass
from typing import BinaryIO, Optional

from errors import DriverError, TransferFailure
from tasks import TaskTracker
from transport import Transport

logger = logging.getLogger(__name__)


@dataclass
class TransferProgress:
    """Progress of one transfer, updated after every chunk."""
    bytes_to_transfer: int = 0
    bytes_transferred: int = 0
    complete: bool = False
    error: Optional[str] = None

    @property
    def percent(self) -> float:
        if not self.bytes_to_transfer:
            return 100.0 if self.complete else 0.0
        return 100.0 * self.bytes_transferred / self.bytes_to_transfer


class ChunkedTransferSession:
    """Moves object bytes through sequential chunk exchanges."""

    def __init__(self, transport: Transport, tracker: TaskTracker, chunk_size: int = 10 * 1024):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.transport = transport
        self.tracker = tracker
        self.chunk_size = chunk_size

    def _begin(self, payload: dict) -> dict:
        try:
            response = self.transport.post_json('/fileService', payload)
        except DriverError as e:
            raise TransferFailure(f"{payload['Command']} failed: {e}") from e
        if not response:
            logger.error("Unable to transfer file as initiation failed")
            raise TransferFailure(f"{payload['Command']} for {payload['FilePath']} returned no session")
        return response

    def _cancel(self, transfer_id: str, direction: str) -> None:
        """Best-effort cancel; errors are logged and the first failure wins."""
        try:
            self.transport.post(f"/fileService/{transfer_id}/Cancel{direction}", '')
            logger.info(f"Cancelled {direction.lower()} session {transfer_id}")
        except DriverError as e:
            logger.warning(f"Cancel{direction} of session {transfer_id} failed: {e}")

    def upload(
        self,
        storage_id: str,
        file_path: str,
        stream: BinaryIO,
        declared_size: int,
        progress: Optional[TransferProgress] = None,
    ) -> None:
        """Upload declared_size bytes read from stream.

        Raises:
            TransferFailure: Begin, a chunk, or completion failed, or the
                stream did not hold exactly declared_size bytes
        """
        progress = progress or TransferProgress()
        progress.bytes_to_transfer = declared_size

        response = self._begin({
            'Command': 'BeginUpload',
            'StorageID': storage_id,
            'FilePath': file_path,
            'FileSizeBytes': declared_size,
        })
        transfer_id = response.get('FileTransferID')
        if not transfer_id:
            raise TransferFailure(f"BeginUpload for {file_path} returned no FileTransferID")
        logger.info(f"Uploading {declared_size} bytes to {file_path} (session {transfer_id})")

        try:
            sent = self._put_chunks(transfer_id, stream, progress)
            if sent != declared_size:
                raise TransferFailure(
                    f"Uploaded {sent} bytes but declared {declared_size}", transfer_id
                )
            completion = self.transport.post_json(f"/fileService/{transfer_id}/CompleteUpload")
            if self.tracker.wait_for_storage_response(completion) is None:
                logger.warning("No confirmation of CompleteUpload task completion but no error either")
        except Exception as e:
            progress.error = str(e)
            self._cancel(transfer_id, 'Upload')
            if isinstance(e, TransferFailure):
                raise
            raise TransferFailure(f"Upload of {file_path} failed: {e}", transfer_id) from e

        progress.complete = True
        logger.info(f"Uploaded {file_path} ({sent} bytes)")

    def _put_chunks(self, transfer_id: str, stream: BinaryIO, progress: TransferProgress) -> int:
        sequence = 0
        sent = 0
        while True:
            chunk = stream.read(self.chunk_size)
            if not chunk:
                break
            self.transport.post_json(f"/fileService/{transfer_id}", {
                'Sequence': sequence,
                'Data': base64.b64encode(chunk).decode('ascii'),
            })
            sequence += 1
            sent += len(chunk)
            progress.bytes_transferred = sent
            logger.debug(f"Sent chunk {sequence - 1} ({len(chunk)} bytes) of session {transfer_id}")
        return sent

    def download(
        self,
        storage_id: str,
        file_path: str,
        progress: Optional[TransferProgress] = None,
    ) -> BinaryIO:
        """Download an object. The size reported by the server is authoritative.

        Returns:
            In-memory stream holding the object content

        Raises:
            TransferFailure: Begin, a chunk, or completion failed, or the
                received length differs from the reported size
        """
        progress = progress or TransferProgress()

        response = self._begin({
            'Command': 'BeginDownload',
            'StorageID': storage_id,
            'FilePath': file_path,
        })
        session = response.get('FileTransfer') or {}
        transfer_id = session.get('FileTransferID')
        if not transfer_id:
            raise TransferFailure(f"BeginDownload for {file_path} returned no FileTransferID")
        size = int(session.get('FileSizeBytes') or 0)
        progress.bytes_to_transfer = size
        logger.info(f"Downloading {file_path} ({size} bytes, session {transfer_id})")

        try:
            if self.tracker.wait_for_storage_response(response) is None:
                logger.warning("No confirmation of BeginDownload task completion but no error either")
            content = self._get_chunks(transfer_id, progress)
            if len(content) != size:
                raise TransferFailure(
                    f"Received {len(content)} bytes but server reported {size}", transfer_id
                )
            self.transport.post(f"/fileService/{transfer_id}/CompleteDownload", '')
        except Exception as e:
            progress.error = str(e)
            self._cancel(transfer_id, 'Download')
            if isinstance(e, TransferFailure):
                raise
            raise TransferFailure(f"Download of {file_path} failed: {e}", transfer_id) from e

        progress.complete = True
        return io.BytesIO(content)

    def _get_chunks(self, transfer_id: str, progress: TransferProgress) -> bytes:
        buffer = bytearray()
        while True:
            resource = f"/fileService/{transfer_id}?Position={len(buffer)}&ChunkSize={self.chunk_size}"
            _, stream = self.transport.get_stream(resource)
            chunk = stream.read() if stream is not None else b''
            if not chunk:
                break
            buffer.extend(chunk)
            progress.bytes_transferred = len(buffer)
            if len(chunk) < self.chunk_size:
                break
        return bytes(buffer)
