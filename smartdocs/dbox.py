# dbox.py
import dropbox
from dropbox.files import WriteMode, CommitInfo, FileMetadata as DropboxFileMetadata
from dropbox.exceptions import ApiError, AuthError, InternalServerError, RateLimitError
import logging
import mimetypes
from typing import List
from urllib.parse import quote

import requests

from .exceptions import (
    GatewayError,
    KeyConflictError,
    NetworkFailureError,
    NotFoundError,
    QuotaExceededError,
    UnauthorizedError,
)
from .storage.base import StorageGateway
from .storage.dto import ObjectRecord

DROPBOX_ERRORS = (
    ApiError,
    AuthError,
    InternalServerError,
    RateLimitError,
    requests.exceptions.RequestException,
)


def _write_error_reason(api_error):
    """Digs the WriteError out of an upload or upload-session error, if any."""
    if api_error is None or not hasattr(api_error, "is_path") or not api_error.is_path():
        return None
    path_error = api_error.get_path()
    # UploadError wraps the WriteError in UploadWriteFailed.reason
    return getattr(path_error, "reason", path_error)


def translate_dropbox_error(error: Exception, action: str) -> GatewayError:
    """Maps a Dropbox SDK (or transport) exception onto the gateway error taxonomy."""
    message = f"Dropbox {action} failed: {error}"

    if isinstance(error, AuthError):
        return UnauthorizedError(message)
    if isinstance(error, ApiError):
        api_error = error.error
        write_reason = _write_error_reason(api_error)
        if write_reason is not None and hasattr(write_reason, "is_insufficient_space"):
            if write_reason.is_insufficient_space():
                return QuotaExceededError(message)
            if write_reason.is_conflict():
                return KeyConflictError(message)
        if write_reason is not None and hasattr(write_reason, "is_not_found"):
            if write_reason.is_not_found():
                return NotFoundError(message)
        return NetworkFailureError(message)
    # Server errors, throttling and transport failures are worth a retry.
    return NetworkFailureError(message)


class DropboxGateway(StorageGateway):
    """
    Gateway for the Dropbox API, implementing the StorageGateway interface.
    A container is a Dropbox folder; an object key is a file name inside it.
    """

    def __init__(self, app_key, app_secret, refresh_token, timeout=30.0, chunk_size=128 * 1024 * 1024, page_size=500):
        self.chunk_size = chunk_size
        self.page_size = page_size
        try:
            self.dbx = dropbox.Dropbox(
                app_key=app_key,
                app_secret=app_secret,
                oauth2_refresh_token=refresh_token,
                timeout=timeout,
            )
            # Verify successful authentication by requesting current user info
            self.dbx.users_get_current_account()
            logging.info("Dropbox gateway initialized successfully.")
        except AuthError as e:
            logging.error(
                f"Dropbox authentication failed. Please check your token and app credentials. Error: {e!r}"
            )
            raise UnauthorizedError(f"Dropbox authentication failed: {e}") from e
        except Exception as e:
            logging.error(
                f"Failed to initialize Dropbox gateway. Check your credentials. Error: {e}"
            )
            raise

    @staticmethod
    def _folder_path(container: str) -> str:
        # An empty container name is the Dropbox root.
        container = container.strip("/")
        return f"/{container}" if container else ""

    def _object_path(self, container: str, key: str) -> str:
        return f"{self._folder_path(container)}/{key}"

    def _to_record(self, container: str, entry: DropboxFileMetadata) -> ObjectRecord:
        return ObjectRecord(
            key=entry.name,
            last_modified=entry.server_modified,
            size_bytes=entry.size,
            access_url=self.resolve_access_url(container, entry.name),
            content_type=mimetypes.guess_type(entry.name)[0],
        )

    def list_objects(self, container: str) -> List[ObjectRecord]:
        """
        Returns a list of all files in the specified Dropbox folder,
        handling pagination automatically. Sub-folders are skipped.
        """
        folder_path = self._folder_path(container)
        try:
            logging.info(f"Listing files in Dropbox path: '{folder_path}'")
            result = self.dbx.files_list_folder(folder_path, limit=self.page_size)  # Non-recursive
            all_entries = list(result.entries)
            while result.has_more:
                logging.info("Found more files, continuing listing...")
                result = self.dbx.files_list_folder_continue(result.cursor)
                all_entries.extend(result.entries)
        except DROPBOX_ERRORS as e:
            logging.error(f"Failed to list files in Dropbox path '{folder_path}': {e}")
            raise translate_dropbox_error(e, f"listing of '{folder_path}'") from e

        return [
            self._to_record(container, entry)
            for entry in all_entries
            if isinstance(entry, DropboxFileMetadata)
        ]

    def get_object_metadata(self, container: str, key: str) -> ObjectRecord:
        path = self._object_path(container, key)
        try:
            entry = self.dbx.files_get_metadata(path)
        except DROPBOX_ERRORS as e:
            logging.error(f"Failed to read metadata of '{path}': {e}")
            raise translate_dropbox_error(e, f"metadata lookup of '{path}'") from e
        if not isinstance(entry, DropboxFileMetadata):
            raise NotFoundError(f"Dropbox path '{path}' is not a file.")
        return self._to_record(container, entry)

    def write_object(self, container: str, key: str, data: bytes, content_type: str):
        """
        Uploads bytes to Dropbox, using an upload session for large payloads.
        The file only becomes visible once the final commit succeeds.
        """
        remote_path = self._object_path(container, key)
        commit_mode = WriteMode("add")
        try:
            if len(data) <= self.chunk_size:
                logging.info(f"Uploading {len(data)} bytes to {remote_path} (single upload)...")
                self.dbx.files_upload(
                    data, remote_path, mode=commit_mode, autorename=False, strict_conflict=True
                )
            else:
                logging.info(f"Starting chunked upload to {remote_path}...")
                offset = self.chunk_size
                upload_session_start_result = self.dbx.files_upload_session_start(data[:offset])
                cursor = dropbox.files.UploadSessionCursor(
                    session_id=upload_session_start_result.session_id,
                    offset=offset,
                )
                commit_info = CommitInfo(
                    path=remote_path, mode=commit_mode, autorename=False, strict_conflict=True
                )
                while len(data) - offset > self.chunk_size:
                    logging.info(f"Uploading chunk for {remote_path} (offset: {offset})...")
                    self.dbx.files_upload_session_append_v2(data[offset:offset + self.chunk_size], cursor)
                    offset += self.chunk_size
                    cursor.offset = offset
                logging.info(f"Uploading final chunk for {remote_path}...")
                self.dbx.files_upload_session_finish(data[offset:], cursor, commit_info)
            logging.info(f"Upload completed for {remote_path}.")
        except DROPBOX_ERRORS as e:
            logging.error(f"Failed to upload file to '{remote_path}': {e}")
            raise translate_dropbox_error(e, f"upload of '{remote_path}'") from e

    def resolve_access_url(self, container: str, key: str) -> str:
        return f"https://www.dropbox.com/home{quote(self._folder_path(container))}?preview={quote(key)}"

    def verify_container_exists(self, container: str):
        """
        Verifies if a folder exists.
        Raises NotFoundError if the folder does not exist.
        """
        folder_path = self._folder_path(container)
        # For Dropbox, an empty string signifies the root folder, which always exists.
        if folder_path == "":
            logging.info("Dropbox root folder '' specified, which always exists.")
            return

        try:
            self.dbx.files_get_metadata(folder_path)
            logging.info(f"Dropbox folder '{folder_path}' exists.")
        except DROPBOX_ERRORS as e:
            error = translate_dropbox_error(e, f"lookup of folder '{folder_path}'")
            if isinstance(error, NotFoundError):
                logging.critical(f"Configured Dropbox folder '{folder_path}' does not exist.")
            else:
                logging.error(f"Error accessing Dropbox folder '{folder_path}': {e}")
            raise error from e
