# azure_blob.py
import logging
from typing import List, Optional
from urllib.parse import quote

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.storage.blob import BlobServiceClient, ContentSettings

from .exceptions import (
    ConfigurationError,
    GatewayError,
    KeyConflictError,
    NetworkFailureError,
    NotFoundError,
    QuotaExceededError,
    UnauthorizedError,
)
from .storage.base import StorageGateway
from .storage.dto import ObjectRecord

QUOTA_STATUS_CODES = {413, 507}
QUOTA_ERROR_MARKERS = ("quota", "limitexceeded", "toolarge")


def translate_azure_error(error: AzureError, action: str) -> GatewayError:
    """Maps an Azure SDK exception onto the gateway error taxonomy."""
    message = f"Azure {action} failed: {error}"

    if isinstance(error, ClientAuthenticationError):
        return UnauthorizedError(message)
    if isinstance(error, ResourceNotFoundError):
        return NotFoundError(message)
    if isinstance(error, ResourceExistsError):
        return KeyConflictError(message)
    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return NetworkFailureError(message)

    if isinstance(error, HttpResponseError):
        status = error.status_code
        error_code = str(getattr(error, "error_code", "") or "").lower()
        if status in (401, 403):
            return UnauthorizedError(message)
        if status == 404:
            return NotFoundError(message)
        if status == 409:
            return KeyConflictError(message)
        if status in QUOTA_STATUS_CODES or any(
            marker in error_code for marker in QUOTA_ERROR_MARKERS
        ):
            return QuotaExceededError(message)

    # Throttling, server errors and anything unrecognised are worth a retry.
    return NetworkFailureError(message)


class AzureBlobGateway(StorageGateway):
    """
    Gateway for Azure Blob Storage, implementing the StorageGateway interface.
    """

    def __init__(
        self,
        account_url: Optional[str] = None,
        connection_string: Optional[str] = None,
        account_key: Optional[str] = None,
        sas_token: Optional[str] = None,
        timeout: float = 30.0,
        page_size: int = 500,
    ):
        self.timeout = timeout
        self.page_size = page_size
        self.sas_token = sas_token.lstrip("?") if sas_token else None
        client_options = {
            "connection_timeout": timeout,
            "read_timeout": timeout,
        }

        account_url = self._normalize_account_url(account_url)
        if connection_string:
            self.service = BlobServiceClient.from_connection_string(
                connection_string, **client_options
            )
            account_url = account_url or self._normalize_account_url(self.service.primary_endpoint)
        elif account_url and (account_key or self.sas_token):
            self.service = BlobServiceClient(
                account_url,
                credential=account_key or self.sas_token,
                **client_options,
            )
        else:
            raise ConfigurationError(
                "Azure storage requires either a connection string or an account URL with an account key or SAS token"
            )

        self.account_url = account_url
        logging.info(f"Azure Blob gateway initialized for {self.account_url}.")

    @staticmethod
    def _normalize_account_url(account_url: Optional[str]) -> Optional[str]:
        # Any SAS query the endpoint carries is dropped; it is re-appended per URL.
        if not account_url:
            return None
        return account_url.split("?", 1)[0].rstrip("/")

    def _to_record(self, container: str, blob) -> ObjectRecord:
        content_settings = getattr(blob, "content_settings", None)
        return ObjectRecord(
            key=blob.name,
            last_modified=blob.last_modified,
            size_bytes=blob.size or 0,
            access_url=self.resolve_access_url(container, blob.name),
            content_type=getattr(content_settings, "content_type", None),
        )

    def list_objects(self, container: str) -> List[ObjectRecord]:
        """
        Returns every blob in the container, walking all result pages before
        returning anything.
        """
        container_client = self.service.get_container_client(container)
        records = []
        try:
            logging.info(f"Listing blobs in Azure container '{container}'")
            pages = container_client.list_blobs(
                results_per_page=self.page_size, timeout=self.timeout
            ).by_page()
            for page_number, page in enumerate(pages, start=1):
                if page_number > 1:
                    logging.info("Found more blobs, continuing listing...")
                for blob in page:
                    records.append(self._to_record(container, blob))
        except AzureError as e:
            logging.error(f"Failed to list blobs in Azure container '{container}': {e}")
            raise translate_azure_error(e, f"listing of '{container}'") from e
        return records

    def get_object_metadata(self, container: str, key: str) -> ObjectRecord:
        blob_client = self.service.get_container_client(container).get_blob_client(key)
        try:
            properties = blob_client.get_blob_properties(timeout=self.timeout)
        except AzureError as e:
            logging.error(f"Failed to read properties of blob '{key}': {e}")
            raise translate_azure_error(e, f"metadata lookup of '{key}'") from e
        return self._to_record(container, properties)

    def write_object(self, container: str, key: str, data: bytes, content_type: str):
        """
        Uploads a new block blob. Block blobs are committed atomically, and
        overwrite=False turns a key collision into a KeyConflictError.
        """
        container_client = self.service.get_container_client(container)
        try:
            logging.info(f"Uploading {len(data)} bytes to Azure blob '{container}/{key}'...")
            container_client.upload_blob(
                name=key,
                data=data,
                overwrite=False,
                content_settings=ContentSettings(content_type=content_type),
                timeout=self.timeout,
            )
            logging.info(f"Successfully uploaded '{key}' to container '{container}'.")
        except AzureError as e:
            logging.error(f"Failed to upload blob '{container}/{key}': {e}")
            raise translate_azure_error(e, f"upload of '{key}'") from e

    def resolve_access_url(self, container: str, key: str) -> str:
        url = f"{self.account_url}/{quote(container)}/{quote(key)}"
        if self.sas_token:
            url = f"{url}?{self.sas_token}"
        return url

    def verify_container_exists(self, container: str):
        try:
            self.service.get_container_client(container).get_container_properties(
                timeout=self.timeout
            )
            logging.info(f"Azure container '{container}' exists.")
        except AzureError as e:
            error = translate_azure_error(e, f"lookup of container '{container}'")
            if isinstance(error, NotFoundError):
                logging.critical(f"Configured Azure container '{container}' does not exist.")
            else:
                logging.error(f"Error accessing Azure container '{container}': {e}")
            raise error from e
