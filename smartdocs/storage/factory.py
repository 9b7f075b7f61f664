"""Factory for creating storage gateways based on configuration."""

import logging

from ..exceptions import ConfigurationError
from .base import StorageGateway


def create_gateway(settings) -> StorageGateway:
    """Create the StorageGateway selected by settings.STORAGE_PROVIDER.

    Missing credentials are reported before any network call is attempted.

    Raises:
        ConfigurationError: If required settings are missing or the provider is unsupported.
        UnauthorizedError: If the provider rejects the credentials while connecting.
    """
    provider = settings.STORAGE_PROVIDER
    missing = settings.missing_storage_settings()
    if missing:
        raise ConfigurationError(
            f"Missing required settings for STORAGE_PROVIDER '{provider}': {', '.join(missing)}",
            missing=missing,
        )

    if provider == "azure":
        logging.info("Using Azure Blob storage provider.")
        return _create_azure_gateway(settings)
    if provider == "dropbox":
        logging.info("Using Dropbox storage provider.")
        return _create_dropbox_gateway(settings)

    raise ConfigurationError(f"Unsupported STORAGE_PROVIDER: {provider!r}. Supported: azure, dropbox")


def _create_azure_gateway(settings) -> StorageGateway:
    from ..azure_blob import AzureBlobGateway

    return AzureBlobGateway(
        account_url=settings.AZURE_ACCOUNT_URL,
        connection_string=settings.AZURE_STORAGE_CONNECTION_STRING,
        account_key=settings.AZURE_STORAGE_ACCOUNT_KEY,
        sas_token=settings.AZURE_STORAGE_SAS_TOKEN,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        page_size=settings.LIST_PAGE_SIZE,
    )


def _create_dropbox_gateway(settings) -> StorageGateway:
    from ..dbox import DropboxGateway

    return DropboxGateway(
        app_key=settings.DROPBOX_APP_KEY,
        app_secret=settings.DROPBOX_APP_SECRET,
        refresh_token=settings.DROPBOX_REFRESH_TOKEN,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        chunk_size=settings.DROPBOX_UPLOAD_CHUNK_SIZE,
        page_size=settings.LIST_PAGE_SIZE,
    )
