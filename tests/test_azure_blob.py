# tests/test_azure_blob.py
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import ANY, patch

import pytest
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
)

from smartdocs.azure_blob import AzureBlobGateway, translate_azure_error
from smartdocs.exceptions import (
    ConfigurationError,
    KeyConflictError,
    NetworkFailureError,
    NotFoundError,
    QuotaExceededError,
    UnauthorizedError,
)

ACCOUNT_URL = "https://acct.blob.core.windows.net"
MODIFIED = datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc)


def blob(name, size=10, content_type="application/pdf"):
    return SimpleNamespace(
        name=name,
        size=size,
        last_modified=MODIFIED,
        content_settings=SimpleNamespace(content_type=content_type),
    )


def http_error(status, error_code=None):
    error = HttpResponseError(message=f"status {status}")
    error.status_code = status
    error.error_code = error_code
    return error


@pytest.fixture
def MockBlobService():
    with patch("smartdocs.azure_blob.BlobServiceClient") as mock:
        yield mock


@pytest.fixture
def gateway(MockBlobService):
    return AzureBlobGateway(account_url=ACCOUNT_URL, account_key="secret", timeout=7, page_size=2)


@pytest.fixture
def container_client(gateway):
    return gateway.service.get_container_client.return_value


class TestInit:
    def test_account_key(self, MockBlobService):
        gateway = AzureBlobGateway(account_url=ACCOUNT_URL + "/", account_key="secret", timeout=7)

        MockBlobService.assert_called_once_with(
            ACCOUNT_URL, credential="secret", connection_timeout=7, read_timeout=7
        )
        assert gateway.account_url == ACCOUNT_URL

    def test_account_url_query_is_dropped_before_connecting(self, MockBlobService):
        gateway = AzureBlobGateway(account_url=ACCOUNT_URL + "/?sv=2024&sig=abc", account_key="secret")

        assert MockBlobService.call_args.args == (ACCOUNT_URL,)
        assert gateway.resolve_access_url("rawinvoices", "a.pdf") == f"{ACCOUNT_URL}/rawinvoices/a.pdf"

    def test_connection_string_uses_primary_endpoint(self, MockBlobService):
        MockBlobService.from_connection_string.return_value.primary_endpoint = ACCOUNT_URL + "/?sv=1"

        gateway = AzureBlobGateway(connection_string="DefaultEndpointsProtocol=https;AccountName=acct")

        MockBlobService.from_connection_string.assert_called_once_with(
            "DefaultEndpointsProtocol=https;AccountName=acct", connection_timeout=30.0, read_timeout=30.0
        )
        assert gateway.account_url == ACCOUNT_URL

    def test_sas_token_is_the_credential(self, MockBlobService):
        AzureBlobGateway(account_url=ACCOUNT_URL, sas_token="?sv=2024&sig=abc")

        MockBlobService.assert_called_once_with(
            ACCOUNT_URL, credential="sv=2024&sig=abc", connection_timeout=30.0, read_timeout=30.0
        )

    def test_missing_credentials(self, MockBlobService):
        with pytest.raises(ConfigurationError):
            AzureBlobGateway(account_url=ACCOUNT_URL)
        MockBlobService.assert_not_called()


class TestListObjects:
    def test_walks_every_page(self, gateway, container_client):
        container_client.list_blobs.return_value.by_page.return_value = iter(
            [[blob("a.pdf"), blob("b.png", content_type="image/png")], [blob("c.pdf", size=0)]]
        )

        records = gateway.list_objects("rawinvoices")

        gateway.service.get_container_client.assert_called_with("rawinvoices")
        container_client.list_blobs.assert_called_once_with(results_per_page=2, timeout=7)
        assert [r.key for r in records] == ["a.pdf", "b.png", "c.pdf"]
        assert records[1].content_type == "image/png"
        assert records[2].size_bytes == 0
        assert records[0].access_url == f"{ACCOUNT_URL}/rawinvoices/a.pdf"
        assert records[0].last_modified == MODIFIED

    def test_empty_container(self, gateway, container_client):
        container_client.list_blobs.return_value.by_page.return_value = iter([[]])
        assert gateway.list_objects("rawinvoices") == []

    def test_failure_on_later_page_fails_whole_listing(self, gateway, container_client):
        def pages():
            yield [blob("a.pdf")]
            raise ServiceRequestError("connection dropped")

        container_client.list_blobs.return_value.by_page.return_value = pages()

        with pytest.raises(NetworkFailureError):
            gateway.list_objects("rawinvoices")

    def test_missing_container(self, gateway, container_client):
        container_client.list_blobs.side_effect = ResourceNotFoundError("ContainerNotFound")

        with pytest.raises(NotFoundError):
            gateway.list_objects("rawinvoices")

    def test_rejected_credentials(self, gateway, container_client):
        container_client.list_blobs.side_effect = ClientAuthenticationError("signature mismatch")

        with pytest.raises(UnauthorizedError):
            gateway.list_objects("rawinvoices")


class TestWriteObject:
    def test_uploads_without_overwrite(self, gateway, container_client):
        gateway.write_object("rawinvoices", "1-a.pdf", b"%PDF", "application/pdf")

        container_client.upload_blob.assert_called_once_with(
            name="1-a.pdf", data=b"%PDF", overwrite=False, content_settings=ANY, timeout=7
        )
        content_settings = container_client.upload_blob.call_args.kwargs["content_settings"]
        assert content_settings.content_type == "application/pdf"

    def test_existing_key_is_a_conflict(self, gateway, container_client):
        container_client.upload_blob.side_effect = ResourceExistsError("BlobAlreadyExists")

        with pytest.raises(KeyConflictError):
            gateway.write_object("rawinvoices", "1-a.pdf", b"%PDF", "application/pdf")

    def test_quota(self, gateway, container_client):
        container_client.upload_blob.side_effect = http_error(413, "RequestBodyTooLarge")

        with pytest.raises(QuotaExceededError):
            gateway.write_object("rawinvoices", "1-a.pdf", b"%PDF", "application/pdf")


class TestMetadataAndUrls:
    def test_get_object_metadata(self, gateway):
        blob_client = gateway.service.get_container_client.return_value.get_blob_client.return_value
        blob_client.get_blob_properties.return_value = blob("a.pdf", size=42)

        record = gateway.get_object_metadata("rawinvoices", "a.pdf")

        blob_client.get_blob_properties.assert_called_once_with(timeout=7)
        assert record.size_bytes == 42

    def test_access_url_quotes_key(self, gateway):
        url = gateway.resolve_access_url("rawinvoices", "1-Utility Bill.pdf")
        assert url == f"{ACCOUNT_URL}/rawinvoices/1-Utility%20Bill.pdf"

    def test_access_url_carries_sas_token(self, MockBlobService):
        gateway = AzureBlobGateway(account_url=ACCOUNT_URL, sas_token="sv=2024&sig=abc")
        assert gateway.resolve_access_url("rawinvoices", "a.pdf") == (
            f"{ACCOUNT_URL}/rawinvoices/a.pdf?sv=2024&sig=abc"
        )

    def test_verify_missing_container(self, gateway, container_client):
        container_client.get_container_properties.side_effect = ResourceNotFoundError("missing")

        with pytest.raises(NotFoundError):
            gateway.verify_container_exists("rawinvoices")


@pytest.mark.parametrize(
    "error, expected",
    [
        (http_error(401), UnauthorizedError),
        (http_error(403, "AuthorizationFailure"), UnauthorizedError),
        (http_error(404), NotFoundError),
        (http_error(409), KeyConflictError),
        (http_error(400, "ContainerQuotaExceeded"), QuotaExceededError),
        (http_error(507), QuotaExceededError),
        (http_error(503, "ServerBusy"), NetworkFailureError),
        (http_error(429), NetworkFailureError),
    ],
)
def test_translate_http_errors(error, expected):
    assert isinstance(translate_azure_error(error, "test"), expected)
