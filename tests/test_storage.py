import pytest
from botocore.exceptions import ClientError

from lpg_backend.exceptions import InvalidRequestError, StorageError
from lpg_backend.storage import ProofStorage, StorageConfig, object_key


class RecordingClient:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def put_object(self, **kwargs):
        if self.error is not None:
            raise self.error
        self.calls.append(kwargs)


def _storage(client, **overrides) -> ProofStorage:
    config = StorageConfig(
        endpoint="minio:9000",
        access_key="key",
        secret_key="secret",
        bucket="lpg-receipts",
        **overrides,
    )
    storage = ProofStorage(config)
    storage._client = client
    return storage


def test_object_key_layout() -> None:
    key = object_key(7, "collections", "bank slip (1).jpg")
    tenant, category, year, month, name = key.split("/")
    assert (tenant, category) == ("7", "collections")
    assert len(year) == 4 and len(month) == 2
    assert name.endswith("_bank_slip__1_.jpg")


def test_upload_returns_public_url() -> None:
    client = RecordingClient()
    storage = _storage(client, public_url="https://cdn.example.com/")

    url = storage.upload(7, "deliveries", "proof.png", b"png", "image/png")
    [call] = client.calls
    assert call["Bucket"] == "lpg-receipts"
    assert call["ContentType"] == "image/png"
    assert url == f"https://cdn.example.com/lpg-receipts/{call['Key']}"


def test_default_url_uses_endpoint() -> None:
    storage = _storage(RecordingClient(), use_ssl=True)
    assert storage.public_url("a/b.jpg") == "https://minio:9000/lpg-receipts/a/b.jpg"


@pytest.mark.parametrize(
    "content_type, content, message",
    [
        ("application/pdf", b"pdf", "Invalid file type"),
        ("image/jpeg", b"", "Uploaded file is empty"),
        ("image/jpeg", b"x" * 11, "File too large"),
    ],
)
def test_validation(content_type, content, message) -> None:
    client = RecordingClient()
    storage = _storage(client, max_upload_bytes=10)
    with pytest.raises(InvalidRequestError, match=message):
        storage.upload(1, "collections", "f", content, content_type)
    assert client.calls == []


def test_client_error_becomes_storage_error() -> None:
    error = ClientError({"Error": {"Code": "NoSuchBucket", "Message": "missing"}}, "PutObject")
    storage = _storage(RecordingClient(error=error))
    with pytest.raises(StorageError) as exc_info:
        storage.upload(1, "collections", "slip.jpg", b"jpeg", "image/jpeg")
    assert exc_info.value.status_code == 502
