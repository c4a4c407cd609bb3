from __future__ import annotations

import logging

from azure.storage.blob import ContentSettings
from azure.storage.blob.aio import BlobServiceClient

from warehouse_reports.errors import ConfigError

LOG = logging.getLogger(__name__)

PACKAGE_REPORT_PREFIX = "recentpopularity_"


def package_report_name(package_id: str) -> str:
    # Blob names in the gallery's storage use lower case package ids.
    return f"{PACKAGE_REPORT_PREFIX}{package_id.lower()}.json"


def blob_service_from_connection_string(conn_str: str, timeout_s: float = 120) -> BlobServiceClient:
    """
    Build the async blob service client for the reports storage account.

    Raises:
        ConfigError: if the connection string is blank or malformed
    """
    try:
        return BlobServiceClient.from_connection_string(
            conn_str, connection_timeout=timeout_s, read_timeout=timeout_s
        )
    except ValueError as e:
        raise ConfigError(f"Invalid NUGET_WAREHOUSE_REPORTS_STORAGE: {e}") from e


class ArtifactPublisher:
    """
    Uploads report blobs.

    Every publish overwrites the blob of the same name, so republishing after
    a failed attempt is always safe. Storage errors surface as
    azure.core.exceptions.HttpResponseError / ServiceRequestError; the retry
    layer treats connection faults and 408/429/5xx as transient.
    """

    def __init__(self, service: BlobServiceClient) -> None:
        self.service = service

    async def publish(self, container: str, blob_name: str, content_type: str, content: bytes) -> str:
        container_client = self.service.get_container_client(container)
        blob_client = await container_client.upload_blob(
            blob_name,
            content,
            overwrite=True,
            content_settings=ContentSettings(content_type=content_type),
        )
        LOG.debug("Published %s (%d bytes)", blob_client.url, len(content))
        return blob_client.url
