# storage.py
"""
Deliverable storage on Azure Blob Storage.

The engine only keeps the returned blob URL as a milestone's artifact_ref.
"""
import logging
import os
import uuid
from typing import Optional

from azure.core.exceptions import AzureError
from azure.storage.blob import BlobServiceClient

import config
from services.errors import StorageUnavailableError

logger = logging.getLogger(__name__)

_blob_service: Optional[BlobServiceClient] = None


def get_blob_service() -> BlobServiceClient:
     global _blob_service
     if _blob_service is None:
          if not config.AZURE_STORAGE_ACCOUNT or not config.AZURE_STORAGE_KEY:
               raise StorageUnavailableError("Deliverable storage is not configured")
          _blob_service = BlobServiceClient.from_connection_string(
               f"DefaultEndpointsProtocol=https;"
               f"AccountName={config.AZURE_STORAGE_ACCOUNT};"
               f"AccountKey={config.AZURE_STORAGE_KEY};"
               f"EndpointSuffix=core.windows.net"
          )
     return _blob_service


def upload_deliverable(file, contract_id: int, milestone_id: int, container: Optional[str] = None) -> str:
     """Upload a deliverable file and return its blob URL."""
     container = container or config.DELIVERABLE_CONTAINER
     ext = os.path.splitext(file.filename or "")[1]
     filename = f"{contract_id}/{milestone_id}/{uuid.uuid4()}{ext}"
     try:
          blob_client = get_blob_service().get_blob_client(container=container, blob=filename)
          blob_client.upload_blob(file.file, overwrite=True)
     except AzureError as e:
          logger.error(f"❌ DELIVERABLE_UPLOAD_FAILED: milestone {milestone_id} - {e}")
          raise StorageUnavailableError(f"Deliverable upload failed: {e}", milestone_id=milestone_id) from e
     url = f"https://{config.AZURE_STORAGE_ACCOUNT}.blob.core.windows.net/{container}/{filename}"
     logger.info(f"📎 DELIVERABLE_UPLOADED: milestone {milestone_id} -> {url}")
     return url



def delete_deliverable(blob_url: str, container: Optional[str] = None) -> None:
     """Remove an uploaded deliverable by its URL (cleanup after a rejected submit)."""
     container = container or config.DELIVERABLE_CONTAINER
     prefix = f"/{container}/"
     blob_name = blob_url.split(prefix, 1)[-1]
     try:
          get_blob_service().get_blob_client(container=container, blob=blob_name).delete_blob()
     except (AzureError, StorageUnavailableError) as e:
          logger.warning(f"⚠️ DELIVERABLE_CLEANUP_FAILED: {blob_url} - {e}")
          return
     logger.info(f"🗑️ DELIVERABLE_DELETED: {blob_url}")
