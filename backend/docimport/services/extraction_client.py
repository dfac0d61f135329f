"""
Extraction/Classification Service Client

Hands an uploaded document to the external extraction and classification
service. The service answers immediately with an optional correlation id
(jobId or executionId) and later reports sections to the callback URL.

Request (multipart/form-data):
    file:         the uploaded document
    documentId:   our import job id, echoed back in every callback
    callbackUrl:  where section results are posted
    specName:     taxonomy the sections are classified against
    options:      JSON {"batchSize": 10, "confidenceThreshold": 50}

Runs inside Celery workers, so it uses the synchronous httpx client.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from docimport.config import Settings, get_settings
from docimport.services.errors import ExternalServiceFailure

logger = logging.getLogger(__name__)

BATCH_SIZE = 10


@dataclass
class ExtractionAck:
    external_job_id: Optional[str] = None
    response: Dict[str, Any] = field(default_factory=dict)


class ExtractionServiceClient:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        auth_type = self.settings.extraction_auth_type
        if auth_type == "api_key" and self.settings.extraction_api_key:
            headers["X-API-Key"] = self.settings.extraction_api_key
        elif auth_type == "bearer" and self.settings.extraction_bearer_token:
            headers["Authorization"] = f"Bearer {self.settings.extraction_bearer_token}"
        return headers

    def _client(self) -> httpx.Client:
        return httpx.Client(
            transport=self.transport,
            timeout=self.settings.extraction_timeout_seconds,
            headers=self._headers(),
        )

    def submit_document(
        self,
        job_id: str,
        filename: str,
        media_type: str,
        data: bytes,
        callback_url: str,
        taxonomy_name: str,
    ) -> ExtractionAck:
        """
        Send a document for extraction and classification.

        Raises:
            ExternalServiceFailure: Not configured, transport error or non-2xx
                response. details["retryable"] is False for 4xx responses.
        """
        if not self.settings.extraction_service_url:
            raise ExternalServiceFailure("Extraction service URL is not configured", retryable=False)

        form = {
            "documentId": job_id,
            "callbackUrl": callback_url,
            "specName": taxonomy_name,
            "options": json.dumps({
                "batchSize": BATCH_SIZE,
                "confidenceThreshold": self.settings.mapping_confidence_threshold,
            }),
        }
        files = {"file": (filename, data, media_type)}

        logger.info(
            f"Sending import {job_id} to extraction service "
            f"({len(data)} bytes, spec={taxonomy_name}, callback={callback_url})"
        )

        try:
            with self._client() as client:
                response = client.post(self.settings.extraction_service_url, data=form, files=files)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise ExternalServiceFailure(
                f"Extraction service returned {status}: {e.response.text[:500]}",
                upstream_status=status,
                retryable=status >= 500 or status == 429,
            ) from e
        except httpx.HTTPError as e:
            raise ExternalServiceFailure(f"Extraction service request failed: {e}", retryable=True) from e

        # Response may not be JSON, which is fine
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        external_job_id = payload.get("jobId") or payload.get("executionId")
        logger.info(f"Extraction service accepted import {job_id} (external id: {external_job_id})")
        return ExtractionAck(
            external_job_id=str(external_job_id) if external_job_id else None,
            response=payload,
        )

    def cancel(self, job_id: str, external_job_id: Optional[str]) -> bool:
        """Best-effort cancel. Returns False when not configured or the call failed."""
        if not self.settings.extraction_cancel_url:
            logger.info(f"No cancel endpoint configured; import {job_id} cancelled locally only")
            return False

        try:
            with self._client() as client:
                response = client.post(
                    self.settings.extraction_cancel_url,
                    json={"documentId": job_id, "jobId": external_job_id},
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Cancel signal for import {job_id} failed: {e}")
            return False

        logger.info(f"Cancel signal for import {job_id} acknowledged")
        return True


CALLBACK_PATH = "/webhooks/extraction/callback"


def build_callback_url(base_url: str, settings: Optional[Settings] = None) -> str:
    """
    Callback URL handed to the extraction service.

    The shared callback token travels as a query parameter because the
    service echoes the URL verbatim and cannot add headers.
    """
    settings = settings or get_settings()
    url = f"{(settings.callback_base_url or base_url).rstrip('/')}{CALLBACK_PATH}"
    if settings.callback_token:
        url = f"{url}?{urlencode({'token': settings.callback_token})}"
    return url


def get_extraction_client() -> ExtractionServiceClient:
    return ExtractionServiceClient(get_settings())
