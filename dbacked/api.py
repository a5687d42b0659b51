"""
HTTP client for the DBacked API
Used by premium agents to get part upload URLs and report finished backups
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from .config import get_settings
from .exceptions import NetworkError
from .models import BackupRecord, PartEtag

logger = logging.getLogger(__name__)


class DBackedClient:
    """Low-level HTTP client for the DBacked API"""

    def __init__(self, api_key: str, base_url: Optional[str] = None, timeout: Optional[int] = None):
        """
        Initialize DBacked client

        Args:
            api_key: Project API key
            base_url: API base URL (default: from settings)
            timeout: Request timeout in seconds (default: from settings)
        """
        settings = get_settings()
        self.api_key = api_key
        self.base_url = (base_url or settings.API_URL).rstrip('/')
        self.timeout = timeout or settings.API_TIMEOUT
        self.session = requests.Session()
        self.session.headers.update({
            "X-API-Key": api_key
        })

    def _request(
        self,
        method: str,
        endpoint: str,
        json: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Make HTTP request to API

        Args:
            method: HTTP method
            endpoint: API endpoint
            json: JSON body

        Returns:
            Response data as dictionary

        Raises:
            NetworkError: On unreachable API or error status
        """
        url = f"{self.base_url}{endpoint}"

        try:
            response = self.session.request(
                method=method,
                url=url,
                json=json,
                timeout=self.timeout
            )
        except requests.exceptions.Timeout as e:
            raise NetworkError("Request timeout", code="ETIMEDOUT", status_code=408) from e
        except requests.exceptions.ConnectionError as e:
            raise NetworkError(f"Connection failed: {str(e)}", code="ECONNREFUSED", status_code=503) from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Request failed: {str(e)}") from e

        if response.status_code >= 400:
            self._handle_error(response)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(
                f"Invalid JSON response from {endpoint}",
                status_code=response.status_code,
                response_body=response.text
            ) from e

    def _handle_error(self, response: requests.Response):
        """Handle API error responses"""
        try:
            body = response.json()
            if isinstance(body, dict):
                message = body.get("message") or body.get("detail") or "Unknown error"
            else:
                message = str(body)
        except ValueError:
            body = response.text
            message = response.text or f"HTTP {response.status_code}"

        logger.error(f"DBacked API error {response.status_code}: {message}")
        raise NetworkError(message, status_code=response.status_code, response_body=body)

    def post(self, endpoint: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Make POST request"""
        return self._request("POST", endpoint, json=json)

    # ========================================================================
    # BACKUPS
    # ========================================================================

    def get_upload_part_url(self, backup: BackupRecord, part_number: int, agent_id: str, hash: str) -> str:
        """
        Ask the API for a pre-signed URL of one part

        Args:
            backup: Backup record given by the controller
            part_number: Part number, from 1
            agent_id: Agent identifier
            hash: Base64 MD5 of the part

        Returns:
            Part upload URL
        """
        response = self.post("/backup/uploadPartUrl", json={
            "backup": backup.to_api(),
            "partNumber": part_number,
            "agentId": agent_id,
            "hash": hash
        })
        url = response.get("partUploadUrl")
        if not url:
            raise NetworkError("API response has no partUploadUrl", response_body=response)
        return url

    def finish_upload(
        self,
        backup: BackupRecord,
        parts: List[PartEtag],
        hash: str,
        agent_id: str,
        public_key: str
    ) -> Dict[str, Any]:
        """
        Report a fully uploaded backup

        Args:
            backup: Backup record
            parts: Uploaded parts, in order
            hash: Hex MD5 of the whole backup file
            agent_id: Agent identifier
            public_key: Public key the backup key was encrypted with
        """
        logger.info("Informing server the upload is finished")
        return self.post("/backup/finishUpload", json={
            "backup": backup.to_api(),
            "partsEtag": [{"partNumber": part.part_number, "etag": part.etag} for part in parts],
            "hash": hash,
            "agentId": agent_id,
            "publicKey": public_key
        })
