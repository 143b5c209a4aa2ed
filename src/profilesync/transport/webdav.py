"""WebDAV transport.

This module provides:
- WebDAVTransport: per-device blobs in a WebDAV collection

Requests used: MKCOL (create the sync collection), PUT, GET, DELETE and
PROPFIND with "Depth: 1" to list the collection.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from email.utils import parsedate_to_datetime
from urllib.parse import quote, unquote, urlparse

import httpx

from profilesync.core.config import WebDAVConfig
from profilesync.transport.base import (
    RemoteSyncFile,
    Transport,
    TransportAuthError,
    TransportConnectionError,
    TransportError,
    TransportNotFoundError,
    device_id_from_file_name,
    sync_file_name,
)

logger = logging.getLogger(__name__)

DAV_NAMESPACE = "{DAV:}"

PROPFIND_BODY = b"""<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:getlastmodified/>
    <d:getcontentlength/>
    <d:resourcetype/>
  </d:prop>
</d:propfind>
"""


class WebDAVTransport(Transport):
    """Transport for a WebDAV server (Nextcloud, ownCloud, Apache mod_dav...)."""

    def __init__(self, config: WebDAVConfig, transport: httpx.BaseTransport | None = None) -> None:
        """Initialize the WebDAV client.

        Args:
            config: Server URL, credentials and sync folder.
            transport: Optional httpx transport (used by tests).
        """
        self._config = config
        self._client = httpx.Client(
            base_url=config.server_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            auth=(config.username, config.password) if config.username else None,
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> WebDAVTransport:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    @property
    def location(self) -> str:
        return self._config.collection_url

    def _path(self, file_name: str = "") -> str:
        return f"{self._config.folder}/{quote(file_name)}"

    def _request(self, method: str, path: str, **kwargs: object) -> httpx.Response:
        try:
            return self._client.request(method, path, **kwargs)  # type: ignore[arg-type]
        except httpx.TimeoutException as e:
            raise TransportConnectionError(f"{method} {path} timed out: {e}") from e
        except httpx.RequestError as e:
            raise TransportConnectionError(f"{method} {path} failed: {e}") from e

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Raise the transport exception matching an error response."""
        if response.status_code in (401, 403):
            raise TransportAuthError("WebDAV server rejected the credentials", response.status_code)
        if response.status_code == 404:
            raise TransportNotFoundError("Resource not found", 404)
        if response.status_code >= 400:
            raise TransportError(
                f"WebDAV error {response.status_code}: {response.reason_phrase}",
                response.status_code,
            )
        return response

    # === Collection ===

    def initialize(self) -> None:
        """Create the sync collection if it doesn't exist."""
        response = self._request("MKCOL", self._path())
        # 405: collection already exists
        if response.status_code == 405:
            return
        self._handle_response(response)
        logger.info(f"Created WebDAV collection {self.location}")

    def test_connection(self) -> bool:
        try:
            response = self._request("PROPFIND", self._path(), headers={"Depth": "0"})
            if response.status_code == 404:
                self.initialize()
                return True
            self._handle_response(response)
        except TransportError as e:
            logger.warning(f"Connection test failed: {e}")
            return False
        return True

    # === Blobs ===

    def upload(self, device_id: str, data: bytes) -> str:
        file_name = sync_file_name(device_id)
        response = self._request("PUT", self._path(file_name), content=data)
        if response.status_code in (404, 409):
            # Parent collection missing
            self.initialize()
            response = self._request("PUT", self._path(file_name), content=data)
        self._handle_response(response)
        logger.debug(f"Uploaded {len(data)} bytes to {file_name}")
        return file_name

    def download(self, locator: str) -> bytes:
        response = self._handle_response(self._request("GET", self._path(locator)))
        return response.content

    def delete(self, locator: str) -> bool:
        response = self._request("DELETE", self._path(locator))
        if response.status_code == 404:
            return False
        self._handle_response(response)
        return True

    def list(self) -> list[RemoteSyncFile]:
        response = self._request(
            "PROPFIND",
            self._path(),
            headers={"Depth": "1", "Content-Type": "application/xml; charset=utf-8"},
            content=PROPFIND_BODY,
        )
        if response.status_code == 404:
            return []
        self._handle_response(response)
        return parse_multistatus(response.content)


def parse_multistatus(body: bytes) -> list[RemoteSyncFile]:
    """Extract device blobs from a PROPFIND multistatus response.

    Raises:
        TransportError: If the body is not valid XML.
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise TransportError(f"Invalid PROPFIND response: {e}") from e

    files = []
    for item in root.iter(f"{DAV_NAMESPACE}response"):
        href = item.findtext(f"{DAV_NAMESPACE}href") or ""
        file_name = unquote(urlparse(href).path.rstrip("/").rsplit("/", 1)[-1])
        device_id = device_id_from_file_name(file_name)
        if device_id is None:
            continue
        if item.find(f".//{DAV_NAMESPACE}collection") is not None:
            continue

        modified_time = 0
        last_modified = item.findtext(f".//{DAV_NAMESPACE}getlastmodified")
        if last_modified:
            try:
                modified_time = int(parsedate_to_datetime(last_modified).timestamp() * 1000)
            except (TypeError, ValueError):
                logger.warning(f"Unparseable modification time for {file_name}: {last_modified}")

        size_text = item.findtext(f".//{DAV_NAMESPACE}getcontentlength")
        size = int(size_text) if size_text and size_text.isdigit() else 0

        files.append(
            RemoteSyncFile(
                locator=file_name,
                file_name=file_name,
                device_id=device_id,
                modified_time=modified_time,
                size=size,
            )
        )
    return files
