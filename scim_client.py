"""
SCIM 2.0 client for the remote directory
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

import requests

from config import AuthMode, SyncConfig
from exceptions import ScimRequestError, ScimTransportError
from scim_resources import ScimListResponse, patch_request


logger = logging.getLogger(__name__)


@dataclass
class ScimResponse:
    """Outcome of one request that reached the server."""
    success: bool
    status: int
    body: str = ""
    resource: Any = None


class ScimClient:
    """
    Thin wrapper around a requests session speaking SCIM 2.0.

    HTTP error statuses are returned as unsuccessful ScimResponse objects; only
    failures to get any response at all raise (ScimTransportError).
    """

    def __init__(self, config: SyncConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.base_url = config.endpoint
        self.timeout = config.timeout
        self.session = session or requests.Session()

        self.session.headers.update({
            "Content-Type": config.content_type,
            "Accept": config.content_type,
        })
        if config.auth_mode == AuthMode.BEARER:
            self.session.headers["Authorization"] = f"Bearer {config.auth_pass}"
        elif config.auth_mode == AuthMode.BASIC_AUTH:
            self.session.auth = (config.auth_user, config.auth_pass)

        logger.info(f"SCIM endpoint: {self.base_url} (auth mode {config.auth_mode.value})")

    def gen_url(self, endpoint: str, resource_id: Optional[str] = None) -> str:
        if resource_id is None:
            return f"{self.base_url}/{endpoint}"
        return f"{self.base_url}/{endpoint}/{resource_id}"

    def _send(self, method: str, url: str, resource_class=None,
              json: Optional[Dict[str, Any]] = None,
              params: Optional[Dict[str, Any]] = None) -> ScimResponse:
        logger.debug(f"{method} {url}")
        try:
            response = self.session.request(method, url, json=json, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise ScimTransportError(f"{method} {url} failed: {e}", url=url) from e

        success = 200 <= response.status_code < 300
        result = ScimResponse(success=success, status=response.status_code, body=response.text or "")
        if success and resource_class is not None and response.text:
            try:
                result.resource = resource_class.from_payload(response.json())
            except ValueError as e:
                logger.warning(f"Could not decode response of {method} {url}: {e}")
        return result

    def create(self, resource_class, path: str, resource) -> ScimResponse:
        """POST a new resource to a collection path such as /Users."""
        url = f"{self.base_url}/{path.lstrip('/')}"
        return self._send("POST", url, resource_class, json=resource.to_payload())

    def update(self, url: str, resource_class, resource) -> ScimResponse:
        """PUT the full resource representation."""
        return self._send("PUT", url, resource_class, json=resource.to_payload())

    def patch(self, url: str, resource_class, operations: List) -> ScimResponse:
        return self._send("PATCH", url, resource_class, json=patch_request(operations))

    def delete(self, url: str, resource_class=None) -> ScimResponse:
        return self._send("DELETE", url)

    def list(self, url: str, resource_class, start_index: int = 1, count: Optional[int] = None,
             filter: Optional[str] = None) -> ScimResponse:
        """GET one page of a collection; the response resource is a ScimListResponse."""
        params: Dict[str, Any] = {"startIndex": start_index}
        if count is not None:
            params["count"] = count
        if filter:
            params["filter"] = filter
        response = self._send("GET", url, params=params)
        if response.success and response.body:
            try:
                response.resource = ScimListResponse.from_payload(json.loads(response.body), resource_class)
            except ValueError as e:
                logger.warning(f"Could not decode list response of {url}: {e}")
        return response

    def list_all(self, resource_class, endpoint: str) -> Iterator[Any]:
        """Yield every resource of a collection, following startIndex pagination."""
        url = self.gen_url(endpoint)
        start_index = 1
        fetched = 0

        while True:
            response = self.list(url, resource_class, start_index=start_index, count=self.config.page_size)
            if not response.success or response.resource is None:
                raise ScimRequestError(
                    f"Listing {endpoint} failed with status {response.status}",
                    status=response.status,
                    body=response.body,
                )

            page = response.resource
            for resource in page.resources:
                yield resource
            fetched += len(page.resources)

            # Check if there are more pages
            if not page.resources or fetched >= page.total_results:
                break
            start_index = page.start_index + len(page.resources)
            logger.debug(f"Fetching next page of {endpoint} (loaded {fetched} of {page.total_results})")

        logger.info(f"Listed {fetched} remote {endpoint}")

    def close(self):
        """Close the underlying HTTP session."""
        self.session.close()
        logger.debug("SCIM client closed")
