"""
REST API helper utilities.

Provides a small requests-based client shared by the Jira and OAuth
connectors. HTTP failures are mapped onto connector exceptions so callers
never handle ``requests`` types directly.
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from connectors.exceptions import (APIException, AuthenticationException,
                                   ConnectorException, NotFoundException,
                                   RateLimitException)
from connectors.utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)


def raise_for_status(response: requests.Response, endpoint: str) -> None:
    """
    Map an unsuccessful HTTP response onto a connector exception.

    :param response: Response to inspect.
    :param endpoint: Endpoint used, for error messages.
    :raises AuthenticationException: On 401 or 403.
    :raises RateLimitException: On 429.
    :raises NotFoundException: On 404.
    :raises APIException: On 5xx.
    :raises ConnectorException: On any other non-2xx status.
    """
    status = response.status_code
    if 200 <= status < 300:
        return
    if status in (401, 403):
        raise AuthenticationException(
            f"Authentication failed ({status}) for {endpoint}", status=status
        )
    if status == 429:
        raise RateLimitException("API rate limit exceeded", status=status)
    if status == 404:
        raise NotFoundException(f"Not found: {endpoint}", status=status)
    if status >= 500:
        raise APIException(f"API error: {status} - {response.text}", status=status)
    raise ConnectorException(
        f"Request rejected: {status} - {response.text}", status=status
    )


class RESTClient:
    """
    Generic REST API client with retry and rate limit handling.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: int = 30,
        headers: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize REST client.

        :param base_url: Base URL for the API.
        :param token: Optional bearer token.
        :param timeout: Request timeout in seconds.
        :param headers: Optional additional headers.
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.headers = {"Accept": "application/json", **(headers or {})}

        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        url = self._url(endpoint)
        request_headers = {**self.headers, **(headers or {})}

        try:
            response = requests.request(
                method,
                url,
                params=params,
                data=data,
                json=json,
                headers=request_headers,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            raise APIException(f"Request timeout after {self.timeout}s: {endpoint}")
        except requests.exceptions.RequestException as e:
            raise APIException(f"Request failed: {e}")

        raise_for_status(response, endpoint)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise APIException(f"Invalid JSON from {endpoint}")

    @retry_with_backoff(
        max_retries=3,
        initial_delay=1.0,
        max_delay=30.0,
        exceptions=(RateLimitException, APIException),
    )
    def get(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Make a GET request to the API.

        :param endpoint: API endpoint (relative to base_url) or absolute URL.
        :param params: Optional query parameters.
        :param headers: Optional additional headers.
        :return: Response data.
        """
        return self._request("GET", endpoint, params=params, headers=headers)

    @retry_with_backoff(
        max_retries=3,
        initial_delay=1.0,
        max_delay=30.0,
        exceptions=(RateLimitException, APIException),
    )
    def get_list(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Make a GET request expecting a list response.

        :param endpoint: API endpoint (relative to base_url) or absolute URL.
        :param params: Optional query parameters.
        :param headers: Optional additional headers.
        :return: List of response data.
        """
        data = self._request("GET", endpoint, params=params, headers=headers)

        # Ensure we return a list
        if not isinstance(data, list):
            logger.warning(f"Expected list response, got {type(data)}")
            return []

        return data

    def post(
        self,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Make a POST request. POSTs are not retried.

        :param endpoint: API endpoint (relative to base_url) or absolute URL.
        :param data: Form body.
        :param json: JSON body.
        :param headers: Optional additional headers.
        :return: Response data.
        """
        return self._request("POST", endpoint, data=data, json=json, headers=headers)
