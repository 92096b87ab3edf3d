# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import logging
from typing import Optional

import httpx

from xjoin.exceptions import TransientBackendError, ValidationError

logger = logging.getLogger(__name__)

# 409 (already exists / modified concurrently) and 429 resolve themselves on the next pass
RETRYABLE_STATUS = {408, 409, 429}


class BackendHttpClient:
    """
    Thin wrapper over httpx.Client that maps failures onto the error taxonomy.

    Each wire client owns one instance configured with its own base URL,
    credentials and per-call timeout. A 404 is returned to the caller, which
    decides whether absence is an error.
    """

    def __init__(
        self,
        backend: str,
        base_url: str,
        timeout: float = 10.0,
        headers: Optional[dict] = None,
        auth: Optional[tuple] = None,
        verify: bool = True,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.backend = backend
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers=headers,
            auth=auth,
            verify=verify,
            transport=transport,
        )

    def close(self):
        self._client.close()

    def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientBackendError(f"{self.backend}: {method} {url} timed out: {e}", backend=self.backend)
        except httpx.TransportError as e:
            raise TransientBackendError(f"{self.backend}: {method} {url} failed: {e}", backend=self.backend)

        logger.debug(f"{self.backend}: {method} {url} -> {response.status_code}")
        if response.status_code == 404 or response.is_success:
            return response
        message = f"{self.backend}: {method} {url} returned {response.status_code}: {response.text[:500]}"
        if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS:
            raise TransientBackendError(message, backend=self.backend, status_code=response.status_code)
        raise ValidationError(message, backend=self.backend, status_code=response.status_code)

    def get(self, url: str, **kwargs) -> httpx.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs) -> httpx.Response:
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs) -> httpx.Response:
        return self.request("PUT", url, **kwargs)

    def delete(self, url: str, **kwargs) -> httpx.Response:
        return self.request("DELETE", url, **kwargs)
