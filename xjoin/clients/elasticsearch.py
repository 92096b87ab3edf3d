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

from xjoin.clients.http import BackendHttpClient

logger = logging.getLogger(__name__)


class ElasticsearchClient:
    """Index and ingest pipeline operations against the Elasticsearch REST API"""

    def __init__(self, http: BackendHttpClient):
        self._http = http

    def get_index(self, index: str) -> Optional[dict]:
        response = self._http.get(f"/{index}")
        if response.status_code == 404:
            return None
        # GET /<index> answers {<index>: {aliases, mappings, settings}}
        return response.json().get(index, {})

    def create_index(self, index: str, mappings: dict, settings: dict = None):
        body = {"mappings": mappings}
        if settings:
            body["settings"] = settings
        self._http.put(f"/{index}", json=body)
        logger.info(f"Created Elasticsearch index {index}")

    def put_mapping(self, index: str, mappings: dict):
        self._http.put(f"/{index}/_mapping", json=mappings)
        logger.info(f"Updated mapping of Elasticsearch index {index}")

    def delete_index(self, index: str) -> bool:
        response = self._http.delete(f"/{index}")
        if response.status_code == 404:
            return False
        logger.info(f"Deleted Elasticsearch index {index}")
        return True

    def count(self, index: str) -> Optional[int]:
        response = self._http.get(f"/{index}/_count")
        if response.status_code == 404:
            return None
        return response.json().get("count", 0)

    def get_pipeline(self, name: str) -> Optional[dict]:
        response = self._http.get(f"/_ingest/pipeline/{name}")
        if response.status_code == 404:
            return None
        return response.json().get(name)

    def put_pipeline(self, name: str, body: dict):
        self._http.put(f"/_ingest/pipeline/{name}", json=body)
        logger.info(f"Stored Elasticsearch ingest pipeline {name}")

    def delete_pipeline(self, name: str) -> bool:
        response = self._http.delete(f"/_ingest/pipeline/{name}")
        if response.status_code == 404:
            return False
        logger.info(f"Deleted Elasticsearch ingest pipeline {name}")
        return True
