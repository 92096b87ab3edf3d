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
from dataclasses import dataclass
from typing import Optional

from xjoin.clients.http import BackendHttpClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KubeResource:
    group: str
    version: str
    plural: str
    kind: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    def path(self, namespace: str, name: str = None) -> str:
        prefix = f"/apis/{self.group}/{self.version}" if self.group else f"/api/{self.version}"
        path = f"{prefix}/namespaces/{namespace}/{self.plural}"
        return f"{path}/{name}" if name else path


DEPLOYMENTS = KubeResource("apps", "v1", "deployments", "Deployment")
KAFKA_TOPICS = KubeResource("kafka.strimzi.io", "v1beta2", "kafkatopics", "KafkaTopic")
KAFKA_CONNECTORS = KubeResource("kafka.strimzi.io", "v1beta2", "kafkaconnectors", "KafkaConnector")


class KubeClient:
    """Namespaced get/create/replace/delete of Kubernetes objects over the REST API"""

    def __init__(self, http: BackendHttpClient, namespace: str):
        self._http = http
        self.namespace = namespace

    def get(self, resource: KubeResource, name: str) -> Optional[dict]:
        response = self._http.get(resource.path(self.namespace, name))
        if response.status_code == 404:
            return None
        return response.json()

    def create(self, resource: KubeResource, body: dict) -> dict:
        response = self._http.post(resource.path(self.namespace), json=body)
        logger.info(f"Created {resource.kind} {body['metadata']['name']} in {self.namespace}")
        return response.json()

    def replace(self, resource: KubeResource, name: str, body: dict) -> dict:
        # body carries metadata.resourceVersion, a stale one is rejected with 409
        response = self._http.put(resource.path(self.namespace, name), json=body)
        logger.info(f"Updated {resource.kind} {name} in {self.namespace}")
        return response.json()

    def delete(self, resource: KubeResource, name: str) -> bool:
        """Returns False when the object was already absent"""
        response = self._http.delete(resource.path(self.namespace, name))
        if response.status_code == 404:
            logger.debug(f"{resource.kind} {name} already absent")
            return False
        logger.info(f"Deleted {resource.kind} {name} from {self.namespace}")
        return True
