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
from typing import Any, Dict, Optional

from xjoin.adapters.base import BaseAdapter, HealthStatus, ReconcileOutcome, is_subset
from xjoin.clients.elasticsearch import ElasticsearchClient
from xjoin.db.models import ResourceKind

logger = logging.getLogger(__name__)


class ElasticsearchAdapter(BaseAdapter):
    """
    Search index and optional ingest pipeline.

    Index desired spec: mappings, settings (optional).
    Pipeline desired spec: description, processors.
    """

    backend = "elasticsearch"
    kinds = frozenset({ResourceKind.ELASTICSEARCH_INDEX, ResourceKind.ELASTICSEARCH_PIPELINE})

    def __init__(self, client: ElasticsearchClient):
        self.client = client

    def reconcile(self, kind: ResourceKind, name: str, desired: Dict[str, Any]) -> ReconcileOutcome:
        self._check_kind(kind)
        if kind == ResourceKind.ELASTICSEARCH_INDEX:
            outcome = self._reconcile_index(name, desired)
        else:
            outcome = self._reconcile_pipeline(name, desired)
        logger.info(f"{kind.value} {name}: {outcome.value}")
        return outcome

    def _reconcile_index(self, name: str, desired: Dict[str, Any]) -> ReconcileOutcome:
        actual = self.client.get_index(name)
        if actual is None:
            self.client.create_index(name, desired["mappings"], desired.get("settings"))
            return ReconcileOutcome.CREATED
        # only mappings can be patched on a live index
        if is_subset(desired["mappings"], actual.get("mappings", {})):
            return ReconcileOutcome.UNCHANGED
        self.client.put_mapping(name, desired["mappings"])
        return ReconcileOutcome.UPDATED

    def _reconcile_pipeline(self, name: str, desired: Dict[str, Any]) -> ReconcileOutcome:
        actual = self.client.get_pipeline(name)
        if actual is not None and is_subset(desired, actual):
            return ReconcileOutcome.UNCHANGED
        self.client.put_pipeline(name, desired)
        return ReconcileOutcome.CREATED if actual is None else ReconcileOutcome.UPDATED

    def delete(self, kind: ResourceKind, name: str) -> bool:
        self._check_kind(kind)
        if kind == ResourceKind.ELASTICSEARCH_INDEX:
            return self.client.delete_index(name)
        return self.client.delete_pipeline(name)

    def read_health(self, kind: ResourceKind, name: str) -> HealthStatus:
        self._check_kind(kind)
        if kind == ResourceKind.ELASTICSEARCH_INDEX:
            if self.client.get_index(name) is None:
                return HealthStatus.unhealthy(f"index {name} not found")
            return HealthStatus.ok()
        if self.client.get_pipeline(name) is None:
            return HealthStatus.unhealthy(f"ingest pipeline {name} not found")
        return HealthStatus.ok()

    def document_count(self, index: str) -> Optional[int]:
        return self.client.count(index)
