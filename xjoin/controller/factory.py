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


from typing import Optional

import httpx

from xjoin.adapters.base import AdapterRegistry
from xjoin.adapters.deployment import DeploymentAdapter
from xjoin.adapters.elasticsearch import ElasticsearchAdapter
from xjoin.adapters.kafka import KafkaAdapter
from xjoin.adapters.schema_registry import SchemaRegistryAdapter
from xjoin.clients.elasticsearch import ElasticsearchClient
from xjoin.clients.http import BackendHttpClient
from xjoin.clients.kube import KubeClient
from xjoin.clients.schema_registry import SchemaRegistryClient
from xjoin.config import Settings, create_sync_engine, get_settings
from xjoin.controller.lifecycle import LifecycleController
from xjoin.db.ops import PipelineStore
from xjoin.generation.synchronizer import GenerationSynchronizer
from xjoin.generation.tracker import LagProbe, VersionStateTracker
from xjoin.naming import GenerationMinter


def build_adapters(settings: Settings, transport: Optional[httpx.BaseTransport] = None) -> AdapterRegistry:
    """Construct one wire client per backend and the adapters over them"""
    kube_headers = {"Authorization": f"Bearer {settings.kube_token}"} if settings.kube_token else None
    kube_http = BackendHttpClient(
        "kubernetes",
        settings.kube_api_url,
        timeout=settings.backend_timeout,
        headers=kube_headers,
        verify=settings.kube_verify_ssl,
        transport=transport,
    )
    registry_http = BackendHttpClient(
        "schema-registry",
        settings.schema_registry_base_url,
        timeout=settings.backend_timeout,
        transport=transport,
    )
    es_http = BackendHttpClient(
        "elasticsearch",
        settings.elasticsearch_url,
        timeout=settings.backend_timeout,
        auth=(settings.elasticsearch_username, settings.elasticsearch_password),
        transport=transport,
    )

    kube = KubeClient(kube_http, settings.namespace)
    return AdapterRegistry(
        [
            SchemaRegistryAdapter(SchemaRegistryClient(registry_http)),
            KafkaAdapter(kube, settings.kafka_cluster, settings.connect_cluster, settings.connector_tasks_max),
            ElasticsearchAdapter(ElasticsearchClient(es_http)),
            DeploymentAdapter(kube),
        ],
        clients=[kube_http, registry_http, es_http],
    )


def build_controller(
    settings: Settings = None,
    store: PipelineStore = None,
    transport: Optional[httpx.BaseTransport] = None,
    lag_probe: Optional[LagProbe] = None,
    minter: GenerationMinter = None,
) -> LifecycleController:
    settings = settings or get_settings()
    store = store or PipelineStore(create_sync_engine(settings.database_url))
    adapters = build_adapters(settings, transport)
    return LifecycleController(
        store=store,
        synchronizer=GenerationSynchronizer(adapters, settings),
        tracker=VersionStateTracker(adapters, lag_probe),
        settings=settings,
        minter=minter,
    )
