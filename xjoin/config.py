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

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy import create_engine


class Settings(BaseSettings):
    """Controller settings loaded from XJOIN_* environment variables"""

    model_config = SettingsConfigDict(env_prefix="XJOIN_", env_file=".env", extra="ignore")

    # Resource store
    database_url: str = "sqlite:///./xjoin.db"

    # Celery
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: Optional[str] = None

    # Kubernetes API (deployments and strimzi custom resources)
    kube_api_url: str = "https://kubernetes.default.svc"
    kube_token: Optional[str] = None
    kube_verify_ssl: bool = True
    namespace: str = "xjoin"

    # Kafka / Kafka Connect
    kafka_cluster: str = "kafka"
    connect_cluster: str = "connect"
    kafka_bootstrap: str = "localhost:9092"
    topic_partitions: int = 1
    topic_replicas: int = 1
    topic_retention_ms: int = 86400000
    connector_tasks_max: int = 1

    # Schema registry (apicurio)
    schema_registry_protocol: str = "http"
    schema_registry_hostname: str = "apicurio"
    schema_registry_port: int = 1080

    # Elasticsearch
    elasticsearch_url: str = "http://localhost:9200"
    elasticsearch_username: str = "xjoin"
    elasticsearch_password: str = "xjoin1337"

    # Compute images
    core_image: str = "quay.io/ckyrouac/xjoin-core:latest"
    api_subgraph_image: str = "quay.io/ckyrouac/xjoin-api-subgraph:latest"

    # Reconcile loop timing (seconds)
    backend_timeout: float = 10.0
    validation_poll_interval: float = 10.0
    resync_interval: float = 300.0
    backoff_base: float = 2.0
    backoff_cap: float = 300.0
    conflict_retries: int = 3
    max_materialize_attempts: int = 5

    # Standby retention policy; None disables the TTL
    standby_ttl_seconds: Optional[float] = 3600.0
    max_standby_versions: int = 1

    @property
    def schema_registry_base_url(self) -> str:
        return f"{self.schema_registry_protocol}://{self.schema_registry_hostname}:{self.schema_registry_port}"

    @property
    def schema_registry_url(self) -> str:
        return f"{self.schema_registry_base_url}/apis/registry/v2"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def create_sync_engine(database_url: str = None):
    url = database_url or get_settings().database_url
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)

