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
from typing import List, Optional

from xjoin.clients.http import BackendHttpClient

logger = logging.getLogger(__name__)

CCOMPAT_PREFIX = "/apis/ccompat/v6"
REGISTRY_PREFIX = "/apis/registry/v2"
DEFAULT_GROUP = "default"


class SchemaRegistryClient:
    """
    Apicurio registry client.

    Value schemas live in the confluent-compatible namespace (subjects), GraphQL
    schemas in the native registry namespace (artifacts in the default group).
    """

    def __init__(self, http: BackendHttpClient):
        self._http = http

    # Value schemas (ccompat)
    def subject_version(self, subject: str, version: str) -> Optional[dict]:
        response = self._http.get(f"{CCOMPAT_PREFIX}/subjects/{subject}/versions/{version}")
        if response.status_code == 404:
            return None
        return response.json()

    def subject_exists(self, subject: str) -> bool:
        return self.subject_version(subject, "1") is not None

    def latest_subject_version(self, subject: str) -> Optional[dict]:
        return self.subject_version(subject, "latest")

    def register_subject_version(self, subject: str, schema: str) -> int:
        response = self._http.post(
            f"{CCOMPAT_PREFIX}/subjects/{subject}/versions",
            json={"schema": schema, "schemaType": "AVRO"},
        )
        schema_id = response.json().get("id")
        logger.info(f"Registered value schema for subject {subject} (id {schema_id})")
        return schema_id

    def delete_subject(self, subject: str) -> bool:
        """
        Soft delete, then permanent delete. The permanent delete is always
        sent, so a subject left soft-deleted by an interrupted teardown is
        still purged.

        Returns:
            bool: False when the subject was already fully deleted
        """
        path = f"{CCOMPAT_PREFIX}/subjects/{subject}"
        soft = self._http.delete(path)
        permanent = self._http.delete(path, params={"permanent": "true"})
        if soft.status_code == 404 and permanent.status_code == 404:
            return False
        logger.info(f"Deleted subject {subject}")
        return True

    # GraphQL artifacts (registry v2)
    def _artifact_path(self, artifact_id: str) -> str:
        return f"{REGISTRY_PREFIX}/groups/{DEFAULT_GROUP}/artifacts/{artifact_id}"

    def artifact_versions(self, artifact_id: str) -> Optional[List[dict]]:
        response = self._http.get(f"{self._artifact_path(artifact_id)}/versions")
        if response.status_code == 404:
            return None
        return response.json().get("versions", [])

    def artifact_content(self, artifact_id: str) -> Optional[str]:
        response = self._http.get(self._artifact_path(artifact_id))
        if response.status_code == 404:
            return None
        return response.text

    def artifact_meta(self, artifact_id: str) -> Optional[dict]:
        response = self._http.get(f"{self._artifact_path(artifact_id)}/meta")
        if response.status_code == 404:
            return None
        return response.json()

    def create_artifact(self, artifact_id: str, content: str, artifact_type: str = "GRAPHQL") -> dict:
        response = self._http.post(
            f"{REGISTRY_PREFIX}/groups/{DEFAULT_GROUP}/artifacts",
            content=content.encode("utf-8"),
            headers={
                "Content-Type": "application/graphql",
                "X-Registry-ArtifactId": artifact_id,
                "X-Registry-ArtifactType": artifact_type,
            },
        )
        logger.info(f"Created {artifact_type} artifact {artifact_id}")
        return response.json()

    def update_artifact(self, artifact_id: str, content: str) -> dict:
        response = self._http.put(
            self._artifact_path(artifact_id),
            content=content.encode("utf-8"),
            headers={"Content-Type": "application/graphql"},
        )
        logger.info(f"Registered new version of artifact {artifact_id}")
        return response.json()

    def set_artifact_meta(self, artifact_id: str, meta: dict):
        self._http.put(f"{self._artifact_path(artifact_id)}/meta", json=meta)
        logger.info(f"Updated metadata of artifact {artifact_id}")

    def delete_artifact(self, artifact_id: str) -> bool:
        response = self._http.delete(self._artifact_path(artifact_id))
        if response.status_code == 404:
            return False
        logger.info(f"Deleted artifact {artifact_id}")
        return True
