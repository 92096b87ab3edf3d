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

"""
Error taxonomy shared by the wire clients, adapters and the lifecycle controller.

- TransientBackendError: network failure, timeout, 5xx. The reconcile pass is
  re-queued with backoff and no state changes.
- ValidationError: the backend (or the definition itself) rejects the desired
  spec. The generation is flagged failed and never promoted.
- ConflictError: the store's optimistic concurrency check failed. The whole
  pass is re-read and retried.

A generation still partial after max_materialize_attempts is reported as a
ConsistencyViolation condition on the pipeline rather than raised.
"""


class XJoinError(Exception):
    """Base class for controller errors"""


class TransientBackendError(XJoinError):
    """Retryable backend failure"""

    def __init__(self, message: str, backend: str = None, status_code: int = None):
        super().__init__(message)
        self.backend = backend
        self.status_code = status_code


class ValidationError(XJoinError):
    """Terminal rejection of a desired spec"""

    def __init__(self, message: str, backend: str = None, status_code: int = None):
        super().__init__(message)
        self.backend = backend
        self.status_code = status_code


class ConflictError(XJoinError):
    """Stale resource_version on a store update"""


class NotFoundError(XJoinError):
    """Pipeline record does not exist in the store"""


class ReconcileAborted(XJoinError):
    """The pipeline was marked for deletion while a creation pass was running"""
