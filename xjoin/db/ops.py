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
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional

from sqlalchemy import and_, delete, update
from sqlmodel import Session, select

from xjoin.db.models import IndexPipeline, PipelineDefinition, PipelineStatus, utc_now
from xjoin.exceptions import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineEvent:
    name: str
    resource_version: Optional[int]
    deleted: bool = False


class PipelineStore:
    """
    Declarative resource store for index pipelines.

    Every write bumps resource_version. Status and finalizer writes are
    conditional on the caller's expected resource_version so two concurrent
    reconciles of the same pipeline can never both win; the loser gets a
    ConflictError and re-reads.
    """

    def __init__(self, engine):
        self._engine = engine

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    def get(self, name: str) -> Optional[IndexPipeline]:
        with self._session() as session:
            return session.get(IndexPipeline, name)

    def require(self, name: str) -> IndexPipeline:
        record = self.get(name)
        if record is None:
            raise NotFoundError(f"Pipeline {name} not found")
        return record

    def list_names(self) -> List[str]:
        with self._session() as session:
            return list(session.exec(select(IndexPipeline.name)).all())

    def apply(self, definition: PipelineDefinition) -> IndexPipeline:
        """Create the pipeline or replace its spec"""
        spec = definition.model_dump(mode="json", exclude={"name"})
        with self._session() as session:
            record = session.get(IndexPipeline, definition.name)
            if record is None:
                record = IndexPipeline(name=definition.name, spec=spec)
                logger.info(f"Created pipeline {definition.name}")
            elif record.marked_for_deletion:
                raise ConflictError(f"Pipeline {definition.name} is being deleted")
            elif record.spec != spec:
                record.spec = spec
                record.resource_version += 1
                record.gmt_updated = utc_now()
                logger.info(f"Updated pipeline {definition.name} to resource_version {record.resource_version}")
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def mark_for_deletion(self, name: str) -> bool:
        """
        Request deletion. Without finalizers the record is removed at once,
        otherwise it stays until the last finalizer is removed.

        Returns:
            bool: True if the record still exists (deletion is pending)
        """
        with self._session() as session:
            record = session.get(IndexPipeline, name)
            if record is None:
                return False
            if not record.finalizers:
                session.delete(record)
                session.commit()
                logger.info(f"Deleted pipeline {name}")
                return False
            if record.deletion_timestamp is None:
                record.deletion_timestamp = utc_now()
                record.resource_version += 1
                record.gmt_updated = utc_now()
                session.add(record)
                session.commit()
                logger.info(f"Marked pipeline {name} for deletion")
            return True

    def _conditional_update(self, session: Session, name: str, expected_version: int, **values) -> int:
        stmt = (
            update(IndexPipeline)
            .where(and_(IndexPipeline.name == name, IndexPipeline.resource_version == expected_version))
            .values(resource_version=expected_version + 1, gmt_updated=utc_now(), **values)
        )
        result = session.execute(stmt)
        if result.rowcount == 0:
            session.rollback()
            raise ConflictError(f"Pipeline {name} changed since resource_version {expected_version}")
        return expected_version + 1

    def update_status(self, name: str, status: PipelineStatus, expected_version: int) -> int:
        """Write observed status, returning the new resource_version"""
        with self._session() as session:
            version = self._conditional_update(
                session, name, expected_version, status=status.model_dump(mode="json")
            )
            session.commit()
            return version

    def add_finalizer(self, name: str, finalizer: str, expected_version: int) -> int:
        record = self.require(name)
        if finalizer in record.finalizers:
            return record.resource_version
        with self._session() as session:
            version = self._conditional_update(
                session, name, expected_version, finalizers=[*record.finalizers, finalizer]
            )
            session.commit()
            logger.info(f"Added finalizer {finalizer} to pipeline {name}")
            return version

    def remove_finalizer(self, name: str, finalizer: str, expected_version: int) -> Optional[int]:
        """
        Remove a finalizer. When the record is marked for deletion and no
        finalizer remains, the record itself is deleted and None is returned.
        """
        record = self.require(name)
        remaining = [f for f in record.finalizers if f != finalizer]
        with self._session() as session:
            if record.marked_for_deletion and not remaining:
                result = session.execute(
                    delete(IndexPipeline).where(
                        and_(IndexPipeline.name == name, IndexPipeline.resource_version == expected_version)
                    )
                )
                if result.rowcount == 0:
                    session.rollback()
                    raise ConflictError(f"Pipeline {name} changed since resource_version {expected_version}")
                session.commit()
                logger.info(f"Removed finalizer {finalizer}, pipeline {name} is gone")
                return None
            version = self._conditional_update(session, name, expected_version, finalizers=remaining)
            session.commit()
            logger.info(f"Removed finalizer {finalizer} from pipeline {name}")
            return version

    def watch(
        self,
        poll_interval: float = 1.0,
        stop: Callable[[], bool] = lambda: False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Iterator[PipelineEvent]:
        """Poll-based change stream: one event per observed resource_version change"""
        seen: Dict[str, int] = {}
        while not stop():
            with self._session() as session:
                rows = session.exec(select(IndexPipeline.name, IndexPipeline.resource_version)).all()
            current = {name: version for name, version in rows}
            for name, version in current.items():
                if seen.get(name) != version:
                    seen[name] = version
                    yield PipelineEvent(name=name, resource_version=version)
            for name in list(seen):
                if name not in current:
                    del seen[name]
                    yield PipelineEvent(name=name, resource_version=None, deleted=True)
            sleep(poll_interval)
