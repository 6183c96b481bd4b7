"""Resource registry backed by the state document in S3.

``StateStore`` owns the one ``StateDocument`` of a run. Each tracked resource
kind is exposed as a ``TrackedCollection``; every mutation through a
collection is written back to S3 immediately, so a run that dies halfway
leaves behind a record of exactly what is still out there.
"""

import logging
import time
from typing import Callable, Dict, Generic, Iterator, List, Optional, TypeVar

from .blob_store import S3BlobStore
from .state import (
    CredentialPair,
    ComputeInstance,
    FirewallGroup,
    ObjectContainer,
    StateDocument,
    parse_state,
)

logger = logging.getLogger(__name__)

R = TypeVar("R", ComputeInstance, CredentialPair, FirewallGroup, ObjectContainer)


class TrackedCollection(Generic[R]):
    """Upsert/remove/list over one collection of the state document."""

    def __init__(self, store: "StateStore", attr: str, label: str):
        self._store = store
        self._attr = attr
        self.label = label

    @property
    def _records(self) -> List[R]:
        return getattr(self._store.document, self._attr)

    def upsert(self, record: R) -> None:
        """Track a record, replacing any existing record with the same key.

        A replaced record keeps the position of the record it replaces, so
        ``list()`` stays in first-insertion order. The whole record is
        swapped; fields are not merged.
        """
        records = self._records
        for i, existing in enumerate(records):
            if existing.key == record.key:
                records[i] = record
                break
        else:
            records.append(record)
        logger.info(f"{self.label} registered: {record.key}")
        self._store.touch()
        self._store.persist()

    def remove(self, key: str) -> None:
        """Stop tracking the record with this key, if any."""
        setattr(
            self._store.document,
            self._attr,
            [r for r in self._records if r.key != key],
        )
        logger.info(f"{self.label} removed: {key}")
        self._store.touch()
        self._store.persist()

    def list(self) -> List[R]:
        """Return a snapshot of the records in insertion order."""
        return list(self._records)

    def count(self) -> int:
        return len(self._records)

    def get(self, key: str) -> Optional[R]:
        for record in self._records:
            if record.key == key:
                return record
        return None

    def __contains__(self, key: object) -> bool:
        return any(r.key == key for r in self._records)

    def __iter__(self) -> Iterator[R]:
        return iter(self.list())

    def __len__(self) -> int:
        return self.count()


class StateStore:
    """Owns the state document for a run and writes it back after changes."""

    def __init__(
        self,
        blob_store: S3BlobStore,
        bucket: str,
        key: str,
        region: str,
        strict: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the store.

        Args:
            blob_store: Where the serialized document lives
            bucket: State bucket name
            key: State object key
            region: Region recorded on entries migrated from old documents
            strict: Raise instead of starting empty when the document is corrupt
            clock: Source of timestamps
        """
        self.blob_store = blob_store
        self.bucket = bucket
        self.key = key
        self.region = region
        self.strict = strict
        self.clock = clock
        self.document = StateDocument()

        self.instances: TrackedCollection[ComputeInstance] = TrackedCollection(
            self, "instances", "EC2 instance"
        )
        self.key_pairs: TrackedCollection[CredentialPair] = TrackedCollection(
            self, "credentials", "Key pair"
        )
        self.security_groups: TrackedCollection[FirewallGroup] = TrackedCollection(
            self, "firewall_groups", "Security group"
        )
        self.buckets: TrackedCollection[ObjectContainer] = TrackedCollection(
            self, "containers", "S3 bucket"
        )

    @property
    def location(self) -> str:
        return f"s3://{self.bucket}/{self.key}"

    def load(self) -> StateDocument:
        """Load and migrate the document; missing or corrupt state starts empty.

        Raises:
            CorruptStateError: If strict and the stored document is not a JSON object
            ClientError: For network or permission failures
        """
        blob = self.blob_store.load(self.bucket, self.key)
        if blob is None:
            logger.info(f"No existing state at {self.location}, starting empty")
        document = parse_state(blob, self.region, now=self.clock(), strict=self.strict)
        if blob is not None and document.is_empty() and document.last_modified is None:
            logger.warning(
                f"State at {self.location} held no usable entries; it will be "
                "overwritten on the next change (the previous version stays in "
                "the bucket's version history)"
            )
        self.document = document
        return document

    def touch(self) -> None:
        """Advance last_modified, never moving it backwards."""
        now = self.clock()
        previous = self.document.last_modified
        if previous is not None and previous > now:
            now = previous
        self.document.last_modified = now

    def persist(self) -> None:
        self.blob_store.save(self.bucket, self.key, self.document.to_json().encode("utf-8"))

    def collections(self) -> List[TrackedCollection]:
        return [self.instances, self.key_pairs, self.security_groups, self.buckets]

    def summary(self) -> Dict[str, int]:
        return {c.label: c.count() for c in self.collections()}
