"""The state document: which lab resources awslab has created.

The document is persisted as JSON in the layout::

    {
      "ec2_instances":   [{instance_id, name, instance_type, key_pair,
                           security_groups, region, state, created_at}],
      "security_groups": [{group_id, group_name, vpc_id, region, created_at}],
      "s3_buckets":      [{bucket_name, region, created_at}],
      "key_pairs":       [{key_name, region, created_at}],
      "timestamp": <epoch seconds>
    }

Older documents stored some collections as bare string arrays (for example
``"security_groups": ["sg-123"]``); ``migrate`` upgrades those to records.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional, Type, Union

from .errors import CorruptStateError

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"


@dataclass
class ComputeInstance:
    """An EC2 instance launched by awslab."""

    KEY_FIELD = "instance_id"

    instance_id: str
    name: str = UNKNOWN
    instance_type: str = UNKNOWN
    key_pair: str = UNKNOWN
    security_groups: List[str] = field(default_factory=list)
    region: str = UNKNOWN
    state: str = UNKNOWN
    created_at: float = 0.0

    @property
    def key(self) -> str:
        return self.instance_id


@dataclass
class CredentialPair:
    """An EC2 key pair."""

    KEY_FIELD = "key_name"

    key_name: str
    region: str = UNKNOWN
    created_at: float = 0.0

    @property
    def key(self) -> str:
        return self.key_name


@dataclass
class FirewallGroup:
    """An EC2 security group."""

    KEY_FIELD = "group_id"

    group_id: str
    group_name: str = UNKNOWN
    vpc_id: str = UNKNOWN
    region: str = UNKNOWN
    created_at: float = 0.0

    @property
    def key(self) -> str:
        return self.group_id


@dataclass
class ObjectContainer:
    """An S3 bucket."""

    KEY_FIELD = "bucket_name"

    bucket_name: str
    region: str = UNKNOWN
    created_at: float = 0.0

    @property
    def key(self) -> str:
        return self.bucket_name


Record = Union[ComputeInstance, CredentialPair, FirewallGroup, ObjectContainer]

# Attribute on StateDocument -> (JSON key, record type)
COLLECTIONS = {
    "instances": ("ec2_instances", ComputeInstance),
    "credentials": ("key_pairs", CredentialPair),
    "firewall_groups": ("security_groups", FirewallGroup),
    "containers": ("s3_buckets", ObjectContainer),
}


def is_usable_key(value: Any) -> bool:
    """A primary key must be a non-blank string."""
    return isinstance(value, str) and bool(value.strip())


def record_to_dict(record: Record) -> Dict[str, Any]:
    return asdict(record)


def record_from_dict(
    record_type: Type, raw: Dict[str, Any], fallback_region: str, now: float
) -> Optional[Record]:
    """Build a record from a JSON object, filling fields it lacks.

    Returns None when the object has no usable primary key.
    """
    key_field = record_type.KEY_FIELD
    if not is_usable_key(raw.get(key_field)):
        return None

    values: Dict[str, Any] = {}
    for name in (f.name for f in fields(record_type)):
        if name not in raw or raw[name] is None:
            continue
        value = raw[name]
        if name == "created_at":
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                values[name] = float(value)
        elif name == "security_groups":
            if isinstance(value, list):
                values[name] = [str(v) for v in value]
        else:
            values[name] = str(value)

    values.setdefault("region", fallback_region)
    values.setdefault("created_at", now)
    return record_type(**values)


def record_from_legacy(
    record_type: Type, scalar: Any, fallback_region: str, now: float
) -> Optional[Record]:
    """Build a record from a bare string entry of an old-style document.

    Returns None when the entry is blank.
    """
    key = str(scalar)
    if not is_usable_key(key):
        return None
    return record_type(
        **{record_type.KEY_FIELD: key, "region": fallback_region, "created_at": now}
    )


def dedupe_last(records: List[Record]) -> List[Record]:
    """Keep one record per key, the last one seen, at its first position."""
    latest: Dict[str, Record] = {}
    for record in records:
        latest[record.key] = record
    seen = set()
    result = []
    for record in records:
        if record.key in seen:
            continue
        seen.add(record.key)
        result.append(latest[record.key])
    return result


@dataclass
class StateDocument:
    """In-memory form of the persisted state."""

    instances: List[ComputeInstance] = field(default_factory=list)
    credentials: List[CredentialPair] = field(default_factory=list)
    firewall_groups: List[FirewallGroup] = field(default_factory=list)
    containers: List[ObjectContainer] = field(default_factory=list)
    last_modified: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for attr, (json_key, _) in COLLECTIONS.items():
            data[json_key] = [record_to_dict(r) for r in getattr(self, attr)]
        if self.last_modified is not None:
            data["timestamp"] = self.last_modified
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def is_empty(self) -> bool:
        return not any(getattr(self, attr) for attr in COLLECTIONS)


def _migrate_collection(
    record_type: Type, raw_items: Any, fallback_region: str, now: float
) -> List[Record]:
    if not isinstance(raw_items, list):
        if raw_items is not None:
            logger.warning(
                f"Ignoring malformed {record_type.__name__} collection in state"
            )
        return []

    records = []
    for item in raw_items:
        if isinstance(item, dict):
            record = record_from_dict(record_type, item, fallback_region, now)
            if record is None:
                logger.warning(
                    f"Dropping {record_type.__name__} entry without "
                    f"{record_type.KEY_FIELD}: {item}"
                )
                continue
            records.append(record)
        elif isinstance(item, (str, int, float)) and not isinstance(item, bool):
            record = record_from_legacy(record_type, item, fallback_region, now)
            if record is None:
                logger.warning(f"Dropping blank {record_type.__name__} entry in state")
                continue
            records.append(record)
        else:
            logger.warning(f"Dropping unrecognised {record_type.__name__} entry: {item!r}")
    return dedupe_last(records)


def migrate(
    raw: Any, fallback_region: str, now: Optional[float] = None
) -> StateDocument:
    """Upgrade a raw state document to the current typed shape.

    Args:
        raw: Parsed JSON (normally a dict), JSON text, or an already
            migrated StateDocument; anything that is not a JSON object is
            treated as an empty document
        fallback_region: Region recorded on entries that don't carry one
        now: Timestamp used for created_at of upgraded entries

    Returns:
        A StateDocument with all four collections present
    """
    if now is None:
        now = time.time()
    if isinstance(raw, StateDocument):
        raw = raw.to_dict()
    elif isinstance(raw, (str, bytes, bytearray)):
        try:
            raw = json.loads(raw)
        except (ValueError, UnicodeDecodeError):
            return StateDocument()
    if not isinstance(raw, dict):
        return StateDocument()

    collections = {}
    for attr, (json_key, record_type) in COLLECTIONS.items():
        collections[attr] = _migrate_collection(
            record_type, raw.get(json_key), fallback_region, now
        )

    timestamp = raw.get("timestamp")
    if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
        timestamp = None
    return StateDocument(last_modified=timestamp, **collections)


def parse_state(
    blob: Optional[Union[bytes, str]],
    fallback_region: str,
    now: Optional[float] = None,
    strict: bool = False,
) -> StateDocument:
    """Decode a persisted state blob.

    A missing blob gives an empty document. A blob that is not a JSON object
    also gives an empty document (with a warning) unless strict is set.

    Raises:
        CorruptStateError: If strict is set and the blob is not a JSON object
    """
    if blob is None:
        return StateDocument()
    try:
        raw = json.loads(blob)
    except (ValueError, UnicodeDecodeError) as e:
        if strict:
            raise CorruptStateError(f"State document is not valid JSON: {e}") from e
        logger.warning(f"State document is not valid JSON, starting empty: {e}")
        return StateDocument()
    if not isinstance(raw, dict):
        message = f"State document is a JSON {type(raw).__name__}, not an object"
        if strict:
            raise CorruptStateError(message)
        logger.warning(f"{message}, starting empty")
        return StateDocument()
    return migrate(raw, fallback_region, now)
