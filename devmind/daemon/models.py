"""Data models for the DevMind core."""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Dict, Any, Optional, Tuple, Sequence

import ulid

from .error_handling import InputError


LineRange = Tuple[int, int]

METADATA_VERSION = 1


class ActivityType(str, Enum):
    """Closed set of activity families; order is the classifier tie-break order."""
    BUG_FIX = "bug_fix"
    FEATURE_ADD = "feature_add"
    CODE_CHANGE = "code_change"
    REFACTOR = "refactor"
    SOLUTION_DESIGN = "solution_design"
    TEST = "test"
    DOCUMENTATION = "documentation"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    PAUSED = "paused"


SESSION_TRANSITIONS = {
    SessionStatus.ACTIVE: {SessionStatus.COMPLETED, SessionStatus.PAUSED},
    SessionStatus.PAUSED: {SessionStatus.ACTIVE, SessionStatus.COMPLETED},
    SessionStatus.COMPLETED: set(),
}


class ChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    NONE = "none"


class CaptureOutcome(str, Enum):
    AUTO_RECORD = "auto_record"
    DISCARD = "discard"
    PENDING = "pending"


class ConfirmationChoice(str, Enum):
    YES = "yes"
    NO = "no"
    MAYBE = "maybe"


class ConfirmationState(str, Enum):
    PENDING = "pending"
    RECORDED = "recorded"
    DISCARDED = "discarded"
    TIMED_OUT = "timed_out"


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def new_id() -> str:
    return str(ulid.ULID())


def naive(ts: datetime) -> datetime:
    """Drop timezone info after converting to local time."""
    if ts.tzinfo is not None:
        return ts.astimezone().replace(tzinfo=None)
    return ts


def days_between(then: datetime, now: Optional[datetime] = None) -> int:
    """Whole days elapsed from `then` to `now`, never negative."""
    now = naive(now or datetime.now())
    delta = now - naive(then)
    return max(0, math.floor(delta.total_seconds() / 86400))


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError as e:
        raise InputError(f"Invalid timestamp: {value!r}") from e


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class UsageCounters:
    """Access counters fed back by retrieval usage."""
    reference_count: int = 0
    search_count: int = 0
    last_accessed: Optional[datetime] = None
    user_rating: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            'reference_count': self.reference_count,
            'search_count': self.search_count,
            'last_accessed': _format_ts(self.last_accessed),
            'user_rating': self.user_rating,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageCounters":
        return cls(
            reference_count=int(data.get('reference_count', 0)),
            search_count=int(data.get('search_count', 0)),
            last_accessed=_parse_ts(data.get('last_accessed')),
            user_rating=data.get('user_rating'),
        )


@dataclass
class QualityMetrics:
    """Five-dimension quality vector for a stored record."""
    relevance: float
    freshness: float
    completeness: float
    accuracy: float
    usefulness: float
    overall: float
    usage: UsageCounters = field(default_factory=UsageCounters)
    calculated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict:
        return {
            'relevance': self.relevance,
            'freshness': self.freshness,
            'completeness': self.completeness,
            'accuracy': self.accuracy,
            'usefulness': self.usefulness,
            'overall': self.overall,
            'usage': self.usage.to_dict(),
            'calculated_at': _format_ts(self.calculated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QualityMetrics":
        try:
            return cls(
                relevance=float(data['relevance']),
                freshness=float(data['freshness']),
                completeness=float(data['completeness']),
                accuracy=float(data['accuracy']),
                usefulness=float(data['usefulness']),
                overall=float(data['overall']),
                usage=UsageCounters.from_dict(data.get('usage') or {}),
                calculated_at=_parse_ts(data.get('calculated_at')) or datetime.now(),
            )
        except KeyError as e:
            raise InputError(f"Quality metrics missing field: {e}") from e


@dataclass
class CaptureProvenance:
    """How a record came to be captured."""
    activity_confidence: int
    value_score: int
    outcome: CaptureOutcome
    decided_at: datetime = field(default_factory=datetime.now)
    confirmation_id: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'activity_confidence': self.activity_confidence,
            'value_score': self.value_score,
            'outcome': self.outcome.value,
            'decided_at': _format_ts(self.decided_at),
            'confirmation_id': self.confirmation_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CaptureProvenance":
        return cls(
            activity_confidence=int(data.get('activity_confidence', 0)),
            value_score=int(data.get('value_score', 0)),
            outcome=CaptureOutcome(data.get('outcome', CaptureOutcome.AUTO_RECORD.value)),
            decided_at=_parse_ts(data.get('decided_at')) or datetime.now(),
            confirmation_id=data.get('confirmation_id'),
        )


@dataclass
class RecordMetadata:
    """
    Versioned metadata envelope attached to every record.

    Every field is explicitly optional so writers and readers on different
    versions never guess at the shape of a loose dict.
    """
    version: int = METADATA_VERSION
    quality: Optional[QualityMetrics] = None
    usage: UsageCounters = field(default_factory=UsageCounters)
    capture: Optional[CaptureProvenance] = None
    change_type: Optional[ChangeType] = None
    total_changed_lines: Optional[int] = None
    enrichment: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'version': self.version,
            'quality': self.quality.to_dict() if self.quality else None,
            'usage': self.usage.to_dict(),
            'capture': self.capture.to_dict() if self.capture else None,
            'change_type': self.change_type.value if self.change_type else None,
            'total_changed_lines': self.total_changed_lines,
            'enrichment': dict(self.enrichment),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RecordMetadata":
        if not data:
            return cls()

        version = data.get('version', METADATA_VERSION)
        if not isinstance(version, int) or version > METADATA_VERSION:
            raise InputError(f"Unsupported metadata version: {version!r}")

        quality = data.get('quality')
        capture = data.get('capture')
        change_type = data.get('change_type')
        return cls(
            version=version,
            quality=QualityMetrics.from_dict(quality) if quality else None,
            usage=UsageCounters.from_dict(data.get('usage') or {}),
            capture=CaptureProvenance.from_dict(capture) if capture else None,
            change_type=ChangeType(change_type) if change_type else None,
            total_changed_lines=data.get('total_changed_lines'),
            enrichment=dict(data.get('enrichment') or {}),
        )


@dataclass
class Record:
    """One captured unit of development memory."""
    session_id: str
    activity_type: ActivityType
    content: str
    id: str = ""
    file_path: Optional[str] = None
    line_ranges: List[LineRange] = field(default_factory=list)
    language: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    quality_score: Optional[float] = None
    metadata: RecordMetadata = field(default_factory=RecordMetadata)
    created_at: datetime = field(default_factory=datetime.now)
    project_id: Optional[str] = None
    embedding: Optional[List[float]] = None
    embedding_version: Optional[str] = None

    def __post_init__(self):
        if not self.id:
            self.id = new_id()
        if not isinstance(self.activity_type, ActivityType):
            try:
                self.activity_type = ActivityType(self.activity_type)
            except ValueError as e:
                raise InputError(f"Unknown activity type: {self.activity_type!r}") from e
        if not self.session_id:
            raise InputError("Record requires a session id")

    def attach_embedding(self,
                         vector: Sequence[float],
                         version: str,
                         widths: Dict[str, int]) -> None:
        """Attach an embedding, enforcing the width configured for its version."""
        if version not in widths:
            raise InputError(f"Unknown embedding version: {version}")
        if len(vector) != widths[version]:
            raise InputError(
                f"Embedding width {len(vector)} does not match "
                f"{widths[version]} configured for {version}"
            )
        self.embedding = [float(x) for x in vector]
        self.embedding_version = version

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'session_id': self.session_id,
            'project_id': self.project_id,
            'activity_type': self.activity_type.value,
            'content': self.content,
            'file_path': self.file_path,
            'line_ranges': [list(r) for r in self.line_ranges],
            'language': self.language,
            'tags': list(self.tags),
            'quality_score': self.quality_score,
            'metadata': self.metadata.to_dict(),
            'created_at': _format_ts(self.created_at),
            'embedding_version': self.embedding_version,
        }


@dataclass
class Session:
    """A working session inside one project."""
    project_id: str
    name: str
    id: str = ""
    status: SessionStatus = SessionStatus.ACTIVE
    started_at: datetime = field(default_factory=datetime.now)
    ended_at: Optional[datetime] = None
    tools_used: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.id:
            self.id = new_id()

    def transition(self, target: SessionStatus) -> None:
        if target == self.status:
            return
        if target not in SESSION_TRANSITIONS[self.status]:
            raise InputError(f"Session {self.id} cannot go from {self.status.value} to {target.value}")
        self.status = target
        if target == SessionStatus.COMPLETED:
            self.ended_at = datetime.now()

    def complete(self) -> None:
        self.transition(SessionStatus.COMPLETED)

    def pause(self) -> None:
        self.transition(SessionStatus.PAUSED)

    def resume(self) -> None:
        self.transition(SessionStatus.ACTIVE)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'project_id': self.project_id,
            'name': self.name,
            'status': self.status.value,
            'started_at': _format_ts(self.started_at),
            'ended_at': _format_ts(self.ended_at),
            'tools_used': list(self.tools_used),
        }


@dataclass
class Project:
    """A project identified by its canonical root path."""
    name: str
    path: str
    id: str = ""
    fingerprint: Optional[str] = None
    remote_url: Optional[str] = None
    language: Optional[str] = None
    framework: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    last_accessed: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        if not self.id:
            self.id = new_id()

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'name': self.name,
            'path': self.path,
            'fingerprint': self.fingerprint,
            'remote_url': self.remote_url,
            'language': self.language,
            'framework': self.framework,
            'metadata': dict(self.metadata),
            'created_at': _format_ts(self.created_at),
            'last_accessed': _format_ts(self.last_accessed),
        }
