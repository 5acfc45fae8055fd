import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

PENDING = "pending"
QUEUED = "queued"
BUILDING = "building"
SUCCESS = "success"
FAILED = "failed"

STATUS_CHOICES = [
    (PENDING, "Pending"),
    (QUEUED, "Queued"),
    (BUILDING, "Building"),
    (SUCCESS, "Success"),
    (FAILED, "Failed"),
]

TERMINAL_STATUSES = frozenset({SUCCESS, FAILED})
ACTIVE_STATUSES = frozenset({QUEUED, BUILDING})

# Allowed status transitions; terminal states have no outgoing edges.
TRANSITIONS = {
    PENDING: {QUEUED, FAILED},
    QUEUED: {BUILDING, FAILED},
    BUILDING: {SUCCESS, FAILED},
    SUCCESS: set(),
    FAILED: set(),
}

REACT_NATIVE = "react-native"
FLUTTER = "flutter"
CAPACITOR = "capacitor"

FRAMEWORK_CHOICES = [
    (REACT_NATIVE, "React Native"),
    (FLUTTER, "Flutter"),
    (CAPACITOR, "Capacitor"),
]

LEVEL_INFO = "info"
LEVEL_WARN = "warn"
LEVEL_ERROR = "error"
LEVEL_SUCCESS = "success"

LEVEL_CHOICES = [
    (LEVEL_INFO, "Info"),
    (LEVEL_WARN, "Warning"),
    (LEVEL_ERROR, "Error"),
    (LEVEL_SUCCESS, "Success"),
]

MAX_LOG_MESSAGE_LENGTH = 4000
TRUNCATED_SUFFIX = "…[truncated]"


def utcnow():
    return datetime.now(timezone.utc)


def new_build_id():
    return uuid.uuid4().hex


def cap_message(message):
    message = str(message)
    if len(message) <= MAX_LOG_MESSAGE_LENGTH:
        return message
    return message[:MAX_LOG_MESSAGE_LENGTH - len(TRUNCATED_SUFFIX)] + TRUNCATED_SUFFIX


@dataclass(frozen=True)
class LogEntry:
    timestamp: datetime
    level: str
    message: str


@dataclass
class BuildJob:
    build_id: str
    project_id: str
    project_name: str
    framework: str
    status: str = PENDING
    progress: int = 0
    logs: list = field(default_factory=list)
    artifact_path: Optional[str] = None
    artifact_url: Optional[str] = None
    error_message: Optional[str] = None
    build_config: dict = field(default_factory=dict)
    priority: int = 0
    queue_position: Optional[int] = None
    cancel_requested: bool = False
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    # Bumped by the store on every committed mutation.
    version: int = 0

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def snapshot(self):
        """Detached copy handed out to readers; LogEntry items are immutable so they are shared."""
        clone = copy.copy(self)
        clone.logs = list(self.logs)
        clone.build_config = copy.deepcopy(self.build_config)
        return clone

    def __str__(self):
        return f"{self.project_name} - {self.build_id} ({self.status})"


@dataclass(frozen=True)
class DistinguishedName:
    common_name: str = "Android Build Server"
    organizational_unit: str = "Development"
    organization: str = "Build Server"
    locality: str = "Jakarta"
    state: str = "DKI Jakarta"
    country: str = "ID"

    def __str__(self):
        return (
            f"CN={self.common_name}, OU={self.organizational_unit}, O={self.organization}, "
            f"L={self.locality}, ST={self.state}, C={self.country}"
        )


@dataclass(frozen=True)
class KeystoreConfig:
    project_id: str
    keystore_path: str
    keystore_password: str
    key_alias: str
    key_password: str
    validity: int
    distinguished_name: DistinguishedName
    created_at: str = ""

    def to_dict(self):
        return {
            "project_id": self.project_id,
            "keystore_path": self.keystore_path,
            "keystore_password": self.keystore_password,
            "key_alias": self.key_alias,
            "key_password": self.key_password,
            "validity": self.validity,
            "distinguished_name": {
                "common_name": self.distinguished_name.common_name,
                "organizational_unit": self.distinguished_name.organizational_unit,
                "organization": self.distinguished_name.organization,
                "locality": self.distinguished_name.locality,
                "state": self.distinguished_name.state,
                "country": self.distinguished_name.country,
            },
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            project_id=data["project_id"],
            keystore_path=data["keystore_path"],
            keystore_password=data["keystore_password"],
            key_alias=data["key_alias"],
            key_password=data["key_password"],
            validity=int(data["validity"]),
            distinguished_name=DistinguishedName(**data.get("distinguished_name", {})),
            created_at=data.get("created_at", ""),
        )
