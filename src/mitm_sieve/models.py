from enum import Enum, IntEnum
from typing import Annotated, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class FilterMode(str, Enum):
    DISABLED = "disabled"
    BLOCK_BY_DEFAULT = "block_by_default"
    ALLOW_BY_DEFAULT = "allow_by_default"


class ListName(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class Decision(str, Enum):
    ALLOWED = "allowed"
    DENIED = "denied"
    ERROR = "error"


class LogLevel(IntEnum):
    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    # Operator-facing messages that pass every threshold.
    GLOBAL = 50

    @classmethod
    def parse(cls, value) -> "LogLevel":
        if isinstance(value, LogLevel):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown log level: {value!r}") from None


class ProxyState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class ConnectionPhase(str, Enum):
    ACCEPTED = "accepted"
    PARSING = "parsing"
    DECIDING = "deciding"
    FORWARDING = "forwarding"
    REJECTING = "rejecting"
    COMPLETED = "completed"
    FAILED = "failed"


class FilterList(BaseModel):
    """An ordered, duplicate-free collection of match patterns."""

    model_config = ConfigDict(frozen=True)

    name: ListName
    entries: Tuple[str, ...] = ()

    @field_validator("entries")
    @classmethod
    def _check_entries(cls, entries: Tuple[str, ...]) -> Tuple[str, ...]:
        seen = set()
        for entry in entries:
            if not entry or not entry.strip() or entry != entry.strip():
                raise ValueError(f"Invalid pattern: {entry!r}")
            key = entry.lower()
            if key in seen:
                raise ValueError(f"Duplicate pattern: {entry!r}")
            seen.add(key)
        return entries

    def contains(self, pattern: str) -> bool:
        needle = pattern.strip().lower()
        return any(entry.lower() == needle for entry in self.entries)

    def matches(self, target: str) -> bool:
        haystack = target.lower()
        return any(entry.lower() in haystack for entry in self.entries)


class FilterPolicy(BaseModel):
    """One immutable generation of the filter policy.

    A snapshot is never edited once published; changes produce a new
    snapshot with a higher ``version``.
    """

    model_config = ConfigDict(frozen=True)

    mode: FilterMode = FilterMode.DISABLED
    allow: FilterList = Field(default_factory=lambda: FilterList(name=ListName.ALLOW))
    deny: FilterList = Field(default_factory=lambda: FilterList(name=ListName.DENY))
    version: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_list_names(self) -> "FilterPolicy":
        if self.allow.name is not ListName.ALLOW or self.deny.name is not ListName.DENY:
            raise ValueError("allow/deny lists are swapped")
        return self

    def get_list(self, name: ListName) -> FilterList:
        return self.allow if ListName(name) is ListName.ALLOW else self.deny

    def decide(self, target: str) -> Decision:
        if self.mode is FilterMode.BLOCK_BY_DEFAULT:
            return Decision.ALLOWED if self.allow.matches(target) else Decision.DENIED
        if self.mode is FilterMode.ALLOW_BY_DEFAULT:
            return Decision.DENIED if self.deny.matches(target) else Decision.ALLOWED
        return Decision.ALLOWED


class AddEntry(BaseModel):
    op: Literal["add"] = "add"
    list_name: ListName
    pattern: str


class RemoveEntry(BaseModel):
    op: Literal["remove"] = "remove"
    list_name: ListName
    pattern: str


class RenameEntry(BaseModel):
    op: Literal["rename"] = "rename"
    list_name: ListName
    old: str
    new: str


class ReplaceList(BaseModel):
    op: Literal["replace"] = "replace"
    list_name: ListName
    entries: List[str] = Field(default_factory=list)


class SetMode(BaseModel):
    op: Literal["set_mode"] = "set_mode"
    mode: FilterMode


Mutation = Annotated[
    Union[AddEntry, RemoveEntry, RenameEntry, ReplaceList, SetMode],
    Field(discriminator="op"),
]


class ProxySettings(BaseModel):
    """Connection settings, persisted alongside the policy."""

    model_config = ConfigDict(frozen=True)

    bind_address: str = "127.0.0.1"
    port: int = Field(default=8080, ge=1, le=65535)
    log_level: LogLevel = LogLevel.INFO
    intercept_tls: bool = False
    grace_period: float = Field(default=5.0, ge=0)
    log_capacity: int = Field(default=2000, gt=0)

    @field_validator("port", mode="before")
    @classmethod
    def _check_port_text(cls, value):
        if isinstance(value, str):
            text = value.strip()
            if not text.isdigit():
                raise ValueError("Invalid characters in port")
            if len(text) > 1 and text.startswith("0"):
                raise ValueError("Port cannot begin with a 0")
            return int(text)
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _parse_log_level(cls, value):
        return LogLevel.parse(value)

    @field_validator("bind_address")
    @classmethod
    def _check_bind_address(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Bind address cannot be empty")
        return value


class LogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    seq: int = 0
    timestamp: float
    level: LogLevel = LogLevel.INFO
    kind: Literal["request", "lifecycle"] = "request"
    method: Optional[str] = None
    target: str = ""
    decision: Optional[Decision] = None
    status_code: Optional[int] = None
    duration_ms: Optional[float] = None
    bytes_sent: int = 0
    cause: Optional[str] = None
    message: Optional[str] = None
    policy_version: Optional[int] = None


class PersistedState(BaseModel):
    """Everything that survives a restart."""

    version: Literal[1] = 1
    settings: ProxySettings = Field(default_factory=ProxySettings)
    policy: FilterPolicy = Field(default_factory=FilterPolicy)


class ProxyStatus(BaseModel):
    state: ProxyState
    error: Optional[str] = None
    uptime_seconds: float = 0.0
    settings: ProxySettings
    policy_version: int
    in_flight: int = 0
