from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional

from . import config


class LeadStatus(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    CHANNEL_VALID = "channel_valid"
    MESSAGE_SENT = "message_sent"
    DISPATCH_ERROR = "dispatch_error"
    CHANNEL_INVALID = "channel_invalid"
    MISSING_PHONE = "missing_phone"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        LeadStatus.MESSAGE_SENT,
        LeadStatus.DISPATCH_ERROR,
        LeadStatus.CHANNEL_INVALID,
        LeadStatus.MISSING_PHONE,
    }
)


@dataclass(frozen=True)
class Candidate:
    external_id: str
    name: str
    address: str = ""
    phone: Optional[str] = None


@dataclass(frozen=True)
class Criteria:
    category: str
    location: str

    @property
    def query(self) -> str:
        return f"{self.category} {self.location}".strip()

    def is_complete(self) -> bool:
        return bool((self.category or "").strip() and (self.location or "").strip())


@dataclass(frozen=True)
class Pacing:
    interval_seconds: float = config.PACING_INTERVAL_SECONDS
    daily_cap: int = config.DAILY_DISPATCH_CAP
    min_yield: int = config.DISCOVERY_MIN_YIELD
    failure_delay_seconds: float = config.FAILURE_DELAY_SECONDS


@dataclass(frozen=True)
class ValidationResult:
    reachable: bool
    channel_address: Optional[str] = None


@dataclass
class ProcessingState:
    candidate: Candidate
    status: LeadStatus = LeadStatus.PENDING
    channel_address: Optional[str] = None
    error_detail: Optional[str] = None
    processed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "external_id": self.candidate.external_id,
            "name": self.candidate.name,
            "address": self.candidate.address,
            "phone": self.candidate.phone,
            "status": self.status.value,
            "channel_address": self.channel_address,
            "error_detail": self.error_detail,
            "processed_at": self.processed_at,
        }


@dataclass(frozen=True)
class OutcomeRecord:
    tenant_id: str
    external_id: str
    name: str
    address: str
    phone: Optional[str]
    channel_valid: bool
    channel_address: Optional[str]
    message_sent: bool
    lead_saved: bool
    lead_id: Optional[str]
    category: str
    location: str
    notes: str
    created_at: str
    created_epoch: float
    campaign_run_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CampaignStatus:
    running: bool = False
    paused: bool = False
    total_found: int = 0
    total_processed: int = 0
    total_channel_valid: int = 0
    total_messages_sent: int = 0
    quota_used_today: int = 0
    daily_cap: int = config.DAILY_DISPATCH_CAP
    progress: float = 0.0
    state: str = "idle"  # idle|discovering|running|paused|complete|stopped|quota_reached|failed
    campaign_run_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["progress_pct"] = round(self.progress * 100, 1)
        return out
