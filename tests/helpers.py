import threading
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

from prospecting_api import store
from prospecting_api.errors import ChannelError
from prospecting_api.models import Candidate, Criteria, OutcomeRecord, Pacing, ValidationResult
from prospecting_api.runner import CampaignRunner
from prospecting_api.store import OutcomeLog

TENANT = "tenant-a"


def cand(i, phone=True, prefix="Bakery"):
    return Candidate(
        external_id=f"place_{i}",
        name=f"{prefix} {i}",
        address=f"{i} Main St, Springfield",
        phone=f"(31) 9{i:04d}-0000" if phone else None,
    )


class FakeDirectory:
    """Serves canned pages; records the page tokens it was asked for."""

    def __init__(self, pages: List[Tuple[List[Candidate], Optional[str]]], error: Optional[Exception] = None):
        self.pages = pages
        self.error = error
        self.calls: List[Optional[str]] = []

    def search(self, query, page_token=None):
        self.calls.append(page_token)
        if self.error is not None:
            raise self.error
        ix = len(self.calls) - 1
        if ix >= len(self.pages):
            return [], None
        return self.pages[ix]


class FakeChannel:
    """Validator + dispatcher. Phones in ``unreachable`` fail the check,
    names in ``fail_send`` make send() raise."""

    def __init__(
        self,
        unreachable: Optional[Set[str]] = None,
        fail_send: Optional[Set[str]] = None,
        check_error: Optional[Set[str]] = None,
        state: str = "open",
    ):
        self.unreachable = unreachable or set()
        self.fail_send = fail_send or set()
        self.check_error = check_error or set()
        self.state = state
        self.checked: List[str] = []
        self.sent: List[Tuple[str, str]] = []
        self.on_check: Optional[Callable[[str], None]] = None
        self._lock = threading.Lock()

    def connection_state(self):
        return self.state

    def check(self, phone):
        with self._lock:
            self.checked.append(phone)
        if self.on_check:
            self.on_check(phone)
        if phone in self.check_error:
            raise ChannelError("validator unreachable")
        if phone in self.unreachable:
            return ValidationResult(reachable=False)
        digits = "".join(c for c in phone if c.isdigit())
        return ValidationResult(reachable=True, channel_address=f"55{digits}@s.whatsapp.net")

    def send(self, channel_address, text):
        for marker in self.fail_send:
            if marker in channel_address or marker in text:
                raise ChannelError("send failed")
        with self._lock:
            self.sent.append((channel_address, text))
        return f"BAE{len(self.sent):06d}"


class FakeLeadRepo:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.saved: List[Candidate] = []

    def save(self, tenant_id, candidate, channel_address, notes=""):
        if self.fail:
            raise RuntimeError("crm unavailable")
        self.saved.append(candidate)
        return f"ld_{candidate.external_id}"


def make_runner(directory, channel=None, lead_repo=None, outcome_log=None, **kwargs):
    channel = channel or FakeChannel()
    outcome_log = outcome_log or OutcomeLog()
    opts: Dict = {"poll_seconds": 0.02, "page_delay": 0.0, "max_pages": 3}
    opts.update(kwargs)
    return CampaignRunner(
        TENANT,
        directory=directory,
        ledger=outcome_log,
        validator=channel,
        dispatcher=channel,
        lead_repo=lead_repo or FakeLeadRepo(),
        outcome_log=outcome_log,
        **opts,
    )


def fast_pacing(**kwargs):
    opts = {"interval_seconds": 0.0, "daily_cap": 100, "min_yield": 10, "failure_delay_seconds": 0.0}
    opts.update(kwargs)
    return Pacing(**opts)


CRITERIA = Criteria(category="bakery", location="Springfield")


def wait_until(pred, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(interval)
    return pred()


def seed_outcome(log: OutcomeLog, external_id: str, *, sent: bool, epoch: float, tenant_id: str = TENANT):
    log.append(
        OutcomeRecord(
            tenant_id=tenant_id,
            external_id=external_id,
            name=external_id,
            address="",
            phone="123",
            channel_valid=sent,
            channel_address="55123@s.whatsapp.net" if sent else None,
            message_sent=sent,
            lead_saved=False,
            lead_id=None,
            category="bakery",
            location="Springfield",
            notes="seeded",
            created_at=store.now_iso(),
            created_epoch=epoch,
        )
    )


