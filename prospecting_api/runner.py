from __future__ import annotations

import logging
import sqlite3
import string
import threading
import time
from collections import deque
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional
from zoneinfo import ZoneInfo

from . import config, store
from .errors import PreconditionError
from .models import (
    CampaignStatus,
    Candidate,
    Criteria,
    LeadStatus,
    OutcomeRecord,
    Pacing,
    ProcessingState,
)

logger = logging.getLogger(__name__)

NOTES = {
    LeadStatus.MESSAGE_SENT: "message sent",
    LeadStatus.DISPATCH_ERROR: "whatsapp valid, message failed",
    LeadStatus.CHANNEL_INVALID: "phone not on whatsapp",
    LeadStatus.MISSING_PHONE: "no phone number",
}


_formatter = string.Formatter()


def render_template(template: str, candidate: Candidate, criteria: Criteria) -> str:
    """Fill {name}, {address}, {category}, {location}.

    Fields are rendered one at a time; a field that can't be filled
    (unknown name, {coupon.code}, {0}, bad format spec) stays as written.
    A template with unbalanced braces is returned unchanged.
    """
    values = {
        "name": candidate.name,
        "address": candidate.address,
        "category": criteria.category,
        "location": criteria.location,
    }
    try:
        parts = list(_formatter.parse(template))
    except ValueError:
        return template

    out: List[str] = []
    for literal, field, spec, conversion in parts:
        out.append(literal)
        if field is None:
            continue
        raw = "{" + field + (f"!{conversion}" if conversion else "") + (f":{spec}" if spec else "") + "}"
        try:
            out.append(_formatter.vformat(raw, (), values))
        except (KeyError, IndexError, AttributeError, TypeError, ValueError):
            out.append(raw)
    return "".join(out)


def discover(
    directory,
    ledger,
    tenant_id: str,
    criteria: Criteria,
    min_yield: int,
    *,
    max_pages: Optional[int] = None,
    page_delay: Optional[float] = None,
    wait: Optional[Callable[[float], bool]] = None,
    log: Optional[Callable[[str], None]] = None,
) -> Iterator[Candidate]:
    """Yield candidates the tenant has not processed yet, paging until min_yield is met.

    Paging stops when the provider has no next page, min_yield survivors have
    been collected, or max_pages pages were fetched. ``wait`` is called before
    every page after the first and must return False to abandon paging.
    DirectoryError from the provider and sqlite errors from the ledger propagate.
    """
    max_pages = config.DISCOVERY_MAX_PAGES if max_pages is None else max_pages
    page_delay = config.DISCOVERY_PAGE_DELAY_SECONDS if page_delay is None else page_delay
    wait = wait or (lambda s: (time.sleep(s), True)[1])
    log = log or (lambda m: logger.info("%s", m))

    survivors = 0
    duplicates = 0
    pages = 0
    seen = set()
    token: Optional[str] = None

    while True:
        if pages > 0 and not wait(page_delay):
            break
        items, token = directory.search(criteria.query, token)
        pages += 1
        page_new = 0
        for cand in items:
            if cand.external_id in seen or ledger.has_been_processed(tenant_id, cand.external_id):
                duplicates += 1
                continue
            seen.add(cand.external_id)
            survivors += 1
            page_new += 1
            yield cand
        log(f"Page {pages}: {len(items)} results, {page_new} new")
        if not token or survivors >= min_yield or pages >= max_pages:
            break

    if survivors == 0:
        log(f"Nothing new found ({duplicates} already prospected)")
    else:
        log(f"{survivors} new establishments found, {duplicates} already prospected skipped")


class CampaignRunner:
    """Runs one prospecting campaign for one tenant on a background thread.

    All external calls happen sequentially on that thread. pause/resume/stop
    only flip flags under a Condition; the loop sees them between leads and
    while parked in any wait, so stop() never has to sit out a pacing delay.
    Counters are only written by the runner thread, under ``_lock``, in the
    same step that appends the lead's outcome.
    """

    def __init__(
        self,
        tenant_id: str,
        *,
        directory,
        ledger,
        validator,
        dispatcher,
        lead_repo,
        outcome_log,
        poll_seconds: Optional[float] = None,
        page_delay: Optional[float] = None,
        max_pages: Optional[int] = None,
        log_size: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.tenant_id = tenant_id
        self.directory = directory
        self.ledger = ledger
        self.validator = validator
        self.dispatcher = dispatcher
        self.lead_repo = lead_repo
        self.outcome_log = outcome_log
        self.poll_seconds = config.WAIT_POLL_SECONDS if poll_seconds is None else poll_seconds
        self.page_delay = config.DISCOVERY_PAGE_DELAY_SECONDS if page_delay is None else page_delay
        self.max_pages = config.DISCOVERY_MAX_PAGES if max_pages is None else max_pages
        self.clock = clock

        self._cond = threading.Condition()
        self._lock = threading.Lock()
        self._stop_requested = False
        self._paused = False
        self._thread: Optional[threading.Thread] = None

        self._status = CampaignStatus()
        self._states: List[ProcessingState] = []
        self._logs: deque = deque(maxlen=config.LOG_BUFFER_SIZE if log_size is None else log_size)
        self._quota_day: Optional[float] = None

        self.criteria: Optional[Criteria] = None
        self.template = ""
        self.pacing = Pacing()

    # ---- operator surface ----

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, criteria: Criteria, template: str, pacing: Optional[Pacing] = None) -> str:
        """Validate preconditions and launch the run. Returns the campaign run id."""
        pacing = pacing or Pacing()
        if self.running:
            raise PreconditionError("already_running", "A prospecting campaign is already running")
        if not criteria.is_complete() or not (template or "").strip():
            raise PreconditionError("incomplete_criteria", "Category, location and message are required")

        quota_used = self._quota_used_today()
        if quota_used >= pacing.daily_cap:
            raise PreconditionError(
                "quota_exhausted", f"Daily dispatch limit reached ({quota_used}/{pacing.daily_cap})"
            )

        self.criteria = criteria
        self.template = template
        self.pacing = pacing
        with self._cond:
            self._stop_requested = False
            self._paused = False
        with self._lock:
            self._states = []
            self._status = CampaignStatus(
                running=True,
                quota_used_today=quota_used,
                daily_cap=pacing.daily_cap,
                state="discovering",
            )
        self._logs.clear()

        run_id = store.create_campaign_run(
            self.tenant_id,
            {
                "category": criteria.category,
                "location": criteria.location,
                "pacing_interval_seconds": pacing.interval_seconds,
                "daily_cap": pacing.daily_cap,
                "min_yield": pacing.min_yield,
            },
        )
        with self._lock:
            self._status.campaign_run_id = run_id

        self._log("Starting prospecting...")
        self._thread = threading.Thread(target=self._run, name=f"prospecting-{self.tenant_id}", daemon=True)
        self._thread.start()
        return run_id

    def pause(self) -> bool:
        with self._cond:
            if not self._active() or self._stop_requested or self._paused:
                return False
            self._paused = True
        with self._lock:
            self._status.paused = True
            self._status.state = "paused"
        self._log("Prospecting paused")
        return True

    def resume(self) -> bool:
        with self._cond:
            if not self._active() or not self._paused:
                return False
            self._paused = False
            self._cond.notify_all()
        with self._lock:
            self._status.paused = False
            self._status.state = "running"
        self._log("Prospecting resumed")
        return True

    def stop(self) -> bool:
        with self._cond:
            if not self._active() or self._stop_requested:
                return False
            self._stop_requested = True
            self._cond.notify_all()
        self._log("Prospecting stopped by user")
        return True

    def _active(self) -> bool:
        with self._lock:
            return self._status.running

    def join(self, timeout: Optional[float] = None) -> bool:
        if self._thread is not None:
            self._thread.join(timeout)
        return not self.running

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return self._status.to_dict()

    def lead_states(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [s.to_dict() for s in self._states]

    def logs(self) -> List[str]:
        return list(self._logs)

    # ---- waits ----

    def _wait(self, seconds: float) -> bool:
        """Cancellable sleep. False means stop was requested."""
        deadline = time.monotonic() + max(0.0, seconds)
        with self._cond:
            while not self._stop_requested:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return True
                self._cond.wait(min(remaining, self.poll_seconds))
            return False

    def _wait_while_paused(self) -> bool:
        with self._cond:
            while self._paused and not self._stop_requested:
                self._cond.wait(self.poll_seconds)
            return not self._stop_requested

    def _stopped(self) -> bool:
        with self._cond:
            return self._stop_requested

    # ---- quota ----

    def _quota_used_today(self) -> int:
        day = store.day_start_epoch(self.clock())
        self._quota_day = day
        return self.outcome_log.count_sent_since(self.tenant_id, day)

    def _roll_quota_day(self):
        # a run that crosses local midnight starts the new day from the log
        day = store.day_start_epoch(self.clock())
        if day != self._quota_day:
            used = self._quota_used_today()
            with self._lock:
                self._status.quota_used_today = used

    # ---- the loop ----

    def _run(self):
        criteria = self.criteria
        run_id = self._status.campaign_run_id
        self._emit("progress", "Run started", {"status": "running", "criteria": {"category": criteria.category, "location": criteria.location}})
        self._log(f"Searching establishments: {criteria.category} in {criteria.location}")

        try:
            candidates = list(
                discover(
                    self.directory,
                    self.ledger,
                    self.tenant_id,
                    criteria,
                    self.pacing.min_yield,
                    max_pages=self.max_pages,
                    page_delay=self.page_delay,
                    wait=self._wait,
                    log=self._log,
                )
            )
        except Exception as e:
            err = f"{type(e).__name__}: {str(e)[:300]}"
            logger.warning("discovery failed for tenant %s: %s", self.tenant_id, err)
            self._finish("failed", f"Search failed: {err}", error=err)
            return

        with self._lock:
            self._status.total_found = len(candidates)
            self._status.state = "paused" if self._paused else "running"
        self._emit("progress", "Discovery complete", {"found": len(candidates)})

        if self._stopped():
            self._finish("stopped", "Prospecting interrupted during search")
            return
        if not candidates:
            self._finish("complete", "No new establishments to prospect")
            return

        final_state = "complete"
        for ix, cand in enumerate(candidates):
            if self._stopped():
                final_state = "stopped"
                break
            if not self._wait_while_paused():
                final_state = "stopped"
                break

            self._roll_quota_day()
            with self._lock:
                used = self._status.quota_used_today
            if used >= self.pacing.daily_cap:
                self._log(f"Daily dispatch limit reached ({used}/{self.pacing.daily_cap})")
                final_state = "quota_reached"
                break

            state = ProcessingState(candidate=cand)
            with self._lock:
                self._states.append(state)
            self._process(state)

            if ix == len(candidates) - 1:
                break
            if state.status == LeadStatus.MESSAGE_SENT:
                delay = self.pacing.interval_seconds
                self._log(f"Waiting {int(delay)} seconds before the next dispatch...")
            else:
                delay = self.pacing.failure_delay_seconds
            if not self._wait(delay):
                final_state = "stopped"
                break

        summaries = {
            "complete": "Prospecting finished",
            "stopped": "Prospecting interrupted",
            "quota_reached": "Prospecting ended: daily limit reached",
        }
        self._finish(final_state, summaries[final_state])
        logger.info("run %s for tenant %s ended: %s", run_id, self.tenant_id, final_state)

    def _process(self, state: ProcessingState):
        """Drive one candidate to a terminal status and record exactly one outcome."""
        cand = state.candidate
        lead_id: Optional[str] = None

        if not cand.phone:
            state.status = LeadStatus.MISSING_PHONE
            state.error_detail = "phone number not found"
        else:
            state.status = LeadStatus.VALIDATING
            self._log(f"Validating WhatsApp: {cand.name} - {cand.phone}")
            try:
                result = self.validator.check(cand.phone)
            except Exception as e:
                logger.warning("validation failed for %s: %s", cand.external_id, e)
                result = None
                state.error_detail = f"validation error: {type(e).__name__}: {str(e)[:200]}"

            if result is not None and result.reachable and result.channel_address:
                state.status = LeadStatus.CHANNEL_VALID
                state.channel_address = result.channel_address
                self._log(f"Valid WhatsApp found: {cand.name}")
                text = render_template(self.template, cand, self.criteria)
                try:
                    self.dispatcher.send(result.channel_address, text)
                    state.status = LeadStatus.MESSAGE_SENT
                except Exception as e:
                    logger.warning("dispatch failed for %s: %s", cand.external_id, e)
                    state.status = LeadStatus.DISPATCH_ERROR
                    state.error_detail = f"dispatch error: {type(e).__name__}: {str(e)[:200]}"

                if state.status == LeadStatus.MESSAGE_SENT:
                    try:
                        lead_id = self.lead_repo.save(self.tenant_id, cand, state.channel_address, notes=self._lead_notes())
                    except Exception as e:
                        logger.warning("lead save failed for %s: %s", cand.external_id, e)
                        self._log(f"Could not save client {cand.name}: {type(e).__name__}")
            else:
                state.status = LeadStatus.CHANNEL_INVALID

        now = self.clock()
        state.processed_at = datetime.fromtimestamp(now, ZoneInfo(config.TENANT_TIMEZONE)).isoformat()
        sent = state.status == LeadStatus.MESSAGE_SENT
        notes = NOTES[state.status]
        if state.error_detail:
            notes = f"{notes} ({state.error_detail})"

        record = OutcomeRecord(
            tenant_id=self.tenant_id,
            external_id=cand.external_id,
            name=cand.name,
            address=cand.address,
            phone=cand.phone,
            channel_valid=state.channel_address is not None,
            channel_address=state.channel_address,
            message_sent=sent,
            lead_saved=lead_id is not None,
            lead_id=lead_id,
            category=self.criteria.category,
            location=self.criteria.location,
            notes=notes,
            created_at=store.now_iso(),
            created_epoch=now,
            campaign_run_id=self._status.campaign_run_id,
        )
        try:
            self.outcome_log.append(record)
        except Exception as e:
            logger.warning("outcome append failed for %s: %s", cand.external_id, e)
            self._log(f"Could not record outcome for {cand.name}: {type(e).__name__}")

        with self._lock:
            st = self._status
            st.total_processed += 1
            if record.channel_valid:
                st.total_channel_valid += 1
            if sent:
                st.total_messages_sent += 1
                st.quota_used_today += 1
            st.progress = st.total_processed / st.total_found if st.total_found else 1.0

        self._log(self._lead_line(state))
        self._emit(
            f"lead.{state.status.value}",
            self._lead_line(state),
            {"external_id": cand.external_id, "status": state.status.value, "error": state.error_detail, "lead_id": lead_id},
        )

    def _lead_notes(self) -> str:
        return f"Prospecting: {self.criteria.category} in {self.criteria.location}"

    @staticmethod
    def _lead_line(state: ProcessingState) -> str:
        name = state.candidate.name
        return {
            LeadStatus.MESSAGE_SENT: f"Message sent to: {name}",
            LeadStatus.DISPATCH_ERROR: f"Error sending message to {name}: {state.error_detail}",
            LeadStatus.CHANNEL_INVALID: f"Invalid WhatsApp: {name}",
            LeadStatus.MISSING_PHONE: f"No phone number: {name}",
        }.get(state.status, f"{name}: {state.status.value}")

    def _finish(self, final_state: str, message: str, error: Optional[str] = None):
        with self._cond:
            self._paused = False
        with self._lock:
            st = self._status
            st.running = False
            st.paused = False
            st.state = final_state
            st.error = error
            summary = {
                "found": st.total_found,
                "processed": st.total_processed,
                "channel_valid": st.total_channel_valid,
                "messages_sent": st.total_messages_sent,
                "quota_used_today": st.quota_used_today,
            }
            run_id = st.campaign_run_id
        self._log(
            f"{message}: {summary['processed']}/{summary['found']} processed, "
            f"{summary['channel_valid']} valid, {summary['messages_sent']} sent"
        )
        try:
            store.update_campaign_run(run_id, status=final_state, progress=summary, error=error)
        except (sqlite3.Error, KeyError) as e:
            logger.warning("could not persist run %s: %s", run_id, e)
        self._emit("progress", message, {"status": final_state, "progress": summary, "error": error})

    # ---- telemetry ----

    def _log(self, message: str):
        self._logs.appendleft(f"[{datetime.now().strftime('%H:%M:%S')}] {message}")
        logger.info("[%s] %s", self.tenant_id, message)

    def _emit(self, type_: str, message: str, payload: Optional[Dict[str, Any]] = None):
        run_id = self._status.campaign_run_id
        if not run_id:
            return
        try:
            store.emit_event(run_id, self.tenant_id, type_, message, payload)
        except sqlite3.Error as e:
            logger.warning("event write failed for run %s: %s", run_id, e)
