from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional, Set

from . import store
from .clients import EvolutionChannelClient, PlacesDirectoryClient
from .errors import ChannelError, PreconditionError
from .models import Criteria, Pacing
from .runner import CampaignRunner
from .store import LeadRepository, OutcomeLog

logger = logging.getLogger(__name__)


class CampaignManager:
    """At most one CampaignRunner per tenant, wired to the tenant's channel instance."""

    def __init__(
        self,
        directory_factory: Callable[[], Any] = PlacesDirectoryClient,
        channel_factory: Callable[[str], Any] = EvolutionChannelClient,
        outcome_log: Optional[OutcomeLog] = None,
        lead_repo: Optional[LeadRepository] = None,
        runner_options: Optional[Dict[str, Any]] = None,
    ):
        self.directory_factory = directory_factory
        self.channel_factory = channel_factory
        self.outcome_log = outcome_log or OutcomeLog()
        self.lead_repo = lead_repo or LeadRepository()
        self.runner_options = runner_options or {}
        self._runners: Dict[str, CampaignRunner] = {}
        self._starting: Set[str] = set()
        self._lock = threading.Lock()

    def get(self, tenant_id: str) -> Optional[CampaignRunner]:
        with self._lock:
            return self._runners.get(tenant_id)

    def channel_state(self, tenant_id: str) -> Dict[str, Any]:
        """Refresh the tenant's instance connection state from the provider."""
        inst = store.get_channel_instance(tenant_id)
        if not inst or not inst.get("instance_name"):
            raise PreconditionError(
                "channel_not_configured", "No WhatsApp instance configured. Configure the WhatsApp channel first."
            )
        try:
            state = self.channel_factory(inst["instance_name"]).connection_state()
        except ChannelError as e:
            logger.warning("connection state for %s failed: %s", tenant_id, e)
            state = "unreachable"
        store.update_channel_status(tenant_id, state)
        return {**inst, "status": state}

    def start(self, tenant_id: str, criteria: Criteria, template: str, pacing: Optional[Pacing] = None) -> CampaignRunner:
        pacing = pacing or Pacing()
        # the registry lock is only held for bookkeeping; the channel check and
        # run setup happen outside it under a per-tenant "starting" claim
        with self._lock:
            runner = self._runners.get(tenant_id)
            if tenant_id in self._starting or (runner is not None and runner.running):
                raise PreconditionError("already_running", "A prospecting campaign is already running")
            if not criteria.is_complete() or not (template or "").strip():
                raise PreconditionError("incomplete_criteria", "Category, location and message are required")
            self._starting.add(tenant_id)

        try:
            inst = self.channel_state(tenant_id)
            if inst["status"] != "open":
                raise PreconditionError(
                    "channel_not_connected",
                    f"WhatsApp instance is not connected (status: {inst['status']}). Check the connection first.",
                )

            channel = self.channel_factory(inst["instance_name"])
            runner = CampaignRunner(
                tenant_id,
                directory=self.directory_factory(),
                ledger=self.outcome_log,
                validator=channel,
                dispatcher=channel,
                lead_repo=self.lead_repo,
                outcome_log=self.outcome_log,
                **self.runner_options,
            )
            runner.start(criteria, template, pacing)
            with self._lock:
                self._runners[tenant_id] = runner
        finally:
            with self._lock:
                self._starting.discard(tenant_id)
        logger.info("prospecting started for tenant %s: %s", tenant_id, criteria.query)
        return runner

    def pause(self, tenant_id: str) -> bool:
        return self._require(tenant_id).pause()

    def resume(self, tenant_id: str) -> bool:
        return self._require(tenant_id).resume()

    def stop(self, tenant_id: str) -> bool:
        return self._require(tenant_id).stop()

    def stop_all(self):
        with self._lock:
            runners = list(self._runners.values())
        for r in runners:
            r.stop()

    def _require(self, tenant_id: str) -> CampaignRunner:
        runner = self.get(tenant_id)
        if runner is None:
            raise KeyError(tenant_id)
        return runner
