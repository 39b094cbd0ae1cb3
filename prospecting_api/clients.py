from __future__ import annotations

import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from . import config, store
from .errors import ChannelError, DirectoryError
from .models import Candidate, ValidationResult

logger = logging.getLogger(__name__)

PLACES_TEXT_SEARCH_URL = "https://maps.googleapis.com/maps/api/place/textsearch/json"
PLACES_DETAILS_URL = "https://maps.googleapis.com/maps/api/place/details/json"
MAX_RESULTS_PER_PAGE = 20


class PlacesDirectoryClient:
    """Google Places Text Search as a paged candidate directory.

    Results without a phone get a Details lookup (retried with backoff); a
    lookup that still fails leaves the candidate without a phone.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        details_spacing: Optional[float] = None,
        max_detail_attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = config.GOOGLE_MAPS_API_KEY if api_key is None else api_key
        self.timeout = config.REQUEST_TIMEOUT_SECONDS if timeout is None else timeout
        self.details_spacing = config.PLACES_DETAILS_SPACING_SECONDS if details_spacing is None else details_spacing
        self.max_detail_attempts = max_detail_attempts
        self.sleep = sleep
        self.session = session or requests.Session()

    def search(self, query: str, page_token: Optional[str] = None) -> Tuple[List[Candidate], Optional[str]]:
        if not self.api_key:
            raise DirectoryError("Google Maps API key not configured")

        params = {"query": query, "key": self.api_key}
        if page_token:
            params["pagetoken"] = page_token
        try:
            r = self.session.get(PLACES_TEXT_SEARCH_URL, params=params, timeout=self.timeout)
            r.raise_for_status()
            data = r.json()
        except (requests.RequestException, ValueError) as e:
            raise DirectoryError(f"Places search failed: {type(e).__name__}: {str(e)[:300]}") from e

        status = data.get("status")
        if status not in ("OK", "ZERO_RESULTS"):
            raise DirectoryError(f"Places API status {status}: {data.get('error_message') or 'unknown error'}")

        next_token = data.get("next_page_token") or None
        results = (data.get("results") or [])[:MAX_RESULTS_PER_PAGE]
        items: List[Candidate] = []
        looked_up = 0
        for place in results:
            pid = place.get("place_id")
            if not pid:
                continue
            phone = place.get("formatted_phone_number")
            if not phone:
                if looked_up and self.details_spacing > 0:
                    self.sleep(self.details_spacing)
                phone = self.lookup_phone(pid)
                looked_up += 1
            items.append(
                Candidate(
                    external_id=pid,
                    name=place.get("name") or "",
                    address=place.get("formatted_address") or "",
                    phone=phone or None,
                )
            )
        return items, next_token

    def lookup_phone(self, place_id: str) -> Optional[str]:
        cached = store.places_cache_get(place_id)
        if cached:
            return cached.get("formatted_phone_number")

        for attempt in range(1, self.max_detail_attempts + 1):
            if attempt > 1:
                self.sleep(2 ** (attempt - 1))
            try:
                r = self.session.get(
                    PLACES_DETAILS_URL,
                    params={"place_id": place_id, "fields": "name,formatted_phone_number", "key": self.api_key},
                    timeout=self.timeout,
                )
                r.raise_for_status()
                det = r.json()
            except (requests.RequestException, ValueError) as e:
                logger.warning("details lookup %s attempt %d/%d failed: %s", place_id, attempt, self.max_detail_attempts, e)
                continue

            if det.get("status") != "OK":
                store.places_cache_put(place_id, status="miss", payload={"status": det.get("status")})
                return None
            res = det.get("result") or {}
            phone = res.get("formatted_phone_number")
            store.places_cache_put(place_id, status="hit", payload={"formatted_phone_number": phone})
            return phone

        logger.warning("details lookup %s gave up after %d attempts", place_id, self.max_detail_attempts)
        return None


def normalize_phone(raw: str, country_code: Optional[str] = None) -> str:
    cc = config.DEFAULT_COUNTRY_CODE if country_code is None else country_code
    digits = re.sub(r"\D", "", raw or "")
    if not digits:
        return ""
    if cc and not digits.startswith(cc):
        digits = f"{cc}{digits}"
    return digits


class EvolutionChannelClient:
    """WhatsApp reachability checks and text dispatch through an Evolution API instance."""

    def __init__(
        self,
        instance_name: str,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.instance_name = instance_name
        self.base_url = (config.EVOLUTION_API_URL if base_url is None else base_url).rstrip("/")
        self.api_key = config.EVOLUTION_API_KEY if api_key is None else api_key
        self.timeout = config.REQUEST_TIMEOUT_SECONDS if timeout is None else timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        if not self.base_url:
            raise ChannelError("Evolution API URL not configured")
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            r = self.session.request(
                method,
                url,
                json=body,
                headers={"apikey": self.api_key, "Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ChannelError(f"{type(e).__name__}: {str(e)[:300]}") from e
        if r.status_code >= 400:
            raise ChannelError(f"Evolution API error {r.status_code}: {(r.text or '')[:300]}")
        try:
            return r.json()
        except ValueError as e:
            raise ChannelError("Evolution API returned non-JSON response") from e

    def connection_state(self) -> str:
        data = self._request("GET", f"instance/connectionState/{self.instance_name}")
        data = data if isinstance(data, dict) else {}
        inst = data.get("instance") or data
        return str(inst.get("state") or inst.get("status") or "unknown")

    def check(self, phone: str) -> ValidationResult:
        number = normalize_phone(phone)
        if not number:
            return ValidationResult(reachable=False)
        data = self._request("POST", f"chat/whatsappNumbers/{self.instance_name}", {"numbers": [number]})
        # [{"exists": true, "jid": "553198296801@s.whatsapp.net", "number": "553198296801"}]
        if isinstance(data, list) and data:
            first = data[0] or {}
            if first.get("exists") is True and first.get("jid"):
                return ValidationResult(reachable=True, channel_address=first["jid"])
        return ValidationResult(reachable=False)

    def send(self, channel_address: str, text: str) -> str:
        number = channel_address.split("@", 1)[0] if "@" in channel_address else channel_address
        data = self._request("POST", f"message/sendText/{self.instance_name}", {"number": number, "text": text})
        # {"key": {"remoteJid": "...@s.whatsapp.net", "fromMe": true, "id": "BAE594145F4C59B4"}, ...}
        key = (data or {}).get("key") if isinstance(data, dict) else None
        if not isinstance(key, dict) or not key.get("id"):
            raise ChannelError("malformed send acknowledgement (missing key.id)")
        return str(key["id"])
