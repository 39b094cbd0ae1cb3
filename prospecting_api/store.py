from __future__ import annotations

import json
import sqlite3
import time
import uuid
from datetime import datetime, time as dtime, timezone
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from . import config
from .models import Candidate, OutcomeRecord


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def db() -> sqlite3.Connection:
    conn = sqlite3.connect(config.DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


def init_db():
    conn = db()
    cur = conn.cursor()
    cur.executescript(
        """
        create table if not exists campaign_runs (
          id text primary key,
          tenant_id text,
          status text,
          criteria_json text,
          progress_json text,
          error text,
          created_at text,
          updated_at text
        );

        create table if not exists prospecting_logs (
          id text primary key,
          tenant_id text not null,
          campaign_run_id text,
          external_id text not null,
          name text,
          address text,
          phone text,
          channel_valid integer,
          channel_address text,
          message_sent integer,
          lead_saved integer,
          lead_id text,
          category text,
          location text,
          notes text,
          created_at text,
          created_epoch real
        );

        create unique index if not exists ux_prospecting_logs_tenant_ext
          on prospecting_logs (tenant_id, external_id);
        create index if not exists ix_prospecting_logs_sent
          on prospecting_logs (tenant_id, message_sent, created_epoch);

        create table if not exists leads (
          id text primary key,
          tenant_id text,
          external_id text,
          name text,
          phone text,
          channel_address text,
          address text,
          source text,
          pipeline_stage text,
          notes text,
          created_at text,
          updated_at text
        );

        create table if not exists events (
          id text primary key,
          campaign_run_id text,
          tenant_id text,
          time text,
          type text,
          message text,
          payload_json text
        );

        create table if not exists channel_instances (
          tenant_id text primary key,
          instance_name text,
          status text,
          updated_at text
        );

        create table if not exists places_cache (
          place_id text primary key,
          status text,
          phone text,
          raw_json text,
          fetched_at text
        );
        """
    )

    def _ensure_column(table: str, column: str, coltype: str):
        cols = [r["name"] for r in conn.execute(f"pragma table_info({table})").fetchall()]
        if column in cols:
            return
        conn.execute(f"alter table {table} add column {column} {coltype}")

    # Lightweight migration for databases created before run attribution existed
    _ensure_column("prospecting_logs", "campaign_run_id", "text")

    conn.commit()
    conn.close()


# ---- events ----


def emit_event(campaign_run_id: str, tenant_id: str, type_: str, message: str, payload: Optional[Dict[str, Any]] = None):
    conn = db()
    eid = f"evt_{uuid.uuid4().hex}"
    conn.execute(
        "insert into events (id, campaign_run_id, tenant_id, time, type, message, payload_json) values (?,?,?,?,?,?,?)",
        (eid, campaign_run_id, tenant_id, now_iso(), type_, message, json.dumps(payload or {})),
    )
    conn.commit()
    conn.close()


def _event_row(r: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": r["id"],
        "campaign_run_id": r["campaign_run_id"],
        "tenant_id": r["tenant_id"],
        "time": r["time"],
        "type": r["type"],
        "message": r["message"],
        "payload": json.loads(r["payload_json"] or "{}"),
    }


def list_events(campaign_run_id: str) -> List[Dict[str, Any]]:
    conn = db()
    rows = conn.execute(
        "select * from events where campaign_run_id=? order by time asc, rowid asc", (campaign_run_id,)
    ).fetchall()
    conn.close()
    return [_event_row(r) for r in rows]


# ---- campaign runs ----


def create_campaign_run(tenant_id: str, criteria: Dict[str, Any]) -> str:
    cid = f"cr_{uuid.uuid4().hex}"
    created = now_iso()
    conn = db()
    conn.execute(
        "insert into campaign_runs (id,tenant_id,status,criteria_json,progress_json,error,created_at,updated_at) values (?,?,?,?,?,?,?,?)",
        (cid, tenant_id, "running", json.dumps(criteria), json.dumps({}), None, created, created),
    )
    conn.commit()
    conn.close()
    return cid


def update_campaign_run(
    campaign_run_id: str,
    *,
    status: Optional[str] = None,
    progress: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
):
    conn = db()
    row = conn.execute("select * from campaign_runs where id=?", (campaign_run_id,)).fetchone()
    if not row:
        conn.close()
        raise KeyError(campaign_run_id)
    new_status = status or row["status"]
    new_progress = progress if progress is not None else json.loads(row["progress_json"] or "{}")
    new_error = error if error is not None else row["error"]
    conn.execute(
        "update campaign_runs set status=?, progress_json=?, error=?, updated_at=? where id=?",
        (new_status, json.dumps(new_progress), new_error, now_iso(), campaign_run_id),
    )
    conn.commit()
    conn.close()


def _run_row(r: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": r["id"],
        "tenant_id": r["tenant_id"],
        "status": r["status"],
        "criteria": json.loads(r["criteria_json"] or "{}"),
        "progress": json.loads(r["progress_json"] or "{}"),
        "error": r["error"],
        "created_at": r["created_at"],
        "updated_at": r["updated_at"],
    }


def get_campaign_run(campaign_run_id: str) -> Optional[Dict[str, Any]]:
    conn = db()
    row = conn.execute("select * from campaign_runs where id=?", (campaign_run_id,)).fetchone()
    conn.close()
    return _run_row(row) if row else None


def list_campaign_runs(
    tenant_id: str, limit: int = 50, cursor: Optional[Tuple[str, str]] = None
) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    """Newest first. Cursor is the (created_at, id) of the last item already seen."""
    where = "where tenant_id=?"
    params: List[Any] = [tenant_id]
    if cursor:
        cur_created, cur_id = cursor
        # strictly older than cursor tuple (created_at desc, id desc)
        where += " and (created_at < ? or (created_at = ? and id < ?))"
        params.extend([cur_created, cur_created, cur_id])

    conn = db()
    rows = conn.execute(
        f"select * from campaign_runs {where} order by created_at desc, id desc limit ?",
        tuple(params + [limit + 1]),
    ).fetchall()
    conn.close()

    sliced = rows[:limit]
    next_cursor = None
    if len(rows) > limit and sliced:
        last = sliced[-1]
        next_cursor = f"{last['created_at']}|{last['id']}"
    return [_run_row(r) for r in sliced], next_cursor


# ---- channel instances ----


def set_channel_instance(tenant_id: str, instance_name: str, status: Optional[str] = None):
    conn = db()
    conn.execute(
        """
        insert into channel_instances (tenant_id, instance_name, status, updated_at) values (?,?,?,?)
        on conflict(tenant_id) do update set
          instance_name=excluded.instance_name,
          status=excluded.status,
          updated_at=excluded.updated_at
        """,
        (tenant_id, instance_name, status, now_iso()),
    )
    conn.commit()
    conn.close()


def get_channel_instance(tenant_id: str) -> Optional[Dict[str, Any]]:
    conn = db()
    row = conn.execute("select * from channel_instances where tenant_id=?", (tenant_id,)).fetchone()
    conn.close()
    if not row:
        return None
    return {
        "tenant_id": row["tenant_id"],
        "instance_name": row["instance_name"],
        "status": row["status"],
        "updated_at": row["updated_at"],
    }


def update_channel_status(tenant_id: str, status: str):
    conn = db()
    conn.execute(
        "update channel_instances set status=?, updated_at=? where tenant_id=?",
        (status, now_iso(), tenant_id),
    )
    conn.commit()
    conn.close()


# ---- places cache ----


def places_cache_get(place_id: str, ttl_days: Optional[int] = None) -> Optional[Dict[str, Any]]:
    ttl = config.PLACES_CACHE_TTL_DAYS if ttl_days is None else ttl_days
    conn = db()
    row = conn.execute("select * from places_cache where place_id=?", (place_id,)).fetchone()
    conn.close()
    if not row:
        return None

    fetched_at = row["fetched_at"]
    if fetched_at:
        try:
            dt = datetime.fromisoformat(fetched_at.replace("Z", "+00:00"))
            age_days = (datetime.now(timezone.utc) - dt).total_seconds() / 86400.0
            if age_days > ttl:
                return None
        except ValueError:
            # if parsing fails, treat as stale
            return None

    if row["status"] != "hit":
        return None
    return {"place_id": row["place_id"], "formatted_phone_number": row["phone"]}


def places_cache_put(place_id: str, *, status: str, payload: Dict[str, Any]):
    conn = db()
    conn.execute(
        """
        insert into places_cache (place_id,status,phone,raw_json,fetched_at) values (?,?,?,?,?)
        on conflict(place_id) do update set
          status=excluded.status,
          phone=excluded.phone,
          raw_json=excluded.raw_json,
          fetched_at=excluded.fetched_at
        """,
        (place_id, status, payload.get("formatted_phone_number"), json.dumps(payload)[:200_000], now_iso()),
    )
    conn.commit()
    conn.close()


# ---- quota day window ----


def day_start_epoch(now_epoch: Optional[float] = None, tz_name: Optional[str] = None) -> float:
    """Epoch seconds of local midnight (tenant reference clock) for the day containing now_epoch."""
    tz = ZoneInfo(tz_name or config.TENANT_TIMEZONE)
    now_local = datetime.fromtimestamp(time.time() if now_epoch is None else now_epoch, tz)
    midnight = datetime.combine(now_local.date(), dtime(0, 0), tzinfo=tz)
    return midnight.timestamp()


# ---- outcome log (also the dedup ledger) ----


def _outcome_row(r: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": r["id"],
        "tenant_id": r["tenant_id"],
        "campaign_run_id": r["campaign_run_id"],
        "external_id": r["external_id"],
        "name": r["name"],
        "address": r["address"],
        "phone": r["phone"],
        "channel_valid": bool(r["channel_valid"]),
        "channel_address": r["channel_address"],
        "message_sent": bool(r["message_sent"]),
        "lead_saved": bool(r["lead_saved"]),
        "lead_id": r["lead_id"],
        "category": r["category"],
        "location": r["location"],
        "notes": r["notes"],
        "created_at": r["created_at"],
    }


class OutcomeLog:
    """Append-only prospecting log. One row per (tenant, external id).

    The same table answers the dedup question and the daily quota; nothing
    else keeps a counter.
    """

    def has_been_processed(self, tenant_id: str, external_id: str) -> bool:
        # sqlite errors propagate: an unanswerable lookup must not admit the candidate
        conn = db()
        try:
            row = conn.execute(
                "select 1 from prospecting_logs where tenant_id=? and external_id=? limit 1",
                (tenant_id, external_id),
            ).fetchone()
        finally:
            conn.close()
        return row is not None

    def append(self, record: OutcomeRecord) -> str:
        oid = f"pl_{uuid.uuid4().hex}"
        conn = db()
        try:
            conn.execute(
                """
                insert into prospecting_logs (id,tenant_id,campaign_run_id,external_id,name,address,phone,channel_valid,channel_address,
                  message_sent,lead_saved,lead_id,category,location,notes,created_at,created_epoch)
                values (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    oid,
                    record.tenant_id,
                    record.campaign_run_id,
                    record.external_id,
                    record.name,
                    record.address,
                    record.phone,
                    int(record.channel_valid),
                    record.channel_address,
                    int(record.message_sent),
                    int(record.lead_saved),
                    record.lead_id,
                    record.category,
                    record.location,
                    record.notes,
                    record.created_at,
                    record.created_epoch,
                ),
            )
            conn.commit()
        finally:
            conn.close()
        return oid

    def count_sent_since(self, tenant_id: str, since_epoch: float) -> int:
        conn = db()
        row = conn.execute(
            "select count(*) as c from prospecting_logs where tenant_id=? and message_sent=1 and created_epoch >= ?",
            (tenant_id, since_epoch),
        ).fetchone()
        conn.close()
        return int(row["c"])

    def sent_today(self, tenant_id: str, now_epoch: Optional[float] = None) -> int:
        return self.count_sent_since(tenant_id, day_start_epoch(now_epoch))

    def query(
        self,
        tenant_id: str,
        *,
        category: Optional[str] = None,
        location: Optional[str] = None,
        channel_valid: Optional[bool] = None,
        message_sent: Optional[bool] = None,
        lead_saved: Optional[bool] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[Dict[str, Any]], int]:
        where = "where tenant_id=?"
        params: List[Any] = [tenant_id]
        if category:
            where += " and lower(category) like ?"
            params.append(f"%{category.lower()}%")
        if location:
            where += " and lower(location) like ?"
            params.append(f"%{location.lower()}%")
        for col, val in (("channel_valid", channel_valid), ("message_sent", message_sent), ("lead_saved", lead_saved)):
            if val is not None:
                where += f" and {col}=?"
                params.append(int(val))
        if date_from:
            where += " and created_at >= ?"
            params.append(date_from)
        if date_to:
            where += " and created_at <= ?"
            params.append(date_to)

        offset = (max(1, page) - 1) * limit
        conn = db()
        count = conn.execute(f"select count(*) as c from prospecting_logs {where}", tuple(params)).fetchone()["c"]
        rows = conn.execute(
            f"select * from prospecting_logs {where} order by created_epoch desc, rowid desc limit ? offset ?",
            tuple(params + [limit, offset]),
        ).fetchall()
        conn.close()
        return [_outcome_row(r) for r in rows], int(count)

    def stats(self, tenant_id: str) -> Dict[str, Any]:
        conn = db()
        row = conn.execute(
            """
            select count(*) as total,
                   coalesce(sum(channel_valid), 0) as valid,
                   coalesce(sum(message_sent), 0) as sent,
                   coalesce(sum(lead_saved), 0) as saved
            from prospecting_logs where tenant_id=?
            """,
            (tenant_id,),
        ).fetchone()
        conn.close()
        total = int(row["total"])
        saved = int(row["saved"])
        rate = (saved / total) * 100 if total else 0.0
        return {
            "total_prospected": total,
            "channel_valid": int(row["valid"]),
            "messages_sent": int(row["sent"]),
            "leads_saved": saved,
            "conversion_rate": round(rate, 2),
        }

    def dispatch_history(self, tenant_id: str, days: int = 7) -> List[Dict[str, Any]]:
        since = day_start_epoch() - (max(1, days) - 1) * 86400
        conn = db()
        rows = conn.execute(
            "select * from prospecting_logs where tenant_id=? and message_sent=1 and created_epoch >= ? order by created_epoch desc",
            (tenant_id, since),
        ).fetchall()
        conn.close()
        return [_outcome_row(r) for r in rows]


class LeadRepository:
    """CRM client records created from qualified prospects."""

    def save(self, tenant_id: str, candidate: Candidate, channel_address: Optional[str], notes: str = "") -> str:
        lid = f"ld_{uuid.uuid4().hex}"
        created = now_iso()
        conn = db()
        try:
            conn.execute(
                "insert into leads (id,tenant_id,external_id,name,phone,channel_address,address,source,pipeline_stage,notes,created_at,updated_at) values (?,?,?,?,?,?,?,?,?,?,?,?)",
                (
                    lid,
                    tenant_id,
                    candidate.external_id,
                    candidate.name,
                    candidate.phone,
                    channel_address,
                    candidate.address,
                    "prospecting",
                    "prospecting",
                    notes,
                    created,
                    created,
                ),
            )
            conn.commit()
        finally:
            conn.close()
        return lid

    def get(self, lead_id: str) -> Optional[Dict[str, Any]]:
        conn = db()
        row = conn.execute("select * from leads where id=?", (lead_id,)).fetchone()
        conn.close()
        return dict(row) if row else None
