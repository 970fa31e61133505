"""
Audit Gateway Client — HTTP client for the org audit gateway.

One gateway fronts every connected org and serves three things:
  - the org registry (ids and instance URLs)
  - the setup audit trail, in the vendor's native record shape
  - metadata definitions and dependency lookups

Vendor audit records look like:
    {"Id": "0Ym...", "Action": "changedFlow", "Display": "Changed Flow ...",
     "CreatedDate": "2026-01-05T10:00:00.000+0000",
     "CreatedBy": {"Id": "005...", "Name": "Ada"}, "Section": "Flows"}
and are mapped to RawEvent here.

Unlike optional feeds, the aggregation core needs to know when these calls
fail, so errors propagate (as AuditSourceError for the audit trail).
"""

from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

import httpx
import structlog

from auditpulse.exceptions import AuditSourceError
from auditpulse.schemas import Definition, RawEvent, ReferencingItem

logger = structlog.get_logger(__name__)

ORGS_PATH = "/api/v1/orgs"


def _org_path(org_id: str, *segments: str) -> str:
    """Gateway path under an org. Each segment is percent-encoded whole."""
    parts = [ORGS_PATH, quote(org_id, safe="")]
    parts.extend(quote(s, safe="") for s in segments)
    return "/".join(parts)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """Vendor timestamps use +0000 offsets; normalize before parsing."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).replace("Z", "+00:00")
        if len(text) > 5 and text[-5] in "+-" and text[-3] != ":":
            text = f"{text[:-2]}:{text[-2:]}"
        parsed = datetime.fromisoformat(text)
    # No offset means UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_audit_record(raw: dict) -> RawEvent:
    """Map a vendor audit record to a RawEvent."""
    created_by = raw.get("CreatedBy") or {}
    occurred_at = _parse_timestamp(raw.get("CreatedDate"))
    if occurred_at is None:
        raise ValueError("audit record has no CreatedDate")
    return RawEvent(
        id=str(raw["Id"]),
        action_code=raw.get("Action", ""),
        display_text=raw.get("Display") or "",
        actor_id=created_by.get("Id") or raw.get("CreatedById") or "unknown",
        actor_name=created_by.get("Name") or "",
        occurred_at=occurred_at,
        section_hint=raw.get("Section") or "",
    )


def _extract_records(body: dict | list) -> list[dict]:
    """Accept a bare list, {"records": [...]} or {"data": {"records": [...]}}."""
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        data = body.get("data")
        if isinstance(data, dict) and isinstance(data.get("records"), list):
            return data["records"]
        if isinstance(body.get("records"), list):
            return body["records"]
    return []


def _parse_definition(raw: dict, fallback_name: str) -> Definition:
    version = raw.get("version")
    return Definition(
        name=raw.get("name") or fallback_name,
        version=int(version) if version is not None else None,
        body=raw.get("body"),
        last_modified=_parse_timestamp(raw.get("last_modified")),
    )


class AuditGatewayClient:
    """
    HTTP client implementing AuditSource, OrgDirectory and MetadataService.

    Usage:
        client = AuditGatewayClient(base_url=settings.audit_source_url)
        orgs = await client.list_org_ids()
        events = await client.fetch_since(orgs[0], cursor)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._instance_urls: dict[str, str] = {}

    def _client(self) -> httpx.AsyncClient:
        headers = {}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers=headers,
            transport=self._transport,
        )

    async def _get(self, path: str, params: Optional[dict] = None) -> httpx.Response:
        async with self._client() as client:
            return await client.get(f"{self.base_url}{path}", params=params)

    # ── Org Directory ─────────────────────────────────────────────────

    async def list_org_ids(self) -> list[str]:
        resp = await self._get(ORGS_PATH)
        resp.raise_for_status()
        body = resp.json()
        orgs = body.get("orgs", []) if isinstance(body, dict) else body
        ids = []
        for org in orgs:
            org_id = org.get("id")
            if not org_id:
                continue
            ids.append(org_id)
            if org.get("instance_url"):
                self._instance_urls[org_id] = org["instance_url"]
        logger.debug("orgs_listed", count=len(ids))
        return ids

    async def instance_url(self, org_id: str) -> str:
        if org_id in self._instance_urls:
            return self._instance_urls[org_id]
        resp = await self._get(_org_path(org_id))
        resp.raise_for_status()
        url = resp.json().get("instance_url", "")
        if url:
            self._instance_urls[org_id] = url
        return url

    # ── Audit Source ──────────────────────────────────────────────────

    async def fetch_since(self, org_id: str, cursor: datetime) -> list[RawEvent]:
        events = await self._fetch_audit(org_id, {"since": cursor.isoformat()})
        # The gateway filters with >=; the cursor itself was already routed
        return [e for e in events if e.occurred_at > cursor]

    async def fetch_window(self, org_id: str, hours: int) -> list[RawEvent]:
        return await self._fetch_audit(org_id, {"hours": hours})

    async def _fetch_audit(self, org_id: str, params: dict) -> list[RawEvent]:
        try:
            resp = await self._get(_org_path(org_id, "audit-trail"), params=params)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise AuditSourceError(
                f"Audit trail request failed: {e}", org_id=org_id, cause=e
            ) from e

        events = []
        for record in _extract_records(resp.json()):
            try:
                events.append(parse_audit_record(record))
            except (KeyError, ValueError) as parse_err:
                logger.debug(
                    "audit_record_parse_skip",
                    org_id=org_id,
                    record_id=record.get("Id", "?"),
                    error=str(parse_err),
                )
        events.sort(key=lambda e: e.occurred_at)
        logger.info("audit_records_fetched", org_id=org_id, total=len(events), **params)
        return events

    # ── Metadata Service ──────────────────────────────────────────────

    async def get_current(
        self, org_id: str, item_name: str, metadata_type: str = ""
    ) -> Definition:
        resp = await self._get(
            _org_path(org_id, "metadata", item_name),
            params={"type": metadata_type} if metadata_type else None,
        )
        resp.raise_for_status()
        return _parse_definition(resp.json(), item_name)

    async def get_previous(
        self,
        org_id: str,
        item_name: str,
        before_time: datetime,
        metadata_type: str = "",
    ) -> Optional[Definition]:
        params = {"before": before_time.isoformat()}
        if metadata_type:
            params["type"] = metadata_type
        resp = await self._get(
            _org_path(org_id, "metadata", item_name, "history"), params=params
        )
        if resp.status_code == 404:
            return None  # Newly created item: no earlier version
        resp.raise_for_status()
        return _parse_definition(resp.json(), item_name)

    async def find_referencing_parents(
        self, org_id: str, item_name: str
    ) -> list[ReferencingItem]:
        resp = await self._get(_org_path(org_id, "metadata", item_name, "parents"))
        resp.raise_for_status()
        body = resp.json()
        parents = body.get("parents", []) if isinstance(body, dict) else body
        return [
            ReferencingItem(name=p["name"], item_type=p.get("type", ""))
            for p in parents
            if p.get("name")
        ]
