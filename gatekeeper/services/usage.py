"""Tenant usage counting across aggregate procedures and direct queries."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Callable, Sequence

import httpx
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.config import GatekeeperSettings, ProcedureSettings, get_settings
from gatekeeper.db.models.core import Client, ScheduledPost
from gatekeeper.domain.models import UsageCounts, UsageSource
from gatekeeper.logging import logger
from gatekeeper.services.exceptions import ProcedureError
from gatekeeper.utils.datetime import month_window, utc_now
from gatekeeper.utils.retry import retry_async

CLIENTS_FIELD = "clients_count"
POSTS_FIELD = "posts_count"


def coerce_count(value: Any) -> int:
    """Coerce a loosely typed counter to ``int``; anything unusable counts as zero."""

    if value is None or isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0
    if not math.isfinite(number):
        return 0
    return int(number)


def _as_mapping(value: Any) -> Mapping[str, Any] | None:
    if isinstance(value, Mapping):
        return value
    row_mapping = getattr(value, "_mapping", None)
    if isinstance(row_mapping, Mapping):
        return row_mapping
    if isinstance(value, (list, tuple)) and value:
        return _as_mapping(value[0])
    return None


def parse_usage_response(raw: Any, nested_keys: Sequence[str] = ()) -> UsageCounts | None:
    """Normalize an aggregate procedure response into ``UsageCounts``.

    Accepted shapes:

    * a single object ``{"clients_count": 3, "posts_count": 7}`` (also as JSON text);
    * a collection of such objects, of which only the first is read;
    * an object nesting the counters under the procedure name, e.g.
      ``{"get_organization_usage_counts": {...}}``.

    Missing or non-numeric counters become zero. ``None`` is returned when the
    response carries no object at all (``null``, an empty collection, a bare
    number or undecodable text), which callers treat as "no signal".
    """

    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None

    payload = _as_mapping(raw)
    if payload is None:
        return None

    clients = payload.get(CLIENTS_FIELD)
    posts = payload.get(POSTS_FIELD)
    if clients is None or posts is None:
        for key in nested_keys:
            nested = _as_mapping(payload.get(key))
            if nested is not None:
                clients = nested.get(CLIENTS_FIELD)
                posts = nested.get(POSTS_FIELD)
                break

    return UsageCounts(
        clients_count=coerce_count(clients),
        posts_this_month_count=coerce_count(posts),
    )


class ProcedureClient:
    """Call database procedures exposed over a PostgREST-style ``/rpc`` endpoint."""

    def __init__(self, http_client: httpx.AsyncClient, settings: ProcedureSettings | None = None) -> None:
        self._client = http_client
        self._settings = settings or ProcedureSettings()

    @property
    def configured(self) -> bool:
        return self._settings.base_url is not None

    async def call(
        self,
        name: str,
        params: Mapping[str, Any] | None = None,
        *,
        access_token: str | None = None,
    ) -> Any:
        if self._settings.base_url is None:
            raise ProcedureError("Procedure endpoint is not configured.")

        url = f"{str(self._settings.base_url).rstrip('/')}/rest/v1/rpc/{name}"
        headers = self._headers(access_token)

        async def _request() -> httpx.Response:
            response = await self._client.post(
                url,
                json=dict(params or {}),
                headers=headers,
                timeout=self._settings.request_timeout_seconds,
            )
            response.raise_for_status()
            return response

        try:
            response = await retry_async(
                _request,
                max_attempts=self._settings.max_attempts,
                base_delay=0.2,
                retry_on=(httpx.RequestError,),
                logger=logger,
                operation_name=f"rpc_{name}",
            )
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text[:500]
            raise ProcedureError(
                f"Procedure {name} failed ({exc.response.status_code}): {detail}"
            ) from exc
        except httpx.RequestError as exc:
            raise ProcedureError(f"Procedure {name} unreachable: {exc}") from exc

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    def _headers(self, access_token: str | None) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        api_key = self._settings.api_key.get_secret_value() if self._settings.api_key else None
        if api_key:
            headers["apikey"] = api_key
        bearer = access_token or api_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers


class UsageCounter:
    """Compute tenant usage, cascading through three sources.

    1. the tenant-scoped aggregate procedure (scoped by the caller's token);
    2. the global aggregate procedure with an explicit tenant parameter;
    3. direct ``COUNT`` queries, which are authoritative.

    A tier is skipped when it fails, answers with no parseable object, or
    answers zero/zero (unless ``quota.trust_zero_aggregates`` is set).
    """

    def __init__(
        self,
        session: AsyncSession,
        procedures: ProcedureClient | None = None,
        settings: GatekeeperSettings | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session = session
        self.procedures = procedures
        self.settings = settings or get_settings()
        self._clock = clock

    async def compute_usage(self, tenant_id: str, *, access_token: str | None = None) -> UsageCounts:
        proc_cfg = self.settings.procedures

        counts = await self._from_procedure(
            proc_cfg.tenant_usage_procedure,
            None,
            source="tenant_procedure",
            tenant_id=tenant_id,
            access_token=access_token,
        )
        if self._usable(counts):
            return counts

        counts = await self._from_procedure(
            proc_cfg.global_usage_procedure,
            {proc_cfg.tenant_parameter: tenant_id},
            source="global_procedure",
            tenant_id=tenant_id,
        )
        if self._usable(counts):
            return counts

        return await self.count_directly(tenant_id)

    async def count_directly(self, tenant_id: str) -> UsageCounts:
        start, end = month_window(self._clock())
        clients_stmt = (
            select(func.count()).select_from(Client).where(Client.tenant_id == tenant_id)
        )
        posts_stmt = (
            select(func.count())
            .select_from(ScheduledPost)
            .where(
                ScheduledPost.tenant_id == tenant_id,
                ScheduledPost.scheduled_date >= start,
                ScheduledPost.scheduled_date <= end,
                ScheduledPost.grandfathered.is_(False),
            )
        )
        clients = (await self.session.execute(clients_stmt)).scalar_one()
        posts = (await self.session.execute(posts_stmt)).scalar_one()
        logger.debug("usage_direct_count", tenant_id=tenant_id, clients=clients, posts=posts)
        return UsageCounts(
            clients_count=coerce_count(clients),
            posts_this_month_count=coerce_count(posts),
            source="direct_count",
        )

    # Internal helpers -------------------------------------------------

    def _usable(self, counts: UsageCounts | None) -> bool:
        if counts is None:
            return False
        return self.settings.quota.trust_zero_aggregates or not counts.is_empty

    async def _from_procedure(
        self,
        name: str,
        params: Mapping[str, Any] | None,
        *,
        source: UsageSource,
        tenant_id: str,
        access_token: str | None = None,
    ) -> UsageCounts | None:
        if self.procedures is None:
            return None
        try:
            raw = await self.procedures.call(name, params, access_token=access_token)
        except ProcedureError as exc:
            logger.warning("usage_tier_failed", tier=source, tenant_id=tenant_id, error=str(exc))
            return None

        proc_cfg = self.settings.procedures
        counts = parse_usage_response(
            raw, nested_keys=(proc_cfg.tenant_usage_procedure, proc_cfg.global_usage_procedure)
        )
        if counts is None:
            logger.warning("usage_tier_unparseable", tier=source, tenant_id=tenant_id)
            return None
        return counts.model_copy(update={"source": source})


__all__ = [
    "ProcedureClient",
    "UsageCounter",
    "coerce_count",
    "parse_usage_response",
]
