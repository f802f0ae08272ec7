"""Usage counting: response parsing, tier cascade and direct counts."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest
from pydantic import SecretStr

from conftest import FIXED_NOW, make_tenant
from gatekeeper.config import GatekeeperSettings, ProcedureSettings, QuotaSettings
from gatekeeper.db.models.core import Client, ScheduledPost
from gatekeeper.domain.models import UsageCounts
from gatekeeper.services.exceptions import ProcedureError
from gatekeeper.services.usage import ProcedureClient, UsageCounter, coerce_count, parse_usage_response

NESTED = ("get_my_organization_usage_counts", "get_organization_usage_counts")


class FakeProcedures:
    def __init__(self, responses: dict[str, object]) -> None:
        self.responses = responses
        self.calls: list[tuple[str, dict | None, str | None]] = []

    async def call(self, name, params=None, *, access_token=None):
        self.calls.append((name, params, access_token))
        response = self.responses.get(name)
        if isinstance(response, Exception):
            raise response
        return response


# Parsing ---------------------------------------------------------------


def test_parse_plain_object():
    counts = parse_usage_response({"clients_count": 3, "posts_count": 12})
    assert (counts.clients_count, counts.posts_this_month_count) == (3, 12)


def test_parse_single_element_collection():
    counts = parse_usage_response([{"clients_count": "4", "posts_count": 7.0}])
    assert (counts.clients_count, counts.posts_this_month_count) == (4, 7)


def test_parse_nested_under_procedure_name():
    raw = [{"get_organization_usage_counts": {"clients_count": 2, "posts_count": 5}}]
    counts = parse_usage_response(raw, nested_keys=NESTED)
    assert (counts.clients_count, counts.posts_this_month_count) == (2, 5)


def test_parse_json_text():
    counts = parse_usage_response(json.dumps({"clients_count": 1, "posts_count": 9}))
    assert (counts.clients_count, counts.posts_this_month_count) == (1, 9)


def test_parse_coerces_garbage_fields_to_zero():
    counts = parse_usage_response({"clients_count": "many", "posts_count": None})
    assert (counts.clients_count, counts.posts_this_month_count) == (0, 0)


@pytest.mark.parametrize("raw", [None, [], (), 42, "not json", b"\x00"])
def test_parse_without_object_gives_no_signal(raw):
    assert parse_usage_response(raw) is None


@pytest.mark.parametrize(
    "value,expected",
    [
        (5, 5),
        ("8", 8),
        (2.9, 2),
        (None, 0),
        (True, 0),
        ("x", 0),
        (float("nan"), 0),
        (float("inf"), 0),
        (10**400, 0),
        ("1" + "0" * 400, 0),
    ],
)
def test_coerce_count(value, expected):
    assert coerce_count(value) == expected


# Cascade ---------------------------------------------------------------


@pytest.mark.asyncio
async def test_tenant_procedure_answer_is_used(session, settings):
    procedures = FakeProcedures({NESTED[0]: [{"clients_count": 2, "posts_count": 3}]})
    counter = UsageCounter(session, procedures, settings)

    counts = await counter.compute_usage("t-1", access_token="jwt")

    assert (counts.clients_count, counts.posts_this_month_count, counts.source) == (2, 3, "tenant_procedure")
    assert procedures.calls == [(NESTED[0], None, "jwt")]
    assert session.statements == []


@pytest.mark.asyncio
async def test_zero_answer_cascades_to_global_procedure(session, settings):
    procedures = FakeProcedures(
        {
            NESTED[0]: {"clients_count": 0, "posts_count": 0},
            NESTED[1]: {"clients_count": 6, "posts_count": 0},
        }
    )
    counter = UsageCounter(session, procedures, settings)

    counts = await counter.compute_usage("t-1")

    assert counts.source == "global_procedure"
    assert counts.clients_count == 6
    assert procedures.calls[1] == (NESTED[1], {"p_organization_id": "t-1"}, None)


@pytest.mark.asyncio
async def test_two_zero_answers_fall_through_to_direct_count(session, settings):
    tenant = await make_tenant(session)
    session.add(Client(tenant_id=tenant.id, name="Bakery"))
    await session.flush()
    procedures = FakeProcedures(
        {
            NESTED[0]: {"clients_count": 0, "posts_count": 0},
            NESTED[1]: [{"clients_count": 0, "posts_count": 0}],
        }
    )
    counter = UsageCounter(session, procedures, settings, clock=lambda: FIXED_NOW)

    counts = await counter.compute_usage(tenant.id)

    assert counts.source == "direct_count"
    assert counts.clients_count == 1
    assert len(procedures.calls) == 2


@pytest.mark.asyncio
async def test_failed_and_unparseable_tiers_are_skipped(session, settings):
    tenant = await make_tenant(session)
    procedures = FakeProcedures({NESTED[0]: ProcedureError("permission denied"), NESTED[1]: 17})
    counter = UsageCounter(session, procedures, settings)

    counts = await counter.compute_usage(tenant.id)

    assert counts.source == "direct_count"
    assert counts.is_empty


@pytest.mark.asyncio
async def test_oversized_counter_does_not_break_the_cascade(session, settings):
    procedures = FakeProcedures(
        {
            NESTED[0]: {"clients_count": 10**400, "posts_count": 0},
            NESTED[1]: {"clients_count": 2, "posts_count": 5},
        }
    )
    counter = UsageCounter(session, procedures, settings)

    counts = await counter.compute_usage("t-1")

    assert counts.source == "global_procedure"
    assert (counts.clients_count, counts.posts_this_month_count) == (2, 5)


@pytest.mark.asyncio
async def test_trusting_zero_aggregates_stops_the_cascade(session):
    settings = GatekeeperSettings(_env_file=None, quota=QuotaSettings(trust_zero_aggregates=True))
    procedures = FakeProcedures({NESTED[0]: {"clients_count": 0, "posts_count": 0}})
    counter = UsageCounter(session, procedures, settings)

    counts = await counter.compute_usage("t-1")

    assert counts.source == "tenant_procedure"
    assert len(procedures.calls) == 1


@pytest.mark.asyncio
async def test_without_procedures_counts_directly(session, settings):
    tenant = await make_tenant(session)
    counter = UsageCounter(session, None, settings)

    counts = await counter.compute_usage(tenant.id)

    assert counts == UsageCounts(source="direct_count")


@pytest.mark.asyncio
async def test_direct_count_uses_utc_month_and_skips_grandfathered(session, settings):
    tenant = await make_tenant(session)
    other = await make_tenant(session, "Other")
    client = Client(tenant_id=tenant.id, name="Bakery")
    foreign_client = Client(tenant_id=other.id, name="Gym")
    session.add_all([client, foreign_client, Client(tenant_id=tenant.id, name="Florist")])
    await session.flush()

    def post(when: datetime, *, tenant_id=tenant.id, client_id=client.id, grandfathered=False):
        return ScheduledPost(
            tenant_id=tenant_id,
            client_id=client_id,
            scheduled_date=when,
            grandfathered=grandfathered,
        )

    session.add_all(
        [
            post(datetime(2024, 5, 1, 0, 0, tzinfo=timezone.utc)),
            post(datetime(2024, 5, 20, 9, 30, tzinfo=timezone.utc)),
            post(datetime(2024, 5, 31, 23, 59, 59, tzinfo=timezone.utc)),
            post(datetime(2024, 4, 30, 23, 59, 59, tzinfo=timezone.utc)),
            post(datetime(2024, 6, 1, 0, 0, tzinfo=timezone.utc)),
            post(datetime(2024, 5, 10, tzinfo=timezone.utc), grandfathered=True),
            post(datetime(2024, 5, 10, tzinfo=timezone.utc), tenant_id=other.id, client_id=foreign_client.id),
        ]
    )
    await session.flush()
    counter = UsageCounter(session, None, settings, clock=lambda: FIXED_NOW)

    counts = await counter.count_directly(tenant.id)

    assert counts.clients_count == 2
    assert counts.posts_this_month_count == 3


# HTTP procedure client -------------------------------------------------


def _procedure_settings(**overrides) -> ProcedureSettings:
    values = {"base_url": "https://db.example.com", "api_key": SecretStr("anon-key"), "max_attempts": 2}
    values.update(overrides)
    return ProcedureSettings(**values)


@pytest.mark.asyncio
async def test_procedure_client_posts_to_rpc_endpoint():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"clients_count": 1, "posts_count": 2}])

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        client = ProcedureClient(http, _procedure_settings())
        result = await client.call("get_organization_usage_counts", {"p_organization_id": "t-1"})

    assert result == [{"clients_count": 1, "posts_count": 2}]
    request = seen[0]
    assert request.url == "https://db.example.com/rest/v1/rpc/get_organization_usage_counts"
    assert json.loads(request.content) == {"p_organization_id": "t-1"}
    assert request.headers["apikey"] == "anon-key"
    assert request.headers["Authorization"] == "Bearer anon-key"


@pytest.mark.asyncio
async def test_procedure_client_prefers_caller_token():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"clients_count": 0, "posts_count": 0})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        client = ProcedureClient(http, _procedure_settings())
        await client.call("get_my_organization_usage_counts", access_token="user-jwt")

    assert seen[0].headers["Authorization"] == "Bearer user-jwt"


@pytest.mark.asyncio
async def test_procedure_client_retries_connection_errors(monkeypatch):
    async def _noop_sleep(delay):
        return None

    monkeypatch.setattr("gatekeeper.utils.retry.asyncio.sleep", _noop_sleep)
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"clients_count": 3, "posts_count": 4})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        client = ProcedureClient(http, _procedure_settings())
        result = await client.call("get_organization_usage_counts")

    assert attempts["count"] == 2
    assert result == {"clients_count": 3, "posts_count": 4}


@pytest.mark.asyncio
async def test_procedure_client_wraps_http_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text='{"message":"function does not exist"}')

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        client = ProcedureClient(http, _procedure_settings())
        with pytest.raises(ProcedureError, match="404"):
            await client.call("get_my_organization_usage_counts")


@pytest.mark.asyncio
async def test_unconfigured_procedure_client_raises():
    async with httpx.AsyncClient() as http:
        client = ProcedureClient(http, ProcedureSettings())
        assert not client.configured
        with pytest.raises(ProcedureError):
            await client.call("get_my_organization_usage_counts")
