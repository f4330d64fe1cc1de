from __future__ import annotations

import json

import pytest
from httpx import ASGITransport, AsyncClient

from orgguard.apps.api.main import create_app
from orgguard.core.config import get_settings
from orgguard.domain.permissions import Permission
from orgguard.services.payments import build_processor_signature
from orgguard.tests.utils.factories import (
    create_admin,
    create_org,
    fetch_audit_rows,
    load_org,
    seed_plans,
    unique_id,
)


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


def _principal(user_id: str, organisation_id: str | None = None) -> dict[str, str]:
    headers = {"X-Principal-Id": user_id}
    if organisation_id is not None:
        headers["X-Organisation-Id"] = organisation_id
    return headers


@pytest.mark.asyncio
async def test_health_is_enveloped_and_echoes_request_id() -> None:
    async with _client() as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "req-health-1"})
    assert response.status_code == 200
    body = response.json()
    assert body["data"] == {"status": "ok"}
    assert body["meta"]["api_version"] == "v1"
    assert body["meta"]["request_id"] == "req-health-1"
    assert response.headers["X-Request-Id"] == "req-health-1"


@pytest.mark.asyncio
async def test_public_plan_catalogue_lists_seeded_plans() -> None:
    await seed_plans()
    async with _client() as client:
        response = await client.get("/v1/plans")
    assert response.status_code == 200
    slugs = [plan["slug"] for plan in response.json()["data"]]
    assert slugs == ["free", "pro", "enterprise"]


@pytest.mark.asyncio
async def test_admin_routes_require_principal_header() -> None:
    async with _client() as client:
        response = await client.get("/v1/admin/organisations")
    assert response.status_code == 401
    body = response.json()
    assert body["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert body["meta"]["api_version"] == "v1"


@pytest.mark.asyncio
async def test_admin_routes_reject_callers_without_permission() -> None:
    async with _client() as client:
        response = await client.get("/v1/admin/organisations", headers=_principal(unique_id("user")))
    assert response.status_code == 403
    error = response.json()["error"]
    assert error["code"] == "PERMISSION_DENIED"
    assert error["details"] == {"permission": "view_all_organisations"}


@pytest.mark.asyncio
async def test_create_and_block_organisation_over_http() -> None:
    plans = await seed_plans()
    admin, actor = await create_admin(
        permissions=[Permission.VIEW_ALL_ORGANISATIONS, Permission.EDIT_ALL_ORGANISATIONS]
    )
    owner_id = unique_id("owner")

    async with _client() as client:
        created = await client.post(
            "/v1/admin/organisations",
            headers=_principal(actor.user_id),
            json={
                "name": "Harbour Survey Ltd",
                "plan_id": plans["pro"].id,
                "members": [{"user_id": owner_id, "role": "owner"}],
            },
        )
        assert created.status_code == 201
        organisation = created.json()["data"]
        assert organisation["subscription_status"] == "trialing"
        assert organisation["blocked"] is False

        blank = await client.post(
            f"/v1/admin/organisations/{organisation['id']}/block",
            headers=_principal(actor.user_id),
            json={"reason": "   "},
        )
        assert blank.status_code == 400
        assert blank.json()["error"]["code"] == "INVALID_ARGUMENT"

        blocked = await client.post(
            f"/v1/admin/organisations/{organisation['id']}/block",
            headers=_principal(actor.user_id),
            json={"reason": "chargeback dispute"},
        )
    assert blocked.status_code == 200
    assert blocked.json()["data"]["blocked_reason"] == "chargeback dispute"

    stored = await load_org(organisation["id"])
    assert stored.blocked is True
    rows = await fetch_audit_rows(action_type="block_organisation", target_organisation_id=organisation["id"])
    assert len(rows) == 1
    assert rows[0].actor_id == admin.id


@pytest.mark.asyncio
async def test_missing_organisation_maps_to_not_found() -> None:
    _admin, actor = await create_admin(permissions=[Permission.VIEW_ALL_ORGANISATIONS])
    async with _client() as client:
        response = await client.get(
            f"/v1/admin/organisations/{unique_id('org')}", headers=_principal(actor.user_id)
        )
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_billing_summary_is_scoped_to_members_and_viewers() -> None:
    plans = await seed_plans()
    member_id = unique_id("member")
    organisation = await create_org(plan_id=plans["pro"].id, members={member_id: "user"})
    _viewer, viewer = await create_admin(permissions=[Permission.VIEW_ALL_ORGANISATIONS])

    async with _client() as client:
        as_member = await client.get(
            "/v1/billing/summary", headers=_principal(member_id, organisation.id)
        )
        as_stranger = await client.get(
            "/v1/billing/summary", headers=_principal(unique_id("stranger"), organisation.id)
        )
        as_viewer = await client.get(
            "/v1/billing/summary", headers=_principal(viewer.user_id, organisation.id)
        )
        no_scope = await client.get("/v1/billing/summary", headers=_principal(member_id))

    assert as_member.status_code == 200
    assert as_member.json()["data"]["plan_slug"] == "pro"
    assert as_stranger.status_code == 403
    assert as_viewer.status_code == 200
    assert no_scope.status_code == 400


@pytest.mark.asyncio
async def test_checkout_is_limited_to_billing_managers() -> None:
    plans = await seed_plans()
    member_id = unique_id("member")
    organisation = await create_org(plan_id=plans["free"].id, members={member_id: "user"})
    _viewer, viewer = await create_admin(permissions=[Permission.VIEW_ALL_ORGANISATIONS])
    payload = {
        "plan_id": plans["pro"].id,
        "success_url": "https://app.example.com/billing/done",
        "cancel_url": "https://app.example.com/billing",
    }

    async with _client() as client:
        as_user = await client.post(
            "/v1/billing/checkout", headers=_principal(member_id, organisation.id), json=payload
        )
        as_viewer = await client.post(
            "/v1/billing/checkout", headers=_principal(viewer.user_id, organisation.id), json=payload
        )
    assert as_user.status_code == 403
    assert as_user.json()["error"]["code"] == "PERMISSION_DENIED"
    # Read access never extends to acting on an organisation's billing.
    assert as_viewer.status_code == 403


@pytest.mark.asyncio
async def test_processor_events_require_configured_secret() -> None:
    body = json.dumps({"status": "active", "organisation_id": unique_id("org")})
    async with _client() as client:
        response = await client.post(
            "/v1/billing/processor-events",
            content=body,
            headers={"Content-Type": "application/json"},
        )
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "UNAVAILABLE"


@pytest.mark.asyncio
async def test_processor_events_verify_signature_and_apply(monkeypatch) -> None:
    monkeypatch.setenv("PROCESSOR_EVENT_SECRET", "whsec_api")
    get_settings.cache_clear()
    plans = await seed_plans()
    customer_ref = unique_id("cus")
    organisation = await create_org(
        plan_id=plans["pro"].id, subscription_status="trialing", customer_ref=customer_ref
    )
    body = json.dumps(
        {"event_id": "evt_1", "event_type": "subscription.updated", "status": "active", "customer_ref": customer_ref}
    ).encode("utf-8")

    async with _client() as client:
        forged = await client.post(
            "/v1/billing/processor-events",
            content=body,
            headers={"Content-Type": "application/json", "X-Processor-Signature": "not-a-signature"},
        )
        accepted = await client.post(
            "/v1/billing/processor-events",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Processor-Signature": build_processor_signature("whsec_api", body),
            },
        )

    assert forged.status_code == 401
    assert forged.json()["error"]["code"] == "INVALID_SIGNATURE"
    assert accepted.status_code == 200
    assert accepted.json()["data"] == {
        "organisation_id": organisation.id,
        "subscription_status": "active",
        "plan_id": plans["pro"].id,
    }
    assert (await load_org(organisation.id)).subscription_status == "active"


@pytest.mark.asyncio
async def test_audit_entries_endpoint_pages_and_filters() -> None:
    _admin, actor = await create_admin(
        permissions=[Permission.EDIT_ALL_ORGANISATIONS, Permission.VIEW_AUDIT_LOGS]
    )
    organisation = await create_org()

    async with _client() as client:
        await client.post(
            f"/v1/admin/organisations/{organisation.id}/archive", headers=_principal(actor.user_id)
        )
        listed = await client.get(
            "/v1/admin/audit/entries",
            headers=_principal(actor.user_id),
            params={"target_organisation_id": organisation.id, "action_category": "organisation"},
        )
        denied = await client.get("/v1/admin/audit/entries", headers=_principal(unique_id("user")))

    assert listed.status_code == 200
    page = listed.json()["data"]
    assert page["total"] == 1
    assert page["next_offset"] is None
    assert page["items"][0]["action_type"] == "archive_organisation"
    assert page["items"][0]["new_values"]["archived"] is True
    assert denied.status_code == 403
