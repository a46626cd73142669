"""End-to-end lifecycle over the in-process ASGI transport."""

import pytest

from factories import CLIENT_ID, TECHNICIAN_ID, client_headers, technician_headers

BASE = "/api/v1/service-requests"


@pytest.mark.asyncio
async def test_direct_accept_then_complete(async_api):
    r = await async_api.post(
        BASE,
        json={"applianceId": 11, "description": "Dishwasher leaks", "clientPrice": 75},
        headers=client_headers(),
    )
    assert r.status_code == 201
    rid = r.json()["id"]

    r = await async_api.get(f"{BASE}/pending", headers=technician_headers())
    assert rid in [item["id"] for item in r.json()]

    r = await async_api.post(f"{BASE}/{rid}/accept-and-schedule", headers=technician_headers())
    assert r.status_code == 200
    assert r.json()["status"] == "scheduled"

    r = await async_api.get(f"{BASE}/pending", headers=technician_headers())
    assert rid not in [item["id"] for item in r.json()]

    r = await async_api.get(f"{BASE}/calendar/technician/{TECHNICIAN_ID}", headers=technician_headers())
    assert [item["id"] for item in r.json()] == [rid]

    r = await async_api.post(f"{BASE}/{rid}/complete", headers=client_headers())
    assert r.status_code == 200
    assert r.json()["status"] == "completed"

    r = await async_api.get(f"{BASE}/client/{CLIENT_ID}", headers=client_headers())
    assert [item["status"] for item in r.json()] == ["completed"]

    # Terminal: a technician can no longer reject it.
    r = await async_api.post(f"{BASE}/{rid}/reject", headers=technician_headers())
    assert r.status_code == 409
    assert r.json()["code"] == "invalid_status"
