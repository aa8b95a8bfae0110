"""
HTTP surface: role gating, error mapping and response shapes.

The app is driven in-process through httpx's ASGI transport. The
lifespan is not run; the test world's service is installed on
``app.state`` directly.
"""

import uuid
from contextlib import asynccontextmanager

import httpx
import pytest

from issuance.app.main import create_app
from issuance.app.services.ledger import Web3LedgerClient
from issuance.tests.fixtures.world import (
    VALID_CODE,
    issuance_world,
    make_settings,
    minted_certificate,
)

pytestmark = pytest.mark.anyio


def as_user(user):
    return {"X-User-Id": str(user.user_id), "X-User-Role": user.role.value}


@asynccontextmanager
async def api(tmp_path):
    async with issuance_world(tmp_path) as world:
        app = create_app()
        app.state.documents_service = world.service
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://issuance") as client:
            yield world, client


async def _request(world, client, user=None):
    return await client.post(
        "/documents/request",
        headers=as_user(user or world.student),
        json={
            "document_type_id": str(world.types["generic"].document_type_id),
            "authenticator_code": VALID_CODE,
            "metadata": {"company": "Acme"},
        },
    )


async def test_healthz(tmp_path):
    async with api(tmp_path) as (_, client):
        response = await client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


async def test_type_catalogue_is_public(tmp_path):
    async with api(tmp_path) as (world, client):
        response = await client.get("/documents/types")
    assert response.status_code == 200
    assert [t["document_type_name"] for t in response.json()] == sorted(
        t.document_type_name for t in world.types.values()
    )


async def test_missing_identity_is_401(tmp_path):
    async with api(tmp_path) as (world, client):
        response = await client.get("/documents/my")
    assert response.status_code == 401
    assert response.json() == {"error": "unauthorized", "detail": "Authentication required"}


async def test_malformed_identity_is_401(tmp_path):
    async with api(tmp_path) as (_, client):
        response = await client.get(
            "/documents/my", headers={"X-User-Id": "nope", "X-User-Role": "student"}
        )
    assert response.status_code == 401


async def test_student_requests_document(tmp_path):
    async with api(tmp_path) as (world, client):
        response = await _request(world, client)

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "draft"
    assert body["metadata"] == {"company": "Acme"}
    assert body["document_type"]["document_type_name"] == "Internship Letter"


async def test_only_students_request(tmp_path):
    async with api(tmp_path) as (world, client):
        response = await _request(world, client, world.manager)
    assert response.status_code == 403
    assert response.json()["error"] == "forbidden"


async def test_short_code_is_rejected_by_schema(tmp_path):
    async with api(tmp_path) as (world, client):
        response = await client.post(
            "/documents/request",
            headers=as_user(world.student),
            json={
                "document_type_id": str(world.types["generic"].document_type_id),
                "authenticator_code": "12",
            },
        )
    assert response.status_code == 422


async def test_wrong_code_maps_to_401(tmp_path):
    async with api(tmp_path) as (world, client):
        response = await client.post(
            "/documents/request",
            headers=as_user(world.student),
            json={
                "document_type_id": str(world.types["generic"].document_type_id),
                "authenticator_code": "000000",
            },
        )
    assert response.status_code == 401
    assert response.json()["reason"] == "invalid_code"


async def test_students_see_only_their_documents(tmp_path):
    async with api(tmp_path) as (world, client):
        document_id = (await _request(world, client)).json()["document_id"]

        own = await client.get(f"/documents/{document_id}", headers=as_user(world.student))
        other = await client.get(
            f"/documents/{document_id}", headers=as_user(world.other_student)
        )
        manager = await client.get(f"/documents/{document_id}", headers=as_user(world.manager))
        missing = await client.get(f"/documents/{uuid.uuid4()}", headers=as_user(world.manager))

    assert own.status_code == 200
    assert other.status_code == 403
    assert manager.status_code == 200
    assert missing.status_code == 404
    assert missing.json()["error"] == "not_found"


async def test_approve_then_verify_publicly(tmp_path):
    async with api(tmp_path) as (world, client):
        document_id = (await _request(world, client)).json()["document_id"]

        approved = await client.post(
            f"/documents/{document_id}/approve",
            headers=as_user(world.manager),
            json={"authenticator_code": VALID_CODE},
        )
        assert approved.status_code == 200
        token_id = approved.json()["token_id"]
        assert approved.json()["status"] == "minted"

        verified = await client.get(f"/documents/verify/{token_id}")
        again = await client.post(
            f"/documents/{document_id}/approve",
            headers=as_user(world.manager),
            json={"authenticator_code": VALID_CODE},
        )

    assert verified.status_code == 200
    assert verified.json()["valid"] is True
    assert verified.json()["database"]["document_id"] == document_id

    assert again.status_code == 400
    assert again.json()["error"] == "precondition_failed"
    assert again.json()["current_status"] == "minted"


async def test_listing_is_paginated(tmp_path):
    async with api(tmp_path) as (world, client):
        for _ in range(3):
            await _request(world, client)

        response = await client.get(
            "/documents",
            params={"page": 2, "page_size": 2, "status": "draft"},
            headers=as_user(world.manager),
        )
        denied = await client.get("/documents", headers=as_user(world.student))

    assert response.status_code == 200
    page = response.json()
    assert page["total"] == 3
    assert len(page["items"]) == 1
    assert page["page"] == 2
    assert denied.status_code == 403


async def test_revoke_is_admin_only(tmp_path):
    async with api(tmp_path) as (world, client):
        minted = await minted_certificate(world)
        path = f"/documents/{minted.document_id}/revoke"

        denied = await client.post(path, headers=as_user(world.manager))
        revoked = await client.post(path, headers=as_user(world.admin))

    assert denied.status_code == 403
    assert revoked.status_code == 200
    assert revoked.json()["status"] == "revoked"
    assert revoked.json()["is_valid"] is False


async def test_reject_records_reason(tmp_path):
    async with api(tmp_path) as (world, client):
        document_id = (await _request(world, client)).json()["document_id"]
        response = await client.post(
            f"/documents/{document_id}/reject",
            headers=as_user(world.manager),
            json={"reason": "Missing signature page"},
        )

    assert response.status_code == 200
    assert response.json()["status"] == "rejected"
    assert response.json()["metadata"]["rejection"]["reason"] == "Missing signature page"


async def test_pdf_download(tmp_path):
    async with api(tmp_path) as (world, client):
        minted = await minted_certificate(world)
        response = await client.get(
            f"/documents/{minted.document_id}/pdf", headers=as_user(world.student)
        )

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert response.content.startswith(b"%PDF")


async def test_stuck_listing_for_admins(tmp_path):
    async with api(tmp_path) as (world, client):
        response = await client.get(
            "/documents/stuck",
            params={"older_than_minutes": 5},
            headers=as_user(world.admin),
        )
    assert response.status_code == 200
    assert response.json() == []


async def test_non_numeric_token_is_client_error(tmp_path):
    async with api(tmp_path) as (world, client):
        world.service.ledger = Web3LedgerClient(
            make_settings(
                tmp_path,
                use_mock_blockchain=False,
                blockchain_rpc_url="http://127.0.0.1:8545",
                admin_private_key="0x" + "01" * 32,
                document_nft_contract_address="0x" + "22" * 20,
                student_registry_contract_address="0x" + "33" * 20,
            )
        )
        response = await client.get("/documents/verify/not-a-number")

    assert response.status_code == 400
    assert response.json()["error"] == "validation_failed"


async def test_chain_record_and_student_tokens(tmp_path):
    async with api(tmp_path) as (world, client):
        minted = await minted_certificate(world)
        draft = (await _request(world, client)).json()["document_id"]

        record = await client.get(
            f"/documents/{minted.document_id}/chain", headers=as_user(world.student)
        )
        hidden = await client.get(
            f"/documents/{minted.document_id}/chain", headers=as_user(world.other_student)
        )
        unminted = await client.get(f"/documents/{draft}/chain", headers=as_user(world.manager))

        tokens_path = f"/documents/student/{world.student.user_id}/tokens"
        tokens = await client.get(tokens_path, headers=as_user(world.manager))
        denied = await client.get(tokens_path, headers=as_user(world.student))
        no_wallet = await client.get(
            f"/documents/student/{world.admin.user_id}/tokens", headers=as_user(world.admin)
        )

    assert record.status_code == 200
    assert record.json()["tokenId"] == minted.token_id
    assert record.json()["documentHash"] == minted.document_hash
    assert record.json()["studentId"] == world.student_chain_id
    assert hidden.status_code == 403
    assert unminted.status_code == 404

    assert tokens.status_code == 200
    assert tokens.json() == [minted.token_id]
    assert denied.status_code == 403
    assert no_wallet.status_code == 404
