"""Integration tests for the automation and dashboard endpoints."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient

from credstore.services.crypto import REDACTED


async def store(client: AsyncClient, headers: dict, user_id, platform: str, credentials: dict, **extra):
    response = await client.post(
        "/api/v1/integrations/store",
        json={"user_id": str(user_id), "platform_name": platform, "credentials": credentials, **extra},
        headers=headers,
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]


class TestStoreEndpoint:
    @pytest.mark.asyncio
    async def test_store_returns_redacted_record(
        self, async_client: AsyncClient, api_headers, user_id
    ) -> None:
        response = await async_client.post(
            "/api/v1/integrations/store",
            json={
                "user_id": str(user_id),
                "platform_name": "linkedin",
                "credentials": {"access_token": "very-secret"},
            },
            headers=api_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["credentials"] == REDACTED
        assert body["data"]["credentials_encrypted"] is True
        assert body["data"]["status"] == "active"
        assert "very-secret" not in response.text

    @pytest.mark.asyncio
    async def test_unsupported_platform(self, async_client: AsyncClient, api_headers, user_id) -> None:
        response = await async_client.post(
            "/api/v1/integrations/store",
            json={"user_id": str(user_id), "platform_name": "myspace", "credentials": {}},
            headers=api_headers,
        )

        assert response.status_code == 400
        assert response.json()["code"] == "VAL_002"

    @pytest.mark.asyncio
    async def test_oversized_payload(self, async_client: AsyncClient, api_headers, user_id) -> None:
        response = await async_client.post(
            "/api/v1/integrations/store",
            json={"user_id": str(user_id), "platform_name": "openai", "credentials": {"blob": "x" * 50_001}},
            headers=api_headers,
        )

        assert response.status_code == 400
        assert response.json()["code"] == "VAL_003"

    @pytest.mark.asyncio
    async def test_malformed_body_is_400_without_echo(self, async_client: AsyncClient, api_headers) -> None:
        response = await async_client.post(
            "/api/v1/integrations/store",
            json={"user_id": "not-a-uuid", "platform_name": "linkedin", "credentials": "tok-secret"},
            headers=api_headers,
        )

        assert response.status_code == 400
        assert response.json()["code"] == "VAL_001"
        assert "tok-secret" not in response.text

    @pytest.mark.asyncio
    async def test_invalid_status(self, async_client: AsyncClient, api_headers, user_id) -> None:
        response = await async_client.post(
            "/api/v1/integrations/store",
            json={"user_id": str(user_id), "platform_name": "openai", "credentials": {}, "status": "paused"},
            headers=api_headers,
        )

        assert response.status_code == 400


class TestUpdateEndpoint:
    @pytest.mark.asyncio
    async def test_merge_update(self, async_client: AsyncClient, api_headers, user_id) -> None:
        await store(async_client, api_headers, user_id, "facebook", {"pages": [{"page_id": "p1"}]})

        response = await async_client.post(
            "/api/v1/integrations/update",
            json={
                "user_id": str(user_id),
                "platform_name": "facebook",
                "updates": {"credentials": {"pages": [{"page_id": "p2"}]}, "status": "active"},
            },
            headers=api_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["credentials"] == REDACTED

        response = await async_client.post(
            "/api/v1/integrations/credentials",
            json={"user_id": str(user_id), "platform_name": "facebook"},
            headers=api_headers,
        )
        assert response.json()["data"]["credentials"]["pages"] == [{"page_id": "p1"}, {"page_id": "p2"}]

    @pytest.mark.asyncio
    async def test_update_missing(self, async_client: AsyncClient, api_headers, user_id) -> None:
        response = await async_client.post(
            "/api/v1/integrations/update",
            json={"user_id": str(user_id), "platform_name": "twitter", "updates": {"status": "error"}},
            headers=api_headers,
        )

        assert response.status_code == 404
        assert response.json()["code"] == "RES_001"

    @pytest.mark.asyncio
    async def test_update_foreign_record_forbidden(
        self, async_client: AsyncClient, api_headers, user_id
    ) -> None:
        stored = await store(async_client, api_headers, user_id, "twitter", {"access_token": "a"})

        response = await async_client.post(
            "/api/v1/integrations/update",
            json={
                "user_id": str(uuid.uuid4()),
                "platform_name": "twitter",
                "integration_id": stored["id"],
                "updates": {"credentials": {"access_token": "b"}},
            },
            headers=api_headers,
        )

        assert response.status_code == 403
        assert response.json()["code"] == "AUTH_005"

        response = await async_client.post(
            "/api/v1/integrations/credentials",
            json={"user_id": str(user_id), "platform_name": "twitter"},
            headers=api_headers,
        )
        assert response.json()["data"]["credentials"] == {"access_token": "a"}

    @pytest.mark.asyncio
    async def test_update_requires_updates_object(
        self, async_client: AsyncClient, api_headers, user_id
    ) -> None:
        response = await async_client.post(
            "/api/v1/integrations/update",
            json={"user_id": str(user_id), "platform_name": "twitter"},
            headers=api_headers,
        )

        assert response.status_code == 400


class TestCredentialsEndpoint:
    @pytest.mark.asyncio
    async def test_returns_credentials_and_expiration(
        self, async_client: AsyncClient, api_headers, user_id
    ) -> None:
        refresh_at = (datetime.now(timezone.utc) + timedelta(days=3)).isoformat()
        await store(
            async_client,
            api_headers,
            user_id,
            "linkedin",
            {"access_token": "tok", "refresh_token_expires_at": refresh_at},
        )

        response = await async_client.post(
            "/api/v1/integrations/credentials",
            json={"user_id": str(user_id), "platform_name": "linkedin"},
            headers=api_headers,
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["credentials"]["access_token"] == "tok"
        assert data["token_expiration"]["refresh_token_status"] == "expiring"
        assert data["token_expiration"]["needs_reconnect"] is True

    @pytest.mark.asyncio
    async def test_out_of_range_expiry_is_unknown(
        self, async_client: AsyncClient, api_headers, user_id
    ) -> None:
        await store(
            async_client,
            api_headers,
            user_id,
            "linkedin",
            {"access_token": "tok", "expires_at": "9999-12-31T23:30:00-05:00"},
        )

        response = await async_client.post(
            "/api/v1/integrations/credentials",
            json={"user_id": str(user_id), "platform_name": "linkedin"},
            headers=api_headers,
        )

        assert response.status_code == 200
        assert response.json()["data"]["token_expiration"]["access_token_status"] == "unknown"

    @pytest.mark.asyncio
    async def test_inactive_integration_not_returned(
        self, async_client: AsyncClient, api_headers, user_id
    ) -> None:
        await store(async_client, api_headers, user_id, "youtube", {"a": 1}, status="inactive")

        response = await async_client.post(
            "/api/v1/integrations/credentials",
            json={"user_id": str(user_id), "platform_name": "youtube"},
            headers=api_headers,
        )

        assert response.status_code == 404


class TestMigrateEncryptionEndpoint:
    @pytest.mark.asyncio
    async def test_counts(self, async_client: AsyncClient, api_headers, user_id) -> None:
        await store(async_client, api_headers, user_id, "openai", {"api_key": "sk"})

        response = await async_client.post("/api/v1/integrations/migrate-encryption", headers=api_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total"] == 1
        assert data["already_encrypted"] == 1
        assert data["migrated"] == 0

    @pytest.mark.asyncio
    async def test_requires_api_key(self, async_client: AsyncClient) -> None:
        response = await async_client.post("/api/v1/integrations/migrate-encryption")
        assert response.status_code == 401


class TestDashboardEndpoints:
    @pytest.mark.asyncio
    async def test_list_integrations(
        self, async_client: AsyncClient, api_headers, session_headers, user_id
    ) -> None:
        expires_at = (datetime.now(timezone.utc) + timedelta(days=10, hours=1)).isoformat()
        await store(async_client, api_headers, user_id, "linkedin", {"access_token": "x", "expires_at": expires_at})
        await store(async_client, api_headers, uuid.uuid4(), "twitter", {"access_token": "y"})

        response = await async_client.get("/api/v1/me/integrations", headers=session_headers)

        assert response.status_code == 200
        items = response.json()["data"]
        assert [i["platform_name"] for i in items] == ["linkedin"]
        assert items[0]["credentials"] == REDACTED
        assert items[0]["token_expiration"]["access_token_status"] == "warning"
        assert items[0]["token_expiration"]["access_token_days_remaining"] == 10

    @pytest.mark.asyncio
    async def test_linkedin_accounts_end_to_end(
        self, async_client: AsyncClient, api_headers, session_headers, user_id, linkedin_credentials
    ) -> None:
        await store(async_client, api_headers, user_id, "linkedin", linkedin_credentials)

        response = await async_client.get(
            "/api/v1/me/accounts", params={"platforms": "linkedin,facebook"}, headers=session_headers
        )

        assert response.status_code == 200
        accounts = response.json()["data"]
        assert [(a["type"], a["id"], a["name"]) for a in accounts] == [
            ("personal", "li-123", "Ada Lovelace"),
            ("company", "org-1", "Analytical Engines"),
            ("company", "org-2", "Difference Works"),
        ]
        assert {a["platform"] for a in accounts} == {"linkedin"}

    @pytest.mark.asyncio
    async def test_accounts_without_selection(
        self, async_client: AsyncClient, api_headers, session_headers, user_id, linkedin_credentials
    ) -> None:
        await store(async_client, api_headers, user_id, "linkedin", linkedin_credentials)

        response = await async_client.get("/api/v1/me/accounts", headers=session_headers)

        assert response.json()["data"] == []

    @pytest.mark.asyncio
    async def test_patch_own_integration(
        self, async_client: AsyncClient, api_headers, session_headers, user_id
    ) -> None:
        stored = await store(async_client, api_headers, user_id, "twitter", {"access_token": "a"})

        response = await async_client.patch(
            f"/api/v1/me/integrations/{stored['id']}",
            json={"status": "inactive"},
            headers=session_headers,
        )

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "inactive"

    @pytest.mark.asyncio
    async def test_patch_other_users_integration_forbidden(
        self, async_client: AsyncClient, api_headers, make_session_token, user_id
    ) -> None:
        stored = await store(async_client, api_headers, user_id, "twitter", {"access_token": "a"})
        intruder_headers = {"Authorization": f"Bearer {make_session_token(uuid.uuid4())}"}

        response = await async_client.patch(
            f"/api/v1/me/integrations/{stored['id']}",
            json={"status": "inactive", "credentials": {"access_token": "b"}},
            headers=intruder_headers,
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_disconnect(
        self, async_client: AsyncClient, api_headers, session_headers, user_id
    ) -> None:
        await store(async_client, api_headers, user_id, "twitter", {"access_token": "a"})

        response = await async_client.delete("/api/v1/me/integrations/Twitter", headers=session_headers)
        assert response.status_code == 200
        assert response.json()["data"]["platform_name"] == "twitter"

        response = await async_client.delete("/api/v1/me/integrations/twitter", headers=session_headers)
        assert response.status_code == 404
