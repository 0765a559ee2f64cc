"""
Tests for Skill Drafts API.

Endpoints tested:
- GET    /api/v1/skill-drafts
- GET    /api/v1/skill-drafts/{key}
- PUT    /api/v1/skill-drafts/{key}
- DELETE /api/v1/skill-drafts/{key}
"""

from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from skill_vault.db.models import SkillDB
from tests.factories import make_draft

API = "/api/v1/skill-drafts"


class TestPutDraft:
    """Tests for PUT /api/v1/skill-drafts/{key}."""

    async def test_version_token_lifecycle(self, client: AsyncClient):
        """Create at 1, guarded write to 2, stale guarded write conflicts."""
        response = await client.put(f"{API}/k", json={"mode": "new", "payload": {"title": "x"}})
        assert response.status_code == 200
        assert response.json()["version"] == 1

        response = await client.put(
            f"{API}/k",
            json={"mode": "new", "payload": {"title": "y"}, "expectedVersion": 1},
        )
        assert response.status_code == 200
        assert response.json()["version"] == 2

        response = await client.put(
            f"{API}/k",
            json={"mode": "new", "payload": {"title": "stale"}, "expectedVersion": 1},
        )
        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "Draft version conflict"
        assert body["currentVersion"] == 2

        stored = (await client.get(f"{API}/k")).json()
        assert stored["version"] == 2
        assert stored["payload"] == {"title": "y"}

    async def test_response_shape(self, client: AsyncClient):
        response = await client.put(
            f"{API}/new:abc", json={"mode": " NEW ", "payload": {"title": "x"}}
        )
        data = response.json()
        assert set(data) == {"id", "key", "mode", "skillId", "payload", "version", "updatedAt"}
        assert data["key"] == "new:abc"
        assert data["mode"] == "new"
        assert data["skillId"] is None

    async def test_unguarded_write_overwrites_and_increments(self, client: AsyncClient):
        await client.put(f"{API}/k", json={"mode": "new", "payload": {"n": 1}})
        response = await client.put(f"{API}/k", json={"mode": "new", "payload": {"n": 2}})
        assert response.status_code == 200
        assert response.json()["version"] == 2
        assert response.json()["payload"] == {"n": 2}

    async def test_expected_version_on_missing_draft_creates_it(self, client: AsyncClient):
        response = await client.put(
            f"{API}/fresh", json={"mode": "new", "payload": {}, "expectedVersion": 7}
        )
        assert response.status_code == 200
        assert response.json()["version"] == 1

    async def test_edit_draft_linked_to_skill(
        self, client: AsyncClient, sample_skill: SkillDB
    ):
        response = await client.put(
            f"{API}/edit:{sample_skill.id}",
            json={"mode": "edit", "skillId": sample_skill.id, "payload": {"title": "T"}},
        )
        assert response.status_code == 200
        assert response.json()["skillId"] == sample_skill.id

    async def test_unknown_skill_is_404(self, client: AsyncClient):
        response = await client.put(
            f"{API}/edit:x", json={"mode": "edit", "skillId": "nope", "payload": {}}
        )
        assert response.status_code == 404

    async def test_invalid_input_lists_every_error(self, client: AsyncClient):
        response = await client.put(
            f"{API}/k",
            json={"mode": "publish", "payload": "text", "expectedVersion": -1},
        )
        assert response.status_code == 400
        errors = response.json()["errors"]
        assert len(errors) == 3

    async def test_non_string_skill_id_joins_the_error_list(self, client: AsyncClient):
        response = await client.put(
            f"{API}/k", json={"mode": "publish", "payload": {}, "skillId": 42}
        )
        assert response.status_code == 400
        assert response.json()["errors"] == [
            "mode must be one of: new, edit",
            "skillId must be a string",
        ]

    async def test_invalid_key(self, client: AsyncClient):
        response = await client.put(f"{API}/bad key!", json={"mode": "new", "payload": {}})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid draft key"


class TestReadAndDeleteDrafts:

    async def test_get_missing(self, client: AsyncClient):
        response = await client.get(f"{API}/missing")
        assert response.status_code == 404
        assert response.json() == {"error": "Draft not found"}

    async def test_list_filters_by_mode(self, client: AsyncClient, db_session: AsyncSession):
        db_session.add_all([
            make_draft("new:a", mode="new"),
            make_draft("edit:b", mode="edit"),
        ])
        await db_session.commit()

        data = (await client.get(API, params={"mode": "edit"})).json()
        assert data["total"] == 1
        assert data["items"][0]["key"] == "edit:b"

        data = (await client.get(API)).json()
        assert data["total"] == 2

    async def test_delete(self, client: AsyncClient, db_session: AsyncSession):
        db_session.add(make_draft("new:gone"))
        await db_session.commit()

        response = await client.delete(f"{API}/new:gone")
        assert response.status_code == 200
        assert response.json() == {"ok": True}

        assert (await client.get(f"{API}/new:gone")).status_code == 404
        assert (await client.delete(f"{API}/new:gone")).status_code == 404
