"""
Tests for skill versioning, rollback and publishing.

Endpoints tested:
- GET  /api/v1/skills/{id}/versions
- GET  /api/v1/skills/{id}/versions/{versionId}
- POST /api/v1/skills/{id}/rollback
- POST /api/v1/skills/{id}/publish
- GET  /api/v1/skills/{id}/publications
"""

from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from skill_vault.db.models import SkillDB, SkillPublicationDB, SkillVersionDB
from tests.factories import make_skill, make_skill_version, make_snapshot, skill_content

API = "/api/v1/skills"


async def _count(db: AsyncSession, model, skill_id: str) -> int:
    result = await db.execute(
        select(func.count()).select_from(model).where(model.skill_id == skill_id)
    )
    return result.scalar_one()


class TestListVersions:

    async def test_pagination(self, client: AsyncClient, db_session: AsyncSession):
        skill = make_skill(title="Paged", slug="paged")
        db_session.add(skill)
        await db_session.flush()
        db_session.add_all(
            make_skill_version(skill.id, n, make_snapshot(slug="paged", title=f"Paged v{n}"))
            for n in range(1, 13)
        )
        await db_session.commit()

        data = (await client.get(f"{API}/{skill.id}/versions")).json()
        assert data["total"] == 12
        assert data["limit"] == 10
        assert data["totalPages"] == 2
        assert [item["version"] for item in data["items"]][:3] == [12, 11, 10]
        assert data["items"][0]["title"] == "Paged v12"

        data = (await client.get(f"{API}/{skill.id}/versions", params={"page": 2})).json()
        assert [item["version"] for item in data["items"]] == [2, 1]

    async def test_limit_is_capped(self, client: AsyncClient, sample_skill: SkillDB):
        data = (await client.get(f"{API}/{sample_skill.id}/versions", params={"limit": 500})).json()
        assert data["limit"] == 50

    async def test_lenient_summary_for_odd_snapshots(
        self, client: AsyncClient, db_session: AsyncSession, sample_skill: SkillDB
    ):
        db_session.add(make_skill_version(sample_skill.id, 2, {"garbage": True}))
        await db_session.commit()

        data = (await client.get(f"{API}/{sample_skill.id}/versions")).json()
        assert data["items"][0]["version"] == 2
        assert data["items"][0]["title"] is None

    async def test_missing_skill(self, client: AsyncClient):
        response = await client.get(f"{API}/missing/versions")
        assert response.status_code == 404


class TestGetVersion:

    async def test_get_version(
        self, client: AsyncClient, sample_skill: SkillDB, sample_version: SkillVersionDB
    ):
        response = await client.get(f"{API}/{sample_skill.id}/versions/{sample_version.id}")
        assert response.status_code == 200
        data = response.json()
        assert data["version"] == 1
        assert data["snapshot"]["slug"] == "test-skill"
        assert data["snapshot"]["tags"] == ["support"]

    async def test_version_of_another_skill_is_404(
        self, client: AsyncClient, db_session: AsyncSession, sample_version: SkillVersionDB
    ):
        other = make_skill(title="Other", slug="other")
        db_session.add(other)
        await db_session.commit()

        response = await client.get(f"{API}/{other.id}/versions/{sample_version.id}")
        assert response.status_code == 404
        assert response.json() == {"error": "Version not found"}

    async def test_invalid_snapshot_is_422(
        self, client: AsyncClient, db_session: AsyncSession, sample_skill: SkillDB
    ):
        broken = make_skill_version(sample_skill.id, 2, {"slug": ""})
        db_session.add(broken)
        await db_session.commit()

        response = await client.get(f"{API}/{sample_skill.id}/versions/{broken.id}")
        assert response.status_code == 422


class TestSnapshotsAreImmutable:

    async def test_first_version_unchanged_by_later_edits(self, client: AsyncClient):
        created = (await client.post(API, json=skill_content(tags=["support"]))).json()
        skill_id = created["id"]
        v1_id = (await client.get(f"{API}/{skill_id}/versions")).json()["items"][0]["id"]
        original = (await client.get(f"{API}/{skill_id}/versions/{v1_id}")).json()

        await client.put(
            f"{API}/{skill_id}",
            json={"title": "Rewritten", "steps": ["x", "y", "z"], "tags": ["ops"]},
        )
        await client.post(
            f"{API}/{skill_id}/ai/apply",
            json={"changeSet": {"skillPatch": {"summary": "again"}, "fileOps": []}},
        )
        await client.post(f"{API}/{skill_id}/publish", json={})

        assert (await client.get(f"{API}/{skill_id}/versions/{v1_id}")).json() == original
        assert original["snapshot"]["title"] == created["title"]
        assert original["snapshot"]["tags"] == ["support"]
        assert (await client.get(f"{API}/{skill_id}/versions")).json()["total"] == 3


class TestRollback:

    async def test_rollback_restores_snapshot(self, client: AsyncClient):
        created = (await client.post(API, json=skill_content(tags=["support"]))).json()
        skill_id = created["id"]
        v1 = (await client.get(f"{API}/{skill_id}/versions")).json()["items"][0]

        await client.put(
            f"{API}/{skill_id}",
            json={"title": "Changed Title", "summary": "changed", "tags": ["ops"]},
        )
        await client.post(f"{API}/{skill_id}/publish", json={})

        response = await client.post(
            f"{API}/{skill_id}/rollback", json={"versionId": v1["id"], "reason": " oops "}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["rolledBackFromVersionId"] == v1["id"]
        assert data["createdVersion"]["version"] == 3
        assert data["reason"] == "oops"

        restored = (await client.get(f"{API}/{skill_id}")).json()
        for field in ("title", "slug", "summary", "inputs", "outputs", "steps",
                      "risks", "triggers", "guardrails", "tests", "tags"):
            assert restored[field] == created[field], field
        assert restored["status"] == "draft"

    async def test_cross_skill_version_is_404_and_changes_nothing(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        sample_skill: SkillDB,
        sample_version: SkillVersionDB,
    ):
        other = make_skill(title="Other", slug="other")
        db_session.add(other)
        await db_session.commit()
        before = (await client.get(f"{API}/{other.id}")).json()

        response = await client.post(
            f"{API}/{other.id}/rollback", json={"versionId": sample_version.id}
        )
        assert response.status_code == 404

        assert (await client.get(f"{API}/{other.id}")).json() == before
        assert await _count(db_session, SkillVersionDB, other.id) == 0

    async def test_invalid_snapshot_rejected_before_write(
        self, client: AsyncClient, db_session: AsyncSession, sample_skill: SkillDB
    ):
        broken = make_skill_version(sample_skill.id, 2, {"title": "no slug"})
        db_session.add(broken)
        await db_session.commit()
        before = (await client.get(f"{API}/{sample_skill.id}")).json()

        response = await client.post(
            f"{API}/{sample_skill.id}/rollback", json={"versionId": broken.id}
        )
        assert response.status_code == 422
        assert (await client.get(f"{API}/{sample_skill.id}")).json() == before
        assert await _count(db_session, SkillVersionDB, sample_skill.id) == 2

    async def test_slug_taken_by_another_skill(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        sample_skill: SkillDB,
        sample_version: SkillVersionDB,
    ):
        await client.put(f"{API}/{sample_skill.id}", json={"title": "Moved Away"})
        db_session.add(make_skill(title="Squatter", slug="test-skill"))
        await db_session.commit()

        response = await client.post(
            f"{API}/{sample_skill.id}/rollback", json={"versionId": sample_version.id}
        )
        assert response.status_code == 409

    async def test_version_id_required(self, client: AsyncClient, sample_skill: SkillDB):
        response = await client.post(f"{API}/{sample_skill.id}/rollback", json={})
        assert response.status_code == 400


class TestPublish:

    async def test_publish_without_versions_synthesizes_first(
        self, client: AsyncClient, db_session: AsyncSession
    ):
        skill = make_skill(title="Fresh", slug="fresh")
        db_session.add(skill)
        await db_session.commit()

        response = await client.post(f"{API}/{skill.id}/publish", json={})
        assert response.status_code == 201
        data = response.json()
        assert data["version"] == 1
        assert data["status"] == "published"
        assert data["skillId"] == skill.id

        assert await _count(db_session, SkillVersionDB, skill.id) == 1
        assert await _count(db_session, SkillPublicationDB, skill.id) == 1
        assert (await client.get(f"{API}/{skill.id}")).json()["status"] == "published"

    async def test_publish_uses_latest_version(
        self, client: AsyncClient, db_session: AsyncSession, sample_skill: SkillDB
    ):
        db_session.add(make_skill_version(sample_skill.id, 2))
        await db_session.commit()

        response = await client.post(
            f"{API}/{sample_skill.id}/publish", json={"note": "  first release  "}
        )
        assert response.json()["version"] == 2
        assert response.json()["note"] == "first release"
        assert await _count(db_session, SkillVersionDB, sample_skill.id) == 2

    async def test_note_too_long(
        self, client: AsyncClient, db_session: AsyncSession, sample_skill: SkillDB
    ):
        response = await client.post(
            f"{API}/{sample_skill.id}/publish", json={"note": "x" * 2001}
        )
        assert response.status_code == 400
        assert await _count(db_session, SkillPublicationDB, sample_skill.id) == 0

    async def test_publish_missing_skill(self, client: AsyncClient):
        response = await client.post(f"{API}/missing/publish", json={})
        assert response.status_code == 404

    async def test_list_publications(self, client: AsyncClient, sample_skill: SkillDB):
        await client.post(f"{API}/{sample_skill.id}/publish", json={"note": "one"})
        data = (await client.get(f"{API}/{sample_skill.id}/publications")).json()
        assert data["total"] == 1
        assert data["items"][0]["version"] == 1
        assert data["items"][0]["note"] == "one"


class TestVersioningUnavailable:

    async def test_versioning_endpoints_report_feature_unavailable(
        self, unversioned_client: AsyncClient
    ):
        created = await unversioned_client.post(API, json=skill_content())
        assert created.status_code == 201
        skill_id = created.json()["id"]

        for response in (
            await unversioned_client.get(f"{API}/{skill_id}/versions"),
            await unversioned_client.post(f"{API}/{skill_id}/publish", json={}),
            await unversioned_client.get(f"{API}/{skill_id}/publications"),
            await unversioned_client.post(
                f"{API}/{skill_id}/rollback", json={"versionId": "anything"}
            ),
        ):
            assert response.status_code == 503
            assert "Versioning is not initialized" in response.json()["error"]
