"""
Tests for the HTTP API.

Route modules look services up through their get_* singletons; each test
patches those with services bound to the temporary database.
"""
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from api.main import app
from api.services.external_contact_store import ExternalContact, MethodEntry
from api.services.identifiers import METHOD_EMAIL_PERSONAL
from api.services.identity_service import MatchRequest
from api.services.sync_provider import ProviderRegistry
from api.services.sync_service import SyncService

pytestmark = pytest.mark.integration


@pytest.fixture
def client():
    """Test client without lifespan, so no scheduler thread starts."""
    return TestClient(app)


@pytest.fixture
def sync_service(state_store, contact_store, clock, fake_provider):
    registry = ProviderRegistry()
    registry.register(fake_provider(name="fake"))
    return SyncService(registry, state_store=state_store, contact_store=contact_store,
                       clock=clock, backoff_minutes=[1, 5])


class TestIdentityEndpoints:
    """Tests for /api/identities."""

    def test_match_exact(self, client, identity_service, contact_store):
        contact = contact_store.create_contact("Jane", [(METHOD_EMAIL_PERSONAL, "jane@example.com")])

        with patch('api.routes.identity.get_identity_service', return_value=identity_service):
            response = client.post("/api/identities/match", json={
                "identifier": "JANE@example.com",
                "identifier_type": "email",
                "source": "gmail",
            })

        assert response.status_code == 200
        data = response.json()
        assert data["contact_id"] == contact.id
        assert data["match_type"] == "exact"
        assert data["cached"] is False
        assert data["identity"]["identifier"] == "jane@example.com"

    def test_match_invalid_identifier(self, client, identity_service):
        with patch('api.routes.identity.get_identity_service', return_value=identity_service):
            response = client.post("/api/identities/match", json={
                "identifier": "not a phone",
                "identifier_type": "phone",
                "source": "imessage",
            })
        assert response.status_code == 400

    def test_match_missing_fields(self, client):
        response = client.post("/api/identities/match", json={"identifier": "x@example.com"})
        assert response.status_code == 400
        assert response.json()["error"] == "Validation error"

    def test_match_unknown_known_contact(self, client, identity_service):
        with patch('api.routes.identity.get_identity_service', return_value=identity_service):
            response = client.post("/api/identities/match", json={
                "identifier": "x@example.com",
                "identifier_type": "email",
                "source": "gmail",
                "known_contact_id": "missing",
            })
        assert response.status_code == 404

    def test_unmatched_review_and_link(self, client, identity_service, contact_store):
        contact = contact_store.create_contact("Jane")
        with patch('api.routes.identity.get_identity_service', return_value=identity_service):
            client.post("/api/identities/match", json={
                "identifier": "stranger@example.com", "identifier_type": "email", "source": "gcal",
            })

            listing = client.get("/api/identities/unmatched").json()
            assert listing["count"] == 1
            assert listing["total"] == 1
            identity_id = listing["identities"][0]["id"]

            assert client.get("/api/identities/unmatched/count").json() == {"count": 1}

            linked = client.post(f"/api/identities/{identity_id}/link", json={"contact_id": contact.id})
            assert linked.status_code == 200
            assert linked.json()["match_type"] == "manual"

            for_contact = client.get(f"/api/identities/contact/{contact.id}").json()
            assert [i["id"] for i in for_contact["identities"]] == [identity_id]

            unlinked = client.post(f"/api/identities/{identity_id}/unlink")
            assert unlinked.json()["contact_id"] is None

    def test_bulk_link(self, client, identity_service, contact_store):
        contact = contact_store.create_contact("Jane")
        with patch('api.routes.identity.get_identity_service', return_value=identity_service):
            ids = [
                client.post("/api/identities/match", json={
                    "identifier": f"j{n}@example.com", "identifier_type": "email", "source": "gcal",
                }).json()["identity"]["id"]
                for n in range(2)
            ]

            ok = client.post("/api/identities/bulk-link", json={"identity_ids": ids, "contact_id": contact.id})
            missing = client.post("/api/identities/bulk-link",
                                  json={"identity_ids": ["nope"], "contact_id": contact.id})
            empty = client.post("/api/identities/bulk-link", json={"identity_ids": [], "contact_id": contact.id})

        assert ok.json() == {"linked": 2, "contact_id": contact.id}
        assert missing.status_code == 404
        assert empty.status_code == 400

    def test_get_and_delete(self, client, identity_service):
        with patch('api.routes.identity.get_identity_service', return_value=identity_service):
            identity_id = client.post("/api/identities/match", json={
                "identifier": "x@example.com", "identifier_type": "email", "source": "gcal",
            }).json()["identity"]["id"]

            assert client.get(f"/api/identities/{identity_id}").status_code == 200
            assert client.delete(f"/api/identities/{identity_id}").json() == {"deleted": True, "id": identity_id}
            assert client.get(f"/api/identities/{identity_id}").status_code == 404
            assert client.delete(f"/api/identities/{identity_id}").status_code == 404


class TestSyncEndpoints:
    """Tests for /api/sync."""

    def test_providers(self, client, sync_service):
        with patch('api.routes.sync.get_sync_service', return_value=sync_service):
            data = client.get("/api/sync/providers").json()
        assert data["count"] == 1
        assert data["providers"][0]["name"] == "fake"
        assert data["providers"][0]["default_interval_seconds"] == 3600

    def test_trigger_and_inspect(self, client, sync_service):
        with patch('api.routes.sync.get_sync_service', return_value=sync_service):
            response = client.post("/api/sync/fake/trigger", json={"account_id": "me@example.com"})
            assert response.status_code == 200
            run = response.json()
            assert run["outcome"] == "success"
            assert run["result"]["items_processed"] == 3

            states = client.get("/api/sync/states").json()
            assert states["count"] == 1
            state = states["states"][0]
            assert state["account_id"] == "me@example.com"
            assert state["has_cursor"] is True
            assert "sync_cursor" not in state

            assert client.get(f"/api/sync/states/{state['id']}").json()["status"] == "idle"

            logs = client.get(f"/api/sync/states/{state['id']}/logs").json()
            assert logs["count"] == 1
            assert logs["logs"][0]["status"] == "success"
            assert client.get("/api/sync/logs/recent").json()["count"] == 1

    def test_trigger_without_body(self, client, sync_service):
        with patch('api.routes.sync.get_sync_service', return_value=sync_service):
            response = client.post("/api/sync/fake/trigger")
        assert response.status_code == 200
        assert response.json()["account_id"] is None

    def test_trigger_unknown_source(self, client, sync_service):
        with patch('api.routes.sync.get_sync_service', return_value=sync_service):
            response = client.post("/api/sync/nope/trigger")
        assert response.status_code == 404

    def test_trigger_in_progress(self, client, sync_service, state_store, clock):
        state = sync_service.ensure_state("fake")
        state_store.claim(state.id, clock.now())
        with patch('api.routes.sync.get_sync_service', return_value=sync_service):
            response = client.post("/api/sync/fake/trigger")
        assert response.status_code == 409

    def test_disable_then_trigger(self, client, sync_service):
        state = sync_service.ensure_state("fake")
        with patch('api.routes.sync.get_sync_service', return_value=sync_service):
            patched = client.patch(f"/api/sync/states/{state.id}", json={"enabled": False})
            assert patched.json()["status"] == "disabled"
            assert client.post("/api/sync/fake/trigger").status_code == 400

            enabled = client.patch(f"/api/sync/states/{state.id}", json={"enabled": True})
            assert enabled.json()["next_sync_at"] is None

    def test_missing_state(self, client, sync_service):
        with patch('api.routes.sync.get_sync_service', return_value=sync_service):
            assert client.get("/api/sync/states/missing").status_code == 404
            assert client.get("/api/sync/states/missing/logs").status_code == 404
            assert client.patch("/api/sync/states/missing", json={"enabled": True}).status_code == 404


class TestImportEndpoints:
    """Tests for /api/imports."""

    def test_list_suggest_ignore(self, client, external_store, import_service, contact_store):
        jane = contact_store.create_contact("Jane Doe", [(METHOD_EMAIL_PERSONAL, "jane@example.com")])
        record, _ = external_store.upsert(ExternalContact(
            source="gcontacts", source_id="people/1", account_id="me@example.com",
            display_name="Jane Doe", emails=[MethodEntry(value="jane@example.com")],
        ))
        external_store.upsert(ExternalContact(
            source="gcal_attendee", source_id="x@example.com", display_name="X",
        ))

        with patch('api.routes.imports.get_import_service', return_value=import_service):
            listing = client.get("/api/imports/", params={"source": "gcontacts"}).json()
            assert listing["count"] == 1
            assert listing["total"] == 1
            assert listing["candidates"][0]["id"] == record.id

            assert client.get(f"/api/imports/{record.id}").json()["display_name"] == "Jane Doe"

            suggestion = client.get(f"/api/imports/{record.id}/suggestion").json()
            assert suggestion["suggestion"]["contact_id"] == jane.id
            assert suggestion["suggestion"]["confidence"] == 1.0

            ignored = client.post(f"/api/imports/{record.id}/ignore")
            assert ignored.json()["match_status"] == "ignored"
            assert client.get("/api/imports/").json()["total"] == 1

            assert client.get("/api/imports/missing").status_code == 404
            assert client.get("/api/imports/missing/suggestion").status_code == 404
            assert client.post("/api/imports/missing/ignore").status_code == 404

    def test_link_candidate(self, client, external_store, import_service, identity_service, contact_store):
        jane = contact_store.create_contact("Jane Doe")
        record, _ = external_store.upsert(ExternalContact(
            source="gcontacts", source_id="people/1", account_id="me@example.com",
            display_name="J. Doe", emails=[MethodEntry(value="jd@corp.example.com")],
        ))
        identity = identity_service.match_or_create(MatchRequest(
            identifier="jd@corp.example.com", identifier_type="email", source="gcontacts",
        )).identity

        with patch('api.routes.imports.get_import_service', return_value=import_service):
            response = client.post(f"/api/imports/{record.id}/link", json={"contact_id": jane.id})

            assert response.status_code == 200
            assert response.json()["match_status"] == "matched"
            assert response.json()["crm_contact_id"] == jane.id
            assert identity_service.get_identity(identity.id).contact_id == jane.id

            linked = client.get(f"/api/imports/contact/{jane.id}").json()
            assert linked["count"] == 1
            assert linked["records"][0]["id"] == record.id
            assert client.get("/api/imports/").json()["total"] == 0

    def test_link_errors(self, client, external_store, import_service, contact_store):
        jane = contact_store.create_contact("Jane Doe")
        record, _ = external_store.upsert(ExternalContact(
            source="gcontacts", source_id="people/1", display_name="Jane",
        ))

        with patch('api.routes.imports.get_import_service', return_value=import_service):
            assert client.post("/api/imports/missing/link", json={"contact_id": jane.id}).status_code == 404
            assert client.post(f"/api/imports/{record.id}/link", json={"contact_id": "nobody"}).status_code == 404
            assert client.post(f"/api/imports/{record.id}/link", json={}).status_code == 422
            assert external_store.get(record.id).match_status == "unmatched"

    def test_delete_candidate(self, client, external_store, import_service):
        record, _ = external_store.upsert(ExternalContact(
            source="gcontacts", source_id="people/1", display_name="Jane",
        ))

        with patch('api.routes.imports.get_import_service', return_value=import_service):
            assert client.delete(f"/api/imports/{record.id}").json() == {"deleted": True, "id": record.id}
            assert client.delete(f"/api/imports/{record.id}").status_code == 404


class TestHealth:
    """Tests for /health."""

    def test_health_reports_database(self, client):
        with patch('api.main.settings') as mock_settings:
            mock_settings.sync_scheduler_enabled = False
            with patch('api.services.sync_state.get_sync_state_store') as mock_store:
                mock_store.return_value.list_all.return_value = []
                data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["checks"] == {"database": True}
