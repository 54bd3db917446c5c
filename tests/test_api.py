"""
Test API endpoints and edge cases.
"""

import pytest
from fastapi.testclient import TestClient

from conftest import ScriptedBackend

from clinex.ai.types import Domain
from clinex.api.app import ExtractRequest, build_unit, create_app
from clinex.exceptions import ValidationError

IBUPROFEN = {
    "unit_id": "conv-1",
    "kind": "conversation",
    "language": "en",
    "anchor_date": "2026-02-26",
    "messages": [{"role": "patient", "text": "I started ibuprofen 400mg twice a day since yesterday"}],
}


class TestAPI:
    """Test API endpoints"""

    @pytest.fixture
    def client(self, make_pipeline, review_queue):
        """Create test client around a scripted pipeline"""
        backend = ScriptedBackend({Domain.MEDICATION: "- Ibuprofen, 400mg, twice a day, yesterday, unknown (Msg 0)"})
        return TestClient(create_app(make_pipeline(backend), review_queue))

    def extract(self, client):
        response = client.post("/extract", json=IBUPROFEN)
        assert response.status_code == 200
        return response.json()

    def test_health_endpoint(self, client):
        """Test health check endpoint"""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data['status'] == 'healthy'
        assert data['environment'] == 'testing'
        assert data['pending_items'] == 0

    def test_extract_queues_items(self, client):
        """Test a conversation is extracted and queued"""
        data = self.extract(client)
        assert data['unit_id'] == 'conv-1'
        assert data['questions_asked'] == 2
        assert data['negative_domains'] == ['symptom']
        item = data['queued'][0]
        assert item['domain'] == 'medication'
        assert item['status'] == 'pending'
        assert item['extracted_data']['start_date'] == '2026-02-25'

        pending = client.get("/review/pending").json()
        assert [entry['id'] for entry in pending] == [item['id']]
        assert client.get("/review/count").json() == {'pending': 1}
        assert client.get(f"/review/{item['id']}").json()['id'] == item['id']

    def test_document_extraction(self, client):
        """Test a document unit without matching answers"""
        response = client.post("/extract", json={
            "unit_id": "doc-1",
            "kind": "document",
            "type_label": "lab_result",
            "anchor_date": "2026-02-26",
            "text": "Glucose 6.1 mmol/L",
        })
        assert response.status_code == 200
        data = response.json()
        assert data['queued'] == []
        assert data['negative_domains'] == ['metadata', 'lab_result']

    def test_confirm_is_terminal(self, client):
        """Test second confirm returns 409"""
        item_id = self.extract(client)['queued'][0]['id']
        response = client.post(f"/review/{item_id}/confirm")
        assert response.status_code == 200
        assert response.json()['status'] == 'confirmed'

        response = client.post(f"/review/{item_id}/confirm")
        assert response.status_code == 409
        assert response.json()['error_code'] == 'INVALID_TRANSITION'

        response = client.post(f"/review/{item_id}/dismiss")
        assert response.status_code == 409
        assert client.get("/review/count").json() == {'pending': 0}

    def test_confirm_with_edits(self, client):
        """Test reviewer overrides are applied"""
        item_id = self.extract(client)['queued'][0]['id']
        response = client.post(
            f"/review/{item_id}/confirm-with-edits",
            json={"field_overrides": {"dose": "200mg"}},
        )
        assert response.status_code == 200
        data = response.json()
        assert data['status'] == 'confirmed_with_edits'
        assert data['extracted_data']['dose'] == '200mg'

    def test_invalid_edits_return_422(self, client):
        """Test unknown fields are rejected and the item stays pending"""
        item_id = self.extract(client)['queued'][0]['id']
        response = client.post(
            f"/review/{item_id}/confirm-with-edits",
            json={"field_overrides": {"colour": "blue"}},
        )
        assert response.status_code == 422
        data = response.json()
        assert data['error_code'] == 'VALIDATION_ERROR'
        assert data['details']['field'] == 'colour'
        assert client.get(f"/review/{item_id}").json()['status'] == 'pending'

    def test_unknown_item_returns_404(self, client):
        """Test missing items"""
        response = client.post("/review/does-not-exist/confirm")
        assert response.status_code == 404
        assert response.json()['error_code'] == 'ITEM_NOT_FOUND'
        assert client.get("/review/does-not-exist").status_code == 404

    def test_dismiss_all(self, client):
        """Test bulk dismissal"""
        self.extract(client)
        response = client.post("/review/dismiss-all")
        assert response.status_code == 200
        assert response.json() == {'dismissed': 1}
        assert client.get("/review/pending").json() == []

    @pytest.mark.parametrize(
        "changes",
        [
            {"kind": "email"},
            {"messages": []},
            {"messages": [{"role": "doctor", "text": "hello"}]},
        ],
    )
    def test_malformed_units_return_422(self, client, changes):
        """Test unit shape validation"""
        response = client.post("/extract", json={**IBUPROFEN, **changes})
        assert response.status_code == 422
        assert response.json()['error_code'] == 'VALIDATION_ERROR'

    def test_missing_anchor_date(self, client):
        """Test request schema validation"""
        body = {key: value for key, value in IBUPROFEN.items() if key != "anchor_date"}
        response = client.post("/extract", json=body)
        assert response.status_code == 422

    def test_stats_endpoint(self, client):
        """Test statistics endpoint"""
        self.extract(client)
        response = client.get("/stats")
        assert response.status_code == 200
        data = response.json()
        assert data['processing_stats']['units_processed'] == 1
        assert data['processing_stats']['items_queued'] == 1
        assert data['review_stats'] == {'pending': 1, 'confirmed': 0}
        assert 'api_info' in data


def test_build_unit_requires_document_text():
    request = ExtractRequest(unit_id="doc-1", kind="document", anchor_date="2026-02-26", text="  ")
    with pytest.raises(ValidationError):
        build_unit(request)
