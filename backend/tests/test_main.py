"""Tests for the FamilyTree HTTP endpoints."""

import json
import os
import pytest
import sys

# Add backend to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi.testclient import TestClient

import main
from family_tree import create_node


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def client():
    """Client with the app lifespan running, so each test gets a fresh forest."""
    with TestClient(main.app) as test_client:
        yield test_client


@pytest.fixture
def family(client):
    """Dad (2) with children ME (1) and Sis (3)."""
    client.post("/nodes/1/parent", json={"name": "Dad"})
    client.post("/nodes/2/child", json={"name": "Sis"})
    return client


# ============================================================================
# Read Endpoint Tests
# ============================================================================

class TestReadEndpoints:
    """Tests for health and node listing."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["forest_loaded"] is True
        assert data["node_count"] == 1
        assert data["consistent"] is True

    def test_list_nodes(self, client):
        response = client.get("/nodes")
        assert response.json() == {
            "nodes": [{"id": 1, "name": "ME", "parentId": None, "children": []}]
        }

    def test_read_node(self, family):
        response = family.get("/nodes/2")
        assert response.status_code == 200
        assert response.json()["children"] == [1, 3]

    def test_read_unknown_node(self, client):
        response = client.get("/nodes/99")
        assert response.status_code == 404


# ============================================================================
# Mutation Endpoint Tests
# ============================================================================

class TestMutationEndpoints:
    """Tests for the add and delete endpoints."""

    def test_add_parent(self, client):
        response = client.post("/nodes/1/parent", json={"name": "Dad"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["message"] == "Parent added successfully"
        assert data["node"] == {"id": 2, "name": "Dad", "parentId": None, "children": [1]}

    def test_add_parent_blank_name(self, client):
        response = client.post("/nodes/1/parent", json={"name": "  "})
        assert response.status_code == 400
        assert response.json()["detail"] == "Please insert the parent name"

    def test_add_parent_missing_name_field(self, client):
        response = client.post("/nodes/1/parent", json={})
        assert response.status_code == 400

    def test_add_second_parent_conflicts(self, family):
        response = family.post("/nodes/1/parent", json={"name": "Mom"})
        assert response.status_code == 409
        assert response.json()["detail"] == "Node already has a parent"

    def test_add_sibling(self, family):
        response = family.post("/nodes/1/sibling", json={"name": "Bro"})
        assert response.status_code == 200
        assert response.json()["node"]["parentId"] == 2

    def test_add_sibling_without_parent(self, client):
        response = client.post("/nodes/1/sibling", json={"name": "X"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Node has no parent, cannot add sibling"
        assert len(client.get("/nodes").json()["nodes"]) == 1

    def test_add_child(self, client):
        response = client.post("/nodes/1/child", json={"name": "Kid"})
        assert response.status_code == 200
        assert response.json()["node"]["parentId"] == 1

    def test_add_child_unknown_node(self, client):
        response = client.post("/nodes/42/child", json={"name": "Kid"})
        assert response.status_code == 404

    def test_delete_protected(self, family):
        response = family.delete("/nodes/2")
        assert response.status_code == 409
        assert response.json()["detail"] == "Cannot delete ME or his parent"
        assert len(family.get("/nodes").json()["nodes"]) == 3

    def test_delete_node(self, family):
        response = family.delete("/nodes/3")
        assert response.status_code == 200
        assert response.json()["removed"] == [3]
        assert [n["id"] for n in family.get("/nodes").json()["nodes"]] == [1, 2]

    def test_reset(self, family):
        response = family.post("/reset")
        assert response.status_code == 200
        assert [n["name"] for n in response.json()["nodes"]] == ["ME"]


# ============================================================================
# Export Endpoint Tests
# ============================================================================

class TestExportEndpoints:
    """Tests for exporting the largest tree."""

    def test_export(self, family):
        response = family.post("/export")

        assert response.status_code == 200
        data = response.json()
        assert data["root_id"] == 2
        assert set(data) == {"root_id", "content"}
        assert json.loads(data["content"]) == {
            "id": 2,
            "name": "Dad",
            "children": [{"id": 1, "name": "ME"}, {"id": 3, "name": "Sis"}],
        }

    def test_export_deep_family_line(self, client):
        """Test that a line of 1200 generations exports instead of failing."""
        node = main.current_forest.nodes[1]
        for i in range(1200):
            node = create_node(main.current_forest, f"Gen {i}", parent_id=node.id)

        response = client.post("/export")

        assert response.status_code == 200
        assert response.json()["root_id"] == 1
        assert response.json()["content"].count('"id":') == 1201

    def test_read_export_before_export(self, client):
        response = client.get("/export")
        assert response.status_code == 404

    def test_read_export_after_export(self, family):
        exported = family.post("/export", params={"roots_only": True}).json()
        response = family.get("/export")
        assert response.status_code == 200
        assert response.json()["content"] == exported["content"]

    def test_export_empty_forest(self, client):
        main.current_forest.nodes.clear()
        response = client.post("/export")
        assert response.status_code == 409
