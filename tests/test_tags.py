"""
Route tests for domain tags: the organization tag list and per-domain
assignments.
"""

from __future__ import annotations

import pytest

from conftest import ORG_SLUG, login
from dmarc_analyser.models import AuditLog, DomainTag, DomainTagAssignment, Organization

_TAGS = f"/api/orgs/{ORG_SLUG}/tags"


def _domain_tags_url(domain):
    return f"/api/orgs/{ORG_SLUG}/domains/{domain.id}/tags"


def _tag(db, org, name, color="#6b7280"):
    tag = DomainTag(organization_id=org.id, name=name, color=color)
    db.session.add(tag)
    db.session.commit()
    return tag


@pytest.fixture
def viewer_client(app, add_member):
    add_member("viewer@example.com", "viewer")
    client = app.test_client()
    assert login(client, "viewer@example.com").status_code == 200
    return client


@pytest.fixture
def foreign_tag(db):
    other = Organization(name="Other", slug="other")
    db.session.add(other)
    db.session.commit()
    return _tag(db, other, "Theirs")


# ---------------------------------------------------------------------------
# Organization tags
# ---------------------------------------------------------------------------


def test_create_and_list_tags(auth_client, db):
    response = auth_client.post(_TAGS, json={"name": "  Production ", "color": "#22C55E"})
    assert response.status_code == 201
    assert response.get_json()["name"] == "Production"
    assert response.get_json()["color"] == "#22C55E"

    auth_client.post(_TAGS, json={"name": "Marketing", "color": "green"})

    tags = auth_client.get(_TAGS).get_json()["tags"]
    assert [(t["name"], t["color"]) for t in tags] == [("Marketing", "#6b7280"), ("Production", "#22C55E")]
    assert db.session.execute(db.select(AuditLog).where(AuditLog.action == "tag.create")).first() is not None


@pytest.mark.parametrize(
    ("payload", "status", "error"),
    [
        ({}, 400, "Tag name is required"),
        ({"name": "   "}, 400, "Tag name is required"),
        ({"name": "x" * 51}, 400, "Tag name must be 50 characters or less"),
        ({"name": "Existing"}, 409, "A tag with this name already exists"),
    ],
)
def test_create_tag_validation(auth_client, db, org, payload, status, error):
    _tag(db, org, "Existing")
    response = auth_client.post(_TAGS, json=payload)
    assert response.status_code == status
    assert response.get_json()["error"] == error


def test_update_tag(auth_client, db, org):
    tag = _tag(db, org, "Prod")
    _tag(db, org, "Staging")

    response = auth_client.patch(f"{_TAGS}/{tag.id}", json={"name": "Production", "color": "#000000"})
    assert response.get_json() == {"id": tag.id, "name": "Production", "color": "#000000"}

    assert auth_client.patch(f"{_TAGS}/{tag.id}", json={"name": "Staging"}).status_code == 409
    assert auth_client.patch(f"{_TAGS}/{tag.id}", json={"color": "blue"}).status_code == 400


def test_delete_tag_removes_assignments(auth_client, db, org, domain):
    tag = _tag(db, org, "Prod")
    db.session.add(DomainTagAssignment(domain_id=domain.id, tag_id=tag.id))
    db.session.commit()

    assert auth_client.delete(f"{_TAGS}/{tag.id}").get_json() == {"success": True}
    assert db.session.execute(db.select(DomainTagAssignment)).first() is None
    assert auth_client.delete(f"{_TAGS}/{tag.id}").status_code == 404


def test_other_org_tags_are_invisible(auth_client, foreign_tag):
    assert auth_client.get(_TAGS).get_json()["tags"] == []
    assert auth_client.patch(f"{_TAGS}/{foreign_tag.id}", json={"name": "Mine"}).status_code == 404
    assert auth_client.delete(f"{_TAGS}/{foreign_tag.id}").status_code == 404


def test_viewer_can_read_but_not_manage(viewer_client, db, org):
    tag = _tag(db, org, "Prod")
    assert viewer_client.get(_TAGS).status_code == 200
    assert viewer_client.post(_TAGS, json={"name": "New"}).status_code == 403
    assert viewer_client.delete(f"{_TAGS}/{tag.id}").status_code == 403


# ---------------------------------------------------------------------------
# Domain assignments
# ---------------------------------------------------------------------------


def test_assign_and_remove_domain_tag(auth_client, db, org, domain):
    tag = _tag(db, org, "Prod")
    url = _domain_tags_url(domain)

    assert auth_client.post(url, json={"tagId": tag.id}).status_code == 201
    assert auth_client.post(url, json={"tagId": tag.id}).status_code == 409
    assert auth_client.get(url).get_json()["tags"] == [{"id": tag.id, "name": "Prod", "color": "#6b7280"}]

    listed = auth_client.get(f"/api/orgs/{ORG_SLUG}/domains").get_json()["domains"]
    assert listed[0]["tags"][0]["name"] == "Prod"

    assert auth_client.delete(f"{url}?tagId={tag.id}").get_json() == {"success": True}
    assert auth_client.get(url).get_json()["tags"] == []
    assert auth_client.delete(url).status_code == 400


def test_assign_rejects_missing_and_foreign_tags(auth_client, domain, foreign_tag):
    url = _domain_tags_url(domain)
    assert auth_client.post(url, json={}).status_code == 400
    assert auth_client.post(url, json={"tagId": foreign_tag.id}).status_code == 404
    assert auth_client.post(f"/api/orgs/{ORG_SLUG}/domains/999/tags", json={"tagId": 1}).status_code == 404


def test_replace_domain_tags(auth_client, db, org, domain, foreign_tag):
    first, second, third = (_tag(db, org, n) for n in ("A", "B", "C"))
    url = _domain_tags_url(domain)
    auth_client.post(url, json={"tagId": first.id})

    assert auth_client.put(url, json={"tagIds": [second.id, third.id]}).get_json() == {"success": True}
    assert [t["name"] for t in auth_client.get(url).get_json()["tags"]] == ["B", "C"]

    assert auth_client.put(url, json={"tagIds": "B"}).status_code == 400
    assert auth_client.put(url, json={"tagIds": [second.id, foreign_tag.id]}).status_code == 400
    assert [t["name"] for t in auth_client.get(url).get_json()["tags"]] == ["B", "C"]

    auth_client.put(url, json={"tagIds": []})
    assert auth_client.get(url).get_json()["tags"] == []
