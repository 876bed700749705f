def _participant(admin, first_name="Alex", last_name="Nguyen", ndis_number="431234567"):
    res = admin.post(
        "/api/clients",
        json={"first_name": first_name, "last_name": last_name, "ndis_number": ndis_number},
    )
    assert res.status_code == 201, res.text
    return res.json()


def test_case_note_create_list_and_search(provision, add_staff):
    admin, _ = provision("sunrise")
    worker, worker_user = add_staff(admin, "sunrise", "casey")
    participant = _participant(admin)

    created = worker.post(
        "/api/case-notes",
        json={
            "client_id": participant["id"],
            "title": "Morning visit",
            "content": "Assisted with breakfast, mood was bright.",
            "tags": ["Meals", "meals", " mood "],
        },
    )
    assert created.status_code == 201, created.text
    note = created.json()
    assert note["author_user_id"] == worker_user["id"]
    assert note["category"] == "Progress Note"
    assert note["priority"] == "normal"
    assert note["tags"] == ["meals", "mood"]

    worker.post(
        "/api/case-notes",
        json={
            "client_id": participant["id"],
            "title": "Fall in bathroom",
            "content": "Minor fall, no injury. Family informed.",
            "category": "Incident Report",
            "priority": "high",
        },
    )

    listed = admin.get("/api/case-notes", params={"client_id": participant["id"]})
    assert len(listed.json()) == 2

    incidents = admin.get("/api/case-notes", params={"category": "Incident Report"}).json()
    assert [n["title"] for n in incidents] == ["Fall in bathroom"]

    found = admin.get("/api/case-notes", params={"q": "BREAKFAST"}).json()
    assert [n["id"] for n in found] == [note["id"]]


def test_case_note_validation(provision):
    admin, _ = provision("sunrise")
    participant = _participant(admin)

    bad_category = admin.post(
        "/api/case-notes",
        json={"client_id": participant["id"], "title": "x", "content": "y", "category": "Gossip"},
    )
    assert bad_category.status_code == 400

    missing_client = admin.post("/api/case-notes", json={"client_id": 999, "title": "x", "content": "y"})
    assert missing_client.status_code == 404

    missing_shift = admin.post(
        "/api/case-notes",
        json={"client_id": participant["id"], "title": "x", "content": "y", "linked_shift_id": 999},
    )
    assert missing_shift.status_code == 400


def test_only_author_or_manager_edits_case_note(provision, add_staff):
    admin, _ = provision("sunrise")
    author, _ = add_staff(admin, "sunrise", "casey")
    other, _ = add_staff(admin, "sunrise", "robin")
    participant = _participant(admin)
    note = author.post(
        "/api/case-notes",
        json={"client_id": participant["id"], "title": "Visit", "content": "All good"},
    ).json()

    assert other.patch(f"/api/case-notes/{note['id']}", json={"content": "Edited"}).status_code == 403

    own = author.patch(f"/api/case-notes/{note['id']}", json={"content": "All good, walked to park"})
    assert own.status_code == 200
    assert own.json()["content"] == "All good, walked to park"

    archived = admin.patch(f"/api/case-notes/{note['id']}", json={"is_archived": True})
    assert archived.status_code == 200
    assert admin.get("/api/case-notes").json() == []
    assert len(admin.get("/api/case-notes", params={"include_archived": True}).json()) == 1


def test_case_notes_are_tenant_scoped(provision):
    admin_a, _ = provision("sunrise")
    admin_b, _ = provision("moonlight")
    participant = _participant(admin_a)
    note = admin_a.post(
        "/api/case-notes",
        json={"client_id": participant["id"], "title": "Visit", "content": "All good"},
    ).json()

    assert admin_b.get(f"/api/case-notes/{note['id']}").status_code == 404
    assert admin_b.get("/api/case-notes").json() == []
    # A tenant cannot write a note against another tenant's participant.
    assert admin_b.post(
        "/api/case-notes",
        json={"client_id": participant["id"], "title": "x", "content": "y"},
    ).status_code == 404


def test_medication_records(provision, add_staff):
    admin, _ = provision("sunrise")
    worker, worker_user = add_staff(admin, "sunrise", "casey")
    participant = _participant(admin)

    given = worker.post(
        "/api/medication-records",
        json={"client_id": participant["id"], "medication_name": "Paracetamol", "dosage": "500mg"},
    )
    assert given.status_code == 201, given.text
    assert given.json()["status"] == "administered"
    assert given.json()["administered_by_user_id"] == worker_user["id"]

    refused_without_note = worker.post(
        "/api/medication-records",
        json={
            "client_id": participant["id"],
            "medication_name": "Paracetamol",
            "dosage": "500mg",
            "status": "refused",
        },
    )
    assert refused_without_note.status_code == 400

    refused = worker.post(
        "/api/medication-records",
        json={
            "client_id": participant["id"],
            "medication_name": "Paracetamol",
            "dosage": "500mg",
            "status": "refused",
            "notes": "Declined, said they felt fine",
        },
    )
    assert refused.status_code == 201

    only_refused = admin.get("/api/medication-records", params={"status": "refused"}).json()
    assert len(only_refused) == 1
    assert len(admin.get("/api/medication-records", params={"client_id": participant["id"]}).json()) == 2


def test_care_plan_sections_merge(provision, add_staff):
    admin, _ = provision("sunrise")
    worker, _ = add_staff(admin, "sunrise", "casey")
    participant = _participant(admin)

    payload = {
        "client_id": participant["id"],
        "title": "2025 support plan",
        "sections": {"about_me": {"likes": "gardening"}, "goals": ["Catch the bus alone"]},
    }
    assert worker.post("/api/care-plans", json=payload).status_code == 403

    created = admin.post("/api/care-plans", json=payload)
    assert created.status_code == 201, created.text
    plan = created.json()
    assert plan["status"] == "draft"

    updated = admin.patch(
        f"/api/care-plans/{plan['id']}",
        json={"status": "active", "sections": {"about_me": {"dislikes": "loud music"}}},
    )
    assert updated.status_code == 200
    body = updated.json()
    assert body["status"] == "active"
    assert body["sections"]["about_me"] == {"likes": "gardening", "dislikes": "loud music"}
    assert body["sections"]["goals"] == ["Catch the bus alone"]

    unknown = admin.patch(f"/api/care-plans/{plan['id']}", json={"sections": {"horoscope": "Leo"}})
    assert unknown.status_code == 400

    # Workers can read plans.
    assert worker.get(f"/api/care-plans/{plan['id']}").status_code == 200
    assert len(worker.get("/api/care-plans", params={"client_id": participant["id"]}).json()) == 1


def test_form_template_and_submissions(provision, add_staff):
    admin, _ = provision("sunrise")
    worker, _ = add_staff(admin, "sunrise", "casey")
    participant = _participant(admin)

    template = admin.post(
        "/api/forms",
        json={
            "name": "Vehicle check",
            "category": "Safety",
            "fields": [
                {"key": "odometer", "label": "Odometer", "type": "number", "required": True},
                {"key": "tyres_ok", "label": "Tyres OK", "type": "checkbox"},
            ],
        },
    )
    assert template.status_code == 201, template.text
    template_id = template.json()["id"]

    duplicate_key = admin.post(
        "/api/forms",
        json={
            "name": "Broken form",
            "fields": [
                {"key": "a", "label": "A"},
                {"key": "a", "label": "Again"},
            ],
        },
    )
    assert duplicate_key.status_code == 400

    missing = worker.post(f"/api/forms/{template_id}/submissions", json={"answers": {"tyres_ok": True}})
    assert missing.status_code == 400
    assert "odometer" in missing.json()["detail"]

    submitted = worker.post(
        f"/api/forms/{template_id}/submissions",
        json={"client_id": participant["id"], "answers": {"odometer": 10452, "tyres_ok": True}},
    )
    assert submitted.status_code == 201
    assert submitted.json()["answers"]["odometer"] == 10452

    assert worker.get(f"/api/forms/{template_id}/submissions").status_code == 403
    listed = admin.get(f"/api/forms/{template_id}/submissions")
    assert len(listed.json()) == 1

    assert worker.post("/api/forms/999/submissions", json={"answers": {}}).status_code == 404


def test_client_archive_restore_and_export(provision):
    admin, _ = provision("sunrise")
    alex = _participant(admin)
    _participant(admin, first_name="Bo", last_name="Tran", ndis_number="439876543")

    duplicate = admin.post(
        "/api/clients",
        json={"first_name": "Dup", "last_name": "Licate", "ndis_number": "431234567"},
    )
    assert duplicate.status_code == 400

    archived = admin.post(f"/api/clients/{alex['id']}/archive")
    assert archived.status_code == 200
    assert archived.json()["is_active"] is False
    assert [c["last_name"] for c in admin.get("/api/clients").json()] == ["Tran"]
    assert len(admin.get("/api/clients", params={"include_archived": True}).json()) == 2

    csv_res = admin.get("/api/exports/clients.csv")
    assert csv_res.status_code == 200
    assert csv_res.headers["content-type"].startswith("text/csv")
    lines = csv_res.text.strip().splitlines()
    assert lines[0].startswith("id,first_name,last_name")
    assert len(lines) == 2

    restored = admin.post(f"/api/clients/{alex['id']}/restore")
    assert restored.json()["is_active"] is True
    assert len(admin.get("/api/exports/clients.csv").text.strip().splitlines()) == 3


def test_activity_log_records_changes(provision, add_staff):
    admin, _ = provision("sunrise")
    worker, _ = add_staff(admin, "sunrise", "casey")
    participant = _participant(admin)

    entries = admin.get("/api/activity-logs", params={"resource_type": "client"}).json()
    assert entries[0]["action"] == "client_created"
    assert entries[0]["resource_id"] == participant["id"]

    assert worker.get("/api/activity-logs").status_code == 403


def test_activity_log_carries_request_id(provision):
    admin, _ = provision("sunrise")
    res = admin.post(
        "/api/clients",
        json={"first_name": "Robin", "last_name": "Lee"},
        headers={"X-Request-ID": "req-client-intake-7"},
    )
    assert res.status_code == 201
    assert res.headers["X-Request-ID"] == "req-client-intake-7"

    entries = admin.get(
        "/api/activity-logs", params={"resource_type": "client", "resource_id": res.json()["id"]}
    ).json()
    assert [e["request_id"] for e in entries] == ["req-client-intake-7"]
