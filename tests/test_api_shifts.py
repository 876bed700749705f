from datetime import datetime, timedelta, timezone


def _future(days: int, hour: int = 9) -> datetime:
    base = datetime.now(timezone.utc).replace(tzinfo=None).replace(hour=hour, minute=0, second=0, microsecond=0)
    return base + timedelta(days=days)


def _create_client(admin, **overrides):
    payload = {"first_name": "Jordan", "last_name": "Citizen", "ndis_number": "430000001"}
    payload.update(overrides)
    res = admin.post("/api/clients", json=payload)
    assert res.status_code == 201, res.text
    return res.json()


def _create_shift(admin, start: datetime, hours: int = 2, **extra):
    payload = {
        "title": "Community access",
        "start_time": start.isoformat(),
        "end_time": (start + timedelta(hours=hours)).isoformat(),
    }
    payload.update(extra)
    res = admin.post("/api/shifts", json=payload)
    assert res.status_code == 201, res.text
    return res.json()


def test_create_shift_sets_status_from_assignee(provision, add_staff):
    admin, _ = provision("sunrise")
    _, worker = add_staff(admin, "sunrise", "casey")
    participant = _create_client(admin)

    open_shift = _create_shift(admin, _future(3), client_id=participant["id"])
    assert open_shift["status"] == "unassigned"
    assert open_shift["user_id"] is None

    assigned = _create_shift(admin, _future(4), user_id=worker["id"], client_id=participant["id"])
    assert assigned["status"] == "assigned"
    assert assigned["user_id"] == worker["id"]

    bad = admin.post(
        "/api/shifts",
        json={
            "title": "Backwards",
            "start_time": _future(5, 12).isoformat(),
            "end_time": _future(5, 10).isoformat(),
        },
    )
    assert bad.status_code == 422


def test_shift_rejects_client_from_another_tenant(provision):
    admin_a, _ = provision("sunrise")
    admin_b, _ = provision("moonlight")
    foreign = _create_client(admin_b)

    res = admin_a.post(
        "/api/shifts",
        json={
            "title": "Visit",
            "start_time": _future(2).isoformat(),
            "end_time": _future(2, 11).isoformat(),
            "client_id": foreign["id"],
        },
    )
    assert res.status_code == 400
    assert admin_a.get(f"/api/clients/{foreign['id']}").status_code == 404


def test_recurring_preview_and_create(provision):
    admin, _ = provision("sunrise")
    start = datetime(2031, 1, 31, 9, 0)
    recurrence = {"unit": "monthly", "end_condition": "occurrences", "occurrences": 4}

    preview = admin.post(
        "/api/shifts/recurring/preview",
        json={
            "start_time": start.isoformat(),
            "end_time": (start + timedelta(hours=3)).isoformat(),
            "recurrence": recurrence,
        },
    )
    assert preview.status_code == 200
    body = preview.json()
    assert body["count"] == 4
    assert [o["start_time"][:10] for o in body["occurrences"]] == [
        "2031-01-31",
        "2031-02-28",
        "2031-03-31",
        "2031-04-30",
    ]

    created = admin.post(
        "/api/shifts/recurring",
        json={
            "title": "Monthly review",
            "start_time": start.isoformat(),
            "end_time": (start + timedelta(hours=3)).isoformat(),
            "recurrence": recurrence,
        },
    )
    assert created.status_code == 201
    series = created.json()
    assert series["count"] == 4
    assert series["series_id"].startswith("series_")
    assert {s["series_id"] for s in series["shifts"]} == {series["series_id"]}

    listed = admin.get("/api/shifts", params={"series_id": series["series_id"]})
    assert listed.status_code == 200
    assert len(listed.json()) == 4


def test_recurrence_end_condition_is_exclusive(provision):
    admin, _ = provision("sunrise")
    start = _future(2)
    base = {
        "start_time": start.isoformat(),
        "end_time": (start + timedelta(hours=2)).isoformat(),
    }

    both = admin.post(
        "/api/shifts/recurring/preview",
        json={
            **base,
            "recurrence": {
                "unit": "weekly",
                "end_condition": "occurrences",
                "occurrences": 3,
                "end_date": (start + timedelta(days=30)).date().isoformat(),
            },
        },
    )
    assert both.status_code == 422

    missing = admin.post(
        "/api/shifts/recurring/preview",
        json={**base, "recurrence": {"unit": "weekly", "end_condition": "end_date"}},
    )
    assert missing.status_code == 422

    too_many = admin.post(
        "/api/shifts/recurring/preview",
        json={**base, "recurrence": {"unit": "weekly", "end_condition": "occurrences", "occurrences": 53}},
    )
    assert too_many.status_code == 422


def test_recurring_series_is_all_or_nothing(provision):
    admin, _ = provision("sunrise")
    start = _future(2)
    res = admin.post(
        "/api/shifts/recurring",
        json={
            "title": "Weekly support",
            "start_time": start.isoformat(),
            "end_time": (start + timedelta(hours=2)).isoformat(),
            "user_id": 999999,
            "recurrence": {"unit": "weekly", "end_condition": "occurrences", "occurrences": 5},
        },
    )
    assert res.status_code == 400
    assert admin.get("/api/shifts").json() == []


def test_cancel_series_only_touches_future_open_instances(provision):
    admin, _ = provision("sunrise")
    start = _future(1)
    created = admin.post(
        "/api/shifts/recurring",
        json={
            "title": "Daily check-in",
            "start_time": start.isoformat(),
            "end_time": (start + timedelta(hours=1)).isoformat(),
            "recurrence": {"unit": "daily", "end_condition": "occurrences", "occurrences": 4},
        },
    ).json()
    series_id = created["series_id"]

    cutoff = (start + timedelta(days=2)).isoformat()
    res = admin.post(f"/api/shifts/series/{series_id}/cancel", json={"from_time": cutoff})
    assert res.status_code == 200
    assert res.json() == {"series_id": series_id, "cancelled": 2}

    statuses = [s["status"] for s in admin.get("/api/shifts", params={"series_id": series_id}).json()]
    assert statuses == ["unassigned", "unassigned", "cancelled", "cancelled"]

    assert admin.post("/api/shifts/series/series_missing/cancel", json={}).status_code == 404


def test_clash_check(provision, add_staff):
    admin, _ = provision("sunrise")
    _, worker = add_staff(admin, "sunrise", "casey")
    start = _future(3)
    existing = _create_shift(admin, start, hours=4, user_id=worker["id"])

    overlapping = admin.post(
        "/api/shifts/check-clash",
        json={
            "user_id": worker["id"],
            "start_time": (start + timedelta(hours=2)).isoformat(),
            "end_time": (start + timedelta(hours=6)).isoformat(),
        },
    )
    assert overlapping.status_code == 200
    assert overlapping.json()["has_clash"] is True
    assert [s["id"] for s in overlapping.json()["clashes"]] == [existing["id"]]

    touching = admin.post(
        "/api/shifts/check-clash",
        json={
            "user_id": worker["id"],
            "start_time": (start + timedelta(hours=4)).isoformat(),
            "end_time": (start + timedelta(hours=6)).isoformat(),
        },
    )
    assert touching.json()["has_clash"] is False

    excluded = admin.post(
        "/api/shifts/check-clash",
        json={
            "user_id": worker["id"],
            "start_time": start.isoformat(),
            "end_time": (start + timedelta(hours=1)).isoformat(),
            "exclude_shift_id": existing["id"],
        },
    )
    assert excluded.json()["has_clash"] is False


def test_request_approve_start_and_complete(provision, add_staff):
    admin, _ = provision("sunrise")
    worker, worker_user = add_staff(admin, "sunrise", "casey")
    other, _ = add_staff(admin, "sunrise", "robin")
    shift = _create_shift(admin, _future(2))

    requested = worker.post(f"/api/shifts/{shift['id']}/request")
    assert requested.status_code == 200
    assert requested.json()["status"] == "requested"
    assert requested.json()["user_id"] == worker_user["id"]

    assert other.post(f"/api/shifts/{shift['id']}/request").status_code == 400
    assert worker.post(f"/api/shifts/{shift['id']}/approve").status_code == 403

    approved = admin.post(f"/api/shifts/{shift['id']}/approve")
    assert approved.status_code == 200
    assert approved.json()["status"] == "assigned"

    assert other.post(f"/api/shifts/{shift['id']}/start").status_code == 403
    started = worker.post(f"/api/shifts/{shift['id']}/start")
    assert started.status_code == 200
    assert started.json()["status"] == "in-progress"
    assert started.json()["start_timestamp"] is not None

    reassign = admin.patch(f"/api/shifts/{shift['id']}", json={"user_id": None})
    assert reassign.status_code == 400

    done = worker.post(f"/api/shifts/{shift['id']}/end")
    assert done.status_code == 200
    assert done.json()["status"] == "completed"
    assert done.json()["end_timestamp"] is not None

    assert admin.patch(f"/api/shifts/{shift['id']}", json={"title": "Late edit"}).status_code == 400


def test_reject_request_returns_shift_to_pool(provision, add_staff):
    admin, _ = provision("sunrise")
    worker, _ = add_staff(admin, "sunrise", "casey")
    shift = _create_shift(admin, _future(2))

    worker.post(f"/api/shifts/{shift['id']}/request")
    rejected = admin.post(f"/api/shifts/{shift['id']}/reject")
    assert rejected.status_code == 200
    assert rejected.json()["status"] == "unassigned"
    assert rejected.json()["user_id"] is None


def test_cancellation_with_notice_releases_shift(provision, add_staff):
    admin, _ = provision("sunrise")
    worker, worker_user = add_staff(admin, "sunrise", "casey")
    shift = _create_shift(admin, _future(5), user_id=worker_user["id"])

    res = worker.post(f"/api/shifts/{shift['id']}/cancel", json={"reason": "Family event"})
    assert res.status_code == 200
    body = res.json()
    assert body["shift"]["status"] == "unassigned"
    assert body["shift"]["user_id"] is None
    assert body["cancellation"]["cancellation_type"] == "immediate"
    assert body["cancellation"]["status"] == "approved"
    assert body["cancellation"]["hours_notice"] >= 24


def test_short_notice_cancellation_needs_review(provision, add_staff):
    admin, _ = provision("sunrise")
    worker, worker_user = add_staff(admin, "sunrise", "casey")
    soon = datetime.now(timezone.utc).replace(tzinfo=None).replace(microsecond=0) + timedelta(hours=3)
    shift = _create_shift(admin, soon, user_id=worker_user["id"])

    res = worker.post(f"/api/shifts/{shift['id']}/cancel", json={"reason": "Unwell"})
    assert res.status_code == 200
    body = res.json()
    assert body["shift"]["status"] == "cancellation-requested"
    assert body["shift"]["user_id"] == worker_user["id"]
    assert body["cancellation"]["cancellation_type"] == "requested"
    assert body["cancellation"]["status"] == "pending"

    pending = admin.get("/api/shift-cancellations", params={"status": "pending"})
    assert [c["id"] for c in pending.json()] == [body["cancellation"]["id"]]

    reviewed = admin.post(
        f"/api/shift-cancellations/{body['cancellation']['id']}/review",
        json={"approve": True, "note": "Cover arranged"},
    )
    assert reviewed.status_code == 200
    assert reviewed.json()["status"] == "approved"

    after = admin.get(f"/api/shifts/{shift['id']}").json()
    assert after["status"] == "unassigned"
    assert after["user_id"] is None

    again = admin.post(f"/api/shift-cancellations/{body['cancellation']['id']}/review", json={"approve": False})
    assert again.status_code == 400


def test_worker_cannot_cancel_someone_elses_shift(provision, add_staff):
    admin, _ = provision("sunrise")
    _, owner = add_staff(admin, "sunrise", "casey")
    intruder, _ = add_staff(admin, "sunrise", "robin")
    shift = _create_shift(admin, _future(5), user_id=owner["id"])

    assert intruder.post(f"/api/shifts/{shift['id']}/cancel", json={}).status_code == 403


def test_workers_only_see_own_and_open_shifts(provision, add_staff):
    admin, _ = provision("sunrise")
    worker, worker_user = add_staff(admin, "sunrise", "casey")
    _, other_user = add_staff(admin, "sunrise", "robin")

    mine = _create_shift(admin, _future(2), user_id=worker_user["id"])
    theirs = _create_shift(admin, _future(3), user_id=other_user["id"])
    open_shift = _create_shift(admin, _future(4))

    visible = {s["id"] for s in worker.get("/api/shifts").json()}
    assert visible == {mine["id"], open_shift["id"]}
    assert len(admin.get("/api/shifts").json()) == 3
    assert theirs["id"] not in visible


def test_deleting_user_unassigns_their_shifts(provision, add_staff):
    admin, _ = provision("sunrise")
    _, worker_user = add_staff(admin, "sunrise", "casey")
    shift = _create_shift(admin, _future(2), user_id=worker_user["id"])

    res = admin.delete(f"/api/users/{worker_user['id']}")
    assert res.status_code == 204

    after = admin.get(f"/api/shifts/{shift['id']}").json()
    assert after["user_id"] is None
    assert after["status"] == "unassigned"


def test_admin_cannot_delete_self(provision):
    admin, _ = provision("sunrise")
    me = admin.get("/api/auth/user").json()
    assert admin.delete(f"/api/users/{me['id']}").status_code == 400


def test_delete_endpoint_cancels_instead_of_removing(provision):
    admin, _ = provision("sunrise")
    shift = _create_shift(admin, _future(2))

    res = admin.delete(f"/api/shifts/{shift['id']}")
    assert res.status_code == 200
    assert res.json()["status"] == "cancelled"
    assert admin.get(f"/api/shifts/{shift['id']}").status_code == 200
    assert admin.get("/api/shifts/status-counts").json() == {"cancelled": 1}


def test_shifts_are_invisible_across_tenants(provision):
    admin_a, _ = provision("sunrise")
    admin_b, _ = provision("moonlight")
    shift = _create_shift(admin_a, _future(2))

    assert admin_b.get(f"/api/shifts/{shift['id']}").status_code == 404
    assert admin_b.post(f"/api/shifts/{shift['id']}/approve").status_code == 404
    assert admin_b.get("/api/shifts").json() == []


def test_shifts_csv_export(provision):
    admin, _ = provision("sunrise")
    start = datetime(2031, 5, 5, 9, 0)
    _create_shift(admin, start)

    res = admin.get("/api/exports/shifts.csv", params={"start": "2031-05-01", "end": "2031-05-31"})
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/csv")
    lines = res.text.strip().splitlines()
    assert lines[0].startswith("id,start_time,end_time,title")
    assert len(lines) == 2
    assert "Community access" in lines[1]


def test_offset_aware_monthly_series_matches_its_preview(provision):
    admin, _ = provision("sunrise")
    payload = {
        "start_time": "2031-01-31T09:00:00+11:00",
        "end_time": "2031-01-31T17:00:00+11:00",
        "recurrence": {"unit": "monthly", "end_condition": "occurrences", "occurrences": 3},
    }
    expected = ["2031-01-30T22:00:00", "2031-02-27T22:00:00", "2031-03-30T22:00:00"]

    preview = admin.post("/api/shifts/recurring/preview", json=payload)
    assert preview.status_code == 200, preview.text
    assert [o["start_time"] for o in preview.json()["occurrences"]] == expected

    created = admin.post("/api/shifts/recurring", json={"title": "Monthly review", **payload})
    assert created.status_code == 201, created.text
    assert [s["start_time"] for s in created.json()["shifts"]] == expected
    assert [s["end_time"][11:] for s in created.json()["shifts"]] == ["06:00:00"] * 3


def test_mixed_offset_and_naive_times_are_rejected(provision):
    admin, _ = provision("sunrise")
    times = {"start_time": "2031-03-04T09:00:00+11:00", "end_time": "2031-03-04T17:00:00"}
    recurrence = {"unit": "weekly", "end_condition": "occurrences", "occurrences": 2}

    single = admin.post("/api/shifts", json={"title": "Visit", **times})
    assert single.status_code == 422
    assert "UTC offset" in single.text

    preview = admin.post("/api/shifts/recurring/preview", json={**times, "recurrence": recurrence})
    assert preview.status_code == 422

    series = admin.post("/api/shifts/recurring", json={"title": "Visit", **times, "recurrence": recurrence})
    assert series.status_code == 422
    assert admin.get("/api/shifts").json() == []


def _short_notice_cancellation(admin, worker, worker_user):
    soon = datetime.now(timezone.utc).replace(tzinfo=None).replace(microsecond=0) + timedelta(hours=3)
    shift = _create_shift(admin, soon, user_id=worker_user["id"])
    res = worker.post(f"/api/shifts/{shift['id']}/cancel", json={"reason": "Unwell"})
    assert res.status_code == 200
    assert res.json()["cancellation"]["status"] == "pending"
    return shift, res.json()["cancellation"]


def test_reassigning_shift_resolves_pending_cancellation(provision, add_staff):
    admin, _ = provision("sunrise")
    alex, alex_user = add_staff(admin, "sunrise", "alex")
    _, blair_user = add_staff(admin, "sunrise", "blair")
    shift, cancellation = _short_notice_cancellation(admin, alex, alex_user)

    moved = admin.patch(f"/api/shifts/{shift['id']}", json={"user_id": blair_user["id"]})
    assert moved.status_code == 200
    assert moved.json()["status"] == "assigned"
    assert moved.json()["user_id"] == blair_user["id"]

    assert admin.get("/api/shift-cancellations", params={"status": "pending"}).json() == []
    resolved = admin.get("/api/shift-cancellations").json()
    assert resolved[0]["status"] == "approved"
    assert resolved[0]["review_note"] == "shift reassigned"

    late = admin.post(f"/api/shift-cancellations/{cancellation['id']}/review", json={"approve": True})
    assert late.status_code == 400
    after = admin.get(f"/api/shifts/{shift['id']}").json()
    assert after["user_id"] == blair_user["id"]
    assert after["status"] == "assigned"


def test_cancelling_shift_resolves_pending_cancellation(provision, add_staff):
    admin, _ = provision("sunrise")
    alex, alex_user = add_staff(admin, "sunrise", "alex")
    shift, cancellation = _short_notice_cancellation(admin, alex, alex_user)

    assert admin.delete(f"/api/shifts/{shift['id']}").json()["status"] == "cancelled"
    assert admin.get("/api/shift-cancellations", params={"status": "pending"}).json() == []

    late = admin.post(f"/api/shift-cancellations/{cancellation['id']}/review", json={"approve": False})
    assert late.status_code == 400
    assert admin.get(f"/api/shifts/{shift['id']}").json()["status"] == "cancelled"


def test_deleting_user_resolves_their_pending_cancellations(provision, add_staff):
    admin, _ = provision("sunrise")
    alex, alex_user = add_staff(admin, "sunrise", "alex")
    shift, _ = _short_notice_cancellation(admin, alex, alex_user)

    assert admin.delete(f"/api/users/{alex_user['id']}").status_code == 204
    assert admin.get("/api/shift-cancellations", params={"status": "pending"}).json() == []
    assert admin.get(f"/api/shifts/{shift['id']}").json()["status"] == "unassigned"


def test_worker_cannot_read_someone_elses_shift(provision, add_staff):
    admin, _ = provision("sunrise")
    worker, worker_user = add_staff(admin, "sunrise", "casey")
    _, other_user = add_staff(admin, "sunrise", "robin")

    mine = _create_shift(admin, _future(2), user_id=worker_user["id"])
    theirs = _create_shift(admin, _future(3), user_id=other_user["id"])
    open_shift = _create_shift(admin, _future(4))

    assert worker.get(f"/api/shifts/{mine['id']}").status_code == 200
    assert worker.get(f"/api/shifts/{open_shift['id']}").status_code == 200
    assert worker.get(f"/api/shifts/{theirs['id']}").status_code == 404
    assert admin.get(f"/api/shifts/{theirs['id']}").status_code == 200
