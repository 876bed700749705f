def _participant(admin):
    res = admin.post(
        "/api/clients",
        json={"first_name": "Sam", "last_name": "Okafor", "ndis_number": "431000002"},
    )
    assert res.status_code == 201, res.text
    return res.json()


def _worked_shift(admin, worker, worker_user, participant, start: str, end: str, **extra):
    # Times are UTC; 00:00Z is 10:00 local with the default +10:00 offset.
    created = admin.post(
        "/api/shifts",
        json={
            "title": "Community access",
            "start_time": start,
            "end_time": end,
            "user_id": worker_user["id"],
            "client_id": participant["id"],
            **extra,
        },
    )
    assert created.status_code == 201, created.text
    shift_id = created.json()["id"]
    assert worker.post(f"/api/shifts/{shift_id}/start").status_code == 200
    done = worker.post(f"/api/shifts/{shift_id}/end")
    assert done.status_code == 200, done.text
    return done.json()


def test_budget_upsert_validation(provision, add_staff):
    admin, _ = provision("sunrise")
    worker, _ = add_staff(admin, "sunrise", "casey")
    participant = _participant(admin)

    res = admin.put(
        f"/api/clients/{participant['id']}/budget/CommunityAccess",
        json={"allocated": 1000, "plan_start": "2030-01-01", "plan_end": "2030-12-31"},
    )
    assert res.status_code == 200, res.text
    assert res.json()["remaining"] == 1000.0

    assert admin.put(f"/api/clients/{participant['id']}/budget/Travel", json={"allocated": 10}).status_code == 400
    assert admin.put("/api/clients/99999/budget/SIL", json={"allocated": 10}).status_code == 404
    backwards = admin.put(
        f"/api/clients/{participant['id']}/budget/SIL",
        json={"allocated": 10, "plan_start": "2030-06-01", "plan_end": "2030-01-01"},
    )
    assert backwards.status_code == 400
    assert worker.put(f"/api/clients/{participant['id']}/budget/SIL", json={"allocated": 10}).status_code == 403
    assert worker.get(f"/api/clients/{participant['id']}/budget").status_code == 403

    listed = admin.get(f"/api/clients/{participant['id']}/budget").json()
    assert [row["category"] for row in listed] == ["CommunityAccess"]


def test_completed_shift_is_deducted_from_budget(provision, add_staff):
    admin, _ = provision("sunrise")
    worker, worker_user = add_staff(admin, "sunrise", "casey")
    participant = _participant(admin)
    admin.put(f"/api/clients/{participant['id']}/budget/CommunityAccess", json={"allocated": 1000})

    # Tuesday 10:00-14:00 local: four daytime hours at the 1:1 rate of 40.00.
    _worked_shift(admin, worker, worker_user, participant, "2030-03-05T00:00:00", "2030-03-05T04:00:00")

    budget = admin.get(f"/api/clients/{participant['id']}/budget").json()
    assert budget[0]["remaining"] == 840.0
    txns = admin.get(f"/api/clients/{participant['id']}/budget/transactions").json()
    assert len(txns) == 1
    assert txns[0]["category"] == "CommunityAccess"
    assert txns[0]["time_band"] == "Daytime"
    assert txns[0]["hours"] == 4.0
    assert txns[0]["rate"] == 40.0
    assert txns[0]["amount"] == 160.0

    shrink = admin.put(f"/api/clients/{participant['id']}/budget/CommunityAccess", json={"allocated": 100})
    assert shrink.status_code == 400
    grow = admin.put(f"/api/clients/{participant['id']}/budget/CommunityAccess", json={"allocated": 1200})
    assert grow.json()["remaining"] == 1040.0


def test_shift_ratio_and_category_pick_the_rate(provision, add_staff):
    admin, _ = provision("sunrise")
    worker, worker_user = add_staff(admin, "sunrise", "casey")
    participant = _participant(admin)
    admin.put(f"/api/clients/{participant['id']}/budget/SIL", json={"allocated": 500})

    _worked_shift(
        admin,
        worker,
        worker_user,
        participant,
        "2030-03-05T00:00:00",
        "2030-03-05T02:00:00",
        staff_ratio="1:2",
        funding_category="SIL",
    )

    txns = admin.get(f"/api/clients/{participant['id']}/budget/transactions").json()
    assert [(t["category"], t["ratio"], t["amount"]) for t in txns] == [("SIL", "1:2", 50.0)]


def test_shift_without_funds_or_budget_is_not_charged(provision, add_staff):
    admin, _ = provision("sunrise")
    worker, worker_user = add_staff(admin, "sunrise", "casey")
    participant = _participant(admin)
    admin.put(f"/api/clients/{participant['id']}/budget/CapacityBuilding", json={"allocated": 50})

    short = _worked_shift(
        admin,
        worker,
        worker_user,
        participant,
        "2030-03-05T00:00:00",
        "2030-03-05T04:00:00",
        funding_category="CapacityBuilding",
    )
    assert short["status"] == "completed"
    _worked_shift(
        admin,
        worker,
        worker_user,
        participant,
        "2030-03-06T00:00:00",
        "2030-03-06T04:00:00",
        funding_category="SIL",
    )

    assert admin.get(f"/api/clients/{participant['id']}/budget/transactions").json() == []
    assert admin.get(f"/api/clients/{participant['id']}/budget").json()[0]["remaining"] == 50.0
