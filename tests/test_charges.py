def _create(client, headers, **overrides) -> dict:
    body = {
        "chargeName": "Service Tax",
        "chargeType": "percentage",
        "value": 5,
        "category": "systemcharge",
    }
    body.update(overrides)
    return client.post("/api/charges", json=body, headers=headers)


def test_create_and_get_charge(client, auth) -> None:
    resp = _create(client, auth(user_id="merchant-7"))
    assert resp.status_code == 201
    data = resp.json()["data"]
    assert data["chargeName"] == "Service Tax"
    assert data["active"] is True
    assert data["displayValue"] == "5%"
    assert data["createdBy"] == "merchant-7"

    get_resp = client.get(f"/api/charges/{data['id']}", headers=auth())
    assert get_resp.status_code == 200
    assert get_resp.json()["data"]["value"] == 5.0


def test_create_charge_validation(client, auth) -> None:
    headers = auth()
    over = _create(client, headers, value=101)
    assert over.status_code == 400
    assert over.json()["message"] == "Percentage value must be between 0 and 100"

    negative = _create(client, headers, chargeName="Packing", chargeType="fixed", value=-1)
    assert negative.status_code == 400
    assert negative.json()["message"] == "Fixed value cannot be negative"

    bad_type = _create(client, headers, chargeType="flat")
    assert bad_type.status_code == 400
    assert bad_type.json()["message"] == 'Charge type must be either "percentage" or "fixed"'

    bad_category = _create(client, headers, category="mandatory")
    assert bad_category.status_code == 400

    missing = client.post("/api/charges", json={"chargeName": "X"}, headers=headers)
    assert missing.status_code == 400
    assert missing.json()["message"] == "Charge name, type, value, and category are required"

    too_long = _create(client, headers, chargeName="x" * 51)
    assert too_long.status_code == 400


def test_fixed_charge_may_exceed_one_hundred(client, auth) -> None:
    resp = _create(client, auth(), chargeName="Cover", chargeType="fixed", value=250)
    assert resp.status_code == 201
    assert resp.json()["data"]["displayValue"] == "₹250"


def test_duplicate_charge_name_rejected(client, auth) -> None:
    headers = auth()
    assert _create(client, headers).status_code == 201
    dup = _create(client, headers, category="optionalcharge")
    assert dup.status_code == 400
    assert dup.json()["success"] is False
    assert dup.json()["message"] == "Charge with this name already exists"


def test_list_charges_category_filter_ignores_active(client, auth) -> None:
    headers = auth()
    _create(client, headers, chargeName="GST")
    _create(client, headers, chargeName="Old Levy", active=False)
    _create(client, headers, chargeName="Tip", category="optionalcharge")

    resp = client.get("/api/charges", params={"category": "systemcharge"}, headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 2
    assert {c["category"] for c in body["data"]} == {"systemcharge"}

    inactive = client.get("/api/charges", params={"active": "false"}, headers=headers)
    assert [c["chargeName"] for c in inactive.json()["data"]] == ["Old Levy"]

    empty_flag = client.get("/api/charges", params={"active": ""}, headers=headers)
    assert empty_flag.json()["total"] == 3


def test_list_charges_search_and_pagination(client, auth) -> None:
    headers = auth()
    for name in ("Service Tax", "Luxury Tax", "Tip", "Packing"):
        _create(client, headers, chargeName=name)

    search = client.get("/api/charges", params={"search": "tax"}, headers=headers)
    assert sorted(c["chargeName"] for c in search.json()["data"]) == ["Luxury Tax", "Service Tax"]

    page = client.get(
        "/api/charges",
        params={"limit": 3, "page": 2, "sortBy": "chargeName", "sortOrder": "asc"},
        headers=auth(role="staff"),
    )
    body = page.json()
    assert body["total"] == 4
    assert body["totalPages"] == 2
    assert body["currentPage"] == 2
    assert [c["chargeName"] for c in body["data"]] == ["Tip"]


def test_update_charge_checks_name_and_range(client, auth) -> None:
    headers = auth()
    first = _create(client, headers).json()["data"]
    _create(client, headers, chargeName="GST")

    dup = client.put(f"/api/charges/{first['id']}", json={"chargeName": "GST"}, headers=headers)
    assert dup.status_code == 400

    out_of_range = client.put(f"/api/charges/{first['id']}", json={"value": 150}, headers=headers)
    assert out_of_range.status_code == 400

    to_fixed = client.put(
        f"/api/charges/{first['id']}", json={"chargeType": "fixed", "value": 150}, headers=headers
    )
    assert to_fixed.status_code == 200
    assert to_fixed.json()["data"]["value"] == 150.0

    same_name = client.put(
        f"/api/charges/{first['id']}", json={"chargeName": "Service Tax"}, headers=headers
    )
    assert same_name.status_code == 200


def test_toggle_and_delete_charge(client, auth) -> None:
    headers = auth()
    charge = _create(client, headers).json()["data"]

    missing = client.patch(f"/api/charges/{charge['id']}/status", json={}, headers=headers)
    assert missing.status_code == 400
    assert missing.json()["message"] == "Active status is required"

    off = client.patch(f"/api/charges/{charge['id']}/status", json={"active": False}, headers=headers)
    assert off.status_code == 200
    assert off.json()["data"]["active"] is False
    assert off.json()["message"] == "Charge deactivated successfully"

    deleted = client.delete(f"/api/charges/{charge['id']}", headers=headers)
    assert deleted.status_code == 200
    assert client.get(f"/api/charges/{charge['id']}", headers=headers).status_code == 404
    assert client.delete(f"/api/charges/{charge['id']}", headers=headers).status_code == 404


def test_system_summary_counts_only_active_system_charges(client, auth) -> None:
    headers = auth()
    _create(client, headers, chargeName="GST", value=5)
    _create(client, headers, chargeName="Service", value=2.5)
    _create(client, headers, chargeName="Platform Fee", chargeType="fixed", value=20)
    _create(client, headers, chargeName="Old Levy", value=9, active=False)
    _create(client, headers, chargeName="Tip", value=10, category="optionalcharge")

    resp = client.get("/api/charges/system/summary", headers=auth(role="staff"))
    assert resp.status_code == 200
    assert resp.json()["systemchargeSummary"] == {
        "totalSystemChargeRate": 7.5,
        "totalSystemChargesAmount": 20.0,
    }

    system = client.get("/api/charges/system", headers=headers).json()
    assert system["count"] == 3
    optional = client.get("/api/charges/optional", headers=headers).json()
    assert [c["chargeName"] for c in optional["data"]] == ["Tip"]


def test_charge_routes_require_token_and_role(client, auth) -> None:
    assert client.get("/api/charges").status_code == 401
    assert client.get("/api/charges", headers={"Authorization": "Bearer nope"}).status_code == 401

    forbidden = _create(client, auth(role="staff"))
    assert forbidden.status_code == 403
    assert forbidden.json()["message"] == "User role staff is not authorized to access this route"
