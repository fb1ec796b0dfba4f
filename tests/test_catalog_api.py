def test_category_crud(client, make_user, auth_headers):
    admin = make_user(email="admin@example.com", role="admin")
    buyer = make_user()

    assert client.post("/api/categories", json={"name": "Books"}, headers=auth_headers(buyer)).status_code == 403
    res = client.post("/api/categories", json={"name": "  Toys ", "description": "Games and puzzles"},
                      headers=auth_headers(admin))
    assert res.status_code == 201
    toys = res.json()["category"]
    assert toys["name"] == "Toys"
    client.post("/api/categories", json={"name": "Books"}, headers=auth_headers(admin))

    res = client.post("/api/categories", json={"name": "Toys"}, headers=auth_headers(admin))
    assert res.status_code == 400
    assert res.json()["message"] == "Category already exists"

    assert [c["name"] for c in client.get("/api/categories").json()] == ["Books", "Toys"]
    assert client.get(f"/api/categories/{toys['id']}").json()["description"] == "Games and puzzles"

    res = client.put(f"/api/categories/{toys['id']}", json={"name": "Books"}, headers=auth_headers(admin))
    assert res.status_code == 400
    res = client.put(f"/api/categories/{toys['id']}", json={"image": "https://img.example.com/toys.jpg"},
                     headers=auth_headers(admin))
    assert res.json()["category"]["image"] == "https://img.example.com/toys.jpg"
    assert res.json()["category"]["name"] == "Toys"

    assert client.delete(f"/api/categories/{toys['id']}", headers=auth_headers(admin)).status_code == 200
    assert client.get(f"/api/categories/{toys['id']}").status_code == 404
    assert client.delete(f"/api/categories/{toys['id']}", headers=auth_headers(admin)).status_code == 404


def test_category_validation(client, make_user, auth_headers):
    admin = make_user(email="admin@example.com", role="admin")
    res = client.post("/api/categories", json={"name": "X"}, headers=auth_headers(admin))
    assert res.status_code == 400
    assert res.json()["message"] == "Validation failed"
    assert client.get("/api/categories/not-an-id").status_code == 404


def test_parameter_crud(client, make_user, auth_headers):
    admin = make_user(email="admin@example.com", role="admin")
    body = {"name": "Size", "type": "dimensions", "unit": "cm", "min": 10, "max": 300}

    assert client.post("/api/parameters", json=body, headers=auth_headers(make_user())).status_code == 403
    res = client.post("/api/parameters", json=body, headers=auth_headers(admin))
    assert res.status_code == 201
    size = res.json()["data"]
    assert size["step"] == 1
    assert size["allow_custom"] is False
    client.post("/api/parameters", json={"name": "Finish", "type": "select", "options": ["Oak", "Walnut"]},
                headers=auth_headers(admin))

    data = client.get("/api/parameters").json()
    assert data["success"] is True
    assert [p["name"] for p in data["data"]] == ["Finish", "Size"]

    res = client.put(f"/api/parameters/{size['id']}", json={"is_active": False, "step": 5},
                     headers=auth_headers(admin))
    assert res.json()["data"]["step"] == 5
    assert [p["name"] for p in client.get("/api/parameters").json()["data"]] == ["Finish"]
    assert client.get(f"/api/parameters/{size['id']}").json()["data"]["is_active"] is False

    assert client.delete(f"/api/parameters/{size['id']}", headers=auth_headers(admin)).status_code == 200
    res = client.get(f"/api/parameters/{size['id']}")
    assert res.status_code == 404
    assert res.json()["message"] == "Parameter not found"


def test_parameter_type_is_checked(client, make_user, auth_headers):
    admin = make_user(email="admin@example.com", role="admin")
    res = client.post("/api/parameters", json={"name": "Colour", "type": "colour-wheel"}, headers=auth_headers(admin))
    assert res.status_code == 400
    res = client.put("/api/parameters/65f1c0ffee00000000abcdef", json={"type": "text"}, headers=auth_headers(admin))
    assert res.status_code == 404
