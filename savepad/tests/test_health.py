def test_banner(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.json() == {"message": "SavePad API online"}


def test_healthz_always_ok(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json().get("status") == "ok"


def test_readyz_ok_with_schema(client):
    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json().get("status") == "ok"


def test_readyz_reports_missing_tables(client, database):
    database.drop_all()

    resp = client.get("/readyz")
    body = resp.json()

    assert resp.status_code == 503
    assert body.get("status") == "error"
    assert "users" in body.get("detail", "")
    database.create_all()


def test_readyz_handles_db_down(client, database, monkeypatch):
    monkeypatch.setattr(database, "check_connection", lambda: False)

    resp = client.get("/readyz")
    body = resp.json()
    assert resp.status_code == 503
    assert body.get("status") == "error"
    assert "database" in body.get("detail", "")
