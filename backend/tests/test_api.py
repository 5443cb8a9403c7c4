def _create_event(client, helpers, **overrides):
    resp = client.post("/api/events", json=helpers["event_payload"](**overrides))
    assert resp.status_code == 201, resp.text
    return resp.json()


def _register(client, helpers, event_id, user, **overrides):
    return client.post("/api/registrations", json=helpers["registration_payload"](event_id, user, **overrides))


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "database": "ok"}
    assert resp.headers.get("X-Request-ID")


def test_request_id_is_echoed(client):
    resp = client.get("/api/health", headers={"X-Request-ID": "abc-123"})
    assert resp.headers["X-Request-ID"] == "abc-123"


def test_create_and_list_events(client, helpers):
    event = _create_event(client, helpers)
    assert event["name"] == "Congreso de Ciencias"
    assert event["start_date"] == helpers["day"](30)
    assert event["registration_open"] is True

    listing = client.get("/api/events").json()
    assert [e["id"] for e in listing] == [event["id"]]

    single = client.get(f"/api/events/{event['id']}").json()
    assert single["location"] == "Santiago, Chile"

    ranges = client.get("/api/events/occupied-dates").json()
    assert ranges == [{"start_date": helpers["day"](30), "end_date": helpers["day"](32)}]


def test_event_errors_use_error_envelope(client, helpers):
    _create_event(client, helpers)

    overlap = client.post("/api/events", json=helpers["event_payload"](name="Jornadas de Datos", start=31, end=33))
    assert overlap.status_code == 409
    assert overlap.json()["error"]["code"] == "overlap"

    same_name = client.post("/api/events", json=helpers["event_payload"](start=60, end=61, close=50))
    assert same_name.status_code == 409
    assert same_name.json()["error"]["code"] == "name_exists"

    bad_date = client.post("/api/events", json=helpers["event_payload"](name="Jornadas de Datos", start_date="2030-01-01"))
    assert bad_date.status_code == 400
    assert bad_date.json()["error"]["code"] == "invalid_input"

    missing = client.get("/api/events/9999")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "event_not_found"


def test_update_event(client, helpers):
    event = _create_event(client, helpers)
    payload = helpers["event_payload"](location="Lima, Perú", end=33)
    resp = client.put(f"/api/events/{event['id']}", json=payload)
    assert resp.status_code == 200, resp.text
    assert resp.json()["location"] == "Lima, Perú"
    assert resp.json()["end_date"] == helpers["day"](33)


def test_toggle_registration_window(client, helpers):
    event = _create_event(client, helpers)

    closed = client.patch(f"/api/events/{event['id']}", params={"action": "cerrar"})
    assert closed.status_code == 200
    assert closed.json()["registration_open"] is False
    assert closed.json()["registration_open_manual"] is False

    opened = client.patch(f"/api/events/{event['id']}", params={"action": "ABRIR"})
    assert opened.json()["registration_open"] is True

    bad = client.patch(f"/api/events/{event['id']}", params={"action": "pausar"})
    assert bad.status_code == 400


def test_delete_event_hides_it(client, helpers):
    event = _create_event(client, helpers)
    resp = client.delete(f"/api/events/{event['id']}")
    assert resp.status_code == 204
    assert client.get(f"/api/events/{event['id']}").status_code == 404
    assert client.get("/api/events").json() == []
    assert client.delete(f"/api/events/{event['id']}").status_code == 404


def test_registration_flow(client, helpers):
    ana = helpers["make_user"]("ana@correo.com", "Ana Torres", preferences=True)
    event = _create_event(client, helpers)

    resp = _register(client, helpers, event["id"], ana)
    assert resp.status_code == 201, resp.text
    registration = resp.json()
    assert registration["status"] == "Pendiente"
    assert registration["event_name"] == "Congreso de Ciencias"
    assert registration["payment_deadline"] == helpers["day"](20)
    assert registration["has_proof_of_payment"] is False

    duplicate = _register(client, helpers, event["id"], ana)
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "already_registered"

    status_resp = client.put(
        f"/api/registrations/{registration['id']}/status",
        json={"status": "pagado", "note": "Transferencia recibida", "actor": "tesoreria"},
    )
    assert status_resp.status_code == 200
    assert status_resp.json()["status"] == "Pagado"

    history = client.get(f"/api/registrations/{registration['id']}/history").json()
    assert [(h["previous_status"], h["new_status"]) for h in history] == [("Pendiente", "Pagado"), ("", "Pendiente")]
    assert history[0]["actor"] == "tesoreria"

    notifications = client.get(f"/api/users/{ana.id}/notifications").json()
    assert {n["notification_type"] for n in notifications} == {"inscripcion", "cambio_estado"}


def test_registration_errors(client, helpers):
    ana = helpers["make_user"]("ana@correo.com", "Ana Torres")
    event = _create_event(client, helpers)

    missing_event = _register(client, helpers, 9999, ana)
    assert missing_event.status_code == 404
    assert missing_event.json()["error"]["code"] == "event_not_found"

    client.patch(f"/api/events/{event['id']}", params={"action": "cerrar"})
    closed = _register(client, helpers, event["id"], ana)
    assert closed.status_code == 400
    assert closed.json()["error"]["code"] == "registration_closed"
    client.patch(f"/api/events/{event['id']}", params={"action": "abrir"})

    bad_email = _register(client, helpers, event["id"], ana, email="no-es-correo")
    assert bad_email.status_code == 422

    registration = _register(client, helpers, event["id"], ana).json()
    bad_status = client.put(f"/api/registrations/{registration['id']}/status", json={"status": "Cancelado"})
    assert bad_status.status_code == 400
    assert bad_status.json()["error"]["code"] == "invalid_status"

    long_note = client.put(
        f"/api/registrations/{registration['id']}/status", json={"status": "Aprobado", "note": "x" * 1001}
    )
    assert long_note.status_code == 422


def test_payment_and_cancellation(client, helpers):
    ana = helpers["make_user"]("ana@correo.com", "Ana Torres")
    event = _create_event(client, helpers)
    registration = _register(client, helpers, event["id"], ana).json()

    no_proof = client.put(f"/api/registrations/{registration['id']}/payment", json={"paid": True})
    assert no_proof.status_code == 400

    paid = client.put(
        f"/api/registrations/{registration['id']}/payment",
        json={"paid": True, "proof_of_payment": "data:image/jpeg;base64,/9j/4AAQ"},
    )
    assert paid.status_code == 200
    assert paid.json()["paid"] is True
    assert paid.json()["has_proof_of_payment"] is True

    assert client.delete(f"/api/registrations/{registration['id']}").status_code == 204
    assert client.get(f"/api/registrations/{registration['id']}").status_code == 404
    assert _register(client, helpers, event["id"], ana).status_code == 201


def test_list_registrations_with_filters(client, helpers):
    ana = helpers["make_user"]("ana@correo.com", "Ana Torres")
    luis = helpers["make_user"]("luis@correo.com", "Luis Soto")
    event = _create_event(client, helpers)
    first = _register(client, helpers, event["id"], ana).json()
    second = _register(client, helpers, event["id"], luis).json()
    client.put(f"/api/registrations/{second['id']}/status", json={"status": "Aprobado"})

    everything = client.get("/api/registrations").json()
    assert {r["id"] for r in everything} == {first["id"], second["id"]}

    approved = client.get("/api/registrations", params={"status": "aprobado"}).json()
    assert [r["id"] for r in approved] == [second["id"]]

    by_text = client.get("/api/registrations", params={"q": "soto"}).json()
    assert [r["id"] for r in by_text] == [second["id"]]

    today = client.get("/api/registrations", params={"date_from": helpers["day"](0), "date_to": helpers["day"](0)})
    assert len(today.json()) == 2
    tomorrow = client.get("/api/registrations", params={"date_from": helpers["day"](1)})
    assert tomorrow.json() == []

    bad = client.get("/api/registrations", params={"date_from": "ayer"})
    assert bad.status_code == 400


def test_notification_preferences_and_read(client, helpers):
    ana = helpers["make_user"]("ana@correo.com", "Ana Torres")

    prefs = client.get(f"/api/users/{ana.id}/notification-preferences")
    assert prefs.status_code == 200
    assert prefs.json() == {"user_id": ana.id, "frequency": "inmediata", "types": "estado", "enabled": True}

    updated = client.put(
        f"/api/users/{ana.id}/notification-preferences",
        json={"frequency": "diaria", "types": "estado,recordatorio", "enabled": False},
    )
    assert updated.status_code == 200
    assert updated.json()["frequency"] == "diaria"
    assert updated.json()["enabled"] is False

    assert client.get("/api/users/9999/notification-preferences").status_code == 404

    event = _create_event(client, helpers)
    _register(client, helpers, event["id"], ana)
    notification = client.get(f"/api/users/{ana.id}/notifications").json()[0]
    assert notification["read"] is False

    read = client.patch(f"/api/notifications/{notification['id']}", json={"read": True})
    assert read.status_code == 200
    assert read.json()["read"] is True
    assert client.patch("/api/notifications/9999", json={"read": True}).status_code == 404


def test_reopen_notifies_users(client, helpers):
    ana = helpers["make_user"]("ana@correo.com", "Ana Torres")
    event = _create_event(client, helpers)
    client.patch(f"/api/events/{event['id']}", params={"action": "cerrar"})
    client.patch(f"/api/events/{event['id']}", params={"action": "abrir"})

    notifications = client.get(f"/api/users/{ana.id}/notifications").json()
    assert [n["notification_type"] for n in notifications] == ["apertura_inscripciones"]
