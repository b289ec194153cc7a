from datetime import timedelta

from flask_jwt_extended import create_access_token, decode_token

from conftest import ADMIN_EMAIL, CUSTOMER_EMAIL, DEFAULT_PASSWORD


def register(client, email, password=DEFAULT_PASSWORD, **extra):
    payload = dict(extra, email=email)
    if password is not None:
        payload["password"] = password
    return client.post("/auth/register", json=payload)


def test_register_inserts_new_user(client, db):
    response = register(client, "New@Shop.test", name="New")

    assert response.status_code == 201
    assert response.get_json()["inserted"] is True
    stored = db.users.find_one({"email": "new@shop.test"})
    assert stored["role"] == "customer"
    assert stored["password"] != DEFAULT_PASSWORD


def test_register_existing_email_is_not_duplicated(client, db):
    register(client, "dup@shop.test")
    response = client.post("/users", json={"email": "dup@shop.test", "role": "admin"})

    assert response.status_code == 200
    assert response.get_json() == {"message": "user already exist", "inserted": False}
    assert db.users.count_documents({"email": "dup@shop.test"}) == 1


def test_register_requires_email(client):
    response = client.post("/auth/register", json={"name": "Nobody", "password": "x"})
    assert response.status_code == 400


def test_register_requires_password(client, db):
    response = register(client, ADMIN_EMAIL, password=None)

    assert response.status_code == 400
    assert db.users.count_documents({}) == 0


def test_passwordless_login_cannot_claim_admin(client):
    register(client, ADMIN_EMAIL, password=None)

    response = client.post("/auth/login", json={"email": ADMIN_EMAIL})

    assert response.status_code == 401
    assert "token" not in response.get_json()


def test_login_unknown_email_issues_no_token(client):
    response = client.post("/auth/login", json={"email": "ghost@shop.test", "password": "whatever"})

    assert response.status_code == 401
    assert "token" not in response.get_json()


def test_login_always_checks_password(client):
    register(client, "pw@shop.test", password="s3cret")

    assert client.post("/auth/login", json={"email": "pw@shop.test", "password": "nope"}).status_code == 401
    assert client.post("/auth/login", json={"email": "pw@shop.test"}).status_code == 401
    ok = client.post("/auth/login", json={"email": "pw@shop.test", "password": "s3cret"})
    assert ok.status_code == 200
    assert "password" not in ok.get_json()["user"]


def test_login_rejects_account_without_stored_password(client, db):
    db.users.insert_one({"email": "legacy@shop.test", "role": "customer"})

    response = client.post("/auth/login", json={"email": "legacy@shop.test", "password": "anything"})
    assert response.status_code == 401


def test_login_token_carries_identity_and_seven_day_expiry(app, client):
    register(client, CUSTOMER_EMAIL)
    body = client.post(
        "/auth/login", json={"email": CUSTOMER_EMAIL, "password": DEFAULT_PASSWORD}
    ).get_json()

    with app.app_context():
        decoded = decode_token(body["token"])

    assert decoded["sub"] == CUSTOMER_EMAIL
    assert decoded["email"] == CUSTOMER_EMAIL
    assert decoded["role"] == "customer"
    assert decoded["id"] == body["user"]["_id"]
    assert decoded["exp"] - decoded["iat"] == int(timedelta(days=7).total_seconds())


def test_default_admin_email_gets_admin_role(app, client):
    register(client, ADMIN_EMAIL)
    body = client.post(
        "/auth/login", json={"email": ADMIN_EMAIL, "password": DEFAULT_PASSWORD}
    ).get_json()

    with app.app_context():
        assert decode_token(body["token"])["role"] == "admin"


def test_missing_credential_is_unauthorized(client):
    response = client.get("/orders")

    assert response.status_code == 401
    assert response.get_json() == {"message": "Unauthorized"}


def test_bad_signature_is_invalid_token(client):
    response = client.get("/orders", headers={"Authorization": "Bearer not.a.token"})

    assert response.status_code == 403
    assert response.get_json() == {"message": "Invalid token"}


def test_token_signed_with_another_secret_is_invalid(app, client):
    app.config["JWT_SECRET_KEY"] = "someone-else"
    with app.app_context():
        forged = create_access_token(identity=ADMIN_EMAIL, additional_claims={"role": "admin"})
    app.config["JWT_SECRET_KEY"] = "test-secret"

    response = client.get("/orders", headers={"Authorization": f"Bearer {forged}"})
    assert response.status_code == 403


def test_expired_credential_is_invalid_token(app, client):
    with app.app_context():
        token = create_access_token(
            identity=CUSTOMER_EMAIL,
            additional_claims={"email": CUSTOMER_EMAIL, "role": "customer"},
            expires_delta=timedelta(seconds=-5),
        )

    response = client.get(
        "/order",
        query_string={"email": CUSTOMER_EMAIL},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert response.status_code == 403
    assert response.get_json() == {"message": "Invalid token"}


def test_customer_cannot_reach_admin_routes(client, customer_headers):
    assert client.get("/admin/users", headers=customer_headers).status_code == 403
    assert client.get("/admin/stats", headers=customer_headers).status_code == 403


def test_user_role_only_for_own_email(client, customer_headers):
    own = client.get("/users/role", query_string={"email": CUSTOMER_EMAIL}, headers=customer_headers)
    other = client.get("/users/role", query_string={"email": ADMIN_EMAIL}, headers=customer_headers)

    assert own.status_code == 200
    assert own.get_json() == {"role": "customer"}
    assert other.status_code == 403
