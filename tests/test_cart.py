from conftest import CUSTOMER_EMAIL


def add_item(client, product, email=CUSTOMER_EMAIL):
    response = client.post(
        "/cart",
        json={"productId": str(product["_id"]), "userEmail": email, "quantity": 2, "name": product["name"]},
    )
    assert response.status_code == 201
    return response.get_json()["insertedId"]


def test_add_and_list_cart(client, product, customer_headers):
    item_id = add_item(client, product)

    items = client.get("/cart", query_string={"email": CUSTOMER_EMAIL}, headers=customer_headers).get_json()
    assert [item["_id"] for item in items] == [item_id]
    assert items[0]["quantity"] == 2


def test_legacy_cart_route_is_kept(client, product):
    response = client.post("/cartProduct", json={"productId": str(product["_id"]), "email": CUSTOMER_EMAIL})
    assert response.status_code == 201


def test_cart_rejects_malformed_product_id(client):
    response = client.post("/cart", json={"productId": "123", "userEmail": CUSTOMER_EMAIL})
    assert response.status_code == 400


def test_cart_of_another_user_is_forbidden(client, product, customer_headers):
    add_item(client, product, email="other@shop.test")

    response = client.get("/cart", query_string={"email": "other@shop.test"}, headers=customer_headers)
    assert response.status_code == 403


def test_remove_cart_item(client, product, customer_headers, db):
    item_id = add_item(client, product)

    assert client.delete(f"/cart/{item_id}", headers=customer_headers).status_code == 200
    assert db.cartProducts.count_documents({}) == 0
    assert client.delete(f"/cart/{item_id}", headers=customer_headers).status_code == 404


def test_cannot_remove_someone_elses_item(client, product, customer_headers, db):
    item_id = add_item(client, product, email="other@shop.test")

    assert client.delete(f"/cart/{item_id}", headers=customer_headers).status_code == 403
    assert db.cartProducts.count_documents({}) == 1
