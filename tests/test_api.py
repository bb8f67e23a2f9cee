"""End-to-end flows through the HTTP routes."""

from storefront.extensions import db
from storefront.models import Order, OrderStatus, Product

from conftest import ADDRESS, login


def add(client, product_id, quantity=1):
    return client.post(
        "/api/cart/items", json={"product_id": product_id,
                                 "quantity": quantity})


def checkout(client, address=None):
    session = client.post("/api/checkout/session").get_json()
    response = client.post("/api/checkout/complete", json={
        "order_id": session["order_id"],
        "session_token": session["token"],
        "shipping_address": address or ADDRESS,
    })
    return session, response


class TestCatalogRoutes:
    def test_filters_and_sorts(self, client, seed):
        response = client.get("/api/products?sort=price_asc&min_price=11")
        assert response.get_json()["items"] == []

        body = client.get("/api/products?sort=price_desc").get_json()
        assert [p["name"] for p in body["items"]] == ["Product P",
                                                      "Product Q"]

    def test_home_lists_categories(self, client, seed):
        body = client.get("/").get_json()
        assert body["categories"] == ["books", "electronics"]
        assert body["sort"] == "newest"

    def test_product_detail_includes_store(self, client, seed):
        body = client.get(f"/product/{seed.product_p_id}").get_json()
        assert body["product"]["store"]["store_name"] == "Test Store"

    def test_missing_product(self, client, seed):
        response = client.get("/product/9999")
        assert response.status_code == 404
        assert response.get_json()["code"] == "not_found"


class TestCartRoutes:
    def test_add_update_remove(self, customer_client, seed):
        response = add(customer_client, seed.product_p_id, 2)
        assert response.status_code == 201
        cart = response.get_json()["cart"]
        assert cart["total"] == 20.0
        item_id = cart["items"][0]["id"]

        cart = customer_client.patch(
            f"/api/cart/items/{item_id}", json={"quantity": 3}
        ).get_json()["cart"]
        assert cart["total"] == 30.0

        cart = customer_client.delete(
            f"/api/cart/items/{item_id}").get_json()["cart"]
        assert cart["items"] == []

    def test_invalid_quantity(self, customer_client, seed):
        response = add(customer_client, seed.product_p_id, 0)
        assert response.status_code == 400
        assert response.get_json()["code"] == "invalid_quantity"

    def test_missing_product_id(self, customer_client, seed):
        response = customer_client.post("/api/cart/items", json={})
        assert response.status_code == 400

    def test_unknown_item(self, customer_client, seed):
        response = customer_client.delete("/api/cart/items/9999")
        assert response.status_code == 404


class TestCheckoutRoutes:
    def test_full_checkout(self, app, customer_client, seed):
        add(customer_client, seed.product_p_id, 2)
        add(customer_client, seed.product_q_id, 1)

        session, response = checkout(customer_client)

        assert session["total"] == 25.0
        assert session["subtotal"] == 25.0
        assert session["shipping"] == 0.0
        assert session["public_key"] == "TEST-public-key"
        assert response.status_code == 200
        body = response.get_json()
        assert body["already_completed"] is False
        assert body["order"]["status"] == "COMPLETED"

        history = customer_client.get("/orders").get_json()
        assert [o["id"] for o in history["items"]] == [session["order_id"]]
        assert customer_client.get("/cart").get_json()["items"] == []

        ret = customer_client.get(
            f"/success?external_reference={session['order_id']}"
            "&status=approved").get_json()
        assert ret["payment_status"] == "approved"
        assert ret["order"]["total"] == 25.0

        with app.app_context():
            assert db.session.get(Product, seed.product_p_id).stock == 8

    def test_repeated_completion_is_a_no_op(self, customer_client, seed):
        add(customer_client, seed.product_p_id)
        session, first = checkout(customer_client)

        again = customer_client.post("/api/checkout/complete", json={
            "order_id": session["order_id"],
            "session_token": session["token"],
            "shipping_address": ADDRESS,
        })

        assert first.status_code == again.status_code == 200
        assert again.get_json()["already_completed"] is True

    def test_invalid_address(self, app, customer_client, seed):
        add(customer_client, seed.product_p_id)
        address = dict(ADDRESS, phone="  ")

        session, response = checkout(customer_client, address)

        assert response.status_code == 400
        body = response.get_json()
        assert body["code"] == "invalid_address"
        assert body["missing_fields"] == ["phone"]
        with app.app_context():
            order = db.session.get(Order, session["order_id"])
            assert order.status == OrderStatus.PENDING

    def test_empty_cart(self, customer_client, seed):
        response = customer_client.post("/api/checkout/session")
        assert response.status_code == 400
        assert response.get_json()["code"] == "empty_cart"

    def test_checkout_page_summary(self, customer_client, seed):
        add(customer_client, seed.product_q_id, 3)
        body = customer_client.get("/checkout").get_json()
        assert body["summary"] == {
            "subtotal": 15.0, "shipping": 0.0, "total": 15.0}
        assert body["public_key"] == "TEST-public-key"

    def test_foreign_order_detail(self, app, customer_client, seed):
        add(customer_client, seed.product_p_id)
        session, _ = checkout(customer_client)

        other = app.test_client()
        login(other, "other@example.com")
        response = other.get(f"/api/orders/{session['order_id']}")
        assert response.status_code == 404


class TestAdminProductRoutes:
    def test_customer_is_forbidden(self, customer_client, seed):
        response = customer_client.post(
            "/api/admin/products", json={"name": "X", "price": 1})
        assert response.status_code == 403

    def test_create_update_list(self, seller_client, seed):
        response = seller_client.post("/api/admin/products", json={
            "name": "Desk Lamp",
            "price": "24.90",
            "stock": 5,
            "category": "Home",
            "features": ["LED", "Dimmable"],
        })
        assert response.status_code == 201
        product = response.get_json()["product"]
        assert product["category"] == "home"
        assert product["features"] == ["LED", "Dimmable"]

        response = seller_client.patch(
            f"/api/admin/products/{product['id']}",
            json={"price": 19.5, "rating": 4.5})
        assert response.get_json()["product"]["price"] == 19.5

        listing = seller_client.get("/products").get_json()
        assert "Desk Lamp" in [p["name"] for p in listing["products"]]
        assert listing["store"]["store_name"] == "Test Store"

    def test_validation(self, seller_client, seed):
        for body in (
            {"name": "", "price": 1},
            {"name": "X", "price": -1},
            {"name": "X", "price": 1, "stock": -2},
            {"name": "X", "price": 1, "rating": 6},
            {"name": "X", "price": 1, "features": "a\nb", "stock": 1.5},
            {"name": 123, "price": 1},
            {"name": "X", "price": 1, "category": ["home"]},
        ):
            response = seller_client.post("/api/admin/products", json=body)
            assert response.status_code == 400, body

    def test_delete_removes_product_from_carts(
            self, app, customer_client, seller_client, seed):
        add(customer_client, seed.product_p_id, 1)
        add(customer_client, seed.product_q_id, 1)

        response = seller_client.delete(
            f"/api/admin/products/{seed.product_p_id}")

        assert response.get_json() == {"ok": True, "carts_updated": 1}
        cart = customer_client.get("/api/cart").get_json()
        assert [i["product_id"] for i in cart["items"]] == [
            seed.product_q_id]
        assert cart["total"] == 5.0
        assert customer_client.get(
            f"/product/{seed.product_p_id}").status_code == 404

    def test_other_store_cannot_modify(self, app, client, seed):
        client.post("/api/auth/register", json={
            "email": "rival@admin.com",
            "password": "secret123",
            "role": "ADMIN",
            "store_name": "Rival",
        })
        response = client.patch(
            f"/api/admin/products/{seed.product_p_id}", json={"price": 1})
        assert response.status_code == 403


class TestChatRoutes:
    def open_thread(self, client, seller_id):
        return client.post("/api/chat/threads", json={"seller_id": seller_id})

    def test_open_send_and_read(self, customer_client, seller_client, seed):
        first = self.open_thread(customer_client, seed.seller_id)
        second = self.open_thread(customer_client, seed.seller_id)
        assert first.status_code == 201
        assert second.status_code == 200
        thread_id = first.get_json()["thread"]["id"]
        assert second.get_json()["thread"]["id"] == thread_id

        sent = customer_client.post(
            f"/api/chat/threads/{thread_id}/messages",
            json={"content": "Hello store"})
        assert sent.status_code == 201

        threads = seller_client.get("/chat").get_json()["threads"]
        assert threads[0]["unread_count"] == 1
        messages = seller_client.get(
            f"/api/chat/threads/{thread_id}/messages").get_json()["messages"]
        assert [m["content"] for m in messages] == ["Hello store"]
        threads = seller_client.get("/chat").get_json()["threads"]
        assert threads[0]["unread_count"] == 0

    def test_empty_message(self, customer_client, seed):
        thread_id = self.open_thread(
            customer_client, seed.seller_id).get_json()["thread"]["id"]
        response = customer_client.post(
            f"/api/chat/threads/{thread_id}/messages", json={"content": " "})
        assert response.status_code == 400
        assert response.get_json()["code"] == "invalid_message"

    def test_outsider_is_forbidden(self, app, customer_client, seed):
        thread_id = self.open_thread(
            customer_client, seed.seller_id).get_json()["thread"]["id"]
        other = app.test_client()
        login(other, "other@example.com")

        response = other.get(f"/api/chat/threads/{thread_id}/messages")
        assert response.status_code == 403

    def test_stores_listing(self, customer_client, seed):
        stores = customer_client.get("/api/chat/stores").get_json()["stores"]
        assert stores == [{
            "seller_id": seed.seller_id,
            "store_name": "Test Store",
            "description": None,
        }]

    def test_stream_pushes_messages_until_closed(
            self, broker, customer_client, seed):
        thread_id = self.open_thread(
            customer_client, seed.seller_id).get_json()["thread"]["id"]

        response = customer_client.get(
            f"/api/chat/threads/{thread_id}/stream")
        assert response.mimetype == "text/event-stream"
        chunks = iter(response.response)
        assert next(chunks) == b": connected\n\n"

        broker.publish(thread_id, {"id": 41, "thread_id": thread_id,
                                   "content": "live"})
        chunk = next(chunks).decode()
        assert chunk.startswith("id: 41\n")
        assert '"content": "live"' in chunk

        response.close()
        assert broker.subscriber_count(thread_id) == 0
