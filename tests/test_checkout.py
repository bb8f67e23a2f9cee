from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from storefront.errors import (
    CheckoutConflictError,
    EmptyCartError,
    InsufficientStockError,
    InvalidAddressError,
    NotFoundError,
    PaymentDeclinedError,
    StorageError,
)
from storefront.extensions import db
from storefront.models import (
    AuditLog,
    Order,
    OrderStatus,
    PaymentStatus,
    Product,
)
from storefront.services import cart_service, checkout_service

RETURN_URLS = checkout_service.default_return_urls("http://shop.test")


@pytest.fixture
def filled_cart(customer, product_p, product_q):
    cart_service.add_item(customer, product_p.id, 2)
    cart_service.add_item(customer, product_q.id, 1)
    return cart_service.find_pending_order(customer)


def begin(customer, gateway):
    return checkout_service.begin_checkout(customer, gateway, RETURN_URLS)


class TestBeginCheckout:
    def test_summary_for_two_p_and_one_q(self, customer, filled_cart, gateway):
        result = begin(customer, gateway)

        assert result["subtotal"] == Decimal("25.00")
        assert result["shipping"] == Decimal("0.00")
        assert result["total"] == Decimal("25.00")
        assert result["order_id"] == filled_cart.id

    def test_sends_itemized_manifest(self, customer, filled_cart, gateway):
        result = begin(customer, gateway)

        session = gateway.sessions[result["token"]]
        assert session["external_reference"] == str(filled_cart.id)
        assert session["back_urls"]["success"] == "http://shop.test/success"
        assert [
            (line["title"], line["unit_price"], line["quantity"])
            for line in session["manifest"]
        ] == [("Product P", 10.0, 2), ("Product Q", 5.0, 1)]
        assert all(line["currency_id"] == "USD" for line in session["manifest"])

    def test_records_payment_session(self, customer, filled_cart, gateway):
        result = begin(customer, gateway)

        payment = filled_cart.payment
        assert payment.session_token == result["token"]
        assert payment.amount == Decimal("25.00")
        assert payment.status == PaymentStatus.INIT

    def test_new_session_replaces_previous(
            self, customer, filled_cart, gateway):
        first = begin(customer, gateway)
        second = begin(customer, gateway)

        assert first["token"] != second["token"]
        db.session.refresh(filled_cart)
        assert filled_cart.payment.session_token == second["token"]

    def test_empty_cart(self, customer, gateway):
        with pytest.raises(EmptyCartError):
            begin(customer, gateway)
        assert gateway.sessions == {}


class TestCompleteCheckout:
    def test_completes_order(
            self, customer, filled_cart, gateway, address, product_p):
        token = begin(customer, gateway)["token"]

        result = checkout_service.complete_checkout(
            customer, filled_cart.id, address, token, gateway)

        assert not result.already_completed
        order = db.session.get(Order, filled_cart.id)
        assert order.status == OrderStatus.COMPLETED
        assert order.total == Decimal("25.00")
        assert order.completed_at is not None
        assert order.payment.status == PaymentStatus.SUCCESS
        assert order.payment.provider_reference == f"{token}_PAID"
        assert order.shipping_snapshot.to_dict() == address
        # Line items are kept on the completed order
        assert order.items.count() == 2
        assert db.session.get(Product, product_p.id).stock == 8

    def test_cart_is_empty_after_completion(
            self, customer, filled_cart, gateway, address):
        token = begin(customer, gateway)["token"]
        checkout_service.complete_checkout(
            customer, filled_cart.id, address, token, gateway)

        assert cart_service.get_cart(customer)["items"] == []

    def test_accepts_browser_field_names(
            self, customer, filled_cart, gateway):
        token = begin(customer, gateway)["token"]
        form = {
            "fullName": "Jane Buyer",
            "address": "1 Main St",
            "city": "Springfield",
            "state": "IL",
            "zipCode": "62701",
            "phone": "555-0100",
        }

        checkout_service.complete_checkout(
            customer, filled_cart.id, form, token, gateway)

        order = db.session.get(Order, filled_cart.id)
        assert order.shipping_snapshot.zip_code == "62701"

    @pytest.mark.parametrize("blank", ["", "   ", None])
    def test_rejects_address_with_empty_field(
            self, customer, filled_cart, gateway, address, blank):
        token = begin(customer, gateway)["token"]
        address["city"] = blank

        with pytest.raises(InvalidAddressError) as excinfo:
            checkout_service.complete_checkout(
                customer, filled_cart.id, address, token, gateway)

        assert excinfo.value.details["missing_fields"] == ["city"]
        assert db.session.get(
            Order, filled_cart.id).status == OrderStatus.PENDING
        assert gateway.outcome_calls == 0

    def test_second_completion_charges_once(
            self, customer, filled_cart, gateway, address, product_p):
        token = begin(customer, gateway)["token"]
        checkout_service.complete_checkout(
            customer, filled_cart.id, address, token, gateway)

        again = checkout_service.complete_checkout(
            customer, filled_cart.id, address, token, gateway)

        assert again.already_completed
        assert gateway.outcome_calls == 1
        assert db.session.get(Product, product_p.id).stock == 8
        assert AuditLog.query.filter_by(action="ORDER_COMPLETE").count() == 1

    def test_declined_payment_keeps_order_pending(
            self, customer, filled_cart, gateway, address, product_p):
        token = begin(customer, gateway)["token"]
        # Unknown to the provider: rejected
        del gateway.sessions[token]

        with pytest.raises(PaymentDeclinedError):
            checkout_service.complete_checkout(
                customer, filled_cart.id, address, token, gateway)

        order = db.session.get(Order, filled_cart.id)
        assert order.status == OrderStatus.PENDING
        assert order.payment.status == PaymentStatus.FAILED
        assert db.session.get(Product, product_p.id).stock == 10

    def test_declined_status_write_failure(
            self, customer, filled_cart, gateway, address, monkeypatch):
        token = begin(customer, gateway)["token"]
        del gateway.sessions[token]

        def fail(session):
            raise OperationalError(
                "UPDATE payment_transactions", {}, Exception("disk I/O error"))

        monkeypatch.setattr(Session, "commit", fail)

        with pytest.raises(StorageError):
            checkout_service.complete_checkout(
                customer, filled_cart.id, address, token, gateway)

        monkeypatch.undo()
        order = db.session.get(Order, filled_cart.id)
        assert order.status == OrderStatus.PENDING
        assert order.payment.status == PaymentStatus.INIT

    def test_token_mismatch(self, customer, filled_cart, gateway, address):
        begin(customer, gateway)

        with pytest.raises(CheckoutConflictError):
            checkout_service.complete_checkout(
                customer, filled_cart.id, address, "MOCK_other", gateway)
        assert gateway.outcome_calls == 0

    def test_cart_changed_after_payment_refunds(
            self, customer, filled_cart, gateway, address, product_q):
        token = begin(customer, gateway)["token"]
        # Paid at the provider, then the cart is edited in another tab
        assert gateway.fetch_outcome(token).approved
        cart_service.add_item(customer, product_q.id, 1)

        with pytest.raises(CheckoutConflictError):
            checkout_service.complete_checkout(
                customer, filled_cart.id, address, token, gateway)

        assert gateway.refund_calls == 1
        assert token in gateway.refunded
        order = db.session.get(Order, filled_cart.id)
        assert order.status == OrderStatus.PENDING
        assert order.payment.status == PaymentStatus.REFUNDED

    def test_refunded_session_cannot_complete(
            self, customer, filled_cart, gateway, address, product_q):
        token = begin(customer, gateway)["token"]
        cart_service.add_item(customer, product_q.id, 1)
        with pytest.raises(CheckoutConflictError):
            checkout_service.complete_checkout(
                customer, filled_cart.id, address, token, gateway)
        # Back to the amount that was paid
        cart_service.update_quantity(
            customer, filled_cart.items.filter_by(
                product_id=product_q.id).one().id, 1)

        with pytest.raises(CheckoutConflictError):
            checkout_service.complete_checkout(
                customer, filled_cart.id, address, token, gateway)

        assert gateway.refund_calls == 1
        assert db.session.get(
            Order, filled_cart.id).status == OrderStatus.PENDING

    def test_new_session_after_refund_completes(
            self, customer, filled_cart, gateway, address, product_q):
        stale = begin(customer, gateway)["token"]
        cart_service.add_item(customer, product_q.id, 1)
        with pytest.raises(CheckoutConflictError):
            checkout_service.complete_checkout(
                customer, filled_cart.id, address, stale, gateway)

        token = begin(customer, gateway)["token"]
        result = checkout_service.complete_checkout(
            customer, filled_cart.id, address, token, gateway)

        assert result.order.status == OrderStatus.COMPLETED
        assert result.order.total == Decimal("30.00")

    def test_other_users_order(
            self, customer, other_customer, filled_cart, gateway, address):
        token = begin(customer, gateway)["token"]

        with pytest.raises(NotFoundError):
            checkout_service.complete_checkout(
                other_customer, filled_cart.id, address, token, gateway)

    def test_stock_sold_out_after_payment_refunds(
            self, customer, filled_cart, gateway, address, product_p):
        token = begin(customer, gateway)["token"]
        product_p.stock = 1
        db.session.commit()

        with pytest.raises(InsufficientStockError):
            checkout_service.complete_checkout(
                customer, filled_cart.id, address, token, gateway)

        assert gateway.outcome_calls == 1
        assert gateway.refund_calls == 1
        order = db.session.get(Order, filled_cart.id)
        assert order.status == OrderStatus.PENDING
        assert order.payment.status == PaymentStatus.REFUNDED
        assert db.session.get(Product, product_p.id).stock == 1

    def test_unpaid_session_is_not_refunded(
            self, customer, filled_cart, gateway, address, product_q):
        token = begin(customer, gateway)["token"]
        del gateway.sessions[token]
        cart_service.add_item(customer, product_q.id, 1)

        with pytest.raises(PaymentDeclinedError):
            checkout_service.complete_checkout(
                customer, filled_cart.id, address, token, gateway)
        assert gateway.refund_calls == 0

    def test_failure_after_approval_refunds_and_rolls_back(
            self, customer, filled_cart, gateway, address, product_p,
            monkeypatch):
        token = begin(customer, gateway)["token"]

        def fail(items):
            raise InsufficientStockError("Product P has insufficient stock")

        monkeypatch.setattr(checkout_service, "_decrement_stock", fail)

        with pytest.raises(InsufficientStockError):
            checkout_service.complete_checkout(
                customer, filled_cart.id, address, token, gateway)

        assert gateway.refund_calls == 1
        assert token in gateway.refunded
        order = db.session.get(Order, filled_cart.id)
        assert order.status == OrderStatus.PENDING
        assert order.shipping_snapshot is None
        assert order.payment.status == PaymentStatus.REFUNDED
        assert db.session.get(Product, product_p.id).stock == 10

    def test_stock_untouched_when_decrement_disabled(
            self, customer, filled_cart, gateway, address, product_p):
        token = begin(customer, gateway)["token"]

        checkout_service.complete_checkout(
            customer, filled_cart.id, address, token, gateway,
            decrement_stock=False)

        assert db.session.get(Product, product_p.id).stock == 10


class TestShippingAddress:
    def test_trims_values(self, address):
        address["full_name"] = "  Jane Buyer  "
        cleaned = checkout_service.validate_shipping_address(address)
        assert cleaned["full_name"] == "Jane Buyer"

    def test_reports_every_missing_field(self):
        with pytest.raises(InvalidAddressError) as excinfo:
            checkout_service.validate_shipping_address({"city": "X"})
        assert excinfo.value.details["missing_fields"] == [
            "full_name", "address", "state", "zip_code", "phone"]

    def test_rejects_non_mapping(self):
        with pytest.raises(InvalidAddressError):
            checkout_service.validate_shipping_address(None)
