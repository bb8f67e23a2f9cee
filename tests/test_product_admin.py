from decimal import Decimal

import pytest

from storefront.errors import (
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from storefront.services import product_admin_service


class TestCreateProduct:
    def test_cleans_fields(self, seller):
        product = product_admin_service.create_product(seller, {
            "name": "  Desk Lamp ",
            "price": "24.9",
            "category": " Home ",
            "features": "LED\n\nDimmable",
        })

        assert product.name == "Desk Lamp"
        assert product.price == Decimal("24.90")
        assert product.category == "home"
        assert product.features == ["LED", "Dimmable"]
        assert product.store_id == seller.id

    @pytest.mark.parametrize("data", [
        {"name": 123, "price": 1},
        {"name": ["Lamp"], "price": 1},
        {"name": "Lamp", "price": 1, "category": 7},
        {"name": "Lamp"},
        {"name": "Lamp", "price": True},
        {"name": "Lamp", "price": 1, "stock": "-1"},
    ])
    def test_rejects_invalid_input(self, seller, data):
        with pytest.raises(ValidationError):
            product_admin_service.create_product(seller, data)


class TestUpdateProduct:
    def test_partial_update(self, seller, product_p):
        product = product_admin_service.update_product(
            seller, product_p.id, {"stock": "4"})

        assert product.stock == 4
        assert product.name == "Product P"

    def test_non_text_name(self, seller, product_p):
        with pytest.raises(ValidationError):
            product_admin_service.update_product(
                seller, product_p.id, {"name": 42})

    def test_other_store(self, other_seller, product_p):
        with pytest.raises(PermissionDeniedError):
            product_admin_service.update_product(
                other_seller, product_p.id, {"stock": 1})

    def test_unknown_product(self, seller):
        with pytest.raises(NotFoundError):
            product_admin_service.update_product(seller, 9999, {"stock": 1})
