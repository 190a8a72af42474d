"""Tests for the kitchen display notification."""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from unittest.mock import Mock

import pytest
import requests

from pos_engine import constants, data_manager, kds


@pytest.fixture
def settings(tmp_path):
    return data_manager.ConfigSettings(
        data_file=tmp_path / "outlet.xlsx",
        outlet_name="Test Outlet",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        kds_enabled=True,
        kds_url="http://kitchen.local:8080",
        kds_timeout=2.0,
    )


@pytest.fixture
def sale():
    return data_manager.SaleRow(
        sale_id="S-1",
        sale_number=7,
        total_amount=Decimal("6500"),
        payment_method="cash",
        cash_received=Decimal("10000"),
        change_given=Decimal("3500"),
        bills_received={10000: 1},
        bills_change={2000: 1, 1000: 1, 500: 1},
        customer_name="Ana",
        notes=None,
        completed_at="2024-05-01T12:00:00+00:00",
    )


@pytest.fixture
def items():
    return [
        data_manager.SaleItemRow(
            sale_item_id="SI-1",
            sale_id="S-1",
            product_id="P1",
            product_name="Burger",
            product_price=Decimal("5000"),
            production_cost=Decimal("1800"),
            quantity=Decimal("1"),
            subtotal=Decimal("5000"),
            removed_ingredients=("Onion",),
            combo_name="Lunch",
            combo_instance_id="CI-1",
            combo_unit_price=Decimal("6500"),
        ),
        data_manager.SaleItemRow(
            sale_item_id="SI-2",
            sale_id="S-1",
            product_id="P2",
            product_name="Fries",
            product_price=Decimal("1500.50"),
            production_cost=Decimal("300"),
            quantity=Decimal("1"),
            subtotal=Decimal("1500.50"),
        ),
    ]


@pytest.fixture
def post_mock(monkeypatch):
    mock = Mock(name="post")
    monkeypatch.setattr(kds.requests, "post", mock)
    return mock


def test_build_order_payload_shapes_items(sale, items):
    payload = kds.build_order_payload(sale, items)

    assert payload["sale_number"] == 7
    assert payload["total"] == 6500
    assert payload["customer_name"] == "Ana"
    assert payload["items"][0] == {
        "product_name": "Burger",
        "quantity": 1,
        "product_price": 5000,
        "removed_ingredients": ["Onion"],
        "combo_name": "Lunch",
    }
    assert payload["items"][1]["product_price"] == 1500.5


def test_notify_kitchen_posts_order(settings, sale, items, post_mock):
    assert kds.notify_kitchen(settings, sale, items) is True

    post_mock.assert_called_once_with(
        "http://kitchen.local:8080/api/orders",
        json=kds.build_order_payload(sale, items),
        timeout=2.0,
    )
    post_mock.return_value.raise_for_status.assert_called_once_with()


def test_notify_kitchen_skips_when_disabled(settings, sale, items, post_mock):
    assert kds.notify_kitchen(replace(settings, kds_enabled=False), sale, items) is False
    assert kds.notify_kitchen(replace(settings, kds_url=None), sale, items) is False
    post_mock.assert_not_called()


def test_notify_kitchen_reports_connection_errors(settings, sale, items, post_mock):
    """Network failures are logged and reported, never raised."""

    post_mock.side_effect = requests.ConnectionError("refused")

    assert kds.notify_kitchen(settings, sale, items) is False


def test_notify_kitchen_reports_http_errors(settings, sale, items, post_mock):
    post_mock.return_value.raise_for_status.side_effect = requests.HTTPError("500")

    assert kds.notify_kitchen(settings, sale, items) is False
