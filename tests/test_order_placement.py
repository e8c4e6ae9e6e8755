from datetime import datetime, timedelta

import pytest
from bson import ObjectId
from pymongo.errors import AutoReconnect, ConnectionFailure

import orders
from errors import (
    CatalogItemNotFound,
    CatalogItemUnavailable,
    ForbiddenRole,
    InvalidDeliveryDate,
    PersistenceError,
    ValidationFailed,
    WeightOptionUnavailable,
)
from orders import earliest_delivery
from tests.conftest import order_payload


def test_earliest_delivery_is_tomorrow_midnight():
    assert earliest_delivery(datetime(2026, 10, 18, 15, 30)) == datetime(2026, 10, 19)
    assert earliest_delivery(datetime(2026, 12, 31, 0, 0, 1)) == datetime(2027, 1, 1)


def test_places_order_with_tier_price(db, placement, customer, add_cake):
    cake_id = add_cake()
    order = placement.place(customer, order_payload(cake_id, delivery="2026-10-19"))

    assert order["status"] == "Order Placed"
    assert order["totalAmount"] == 550
    assert order["items"][0]["price"] == 550
    assert order["items"][0]["weight"] == "1kg"
    assert order["userId"] == customer.user_id
    assert db["order"].count_documents({}) == 1


def test_client_price_is_ignored(db, placement, customer, add_cake):
    cake_id = add_cake()
    payload = order_payload(cake_id, delivery="2026-10-19")
    payload["items"][0]["price"] = 1
    payload["totalAmount"] = 1
    order = placement.place(customer, payload)
    assert order["totalAmount"] == 550


def test_total_is_sum_of_line_snapshots(db, placement, customer, add_cake):
    truffle = add_cake()
    vanilla = add_cake(name="Vanilla Dream", weightOptions=[{"weight": "2kg", "price": 999.5}])
    payload = order_payload(truffle, delivery="2026-10-19")
    payload["items"] = [
        {"cakeId": truffle, "quantity": 2, "weight": "500g"},
        {"cakeId": vanilla, "quantity": 3, "weight": "2kg"},
        {"cakeId": truffle, "quantity": 1, "weight": "1kg"},
    ]
    order = placement.place(customer, payload)

    stored = db["order"].find_one({"_id": ObjectId(order["id"])})
    assert stored["totalAmount"] == sum(i["price"] * i["quantity"] for i in stored["items"])
    assert stored["totalAmount"] == 300 * 2 + 999.5 * 3 + 550
    assert [i["cakeId"] for i in stored["items"]] == [truffle, vanilla, truffle]


def test_repricing_does_not_touch_placed_orders(db, placement, customer, add_cake):
    cake_id = add_cake()
    order = placement.place(customer, order_payload(cake_id, delivery="2026-10-19"))
    db["cake"].update_one(
        {"_id": ObjectId(cake_id)},
        {"$set": {"weightOptions": [{"weight": "1kg", "price": 9999}]}},
    )
    stored = db["order"].find_one({"_id": ObjectId(order["id"])})
    assert stored["items"][0]["price"] == 550
    assert stored["totalAmount"] == 550


def test_admin_cannot_place_orders(db, placement, admin, add_cake):
    cake_id = add_cake()
    with pytest.raises(ForbiddenRole):
        placement.place(admin, order_payload(cake_id, delivery="2026-10-19"))
    with pytest.raises(ForbiddenRole):
        placement.place(admin, {"items": []})
    assert db["order"].count_documents({}) == 0


@pytest.mark.parametrize("delivery", [
    "2026-10-18",
    "2026-10-18T23:59:59",
    "2026-10-01",
])
def test_delivery_before_tomorrow_is_rejected(db, placement, customer, add_cake, delivery):
    cake_id = add_cake()
    with pytest.raises(InvalidDeliveryDate):
        placement.place(customer, order_payload(cake_id, delivery=delivery))
    assert db["order"].count_documents({}) == 0


@pytest.mark.parametrize("delivery", ["2026-10-17T00:00:00.000Z", "2026-10-18T12:00:00+05:30"])
def test_aware_delivery_before_tomorrow_is_rejected(db, placement, customer, add_cake, delivery):
    cake_id = add_cake()
    with pytest.raises(InvalidDeliveryDate):
        placement.place(customer, order_payload(cake_id, delivery=delivery))
    assert db["order"].count_documents({}) == 0


def test_aware_delivery_is_stored_as_local_time(db, placement, customer, add_cake):
    cake_id = add_cake()
    order = placement.place(customer, order_payload(cake_id, delivery="2026-10-25T00:00:00.000Z"))
    stored = db["order"].find_one({"_id": ObjectId(order["id"])})
    assert stored["estimatedDelivery"].tzinfo is None
    assert abs(stored["estimatedDelivery"] - datetime(2026, 10, 25)) <= timedelta(hours=14)


@pytest.mark.parametrize("delivery", ["2026-10-19", "2026-10-19T00:00:00", "2026-11-02T18:00:00"])
def test_delivery_from_tomorrow_is_accepted(db, placement, customer, add_cake, delivery):
    cake_id = add_cake()
    order = placement.place(customer, order_payload(cake_id, delivery=delivery))
    assert order["estimatedDelivery"] >= datetime(2026, 10, 19)


def test_unavailable_cake_is_rejected(db, placement, customer, add_cake):
    cake_id = add_cake(isAvailable=False)
    with pytest.raises(CatalogItemUnavailable) as info:
        placement.place(customer, order_payload(cake_id, delivery="2026-10-19"))
    assert "Chocolate Truffle" in info.value.message
    assert info.value.details["cakeId"] == cake_id
    assert db["order"].count_documents({}) == 0


def test_missing_weight_option_is_rejected(db, placement, customer, add_cake):
    cake_id = add_cake()
    with pytest.raises(WeightOptionUnavailable) as info:
        placement.place(customer, order_payload(cake_id, weight="3kg", delivery="2026-10-19"))
    assert info.value.details == {"cakeId": cake_id, "name": "Chocolate Truffle", "weight": "3kg"}
    assert db["order"].count_documents({}) == 0


def test_unknown_cake_is_rejected(db, placement, customer):
    missing = str(ObjectId())
    with pytest.raises(CatalogItemNotFound) as info:
        placement.place(customer, order_payload(missing, delivery="2026-10-19"))
    assert missing in info.value.message


def test_failure_on_later_line_writes_nothing(db, placement, customer, add_cake):
    good = add_cake()
    bad = add_cake(name="Seasonal", isAvailable=False)
    payload = order_payload(good, delivery="2026-10-19")
    payload["items"].append({"cakeId": bad, "quantity": 1, "weight": "1kg"})
    with pytest.raises(CatalogItemUnavailable):
        placement.place(customer, payload)
    assert db["order"].count_documents({}) == 0


@pytest.mark.parametrize("field,value", [
    ("city", "Bangalore"),
    ("pincode", "012345"),
    ("pincode", "50003"),
])
def test_delivery_address_rules(db, placement, customer, add_cake, field, value):
    cake_id = add_cake()
    payload = order_payload(cake_id, delivery="2026-10-19")
    payload["deliveryAddress"][field] = value
    with pytest.raises(ValidationFailed) as info:
        placement.place(customer, payload)
    assert info.value.details[0]["field"] == f"deliveryAddress.{field}"


def test_request_shape_is_validated(db, placement, customer, add_cake):
    cake_id = add_cake()
    for items in ([], [{"cakeId": "nope", "quantity": 1, "weight": "1kg"}],
                  [{"cakeId": cake_id, "quantity": 0, "weight": "1kg"}],
                  [{"cakeId": cake_id, "quantity": 1, "weight": "750g"}]):
        with pytest.raises(ValidationFailed):
            placement.place(customer, order_payload(cake_id, delivery="2026-10-19", items=items))
    assert db["order"].count_documents({}) == 0


def test_contact_snapshot_and_joins(db, placement, customer, add_cake):
    cake_id = add_cake()
    payload = order_payload(cake_id, delivery="2026-10-19", notes="  Write Happy Birthday  ")
    payload["deliveryAddress"]["landmark"] = "KBR Park gate"
    order = placement.place(customer, payload)

    assert order["customerInfo"]["email"] == "asha@example.com"
    assert order["notes"] == "Write Happy Birthday"
    assert order["items"][0]["cake"]["name"] == "Chocolate Truffle"
    assert order["items"][0]["cake"]["imageUrl"] == "/uploads/truffle.jpg"
    assert order["user"]["email"] == "asha@example.com"
    assert order["formattedAddress"] == (
        "12 Road No 5, Banjara Hills, Hyderabad - 500034, Near KBR Park gate"
    )
    stored = db["order"].find_one({"_id": ObjectId(order["id"])})
    assert "cake" not in stored["items"][0]
    assert "user" not in stored


def test_write_failure_is_transient(db, placement, customer, add_cake, monkeypatch):
    cake_id = add_cake()

    def fail(*args, **kwargs):
        raise AutoReconnect("primary stepped down")

    monkeypatch.setattr(orders, "create_document", fail)
    with pytest.raises(PersistenceError) as info:
        placement.place(customer, order_payload(cake_id, delivery="2026-10-19"))
    assert info.value.status_code == 503


def test_placement_uses_injected_clock(db, customer, add_cake):
    cake_id = add_cake()
    later = orders.OrderPlacement(db, clock=lambda: datetime(2026, 10, 19, 9, 0))
    with pytest.raises(InvalidDeliveryDate):
        later.place(customer, order_payload(cake_id, delivery="2026-10-19"))


def test_failed_join_after_insert_still_returns_the_order(db, placement, customer, add_cake, monkeypatch):
    cake_id = add_cake()

    def fail(*args, **kwargs):
        raise ConnectionFailure("lost connection")

    monkeypatch.setattr(orders, "present_order", fail)
    order = placement.place(customer, order_payload(cake_id, delivery="2026-10-19"))
    assert order["totalAmount"] == 550
    assert "user" not in order
    assert db["order"].count_documents({}) == 1
