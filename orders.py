"""
Order placement, status changes and order listings.

OrderPlacement is the only code path that writes new orders: it re-reads every
requested cake, prices each line from the cake's own weight tiers and stores
one document. OrderLifecycle moves stored orders between statuses.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, List, Mapping, Optional

from pydantic import ValidationError as SchemaError
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from auth import CurrentUser
from catalog import literal_regex, parse_limit, parse_page, parse_sort
from database import create_document, pagination, serialize_doc, store_errors, to_object_id, utcnow
from errors import (
    CatalogItemNotFound,
    CatalogItemUnavailable,
    ForbiddenRole,
    InvalidDeliveryDate,
    InvalidStatus,
    MissingCancellationReason,
    OrderNotFound,
    PersistenceError,
    ValidationFailed,
    WeightOptionUnavailable,
    schema_errors,
)
from schemas import Order, OrderCreate, OrderItem, OrderItemRequest, OrderStatus, Role, formatted_address

logger = logging.getLogger(__name__)

COLLECTION = "order"
CAKES = "cake"
USERS = "user"

ORDER_SORT_FIELDS = ("createdAt", "orderDate", "totalAmount", "status", "estimatedDelivery")
MAX_REASON_LENGTH = 500
CAKE_FIELDS = {"name": 1, "flavor": 1, "flavors": 1, "imageUrl": 1}
USER_FIELDS = {"name": 1, "email": 1, "phone": 1}


def earliest_delivery(now: datetime) -> datetime:
    """Local midnight at the start of tomorrow."""
    tomorrow = now + timedelta(days=1)
    return tomorrow.replace(hour=0, minute=0, second=0, microsecond=0)


def to_local(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def find_weight_option(cake: dict, weight: str) -> Optional[dict]:
    # first match wins for legacy documents carrying duplicate weights
    for option in cake.get("weightOptions") or []:
        if option.get("weight") == weight:
            return option
    return None


# -------------
# Presentation
# -------------

def present_orders(db: Database, docs: Iterable[dict], with_user: bool = True) -> List[dict]:
    docs = list(docs)
    cake_ids = {to_object_id(i.get("cakeId")) for d in docs for i in d.get("items", [])}
    cake_ids.discard(None)
    cakes = {}
    if cake_ids:
        for cake in db[CAKES].find({"_id": {"$in": list(cake_ids)}}, CAKE_FIELDS):
            cakes[str(cake["_id"])] = serialize_doc(cake)

    users = {}
    if with_user:
        user_ids = {to_object_id(d.get("userId")) for d in docs}
        user_ids.discard(None)
        if user_ids:
            for user in db[USERS].find({"_id": {"$in": list(user_ids)}}, USER_FIELDS):
                users[str(user["_id"])] = serialize_doc(user)

    presented = []
    for doc in docs:
        order = serialize_doc(doc)
        order["items"] = [
            dict(item, cake=cakes.get(str(item.get("cakeId")))) for item in doc.get("items", [])
        ]
        if with_user:
            order["user"] = users.get(str(doc.get("userId")))
        if doc.get("deliveryAddress"):
            order["formattedAddress"] = formatted_address(doc["deliveryAddress"])
        presented.append(order)
    return presented


def present_order(db: Database, doc: dict) -> dict:
    return present_orders(db, [doc])[0]


# ---------
# Placement
# ---------

def parse_order_request(body) -> OrderCreate:
    try:
        return OrderCreate.model_validate(body)
    except SchemaError as e:
        raise ValidationFailed("Validation failed", schema_errors(e))


class OrderPlacement:
    def __init__(self, db: Database, clock: Callable[[], datetime] = datetime.now):
        self.db = db
        self.clock = clock

    def place(self, user: CurrentUser, request) -> dict:
        """Validate, price and store an order; ``request`` is an OrderCreate or its raw JSON body."""
        if user.role == Role.ADMIN.value:
            logger.warning("Admin %s tried to place an order", user.user_id)
            raise ForbiddenRole("Admins cannot place orders. Please use a customer account.")
        if not isinstance(request, OrderCreate):
            request = parse_order_request(request)

        now = self.clock()
        delivery = to_local(request.estimated_delivery)
        if delivery < earliest_delivery(now):
            logger.warning("Rejected delivery date %s for user %s", delivery, user.user_id)
            raise InvalidDeliveryDate()

        items, total = self.price_items(request.items)

        order = Order(
            user_id=user.user_id,
            items=items,
            total_amount=total,
            customer_info=request.customer_info,
            delivery_address=request.delivery_address,
            status=OrderStatus.PLACED,
            estimated_delivery=delivery,
            order_date=utcnow(),
            notes=request.notes,
        )
        try:
            doc = create_document(self.db, COLLECTION, order)
        except PyMongoError as e:
            logger.error("Saving order for user %s failed", user.user_id, exc_info=True)
            raise PersistenceError() from e
        logger.info("Order %s placed by user %s, total %s", doc["_id"], user.user_id, total)
        # the order is stored; a failed join must not invite a resubmission
        try:
            return present_order(self.db, doc)
        except PyMongoError:
            logger.warning("Could not load details for order %s", doc["_id"], exc_info=True)
            return serialize_doc(doc)

    def price_items(self, requested: List[OrderItemRequest]):
        """Resolve each requested line against the catalog, in request order."""
        items = []
        total = 0
        cakes = self.db[CAKES]
        for line in requested:
            with store_errors("checking cake availability"):
                cake = cakes.find_one({"_id": to_object_id(line.cake_id)})
            if not cake:
                logger.warning("Order references missing cake %s", line.cake_id)
                raise CatalogItemNotFound(line.cake_id)
            if not cake.get("isAvailable", True):
                logger.warning("Order references unavailable cake %s", line.cake_id)
                raise CatalogItemUnavailable(line.cake_id, cake.get("name", ""))
            option = find_weight_option(cake, line.weight)
            if option is None:
                logger.warning("Cake %s has no %s option", line.cake_id, line.weight)
                raise WeightOptionUnavailable(line.cake_id, cake.get("name", ""), line.weight)

            price = option["price"]
            total += price * line.quantity
            items.append(OrderItem(
                cake_id=line.cake_id,
                quantity=line.quantity,
                weight=line.weight,
                price=price,
            ))
        return items, total


# ---------
# Lifecycle
# ---------

def parse_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise InvalidStatus()


class OrderLifecycle:
    """Admin status changes: Order Placed -> Completed | Cancelled.

    The current status is not checked, so an order that already reached
    Completed or Cancelled can be moved again.
    """

    def __init__(self, db: Database):
        self.db = db

    def transition(self, order_id: str, target_status, cancellation_reason: Optional[str] = None) -> dict:
        status = parse_status(target_status)
        update = {"status": status.value, "updatedAt": utcnow()}
        changes = {"$set": update}

        if status is OrderStatus.CANCELLED:
            reason = (cancellation_reason or "").strip()
            if not reason:
                raise MissingCancellationReason()
            if len(reason) > MAX_REASON_LENGTH:
                raise ValidationFailed(
                    "Cancellation reason cannot exceed 500 characters",
                    [{"field": "cancellationReason", "message": "Too long"}],
                )
            update["cancellationReason"] = reason
        else:
            changes["$unset"] = {"cancellationReason": ""}

        oid = to_object_id(order_id)
        if oid is None:
            raise OrderNotFound()
        with store_errors("updating order status"):
            doc = self.db[COLLECTION].find_one_and_update(
                {"_id": oid}, changes, return_document=ReturnDocument.AFTER
            )
            if not doc:
                raise OrderNotFound()
            logger.info("Order %s moved to %s", order_id, status.value)
            return present_order(self.db, doc)


# --------
# Listings
# --------

def _parse_date(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    # createdAt is stored as naive UTC
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class OrderQueries:
    def __init__(self, db: Database):
        self.db = db

    def _page(self, filter_dict: dict, params: Mapping[str, Any], default_limit: int, with_user: bool) -> dict:
        page = parse_page(params.get("page"))
        limit = parse_limit(params.get("limit"), default_limit)
        sort_by, direction = parse_sort(params.get("sortBy"), params.get("sortOrder"), ORDER_SORT_FIELDS)
        collection = self.db[COLLECTION]
        with store_errors("listing orders"):
            docs = (
                collection.find(filter_dict)
                .sort([(sort_by, direction), ("_id", direction)])
                .skip((page - 1) * limit)
                .limit(limit)
            )
            orders = present_orders(self.db, docs, with_user=with_user)
            total = collection.count_documents(filter_dict)
        return {"orders": orders, "pagination": pagination(total, page, limit, "totalOrders")}

    def for_user(self, user: CurrentUser, params: Mapping[str, Any]) -> dict:
        filter_dict = {"userId": user.user_id}
        if params.get("status"):
            filter_dict["status"] = params["status"]
        return self._page(filter_dict, params, 10, with_user=False)

    def for_admin(self, params: Mapping[str, Any]) -> dict:
        filter_dict = {}
        status = params.get("status")
        if status == "Pending":
            filter_dict["status"] = {"$in": ["Pending", OrderStatus.PLACED.value]}
        elif status:
            filter_dict["status"] = status

        start, end = _parse_date(params.get("startDate")), _parse_date(params.get("endDate"))
        if start or end:
            filter_dict["createdAt"] = {}
            if start:
                filter_dict["createdAt"]["$gte"] = start
            if end:
                filter_dict["createdAt"]["$lte"] = end

        search = (params.get("search") or "").strip()
        if search:
            pattern = literal_regex(search)
            filter_dict["$or"] = [
                {"customerInfo.name": pattern},
                {"customerInfo.phone": pattern},
                {"customerInfo.email": pattern},
            ]
        return self._page(filter_dict, params, 20, with_user=True)

    def get(self, order_id: str, user: CurrentUser) -> dict:
        oid = to_object_id(order_id)
        if oid is None:
            raise OrderNotFound("Invalid order ID")
        query = {"_id": oid}
        if user.role != Role.ADMIN.value:
            query["userId"] = user.user_id
        with store_errors("loading order"):
            doc = self.db[COLLECTION].find_one(query)
            if not doc:
                raise OrderNotFound()
            return present_order(self.db, doc)
