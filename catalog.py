"""
Catalog browsing and admin maintenance of cakes.

CatalogQuery turns untrusted query-string values into a safe MongoDB filter,
sort and page window. CatalogBrowser runs it against the ``cake`` collection;
CatalogAdmin owns create/update/delete/availability writes.
"""

import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional

from pydantic import ValidationError as SchemaError
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database

from database import (
    create_document,
    get_documents,
    pagination,
    serialize_doc,
    store_errors,
    to_object_id,
    utcnow,
)
from errors import CakeNotFound, FlavorRequired, ImageRequired, ValidationFailed, schema_errors
from schemas import Cake, average_rating

logger = logging.getLogger(__name__)

COLLECTION = "cake"

MAX_LIMIT = 50
PUBLIC_LIMIT = 12
ADMIN_LIMIT = 10
SORT_FIELDS = ("createdAt", "name", "price", "category")
SEARCH_FIELDS = ("name", "description", "flavor", "flavors")
FILTER_PARAMS = ("search", "flavor", "minPrice", "maxPrice", "category")


# -------------------
# Query-string parsing
# -------------------

def parse_page(value) -> int:
    try:
        page = int(value)
    except (TypeError, ValueError):
        return 1
    return max(page, 1)


def parse_limit(value, default: int, maximum: int = MAX_LIMIT) -> int:
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return default
    return min(max(limit, 1), maximum)


def parse_price(value) -> Optional[float]:
    """Non-negative finite number, or None for anything unusable."""
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(price) or math.isinf(price) or price < 0:
        return None
    return price


def parse_sort(sort_by, sort_order, allowed=SORT_FIELDS, default="createdAt"):
    field = sort_by if sort_by in allowed else default
    direction = ASCENDING if sort_order == "asc" else DESCENDING
    return field, direction


def literal_regex(text: str) -> dict:
    """Case-insensitive substring match with user input escaped."""
    return {"$regex": re.escape(text), "$options": "i"}


def _text(value) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


@dataclass
class CatalogQuery:
    page: int = 1
    limit: int = PUBLIC_LIMIT
    search: Optional[str] = None
    flavor: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    category: Optional[str] = None
    is_available: Optional[bool] = True
    sort_by: str = "createdAt"
    sort_direction: int = DESCENDING
    filtered: bool = False

    @classmethod
    def from_params(cls, params: Mapping[str, Any], admin: bool = False) -> "CatalogQuery":
        sort_by, direction = parse_sort(params.get("sortBy"), params.get("sortOrder"))
        if admin:
            raw = params.get("isAvailable")
            is_available = None if raw in (None, "") else str(raw).lower() == "true"
        else:
            is_available = True
        return cls(
            page=parse_page(params.get("page")),
            limit=parse_limit(params.get("limit"), ADMIN_LIMIT if admin else PUBLIC_LIMIT),
            search=_text(params.get("search")),
            flavor=_text(params.get("flavor")),
            min_price=parse_price(params.get("minPrice")),
            max_price=parse_price(params.get("maxPrice")),
            category=_text(params.get("category")),
            is_available=is_available,
            sort_by=sort_by,
            sort_direction=direction,
            filtered=any(params.get(name) for name in FILTER_PARAMS),
        )

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit

    def build_filter(self) -> dict:
        filter_dict = {}
        clauses = []
        if self.is_available is not None:
            filter_dict["isAvailable"] = self.is_available
        if self.search:
            pattern = literal_regex(self.search)
            clauses.append({"$or": [{field: pattern} for field in SEARCH_FIELDS]})
        if self.flavor:
            clauses.append({"$or": [
                {"flavor": literal_regex(self.flavor)},
                {"flavors": {"$in": [re.compile(re.escape(self.flavor), re.IGNORECASE)]}},
            ]})
        if self.min_price is not None or self.max_price is not None:
            price = {}
            if self.min_price is not None:
                price["$gte"] = self.min_price
            if self.max_price is not None:
                price["$lte"] = self.max_price
            filter_dict["price"] = price
        if self.category:
            # unknown categories are matched literally and simply find nothing
            filter_dict["category"] = self.category
        if clauses:
            filter_dict["$and"] = clauses
        return filter_dict

    def build_sort(self) -> list:
        return [(self.sort_by, self.sort_direction), ("_id", self.sort_direction)]


def present_cake(doc: dict) -> dict:
    cake = serialize_doc(doc)
    cake["averageRating"] = average_rating(doc)
    return cake


class CatalogBrowser:
    def __init__(self, db: Database):
        self.db = db

    def browse(self, query: CatalogQuery, include_filters: bool = True) -> dict:
        filter_dict = query.build_filter()
        collection = self.db[COLLECTION]
        with store_errors("browsing cakes"):
            docs = list(
                collection.find(filter_dict)
                .sort(query.build_sort())
                .skip(query.skip)
                .limit(query.limit)
            )
            total = collection.count_documents(filter_dict)
            result = {
                "cakes": [present_cake(d) for d in docs],
                "pagination": pagination(total, query.page, query.limit, "totalCakes"),
            }
            if include_filters:
                result["filters"] = self.filter_options() if not query.filtered else {
                    "availableFlavors": [],
                    "availableCategories": [],
                }
        return result

    def filter_options(self) -> dict:
        collection = self.db[COLLECTION]
        single = collection.distinct("flavor", {"isAvailable": True})
        docs = get_documents(self.db, COLLECTION, {"isAvailable": True}, projection={"flavors": 1})
        flavors = set(f for f in single if f)
        for d in docs:
            flavors.update(f for f in d.get("flavors") or [] if f)
        categories = collection.distinct("category", {"isAvailable": True})
        return {
            "availableFlavors": sorted(flavors),
            "availableCategories": sorted(c for c in categories if c),
        }

    def get(self, cake_id: str) -> dict:
        oid = to_object_id(cake_id)
        if oid is None:
            raise CakeNotFound()
        with store_errors("loading cake"):
            doc = self.db[COLLECTION].find_one({"_id": oid})
        if not doc:
            raise CakeNotFound()
        return present_cake(doc)


# ---------------
# Admin mutations
# ---------------

def normalize_flavors(value) -> Optional[List[str]]:
    """Flavor list from a list, a JSON array string or a comma-separated string.

    Returns None when nothing was supplied; blank entries are dropped.
    """
    if value is None:
        return None
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            parsed = value.split(",") if "," in value else [value]
        value = parsed if isinstance(parsed, list) else [parsed]
    elif not isinstance(value, (list, tuple)):
        value = [value]
    flavors = []
    for flavor in value:
        if flavor is None:
            continue
        flavor = str(flavor).strip()
        if flavor:
            flavors.append(flavor)
    return flavors


def parse_json_field(value, field: str):
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        raise ValidationFailed(f"{field} must be valid JSON", [{"field": field, "message": "Invalid JSON"}])


def _blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class CatalogAdmin:
    def __init__(self, db: Database, images=None):
        self.db = db
        self.images = images

    def _prepare(self, fields: Mapping[str, Any]) -> dict:
        data = {k: v for k, v in fields.items() if k not in ("_id", "id", "image")}
        for field in ("weightOptions", "tags"):
            if field in data:
                data[field] = parse_json_field(data[field], field)
        if "flavors" in data:
            data["flavors"] = normalize_flavors(data["flavors"])
        return data

    def _validate(self, data: dict) -> dict:
        try:
            cake = Cake.model_validate(data)
        except SchemaError as e:
            raise ValidationFailed("Validation failed", schema_errors(e))
        return cake.model_dump(by_alias=True, exclude={"created_at", "updated_at"})

    def create(self, fields: Mapping[str, Any], image_url: Optional[str]) -> dict:
        if not image_url:
            raise ImageRequired()
        data = self._prepare(fields)
        if data.get("flavors") is None and not _blank(data.get("flavor")):
            data["flavors"] = normalize_flavors([data["flavor"]])
        data["imageUrl"] = image_url

        missing = []
        if _blank(data.get("name")):
            missing.append("Name is required")
        if not data.get("flavors"):
            missing.append("At least one flavor is required")
        if _blank(data.get("price")):
            missing.append("Price is required")
        if _blank(data.get("description")):
            missing.append("Description is required")
        if not isinstance(data.get("weightOptions"), list) or not data["weightOptions"]:
            missing.append("At least one weight option is required")
        if missing == ["At least one flavor is required"]:
            raise FlavorRequired()
        if missing:
            raise ValidationFailed("Validation failed", missing)

        doc = self._validate(data)
        with store_errors("creating cake"):
            doc = create_document(self.db, COLLECTION, doc)
        logger.info("Cake %s created: %s", doc["_id"], doc["name"])
        return present_cake(doc)

    def update(self, cake_id: str, fields: Mapping[str, Any], image_url: Optional[str] = None) -> dict:
        oid = to_object_id(cake_id)
        if oid is None:
            raise CakeNotFound()
        collection = self.db[COLLECTION]
        with store_errors("loading cake"):
            existing = collection.find_one({"_id": oid})
        if not existing:
            raise CakeNotFound()

        data = self._prepare(fields)
        if "flavors" in data and not data["flavors"]:
            raise FlavorRequired()
        merged = {k: v for k, v in existing.items() if k not in ("_id", "createdAt", "updatedAt")}
        merged.update({k: v for k, v in data.items() if v is not None})
        if not merged.get("flavors") and merged.get("flavor"):
            merged["flavors"] = [merged["flavor"]]
        merged["imageUrl"] = image_url or existing.get("imageUrl")

        doc = self._validate(merged)
        doc["updatedAt"] = utcnow()
        with store_errors("updating cake"):
            updated = collection.find_one_and_update(
                {"_id": oid}, {"$set": doc}, return_document=ReturnDocument.AFTER
            )
        if not updated:
            raise CakeNotFound()
        if image_url and existing.get("imageUrl") != image_url and self.images is not None:
            self.images.discard(existing.get("imageUrl"))
        logger.info("Cake %s updated", cake_id)
        return present_cake(updated)

    def set_availability(self, cake_id: str, is_available: bool) -> dict:
        oid = to_object_id(cake_id)
        if oid is None:
            raise CakeNotFound()
        with store_errors("toggling availability"):
            updated = self.db[COLLECTION].find_one_and_update(
                {"_id": oid},
                {"$set": {"isAvailable": is_available, "updatedAt": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
        if not updated:
            raise CakeNotFound()
        logger.info("Cake %s %s", cake_id, "activated" if is_available else "deactivated")
        return present_cake(updated)

    def delete(self, cake_id: str) -> None:
        """Remove a cake from the catalog. Orders keep their own line-item snapshots."""
        oid = to_object_id(cake_id)
        if oid is None:
            raise CakeNotFound()
        with store_errors("deleting cake"):
            deleted = self.db[COLLECTION].find_one_and_delete({"_id": oid})
        if not deleted:
            raise CakeNotFound()
        if self.images is not None:
            self.images.discard(deleted.get("imageUrl"))
        logger.info("Cake %s deleted", cake_id)
