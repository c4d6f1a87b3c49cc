from typing import Dict, Iterable, List, NamedTuple, Optional

from bson import ObjectId
from pymongo import ReturnDocument

from errors import NotFound, ValidationError
from helpers import parse_object_id, safe_float, safe_positive_int

PRODUCT_CONDITIONS = {"NEW", "USED"}
DEFAULT_PRODUCT_IMAGE = "https://images.punkapi.com/v2/keg.png"
MAX_DESCRIPTION_LENGTH = 500
MAX_LINE_ITEM_QUANTITY = 2**31 - 1

seed_products = [
    {
        "category": "Smartphones",
        "model": "Pixel 7a",
        "brand": "Google",
        "cost": 1900.0,
        "price": 2499.9,
        "description": "Compact Android phone with a great camera.",
        "color": "Charcoal",
        "condition": "NEW",
        "image_url": ["https://images.unsplash.com/photo-1511707171634-5f897ff02aa9"],
        "qtt_in_stock": 12,
    },
    {
        "category": "Laptops",
        "model": "ThinkPad X1 Carbon",
        "brand": "Lenovo",
        "cost": 7200.0,
        "price": 8999.0,
        "discount": 5,
        "description": "Business ultrabook with the legendary keyboard.",
        "color": "Black",
        "condition": "USED",
        "image_url": ["https://images.unsplash.com/photo-1517336714731-489689fd1ca8"],
        "qtt_in_stock": 4,
    },
    {
        "category": "Audio",
        "model": "WH-1000XM4",
        "brand": "Sony",
        "cost": 1100.0,
        "price": 1499.0,
        "description": "Noise cancelling over-ear headphones.",
        "color": "Silver",
        "condition": "NEW",
        "image_url": ["https://images.unsplash.com/photo-1518443248587-30bdc8f94f04"],
        "qtt_in_stock": 20,
    },
    {
        "category": "Wearables",
        "model": "GTR 4",
        "brand": "Amazfit",
        "cost": 650.0,
        "price": 999.0,
        "description": "Fitness smartwatch with two week battery life.",
        "color": "Brown",
        "condition": "NEW",
        "image_url": ["https://images.unsplash.com/photo-1512086734732-172b66a17c72"],
        "qtt_in_stock": 30,
    },
]


def normalize_product_document(payload: Dict) -> Dict[str, object]:
    condition = str(payload.get("condition") or "").strip().upper()
    if condition not in PRODUCT_CONDITIONS:
        raise ValidationError(f"Product condition must be one of {sorted(PRODUCT_CONDITIONS)}.")

    description = str(payload.get("description") or "").strip()
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError("Product description is limited to 500 characters.")

    images = [str(url).strip() for url in payload.get("image_url") or [] if url]

    document = {
        "category": str(payload.get("category") or "").strip(),
        "model": str(payload.get("model") or "").strip(),
        "brand": str(payload.get("brand") or "").strip(),
        "cost": safe_float(payload.get("cost"), 0.0),
        "price": safe_float(payload.get("price"), 0.0),
        "discount": safe_float(payload.get("discount"), 0.0),
        "description": description,
        "color": str(payload.get("color") or "").strip(),
        "condition": condition,
        "image_url": images or [DEFAULT_PRODUCT_IMAGE],
        "qtt_in_stock": safe_positive_int(payload.get("qtt_in_stock", 1), 0),
        "transactions": [],
    }
    missing = [
        field
        for field in ("category", "model", "brand", "color")
        if not document[field]
    ]
    if missing:
        raise ValidationError(f"Missing product fields: {', '.join(missing)}.")
    return document


def serialize_product(product_document) -> Optional[Dict[str, object]]:
    if not product_document:
        return None
    images = product_document.get("image_url") or []
    if isinstance(images, str):
        images = [images]
    return {
        "_id": str(product_document.get("_id")),
        "category": product_document.get("category") or "",
        "model": product_document.get("model") or "",
        "brand": product_document.get("brand") or "",
        "price": round(safe_float(product_document.get("price"), 0.0), 2),
        "discount": safe_float(product_document.get("discount"), 0.0),
        "description": product_document.get("description") or "",
        "color": product_document.get("color") or "",
        "condition": product_document.get("condition") or "",
        "image_url": [str(url) for url in images if url],
        "qtt_in_stock": int(product_document.get("qtt_in_stock") or 0),
    }


class CatalogStore:
    """Product lookups and the stock mutations used by purchases."""

    def __init__(self, db, logger):
        self.products = db.products
        self.logger = logger

    def get_product(self, product_id) -> Dict:
        object_id = parse_object_id(product_id)
        if object_id is None:
            raise ValidationError("Invalid product identifier.", product_id=str(product_id))

        product_document = self.products.find_one({"_id": object_id})
        if not product_document:
            raise NotFound("Product not found.", product_id=str(object_id))
        return product_document

    def find_products(self, product_ids: Iterable[ObjectId]) -> Dict[ObjectId, Dict]:
        unique_ids = list(dict.fromkeys(product_ids))
        if not unique_ids:
            return {}
        cursor = self.products.find({"_id": {"$in": unique_ids}})
        return {document["_id"]: document for document in cursor}

    def stock_level(self, product_id: ObjectId) -> int:
        product_document = self.products.find_one({"_id": product_id}, {"qtt_in_stock": 1})
        return int((product_document or {}).get("qtt_in_stock") or 0)

    def reserve_stock(self, product_id: ObjectId, quantity: int, transaction_id: ObjectId):
        # Single conditional update: concurrent buyers cannot push stock below zero.
        return self.products.find_one_and_update(
            {"_id": product_id, "qtt_in_stock": {"$gte": quantity}},
            {
                "$inc": {"qtt_in_stock": -quantity},
                "$push": {"transactions": transaction_id},
            },
            return_document=ReturnDocument.AFTER,
        )

    def release_stock(self, product_id: ObjectId, quantity: int, transaction_id: ObjectId):
        result = self.products.update_one(
            {"_id": product_id, "transactions": transaction_id},
            {
                "$inc": {"qtt_in_stock": quantity},
                "$pull": {"transactions": transaction_id},
            },
        )
        if result.matched_count == 0:
            self.logger.debug(
                "Stock release for product %s skipped: transaction %s not attached",
                product_id,
                transaction_id,
            )
        return result.modified_count

    def ensure_seed_products(self) -> List[ObjectId]:
        if self.products.count_documents({}) > 0:
            return []

        documents = [normalize_product_document(product) for product in seed_products]
        insert_result = self.products.insert_many(documents)
        return list(insert_result.inserted_ids)


class LineItem(NamedTuple):
    product_id: ObjectId
    qtt: int


def parse_quantity(value) -> Optional[int]:
    """Return ``value`` as a whole number in ``1..MAX_LINE_ITEM_QUANTITY``, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        quantity = value
    elif isinstance(value, float) and value.is_integer():
        quantity = int(value)
    elif isinstance(value, str) and value.strip().isdecimal():
        quantity = int(value.strip())
    else:
        return None
    if quantity < 1 or quantity > MAX_LINE_ITEM_QUANTITY:
        return None
    return quantity


def parse_line_items(raw_items) -> List[LineItem]:
    """Validate ``[{productId, qtt}]`` request entries into line items."""
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("Include at least one product in the purchase.")

    line_items: List[LineItem] = []
    for index, entry in enumerate(raw_items):
        if not isinstance(entry, dict):
            raise ValidationError("Each product entry must be an object.", index=index)

        product_id = parse_object_id(entry.get("productId") or entry.get("product_id"))
        if product_id is None:
            raise ValidationError("Invalid product identifier.", index=index)

        quantity = parse_quantity(entry.get("qtt", entry.get("quantity")))
        if quantity is None:
            raise ValidationError("Quantity must be a positive whole number.", index=index)

        line_items.append(LineItem(product_id, quantity))
    return line_items


def aggregate_quantities(line_items: Iterable[LineItem]) -> Dict[ObjectId, int]:
    totals: Dict[ObjectId, int] = {}
    for item in line_items:
        totals[item.product_id] = totals.get(item.product_id, 0) + item.qtt
    return totals
