from functools import wraps
from typing import Dict, Optional

import bcrypt
from bson import ObjectId
from flask import g
from flask_jwt_extended import get_jwt_identity
from pymongo.errors import DuplicateKeyError

from errors import NotFound, ValidationError
from helpers import normalize_email, parse_object_id, utcnow

USER_ROLES = {"ADMIN", "CONSUMER"}
ADDRESS_FIELDS = (
    "street",
    "neighbourhood",
    "city",
    "post_code",
    "state_or_province",
    "country",
)

seed_users = [
    {
        "name": "Store Admin",
        "email": "admin@gadgetstore.dev",
        "password": "admin-password",
        "phone_number": "+55 11 90000-0000",
        "role": "ADMIN",
        "address": {
            "street": "Rua Augusta 100",
            "neighbourhood": "Consolacao",
            "city": "Sao Paulo",
            "post_code": "01304-000",
            "state_or_province": "SP",
            "country": "Brazil",
        },
    },
    {
        "name": "Demo Shopper",
        "email": "shopper@gadgetstore.dev",
        "password": "shopper-password",
        "phone_number": "+55 21 98888-0000",
        "role": "CONSUMER",
        "address": {
            "street": "Avenida Atlantica 500",
            "neighbourhood": "Copacabana",
            "city": "Rio de Janeiro",
            "post_code": "22010-000",
            "state_or_province": "RJ",
            "country": "Brazil",
        },
    },
]


def normalize_role(value: Optional[str]) -> str:
    normalized = str(value or "").strip().upper()
    return normalized if normalized in USER_ROLES else "CONSUMER"


def normalize_address_payload(payload: Optional[Dict]) -> Dict[str, str]:
    if not isinstance(payload, dict):
        return {}
    return {field: str(payload.get(field) or "").strip() for field in ADDRESS_FIELDS}


def serialize_user(user_document) -> Optional[Dict[str, object]]:
    if not user_document:
        return None
    return {
        "_id": str(user_document.get("_id")),
        "name": user_document.get("name") or "",
        "email": normalize_email(user_document.get("email")),
        "phoneNumber": user_document.get("phone_number") or "",
        "role": normalize_role(user_document.get("role")),
        "address": normalize_address_payload(user_document.get("address")),
        "transactions": [str(ref) for ref in user_document.get("transactions") or []],
    }


def is_admin(user_document) -> bool:
    return bool(user_document) and normalize_role(user_document.get("role")) == "ADMIN"


class AccountStore:
    def __init__(self, db, logger):
        self.users = db.users
        self.logger = logger

    def find_by_email(self, email: Optional[str]):
        normalized = normalize_email(email)
        if not normalized:
            return None
        return self.users.find_one({"email": normalized})

    def get_user(self, user_id) -> Dict:
        object_id = parse_object_id(user_id)
        if object_id is None:
            raise ValidationError("Invalid user identifier.", user_id=str(user_id))
        user_document = self.users.find_one({"_id": object_id})
        if not user_document:
            raise NotFound("Buyer not found.", user_id=str(object_id))
        return user_document

    def attach_transaction(self, user_id: ObjectId, transaction_id: ObjectId) -> None:
        result = self.users.update_one(
            {"_id": user_id}, {"$addToSet": {"transactions": transaction_id}}
        )
        if result.matched_count == 0:
            raise NotFound("Buyer not found.", user_id=str(user_id))

    def detach_transaction(self, user_id: ObjectId, transaction_id: ObjectId) -> None:
        self.users.update_one(
            {"_id": user_id}, {"$pull": {"transactions": transaction_id}}
        )

    def create_user(self, payload: Dict) -> Optional[ObjectId]:
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")
        if not email or not password:
            raise ValidationError("Email and password are required to create an account.")

        hashed_pw = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
        user_document = {
            "name": str(payload.get("name") or "").strip(),
            "email": email,
            "password_hash": hashed_pw,
            "phone_number": str(payload.get("phone_number") or "").strip(),
            "role": normalize_role(payload.get("role")),
            "address": normalize_address_payload(payload.get("address")),
            "transactions": [],
            "created_at": utcnow(),
        }
        try:
            insert_result = self.users.insert_one(user_document)
        except DuplicateKeyError:
            self.logger.warning("Account for %s already exists", email)
            return None
        return insert_result.inserted_id

    def ensure_seed_users(self):
        created = []
        for user in seed_users:
            if self.find_by_email(user["email"]):
                continue
            user_id = self.create_user(user)
            if user_id:
                created.append(user_id)
        return created


def attach_current_user(accounts: AccountStore):
    """Resolve the JWT identity into ``g.current_user``.

    Must be stacked below ``jwt_required()`` so the token is already verified.
    """

    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            user_document = accounts.find_by_email(get_jwt_identity())
            if not user_document:
                raise ValidationError("User does not exist.")
            user_document.pop("password_hash", None)
            g.current_user = user_document
            return view(*args, **kwargs)

        return wrapper

    return decorator
