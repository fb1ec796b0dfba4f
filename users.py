"""Account output and the admin-side user queries."""
import re
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Optional

from database import parse_object_id, serialize_doc
from schemas import utcnow

PRIVATE_FIELDS = ("password_hash", "reset_password_token", "reset_password_expires")
REGISTRATION_TREND_DAYS = 30
TOP_CUSTOMERS_LIMIT = 10
RECENT_USERS_LIMIT = 5


def user_payload(user: dict) -> dict:
    doc = serialize_doc(user)
    for secret in PRIVATE_FIELDS:
        doc.pop(secret, None)
    return doc


def build_user_query(role: Optional[str] = None, search: Optional[str] = None) -> dict:
    filt = {}
    if role:
        filt["role"] = role
    if search:
        pattern = re.escape(search)
        filt["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"email": {"$regex": pattern, "$options": "i"}},
        ]
    return filt


def order_summary(db, user_id: str) -> dict:
    rows = list(db["order"].aggregate([
        {"$match": {"user_id": user_id}},
        {"$group": {
            "_id": None,
            "total_orders": {"$sum": 1},
            "total_spent": {"$sum": "$total_price"},
            "avg_order_value": {"$avg": "$total_price"},
        }},
    ]))
    if not rows:
        return {"total_orders": 0, "total_spent": 0, "avg_order_value": 0}
    row = rows[0]
    row.pop("_id", None)
    return row


def _as_utc(value: datetime) -> datetime:
    # pymongo hands back naive UTC datetimes unless the client is tz_aware
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def registration_trend(db, days: int = REGISTRATION_TREND_DAYS, now: Optional[datetime] = None) -> list:
    """Sign-ups per UTC day over the last `days` days, oldest first."""
    since = (now or utcnow()) - timedelta(days=days)
    counts = Counter()
    for doc in db["user"].find({"created_at": {"$exists": True}}, {"created_at": 1}):
        created = _as_utc(doc["created_at"])
        if created >= since:
            counts[created.strftime("%Y-%m-%d")] += 1
    return [{"date": day, "count": counts[day]} for day in sorted(counts)]


def top_customers(db, limit: int = TOP_CUSTOMERS_LIMIT) -> list:
    rows = db["order"].aggregate([
        {"$match": {"is_paid": True}},
        {"$group": {"_id": "$user_id", "total_spent": {"$sum": "$total_price"}, "order_count": {"$sum": 1}}},
        {"$sort": {"total_spent": -1}},
        {"$limit": limit},
    ])
    customers = []
    for row in rows:
        oid = parse_object_id(row["_id"])
        user = db["user"].find_one({"_id": oid}, {"name": 1, "email": 1}) if oid else None
        if user is None:
            continue
        customers.append({
            "id": row["_id"],
            "name": user.get("name"),
            "email": user.get("email"),
            "total_spent": row["total_spent"],
            "order_count": row["order_count"],
        })
    return customers


def user_stats(db, now: Optional[datetime] = None) -> dict:
    recent = db["user"].find().sort("created_at", -1).limit(RECENT_USERS_LIMIT)
    return {
        "total_users": db["user"].count_documents({}),
        "admin_users": db["user"].count_documents({"role": "admin"}),
        "regular_users": db["user"].count_documents({"role": "user"}),
        "verified_users": db["user"].count_documents({"is_email_verified": True}),
        "recent_users": [user_payload(doc) for doc in recent],
        "registration_trend": registration_trend(db, now=now),
        "top_customers": top_customers(db),
    }
