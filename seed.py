import logging
from typing import Dict

from pymongo.database import Database

from database import BRANCHES, CATEGORIES, utcnow

logger = logging.getLogger(__name__)

DEFAULT_BRANCHES = [
    {"name": "D WATSON PWD", "address": ""},
    {"name": "D WATSON F6", "address": ""},
    {"name": "D WATSON GUJJAR KHAN", "address": ""},
    {"name": "D WATSON CHANDNI CHOWK", "address": ""},
    {"name": "D WATSON ATTOCK", "address": ""},
    {"name": "D WATSON GHORI TOWN", "address": ""},
    {"name": "D WATSON G 15", "address": ""},
]

DEFAULT_CATEGORIES = [
    {"name": "MEDICINE NEUTRA", "description": "Neutral medicine category", "color": "primary"},
    {"name": "MEDICINE AIMS", "description": "AIMS medicine category", "color": "success"},
    {"name": "COSTMAIES", "description": "Costmaies category", "color": "info"},
]

BRANCH_DEFAULTS = {"address": "", "phone": "", "email": ""}
CATEGORY_DEFAULTS = {"description": "", "color": "primary"}


def _upsert_defaults(db: Database, collection: str, rows, defaults) -> int:
    # Keyed on name: a row already present by name is not inserted again. Only categories
    # have a unique name index, so concurrent seeders are only fully safe there.
    now = utcnow()
    inserted = 0
    for row in rows:
        fields = {k: v for k, v in row.items() if k != "name"}
        res = db[collection].update_one(
            {"name": row["name"]},
            {"$setOnInsert": {**defaults, **fields, "createdAt": now, "updatedAt": now}},
            upsert=True,
        )
        if res.upserted_id is not None:
            inserted += 1
    return inserted


def _insert_if_empty(db: Database, collection: str, rows, defaults) -> int:
    count = db[collection].count_documents({})
    logger.info("Current %s count: %d", collection, count)
    if count != 0:
        logger.info("%s already present, skipping", collection)
        return 0
    inserted = _upsert_defaults(db, collection, rows, defaults)
    logger.info("Seeded %d default %s", inserted, collection)
    return inserted


def seed_default_data(db: Database) -> Dict[str, int]:
    """
    Insert the default branches and categories into whichever of the two collections is empty.

    Each collection is checked on its own, and a populated collection is never touched, so
    running this again on every startup adds nothing.
    """
    logger.info("Starting database seeding")
    seeded = {
        BRANCHES: _insert_if_empty(db, BRANCHES, DEFAULT_BRANCHES, BRANCH_DEFAULTS),
        CATEGORIES: _insert_if_empty(db, CATEGORIES, DEFAULT_CATEGORIES, CATEGORY_DEFAULTS),
    }
    logger.info("Database seeding completed")
    return seeded
