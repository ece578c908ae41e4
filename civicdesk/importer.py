# Jharkhand municipalities & departments: Reference Data Importer
# Populates MongoDB with the municipal reference data the triage engine routes against
#
# Usage:  civicdesk-import            (after pip install)
#     or: python -m civicdesk.importer

import argparse

from .config import MONGODB_URL, MONGODB_DB
from .lifecycle import new_id, now_utc
from .models import Category
from .store import MongoStore, geojson_point

# ---------------------------------------------------------------------------
# Raw municipality definitions (district centres, [longitude, latitude])
# ---------------------------------------------------------------------------
MUNICIPALITIES = [
    {"name": "Ranchi Municipal Corporation",     "district": "Ranchi",          "coordinates": [85.3096, 23.3441]},
    {"name": "Dhanbad Municipal Corporation",    "district": "Dhanbad",         "coordinates": [86.4304, 23.7957]},
    {"name": "Jamshedpur Notified Area Committee", "district": "East Singhbhum", "coordinates": [86.2029, 22.8046]},
    {"name": "Bokaro Steel City",                "district": "Bokaro",          "coordinates": [86.1511, 23.6693]},
    {"name": "Deoghar Municipal Corporation",    "district": "Deoghar",         "coordinates": [86.6950, 24.4852]},
    {"name": "Hazaribagh Municipal Corporation", "district": "Hazaribagh",      "coordinates": [85.3616, 23.9925]},
]

# Every municipality gets the same department set; "Other" is never routed
DEPARTMENTS = [
    {"name": "Public Works",          "categories": [Category.INFRASTRUCTURE, Category.TRAFFIC],
     "description": "Roads, footpaths, drains, bridges and traffic management"},
    {"name": "Sanitation",            "categories": [Category.SANITATION],
     "description": "Solid waste collection and public toilets"},
    {"name": "Electrical",            "categories": [Category.STREET_LIGHTING],
     "description": "Street lights and public electrical fixtures"},
    {"name": "Water Supply",          "categories": [Category.WATER_SUPPLY],
     "description": "Piped water, leaks and supply interruptions"},
    {"name": "Parks & Horticulture",  "categories": [Category.PARKS],
     "description": "Public parks, gardens and tree maintenance"},
]


def build_reference_data(state: str = "Jharkhand"):
    """Return (municipalities, departments) documents ready for insertion."""
    ts = now_utc()
    municipalities, departments = [], []
    for raw in MUNICIPALITIES:
        municipality = {
            "_id": new_id(), "name": raw["name"], "district": raw["district"], "state": state,
            "location": geojson_point(*raw["coordinates"]),
            "departments": [], "created_at": ts, "updated_at": ts,
        }
        for dept in DEPARTMENTS:
            department = {
                "_id": new_id(), "name": dept["name"], "description": dept["description"],
                "municipality": municipality["_id"],
                "categories": [c.value for c in dept["categories"]],
                "staff_members": [], "reports": [],
                "created_at": ts, "updated_at": ts,
            }
            municipality["departments"].append(department["_id"])
            departments.append(department)
        municipalities.append(municipality)
    return municipalities, departments


def import_reference_data(store: MongoStore, reset: bool = False) -> dict:
    if reset:
        # counters stay: report ids already issued must never be handed out again
        for coll_name in ["municipalities", "departments"]:
            store.db[coll_name].drop()
        print("  MongoDB: municipalities, departments dropped")
    synced = store.sync_sequences()
    if synced:
        print(f"  Report counters checked against {len(synced)} existing categories")

    municipalities, departments = build_reference_data()
    inserted = {"municipalities": 0, "departments": 0}
    for municipality in municipalities:
        if store.municipalities.find_one({"district": municipality["district"]}):
            print(f"    = {municipality['name']} (already present)")
            continue
        store.municipalities.insert_one(municipality)
        own = [d for d in departments if d["municipality"] == municipality["_id"]]
        store.departments.insert_many(own)
        inserted["municipalities"] += 1
        inserted["departments"] += len(own)
        print(f"    + {municipality['name']} ({len(own)} departments)")
    return inserted


def main(argv=None):
    parser = argparse.ArgumentParser(description="Seed municipalities and departments")
    parser.add_argument("--reset", action="store_true",
                        help="drop municipalities and departments before importing")
    args = parser.parse_args(argv)

    print("=" * 64)
    print("  Civic Report Triage: Reference Data Importer")
    print("=" * 64)

    # ------------------------------------------------------------------
    # 1. Connect MongoDB
    # ------------------------------------------------------------------
    print("\n[1/3] Connecting to MongoDB...")
    store = MongoStore.connect()
    print(f"  Connected: {MONGODB_URL} / {MONGODB_DB}")

    # ------------------------------------------------------------------
    # 2. Indexes
    # ------------------------------------------------------------------
    print("\n[2/3] Ensuring indexes...")
    store.create_indexes()

    # ------------------------------------------------------------------
    # 3. Municipalities & departments
    # ------------------------------------------------------------------
    print("\n[3/3] Municipalities & departments")
    counts = import_reference_data(store, reset=args.reset)

    print("\n" + "=" * 64)
    print("  IMPORT COMPLETE")
    print("=" * 64)
    print(f"  Municipalities: {counts['municipalities']}")
    print(f"  Departments:    {counts['departments']}")
    store.close()


if __name__ == "__main__":
    main()
