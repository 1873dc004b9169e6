import logging
import re
from typing import Iterable, List

from database import StoreError, TableStore
from schemas import Driver

logger = logging.getLogger(__name__)

DRIVERS_TABLE = "drivers"

TABS = ("all", "economy", "premium", "luxury")
SORT_KEYS = ("rating", "price_low", "price_high", "experience")

DEFAULT_DRIVERS = [
    {
        "id": "1",
        "name": "Rahul Singh",
        "image": "/drivers/driver1.jpg",
        "rating": 4.8,
        "experience": "5+ years",
        "location": "Mumbai",
        "vehicle": "Toyota Camry",
        "status": "Available",
        "price": 599,
        "description": "Professional driver with experience in luxury vehicles and excellent customer service skills.",
    },
    {
        "id": "2",
        "name": "Vikram Joshi",
        "image": "/drivers/driver2.jpg",
        "rating": 4.9,
        "experience": "3+ years",
        "location": "Delhi",
        "vehicle": "Honda City",
        "status": "Available",
        "price": 499,
        "description": "Safe, punctual driver with knowledge of all major routes. Specializes in airport transfers.",
    },
    {
        "id": "3",
        "name": "Arjun Malhotra",
        "image": "/drivers/driver3.jpg",
        "rating": 4.7,
        "experience": "4+ years",
        "location": "Bangalore",
        "vehicle": "Hyundai Verna",
        "status": "Available",
        "price": 699,
        "description": "Experienced chauffeur with defensive driving certification and multilingual capabilities.",
    },
    {
        "id": "4",
        "name": "Neelam Iyer",
        "image": "/drivers/driver4.jpg",
        "rating": 4.9,
        "experience": "6+ years",
        "location": "Chennai",
        "vehicle": "Maruti Dzire",
        "status": "Available",
        "price": 449,
        "description": "Specialized in corporate travel with exemplary professionalism and punctuality.",
    },
    {
        "id": "5",
        "name": "Pradeep Kumar",
        "image": "/drivers/driver5.jpg",
        "rating": 4.6,
        "experience": "4+ years",
        "location": "Mumbai",
        "vehicle": "Honda Civic",
        "status": "Available",
        "price": 549,
        "description": "Knowledgeable driver with expertise in navigating busy metropolitan areas efficiently.",
    },
    {
        "id": "6",
        "name": "Sanjay Mehta",
        "image": "/drivers/driver6.jpg",
        "rating": 4.8,
        "experience": "7+ years",
        "location": "Delhi",
        "vehicle": "Toyota Innova",
        "status": "Available",
        "price": 799,
        "description": "Experienced in long-distance travel with a spotless safety record.",
    },
]

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def experience_years(text: str) -> int:
    """Leading integer of a free-text experience string, 0 if there is none."""
    match = _LEADING_INT.match(text or "")
    return int(match.group(1)) if match else 0


def _in_tab(driver: Driver, tab: str) -> bool:
    if tab == "economy":
        return driver.price < 500
    if tab == "premium":
        return 500 <= driver.price < 700
    if tab == "luxury":
        return driver.price >= 700
    return True


def filter_drivers(
    drivers: Iterable[Driver],
    tab: str = "all",
    search: str = "",
    location: str = "all",
    sort_by: str = "rating",
) -> List[Driver]:
    tab = (tab or "all").lower()
    if tab not in TABS:
        raise ValueError(f"Unknown tab: {tab}")
    if sort_by not in SORT_KEYS:
        raise ValueError(f"Unknown sort key: {sort_by}")

    needle = (search or "").strip().lower()
    result = []
    for driver in drivers:
        if not _in_tab(driver, tab):
            continue
        if needle and not any(needle in field.lower() for field in (driver.name, driver.vehicle, driver.location)):
            continue
        if location and location != "all" and driver.location != location:
            continue
        result.append(driver)

    # sorted() is stable, equal keys keep input order
    if sort_by == "rating":
        return sorted(result, key=lambda d: -d.rating)
    if sort_by == "price_low":
        return sorted(result, key=lambda d: d.price)
    if sort_by == "price_high":
        return sorted(result, key=lambda d: -d.price)
    return sorted(result, key=lambda d: -experience_years(d.experience))


def locations(drivers: Iterable[Driver]) -> List[str]:
    seen = []
    for driver in drivers:
        if driver.location not in seen:
            seen.append(driver.location)
    return seen


def default_drivers() -> List[Driver]:
    return [Driver.from_data(d) for d in DEFAULT_DRIVERS]


def load_catalog(store: TableStore) -> List[Driver]:
    try:
        rows = store.select(DRIVERS_TABLE, {}, order_by="id")
    except StoreError as e:
        logger.warning("Driver catalog unavailable, serving built-in drivers: %s", e)
        return default_drivers()
    if not rows:
        return default_drivers()
    drivers = []
    for row in rows:
        driver = Driver.from_data(row)
        if driver.is_valid():
            drivers.append(driver)
        else:
            logger.warning("Skipping invalid driver row: %s", row)
    return drivers


def find_driver(store: TableStore, driver_id: str):
    for driver in load_catalog(store):
        if driver.id == str(driver_id):
            return driver
    return None


def seed_drivers(store: TableStore) -> int:
    """Insert the built-in drivers when the catalog table is empty."""
    if not store.available:
        return 0
    if store.select(DRIVERS_TABLE, {}):
        return 0
    store.insert(DRIVERS_TABLE, [dict(d) for d in DEFAULT_DRIVERS])
    logger.info("Seeded %d drivers", len(DEFAULT_DRIVERS))
    return len(DEFAULT_DRIVERS)
