#!/usr/bin/env python3
"""
Synthetic report generator for demos and load testing.

Synthetic reports are attributed to a dedicated identity, never shared with
Crimestoppers, and scattered around a fixed point in south London:

    python synthetic_data.py 50
"""
import argparse
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from app_config import load_settings
from errors import ReportInputError
from identity import Identity, system_identity
from postcode_geocoder import point_wkt
from report_store import MediaStorage, ReportStore

logger = logging.getLogger(__name__)

CENTER = (51.4939726, -0.0733479)
SPREAD_DEGREES = 0.5
CRIME_TYPES = ["theft", "mugging", "shoplifting", "burglary", "vandalism"]
# Relative weight of each hour of the day; reports lean towards the evening.
HOUR_WEIGHTS = [6, 4, 3, 1, 1, 1, 1, 2, 3, 3, 3, 3, 3, 4, 4, 4, 4, 5, 6, 7, 7, 8, 8, 9]

FORENAMES = ["Alice", "Bob", "Mallory", "Muhammad", "Noah", "Oliver", "George", "Leo", "Thomas", "Tom",
             "Robert", "Jack", "jake", "adam", "david", "geoff", "chris", "christopher", "ryan", "ed",
             "tim", "philip", "Claire", "Amy"]
SURNAMES = ["Smith", "Jones", "Williams", "Taylor", "Brown", "Evans", "Wilson", "Thomas", "Johnson",
            "Roberts", "Robinson", "Wright", "Walker"]
COLOURS = ["red", "blue", "green", "black", "white", "denim"]
HATS = ["wooly hat", "snapback", "baseball hat"]
UPPERS = ["hoodie", "tshirt", "jacket", "coat", "jumper", "fleece"]
LOWERS = ["trousers", "shorts"]


def synthetic_crime_type(i: int) -> str:
    return CRIME_TYPES[i % len(CRIME_TYPES)]


def synthetic_incident_date(i: int, rng: random.Random, now: datetime) -> datetime:
    """Spread over the last 30 days, at an evening-weighted hour."""
    day = now - timedelta(days=i % 30)
    hour = rng.choices(range(24), weights=HOUR_WEIGHTS)[0]
    return day.replace(hour=hour, minute=rng.randrange(60), second=rng.randrange(60), microsecond=0)


def synthetic_name(rng: random.Random) -> str:
    t = rng.random()
    if t < 0.7:
        return ""
    if t < 0.9:
        return "unknown"
    forename = rng.choice(FORENAMES)
    if rng.random() > 0.8:
        return forename
    return f"{forename} {rng.choice(SURNAMES)}"


def synthetic_clothes(rng: random.Random) -> str:
    clothes = ""
    if rng.random() < 0.2:
        clothes += f"{rng.choice(COLOURS)} {rng.choice(HATS)}"
    if rng.random() < 0.3:
        clothes += (", " if clothes else "") + "glasses"
    if rng.random() < 0.8:
        clothes += (", " if clothes else "") + f"{rng.choice(COLOURS)} {rng.choice(UPPERS)}"
    if rng.random() < 0.9:
        clothes += (" and " if clothes else "") + f"{rng.choice(COLOURS)} {rng.choice(LOWERS)}"
    return clothes


def synthetic_report(i: int, user_id: str, rng: random.Random, now: Optional[datetime] = None) -> Dict:
    now = now or datetime.now(timezone.utc)
    crime_type = synthetic_crime_type(i)
    incident = synthetic_incident_date(i, rng, now)

    raw_text = f"At approximately {incident.strftime('%H:%M:%S')}, I witnessed a {crime_type} at some street. "
    clothes = synthetic_clothes(rng)
    if clothes:
        raw_text += f"I think the suspect was a man wearing {clothes}."

    lat = CENTER[0] + rng.random() - SPREAD_DEGREES
    lon = CENTER[1] + rng.random() - SPREAD_DEGREES
    return {
        "raw_text": raw_text.strip(),
        "incident_date": incident.isoformat(),
        "crime_type": crime_type,
        "location": point_wkt(lat, lon),
        "location_hint": "bar",
        "postcode": "SW1A 1AA",
        "time_known": False,
        "time_description": "rough hour",
        "people_description": "unknown",
        "people_names": synthetic_name(rng),
        "people_appearance": "unknown",
        "people_contact_info": "unknown",
        "has_vehicle": False,
        "has_weapon": False,
        "shared_with_crimestoppers": False,
        "status": "submitted",
        "user_id": user_id,
        "source": "synthetic",
    }


def seed_synthetic_reports(
    store: ReportStore,
    count: int,
    identity: Identity,
    rng: Optional[random.Random] = None,
) -> List[Dict]:
    """Insert `count` synthetic reports through the store and return them."""
    if not isinstance(count, int) or count <= 0:
        raise ReportInputError("Please enter a valid positive number.")
    rng = rng or random.Random()
    now = datetime.now(timezone.utc)
    reports = [store.create_report(synthetic_report(i, identity.user_id, rng, now)) for i in range(count)]
    logger.info(f"Created {len(reports)} synthetic reports as {identity.user_id}")
    return reports


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    parser = argparse.ArgumentParser(description="Insert synthetic crime reports.")
    parser.add_argument("count", type=int, help="Number of reports to generate.")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for repeatable data.")
    args = parser.parse_args()

    settings = load_settings()
    store = ReportStore(settings.database_path, MediaStorage(settings.media_dir, settings.media_base_url))
    try:
        seed_synthetic_reports(store, args.count, system_identity(settings.synthetic_user_id), random.Random(args.seed))
    except ReportInputError as e:
        parser.error(str(e))
    finally:
        store.close()


if __name__ == "__main__":
    main()
