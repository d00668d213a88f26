# auth_billing/demo/seed_demo_data.py

from datetime import datetime, timedelta
from typing import List

from auth_billing.storage.models import EventRecord, Organization
from auth_billing.storage.repository import EventRepository

DEMO_ORGANIZATIONS = [
    Organization(org_id="org1", org_name="Xingye"),
    Organization(org_id="org2", org_name="JD"),
    Organization(org_id="org3", org_name="Tianchuang"),
]

# (result_code, result_msg, two-factor count, three-factor count) per org per day
DEMO_OUTCOMES = [
    ("0", "Success", 40, 20),
    ("200001", "Invalid parameter", 3, 1),
    ("200002", "Verification failed", 5, 2),
    ("200004", "Identity mismatch", 2, 1),
    ("210001", "No photo on file", 1, 1),
]


def build_demo_events(start: datetime, days: int = 3) -> List[EventRecord]:
    """Deterministic demo events spread over ``days`` days from ``start``."""
    events = []
    for org_index, org in enumerate(DEMO_ORGANIZATIONS):
        for day in range(days):
            moment = start + timedelta(days=day, hours=9 + org_index)
            for code, message, two_factor, three_factor in DEMO_OUTCOMES:
                for mode, count in (("0x40", two_factor), ("0x42", three_factor)):
                    for i in range(count * (org_index + 1)):
                        events.append(EventRecord(
                            org_id=org.org_id,
                            org_name=org.org_name,
                            auth_mode=mode,
                            result_code=code,
                            result_message=message,
                            exec_start_time=moment + timedelta(seconds=i)
                        ))
    return events


def seed_demo_data(repository: EventRepository, days: int = 3) -> int:
    """Create the schema and insert demo data ending today.

    Returns:
        Number of events inserted
    """
    repository.initialize_schema()
    repository.insert_organizations(DEMO_ORGANIZATIONS)
    today = datetime.now().replace(hour=0, minute=0, second=0, microsecond=0)
    events = build_demo_events(today - timedelta(days=days - 1), days)
    repository.insert_events(events)
    return len(events)


if __name__ == "__main__":
    inserted = seed_demo_data(EventRepository())
    print(f"Demo authentication data inserted ({inserted} events)")
