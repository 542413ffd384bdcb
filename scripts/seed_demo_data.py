#!/usr/bin/env python3
"""
Populate a caregate database with demo tenants, members and prescriptions.

Usage:
    DB_URI=sqlite:///caregate.db python scripts/seed_demo_data.py

Prints the API keys of the created members so they can be used with
scripts/smoke_api.py.
"""

import random

from faker import Faker

from caregate.database import init_engine, init_schema, insert_member, insert_organization, insert_patient
from caregate.platform_admin import seed
from caregate.prescriptions import (
    create_prescription,
    send_to_pharmacy,
    sign_prescription,
    submit_for_review,
    update_status,
)
from caregate.sessions import generate_api_key, hash_api_key

# --------------------------------------------------------------------
# CONFIG
# --------------------------------------------------------------------
NUM_CLINICS = 2
NUM_PHARMACIES = 2
PROVIDERS_PER_CLINIC = 2
PATIENTS_PER_CLINIC = 8
RX_PER_PATIENT = (0, 3)          # min, max

MEDICATIONS = [
    ("Amoxicillin", "500 mg"),
    ("Doxycycline", "100 mg"),
    ("Isotretinoin", "20 mg"),
    ("Tretinoin cream", "0.05%"),
    ("Clobetasol ointment", "0.05%"),
    ("Spironolactone", "50 mg"),
]

# --------------------------------------------------------------------
# SETUP
# --------------------------------------------------------------------
fake = Faker()
random.seed(42)
Faker.seed(42)

keys = []


def make_member(engine, role, org_id=None, email=None):
    api_key = generate_api_key()
    member = insert_member(
        engine,
        email=email or fake.unique.email(),
        name=fake.name(),
        role=role,
        org_id=org_id,
        api_key_hash=hash_api_key(api_key),
    )
    keys.append((member.role, member.email, api_key))
    return member


def main():
    engine = init_engine()
    init_schema(engine)

    admin_org = insert_organization(engine, name="Platform Operations", slug="platform-ops", type="admin")
    owner = make_member(engine, "admin", org_id=admin_org.id, email="owner@example.com")
    seed(engine, owner.email)

    pharmacies = []
    for _ in range(NUM_PHARMACIES):
        name = f"{fake.last_name()} Pharmacy"
        org = insert_organization(engine, name=name, slug=fake.unique.slug(), type="pharmacy")
        pharmacies.append((org, make_member(engine, "pharmacy", org_id=org.id)))

    rx_count = 0
    for _ in range(NUM_CLINICS):
        clinic = insert_organization(engine, name=f"{fake.city()} Dermatology", slug=fake.unique.slug())
        providers = [make_member(engine, "provider", org_id=clinic.id) for _ in range(PROVIDERS_PER_CLINIC)]
        make_member(engine, "nurse", org_id=clinic.id)

        for _ in range(PATIENTS_PER_CLINIC):
            patient_member = make_member(engine, "patient", org_id=clinic.id)
            patient = insert_patient(engine, member_id=patient_member.id, org_id=clinic.id)

            for _ in range(random.randint(*RX_PER_PATIENT)):
                provider = random.choice(providers)
                pharmacy, pharmacist = random.choice(pharmacies)
                medication, dosage = random.choice(MEDICATIONS)

                rx = create_prescription(
                    engine, provider, patient.id,
                    medication_name=medication,
                    dosage=dosage,
                    quantity=random.choice([30, 60, 90]),
                    directions=fake.sentence(nb_words=8),
                    refills_authorized=random.randint(0, 3),
                )
                rx_count += 1

                # Walk a random distance along the lifecycle
                steps = random.randint(0, 6)
                if steps >= 1:
                    submit_for_review(engine, provider, rx.id)
                if steps >= 2:
                    sign_prescription(engine, provider, rx.id)
                if steps >= 3:
                    send_to_pharmacy(engine, provider, rx.id, pharmacy.id)
                if steps >= 4:
                    update_status(engine, pharmacist, rx.id, "filling")
                if steps >= 5:
                    update_status(engine, pharmacist, rx.id, "ready")
                if steps >= 6:
                    update_status(engine, pharmacist, rx.id, random.choice(["picked_up", "shipped"]))

    print("=" * 70)
    print(f"Seeded {len(keys)} members and {rx_count} prescriptions")
    print("=" * 70)
    for role, email, api_key in keys:
        print(f"  {role:<10} {email:<40} {api_key}")


if __name__ == "__main__":
    main()
