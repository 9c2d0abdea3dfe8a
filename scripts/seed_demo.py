from __future__ import annotations

import json

from er_core.application.dto.encounter_dto import EncounterCreateRequest
from er_core.application.dto.triage_dto import TriageCreateRequest
from er_core.container import build_container
from er_core.domain.models.encounter import EventActor
from er_core.infrastructure.db.repositories.hospital_repo import HospitalRepository
from er_core.infrastructure.db.session import session_scope

DEMO_SLUG = "demo-general"


def seed():
    repo = HospitalRepository()
    with session_scope() as session:
        hospital = repo.get_by_slug(session, DEMO_SLUG)
        if hospital is None:
            hospital = repo.create(session, name="Demo General Hospital", slug=DEMO_SLUG)
        hospital_id = int(hospital.id)

    container = build_container()
    staff = EventActor.user(1)
    patients = [
        {"patient_id": 101, "patient_name": "Alex Morgan", "chief_complaint": "Chest pain radiating to left arm"},
        {"patient_id": 102, "patient_name": "Sam Lee", "chief_complaint": "Sprained ankle"},
        {"patient_id": 103, "patient_name": "Jordan Diaz", "chief_complaint": "High fever and cough"},
    ]
    created = []
    for item in patients:
        encounter = container.encounter_service.create_encounter(
            EncounterCreateRequest(hospital_id=hospital_id, **item),
            actor=staff,
        )
        container.encounter_service.mark_arrived(hospital_id, encounter.id, actor=staff)
        created.append(encounter.id)

    container.triage_service.create_assessment(hospital_id, created[1], TriageCreateRequest(ctas_level=4), 1)
    container.encounter_service.create_waiting(hospital_id, created[1], actor=staff)

    print("Seeded:", json.dumps({"hospital_id": hospital_id, "encounters": created}, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    seed()
