from __future__ import annotations

import uuid
from datetime import timezone
from typing import Any, Dict, Optional

from ehrguard.logging import get_logger
from ehrguard.service.access import (
    can_access_patient,
    can_modify_medical_record,
    can_modify_vital_signs,
    can_view_medical_data,
)
from ehrguard.service.cipher import (
    SENSITIVE_PATIENT_FIELDS,
    FieldCipher,
    project_diagnosis,
    project_identifiers,
)
from ehrguard.service.errors import ForbiddenError, NotFoundError, ValidationError
from ehrguard.service.roles import Principal, RoleResolver
from ehrguard.storage.errors import ConstraintViolation
from ehrguard.storage.models import MedicalRecord, Patient, VitalSigns, utcnow

logger = get_logger(__name__)

RECORD_UPDATE_FIELDS = ("chief_complaint", "diagnosis", "treatment_plan", "doctor_notes", "status")
RECORD_STATUSES = ("active", "closed", "deleted")
CLINICAL_NOTE_FIELDS = ("treatment_plan", "doctor_notes")
VITAL_SIGN_FIELDS = (
    "temperature",
    "blood_pressure_systolic",
    "blood_pressure_diastolic",
    "heart_rate",
    "respiratory_rate",
    "oxygen_saturation",
    "height",
    "weight",
)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _patient_view(patient: Patient) -> Dict[str, Any]:
    return {
        "id": patient.id,
        "patient_id": patient.id,
        "full_name": patient.full_name,
        "date_of_birth": patient.date_of_birth,
        "gender": patient.gender,
        "phone": patient.phone,
        "email": patient.email,
        "address": patient.address,
        "user_id": patient.user_id,
        "created_by": patient.created_by,
        "created_at": _iso(patient.created_at),
        "updated_at": _iso(patient.updated_at),
    }


def _record_view(record: MedicalRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "record_id": record.id,
        "patient_id": record.patient_id,
        "doctor_id": record.doctor_id,
        "visit_date": _iso(record.visit_date),
        "chief_complaint": record.chief_complaint,
        "treatment_plan": record.treatment_plan,
        "doctor_notes": record.doctor_notes,
        "status": record.status,
        "created_at": _iso(record.created_at),
        "updated_at": _iso(record.updated_at),
    }



def _vitals_view(vitals: VitalSigns) -> Dict[str, Any]:
    view = {name: getattr(vitals, name) for name in VITAL_SIGN_FIELDS}
    view.update(
        {
            "id": vitals.id,
            "vital_id": vitals.id,
            "patient_id": vitals.patient_id,
            "record_id": vitals.record_id,
            "bmi": vitals.bmi,
            "notes": vitals.notes,
            "measured_by": vitals.measured_by,
            "measured_at": _iso(vitals.measured_at),
        }
    )
    return view


def body_mass_index(height_cm: Optional[float], weight_kg: Optional[float]) -> Optional[float]:
    if not height_cm or not weight_kg:
        return None
    meters = height_cm / 100
    return round(weight_kg / (meters * meters), 2)


class RecordService:
    """Patient charts and medical records.

    Role gates sit in front of every method (see the route table); what a
    caller sees inside an allowed response is decided here by the projections.
    """

    def __init__(self, store, cipher: FieldCipher, resolver: Optional[RoleResolver] = None):
        self.store = store
        self.cipher = cipher
        self.resolver = resolver or RoleResolver()

    def _project_patient(self, patient: Patient, principal: Principal) -> Dict[str, Any]:
        return project_identifiers(
            _patient_view(patient),
            {
                "national_id_encrypted": patient.national_id_encrypted,
                "insurance_number_encrypted": patient.insurance_number_encrypted,
            },
            principal,
            self.cipher,
        )

    def _project_record(self, record: MedicalRecord, principal: Principal) -> Dict[str, Any]:
        view = _record_view(record)
        if not can_view_medical_data(principal):
            for name in CLINICAL_NOTE_FIELDS:
                view.pop(name, None)
        return project_diagnosis(view, record.diagnosis_encrypted, principal, self.cipher)

    # patients
    def create_patient(self, principal: Principal, data: Dict[str, Any]) -> Dict[str, Any]:
        missing = [f for f in ("full_name", "date_of_birth", "gender") if not data.get(f)]
        if missing:
            raise ValidationError(
                "Missing required fields: full_name, date_of_birth, gender",
                detail={"missing": missing},
            )
        user_id = data.get("user_id")
        if user_id:
            self._check_patient_account(user_id)
        encrypted = self.cipher.encrypt_fields(
            {name: data.get(name) for name in SENSITIVE_PATIENT_FIELDS}, SENSITIVE_PATIENT_FIELDS
        )
        try:
            patient = self.store.create_patient(
                data["full_name"],
                str(data["date_of_birth"]),
                data["gender"],
                phone=data.get("phone"),
                email=data.get("email"),
                address=data.get("address"),
                national_id_encrypted=encrypted.get("national_id_encrypted"),
                insurance_number_encrypted=encrypted.get("insurance_number_encrypted"),
                user_id=user_id,
                created_by=principal.subject,
            )
        except ConstraintViolation as exc:
            raise ValidationError("Linked user account not found", detail={"field": "user_id"}) from exc
        logger.info("patient_created", patient_id=patient.id, created_by=principal.subject)
        return self._project_patient(patient, principal)

    def _check_patient_account(self, user_id: str) -> None:
        """A chart may only be linked to an active account holding the patient role."""
        user = self.store.get_user(user_id)
        if not user or not user.is_active:
            raise ValidationError("Linked user account not found", detail={"field": "user_id"})
        if self.resolver.for_user(user) != "patient":
            raise ValidationError(
                "Linked user account must have the patient role", detail={"field": "user_id"}
            )

    def _load_patient(self, principal: Principal, patient_id: str) -> Patient:
        patient = self.store.get_patient(patient_id)
        if not patient:
            raise NotFoundError("Patient not found")
        if not can_access_patient(principal, patient.user_id):
            raise ForbiddenError("Access denied. You can only view your own records")
        return patient

    def get_patient(self, principal: Principal, patient_id: str) -> Dict[str, Any]:
        return self._project_patient(self._load_patient(principal, patient_id), principal)

    def list_patient_records(
        self, principal: Principal, patient_id: str, *, limit: int = 20, offset: int = 0
    ) -> Dict[str, Any]:
        if limit < 1 or limit > 100:
            raise ValidationError("limit must be between 1 and 100", detail={"field": "limit"})
        if offset < 0:
            raise ValidationError("offset must be non-negative", detail={"field": "offset"})
        self._load_patient(principal, patient_id)
        records, total = self.store.list_medical_records(patient_id, limit=limit, offset=offset)
        return {
            "patient_id": patient_id,
            "records": [self._project_record(r, principal) for r in records],
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "has_more": offset + len(records) < total,
            },
        }

    # medical records
    def create_medical_record(self, principal: Principal, data: Dict[str, Any]) -> Dict[str, Any]:
        if not can_modify_medical_record(principal):
            raise ForbiddenError("Access denied. Only doctors can write medical records")
        if not data.get("patient_id") or not data.get("chief_complaint"):
            raise ValidationError("Missing required fields: patient_id, chief_complaint")
        if not self.store.get_patient(data["patient_id"]):
            raise NotFoundError("Patient not found")
        visit_date = data.get("visit_date")
        if visit_date is not None and visit_date.tzinfo is None:
            visit_date = visit_date.replace(tzinfo=timezone.utc)
        try:
            record = self.store.create_medical_record(
                data["patient_id"],
                principal.subject,
                data["chief_complaint"],
                visit_date=visit_date,
                diagnosis_encrypted=self.cipher.encrypt(data.get("diagnosis")),
                treatment_plan=data.get("treatment_plan"),
                doctor_notes=data.get("doctor_notes"),
            )
        except ConstraintViolation as exc:
            # Patient deactivated between the lookup and the insert
            raise NotFoundError("Patient not found") from exc
        logger.info("medical_record_created", record_id=record.id, patient_id=record.patient_id)
        return self._project_record(record, principal)

    def get_medical_record(self, principal: Principal, record_id: str) -> Dict[str, Any]:
        record = self.store.get_medical_record(record_id)
        if not record or record.status == "deleted":
            raise NotFoundError("Medical record not found")
        return self._project_record(record, principal)

    def update_medical_record(
        self, principal: Principal, record_id: str, data: Dict[str, Any]
    ) -> Dict[str, Any]:
        if not can_modify_medical_record(principal):
            raise ForbiddenError("Access denied. Only doctors can write medical records")
        updates: Dict[str, Any] = {}
        for name in RECORD_UPDATE_FIELDS:
            if name not in data or data[name] is None:
                continue
            if name == "diagnosis":
                updates["diagnosis_encrypted"] = self.cipher.encrypt(data[name])
            else:
                updates[name] = data[name]
        if not updates:
            raise ValidationError("No valid fields to update")
        if "status" in updates and updates["status"] not in RECORD_STATUSES:
            raise ValidationError(
                f"status must be one of: {', '.join(RECORD_STATUSES)}", detail={"field": "status"}
            )
        existing = self.store.get_medical_record(record_id)
        if not existing or existing.status == "deleted":
            raise NotFoundError("Medical record not found")
        record = self.store.update_medical_record(record_id, updates)
        if not record:
            raise NotFoundError("Medical record not found")
        logger.info("medical_record_updated", record_id=record_id, fields=sorted(updates))
        return self._project_record(record, principal)

    # vital signs
    def record_vital_signs(self, principal: Principal, data: Dict[str, Any]) -> Dict[str, Any]:
        if not can_modify_vital_signs(principal):
            raise ForbiddenError("Access denied. Only nurses and doctors can record vital signs")
        if not data.get("patient_id"):
            raise ValidationError("Patient ID is required", detail={"field": "patient_id"})
        if not any(data.get(name) is not None for name in VITAL_SIGN_FIELDS):
            raise ValidationError("At least one measurement is required")
        if not self.store.get_patient(data["patient_id"]):
            raise NotFoundError("Patient not found")
        if data.get("record_id"):
            record = self.store.get_medical_record(data["record_id"])
            if not record or record.patient_id != data["patient_id"]:
                raise ValidationError(
                    "Medical record does not belong to this patient", detail={"field": "record_id"}
                )
        vitals = VitalSigns(
            id=str(uuid.uuid4()),
            patient_id=data["patient_id"],
            measured_by=principal.subject,
            record_id=data.get("record_id"),
            notes=data.get("notes"),
            bmi=body_mass_index(data.get("height"), data.get("weight")),
            measured_at=utcnow(),
            **{name: data.get(name) for name in VITAL_SIGN_FIELDS},
        )
        try:
            vitals = self.store.create_vital_signs(vitals)
        except ConstraintViolation as exc:
            raise ValidationError(
                "Invalid patient_id or record_id", detail={"field": "record_id"}
            ) from exc
        logger.info("vital_signs_recorded", vital_id=vitals.id, patient_id=vitals.patient_id)
        return _vitals_view(vitals)

    def list_vital_signs(
        self, principal: Principal, patient_id: str, *, limit: int = 20, offset: int = 0
    ) -> Dict[str, Any]:
        if limit < 1 or limit > 100:
            raise ValidationError("limit must be between 1 and 100", detail={"field": "limit"})
        if offset < 0:
            raise ValidationError("offset must be non-negative", detail={"field": "offset"})
        patient = self._load_patient(principal, patient_id)
        rows, total = self.store.list_vital_signs(patient_id, limit=limit, offset=offset)
        return {
            "patient": {"patient_id": patient.id, "full_name": patient.full_name},
            "vital_signs": [_vitals_view(v) for v in rows],
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "has_more": offset + len(rows) < total,
            },
        }
