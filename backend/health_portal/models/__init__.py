from health_portal.models.user import User, UserRole
from health_portal.models.profile import Profile
from health_portal.models.clinical_record import ClinicalRecord, RecordCategory
from health_portal.models.health_record import HealthRecord, DocumentType
from health_portal.models.structured import Medication, Allergy, LabResult, Immunization
from health_portal.models.consent import ConsentRecord, ConsentGrantee
from health_portal.models.provider_link import PatientProvider
from health_portal.models.audit_log import AuditLog

__all__ = [
    "User",
    "UserRole",
    "Profile",
    "ClinicalRecord",
    "RecordCategory",
    "HealthRecord",
    "DocumentType",
    "Medication",
    "Allergy",
    "LabResult",
    "Immunization",
    "ConsentRecord",
    "ConsentGrantee",
    "PatientProvider",
    "AuditLog",
]
