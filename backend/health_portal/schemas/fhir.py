"""
FHIR-shaped resources handled by the portal.

Each clinical category maps to exactly one resource schema; the union is
discriminated on ``resourceType`` so a payload is validated against the
schema its type names and nothing else.
"""

from __future__ import annotations

from functools import singledispatch
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from health_portal.models.clinical_record import RecordCategory

PATIENT_SELF = "Patient/self"
ALLERGY_CLINICAL_SYSTEM = "http://terminology.hl7.org/CodeSystem/allergyintolerance-clinical"
BUNDLE_PROFILE = "http://hl7.org/fhir/StructureDefinition/Bundle"


# ---------------------------------------------------------------------------
# Datatypes
# ---------------------------------------------------------------------------

class _Element(BaseModel):
    model_config = ConfigDict(extra="allow")


class Meta(_Element):
    lastUpdated: Optional[str] = None
    versionId: Optional[str] = None
    profile: Optional[list[str]] = None


class Coding(_Element):
    system: Optional[str] = None
    code: Optional[str] = None
    display: Optional[str] = None


class CodeableConcept(_Element):
    text: Optional[str] = None
    coding: Optional[list[Coding]] = None


class Reference(_Element):
    reference: Optional[str] = None
    display: Optional[str] = None


class Period(_Element):
    start: Optional[str] = None
    end: Optional[str] = None


class HumanName(_Element):
    use: Optional[str] = None
    family: Optional[str] = None
    given: list[str] = Field(default_factory=list)


class ContactPoint(_Element):
    system: Optional[str] = None
    value: Optional[str] = None


class Address(_Element):
    use: Optional[str] = None
    line: list[str] = Field(default_factory=list)
    city: Optional[str] = None
    state: Optional[str] = None
    postalCode: Optional[str] = None
    country: Optional[str] = None


class Dosage(_Element):
    text: Optional[str] = None


class Quantity(_Element):
    value: float
    unit: Optional[str] = None
    system: Optional[str] = None
    code: Optional[str] = None


class Reaction(_Element):
    manifestation: list[CodeableConcept] = Field(default_factory=list)
    severity: Optional[Literal["mild", "moderate", "severe"]] = None


class Performer(_Element):
    actor: Reference


class Attachment(_Element):
    contentType: Optional[str] = None
    data: Optional[str] = None  # base64
    url: Optional[str] = None
    title: Optional[str] = None


class Content(_Element):
    attachment: Attachment


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------

class FHIRResource(_Element):
    id: str
    meta: Optional[Meta] = None


class PatientResource(FHIRResource):
    resourceType: Literal["Patient"] = "Patient"
    name: list[HumanName] = Field(default_factory=list)
    gender: Optional[Literal["male", "female", "other", "unknown"]] = None
    birthDate: Optional[str] = None
    telecom: Optional[list[ContactPoint]] = None
    address: Optional[list[Address]] = None


class MedicationStatement(FHIRResource):
    resourceType: Literal["MedicationStatement"] = "MedicationStatement"
    status: Literal["active", "completed", "stopped"] = "active"
    medicationCodeableConcept: CodeableConcept
    subject: Reference = Field(default_factory=lambda: Reference(reference=PATIENT_SELF))
    effectivePeriod: Optional[Period] = None
    effectiveDateTime: Optional[str] = None
    dosage: Optional[list[Dosage]] = None


class AllergyIntolerance(FHIRResource):
    resourceType: Literal["AllergyIntolerance"] = "AllergyIntolerance"
    clinicalStatus: CodeableConcept = Field(
        default_factory=lambda: CodeableConcept(
            coding=[Coding(system=ALLERGY_CLINICAL_SYSTEM, code="active")]
        )
    )
    code: CodeableConcept
    patient: Reference = Field(default_factory=lambda: Reference(reference=PATIENT_SELF))
    reaction: Optional[list[Reaction]] = None
    recordedDate: Optional[str] = None


class Observation(FHIRResource):
    resourceType: Literal["Observation"] = "Observation"
    status: Literal["final", "preliminary", "amended"] = "final"
    category: Optional[list[CodeableConcept]] = None
    code: CodeableConcept
    subject: Reference = Field(default_factory=lambda: Reference(reference=PATIENT_SELF))
    effectiveDateTime: Optional[str] = None
    valueQuantity: Optional[Quantity] = None
    valueString: Optional[str] = None


class Immunization(FHIRResource):
    resourceType: Literal["Immunization"] = "Immunization"
    status: Literal["completed", "not-done"] = "completed"
    vaccineCode: CodeableConcept
    patient: Reference = Field(default_factory=lambda: Reference(reference=PATIENT_SELF))
    occurrenceDateTime: str
    lotNumber: Optional[str] = None
    performer: Optional[list[Performer]] = None


class DocumentReference(FHIRResource):
    resourceType: Literal["DocumentReference"] = "DocumentReference"
    status: Literal["current"] = "current"
    type: CodeableConcept
    subject: Reference = Field(default_factory=lambda: Reference(reference=PATIENT_SELF))
    date: str
    content: list[Content] = Field(default_factory=list)


Resource = Annotated[
    Union[
        PatientResource,
        MedicationStatement,
        AllergyIntolerance,
        Observation,
        Immunization,
        DocumentReference,
    ],
    Field(discriminator="resourceType"),
]

_resource_adapter = TypeAdapter(Resource)

RESOURCE_TYPE_BY_CATEGORY: dict[RecordCategory, str] = {
    RecordCategory.PATIENT: "Patient",
    RecordCategory.MEDICATION: "MedicationStatement",
    RecordCategory.ALLERGY: "AllergyIntolerance",
    RecordCategory.OBSERVATION: "Observation",
    RecordCategory.IMMUNIZATION: "Immunization",
    RecordCategory.DOCUMENT: "DocumentReference",
}


def parse_resource(category: RecordCategory | str, payload: dict) -> FHIRResource:
    """Validate *payload* against the schema of *category*.

    Raises ``ValueError`` when the payload names a different resource type.
    """
    category = RecordCategory(category)
    expected = RESOURCE_TYPE_BY_CATEGORY[category]
    data = dict(payload)
    data.setdefault("resourceType", expected)
    if data["resourceType"] != expected:
        raise ValueError(
            f"Category {category.value} requires resourceType {expected}, got {data['resourceType']}"
        )
    return _resource_adapter.validate_python(data)


def dump_resource(resource: FHIRResource) -> dict:
    return resource.model_dump(mode="json", exclude_none=True)


@singledispatch
def resource_title(resource: FHIRResource) -> str:
    return "Record"


@resource_title.register
def _(resource: PatientResource) -> str:
    if resource.name:
        name = resource.name[0]
        full = " ".join([*name.given, name.family or ""]).strip()
        if full:
            return full
    return "Patient"


@resource_title.register
def _(resource: MedicationStatement) -> str:
    return resource.medicationCodeableConcept.text or "Medication"


@resource_title.register
def _(resource: AllergyIntolerance) -> str:
    return resource.code.text or "Allergy"


@resource_title.register
def _(resource: Observation) -> str:
    return resource.code.text or "Observation"


@resource_title.register
def _(resource: Immunization) -> str:
    return resource.vaccineCode.text or "Immunization"


@resource_title.register
def _(resource: DocumentReference) -> str:
    return resource.type.text or "Document"


# ---------------------------------------------------------------------------
# Bundle
# ---------------------------------------------------------------------------

class BundleEntry(BaseModel):
    fullUrl: str
    resource: Resource


class Bundle(BaseModel):
    resourceType: Literal["Bundle"] = "Bundle"
    type: Literal["collection"] = "collection"
    timestamp: str
    meta: Meta
    entry: list[BundleEntry] = Field(default_factory=list)
    total: int

    @model_validator(mode="after")
    def _total_matches_entries(self) -> "Bundle":
        if self.total != len(self.entry):
            raise ValueError(f"Bundle total {self.total} does not match {len(self.entry)} entries")
        return self

    @classmethod
    def collection(cls, resources: list[FHIRResource], timestamp: str) -> "Bundle":
        entries = [
            BundleEntry(fullUrl=f"{r.resourceType}/{r.id}", resource=r) for r in resources
        ]
        return cls(
            timestamp=timestamp,
            meta=Meta(lastUpdated=timestamp, profile=[BUNDLE_PROFILE]),
            entry=entries,
            total=len(entries),
        )
