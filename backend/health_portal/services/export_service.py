"""
Export renderers: pretty JSON, single-record JSON, QR PNG and the PDF summary.

Nothing here touches the database; callers pass an assembled ``Bundle`` or a
``StoredRecord``.
"""

from __future__ import annotations

import io
import json
import logging
from datetime import datetime
from typing import Any

import qrcode
import qrcode.util
from qrcode.constants import ERROR_CORRECT_M
from jinja2 import BaseLoader, Environment, select_autoescape

from health_portal.db.postgres import utcnow
from health_portal.schemas.fhir import Bundle, dump_resource, resource_title
from health_portal.schemas.records import StoredRecord

logger = logging.getLogger(__name__)

SUMMARY_TITLE = "Patient Health Summary"
FOOTER_TEXT = "Patient Health Summary - FHIR R4 Compliant"

INSTRUCTIONS = (
    "This summary contains your complete health information in FHIR R4 format.",
    "Share this document only with authorized healthcare providers.",
    "For machine-readable format, use the JSON export option.",
    "Keep this document secure and update it regularly with new health information.",
)

# (section heading, resourceType)
DETAIL_SECTIONS = (
    ("Medications", "MedicationStatement"),
    ("Allergies", "AllergyIntolerance"),
    ("Observations", "Observation"),
    ("Immunizations", "Immunization"),
)


# ---------------------------------------------------------------------------
# JSON / QR
# ---------------------------------------------------------------------------

def bundle_to_json(bundle: Bundle) -> str:
    return json.dumps(bundle.model_dump(mode="json", exclude_none=True), indent=2)


def record_to_json(record: StoredRecord, export_date: datetime | None = None) -> str:
    export_date = export_date or utcnow()
    return json.dumps(
        {
            "exportDate": export_date.isoformat() + "Z",
            "record": record.model_dump(mode="json", exclude_none=True),
        },
        indent=2,
    )


def record_qr_payload(record: StoredRecord) -> str:
    """Compact JSON encoded into a record's QR code."""
    return json.dumps(
        {
            "id": record.id,
            "resource": dump_resource(record.resource),
            "category": record.category.value,
            "dateAdded": record.date_added.isoformat() if record.date_added else None,
        },
        separators=(",", ":"),
    )


def build_qr(data: str) -> qrcode.QRCode:
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, box_size=10, border=4)
    qr.add_data(qrcode.util.QRData(data.encode("utf-8"), mode=qrcode.util.MODE_8BIT_BYTE))
    qr.make(fit=True)
    return qr


def render_qr_png(data: str) -> bytes:
    image = build_qr(data).make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    image.save(buffer)
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# PDF summary
# ---------------------------------------------------------------------------

_SUMMARY_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>{{ title }}</title>
<style>
  @page {
    size: A4;
    margin: 2cm 2cm 2.5cm 2cm;
    @bottom-center {
      content: "Page " counter(page) " of " counter(pages) " - {{ footer }}";
      font-size: 8pt;
      color: #64748b;
    }
  }
  body { font-family: Arial, sans-serif; font-size: 11pt; line-height: 1.4; color: #1f2937; }
  h1 { font-size: 20pt; color: #1a365d; margin-bottom: 4pt; }
  h2 { font-size: 14pt; color: #2c5282; margin-top: 16pt; border-bottom: 1px solid #cbd5e0; }
  .generated { color: #64748b; font-size: 9pt; }
  table { border-collapse: collapse; width: 100%; margin: 8pt 0; font-size: 9pt; }
  th, td { border: 1px solid #cbd5e0; padding: 4pt 6pt; text-align: left; }
  th { background-color: #edf2f7; }
  .empty { color: #94a3b8; font-style: italic; }
</style>
</head>
<body>
<h1 id="title">{{ title }}{% if patient_name %}: {{ patient_name }}{% endif %}</h1>
<p class="generated" id="generated">Generated on {{ generated_at }}</p>

<h2 id="summary">Summary</h2>
<table>
  {% for label, count in counts %}
  <tr><th>{{ label }}</th><td>{{ count }}</td></tr>
  {% endfor %}
</table>

<h2 id="bundle-metadata">Bundle Information</h2>
<table>
  <tr><th>Type</th><td>{{ bundle.type }}</td></tr>
  <tr><th>Timestamp</th><td>{{ bundle.timestamp }}</td></tr>
  <tr><th>Total entries</th><td>{{ bundle.total }}</td></tr>
  {% if bundle.profile %}<tr><th>Profile</th><td>{{ bundle.profile }}</td></tr>{% endif %}
</table>

{% for section in sections %}
<h2 id="section-{{ section.heading|lower }}">{{ section.heading }}</h2>
{% if section.items %}
<table>
  <tr><th>Name</th><th>Details</th><th>Date</th></tr>
  {% for item in section.items %}
  <tr><td>{{ item.title }}</td><td>{{ item.details }}</td><td>{{ item.date }}</td></tr>
  {% endfor %}
</table>
{% else %}
<p class="empty">No {{ section.heading|lower }} recorded.</p>
{% endif %}
{% endfor %}

<h2 id="instructions">Instructions</h2>
<ul>
  {% for line in instructions %}<li>{{ line }}</li>{% endfor %}
</ul>
</body>
</html>
"""

_env = Environment(loader=BaseLoader(), autoescape=select_autoescape(["html", "xml"], default_for_string=True))


def _details(resource: dict[str, Any]) -> tuple[str, str]:
    resource_type = resource["resourceType"]
    if resource_type == "MedicationStatement":
        dosage = "; ".join(d.get("text", "") for d in resource.get("dosage", []) if d.get("text"))
        return dosage or resource.get("status", ""), resource.get("effectiveDateTime", "")
    if resource_type == "AllergyIntolerance":
        reactions = [
            m.get("text", "")
            for r in resource.get("reaction", [])
            for m in r.get("manifestation", [])
            if m.get("text")
        ]
        return ", ".join(reactions), resource.get("recordedDate", "")
    if resource_type == "Observation":
        if "valueQuantity" in resource:
            quantity = resource["valueQuantity"]
            value = f"{quantity['value']} {quantity.get('unit', '')}".strip()
        else:
            value = resource.get("valueString", "")
        return value, resource.get("effectiveDateTime", "")
    if resource_type == "Immunization":
        return resource.get("status", ""), resource.get("occurrenceDateTime", "")
    return "", ""


def build_summary(bundle: Bundle, patient_name: str | None = None, generated_at: datetime | None = None) -> dict[str, Any]:
    """Template context for the PDF summary, in rendering order."""
    generated_at = generated_at or utcnow()
    by_type: dict[str, list] = {}
    for entry in bundle.entry:
        by_type.setdefault(entry.resource.resourceType, []).append(entry.resource)

    if patient_name is None and by_type.get("Patient"):
        patient_name = resource_title(by_type["Patient"][0])

    sections = []
    for heading, resource_type in DETAIL_SECTIONS:
        items = []
        for resource in by_type.get(resource_type, []):
            details, date = _details(dump_resource(resource))
            items.append({"title": resource_title(resource), "details": details, "date": date})
        sections.append({"heading": heading, "items": items})

    counts = [(heading, len(by_type.get(resource_type, []))) for heading, resource_type in DETAIL_SECTIONS]
    counts.append(("Documents", len(by_type.get("DocumentReference", []))))
    counts.append(("Total Records", bundle.total))

    return {
        "title": SUMMARY_TITLE,
        "patient_name": patient_name,
        "generated_at": generated_at.strftime("%B %d, %Y %H:%M UTC"),
        "counts": counts,
        "bundle": {
            "type": bundle.type,
            "timestamp": bundle.timestamp,
            "total": bundle.total,
            "profile": ", ".join(bundle.meta.profile or []),
        },
        "sections": sections,
        "instructions": list(INSTRUCTIONS),
        "footer": FOOTER_TEXT,
    }


def render_summary_html(summary: dict[str, Any]) -> str:
    return _env.from_string(_SUMMARY_TEMPLATE).render(**summary)


def render_summary_pdf(summary: dict[str, Any]) -> bytes:
    """Render the summary to PDF bytes.

    WeasyPrint pulls in native libraries (pango, cairo), so it is imported
    only when a PDF is actually requested.
    """
    from weasyprint import HTML

    html = render_summary_html(summary)
    pdf = HTML(string=html).write_pdf()
    logger.info("Rendered summary PDF (%d bytes, %d sections)", len(pdf), len(summary["sections"]))
    return pdf
