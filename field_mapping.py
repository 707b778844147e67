"""
Field mapping and validation for incoming report payloads.

Three sources feed the same canonical report record:
- the third-party (Crimestoppers) form webhook, keyed by question label
- the typed report form
- fields extracted by the LLM from a transcript
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from errors import ReportInputError

logger = logging.getLogger(__name__)

UK_POSTCODE_RE = re.compile(r"[A-Z]{1,2}\d{1,2}[A-Z]?\s?\d[A-Z]{2}", re.I)


@dataclass(frozen=True)
class FieldMapping:
    key: str
    db_field: str
    required: bool
    type: str = "string"


# Question labels exactly as the Crimestoppers form sends them.
FIELD_MAPPINGS: List[FieldMapping] = [
    FieldMapping(
        key="Town or city or Postcode\n (VITAL INFORMATION)",
        db_field="postcode",
        required=True,
    ),
    FieldMapping(
        key="Do you have any other address details e.g property number or road name? Can you tell us anything that will help us identify the location?",
        db_field="location_hint",
        required=False,
    ),
    FieldMapping(
        key="Do you know when it happened?\n (Required Info)",
        db_field="time_description",
        required=True,
    ),
    FieldMapping(
        key="Please don't give information about the people involved as you will be asked details about this in the next section.\n (Required Info)",
        db_field="raw_text",
        required=True,
    ),
    FieldMapping(
        key="What do you know about the person  / people? \nCan you tell us their names, age or where they live (if different from the address of the crime)?",
        db_field="people_names",
        required=False,
    ),
    FieldMapping(
        key="What does the person  / people look like?",
        db_field="people_appearance",
        required=False,
    ),
    FieldMapping(
        key="Do you know any contact details for the person / people?",
        db_field="people_contact_info",
        required=False,
    ),
    FieldMapping(
        key="Do any of the people involved in the crime have access to a vehicle/vehicles?",
        db_field="has_vehicle",
        required=False,
        type="boolean",
    ),
    FieldMapping(
        key="Do any of the people involved in the crime have access to a weapon/weapons?",
        db_field="has_weapon",
        required=False,
        type="boolean",
    ),
]


@dataclass
class ValidationResult:
    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    mapped_fields: List[str] = field(default_factory=list)
    unmapped_fields: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.valid = False

    def summary(self) -> Dict:
        return {
            "mappedFields": len(self.mapped_fields),
            "unmappedFields": len(self.unmapped_fields),
            "warnings": list(self.warnings),
        }


def coerce_boolean(value: object) -> bool:
    """Only the literal text "true" (any case, surrounding whitespace ignored) is True."""
    if isinstance(value, bool):
        return value
    return str(value if value is not None else "").strip().lower() == "true"


def validate_and_map_fields(
    form_fields: Mapping[str, str],
    mappings: List[FieldMapping] = FIELD_MAPPINGS,
) -> Tuple[Dict, ValidationResult]:
    """Map a label -> answer payload onto report fields.

    Required fields that are missing or blank fail validation. Labels we
    don't know about are reported back as warnings but never fail it.
    """
    mapped_data: Dict = {}
    result = ValidationResult()

    for mapping in mappings:
        if mapping.key in form_fields:
            value = form_fields[mapping.key]
            result.mapped_fields.append(mapping.key)

            if mapping.type == "boolean":
                mapped_data[mapping.db_field] = coerce_boolean(value)
                continue

            string_value = str(value if value is not None else "").strip()
            if mapping.required and not string_value:
                result.add_error(f"Required field '{mapping.key}' is empty")
            mapped_data[mapping.db_field] = string_value
        elif mapping.required:
            result.add_error(f"Required field '{mapping.key}' is missing")

    known_keys = {m.key for m in mappings}
    for field_key in form_fields.keys():
        if field_key not in known_keys:
            result.unmapped_fields.append(field_key)
            result.warnings.append(f"Unknown field: '{field_key}'")

    return mapped_data, result


def validate_webhook_payload(payload: object) -> Dict:
    """Check the outer envelope of a webhook submission."""
    if not isinstance(payload, dict):
        raise ReportInputError("Invalid payload: expected a JSON object")
    if not payload.get("formID") or not isinstance(payload.get("formFields"), dict):
        raise ReportInputError("Invalid payload: missing formID or formFields")
    return payload


def is_time_known(time_description: Optional[str]) -> bool:
    return bool(time_description and time_description.strip() and time_description.strip() != "False")


def build_webhook_record(payload: Dict, mapped_data: Dict) -> Dict:
    record = dict(mapped_data)
    record.update({
        "crime_type": str(payload.get("title") or "").strip() or "Unknown",
        "is_anonymous": True,
        "shared_with_crimestoppers": True,
        "status": "submitted",
        "time_known": is_time_known(mapped_data.get("time_description")),
        "source": "crimestoppers",
    })
    return record


def _clean(value: object) -> str:
    return str(value if value is not None else "").strip()


def join_people_details(*parts: Optional[str]) -> str:
    return " | ".join(p.strip() for p in parts if p and p.strip())


def map_form_fields(form: Mapping) -> Dict:
    """Map the typed report form onto a canonical record.

    Raises ReportInputError when the description or postcode is blank.
    """
    raw_text = _clean(form.get("whatHappened"))
    postcode = _clean(form.get("postcode"))
    errors = []
    if not raw_text:
        errors.append("Please describe what happened")
    if not postcode:
        errors.append("Postcode is required")
    if errors:
        raise ReportInputError("Validation failed", details=errors)

    location_hint = _clean(form.get("addressDetails"))
    place = form.get("selectedPlace")
    if isinstance(place, dict) and place.get("display_name"):
        location_hint = f"{location_hint} | Selected place: {place['display_name']}"

    names = _clean(form.get("peopleDetails"))
    appearance = _clean(form.get("peopleAppearance"))
    contact = _clean(form.get("contactDetails"))
    when = _clean(form.get("whenHappened"))

    return {
        "raw_text": raw_text,
        "postcode": postcode,
        "location_hint": location_hint,
        "time_description": when,
        "time_known": bool(when),
        "people_description": join_people_details(names, appearance, contact),
        "people_names": names,
        "people_appearance": appearance,
        "people_contact_info": contact,
        "has_vehicle": coerce_boolean(form.get("hasVehicle", False)),
        "has_weapon": coerce_boolean(form.get("hasWeapon", False)),
        "crime_type": _clean(form.get("crimeType")) or "theft",
        "is_anonymous": True,
        "shared_with_crimestoppers": coerce_boolean(form.get("submitToCrimeStoppers", False)),
        "status": "submitted",
        "source": "form",
    }


def extract_postcode(text: Optional[str]) -> Optional[str]:
    """Find the first UK-style postcode in free text."""
    m = UK_POSTCODE_RE.search(text or "")
    if not m:
        return None
    return m.group(0).upper()


def map_extracted_fields(extracted: Mapping) -> Dict:
    """Map LLM-extracted transcript fields onto a canonical record.

    At least one of location/description must be present. The extractor may
    also guess a postcode; one written in the location text itself wins.
    """
    location = _clean(extracted.get("location"))
    description = _clean(extracted.get("description"))
    if not location and not description:
        raise ReportInputError(
            "Could not extract location information from your audio. "
            "Please try recording again with more location details."
        )
    if not description:
        description = "Audio report - see location_hint for details"

    postcode = extract_postcode(location) or extract_postcode(extracted.get("postcode")) or ""
    when = _clean(extracted.get("timeOfIncident"))
    people = _clean(extracted.get("peopleInvolved"))
    appearance = _clean(extracted.get("appearance"))
    contact = _clean(extracted.get("contactInfo"))

    return {
        "raw_text": description,
        "postcode": postcode,
        "location_hint": location,
        "time_description": when,
        "time_known": bool(when),
        "people_description": join_people_details(people, appearance, contact),
        "people_names": people,
        "people_appearance": appearance,
        "people_contact_info": contact,
        "has_vehicle": extracted.get("hasVehicle") is True,
        "has_weapon": extracted.get("hasWeapon") is True,
        "crime_type": _clean(extracted.get("crimeType")) or "theft",
        "is_anonymous": True,
        "shared_with_crimestoppers": False,
        "status": "submitted",
        "source": "audio",
    }


def supported_fields(mappings: List[FieldMapping] = FIELD_MAPPINGS) -> List[Dict]:
    return [
        {"label": m.key, "dbField": m.db_field, "required": m.required, "type": m.type}
        for m in mappings
    ]
