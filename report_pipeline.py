"""
Report submission pipeline.

Every path (typed form, audio extraction, partner webhook) runs the same
strictly sequential steps:

    validate -> geocode -> upload photo bytes -> insert report
             -> insert photo rows -> queue summary

A validation or geocoding rejection happens before anything is written.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

from errors import ReportInputError, StoreError, UnresolvedPostcodeError
from field_mapping import (
    ValidationResult,
    build_webhook_record,
    map_extracted_fields,
    map_form_fields,
    validate_and_map_fields,
    validate_webhook_payload,
)
from identity import Identity
from postcode_geocoder import PostcodeGeocoder, normalize_postcode, point_wkt
from report_store import PHOTO_ATTACH_WARNING, ReportStore

logger = logging.getLogger(__name__)

MAX_PHOTOS = 5
MAX_PHOTO_BYTES = 5 * 1024 * 1024


@dataclass
class PhotoUpload:
    filename: str
    data: bytes
    content_type: str = "application/octet-stream"


@dataclass
class SubmissionResult:
    report: Dict
    photos: List[Dict] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    validation: Optional[ValidationResult] = None

    def to_dict(self) -> Dict:
        data = {
            "success": True,
            "reportId": self.report["id"],
            "report": {**self.report, "photos": self.photos},
            "warnings": list(self.warnings),
        }
        if self.validation is not None:
            data["validation"] = self.validation.summary()
        return data


def validate_photos(photos: Iterable[PhotoUpload]) -> List[PhotoUpload]:
    photos = list(photos or [])
    errors = []
    if len(photos) > MAX_PHOTOS:
        errors.append(f"Maximum {MAX_PHOTOS} images allowed per report")
    for photo in photos:
        if not (photo.content_type or "").startswith("image/"):
            errors.append(f"{photo.filename} is not an image file")
        elif not photo.data:
            errors.append(f"{photo.filename} is empty")
        elif len(photo.data) > MAX_PHOTO_BYTES:
            errors.append(f"{photo.filename} is too large. Maximum size is 5MB.")
    if errors:
        raise ReportInputError("Invalid photos", details=errors)
    return photos


class ReportPipeline:
    def __init__(
        self,
        store: ReportStore,
        geocoder: PostcodeGeocoder,
        summary_worker=None,
        unresolved_policy: str = "reject",
    ):
        self.store = store
        self.geocoder = geocoder
        self.summary_worker = summary_worker
        self.unresolved_policy = unresolved_policy

    def resolve_location(self, postcode: Optional[str]) -> Optional[str]:
        """Geocode a postcode into the stored point.

        Under the "reject" policy an unresolvable postcode stops the
        submission; under "store" the report is saved without a point and
        simply won't appear on the map.
        """
        coords = self.geocoder.lookup(postcode)
        if coords is not None:
            return point_wkt(*coords)
        if self.unresolved_policy == "reject":
            raise UnresolvedPostcodeError(
                "Invalid postcode. Please enter a valid UK postcode.",
                details=[f"Postcode '{normalize_postcode(postcode)}' could not be resolved"],
            )
        logger.info(f"Storing report without coordinates; postcode '{normalize_postcode(postcode)}' unresolved")
        return None

    def submit_form(self, form: Mapping, identity: Identity, photos: Iterable[PhotoUpload] = ()) -> SubmissionResult:
        record = map_form_fields(form)
        return self._submit(record, identity, validate_photos(photos))

    def submit_extracted(self, extracted: Mapping, identity: Identity, photos: Iterable[PhotoUpload] = ()) -> SubmissionResult:
        record = map_extracted_fields(extracted)
        return self._submit(record, identity, validate_photos(photos))

    def submit_webhook(self, payload: object, identity: Identity) -> SubmissionResult:
        payload = validate_webhook_payload(payload)
        logger.info(
            f"Received crimestoppers payload: formID={payload.get('formID')} "
            f"title={payload.get('title')!r} fields={len(payload['formFields'])}"
        )
        mapped, validation = validate_and_map_fields(payload["formFields"])
        logger.info(
            f"Field validation: valid={validation.valid} mapped={len(validation.mapped_fields)} "
            f"unmapped={len(validation.unmapped_fields)}"
        )
        if not validation.valid:
            raise ReportInputError("Validation failed", details=validation.errors)

        record = build_webhook_record(payload, mapped)
        result = self._submit(record, identity, [])
        result.validation = validation
        result.warnings = list(validation.warnings) + result.warnings
        return result

    def _submit(self, record: Dict, identity: Identity, photos: List[PhotoUpload]) -> SubmissionResult:
        record = dict(record)
        record["location"] = self.resolve_location(record.get("postcode"))

        # Photos upload one at a time; a failed upload aborts before the insert.
        urls = [self.store.upload_photo_bytes(p.data, p.filename) for p in photos]

        record["user_id"] = identity.user_id
        report = self.store.create_report(record)

        result = SubmissionResult(report=report)
        if urls:
            try:
                result.photos = self.store.insert_photos(report["id"], urls)
            except StoreError as e:
                logger.warning(f"Report {report['id']} saved but photos failed to attach: {e}")
                result.warnings.append(PHOTO_ATTACH_WARNING)

        if self.summary_worker is not None:
            self.summary_worker.enqueue(report)
        return result
