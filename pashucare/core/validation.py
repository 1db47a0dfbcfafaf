"""
Input Validation

Semantic checks applied to every SymptomInput before it enters the pipeline.
Failures raise InputValidationError with a message the farmer can act on.
"""

from pashucare.config import settings
from pashucare.core.errors import InputValidationError
from pashucare.models.schemas import ImagePayload, SymptomInput

# Leading bytes that identify each accepted image encoding.
_MAGIC_BYTES: dict[str, tuple[bytes, ...]] = {
    "image/jpeg": (b"\xff\xd8\xff",),
    "image/png": (b"\x89PNG\r\n\x1a\n",),
}

_MIME_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg"}


def normalize_mime_type(mime_type: str) -> str:
    mime = mime_type.split(";", 1)[0].strip().lower()
    return _MIME_ALIASES.get(mime, mime)


def validate_image(image: ImagePayload) -> None:
    """Reject oversized or unsupported photos.

    The declared MIME type must be JPEG or PNG and the payload's leading
    bytes must agree with it.

    Raises:
        InputValidationError: if the image is empty, too large or not a
            supported encoding.
    """
    size = len(image.data)
    if size == 0:
        raise InputValidationError("The attached photo is empty.")
    if size > settings.MAX_IMAGE_BYTES:
        limit_mb = settings.MAX_IMAGE_BYTES // (1024 * 1024)
        raise InputValidationError(
            f"The photo is too large. Please attach an image under {limit_mb} MB."
        )

    mime = normalize_mime_type(image.mime_type)
    signatures = _MAGIC_BYTES.get(mime)
    if signatures is None:
        raise InputValidationError(
            "Unsupported photo format. Please attach a JPEG or PNG image."
        )
    if not any(image.data.startswith(sig) for sig in signatures):
        raise InputValidationError(
            "The photo could not be read. Please attach a JPEG or PNG image."
        )


def validate_symptom_input(symptom_input: SymptomInput) -> None:
    """Check that a submission is usable.

    Raises:
        InputValidationError: if neither text nor image is present, the text
            is too long, or the image fails ``validate_image``.
    """
    text = (symptom_input.text or "").strip()
    if not text and symptom_input.image is None:
        raise InputValidationError(
            "Please describe the symptoms or attach a photo of the animal."
        )
    if len(text) > settings.MAX_TEXT_LENGTH:
        raise InputValidationError(
            f"The description is too long. Please keep it under "
            f"{settings.MAX_TEXT_LENGTH} characters."
        )
    if symptom_input.image is not None:
        validate_image(symptom_input.image)


def describe_request_errors(errors: list[dict]) -> str:
    """Turn request-shape errors into one message the farmer can act on.

    Only the first error's location is consulted; submitted values are never
    echoed back.
    """
    if not errors:
        return InputValidationError.default_message
    loc = [str(part) for part in errors[0].get("loc", ())]
    if "image" in loc:
        return "The photo could not be read. Please attach a JPEG or PNG image."
    if "animal_type" in loc:
        return "Please choose the animal: cow (bovine), goat or buffalo."
    if "idempotency_key" in loc:
        return "The request is missing its reference number. Please submit it again."
    if "coordinates" in loc or "region_code" in loc or "location" in loc:
        return "Please share your location or choose your district."
    if "max_distance_km" in loc:
        return "The search distance must be a positive number of kilometres."
    field = ".".join(part for part in loc if part != "body")
    if field:
        return f"The field '{field}' is missing or invalid. Please check it and try again."
    return InputValidationError.default_message
