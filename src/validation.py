"""
Schema Validation - JSON schema checks for objects under admission.

Provides the schemas of the objects the webhook inspects and a helper that
validates an object against one of them.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

logger = logging.getLogger(__name__)

REGISTER_VOLUME_SPEC_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["pvcName"],
    "properties": {
        "volumeID": {"type": "string"},
        "pvcName": {"type": "string", "minLength": 1},
        "accessMode": {"type": "string"},
        "diskURLPath": {"type": "string"},
    },
}

STORAGE_CLASS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["provisioner"],
    "properties": {
        "provisioner": {"type": "string"},
        "allowVolumeExpansion": {"type": ["boolean", "null"]},
        "parameters": {
            "type": ["object", "null"],
            "additionalProperties": {"type": "string"},
        },
    },
}


def validate_against_schema(
    obj: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate an object against a JSON Schema.

    Args:
        obj: The object (or object spec) to validate
        schema: The JSON Schema to validate against

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        validator = Draft7Validator(schema)
        errors = sorted(
            validator.iter_errors(obj), key=lambda e: [str(p) for p in e.path]
        )

        if not errors:
            return True, None

        error_messages = []
        for error in errors:
            path = ".".join(str(p) for p in error.absolute_path) or "(root)"
            error_messages.append(f"{path}: {error.message}")

        return False, "; ".join(error_messages)

    except ValidationError as e:
        return False, f"Validation error: {str(e)}"
