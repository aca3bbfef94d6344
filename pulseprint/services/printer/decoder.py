import json
import logging
from typing import Any, Dict, Optional, Type, Union

from pydantic import BaseModel, ValidationError

from pulseprint.core.exceptions import DecodeError
from pulseprint.schemas.status import PrintReport, StatusFragment, SystemReport

logger = logging.getLogger("MessageDecoder")

PRINT_SECTION = "print"
# Checked in this order when there is no "print" section
SYSTEM_SECTIONS = ("pushing", "system", "info")
# Where a sequence_id is looked up when neither the top level nor the decoded section has one
SEQUENCE_FALLBACK_SECTIONS = ("system", "info", "pushing")

PREVIEW_LIMIT = 500


def decode(payload: Union[bytes, bytearray, str]) -> StatusFragment:
    """
    Turns one report payload into a status fragment.

    Shape is sniffed from the top-level keys: a "print" object is a PrintReport,
    otherwise a "pushing"/"system"/"info" object (or nothing recognizable) is a
    SystemReport. Unknown keys are ignored everywhere.

    Raises DecodeError (MALFORMED) for non-UTF-8, invalid JSON or a non-object
    top level, and DecodeError (TYPE_MISMATCH) when a recognized field has the
    wrong JSON type. Nothing else escapes.
    """
    if isinstance(payload, (bytes, bytearray)):
        try:
            text = bytes(payload).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError.malformed(f"payload is not UTF-8 ({e})") from e
    else:
        text = payload

    try:
        data = json.loads(text)
    except ValueError as e:
        raise DecodeError.malformed(str(e)) from e
    except RecursionError as e:
        raise DecodeError.malformed("nesting too deep") from e

    if not isinstance(data, dict):
        raise DecodeError.malformed(f"top level is {type(data).__name__}, expected an object")

    top_sequence = data.get("sequence_id")

    if PRINT_SECTION in data:
        return _decode_section(PrintReport, PRINT_SECTION, data, top_sequence)

    for section in SYSTEM_SECTIONS:
        if section in data:
            return _decode_section(SystemReport, section, data, top_sequence)

    # No recognized section: still a valid (empty) report
    fields: Dict[str, Any] = {}
    if top_sequence is not None:
        fields["sequence_id"] = top_sequence
    return _validate(SystemReport, fields)


def _decode_section(
    model: Type[BaseModel], section: str, data: Dict[str, Any], top_sequence: Optional[Any]
) -> StatusFragment:
    body = data[section]
    if not isinstance(body, dict):
        raise DecodeError.type_mismatch(section, f"expected an object, got {type(body).__name__}")

    fields = dict(body)
    # Top-level sequence_id wins over the section's own
    if top_sequence is not None:
        fields["sequence_id"] = top_sequence
    elif fields.get("sequence_id") is None:
        fields["sequence_id"] = _fallback_sequence(data)
    if model is SystemReport:
        fields["section"] = section
    return _validate(model, fields)


def _validate(model: Type[BaseModel], fields: Dict[str, Any]) -> StatusFragment:
    try:
        return model.model_validate(fields)
    except ValidationError as e:
        error = e.errors()[0]
        loc = error.get("loc") or ("<root>",)
        raise DecodeError.type_mismatch(str(loc[0]), error.get("msg", "")) from e


def _fallback_sequence(data: Dict[str, Any]) -> Optional[Any]:
    for name in SEQUENCE_FALLBACK_SECTIONS:
        body = data.get(name)
        if isinstance(body, dict) and body.get("sequence_id") is not None:
            return body["sequence_id"]
    return None


def preview(payload: Union[bytes, bytearray, str], limit: int = PREVIEW_LIMIT) -> str:
    """Printable, truncated form of a raw payload for log lines."""
    if isinstance(payload, (bytes, bytearray)):
        text = bytes(payload).decode("utf-8", errors="replace")
    else:
        text = payload
    if len(text) <= limit:
        return text
    return f"{text[:limit]}... ({len(text)} chars)"
