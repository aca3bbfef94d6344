import json

import pytest

from pulseprint.core.exceptions import DecodeError, DecodeErrorKind
from pulseprint.schemas.status import PrintReport, SystemReport
from pulseprint.services.printer.decoder import decode, preview


def _payload(data) -> bytes:
    return json.dumps(data).encode("utf-8")


def test_decode_push_status_report():
    """Vendor push_status telemetry maps onto the status fields."""
    fragment = decode(_payload({
        "print": {
            "command": "push_status",
            "msg": 1,
            "sequence_id": "2021",
            "gcode_state": "RUNNING",
            "mc_percent": 45,
            "mc_remaining_time": 83,
            "nozzle_temper": 210.5,
            "nozzle_target_temper": 220,
            "bed_temper": 60,
            "layer_num": 12,
            "total_layer_num": 200,
            "wifi_signal": "-45dBm",
            "subtask_name": "benchy"
        }
    }))

    assert isinstance(fragment, PrintReport)
    assert fragment.command == "push_status"
    assert fragment.sequence_number == 2021
    assert fragment.print_state == "RUNNING"
    assert fragment.progress == 45
    assert fragment.remaining_time == 83
    assert fragment.nozzle_temp == 210.5
    assert fragment.nozzle_target_temp == 220.0
    assert fragment.bed_temp == 60.0
    assert fragment.layer == 12
    assert fragment.total_layers == 200
    assert fragment.wifi_signal == "-45dBm"
    assert fragment.subtask_name == "benchy"
    assert not fragment.is_full_report


def test_decode_lowercase_state_variant_with_top_level_sequence():
    fragment = decode(_payload({
        "print": {
            "command": "push_status",
            "msg": 1,
            "state": "printing",
            "percent": 45,
            "eta": "15:30",
            "remaining_time": 1800,
            "total_time": 3600
        },
        "sequence_id": "12345"
    }))

    assert isinstance(fragment, PrintReport)
    assert fragment.print_state == "printing"
    assert fragment.progress == 45
    assert fragment.eta == "15:30"
    assert fragment.total_time == 3600
    assert fragment.sequence_id == "12345"


def test_top_level_sequence_wins_over_section_sequence():
    fragment = decode(_payload({"print": {"sequence_id": "5"}, "sequence_id": "7"}))
    assert fragment.sequence_number == 7


def test_full_report_flag():
    fragment = decode(_payload({"print": {"command": "push_status", "msg": 0, "gcode_state": "IDLE"}}))
    assert fragment.is_full_report


def test_decode_pushing_pushall_message():
    fragment = decode(_payload({
        "pushing": {"command": "pushall", "version": 1, "sequence_id": "98765"}
    }))

    assert isinstance(fragment, SystemReport)
    assert fragment.section == "pushing"
    assert fragment.is_pushall
    assert fragment.version == 1
    assert fragment.sequence_number == 98765
    assert fragment.reported_fields() == {}


def test_decode_system_and_info_sections():
    system = decode(_payload({"system": {"command": "pushall", "sequence_id": "1"}}))
    info = decode(_payload({"info": {"command": "get_version", "sequence_id": "2", "module": []}}))

    assert isinstance(system, SystemReport) and system.section == "system"
    assert isinstance(info, SystemReport) and info.section == "info"
    assert info.command == "get_version"


def test_unknown_fields_are_ignored():
    """Forward compatibility: new keys from newer firmware never break decoding."""
    fragment = decode(_payload({
        "print": {"gcode_state": "IDLE", "future_field": {"nested": [1, 2]}, "ams": {"ams": []}},
        "brand_new_section": True
    }))
    assert fragment.print_state == "IDLE"
    assert fragment.reported_fields() == {"print_state": "IDLE"}


def test_object_without_known_sections_is_an_empty_report():
    fragment = decode(b"{}")
    assert isinstance(fragment, SystemReport)
    assert fragment.command is None
    assert fragment.sequence_id is None


def test_null_means_not_reported():
    fragment = decode(_payload({"print": {"bed_temper": None, "nozzle_temper": 200}}))
    assert fragment.reported_fields() == {"nozzle_temp": 200.0}


def test_numeric_sequence_id_is_accepted():
    fragment = decode(_payload({"print": {"sequence_id": 42}}))
    assert fragment.sequence_number == 42


def test_non_numeric_sequence_id_is_unordered():
    fragment = decode(_payload({"print": {"sequence_id": "abc"}}))
    assert fragment.sequence_id == "abc"
    assert fragment.sequence_number is None


@pytest.mark.parametrize("payload", [b"{not json", b"", b"[1, 2, 3]", b"42", b"null", b'"text"', b"\xff\xfe\x00"])
def test_malformed_payloads(payload):
    with pytest.raises(DecodeError) as exc_info:
        decode(payload)
    assert exc_info.value.kind == DecodeErrorKind.MALFORMED


def test_string_where_number_expected_is_type_mismatch():
    with pytest.raises(DecodeError) as exc_info:
        decode(_payload({"print": {"nozzle_temper": "hot"}}))
    assert exc_info.value.kind == DecodeErrorKind.TYPE_MISMATCH
    assert exc_info.value.field == "nozzle_temper"


def test_boolean_is_not_a_number():
    with pytest.raises(DecodeError) as exc_info:
        decode(_payload({"print": {"mc_percent": True}}))
    assert exc_info.value.kind == DecodeErrorKind.TYPE_MISMATCH
    assert exc_info.value.field == "mc_percent"


def test_non_object_section_is_type_mismatch():
    with pytest.raises(DecodeError) as exc_info:
        decode(_payload({"print": [1, 2]}))
    assert exc_info.value.kind == DecodeErrorKind.TYPE_MISMATCH
    assert exc_info.value.field == "print"


def test_bad_sequence_id_type_is_type_mismatch():
    with pytest.raises(DecodeError) as exc_info:
        decode(_payload({"pushing": {"command": "pushall"}, "sequence_id": {"a": 1}}))
    assert exc_info.value.field == "sequence_id"


@pytest.mark.parametrize("payload", [
    b'{"print": "oops"}',
    b'{"print": ' + b"[" * 200000 + b"]" * 200000 + b"}",
    b'{"print": {"layer_num": 1.5}}',
    b'{"print": {"wifi_signal": -45}}',
    b'{"system": 3}',
    b'{"sequence_id": []}',
])
def test_decode_only_ever_raises_decode_error(payload):
    with pytest.raises(DecodeError):
        decode(payload)


def test_preview_truncates_long_payloads():
    raw = b"x" * 2000
    text = preview(raw)
    assert text.startswith("x" * 500)
    assert "(2000 chars)" in text
    assert preview(b"short") == "short"


@pytest.mark.parametrize("sequence_id", ["--5", "²", "1-2", "", " "])
def test_digit_like_sequence_ids_are_unordered(sequence_id):
    fragment = decode(_payload({"print": {"sequence_id": sequence_id, "nozzle_temper": 200}}))
    assert fragment.sequence_id == sequence_id
    assert fragment.sequence_number is None


def test_negative_sequence_id_is_ordered():
    assert decode(_payload({"print": {"sequence_id": "-3"}})).sequence_number == -3


def test_sequence_falls_back_to_system_then_info_then_pushing():
    both = decode(_payload({"pushing": {"command": "pushall"}, "info": {"sequence_id": "8"}, "system": {"sequence_id": "9"}}))
    info_only = decode(_payload({"pushing": {"command": "pushall"}, "info": {"sequence_id": "8"}}))
    from_print = decode(_payload({"print": {"bed_temper": 60}, "system": {"sequence_id": "4"}}))

    assert both.section == "pushing"
    assert both.sequence_number == 9
    assert info_only.sequence_number == 8
    assert from_print.sequence_number == 4


def test_section_sequence_beats_fallback_sections():
    fragment = decode(_payload({"print": {"sequence_id": "2"}, "system": {"sequence_id": "9"}}))
    assert fragment.sequence_number == 2
