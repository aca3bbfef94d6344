import random

from pulseprint.schemas.status import DeviceState, PrintReport, PrintState, SystemReport
from pulseprint.services.printer import reducer


def _report(seq=None, **fields) -> PrintReport:
    return PrintReport(sequence_id=seq, **fields)


def test_initial_state_is_empty_and_stale():
    state = reducer.initial_state(staleness_window=30)
    assert state.staleness_window == 30
    assert not state.has_data
    assert state.nozzle_temp is None
    assert state.is_stale_at(0.0)
    assert state.status == PrintState.UNKNOWN


def test_in_order_fragments_last_write_wins():
    state = reducer.initial_state()
    state = reducer.apply(state, _report("1", nozzle_temp=200.0), received_at=10.0)
    state = reducer.apply(state, _report("2", nozzle_temp=210.0, bed_temp=45.0), received_at=11.0)

    assert state.nozzle_temp == 210.0
    assert state.bed_temp == 45.0
    assert state.sequence_id == "2"
    assert state.field_sequences == {"nozzle_temp": 2, "bed_temp": 2}
    assert state.last_updated_at == 11.0


def test_out_of_order_fragment_does_not_regress_field():
    """{seq 1 nozzle 210}, {seq 2 bed 45}, then a late {seq 1 nozzle 150}."""
    state = reducer.initial_state()
    state = reducer.apply(state, _report("1", nozzle_temp=210.0))
    state = reducer.apply(state, _report("2", bed_temp=45.0))
    state = reducer.apply(state, _report("1", nozzle_temp=150.0))

    assert state.nozzle_temp == 210.0
    assert state.bed_temp == 45.0


def test_older_fragment_still_fills_unset_fields():
    state = reducer.initial_state()
    state = reducer.apply(state, _report("5", nozzle_temp=210.0))
    state = reducer.apply(state, _report("3", nozzle_temp=100.0, layer=7, print_state="RUNNING"))

    assert state.nozzle_temp == 210.0
    assert state.layer == 7
    assert state.print_state == "RUNNING"
    assert state.status == PrintState.PRINTING
    # The newest sequence id is kept
    assert state.sequence_id == "5"


def test_older_fragment_overwrites_field_written_by_even_older_one():
    state = reducer.initial_state()
    state = reducer.apply(state, _report("1", bed_temp=20.0))
    state = reducer.apply(state, _report("9", nozzle_temp=220.0))
    state = reducer.apply(state, _report("4", bed_temp=55.0))

    # bed_temp was written by seq 1, so seq 4 is newer for that field
    assert state.bed_temp == 55.0
    assert state.nozzle_temp == 220.0


def test_equal_sequence_last_applied_wins():
    state = reducer.initial_state()
    state = reducer.apply(state, _report("7", progress=40.0))
    state = reducer.apply(state, _report("7", progress=41.0))
    assert state.progress == 41.0


def test_fragments_without_sequence_always_write():
    state = reducer.initial_state()
    state = reducer.apply(state, _report("100", nozzle_temp=210.0))
    state = reducer.apply(state, _report(None, nozzle_temp=190.0))
    assert state.nozzle_temp == 190.0

    # An unordered write never blocks a later ordered one
    state = reducer.apply(state, _report("50", nozzle_temp=180.0))
    assert state.nozzle_temp == 180.0


def test_non_numeric_sequence_ids_are_unordered():
    state = reducer.initial_state()
    state = reducer.apply(state, _report("100", nozzle_temp=210.0))
    state = reducer.apply(state, _report("abc", nozzle_temp=195.0))
    assert state.nozzle_temp == 195.0
    assert state.field_sequences["nozzle_temp"] is None


def test_absent_fields_are_left_untouched():
    state = reducer.initial_state()
    state = reducer.apply(state, _report("1", nozzle_temp=210.0, bed_temp=60.0, wifi_signal="-40dBm"))
    state = reducer.apply(state, _report("2", progress=10.0))

    assert state.nozzle_temp == 210.0
    assert state.bed_temp == 60.0
    assert state.wifi_signal == "-40dBm"
    assert state.progress == 10.0


def test_system_report_refreshes_liveness_only():
    state = reducer.initial_state()
    state = reducer.apply(state, _report("3", nozzle_temp=210.0), received_at=100.0)
    state = reducer.apply(state, SystemReport(section="pushing", command="pushall", sequence_id="0"), received_at=150.0)

    assert state.nozzle_temp == 210.0
    assert state.last_updated_at == 150.0
    # An older sequence id does not move the state's sequence id back
    assert state.sequence_id == "3"


def test_last_updated_moves_even_for_stale_fragment():
    state = reducer.initial_state()
    state = reducer.apply(state, _report("9", nozzle_temp=210.0), received_at=1.0)
    state = reducer.apply(state, _report("2", nozzle_temp=100.0), received_at=2.0)
    assert state.nozzle_temp == 210.0
    assert state.last_updated_at == 2.0


def test_apply_returns_new_state_and_leaves_input_untouched():
    before = reducer.initial_state()
    after = reducer.apply(before, _report("1", nozzle_temp=210.0), received_at=5.0)

    assert after is not before
    assert before.nozzle_temp is None
    assert before.field_sequences == {}
    assert not before.has_data


def test_staleness_is_computed_at_read_time():
    state = reducer.apply(reducer.initial_state(staleness_window=60), _report("1", bed_temp=60.0), received_at=100.0)

    assert not state.is_stale_at(150.0)
    assert not state.is_stale_at(160.0)
    assert state.is_stale_at(160.5)
    assert state.age(130.0) == 30.0


def test_randomized_in_order_stream_matches_last_write():
    """For any in-order stream, each field ends at the value of its last report."""
    rng = random.Random(1234)
    fields = ["nozzle_temp", "bed_temp", "progress", "remaining_time"]

    for _ in range(25):
        state = reducer.initial_state()
        expected = {}
        for seq in range(1, rng.randint(2, 40)):
            chosen = rng.sample(fields, rng.randint(1, len(fields)))
            values = {name: float(rng.randint(0, 300)) for name in chosen}
            state = reducer.apply(state, _report(str(seq), **values))
            expected.update(values)

        for name, value in expected.items():
            assert getattr(state, name) == value


def test_randomized_shuffled_stream_keeps_newest_value():
    """Any delivery order ends with each field at its highest-sequence value."""
    rng = random.Random(99)
    fragments = [_report(str(seq), nozzle_temp=float(seq), bed_temp=float(seq * 2)) for seq in range(1, 30)]

    for _ in range(10):
        shuffled = fragments[:]
        rng.shuffle(shuffled)
        state = reducer.initial_state()
        for fragment in shuffled:
            state = reducer.apply(state, fragment)

        assert state.nozzle_temp == 29.0
        assert state.bed_temp == 58.0
        assert state.sequence_id == "29"


def test_device_state_status_mapping():
    assert DeviceState(print_state="RUNNING").status == PrintState.PRINTING
    assert DeviceState(print_state="printing").status == PrintState.PRINTING
    assert DeviceState(print_state="FINISH").status == PrintState.FINISHED
    assert DeviceState(print_state="PAUSE").status == PrintState.PAUSED
    assert DeviceState(print_state="something_new").status == PrintState.UNKNOWN


def test_digit_like_sequence_ids_never_break_apply():
    state = reducer.initial_state()
    state = reducer.apply(state, _report("10", nozzle_temp=210.0))
    state = reducer.apply(state, _report("--5", nozzle_temp=200.0))
    state = reducer.apply(state, _report("²", bed_temp=45.0))

    # Both ids are unordered, so they write like fragments without a sequence
    assert state.nozzle_temp == 200.0
    assert state.bed_temp == 45.0
    assert state.field_sequences["nozzle_temp"] is None
