import threading

import pytest

from conftest import add_event, wait_until
from renumbering import (
    HIDDEN_PREFIX,
    STAGING_PREFIX,
    EventSequence,
    InvalidPermutation,
    PersistenceFailure,
    format_event_number,
)


def visible_numbers(collection):
    return sorted(doc["eventNumber"] for doc in collection.docs if not doc.get("isHidden"))


def test_format_event_number_pads_to_width():
    assert format_event_number(7) == "007"
    assert format_event_number(12, width=4) == "0012"
    assert format_event_number(1234) == "1234"


def test_renumber_makes_visible_numbers_dense_and_hidden_unique(events, sequence):
    for i in range(5):
        add_event(events, f"visible {i}", minutes=i, number=format_event_number(10 + i * 3))
    hidden_a = add_event(events, "hidden a", minutes=10, hidden=True, number="001")
    hidden_b = add_event(events, "hidden b", minutes=11, hidden=True, number="002")

    assert sequence.renumber_visible() == 5

    assert visible_numbers(events) == ["001", "002", "003", "004", "005"]
    assert events.get(hidden_a)["eventNumber"] == f"{HIDDEN_PREFIX}{hidden_a}"
    assert events.get(hidden_b)["eventNumber"] == f"{HIDDEN_PREFIX}{hidden_b}"
    all_numbers = [doc["eventNumber"] for doc in events.docs]
    assert len(all_numbers) == len(set(all_numbers))


def test_renumber_swaps_existing_numbers_without_duplicate_keys(events, sequence):
    # current numbers are the reverse of the target assignment
    older = add_event(events, "older", minutes=0, number="001")
    newer = add_event(events, "newer", minutes=5, number="002")

    sequence.renumber_visible()

    assert events.numbers(newer, older) == ["001", "002"]


def test_renumber_is_idempotent(events, sequence):
    ids = [add_event(events, f"e{i}", minutes=i, order=i % 2) for i in range(6)]
    add_event(events, "hidden", minutes=20, hidden=True)

    sequence.renumber_visible()
    first = {doc["_id"]: doc["eventNumber"] for doc in events.docs}
    sequence.renumber_visible()
    second = {doc["_id"]: doc["eventNumber"] for doc in events.docs}

    assert first == second
    assert len(ids) == 6


def test_renumber_orders_by_order_then_newest_first(events, sequence):
    late_low = add_event(events, "late, order 0", minutes=30, order=0)
    early_low = add_event(events, "early, order 0", minutes=0, order=0)
    first_high = add_event(events, "order 2", minutes=60, order=2)
    middle = add_event(events, "order 1", minutes=90, order=1)

    sequence.renumber_visible()

    assert events.numbers(late_low, early_low, middle, first_high) == ["001", "002", "003", "004"]


def test_renumber_after_delete_matches_creation_scenario(events, sequence):
    e1 = add_event(events, "e1", minutes=1)
    e2 = add_event(events, "e2", minutes=2)
    e3 = add_event(events, "e3", minutes=3)
    e4 = add_event(events, "e4", minutes=4)
    sequence.renumber_visible()
    assert events.numbers(e4, e3, e2, e1) == ["001", "002", "003", "004"]

    events.delete_one({"_id": e2})
    sequence.renumber_visible()

    assert events.numbers(e4, e3, e1) == ["001", "002", "003"]


def test_hidden_then_unhidden_event_rejoins_sequence(events, sequence):
    a = add_event(events, "a", minutes=1)
    b = add_event(events, "b", minutes=2)
    c = add_event(events, "c", minutes=3)
    sequence.renumber_visible()
    assert events.get(b)["eventNumber"] == "002"

    events.update_one({"_id": b}, {"$set": {"isHidden": True}})
    sequence.renumber_visible()
    assert events.numbers(c, a) == ["001", "002"]
    assert events.get(b)["eventNumber"] == f"{HIDDEN_PREFIX}{b}"

    events.update_one({"_id": b}, {"$set": {"isHidden": False}})
    sequence.renumber_visible()
    assert events.numbers(c, b, a) == ["001", "002", "003"]


def test_zero_visible_events_only_quarantines_hidden(events, sequence):
    hidden = add_event(events, "hidden", hidden=True, number="001")

    assert sequence.renumber_visible() == 0
    assert events.get(hidden)["eventNumber"] == f"{HIDDEN_PREFIX}{hidden}"


def test_staging_values_are_unique_and_never_numeric(events, sequence):
    ids = [add_event(events, f"e{i}", minutes=i) for i in range(4)]

    sequence.renumber_visible()
    sequence.renumber_visible()

    staged = [value for _, key, value in events.set_log if key == "eventNumber" and value.startswith(STAGING_PREFIX)]
    assert len(staged) == 2 * len(ids)
    assert len(set(staged)) == len(staged)
    assert not any(value.isdigit() for value in staged)


def test_each_phase_completes_before_the_next(events, sequence):
    ids = [add_event(events, f"e{i}", minutes=i) for i in range(3)]
    hidden = add_event(events, "hidden", hidden=True)

    sequence.renumber_visible()

    kinds = []
    for _, key, value in events.set_log:
        if value.startswith(HIDDEN_PREFIX):
            kinds.append("hidden")
        elif value.startswith(STAGING_PREFIX):
            kinds.append("staging")
        else:
            kinds.append("final")
    assert kinds == ["hidden"] + ["staging"] * len(ids) + ["final"] * len(ids)
    assert events.set_log[0][0] == hidden


def test_configurable_width(events, gate):
    a = add_event(events, "a", minutes=1)
    b = add_event(events, "b", minutes=2)

    EventSequence(events, gate, width=4).renumber_visible()

    assert events.numbers(b, a) == ["0001", "0002"]


def test_update_order_reverses_ranks(events, sequence):
    a = add_event(events, "a", minutes=1)
    b = add_event(events, "b", minutes=2)
    c = add_event(events, "c", minutes=3)
    sequence.renumber_visible()

    assert sequence.update_order([a, b, c]) == 3

    assert events.numbers(a, b, c) == ["003", "002", "001"]
    assert [events.get(i)["order"] for i in (a, b, c)] == [0, 1, 2]


def test_update_order_rejects_incomplete_or_foreign_ids(events, sequence):
    a = add_event(events, "a", minutes=1)
    b = add_event(events, "b", minutes=2)
    hidden = add_event(events, "hidden", minutes=3, hidden=True)
    sequence.renumber_visible()
    before = {doc["_id"]: dict(doc) for doc in events.docs}

    with pytest.raises(InvalidPermutation) as missing:
        sequence.update_order([a])
    assert missing.value.missing == [str(b)]

    with pytest.raises(InvalidPermutation) as foreign:
        sequence.update_order([a, b, hidden])
    assert foreign.value.unexpected == [str(hidden)]

    with pytest.raises(InvalidPermutation) as repeated:
        sequence.update_order([a, b, a])
    assert repeated.value.duplicates == [str(a)]

    assert {doc["_id"]: doc for doc in events.docs} == before


def test_update_order_permissive_mode_accepts_partial_list(events, sequence):
    a = add_event(events, "a", minutes=1)
    b = add_event(events, "b", minutes=2)

    sequence.update_order([b], strict=False)

    assert events.get(b)["eventNumber"] == "001"
    assert events.get(b)["order"] == 0
    assert events.get(a)["eventNumber"].startswith("SEED_")


def test_failed_staging_leaves_partial_state_that_next_pass_repairs(events, sequence):
    ids = [add_event(events, f"e{i}", minutes=i, number=format_event_number(i + 1)) for i in range(4)]
    add_event(events, "hidden", minutes=10, hidden=True)
    # one quarantine write plus two staged records, then the store fails
    events.fail_after = events.writes + 3

    with pytest.raises(PersistenceFailure) as failure:
        sequence.renumber_visible()

    assert failure.value.phase == "staging"
    staged = [doc for doc in events.docs if doc["eventNumber"].startswith(STAGING_PREFIX)]
    assert len(staged) == 2

    events.fail_after = None
    sequence.renumber_visible()

    assert visible_numbers(events) == ["001", "002", "003", "004"]
    assert events.numbers(*reversed(ids)) == ["001", "002", "003", "004"]


def test_failure_releases_the_gate(events, sequence, gate):
    add_event(events, "a")
    events.fail_after = events.writes

    with pytest.raises(PersistenceFailure):
        sequence.renumber_visible()

    assert gate.pending == 0
    events.fail_after = None
    assert sequence.renumber_visible() == 1


def test_submit_renumber_returns_future(events, sequence):
    a = add_event(events, "a", minutes=1)
    b = add_event(events, "b", minutes=2)

    assert sequence.submit_renumber().result(timeout=5) == 2
    assert events.numbers(b, a) == ["001", "002"]


def test_hide_waits_for_a_pass_already_in_progress(events, sequence, gate, monkeypatch):
    a = add_event(events, "a", minutes=1, number="003")
    b = add_event(events, "b", minutes=2, number="002")
    c = add_event(events, "c", minutes=3, number="001")
    stage = sequence._stage
    staging_reached = threading.Event()
    resume = threading.Event()

    def paused_stage(*args, **kwargs):
        staging_reached.set()
        resume.wait(5)
        return stage(*args, **kwargs)

    monkeypatch.setattr(sequence, "_stage", paused_stage)

    def hide_b():
        return events.update_one({"_id": b}, {"$set": {"isHidden": True}}).matched_count

    running = threading.Thread(target=sequence.renumber_visible)
    running.start()
    staging_reached.wait(5)
    hiding = threading.Thread(target=sequence.apply, args=(hide_b,))
    hiding.start()
    wait_until(lambda: gate.pending == 2)

    # the in-flight pass already listed b as visible
    assert events.get(b)["isHidden"] is False
    resume.set()
    running.join(5)
    hiding.join(5)

    assert events.get(b)["isHidden"] is True
    assert events.get(b)["eventNumber"] == f"{HIDDEN_PREFIX}{b}"
    assert events.numbers(c, a) == ["001", "002"]
    assert gate.pending == 0


def test_apply_skips_the_pass_when_nothing_changed(events, sequence):
    a = add_event(events, "a", number="007")

    assert sequence.apply(lambda: 0) == 0
    assert events.get(a)["eventNumber"] == "007"

    assert sequence.apply(lambda: 1) == 1
    assert events.get(a)["eventNumber"] == "001"


def test_apply_propagates_mutation_errors_and_releases_the_gate(events, sequence, gate):
    def failing():
        raise RuntimeError("write rejected")

    with pytest.raises(RuntimeError, match="write rejected"):
        sequence.apply(failing)

    assert gate.pending == 0
