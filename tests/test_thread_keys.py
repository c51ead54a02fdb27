"""
Tests for thread key generation
"""

import itertools
import re

import pytest

from velora.services.thread_keys import generate_thread_key, to_base36


PARTICIPANTS = ["alex@acme.com", "me@example.com", "sam@acme.com"]


# ============ Base36 Tests ============

def test_base36_known_values():
    assert to_base36(0) == "0"
    assert to_base36(35) == "z"
    assert to_base36(36) == "10"
    assert to_base36(36 ** 3) == "1000"


def test_base36_rejects_negative():
    with pytest.raises(ValueError):
        to_base36(-1)


# ============ Thread Key Tests ============

def test_key_format():
    key = generate_thread_key("<msg-1@mail.acme.com>", PARTICIPANTS)
    assert re.fullmatch(r"thread_[0-9a-z]{1,13}", key)


def test_key_is_independent_of_participant_order():
    keys = {
        generate_thread_key("<msg-1@mail.acme.com>", list(order))
        for order in itertools.permutations(PARTICIPANTS)
    }
    assert len(keys) == 1


def test_two_inbound_events_agree_on_key():
    """Same message id, participants listed in a different order"""
    first = generate_thread_key("<abc@mail>", ["alex@acme.com", "me@example.com"])
    second = generate_thread_key("<abc@mail>", ["me@example.com", "alex@acme.com"])
    assert first == second


def test_key_is_deterministic_across_calls():
    assert generate_thread_key("m", PARTICIPANTS) == generate_thread_key("m", PARTICIPANTS)


def test_key_changes_with_message_id():
    assert generate_thread_key("m1", PARTICIPANTS) != generate_thread_key("m2", PARTICIPANTS)


def test_key_changes_with_participants():
    assert generate_thread_key("m", ["a@x.com"]) != generate_thread_key("m", ["b@x.com"])


def test_no_collisions_over_many_message_ids():
    keys = {generate_thread_key(f"<msg-{i}@mail>", PARTICIPANTS) for i in range(20000)}
    assert len(keys) == 20000


def test_empty_participants():
    key = generate_thread_key("<solo@mail>", [])
    assert key.startswith("thread_")
