"""
Unit Tests for ID Generation

Chat and message IDs must be pure functions of their inputs.
"""

import os
import re
import sys
from datetime import datetime, timedelta, timezone

import pytest

project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "course_tutor_chat", "src"))

from course_tutor_chat.id_generator import IDGenerator, hash48hex, to_iso_millis


class TestHash48Hex:
    def test_empty_input_is_the_seed_state(self):
        assert hash48hex("") == "ca6b9e3779b9"

    def test_digest_shape(self):
        digest = hash48hex("What is entropy?")
        assert re.fullmatch(r"[0-9a-f]{12}", digest)

    def test_same_input_same_digest(self):
        assert hash48hex("heat transfer") == hash48hex("heat transfer")

    def test_small_change_changes_digest(self):
        assert hash48hex("heat transfer") != hash48hex("heat transfers")


class TestIsoMillis:
    def test_naive_datetime_is_utc(self):
        assert to_iso_millis(datetime(2025, 1, 27, 10, 0, 0)) == "2025-01-27T10:00:00.000Z"

    def test_aware_datetime_is_converted(self):
        vancouver = timezone(timedelta(hours=-8))
        moment = datetime(2025, 1, 27, 2, 0, 0, 456000, tzinfo=vancouver)
        assert to_iso_millis(moment) == "2025-01-27T10:00:00.456Z"

    def test_epoch_millis(self):
        base = int(datetime(2025, 1, 27, 10, 0, 0, tzinfo=timezone.utc).timestamp()) * 1000
        assert to_iso_millis(base + 123) == "2025-01-27T10:00:00.123Z"


class TestIDGenerator:
    @pytest.fixture
    def generator(self):
        return IDGenerator()

    def test_chat_id_format(self, generator):
        chat_id = generator.chat_id("u1", "CHBE241", datetime(2025, 1, 27, 10, 0, 0))
        assert chat_id.startswith("u1-CHBE241-")
        assert re.fullmatch(r"u1-CHBE241-[0-9a-f]{12}", chat_id)

    def test_chat_id_depends_on_date(self, generator):
        first = generator.chat_id("u1", "CHBE241", datetime(2025, 1, 27, 10, 0, 0))
        second = generator.chat_id("u1", "CHBE241", datetime(2025, 1, 27, 10, 0, 1))
        assert first != second

    def test_message_id_is_deterministic(self, generator):
        first = generator.message_id("What is entropy?", "chat-1", 1737972000000)
        second = generator.message_id("What is entropy?", "chat-1", 1737972000000)
        assert first == second

    def test_message_id_depends_on_chat_and_time(self, generator):
        base = generator.message_id("What is entropy?", "chat-1", 1737972000000)
        assert generator.message_id("What is entropy?", "chat-2", 1737972000000) != base
        assert generator.message_id("What is entropy?", "chat-1", 1737972000001) != base

    def test_message_id_uses_first_ten_words_only(self, generator):
        prefix = "one two three four five six seven eight nine ten"
        first = generator.message_id(prefix + " eleven", "chat-1", 1737972000000)
        second = generator.message_id(prefix + " something else entirely", "chat-1", 1737972000000)
        assert first == second
