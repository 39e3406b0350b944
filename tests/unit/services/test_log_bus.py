"""
Unit Tests for the runtime log bus
"""
import re
import threading

from buildloop.services.log_bus import (
    ERROR_CAPTURE_SCRIPT,
    RUNTIME_ERROR_TYPES,
    RuntimeLogBus,
    format_runtime_error,
)


class TestRuntimeErrorFormat:
    """Test entry text"""

    def test_full_entry(self):
        text = format_runtime_error("x is undefined", "at App (App.tsx:3)", "Uncaught Exception")

        assert text == "Uncaught Exception: x is undefined\nStack: at App (App.tsx:3)"

    def test_defaults(self):
        assert format_runtime_error("boom") == "Error: boom\nStack: N/A"

    def test_rendered_entry_has_timestamp(self):
        bus = RuntimeLogBus()
        bus.add_runtime_error("s1", "boom", None, "Console Error")

        [line] = bus.get_runtime_logs("s1")

        assert re.match(r"^\[\d{4}-\d{2}-\d{2}T[\d:.]+Z\] Console Error: boom\nStack: N/A$", line)

    def test_capture_script_reports_all_types(self):
        for error_type in RUNTIME_ERROR_TYPES:
            assert error_type in ERROR_CAPTURE_SCRIPT


class TestRuntimeLogBuffer:
    """Test capping and deduplication"""

    def test_duplicate_error_stored_once(self):
        bus = RuntimeLogBus()

        assert bus.add_runtime_error("s1", "x is undefined", "stack", "Uncaught Exception") is True
        assert bus.add_runtime_error("s1", "x is undefined", "stack", "Uncaught Exception") is False

        assert len(bus.get_runtime_logs("s1")) == 1

    def test_same_message_different_type_is_distinct(self):
        bus = RuntimeLogBus()
        bus.add_runtime_error("s1", "boom", None, "Console Error")
        bus.add_runtime_error("s1", "boom", None, "Uncaught Exception")

        assert len(bus.get_runtime_logs("s1")) == 2

    def test_limit_drops_oldest(self):
        bus = RuntimeLogBus(limit=50)
        for i in range(51):
            bus.add_runtime_error("s1", f"error {i}")

        entries = bus.get_entries("s1")

        assert len(entries) == 50
        assert entries[0].text.startswith("Error: error 1\n")
        assert entries[-1].text.startswith("Error: error 50\n")

    def test_sessions_are_isolated(self):
        bus = RuntimeLogBus()
        bus.add_runtime_error("s1", "boom")

        assert bus.get_runtime_logs("s2") == []

    def test_clear(self):
        bus = RuntimeLogBus()
        bus.add_runtime_error("s1", "boom")

        bus.clear_runtime_logs("s1")

        assert bus.get_runtime_logs("s1") == []

    def test_concurrent_appends(self):
        bus = RuntimeLogBus(limit=50)

        def report(worker):
            for i in range(40):
                bus.add_runtime_error("s1", f"worker {worker} error {i}")

        threads = [threading.Thread(target=report, args=(w,)) for w in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(bus.get_entries("s1")) == 50
