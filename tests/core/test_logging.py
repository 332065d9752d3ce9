"""
Tests for tiller.core.logging.

Covers:
- scrub() / scrub_value() redaction
- secret_scope() nesting
- redact_secrets processor inside a configured pipeline
"""

import json

import structlog

from tiller.core.logging import (
    REDACTED,
    LogContext,
    configure_logging,
    get_logger,
    redact_secrets,
    scrub,
    scrub_value,
    secret_scope,
)


class TestScrub:
    def test_replaces_every_occurrence(self):
        assert scrub("token=abc, again abc", ["abc"]) == f"token={REDACTED}, again {REDACTED}"

    def test_longest_value_first(self):
        assert scrub("abcdef", ["abc", "abcdef"]) == REDACTED

    def test_scrub_value_recurses(self):
        value = {"a": ["x-secret", ("secret",)], "b": 3, "c": ValueError("secret!")}
        scrubbed = scrub_value(value, ("secret",))
        assert scrubbed["a"] == [f"x-{REDACTED}", (REDACTED,)]
        assert scrubbed["b"] == 3
        assert scrubbed["c"] == f"ValueError: {REDACTED}!"


class TestSecretScope:
    def test_processor_is_noop_outside_scope(self):
        event = {"event": "hello", "value": "s3cr3t"}
        assert redact_secrets(None, "info", event) == event

    def test_processor_redacts_inside_scope(self):
        with secret_scope(["s3cr3t"]):
            event = redact_secrets(None, "info", {"event": "got s3cr3t", "nested": {"v": "s3cr3t"}})
        assert event == {"event": f"got {REDACTED}", "nested": {"v": REDACTED}}

    def test_scopes_nest_and_reset(self):
        with secret_scope(["one"]):
            with secret_scope(["two"]):
                assert scrub("one two") == f"{REDACTED} {REDACTED}"
            assert scrub("one two") == f"{REDACTED} two"
        assert scrub("one two") == "one two"


class TestConfiguredPipeline:
    def test_json_output_is_redacted(self, capsys):
        configure_logging(level="INFO", json_format=True, service="tiller-test")
        structlog.configure(cache_logger_on_first_use=False)
        log = get_logger("tests")
        with secret_scope(["pa55word"]), LogContext(run_id="r-1"):
            log.info("connecting", dsn="postgres://u:pa55word@db")
        line = capsys.readouterr().out.strip().splitlines()[-1]
        payload = json.loads(line)
        assert payload["dsn"] == f"postgres://u:{REDACTED}@db"
        assert payload["run_id"] == "r-1"
        assert payload["service"] == "tiller-test"
        assert "pa55word" not in line
