"""Tests for webhook, file and manual triggers."""

import json
from datetime import timedelta
from pathlib import Path

import pytest
from conftest import make_step, wait_until
from watchdog.events import DirCreatedEvent, FileCreatedEvent, FileModifiedEvent

from runwarden.core.triggers import (
    FileWatchHandler,
    TriggerEvent,
    TriggerManager,
    TriggerResult,
    WebhookValidator,
    ip_in_range,
    sign_payload,
    validate_signature,
)
from runwarden.models import (
    FileWatchTrigger,
    Runbook,
    ScheduleTrigger,
    TriggerType,
    WebhookTrigger,
)

SECRET = "s3cret"


def webhook_runbook(runbook_id="hook", allowed_ip_range=None, is_enabled=True) -> Runbook:
    return Runbook(
        id=runbook_id,
        name="Webhook runbook",
        steps=[make_step("a")],
        trigger=WebhookTrigger(secret=SECRET, allowed_ip_range=allowed_ip_range),
        is_enabled=is_enabled,
    )


class Recorder:
    """on_trigger callback that records events."""

    def __init__(self):
        self.events: list[TriggerEvent] = []

    async def __call__(self, event: TriggerEvent) -> TriggerResult:
        self.events.append(event)
        return TriggerResult(success=True, message="started", execution_id=f"exec-{len(self.events)}")


class TestSignatures:
    """Tests for HMAC webhook signatures."""

    def test_valid_signature(self):
        body = b'{"event": "deploy"}'
        assert validate_signature(SECRET, body, sign_payload(SECRET, body))

    def test_bare_hex_and_uppercase(self):
        body = b"payload"
        digest = sign_payload(SECRET, body)[len("sha256="):]
        assert validate_signature(SECRET, body, digest)
        assert validate_signature(SECRET, body, "SHA256=" + digest.upper())

    def test_wrong_secret(self):
        body = b"payload"
        assert not validate_signature(SECRET, body, sign_payload("other", body))

    def test_tampered_body(self):
        assert not validate_signature(SECRET, b"payload2", sign_payload(SECRET, b"payload"))

    def test_missing_signature(self):
        assert not validate_signature(SECRET, b"payload", None)
        assert not validate_signature(SECRET, b"payload", "")

    def test_string_payload(self):
        assert validate_signature(SECRET, "text", sign_payload(SECRET, b"text"))

    def test_non_ascii_signature(self):
        assert not validate_signature(SECRET, b"{}", "sha256=\xe9\xe9")
        assert not validate_signature(SECRET, b"{}", "☃")


class TestIpRange:
    """Tests for CIDR checks."""

    def test_inside_and_outside(self):
        assert ip_in_range("10.1.2.3", "10.0.0.0/8")
        assert not ip_in_range("192.168.1.1", "10.0.0.0/8")

    def test_single_host(self):
        assert ip_in_range("127.0.0.1", "127.0.0.1/32")

    def test_ipv6(self):
        assert ip_in_range("::1", "::1/128")

    def test_invalid_input(self):
        assert not ip_in_range("not-an-ip", "10.0.0.0/8")
        assert not ip_in_range("10.0.0.1", "garbage")


class TestWebhookValidator:
    """Tests for webhook request validation."""

    def test_unknown_runbook(self):
        validator = WebhookValidator()
        ok, error = validator.validate("x", b"", "sig")
        assert not ok
        assert error == "Runbook 'x' is not webhook-triggered"

    def test_ip_rejected_before_signature(self):
        validator = WebhookValidator()
        validator.update_config("hook", WebhookTrigger(secret=SECRET, allowed_ip_range="10.0.0.0/8"))

        ok, error = validator.validate("hook", b"x", sign_payload(SECRET, b"x"), "192.168.0.5")
        assert not ok
        assert error == "Source IP 192.168.0.5 not allowed"

        ok, error = validator.validate("hook", b"x", sign_payload(SECRET, b"x"), None)
        assert not ok

    def test_invalid_signature(self):
        validator = WebhookValidator()
        validator.update_config("hook", WebhookTrigger(secret=SECRET))
        assert validator.validate("hook", b"x", "sha256=00") == (False, "Invalid signature")

    def test_valid(self):
        validator = WebhookValidator()
        validator.update_config("hook", WebhookTrigger(secret=SECRET, allowed_ip_range="10.0.0.0/8"))
        assert validator.validate("hook", b"x", sign_payload(SECRET, b"x"), "10.0.0.9") == (True, "")

    def test_remove_config(self):
        validator = WebhookValidator()
        validator.update_config("hook", WebhookTrigger(secret=SECRET))
        validator.remove_config("hook")
        ok, _ = validator.validate("hook", b"x", sign_payload(SECRET, b"x"))
        assert not ok


class TestFileWatchHandler:
    """Tests for matching and debouncing file events."""

    def test_pattern_match(self):
        fired = []
        handler = FileWatchHandler(lambda runbook_id, path: fired.append((runbook_id, path.name)))
        handler.add("csv", FileWatchTrigger(path="/tmp/in", pattern="*.csv"))
        handler.add("all", FileWatchTrigger(path="/tmp/in"))

        handler.on_created(FileCreatedEvent("/tmp/in/data.csv"))
        handler.on_modified(FileModifiedEvent("/tmp/in/notes.txt"))

        assert fired == [("csv", "data.csv"), ("all", "data.csv"), ("all", "notes.txt")]

    def test_directories_ignored(self):
        fired = []
        handler = FileWatchHandler(lambda runbook_id, path: fired.append(runbook_id))
        handler.add("all", FileWatchTrigger(path="/tmp/in"))

        handler.on_created(DirCreatedEvent("/tmp/in/sub"))

        assert fired == []

    def test_debounce(self):
        fired = []
        handler = FileWatchHandler(lambda runbook_id, path: fired.append(path.name))
        handler.add("rb", FileWatchTrigger(path="/tmp/in", debounce=timedelta(minutes=5)))

        handler.on_created(FileCreatedEvent("/tmp/in/a.txt"))
        handler.on_modified(FileModifiedEvent("/tmp/in/a.txt"))
        handler.on_created(FileCreatedEvent("/tmp/in/b.txt"))

        assert fired == ["a.txt"]

    def test_callback_errors_contained(self):
        def boom(runbook_id, path):
            raise RuntimeError("boom")

        handler = FileWatchHandler(boom)
        handler.add("rb", FileWatchTrigger(path="/tmp/in"))
        handler.on_created(FileCreatedEvent("/tmp/in/a.txt"))

    def test_remove(self):
        handler = FileWatchHandler(lambda runbook_id, path: None)
        handler.add("rb", FileWatchTrigger(path="/tmp/in"))
        assert not handler.is_empty
        handler.remove("rb")
        assert handler.is_empty


class TestTriggerEvent:
    """Tests for trigger descriptions."""

    def test_trigger_info(self):
        event = TriggerEvent(
            runbook_id="rb",
            trigger_type=TriggerType.WEBHOOK,
            payload={"b": 1, "a": 2},
            source="10.0.0.1",
        )
        assert event.trigger_info == 'webhook from 10.0.0.1: {"a": 2, "b": 1}'

    def test_manual_info(self):
        assert TriggerEvent(runbook_id="rb", trigger_type=TriggerType.MANUAL).trigger_info == "manual"


class TestTriggerManager:
    """Tests for the trigger manager."""

    def test_registration(self, tmp_path):
        manager = TriggerManager(on_trigger=Recorder())
        manager.register_runbook(webhook_runbook())
        manager.register_runbook(
            Runbook(
                id="files",
                name="Files",
                steps=[make_step("a")],
                trigger=FileWatchTrigger(path=str(tmp_path / "watched")),
            )
        )
        manager.register_runbook(
            Runbook(id="cron", name="Cron", steps=[make_step("a")], trigger=ScheduleTrigger(cron_expression="* * * * *"))
        )
        manager.register_runbook(webhook_runbook("off", is_enabled=False))

        assert manager.get_registered_runbooks() == {
            "hook": TriggerType.WEBHOOK,
            "files": TriggerType.FILEWATCH,
        }
        assert (tmp_path / "watched").is_dir()

        manager.unregister_runbook("hook")
        assert "hook" not in manager.get_registered_runbooks()

    @pytest.mark.asyncio
    async def test_manual(self):
        recorder = Recorder()
        manager = TriggerManager(on_trigger=recorder)

        result = await manager.trigger_manual("rb", source="cli")

        assert result.success
        assert result.execution_id == "exec-1"
        [event] = recorder.events
        assert event.trigger_type == TriggerType.MANUAL
        assert event.source == "cli"

    @pytest.mark.asyncio
    async def test_webhook_json_payload(self):
        recorder = Recorder()
        manager = TriggerManager(on_trigger=recorder)
        manager.register_runbook(webhook_runbook())
        body = json.dumps({"ref": "main"}).encode()

        result = await manager.handle_webhook("hook", body, sign_payload(SECRET, body), "10.0.0.1")

        assert result.success
        [event] = recorder.events
        assert event.trigger_type == TriggerType.WEBHOOK
        assert event.payload == {"ref": "main"}
        assert event.source == "10.0.0.1"

    @pytest.mark.asyncio
    async def test_webhook_non_json_payload(self):
        recorder = Recorder()
        manager = TriggerManager(on_trigger=recorder)
        manager.register_runbook(webhook_runbook())

        await manager.handle_webhook("hook", b"plain text", sign_payload(SECRET, b"plain text"))
        await manager.handle_webhook("hook", b"[1, 2]", sign_payload(SECRET, b"[1, 2]"))

        assert [e.payload for e in recorder.events] == [{"body": "plain text"}, {"body": [1, 2]}]

    @pytest.mark.asyncio
    async def test_webhook_bad_signature(self):
        recorder = Recorder()
        manager = TriggerManager(on_trigger=recorder)
        manager.register_runbook(webhook_runbook())

        result = await manager.handle_webhook("hook", b"{}", "sha256=bad")

        assert not result.success
        assert result.message == "Invalid signature"
        assert recorder.events == []

    @pytest.mark.asyncio
    async def test_callback_error(self):
        async def failing(event):
            raise RuntimeError("executor down")

        manager = TriggerManager(on_trigger=failing)
        result = await manager.trigger_manual("rb")

        assert not result.success
        assert result.message == "executor down"

    @pytest.mark.asyncio
    async def test_file_trigger_end_to_end(self, tmp_path: Path):
        """A file written to a watched directory fires the runbook."""
        recorder = Recorder()
        manager = TriggerManager(on_trigger=recorder)
        watched = tmp_path / "inbox"
        manager.register_runbook(
            Runbook(
                id="files",
                name="Files",
                steps=[make_step("a")],
                trigger=FileWatchTrigger(path=str(watched), pattern="*.csv", debounce=timedelta(seconds=30)),
            )
        )

        manager.start()
        try:
            (watched / "ignored.txt").write_text("x")
            (watched / "data.csv").write_text("a,b\n")
            await wait_until(lambda: len(recorder.events) >= 1, timeout=5.0)
        finally:
            manager.stop()

        [event] = recorder.events
        assert event.trigger_type == TriggerType.FILEWATCH
        assert event.payload["filename"] == "data.csv"
