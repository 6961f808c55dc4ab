"""Event triggers for RunWarden.

Allows runbooks to be started by external events:
- Manual requests (CLI, API)
- Webhooks (HTTP POST signed with HMAC-SHA256)
- File changes in a watched directory
"""

from __future__ import annotations

import asyncio
import fnmatch
import hashlib
import hmac
import ipaddress
import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from runwarden.models import (
    FileWatchTrigger,
    Runbook,
    TriggerType,
    WebhookTrigger,
    utc_now,
)


@dataclass
class TriggerEvent:
    """An event that should start a runbook."""

    runbook_id: str
    trigger_type: TriggerType
    timestamp: datetime = field(default_factory=utc_now)
    payload: dict | None = None
    source: str | None = None  # IP, file path, user

    @property
    def trigger_info(self) -> str:
        """Human-readable description stored on the execution."""
        info = self.trigger_type.value
        if self.source:
            info += f" from {self.source}"
        if self.payload is not None:
            info += f": {json.dumps(self.payload, sort_keys=True, default=str)}"
        return info


@dataclass
class TriggerResult:
    """Outcome of firing a trigger."""

    success: bool
    message: str
    execution_id: str | None = None


OnTrigger = Callable[[TriggerEvent], Awaitable[TriggerResult]]


def validate_signature(secret: str, payload: bytes | str, signature: str | None) -> bool:
    """Check an HMAC-SHA256 webhook signature.

    The signature may be the bare hex digest or prefixed with ``sha256=``;
    hex digits are compared case-insensitively in constant time.

    Args:
        secret: Shared secret of the runbook's webhook trigger
        payload: Raw request body
        signature: Value of the signature header

    Returns:
        True if the signature matches
    """
    if not signature:
        return False

    if isinstance(payload, str):
        payload = payload.encode()

    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()

    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]

    return hmac.compare_digest(expected.encode(), provided.lower().encode("utf-8", "replace"))


def sign_payload(secret: str, payload: bytes | str) -> str:
    """Compute the ``sha256=`` signature of a payload."""
    if isinstance(payload, str):
        payload = payload.encode()
    return "sha256=" + hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


class WebhookValidator:
    """Validates incoming webhook requests."""

    def __init__(self):
        self._configs: dict[str, WebhookTrigger] = {}

    def validate(
        self,
        runbook_id: str,
        payload: bytes,
        signature: str | None,
        source_ip: str | None = None,
    ) -> tuple[bool, str]:
        """Validate a webhook request.

        Returns:
            Tuple of (is_valid, error_message)
        """
        config = self._configs.get(runbook_id)
        if config is None:
            return False, f"Runbook '{runbook_id}' is not webhook-triggered"

        if config.allowed_ip_range:
            if not source_ip or not ip_in_range(source_ip, config.allowed_ip_range):
                return False, f"Source IP {source_ip} not allowed"

        if not validate_signature(config.secret, payload, signature):
            return False, "Invalid signature"

        return True, ""

    def update_config(self, runbook_id: str, config: WebhookTrigger) -> None:
        self._configs[runbook_id] = config

    def remove_config(self, runbook_id: str) -> None:
        self._configs.pop(runbook_id, None)


def ip_in_range(ip: str, cidr: str) -> bool:
    """Check whether an IP address lies within a CIDR range."""
    try:
        return ipaddress.ip_address(ip) in ipaddress.ip_network(cidr, strict=False)
    except ValueError:
        logger.warning(f"Invalid IP '{ip}' or range '{cidr}'")
        return False


class FileWatchHandler(FileSystemEventHandler):
    """Handles file events for one watched directory."""

    def __init__(self, on_file_event: Callable[[str, Path], None]):
        """Initialize the file watch handler.

        Args:
            on_file_event: Called with (runbook_id, path) for each match
        """
        super().__init__()
        self._on_file_event = on_file_event
        self._watches: dict[str, FileWatchTrigger] = {}  # runbook_id -> trigger
        self._last_fired: dict[str, float] = {}  # runbook_id -> monotonic time

    def add(self, runbook_id: str, trigger: FileWatchTrigger) -> None:
        self._watches[runbook_id] = trigger

    def remove(self, runbook_id: str) -> None:
        self._watches.pop(runbook_id, None)
        self._last_fired.pop(runbook_id, None)

    @property
    def is_empty(self) -> bool:
        return not self._watches

    def on_created(self, event: FileSystemEvent) -> None:
        self._handle(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._handle(event)

    def _handle(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return

        file_path = Path(str(event.src_path))
        now = time.monotonic()

        for runbook_id, trigger in list(self._watches.items()):
            if not fnmatch.fnmatch(file_path.name, trigger.pattern):
                continue

            if trigger.debounce is not None:
                last = self._last_fired.get(runbook_id)
                if last is not None and now - last < trigger.debounce.total_seconds():
                    logger.debug(f"File trigger debounced: {file_path} -> runbook '{runbook_id}'")
                    continue

            self._last_fired[runbook_id] = now
            logger.info(f"File trigger: {file_path} -> runbook '{runbook_id}'")

            try:
                self._on_file_event(runbook_id, file_path)
            except Exception as e:
                logger.error(f"File trigger callback error: {e}")


class FileTriggerWatcher:
    """Watches directories for file-change triggers."""

    def __init__(self):
        self._observer = Observer()
        self._handlers: dict[tuple[str, bool], FileWatchHandler] = {}  # (path, recursive) -> handler
        self._running = False

    def add_watch(
        self,
        runbook_id: str,
        trigger: FileWatchTrigger,
        on_file_event: Callable[[str, Path], None],
    ) -> None:
        """Add a file watch for a runbook.

        Args:
            runbook_id: The runbook ID
            trigger: The runbook's file-watch trigger
            on_file_event: Callback when a matching file changes
        """
        path = Path(trigger.path).expanduser()
        path.mkdir(parents=True, exist_ok=True)

        key = (str(path), trigger.include_subdirectories)
        if key not in self._handlers:
            handler = FileWatchHandler(on_file_event)
            self._handlers[key] = handler
            self._observer.schedule(handler, str(path), recursive=trigger.include_subdirectories)

        self._handlers[key].add(runbook_id, trigger)
        logger.info(f"Added file watch: {path} ({trigger.pattern}) -> runbook '{runbook_id}'")

    def remove_watch(self, runbook_id: str) -> None:
        """Remove file watches for a runbook."""
        for handler in self._handlers.values():
            handler.remove(runbook_id)

    def start(self) -> None:
        """Start the file watcher."""
        if not self._running:
            self._observer.start()
            self._running = True
            logger.info("File trigger watcher started")

    def stop(self) -> None:
        """Stop the file watcher."""
        if self._running:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._running = False
            logger.info("File trigger watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running


class TriggerManager:
    """Manages manual, webhook and file triggers for runbooks.

    Every trigger ends up in the same `on_trigger` callback, which starts
    the execution.
    """

    def __init__(self, on_trigger: OnTrigger):
        """Initialize the trigger manager.

        Args:
            on_trigger: Coroutine called when a trigger fires
        """
        self._on_trigger = on_trigger
        self._triggers: dict[str, TriggerType] = {}
        self._webhook_validator = WebhookValidator()
        self._file_watcher = FileTriggerWatcher()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._running = False

    def register_runbook(self, runbook: Runbook) -> None:
        """Register a runbook's trigger. Replaces any previous registration."""
        self.unregister_runbook(runbook.id)

        trigger = runbook.trigger
        if trigger is None or not runbook.is_enabled:
            return

        if isinstance(trigger, WebhookTrigger):
            self._webhook_validator.update_config(runbook.id, trigger)
        elif isinstance(trigger, FileWatchTrigger):
            self._file_watcher.add_watch(runbook.id, trigger, self._handle_file_event)
        else:
            return

        self._triggers[runbook.id] = runbook.trigger_type

    def unregister_runbook(self, runbook_id: str) -> None:
        """Unregister a runbook's triggers."""
        self._triggers.pop(runbook_id, None)
        self._webhook_validator.remove_config(runbook_id)
        self._file_watcher.remove_watch(runbook_id)

    async def trigger_manual(self, runbook_id: str, source: str | None = None) -> TriggerResult:
        """Start a runbook on request."""
        event = TriggerEvent(runbook_id=runbook_id, trigger_type=TriggerType.MANUAL, source=source)
        return await self._fire(event)

    async def handle_webhook(
        self,
        runbook_id: str,
        body: bytes,
        signature: str | None,
        source_ip: str | None = None,
    ) -> TriggerResult:
        """Handle an incoming webhook.

        Args:
            runbook_id: The runbook ID
            body: Raw request body
            signature: Signature header value
            source_ip: Address of the caller

        Returns:
            TriggerResult; unsuccessful if validation fails
        """
        is_valid, error = self._webhook_validator.validate(runbook_id, body, signature, source_ip)
        if not is_valid:
            logger.warning(f"Webhook validation failed for '{runbook_id}': {error}")
            return TriggerResult(success=False, message=error)

        payload: dict | None
        try:
            decoded = json.loads(body) if body else None
            payload = decoded if isinstance(decoded, dict) else {"body": decoded}
        except (json.JSONDecodeError, UnicodeDecodeError):
            payload = {"body": body.decode(errors="replace")}

        event = TriggerEvent(
            runbook_id=runbook_id,
            trigger_type=TriggerType.WEBHOOK,
            payload=payload,
            source=source_ip,
        )
        return await self._fire(event)

    def _handle_file_event(self, runbook_id: str, file_path: Path) -> None:
        """Forward a file event from the watcher thread to the event loop."""
        if self._loop is None:
            logger.warning(f"File trigger for '{runbook_id}' ignored: trigger manager not running")
            return

        event = TriggerEvent(
            runbook_id=runbook_id,
            trigger_type=TriggerType.FILEWATCH,
            payload={"filename": file_path.name, "path": str(file_path)},
            source=str(file_path),
        )
        asyncio.run_coroutine_threadsafe(self._fire(event), self._loop)

    async def _fire(self, event: TriggerEvent) -> TriggerResult:
        try:
            result = await self._on_trigger(event)
        except Exception as e:
            logger.error(f"{event.trigger_type.value} trigger error for '{event.runbook_id}': {e}")
            return TriggerResult(success=False, message=str(e))

        if result.success:
            logger.info(f"{event.trigger_type.value} trigger fired for '{event.runbook_id}'")
        return result

    def start(self) -> None:
        """Start the file watcher."""
        self._loop = asyncio.get_running_loop()
        self._file_watcher.start()
        self._running = True

    def stop(self) -> None:
        """Stop all trigger watchers."""
        self._running = False
        self._file_watcher.stop()

    async def run(self) -> None:
        """Run until stop() is called."""
        self.start()
        try:
            while self._running:
                await asyncio.sleep(1)
        finally:
            self.stop()

    def get_registered_runbooks(self) -> dict[str, TriggerType]:
        """Runbooks with webhook or file triggers."""
        return dict(self._triggers)
