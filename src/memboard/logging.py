"""JSONL event log for memory system observability."""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


@dataclass
class LogEntry:
    """A single log entry."""

    timestamp: str
    event: str
    conversation_id: str | None = None
    agent_id: str | None = None
    status: str | None = None
    duration_ms: float | None = None
    messages_processed: int | None = None
    chunks_created: int | None = None
    tokens_used: int | None = None
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict, excluding None values."""
        data = asdict(self)
        return {k: v for k, v in data.items() if v is not None and v != {} and v != []}


class JSONLLogger:
    """Logger that writes structured events in JSONL format."""

    def __init__(
        self,
        log_dir: str | Path | None = None,
        filename: str = "logs.jsonl",
        max_size_mb: float = 10.0,
    ) -> None:
        if log_dir is None:
            log_dir = Path.home() / ".memboard" / "logs"
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.filename = filename
        self.max_size_bytes = int(max_size_mb * 1024 * 1024)

    @property
    def log_path(self) -> Path:
        """Current log file path."""
        return self.log_dir / self.filename

    def _rotate_if_needed(self) -> None:
        """Rotate log file if it exceeds max size."""
        if not self.log_path.exists():
            return

        if self.log_path.stat().st_size >= self.max_size_bytes:
            timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
            rotated_name = f"{self.log_path.stem}_{timestamp}.jsonl"
            self.log_path.rename(self.log_dir / rotated_name)

    def _write(self, entry: LogEntry) -> None:
        """Write a log entry to the file."""
        self._rotate_if_needed()

        with open(self.log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry.to_dict(), default=str) + "\n")

    def log(
        self,
        event: str,
        *,
        conversation_id: str | None = None,
        agent_id: str | None = None,
        status: str | None = None,
        duration_ms: float | None = None,
        messages_processed: int | None = None,
        chunks_created: int | None = None,
        tokens_used: int | None = None,
        error: str | None = None,
        **extra: Any,
    ) -> None:
        """Log an event."""
        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            event=event,
            conversation_id=conversation_id,
            agent_id=agent_id,
            status=status,
            duration_ms=duration_ms,
            messages_processed=messages_processed,
            chunks_created=chunks_created,
            tokens_used=tokens_used,
            error=error,
            extra=extra if extra else {},
        )
        self._write(entry)

    def log_cycle_start(
        self, conversation_id: str, *, agent_id: str | None = None, full: bool = False
    ) -> None:
        """Log the start of a summarization cycle."""
        self.log("cycle_start", conversation_id=conversation_id, agent_id=agent_id, full=full)

    def log_cycle_result(
        self,
        conversation_id: str,
        status: str,
        *,
        agent_id: str | None = None,
        duration_ms: float | None = None,
        messages_processed: int | None = None,
        chunks_created: int | None = None,
        error: str | None = None,
        archived_summary_id: str | None = None,
    ) -> None:
        """Log how a summarization cycle ended."""
        if status == "completed":
            event = "cycle_complete"
        elif status in ("failed", "conflict"):
            event = "cycle_failed"
        else:
            event = "cycle_skipped"

        extra: dict[str, Any] = {}
        if archived_summary_id:
            extra["archived_summary_id"] = archived_summary_id

        self.log(
            event,
            conversation_id=conversation_id,
            agent_id=agent_id,
            status=status,
            duration_ms=duration_ms,
            messages_processed=messages_processed,
            chunks_created=chunks_created,
            error=error,
            **extra,
        )

    def log_dispatch(
        self, conversation_id: str, *, agent_id: str | None = None, full: bool = False, reason: str
    ) -> None:
        """Log a queued summarization request."""
        self.log(
            "dispatch",
            conversation_id=conversation_id,
            agent_id=agent_id,
            full=full,
            reason=reason,
        )

    def log_tool_result(
        self,
        tool_name: str,
        success: bool,
        *,
        conversation_id: str | None = None,
        duration_ms: float | None = None,
        error: str | None = None,
    ) -> None:
        """Log a memory tool call made by an agent."""
        self.log(
            "tool_result",
            conversation_id=conversation_id,
            duration_ms=duration_ms,
            error=error if not success else None,
            success=success,
            tool_name=tool_name,
        )

    def log_cleanup(self, deleted: int, *, duration_ms: float | None = None) -> None:
        """Log an expired-chunk sweep."""
        self.log("cleanup", duration_ms=duration_ms, deleted=deleted)

    def log_context_assembled(
        self,
        conversation_id: str,
        tokens_used: int,
        *,
        agent_id: str | None = None,
        tiers: list[str] | None = None,
        minimal: bool = False,
    ) -> None:
        """Log a context assembly for the request path."""
        self.log(
            "context_assembled",
            conversation_id=conversation_id,
            agent_id=agent_id,
            tokens_used=tokens_used,
            tiers=tiers or [],
            minimal=minimal,
        )


# Global logger instance
_logger: JSONLLogger | None = None


def get_logger() -> JSONLLogger:
    """Get the global logger instance."""
    global _logger
    if _logger is None:
        _logger = JSONLLogger()
    return _logger


def configure_logger(log_dir: str | Path | None = None, max_size_mb: float = 10.0) -> JSONLLogger:
    """Configure and return the global logger."""
    global _logger
    _logger = JSONLLogger(log_dir=log_dir, max_size_mb=max_size_mb)
    return _logger
