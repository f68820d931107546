"""Memory system configuration loader.

Loads configuration from ~/.memboard/config.json and validates the
values the summarizer, dispatcher and context assembler depend on.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".memboard" / "config.json"
DEFAULT_COMPLETION_MARKERS = [
    r"\b(done|completed|finished|resolved)\b",
    r"\b(thanks|thank you)\b[.!]*\s*$",
]


@dataclass
class MemoryConfig:
    """Configuration for the tiered memory system.

    Attributes:
        db_path: SQLite database file.
        log_dir: Directory for the JSONL event log.
        default_update_frequency: Turns between summarization cycles.
        context_token_budget: Token budget of an assembled context.
        max_summary_tokens: Ceiling for the rolling board summary.
        max_batch_turns: Most turns folded by one incremental cycle.
        archive_every_n_cycles: Incremental cycles between archived summaries.
        chunk_max_tokens: Token ceiling of one working memory chunk.
        full_chunk_max_tokens: Token ceiling of one section in a full
            resummarization.
        topic_shift_threshold: Cosine distance between neighbouring turns
            that starts a new chunk.
        completion_markers: Regexes that close a chunk after a matching turn.
        chunk_ttl_days: Lifetime of working memory chunks.
        similarity_floor: Minimum similarity for recall results.
        lock_timeout_seconds: Age after which a summarization lease is stale.
        retry_delays: Seconds to wait between external-call retries.
        context_history_size: Recent turns considered by the assembler.
        agent_history_sizes: Per-agent overrides of context_history_size.
        fallback_history_multiplier: History multiplier when no working memory exists.
        cleanup_interval: Seconds between expired-chunk sweeps.
        worker_concurrency: Cycles the worker runs in parallel.
        llm_model: Groq model used for summarization.
        llm_temperature: Sampling temperature for summarization.
        embedding_model: sentence-transformers model name.
        embedding_dimension: Dimension of every stored embedding.
    """

    db_path: Path | None = None
    log_dir: Path | None = None
    default_update_frequency: int = 5
    context_token_budget: int = 4000
    max_summary_tokens: int = 500
    max_batch_turns: int = 100
    archive_every_n_cycles: int = 3
    chunk_max_tokens: int = 256
    full_chunk_max_tokens: int = 2000
    topic_shift_threshold: float = 0.65
    completion_markers: list[str] = field(
        default_factory=lambda: list(DEFAULT_COMPLETION_MARKERS)
    )
    chunk_ttl_days: float = 7
    similarity_floor: float = 0.7
    lock_timeout_seconds: float = 120
    retry_delays: list[float] = field(default_factory=lambda: [1.0, 5.0, 15.0])
    context_history_size: int = 20
    agent_history_sizes: dict[str, int] = field(default_factory=dict)
    fallback_history_multiplier: int = 2
    cleanup_interval: float = 3600
    worker_concurrency: int = 4
    llm_model: str = "llama-3.3-70b-versatile"
    llm_temperature: float = 0.3
    embedding_model: str = "all-MiniLM-L6-v2"
    embedding_dimension: int = 384

    def __post_init__(self) -> None:
        """Validate config and set defaults."""
        if self.db_path is None:
            self.db_path = Path.home() / ".memboard" / "memory.db"
        if self.log_dir is None:
            self.log_dir = Path.home() / ".memboard" / "logs"

        for name in (
            "default_update_frequency",
            "context_token_budget",
            "max_summary_tokens",
            "max_batch_turns",
            "archive_every_n_cycles",
            "chunk_max_tokens",
            "full_chunk_max_tokens",
            "worker_concurrency",
            "embedding_dimension",
            "fallback_history_multiplier",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")

        if self.context_history_size < 0:
            raise ValueError("context_history_size must not be negative")
        if not 0.0 <= self.similarity_floor <= 1.0:
            raise ValueError("similarity_floor must be between 0 and 1")
        if not 0.0 <= self.topic_shift_threshold <= 2.0:
            raise ValueError("topic_shift_threshold must be between 0 and 2")
        if self.chunk_ttl_days <= 0:
            raise ValueError("chunk_ttl_days must be positive")
        if self.lock_timeout_seconds <= 0:
            raise ValueError("lock_timeout_seconds must be positive")
        if self.cleanup_interval <= 0:
            raise ValueError("cleanup_interval must be positive")
        if any(delay < 0 for delay in self.retry_delays):
            raise ValueError("retry_delays must not be negative")
        for agent_id, size in self.agent_history_sizes.items():
            if size < 0:
                raise ValueError(f"History size for agent '{agent_id}' must not be negative")

    def history_size_for(self, agent_id: str) -> int:
        """Recent-turn window for an agent.

        Args:
            agent_id: The agent identifier.

        Returns:
            The agent's override, or context_history_size.
        """
        return self.agent_history_sizes.get(agent_id, self.context_history_size)


def load_config(config_path: Path | None = None) -> MemoryConfig:
    """Load MemoryConfig from a JSON file.

    The config file should have this structure:
    ```json
    {
      "memory": {
        "db_path": "~/.memboard/memory.db",
        "default_update_frequency": 5,
        "context_token_budget": 4000,
        "agent_history_sizes": {"support-bot": 30}
      }
    }
    ```

    The path defaults to $MEMBOARD_CONFIG, then DEFAULT_CONFIG_PATH.
    $MEMBOARD_DB_PATH overrides db_path.

    Args:
        config_path: Path to config file.

    Returns:
        MemoryConfig instance with loaded values.
    """
    path = config_path
    if path is None:
        env_path = os.environ.get("MEMBOARD_CONFIG")
        path = Path(env_path).expanduser() if env_path else DEFAULT_CONFIG_PATH

    data: dict[str, Any] = {}
    if not path.exists():
        logger.debug("No config file at %s, using defaults", path)
    else:
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning("Invalid JSON in %s: %s. Using defaults.", path, e)
        except OSError as e:
            logger.warning("Cannot read %s: %s. Using defaults.", path, e)

    config = _parse_config(data if isinstance(data, dict) else {})

    db_override = os.environ.get("MEMBOARD_DB_PATH")
    if db_override:
        config.db_path = Path(db_override).expanduser()
    return config


def _parse_config(data: dict[str, Any]) -> MemoryConfig:
    """Parse config dictionary into MemoryConfig.

    Values that fail validation are dropped one by one so a single bad
    entry does not discard the rest of the file.

    Args:
        data: Parsed JSON data.

    Returns:
        MemoryConfig instance.
    """
    memory_data = data.get("memory", {})
    if not isinstance(memory_data, dict):
        logger.warning("'memory' section must be an object. Using defaults.")
        return MemoryConfig()

    known = {f.name for f in fields(MemoryConfig)}
    values: dict[str, Any] = {}
    for key, value in memory_data.items():
        if key not in known:
            logger.warning("Unknown memory config key '%s', ignoring", key)
            continue
        if key in ("db_path", "log_dir"):
            if not isinstance(value, str):
                logger.warning("Config key '%s' must be a path string, ignoring", key)
                continue
            value = Path(value).expanduser()
        values[key] = value

    for key in list(values):
        try:
            MemoryConfig(**{key: values[key]})
        except (TypeError, ValueError) as e:
            logger.warning("Invalid value for '%s': %s. Using default.", key, e)
            del values[key]

    try:
        return MemoryConfig(**values)
    except (TypeError, ValueError) as e:
        logger.warning("Invalid memory config: %s. Using defaults.", e)
        return MemoryConfig()
