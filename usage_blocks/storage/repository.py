"""
Usage event sources.

Reads usage logs from disk and turns each record into a UsageEvent with
its cost already resolved. Failures are reported per file or per line so
callers can skip them and carry on.
"""

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from .models import EventSource, UsageEvent
from usage_blocks.core.pricing import PRICING_TABLE, CostMode, PricingTable, resolve_event_cost
from usage_blocks.core.token_counter import TokenCounts

logger = logging.getLogger(__name__)

USAGE_FILE_GLOB = "**/*.jsonl"
PART_FILE_GLOB = "storage/part/**/*.json"

SYNTHETIC_MODEL = "<synthetic>"
USAGE_LIMIT_MESSAGE = "usage limit reached"
_RESET_TIME_PATTERN = re.compile(r"\|(\d+)")


class SourceReadFailure(Exception):
    """Raised when a usage file cannot be stat'd or read."""
    def __init__(self, path: Path, cause: Exception):
        super().__init__(f"Could not read {path}: {cause}")
        self.path = path
        self.cause = cause


class ParseFailure(ValueError):
    """Raised when a line cannot be turned into a UsageEvent."""


def _parse_timestamp(value: Any) -> datetime:
    if not isinstance(value, str) or not value:
        raise ParseFailure("missing timestamp")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise ParseFailure(f"invalid timestamp {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _token_count(usage: Dict[str, Any], key: str, required: bool = False) -> int:
    value = usage.get(key)
    if value is None:
        if required:
            raise ParseFailure(f"missing usage.{key}")
        return 0
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ParseFailure(f"usage.{key} must be a non-negative integer")
    return value


def _recorded_cost(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _usage_limit_reset_time(data: Dict[str, Any], message: Dict[str, Any]) -> Optional[datetime]:
    """Extract the reset time from a "usage limit reached|<epoch>" API error."""
    if data.get("isApiErrorMessage") is not True:
        return None
    content = message.get("content")
    if not isinstance(content, list):
        return None
    for item in content:
        text = item.get("text") if isinstance(item, dict) else None
        if not isinstance(text, str) or USAGE_LIMIT_MESSAGE not in text.lower():
            continue
        match = _RESET_TIME_PATTERN.search(text)
        if match and int(match.group(1)) > 0:
            try:
                return datetime.fromtimestamp(int(match.group(1)), tz=timezone.utc)
            except (OverflowError, ValueError, OSError):
                logger.debug("Ignoring out-of-range reset time %s", match.group(1))
    return None


class UsageFileRepository:
    """Primary event source backed by JSONL usage logs.

    Each non-empty line is one JSON record. Lines that do not describe a
    model response with usage data are rejected with ParseFailure.
    """

    def __init__(
        self,
        paths: Sequence[Path],
        cost_mode: CostMode = CostMode.AUTO,
        pricing: PricingTable = PRICING_TABLE,
    ):
        """Initialize the repository.

        Args:
            paths: Directories searched recursively for ``*.jsonl`` files
            cost_mode: How event costs are resolved
            pricing: Pricing table for calculated costs
        """
        self.paths = [Path(p) for p in paths]
        self.cost_mode = cost_mode
        self.pricing = pricing

    def list_files(self) -> List[Path]:
        """List usage files under all configured directories, sorted by path."""
        files = set()
        for base in self.paths:
            if base.is_dir():
                files.update(base.glob(USAGE_FILE_GLOB))
        return sorted(files)

    def stat_mtime(self, path: Path) -> float:
        """Return the file's modification time.

        Raises:
            SourceReadFailure: If the file cannot be stat'd
        """
        try:
            return path.stat().st_mtime
        except OSError as e:
            raise SourceReadFailure(path, e) from e

    def read_file(self, path: Path) -> bytes:
        """Return the raw file content.

        Raises:
            SourceReadFailure: If the file cannot be read
        """
        try:
            return path.read_bytes()
        except OSError as e:
            raise SourceReadFailure(path, e) from e

    def parse_line(self, line: Union[bytes, str]) -> UsageEvent:
        """Parse one JSONL record into a UsageEvent.

        Raises:
            ParseFailure: If the line is not a usable usage record
        """
        try:
            data = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ParseFailure(f"invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ParseFailure("record is not an object")
        message = data.get("message")
        if not isinstance(message, dict):
            raise ParseFailure("missing message")
        usage = message.get("usage")
        if not isinstance(usage, dict):
            raise ParseFailure("missing message.usage")

        model = message.get("model")
        if not isinstance(model, str) or not model or model == SYNTHETIC_MODEL:
            raise ParseFailure(f"unusable model {model!r}")

        timestamp = _parse_timestamp(data.get("timestamp"))
        tokens = TokenCounts(
            input_tokens=_token_count(usage, "input_tokens", required=True),
            output_tokens=_token_count(usage, "output_tokens", required=True),
            cache_creation_tokens=_token_count(usage, "cache_creation_input_tokens"),
            cache_read_tokens=_token_count(usage, "cache_read_input_tokens"),
        )

        message_id = message.get("id")
        request_id = data.get("requestId")
        identity = f"{message_id}:{request_id}" if message_id and request_id else None

        version = data.get("version")
        return UsageEvent(
            source=EventSource.PRIMARY,
            timestamp=timestamp,
            model=model,
            input_tokens=tokens.input_tokens,
            output_tokens=tokens.output_tokens,
            cache_creation_tokens=tokens.cache_creation_tokens,
            cache_read_tokens=tokens.cache_read_tokens,
            cost_usd=resolve_event_cost(
                self.cost_mode, _recorded_cost(data.get("costUSD")), tokens, model, self.pricing
            ),
            identity=identity,
            version=version if isinstance(version, str) else None,
            usage_limit_reset_time=_usage_limit_reset_time(data, message),
        )

    def parse_content(self, content: bytes, path: Optional[Path] = None) -> List[UsageEvent]:
        """Parse every line of a file, skipping lines that fail to parse."""
        events = []
        for line in content.splitlines():
            if not line.strip():
                continue
            try:
                events.append(self.parse_line(line))
            except ParseFailure as e:
                logger.debug("Skipping line in %s: %s", path, e)
        return events


class SecondaryUsageSource:
    """Secondary event source backed by per-step JSON part files.

    Only ``step-finish`` parts carry token data. Costs follow the same cost
    mode as the primary source; a zero recorded cost counts as missing.
    """

    def __init__(
        self,
        directories: Sequence[Path],
        cost_mode: CostMode = CostMode.AUTO,
        pricing: PricingTable = PRICING_TABLE,
    ):
        self.directories = [Path(d) for d in directories]
        self.cost_mode = cost_mode
        self.pricing = pricing

    def load_events(self) -> List[UsageEvent]:
        """Load all step-finish events; unreadable or malformed parts are skipped."""
        events = []
        for directory in self.directories:
            for path in sorted(directory.glob(PART_FILE_GLOB)):
                try:
                    data = json.loads(path.read_bytes())
                except (OSError, ValueError) as e:
                    logger.debug("Skipping part file %s: %s", path, e)
                    continue
                try:
                    event = self.parse_part(data)
                except ParseFailure as e:
                    logger.debug("Skipping part file %s: %s", path, e)
                    continue
                if event is not None:
                    events.append(event)
        return events

    def parse_part(self, data: Any) -> Optional[UsageEvent]:
        """Turn one part record into a UsageEvent, or None for non-usage parts.

        Raises:
            ParseFailure: If a step-finish part is malformed
        """
        if not isinstance(data, dict) or data.get("type") != "step-finish":
            return None
        tokens_data = data.get("tokens")
        if not isinstance(tokens_data, dict):
            return None

        model = data.get("modelID")
        if not isinstance(model, str) or not model:
            raise ParseFailure("missing modelID")

        time_data = data.get("time") or {}
        created = time_data.get("created") if isinstance(time_data, dict) else None
        if isinstance(created, bool) or not isinstance(created, (int, float)):
            raise ParseFailure("missing time.created")
        try:
            timestamp = datetime.fromtimestamp(created / 1000, tz=timezone.utc)
        except (OverflowError, ValueError, OSError) as e:
            raise ParseFailure(f"invalid time.created {created!r}") from e

        cache = tokens_data.get("cache") if isinstance(tokens_data.get("cache"), dict) else {}
        tokens = TokenCounts(
            input_tokens=_token_count(tokens_data, "input"),
            output_tokens=_token_count(tokens_data, "output"),
            cache_creation_tokens=_token_count(cache, "write"),
            cache_read_tokens=_token_count(cache, "read"),
        )

        # A zero cost means "not computed" in these files
        recorded = _recorded_cost(data.get("cost")) or None
        cost = resolve_event_cost(self.cost_mode, recorded, tokens, model, self.pricing)

        return UsageEvent(
            source=EventSource.SECONDARY,
            timestamp=timestamp,
            model=model,
            input_tokens=tokens.input_tokens,
            output_tokens=tokens.output_tokens,
            cache_creation_tokens=tokens.cache_creation_tokens,
            cache_read_tokens=tokens.cache_read_tokens,
            cost_usd=cost,
            identity=(
                f"secondary-{timestamp.isoformat()}-{model}"
                f"-{tokens.input_tokens}-{tokens.output_tokens}"
            ),
        )
