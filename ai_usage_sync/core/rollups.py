"""
Daily rollup computation.

Turns cached per-session usage into one aggregate row per
day x model x workspace x machine x user, with the sharing policy applied.
The full day's totals are recomputed on every call so that uploads can
replace remote rows instead of incrementing them.
"""

import math
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from ai_usage_sync.observability.logging import get_logger
from ai_usage_sync.storage.models import UsageAggregateRow

from .constants import MAX_DISPLAY_NAME_LENGTH, MAX_LOOKBACK_DAYS, MIN_LOOKBACK_DAYS
from .day_keys import day_key_from_timestamp, lookback_start, to_day_key
from .errors import ValidationError
from .identity import IdentityKey
from .sharing import SharingProfile, apply_policy, hash_machine_id, hash_workspace_id, names_shared

logger = get_logger(__name__)

UNKNOWN_WORKSPACE = "unknown"


@dataclass(frozen=True)
class ModelUsage:
    """Token usage of one model inside one session file."""
    input_tokens: int
    output_tokens: int
    interactions: int = 1


@dataclass(frozen=True)
class SessionFileData:
    """Cached statistics for one session file."""
    tokens: int
    interactions: int
    model_usage: Dict[str, ModelUsage]
    mtime: float


@dataclass
class RollupStats:
    """Counters describing one rollup computation."""
    files_considered: int = 0
    files_in_window: int = 0
    files_skipped: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    invalid_entries: int = 0
    unreadable_files: int = 0
    files_parsed: int = 0
    parse_failures: int = 0


@dataclass(frozen=True)
class RollupResult:
    """Rows for every complete day in the window.

    ``incomplete_days`` lists days with at least one session file whose
    statistics could not be read. Those days have no rows.
    """
    rows: List[UsageAggregateRow]
    stats: RollupStats = field(default_factory=RollupStats)
    incomplete_days: List[str] = field(default_factory=list)


CacheLookup = Callable[[str, float], Optional[Any]]
SessionParser = Callable[[str], Any]
StatFunction = Callable[[str], float]
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _non_negative_int(value: Any, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{label} is not a number")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"{label} is not finite")
    if value < 0:
        raise ValueError(f"{label} is negative")
    return int(value)


def coerce_session_data(payload: Any) -> SessionFileData:
    """Validate a cache payload.

    Accepts a SessionFileData or the camelCase mapping the session cache
    stores (``tokens``, ``interactions``, ``modelUsage``, ``mtime``).

    Raises:
        ValueError: If counts are negative or not numeric
    """
    if isinstance(payload, SessionFileData):
        raw_usage: Mapping[str, Any] = payload.model_usage
        tokens, interactions, mtime = payload.tokens, payload.interactions, payload.mtime
    elif isinstance(payload, Mapping):
        raw_usage = payload.get("modelUsage", payload.get("model_usage"))
        tokens = payload.get("tokens", 0)
        interactions = payload.get("interactions", 0)
        mtime = payload.get("mtime", 0)
        if not isinstance(raw_usage, Mapping):
            raise ValueError("modelUsage is not a mapping")
    else:
        raise ValueError(f"unexpected cache payload type {type(payload).__name__}")

    model_usage: Dict[str, ModelUsage] = {}
    for model, usage in raw_usage.items():
        if not isinstance(model, str) or not model.strip():
            raise ValueError("model name is empty")
        if isinstance(usage, ModelUsage):
            values = (usage.input_tokens, usage.output_tokens, usage.interactions)
        elif isinstance(usage, Mapping):
            values = (
                usage.get("inputTokens", usage.get("input_tokens", 0)),
                usage.get("outputTokens", usage.get("output_tokens", 0)),
                usage.get("interactions", 1),
            )
        else:
            raise ValueError(f"usage for model {model!r} is not a mapping")
        model_usage[model.strip()] = ModelUsage(
            input_tokens=_non_negative_int(values[0], "inputTokens"),
            output_tokens=_non_negative_int(values[1], "outputTokens"),
            interactions=_non_negative_int(values[2], "interactions"),
        )

    return SessionFileData(
        tokens=_non_negative_int(tokens, "tokens"),
        interactions=_non_negative_int(interactions, "interactions"),
        model_usage=model_usage,
        mtime=float(mtime) if isinstance(mtime, (int, float)) else 0.0,
    )


def extract_workspace_id(session_path: str) -> str:
    """Derive the workspace id from where the session file lives."""
    normalized = session_path.replace("\\", "/")
    parts = normalized.split("/")
    lowered = [part.lower() for part in parts]
    if "workspacestorage" in lowered:
        index = lowered.index("workspacestorage")
        if index + 1 < len(parts) and parts[index + 1]:
            return parts[index + 1]

    lowered_path = normalized.lower()
    if "/globalstorage/emptywindowchatsessions/" in lowered_path:
        return "emptyWindow"
    if "/globalstorage/github.copilot-chat/" in lowered_path:
        return "copilot-chat"
    if "/.copilot/session-state/" in lowered_path:
        return "copilot-cli"
    return UNKNOWN_WORKSPACE


def normalize_display_name(name: Optional[str]) -> Optional[str]:
    """Trim a display name and cap its length; blank names become None."""
    if not name or not isinstance(name, str):
        return None
    trimmed = name.strip()
    if not trimmed:
        return None
    return trimmed[:MAX_DISPLAY_NAME_LENGTH]


def _load_session_data(
    path: str,
    mtime: float,
    cache_lookup: CacheLookup,
    session_parser: Optional[SessionParser],
    stats: RollupStats,
) -> Optional[SessionFileData]:
    """Cached statistics for a file, falling back to parsing it.

    Returns None when neither the cache nor the parser produced valid data.
    """
    payload = cache_lookup(path, mtime)
    if payload is None:
        stats.cache_misses += 1
    else:
        try:
            data = coerce_session_data(payload)
        except ValueError as exc:
            stats.invalid_entries += 1
            logger.warning("Invalid cache entry: %s", exc)
        else:
            stats.cache_hits += 1
            return data

    if session_parser is None:
        return None
    try:
        data = coerce_session_data(session_parser(path))
    except (OSError, ValueError) as exc:
        stats.parse_failures += 1
        logger.warning("Could not parse session file (%s)", type(exc).__name__)
        return None
    stats.files_parsed += 1
    return data


def _validate_lookback(lookback_days: int) -> None:
    if isinstance(lookback_days, bool) or not isinstance(lookback_days, int):
        raise ValidationError(f"lookback_days must be an integer (got {lookback_days!r})")
    if not MIN_LOOKBACK_DAYS <= lookback_days <= MAX_LOOKBACK_DAYS:
        raise ValidationError(
            f"lookback_days must be between {MIN_LOOKBACK_DAYS} and {MAX_LOOKBACK_DAYS} (got {lookback_days})"
        )


def compute_daily_rollups(
    session_file_paths: Iterable[str],
    sharing_profile: SharingProfile,
    lookback_days: int,
    cache_lookup: CacheLookup,
    *,
    dataset_id: str,
    machine_id: str,
    identity: Optional[IdentityKey] = None,
    clock: Clock = utc_now,
    stat: StatFunction = os.path.getmtime,
    workspace_names: Optional[Mapping[str, str]] = None,
    machine_name: Optional[str] = None,
    consent_at: Optional[str] = None,
    share_names: bool = False,
    session_parser: Optional[SessionParser] = None,
) -> RollupResult:
    """Aggregate cached session statistics into daily rows.

    Args:
        session_file_paths: Session files to consider
        sharing_profile: Profile whose policy shapes the emitted rows
        lookback_days: Size of the window ending today (UTC), 1-365
        cache_lookup: Returns cached data for ``(path, mtime)``, or None on miss
        dataset_id: Dataset the rows belong to
        machine_id: Raw machine id of this host
        identity: User dimension resolved for this cycle, if any
        clock: Source of "now"
        stat: Returns a file's modification time in seconds
        workspace_names: Raw workspace id to display name
        machine_name: Display name of this machine
        consent_at: ISO timestamp of the user's consent to share names
        share_names: The workspace and machine names opt-in
        session_parser: Reads a session file directly when the cache misses

    Returns:
        RollupResult with rows sorted by (partition_key, row_key). Days with a
        session file that could not be read are listed in incomplete_days
        and have no rows.

    Raises:
        ValidationError: If lookback_days is out of range
    """
    _validate_lookback(lookback_days)

    now = clock()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    window_start = lookback_start(now, lookback_days).timestamp()
    window_end = now.timestamp()

    stats = RollupStats()
    totals: Dict[Tuple[str, str, str], List[int]] = {}
    incomplete_days = set()

    for path in session_file_paths:
        stats.files_considered += 1
        try:
            mtime = stat(path)
        except OSError as exc:
            stats.unreadable_files += 1
            logger.warning("Skipping session file: stat failed (%s)", type(exc).__name__)
            continue

        if mtime < window_start or mtime > window_end:
            stats.files_skipped += 1
            continue
        stats.files_in_window += 1

        day = day_key_from_timestamp(mtime)
        data = _load_session_data(path, mtime, cache_lookup, session_parser, stats)
        if data is None:
            incomplete_days.add(day)
            continue
        workspace_id = extract_workspace_id(path)
        for model, usage in data.model_usage.items():
            key = (day, model, workspace_id)
            bucket = totals.setdefault(key, [0, 0, 0])
            bucket[0] += usage.input_tokens
            bucket[1] += usage.output_tokens
            bucket[2] += usage.interactions

    policy = apply_policy(sharing_profile)
    user_id = identity.user_id if identity is not None and policy.include_user_id else None
    user_key_type = identity.key_type.value if user_id is not None else None
    names_allowed = names_shared(sharing_profile, share_names) and consent_at is not None
    updated_at = now.astimezone(timezone.utc).isoformat()

    if policy.hash_workspace_machine:
        emitted_machine_id = hash_machine_id(dataset_id, machine_id)
    else:
        emitted_machine_id = machine_id
    emitted_machine_name = normalize_display_name(machine_name) if names_allowed else None

    rows = []
    for (day, model, workspace_id), (input_tokens, output_tokens, interactions) in totals.items():
        if day in incomplete_days:
            continue
        if policy.hash_workspace_machine:
            emitted_workspace_id = hash_workspace_id(dataset_id, workspace_id)
        else:
            emitted_workspace_id = workspace_id
        workspace_name = None
        if names_allowed and workspace_names:
            workspace_name = normalize_display_name(workspace_names.get(workspace_id))

        rows.append(UsageAggregateRow.create(
            dataset_id=dataset_id,
            day=day,
            model=model,
            workspace_id=emitted_workspace_id,
            machine_id=emitted_machine_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            interactions=interactions,
            workspace_name=workspace_name,
            machine_name=emitted_machine_name,
            user_id=user_id,
            user_key_type=user_key_type,
            consent_at=consent_at if user_id is not None else None,
            updated_at=updated_at,
        ))

    rows.sort(key=lambda row: (row.partition_key, row.row_key))
    logger.info(
        "Computed %d rollup rows for %s (%d files in window, %d cache hits, %d misses)",
        len(rows), to_day_key(now), stats.files_in_window, stats.cache_hits, stats.cache_misses,
    )
    if incomplete_days:
        logger.warning("Withholding %d incomplete days: %s", len(incomplete_days), sorted(incomplete_days))
    return RollupResult(rows=rows, stats=stats, incomplete_days=sorted(incomplete_days))
