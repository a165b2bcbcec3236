"""
Unit tests for daily rollup computation.

Tests windowing, summation, policy application and cache payload validation.
"""

import pytest

from ai_usage_sync.core.errors import ValidationError
from ai_usage_sync.core.identity import IdentityKey, IdentityMode
from ai_usage_sync.core.rollups import (
    ModelUsage,
    SessionFileData,
    coerce_session_data,
    compute_daily_rollups,
    extract_workspace_id,
    normalize_display_name,
)
from ai_usage_sync.core.sharing import SharingProfile, hash_machine_id, hash_workspace_id

from conftest import fixed_clock, lookup_from, session_entry, stat_from, timestamp_on


def rollup(entries, profile=SharingProfile.TEAM_ANONYMIZED, **kwargs):
    options = {
        "dataset_id": "team-alpha",
        "machine_id": "machine-1",
        "clock": fixed_clock,
        "stat": stat_from(entries),
    }
    options.update(kwargs)
    return compute_daily_rollups(list(entries), profile, 7, lookup_from(entries), **options)


class TestAggregation:
    """Test summation into daily rows."""

    def test_three_sessions_sum_into_one_row(self, session_files):
        """Three sessions on one day for one model produce one summed row."""
        result = rollup(session_files)

        assert len(result.rows) == 1
        row = result.rows[0]
        assert row.day == "2026-01-16"
        assert row.model == "gpt-4o"
        assert row.input_tokens == 310
        assert row.output_tokens == 130
        assert row.interactions == 3

    def test_files_outside_window_skipped(self, session_files):
        result = rollup(session_files)

        assert result.stats.files_considered == 4
        assert result.stats.files_in_window == 3
        assert result.stats.files_skipped == 1
        assert result.stats.cache_hits == 3

    def test_future_mtime_skipped(self):
        entries = {"/tmp/workspaceStorage/ws/a.json": session_entry(timestamp_on("2026-01-17"), {"gpt-4o": (1, 1)})}
        result = rollup(entries)
        assert result.rows == []
        assert result.stats.files_skipped == 1

    def test_separate_rows_per_day_and_model(self):
        base = "/home/dev/workspaceStorage/ws-1"
        entries = {
            f"{base}/a.json": session_entry(timestamp_on("2026-01-15"), {"gpt-4o": (10, 1)}),
            f"{base}/b.json": session_entry(timestamp_on("2026-01-16"), {"gpt-4o": (20, 2), "claude-sonnet": (5, 5)}),
        }
        result = rollup(entries)

        keys = sorted((row.day, row.model) for row in result.rows)
        assert keys == [("2026-01-15", "gpt-4o"), ("2026-01-16", "claude-sonnet"), ("2026-01-16", "gpt-4o")]

    def test_rows_sorted_by_keys(self, session_files):
        base = "/home/dev/workspaceStorage/ws-2"
        session_files[f"{base}/x.json"] = session_entry(timestamp_on("2026-01-14"), {"gpt-4o": (1, 1)})
        result = rollup(session_files)
        keys = [(row.partition_key, row.row_key) for row in result.rows]
        assert keys == sorted(keys)

    def test_cache_miss_withholds_day(self, session_files):
        """A day with a missing cache entry emits no rows instead of a partial total."""
        path = next(iter(session_files))
        entries = dict(session_files)
        entries["/home/dev/workspaceStorage/ws-9/x.json"] = session_entry(timestamp_on("2026-01-15"), {"gpt-4o": (7, 7)})
        lookup = lookup_from({k: v for k, v in entries.items() if k != path})
        result = compute_daily_rollups(
            list(entries), SharingProfile.TEAM_ANONYMIZED, 7, lookup,
            dataset_id="team-alpha", machine_id="machine-1", clock=fixed_clock, stat=stat_from(entries),
        )
        assert result.stats.cache_misses == 1
        assert result.incomplete_days == ["2026-01-16"]
        assert [row.day for row in result.rows] == ["2026-01-15"]

    def test_cache_miss_falls_back_to_parser(self, session_files):
        path = next(iter(session_files))
        lookup = lookup_from({k: v for k, v in session_files.items() if k != path})
        parsed = []

        def parse(session_path):
            parsed.append(session_path)
            return session_files[session_path]

        result = compute_daily_rollups(
            list(session_files), SharingProfile.TEAM_ANONYMIZED, 7, lookup,
            dataset_id="team-alpha", machine_id="machine-1", clock=fixed_clock,
            stat=stat_from(session_files), session_parser=parse,
        )
        assert parsed == [path]
        assert result.stats.files_parsed == 1
        assert result.incomplete_days == []
        assert result.rows[0].input_tokens == 310

    def test_parser_failure_withholds_day(self, session_files):
        path = next(iter(session_files))
        lookup = lookup_from({k: v for k, v in session_files.items() if k != path})

        def parse(session_path):
            raise OSError("gone")

        result = compute_daily_rollups(
            list(session_files), SharingProfile.TEAM_ANONYMIZED, 7, lookup,
            dataset_id="team-alpha", machine_id="machine-1", clock=fixed_clock,
            stat=stat_from(session_files), session_parser=parse,
        )
        assert result.stats.parse_failures == 1
        assert result.rows == []
        assert result.incomplete_days == ["2026-01-16"]

    def test_invalid_entry_withholds_day(self, session_files):
        path = next(iter(session_files))
        session_files[path] = dict(session_files[path], modelUsage={"gpt-4o": {"inputTokens": -5, "outputTokens": 1}})
        result = rollup(session_files)
        assert result.stats.invalid_entries == 1
        assert result.rows == []
        assert result.incomplete_days == ["2026-01-16"]

    def test_unreadable_file_skipped(self, session_files):
        def stat(path):
            raise PermissionError(path)

        result = rollup(session_files, stat=stat)
        assert result.rows == []
        assert result.stats.unreadable_files == 4

    def test_recomputation_is_stable(self, session_files):
        """Computing twice from the same state yields identical rows."""
        assert rollup(session_files).rows == rollup(session_files).rows

    def test_lookback_out_of_range(self, session_files):
        with pytest.raises(ValidationError, match="lookback_days"):
            compute_daily_rollups(
                list(session_files), SharingProfile.TEAM_ANONYMIZED, 0, lookup_from(session_files),
                dataset_id="team-alpha", machine_id="machine-1", clock=fixed_clock,
            )


class TestPolicyApplication:
    """Test the sharing policy shaping emitted rows."""

    def test_team_anonymized_hashes_and_drops_user(self, session_files):
        identity = IdentityKey(user_id="dev-01", key_type=IdentityMode.TEAM_ALIAS)
        result = rollup(session_files, identity=identity)

        row = result.rows[0]
        assert row.user_id is None
        assert "userId" not in row.to_entity()
        assert row.workspace_id != "ws-123"
        assert row.machine_id != "machine-1"
        assert row.workspace_id == hash_workspace_id("team-alpha", "ws-123")
        assert row.machine_id == hash_machine_id("team-alpha", "machine-1")
        assert row.schema_version == 1

    def test_pseudonymous_includes_user(self, session_files):
        identity = IdentityKey(user_id="abcdef0123456789", key_type=IdentityMode.PSEUDONYMOUS)
        result = rollup(session_files, profile=SharingProfile.TEAM_PSEUDONYMOUS, identity=identity)

        row = result.rows[0]
        assert row.user_id == "abcdef0123456789"
        assert row.user_key_type == "pseudonymous"
        assert row.schema_version == 2
        assert row.workspace_name is None

    def test_identified_with_consent_includes_names(self, session_files):
        identity = IdentityKey(user_id="dev-01", key_type=IdentityMode.TEAM_ALIAS)
        result = rollup(
            session_files,
            profile=SharingProfile.TEAM_IDENTIFIED,
            identity=identity,
            workspace_names={"ws-123": "  frontend  "},
            machine_name="build-box",
            consent_at="2026-01-10T09:00:00+00:00",
            share_names=True,
        )

        row = result.rows[0]
        assert row.workspace_name == "frontend"
        assert row.machine_name == "build-box"
        assert row.schema_version == 3
        assert row.share_with_team is True
        assert row.consent_at == "2026-01-10T09:00:00+00:00"

    def test_names_require_consent(self, session_files):
        result = rollup(
            session_files,
            profile=SharingProfile.TEAM_IDENTIFIED,
            workspace_names={"ws-123": "frontend"},
            machine_name="build-box",
            share_names=True,
        )
        assert result.rows[0].workspace_name is None
        assert result.rows[0].machine_name is None

    def test_names_require_opt_in_for_team_identified(self, session_files):
        result = rollup(
            session_files,
            profile=SharingProfile.TEAM_IDENTIFIED,
            workspace_names={"ws-123": "frontend"},
            machine_name="build-box",
            consent_at="2026-01-10T09:00:00+00:00",
        )
        assert result.rows[0].workspace_name is None
        assert result.rows[0].machine_name is None

    def test_solo_full_shares_names_without_opt_in(self, session_files):
        result = rollup(
            session_files,
            profile=SharingProfile.SOLO_FULL,
            workspace_names={"ws-123": "frontend"},
            consent_at="2026-01-10T09:00:00+00:00",
        )
        assert result.rows[0].workspace_name == "frontend"

    def test_solo_full_keeps_raw_ids(self, session_files):
        result = rollup(session_files, profile=SharingProfile.SOLO_FULL)
        assert result.rows[0].workspace_id == "ws-123"
        assert result.rows[0].machine_id == "machine-1"


class TestCachePayload:
    """Test cache payload coercion."""

    def test_camel_case_mapping(self):
        data = coerce_session_data({
            "tokens": 15,
            "interactions": 2,
            "modelUsage": {"gpt-4o": {"inputTokens": 10, "outputTokens": 5, "interactions": 2}},
            "mtime": 1000,
        })
        assert data.model_usage["gpt-4o"] == ModelUsage(10, 5, 2)

    def test_dataclass_passthrough(self):
        payload = SessionFileData(tokens=3, interactions=1, model_usage={"m": ModelUsage(1, 2)}, mtime=0.0)
        assert coerce_session_data(payload).model_usage["m"].interactions == 1

    def test_non_numeric_rejected(self):
        with pytest.raises(ValueError):
            coerce_session_data({"modelUsage": {"gpt-4o": {"inputTokens": "ten", "outputTokens": 1}}})

    def test_missing_model_usage_rejected(self):
        with pytest.raises(ValueError):
            coerce_session_data({"tokens": 5})


class TestWorkspaceExtraction:
    """Test deriving workspace ids from session paths."""

    def test_workspace_storage(self):
        path = "/home/dev/.config/Code/User/workspaceStorage/abc123/chatSessions/s.json"
        assert extract_workspace_id(path) == "abc123"

    def test_windows_path(self):
        path = "C:\\Users\\dev\\AppData\\Roaming\\Code\\User\\workspaceStorage\\win42\\chatSessions\\s.json"
        assert extract_workspace_id(path) == "win42"

    def test_empty_window(self):
        path = "/home/dev/.config/Code/User/globalStorage/emptyWindowChatSessions/s.json"
        assert extract_workspace_id(path) == "emptyWindow"

    def test_copilot_cli(self):
        assert extract_workspace_id("/home/dev/.copilot/session-state/s.jsonl") == "copilot-cli"

    def test_unknown(self):
        assert extract_workspace_id("/tmp/s.json") == "unknown"

    def test_display_name_normalized(self):
        assert normalize_display_name("  ") is None
        assert len(normalize_display_name("x" * 100)) == 64
