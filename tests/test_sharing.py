"""
Unit tests for sharing profiles and policies.
"""

import pytest

from ai_usage_sync.core.errors import ValidationError
from ai_usage_sync.core.sharing import (
    SharingProfile,
    apply_policy,
    disclosure_level,
    hash_machine_id,
    hash_workspace_id,
    names_shared,
    parse_profile,
    requires_consent,
)


class TestPolicyTable:
    """Test the profile to policy mapping."""

    def test_every_profile_has_policy(self):
        """Every profile resolves to a policy."""
        for profile in SharingProfile:
            assert apply_policy(profile) is not None

    def test_off_disables_cloud_sync(self):
        policy = apply_policy(SharingProfile.OFF)
        assert policy.allow_cloud_sync is False

    def test_team_anonymized(self):
        """Anonymized sharing hashes ids and drops users and names."""
        policy = apply_policy(SharingProfile.TEAM_ANONYMIZED)
        assert policy.include_user_id is False
        assert policy.hash_workspace_machine is True
        assert policy.include_names is False

    def test_team_pseudonymous(self):
        policy = apply_policy(SharingProfile.TEAM_PSEUDONYMOUS)
        assert policy.include_user_id is True
        assert policy.hash_workspace_machine is True
        assert policy.include_names is False

    def test_team_identified(self):
        policy = apply_policy(SharingProfile.TEAM_IDENTIFIED)
        assert policy.include_user_id is True
        assert policy.include_names is True

    def test_solo_full_keeps_raw_ids(self):
        policy = apply_policy(SharingProfile.SOLO_FULL)
        assert policy.hash_workspace_machine is False
        assert policy.include_user_id is False
        assert policy.include_names is True


class TestConsent:
    """Test disclosure ordering and consent requirements."""

    def test_disclosure_order(self):
        ordered = [
            SharingProfile.OFF,
            SharingProfile.TEAM_ANONYMIZED,
            SharingProfile.TEAM_PSEUDONYMOUS,
            SharingProfile.SOLO_FULL,
            SharingProfile.TEAM_IDENTIFIED,
        ]
        levels = [disclosure_level(profile) for profile in ordered]
        assert levels == sorted(levels)
        assert len(set(levels)) == len(levels)

    def test_upgrade_requires_consent(self):
        assert requires_consent(SharingProfile.OFF, SharingProfile.TEAM_ANONYMIZED)
        assert requires_consent(SharingProfile.TEAM_ANONYMIZED, SharingProfile.TEAM_IDENTIFIED)

    def test_downgrade_does_not_require_consent(self):
        assert not requires_consent(SharingProfile.TEAM_IDENTIFIED, SharingProfile.TEAM_ANONYMIZED)
        assert not requires_consent(SharingProfile.SOLO_FULL, SharingProfile.OFF)

    def test_same_profile_does_not_require_consent(self):
        assert not requires_consent(SharingProfile.TEAM_PSEUDONYMOUS, SharingProfile.TEAM_PSEUDONYMOUS)

    def test_solo_full_ranks_below_team_identified(self):
        assert disclosure_level(SharingProfile.SOLO_FULL) < disclosure_level(SharingProfile.TEAM_IDENTIFIED)
        assert requires_consent(SharingProfile.SOLO_FULL, SharingProfile.TEAM_IDENTIFIED)
        assert not requires_consent(SharingProfile.TEAM_IDENTIFIED, SharingProfile.SOLO_FULL)

    def test_starting_to_share_user_id_requires_consent(self):
        """soloFull -> teamPseudonymous is a lower level but adds the user id."""
        assert disclosure_level(SharingProfile.TEAM_PSEUDONYMOUS) < disclosure_level(SharingProfile.SOLO_FULL)
        assert requires_consent(SharingProfile.SOLO_FULL, SharingProfile.TEAM_PSEUDONYMOUS)

    def test_enabling_names_requires_consent(self):
        assert requires_consent(
            SharingProfile.TEAM_IDENTIFIED, SharingProfile.TEAM_IDENTIFIED,
            current_share_names=False, new_share_names=True,
        )
        assert not requires_consent(
            SharingProfile.TEAM_IDENTIFIED, SharingProfile.TEAM_IDENTIFIED,
            current_share_names=True, new_share_names=False,
        )

    def test_names_opt_in_ignored_where_names_are_never_shared(self):
        assert not requires_consent(
            SharingProfile.TEAM_PSEUDONYMOUS, SharingProfile.TEAM_PSEUDONYMOUS,
            current_share_names=False, new_share_names=True,
        )


class TestNamesShared:
    """Test when workspace and machine names may leave the machine."""

    def test_solo_full_always_shares_names(self):
        assert names_shared(SharingProfile.SOLO_FULL)

    def test_team_identified_needs_opt_in(self):
        assert not names_shared(SharingProfile.TEAM_IDENTIFIED)
        assert names_shared(SharingProfile.TEAM_IDENTIFIED, share_names=True)

    def test_other_profiles_never_share_names(self):
        for profile in (SharingProfile.OFF, SharingProfile.TEAM_ANONYMIZED, SharingProfile.TEAM_PSEUDONYMOUS):
            assert not names_shared(profile, share_names=True)


class TestParsing:
    """Test profile name parsing."""

    def test_parse_known_profile(self):
        assert parse_profile("teamAnonymized") is SharingProfile.TEAM_ANONYMIZED

    def test_parse_unknown_profile(self):
        with pytest.raises(ValidationError, match="Sharing profile must be one of"):
            parse_profile("everyone")


class TestHashing:
    """Test dataset-scoped workspace and machine hashing."""

    def test_hash_is_stable(self):
        assert hash_workspace_id("team", "ws-1") == hash_workspace_id("team", "ws-1")

    def test_hash_differs_by_dataset(self):
        assert hash_workspace_id("team", "ws-1") != hash_workspace_id("other", "ws-1")

    def test_hash_never_equals_raw_value(self):
        assert hash_machine_id("team", "machine-1") != "machine-1"
        assert len(hash_machine_id("team", "machine-1")) == 16

    def test_workspace_and_machine_hashes_are_separated(self):
        """The same raw value hashes differently as workspace and machine."""
        assert hash_workspace_id("team", "x") != hash_machine_id("team", "x")
