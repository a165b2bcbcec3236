"""
Sharing profiles and their disclosure policies.

Each named profile maps to a fixed policy record that controls what leaves
the machine. The table below is the single source of truth consulted by the
rollup builder; every profile must have an entry.

Disclosure order (least to most):
    off < teamAnonymized < teamPseudonymous < soloFull < teamIdentified

soloFull always carries workspace and machine names. teamIdentified carries
them only when the shareWorkspaceMachineNames opt-in is set.
"""

import hashlib
import hmac
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from .errors import ValidationError


class SharingProfile(Enum):
    """Named privacy profiles."""
    OFF = "off"
    SOLO_FULL = "soloFull"
    TEAM_ANONYMIZED = "teamAnonymized"
    TEAM_PSEUDONYMOUS = "teamPseudonymous"
    TEAM_IDENTIFIED = "teamIdentified"


@dataclass(frozen=True)
class SharingPolicy:
    """Disclosure behavior for one profile."""
    include_user_id: bool
    hash_workspace_machine: bool
    include_names: bool
    allow_cloud_sync: bool = True
    names_need_opt_in: bool = False


_POLICY_TABLE: Dict[SharingProfile, SharingPolicy] = {
    SharingProfile.OFF: SharingPolicy(
        include_user_id=False,
        hash_workspace_machine=False,
        include_names=False,
        allow_cloud_sync=False,
    ),
    SharingProfile.SOLO_FULL: SharingPolicy(
        include_user_id=False,
        hash_workspace_machine=False,
        include_names=True,
    ),
    SharingProfile.TEAM_ANONYMIZED: SharingPolicy(
        include_user_id=False,
        hash_workspace_machine=True,
        include_names=False,
    ),
    SharingProfile.TEAM_PSEUDONYMOUS: SharingPolicy(
        include_user_id=True,
        hash_workspace_machine=True,
        include_names=False,
    ),
    SharingProfile.TEAM_IDENTIFIED: SharingPolicy(
        include_user_id=True,
        hash_workspace_machine=True,
        include_names=True,
        names_need_opt_in=True,
    ),
}

_DISCLOSURE_LEVELS: Dict[SharingProfile, int] = {
    SharingProfile.OFF: 0,
    SharingProfile.TEAM_ANONYMIZED: 1,
    SharingProfile.TEAM_PSEUDONYMOUS: 2,
    SharingProfile.SOLO_FULL: 3,
    SharingProfile.TEAM_IDENTIFIED: 4,
}

_missing = set(SharingProfile) - set(_POLICY_TABLE) | set(SharingProfile) - set(_DISCLOSURE_LEVELS)
if _missing:
    raise RuntimeError(f"Sharing profiles without a policy: {sorted(p.value for p in _missing)}")


def apply_policy(profile: SharingProfile) -> SharingPolicy:
    """Look up the disclosure policy for a profile."""
    return _POLICY_TABLE[profile]


def disclosure_level(profile: SharingProfile) -> int:
    return _DISCLOSURE_LEVELS[profile]


def names_shared(profile: SharingProfile, share_names: bool = False) -> bool:
    """Whether rows for this profile may carry workspace and machine names."""
    policy = apply_policy(profile)
    if not policy.include_names:
        return False
    return share_names or not policy.names_need_opt_in


def requires_consent(
    current: SharingProfile,
    new: SharingProfile,
    current_share_names: bool = False,
    new_share_names: bool = False,
) -> bool:
    """Whether a settings change needs an explicit consent timestamp.

    Consent is needed when the new profile is more disclosive, when the
    user id starts being shared, or when names start being shared.
    """
    if disclosure_level(new) > disclosure_level(current):
        return True
    if apply_policy(new).include_user_id and not apply_policy(current).include_user_id:
        return True
    return names_shared(new, new_share_names) and not names_shared(current, current_share_names)


def parse_profile(value: Optional[str]) -> SharingProfile:
    """Parse a profile name.

    Raises:
        ValidationError: If the value is not a known profile
    """
    try:
        return SharingProfile(value)
    except ValueError:
        valid = [p.value for p in SharingProfile]
        raise ValidationError(f"Sharing profile must be one of: {valid} (got {value!r})")


def _hmac_hex(key: str, message: str, hex_chars: int = 16) -> str:
    digest = hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()
    return digest[:hex_chars]


def _dataset_key(dataset_id: str) -> str:
    return (dataset_id or "").strip() or "default"


def hash_workspace_id(dataset_id: str, workspace_id: str) -> str:
    """Dataset-scoped keyed hash of a workspace id."""
    return _hmac_hex(_dataset_key(dataset_id), f"workspace:{workspace_id}")


def hash_machine_id(dataset_id: str, machine_id: str) -> str:
    """Dataset-scoped keyed hash of a machine id."""
    return _hmac_hex(_dataset_key(dataset_id), f"machine:{machine_id}")
