"""
User identity resolution.

Derives the user dimension (if any) attached to uploaded rows under the
configured identity mode. Aliases are validated against a PII-avoidance
policy and are never rewritten.
"""

import base64
import binascii
import hashlib
import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import AliasValidationError, ValidationError


class IdentityMode(Enum):
    """How the user dimension is derived."""
    NONE = "none"
    PSEUDONYMOUS = "pseudonymous"
    TEAM_ALIAS = "teamAlias"
    ENTRA_OBJECT_ID = "entraObjectId"


@dataclass(frozen=True)
class IdentityKey:
    """Final form of the user dimension."""
    user_id: str
    key_type: IdentityMode


@dataclass(frozen=True)
class IdentityContext:
    """Stable inputs for identity derivation."""
    dataset_id: str
    tenant_id: Optional[str] = None
    object_id: Optional[str] = None
    alias: Optional[str] = None
    entra_object_id: Optional[str] = None


@dataclass(frozen=True)
class JwtClaims:
    tenant_id: Optional[str] = None
    object_id: Optional[str] = None


MAX_ALIAS_LENGTH = 32
PSEUDONYMOUS_KEY_LENGTH = 16

_ALIAS_CHARSET = re.compile(r"^[a-z0-9-]+$")
_GUID = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")

# Common given and family names; an alias segment matching one of these is
# treated as a real name.
COMMON_PERSONAL_NAMES = frozenset({
    "john", "jane", "doe", "smith", "james", "mary", "robert", "patricia",
    "michael", "jennifer", "william", "linda", "david", "elizabeth", "richard",
    "barbara", "joseph", "susan", "thomas", "jessica", "charles", "sarah",
    "christopher", "karen", "daniel", "lisa", "matthew", "nancy", "anthony",
    "betty", "mark", "sandra", "paul", "ashley", "steven", "emily", "andrew",
    "donna", "kevin", "michelle", "brian", "carol", "george", "amanda",
    "edward", "melissa", "peter", "anna", "maria", "alex", "chris", "sam",
    "johnson", "williams", "brown", "jones", "garcia", "miller", "davis",
    "rodriguez", "martinez", "hernandez", "lopez", "gonzalez", "wilson",
    "anderson", "taylor", "moore", "jackson", "martin", "lee", "thompson",
    "white", "harris", "clark", "lewis", "walker", "hall", "young", "king",
    "wright", "scott", "green", "baker", "adams", "nelson", "hill", "campbell",
    "mitchell", "roberts", "carter", "phillips", "evans", "turner", "torres",
    "parker", "collins", "edwards", "stewart", "morris", "murphy", "cook",
    "rogers", "morgan", "cooper", "peterson", "reed", "bailey", "bell",
    "kelly", "howard", "ward", "cox", "richardson", "wood", "watson", "brooks",
    "bennett", "gray", "wang", "li", "zhang", "liu", "chen", "yang",
    "huang", "zhao", "wu", "zhou", "kim", "park", "nguyen", "muller",
    "schmidt", "schneider", "fischer", "weber", "meyer", "wagner", "becker",
})


def validate_alias(value: Optional[str]) -> str:
    """Validate a team alias against the PII-avoidance policy.

    Args:
        value: User-supplied alias

    Returns:
        The alias, unchanged

    Raises:
        AliasValidationError: Naming the first violated rule
    """
    alias = value or ""
    if not alias.strip():
        raise AliasValidationError("required", 'Team alias is required. Use a non-identifying handle like "team-frontend".')
    if len(alias) > MAX_ALIAS_LENGTH:
        raise AliasValidationError(
            "too_long",
            f"Team alias is too long (maximum {MAX_ALIAS_LENGTH} characters).",
        )
    if "@" in alias:
        raise AliasValidationError(
            "email_marker",
            "Team alias contains email marker '@'. Do not use email addresses.",
        )
    if any(ch.isspace() for ch in alias):
        raise AliasValidationError(
            "whitespace",
            "Team alias contains whitespace (looks like a display name). Use dashes instead.",
        )
    if not _ALIAS_CHARSET.match(alias):
        raise AliasValidationError(
            "charset",
            "Team alias may only use lowercase letters, numbers, and dashes.",
        )
    for segment in alias.split("-"):
        if segment in COMMON_PERSONAL_NAMES:
            raise AliasValidationError(
                "personal_name",
                f'Team alias "{alias}" looks like a personal name. Use a handle like "qa-lead".',
            )
    return alias


def derive_pseudonymous_key(tenant_id: str, object_id: str, dataset_id: str) -> str:
    """Stable, dataset-scoped user key.

    Changing the dataset id is the only supported rotation.
    """
    material = f"tenant:{tenant_id}|object:{object_id}|dataset:{dataset_id}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:PSEUDONYMOUS_KEY_LENGTH]


def parse_jwt_claims(access_token: Optional[str]) -> JwtClaims:
    """Read tenant and object id claims from an access token payload.

    The signature is not verified; the claims only feed a local hash.
    """
    parts = (access_token or "").strip().split(".")
    if len(parts) < 2:
        return JwtClaims()
    payload = parts[1]
    padded = payload + "=" * (-len(payload) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError):
        return JwtClaims()
    if not isinstance(claims, dict):
        return JwtClaims()
    tenant_id = claims.get("tid") if isinstance(claims.get("tid"), str) else None
    object_id = claims.get("oid") if isinstance(claims.get("oid"), str) else None
    return JwtClaims(tenant_id=tenant_id, object_id=object_id)


def resolve_identity(mode: IdentityMode, context: IdentityContext) -> Optional[IdentityKey]:
    """Derive the user identifier for the configured mode.

    Returns:
        IdentityKey, or None when the mode emits no user dimension or the
        pseudonymous inputs are unavailable

    Raises:
        AliasValidationError: For an invalid team alias
        ValidationError: For a malformed Entra object id
    """
    if mode is IdentityMode.NONE:
        return None

    if mode is IdentityMode.PSEUDONYMOUS:
        if not context.tenant_id or not context.object_id:
            return None
        return IdentityKey(
            user_id=derive_pseudonymous_key(context.tenant_id, context.object_id, context.dataset_id),
            key_type=IdentityMode.PSEUDONYMOUS,
        )

    if mode is IdentityMode.TEAM_ALIAS:
        return IdentityKey(user_id=validate_alias(context.alias), key_type=IdentityMode.TEAM_ALIAS)

    if mode is IdentityMode.ENTRA_OBJECT_ID:
        object_id = context.entra_object_id or ""
        if not _GUID.match(object_id):
            raise ValidationError("Entra object id must be a GUID (xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx).")
        return IdentityKey(user_id=object_id, key_type=IdentityMode.ENTRA_OBJECT_ID)

    raise ValueError(f"Unhandled identity mode: {mode}")
