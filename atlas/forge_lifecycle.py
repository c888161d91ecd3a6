"""
ATLAS Lifecycle Guard

Deterministic forge state machine. Decides whether a requested transition is
legal and computes the resulting field values. It performs NO I/O: callers
persist the returned ForgeUpdate (conditionally on the state it was evaluated
against) and then emit the audit record.

States:
    CREATED → CAPTURED → NORMALIZED → SEEDED → PARAMETRIZED → VALIDATED → CERTIFIED

Rules:
- Forward by exactly one step; no skipping, no lateral or backward moves
- CERTIFIED is terminal and immutable
- SEEDED mints a seed hash unless one already exists
- CERTIFIED mints the digital twin id and the certification timestamp

The seed hash and the twin id suffix are random opaque identifiers. They are
NOT digests of any content and must not be used for integrity checks.
"""

import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any

from .models import (
    Forge,
    ForgeState,
    ForgeUpdate,
    FORGE_STATES,
    Permission,
    ReasonCode,
    Role,
    TransitionResult,
    utcnow,
)
from .rbac import (
    RoleLike,
    can_rollback as _policy_can_rollback,
    can_transition_to_state,
    has_permission,
    required_transition_permission,
)

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
CAPTURE_TARGET = 72  # accepted images required for a full capture set
SEED_HASH_PREFIX = "sha256:"
SEED_HASH_HEX_LENGTH = 64
DIGITAL_TWIN_PREFIX = "DTW"
DEFAULT_INTERNAL_ID = "000"
TWIN_SUFFIX_LENGTH = 4
VERIFICATION_CODE_LENGTH = 12
_BASE36_UPPER = string.digits + string.ascii_uppercase

# Audit action emitted by callers after a persisted transition
FORGE_STATE_CHANGED = "FORGE_STATE_CHANGED"


# -----------------------------------------------------------------------------
# State Ordering
# -----------------------------------------------------------------------------
def state_index(state: ForgeState) -> int:
    return FORGE_STATES.index(state)


def next_state(current: ForgeState) -> ForgeState:
    """Successor of `current`, or `current` itself when terminal."""
    index = state_index(current)
    if index + 1 < len(FORGE_STATES):
        return FORGE_STATES[index + 1]
    return current


def is_terminal(state: ForgeState) -> bool:
    return state == FORGE_STATES[-1]


# -----------------------------------------------------------------------------
# Token Generators
# -----------------------------------------------------------------------------
def generate_seed_hash() -> str:
    """`sha256:` followed by 64 random hex characters."""
    return SEED_HASH_PREFIX + secrets.token_hex(SEED_HASH_HEX_LENGTH // 2)


def _random_base36(length: int) -> str:
    return "".join(secrets.choice(_BASE36_UPPER) for _ in range(length))


def generate_digital_twin_id(model_internal_id: Optional[str], now: datetime) -> str:
    """
    Mint a digital twin id.

    Args:
        model_internal_id: The model's internal code; `000` when missing or empty
        now: Certification time, supplies the year

    Returns:
        DTW-<year>-<internal id>-<4 random base36 uppercase chars>
    """
    suffix = _random_base36(TWIN_SUFFIX_LENGTH)
    internal_id = model_internal_id or DEFAULT_INTERNAL_ID
    return f"{DIGITAL_TWIN_PREFIX}-{now.year}-{internal_id}-{suffix}"


def generate_certificate_hash() -> str:
    """Same shape as the seed hash; random, not a digest."""
    return SEED_HASH_PREFIX + secrets.token_hex(SEED_HASH_HEX_LENGTH // 2)


def generate_verification_code() -> str:
    """12 random base36 uppercase chars, printed on the certificate."""
    return _random_base36(VERIFICATION_CODE_LENGTH)


# -----------------------------------------------------------------------------
# Transition Guard
# -----------------------------------------------------------------------------
def attempt_transition(
    current: Forge,
    target: ForgeState,
    actor_role: RoleLike,
    model_internal_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """
    Evaluate a transition of `current` into `target`.

    Checks, in order:
    1. FORBIDDEN: role lacks forges:transition (certification:execute when
       the target is CERTIFIED)
    2. IMMUTABLE: the forge is already CERTIFIED
    3. INVALID_TRANSITION: target is not exactly one step ahead

    Args:
        current: The forge as last read from storage
        target: Requested state
        actor_role: Role of the caller (unknown roles are denied)
        model_internal_id: Model code used when minting the twin id
        now: Transition time, defaults to the current UTC time

    Returns:
        TransitionResult carrying the ForgeUpdate on success, or the
        reason code on failure. Never raises for these outcomes.
    """
    source = current.state
    required = required_transition_permission(target)
    if not has_permission(actor_role, required):
        role_name = actor_role.value if isinstance(actor_role, Role) else str(actor_role)
        return TransitionResult.fail(
            source, target, ReasonCode.FORBIDDEN,
            f"Role '{role_name}' lacks '{required.value}' required for {target.value}",
        )

    if is_terminal(source):
        return TransitionResult.fail(
            source, target, ReasonCode.IMMUTABLE,
            "Certified forges cannot be modified",
        )

    if state_index(target) != state_index(source) + 1:
        return TransitionResult.fail(
            source, target, ReasonCode.INVALID_TRANSITION,
            f"Invalid state transition: {source.value} -> {target.value}. "
            f"Next allowed state: {next_state(source).value}",
        )

    timestamp = now or utcnow()
    seed_hash = None
    digital_twin_id = None
    certified_at = None

    if target == ForgeState.SEEDED and not current.seed_hash:
        seed_hash = generate_seed_hash()

    if target == ForgeState.CERTIFIED:
        digital_twin_id = generate_digital_twin_id(model_internal_id, timestamp)
        certified_at = timestamp

    update = ForgeUpdate(
        state=target,
        updated_at=timestamp,
        seed_hash=seed_hash,
        digital_twin_id=digital_twin_id,
        certified_at=certified_at,
    )
    return TransitionResult.ok(source, target, update)


def apply_update(forge: Forge, update: ForgeUpdate) -> Forge:
    """Fold a ForgeUpdate into an in-memory forge (used by callers and tests)."""
    forge.state = update.state
    forge.updated_at = update.updated_at
    if update.seed_hash is not None:
        forge.seed_hash = update.seed_hash
    if update.digital_twin_id is not None:
        forge.digital_twin_id = update.digital_twin_id
    if update.certified_at is not None:
        forge.certified_at = update.certified_at
    return forge


def can_rollback(role: RoleLike, current_state: ForgeState) -> bool:
    """Rollback permission only; no rollback target logic exists."""
    return _policy_can_rollback(role, current_state)


def update_capture_progress(current: int, delta: int) -> int:
    """
    Apply a capture count change.

    Args:
        current: Stored capture progress
        delta: Captures accepted (positive) or withdrawn (negative)

    Returns:
        clamp(current + delta, 0, 72)
    """
    return max(0, min(CAPTURE_TARGET, current + delta))


# -----------------------------------------------------------------------------
# Action Summary
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ForgeActions:
    """What a role may do with a forge in a given state (for UIs)."""
    can_advance: bool
    can_rollback: bool
    can_delete: bool
    can_view: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "can_advance": self.can_advance,
            "can_rollback": self.can_rollback,
            "can_delete": self.can_delete,
            "can_view": self.can_view,
        }


def get_forge_actions(role: RoleLike, state: ForgeState) -> ForgeActions:
    """
    Summarize what `role` may do with a forge in `state`.

    Args:
        role: Actor role, or a raw role string
        state: Current forge state

    Returns:
        ForgeActions flags; advancing is only offered when the immediate
        successor is permitted for the role
    """
    return ForgeActions(
        can_advance=(
            not is_terminal(state)
            and can_transition_to_state(role, state, next_state(state))
        ),
        can_rollback=can_rollback(role, state),
        can_delete=has_permission(role, Permission.FORGES_DELETE) and not is_terminal(state),
        can_view=has_permission(role, Permission.FORGES_READ),
    )


def get_next_guidance(forge: Forge) -> Dict[str, Any]:
    """
    What happens next for a forge. Used by the dashboard to label the
    "advance" button.
    """
    state = forge.state
    guidance: Dict[str, Any] = {
        "current_state": state.value,
        "next_state": None,
        "next_step": None,
        "capture_progress": forge.capture_progress,
        "capture_target": CAPTURE_TARGET,
    }

    if state == ForgeState.CREATED:
        guidance["next_step"] = f"Capture {CAPTURE_TARGET} reference images"
    elif state == ForgeState.CAPTURED:
        guidance["next_step"] = "Normalize captured images"
    elif state == ForgeState.NORMALIZED:
        guidance["next_step"] = "Seed the identity (mints the seed hash)"
    elif state == ForgeState.SEEDED:
        guidance["next_step"] = "Parametrize the twin"
    elif state == ForgeState.PARAMETRIZED:
        guidance["next_step"] = "Run validation"
    elif state == ForgeState.VALIDATED:
        guidance["next_step"] = "Certify (mints the digital twin id, irreversible)"
    elif state == ForgeState.CERTIFIED:
        guidance["next_step"] = "Forge is certified (terminal state)"

    if not is_terminal(state):
        guidance["next_state"] = next_state(state).value

    return guidance
