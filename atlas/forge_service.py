"""
ATLAS Forge Service

Caller-side orchestration around the lifecycle guard:

    fetch forge -> evaluate guard -> conditional update -> audit record

The conditional update only applies if the stored state and version still
equal the values the guard was evaluated against. When two actors advance
the same forge concurrently, exactly one wins; the other gets CONFLICT and
may re-read and retry.

The service takes its gateway and audit sink as constructor arguments.
Certifying a forge also issues its certificate through CertificateService.
"""

import logging
import uuid
from typing import Optional, Dict, Any, List

from .audit import AuditSink
from .certification import CertificateService
from .forge_lifecycle import (
    FORGE_STATE_CHANGED,
    attempt_transition,
    get_forge_actions,
    get_next_guidance,
    is_terminal,
    update_capture_progress as clamp_capture_progress,
)
from .gateway import Gateway, CAPTURES_TABLE, CERTIFICATES_TABLE, FORGES_TABLE, MODELS_TABLE, LICENSES_TABLE
from .models import (
    Actor,
    Forge,
    ForgeState,
    FORGE_STATES,
    LicenseStatus,
    ModelProfile,
    Permission,
    ReasonCode,
    Role,
    ServiceResult,
    TransitionResult,
    utcnow,
)
from .rbac import can_access_digital_twin, has_permission

logger = logging.getLogger("forge_service")

# Audit actions
FORGE_CREATED = "FORGE_CREATED"
FORGE_DELETED = "FORGE_DELETED"
FORGE_PROGRESS_UPDATED = "FORGE_PROGRESS_UPDATED"


class ForgeService:
    """
    Forge lifecycle operations for one application instance.

    Every method returns a result value; expected failures are never raised.
    """

    def __init__(
        self,
        gateway: Gateway,
        audit: AuditSink,
        certificates: Optional[CertificateService] = None,
    ):
        self._gateway = gateway
        self._audit = audit
        self._certificates = certificates or CertificateService(gateway, audit)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_forge(self, forge_id: str) -> Optional[Forge]:
        row = await self._gateway.get(FORGES_TABLE, forge_id)
        return Forge.from_dict(row) if row else None

    async def get_forge_by_digital_twin_id(self, digital_twin_id: str) -> Optional[Forge]:
        """
        Find the certified forge that minted a digital twin id.

        Args:
            digital_twin_id: Twin id, e.g. DTW-2026-042-AB12

        Returns:
            Forge if found, None otherwise
        """
        rows = await self._gateway.select(
            FORGES_TABLE, filters={"digital_twin_id": digital_twin_id}, limit=1,
        )
        return Forge.from_dict(rows[0]) if rows else None

    async def get_model(self, model_id: str) -> Optional[ModelProfile]:
        row = await self._gateway.get(MODELS_TABLE, model_id)
        return ModelProfile.from_dict(row) if row else None

    async def list_forges(
        self,
        model_id: Optional[str] = None,
        state: Optional[ForgeState] = None,
        limit: Optional[int] = 50,
    ) -> List[Forge]:
        filters: Dict[str, Any] = {}
        if model_id:
            filters["model_id"] = model_id
        if state:
            filters["state"] = state.value
        rows = await self._gateway.select(FORGES_TABLE, filters=filters, limit=limit)
        forges = []
        for row in rows:
            try:
                forges.append(Forge.from_dict(row))
            except (KeyError, ValueError) as e:
                logger.warning(f"Failed to deserialize forge {row.get('id')}: {e}")
        return forges

    async def can_view(self, forge: Forge, actor: Actor) -> bool:
        """
        forges:read plus twin ownership: models see their own forges, brands
        only forges whose twin they hold an active license against.
        """
        if not has_permission(actor.role, Permission.FORGES_READ):
            return False

        brand_with_license = None
        if actor.role == Role.BRAND and actor.linked_brand_id and forge.digital_twin_id:
            held = await self._gateway.count(LICENSES_TABLE, {
                "digital_twin_id": forge.digital_twin_id,
                "client_id": actor.linked_brand_id,
                "status": LicenseStatus.ACTIVE.value,
            })
            if held:
                brand_with_license = actor.linked_brand_id

        return can_access_digital_twin(
            actor.role,
            actor.linked_model_id,
            actor.linked_brand_id,
            forge.model_id,
            brand_with_license,
        )

    async def get_visible_forge(self, forge_id: str, actor: Actor) -> ServiceResult:
        """
        Fetch a forge the actor is allowed to see.

        Args:
            forge_id: ID of the forge
            actor: Caller

        Returns:
            ServiceResult with the Forge, NOT_FOUND or FORBIDDEN
        """
        forge = await self.get_forge(forge_id)
        if not forge:
            return ServiceResult.fail(ReasonCode.NOT_FOUND, f"Forge {forge_id} not found")
        if not await self.can_view(forge, actor):
            return ServiceResult.fail(ReasonCode.FORBIDDEN, f"Not allowed to view forge {forge_id}")
        return ServiceResult.ok(forge)

    async def list_visible_forges(
        self,
        actor: Actor,
        model_id: Optional[str] = None,
        state: Optional[ForgeState] = None,
        limit: int = 50,
    ) -> ServiceResult:
        """
        List forges scoped to what the actor may see.

        Args:
            actor: Caller; needs forges:read
            model_id: Optional model filter; models only ever see their own
            state: Optional state filter
            limit: Maximum number of forges returned

        Returns:
            ServiceResult with a list of Forge, newest first
        """
        if not has_permission(actor.role, Permission.FORGES_READ):
            return ServiceResult.fail(ReasonCode.FORBIDDEN, "Listing forges requires 'forges:read'")

        if actor.role == Role.MODEL:
            if not actor.linked_model_id or (model_id and model_id != actor.linked_model_id):
                return ServiceResult.ok([])
            model_id = actor.linked_model_id

        if actor.role == Role.ADMIN:
            return ServiceResult.ok(await self.list_forges(model_id=model_id, state=state, limit=limit))

        visible = []
        for forge in await self.list_forges(model_id=model_id, state=state, limit=None):
            if await self.can_view(forge, actor):
                visible.append(forge)
                if len(visible) >= limit:
                    break
        return ServiceResult.ok(visible)

    async def get_visible_twin(self, digital_twin_id: str, actor: Actor) -> ServiceResult:
        """
        Look up a digital twin: its forge plus its latest certificate.

        Args:
            digital_twin_id: Twin id minted at certification
            actor: Caller; visibility follows the forge

        Returns:
            ServiceResult with {"forge": Forge, "certificate": Certificate or None}
        """
        forge = await self.get_forge_by_digital_twin_id(digital_twin_id)
        if not forge:
            return ServiceResult.fail(ReasonCode.NOT_FOUND, f"Digital twin {digital_twin_id} not found")
        if not await self.can_view(forge, actor):
            return ServiceResult.fail(ReasonCode.FORBIDDEN, f"Not allowed to view {digital_twin_id}")
        certificate = await self._certificates.get_certificate_by_digital_twin(digital_twin_id)
        return ServiceResult.ok({"forge": forge, "certificate": certificate})

    async def get_guidance(self, forge_id: str, actor: Actor) -> ServiceResult:
        visible = await self.get_visible_forge(forge_id, actor)
        if not visible.success:
            return visible
        forge = visible.data
        guidance = get_next_guidance(forge)
        guidance["actions"] = get_forge_actions(actor.role, forge.state).to_dict()
        return ServiceResult.ok(guidance)

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create_forge(self, model_id: str, actor: Actor) -> ServiceResult:
        """
        Insert a new forge in CREATED for an existing model.

        Args:
            model_id: ID of the model; must exist and not be archived
            actor: Caller; needs forges:create

        Returns:
            ServiceResult with the new Forge, or FORBIDDEN / NOT_FOUND /
            INVALID_REQUEST
        """
        if not has_permission(actor.role, Permission.FORGES_CREATE):
            return ServiceResult.fail(ReasonCode.FORBIDDEN, "Creating forges requires 'forges:create'")

        model = await self.get_model(model_id)
        if not model:
            return ServiceResult.fail(ReasonCode.NOT_FOUND, f"Model {model_id} not found")
        if model.is_archived:
            return ServiceResult.fail(ReasonCode.INVALID_REQUEST, f"Model {model_id} is archived")

        now = utcnow()
        forge = Forge(
            id=str(uuid.uuid4()),
            model_id=model_id,
            state=ForgeState.CREATED,
            created_at=now,
            updated_at=now,
            created_by=actor.actor_id,
        )
        await self._gateway.insert(FORGES_TABLE, forge.to_dict())

        self._audit.record_action(
            actor, FORGE_CREATED, FORGES_TABLE, forge.id,
            metadata={"model_id": model_id},
        )
        logger.info(f"Created forge {forge.id} for model {model_id}")
        return ServiceResult.ok(forge, message=f"Forge created: {forge.id}")

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def transition_forge(
        self,
        forge_id: str,
        target: ForgeState,
        actor: Actor,
    ) -> TransitionResult:
        """
        Advance a forge by one state.

        Reaching CERTIFIED also issues the forge's certificate.

        Args:
            forge_id: ID of the forge
            target: Requested state (the immediate successor)
            actor: Caller

        Returns:
            TransitionResult. NOT_FOUND when the forge is missing, CONFLICT
            when another writer changed it between read and write, otherwise
            whatever the guard says.
        """
        forge = await self.get_forge(forge_id)
        if not forge:
            return TransitionResult.fail(
                FORGE_STATES[0], target, ReasonCode.NOT_FOUND, f"Forge {forge_id} not found",
            )

        model = None
        internal_id = None
        if target == ForgeState.CERTIFIED:
            model = await self.get_model(forge.model_id)
            internal_id = model.internal_id if model else None

        result = attempt_transition(forge, target, actor.role, model_internal_id=internal_id)
        if not result.success:
            logger.info(
                f"Forge {forge_id}: transition {forge.state.value} -> {target.value} rejected "
                f"({result.reason_code.value}, by: {actor.actor_id})"
            )
            return result

        fields = result.update.to_fields()
        fields["version"] = forge.version + 1
        write = await self._gateway.update(
            FORGES_TABLE,
            forge_id,
            fields,
            expected={"state": forge.state.value, "version": forge.version},
        )
        if not write.success:
            return TransitionResult.fail(forge.state, target, write.reason_code, write.message)

        self._audit.record_action(
            actor, FORGE_STATE_CHANGED, FORGES_TABLE, forge_id,
            metadata={
                "model_id": forge.model_id,
                "from_state": forge.state.value,
                "to_state": target.value,
            },
        )
        logger.info(f"Forge {forge_id}: {forge.state.value} -> {target.value} (by: {actor.actor_id})")

        if target == ForgeState.CERTIFIED:
            await self._certificates.issue_certificate(Forge.from_dict(write.data), model, actor)
        return result

    # -------------------------------------------------------------------------
    # Capture Progress
    # -------------------------------------------------------------------------

    async def update_capture_progress(self, forge_id: str, delta: int, actor: Actor) -> ServiceResult:
        """
        Manually adjust capture progress by `delta`, clamped to [0, 72].

        Capture review (CaptureService) keeps progress in step with the
        validated captures; this is the operator override.

        Args:
            forge_id: ID of the forge
            delta: Signed change in accepted captures
            actor: Caller; needs captures:upload

        Returns:
            ServiceResult with the updated Forge. Certified forges are IMMUTABLE.
        """
        if not has_permission(actor.role, Permission.CAPTURES_UPLOAD):
            return ServiceResult.fail(ReasonCode.FORBIDDEN, "Updating capture progress requires 'captures:upload'")

        forge = await self.get_forge(forge_id)
        if not forge:
            return ServiceResult.fail(ReasonCode.NOT_FOUND, f"Forge {forge_id} not found")
        if is_terminal(forge.state):
            return ServiceResult.fail(ReasonCode.IMMUTABLE, "Certified forges cannot be modified")

        progress = clamp_capture_progress(forge.capture_progress, delta)
        write = await self._gateway.update(
            FORGES_TABLE,
            forge_id,
            {
                "capture_progress": progress,
                "updated_at": utcnow().isoformat(),
                "version": forge.version + 1,
            },
            expected={"state": forge.state.value, "version": forge.version},
        )
        if not write.success:
            return ServiceResult.fail(write.reason_code, write.message)

        self._audit.record_action(
            actor, FORGE_PROGRESS_UPDATED, FORGES_TABLE, forge_id,
            metadata={"from": forge.capture_progress, "to": progress, "delta": delta},
        )
        return ServiceResult.ok(Forge.from_dict(write.data), message=f"Capture progress: {progress}")

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    async def delete_forge(self, forge_id: str, actor: Actor) -> ServiceResult:
        """
        Delete a forge. Never permitted once certified.

        Args:
            forge_id: ID of the forge
            actor: Caller; needs forges:delete

        Returns:
            ServiceResult; IMMUTABLE for certified forges
        """
        if not has_permission(actor.role, Permission.FORGES_DELETE):
            return ServiceResult.fail(ReasonCode.FORBIDDEN, "Deleting forges requires 'forges:delete'")

        forge = await self.get_forge(forge_id)
        if not forge:
            return ServiceResult.fail(ReasonCode.NOT_FOUND, f"Forge {forge_id} not found")
        if is_terminal(forge.state):
            return ServiceResult.fail(ReasonCode.IMMUTABLE, "Certified forges cannot be deleted")

        if not await self._gateway.delete(FORGES_TABLE, forge_id):
            return ServiceResult.fail(ReasonCode.NOT_FOUND, f"Forge {forge_id} not found")

        self._audit.record_action(
            actor, FORGE_DELETED, FORGES_TABLE, forge_id,
            metadata={"model_id": forge.model_id, "state": forge.state.value},
        )
        logger.info(f"Deleted forge {forge_id} (by: {actor.actor_id})")
        return ServiceResult.ok(message=f"Forge {forge_id} deleted")

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    async def get_stats(self) -> Dict[str, Any]:
        forges = await self._gateway.select(FORGES_TABLE, order_by=None)
        by_state = {state.value: 0 for state in FORGE_STATES}
        for row in forges:
            state = row.get("state")
            if state in by_state:
                by_state[state] += 1

        certified = by_state[ForgeState.CERTIFIED.value]
        return {
            "total_models": await self._gateway.count(MODELS_TABLE),
            "total_forges": len(forges),
            "certified_forges": certified,
            "in_progress_forges": len(forges) - certified,
            "forges_by_state": by_state,
            "active_licenses": await self._gateway.count(
                LICENSES_TABLE, {"status": LicenseStatus.ACTIVE.value}
            ),
            "total_captures": await self._gateway.count(CAPTURES_TABLE),
            "certificates_issued": await self._gateway.count(CERTIFICATES_TABLE),
        }
