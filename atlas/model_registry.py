"""
ATLAS Model Registry

Registration and upkeep of the human models that forges certify:
- create, update, archive, delete (admin, models:* permissions)
- role-scoped reads (admins all, models themselves, brands the models they
  hold an active license on)
- public profile with capture, preview and license counts

Archived models keep their forges and certificates but get no new forges.
A model that still has forges cannot be deleted; archive it instead.
"""

import logging
import uuid
from typing import Optional, Dict, Any

from .audit import AuditSink
from .gateway import Gateway, CAPTURES_TABLE, FORGES_TABLE, LICENSES_TABLE, MODELS_TABLE
from .models import (
    Actor,
    CaptureStatus,
    ForgeState,
    FORGE_STATES,
    LicenseStatus,
    ModelProfile,
    ModelStatus,
    Permission,
    ReasonCode,
    Role,
    ServiceResult,
    utcnow,
)
from .rbac import has_permission

logger = logging.getLogger("model_registry")

# Audit actions
MODEL_CREATED = "MODEL_CREATED"
MODEL_UPDATED = "MODEL_UPDATED"
MODEL_ARCHIVED = "MODEL_ARCHIVED"
MODEL_DELETED = "MODEL_DELETED"

INTERNAL_ID_WIDTH = 3

# Columns an update may touch; status changes go through archive_model
UPDATABLE_FIELDS = frozenset({
    "full_name", "email", "phone", "city", "country", "plan_type", "consent_given",
})

# States from which previews exist (the twin has been parametrized)
_PREVIEW_STATES = frozenset(s.value for s in FORGE_STATES[FORGE_STATES.index(ForgeState.PARAMETRIZED):])


class ModelRegistry:
    """Model CRUD plus the counts behind the public model profile."""

    def __init__(self, gateway: Gateway, audit: AuditSink):
        self._gateway = gateway
        self._audit = audit

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_model(self, model_id: str) -> Optional[ModelProfile]:
        row = await self._gateway.get(MODELS_TABLE, model_id)
        return ModelProfile.from_dict(row) if row else None

    async def _brand_model_ids(self, brand_id: str) -> set:
        rows = await self._gateway.select(
            LICENSES_TABLE,
            filters={"client_id": brand_id, "status": LicenseStatus.ACTIVE.value},
            order_by=None,
        )
        return {row.get("model_id") for row in rows}

    async def get_visible_model(self, model_id: str, actor: Actor) -> ServiceResult:
        """
        Fetch a model the actor is allowed to see.

        Args:
            model_id: ID of the model
            actor: Caller

        Returns:
            ServiceResult with the ModelProfile, or NOT_FOUND / FORBIDDEN
        """
        if not has_permission(actor.role, Permission.MODELS_READ):
            return ServiceResult.fail(ReasonCode.FORBIDDEN, "Reading models requires 'models:read'")

        model = await self.get_model(model_id)
        if not model:
            return ServiceResult.fail(ReasonCode.NOT_FOUND, f"Model {model_id} not found")

        if actor.role == Role.MODEL and actor.linked_model_id != model_id:
            return ServiceResult.fail(ReasonCode.FORBIDDEN, f"Not allowed to view model {model_id}")
        if actor.role == Role.BRAND:
            if not actor.linked_brand_id or model_id not in await self._brand_model_ids(actor.linked_brand_id):
                return ServiceResult.fail(ReasonCode.FORBIDDEN, f"Not allowed to view model {model_id}")
        return ServiceResult.ok(model)

    async def list_models(
        self,
        actor: Actor,
        status: Optional[ModelStatus] = None,
        limit: int = 100,
    ) -> ServiceResult:
        """
        List the models visible to the actor, newest first.

        Args:
            actor: Caller
            status: Optional status filter
            limit: Maximum number of models returned

        Returns:
            ServiceResult with a list of ModelProfile
        """
        if not has_permission(actor.role, Permission.MODELS_READ):
            return ServiceResult.fail(ReasonCode.FORBIDDEN, "Reading models requires 'models:read'")

        filters: Dict[str, Any] = {}
        if status:
            filters["status"] = status.value

        if actor.role == Role.MODEL:
            if not actor.linked_model_id:
                return ServiceResult.ok([])
            filters["id"] = actor.linked_model_id

        rows = await self._gateway.select(MODELS_TABLE, filters=filters, limit=None)

        if actor.role == Role.BRAND:
            allowed = await self._brand_model_ids(actor.linked_brand_id) if actor.linked_brand_id else set()
            rows = [row for row in rows if row.get("id") in allowed]

        return ServiceResult.ok([ModelProfile.from_dict(row) for row in rows[:limit]])

    async def get_model_stats(self, model_id: str) -> Dict[str, int]:
        """Capture, forge and license counts for one model."""
        forges = await self._gateway.select(FORGES_TABLE, filters={"model_id": model_id}, order_by=None)
        return {
            "total_captures": await self._gateway.count(CAPTURES_TABLE, {"model_id": model_id}),
            "valid_captures": await self._gateway.count(
                CAPTURES_TABLE, {"model_id": model_id, "status": CaptureStatus.VALIDATED.value}
            ),
            "previews_generated": sum(1 for row in forges if row.get("state") in _PREVIEW_STATES),
            "total_forges": len(forges),
            "certified_forges": sum(1 for row in forges if row.get("state") == ForgeState.CERTIFIED.value),
            "active_licenses": await self._gateway.count(
                LICENSES_TABLE, {"model_id": model_id, "status": LicenseStatus.ACTIVE.value}
            ),
        }

    # -------------------------------------------------------------------------
    # Create / Update
    # -------------------------------------------------------------------------

    async def _next_internal_id(self) -> str:
        rows = await self._gateway.select(MODELS_TABLE, order_by=None)
        existing = {row.get("internal_id") for row in rows}
        candidate = len(existing) + 1
        while f"{candidate:0{INTERNAL_ID_WIDTH}d}" in existing:
            candidate += 1
        return f"{candidate:0{INTERNAL_ID_WIDTH}d}"

    async def create_model(
        self,
        actor: Actor,
        full_name: str,
        email: str = "",
        phone: str = "",
        city: str = "",
        country: str = "",
        plan_type: str = "standard",
        consent_given: bool = False,
        internal_id: Optional[str] = None,
        status: ModelStatus = ModelStatus.ACTIVE,
    ) -> ServiceResult:
        """
        Register a new model.

        Args:
            actor: Caller; needs models:create
            full_name: Display name, required
            internal_id: Code embedded in twin ids; the next free zero-padded
                sequence number when omitted. Must be unique.
            consent_given: Records the consent date when True

        Returns:
            ServiceResult with the created ModelProfile, or FORBIDDEN /
            INVALID_REQUEST / CONFLICT
        """
        if not has_permission(actor.role, Permission.MODELS_CREATE):
            return ServiceResult.fail(ReasonCode.FORBIDDEN, "Creating models requires 'models:create'")

        full_name = (full_name or "").strip()
        if not full_name:
            return ServiceResult.fail(ReasonCode.INVALID_REQUEST, "full_name is required")

        if internal_id:
            if await self._gateway.count(MODELS_TABLE, {"internal_id": internal_id}):
                return ServiceResult.fail(ReasonCode.CONFLICT, f"internal_id {internal_id} is already in use")
        else:
            internal_id = await self._next_internal_id()

        now = utcnow()
        model = ModelProfile(
            id=str(uuid.uuid4()),
            internal_id=internal_id,
            full_name=full_name,
            status=status,
            consent_given=consent_given,
            consent_date=now if consent_given else None,
            email=email,
            phone=phone,
            city=city,
            country=country,
            plan_type=plan_type,
            created_at=now,
            updated_at=now,
            created_by=actor.actor_id,
        )
        await self._gateway.insert(MODELS_TABLE, model.to_dict())

        self._audit.record_action(
            actor, MODEL_CREATED, MODELS_TABLE, model.id,
            metadata={"model_id": model.id, "internal_id": internal_id},
        )
        logger.info(f"Created model {model.id} (internal id {internal_id})")
        return ServiceResult.ok(model, message=f"Model created: {model.id}")

    async def update_model(self, model_id: str, updates: Dict[str, Any], actor: Actor) -> ServiceResult:
        """
        Change profile fields of a model.

        Args:
            model_id: ID of the model
            updates: Column values; only UPDATABLE_FIELDS are accepted
            actor: Caller; needs models:update

        Returns:
            ServiceResult with the updated ModelProfile. Archived models are
            IMMUTABLE; unknown columns are INVALID_REQUEST.
        """
        if not has_permission(actor.role, Permission.MODELS_UPDATE):
            return ServiceResult.fail(ReasonCode.FORBIDDEN, "Updating models requires 'models:update'")

        unknown = sorted(set(updates) - UPDATABLE_FIELDS)
        if unknown:
            return ServiceResult.fail(ReasonCode.INVALID_REQUEST, f"Cannot update: {', '.join(unknown)}")
        if not updates:
            return ServiceResult.fail(ReasonCode.INVALID_REQUEST, "Nothing to update")
        if "full_name" in updates and not str(updates["full_name"] or "").strip():
            return ServiceResult.fail(ReasonCode.INVALID_REQUEST, "full_name cannot be empty")

        model = await self.get_model(model_id)
        if not model:
            return ServiceResult.fail(ReasonCode.NOT_FOUND, f"Model {model_id} not found")
        if model.is_archived:
            return ServiceResult.fail(ReasonCode.IMMUTABLE, f"Model {model_id} is archived")

        now = utcnow()
        fields = dict(updates)
        fields["updated_at"] = now.isoformat()
        if updates.get("consent_given") and not model.consent_given:
            fields["consent_date"] = now.isoformat()

        write = await self._gateway.update(
            MODELS_TABLE, model_id, fields, expected={"status": model.status.value},
        )
        if not write.success:
            return ServiceResult.fail(write.reason_code, write.message)

        self._audit.record_action(
            actor, MODEL_UPDATED, MODELS_TABLE, model_id,
            metadata={"model_id": model_id, "fields": sorted(updates)},
        )
        return ServiceResult.ok(ModelProfile.from_dict(write.data), message=f"Model {model_id} updated")

    # -------------------------------------------------------------------------
    # Archive / Delete
    # -------------------------------------------------------------------------

    async def archive_model(self, model_id: str, actor: Actor) -> ServiceResult:
        """Mark a model archived. Archiving twice is IMMUTABLE."""
        if not has_permission(actor.role, Permission.MODELS_ARCHIVE):
            return ServiceResult.fail(ReasonCode.FORBIDDEN, "Archiving models requires 'models:archive'")

        model = await self.get_model(model_id)
        if not model:
            return ServiceResult.fail(ReasonCode.NOT_FOUND, f"Model {model_id} not found")
        if model.is_archived:
            return ServiceResult.fail(ReasonCode.IMMUTABLE, f"Model {model_id} is already archived")

        write = await self._gateway.update(
            MODELS_TABLE,
            model_id,
            {"status": ModelStatus.ARCHIVED.value, "updated_at": utcnow().isoformat()},
            expected={"status": model.status.value},
        )
        if not write.success:
            return ServiceResult.fail(write.reason_code, write.message)

        self._audit.record_action(
            actor, MODEL_ARCHIVED, MODELS_TABLE, model_id,
            metadata={"model_id": model_id, "previous_status": model.status.value},
        )
        logger.info(f"Archived model {model_id} (by: {actor.actor_id})")
        return ServiceResult.ok(ModelProfile.from_dict(write.data), message=f"Model {model_id} archived")

    async def delete_model(self, model_id: str, actor: Actor) -> ServiceResult:
        if not has_permission(actor.role, Permission.MODELS_DELETE):
            return ServiceResult.fail(ReasonCode.FORBIDDEN, "Deleting models requires 'models:delete'")

        model = await self.get_model(model_id)
        if not model:
            return ServiceResult.fail(ReasonCode.NOT_FOUND, f"Model {model_id} not found")

        forges = await self._gateway.count(FORGES_TABLE, {"model_id": model_id})
        if forges:
            return ServiceResult.fail(
                ReasonCode.IMMUTABLE,
                f"Model {model_id} has {forges} forge(s); archive it instead",
            )

        if not await self._gateway.delete(MODELS_TABLE, model_id):
            return ServiceResult.fail(ReasonCode.NOT_FOUND, f"Model {model_id} not found")

        self._audit.record_action(
            actor, MODEL_DELETED, MODELS_TABLE, model_id,
            metadata={"model_id": model_id, "internal_id": model.internal_id},
        )
        logger.info(f"Deleted model {model_id} (by: {actor.actor_id})")
        return ServiceResult.ok(message=f"Model {model_id} deleted")
