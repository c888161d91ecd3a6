"""
ATLAS Capture Service

Reference images uploaded for a forge during the capture stage. Each capture
is reviewed once into validated or rejected (and may be re-reviewed before
certification). A forge's capture_progress follows its validated captures:
after every review it is recounted and clamped to the 72-image target with
update_capture_progress, then written with the same state + version
compare-and-swap the lifecycle uses.

Captures of a certified forge can no longer be added or reviewed.
"""

import logging
import uuid
from typing import Optional, Dict, Any

from .audit import AuditSink
from .forge_lifecycle import is_terminal, update_capture_progress
from .gateway import Gateway, CAPTURES_TABLE, FORGES_TABLE
from .models import (
    Actor,
    Capture,
    CaptureStatus,
    Forge,
    Permission,
    ReasonCode,
    Role,
    ServiceResult,
    utcnow,
)
from .rbac import has_permission

logger = logging.getLogger("captures")

# Audit actions
CAPTURE_UPLOADED = "CAPTURE_UPLOADED"
CAPTURE_VALIDATED = "CAPTURE_VALIDATED"
CAPTURE_REJECTED = "CAPTURE_REJECTED"

ALLOWED_MIME_PREFIX = "image/"
PROGRESS_SYNC_ATTEMPTS = 3


class CaptureService:
    """Capture upload records, review, and the capture progress they drive."""

    def __init__(self, gateway: Gateway, audit: AuditSink):
        self._gateway = gateway
        self._audit = audit

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_capture(self, capture_id: str) -> Optional[Capture]:
        row = await self._gateway.get(CAPTURES_TABLE, capture_id)
        return Capture.from_dict(row) if row else None

    async def _get_forge(self, forge_id: str) -> Optional[Forge]:
        row = await self._gateway.get(FORGES_TABLE, forge_id)
        return Forge.from_dict(row) if row else None

    async def list_captures(
        self,
        forge_id: str,
        actor: Actor,
        status: Optional[CaptureStatus] = None,
    ) -> ServiceResult:
        """
        Captures of one forge in upload order.

        Args:
            forge_id: ID of the forge
            actor: Caller; needs captures:read, or capture_viewer:read for
                a model looking at its own forge
            status: Optional review status filter

        Returns:
            ServiceResult with a list of Capture
        """
        forge = await self._get_forge(forge_id)
        if not forge:
            return ServiceResult.fail(ReasonCode.NOT_FOUND, f"Forge {forge_id} not found")

        own_viewer = (
            actor.role == Role.MODEL
            and has_permission(actor.role, Permission.CAPTURE_VIEWER_READ)
            and actor.linked_model_id == forge.model_id
        )
        if not has_permission(actor.role, Permission.CAPTURES_READ) and not own_viewer:
            return ServiceResult.fail(ReasonCode.FORBIDDEN, "Reading captures requires 'captures:read'")

        filters: Dict[str, Any] = {"forge_id": forge_id}
        if status:
            filters["status"] = status.value
        rows = await self._gateway.select(CAPTURES_TABLE, filters=filters, order_by="uploaded_at", descending=False)
        return ServiceResult.ok([Capture.from_dict(row) for row in rows])

    # -------------------------------------------------------------------------
    # Upload
    # -------------------------------------------------------------------------

    async def record_capture(
        self,
        forge_id: str,
        actor: Actor,
        angle: str,
        file_name: str,
        mime_type: str = "image/jpeg",
        file_size: int = 0,
        resolution_width: int = 0,
        resolution_height: int = 0,
        stage: str = "capture",
        asset_url: str = "",
    ) -> ServiceResult:
        """
        Record an uploaded capture as pending review.

        Args:
            forge_id: ID of the forge the image belongs to
            actor: Caller; needs captures:upload
            angle: Capture angle label, e.g. "front" or "left-45"
            file_name: Original file name
            mime_type: Must be an image type

        Returns:
            ServiceResult with the pending Capture. Certified forges are
            IMMUTABLE; bad metadata is INVALID_REQUEST.
        """
        if not has_permission(actor.role, Permission.CAPTURES_UPLOAD):
            return ServiceResult.fail(ReasonCode.FORBIDDEN, "Uploading captures requires 'captures:upload'")

        if not (angle or "").strip() or not (file_name or "").strip():
            return ServiceResult.fail(ReasonCode.INVALID_REQUEST, "angle and file_name are required")
        if not (mime_type or "").startswith(ALLOWED_MIME_PREFIX):
            return ServiceResult.fail(ReasonCode.INVALID_REQUEST, f"Unsupported capture type: {mime_type}")
        if file_size < 0 or resolution_width < 0 or resolution_height < 0:
            return ServiceResult.fail(ReasonCode.INVALID_REQUEST, "Sizes cannot be negative")

        forge = await self._get_forge(forge_id)
        if not forge:
            return ServiceResult.fail(ReasonCode.NOT_FOUND, f"Forge {forge_id} not found")
        if is_terminal(forge.state):
            return ServiceResult.fail(ReasonCode.IMMUTABLE, "Certified forges cannot take new captures")

        capture = Capture(
            id=str(uuid.uuid4()),
            forge_id=forge_id,
            model_id=forge.model_id,
            angle=angle.strip(),
            file_name=file_name.strip(),
            stage=stage,
            mime_type=mime_type,
            file_size=file_size,
            resolution_width=resolution_width,
            resolution_height=resolution_height,
            asset_url=asset_url,
            uploaded_by=actor.actor_id,
            uploaded_at=utcnow(),
        )
        await self._gateway.insert(CAPTURES_TABLE, capture.to_dict())

        self._audit.record_action(
            actor, CAPTURE_UPLOADED, CAPTURES_TABLE, capture.id,
            metadata={"forge_id": forge_id, "model_id": forge.model_id, "angle": capture.angle},
        )
        return ServiceResult.ok(capture, message=f"Capture recorded: {capture.id}")

    # -------------------------------------------------------------------------
    # Review
    # -------------------------------------------------------------------------

    async def validate_capture(self, capture_id: str, actor: Actor) -> ServiceResult:
        """Accept a capture; it then counts toward capture progress."""
        return await self._review(capture_id, CaptureStatus.VALIDATED, actor)

    async def reject_capture(self, capture_id: str, actor: Actor, reason: str = "") -> ServiceResult:
        """Reject a capture; a previously validated one stops counting."""
        return await self._review(capture_id, CaptureStatus.REJECTED, actor, reason)

    async def _review(
        self,
        capture_id: str,
        status: CaptureStatus,
        actor: Actor,
        reason: str = "",
    ) -> ServiceResult:
        if not has_permission(actor.role, Permission.CAPTURES_UPLOAD):
            return ServiceResult.fail(ReasonCode.FORBIDDEN, "Reviewing captures requires 'captures:upload'")

        capture = await self.get_capture(capture_id)
        if not capture:
            return ServiceResult.fail(ReasonCode.NOT_FOUND, f"Capture {capture_id} not found")
        if capture.status == status:
            return ServiceResult.fail(ReasonCode.INVALID_REQUEST, f"Capture {capture_id} is already {status.value}")

        forge = await self._get_forge(capture.forge_id)
        if not forge:
            return ServiceResult.fail(ReasonCode.NOT_FOUND, f"Forge {capture.forge_id} not found")
        if is_terminal(forge.state):
            return ServiceResult.fail(ReasonCode.IMMUTABLE, "Captures of certified forges cannot be reviewed")

        write = await self._gateway.update(
            CAPTURES_TABLE,
            capture_id,
            {
                "status": status.value,
                "reviewed_by": actor.actor_id,
                "reviewed_at": utcnow().isoformat(),
                "rejection_reason": (reason or None) if status == CaptureStatus.REJECTED else None,
            },
            expected={"status": capture.status.value},
        )
        if not write.success:
            return ServiceResult.fail(write.reason_code, write.message)

        synced = await self._sync_progress(capture.forge_id)
        if not synced.success:
            logger.warning(f"Capture {capture_id} reviewed but progress not synced: {synced.message}")
            return synced
        forge = synced.data

        action = CAPTURE_VALIDATED if status == CaptureStatus.VALIDATED else CAPTURE_REJECTED
        self._audit.record_action(
            actor, action, CAPTURES_TABLE, capture_id,
            metadata={
                "forge_id": capture.forge_id,
                "from_status": capture.status.value,
                "capture_progress": forge.capture_progress,
            },
        )
        return ServiceResult.ok(
            {"capture": Capture.from_dict(write.data), "forge": forge},
            message=f"Capture {status.value}; progress {forge.capture_progress}",
        )

    async def _sync_progress(self, forge_id: str) -> ServiceResult:
        """Recount validated captures into the forge, retrying lost CAS races."""
        for _ in range(PROGRESS_SYNC_ATTEMPTS):
            forge = await self._get_forge(forge_id)
            if not forge:
                return ServiceResult.fail(ReasonCode.NOT_FOUND, f"Forge {forge_id} not found")
            if is_terminal(forge.state):
                return ServiceResult.fail(ReasonCode.IMMUTABLE, "Certified forges cannot be modified")

            validated = await self._gateway.count(CAPTURES_TABLE, {
                "forge_id": forge_id,
                "status": CaptureStatus.VALIDATED.value,
            })
            progress = update_capture_progress(0, validated)
            if progress == forge.capture_progress:
                return ServiceResult.ok(forge)

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
            if write.success:
                return ServiceResult.ok(Forge.from_dict(write.data))
            if write.reason_code != ReasonCode.CONFLICT:
                return ServiceResult.fail(write.reason_code, write.message)

        return ServiceResult.fail(ReasonCode.CONFLICT, f"Forge {forge_id} kept changing; progress not updated")
