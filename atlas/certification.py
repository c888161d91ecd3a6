"""
ATLAS Certification

A certificate is issued when a forge reaches CERTIFIED. Its hash and
verification code are random opaque tokens (see forge_lifecycle); they prove
nothing about content and are only looked up, never recomputed.

Revocation (certification:revoke) marks the certificate revoked. The
certified forge is never touched: CERTIFIED stays terminal and immutable.
A revoked certificate blocks new licenses on its digital twin.
"""

import logging
import uuid
from typing import Optional, List

from .audit import AuditSink
from .forge_lifecycle import generate_certificate_hash, generate_verification_code
from .gateway import Gateway, CERTIFICATES_TABLE
from .models import (
    Actor,
    Certificate,
    CertificateStatus,
    Forge,
    ModelProfile,
    Permission,
    ReasonCode,
    ServiceResult,
    utcnow,
)
from .rbac import has_permission

logger = logging.getLogger("certification")

# Audit actions
CERTIFICATE_ISSUED = "CERTIFICATE_ISSUED"
CERTIFICATE_REVOKED = "CERTIFICATE_REVOKED"


class CertificateService:
    """Certificate issue, lookup and revocation."""

    def __init__(self, gateway: Gateway, audit: AuditSink):
        self._gateway = gateway
        self._audit = audit

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_certificate(self, certificate_id: str) -> Optional[Certificate]:
        row = await self._gateway.get(CERTIFICATES_TABLE, certificate_id)
        return Certificate.from_dict(row) if row else None

    async def get_certificate_by_digital_twin(self, digital_twin_id: str) -> Optional[Certificate]:
        """
        Latest certificate issued for a digital twin.

        Args:
            digital_twin_id: Twin id minted at certification

        Returns:
            Certificate if one was issued, None otherwise
        """
        rows = await self._gateway.select(
            CERTIFICATES_TABLE, filters={"digital_twin_id": digital_twin_id}, limit=1,
        )
        return Certificate.from_dict(rows[0]) if rows else None

    async def get_certificate_by_verification_code(self, code: str) -> Optional[Certificate]:
        rows = await self._gateway.select(
            CERTIFICATES_TABLE, filters={"verification_code": (code or "").upper()}, limit=1,
        )
        return Certificate.from_dict(rows[0]) if rows else None

    async def list_certificates(self, model_id: Optional[str] = None, limit: int = 100) -> List[Certificate]:
        filters = {"model_id": model_id} if model_id else None
        rows = await self._gateway.select(CERTIFICATES_TABLE, filters=filters, limit=limit)
        return [Certificate.from_dict(row) for row in rows]

    async def is_revoked(self, digital_twin_id: str) -> bool:
        return bool(await self._gateway.count(CERTIFICATES_TABLE, {
            "digital_twin_id": digital_twin_id,
            "status": CertificateStatus.REVOKED.value,
        }))

    # -------------------------------------------------------------------------
    # Issue / Revoke
    # -------------------------------------------------------------------------

    async def issue_certificate(
        self,
        forge: Forge,
        model: Optional[ModelProfile],
        actor: Actor,
    ) -> Certificate:
        """
        Record the certificate for a forge that was just certified.

        The caller has already persisted the CERTIFIED transition, so no
        permission check happens here.

        Args:
            forge: The forge as stored after certification (carries the twin id)
            model: The forge's model, for the name and plan printed on the certificate
            actor: Who certified the forge

        Returns:
            The inserted Certificate
        """
        certificate = Certificate(
            id=str(uuid.uuid4()),
            forge_id=forge.id,
            model_id=forge.model_id,
            digital_twin_id=forge.digital_twin_id,
            certificate_hash=generate_certificate_hash(),
            verification_code=generate_verification_code(),
            model_name=model.full_name if model else "",
            plan_type=model.plan_type if model else "standard",
            forge_version=forge.version,
            issued_by=actor.actor_id,
            issued_at=forge.certified_at or utcnow(),
        )
        await self._gateway.insert(CERTIFICATES_TABLE, certificate.to_dict())

        self._audit.record_action(
            actor, CERTIFICATE_ISSUED, CERTIFICATES_TABLE, certificate.id,
            metadata={
                "forge_id": forge.id,
                "model_id": forge.model_id,
                "digital_twin_id": forge.digital_twin_id,
            },
        )
        logger.info(f"Certificate {certificate.id} issued for {forge.digital_twin_id}")
        return certificate

    async def revoke_certificate(self, certificate_id: str, reason: str, actor: Actor) -> ServiceResult:
        """
        Revoke a certificate. The certified forge stays as it is.

        Args:
            certificate_id: ID of the certificate
            reason: Free-text reason kept on the record
            actor: Caller; needs certification:revoke

        Returns:
            ServiceResult with the revoked Certificate; IMMUTABLE when it is
            already revoked
        """
        if not has_permission(actor.role, Permission.CERTIFICATION_REVOKE):
            return ServiceResult.fail(
                ReasonCode.FORBIDDEN, "Revoking certificates requires 'certification:revoke'",
            )

        certificate = await self.get_certificate(certificate_id)
        if not certificate:
            return ServiceResult.fail(ReasonCode.NOT_FOUND, f"Certificate {certificate_id} not found")
        if certificate.status == CertificateStatus.REVOKED:
            return ServiceResult.fail(ReasonCode.IMMUTABLE, f"Certificate {certificate_id} is already revoked")

        write = await self._gateway.update(
            CERTIFICATES_TABLE,
            certificate_id,
            {
                "status": CertificateStatus.REVOKED.value,
                "revoked_by": actor.actor_id,
                "revoked_at": utcnow().isoformat(),
                "revoked_reason": reason,
            },
            expected={"status": certificate.status.value},
        )
        if not write.success:
            return ServiceResult.fail(write.reason_code, write.message)

        self._audit.record_action(
            actor, CERTIFICATE_REVOKED, CERTIFICATES_TABLE, certificate_id,
            metadata={"digital_twin_id": certificate.digital_twin_id, "reason": reason},
        )
        logger.info(f"Certificate {certificate_id} revoked (by: {actor.actor_id})")
        return ServiceResult.ok(Certificate.from_dict(write.data), message=f"Certificate {certificate_id} revoked")
