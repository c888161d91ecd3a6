"""
ATLAS License Service

Licenses grant a brand time-boxed usage rights over a certified digital
twin. This module owns the license records; the download decision itself is
rbac.can_download_asset, fed with the license's EFFECTIVE status:

- revoked stays revoked
- an active license outside [valid_from, valid_until] reports expired
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from .audit import AuditSink
from .gateway import Gateway, CERTIFICATES_TABLE, FORGES_TABLE, LICENSES_TABLE
from .models import (
    Actor,
    AssetType,
    CertificateStatus,
    Forge,
    License,
    LicenseStatus,
    Permission,
    ReasonCode,
    Role,
    ServiceResult,
    utcnow,
)
from .rbac import can_download_asset, has_permission

logger = logging.getLogger("licensing")

# Audit actions
LICENSE_ACTIVATED = "LICENSE_ACTIVATED"
LICENSE_REVOKED = "LICENSE_REVOKED"
ASSET_DOWNLOADED = "ASSET_DOWNLOADED"


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps are taken to be UTC.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def effective_status(license: License, now: Optional[datetime] = None) -> LicenseStatus:
    """Stored status adjusted for the validity window."""
    if license.status != LicenseStatus.ACTIVE:
        return license.status
    moment = _as_utc(now or utcnow())
    if moment < _as_utc(license.valid_from) or moment > _as_utc(license.valid_until):
        return LicenseStatus.EXPIRED
    return LicenseStatus.ACTIVE


class LicenseService:
    """License grant, revocation and download accounting."""

    def __init__(self, gateway: Gateway, audit: AuditSink):
        self._gateway = gateway
        self._audit = audit

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_license(self, license_id: str) -> Optional[License]:
        row = await self._gateway.get(LICENSES_TABLE, license_id)
        return License.from_dict(row) if row else None

    async def list_licenses(
        self,
        actor: Actor,
        status: Optional[LicenseStatus] = None,
        limit: int = 100,
    ) -> ServiceResult:
        """
        Licenses visible to the actor: admins see all, models their own,
        brands the ones granted to them.
        """
        if not has_permission(actor.role, Permission.LICENSES_READ):
            return ServiceResult.fail(ReasonCode.FORBIDDEN, "Reading licenses requires 'licenses:read'")

        filters: Dict[str, Any] = {}
        if status:
            filters["status"] = status.value
        if actor.role == Role.MODEL:
            if not actor.linked_model_id:
                return ServiceResult.ok([])
            filters["model_id"] = actor.linked_model_id
        elif actor.role == Role.BRAND:
            if not actor.linked_brand_id:
                return ServiceResult.ok([])
            filters["client_id"] = actor.linked_brand_id

        rows = await self._gateway.select(LICENSES_TABLE, filters=filters, limit=limit)
        return ServiceResult.ok([License.from_dict(row) for row in rows])

    # -------------------------------------------------------------------------
    # Grant / Revoke
    # -------------------------------------------------------------------------

    async def create_license(
        self,
        actor: Actor,
        forge_id: str,
        client_id: str,
        valid_from: datetime,
        valid_until: datetime,
        usage_type: str = "commercial",
        territory: Optional[List[str]] = None,
        max_downloads: Optional[int] = None,
    ) -> ServiceResult:
        """
        License a certified forge's digital twin to a brand.

        Args:
            actor: Caller; needs licenses:create
            forge_id: Certified forge whose twin is licensed
            client_id: Brand receiving the license
            valid_from: Start of the validity window (naive means UTC)
            valid_until: End of the validity window, after valid_from
            usage_type: Free-form usage label, "commercial" by default
            territory: Region codes the license covers
            max_downloads: Download cap, None for unlimited

        Returns:
            ServiceResult with the new License. Uncertified forges and twins
            with a revoked certificate are INVALID_REQUEST.
        """
        if not has_permission(actor.role, Permission.LICENSES_CREATE):
            return ServiceResult.fail(ReasonCode.FORBIDDEN, "Creating licenses requires 'licenses:create'")

        valid_from = _as_utc(valid_from)
        valid_until = _as_utc(valid_until)
        if valid_until <= valid_from:
            return ServiceResult.fail(ReasonCode.INVALID_REQUEST, "valid_until must be after valid_from")
        if max_downloads is not None and max_downloads < 0:
            return ServiceResult.fail(ReasonCode.INVALID_REQUEST, "max_downloads cannot be negative")

        row = await self._gateway.get(FORGES_TABLE, forge_id)
        if not row:
            return ServiceResult.fail(ReasonCode.NOT_FOUND, f"Forge {forge_id} not found")
        forge = Forge.from_dict(row)
        if not forge.is_certified or not forge.digital_twin_id:
            return ServiceResult.fail(
                ReasonCode.INVALID_REQUEST,
                f"Forge {forge_id} is not certified; only digital twins can be licensed",
            )
        revoked = await self._gateway.count(CERTIFICATES_TABLE, {
            "digital_twin_id": forge.digital_twin_id,
            "status": CertificateStatus.REVOKED.value,
        })
        if revoked:
            return ServiceResult.fail(
                ReasonCode.INVALID_REQUEST,
                f"Certificate for {forge.digital_twin_id} has been revoked",
            )

        license = License(
            id=str(uuid.uuid4()),
            model_id=forge.model_id,
            digital_twin_id=forge.digital_twin_id,
            client_id=client_id,
            valid_from=valid_from,
            valid_until=valid_until,
            usage_type=usage_type,
            territory=territory or [],
            max_downloads=max_downloads,
            created_by=actor.actor_id,
            created_at=utcnow(),
        )
        await self._gateway.insert(LICENSES_TABLE, license.to_dict())

        self._audit.record_action(
            actor, LICENSE_ACTIVATED, LICENSES_TABLE, license.id,
            metadata={
                "digital_twin_id": license.digital_twin_id,
                "model_id": license.model_id,
                "client_id": client_id,
            },
        )
        logger.info(f"License {license.id} granted on {license.digital_twin_id} to {client_id}")
        return ServiceResult.ok(license, message=f"License created: {license.id}")

    async def revoke_license(self, license_id: str, reason: str, actor: Actor) -> ServiceResult:
        """
        Revoke a license once.

        Args:
            license_id: ID of the license
            reason: Kept on the record and in the audit trail
            actor: Caller; needs licenses:revoke

        Returns:
            ServiceResult with the revoked License; IMMUTABLE if already revoked
        """
        if not has_permission(actor.role, Permission.LICENSES_REVOKE):
            return ServiceResult.fail(ReasonCode.FORBIDDEN, "Revoking licenses requires 'licenses:revoke'")

        license = await self.get_license(license_id)
        if not license:
            return ServiceResult.fail(ReasonCode.NOT_FOUND, f"License {license_id} not found")
        if license.status == LicenseStatus.REVOKED:
            return ServiceResult.fail(ReasonCode.IMMUTABLE, f"License {license_id} is already revoked")

        write = await self._gateway.update(
            LICENSES_TABLE,
            license_id,
            {
                "status": LicenseStatus.REVOKED.value,
                "revoked_at": utcnow().isoformat(),
                "revoked_reason": reason,
            },
            expected={"status": license.status.value},
        )
        if not write.success:
            return ServiceResult.fail(write.reason_code, write.message)

        self._audit.record_action(
            actor, LICENSE_REVOKED, LICENSES_TABLE, license_id,
            metadata={"digital_twin_id": license.digital_twin_id, "reason": reason},
        )
        logger.info(f"License {license_id} revoked (by: {actor.actor_id})")
        return ServiceResult.ok(License.from_dict(write.data), message=f"License {license_id} revoked")

    # -------------------------------------------------------------------------
    # Downloads
    # -------------------------------------------------------------------------

    async def authorize_download(
        self,
        license_id: str,
        asset_type: AssetType,
        actor: Actor,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """
        Decide a download under a license and count it when allowed.

        A brand may only draw on its own licenses; the download cap, when
        set, is enforced with a conditional increment.
        """
        license = await self.get_license(license_id)
        if not license:
            return ServiceResult.fail(ReasonCode.NOT_FOUND, f"License {license_id} not found")

        status = effective_status(license, now)
        if not can_download_asset(actor.role, asset_type, status):
            return ServiceResult.fail(
                ReasonCode.FORBIDDEN,
                f"Download of {asset_type.value} asset not permitted (license status: {status.value})",
            )

        if actor.role == Role.BRAND and actor.linked_brand_id != license.client_id:
            return ServiceResult.fail(ReasonCode.FORBIDDEN, "License belongs to a different brand")

        if license.max_downloads is not None and license.current_downloads >= license.max_downloads:
            return ServiceResult.fail(
                ReasonCode.LIMIT_REACHED,
                f"Download limit reached ({license.max_downloads})",
            )

        write = await self._gateway.update(
            LICENSES_TABLE,
            license_id,
            {"current_downloads": license.current_downloads + 1},
            expected={"current_downloads": license.current_downloads},
        )
        if not write.success:
            return ServiceResult.fail(write.reason_code, write.message)

        self._audit.record_action(
            actor, ASSET_DOWNLOADED, LICENSES_TABLE, license_id,
            metadata={"asset_type": asset_type.value, "digital_twin_id": license.digital_twin_id},
        )
        return ServiceResult.ok(License.from_dict(write.data), message="Download authorized")
