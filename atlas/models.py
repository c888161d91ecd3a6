"""
ATLAS Domain Model

Enums and records shared by the lifecycle guard, the access policy and the
services. Records round-trip through plain dicts so any gateway can store them.

Role vocabulary is LOCKED to admin / model / brand / viewer. There is no
second naming scheme and no translation layer.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class Role(str, Enum):
    """Canonical actor roles. A role is fixed for the duration of a session."""
    ADMIN = "admin"
    MODEL = "model"
    BRAND = "brand"
    VIEWER = "viewer"

    @classmethod
    def parse(cls, value: Any) -> Optional["Role"]:
        """Return the matching role, or None for anything unrecognised."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


class ForgeState(str, Enum):
    """
    Forge pipeline states, declared in strict forward order.

    CERTIFIED is terminal: a certified forge is never modified again.
    """
    CREATED = "CREATED"
    CAPTURED = "CAPTURED"
    NORMALIZED = "NORMALIZED"
    SEEDED = "SEEDED"
    PARAMETRIZED = "PARAMETRIZED"
    VALIDATED = "VALIDATED"
    CERTIFIED = "CERTIFIED"

    @classmethod
    def parse(cls, value: Any) -> Optional["ForgeState"]:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            return None


# Fixed contract; index arithmetic in the guard depends on this order.
FORGE_STATES: Tuple[ForgeState, ...] = tuple(ForgeState)


class Permission(str, Enum):
    """Named capabilities. The role mapping lives in rbac.PERMISSIONS."""
    MODELS_READ = "models:read"
    MODELS_CREATE = "models:create"
    MODELS_UPDATE = "models:update"
    MODELS_DELETE = "models:delete"
    MODELS_ARCHIVE = "models:archive"

    FORGES_READ = "forges:read"
    FORGES_CREATE = "forges:create"
    FORGES_TRANSITION = "forges:transition"
    FORGES_ROLLBACK = "forges:rollback"
    FORGES_DELETE = "forges:delete"

    CAPTURES_READ = "captures:read"
    CAPTURES_UPLOAD = "captures:upload"
    CAPTURE_VIEWER_READ = "capture_viewer:read"

    VALIDATION_EXECUTE = "validation:execute"

    CERTIFICATION_EXECUTE = "certification:execute"
    CERTIFICATION_REVOKE = "certification:revoke"

    VTP_GENERATE = "vtp:generate"
    VTP_READ = "vtp:read"
    VTG_GENERATE = "vtg:generate"
    VTG_READ = "vtg:read"

    ASSETS_READ = "assets:read"
    ASSETS_DOWNLOAD = "assets:download"

    LICENSES_READ = "licenses:read"
    LICENSES_CREATE = "licenses:create"
    LICENSES_REVOKE = "licenses:revoke"

    CAREER_READ = "career:read"
    CAREER_CONSENTS = "career:consents"

    AUDIT_READ = "audit:read"
    AUDIT_EXPORT = "audit:export"

    SYSTEM_READ = "system:read"
    SYSTEM_CONFIGURE = "system:configure"

    @classmethod
    def parse(cls, value: Any) -> Optional["Permission"]:
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


class AssetType(str, Enum):
    PREVIEW = "PREVIEW"  # view-only, never downloadable
    LICENSED = "LICENSED"


class LicenseStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class ModelStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    ARCHIVED = "archived"  # no new forges


class CaptureStatus(str, Enum):
    PENDING = "pending"
    VALIDATED = "validated"  # counts toward capture progress
    REJECTED = "rejected"


class CertificateStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


class ReasonCode(str, Enum):
    """
    Expected failure outcomes. Returned as values, never raised.
    """
    FORBIDDEN = "FORBIDDEN"  # actor lacks the required permission
    IMMUTABLE = "IMMUTABLE"  # entity is in a terminal/locked state
    INVALID_TRANSITION = "INVALID_TRANSITION"  # target is not the immediate successor
    NOT_FOUND = "NOT_FOUND"  # entity does not exist
    CONFLICT = "CONFLICT"  # stored state changed since it was evaluated
    INVALID_REQUEST = "INVALID_REQUEST"  # malformed or inconsistent input
    LIMIT_REACHED = "LIMIT_REACHED"  # download cap exhausted


# -----------------------------------------------------------------------------
# Actor
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Actor:
    """An authenticated caller, as asserted by the upstream auth layer."""
    actor_id: str
    role: Optional[Role]
    name: str = ""
    linked_model_id: Optional[str] = None
    linked_brand_id: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.actor_id


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------
@dataclass
class ModelProfile:
    """
    A human model registered for identity certification.

    `internal_id` is the short code embedded in digital twin ids.
    """
    id: str
    internal_id: str
    full_name: str = ""
    status: ModelStatus = ModelStatus.ACTIVE
    consent_given: bool = False
    consent_date: Optional[datetime] = None
    email: str = ""
    phone: str = ""
    city: str = ""
    country: str = ""
    plan_type: str = "standard"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by: str = ""

    @property
    def is_archived(self) -> bool:
        return self.status == ModelStatus.ARCHIVED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "internal_id": self.internal_id,
            "full_name": self.full_name,
            "status": self.status.value,
            "consent_given": self.consent_given,
            "consent_date": _iso(self.consent_date),
            "email": self.email,
            "phone": self.phone,
            "city": self.city,
            "country": self.country,
            "plan_type": self.plan_type,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "created_by": self.created_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelProfile":
        return cls(
            id=data["id"],
            internal_id=data.get("internal_id") or "",
            full_name=data.get("full_name", ""),
            status=ModelStatus(data.get("status") or ModelStatus.ACTIVE.value),
            consent_given=bool(data.get("consent_given", False)),
            consent_date=_parse_dt(data.get("consent_date")),
            email=data.get("email") or "",
            phone=data.get("phone") or "",
            city=data.get("city") or "",
            country=data.get("country") or "",
            plan_type=data.get("plan_type") or "standard",
            created_at=_parse_dt(data.get("created_at")),
            updated_at=_parse_dt(data.get("updated_at")),
            created_by=data.get("created_by", ""),
        )


@dataclass
class Forge:
    """
    One model's progression through identity certification.

    Mutated only through the lifecycle guard; immutable once CERTIFIED.
    """
    id: str
    model_id: str
    state: ForgeState = ForgeState.CREATED
    capture_progress: int = 0
    digital_twin_id: Optional[str] = None
    seed_hash: Optional[str] = None
    certified_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by: str = ""
    version: int = 1

    @property
    def is_certified(self) -> bool:
        return self.state == ForgeState.CERTIFIED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "model_id": self.model_id,
            "state": self.state.value,
            "capture_progress": self.capture_progress,
            "digital_twin_id": self.digital_twin_id,
            "seed_hash": self.seed_hash,
            "certified_at": _iso(self.certified_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "created_by": self.created_by,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Forge":
        return cls(
            id=data["id"],
            model_id=data["model_id"],
            state=ForgeState(data.get("state", ForgeState.CREATED.value)),
            capture_progress=int(data.get("capture_progress", 0)),
            digital_twin_id=data.get("digital_twin_id"),
            seed_hash=data.get("seed_hash"),
            certified_at=_parse_dt(data.get("certified_at")),
            created_at=_parse_dt(data.get("created_at")),
            updated_at=_parse_dt(data.get("updated_at")),
            created_by=data.get("created_by", ""),
            version=int(data.get("version", 1)),
        )


@dataclass(frozen=True)
class ForgeUpdate:
    """
    Field values produced by a successful transition.

    Optional fields are only present when the transition mints them.
    """
    state: ForgeState
    updated_at: datetime
    seed_hash: Optional[str] = None
    digital_twin_id: Optional[str] = None
    certified_at: Optional[datetime] = None

    def to_fields(self) -> Dict[str, Any]:
        """Column updates for the gateway, omitting untouched fields."""
        fields: Dict[str, Any] = {
            "state": self.state.value,
            "updated_at": self.updated_at.isoformat(),
        }
        if self.seed_hash is not None:
            fields["seed_hash"] = self.seed_hash
        if self.digital_twin_id is not None:
            fields["digital_twin_id"] = self.digital_twin_id
        if self.certified_at is not None:
            fields["certified_at"] = self.certified_at.isoformat()
        return fields


@dataclass
class License:
    """Time-boxed grant of usage rights over a digital twin to a brand."""
    id: str
    model_id: str
    digital_twin_id: str
    client_id: str
    valid_from: datetime
    valid_until: datetime
    status: LicenseStatus = LicenseStatus.ACTIVE
    usage_type: str = "commercial"
    territory: List[str] = field(default_factory=list)
    max_downloads: Optional[int] = None
    current_downloads: int = 0
    created_by: str = ""
    created_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "model_id": self.model_id,
            "digital_twin_id": self.digital_twin_id,
            "client_id": self.client_id,
            "valid_from": self.valid_from.isoformat(),
            "valid_until": self.valid_until.isoformat(),
            "status": self.status.value,
            "usage_type": self.usage_type,
            "territory": list(self.territory),
            "max_downloads": self.max_downloads,
            "current_downloads": self.current_downloads,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "revoked_at": _iso(self.revoked_at),
            "revoked_reason": self.revoked_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "License":
        return cls(
            id=data["id"],
            model_id=data["model_id"],
            digital_twin_id=data["digital_twin_id"],
            client_id=data["client_id"],
            valid_from=datetime.fromisoformat(data["valid_from"]),
            valid_until=datetime.fromisoformat(data["valid_until"]),
            status=LicenseStatus(data.get("status", LicenseStatus.ACTIVE.value)),
            usage_type=data.get("usage_type", "commercial"),
            territory=list(data.get("territory", [])),
            max_downloads=data.get("max_downloads"),
            current_downloads=int(data.get("current_downloads", 0)),
            created_by=data.get("created_by", ""),
            created_at=_parse_dt(data.get("created_at")),
            revoked_at=_parse_dt(data.get("revoked_at")),
            revoked_reason=data.get("revoked_reason"),
        )


@dataclass
class Capture:
    """One uploaded capture image for a forge, pending review until validated or rejected."""
    id: str
    forge_id: str
    model_id: str
    angle: str
    file_name: str
    status: CaptureStatus = CaptureStatus.PENDING
    stage: str = "capture"
    mime_type: str = "image/jpeg"
    file_size: int = 0
    resolution_width: int = 0
    resolution_height: int = 0
    asset_url: str = ""
    uploaded_by: str = ""
    uploaded_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "forge_id": self.forge_id,
            "model_id": self.model_id,
            "angle": self.angle,
            "file_name": self.file_name,
            "status": self.status.value,
            "stage": self.stage,
            "mime_type": self.mime_type,
            "file_size": self.file_size,
            "resolution_width": self.resolution_width,
            "resolution_height": self.resolution_height,
            "asset_url": self.asset_url,
            "uploaded_by": self.uploaded_by,
            "uploaded_at": _iso(self.uploaded_at),
            "created_at": _iso(self.uploaded_at),
            "reviewed_by": self.reviewed_by,
            "reviewed_at": _iso(self.reviewed_at),
            "rejection_reason": self.rejection_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Capture":
        return cls(
            id=data["id"],
            forge_id=data["forge_id"],
            model_id=data.get("model_id", ""),
            angle=data.get("angle", ""),
            file_name=data.get("file_name", ""),
            status=CaptureStatus(data.get("status", CaptureStatus.PENDING.value)),
            stage=data.get("stage", "capture"),
            mime_type=data.get("mime_type", "image/jpeg"),
            file_size=int(data.get("file_size") or 0),
            resolution_width=int(data.get("resolution_width") or 0),
            resolution_height=int(data.get("resolution_height") or 0),
            asset_url=data.get("asset_url") or "",
            uploaded_by=data.get("uploaded_by", ""),
            uploaded_at=_parse_dt(data.get("uploaded_at")),
            reviewed_by=data.get("reviewed_by"),
            reviewed_at=_parse_dt(data.get("reviewed_at")),
            rejection_reason=data.get("rejection_reason"),
        )


@dataclass
class Certificate:
    """
    Certificate issued when a forge reaches CERTIFIED.

    `certificate_hash` and `verification_code` are opaque random tokens,
    not digests of anything. Revocation marks the certificate only; the
    certified forge itself stays untouched.
    """
    id: str
    forge_id: str
    model_id: str
    digital_twin_id: str
    certificate_hash: str
    verification_code: str
    model_name: str = ""
    plan_type: str = "standard"
    forge_version: int = 1
    status: CertificateStatus = CertificateStatus.ACTIVE
    issued_by: str = ""
    issued_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "forge_id": self.forge_id,
            "model_id": self.model_id,
            "digital_twin_id": self.digital_twin_id,
            "certificate_hash": self.certificate_hash,
            "verification_code": self.verification_code,
            "model_name": self.model_name,
            "plan_type": self.plan_type,
            "forge_version": self.forge_version,
            "status": self.status.value,
            "issued_by": self.issued_by,
            "issued_at": _iso(self.issued_at),
            "created_at": _iso(self.issued_at),
            "revoked_by": self.revoked_by,
            "revoked_at": _iso(self.revoked_at),
            "revoked_reason": self.revoked_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Certificate":
        return cls(
            id=data["id"],
            forge_id=data["forge_id"],
            model_id=data["model_id"],
            digital_twin_id=data["digital_twin_id"],
            certificate_hash=data["certificate_hash"],
            verification_code=data.get("verification_code", ""),
            model_name=data.get("model_name", ""),
            plan_type=data.get("plan_type") or "standard",
            forge_version=int(data.get("forge_version", 1)),
            status=CertificateStatus(data.get("status", CertificateStatus.ACTIVE.value)),
            issued_by=data.get("issued_by", ""),
            issued_at=_parse_dt(data.get("issued_at")),
            revoked_by=data.get("revoked_by"),
            revoked_at=_parse_dt(data.get("revoked_at")),
            revoked_reason=data.get("revoked_reason"),
        )


@dataclass(frozen=True)
class AuditRecord:
    """Immutable audit trail entry."""
    actor_id: str
    actor_name: str
    action: str
    target_table: str
    target_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "action": self.action,
            "target_table": self.target_table,
            "target_id": self.target_id,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditRecord":
        return cls(
            actor_id=data.get("actor_id", ""),
            actor_name=data.get("actor_name", ""),
            action=data.get("action", ""),
            target_table=data.get("target_table", ""),
            target_id=data.get("target_id", ""),
            metadata=data.get("metadata") or {},
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
        )


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class TransitionResult:
    """
    Outcome of a lifecycle guard evaluation.

    On success `update` holds the new field values; on failure `reason_code`
    says why and `update` is None.
    """
    success: bool
    from_state: ForgeState
    to_state: ForgeState
    message: str
    update: Optional[ForgeUpdate] = None
    reason_code: Optional[ReasonCode] = None

    @classmethod
    def ok(cls, current: ForgeState, target: ForgeState, update: ForgeUpdate) -> "TransitionResult":
        return cls(
            success=True,
            from_state=current,
            to_state=target,
            message=f"Transition allowed: {current.value} -> {target.value}",
            update=update,
        )

    @classmethod
    def fail(cls, current: ForgeState, target: ForgeState, code: ReasonCode, message: str) -> "TransitionResult":
        return cls(
            success=False,
            from_state=current,
            to_state=target,
            message=message,
            reason_code=code,
        )


@dataclass(frozen=True)
class ServiceResult:
    """Outcome of a service operation: success with data, or a reason code."""
    success: bool
    message: str
    data: Any = None
    reason_code: Optional[ReasonCode] = None

    @classmethod
    def ok(cls, data: Any = None, message: str = "OK") -> "ServiceResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, code: ReasonCode, message: str) -> "ServiceResult":
        return cls(success=False, message=message, reason_code=code)
