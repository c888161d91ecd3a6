"""
ATLAS API Router

FastAPI routes for:
- Model registry (create, update, archive, delete)
- Forge listing, creation, transitions, capture progress, deletion
- Capture upload records and review
- Digital twin lookup and certificate revocation
- Access checks for dashboards (permissions, route guard)
- License grant, revocation, downloads
- Audit trail and statistics
- Public read-only license, model and certificate endpoints (API key protected)

The caller's identity arrives in headers set by the upstream auth layer:
X-Actor-Id, X-Actor-Role, and optionally X-Actor-Name, X-Linked-Model-Id,
X-Linked-Brand-Id. Credentials are not verified here.
"""

import logging
import secrets
from datetime import datetime
from typing import Optional, Dict, Any, List

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field

from .forge_lifecycle import CAPTURE_TARGET, get_forge_actions
from .licensing import effective_status
from .models import (
    Actor,
    AssetType,
    CaptureStatus,
    CertificateStatus,
    ForgeState,
    LicenseStatus,
    ModelStatus,
    Permission,
    ReasonCode,
    Role,
    ServiceResult,
)
from .rbac import (
    can_access_route,
    can_use_guided_capture,
    can_use_manual_upload,
    has_permission,
    permissions_for_role,
)

logger = logging.getLogger("atlas_router")

router = APIRouter(tags=["ATLAS"])

# Reason code -> HTTP status
REASON_STATUS: Dict[ReasonCode, int] = {
    ReasonCode.FORBIDDEN: 403,
    ReasonCode.NOT_FOUND: 404,
    ReasonCode.IMMUTABLE: 409,
    ReasonCode.CONFLICT: 409,
    ReasonCode.LIMIT_REACHED: 409,
    ReasonCode.INVALID_TRANSITION: 422,
    ReasonCode.INVALID_REQUEST: 422,
}


# -----------------------------------------------------------------------------
# Request/Response Models
# -----------------------------------------------------------------------------
class CreateForgeRequest(BaseModel):
    model_id: str = Field(..., min_length=1)


class TransitionRequest(BaseModel):
    target_state: str = Field(..., description="One of CREATED..CERTIFIED")


class TransitionResponse(BaseModel):
    success: bool
    forge_id: str
    from_state: str
    to_state: str
    message: str
    seed_hash: Optional[str] = None
    digital_twin_id: Optional[str] = None
    certified_at: Optional[str] = None


class ProgressRequest(BaseModel):
    delta: int = Field(..., ge=-CAPTURE_TARGET, le=CAPTURE_TARGET)


class CreateModelRequest(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=200)
    email: str = ""
    phone: str = ""
    city: str = ""
    country: str = ""
    plan_type: str = "standard"
    consent_given: bool = False
    internal_id: Optional[str] = Field(None, min_length=1, max_length=16, description="Defaults to the next free sequence number")


class UpdateModelRequest(BaseModel):
    full_name: Optional[str] = Field(None, min_length=1, max_length=200)
    email: Optional[str] = None
    phone: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    plan_type: Optional[str] = None
    consent_given: Optional[bool] = None


class RecordCaptureRequest(BaseModel):
    angle: str = Field(..., min_length=1, max_length=50)
    file_name: str = Field(..., min_length=1, max_length=255)
    mime_type: str = "image/jpeg"
    file_size: int = Field(0, ge=0)
    resolution_width: int = Field(0, ge=0)
    resolution_height: int = Field(0, ge=0)
    stage: str = "capture"
    asset_url: str = ""


class RejectCaptureRequest(BaseModel):
    reason: str = Field("", max_length=500)


class RevokeCertificateRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class CreateLicenseRequest(BaseModel):
    forge_id: str = Field(..., min_length=1)
    client_id: str = Field(..., min_length=1, description="Brand id the license is granted to")
    valid_from: datetime
    valid_until: datetime
    usage_type: str = "commercial"
    territory: List[str] = Field(default_factory=list)
    max_downloads: Optional[int] = Field(None, ge=0)


class RevokeLicenseRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class DownloadRequest(BaseModel):
    asset_type: AssetType


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
    x_actor_name: Optional[str] = Header(None),
    x_linked_model_id: Optional[str] = Header(None),
    x_linked_brand_id: Optional[str] = Header(None),
) -> Actor:
    """Build the acting identity from request headers. 401 without an id."""
    if not x_actor_id:
        raise HTTPException(status_code=401, detail="Missing X-Actor-Id header")
    return Actor(
        actor_id=x_actor_id,
        role=Role.parse(x_actor_role),
        name=x_actor_name or "",
        linked_model_id=x_linked_model_id,
        linked_brand_id=x_linked_brand_id,
    )


def _fail(reason_code: Optional[ReasonCode], message: str) -> HTTPException:
    status = REASON_STATUS.get(reason_code, 400) if reason_code else 400
    return HTTPException(
        status_code=status,
        detail={"reason": reason_code.value if reason_code else None, "message": message},
    )


def _unwrap(result: ServiceResult) -> Any:
    if not result.success:
        raise _fail(result.reason_code, result.message)
    return result.data


def _require(actor: Actor, permission: Permission) -> None:
    if not has_permission(actor.role, permission):
        raise _fail(ReasonCode.FORBIDDEN, f"Requires '{permission.value}'")


def _require_api_key(request: Request, x_api_key: Optional[str], target: str) -> None:
    """401 unless X-API-Key matches the configured key. No key configured rejects all."""
    expected = request.app.state.settings.public_api_key
    if not expected or not x_api_key or not secrets.compare_digest(x_api_key, expected):
        logger.warning(f"Rejected public lookup of {target}: bad or missing API key")
        raise HTTPException(status_code=401, detail="Unauthorized")


def _parse_state(value: str) -> ForgeState:
    state = ForgeState.parse(value)
    if state is None:
        raise _fail(ReasonCode.INVALID_REQUEST, f"Unknown forge state: {value}")
    return state


# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------
@router.get("/models")
async def list_models(
    request: Request,
    status: Optional[ModelStatus] = None,
    limit: int = Query(100, ge=1, le=500),
    actor: Actor = Depends(get_actor),
):
    models = _unwrap(await request.app.state.model_registry.list_models(actor, status=status, limit=limit))
    return {"models": [m.to_dict() for m in models], "count": len(models)}


@router.post("/models", status_code=201)
async def create_model(
    body: CreateModelRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
):
    model = _unwrap(await request.app.state.model_registry.create_model(
        actor,
        full_name=body.full_name,
        email=body.email,
        phone=body.phone,
        city=body.city,
        country=body.country,
        plan_type=body.plan_type,
        consent_given=body.consent_given,
        internal_id=body.internal_id,
    ))
    return model.to_dict()


@router.get("/models/{model_id}")
async def get_model(model_id: str, request: Request, actor: Actor = Depends(get_actor)):
    registry = request.app.state.model_registry
    model = _unwrap(await registry.get_visible_model(model_id, actor))
    return {**model.to_dict(), "stats": await registry.get_model_stats(model_id)}


@router.patch("/models/{model_id}")
async def update_model(
    model_id: str,
    body: UpdateModelRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
):
    updates = body.model_dump(exclude_unset=True)
    model = _unwrap(await request.app.state.model_registry.update_model(model_id, updates, actor))
    return model.to_dict()


@router.post("/models/{model_id}/archive")
async def archive_model(model_id: str, request: Request, actor: Actor = Depends(get_actor)):
    model = _unwrap(await request.app.state.model_registry.archive_model(model_id, actor))
    return model.to_dict()


@router.delete("/models/{model_id}")
async def delete_model(model_id: str, request: Request, actor: Actor = Depends(get_actor)):
    _unwrap(await request.app.state.model_registry.delete_model(model_id, actor))
    return {"success": True, "model_id": model_id}


# -----------------------------------------------------------------------------
# Forges
# -----------------------------------------------------------------------------
@router.get("/forges")
async def list_forges(
    request: Request,
    model_id: Optional[str] = None,
    state: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    actor: Actor = Depends(get_actor),
):
    state_filter = _parse_state(state) if state else None
    forges = _unwrap(await request.app.state.forge_service.list_visible_forges(
        actor, model_id=model_id, state=state_filter, limit=limit,
    ))
    return {"forges": [f.to_dict() for f in forges], "count": len(forges)}


@router.post("/forges", status_code=201)
async def create_forge(
    body: CreateForgeRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
):
    forge = _unwrap(await request.app.state.forge_service.create_forge(body.model_id, actor))
    return forge.to_dict()


@router.get("/forges/{forge_id}")
async def get_forge(forge_id: str, request: Request, actor: Actor = Depends(get_actor)):
    forge = _unwrap(await request.app.state.forge_service.get_visible_forge(forge_id, actor))
    return forge.to_dict()


@router.get("/forges/{forge_id}/actions")
async def get_forge_guidance(forge_id: str, request: Request, actor: Actor = Depends(get_actor)):
    """Next step for the forge plus what the caller may do with it."""
    return _unwrap(await request.app.state.forge_service.get_guidance(forge_id, actor))


@router.post("/forges/{forge_id}/transition", response_model=TransitionResponse)
async def transition_forge(
    forge_id: str,
    body: TransitionRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
):
    """
    Advance a forge by exactly one state.

    403 FORBIDDEN, 404 NOT_FOUND, 409 IMMUTABLE / CONFLICT,
    422 INVALID_TRANSITION.
    """
    target = _parse_state(body.target_state)

    result = await request.app.state.forge_service.transition_forge(forge_id, target, actor)
    if not result.success:
        raise _fail(result.reason_code, result.message)

    update = result.update
    return TransitionResponse(
        success=True,
        forge_id=forge_id,
        from_state=result.from_state.value,
        to_state=result.to_state.value,
        message=result.message,
        seed_hash=update.seed_hash,
        digital_twin_id=update.digital_twin_id,
        certified_at=update.certified_at.isoformat() if update.certified_at else None,
    )


@router.post("/forges/{forge_id}/progress")
async def update_progress(
    forge_id: str,
    body: ProgressRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
):
    forge = _unwrap(await request.app.state.forge_service.update_capture_progress(forge_id, body.delta, actor))
    return forge.to_dict()


@router.delete("/forges/{forge_id}")
async def delete_forge(forge_id: str, request: Request, actor: Actor = Depends(get_actor)):
    _unwrap(await request.app.state.forge_service.delete_forge(forge_id, actor))
    return {"success": True, "forge_id": forge_id}


# -----------------------------------------------------------------------------
# Captures
# -----------------------------------------------------------------------------
@router.get("/forges/{forge_id}/captures")
async def list_captures(
    forge_id: str,
    request: Request,
    status: Optional[CaptureStatus] = None,
    actor: Actor = Depends(get_actor),
):
    captures = _unwrap(await request.app.state.capture_service.list_captures(forge_id, actor, status=status))
    return {"captures": [c.to_dict() for c in captures], "count": len(captures)}


@router.post("/forges/{forge_id}/captures", status_code=201)
async def record_capture(
    forge_id: str,
    body: RecordCaptureRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
):
    capture = _unwrap(await request.app.state.capture_service.record_capture(
        forge_id,
        actor,
        angle=body.angle,
        file_name=body.file_name,
        mime_type=body.mime_type,
        file_size=body.file_size,
        resolution_width=body.resolution_width,
        resolution_height=body.resolution_height,
        stage=body.stage,
        asset_url=body.asset_url,
    ))
    return capture.to_dict()


@router.post("/captures/{capture_id}/validate")
async def validate_capture(capture_id: str, request: Request, actor: Actor = Depends(get_actor)):
    """Accept a capture and recount the forge's capture progress."""
    review = _unwrap(await request.app.state.capture_service.validate_capture(capture_id, actor))
    return {"capture": review["capture"].to_dict(), "capture_progress": review["forge"].capture_progress}


@router.post("/captures/{capture_id}/reject")
async def reject_capture(
    capture_id: str,
    body: RejectCaptureRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
):
    review = _unwrap(await request.app.state.capture_service.reject_capture(capture_id, actor, body.reason))
    return {"capture": review["capture"].to_dict(), "capture_progress": review["forge"].capture_progress}


# -----------------------------------------------------------------------------
# Digital Twins & Certificates
# -----------------------------------------------------------------------------
@router.get("/twins/{digital_twin_id}")
async def get_twin(digital_twin_id: str, request: Request, actor: Actor = Depends(get_actor)):
    """Certified forge and certificate behind a digital twin id."""
    twin = _unwrap(await request.app.state.forge_service.get_visible_twin(digital_twin_id, actor))
    certificate = twin["certificate"]
    return {
        "digital_twin_id": digital_twin_id,
        "forge": twin["forge"].to_dict(),
        "certificate": certificate.to_dict() if certificate else None,
    }


@router.get("/certificates")
async def list_certificates(
    request: Request,
    model_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    actor: Actor = Depends(get_actor),
):
    _require(actor, Permission.CERTIFICATION_EXECUTE)
    certificates = await request.app.state.certificate_service.list_certificates(model_id=model_id, limit=limit)
    return {"certificates": [c.to_dict() for c in certificates], "count": len(certificates)}


@router.post("/certificates/{certificate_id}/revoke")
async def revoke_certificate(
    certificate_id: str,
    body: RevokeCertificateRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
):
    certificate = _unwrap(await request.app.state.certificate_service.revoke_certificate(
        certificate_id, body.reason, actor,
    ))
    return certificate.to_dict()


# -----------------------------------------------------------------------------
# Access Checks
# -----------------------------------------------------------------------------
@router.get("/access/permissions")
async def get_permissions(x_actor_role: Optional[str] = Header(None)):
    role = Role.parse(x_actor_role)
    return {
        "role": role.value if role else None,
        "permissions": permissions_for_role(role),
        "guided_capture": can_use_guided_capture(role),
        "manual_upload": can_use_manual_upload(role),
    }


@router.get("/access/route")
async def check_route(
    path: str = Query(..., min_length=1),
    x_actor_role: Optional[str] = Header(None),
):
    return {"path": path, "allowed": can_access_route(x_actor_role, path)}


@router.get("/access/forge-actions")
async def forge_actions_for_state(state: str, x_actor_role: Optional[str] = Header(None)):
    return get_forge_actions(x_actor_role, _parse_state(state)).to_dict()


# -----------------------------------------------------------------------------
# Licenses
# -----------------------------------------------------------------------------
@router.get("/licenses")
async def list_licenses(
    request: Request,
    status: Optional[LicenseStatus] = None,
    limit: int = Query(100, ge=1, le=500),
    actor: Actor = Depends(get_actor),
):
    licenses = _unwrap(await request.app.state.license_service.list_licenses(actor, status=status, limit=limit))
    return {
        "licenses": [
            {**lic.to_dict(), "effective_status": effective_status(lic).value}
            for lic in licenses
        ],
        "count": len(licenses),
    }


@router.post("/licenses", status_code=201)
async def create_license(
    body: CreateLicenseRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
):
    license = _unwrap(await request.app.state.license_service.create_license(
        actor,
        forge_id=body.forge_id,
        client_id=body.client_id,
        valid_from=body.valid_from,
        valid_until=body.valid_until,
        usage_type=body.usage_type,
        territory=body.territory,
        max_downloads=body.max_downloads,
    ))
    return license.to_dict()


@router.post("/licenses/{license_id}/revoke")
async def revoke_license(
    license_id: str,
    body: RevokeLicenseRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
):
    license = _unwrap(await request.app.state.license_service.revoke_license(license_id, body.reason, actor))
    return license.to_dict()


@router.post("/licenses/{license_id}/download")
async def download_asset(
    license_id: str,
    body: DownloadRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
):
    license = _unwrap(await request.app.state.license_service.authorize_download(license_id, body.asset_type, actor))
    return {
        "authorized": True,
        "license_id": license_id,
        "current_downloads": license.current_downloads,
        "max_downloads": license.max_downloads,
    }


# -----------------------------------------------------------------------------
# Audit & Stats
# -----------------------------------------------------------------------------
@router.get("/audit")
async def get_audit_log(
    request: Request,
    limit: int = Query(100, ge=1, le=1000),
    actor_id: Optional[str] = None,
    target_id: Optional[str] = None,
    actor: Actor = Depends(get_actor),
):
    _require(actor, Permission.AUDIT_READ)
    records = request.app.state.audit.recent(limit=limit, actor_id=actor_id, target_id=target_id)
    return {"records": [r.to_dict() for r in records], "count": len(records)}


@router.get("/stats")
async def get_stats(request: Request, actor: Actor = Depends(get_actor)):
    _require(actor, Permission.SYSTEM_READ)
    return await request.app.state.forge_service.get_stats()


# -----------------------------------------------------------------------------
# Public API (API key)
# -----------------------------------------------------------------------------
@router.get("/public/licenses/{license_id}")
async def public_license(
    license_id: str,
    request: Request,
    x_api_key: Optional[str] = Header(None),
):
    """
    License verification for external partners.

    Requires X-API-Key. With no key configured every call is rejected.
    """
    _require_api_key(request, x_api_key, f"license {license_id}")

    license = await request.app.state.license_service.get_license(license_id)
    if not license:
        raise HTTPException(status_code=404, detail="License not found")

    return {
        "id": license.id,
        "status": effective_status(license).value,
        "usage_type": license.usage_type,
        "valid_from": license.valid_from.isoformat(),
        "valid_until": license.valid_until.isoformat(),
        "territory": license.territory,
        "max_downloads": license.max_downloads,
        "current_downloads": license.current_downloads,
        "model": {"id": license.model_id},
        "client": {"id": license.client_id},
        "digital_twin_id": license.digital_twin_id,
    }


@router.get("/public/models/{model_id}")
async def public_model(
    model_id: str,
    request: Request,
    x_api_key: Optional[str] = Header(None),
):
    """
    Model profile for external partners, with capture and license counts.

    Contact details (email, phone) are not exposed.
    """
    _require_api_key(request, x_api_key, f"model {model_id}")

    registry = request.app.state.model_registry
    model = await registry.get_model(model_id)
    if not model:
        raise HTTPException(status_code=404, detail="Model not found")

    return {
        "id": model.id,
        "full_name": model.full_name,
        "city": model.city,
        "country": model.country,
        "status": model.status.value,
        "plan_type": model.plan_type,
        "created_at": model.created_at.isoformat() if model.created_at else None,
        "stats": await registry.get_model_stats(model_id),
    }


@router.get("/public/certificates/{verification_code}")
async def public_certificate(
    verification_code: str,
    request: Request,
    x_api_key: Optional[str] = Header(None),
):
    """Check a certificate by the verification code printed on it."""
    _require_api_key(request, x_api_key, "certificate")

    certificate = await request.app.state.certificate_service.get_certificate_by_verification_code(verification_code)
    if not certificate:
        raise HTTPException(status_code=404, detail="Certificate not found")

    return {
        "digital_twin_id": certificate.digital_twin_id,
        "model_name": certificate.model_name,
        "status": certificate.status.value,
        "valid": certificate.status == CertificateStatus.ACTIVE,
        "issued_at": certificate.issued_at.isoformat() if certificate.issued_at else None,
        "revoked_at": certificate.revoked_at.isoformat() if certificate.revoked_at else None,
    }
