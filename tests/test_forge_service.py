"""
Unit Tests for the Forge Service

Test coverage for:
- Forge creation and transitions through the gateway
- Conditional updates (concurrent transitions, exactly one winner)
- Audit records for every successful mutation
- Capture progress and deletion rules
- Visibility scoping per role
- Statistics
"""

import asyncio
import re

from atlas.certification import CERTIFICATE_ISSUED
from atlas.forge_lifecycle import FORGE_STATE_CHANGED
from atlas.forge_service import FORGE_CREATED, FORGE_DELETED, FORGE_PROGRESS_UPDATED, ForgeService
from atlas.gateway import FORGES_TABLE, MODELS_TABLE, InMemoryGateway
from atlas.models import FORGE_STATES, ForgeState, LicenseStatus, ModelStatus, ReasonCode

from tests.conftest import (
    ADMIN,
    BRAND,
    MODEL,
    MODEL_ID,
    OTHER_BRAND,
    OTHER_MODEL_ID,
    VIEWER,
    async_test,
    make_forge,
    make_license,
    seed_rows,
)


def service_with(audit_sink, forges=(), licenses=()) -> ForgeService:
    """Helper to build a service over a seeded in-memory gateway."""
    return ForgeService(InMemoryGateway(seed=seed_rows(forges, licenses)), audit_sink)


class InterleavingGateway(InMemoryGateway):
    """Yields after every read so concurrent callers all see the same snapshot."""

    async def get(self, table, record_id):
        row = await super().get(table, record_id)
        await asyncio.sleep(0)
        return row


# -----------------------------------------------------------------------------
# Test: Creation
# -----------------------------------------------------------------------------
class TestCreateForge:

    @async_test
    async def test_admin_creates_forge(self, forge_service, audit_sink):
        result = await forge_service.create_forge(MODEL_ID, ADMIN)
        assert result.success
        forge = result.data
        assert forge.state == ForgeState.CREATED
        assert forge.capture_progress == 0
        assert forge.created_by == ADMIN.actor_id

        stored = await forge_service.get_forge(forge.id)
        assert stored.model_id == MODEL_ID

        records = audit_sink.recent()
        assert records[0].action == FORGE_CREATED
        assert records[0].target_id == forge.id
        assert records[0].actor_name == "Ada Admin"

    @async_test
    async def test_unknown_model(self, forge_service):
        result = await forge_service.create_forge("ghost", ADMIN)
        assert result.reason_code == ReasonCode.NOT_FOUND

    @async_test
    async def test_archived_model_gets_no_new_forges(self, audit_sink):
        gateway = InMemoryGateway(seed=seed_rows())
        await gateway.update(MODELS_TABLE, MODEL_ID, {"status": ModelStatus.ARCHIVED.value})
        result = await ForgeService(gateway, audit_sink).create_forge(MODEL_ID, ADMIN)
        assert result.reason_code == ReasonCode.INVALID_REQUEST
        assert await gateway.count(FORGES_TABLE) == 0

    @async_test
    async def test_non_admin_forbidden(self, forge_service, audit_sink):
        for actor in (MODEL, BRAND, VIEWER):
            result = await forge_service.create_forge(MODEL_ID, actor)
            assert result.reason_code == ReasonCode.FORBIDDEN
        assert audit_sink.recent() == []


# -----------------------------------------------------------------------------
# Test: Transitions
# -----------------------------------------------------------------------------
class TestTransitionForge:

    @async_test
    async def test_advance_persists_and_audits(self, audit_sink):
        service = service_with(audit_sink, forges=[make_forge()])
        result = await service.transition_forge("forge-1", ForgeState.CAPTURED, ADMIN)
        assert result.success

        forge = await service.get_forge("forge-1")
        assert forge.state == ForgeState.CAPTURED
        assert forge.version == 2

        record = audit_sink.recent()[0]
        assert record.action == FORGE_STATE_CHANGED
        assert record.target_table == "forges"
        assert record.metadata == {
            "model_id": MODEL_ID,
            "from_state": "CREATED",
            "to_state": "CAPTURED",
        }

    @async_test
    async def test_full_pipeline_certifies_with_model_internal_id(self, audit_sink):
        service = service_with(audit_sink, forges=[make_forge()])
        for target in FORGE_STATES[1:]:
            result = await service.transition_forge("forge-1", target, ADMIN)
            assert result.success, result.message

        forge = await service.get_forge("forge-1")
        assert forge.is_certified
        assert re.match(r"^DTW-\d{4}-042-[A-Z0-9]{4}$", forge.digital_twin_id)
        assert forge.certified_at is not None
        assert re.match(r"^sha256:[0-9a-f]{64}$", forge.seed_hash)
        actions = [record.action for record in audit_sink.recent()]
        assert actions.count(FORGE_STATE_CHANGED) == len(FORGE_STATES) - 1
        assert actions[0] == CERTIFICATE_ISSUED

    @async_test
    async def test_model_without_internal_id_uses_default(self, audit_sink):
        forge = make_forge(model_id=OTHER_MODEL_ID, state=ForgeState.VALIDATED)
        service = service_with(audit_sink, forges=[forge])
        result = await service.transition_forge("forge-1", ForgeState.CERTIFIED, ADMIN)
        assert "-000-" in result.update.digital_twin_id

    @async_test
    async def test_seed_hash_not_overwritten(self, audit_sink):
        existing = "sha256:" + "b" * 64
        service = service_with(audit_sink, forges=[make_forge(state=ForgeState.NORMALIZED, seed_hash=existing)])
        await service.transition_forge("forge-1", ForgeState.SEEDED, ADMIN)
        assert (await service.get_forge("forge-1")).seed_hash == existing

    @async_test
    async def test_rejections_write_nothing(self, audit_sink):
        service = service_with(audit_sink, forges=[
            make_forge(),
            make_forge("forge-2", state=ForgeState.CERTIFIED, digital_twin_id="DTW-2026-042-ZZZZ"),
        ])

        skip = await service.transition_forge("forge-1", ForgeState.NORMALIZED, ADMIN)
        assert skip.reason_code == ReasonCode.INVALID_TRANSITION

        brand = await service.transition_forge("forge-1", ForgeState.CAPTURED, BRAND)
        assert brand.reason_code == ReasonCode.FORBIDDEN

        frozen = await service.transition_forge("forge-2", ForgeState.CERTIFIED, ADMIN)
        assert frozen.reason_code == ReasonCode.IMMUTABLE

        assert (await service.get_forge("forge-1")).state == ForgeState.CREATED
        assert (await service.get_forge("forge-1")).version == 1
        assert audit_sink.recent() == []

    @async_test
    async def test_missing_forge(self, forge_service):
        result = await forge_service.transition_forge("nope", ForgeState.CAPTURED, ADMIN)
        assert result.success is False
        assert result.reason_code == ReasonCode.NOT_FOUND

    @async_test
    async def test_concurrent_transitions_one_winner(self, audit_sink):
        service = service_with(audit_sink, forges=[make_forge()])
        results = await asyncio.gather(*[
            service.transition_forge("forge-1", ForgeState.CAPTURED, ADMIN)
            for _ in range(5)
        ])
        winners = [r for r in results if r.success]
        losers = [r for r in results if not r.success]
        assert len(winners) == 1
        assert all(r.reason_code in (ReasonCode.CONFLICT, ReasonCode.INVALID_TRANSITION) for r in losers)

        forge = await service.get_forge("forge-1")
        assert forge.state == ForgeState.CAPTURED
        assert forge.version == 2
        assert len(audit_sink.recent()) == 1

    @async_test
    async def test_stale_read_loses_with_conflict(self, audit_sink):
        gateway = InterleavingGateway(seed=seed_rows([make_forge()]))
        service = ForgeService(gateway, audit_sink)
        results = await asyncio.gather(*[
            service.transition_forge("forge-1", ForgeState.CAPTURED, ADMIN)
            for _ in range(3)
        ])
        assert sum(1 for r in results if r.success) == 1
        assert [r.reason_code for r in results if not r.success] == [ReasonCode.CONFLICT] * 2
        assert (await service.get_forge("forge-1")).version == 2
        assert len(audit_sink.recent()) == 1


# -----------------------------------------------------------------------------
# Test: Capture Progress
# -----------------------------------------------------------------------------
class TestCaptureProgress:

    @async_test
    async def test_progress_clamped_and_audited(self, audit_sink):
        service = service_with(audit_sink, forges=[make_forge(capture_progress=70)])
        result = await service.update_capture_progress("forge-1", 5, ADMIN)
        assert result.success
        assert result.data.capture_progress == 72

        record = audit_sink.recent()[0]
        assert record.action == FORGE_PROGRESS_UPDATED
        assert record.metadata == {"from": 70, "to": 72, "delta": 5}

    @async_test
    async def test_progress_floor(self, audit_sink):
        service = service_with(audit_sink, forges=[make_forge(capture_progress=2)])
        result = await service.update_capture_progress("forge-1", -10, ADMIN)
        assert result.data.capture_progress == 0

    @async_test
    async def test_certified_immutable(self, audit_sink):
        service = service_with(audit_sink, forges=[make_forge(state=ForgeState.CERTIFIED)])
        result = await service.update_capture_progress("forge-1", 1, ADMIN)
        assert result.reason_code == ReasonCode.IMMUTABLE

    @async_test
    async def test_model_cannot_upload(self, audit_sink):
        service = service_with(audit_sink, forges=[make_forge()])
        result = await service.update_capture_progress("forge-1", 1, MODEL)
        assert result.reason_code == ReasonCode.FORBIDDEN


# -----------------------------------------------------------------------------
# Test: Deletion
# -----------------------------------------------------------------------------
class TestDeleteForge:

    @async_test
    async def test_admin_deletes(self, audit_sink):
        service = service_with(audit_sink, forges=[make_forge(state=ForgeState.SEEDED)])
        result = await service.delete_forge("forge-1", ADMIN)
        assert result.success
        assert await service.get_forge("forge-1") is None
        assert audit_sink.recent()[0].action == FORGE_DELETED

    @async_test
    async def test_certified_never_deleted(self, audit_sink):
        service = service_with(audit_sink, forges=[make_forge(state=ForgeState.CERTIFIED)])
        result = await service.delete_forge("forge-1", ADMIN)
        assert result.reason_code == ReasonCode.IMMUTABLE
        assert await service.get_forge("forge-1") is not None

    @async_test
    async def test_missing_and_forbidden(self, forge_service):
        assert (await forge_service.delete_forge("nope", ADMIN)).reason_code == ReasonCode.NOT_FOUND
        assert (await forge_service.delete_forge("nope", BRAND)).reason_code == ReasonCode.FORBIDDEN


# -----------------------------------------------------------------------------
# Test: Visibility
# -----------------------------------------------------------------------------
class TestVisibility:

    TWIN_ID = "DTW-2026-042-AB12"

    def _service(self, audit_sink):
        return service_with(
            audit_sink,
            forges=[
                make_forge("forge-1", state=ForgeState.CERTIFIED, digital_twin_id=self.TWIN_ID),
                make_forge("forge-2", model_id=OTHER_MODEL_ID),
            ],
            licenses=[make_license(digital_twin_id=self.TWIN_ID)],
        )

    @async_test
    async def test_admin_sees_all(self, audit_sink):
        result = await self._service(audit_sink).list_visible_forges(ADMIN)
        assert {f.id for f in result.data} == {"forge-1", "forge-2"}

    @async_test
    async def test_model_sees_own(self, audit_sink):
        service = self._service(audit_sink)
        result = await service.list_visible_forges(MODEL)
        assert [f.id for f in result.data] == ["forge-1"]

        other = await service.list_visible_forges(MODEL, model_id=OTHER_MODEL_ID)
        assert other.data == []

        assert (await service.get_visible_forge("forge-2", MODEL)).reason_code == ReasonCode.FORBIDDEN

    @async_test
    async def test_brand_sees_licensed_twin_only(self, audit_sink):
        service = self._service(audit_sink)
        assert [f.id for f in (await service.list_visible_forges(BRAND)).data] == ["forge-1"]
        assert (await service.list_visible_forges(OTHER_BRAND)).data == []

    @async_test
    async def test_revoked_license_hides_twin(self, audit_sink):
        service = service_with(
            audit_sink,
            forges=[make_forge(state=ForgeState.CERTIFIED, digital_twin_id=self.TWIN_ID)],
            licenses=[make_license(digital_twin_id=self.TWIN_ID, status=LicenseStatus.REVOKED)],
        )
        assert (await service.get_visible_forge("forge-1", BRAND)).reason_code == ReasonCode.FORBIDDEN

    @async_test
    async def test_viewer_forbidden(self, audit_sink):
        result = await self._service(audit_sink).list_visible_forges(VIEWER)
        assert result.reason_code == ReasonCode.FORBIDDEN

    @async_test
    async def test_guidance_includes_actions(self, audit_sink):
        result = await self._service(audit_sink).get_guidance("forge-2", ADMIN)
        assert result.data["next_state"] == "CAPTURED"
        assert result.data["actions"]["can_advance"] is True


# -----------------------------------------------------------------------------
# Test: Statistics
# -----------------------------------------------------------------------------
class TestStats:

    @async_test
    async def test_counts(self, audit_sink):
        service = service_with(
            audit_sink,
            forges=[
                make_forge("f1", state=ForgeState.CERTIFIED, digital_twin_id="DTW-2026-042-AAAA"),
                make_forge("f2", state=ForgeState.SEEDED),
                make_forge("f3"),
            ],
            licenses=[make_license(), make_license("license-2", status=LicenseStatus.REVOKED)],
        )
        stats = await service.get_stats()
        assert stats["total_models"] == 2
        assert stats["total_forges"] == 3
        assert stats["certified_forges"] == 1
        assert stats["in_progress_forges"] == 2
        assert stats["forges_by_state"]["SEEDED"] == 1
        assert stats["forges_by_state"]["VALIDATED"] == 0
        assert stats["active_licenses"] == 1
        assert stats["total_captures"] == 0
        assert stats["certificates_issued"] == 0
