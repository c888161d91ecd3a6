"""
ATLAS Forge Control Plane

Decision core and HTTP service for the digital twin lifecycle of human models.
Handles forge state progression, role-based access decisions, licensing of
certified twins to brands, and the audit trail around each of them.

Components:
- Lifecycle Guard (forge_lifecycle): deterministic 7-state forge state machine
  * CREATED → CAPTURED → NORMALIZED → SEEDED → PARAMETRIZED → VALIDATED → CERTIFIED
  * Single-step forward transitions only (no skipping, no lateral moves)
  * CERTIFIED is terminal and immutable
  * Seed hash minted on SEEDED, digital twin id minted on CERTIFIED
  * Pure: returns a description of the new field values, performs no I/O

- Access Policy (rbac): static permission table for admin / model / brand / viewer
  * Relationship-scoped digital twin access (own twin, licensed twin)
  * Asset download gating (previews are never downloadable)
  * Route guard table with exact and parameterized matches
  * Unmapped routes are ALLOWED (fail-open default, covered by tests)

- Model Registry (model_registry): model create, update, archive, delete, stats
- Forge Service (forge_service): guard evaluation + conditional persistence + audit
- Capture Service (captures): capture records and review; drives capture progress
- Certification (certification): certificates issued on CERTIFIED, revocation
- License Service (licensing): license grant, revocation, download accounting
- Persistence Gateway (gateway): in-memory and atomic JSON-file implementations;
  an unreadable state file raises StateLoadError instead of reading as empty
- Audit Sink (audit): append-only JSONL trail, fire-and-forget
- HTTP API (main, router): FastAPI application
"""

__version__ = "0.4.0"

SERVICE_NAME = "atlas-forge"
SERVICE_FULL_NAME = f"ATLAS Forge Control Plane v{__version__}"
