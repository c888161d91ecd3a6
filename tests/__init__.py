"""
Test Suite for ATLAS Forge Control Plane

This package contains all tests for the service components:
- lifecycle guard, access policy
- forge and license services, gateways, audit sink
- HTTP API
"""
