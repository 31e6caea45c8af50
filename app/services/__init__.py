"""
Service Organization
====================
Services are wired once by ``ServiceContainer`` and injected into each
other through their constructors; none of them is a module-level singleton.

**authorization/**
  The authorization engine and the role → permission table.

**dispatch/**
  The command dispatcher, per-device serialization and the retry policy.

Top-level modules hold the shared device state cache, the audit log and the
``AccessService`` facade used by the HTTP layer.
"""
