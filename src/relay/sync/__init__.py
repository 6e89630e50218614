"""Sync orchestration engine -- BigCommerce to HubSpot and back.

Components, leaf-first:
- BackoffExecutor: exponential-backoff retry around every vendor call
- mapper: pure entity translation between the two platforms
- SyncAuditLog: fail-open record of every sync attempt
- StageMappingTable: cached deal-stage to order-status lookup
- ForwardSyncOrchestrator / ReverseSyncOrchestrator: the sync pipelines
- SyncDispatcher: fire-and-forget entry points, manual retry, reporting
"""
