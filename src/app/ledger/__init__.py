"""Ledger sync module -- bidirectional sync between clients and the external ledger.

Provides SQLAlchemy models (clients, mappings, run log, queue, conflicts,
history, bridge config), Pydantic schemas, LedgerRepository with
tenant-scoped transactions, and the engine services: IngestionMatcher
(pull), SyncQueue, DispatchWorker and PollingTransport (push),
ConflictResolver, BridgeConfigService, ClientChangeTracker and the
AutoSyncScheduler.
"""
