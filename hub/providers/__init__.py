"""Provider adapters.

Each provider is one concrete Integration built from an injected
IntegrationContext. ``ledger`` is the reference adapter and exercises
every part of the contract.
"""
