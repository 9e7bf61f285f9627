"""
Core Package

Contains the venue-agnostic building blocks of the runtime:
- ExchangeInterface: Capability-grouped contract every venue adapter implements
- ExchangeManager: Thread-safe registry that owns the loaded adapters
- Schemas: Pydantic models for instruments, market data, orders and status
- Errors: Categorized error taxonomy shared by every component
- Config / Logging / Certs: Settings, logger setup and TLS material

Nothing in this package starts tasks; the services package does.
"""
