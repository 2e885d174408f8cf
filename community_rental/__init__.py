"""Booking engine and HTTP API for a community's shared rooms, sports equipment and games.

Modules:

- ``config``: settings loaded from environment variables.
- ``models``: SQLModel tables and request/response schemas.
- ``database``: engine, sessions and the item row lock.
- ``ledger``: committed-quantity queries over bookings.
- ``policy``: booking validation rules.
- ``state_machine``: booking statuses and legal transitions.
- ``lifecycle``: create / update / cancel / status-change operations.
- ``recurrence``: recurring administrative block expansion.
- ``notifications``, ``audit``, ``rate_limit``: collaborators used by the above.
- ``auth``: bearer token verification.
- ``jobs``: periodic housekeeping, run from cron.
- ``app``: the FastAPI application.
"""
