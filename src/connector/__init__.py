"""GitHub connector: repository event subscriptions and paginated collections.

This package provides:
- Webhook subscription lifecycle management (one webhook per repository,
  event names added and removed idempotently)
- Link header parsing and next page argument resolution
- Inbound webhook verification and classification
- Event dispatch to subscribers, with a polling alternative to webhooks
- A FastAPI service exposing subscriptions and collections
"""
