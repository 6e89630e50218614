"""HTTP surface -- thin FastAPI routers over the sync engine.

Routers:
- webhooks: BigCommerce and HubSpot webhook intake (acknowledge, then dispatch)
- sync_logs: admin listing, stats, lookup and manual retry of sync attempts
- mappings: admin view/update/reset of the deal-stage mapping
- health: liveness, readiness and Prometheus metrics
"""
