"""
Market data service package for the access layer.

Serves normalized market data while shielding rate-limited upstream
providers from redundant calls:
- Cache: tiered local + Redis store with per-dataset TTLs
- Single-flight: at most one upstream fetch per key per process
- Rate limiting: fixed-window quotas per caller and provider
- Retries with exponential backoff for transient provider failures
- History: every normalized record appended to PostgreSQL

Structure:
- app.service: the pipeline facade wiring everything from settings.
- app.coordinator: fetch coordinator and leases.
- app.caching: tiered cache and stores.
- app.ratelimit: fixed-window limiter and counter stores.
- app.providers: HTTP client, adapters, registry.
- app.normalization: provider schemas and canonical mappings.
- app.persistence: record history stores.
- app.refresh: periodic refresh contract.
"""
