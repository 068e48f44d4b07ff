"""
hydro — Two-source hydrological station aggregation.

Sub-modules:
    models       — Typed records shared across the pipeline
    schemas      — Pydantic models of the upstream IMGW payloads
    fetchers     — hydro / hydro2 source fetchers (httpx)
    reconciler   — Freshest-value-per-station merge with provenance
    cache_store  — In-process TTL snapshot cache with request coalescing
    alarms       — Warning / alarm classification and threshold registry
    coordinates  — Pinned station coordinates
    visibility   — Hidden-station list
    service      — SmartDataService orchestrator (single call surface)
    persistence  — Repository + batched persistence sync
    db_models    — SQLAlchemy ORM tables
"""
