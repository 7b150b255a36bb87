"""
inference — Orchestration of the external skin detectors.

Modules:
    detectors        — HTTP clients for the acne, redness and wrinkle detectors
                       and the image fetcher.
    recommendations  — Skincare recommendation payload builder and client.
    queue            — Redis-backed job queue for asynchronous requests.
    orchestrator     — The /infer pipeline: rate limit, validate, cache,
                       fan out, merge, enrich.
"""
