"""
Hybrid Spaced-Repetition Learning Engine

Schedules vocabulary reviews for each learner. The features:
1. Deterministic SM-2 scheduling as the always-available baseline
2. Per-user confusion graph built from live review events
3. Semantic embeddings with a TTL/LRU cache and vector search
4. Graph-enhanced success predictions that pull reviews earlier when needed
5. Feature flags and health reporting for every optional subsystem

Entry points: ``hybrid_srs.main.create_app`` for the HTTP service and
``hybrid_srs.container.EngineContainer`` for in-process use.
"""

__version__ = "0.1.0"
