"""
Anti-abuse core for a competitive reaction-time game.

Plausibility validation, statistical outlier detection, behaviour profiling,
multi-period rate limiting with progressive penalties, and security monitoring.

    from reaction_shield.pipeline import build_pipeline
    pipeline = build_pipeline()
    pipeline.handle_submission({"user_id": "u1", "reaction_time": 212.4})
"""

__version__ = "0.1.0"
