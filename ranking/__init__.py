"""
Feed ranking pipeline

Components:
- feedOrchestrator: tiered fallback entry point (hybrid -> simplified -> chronological)
- rankingEngine: the three ranking strategies and default scoring
- circuitBreaker: failure-counting guard around the hybrid tier
- stampedeGuard: single in-flight computation per cache key
- cacheManager: cache keys, TTLs and feed invalidation
"""
