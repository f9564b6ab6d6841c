"""
HTTP surface for the feed ranking pipeline

Components:
- feedServer: FastAPI app serving feeds, metrics, health and cache invalidation
"""
