"""
External service clients

Components:
- redis: fail-open async cache store
- bigQuery: BigQuery-backed content store
- contentStore: content store contract and in-memory implementation
"""
